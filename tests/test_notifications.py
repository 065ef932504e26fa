from __future__ import annotations

import threading
from pathlib import Path

import pytest
from prometheus_client import REGISTRY

from account_lifecycle.domain.account import AccountStatus
from account_lifecycle.domain.errors import RenderFailure, TransportFailure
from account_lifecycle.notifications.dispatcher import DeliveryStatus, NotificationDispatcher
from account_lifecycle.notifications.templates import JinjaTemplateRenderer
from account_lifecycle.notifications.transports import LogTransport, OutgoingMessage


def failures(template: str, reason: str) -> float:
    value = REGISTRY.get_sample_value(
        "account_notification_failures_total", {"template": template, "reason": reason}
    )
    return value or 0.0


def test_activation_template_renders_link_and_subject():
    rendered = JinjaTemplateRenderer().render(
        "activation",
        {
            "email": "a@x.io",
            "code": "abc123",
            "app_url": "https://app.example.com",
            "expires_at": "2024-01-04 12:00 UTC",
        },
    )
    assert rendered.subject == "Activate your account"
    assert "https://app.example.com/activate?code=abc123" in rendered.html
    assert "Hello," in rendered.html


def test_missing_context_is_a_render_failure():
    with pytest.raises(RenderFailure):
        JinjaTemplateRenderer().render("activation", {"email": "a@x.io"})


def test_unknown_template_is_a_render_failure():
    with pytest.raises(RenderFailure):
        JinjaTemplateRenderer().render("does-not-exist", {})


def test_template_without_subject_is_a_render_failure(tmp_path: Path):
    (tmp_path / "bare.html").write_text("<p>{{ code }}</p>")
    with pytest.raises(RenderFailure):
        JinjaTemplateRenderer(tmp_path).render("bare", {"code": "x"})


def test_dispatcher_passes_app_url_and_reports_accepted(dispatcher, transport):
    report = dispatcher.send(
        "password-reset",
        {"email": "a@x.io", "code": "xyz", "expires_at": "soon"},
        "a@x.io",
    )
    assert report.status is DeliveryStatus.accepted
    message = transport.sent[0]
    assert message.sender == "no-reply@example.com"
    assert "https://app.example.com/reset-password?code=xyz" in message.html


def test_dispatcher_render_failure_is_counted(dispatcher, transport):
    before = failures("activation", "render_failure")
    with pytest.raises(RenderFailure):
        dispatcher.send("activation", {}, "a@x.io")
    assert failures("activation", "render_failure") == before + 1
    assert transport.sent == []


def test_dispatcher_transport_failure_is_raised_and_counted(dispatcher, transport):
    transport.fail = True
    before = failures("activation", "transport_failure")
    with pytest.raises(TransportFailure):
        dispatcher.send(
            "activation", {"email": "a@x.io", "code": "c", "expires_at": "soon"}, "a@x.io"
        )
    assert failures("activation", "transport_failure") == before + 1


def test_unexpected_transport_errors_become_transport_failures(settings):
    class Exploding:
        def deliver(self, message: OutgoingMessage) -> None:
            raise RuntimeError("boom")

    dispatcher = NotificationDispatcher(JinjaTemplateRenderer(), Exploding(), settings.mail_settings())
    try:
        with pytest.raises(TransportFailure):
            dispatcher.send(
                "activation", {"email": "a@x.io", "code": "c", "expires_at": "soon"}, "a@x.io"
            )
    finally:
        dispatcher.close()


def test_slow_transport_is_deferred(dispatcher, transport):
    transport.release = threading.Event()
    report = dispatcher.send(
        "activation", {"email": "a@x.io", "code": "c", "expires_at": "soon"}, "a@x.io"
    )
    assert report.status is DeliveryStatus.deferred
    transport.release.set()


def test_registration_survives_mail_outage(service, repository, transport):
    transport.fail = True
    result = service.register("a@x.io", "hunter22")

    assert result.notification.status is DeliveryStatus.failed
    assert result.notification.error == "transport_failure"
    stored = repository.find_by_email("a@x.io")
    assert stored.status is AccountStatus.pending

    transport.fail = False
    report = service.resend_activation("a@x.io")
    assert report.status is DeliveryStatus.accepted
    service.activate(transport.last_code())


def test_log_transport_never_writes_the_body(caplog):
    message = OutgoingMessage("from@x.io", "to@x.io", "Subject", "<p>secret-code</p>")
    with caplog.at_level("DEBUG"):
        LogTransport().deliver(message)
    assert "to@x.io" in caplog.text
    assert "secret-code" not in caplog.text
