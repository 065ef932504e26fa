"""Templated email dispatch with a bounded wait on the transport."""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping

from prometheus_client import Counter

from ..config import MailSettings
from ..domain.errors import NotificationError, TransportFailure
from .templates import TemplateRenderer
from .transports import MailTransport, OutgoingMessage

logger = logging.getLogger(__name__)

NOTIFICATION_FAILURES = Counter(
    "account_notification_failures_total",
    "Lifecycle emails that failed to render or reach the mail transport.",
    ["template", "reason"],
)


class DeliveryStatus(str, Enum):
    accepted = "accepted"
    deferred = "deferred"
    failed = "failed"


@dataclass(frozen=True, slots=True)
class DeliveryReport:
    template: str
    recipient: str
    status: DeliveryStatus
    error: str | None = None


class NotificationDispatcher:
    """Renders a template and hands the message to a transport on a worker pool.

    Rendering happens on the caller's thread so template problems surface as
    :class:`RenderFailure`. Delivery is awaited for at most
    ``settings.timeout_seconds``; slower sends are reported as ``deferred`` and
    finish in the background.
    """

    def __init__(
        self,
        renderer: TemplateRenderer,
        transport: MailTransport,
        settings: MailSettings,
    ) -> None:
        self._renderer = renderer
        self._transport = transport
        self._settings = settings
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, settings.workers),
            thread_name_prefix="mail",
        )

    def send(self, template_name: str, context: Mapping[str, Any], recipient: str) -> DeliveryReport:
        """Render ``template_name`` for ``recipient`` and enqueue delivery.

        Raises
        ------
        RenderFailure
            The template is unknown or references missing context.
        TransportFailure
            The transport rejected the message within the timeout window.
        """
        full_context = {"app_url": self._settings.app_url, **context}
        try:
            rendered = self._renderer.render(template_name, full_context)
        except NotificationError as exc:
            NOTIFICATION_FAILURES.labels(template_name, exc.code).inc()
            raise

        message = OutgoingMessage(
            sender=self._settings.sender,
            recipient=recipient,
            subject=rendered.subject,
            html=rendered.html,
        )
        future = self._executor.submit(self._deliver, message)
        try:
            future.result(timeout=self._settings.timeout_seconds)
        except FutureTimeout:
            logger.warning(
                "mail to %s (%s) still in flight after %.1fs; continuing in background",
                recipient,
                template_name,
                self._settings.timeout_seconds,
            )
            future.add_done_callback(lambda done: self._log_late_result(done, template_name, recipient))
            return DeliveryReport(template_name, recipient, DeliveryStatus.deferred)
        except TransportFailure as exc:
            NOTIFICATION_FAILURES.labels(template_name, exc.code).inc()
            raise
        return DeliveryReport(template_name, recipient, DeliveryStatus.accepted)

    def _deliver(self, message: OutgoingMessage) -> None:
        try:
            self._transport.deliver(message)
        except TransportFailure:
            raise
        except Exception as exc:
            raise TransportFailure(f"mail transport error: {exc}") from exc

    def _log_late_result(self, future: Future, template_name: str, recipient: str) -> None:
        exc = future.exception()
        if exc is None:
            logger.info("deferred mail to %s (%s) delivered", recipient, template_name)
            return
        NOTIFICATION_FAILURES.labels(template_name, getattr(exc, "code", "transport_failure")).inc()
        logger.error("deferred mail to %s (%s) failed: %s", recipient, template_name, exc)

    def close(self) -> None:
        """Stop accepting work and wait for in-flight deliveries."""
        self._executor.shutdown(wait=True)
