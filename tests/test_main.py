from __future__ import annotations

from dataclasses import replace

import pytest
from fastapi.testclient import TestClient

from account_lifecycle import main
from account_lifecycle.security.rate_limiter import SlidingWindowRateLimiter


def test_healthz_and_metrics_without_database():
    # no context manager: the lifespan (and its Postgres pool) is not started
    client = TestClient(main.app)
    assert client.get("/healthz").json() == {"status": "ok"}
    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    assert "account_notification_failures_total" in metrics.text


def test_rate_limiter_falls_back_to_memory(settings):
    limiter = main.build_rate_limiter(replace(settings, rate_limit_backend="redis", redis_url=""))
    assert isinstance(limiter, SlidingWindowRateLimiter)


def test_build_service_wires_log_transport(settings, repository):
    service, dispatcher = main.build_service(settings, repository)
    try:
        result = service.register("wired@example.com", "hunter22")
        assert result.notification.status.value == "accepted"
    finally:
        dispatcher.close()


def test_build_service_refuses_missing_jwt_secret(settings, repository):
    with pytest.raises(ValueError, match="JWT_SECRET"):
        main.build_service(replace(settings, jwt_secret=""), repository)
