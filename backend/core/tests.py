import logging

import pytest

from core.logging import RequestIDFilter
from core.middleware import get_request_id


def test_healthz(client):
    resp = client.get("/api/v1/core/healthz/")
    assert resp.status_code == 200
    assert resp.json() == {"ok": True}


def test_request_id_is_echoed_or_generated(client):
    resp = client.get("/api/v1/core/healthz/", HTTP_X_REQUEST_ID="req-123")
    assert resp["X-Request-ID"] == "req-123"
    assert client.get("/api/v1/core/healthz/")["X-Request-ID"]
    assert "X-Response-Time-ms" in resp


def test_request_id_filter_outside_a_request():
    record = logging.LogRecord("x", logging.INFO, __file__, 1, "msg", None, None)
    assert RequestIDFilter().filter(record) is True
    assert record.request_id == get_request_id() == "-"


@pytest.mark.django_db
def test_deep_health_checks(client):
    body = client.get("/api/v1/core/deep-health/?db=1&queue=1").json()
    assert body["ok"] is True
    assert body["db"] == {"ok": True}
    assert body["queue"] == {"ok": True, "backend": "celery", "signing_key": True}


def test_version(client):
    assert client.get("/api/v1/core/version/").json()["ok"] is True
