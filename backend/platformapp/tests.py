import pytest
from rest_framework.test import APIClient

from platformapp.models import AuditLog
from platformapp.services.audit import log_event

pytestmark = pytest.mark.django_db


def test_resolve_tenant_by_slug(client, tenant):
    resp = client.get("/api/v1/platform/tenant/resolve/", {"slug": "acme"})
    assert resp.status_code == 200
    assert resp.json()["id"] == str(tenant.id)
    assert client.get("/api/v1/platform/tenant/resolve/", {"slug": "nope"}).status_code == 404
    assert client.get("/api/v1/platform/tenant/resolve/").status_code == 400


def test_audit_meta_is_redacted(tenant):
    entry = log_event(tenant=tenant, user_id=None, action="automation.trigger", entity="Automation",
                      entity_id="a1", meta={"run_id": "r1", "secret": {"token": "x"}, "headers": {"Authorization": "y"}})
    assert entry.meta_json == {"run_id": "r1", "secret": "***", "headers": {"Authorization": "***"}}


def test_audit_log_is_tenant_scoped_and_read_only(tenant, other_tenant):
    log_event(tenant=tenant, user_id="1", action="automation.active", entity="Automation", entity_id="a1")
    log_event(tenant=other_tenant, user_id="2", action="automation.paused", entity="Automation", entity_id="a2")
    api = APIClient()
    api.credentials(HTTP_X_TENANT_ID=str(tenant.id))

    resp = api.get("/api/v1/platform/auditlog/")

    assert [row["action"] for row in resp.json()["results"]] == ["automation.active"]
    assert api.post("/api/v1/platform/auditlog/", {"action": "x"}, format="json").status_code == 405
    assert AuditLog.objects.count() == 2
