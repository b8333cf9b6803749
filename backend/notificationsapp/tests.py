import pytest
from rest_framework.test import APIClient

from notificationsapp.utils import notify_team

pytestmark = pytest.mark.django_db


def test_team_inbox_and_mark_read(tenant, other_tenant):
    mine = notify_team(tenant.id, "Automation", "New lead: ana", kind="automation", meta={"run_id": "r1"})
    notify_team(other_tenant.id, "Automation", "not yours")
    api = APIClient()
    api.credentials(HTTP_X_TENANT_ID=str(tenant.id))

    listed = api.get("/api/v1/notifications/notification/", {"kind": "automation"}).json()["results"]
    assert [n["message"] for n in listed] == ["New lead: ana"]

    resp = api.post(f"/api/v1/notifications/notification/{mine.id}/read/")
    assert resp.status_code == 200
    assert resp.json()["is_read"] is True
    assert resp.json()["read_at"]
