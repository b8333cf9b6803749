from unittest import mock

import pytest
from rest_framework.test import APIClient

from automations.models import AutomationRun, EventLog
from automations.tests.factories import edge, make_automation, node
from crm.models import Contact, Deal

pytestmark = pytest.mark.django_db


@pytest.fixture
def emitted():
    with mock.patch("crm.signals.emit_async") as emit_async:
        yield emit_async


def _events(emit_async):
    return [(c.args[0], c.args[1]["data"]) for c in emit_async.call_args_list]


def test_contact_created_event(tenant, emitted):
    contact = Contact.objects.create(tenant=tenant, first_name="ana", email="ana@example.com", tags=["lead"])

    emitted.assert_called_once()
    event_type, payload = emitted.call_args.args
    assert event_type == "contact_created"
    assert payload["organization_id"] == str(tenant.id)
    assert payload["contact_id"] == str(contact.id)
    assert payload["data"]["tags"] == ["lead"]
    assert payload["source"] == "crm"


def test_tag_changes_emit_diffs(tenant, emitted):
    contact = Contact.objects.create(tenant=tenant, tags=["lead", "cold"])
    emitted.reset_mock()

    contact.tags = ["lead", "vip"]
    contact.save()

    assert _events(emitted) == [("tag_added", {"tag_name": "vip"}), ("tag_removed", {"tag_name": "cold"})]


def test_saving_without_tag_change_is_silent(tenant, emitted):
    contact = Contact.objects.create(tenant=tenant, tags=["lead"])
    emitted.reset_mock()
    contact.first_name = "bia"
    contact.save()
    emitted.assert_not_called()


def test_deal_stage_events(tenant, contact, emitted):
    deal = Deal.objects.create(tenant=tenant, contact=contact, title="Big one", value="500.00", stage="new")
    assert _events(emitted)[-1][0] == "deal_created"
    emitted.reset_mock()

    deal.stage = "won"
    deal.save()

    types = [e[0] for e in _events(emitted)]
    assert types == ["deal_stage_changed", "deal_won"]
    data = _events(emitted)[0][1]
    assert (data["from_stage_id"], data["to_stage_id"], data["total_value"]) == ("new", "won", "500.00")


def test_tag_added_on_save_starts_tag_automation(tenant, django_capture_on_commit_callbacks):
    # dispatch inline instead of through the broker
    def run_now(event_type, payload, source=None):
        from automations.bus import EventBus
        EventBus(enqueue=lambda *a, **k: "queued").emit(event_type, payload, source=source)

    follow_up = make_automation(
        tenant, [node("t1", "trigger_tag_added", start=True), node("n1", "notify_team", message="vip!")],
        [edge("t1", "n1")], trigger_type="tag_added", trigger_config={"tag_name": "vip"},
    )
    with mock.patch("automations.tasks.emit_event_task.delay", side_effect=run_now):
        with django_capture_on_commit_callbacks(execute=True):
            contact = Contact.objects.create(tenant=tenant, tags=[])
        with django_capture_on_commit_callbacks(execute=True):
            contact.tags = ["vip"]
            contact.save()

    assert EventLog.objects.filter(event_type="tag_added", processed=True).count() == 1
    assert AutomationRun.objects.filter(automation=follow_up).count() == 1


def test_contact_api_is_tenant_scoped(tenant, other_tenant, emitted):
    api = APIClient()
    api.credentials(HTTP_X_TENANT_ID=str(tenant.id))
    resp = api.post("/api/v1/crm/contact/", {
        "first_name": "ana", "tags": ["vip", " vip ", "lead"], "tenant": str(other_tenant.id),
    }, format="json")

    assert resp.status_code == 201
    contact = Contact.objects.get(id=resp.json()["id"])
    assert contact.tenant_id == tenant.id
    assert contact.tags == ["vip", "lead"]
    assert emitted.call_args.args[0] == "contact_created"

    api.credentials(HTTP_X_TENANT_ID=str(other_tenant.id))
    assert api.get("/api/v1/crm/contact/").json()["count"] == 0
