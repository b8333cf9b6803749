import uuid
from unittest import mock

import pytest
import requests
from django.utils import timezone

from automations.engine import ExecutionEngine, handle_step_message, merge_context
from automations.exceptions import RunNotFound, UnsupportedMessage
from automations.models import AutomationRun, Credential
from automations.scheduler import RUN_JOB, STEP_JOB
from notificationsapp.models import Notification

from .factories import edge, make_automation, make_run, node, vip_welcome_graph

pytestmark = pytest.mark.django_db


@pytest.fixture
def engine(enqueued):
    return ExecutionEngine(enqueue=enqueued)


def _delay_graph():
    nodes = [
        node("t1", "trigger_contact_created", start=True),
        node("a1", "action_tag", tagName="welcomed"),
        node("d1", "logic_delay", value=1, unit="hours"),
        node("a2", "action_tag", tagName="followed_up"),
    ]
    return nodes, [edge("t1", "a1"), edge("a1", "d1"), edge("d1", "a2")]


def test_merge_context_is_additive():
    assert merge_context({"a": 1, "b": 2}, {"b": 3, "c": 4}) == {"a": 1, "b": 3, "c": 4}
    assert merge_context(None, None) == {}


def test_condition_false_without_edge_completes(engine, tenant, contact):
    run = make_run(make_automation(tenant, *vip_welcome_graph()), contact)

    result = engine.execute_step(run.id, "t1")

    run.refresh_from_db()
    contact.refresh_from_db()
    assert result.status == "completed" and result.success
    assert run.status == "completed"
    assert run.completed_at is not None and run.started_at is not None
    assert "welcomed" not in contact.tags
    assert [h["type"] for h in run.history] == ["trigger", "condition"]
    assert run.context["conditionResult"] is False


def test_condition_true_runs_the_action(engine, tenant, contact):
    contact.tags = ["vip"]
    contact.save()
    run = make_run(make_automation(tenant, *vip_welcome_graph()), contact)

    assert engine.execute_step(run.id, "t1").status == "completed"

    contact.refresh_from_db()
    run.refresh_from_db()
    assert contact.tags == ["vip", "welcomed"]
    assert run.context["tagAdded"] == "welcomed"
    assert run.current_node_id == "a1"


def test_context_keys_survive_the_whole_walk(engine, tenant, contact):
    run = make_run(make_automation(tenant, *vip_welcome_graph()), contact)
    before = dict(run.context)

    engine.execute_step(run.id, "t1", {"extra": "kept"})

    run.refresh_from_db()
    assert set(before) <= set(run.context)
    assert run.context["extra"] == "kept"
    assert run.context["run_id"] == str(run.id)


def test_delay_parks_the_run_and_resume_finishes_it(engine, enqueued, tenant, contact):
    run = make_run(make_automation(tenant, *_delay_graph()), contact)

    first = engine.execute_step(run.id, "t1")

    run.refresh_from_db()
    assert first.status == "waiting"
    assert run.status == "waiting"
    assert run.current_node_id == "a2"
    assert run.waiting_until > timezone.now()
    assert len(enqueued.jobs) == 1
    job = enqueued.jobs[0]
    assert job["type"] == STEP_JOB
    assert job["delay"] == 3600
    assert job["data"]["runId"] == str(run.id) and job["data"]["nodeId"] == "a2"
    contact.refresh_from_db()
    assert contact.tags == ["lead", "welcomed"]

    second = engine.execute_step(job["data"]["runId"], job["data"]["nodeId"], job["data"]["context"])

    run.refresh_from_db()
    contact.refresh_from_db()
    assert second.status == "completed"
    assert run.status == "completed" and run.waiting_until is None
    assert contact.tags == ["lead", "welcomed", "followed_up"]
    assert [h["node_id"] for h in run.history] == ["t1", "a1", "d1", "a2"]


def test_duplicate_resume_is_a_noop(engine, enqueued, tenant, contact):
    run = make_run(make_automation(tenant, *_delay_graph()), contact)
    engine.execute_step(run.id, "t1")
    engine.execute_step(run.id, "a2")
    run.refresh_from_db()
    history_len = len(run.history)

    again = engine.execute_step(run.id, "a2")

    run.refresh_from_db()
    assert again.skipped
    assert again.status == "completed"
    assert len(run.history) == history_len


def test_step_for_another_node_is_skipped(engine, enqueued, tenant, contact):
    run = make_run(make_automation(tenant, *_delay_graph()), contact)
    engine.execute_step(run.id, "t1")

    stale = engine.execute_step(run.id, "a1")

    run.refresh_from_db()
    assert stale.skipped
    assert run.status == "waiting"


def test_cancel_while_waiting(engine, enqueued, tenant, contact):
    run = make_run(make_automation(tenant, *_delay_graph()), contact)
    engine.execute_step(run.id, "t1")

    assert engine.cancel_run(run.id, "customer unsubscribed") is True
    result = engine.execute_step(run.id, "a2")

    run.refresh_from_db()
    contact.refresh_from_db()
    assert result.skipped and result.reason == "cancelled"
    assert run.status == "cancelled"
    assert run.last_error == "customer unsubscribed"
    assert "followed_up" not in contact.tags
    assert engine.cancel_run(run.id) is False


def test_zero_delay_continues_inline(engine, enqueued, tenant, contact):
    nodes, edges = _delay_graph()
    nodes[2]["data"]["config"]["value"] = 0
    run = make_run(make_automation(tenant, nodes, edges), contact)

    assert engine.execute_step(run.id, "t1").status == "completed"
    assert enqueued.jobs == []


def test_unreachable_webhook_does_not_fail_the_run(engine, tenant, contact):
    nodes = [
        node("t1", "trigger", start=True),
        node("w1", "action_webhook", url="https://unreachable.invalid/hook"),
        node("n1", "action_notify", message="after webhook"),
    ]
    run = make_run(make_automation(tenant, nodes, [edge("t1", "w1"), edge("w1", "n1")]), contact)

    with mock.patch("automations.executors.requests.request", side_effect=requests.ConnectionError("dns")):
        result = engine.execute_step(run.id, "t1")

    run.refresh_from_db()
    assert result.status == "completed"
    assert run.history[1]["output"]["delivered"] is False
    assert Notification.objects.filter(tenant=tenant, message="after webhook").count() == 1


def test_double_delivery_notifies_once(engine, tenant, contact):
    nodes = [node("t1", "trigger", start=True), node("n1", "notify_team", message="hello {{contact.first_name}}")]
    run = make_run(make_automation(tenant, nodes, [edge("t1", "n1")]), contact)

    engine.execute_step(run.id, "t1")
    dup = engine.execute_step(run.id, "t1")

    assert dup.skipped
    assert list(Notification.objects.filter(tenant=tenant).values_list("message", flat=True)) == ["hello ana"]


def test_inactive_automation_cancels_the_run(engine, tenant, contact):
    automation = make_automation(tenant, *vip_welcome_graph(), status="paused")
    run = make_run(automation, contact)

    result = engine.execute_step(run.id, "t1")

    run.refresh_from_db()
    assert result.status == "cancelled" and result.skipped
    assert run.status == "cancelled"
    assert run.last_error == "Automation is not active"


def test_unknown_node_type_fails_the_run(engine, tenant, contact):
    nodes = [node("t1", "trigger", start=True), node("x1", "teleport")]
    run = make_run(make_automation(tenant, nodes, [edge("t1", "x1")]), contact)

    result = engine.execute_step(run.id, "t1")

    run.refresh_from_db()
    assert result.status == "failed" and not result.success
    assert run.status == "failed"
    assert "x1" in run.last_error and "teleport" in run.last_error
    assert run.history[0]["node_id"] == "t1"


def test_config_error_fails_the_run(engine, tenant, contact):
    nodes = [node("t1", "trigger", start=True), node("n1", "notify_team")]
    run = make_run(make_automation(tenant, nodes, [edge("t1", "n1")]), contact)

    assert engine.execute_step(run.id, "t1").status == "failed"
    run.refresh_from_db()
    assert run.last_error.startswith("node n1 (notify_team): ")


def test_loop_without_delay_is_stopped(engine, tenant):
    nodes = [
        node("t1", "trigger", start=True),
        node("x1", "add_tag", tagName="a"),
        node("x2", "add_tag", tagName="b"),
    ]
    edges = [edge("t1", "x1"), edge("x1", "x2"), edge("x2", "x1")]
    run = make_run(make_automation(tenant, nodes, edges))

    result = engine.execute_step(run.id, "t1")

    assert result.status == "failed"
    assert "without a delay" in result.error


def test_missing_run():
    with pytest.raises(RunNotFound):
        ExecutionEngine().execute_step(uuid.uuid4(), "t1")
    with pytest.raises(RunNotFound):
        ExecutionEngine().execute_step("not-a-uuid", "t1")


def test_node_credentials_are_decrypted_for_the_executor(engine, tenant, other_tenant, contact):
    cred = Credential(tenant=tenant, name="hook", provider="webhook")
    cred.set_secret({"token": "tok_123"})
    cred.save()
    nodes = [node("t1", "trigger", start=True), node("w1", "webhook", url="https://hooks.test", credentialId=str(cred.id))]
    automation = make_automation(tenant, nodes, [edge("t1", "w1")])
    run = make_run(automation, contact)

    ok = mock.Mock(status_code=200, ok=True)
    ok.json.return_value = {}
    with mock.patch("automations.executors.requests.request", return_value=ok) as req:
        assert engine.execute_step(run.id, "t1").status == "completed"
    assert req.call_args.kwargs["headers"]["Authorization"] == "Bearer tok_123"

    # credentials of another tenant are invisible
    foreign = Credential(tenant=other_tenant, name="hook", provider="webhook")
    foreign.set_secret({"token": "x"})
    foreign.save()
    nodes[1]["data"]["config"]["credentialId"] = str(foreign.id)
    automation.nodes = nodes
    automation.save()
    run = make_run(automation, contact)
    assert engine.execute_step(run.id, "t1").status == "failed"
    run.refresh_from_db()
    assert "not found" in run.last_error


def test_start_run_resolves_start_node(engine, tenant, contact):
    run = make_run(make_automation(tenant, *vip_welcome_graph()), contact, start_node=None)
    assert engine.start_run(run).status == "completed"


# ---- queue messages ----

def test_handle_step_message_resumes(engine, enqueued, tenant, contact):
    run = make_run(make_automation(tenant, *_delay_graph()), contact)
    engine.execute_step(run.id, "t1")

    result = handle_step_message({"type": STEP_JOB, "data": enqueued.jobs[0]["data"]}, engine=engine)

    assert result.status == "completed"


def test_handle_run_message_starts_pending_run(engine, tenant, contact):
    run = make_run(make_automation(tenant, *vip_welcome_graph()), contact)
    result = handle_step_message({"type": RUN_JOB, "data": {"runId": str(run.id)}}, engine=engine)
    assert result.status == "completed"

    with pytest.raises(RunNotFound):
        handle_step_message({"type": RUN_JOB, "data": {"runId": str(uuid.uuid4())}}, engine=engine)


@pytest.mark.parametrize("message", [
    {"type": "send_invoice", "data": {"runId": "x"}},
    {"type": STEP_JOB, "data": {}},
    {"type": STEP_JOB, "data": "oops"},
    {},
])
def test_handle_step_message_rejects_malformed(message):
    with pytest.raises(UnsupportedMessage):
        handle_step_message(message)


def test_step_result_as_dict(engine, enqueued, tenant, contact):
    run = make_run(make_automation(tenant, *_delay_graph()), contact)
    data = engine.execute_step(run.id, "t1").as_dict()
    assert data["success"] is True
    assert data["status"] == "waiting"
    assert isinstance(data["waiting_until"], str)
    assert AutomationRun.objects.get(id=run.id).status == "waiting"
