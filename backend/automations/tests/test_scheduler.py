import json
from unittest import mock

import pytest
import requests
from django.test import override_settings

from automations import scheduler
from automations.exceptions import InvalidSignature, QueueError, QueueNotConfigured, UnsupportedMessage
from automations.scheduler import (
    CeleryBackend, HttpBackend, calculate_delay_seconds, encode_message, enqueue, handle_delivery, sign,
    verify_provider_token, verify_signature,
)

from .factories import provider_token

CURRENT = "test-current-queue-signing-key-0001"
NEXT = "test-next-queue-signing-key-0002"


@pytest.mark.parametrize("value,unit,seconds", [
    (30, "seconds", 30),
    (15, "minutes", 900),
    (2, "hours", 7200),
    (1, "Days", 86400),
    (1.5, "minute", 90),
    (3, "fortnights", 180),
    (-5, "hours", 0),
    ("abc", "hours", 0),
    (float("nan"), "hours", 0),
    (None, "minutes", 0),
])
def test_calculate_delay_seconds(value, unit, seconds):
    assert calculate_delay_seconds(value, unit) == seconds


def test_encode_message_is_compact_json():
    body = encode_message("automation_step", {"runId": "r1", "nodeId": "n2"})
    assert body == b'{"type":"automation_step","data":{"runId":"r1","nodeId":"n2"}}'


def test_signature_accepts_current_and_next_keys():
    body = encode_message("automation_step", {"runId": "r1"})
    for key in (CURRENT, NEXT):
        check = verify_signature(body, sign(body, key))
        assert check.is_valid
        assert check.body == {"type": "automation_step", "data": {"runId": "r1"}}
    assert verify_signature(body.decode("utf-8"), sign(body, CURRENT)).is_valid


@pytest.mark.parametrize("mutate,error", [
    (lambda body, sig: (body, sign(body, "some-other-key")), "signature mismatch"),
    (lambda body, sig: (body + b" ", sig), "signature mismatch"),
    (lambda body, sig: (body, ""), "missing signature"),
    (lambda body, sig: (body, None), "missing signature"),
])
def test_signature_rejections(mutate, error):
    body = encode_message("automation_step", {"runId": "r1"})
    check = verify_signature(*mutate(body, sign(body, CURRENT)))
    assert not check.is_valid
    assert check.error == error


def test_signed_garbage_is_malformed():
    for raw in (b"not json", b"[1, 2]"):
        check = verify_signature(raw, sign(raw, CURRENT))
        assert (check.is_valid, check.error) == (False, "malformed body")


@override_settings(AUTOMATION_QUEUE_CURRENT_SIGNING_KEY="", AUTOMATION_QUEUE_NEXT_SIGNING_KEY="")
def test_verification_fails_closed_without_keys():
    body = b"{}"
    assert verify_signature(body, sign(body, CURRENT)).error == "no signing keys configured"


def test_handle_delivery_rejects_before_parsing():
    with pytest.raises(InvalidSignature):
        handle_delivery(b'{"type": "automation_step"}', "bogus")


def test_handle_delivery_rejects_unknown_jobs():
    body = encode_message("reindex_everything", {"runId": "r1"})
    with pytest.raises(UnsupportedMessage):
        handle_delivery(body, sign(body, CURRENT))


def test_handle_delivery_passes_verified_body_to_engine():
    body = encode_message("automation_step", {"runId": "r1", "nodeId": "n1"})
    with mock.patch("automations.engine.handle_step_message", return_value="ran") as handler:
        assert handle_delivery(body, sign(body, NEXT)) == "ran"
    handler.assert_called_once_with({"type": "automation_step", "data": {"runId": "r1", "nodeId": "n1"}})


# ---- QStash callback tokens ----

CALLBACK = "https://app.test/api/v1/automations/workers/step/"


@override_settings(AUTOMATION_QUEUE_CALLBACK_URL=CALLBACK)
def test_provider_token_accepts_current_and_next_keys():
    body = encode_message("automation_step", {"runId": "r1", "nodeId": "n2"})
    for key in (CURRENT, NEXT):
        check = verify_provider_token(body, provider_token(body, key, CALLBACK))
        assert check.is_valid, check.error
        assert check.body["data"] == {"runId": "r1", "nodeId": "n2"}
    # the HMAC check alone does not understand these tokens
    assert not verify_signature(body, provider_token(body, CURRENT, CALLBACK)).is_valid


@override_settings(AUTOMATION_QUEUE_CALLBACK_URL=CALLBACK)
@pytest.mark.parametrize("make_token,error", [
    (lambda body: provider_token(body, "some-other-queue-signing-key-9999", CALLBACK), "signature mismatch"),
    (lambda body: provider_token(body + b" ", CURRENT, CALLBACK), "body hash mismatch"),
    (lambda body: provider_token(body, CURRENT, "https://evil.test/hook"), "token subject mismatch"),
    (lambda body: provider_token(body, CURRENT, CALLBACK, iss="Someone"), "invalid token"),
    (lambda body: provider_token(body, CURRENT, CALLBACK, lifetime=-60), "invalid token"),
    (lambda body: sign(body, CURRENT), "invalid token"),
    (lambda body: "", "missing signature"),
])
def test_provider_token_rejections(make_token, error):
    body = encode_message("automation_step", {"runId": "r1"})
    check = verify_provider_token(body, make_token(body))
    assert not check.is_valid
    assert check.error.startswith(error)


@override_settings(AUTOMATION_QUEUE_CALLBACK_URL="")
def test_provider_token_subject_is_not_checked_without_callback_url():
    body = b'{"type":"automation_step","data":{}}'
    assert verify_provider_token(body, provider_token(body, CURRENT, "https://anywhere.test/")).is_valid


@override_settings(AUTOMATION_QUEUE_BACKEND="http", AUTOMATION_QUEUE_CALLBACK_URL=CALLBACK)
def test_http_backend_deliveries_are_verified_as_tokens():
    body = encode_message("automation_step", {"runId": "r1", "nodeId": "n1"})
    with mock.patch("automations.engine.handle_step_message", return_value="ran"):
        assert handle_delivery(body, provider_token(body, CURRENT, CALLBACK)) == "ran"
        with pytest.raises(InvalidSignature):
            handle_delivery(body, sign(body, CURRENT))
        assert handle_delivery(body, sign(body, CURRENT), scheme="hmac") == "ran"


# ---- backends ----

@override_settings(
    AUTOMATION_QUEUE_PUBLISH_URL="https://qstash.test/v2/publish/",
    AUTOMATION_QUEUE_CALLBACK_URL="https://app.test/api/v1/automations/workers/step/",
    AUTOMATION_QUEUE_TOKEN="qtoken",
)
def test_http_backend_publishes_with_delay_headers():
    response = mock.Mock()
    response.json.return_value = {"messageId": "msg_1"}
    with mock.patch("automations.scheduler.requests.post", return_value=response) as post:
        message_id = enqueue("automation_step", {"runId": "r1"}, 120, backend=HttpBackend())

    assert message_id == "msg_1"
    url = post.call_args.args[0]
    kwargs = post.call_args.kwargs
    assert url == "https://qstash.test/v2/publish/https://app.test/api/v1/automations/workers/step/"
    assert kwargs["headers"]["Authorization"] == "Bearer qtoken"
    assert kwargs["headers"]["Upstash-Delay"] == "120s"
    assert kwargs["headers"]["Upstash-Retries"] == "3"
    assert json.loads(kwargs["data"]) == {"type": "automation_step", "data": {"runId": "r1"}}


@override_settings(
    AUTOMATION_QUEUE_PUBLISH_URL="https://qstash.test/v2/publish",
    AUTOMATION_QUEUE_CALLBACK_URL="https://app.test/hook",
)
def test_http_backend_errors():
    with mock.patch("automations.scheduler.requests.post", side_effect=requests.ConnectionError("down")):
        with pytest.raises(QueueError):
            HttpBackend().publish(b"{}", "sig", 0)
    with override_settings(AUTOMATION_QUEUE_CALLBACK_URL=""):
        with pytest.raises(QueueNotConfigured):
            HttpBackend().publish(b"{}", "sig", 0)


def test_celery_backend_schedules_signed_delivery():
    with mock.patch("automations.tasks.deliver_job.apply_async") as apply_async:
        apply_async.return_value.id = "task-1"
        assert enqueue("automation_step", {"runId": "r1"}, 60, backend=CeleryBackend()) == "task-1"

    body, signature = apply_async.call_args.kwargs["args"]
    assert apply_async.call_args.kwargs["countdown"] == 60
    assert verify_signature(body, signature).is_valid


@override_settings(AUTOMATION_QUEUE_CURRENT_SIGNING_KEY="")
def test_celery_backend_requires_signing_key():
    with pytest.raises(QueueNotConfigured):
        enqueue("automation_step", {"runId": "r1"}, backend=CeleryBackend())


def test_get_backend():
    assert isinstance(scheduler.get_backend("celery"), CeleryBackend)
    assert isinstance(scheduler.get_backend("http"), HttpBackend)
    with pytest.raises(QueueNotConfigured):
        scheduler.get_backend("carrier-pigeon")


@pytest.mark.django_db
def test_deliver_job_task_drops_forged_messages():
    from automations.tasks import deliver_job

    result = deliver_job.apply(args=['{"type":"automation_step","data":{"runId":"x"}}', "forged"]).get()
    assert result == {"success": False, "error": "signature mismatch"}
