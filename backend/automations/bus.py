"""
Event bus: turns business events into automation runs.

Producers call `emit` (synchronous, never raises) or `emit_async` (on commit,
through Celery). Every event is written to `EventLog` first and claimed by
flipping `processed`, so the polling processor never dispatches it twice.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import asdict, dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple

from django.db import DatabaseError, transaction
from django.utils import timezone

from crm.models import Contact
from platformapp.models import Tenant

from . import scheduler
from .exceptions import AutomationError, GraphValidationError, TriggerConfigError
from .graph import Graph
from .models import Automation, AutomationRun, EventLog

logger = logging.getLogger(__name__)

EVENT_ALIASES = {
    "date_trigger": "date_event",
    "birthday": "date_event",
    "webhook": "webhook_received",
    "form_submission": "form_submitted",
    "purchase": "order_paid",
    "abandoned_cart": "cart_abandoned",
}


def normalize_event_type(event_type) -> str:
    """`contact.created`, `Contact-Created` and `contact_created` are one event."""
    value = str(event_type or "").strip().lower().replace(".", "_").replace("-", "_")
    return EVENT_ALIASES.get(value, value)


@dataclass
class EmitResult:
    success: bool = True
    automations_triggered: int = 0
    run_ids: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    event_id: Optional[str] = None
    skipped: bool = False

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _as_uuid(value) -> Optional[uuid.UUID]:
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError, AttributeError):
        return None


# --------------------------------------------------------------------------
# trigger filters
# --------------------------------------------------------------------------
def _setting(config: Dict[str, Any], snake: str, camel: str):
    value = config.get(snake)
    if value in (None, ""):
        value = config.get(camel)
    return None if value in (None, "") else value


def _payload_value(payload: Dict[str, Any], *names):
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    for name in names:
        for source in (data, payload):
            value = source.get(name)
            if value not in (None, ""):
                return value
    return None


def matches_trigger_config(config, payload: Dict[str, Any]) -> bool:
    """
    Filters are ANDed; an absent filter matches everything. Raises
    TriggerConfigError for a config that cannot be evaluated.
    """
    if config in (None, ""):
        return True
    if not isinstance(config, dict):
        raise TriggerConfigError("trigger_config must be an object")

    for snake, camel, names in (
        ("tag_name", "tagName", ("tag_name", "tag")),
        ("stage_id", "stageId", ("to_stage_id", "stage_id")),
        ("pipeline_id", "pipelineId", ("pipeline_id",)),
        ("webhook_id", "webhookId", ("webhook_id",)),
        ("form_id", "formId", ("form_id",)),
    ):
        expected = _setting(config, snake, camel)
        if expected is None:
            continue
        actual = _payload_value(payload, *names)
        if actual is None or str(actual).strip() != str(expected).strip():
            return False

    min_value = _setting(config, "min_value", "minValue")
    if min_value is not None:
        try:
            threshold = Decimal(str(min_value))
        except InvalidOperation:
            raise TriggerConfigError(f"min_value must be numeric, got {min_value!r}")
        actual = _payload_value(payload, "total_value", "value", "cart_value")
        try:
            if actual is None or Decimal(str(actual)) < threshold:
                return False
        except InvalidOperation:
            return False

    if _setting(config, "only_with_email", "onlyWithEmail"):
        if not (payload.get("email") or _payload_value(payload, "email")):
            return False
    return True


def build_run_context(automation: Automation, payload: Dict[str, Any], event_type: str,
                      run_id=None, contact: Optional[Contact] = None) -> Dict[str, Any]:
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    now = timezone.now().isoformat()
    snapshot = contact.as_context() if contact else {}
    context = {
        "organization_id": str(automation.tenant_id),
        "automation_id": str(automation.id),
        "automation_name": automation.name,
        "run_id": str(run_id) if run_id else None,
        "contact_id": str(contact.id) if contact else payload.get("contact_id"),
        "deal_id": payload.get("deal_id"),
        "order_id": payload.get("order_id"),
        "email": payload.get("email") or snapshot.get("email") or "",
        "phone": payload.get("phone") or snapshot.get("phone") or "",
        "source": payload.get("source") or "",
        "trigger_type": event_type,
        "trigger_data": data,
        "trigger": {
            "type": event_type,
            "data": data,
            "source": payload.get("source") or "",
            "timestamp": now,
        },
        "triggered_at": now,
        "contact": snapshot,
    }
    return context


# --------------------------------------------------------------------------
# event log
# --------------------------------------------------------------------------
def record_event(event_type: str, payload: Dict[str, Any], source: Optional[str] = None,
                 business_key: Optional[str] = None) -> Tuple[EventLog, bool]:
    """
    Persist an event without dispatching it. With a business key, an
    unprocessed entry for the same (tenant, event type, key) is reused.
    """
    payload = dict(payload or {})
    tenant_id = _as_uuid(payload.get("organization_id"))
    if tenant_id is None or not Tenant.objects.filter(id=tenant_id).exists():
        raise AutomationError(f"unknown organization_id {payload.get('organization_id')!r}")
    event_type = normalize_event_type(event_type)

    with transaction.atomic():
        if business_key:
            existing = (
                EventLog.objects.select_for_update()
                .filter(tenant_id=tenant_id, event_type=event_type, business_key=business_key, processed=False)
                .first()
            )
            if existing is not None:
                logger.info("event %s/%s already queued as %s", event_type, business_key, existing.id)
                return existing, False
        event = EventLog.objects.create(
            tenant_id=tenant_id,
            event_type=event_type,
            contact_id=_as_uuid(payload.get("contact_id")),
            payload=payload,
            source=(source or payload.get("source") or "api")[:40],
            business_key=business_key,
        )
    return event, True


# --------------------------------------------------------------------------
# bus
# --------------------------------------------------------------------------
class EventBus:
    def __init__(self, enqueue=None):
        self.enqueue = enqueue or scheduler.enqueue

    def emit(self, event_type: str, payload: Dict[str, Any], source: Optional[str] = None,
             business_key: Optional[str] = None) -> EmitResult:
        try:
            event, created = record_event(event_type, payload, source=source, business_key=business_key)
        except Exception as e:
            logger.exception("could not record %s event", event_type)
            return EmitResult(success=False, errors=[str(e)])
        if not created:
            return EmitResult(event_id=str(event.id), skipped=True)
        return self.process(event.id)

    def process(self, event_id) -> EmitResult:
        try:
            claimed = EventLog.objects.filter(id=event_id, processed=False).update(
                processed=True, processed_at=timezone.now(), updated_at=timezone.now(),
            )
            if not claimed:
                return EmitResult(event_id=str(event_id), skipped=True)
            event = EventLog.objects.get(id=event_id)
            return self.dispatch(event)
        except Exception as e:
            logger.exception("dispatch of event %s failed", event_id)
            try:
                EventLog.objects.filter(id=event_id).update(error_message=str(e))
            except DatabaseError:
                logger.exception("could not record the failure of event %s", event_id)
            return EmitResult(success=False, errors=[str(e)], event_id=str(event_id))

    def dispatch(self, event: EventLog) -> EmitResult:
        event_type = normalize_event_type(event.event_type)
        result = EmitResult(event_id=str(event.id))
        automations = Automation.objects.filter(
            tenant_id=event.tenant_id, status="active", trigger_type=event_type,
        ).order_by("created_at")

        for automation in automations:
            try:
                if not matches_trigger_config(automation.trigger_config, event.payload):
                    continue
            except TriggerConfigError as e:
                logger.warning("automation %s skipped, bad trigger_config: %s", automation.id, e)
                result.errors.append(f"automation {automation.id}: {e}")
                continue
            try:
                run = self._create_run(automation, event.payload, event_type, event=event)
            except Exception as e:
                logger.exception("could not create run for automation %s", automation.id)
                result.errors.append(f"automation {automation.id}: {e}")
                continue
            result.run_ids.append(str(run.id))

        result.automations_triggered = len(result.run_ids)
        result.success = not result.errors
        EventLog.objects.filter(id=event.id).update(
            runs_created=result.automations_triggered,
            error_message="; ".join(result.errors) or None,
        )
        logger.info("event %s (%s) started %d run(s)", event.id, event_type, result.automations_triggered)
        return result

    def trigger_automation(self, automation: Automation, payload: Optional[Dict[str, Any]] = None,
                           event_type: str = "manual", source: str = "manual") -> AutomationRun:
        """Start one run of `automation` regardless of its trigger filter."""
        payload = {**(payload or {}), "organization_id": str(automation.tenant_id)}
        payload.setdefault("source", source)
        event = EventLog.objects.create(
            tenant_id=automation.tenant_id,
            event_type=normalize_event_type(event_type),
            contact_id=_as_uuid(payload.get("contact_id")),
            payload=payload,
            source=source,
            processed=True,
            processed_at=timezone.now(),
            runs_created=1,
        )
        return self._create_run(automation, payload, normalize_event_type(event_type), event=event)

    def _create_run(self, automation: Automation, payload: Dict[str, Any], event_type: str,
                    event: Optional[EventLog] = None) -> AutomationRun:
        start = Graph.from_automation(automation).start_node()
        if start is None:
            raise GraphValidationError(["automation must have exactly one start node"])

        contact = None
        contact_id = _as_uuid(payload.get("contact_id"))
        if contact_id:
            contact = Contact.objects.filter(tenant_id=automation.tenant_id, id=contact_id).first()

        run_id = uuid.uuid4()
        with transaction.atomic():
            run = AutomationRun.objects.create(
                id=run_id,
                tenant_id=automation.tenant_id,
                automation=automation,
                trigger_event=event,
                contact_id=contact.id if contact else None,
                status="pending",
                current_node_id=str(start["id"]),
                context=build_run_context(automation, payload, event_type, run_id=run_id, contact=contact),
            )
            Automation.objects.filter(id=automation.id).update(last_run_at=timezone.now())
            transaction.on_commit(lambda: self._enqueue_start(run))
        return run

    def _enqueue_start(self, run: AutomationRun):
        try:
            self.enqueue(scheduler.STEP_JOB, {"runId": str(run.id), "nodeId": run.current_node_id, "context": {}})
        except Exception:
            logger.exception("could not enqueue run %s; the pending-run sweep will start it", run.id)


def get_bus() -> EventBus:
    return EventBus()


def emit(event_type: str, payload: Dict[str, Any], **kwargs) -> EmitResult:
    return get_bus().emit(event_type, payload, **kwargs)


def emit_async(event_type: str, payload: Dict[str, Any], source: Optional[str] = None) -> None:
    """
    Fire-and-forget boundary for write paths: nothing here can fail the
    caller's transaction. If the broker is down the event is only recorded and
    the pending-event sweep dispatches it later.
    """
    def _send():
        from .tasks import emit_event_task

        try:
            emit_event_task.delay(event_type, payload, source)
        except Exception:
            logger.exception("broker unavailable, recording %s for the event sweep", event_type)
            try:
                record_event(event_type, payload, source=source)
            except Exception:
                logger.exception("could not record %s event", event_type)

    transaction.on_commit(_send)
