"""
Polling side of the engine. Each sweep is safe to run next to push delivery:
events are claimed with the same compare-and-set as the bus, runs with the
engine's status guard. One bad row never stops a batch.
"""
import logging
from datetime import timedelta
from typing import Any, Dict, Iterable, Optional

from django.utils import timezone

from . import conf
from .bus import EmitResult, get_bus, record_event
from .engine import get_engine
from .models import AutomationRun, EventLog

logger = logging.getLogger(__name__)


def process_event(event_id) -> EmitResult:
    return get_bus().process(event_id)


def process_pending_events(limit: Optional[int] = None) -> Dict[str, Any]:
    limit = limit or conf.get("AUTOMATION_EVENT_BATCH_SIZE")
    ids = list(
        EventLog.objects.filter(processed=False).order_by("created_at").values_list("id", flat=True)[:limit]
    )
    summary = {"processed": 0, "skipped": 0, "failed": 0, "runs_created": 0}
    bus = get_bus()
    for event_id in ids:
        result = bus.process(event_id)
        if result.skipped:
            summary["skipped"] += 1
            continue
        summary["processed"] += 1
        summary["runs_created"] += result.automations_triggered
        if not result.success:
            summary["failed"] += 1
    if ids:
        logger.info("event sweep: %s", summary)
    return summary


def _drive(runs: Iterable[AutomationRun], start) -> Dict[str, Any]:
    summary = {"started": 0, "skipped": 0, "failed": 0, "cancelled": 0}
    for run in runs:
        try:
            result = start(run)
        except Exception:
            logger.exception("sweep could not drive run %s", run.id)
            summary["failed"] += 1
            continue
        if result.skipped:
            summary["cancelled" if result.status == "cancelled" else "skipped"] += 1
        elif result.success:
            summary["started"] += 1
        else:
            summary["failed"] += 1
    return summary


def process_pending_runs(limit: Optional[int] = None, debounce_seconds: Optional[int] = None) -> Dict[str, Any]:
    """
    Starts pending runs whose enqueue never arrived. The debounce window keeps
    the sweep off runs whose creating transaction is still in flight.
    """
    limit = limit or conf.get("AUTOMATION_RUN_BATCH_SIZE")
    if debounce_seconds is None:
        debounce_seconds = conf.get("AUTOMATION_PENDING_RUN_DEBOUNCE_SECONDS")
    cutoff = timezone.now() - timedelta(seconds=debounce_seconds)
    runs = (
        AutomationRun.objects.select_related("automation")
        .filter(status="pending", created_at__lte=cutoff)
        .order_by("created_at")[:limit]
    )
    summary = _drive(list(runs), get_engine().start_run)
    if any(summary.values()):
        logger.info("pending-run sweep: %s", summary)
    return summary


def resume_due_runs(limit: Optional[int] = None) -> Dict[str, Any]:
    limit = limit or conf.get("AUTOMATION_DELAYED_BATCH_SIZE")
    runs = (
        AutomationRun.objects.select_related("automation")
        .filter(status="waiting", waiting_until__lte=timezone.now())
        .order_by("waiting_until")[:limit]
    )
    engine = get_engine()
    summary = _drive(list(runs), lambda run: engine.execute_step(run.id, run.current_node_id, None))
    if any(summary.values()):
        logger.info("delayed-run sweep: %s", summary)
    return summary


def reclaim_stale_runs(limit: Optional[int] = None, stale_seconds: Optional[int] = None) -> Dict[str, Any]:
    """
    Picks up runs stuck in `running` because their worker died. A run counts
    as stale once its last checkpoint is older than `stale_seconds`.
    """
    limit = limit or conf.get("AUTOMATION_STALE_RUN_BATCH_SIZE")
    if stale_seconds is None:
        stale_seconds = conf.get("AUTOMATION_STALE_RUN_SECONDS")
    cutoff = timezone.now() - timedelta(seconds=stale_seconds)
    runs = list(
        AutomationRun.objects.select_related("automation")
        .filter(status="running", updated_at__lte=cutoff)
        .order_by("updated_at")[:limit]
    )
    summary = _drive(runs, get_engine().reclaim_run)
    if any(summary.values()):
        logger.info("stale-run sweep: %s", summary)
    return summary


def run_sweeps(events: bool = True, runs: bool = True, delayed: bool = True, stale: bool = True) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    if events:
        out["events"] = process_pending_events()
    if runs:
        out["runs"] = process_pending_runs()
    if delayed:
        out["delayed"] = resume_due_runs()
    if stale:
        out["stale"] = reclaim_stale_runs()
    return out


def detect_abandoned_carts(tenant_id, carts, abandon_after: timedelta = timedelta(hours=1), now=None) -> int:
    """
    Records a `cart_abandoned` event for every cart idle longer than
    `abandon_after`. `carts` are dicts with `id`, `updated_at` and optional
    `contact_id`, `email`, `phone`, `total_value`, `items`. A cart already
    waiting in the event log is not recorded twice.
    """
    now = now or timezone.now()
    recorded = 0
    for cart in carts:
        try:
            recorded += int(_record_abandoned_cart(tenant_id, cart, abandon_after, now))
        except Exception:
            logger.exception("could not record abandoned cart %r for tenant %s", cart.get("id"), tenant_id)
    if recorded:
        logger.info("recorded %d abandoned cart(s) for tenant %s", recorded, tenant_id)
    return recorded


def _record_abandoned_cart(tenant_id, cart, abandon_after: timedelta, now) -> bool:
    updated_at = cart.get("updated_at")
    if cart.get("completed") or updated_at is None or now - updated_at < abandon_after:
        return False
    payload = {
        "organization_id": str(tenant_id),
        "contact_id": cart.get("contact_id"),
        "email": cart.get("email"),
        "phone": cart.get("phone"),
        "data": {
            "cart_id": str(cart["id"]),
            "total_value": cart.get("total_value"),
            "items": cart.get("items") or [],
        },
        "source": "cron",
    }
    _, created = record_event("cart_abandoned", payload, source="cron", business_key=f"cart:{cart['id']}")
    return created
