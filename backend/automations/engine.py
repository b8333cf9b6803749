"""
Execution engine: walks one run through its automation's node graph.

A step runs until the graph ends, a delay suspends the run, or a node fails.
Every status change is a compare-and-set (`UPDATE ... WHERE status IN ...`) so
duplicate queue deliveries and the reconciliation sweeps can race safely.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from django.db.models import Q
from django.utils import timezone

from . import scheduler
from .exceptions import AutomationError, NodeConfigError, RunNotFound, UnsupportedMessage
from .executors import delay_settings, get_node_spec
from .graph import Graph, node_config, node_type
from .models import AutomationRun, Credential

logger = logging.getLogger(__name__)

ENTRY_STATUSES = ("pending", "waiting")
LIVE_STATUSES = ("pending", "running", "waiting")
# guards graphs that loop back without a delay
MAX_NODES_PER_STEP = 200


@dataclass
class StepResult:
    run_id: str
    status: str
    skipped: bool = False
    reason: str = ""
    error: Optional[str] = None
    waiting_until: Optional[datetime] = None

    @property
    def success(self) -> bool:
        return self.error is None

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["success"] = self.success
        if self.waiting_until:
            data["waiting_until"] = self.waiting_until.isoformat()
        return data


def merge_context(context: Dict[str, Any], fragment: Dict[str, Any]) -> Dict[str, Any]:
    """Additive merge: keys are never dropped, later writes win."""
    merged = dict(context or {})
    merged.update(fragment or {})
    return merged


def _as_uuid(value) -> Optional[uuid.UUID]:
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError, AttributeError):
        return None


class ExecutionEngine:
    def __init__(self, enqueue=None, clock=None):
        self.enqueue = enqueue or scheduler.enqueue
        self.clock = clock or timezone.now

    # ---- entry points ----
    def execute_step(self, run_id, node_id, context: Optional[Dict[str, Any]] = None) -> StepResult:
        run_uuid = _as_uuid(run_id)
        run = (
            AutomationRun.objects.select_related("automation").filter(id=run_uuid).first()
            if run_uuid else None
        )
        if run is None:
            logger.error("automation run %s not found", run_id)
            raise RunNotFound(f"Run {run_id} not found")

        if run.status == "cancelled":
            return StepResult(str(run.id), run.status, skipped=True, reason="cancelled")

        if not run.automation.is_active:
            self._set_status(run.id, ENTRY_STATUSES, "cancelled", last_error="Automation is not active")
            return StepResult(str(run.id), "cancelled", skipped=True, reason="automation is not active")

        node_id = str(node_id) if node_id not in (None, "") else run.current_node_id
        updates = {"status": "running", "current_node_id": node_id, "waiting_until": None, "updated_at": self.clock()}
        if run.started_at is None:
            updates["started_at"] = self.clock()
        claimed = AutomationRun.objects.filter(
            Q(current_node_id=node_id) | Q(current_node_id__isnull=True),
            id=run.id, status__in=ENTRY_STATUSES,
        ).update(**updates)
        if not claimed:
            current = AutomationRun.objects.filter(id=run.id).values_list("status", flat=True).first()
            logger.info("run %s step %s skipped: run is %s", run.id, node_id, current)
            return StepResult(str(run.id), current or run.status, skipped=True, reason=f"run is {current}")

        ctx = merge_context(run.context, context or {})
        return self._walk(run, node_id, ctx)

    def start_run(self, run: AutomationRun) -> StepResult:
        node_id = run.current_node_id
        if not node_id:
            start = Graph.from_automation(run.automation).start_node()
            node_id = str(start["id"]) if start else None
        return self.execute_step(run.id, node_id, None)

    def reclaim_run(self, run: AutomationRun) -> StepResult:
        """
        Re-enters a run left `running` by a worker that died mid-walk, at the
        node of its last checkpoint. `run.updated_at` must be the value the
        caller saw; if the row moved since, another worker owns it and nothing
        happens. The node that was executing when the worker died runs again.
        """
        released = AutomationRun.objects.filter(id=run.id, status="running", updated_at=run.updated_at).update(
            status="waiting", waiting_until=self.clock(), updated_at=self.clock(),
        )
        if not released:
            return StepResult(str(run.id), "running", skipped=True, reason="run moved since it was seen")
        logger.warning("reclaiming stale run %s at node %s", run.id, run.current_node_id)
        return self.execute_step(run.id, run.current_node_id, None)

    def cancel_run(self, run_id, reason: str = "Cancelled") -> bool:
        return self._set_status(run_id, LIVE_STATUSES, "cancelled", last_error=reason)

    # ---- graph walk ----
    def _walk(self, run: AutomationRun, node_id: str, ctx: Dict[str, Any]) -> StepResult:
        graph = Graph.from_automation(run.automation)
        history: List[Dict[str, Any]] = list(run.history or [])
        tenant_id = str(run.tenant_id)
        current_id = node_id
        node = None
        try:
            for _ in range(MAX_NODES_PER_STEP):
                node = graph.node(current_id)
                if node is None:
                    break
                node_spec = get_node_spec(node_type(node))
                config = node_config(node)
                fragment = node_spec.run(tenant_id, config, ctx, credentials=self._credentials(tenant_id, config))
                ctx = merge_context(ctx, fragment)
                history.append({
                    "node_id": current_id, "type": node_spec.name, "output": fragment, "at": self.clock().isoformat(),
                })

                if node_spec.name == "delay":
                    seconds = scheduler.calculate_delay_seconds(*delay_settings(config))
                    target = graph.next_node_id(current_id)
                    if target and seconds > 0:
                        return self._suspend(run, target, ctx, history, seconds)

                next_id = graph.next_node_id(current_id, handle=node_spec.branch_for(fragment))
                if not self._checkpoint(run.id, next_id or current_id, ctx, history):
                    logger.info("run %s cancelled while at node %s", run.id, current_id)
                    return StepResult(str(run.id), "cancelled", skipped=True, reason="cancelled")
                if next_id is None:
                    break
                current_id = next_id
            else:
                raise AutomationError(f"more than {MAX_NODES_PER_STEP} nodes executed without a delay")
        except Exception as exc:
            where = f"node {current_id} ({node_type(node)})" if node else f"node {current_id}"
            message = f"{where}: {exc}"
            logger.exception("automation run %s failed at %s", run.id, where)
            self._set_status(run.id, ("running",), "failed", last_error=message, context=ctx, history=history)
            return StepResult(str(run.id), "failed", error=message)

        self._set_status(run.id, ("running",), "completed", context=ctx, history=history)
        logger.info("automation run %s completed", run.id)
        return StepResult(str(run.id), "completed")

    def _suspend(self, run, target: str, ctx, history, seconds: int) -> StepResult:
        waiting_until = self.clock() + timedelta(seconds=seconds)
        parked = AutomationRun.objects.filter(id=run.id, status="running").update(
            status="waiting", current_node_id=target, context=ctx, history=history,
            waiting_until=waiting_until, updated_at=self.clock(),
        )
        if not parked:
            return StepResult(str(run.id), "cancelled", skipped=True, reason="cancelled")
        try:
            self.enqueue(scheduler.STEP_JOB, {"runId": str(run.id), "nodeId": target, "context": ctx}, seconds)
        except Exception:
            # the run stays `waiting`; resume_due_runs picks it up after waiting_until
            logger.exception("could not schedule resume of run %s; leaving it to the delayed-run sweep", run.id)
        return StepResult(str(run.id), "waiting", waiting_until=waiting_until)

    # ---- persistence ----
    def _checkpoint(self, run_id, node_id, ctx, history) -> bool:
        return bool(AutomationRun.objects.filter(id=run_id, status="running").update(
            current_node_id=node_id, context=ctx, history=history, updated_at=self.clock(),
        ))

    def _set_status(self, run_id, from_statuses, status, **fields) -> bool:
        values = {"status": status, "updated_at": self.clock(), **fields}
        if status in ("completed", "failed", "cancelled"):
            values["completed_at"] = self.clock()
            values["waiting_until"] = None
        return bool(AutomationRun.objects.filter(id=run_id, status__in=from_statuses).update(**values))

    def _credentials(self, tenant_id: str, config: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        credential_id = config.get("credentialId")
        if not credential_id:
            return None
        credential = Credential.objects.filter(
            tenant_id=tenant_id, id=_as_uuid(credential_id), is_active=True,
        ).first()
        if credential is None:
            raise NodeConfigError(f"credential {credential_id} not found")
        return credential.get_secret()


def get_engine() -> ExecutionEngine:
    return ExecutionEngine()


def handle_step_message(message: Dict[str, Any], engine: Optional[ExecutionEngine] = None) -> StepResult:
    """
    Runs a verified queue message: `automation_step` resumes a run at a node,
    `automation_run` starts a pending run at its start node.
    """
    job_type = message.get("type")
    if job_type not in (scheduler.STEP_JOB, scheduler.RUN_JOB):
        raise UnsupportedMessage(f"unsupported job type {job_type!r}")
    data = message.get("data") or {}
    if not isinstance(data, dict) or not data.get("runId"):
        raise UnsupportedMessage(f"{job_type} message has no runId")

    engine = engine or get_engine()
    if job_type == scheduler.RUN_JOB:
        run = AutomationRun.objects.select_related("automation").filter(id=_as_uuid(data["runId"])).first()
        if run is None:
            raise RunNotFound(f"Run {data['runId']} not found")
        return engine.start_run(run)
    context = data.get("context") if isinstance(data.get("context"), dict) else None
    return engine.execute_step(data["runId"], data.get("nodeId"), context)
