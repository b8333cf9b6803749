from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from celery import shared_task
from django.db import OperationalError

from .bus import emit
from .exceptions import InvalidSignature, RunNotFound, UnsupportedMessage
from .processor import process_pending_events, process_pending_runs, reclaim_stale_runs, resume_due_runs
from .scheduler import handle_delivery

logger = logging.getLogger(__name__)


# -------- queue delivery --------

@shared_task(bind=True, max_retries=3, autoretry_for=(OperationalError,), retry_backoff=True, retry_backoff_max=300)
def deliver_job(self, body: str, signature: str) -> Dict[str, Any]:
    """
    Celery side of the delay queue. The body is verified again here, so a
    message injected straight into the broker cannot drive a run.
    Only transient database errors are retried; workflow failures are recorded
    on the run.
    """
    try:
        result = handle_delivery(body, signature, scheme="hmac")
    except (InvalidSignature, UnsupportedMessage) as exc:
        logger.error("dropping queue message: %s", exc)
        return {"success": False, "error": str(exc)}
    except RunNotFound as exc:
        return {"success": False, "error": str(exc)}
    return result.as_dict()


# -------- event dispatch --------

@shared_task
def emit_event_task(event_type: str, payload: Dict[str, Any], source: Optional[str] = None) -> Dict[str, Any]:
    return emit(event_type, payload, source=source).as_dict()


# -------- reconciliation sweeps (beat) --------

@shared_task
def process_pending_events_task(limit: Optional[int] = None) -> Dict[str, Any]:
    return process_pending_events(limit)


@shared_task
def process_pending_runs_task(limit: Optional[int] = None) -> Dict[str, Any]:
    return process_pending_runs(limit)


@shared_task
def resume_due_runs_task(limit: Optional[int] = None) -> Dict[str, Any]:
    return resume_due_runs(limit)


@shared_task
def reclaim_stale_runs_task(limit: Optional[int] = None) -> Dict[str, Any]:
    return reclaim_stale_runs(limit)
