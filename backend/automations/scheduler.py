"""
Delayed job delivery for automation steps.

Messages are JSON ``{"type": ..., "data": ...}`` bodies. Two backends:

- ``celery``: `deliver_job.apply_async(countdown=delay)`. The body carries an
  HMAC-SHA256 (base64) signature over the raw bytes, re-verified by the worker.
- ``http``: QStash publish; the provider calls back
  `/api/v1/automations/workers/step/` after the delay with an HS256 JWT in
  `Upstash-Signature` (issuer `Upstash`, subject = callback URL, `body` claim =
  base64url SHA-256 of the raw body), signed with the current or next key.

Delivery is at-least-once. The engine's status compare-and-set makes a repeated
delivery a no-op.
"""
from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import jwt
import requests
from django.core.serializers.json import DjangoJSONEncoder

from . import conf
from .exceptions import InvalidSignature, QueueError, QueueNotConfigured

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "Upstash-Signature"
PROVIDER_ISSUER = "Upstash"
PROVIDER_CLOCK_LEEWAY = 5
STEP_JOB = "automation_step"
RUN_JOB = "automation_run"

UNIT_SECONDS = {
    "second": 1, "seconds": 1,
    "minute": 60, "minutes": 60,
    "hour": 3600, "hours": 3600,
    "day": 86400, "days": 86400,
}


def calculate_delay_seconds(value, unit: str = "minutes") -> int:
    """Unknown units count as minutes; negative results clamp to 0."""
    multiplier = UNIT_SECONDS.get(str(unit or "").lower(), 60)
    try:
        seconds = float(value) * multiplier
    except (TypeError, ValueError):
        return 0
    if seconds != seconds:  # NaN
        return 0
    return max(0, int(round(seconds)))


# --------------------------------------------------------------------------
# signing
# --------------------------------------------------------------------------
def _signing_keys():
    keys = (conf.get("AUTOMATION_QUEUE_CURRENT_SIGNING_KEY"), conf.get("AUTOMATION_QUEUE_NEXT_SIGNING_KEY"))
    return [k for k in keys if k]


def encode_message(job_type: str, payload: Dict[str, Any]) -> bytes:
    return json.dumps({"type": job_type, "data": payload}, cls=DjangoJSONEncoder, separators=(",", ":")).encode("utf-8")


def sign(body: bytes, key: str) -> str:
    digest = hmac.new(key.encode("utf-8"), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


@dataclass
class Verification:
    is_valid: bool
    body: Optional[Dict[str, Any]] = None
    error: str = ""


def verify_signature(raw_body, signature: Optional[str]) -> Verification:
    """
    Accepts a signature made with the current or the next key so keys can be
    rotated without dropping in-flight messages.
    """
    keys = _signing_keys()
    if not keys:
        return Verification(False, error="no signing keys configured")
    if not signature:
        return Verification(False, error="missing signature")
    if isinstance(raw_body, str):
        raw_body = raw_body.encode("utf-8")
    if not any(hmac.compare_digest(sign(raw_body, key), signature) for key in keys):
        return Verification(False, error="signature mismatch")
    return _parse_body(raw_body)


def body_hash(raw_body: bytes) -> str:
    return base64.urlsafe_b64encode(hashlib.sha256(raw_body).digest()).decode("ascii").rstrip("=")


def verify_provider_token(raw_body, token: Optional[str], url: Optional[str] = None) -> Verification:
    """
    Checks a QStash callback token: HS256 with the current key, then the next
    one; issuer `Upstash`; `sub` equal to our callback URL when one is
    configured; `body` equal to the hash of the bytes we received.
    """
    keys = _signing_keys()
    if not keys:
        return Verification(False, error="no signing keys configured")
    if not token:
        return Verification(False, error="missing signature")
    if isinstance(raw_body, str):
        raw_body = raw_body.encode("utf-8")

    claims = None
    for key in keys:
        try:
            claims = jwt.decode(
                token, key, algorithms=["HS256"], issuer=PROVIDER_ISSUER, leeway=PROVIDER_CLOCK_LEEWAY,
                options={"require": ["iss", "sub", "exp", "nbf", "body"]},
            )
            break
        except jwt.InvalidSignatureError:
            continue
        except jwt.InvalidTokenError as e:
            return Verification(False, error=f"invalid token: {e}")
    if claims is None:
        return Verification(False, error="signature mismatch")

    url = conf.get("AUTOMATION_QUEUE_CALLBACK_URL") if url is None else url
    if url and claims["sub"] != url:
        return Verification(False, error="token subject mismatch")
    if not hmac.compare_digest(str(claims["body"]).rstrip("=").encode("utf-8"), body_hash(raw_body).encode("ascii")):
        return Verification(False, error="body hash mismatch")
    return _parse_body(raw_body)


def _parse_body(raw_body: bytes) -> Verification:
    try:
        body = json.loads(raw_body)
    except ValueError:
        return Verification(False, error="malformed body")
    if not isinstance(body, dict):
        return Verification(False, error="malformed body")
    return Verification(True, body=body)


# --------------------------------------------------------------------------
# backends
# --------------------------------------------------------------------------
class CeleryBackend:
    name = "celery"

    def publish(self, body: bytes, signature: str, delay_seconds: int) -> str:
        if not signature:
            raise QueueNotConfigured("AUTOMATION_QUEUE_CURRENT_SIGNING_KEY is required for the celery backend")
        from .tasks import deliver_job

        result = deliver_job.apply_async(args=[body.decode("utf-8"), signature], countdown=delay_seconds or None)
        return result.id


class HttpBackend:
    name = "http"

    def publish(self, body: bytes, signature: str, delay_seconds: int) -> str:
        publish_url = conf.get("AUTOMATION_QUEUE_PUBLISH_URL")
        callback_url = conf.get("AUTOMATION_QUEUE_CALLBACK_URL")
        if not publish_url or not callback_url:
            raise QueueNotConfigured("AUTOMATION_QUEUE_PUBLISH_URL and AUTOMATION_QUEUE_CALLBACK_URL are required")
        headers = {
            "Authorization": f"Bearer {conf.get('AUTOMATION_QUEUE_TOKEN')}",
            "Content-Type": "application/json",
            "Upstash-Retries": str(conf.get("AUTOMATION_QUEUE_RETRIES")),
        }
        if delay_seconds:
            headers["Upstash-Delay"] = f"{delay_seconds}s"
        try:
            r = requests.post(
                f"{publish_url.rstrip('/')}/{callback_url}",
                data=body,
                headers=headers,
                timeout=conf.get("AUTOMATION_HTTP_TIMEOUT"),
            )
            r.raise_for_status()
        except requests.RequestException as e:
            raise QueueError(f"queue publish failed: {e}") from e
        try:
            return str(r.json().get("messageId") or "")
        except ValueError:
            return ""


BACKENDS = {"celery": CeleryBackend, "http": HttpBackend}


def get_backend(name: Optional[str] = None):
    name = name or conf.get("AUTOMATION_QUEUE_BACKEND")
    try:
        return BACKENDS[name]()
    except KeyError:
        raise QueueNotConfigured(f"Unknown queue backend {name!r}")


def enqueue(job_type: str, payload: Dict[str, Any], delay_seconds: int = 0, backend=None) -> str:
    """Sign and hand off a job; returns the backend's message id."""
    delay = max(0, int(delay_seconds or 0))
    body = encode_message(job_type, payload)
    key = conf.get("AUTOMATION_QUEUE_CURRENT_SIGNING_KEY")
    signature = sign(body, key) if key else ""
    backend = backend or get_backend()
    message_id = backend.publish(body, signature, delay)
    logger.info("enqueued %s via %s (delay=%ss, id=%s)", job_type, backend.name, delay, message_id)
    return message_id


def handle_delivery(raw_body, signature: Optional[str], scheme: Optional[str] = None):
    """
    Entry point for both backends: verify, then hand the job to the engine.
    Raises InvalidSignature before anything in the body is trusted.

    `scheme` is ``"hmac"`` (celery messages) or ``"token"`` (QStash callbacks);
    by default the configured backend decides.
    """
    if scheme is None:
        scheme = "token" if conf.get("AUTOMATION_QUEUE_BACKEND") == HttpBackend.name else "hmac"
    if scheme == "token":
        verification = verify_provider_token(raw_body, signature)
    else:
        verification = verify_signature(raw_body, signature)
    if not verification.is_valid:
        logger.warning("rejected queue delivery: %s", verification.error)
        raise InvalidSignature(verification.error)
    from .engine import handle_step_message

    return handle_step_message(verification.body)
