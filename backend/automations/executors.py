"""
Node executors, one per node type, looked up through REGISTRY.

Every executor has the signature
``(organization_id, config, context, credentials=None) -> dict`` and returns the
fragment merged into the run context. Executors never mutate `context`.
"""
from __future__ import annotations

import logging
import random
import re
import uuid
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

import requests
from django.db import DatabaseError, transaction

from crm.models import Contact, Deal, Pipeline
from notificationsapp.utils import notify_team

from . import conf
from .channels import get_sender
from .exceptions import ActionFailed, NodeConfigError, UnknownNodeType
from .variables import render, render_object, resolve_path, to_text

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NodeSpec:
    name: str
    kind: str                      # trigger | logic | action
    func: Callable[..., Dict[str, Any]]
    branches: Tuple[str, ...] = ()
    branch_key: Optional[str] = None
    defaults: Mapping[str, Any] = field(default_factory=dict)

    def run(self, organization_id, config, context, credentials=None) -> Dict[str, Any]:
        merged = {**self.defaults, **(config or {})}
        fragment = self.func(organization_id, merged, context, credentials=credentials)
        return dict(fragment or {})

    def branch_for(self, fragment: Dict[str, Any]) -> Optional[str]:
        if not self.branch_key:
            return None
        return to_text(fragment.get(self.branch_key)).lower()


REGISTRY: Dict[str, NodeSpec] = {}


def register(name, *aliases, kind="action", branches=(), branch_key=None):
    def deco(func):
        node_spec = NodeSpec(name=name, kind=kind, func=func, branches=tuple(branches), branch_key=branch_key)
        for tag in (name,) + aliases:
            REGISTRY[tag] = node_spec
        return func
    return deco


def register_alias(tag: str, target: str, **defaults):
    base = REGISTRY[target]
    REGISTRY[tag] = NodeSpec(
        name=base.name, kind=base.kind, func=base.func, branches=base.branches,
        branch_key=base.branch_key, defaults={**base.defaults, **defaults},
    )


def get_node_spec(node_type: str) -> NodeSpec:
    node_spec = REGISTRY.get(node_type)
    if node_spec is None and str(node_type).startswith("trigger"):
        node_spec = REGISTRY["trigger"]
    if node_spec is None:
        raise UnknownNodeType(node_type)
    return node_spec


# --------------------------------------------------------------------------
# helpers
# --------------------------------------------------------------------------
def _first(config, *names, default=None):
    for name in names:
        value = config.get(name)
        if value not in (None, ""):
            return value
    return default


def _fail_on_error(config) -> bool:
    return bool(_first(config, "failOnError", "failRunOnError", "fail_on_error", default=False))


def _failure(config, error: str, **extra) -> Dict[str, Any]:
    if _fail_on_error(config):
        raise ActionFailed(error)
    return {"delivered": False, "error": error, **extra}


def _as_uuid(value) -> Optional[uuid.UUID]:
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError, AttributeError):
        return None


def _contact_queryset(organization_id, context):
    contact_id = _as_uuid(context.get("contact_id"))
    if contact_id is None:
        return None
    return Contact.objects.filter(tenant_id=organization_id, id=contact_id)


def _as_string(value) -> str:
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        return ",".join(_as_string(v) for v in value)
    return to_text(value)


def _as_number(value) -> float:
    if isinstance(value, bool) or value is None or value == "":
        raise ValueError(f"not a number: {value!r}")
    return float(value)


def _is_empty(value) -> bool:
    if value is None or value == "":
        return True
    return isinstance(value, (list, tuple, dict)) and not value


def _as_list(value):
    if isinstance(value, (list, tuple)):
        return [_as_string(v) for v in value]
    return [v.strip() for v in _as_string(value).split(",")]


OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "equals": lambda a, b: _as_string(a) == _as_string(b),
    "not_equals": lambda a, b: _as_string(a) != _as_string(b),
    "contains": lambda a, b: _as_string(b) in _as_string(a),
    "not_contains": lambda a, b: _as_string(b) not in _as_string(a),
    "starts_with": lambda a, b: _as_string(a).startswith(_as_string(b)),
    "ends_with": lambda a, b: _as_string(a).endswith(_as_string(b)),
    "greater_than": lambda a, b: _as_number(a) > _as_number(b),
    "less_than": lambda a, b: _as_number(a) < _as_number(b),
    "greater_or_equal": lambda a, b: _as_number(a) >= _as_number(b),
    "less_or_equal": lambda a, b: _as_number(a) <= _as_number(b),
    "is_empty": lambda a, b: _is_empty(a),
    "is_not_empty": lambda a, b: not _is_empty(a),
    "in": lambda a, b: _as_string(a) in _as_list(b),
    "not_in": lambda a, b: _as_string(a) not in _as_list(b),
    "matches": lambda a, b: re.search(_as_string(b), _as_string(a)) is not None,
}


def evaluate_condition(field_value, operator: str, expected) -> bool:
    """Unknown operators and uncomparable values evaluate to False."""
    op = OPERATORS.get(str(operator or "").lower())
    if op is None:
        logger.warning("unknown condition operator %r", operator)
        return False
    try:
        return bool(op(field_value, expected))
    except (TypeError, ValueError, re.error):
        return False


def _check(rule: Dict[str, Any], context) -> bool:
    field_path = rule.get("field")
    if not field_path:
        raise NodeConfigError("condition requires 'field'")
    expected = rule.get("value")
    if isinstance(expected, str):
        expected = render(expected, context)
    return evaluate_condition(resolve_path(context, field_path), rule.get("operator") or "equals", expected)


# --------------------------------------------------------------------------
# trigger + logic nodes
# --------------------------------------------------------------------------
@register("trigger", kind="trigger")
def run_trigger(organization_id, config, context, credentials=None):
    return {}


@register("condition", "logic_condition", kind="logic", branches=("true", "false"), branch_key="conditionResult")
def run_condition(organization_id, config, context, credentials=None):
    rules = config.get("conditions")
    if isinstance(rules, list) and rules:
        results = [_check(rule, context) for rule in rules if isinstance(rule, dict)]
        combine = any if str(config.get("logic") or "and").lower() == "or" else all
        return {"conditionResult": combine(results)}
    return {"conditionResult": _check(config, context)}


@register("ab_split", "logic_split", "split", kind="logic", branches=("A", "B"), branch_key="variant")
def run_ab_split(organization_id, config, context, credentials=None):
    raw = _first(config, "splitPercentage", "percentageA", default=50)
    try:
        percentage = min(100.0, max(0.0, float(raw)))
    except (TypeError, ValueError):
        raise NodeConfigError(f"splitPercentage must be a number, got {raw!r}")
    # drawn on every visit; nothing is pinned to the run
    return {"variant": "A" if random.random() * 100 < percentage else "B"}


@register("delay", "logic_delay", "wait", kind="logic")
def run_delay(organization_id, config, context, credentials=None):
    delay_settings(config)
    return {}


def delay_settings(config) -> Tuple[float, str]:
    """`{value, unit}` or `{delay: {value, unit}}`; defaults to one hour."""
    cfg = config.get("delay") if isinstance(config.get("delay"), dict) else config
    raw = _first(cfg, "value", "amount", default=1)
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise NodeConfigError(f"delay value must be a number, got {raw!r}")
    return value, str(cfg.get("unit") or "hours").lower()


# --------------------------------------------------------------------------
# contact actions
# --------------------------------------------------------------------------
def _tag_name(config, context) -> str:
    tag = render(_first(config, "tagName", "tag_name", "tag", default=""), context).strip()
    if not tag:
        raise NodeConfigError("tag action requires 'tagName'")
    return tag


def _contact_snapshot(context, contact: Contact) -> Dict[str, Any]:
    snapshot = dict(context.get("contact") or {})
    snapshot.update(contact.as_context())
    return snapshot


@register("add_tag", "action_tag", "action_add_tag")
def run_add_tag(organization_id, config, context, credentials=None):
    tag = _tag_name(config, context)
    qs = _contact_queryset(organization_id, context)
    if qs is None:
        return {"tagAdded": None, "skipped": "no contact"}
    with transaction.atomic():
        contact = qs.select_for_update().first()
        if contact is None:
            return {"tagAdded": None, "skipped": "contact not found"}
        tags = list(contact.tags or [])
        if tag not in tags:
            contact.tags = tags + [tag]
            contact.save(update_fields=["tags", "updated_at"])
    return {"tagAdded": tag, "contact": _contact_snapshot(context, contact)}


@register("remove_tag", "action_remove_tag")
def run_remove_tag(organization_id, config, context, credentials=None):
    tag = _tag_name(config, context)
    qs = _contact_queryset(organization_id, context)
    if qs is None:
        return {"tagRemoved": None, "skipped": "no contact"}
    with transaction.atomic():
        contact = qs.select_for_update().first()
        if contact is None:
            return {"tagRemoved": None, "skipped": "contact not found"}
        if tag in (contact.tags or []):
            contact.tags = [t for t in contact.tags if t != tag]
            contact.save(update_fields=["tags", "updated_at"])
    return {"tagRemoved": tag, "contact": _contact_snapshot(context, contact)}


CONTACT_FIELDS = ("first_name", "last_name", "email", "phone", "status", "source")


@register("update_contact", "action_update_contact", "action_update")
def run_update_contact(organization_id, config, context, credentials=None):
    fields = config.get("fields") or {}
    custom = config.get("customFields") or {}
    if not isinstance(fields, dict) or not isinstance(custom, dict):
        raise NodeConfigError("update_contact 'fields' and 'customFields' must be objects")
    unknown = sorted(set(fields) - set(CONTACT_FIELDS))
    if unknown:
        raise NodeConfigError(f"update_contact cannot set {', '.join(unknown)}")
    qs = _contact_queryset(organization_id, context)
    if qs is None:
        return {"contactUpdated": [], "skipped": "no contact"}
    with transaction.atomic():
        contact = qs.select_for_update().first()
        if contact is None:
            return {"contactUpdated": [], "skipped": "contact not found"}
        for name, value in render_object(fields, context).items():
            setattr(contact, name, value)
        if custom:
            contact.custom_fields = {**(contact.custom_fields or {}), **render_object(custom, context)}
        contact.save()
    changed = sorted(fields) + (["custom_fields"] if custom else [])
    return {"contactUpdated": changed, "contact": _contact_snapshot(context, contact)}


# --------------------------------------------------------------------------
# notifications + outbound calls
# --------------------------------------------------------------------------
@register("notify_team", "action_notify")
def run_notify_team(organization_id, config, context, credentials=None):
    message = config.get("message")
    if not message:
        raise NodeConfigError("notify_team requires 'message'")
    notification = notify_team(
        tenant_id=organization_id,
        title=render(config.get("title") or "Automation", context),
        message=render(message, context),
        kind="automation",
        user_id=config.get("userId"),
        meta={"automation_id": context.get("automation_id"), "run_id": context.get("run_id")},
    )
    return {"notified": True, "notificationId": str(notification.id)}


@register("webhook", "action_webhook", "http_request")
def run_webhook(organization_id, config, context, credentials=None):
    url = render(config.get("url") or "", context).strip()
    if not url:
        raise NodeConfigError("webhook requires 'url'")
    method = str(config.get("method") or "POST").upper()
    headers = {str(k): str(v) for k, v in render_object(config.get("headers") or {}, context).items()}
    token = (credentials or {}).get("token") or (credentials or {}).get("api_key")
    if token:
        headers.setdefault("Authorization", f"Bearer {token}")

    body = config.get("body")
    kwargs: Dict[str, Any] = {"headers": headers, "timeout": conf.get("AUTOMATION_HTTP_TIMEOUT")}
    if method == "GET":
        kwargs["params"] = render_object(body, context) if isinstance(body, dict) else None
    elif isinstance(body, str):
        kwargs["data"] = render(body, context).encode("utf-8")
    else:
        kwargs["json"] = render_object(body, context) if body is not None else context

    try:
        r = requests.request(method, url, **kwargs)
    except requests.RequestException as e:
        logger.warning("webhook %s %s failed: %s", method, url, e)
        return _failure(config, f"{e.__class__.__name__}: {e}")
    if not r.ok:
        return _failure(config, f"HTTP {r.status_code}", statusCode=r.status_code)
    try:
        response = r.json()
    except ValueError:
        response = r.text[:2000]
    return {"delivered": True, "statusCode": r.status_code, "response": response}


def _recipient(channel: str, context) -> str:
    contact = context.get("contact") or {}
    if channel == "email":
        return context.get("email") or contact.get("email") or ""
    return context.get("phone") or contact.get("phone") or ""


@register("send_message", "action_message")
def run_send_message(organization_id, config, context, credentials=None):
    channel = str(config.get("channel") or "").lower()
    if not channel:
        raise NodeConfigError("send_message requires 'channel'")
    message = render(_first(config, "message", "body", default=""), context)
    if not message:
        raise NodeConfigError("send_message requires 'message'")
    to = render(config.get("to") or "", context).strip() or _recipient(channel, context)
    if not to:
        return _failure(config, f"no {channel} recipient in context", channel=channel)

    try:
        sender = get_sender(channel)
        result = sender(
            organization_id=organization_id, to=to, message=message,
            subject=render(config.get("subject") or "", context),
            credentials=credentials, options={"channel": channel},
        ) or {}
    except Exception as e:
        # channel senders are opaque collaborators; any failure is recoverable
        logger.warning("send_message via %s to %s failed: %s", channel, to, e)
        return _failure(config, f"{e.__class__.__name__}: {e}", channel=channel)
    return {"delivered": True, "channel": channel, "messageId": result.get("id") if isinstance(result, dict) else None}


register_alias("action_whatsapp", "send_message", channel="whatsapp")
register_alias("send_whatsapp", "send_message", channel="whatsapp")
register_alias("action_email", "send_message", channel="email")
register_alias("send_email", "send_message", channel="email")
register_alias("action_sms", "send_message", channel="sms")


# --------------------------------------------------------------------------
# deals
# --------------------------------------------------------------------------
@register("create_deal", "action_create_deal")
def run_create_deal(organization_id, config, context, credentials=None):
    title = render(config.get("title") or "", context).strip()
    if not title:
        raise NodeConfigError("create_deal requires 'title'")
    raw_value = render(config.get("value") if config.get("value") is not None else "0", context) or "0"
    try:
        value = Decimal(raw_value)
    except InvalidOperation:
        raise NodeConfigError(f"create_deal value must be numeric, got {raw_value!r}")

    pipeline_id = config.get("pipelineId")
    try:
        with transaction.atomic():
            pipeline = None
            if pipeline_id:
                pipeline = Pipeline.objects.filter(tenant_id=organization_id, id=_as_uuid(pipeline_id)).first()
                if pipeline is None:
                    return _failure(config, f"pipeline {pipeline_id} not found", dealCreated=False)
            contact_qs = _contact_queryset(organization_id, context)
            deal = Deal.objects.create(
                tenant_id=organization_id,
                pipeline=pipeline,
                contact=contact_qs.first() if contact_qs is not None else None,
                title=title[:200],
                value=value,
                currency=str(config.get("currency") or conf.get("AUTOMATION_DEFAULT_CURRENCY"))[:3],
                stage=config.get("stageId") or (pipeline.first_stage if pipeline else "new"),
                source="automation",
            )
    except DatabaseError as e:
        logger.warning("create_deal failed for org=%s: %s", organization_id, e)
        return _failure(config, str(e), dealCreated=False)
    return {"dealCreated": True, "deal_id": str(deal.id)}


@register("move_deal", "action_move_deal")
def run_move_deal(organization_id, config, context, credentials=None):
    stage = _first(config, "stageId", "stage")
    if not stage:
        raise NodeConfigError("move_deal requires 'stageId'")
    deal_id = _as_uuid(render(config.get("dealId") or "", context) or context.get("deal_id"))
    if deal_id is None:
        return _failure(config, "no deal in context", dealMoved=False)
    try:
        with transaction.atomic():
            deal = Deal.objects.select_for_update().filter(tenant_id=organization_id, id=deal_id).first()
            if deal is None:
                return _failure(config, f"deal {deal_id} not found", dealMoved=False)
            deal.stage = stage
            if stage in ("won", "lost"):
                deal.status = stage
            deal.save(update_fields=["stage", "status", "updated_at"])
    except DatabaseError as e:
        logger.warning("move_deal failed for org=%s: %s", organization_id, e)
        return _failure(config, str(e), dealMoved=False)
    return {"dealMoved": True, "deal_id": str(deal.id), "stage": stage}
