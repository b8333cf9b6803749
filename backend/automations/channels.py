"""
Outbound message senders used by the `send_message` node.

A sender is any callable accepting keyword arguments
``organization_id, to, message, subject, credentials, options`` and returning a
dict (``{"id": <provider ref>}``). Override per channel with dotted paths in
``settings.AUTOMATION_CHANNEL_SENDERS``.
"""
import logging
from typing import Any, Callable, Dict, Optional

import requests
from django.conf import settings
from django.core.mail import send_mail
from django.utils.module_loading import import_string

from . import conf
from .exceptions import ChannelNotConfigured

logger = logging.getLogger(__name__)

DEFAULT_SENDERS = {
    "email": "automations.channels.send_email",
    "whatsapp": "automations.channels.send_via_gateway",
    "sms": "automations.channels.send_via_gateway",
}


def get_sender(channel: str) -> Callable[..., Dict[str, Any]]:
    configured = dict(DEFAULT_SENDERS)
    configured.update(conf.get("AUTOMATION_CHANNEL_SENDERS") or {})
    target = configured.get(channel)
    if not target:
        raise ChannelNotConfigured(f"No sender configured for channel {channel!r}")
    return import_string(target) if isinstance(target, str) else target


def send_email(*, organization_id, to: str, message: str, subject: str = "",
               credentials: Optional[dict] = None, options: Optional[dict] = None) -> Dict[str, Any]:
    from_email = (credentials or {}).get("from_email") or settings.DEFAULT_FROM_EMAIL
    sent = send_mail(subject or "", message, from_email, [to], fail_silently=False)
    return {"id": None, "sent": sent}


def send_via_gateway(*, organization_id, to: str, message: str, subject: str = "",
                     credentials: Optional[dict] = None, options: Optional[dict] = None) -> Dict[str, Any]:
    """
    Generic HTTP messaging gateway (WhatsApp/SMS providers). The node's
    credential supplies ``url`` and an optional ``token``.
    """
    creds = credentials or {}
    url = creds.get("url") or creds.get("endpoint")
    if not url:
        raise ChannelNotConfigured("Messaging gateway credential has no url")
    headers = {"Content-Type": "application/json"}
    token = creds.get("token") or creds.get("api_key")
    if token:
        headers["Authorization"] = f"Bearer {token}"
    body = {"to": to, "message": message, "channel": (options or {}).get("channel")}
    if subject:
        body["subject"] = subject

    r = requests.post(url, json=body, headers=headers, timeout=conf.get("AUTOMATION_HTTP_TIMEOUT"))
    r.raise_for_status()
    try:
        data = r.json()
    except ValueError:
        data = {}
    ref = data.get("id") or data.get("messageId") if isinstance(data, dict) else None
    logger.info("gateway accepted message for org=%s ref=%s", organization_id, ref)
    return {"id": ref}
