from typing import Optional, Dict, Any
from .models import Notification


def notify_team(
    tenant_id,
    title: str,
    message: str = "",
    kind: str = "system",
    user_id: Optional[str] = None,
    meta: Optional[Dict[str, Any]] = None,
) -> Notification:
    return Notification.objects.create(
        tenant_id=tenant_id,
        user_id=user_id,
        kind=kind,
        title=title[:200],
        message=message or "",
        meta_json=meta or {},
    )
