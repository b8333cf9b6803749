# backend/platformapp/permissions.py
from __future__ import annotations
from typing import Optional

from django.conf import settings
from rest_framework.permissions import BasePermission

import hmac


# --------------------------
# Helpers
# --------------------------
def get_request_tenant_id(request) -> Optional[str]:
    """
    Standard way to read the tenant from the request.
    - Prefer X-Tenant-ID header
    - Fallback to ?tenant= query param
    """
    tid = (
        request.META.get("HTTP_X_TENANT_ID")
        or request.query_params.get("tenant")
        or getattr(getattr(request, "user", None), "tenant_id", None)
    )
    return str(tid) if tid else None


# --------------------------
# Permissions
# --------------------------
class HasTenantContext(BasePermission):
    """
    Require a tenant context (header or query) for any request (read or write).
    """
    def has_permission(self, request, view):
        return get_request_tenant_id(request) is not None


class HasCronSecret(BasePermission):
    """
    Scheduler-only endpoints: `Authorization: Bearer <CRON_SECRET>`.
    An empty CRON_SECRET disables the endpoint.
    """
    def has_permission(self, request, view):
        secret = getattr(settings, "CRON_SECRET", "") or ""
        if not secret:
            return False
        header = request.headers.get("Authorization") or ""
        return hmac.compare_digest(header, f"Bearer {secret}")
