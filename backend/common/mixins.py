# backend/common/mixins.py
from __future__ import annotations

import logging
from typing import Iterable, Dict, Any, Optional
from django.db.models import Q, Model
from django.core.exceptions import FieldDoesNotExist
from rest_framework.viewsets import ModelViewSet
from rest_framework.pagination import PageNumberPagination
from rest_framework.exceptions import PermissionDenied, NotFound
from rest_framework.permissions import SAFE_METHODS

from platformapp.models import Tenant
from platformapp.permissions import get_request_tenant_id
from platformapp.services.audit import log_event

logger = logging.getLogger(__name__)


# -----------------------------
# Pagination
# -----------------------------
class DefaultPagination(PageNumberPagination):
    page_size = 25
    page_size_query_param = "page_size"
    max_page_size = 200


# -----------------------------
# Base tenant-scoped MVSet
# -----------------------------
class TenantScopedModelViewSet(ModelViewSet):
    """
    Multi-tenant base ViewSet:

    - Reads tenant from `X-Tenant-ID` header or `?tenant=` query param.
    - Auto-filters queryset by `<tenant_field>_id=...`; there is no cross-tenant read.
    - Without a tenant: reads return an empty set, writes are forbidden.
    - On create the tenant is injected server-side; payload tenant is ignored.
    - Simple "q" search (icontains across `search_fields`) and "order" (comma-separated).
    - Exact filters from query params that match model fields.
    """
    pagination_class = DefaultPagination

    tenant_field = "tenant"

    search_fields: Iterable[str] = tuple()
    ordering_fields: Iterable[str] = tuple()
    default_ordering: Iterable[str] = ("-created_at",)

    # ---- Tenant helpers ----
    def get_tenant_id(self) -> Optional[str]:
        return get_request_tenant_id(self.request)

    def get_tenant(self) -> Tenant:
        tid = self.get_tenant_id()
        if not tid:
            raise PermissionDenied("Missing tenant context")
        tenant = Tenant.objects.filter(id=tid).first()
        if tenant is None:
            raise NotFound("Unknown tenant")
        return tenant

    # ---- Queryset plumbing ----
    def _model_class(self) -> type[Model]:
        if getattr(self, "queryset", None) is not None:
            return self.queryset.model
        return self.get_serializer_class().Meta.model  # type: ignore[attr-defined]

    def _has_field(self, field_name: str) -> bool:
        try:
            self._model_class()._meta.get_field(field_name)
            return True
        except FieldDoesNotExist:
            return False

    def _apply_search(self, qs):
        q = self.request.query_params.get("q")
        if not q:
            return qs
        fields = tuple(self.search_fields) or tuple(
            f for f in ("name", "title", "description") if self._has_field(f)
        )
        if not fields:
            return qs
        cond = Q()
        for f in fields:
            cond |= Q(**{f"{f}__icontains": q})
        return qs.filter(cond)

    def _apply_ordering(self, qs):
        order_param = self.request.query_params.get("order")
        fields_allowed = set(self.ordering_fields or ())
        if order_param:
            items = [s.strip() for s in order_param.split(",") if s.strip()]
            cleaned = []
            for it in items:
                base = it[1:] if it.startswith("-") else it
                if not fields_allowed or base in fields_allowed:
                    cleaned.append(it)
            if cleaned:
                return qs.order_by(*cleaned)
        return qs.order_by(*self.default_ordering) if self.default_ordering else qs

    def _apply_simple_filters(self, qs):
        """
        Query params matching a real model field become exact filters.
        CSV is accepted for `<field>__in=a,b,c`.
        """
        IGNORE = {"tenant", "q", "order", "page", "page_size"}
        filters: Dict[str, Any] = {}
        for key, value in self.request.query_params.items():
            if key in IGNORE:
                continue
            base = key.split("__", 1)[0]
            # JSON payloads are not filterable through the query string
            if not self._has_field(base) or base in ("context", "payload", "nodes", "edges"):
                continue
            if key.endswith("__in"):
                filters[key] = [v for v in value.split(",") if v != ""]
            else:
                filters[key] = value
        return qs.filter(**filters) if filters else qs

    def get_queryset(self):
        if getattr(self, "queryset", None) is not None:
            qs = self.queryset.all()
        else:
            qs = self._model_class().objects.all()

        tenant_id = self.get_tenant_id()
        if not tenant_id:
            if self.request.method in SAFE_METHODS:
                return qs.none()
            raise PermissionDenied("Missing tenant context")

        qs = qs.filter(**{f"{self.tenant_field}_id": tenant_id})
        qs = self._apply_simple_filters(qs)
        qs = self._apply_search(qs)
        qs = self._apply_ordering(qs)
        return qs

    def perform_create(self, serializer):
        serializer.save(**{self.tenant_field: self.get_tenant()})


class AuditedActionsMixin:
    """Attach to ViewSets you want to auto-audit."""
    def _audit(self, action: str, obj, meta=None):
        tenant = getattr(obj, "tenant", None) or self.get_tenant()
        user_id = getattr(self.request.user, "id", None)
        try:
            log_event(tenant=tenant, user_id=str(user_id) if user_id else None,
                      action=action, entity=obj.__class__.__name__,
                      entity_id=str(getattr(obj, "id", "") or ""), meta=meta or {})
        except Exception:
            # never break the request on audit failure
            logger.exception("audit log write failed for %s", action)

    def perform_create(self, serializer):
        super().perform_create(serializer)
        self._audit("create", serializer.instance, meta={"path": self.request.path})

    def perform_update(self, serializer):
        obj = serializer.save()
        self._audit("update", obj, meta={"path": self.request.path})
        return obj

    def perform_destroy(self, instance):
        self._audit("delete", instance, meta={"path": self.request.path})
        return super().perform_destroy(instance)
