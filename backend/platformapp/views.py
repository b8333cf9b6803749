from django_filters.rest_framework import DjangoFilterBackend
from rest_framework import viewsets
from rest_framework.permissions import AllowAny, IsAdminUser
from rest_framework.views import APIView
from rest_framework.response import Response

from common.mixins import TenantScopedModelViewSet
from .models import Tenant, AuditLog
from .permissions import HasTenantContext
from .serializers import TenantSerializer, AuditLogSerializer


# Public utility: resolve tenant id by slug (useful for UI bootstrapping by domain/slug)
class TenantResolveView(APIView):
    permission_classes = [AllowAny]
    authentication_classes = []

    def get(self, request):
        slug = (request.query_params.get("slug") or "").strip()
        if not slug:
            return Response({"detail": "slug required"}, status=400)
        t = Tenant.objects.filter(slug=slug, status="active").first()
        if t is None:
            return Response({"detail": "not found"}, status=404)
        return Response({"id": str(t.id), "slug": t.slug, "name": t.name, "plan": t.plan, "timezone": t.timezone})


class TenantViewSet(viewsets.ModelViewSet):
    queryset = Tenant.objects.all().order_by("name")
    serializer_class = TenantSerializer
    permission_classes = [IsAdminUser]  # tenants are provisioned by staff
    filter_backends = [DjangoFilterBackend]
    filterset_fields = ["slug", "status", "plan"]


class AuditLogViewSet(TenantScopedModelViewSet):
    http_method_names = ["get", "head", "options"]
    queryset = AuditLog.objects.all()
    serializer_class = AuditLogSerializer
    permission_classes = [HasTenantContext]
    filter_backends = [DjangoFilterBackend]
    filterset_fields = ["action", "entity", "entity_id", "user_id"]
