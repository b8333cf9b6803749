import logging

from django_filters.rest_framework import DjangoFilterBackend
from rest_framework import filters, status
from rest_framework.decorators import action
from rest_framework.exceptions import ValidationError
from rest_framework.permissions import AllowAny
from rest_framework.response import Response
from rest_framework.views import APIView

from common.mixins import AuditedActionsMixin, TenantScopedModelViewSet
from platformapp.permissions import HasCronSecret, HasTenantContext

from .bus import get_bus
from .engine import get_engine
from .exceptions import AutomationError, GraphValidationError, InvalidSignature, UnsupportedMessage
from .graph import validate_graph
from .models import Automation, AutomationRun, Credential, EventLog
from .processor import run_sweeps
from .scheduler import SIGNATURE_HEADER, handle_delivery
from .serializers import (
    AutomationRunSerializer, AutomationSerializer, CredentialSerializer, EmitEventSerializer, EventLogSerializer,
)

logger = logging.getLogger(__name__)


class AutomationViewSet(AuditedActionsMixin, TenantScopedModelViewSet):
    permission_classes = [HasTenantContext]
    filter_backends = [DjangoFilterBackend, filters.SearchFilter, filters.OrderingFilter]
    filterset_fields = {"status": ["exact"], "trigger_type": ["exact"]}
    search_fields = ["name", "description"]
    ordering_fields = ["created_at", "updated_at", "name", "last_run_at"]

    queryset = Automation.objects.all()
    serializer_class = AutomationSerializer

    def _set_status(self, automation, new_status):
        automation.status = new_status
        automation.save(update_fields=["status", "updated_at"])
        self._audit(f"automation.{new_status}", automation)
        return Response(self.get_serializer(automation).data)

    @action(detail=True, methods=["post"])
    def activate(self, request, pk=None):
        automation = self.get_object()
        try:
            validate_graph(automation.nodes, automation.edges, strict=True)
        except GraphValidationError as e:
            return Response({"detail": "Automation graph is invalid", "errors": e.errors},
                            status=status.HTTP_400_BAD_REQUEST)
        return self._set_status(automation, "active")

    @action(detail=True, methods=["post"])
    def pause(self, request, pk=None):
        return self._set_status(self.get_object(), "paused")

    @action(detail=True, methods=["post"])
    def validate(self, request, pk=None):
        automation = self.get_object()
        try:
            validate_graph(automation.nodes, automation.edges, strict=True)
        except GraphValidationError as e:
            return Response({"valid": False, "errors": e.errors})
        return Response({"valid": True, "errors": []})

    @action(detail=True, methods=["post"])
    def trigger(self, request, pk=None):
        """Manual run; body is merged into the payload (`contact_id`, `data`, ...)."""
        automation = self.get_object()
        if not automation.is_active:
            return Response({"detail": "Automation is not active"}, status=status.HTTP_409_CONFLICT)
        payload = request.data if isinstance(request.data, dict) else {}
        try:
            run = get_bus().trigger_automation(automation, dict(payload), event_type="manual")
        except AutomationError as e:
            return Response({"detail": str(e)}, status=status.HTTP_400_BAD_REQUEST)
        self._audit("automation.trigger", automation, meta={"run_id": str(run.id)})
        return Response(AutomationRunSerializer(run).data, status=status.HTTP_201_CREATED)


class AutomationRunViewSet(TenantScopedModelViewSet):
    """Runs are created by the engine; the API reads and cancels them."""
    http_method_names = ["get", "post", "head", "options"]
    permission_classes = [HasTenantContext]
    filter_backends = [DjangoFilterBackend, filters.OrderingFilter]
    filterset_fields = {"status": ["exact"], "automation": ["exact"], "contact_id": ["exact"]}
    ordering_fields = ["created_at", "updated_at", "completed_at"]

    queryset = AutomationRun.objects.select_related("automation")
    serializer_class = AutomationRunSerializer

    def create(self, request, *args, **kwargs):
        return Response({"detail": "Runs are started by events or the automation trigger action."},
                        status=status.HTTP_405_METHOD_NOT_ALLOWED)

    @action(detail=True, methods=["post"])
    def cancel(self, request, pk=None):
        run = self.get_object()
        reason = (request.data or {}).get("reason") or "Cancelled by user"
        if not get_engine().cancel_run(run.id, reason=reason):
            return Response({"detail": f"Run is already {run.status}"}, status=status.HTTP_409_CONFLICT)
        run.refresh_from_db()
        return Response(self.get_serializer(run).data)


class EventLogViewSet(TenantScopedModelViewSet):
    http_method_names = ["get", "post", "head", "options"]
    permission_classes = [HasTenantContext]
    filter_backends = [DjangoFilterBackend, filters.OrderingFilter]
    filterset_fields = {"event_type": ["exact"], "processed": ["exact"], "source": ["exact"]}
    ordering_fields = ["created_at"]

    queryset = EventLog.objects.all()
    serializer_class = EventLogSerializer

    def create(self, request, *args, **kwargs):
        return Response({"detail": "Use the emit action."}, status=status.HTTP_405_METHOD_NOT_ALLOWED)

    @action(detail=False, methods=["post"])
    def emit(self, request):
        ser = EmitEventSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        data = dict(ser.validated_data)
        tenant = self.get_tenant()
        payload = {
            "organization_id": str(tenant.id),
            "contact_id": str(data["contact_id"]) if data.get("contact_id") else None,
            "deal_id": str(data["deal_id"]) if data.get("deal_id") else None,
            "email": data.get("email") or None,
            "phone": data.get("phone") or None,
            "data": data.get("data") or {},
            "source": "api",
        }
        result = get_bus().emit(data["event_type"], payload, source="api",
                                business_key=data.get("business_key") or None)
        return Response(result.as_dict(), status=status.HTTP_202_ACCEPTED)


class CredentialViewSet(AuditedActionsMixin, TenantScopedModelViewSet):
    permission_classes = [HasTenantContext]
    filter_backends = [DjangoFilterBackend, filters.SearchFilter]
    filterset_fields = {"provider": ["exact"], "is_active": ["exact"]}
    search_fields = ["name", "provider"]

    queryset = Credential.objects.all()
    serializer_class = CredentialSerializer


# --- Machine endpoints ----------------------------------------------------------

class StepDeliveryView(APIView):
    """
    Callback target for the delay queue. The signature (a QStash JWT with the
    http backend) is checked over the raw body before anything in it is used.
    Workflow failures still answer 200 so the queue does not redeliver them;
    only transport problems should retry.
    """
    authentication_classes = []
    permission_classes = [AllowAny]
    throttle_classes = []

    def post(self, request):
        raw = request.body
        try:
            result = handle_delivery(raw, request.headers.get(SIGNATURE_HEADER))
        except InvalidSignature as e:
            return Response({"success": False, "error": str(e)}, status=status.HTTP_401_UNAUTHORIZED)
        except UnsupportedMessage as e:
            return Response({"success": False, "error": str(e)}, status=status.HTTP_400_BAD_REQUEST)
        except AutomationError as e:
            logger.warning("queue delivery could not be executed: %s", e)
            return Response({"success": False, "error": str(e)})
        body = {"success": result.success, "status": result.status, "skipped": result.skipped}
        if result.error:
            body["error"] = result.error
        return Response(body)


class SweepView(APIView):
    """Cron entry point for the reconciliation sweeps."""
    authentication_classes = []
    permission_classes = [HasCronSecret]

    def post(self, request):
        scope = request.query_params.get("only")
        flags = {"events": True, "runs": True, "delayed": True, "stale": True}
        if scope:
            if scope not in flags:
                raise ValidationError({"only": f"must be one of {', '.join(flags)}"})
            flags = {k: k == scope for k in flags}
        return Response({"success": True, **run_sweeps(**flags)})


class WebhookTriggerView(APIView):
    """
    Inbound webhook trigger. The token in the URL identifies the automation;
    the JSON body becomes the event's `data`.
    """
    authentication_classes = []
    permission_classes = [AllowAny]

    def post(self, request, token):
        automation = Automation.objects.filter(webhook_token=token).first()
        if automation is None:
            return Response({"detail": "Not found."}, status=status.HTTP_404_NOT_FOUND)
        if not automation.is_active:
            return Response({"success": False, "error": "Automation is not active"}, status=status.HTTP_409_CONFLICT)
        body = request.data if isinstance(request.data, dict) else {"body": request.data}
        payload = {
            "contact_id": body.get("contact_id"),
            "email": body.get("email"),
            "phone": body.get("phone"),
            "data": {**body, "webhook_id": str(automation.id)},
            "source": "webhook",
        }
        try:
            run = get_bus().trigger_automation(automation, payload, event_type="webhook_received", source="webhook")
        except AutomationError as e:
            logger.warning("webhook %s could not start automation %s: %s", token[:6], automation.id, e)
            return Response({"success": False, "error": str(e)}, status=status.HTTP_400_BAD_REQUEST)
        return Response({"success": True, "run_id": str(run.id)}, status=status.HTTP_202_ACCEPTED)
