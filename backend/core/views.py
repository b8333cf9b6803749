from django.conf import settings
from django.db import connection
from django.http import JsonResponse
from django.utils import timezone

from rest_framework.views import APIView
from rest_framework.response import Response
from rest_framework.permissions import AllowAny

from automations import conf as automation_conf
from automations.exceptions import QueueNotConfigured
from automations.scheduler import get_backend

# --- Tiny public endpoints ----------------------------------------------------

def healthz(_request):
    return JsonResponse({"ok": True})


class VersionView(APIView):
    permission_classes = [AllowAny]

    def get(self, _):
        version = getattr(settings, "VERSION", None) or "dev"
        return Response({
            "ok": True,
            "version": str(version),
            "debug": bool(settings.DEBUG),
            "time": timezone.now().isoformat(),
        })


# --- Deeper diagnostics -------------------------------------------------------

class DeepHealthView(APIView):
    """
    GET /api/v1/core/deep-health/?db=1&queue=1
    Return component statuses. All checks optional.
    """
    permission_classes = [AllowAny]

    def get(self, request):
        check_db = request.query_params.get("db") == "1"
        check_queue = request.query_params.get("queue") == "1"

        out = {"ok": True, "time": timezone.now().isoformat()}

        if check_db:
            try:
                with connection.cursor() as cur:
                    cur.execute("SELECT 1;")
                    cur.fetchone()
                out["db"] = {"ok": True}
            except Exception as e:
                out["ok"] = False
                out["db"] = {"ok": False, "error": str(e)}

        if check_queue:
            # configuration only; nothing is published
            try:
                backend = get_backend()
                signing = bool(automation_conf.get("AUTOMATION_QUEUE_CURRENT_SIGNING_KEY"))
                out["queue"] = {"ok": signing, "backend": backend.name, "signing_key": signing}
                if not signing:
                    out["ok"] = False
            except QueueNotConfigured as e:
                out["ok"] = False
                out["queue"] = {"ok": False, "error": str(e)}

        return Response(out)
