from rest_framework.routers import DefaultRouter
from django.urls import path, include
from .views import (
    AutomationViewSet, AutomationRunViewSet, EventLogViewSet, CredentialViewSet,
    StepDeliveryView, SweepView, WebhookTriggerView,
)

router = DefaultRouter()
router.register(r'automation', AutomationViewSet, basename="automation")
router.register(r'run', AutomationRunViewSet, basename="automation-run")
router.register(r'event', EventLogViewSet, basename="automation-event")
router.register(r'credential', CredentialViewSet, basename="automation-credential")

urlpatterns = [
    path('workers/step/', StepDeliveryView.as_view(), name="automation-worker-step"),
    path('workers/sweep/', SweepView.as_view(), name="automation-worker-sweep"),
    path('hooks/<str:token>/', WebhookTriggerView.as_view(), name="automation-webhook"),
    path('', include(router.urls)),
]
