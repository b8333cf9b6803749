from django.urls import path, include
from rest_framework.routers import DefaultRouter
from .views import TenantViewSet, AuditLogViewSet, TenantResolveView

router = DefaultRouter()
router.register(r'tenant', TenantViewSet)
router.register(r'auditlog', AuditLogViewSet)

urlpatterns = [
    path('tenant/resolve/', TenantResolveView.as_view(), name='tenant-resolve'),  # public GET ?slug=
    path('', include(router.urls)),
]
