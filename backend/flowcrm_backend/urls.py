# File: backend/flowcrm_backend/urls.py
from django.contrib import admin
from django.urls import path, include
from django.http import JsonResponse
from django.views.generic import RedirectView
from drf_spectacular.views import SpectacularAPIView, SpectacularSwaggerView
from rest_framework_simplejwt.views import TokenObtainPairView, TokenRefreshView, TokenVerifyView


def root(_r):
    return JsonResponse({
        "service": "flowcrm-backend",
        "docs": "/api/docs/",
        "health": "/api/v1/core/healthz/",
    })


urlpatterns = [
    path("admin", RedirectView.as_view(url="/admin/", permanent=False)),
    path("admin/", admin.site.urls),

    # API docs
    path("api/schema/", SpectacularAPIView.as_view(), name="schema"),
    path("api/docs/", SpectacularSwaggerView.as_view(url_name="schema"), name="swagger-ui"),

    # Feature routers
    path("api/v1/core/", include("core.urls")),
    path("api/v1/platform/", include("platformapp.urls")),
    path("api/v1/crm/", include("crm.urls")),
    path("api/v1/notifications/", include("notificationsapp.urls")),
    path("api/v1/automations/", include("automations.urls")),

    # SimpleJWT
    path("api/token/", TokenObtainPairView.as_view(), name="token_obtain_pair"),
    path("api/token/refresh/", TokenRefreshView.as_view(), name="token_refresh"),
    path("api/token/verify/", TokenVerifyView.as_view(), name="token_verify"),

    path("", root),
]
