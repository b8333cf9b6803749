from rest_framework.routers import DefaultRouter
from django.urls import path, include
from .views import ContactViewSet, PipelineViewSet, DealViewSet

router = DefaultRouter()  # default trailing slash = True
router.register(r'contact', ContactViewSet, basename="contact")
router.register(r'pipeline', PipelineViewSet, basename="pipeline")
router.register(r'deal', DealViewSet, basename="deal")

urlpatterns = [
    path('', include(router.urls)),
]
