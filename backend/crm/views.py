from rest_framework.filters import SearchFilter, OrderingFilter
from django_filters.rest_framework import DjangoFilterBackend

from common.mixins import TenantScopedModelViewSet
from platformapp.permissions import HasTenantContext

from .models import Contact, Pipeline, Deal
from .serializers import ContactSerializer, PipelineSerializer, DealSerializer


# Contact/deal writes go through crm.signals, which feed the automation event bus.
class ContactViewSet(TenantScopedModelViewSet):
    permission_classes = [HasTenantContext]
    filter_backends = [DjangoFilterBackend, SearchFilter, OrderingFilter]
    filterset_fields = {"status": ["exact"], "source": ["exact"]}
    search_fields = ["first_name","last_name","email","phone"]
    ordering_fields = ["created_at","updated_at","first_name","last_name"]
    ordering = ["-created_at"]

    queryset = Contact.objects.all()
    serializer_class = ContactSerializer


class PipelineViewSet(TenantScopedModelViewSet):
    permission_classes = [HasTenantContext]
    queryset = Pipeline.objects.all()
    serializer_class = PipelineSerializer


class DealViewSet(TenantScopedModelViewSet):
    permission_classes = [HasTenantContext]
    filter_backends = [DjangoFilterBackend, SearchFilter, OrderingFilter]
    filterset_fields = {"stage": ["exact"], "status": ["exact"], "pipeline": ["exact"], "contact": ["exact"]}
    search_fields = ["title","source"]
    ordering_fields = ["created_at","updated_at","value"]
    ordering = ["-created_at"]

    queryset = Deal.objects.select_related("pipeline","contact")
    serializer_class = DealSerializer
