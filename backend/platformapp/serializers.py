from rest_framework import serializers
from .models import Tenant, AuditLog


class TenantSerializer(serializers.ModelSerializer):
    class Meta:
        model = Tenant
        fields = ("id", "slug", "name", "status", "plan", "timezone", "created_at", "updated_at")
        read_only_fields = ("id", "created_at", "updated_at")


class AuditLogSerializer(serializers.ModelSerializer):
    """Audit trail is append-only; every field is read-only."""
    class Meta:
        model = AuditLog
        fields = ("id", "tenant", "user_id", "action", "entity", "entity_id", "meta_json", "created_at")
        read_only_fields = fields
