from rest_framework import serializers

from .credentials import EncryptionError
from .exceptions import GraphValidationError
from .graph import validate_graph
from .models import Automation, AutomationRun, Credential, EventLog


class AutomationSerializer(serializers.ModelSerializer):
    class Meta:
        model = Automation
        fields = "__all__"
        read_only_fields = ("tenant", "webhook_token", "last_run_at", "created_at", "updated_at")

    def validate_trigger_config(self, value):
        if value in (None, ""):
            return {}
        if not isinstance(value, dict):
            raise serializers.ValidationError("trigger_config must be an object")
        return value

    def validate(self, attrs):
        instance = self.instance
        nodes = attrs.get("nodes", instance.nodes if instance else [])
        edges = attrs.get("edges", instance.edges if instance else [])
        status = attrs.get("status", instance.status if instance else "draft")
        if not isinstance(nodes, list) or not isinstance(edges, list):
            raise serializers.ValidationError({"nodes": "nodes and edges must be lists"})
        # drafts may be incomplete; an active automation must be runnable
        try:
            validate_graph(nodes, edges, strict=(status == "active"))
        except GraphValidationError as e:
            raise serializers.ValidationError({"nodes": e.errors})
        return attrs


class AutomationRunSerializer(serializers.ModelSerializer):
    automation_name = serializers.CharField(source="automation.name", read_only=True)

    class Meta:
        model = AutomationRun
        fields = "__all__"
        read_only_fields = [f.name for f in AutomationRun._meta.fields] + ["automation_name"]


class EventLogSerializer(serializers.ModelSerializer):
    class Meta:
        model = EventLog
        fields = "__all__"
        read_only_fields = ("tenant", "processed", "processed_at", "error_message", "runs_created",
                            "created_at", "updated_at")


class EmitEventSerializer(serializers.Serializer):
    event_type = serializers.CharField(max_length=60)
    contact_id = serializers.UUIDField(required=False, allow_null=True)
    deal_id = serializers.UUIDField(required=False, allow_null=True)
    email = serializers.EmailField(required=False, allow_blank=True)
    phone = serializers.CharField(required=False, allow_blank=True, max_length=32)
    data = serializers.DictField(required=False, default=dict)
    business_key = serializers.CharField(required=False, allow_blank=True, max_length=200)


class CredentialSerializer(serializers.ModelSerializer):
    """Secrets are write-only; reads only ever show a masked preview."""
    secret = serializers.DictField(write_only=True, required=False)
    preview = serializers.SerializerMethodField()

    class Meta:
        model = Credential
        fields = ("id", "name", "provider", "is_active", "secret", "preview", "created_at", "updated_at")
        read_only_fields = ("id", "preview", "created_at", "updated_at")

    def get_preview(self, obj):
        try:
            return obj.masked()
        except EncryptionError:
            return {}

    def validate(self, attrs):
        if self.instance is None and not attrs.get("secret"):
            raise serializers.ValidationError({"secret": "This field is required."})
        view = self.context.get("view")
        tenant_id = view.get_tenant_id() if view is not None else None
        name = attrs.get("name")
        if tenant_id and name:
            clash = Credential.objects.filter(tenant_id=tenant_id, name=name)
            if self.instance is not None:
                clash = clash.exclude(pk=self.instance.pk)
            if clash.exists():
                raise serializers.ValidationError({"name": "A credential with this name already exists."})
        return attrs

    def _apply_secret(self, instance, secret):
        try:
            instance.set_secret(secret)
        except EncryptionError as e:
            raise serializers.ValidationError({"secret": str(e)})

    def create(self, validated_data):
        secret = validated_data.pop("secret")
        instance = Credential(**validated_data)
        self._apply_secret(instance, secret)
        instance.save()
        return instance

    def update(self, instance, validated_data):
        secret = validated_data.pop("secret", None)
        for key, value in validated_data.items():
            setattr(instance, key, value)
        if secret:
            self._apply_secret(instance, secret)
        instance.save()
        return instance
