import secrets

from django.core.serializers.json import DjangoJSONEncoder
from django.db import models
from common.models import BaseModel

from .credentials import decrypt_dict, encrypt_dict, mask


AUTOMATION_STATUS = (
    ("draft", "Draft"),
    ("active", "Active"),
    ("paused", "Paused"),
)

TRIGGER_TYPES = (
    ("contact_created", "Contact created"),
    ("contact_updated", "Contact updated"),
    ("tag_added", "Tag added"),
    ("tag_removed", "Tag removed"),
    ("deal_created", "Deal created"),
    ("deal_stage_changed", "Deal stage changed"),
    ("deal_won", "Deal won"),
    ("deal_lost", "Deal lost"),
    ("order_created", "Order created"),
    ("order_paid", "Order paid"),
    ("cart_abandoned", "Cart abandoned"),
    ("form_submitted", "Form submitted"),
    ("message_received", "Message received"),
    ("webhook_received", "Webhook received"),
    ("date_event", "Date event"),
    ("manual", "Manual"),
)

RUN_STATUS = (
    ("pending", "Pending"),
    ("running", "Running"),
    ("waiting", "Waiting"),
    ("completed", "Completed"),
    ("failed", "Failed"),
    ("cancelled", "Cancelled"),
)

TERMINAL_RUN_STATUSES = ("completed", "failed", "cancelled")


def _webhook_token():
    return secrets.token_urlsafe(24)


class Automation(BaseModel):
    tenant = models.ForeignKey(
        "platformapp.Tenant",
        on_delete=models.CASCADE,
        related_name="automations",
    )
    name = models.CharField(max_length=160)
    description = models.TextField(blank=True, default="")
    status = models.CharField(max_length=16, choices=AUTOMATION_STATUS, default="draft")

    trigger_type = models.CharField(max_length=40, choices=TRIGGER_TYPES)
    trigger_config = models.JSONField(default=dict, blank=True)  # {"tag_name": "vip"} / {"min_value": 100}

    # graph is embedded: [{"id","type","data":{"config":{...}},"position":{...}}]
    nodes = models.JSONField(default=list, blank=True)
    edges = models.JSONField(default=list, blank=True)  # [{"source","target","sourceHandle"?}]

    webhook_token = models.CharField(max_length=64, unique=True, default=_webhook_token)
    last_run_at = models.DateTimeField(blank=True, null=True)

    class Meta:
        indexes = [
            models.Index(fields=["tenant", "status", "trigger_type"]),
        ]

    def __str__(self):
        return self.name

    @property
    def is_active(self) -> bool:
        return self.status == "active"


class AutomationRun(BaseModel):
    tenant = models.ForeignKey("platformapp.Tenant", on_delete=models.CASCADE, related_name="automation_runs")
    automation = models.ForeignKey("automations.Automation", on_delete=models.CASCADE, related_name="runs")
    trigger_event = models.ForeignKey(
        "automations.EventLog", on_delete=models.SET_NULL, null=True, blank=True, related_name="runs",
    )
    contact_id = models.UUIDField(blank=True, null=True)

    status = models.CharField(max_length=16, choices=RUN_STATUS, default="pending")
    current_node_id = models.CharField(max_length=120, blank=True, null=True)
    context = models.JSONField(default=dict, blank=True, encoder=DjangoJSONEncoder)
    history = models.JSONField(default=list, blank=True, encoder=DjangoJSONEncoder)  # [{"node_id","type","output","at"}]

    waiting_until = models.DateTimeField(blank=True, null=True)
    started_at = models.DateTimeField(blank=True, null=True)
    completed_at = models.DateTimeField(blank=True, null=True)
    last_error = models.TextField(blank=True, null=True)

    class Meta:
        indexes = [
            models.Index(fields=["status", "created_at"]),
            models.Index(fields=["status", "waiting_until"]),
            models.Index(fields=["tenant", "automation", "-created_at"]),
        ]

    def __str__(self):
        return f"{self.automation_id}:{self.status}"

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES


class EventLog(BaseModel):
    """
    Every business event offered to the engine. Consumed once by the bus or
    the polling processor, which flips `processed`.
    """
    tenant = models.ForeignKey("platformapp.Tenant", on_delete=models.CASCADE, related_name="automation_events")
    event_type = models.CharField(max_length=60)
    contact_id = models.UUIDField(blank=True, null=True)
    payload = models.JSONField(default=dict, blank=True, encoder=DjangoJSONEncoder)
    source = models.CharField(max_length=40, default="api")  # crm | cron | webhook | api | manual
    business_key = models.CharField(max_length=200, blank=True, null=True)  # e.g. cart id

    processed = models.BooleanField(default=False)
    processed_at = models.DateTimeField(blank=True, null=True)
    error_message = models.TextField(blank=True, null=True)
    runs_created = models.PositiveIntegerField(default=0)

    class Meta:
        indexes = [
            models.Index(fields=["processed", "created_at"]),
            models.Index(fields=["tenant", "event_type", "business_key", "processed"]),
        ]

    def __str__(self):
        return f"{self.event_type} ({'processed' if self.processed else 'pending'})"


class Credential(BaseModel):
    """
    Third-party API credential. `encrypted_data` holds a Fernet token of a JSON
    object; see automations.credentials.
    """
    tenant = models.ForeignKey("platformapp.Tenant", on_delete=models.CASCADE, related_name="credentials")
    name = models.CharField(max_length=120)
    provider = models.CharField(max_length=40)  # whatsapp | sms | email | webhook | ...
    encrypted_data = models.TextField()
    is_active = models.BooleanField(default=True)

    class Meta:
        unique_together = (("tenant", "name"),)

    def __str__(self):
        return f"{self.name} ({self.provider})"

    def set_secret(self, data: dict):
        self.encrypted_data = encrypt_dict(data)

    def get_secret(self) -> dict:
        return decrypt_dict(self.encrypted_data)

    def masked(self) -> dict:
        return {k: mask(v) for k, v in self.get_secret().items()}
