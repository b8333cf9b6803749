from django.db import models
from common.models import BaseModel


DEAL_STATUS = (
    ("open", "Open"),
    ("won", "Won"),
    ("lost", "Lost"),
)


class Contact(BaseModel):
    """
    Individual contact. Automations read and tag contacts through `contact_id`.
    """
    tenant = models.ForeignKey("platformapp.Tenant", on_delete=models.CASCADE, related_name="contacts")

    first_name = models.CharField(max_length=100, blank=True, null=True)
    last_name  = models.CharField(max_length=100, blank=True, null=True)
    email      = models.EmailField(blank=True, null=True)
    phone      = models.CharField(max_length=32, blank=True, null=True)

    status = models.CharField(max_length=24, default="active")  # active|inactive|blocked
    source = models.CharField(max_length=50, blank=True, null=True)  # webform, import, api, automation
    tags   = models.JSONField(default=list, blank=True)  # ["vip","newsletter"]
    custom_fields = models.JSONField(default=dict, blank=True)

    class Meta:
        indexes = [
            models.Index(fields=["tenant", "email"]),
            models.Index(fields=["tenant", "phone"]),
            models.Index(fields=["tenant", "-created_at"]),
        ]

    def __str__(self):
        return self.full_name or self.email or str(self.id)

    @property
    def full_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p)

    def as_context(self) -> dict:
        """Snapshot used to seed automation run contexts."""
        return {
            "id": str(self.id),
            "first_name": self.first_name or "",
            "last_name": self.last_name or "",
            "name": self.full_name,
            "email": self.email or "",
            "phone": self.phone or "",
            "status": self.status,
            "source": self.source or "",
            "tags": list(self.tags or []),
            "custom_fields": dict(self.custom_fields or {}),
        }


class Pipeline(BaseModel):
    tenant = models.ForeignKey("platformapp.Tenant", on_delete=models.CASCADE, related_name="pipelines")
    name = models.CharField(max_length=120)
    is_default = models.BooleanField(default=False)
    stages = models.JSONField(default=list, blank=True)  # ["new","qualified","proposal","won","lost"]

    class Meta:
        indexes = [
            models.Index(fields=["tenant", "is_default"]),
        ]

    def __str__(self):
        return self.name

    @property
    def first_stage(self) -> str:
        return (self.stages or ["new"])[0]


class Deal(BaseModel):
    tenant = models.ForeignKey("platformapp.Tenant", on_delete=models.CASCADE, related_name="deals")
    pipeline = models.ForeignKey("crm.Pipeline", on_delete=models.SET_NULL, null=True, blank=True, related_name="deals")
    contact = models.ForeignKey("crm.Contact", on_delete=models.SET_NULL, null=True, blank=True, related_name="deals")

    title  = models.CharField(max_length=200)
    value  = models.DecimalField(max_digits=18, decimal_places=2, default=0)
    currency = models.CharField(max_length=3, default="BRL")
    stage  = models.CharField(max_length=32, default="new")
    status = models.CharField(max_length=8, choices=DEAL_STATUS, default="open")

    source = models.CharField(max_length=50, blank=True, null=True)
    meta_json = models.JSONField(default=dict, blank=True)

    class Meta:
        indexes = [
            models.Index(fields=["tenant", "stage"]),
            models.Index(fields=["tenant", "-created_at"]),
        ]

    def __str__(self):
        return self.title
