from django.db import models
from common.models import BaseModel


class Tenant(BaseModel):
    """
    Organization that owns contacts, automations and runs.
    Every engine query is scoped by tenant id.
    """
    slug = models.SlugField(max_length=100, unique=True)
    name = models.CharField(max_length=200)
    status = models.CharField(max_length=20, default="active")
    plan = models.CharField(max_length=20, default="free")
    timezone = models.CharField(max_length=64, default="UTC")

    def __str__(self):
        return self.name


class AuditLog(models.Model):
    id = models.BigAutoField(primary_key=True)
    tenant = models.ForeignKey("platformapp.Tenant", on_delete=models.CASCADE, related_name="audit_logs")
    user_id = models.CharField(max_length=64, blank=True, null=True)
    action = models.CharField(max_length=80)          # e.g. "automation.activate"
    entity = models.CharField(max_length=120)         # e.g. "Automation"
    entity_id = models.CharField(max_length=120)
    meta_json = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        indexes = [models.Index(fields=["tenant", "-created_at"])]
