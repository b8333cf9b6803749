from django.db import models
from common.models import BaseModel


NOTIFICATION_KIND = (
    ("automation", "Automation"),
    ("system", "System"),
    ("mention", "Mention"),
)


class Notification(BaseModel):
    """
    Internal team notification shown in the app inbox.
    Automations create these through the `notify_team` node.
    """
    tenant = models.ForeignKey("platformapp.Tenant", on_delete=models.CASCADE, related_name="notifications")
    user_id = models.CharField(max_length=64, blank=True, null=True)  # empty = whole team
    kind = models.CharField(max_length=16, choices=NOTIFICATION_KIND, default="system")
    title = models.CharField(max_length=200)
    message = models.TextField(blank=True, default="")
    meta_json = models.JSONField(default=dict, blank=True)  # {"automation_id": "...", "run_id": "..."}

    is_read = models.BooleanField(default=False)
    read_at = models.DateTimeField(blank=True, null=True)

    class Meta:
        indexes = [
            models.Index(fields=["tenant", "is_read", "-created_at"]),
            models.Index(fields=["tenant", "kind"]),
        ]

    def __str__(self):
        return self.title
