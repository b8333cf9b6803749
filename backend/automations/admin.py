from django.contrib import admin

from .models import Automation, AutomationRun, Credential, EventLog


@admin.register(Automation)
class AutomationAdmin(admin.ModelAdmin):
    list_display = ("name", "tenant", "trigger_type", "status", "last_run_at")
    list_filter = ("status", "trigger_type")
    search_fields = ("name",)
    readonly_fields = ("webhook_token", "last_run_at")


@admin.register(AutomationRun)
class AutomationRunAdmin(admin.ModelAdmin):
    list_display = ("id", "automation", "status", "current_node_id", "waiting_until", "created_at")
    list_filter = ("status",)
    readonly_fields = ("context", "history", "last_error")


@admin.register(EventLog)
class EventLogAdmin(admin.ModelAdmin):
    list_display = ("event_type", "tenant", "source", "processed", "runs_created", "created_at")
    list_filter = ("processed", "event_type", "source")


@admin.register(Credential)
class CredentialAdmin(admin.ModelAdmin):
    list_display = ("name", "tenant", "provider", "is_active")
    # the Fernet token is never shown
    exclude = ("encrypted_data",)

    def has_add_permission(self, request):
        # secrets are written through the API, which encrypts them
        return False
