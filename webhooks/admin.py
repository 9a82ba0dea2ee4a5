import json

from django.contrib import admin

from .models import WebhookEvent
from .services import ReplayRefused, replay_event


@admin.register(WebhookEvent)
class WebhookEventAdmin(admin.ModelAdmin):
    list_display = [
        "event_name",
        "event_type",
        "gym_name",
        "status",
        "received_at",
        "issue_flag",
        "duplicate",
        "verified",
        "replay_count",
    ]
    list_filter = ["event_type", "issue_flag", "duplicate", "verified", "test_mode", "received_at"]
    search_fields = ["event_id", "event_name", "account_id", "gym_name", "error_reason"]
    exclude = ["payload", "headers", "raw_payload"]
    readonly_fields = [field.name for field in WebhookEvent._meta.fields if field.name not in ("payload", "headers", "raw_payload")]
    readonly_fields += ["payload_pretty", "headers_pretty", "raw_payload"]
    actions = ["replay_webhooks"]

    # The ledger is append-only.
    def has_add_permission(self, request):
        return False

    def has_delete_permission(self, request, obj=None):
        return False

    def payload_pretty(self, obj):
        return json.dumps(obj.payload, indent=2) if obj.payload is not None else "-"
    payload_pretty.short_description = "Payload"

    def headers_pretty(self, obj):
        return json.dumps(obj.headers, indent=2)
    headers_pretty.short_description = "Headers"

    @admin.action(description="Replay selected flagged webhooks")
    def replay_webhooks(self, request, queryset):
        count = 0
        for event in queryset:
            try:
                replay_event(event)
            except ReplayRefused:
                continue
            count += 1
        self.message_user(request, f"{count} webhooks replayed successfully.")
