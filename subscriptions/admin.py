from django.contrib import admin

from .lifecycle import read_account
from .models import DeveloperConfig, PaymentRecord, SubscriptionAccount


class PaymentRecordInline(admin.TabularInline):
    model = PaymentRecord
    extra = 0
    can_delete = False
    readonly_fields = ("payment_id", "event_id", "amount_cents", "status", "period_start", "period_end", "created_at")
    fields = readonly_fields


@admin.register(SubscriptionAccount)
class SubscriptionAccountAdmin(admin.ModelAdmin):
    list_display = ("gym_name", "email", "status", "trial_end_date", "subscription_end_date", "pending_cancellation")
    list_filter = ("status", "pending_cancellation")
    search_fields = ("gym_name", "email", "id", "razorpay_subscription_id")
    # Status only moves through the state machine.
    readonly_fields = (
        "id",
        "status",
        "trial_end_date",
        "grace_end_date",
        "subscription_start_date",
        "subscription_end_date",
        "pending_cancellation",
        "last_applied_event_id",
        "created_at",
        "updated_at",
    )
    inlines = [PaymentRecordInline]
    actions = ["reconcile_accounts"]

    def has_delete_permission(self, request, obj=None):
        return False

    @admin.action(description="Reconcile selected accounts against the clock")
    def reconcile_accounts(self, request, queryset):
        for account in queryset:
            read_account(account.pk)
        self.message_user(request, f"{queryset.count()} accounts reconciled.")


@admin.register(PaymentRecord)
class PaymentRecordAdmin(admin.ModelAdmin):
    list_display = ("account", "payment_id", "status", "amount_cents", "created_at")
    list_filter = ("status",)
    search_fields = ("payment_id", "event_id", "account__gym_name")


@admin.register(DeveloperConfig)
class DeveloperConfigAdmin(admin.ModelAdmin):
    list_display = ("razorpay_key_id", "razorpay_plan_id", "updated_at")
