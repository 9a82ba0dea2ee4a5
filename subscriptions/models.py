import uuid

from django.conf import settings
from django.db import models


class TimeStampedModel(models.Model):
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        abstract = True


class SubscriptionAccount(TimeStampedModel):
    """Billing state of one gym/admin. Only ``subscriptions.lifecycle`` writes ``status``."""

    STATUS_FREE = "free"
    STATUS_TRIAL = "trial"
    STATUS_ACTIVE = "active"
    STATUS_GRACE = "grace"
    STATUS_EXPIRED = "expired"
    STATUS_CANCELLED = "cancelled"
    STATUS_CHOICES = [
        (STATUS_FREE, "Free"),
        (STATUS_TRIAL, "Trial"),
        (STATUS_ACTIVE, "Active"),
        (STATUS_GRACE, "Grace"),
        (STATUS_EXPIRED, "Expired"),
        (STATUS_CANCELLED, "Cancelled"),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    user = models.OneToOneField(
        settings.AUTH_USER_MODEL,
        related_name="subscription_account",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
    )
    gym_name = models.CharField(max_length=255, blank=True)
    email = models.EmailField(blank=True)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_TRIAL)
    trial_end_date = models.DateTimeField(null=True, blank=True)
    grace_end_date = models.DateTimeField(null=True, blank=True)
    subscription_start_date = models.DateTimeField(null=True, blank=True)
    subscription_end_date = models.DateTimeField(null=True, blank=True)
    pending_cancellation = models.BooleanField(default=False)
    last_applied_event_id = models.CharField(max_length=191, blank=True)
    razorpay_subscription_id = models.CharField(max_length=191, blank=True, db_index=True)

    class Meta:
        ordering = ["gym_name"]

    def __str__(self):
        return f"{self.gym_name or self.email or self.pk} ({self.status})"

    @property
    def account_id(self) -> str:
        return str(self.pk)

    @property
    def has_scheduled_period(self) -> bool:
        return self.subscription_start_date is not None and self.subscription_end_date is not None


class PaymentRecord(TimeStampedModel):
    STATUS_SUCCESS = "success"
    STATUS_FAILED = "failed"
    STATUS_CHOICES = [
        (STATUS_SUCCESS, "Success"),
        (STATUS_FAILED, "Failed"),
    ]

    account = models.ForeignKey(SubscriptionAccount, related_name="payments", on_delete=models.PROTECT)
    event_id = models.CharField(max_length=191, blank=True)
    payment_id = models.CharField(max_length=191, blank=True)
    amount_cents = models.PositiveIntegerField(default=0)
    plan = models.CharField(max_length=100, blank=True)
    period_start = models.DateTimeField(null=True, blank=True)
    period_end = models.DateTimeField(null=True, blank=True)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_SUCCESS)
    payload = models.JSONField(default=dict, blank=True)

    class Meta:
        ordering = ["-created_at"]

    def __str__(self):
        return f"{self.payment_id or self.event_id} for {self.account_id}"

    @property
    def amount_display(self):
        return self.amount_cents / 100


class DeveloperConfig(TimeStampedModel):
    webhook_secret = models.CharField(max_length=255, blank=True)
    razorpay_key_id = models.CharField(max_length=255, blank=True)
    razorpay_key_secret = models.CharField(max_length=255, blank=True)
    razorpay_plan_id = models.CharField(max_length=255, blank=True)

    class Meta:
        verbose_name = "Developer Configuration"
        verbose_name_plural = "Developer Configuration"

    def __str__(self):
        return "Developer Config"

    @classmethod
    def get_solo(cls):
        return cls.objects.first() or cls.objects.create()
