from django.db import models
from django.utils import timezone


class WebhookEvent(models.Model):
    """
    One row of the append-only webhook ledger.

    ``raw_payload``, ``received_at`` and ``event_id`` never change after the row is
    created. ``dedupe_key`` is claimed by the first non-duplicate row for an event id;
    its unique constraint is what keeps concurrent redeliveries from both applying.
    """

    PROVIDER_CHOICES = [
        ("razorpay", "Razorpay"),
    ]

    TYPE_PAYMENT = "payment"
    TYPE_SUBSCRIPTION = "subscription"
    TYPE_ORDER = "order"
    TYPE_REFUND = "refund"
    TYPE_OTHER = "other"
    TYPE_CHOICES = [
        (TYPE_PAYMENT, "Payment"),
        (TYPE_SUBSCRIPTION, "Subscription"),
        (TYPE_ORDER, "Order"),
        (TYPE_REFUND, "Refund"),
        (TYPE_OTHER, "Other"),
    ]

    provider = models.CharField(max_length=50, choices=PROVIDER_CHOICES, default="razorpay")
    event_id = models.CharField(max_length=191, blank=True, db_index=True)
    dedupe_key = models.CharField(max_length=191, null=True, blank=True, unique=True, editable=False)
    event_type = models.CharField(max_length=20, choices=TYPE_CHOICES, default=TYPE_OTHER, db_index=True)
    event_name = models.CharField(max_length=100, blank=True, db_index=True)
    account_id = models.CharField(max_length=64, blank=True, db_index=True)
    gym_name = models.CharField(max_length=255, blank=True)
    email = models.EmailField(blank=True)
    status = models.CharField(max_length=50, blank=True)
    amount = models.BigIntegerField(null=True, blank=True)
    raw_payload = models.TextField(blank=True)
    payload = models.JSONField(null=True, blank=True)
    headers = models.JSONField(default=dict, blank=True)
    signature_header = models.CharField(max_length=255, blank=True)
    verified = models.BooleanField(default=False)
    test_mode = models.BooleanField(default=False)
    received_at = models.DateTimeField(default=timezone.now, db_index=True)
    processed_at = models.DateTimeField(null=True, blank=True)
    processing_time_ms = models.FloatField(null=True, blank=True)
    issue_flag = models.BooleanField(default=False, db_index=True)
    error_reason = models.CharField(max_length=255, blank=True)
    duplicate = models.BooleanField(default=False)
    replay_count = models.PositiveIntegerField(default=0)

    class Meta:
        ordering = ("-received_at", "-id")

    def __str__(self):
        return f"{self.event_name or 'unknown'} {self.event_id} @ {self.received_at:%Y-%m-%d %H:%M:%S}"

    def _entity(self, name: str) -> dict:
        section = self.payload.get("payload") if isinstance(self.payload, dict) else None
        node = section.get(name) if isinstance(section, dict) else None
        entity = node.get("entity") if isinstance(node, dict) else None
        return entity if isinstance(entity, dict) else {}

    @property
    def gateway_payment_id(self) -> str:
        return self._entity("payment").get("id") or ""

    @property
    def gateway_subscription_id(self) -> str:
        return self._entity("subscription").get("id") or self._entity("payment").get("subscription_id") or ""

    @property
    def is_processed(self) -> bool:
        return self.processed_at is not None

    def as_dashboard_dict(self) -> dict:
        return {
            "_id": str(self.pk),
            "eventId": self.event_id,
            "event": self.event_name,
            "eventType": self.event_type,
            "status": self.status,
            "adminId": self.account_id,
            "gymName": self.gym_name,
            "email": self.email,
            "amount": self.amount,
            "receivedAt": self.received_at.isoformat() if self.received_at else None,
            "processedAt": self.processed_at.isoformat() if self.processed_at else None,
            "issueFlag": self.issue_flag,
            "errorReason": self.error_reason,
            "rawPayload": self.raw_payload,
            "processingTimeMs": self.processing_time_ms,
            "duplicate": self.duplicate,
            "testMode": self.test_mode,
            "verified": self.verified,
            "replayCount": self.replay_count,
        }
