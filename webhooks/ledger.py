"""
Event Ledger: append-only record of every webhook that reaches the system.

``append`` never rejects a delivery. Bodies that cannot be parsed are still stored,
flagged and typed ``other``, so nothing the gateway sends is silently lost.

Razorpay envelopes are treated as a tagged union keyed by the prefix of ``event``:
each known variant has its own extractor, and anything else falls through to the
``other`` variant, which carries no status or amount.
"""
import json
import logging
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Tuple

from django.core.exceptions import ValidationError
from django.utils import timezone

from subscriptions.models import SubscriptionAccount

from .models import WebhookEvent

logger = logging.getLogger(__name__)

EVENT_ID_HEADER = "x-razorpay-event-id"

UNPARSEABLE_PAYLOAD = "unparseable payload"
MISSING_EVENT_ID = "missing event id"
OVERSIZED_FIELD = "oversized field"
APPEND_FLAGS = (UNPARSEABLE_PAYLOAD, MISSING_EVENT_ID, OVERSIZED_FIELD)

TRUNCATED_FIELDS = ("event_id", "event_name", "account_id", "status")
MAX_AMOUNT = 2 ** 63 - 1


class EnvelopeError(ValueError):
    pass


class Envelope(NamedTuple):
    event_id: str
    event_type: str
    event_name: str
    account_id: str
    subscription_id: str
    status: str
    amount: Optional[int]
    test_mode: Optional[bool]
    data: Dict[str, Any]


class ProcessingOutcome(NamedTuple):
    issue_flag: bool = False
    error_reason: str = ""


OK = ProcessingOutcome()

Fields = Tuple[Any, Any, List[dict]]


def _entity(data: dict, name: str) -> dict:
    section = data.get("payload")
    node = section.get(name) if isinstance(section, dict) else None
    entity = node.get("entity") if isinstance(node, dict) else None
    return entity if isinstance(entity, dict) else {}


def _payment_fields(data: dict) -> Fields:
    payment = _entity(data, "payment")
    return payment.get("status"), payment.get("amount"), [payment]


def _subscription_fields(data: dict) -> Fields:
    subscription = _entity(data, "subscription")
    payment = _entity(data, "payment")
    return subscription.get("status"), payment.get("amount"), [subscription, payment]


def _order_fields(data: dict) -> Fields:
    order = _entity(data, "order")
    payment = _entity(data, "payment")
    amount = order.get("amount_paid") or order.get("amount") or payment.get("amount")
    return order.get("status"), amount, [order, payment]


def _refund_fields(data: dict) -> Fields:
    refund = _entity(data, "refund")
    payment = _entity(data, "payment")
    return refund.get("status"), refund.get("amount"), [refund, payment]


def _other_fields(data: dict) -> Fields:
    return None, None, []


VARIANTS: Dict[str, Callable[[dict], Fields]] = {
    WebhookEvent.TYPE_PAYMENT: _payment_fields,
    WebhookEvent.TYPE_SUBSCRIPTION: _subscription_fields,
    WebhookEvent.TYPE_ORDER: _order_fields,
    WebhookEvent.TYPE_REFUND: _refund_fields,
}


def _as_amount(value) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value)
    if isinstance(value, int) and abs(value) <= MAX_AMOUNT:
        return value
    return None


def _notes_account_id(entities: List[dict]) -> str:
    for entity in entities:
        notes = entity.get("notes")
        if isinstance(notes, dict) and notes.get("account_id"):
            return str(notes["account_id"])
    return ""


def parse_envelope(raw_payload, headers: Optional[dict] = None) -> Envelope:
    try:
        text = raw_payload.decode("utf-8") if isinstance(raw_payload, bytes) else raw_payload
        data = json.loads(text or "")
    except (UnicodeDecodeError, TypeError, json.JSONDecodeError) as e:
        raise EnvelopeError(UNPARSEABLE_PAYLOAD) from e

    if not isinstance(data, dict) or not isinstance(data.get("event"), str) or not data["event"]:
        raise EnvelopeError(UNPARSEABLE_PAYLOAD)

    event_name = data["event"]
    event_type = event_name.split(".", 1)[0]
    if event_type not in VARIANTS:
        event_type = WebhookEvent.TYPE_OTHER
    status, amount, entities = VARIANTS.get(event_type, _other_fields)(data)

    lowered = {str(key).lower(): value for key, value in (headers or {}).items()}
    event_id = lowered.get(EVENT_ID_HEADER) or data.get("id") or data.get("event_id") or ""

    subscription = _entity(data, "subscription")
    payment = _entity(data, "payment")
    test_mode = data.get("test_mode")

    return Envelope(
        event_id=str(event_id),
        event_type=event_type,
        event_name=event_name,
        account_id=_notes_account_id(entities),
        subscription_id=str(subscription.get("id") or payment.get("subscription_id") or ""),
        status=str(status) if status is not None else "",
        amount=_as_amount(amount),
        test_mode=test_mode if isinstance(test_mode, bool) else None,
        data=data,
    )


def find_account(account_id: str = "", subscription_id: str = "") -> Optional[SubscriptionAccount]:
    if account_id:
        try:
            account = SubscriptionAccount.objects.filter(pk=account_id).first()
        except (ValidationError, ValueError):
            account = None
        if account is not None:
            return account
    if subscription_id:
        return SubscriptionAccount.objects.filter(razorpay_subscription_id=subscription_id).first()
    return None


def _clip(fields: dict) -> List[str]:
    """Cut string values down to their column length; return the names that were cut."""
    clipped = []
    for name in TRUNCATED_FIELDS:
        limit = WebhookEvent._meta.get_field(name).max_length
        value = fields.get(name) or ""
        if len(value) > limit:
            fields[name] = value[:limit]
            clipped.append(name)
    return clipped


def flagged_at_append(event: WebhookEvent) -> bool:
    """True for rows the ledger flagged while storing them; those never reach the state machine."""
    return event.issue_flag and event.error_reason.startswith(APPEND_FLAGS)


def append(
    raw_payload,
    received_at=None,
    headers: Optional[dict] = None,
    verified: bool = True,
    signature: str = "",
    test_mode: bool = False,
) -> WebhookEvent:
    """Store one delivery as a new ledger row and return it."""
    headers = dict(headers or {})
    if isinstance(raw_payload, bytes):
        raw_text = raw_payload.decode("utf-8", errors="replace")
    else:
        raw_text = str(raw_payload or "")

    fields = {
        "provider": "razorpay",
        "raw_payload": raw_text,
        "headers": headers,
        "signature_header": (signature or "")[:255],
        "verified": verified,
        "test_mode": test_mode,
        "received_at": received_at or timezone.now(),
    }

    try:
        envelope = parse_envelope(raw_payload, headers)
    except EnvelopeError as e:
        fields.update(event_type=WebhookEvent.TYPE_OTHER, issue_flag=True, error_reason=str(e))
        event = WebhookEvent.objects.create(**fields)
        logger.warning(f"Stored unparseable webhook as ledger row {event.pk}")
        return event

    account = find_account(envelope.account_id, envelope.subscription_id)
    fields.update(
        event_id=envelope.event_id,
        event_type=envelope.event_type,
        event_name=envelope.event_name,
        account_id=account.account_id if account else envelope.account_id,
        gym_name=account.gym_name if account else "",
        email=account.email if account else "",
        status=envelope.status,
        amount=envelope.amount,
        payload=envelope.data,
    )
    if envelope.test_mode is not None:
        fields["test_mode"] = envelope.test_mode
    clipped = _clip(fields)
    if not envelope.event_id:
        fields.update(issue_flag=True, error_reason=MISSING_EVENT_ID)
    elif clipped:
        fields.update(issue_flag=True, error_reason=f"{OVERSIZED_FIELD}: {', '.join(clipped)}")
        logger.warning(f"Truncated {', '.join(clipped)} of webhook {fields['event_id']}")

    event = WebhookEvent.objects.create(**fields)
    logger.info(f"Webhook received: {event.event_name} {event.event_id} (verified={verified}, row={event.pk})")
    return event


def refresh_account(event: WebhookEvent) -> bool:
    """Re-resolve the account of a stored row, e.g. before a replay. Returns True if it changed."""
    account = find_account(event.account_id, event.gateway_subscription_id)
    if account is None or account.account_id == event.account_id:
        return False
    event.account_id = account.account_id
    event.gym_name = account.gym_name
    event.email = account.email
    event.save(update_fields=["account_id", "gym_name", "email"])
    return True


def mark_processed(event: WebhookEvent, processed_at=None, outcome: ProcessingOutcome = OK) -> WebhookEvent:
    processed_at = processed_at or timezone.now()
    event.processed_at = processed_at
    elapsed = (processed_at - event.received_at).total_seconds() * 1000
    event.processing_time_ms = max(elapsed, 0.0)
    event.issue_flag = outcome.issue_flag
    event.error_reason = outcome.error_reason[:255]
    event.save(update_fields=["processed_at", "processing_time_ms", "issue_flag", "error_reason"])
    return event
