"""
Subscription state machine.

Every write to ``SubscriptionAccount.status`` goes through this module. Event driven
transitions come from the webhook pipeline; time based transitions (trial, paid period
and grace expiry) are reconciled lazily whenever an account is read or touched, so no
background scheduler is needed.

All mutations run inside ``transaction.atomic()`` with the account row locked by
``select_for_update``, which serialises concurrent deliveries for the same account.
"""
import logging
from datetime import timedelta
from typing import Callable, Dict, NamedTuple, Optional

from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import DataError, IntegrityError, OperationalError, transaction
from django.utils import timezone

from .models import PaymentRecord, SubscriptionAccount
from .notifications import send_payment_receipt

logger = logging.getLogger(__name__)

PAYMENT_CAPTURED = "payment.captured"
PAYMENT_FAILED = "payment.failed"
SUBSCRIPTION_ACTIVATED = "subscription.activated"
SUBSCRIPTION_CANCELLED = "subscription.cancelled"
SUBSCRIPTION_EVENTS = (PAYMENT_CAPTURED, PAYMENT_FAILED, SUBSCRIPTION_ACTIVATED, SUBSCRIPTION_CANCELLED)

FREE = SubscriptionAccount.STATUS_FREE
TRIAL = SubscriptionAccount.STATUS_TRIAL
ACTIVE = SubscriptionAccount.STATUS_ACTIVE
GRACE = SubscriptionAccount.STATUS_GRACE
EXPIRED = SubscriptionAccount.STATUS_EXPIRED
CANCELLED = SubscriptionAccount.STATUS_CANCELLED

# Fields that must be present before an event may move an account.
REQUIRED_FIELDS = {
    PAYMENT_CAPTURED: ("status", "amount"),
    PAYMENT_FAILED: ("status",),
    SUBSCRIPTION_ACTIVATED: ("status",),
    SUBSCRIPTION_CANCELLED: ("status",),
}

EXPECTED_STATUS = {
    PAYMENT_CAPTURED: {"captured"},
    PAYMENT_FAILED: {"failed"},
    SUBSCRIPTION_ACTIVATED: {"active", "authenticated"},
    SUBSCRIPTION_CANCELLED: {"cancelled"},
}


class SubscriptionError(Exception):
    """Base class for state machine failures."""


class UnknownAccountError(SubscriptionError):
    pass


class IncompleteEventError(SubscriptionError):
    pass


class TransitionConflict(SubscriptionError):
    pass


class InvalidTransition(SubscriptionError):
    pass


class TransitionResult(NamedTuple):
    applied: bool
    previous_status: str
    status: str
    account: SubscriptionAccount


def trial_period() -> timedelta:
    return timedelta(days=settings.SUBSCRIPTION_TRIAL_DAYS)


def grace_period() -> timedelta:
    return timedelta(days=settings.SUBSCRIPTION_GRACE_PERIOD_DAYS)


def billing_period() -> timedelta:
    return timedelta(days=settings.SUBSCRIPTION_BILLING_PERIOD_DAYS)


def is_transition_event(event_name: str) -> bool:
    return event_name in _EVENT_HANDLERS


def start_account(account: SubscriptionAccount, now=None) -> None:
    """Set the initial status of a freshly signed up account (not saved)."""
    now = now or timezone.now()
    if settings.SUBSCRIPTION_SIGNUP_STATUS == FREE:
        account.status = FREE
        account.trial_end_date = None
    else:
        account.status = TRIAL
        account.trial_end_date = now + trial_period()


def reconcile(account: SubscriptionAccount, now=None) -> bool:
    """
    Apply every time based transition that is due at ``now``, in memory.

    Transitions chain (an old trial with a scheduled period may end up in grace), so
    steps repeat until the account is stable. Returns True when anything changed.
    Calling it twice with the same ``now`` is a no-op the second time.
    """
    now = now or timezone.now()
    changed = False
    while _expire_step(account, now):
        changed = True
    return changed


def _expire_step(account: SubscriptionAccount, now) -> bool:
    if account.status == TRIAL:
        if account.trial_end_date is None or now < account.trial_end_date:
            return False
        if account.has_scheduled_period:
            _move(account, ACTIVE)
        else:
            _move(account, CANCELLED if account.pending_cancellation else EXPIRED)
            account.pending_cancellation = False
        return True

    if account.status == ACTIVE:
        end = account.subscription_end_date
        if end is None or now < end:
            return False
        if account.pending_cancellation:
            _move(account, CANCELLED)
            account.pending_cancellation = False
        else:
            # missed renewal
            _move(account, GRACE)
            account.grace_end_date = end + grace_period()
        return True

    if account.status == GRACE:
        if account.grace_end_date is None or now < account.grace_end_date:
            return False
        _move(account, EXPIRED)
        return True

    return False


def _move(account: SubscriptionAccount, status: str) -> None:
    logger.info("Account %s status changed: %s -> %s", account.pk, account.status, status)
    account.status = status


def _extend(end, now):
    base = end if end is not None and end > now else now
    return base + billing_period()


def _schedule_first_period(account: SubscriptionAccount, now) -> bool:
    if account.has_scheduled_period:
        return False
    start = account.trial_end_date if account.trial_end_date and account.trial_end_date > now else now
    account.subscription_start_date = start
    account.subscription_end_date = start + billing_period()
    logger.info(
        "Account %s paid period scheduled %s -> %s",
        account.pk,
        account.subscription_start_date,
        account.subscription_end_date,
    )
    return True


def _start_fresh_period(account: SubscriptionAccount, now) -> None:
    account.subscription_start_date = now
    account.subscription_end_date = now + billing_period()
    account.grace_end_date = None
    account.pending_cancellation = False
    _move(account, ACTIVE)


def _mark_cancellation(account: SubscriptionAccount) -> bool:
    if account.status in (ACTIVE, TRIAL):
        if account.pending_cancellation:
            return False
        account.pending_cancellation = True
        logger.info("Account %s cancellation pending until %s", account.pk, account.subscription_end_date)
        return True
    if account.status == GRACE:
        _move(account, CANCELLED)
        return True
    return False


def _record_payment(account: SubscriptionAccount, event, status: str) -> PaymentRecord:
    period_end = account.subscription_end_date if status == PaymentRecord.STATUS_SUCCESS else None
    payment = PaymentRecord.objects.create(
        account=account,
        event_id=event.event_id,
        payment_id=getattr(event, "gateway_payment_id", "") or "",
        amount_cents=event.amount or 0,
        plan=settings.SUBSCRIPTION_PLAN_NAME,
        period_start=period_end - billing_period() if period_end else None,
        period_end=period_end,
        status=status,
        payload=getattr(event, "payload", None) or {},
    )
    if status == PaymentRecord.STATUS_SUCCESS:
        transaction.on_commit(lambda: send_payment_receipt(payment))
    return payment


def _on_payment_captured(account: SubscriptionAccount, event, now) -> bool:
    if account.status == TRIAL:
        changed = _schedule_first_period(account, now)
    elif account.status == ACTIVE:
        account.subscription_end_date = _extend(account.subscription_end_date, now)
        account.pending_cancellation = False
        changed = True
    elif account.status == GRACE:
        account.subscription_end_date = _extend(account.subscription_end_date, now)
        account.grace_end_date = None
        _move(account, ACTIVE)
        changed = True
    else:
        _start_fresh_period(account, now)
        changed = True
    _record_payment(account, event, PaymentRecord.STATUS_SUCCESS)
    return changed


def _on_payment_failed(account: SubscriptionAccount, event, now) -> bool:
    _record_payment(account, event, PaymentRecord.STATUS_FAILED)
    if account.status != ACTIVE:
        return False
    account.grace_end_date = now + grace_period()
    _move(account, GRACE)
    return True


def _on_subscription_activated(account: SubscriptionAccount, event, now) -> bool:
    if account.status != TRIAL:
        return False
    return _schedule_first_period(account, now)


def _on_subscription_cancelled(account: SubscriptionAccount, event, now) -> bool:
    return _mark_cancellation(account)


_EVENT_HANDLERS: Dict[str, Callable[[SubscriptionAccount, object, object], bool]] = {
    PAYMENT_CAPTURED: _on_payment_captured,
    PAYMENT_FAILED: _on_payment_failed,
    SUBSCRIPTION_ACTIVATED: _on_subscription_activated,
    SUBSCRIPTION_CANCELLED: _on_subscription_cancelled,
}


def validate_event(event) -> None:
    """Refuse to guess: raise IncompleteEventError when required data is missing."""
    name = event.event_name
    missing = [field for field in REQUIRED_FIELDS.get(name, ()) if getattr(event, field) in (None, "")]
    if missing:
        raise IncompleteEventError(f"missing {', '.join(missing)} for {name}")
    expected = EXPECTED_STATUS.get(name)
    if expected and event.status not in expected:
        raise IncompleteEventError(f"status {event.status!r} does not match {name}")
    if event.amount is not None and event.amount < 0:
        raise IncompleteEventError(f"negative amount for {name}")


def _lock_account(account_id) -> SubscriptionAccount:
    if not account_id:
        raise UnknownAccountError("unknown account")
    try:
        return SubscriptionAccount.objects.select_for_update().get(pk=account_id)
    except (SubscriptionAccount.DoesNotExist, ValidationError, ValueError):
        raise UnknownAccountError(f"unknown account {account_id!r}") from None


def _with_locked_account(account_id, operation: Callable[[SubscriptionAccount], object]):
    attempts = max(settings.SUBSCRIPTION_CONFLICT_RETRIES, 0) + 1
    for attempt in range(1, attempts + 1):
        try:
            with transaction.atomic():
                return operation(_lock_account(account_id))
        except OperationalError as exc:
            logger.warning(
                "Write conflict on account %s (attempt %s/%s): %s", account_id, attempt, attempts, exc
            )
    raise TransitionConflict(f"concurrent update conflict on account {account_id}")


def apply_event(event, now=None) -> TransitionResult:
    """
    Apply a validated, non-duplicate ledger event to its account.

    ``event`` needs ``event_id``, ``event_name``, ``account_id``, ``status`` and
    ``amount``; ``gateway_payment_id`` and ``payload`` are used when present. An event
    whose id is already the account's ``last_applied_event_id`` is not applied again.
    """
    now = now or timezone.now()
    validate_event(event)

    def _apply(account: SubscriptionAccount) -> TransitionResult:
        previous = account.status
        changed = reconcile(account, now)
        applied = False
        if event.event_id and event.event_id == account.last_applied_event_id:
            logger.info("Event %s already applied to account %s", event.event_id, account.pk)
        else:
            handler = _EVENT_HANDLERS.get(event.event_name)
            if handler is not None and handler(account, event, now):
                account.last_applied_event_id = event.event_id
                applied = True
        if changed or applied:
            account.save()
        return TransitionResult(applied, previous, account.status, account)

    try:
        return _with_locked_account(event.account_id, _apply)
    except (IntegrityError, DataError) as exc:
        raise IncompleteEventError(f"rejected by the database: {exc}") from exc


def read_account(account_id, now=None) -> SubscriptionAccount:
    """Return the account after reconciling it against ``now``."""
    now = now or timezone.now()

    def _read(account: SubscriptionAccount) -> SubscriptionAccount:
        if reconcile(account, now):
            account.save()
        return account

    return _with_locked_account(account_id, _read)


def request_cancellation(account_id, now=None) -> SubscriptionAccount:
    """Ask for cancellation at the end of the paid period; status does not change now."""
    now = now or timezone.now()

    def _cancel(account: SubscriptionAccount) -> SubscriptionAccount:
        reconcile(account, now)
        if not _mark_cancellation(account) and not account.pending_cancellation:
            raise InvalidTransition(f"cannot cancel a subscription in status {account.status}")
        account.save()
        return account

    return _with_locked_account(account_id, _cancel)


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def status_snapshot(account: SubscriptionAccount) -> dict:
    return {
        "status": account.status,
        "trialEndDate": _iso(account.trial_end_date),
        "graceEndDate": _iso(account.grace_end_date),
        "subscriptionEndDate": _iso(account.subscription_end_date),
        "subscriptionStartDate": _iso(account.subscription_start_date),
        "pendingCancellation": account.pending_cancellation,
    }
