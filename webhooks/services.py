"""
Webhook ingestion pipeline: ledger append, duplicate check, then the state machine.

Every path ends with ``mark_processed``; failures become flagged ledger rows instead of
exceptions, so the gateway always gets its acknowledgement.
"""
import logging
from typing import Optional

from django.utils import timezone

from subscriptions.lifecycle import (
    IncompleteEventError,
    TransitionConflict,
    UnknownAccountError,
    apply_event,
    is_transition_event,
)

from .idempotency import DUPLICATE_REASON, classify
from .ledger import OK, ProcessingOutcome, append, flagged_at_append, mark_processed, refresh_account
from .models import WebhookEvent
from .notifications import send_issue_alert, send_verification_failure_alert

logger = logging.getLogger(__name__)

SIGNATURE_FAILED = "signature verification failed"
UNSUPPORTED_EVENT = "unsupported event"
UNKNOWN_ACCOUNT = "unknown account"
CONFLICT = "concurrent update conflict"


class ReplayRefused(Exception):
    pass


def ingest(
    raw_payload,
    headers: Optional[dict] = None,
    signature: str = "",
    verified: bool = True,
    received_at=None,
    test_mode: bool = False,
    now=None,
) -> WebhookEvent:
    """Record one gateway delivery and process it to completion."""
    event = append(
        raw_payload,
        received_at=received_at,
        headers=headers,
        verified=verified,
        signature=signature,
        test_mode=test_mode,
    )
    return process_event(event, now=now)


def process_event(event: WebhookEvent, now=None) -> WebhookEvent:
    outcome = _run(event, now)
    mark_processed(event, now or timezone.now(), outcome)

    if not event.verified:
        send_verification_failure_alert(event)
    elif outcome.issue_flag and not event.duplicate:
        send_issue_alert(event)
    return event


def _run(event: WebhookEvent, now) -> ProcessingOutcome:
    if not event.event_id or flagged_at_append(event):
        # unparseable, id-less and truncated rows were already flagged by the ledger
        return ProcessingOutcome(True, event.error_reason)
    if not event.verified:
        logger.warning(f"Webhook signature verification failed for row {event.pk}")
        return ProcessingOutcome(True, SIGNATURE_FAILED)

    classification = classify(event)
    if classification.is_duplicate:
        return ProcessingOutcome(True, DUPLICATE_REASON)

    if event.event_type == WebhookEvent.TYPE_OTHER:
        logger.warning(f"Unhandled event type: {event.event_name} (row {event.pk})")
        return ProcessingOutcome(True, UNSUPPORTED_EVENT)
    if not is_transition_event(event.event_name):
        logger.info(f"Recorded {event.event_name} without a subscription change (row {event.pk})")
        return OK

    try:
        result = apply_event(event, now=now)
    except UnknownAccountError:
        logger.error(f"Account not found for {event.event_name} {event.event_id}: {event.account_id!r}")
        return ProcessingOutcome(True, UNKNOWN_ACCOUNT)
    except IncompleteEventError as e:
        logger.error(f"Incomplete {event.event_name} {event.event_id}: {e}")
        return ProcessingOutcome(True, f"incomplete event: {e}")
    except TransitionConflict as e:
        logger.error(f"Gave up on {event.event_id}: {e}")
        return ProcessingOutcome(True, CONFLICT)

    logger.info(
        f"Processed {event.event_name} {event.event_id} for account {event.account_id}: "
        f"{result.previous_status} -> {result.status} (applied={result.applied})"
    )
    return OK


def replay_event(event: WebhookEvent, now=None) -> WebhookEvent:
    """
    Run an issue-flagged ledger row through the pipeline again.

    Only first-seen, verified rows qualify: a flagged row never changed an account, so
    replaying it cannot apply a transition twice.
    """
    if event.duplicate:
        raise ReplayRefused("duplicate deliveries are never replayed")
    if not event.verified:
        raise ReplayRefused("unverified webhooks cannot be replayed")
    if not event.issue_flag:
        raise ReplayRefused("only webhooks flagged with an issue can be replayed")
    if not event.event_id or flagged_at_append(event):
        raise ReplayRefused(event.error_reason or "webhook has no event id")

    refresh_account(event)
    event.replay_count += 1
    event.save(update_fields=["replay_count"])
    logger.info(f"Replaying ledger row {event.pk} (replay #{event.replay_count})")
    return process_event(event, now=now)
