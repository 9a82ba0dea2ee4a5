import logging
from typing import NamedTuple, Optional

from django.db import IntegrityError, transaction

from .models import WebhookEvent

logger = logging.getLogger(__name__)

DUPLICATE_REASON = "duplicate detected"


class Classification(NamedTuple):
    is_duplicate: bool
    prior_entry: Optional[WebhookEvent] = None


def classify(event: WebhookEvent) -> Classification:
    """
    Decide whether ``event`` is the first delivery of its event id.

    The row claims ``dedupe_key``; the unique constraint makes the claim atomic, so of
    two concurrent deliveries exactly one wins and the other is marked duplicate. A row
    that already holds its key (a replay) stays first-seen.
    """
    if not event.event_id:
        raise ValueError(f"ledger row {event.pk} has no event id to classify")
    if event.dedupe_key == event.event_id:
        return Classification(False)

    try:
        with transaction.atomic():
            WebhookEvent.objects.filter(pk=event.pk).update(dedupe_key=event.event_id)
    except IntegrityError:
        prior = WebhookEvent.objects.filter(dedupe_key=event.event_id).first()
        WebhookEvent.objects.filter(pk=event.pk).update(
            duplicate=True, issue_flag=True, error_reason=DUPLICATE_REASON
        )
        event.duplicate = True
        event.issue_flag = True
        event.error_reason = DUPLICATE_REASON
        logger.info(
            f"Duplicate delivery of {event.event_id}: row {event.pk} (first seen as row {prior.pk if prior else '?'})"
        )
        return Classification(True, prior)

    event.dedupe_key = event.event_id
    return Classification(False)
