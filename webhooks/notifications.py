import logging

from django.conf import settings
from django.core.mail import send_mail

from .models import WebhookEvent

logger = logging.getLogger(__name__)


def _detail_url(event: WebhookEvent) -> str:
    return f"{settings.SITE_URL}/admin/webhooks/webhookevent/{event.pk}/change/"


def send_issue_alert(event: WebhookEvent) -> None:
    """Send email alert when a ledger row ends up flagged with an issue."""
    if not settings.DEBUG:  # Only send in production
        try:
            subject = f"[ActiveHub] Webhook needs attention - {event.event_name or 'unknown event'}"
            message = f"""
A webhook was recorded with an issue and did not change any subscription:

Event: {event.event_name or 'unknown'} ({event.event_type})
Event ID: {event.event_id or '-'}
Account: {event.gym_name or event.account_id or '-'}
Received: {event.received_at}
Reason: {event.error_reason}

Ledger row: {event.pk}
View details: {_detail_url(event)}
"""
            send_mail(
                subject,
                message,
                settings.DEFAULT_FROM_EMAIL,
                [settings.SUPPORT_EMAIL],
                fail_silently=True,
            )
            logger.info(f"Sent issue alert for ledger row {event.pk}")
        except Exception as e:
            logger.error(f"Failed to send issue alert: {e}")


def send_verification_failure_alert(event: WebhookEvent) -> None:
    """Send email alert when webhook signature verification fails."""
    if not settings.DEBUG:  # Only send in production
        try:
            subject = "[ActiveHub] Webhook Verification Failed - razorpay"
            message = f"""
Webhook signature verification failed:

Event: {event.event_name or 'unknown'}
Received: {event.received_at}
Signature: {event.signature_header[:20]}...

This could indicate:
1. Incorrect webhook secret configured
2. Potential security threat (spoofed webhook)

Ledger row: {event.pk}
View details: {_detail_url(event)}
"""
            send_mail(
                subject,
                message,
                settings.DEFAULT_FROM_EMAIL,
                [settings.SUPPORT_EMAIL],
                fail_silently=True,
            )
            logger.warning(f"Sent verification failure alert for ledger row {event.pk}")
        except Exception as e:
            logger.error(f"Failed to send verification failure alert: {e}")
