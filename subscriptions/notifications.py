"""
Email notifications for subscription payments.
"""
import logging

from django.conf import settings
from django.core.mail import send_mail

logger = logging.getLogger(__name__)


def send_payment_receipt(payment) -> bool:
    """
    Send a payment receipt to the gym owner.

    Args:
        payment: The PaymentRecord instance

    Returns:
        True if email sent successfully, False otherwise
    """
    account = payment.account
    recipient = account.email or (account.user.email if account.user else "")
    if not recipient:
        logger.info(f"No email on account {account.pk}, skipping receipt for payment {payment.pk}")
        return False

    try:
        subject = f"[ActiveHub] Payment received - {payment.plan}"
        message = f"""
Hi {account.gym_name or recipient},

We received your subscription payment.

Plan: {payment.plan}
Amount: {payment.amount_display:.2f}
Payment ID: {payment.payment_id or payment.event_id}
Paid until: {payment.period_end or account.subscription_end_date}

Receipt: {settings.SITE_URL}/payment/invoice/{payment.pk}/
"""
        send_mail(
            subject,
            message,
            settings.DEFAULT_FROM_EMAIL,
            [recipient],
            fail_silently=False,
        )
        logger.info(f"Payment receipt sent to {recipient} for payment {payment.pk}")
        return True

    except Exception as e:
        logger.error(f"Failed to send payment receipt for payment {payment.pk}: {e}", exc_info=True)
        return False
