import hashlib
import hmac
import logging
from typing import Any, Dict, Optional

import razorpay
import requests
from django.conf import settings
from django.utils import timezone
from razorpay.errors import BadRequestError, ServerError
from razorpay.errors import GatewayError as RazorpayGatewayError

from .models import DeveloperConfig, SubscriptionAccount

logger = logging.getLogger(__name__)

SUBSCRIPTION_TOTAL_COUNT = 12


class GatewayError(Exception):
    """Raised when the Razorpay API rejects or fails a request."""


def get_developer_config() -> DeveloperConfig:
    return DeveloperConfig.get_solo()


def get_razorpay_keys() -> tuple[str, str]:
    config = get_developer_config()
    key_id = config.razorpay_key_id or settings.RAZORPAY_KEY_ID
    key_secret = config.razorpay_key_secret or settings.RAZORPAY_KEY_SECRET
    return key_id, key_secret


def get_public_razorpay_key() -> str:
    key_id, _ = get_razorpay_keys()
    return key_id


def get_webhook_secret() -> str:
    config = get_developer_config()
    _, key_secret = get_razorpay_keys()
    return config.webhook_secret or settings.WEBHOOK_SECRET or key_secret


def get_plan_id() -> str:
    return get_developer_config().razorpay_plan_id or settings.RAZORPAY_PLAN_ID


def is_test_mode() -> bool:
    return get_public_razorpay_key().startswith("rzp_test_")


def get_razorpay_client() -> Optional[razorpay.Client]:
    key_id, key_secret = get_razorpay_keys()
    if not (key_id and key_secret):
        return None
    return razorpay.Client(auth=(key_id, key_secret))


def create_razorpay_subscription(account: SubscriptionAccount) -> Dict[str, Any]:
    """
    Create a gateway subscription for ``account`` and remember its id.

    The account's status is untouched; it only changes when the gateway confirms the
    payment through a webhook.
    """
    client = get_razorpay_client()
    plan_id = get_plan_id()
    if not (client and plan_id):
        # Fallback mock subscription for local demos when keys are missing
        mock_id = f"sub_local_{int(timezone.now().timestamp())}"
        logger.warning("Razorpay keys or plan missing, returning mock subscription id %s", mock_id)
        account.razorpay_subscription_id = mock_id
        account.save(update_fields=["razorpay_subscription_id", "updated_at"])
        return {"id": mock_id, "plan_id": plan_id, "status": "created"}

    try:
        subscription = client.subscription.create(
            {
                "plan_id": plan_id,
                "total_count": SUBSCRIPTION_TOTAL_COUNT,
                "customer_notify": 1,
                "notes": {"account_id": account.account_id, "gym_name": account.gym_name},
            }
        )
    except (BadRequestError, RazorpayGatewayError, ServerError) as e:
        logger.error("Razorpay rejected subscription for account %s: %s", account.pk, e)
        raise GatewayError(f"Razorpay rejected the subscription: {e}") from e
    except requests.exceptions.RequestException as e:
        # the SDK lets transport errors through unwrapped
        logger.error("Razorpay unreachable creating subscription for account %s: %s", account.pk, e)
        raise GatewayError(f"Razorpay unreachable: {e}") from e

    account.razorpay_subscription_id = subscription["id"]
    account.save(update_fields=["razorpay_subscription_id", "updated_at"])
    return subscription


def verify_subscription_signature(payment_id: str, subscription_id: str, signature: str, secret: str) -> bool:
    if not (payment_id and subscription_id and signature and secret):
        return False
    generated = hmac.new(
        secret.encode(),
        f"{payment_id}|{subscription_id}".encode(),
        hashlib.sha256,
    ).hexdigest()
    return hmac.compare_digest(generated, signature)


def verify_webhook_signature(payload: bytes, signature: str, secret: str) -> bool:
    if not (payload and signature and secret):
        return False
    generated = hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()
    return hmac.compare_digest(generated, signature)
