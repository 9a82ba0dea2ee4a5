import hashlib
import hmac
import json
import time
import uuid

from django.core.management.base import BaseCommand, CommandError
from django.test import RequestFactory

from subscriptions.lifecycle import SUBSCRIPTION_EVENTS, read_account
from subscriptions.services import get_webhook_secret
from webhooks.ledger import find_account
from webhooks.views import razorpay_webhook

DEFAULT_STATUS = {
    "payment.captured": "captured",
    "payment.failed": "failed",
    "subscription.activated": "active",
    "subscription.cancelled": "cancelled",
}


class Command(BaseCommand):
    help = 'Simulate a Razorpay subscription webhook event locally'

    def add_arguments(self, parser):
        parser.add_argument('--event', type=str, default='payment.captured', help=f'Event name ({", ".join(SUBSCRIPTION_EVENTS)})')
        parser.add_argument('--account-id', type=str, required=True, help='SubscriptionAccount id the event belongs to')
        parser.add_argument('--event-id', type=str, help='Gateway event id (reuse one to simulate a redelivery)')
        parser.add_argument('--amount', type=int, default=49900, help='Amount in minor units')
        parser.add_argument('--status', type=str, help='Entity status (defaults to the one the event implies)')
        parser.add_argument('--unsigned', action='store_true', help='Send a bad signature')

    def handle(self, *args, **options):
        event_name = options['event']
        account_id = options['account_id']
        event_id = options['event_id'] or f'evt_{uuid.uuid4().hex[:14]}'
        status = options['status'] or DEFAULT_STATUS.get(event_name, event_name.split('.')[-1])

        account = find_account(account_id)
        if account is None:
            self.stdout.write(self.style.WARNING(f"Account {account_id} not found locally. The event will be flagged."))

        notes = {"account_id": account_id}
        payment = {
            "id": f'pay_{uuid.uuid4().hex[:10]}',
            "entity": "payment",
            "amount": options['amount'],
            "currency": "INR",
            "status": status,
            "method": "card",
            "notes": notes,
        }
        payload = {"payment": {"entity": payment}}
        if event_name.startswith('subscription.'):
            payload = {
                "subscription": {
                    "entity": {
                        "id": account.razorpay_subscription_id if account and account.razorpay_subscription_id else f'sub_{uuid.uuid4().hex[:10]}',
                        "entity": "subscription",
                        "status": status,
                        "notes": notes,
                    }
                },
                "payment": {"entity": payment},
            }

        body = json.dumps({
            "entity": "event",
            "id": event_id,
            "event": event_name,
            "contains": list(payload),
            "payload": payload,
            "created_at": int(time.time()),
        })

        secret = get_webhook_secret()
        if not secret:
            raise CommandError("No webhook secret configured (WEBHOOK_SECRET or Developer Configuration).")

        signature = hmac.new(secret.encode(), body.encode(), hashlib.sha256).hexdigest()
        if options['unsigned']:
            signature = '0' * len(signature)

        request = RequestFactory().post(
            '/webhooks/razorpay/',
            data=body,
            content_type='application/json',
            HTTP_X_RAZORPAY_SIGNATURE=signature,
            HTTP_X_RAZORPAY_EVENT_ID=event_id,
        )

        self.stdout.write(f"Sending {event_name} ({event_id}) for account {account_id}...")
        response = razorpay_webhook(request)
        if response.status_code != 200:
            raise CommandError(f"Webhook failed with status {response.status_code}")

        content = json.loads(response.content)
        if content['issueFlag']:
            self.stdout.write(self.style.WARNING(
                f"Webhook recorded with an issue (verified={content['verified']}, duplicate={content['duplicate']})"
            ))
        else:
            self.stdout.write(self.style.SUCCESS(f"Webhook processed successfully! Verified: {content['verified']}"))

        if account is not None:
            account = read_account(account.pk)
            self.stdout.write(f"Account status is now {account.status}")
