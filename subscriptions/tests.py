import hashlib
import hmac
import json
import uuid
from datetime import datetime, timedelta
from datetime import timezone as dt_timezone
from types import SimpleNamespace
from unittest.mock import patch

import requests
from django.conf import settings
from django.contrib.auth import get_user_model
from django.core.management import call_command
from django.db import IntegrityError, OperationalError
from django.test import Client, TestCase, override_settings
from django.urls import reverse
from razorpay.errors import BadRequestError

from subscriptions.lifecycle import (
    IncompleteEventError,
    InvalidTransition,
    PAYMENT_CAPTURED,
    PAYMENT_FAILED,
    SUBSCRIPTION_ACTIVATED,
    SUBSCRIPTION_CANCELLED,
    TransitionConflict,
    UnknownAccountError,
    apply_event,
    read_account,
    reconcile,
    request_cancellation,
    status_snapshot,
)
from subscriptions.models import PaymentRecord, SubscriptionAccount

User = get_user_model()

T0 = datetime(2025, 1, 1, 9, 0, tzinfo=dt_timezone.utc)
DAY = timedelta(days=1)

EVENT_STATUS = {
    PAYMENT_CAPTURED: "captured",
    PAYMENT_FAILED: "failed",
    SUBSCRIPTION_ACTIVATED: "active",
    SUBSCRIPTION_CANCELLED: "cancelled",
}


def make_event(name, account, event_id=None, status=None, amount=49900):
    return SimpleNamespace(
        event_id=event_id or f"evt_{uuid.uuid4().hex[:12]}",
        event_name=name,
        account_id=account.account_id,
        status=EVENT_STATUS[name] if status is None else status,
        amount=amount,
        gateway_payment_id="pay_test",
        payload={},
    )


def make_account(status=SubscriptionAccount.STATUS_TRIAL, **fields):
    return SubscriptionAccount.objects.create(gym_name="Iron Temple", email="iron@example.com", status=status, **fields)


@override_settings(
    SUBSCRIPTION_TRIAL_DAYS=14,
    SUBSCRIPTION_GRACE_PERIOD_DAYS=7,
    SUBSCRIPTION_BILLING_PERIOD_DAYS=30,
)
class LifecycleTests(TestCase):
    def test_trial_to_paid(self):
        account = make_account(trial_end_date=T0 + 14 * DAY)

        result = apply_event(make_event(PAYMENT_CAPTURED, account), now=T0 + 2 * DAY)
        self.assertTrue(result.applied)
        account.refresh_from_db()
        # paying during the trial does not cut it short
        self.assertEqual(account.status, SubscriptionAccount.STATUS_TRIAL)
        self.assertEqual(account.subscription_start_date, T0 + 14 * DAY)
        self.assertEqual(account.subscription_end_date, T0 + 44 * DAY)

        account = read_account(account.pk, now=T0 + 14 * DAY)
        self.assertEqual(account.status, SubscriptionAccount.STATUS_ACTIVE)

        payment = PaymentRecord.objects.get(account=account)
        self.assertEqual(payment.status, PaymentRecord.STATUS_SUCCESS)
        self.assertEqual(payment.amount_cents, 49900)
        self.assertEqual(payment.period_start, T0 + 14 * DAY)
        self.assertEqual(payment.period_end, T0 + 44 * DAY)

    def test_trial_without_payment_expires(self):
        account = make_account(trial_end_date=T0 + 14 * DAY)
        self.assertEqual(read_account(account.pk, now=T0 + 13 * DAY).status, SubscriptionAccount.STATUS_TRIAL)
        self.assertEqual(read_account(account.pk, now=T0 + 14 * DAY).status, SubscriptionAccount.STATUS_EXPIRED)

    def test_missed_renewal_goes_through_grace(self):
        account = make_account(
            status=SubscriptionAccount.STATUS_ACTIVE,
            subscription_start_date=T0,
            subscription_end_date=T0 + 30 * DAY,
        )
        account = read_account(account.pk, now=T0 + 31 * DAY)
        self.assertEqual(account.status, SubscriptionAccount.STATUS_GRACE)
        self.assertEqual(account.grace_end_date, T0 + 37 * DAY)

        account = read_account(account.pk, now=T0 + 37 * DAY)
        self.assertEqual(account.status, SubscriptionAccount.STATUS_EXPIRED)

    def test_time_transitions_chain(self):
        account = make_account(
            trial_end_date=T0,
            subscription_start_date=T0,
            subscription_end_date=T0 + 30 * DAY,
        )
        account = read_account(account.pk, now=T0 + 90 * DAY)
        self.assertEqual(account.status, SubscriptionAccount.STATUS_EXPIRED)

    def test_failed_payment_then_grace_expiry(self):
        account = make_account(
            status=SubscriptionAccount.STATUS_ACTIVE,
            subscription_start_date=T0,
            subscription_end_date=T0 + 30 * DAY,
        )
        failed_at = T0 + 10 * DAY
        result = apply_event(make_event(PAYMENT_FAILED, account), now=failed_at)
        self.assertEqual(result.previous_status, SubscriptionAccount.STATUS_ACTIVE)
        self.assertEqual(result.status, SubscriptionAccount.STATUS_GRACE)

        account.refresh_from_db()
        self.assertEqual(account.grace_end_date, failed_at + 7 * DAY)
        self.assertTrue(PaymentRecord.objects.filter(account=account, status=PaymentRecord.STATUS_FAILED).exists())

        self.assertEqual(read_account(account.pk, now=failed_at + 6 * DAY).status, SubscriptionAccount.STATUS_GRACE)
        self.assertEqual(read_account(account.pk, now=failed_at + 7 * DAY).status, SubscriptionAccount.STATUS_EXPIRED)

    def test_payment_during_grace_reactivates(self):
        account = make_account(
            status=SubscriptionAccount.STATUS_GRACE,
            subscription_start_date=T0,
            subscription_end_date=T0 + 30 * DAY,
            grace_end_date=T0 + 37 * DAY,
        )
        now = T0 + 32 * DAY
        apply_event(make_event(PAYMENT_CAPTURED, account), now=now)
        account.refresh_from_db()
        self.assertEqual(account.status, SubscriptionAccount.STATUS_ACTIVE)
        self.assertIsNone(account.grace_end_date)
        self.assertEqual(account.subscription_end_date, now + 30 * DAY)

    def test_renewal_extends_active_period(self):
        account = make_account(
            status=SubscriptionAccount.STATUS_ACTIVE,
            subscription_start_date=T0,
            subscription_end_date=T0 + 30 * DAY,
            pending_cancellation=True,
        )
        apply_event(make_event(PAYMENT_CAPTURED, account), now=T0 + 29 * DAY)
        account.refresh_from_db()
        self.assertEqual(account.status, SubscriptionAccount.STATUS_ACTIVE)
        self.assertEqual(account.subscription_end_date, T0 + 60 * DAY)
        self.assertFalse(account.pending_cancellation)

    def test_payment_after_expiry_starts_fresh_period(self):
        account = make_account(status=SubscriptionAccount.STATUS_EXPIRED)
        now = T0 + 100 * DAY
        apply_event(make_event(PAYMENT_CAPTURED, account), now=now)
        account.refresh_from_db()
        self.assertEqual(account.status, SubscriptionAccount.STATUS_ACTIVE)
        self.assertEqual(account.subscription_start_date, now)
        self.assertEqual(account.subscription_end_date, now + 30 * DAY)

    def test_activation_schedules_period_once(self):
        account = make_account(trial_end_date=T0 + 14 * DAY)
        apply_event(make_event(SUBSCRIPTION_ACTIVATED, account), now=T0)
        account.refresh_from_db()
        end = account.subscription_end_date
        self.assertEqual(end, T0 + 44 * DAY)

        result = apply_event(make_event(SUBSCRIPTION_ACTIVATED, account), now=T0 + DAY)
        self.assertFalse(result.applied)
        account.refresh_from_db()
        self.assertEqual(account.subscription_end_date, end)

    def test_cancellation_takes_effect_at_period_end(self):
        account = make_account(
            status=SubscriptionAccount.STATUS_ACTIVE,
            subscription_start_date=T0,
            subscription_end_date=T0 + 30 * DAY,
        )
        apply_event(make_event(SUBSCRIPTION_CANCELLED, account), now=T0 + 5 * DAY)
        account.refresh_from_db()
        self.assertEqual(account.status, SubscriptionAccount.STATUS_ACTIVE)
        self.assertTrue(account.pending_cancellation)

        account = read_account(account.pk, now=T0 + 30 * DAY)
        self.assertEqual(account.status, SubscriptionAccount.STATUS_CANCELLED)
        self.assertFalse(account.pending_cancellation)

    def test_cancellation_during_grace_is_immediate(self):
        account = make_account(
            status=SubscriptionAccount.STATUS_GRACE,
            subscription_end_date=T0,
            grace_end_date=T0 + 7 * DAY,
        )
        result = apply_event(make_event(SUBSCRIPTION_CANCELLED, account), now=T0 + DAY)
        self.assertEqual(result.status, SubscriptionAccount.STATUS_CANCELLED)

    def test_cancelled_trial_ends_cancelled(self):
        account = make_account(trial_end_date=T0 + 14 * DAY)
        request_cancellation(account.pk, now=T0)
        account = read_account(account.pk, now=T0 + 14 * DAY)
        self.assertEqual(account.status, SubscriptionAccount.STATUS_CANCELLED)

    def test_request_cancellation_refused_when_expired(self):
        account = make_account(status=SubscriptionAccount.STATUS_EXPIRED)
        with self.assertRaises(InvalidTransition):
            request_cancellation(account.pk, now=T0)

    def test_request_cancellation_is_repeatable(self):
        account = make_account(
            status=SubscriptionAccount.STATUS_ACTIVE,
            subscription_end_date=T0 + 30 * DAY,
        )
        request_cancellation(account.pk, now=T0)
        account = request_cancellation(account.pk, now=T0 + DAY)
        self.assertTrue(account.pending_cancellation)

    def test_same_event_is_applied_once(self):
        account = make_account(
            status=SubscriptionAccount.STATUS_ACTIVE,
            subscription_start_date=T0,
            subscription_end_date=T0 + 30 * DAY,
        )
        event = make_event(PAYMENT_CAPTURED, account, event_id="evt_renewal")
        self.assertTrue(apply_event(event, now=T0 + DAY).applied)
        self.assertFalse(apply_event(event, now=T0 + DAY).applied)

        account.refresh_from_db()
        self.assertEqual(account.subscription_end_date, T0 + 60 * DAY)
        self.assertEqual(account.last_applied_event_id, "evt_renewal")

    def test_reconcile_is_idempotent(self):
        account = make_account(trial_end_date=T0)
        now = T0 + DAY
        self.assertTrue(reconcile(account, now))
        snapshot = status_snapshot(account)
        self.assertFalse(reconcile(account, now))
        self.assertEqual(status_snapshot(account), snapshot)

    def test_incomplete_event_is_refused(self):
        account = make_account(trial_end_date=T0 + 14 * DAY)
        with self.assertRaises(IncompleteEventError):
            apply_event(make_event(PAYMENT_CAPTURED, account, amount=None), now=T0)
        with self.assertRaises(IncompleteEventError):
            apply_event(make_event(PAYMENT_CAPTURED, account, status="failed"), now=T0)
        with self.assertRaisesMessage(IncompleteEventError, "negative amount for payment.captured"):
            apply_event(make_event(PAYMENT_CAPTURED, account, amount=-100), now=T0)

        account.refresh_from_db()
        self.assertIsNone(account.subscription_end_date)
        self.assertFalse(PaymentRecord.objects.exists())

    def test_rejected_write_is_incomplete_not_conflict(self):
        account = make_account(trial_end_date=T0 + 14 * DAY)
        with patch(
            "subscriptions.lifecycle.PaymentRecord.objects.create",
            side_effect=IntegrityError("CHECK constraint failed: amount_cents"),
        ):
            with self.assertRaisesMessage(IncompleteEventError, "rejected by the database"):
                apply_event(make_event(PAYMENT_CAPTURED, account), now=T0)

        account.refresh_from_db()
        self.assertIsNone(account.subscription_end_date)
        self.assertEqual(account.last_applied_event_id, "")

    @override_settings(SUBSCRIPTION_CONFLICT_RETRIES=1)
    def test_lock_failure_retries_then_conflicts(self):
        account = make_account(trial_end_date=T0 + 14 * DAY)
        real_select_for_update = SubscriptionAccount.objects.select_for_update
        calls = []

        def flaky(*args, **kwargs):
            calls.append(args)
            if len(calls) == 1:
                raise OperationalError("database is locked")
            return real_select_for_update(*args, **kwargs)

        with patch.object(SubscriptionAccount.objects, "select_for_update", side_effect=flaky):
            result = apply_event(make_event(SUBSCRIPTION_ACTIVATED, account), now=T0)
        self.assertTrue(result.applied)
        self.assertEqual(len(calls), 2)

        with patch.object(
            SubscriptionAccount.objects, "select_for_update", side_effect=OperationalError("database is locked")
        ) as locked:
            with self.assertRaises(TransitionConflict):
                apply_event(make_event(SUBSCRIPTION_CANCELLED, account), now=T0)
        self.assertEqual(locked.call_count, 2)
        account.refresh_from_db()
        self.assertFalse(account.pending_cancellation)

    def test_unknown_account(self):
        ghost = SimpleNamespace(account_id=str(uuid.uuid4()))
        with self.assertRaises(UnknownAccountError):
            apply_event(make_event(PAYMENT_CAPTURED, ghost), now=T0)

        ghost.account_id = "not-a-uuid"
        with self.assertRaises(UnknownAccountError):
            apply_event(make_event(PAYMENT_CAPTURED, ghost), now=T0)

    def test_status_always_in_known_set(self):
        known = {choice for choice, _ in SubscriptionAccount.STATUS_CHOICES}
        account = make_account(trial_end_date=T0 + 14 * DAY)
        steps = [
            (PAYMENT_CAPTURED, T0 + DAY),
            (PAYMENT_FAILED, T0 + 20 * DAY),
            (PAYMENT_CAPTURED, T0 + 22 * DAY),
            (SUBSCRIPTION_CANCELLED, T0 + 23 * DAY),
            (PAYMENT_FAILED, T0 + 200 * DAY),
        ]
        for name, now in steps:
            apply_event(make_event(name, account), now=now)
            self.assertIn(read_account(account.pk, now=now).status, known)


class SettingsTests(TestCase):
    def test_environment_values_are_typed(self):
        self.assertIsInstance(settings.DEBUG, bool)
        self.assertIsInstance(settings.ALLOWED_HOSTS, list)
        for name in (
            "SUBSCRIPTION_TRIAL_DAYS",
            "SUBSCRIPTION_GRACE_PERIOD_DAYS",
            "SUBSCRIPTION_BILLING_PERIOD_DAYS",
            "SUBSCRIPTION_CONFLICT_RETRIES",
        ):
            self.assertIsInstance(getattr(settings, name), int, name)
        self.assertTrue(settings.DATABASES["default"]["ENGINE"].startswith("django.db.backends."))


class SignupTests(TestCase):
    def test_signup_starts_trial(self):
        user = User.objects.create_user(username="gym", email="gym@example.com", password="pass1234")
        account = SubscriptionAccount.objects.get(user=user)
        self.assertEqual(account.status, SubscriptionAccount.STATUS_TRIAL)
        self.assertEqual(account.gym_name, "gym")
        self.assertIsNotNone(account.trial_end_date)

    @override_settings(SUBSCRIPTION_SIGNUP_STATUS="free")
    def test_signup_can_start_free(self):
        user = User.objects.create_user(username="gym", password="pass1234")
        account = SubscriptionAccount.objects.get(user=user)
        self.assertEqual(account.status, SubscriptionAccount.STATUS_FREE)
        self.assertIsNone(account.trial_end_date)

    def test_staff_get_no_account(self):
        User.objects.create_user(username="owner", password="pass1234", is_staff=True)
        self.assertFalse(SubscriptionAccount.objects.exists())


@override_settings(RAZORPAY_KEY_ID="", RAZORPAY_KEY_SECRET="", RAZORPAY_PLAN_ID="", WEBHOOK_SECRET="")
class SubscriptionViewTests(TestCase):
    def setUp(self):
        self.client = Client()
        self.user = User.objects.create_user(username="gym", email="gym@example.com", password="pass1234")
        self.account = self.user.subscription_account
        self.client.login(username="gym", password="pass1234")

    def test_status_requires_login(self):
        response = Client().get(reverse("subscriptions:status"))
        self.assertEqual(response.status_code, 302)

    def test_status(self):
        response = self.client.get(reverse("subscriptions:status"))
        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertEqual(data["status"], "trial")
        self.assertFalse(data["pendingCancellation"])
        self.assertIsNotNone(data["trialEndDate"])

    def test_status_reconciles_before_reading(self):
        self.account.trial_end_date = T0
        self.account.save()
        response = self.client.get(reverse("subscriptions:status"))
        self.assertEqual(response.json()["status"], "expired")

    def test_cancel(self):
        response = self.client.post(reverse("subscriptions:cancel"))
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.json()["pendingCancellation"])
        self.account.refresh_from_db()
        self.assertEqual(self.account.status, SubscriptionAccount.STATUS_TRIAL)

    def test_cancel_refused(self):
        SubscriptionAccount.objects.filter(pk=self.account.pk).update(status=SubscriptionAccount.STATUS_EXPIRED)
        response = self.client.post(reverse("subscriptions:cancel"))
        self.assertEqual(response.status_code, 409)
        self.assertFalse(response.json()["success"])

    def test_payment_history_and_invoice(self):
        apply_event(make_event(PAYMENT_CAPTURED, self.account, amount=49900))
        response = self.client.get(reverse("subscriptions:payment-history"))
        self.assertEqual(response.status_code, 200)
        history = response.json()
        self.assertEqual(len(history), 1)
        self.assertEqual(history[0]["amount"], 499.0)
        self.assertEqual(history[0]["status"], "success")

        payment = PaymentRecord.objects.get()
        response = self.client.get(reverse("subscriptions:invoice", args=[payment.pk]))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response["Content-Type"], "application/pdf")

    def test_invoice_of_other_user_is_hidden(self):
        other = User.objects.create_user(username="other", password="pass1234")
        apply_event(make_event(PAYMENT_CAPTURED, other.subscription_account))
        payment = PaymentRecord.objects.get()
        response = self.client.get(reverse("subscriptions:invoice", args=[payment.pk]))
        self.assertEqual(response.status_code, 404)

    def test_create_subscription_without_keys_uses_mock(self):
        response = self.client.post(reverse("subscriptions:create-subscription"))
        self.assertEqual(response.status_code, 200)
        subscription_id = response.json()["subscriptionId"]
        self.assertTrue(subscription_id.startswith("sub_local_"))
        self.account.refresh_from_db()
        self.assertEqual(self.account.razorpay_subscription_id, subscription_id)
        self.assertEqual(self.account.status, SubscriptionAccount.STATUS_TRIAL)

    @override_settings(RAZORPAY_KEY_ID="rzp_test_key", RAZORPAY_KEY_SECRET="secret", RAZORPAY_PLAN_ID="plan_123")
    @patch("subscriptions.services.razorpay.Client")
    def test_create_subscription_calls_razorpay(self, mock_client):
        mock_client.return_value.subscription.create.return_value = {"id": "sub_123", "status": "created"}
        response = self.client.post(reverse("subscriptions:create-subscription"))

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"subscriptionId": "sub_123", "key": "rzp_test_key"})
        mock_client.assert_called_once_with(auth=("rzp_test_key", "secret"))
        (data,), _ = mock_client.return_value.subscription.create.call_args
        self.assertEqual(data["plan_id"], "plan_123")
        self.assertEqual(data["notes"]["account_id"], self.account.account_id)
        self.account.refresh_from_db()
        self.assertEqual(self.account.razorpay_subscription_id, "sub_123")

    @override_settings(RAZORPAY_KEY_ID="rzp_test_key", RAZORPAY_KEY_SECRET="secret", RAZORPAY_PLAN_ID="plan_123")
    @patch("subscriptions.services.razorpay.Client")
    def test_create_subscription_rejected(self, mock_client):
        mock_client.return_value.subscription.create.side_effect = BadRequestError("The id provided does not exist")
        response = self.client.post(reverse("subscriptions:create-subscription"))
        self.assertEqual(response.status_code, 502)
        self.account.refresh_from_db()
        self.assertEqual(self.account.razorpay_subscription_id, "")

    @override_settings(RAZORPAY_KEY_ID="rzp_test_key", RAZORPAY_KEY_SECRET="secret", RAZORPAY_PLAN_ID="plan_123")
    @patch("subscriptions.services.razorpay.Client")
    def test_create_subscription_gateway_down(self, mock_client):
        mock_client.return_value.subscription.create.side_effect = requests.exceptions.ConnectionError("down")
        response = self.client.post(reverse("subscriptions:create-subscription"))
        self.assertEqual(response.status_code, 502)

    @override_settings(RAZORPAY_KEY_SECRET="secret")
    def test_verify_subscription(self):
        signature = hmac.new(b"secret", b"pay_1|sub_1", hashlib.sha256).hexdigest()
        body = {"razorpay_payment_id": "pay_1", "razorpay_subscription_id": "sub_1", "razorpay_signature": signature}
        response = self.client.post(
            reverse("subscriptions:verify-subscription"), data=json.dumps(body), content_type="application/json"
        )
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.json()["verified"])

        body["razorpay_signature"] = "bad"
        response = self.client.post(
            reverse("subscriptions:verify-subscription"), data=json.dumps(body), content_type="application/json"
        )
        self.assertEqual(response.status_code, 400)
        self.account.refresh_from_db()
        self.assertEqual(self.account.status, SubscriptionAccount.STATUS_TRIAL)


class OwnerViewTests(TestCase):
    def setUp(self):
        self.owner = User.objects.create_user(username="owner", password="pass1234", is_staff=True)
        self.gym = User.objects.create_user(username="iron", email="iron@example.com", password="pass1234")
        User.objects.create_user(username="flex", email="flex@example.com", password="pass1234")
        self.client = Client()
        self.client.force_login(self.owner)

    def test_owner_gyms(self):
        response = self.client.get(reverse("subscriptions:owner-gyms"))
        self.assertEqual(response.status_code, 200)
        gyms = response.json()["gyms"]
        self.assertEqual([gym["gymName"] for gym in gyms], ["flex", "iron"])
        self.assertEqual(gyms[1]["subscription"]["status"], "trial")

    def test_owner_gyms_search(self):
        response = self.client.get(reverse("subscriptions:owner-gyms"), {"search": "iron"})
        gyms = response.json()["gyms"]
        self.assertEqual(len(gyms), 1)
        self.assertEqual(gyms[0]["_id"], self.gym.subscription_account.account_id)

    def test_owner_gyms_requires_staff(self):
        client = Client()
        client.force_login(self.gym)
        response = client.get(reverse("subscriptions:owner-gyms"))
        self.assertEqual(response.status_code, 302)


class CommandTests(TestCase):
    def test_reconcile_subscriptions(self):
        account = make_account(trial_end_date=T0)
        call_command("reconcile_subscriptions", verbosity=0)
        account.refresh_from_db()
        self.assertEqual(account.status, SubscriptionAccount.STATUS_EXPIRED)

    def test_loaddemo(self):
        call_command("loaddemo", verbosity=0)
        self.assertTrue(User.objects.filter(username="owner", is_staff=True).exists())
        self.assertTrue(SubscriptionAccount.objects.filter(user__username="demogym").exists())
