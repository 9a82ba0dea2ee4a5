import hashlib
import hmac
import json
import uuid
from datetime import date, datetime, timedelta
from datetime import timezone as dt_timezone
from io import StringIO
from unittest.mock import patch

from django.contrib.auth import get_user_model
from django.core.management import call_command
from django.db import OperationalError
from django.test import Client, TestCase, override_settings
from django.urls import reverse

from subscriptions.models import PaymentRecord, SubscriptionAccount
from webhooks.idempotency import DUPLICATE_REASON, classify
from webhooks.ledger import (
    MISSING_EVENT_ID,
    OVERSIZED_FIELD,
    UNPARSEABLE_PAYLOAD,
    ProcessingOutcome,
    append,
    mark_processed,
)
from webhooks.models import WebhookEvent
from webhooks.reporting import (
    ReportRange,
    average_processing_time_ms,
    daily_volume,
    detailed_analytics,
    event_counts,
    issues_count,
    payment_success_rate,
    revenue_overview,
    summary,
)
from webhooks.services import (
    CONFLICT,
    SIGNATURE_FAILED,
    UNKNOWN_ACCOUNT,
    UNSUPPORTED_EVENT,
    ReplayRefused,
    ingest,
    replay_event,
)

User = get_user_model()

SECRET = "testsecret"
T0 = datetime(2025, 1, 1, 9, 0, tzinfo=dt_timezone.utc)


def envelope(event, event_id="evt_1", account_id="", status=None, amount=49900, subscription_id=""):
    notes = {"account_id": account_id} if account_id else {}
    payment = {"id": f"pay_{event_id}", "entity": "payment", "amount": amount, "status": status, "notes": notes}
    if subscription_id:
        payment["subscription_id"] = subscription_id
    payload = {"payment": {"entity": payment}}
    if event.startswith("subscription."):
        payload["subscription"] = {
            "entity": {"id": subscription_id or "sub_1", "entity": "subscription", "status": status, "notes": notes}
        }
    body = {"entity": "event", "event": event, "payload": payload, "created_at": 1735722000}
    if event_id:
        body["id"] = event_id
    return json.dumps(body)


def sign(body, secret=SECRET):
    return hmac.new(secret.encode(), body.encode(), hashlib.sha256).hexdigest()


@override_settings(WEBHOOK_SECRET=SECRET, RAZORPAY_KEY_ID="", RAZORPAY_KEY_SECRET="")
class RazorpayWebhookTests(TestCase):
    def setUp(self):
        self.client = Client()
        self.user = User.objects.create_user(username="iron", email="iron@example.com", password="pass1234")
        self.account = self.user.subscription_account

    def post(self, body, signature=None, **extra):
        return self.client.post(
            reverse("webhooks:razorpay-webhook"),
            data=body,
            content_type="application/json",
            HTTP_X_RAZORPAY_SIGNATURE=sign(body) if signature is None else signature,
            **extra,
        )

    def test_payment_captured(self):
        body = envelope("payment.captured", account_id=self.account.account_id, status="captured")
        response = self.post(body)

        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertTrue(data["verified"])
        self.assertTrue(data["processed"])
        self.assertFalse(data["duplicate"])
        self.assertEqual(data["eventId"], "evt_1")

        event = WebhookEvent.objects.get()
        self.assertEqual(event.event_type, WebhookEvent.TYPE_PAYMENT)
        self.assertEqual(event.gym_name, "iron")
        self.assertEqual(event.amount, 49900)
        self.assertIsNotNone(event.processed_at)
        self.assertFalse(event.issue_flag)

        self.account.refresh_from_db()
        self.assertIsNotNone(self.account.subscription_end_date)
        self.assertEqual(self.account.last_applied_event_id, "evt_1")
        self.assertEqual(PaymentRecord.objects.filter(account=self.account).count(), 1)

    def test_event_id_header_wins(self):
        body = envelope("payment.captured", account_id=self.account.account_id, status="captured")
        self.post(body, HTTP_X_RAZORPAY_EVENT_ID="evt_header")
        self.assertEqual(WebhookEvent.objects.get().event_id, "evt_header")

    def test_redelivery_is_applied_once(self):
        body = envelope("payment.captured", account_id=self.account.account_id, status="captured")
        self.post(body)
        self.account.refresh_from_db()
        end = self.account.subscription_end_date

        for _ in range(3):
            response = self.post(body)
            self.assertEqual(response.status_code, 200)
            self.assertTrue(response.json()["duplicate"])

        self.assertEqual(WebhookEvent.objects.count(), 4)
        first = WebhookEvent.objects.get(duplicate=False)
        self.assertFalse(first.issue_flag)
        for event in WebhookEvent.objects.filter(duplicate=True):
            self.assertTrue(event.issue_flag)
            self.assertEqual(event.error_reason, DUPLICATE_REASON)
            self.assertEqual(event.raw_payload, body)

        self.account.refresh_from_db()
        self.assertEqual(self.account.subscription_end_date, end)
        self.assertEqual(PaymentRecord.objects.count(), 1)

    def test_invalid_signature_is_recorded_not_applied(self):
        body = envelope("payment.captured", account_id=self.account.account_id, status="captured")
        response = self.post(body, signature="bad")

        self.assertEqual(response.status_code, 200)
        self.assertFalse(response.json()["verified"])
        event = WebhookEvent.objects.get()
        self.assertTrue(event.issue_flag)
        self.assertEqual(event.error_reason, SIGNATURE_FAILED)
        self.assertIsNone(event.dedupe_key)

        self.account.refresh_from_db()
        self.assertIsNone(self.account.subscription_end_date)

        # a spoofed delivery must not claim the id of the genuine one
        self.post(body)
        genuine = WebhookEvent.objects.filter(verified=True).get()
        self.assertFalse(genuine.duplicate)
        self.assertFalse(genuine.issue_flag)

    def test_unparseable_body_is_kept(self):
        body = "{not json"
        response = self.post(body)
        self.assertEqual(response.status_code, 200)

        event = WebhookEvent.objects.get()
        self.assertEqual(event.raw_payload, body)
        self.assertEqual(event.event_type, WebhookEvent.TYPE_OTHER)
        self.assertTrue(event.issue_flag)
        self.assertEqual(event.error_reason, UNPARSEABLE_PAYLOAD)
        self.assertIsNotNone(event.processed_at)

    def test_missing_event_id(self):
        body = envelope("payment.captured", event_id="", account_id=self.account.account_id, status="captured")
        self.post(body)
        event = WebhookEvent.objects.get()
        self.assertTrue(event.issue_flag)
        self.assertEqual(event.error_reason, MISSING_EVENT_ID)
        self.account.refresh_from_db()
        self.assertIsNone(self.account.subscription_end_date)

    def test_unsupported_event(self):
        self.post(envelope("invoice.paid", account_id=self.account.account_id, status="paid"))
        event = WebhookEvent.objects.get()
        self.assertEqual(event.event_type, WebhookEvent.TYPE_OTHER)
        self.assertEqual(event.error_reason, UNSUPPORTED_EVENT)

    def test_known_event_without_transition(self):
        self.post(envelope("payment.authorized", account_id=self.account.account_id, status="authorized"))
        event = WebhookEvent.objects.get()
        self.assertFalse(event.issue_flag)
        self.account.refresh_from_db()
        self.assertEqual(self.account.status, SubscriptionAccount.STATUS_TRIAL)

    def test_incomplete_event(self):
        self.post(envelope("payment.captured", account_id=self.account.account_id, status="captured", amount=None))
        event = WebhookEvent.objects.get()
        self.assertTrue(event.issue_flag)
        self.assertTrue(event.error_reason.startswith("incomplete event"))

    def test_negative_amount_is_incomplete(self):
        self.post(envelope("payment.captured", account_id=self.account.account_id, status="captured", amount=-100))
        event = WebhookEvent.objects.get()
        self.assertTrue(event.issue_flag)
        self.assertEqual(event.error_reason, "incomplete event: negative amount for payment.captured")
        self.assertFalse(PaymentRecord.objects.exists())
        self.account.refresh_from_db()
        self.assertIsNone(self.account.subscription_end_date)

    def test_oversized_event_id_is_truncated_and_flagged(self):
        event_id = "evt_" + "x" * 250
        self.post(envelope("payment.captured", event_id=event_id, account_id=self.account.account_id, status="captured"))

        event = WebhookEvent.objects.get()
        self.assertEqual(event.event_id, event_id[:191])
        self.assertTrue(event.issue_flag)
        self.assertEqual(event.error_reason, f"{OVERSIZED_FIELD}: event_id")
        self.assertIsNone(event.dedupe_key)
        self.account.refresh_from_db()
        self.assertIsNone(self.account.subscription_end_date)

    def test_oversized_account_id_is_truncated_and_flagged(self):
        self.post(envelope("payment.captured", account_id="a" * 200, status="captured"))
        event = WebhookEvent.objects.get()
        self.assertEqual(event.account_id, "a" * 64)
        self.assertTrue(event.issue_flag)
        self.assertEqual(event.error_reason, f"{OVERSIZED_FIELD}: account_id")
        self.assertIsNotNone(event.processed_at)

    def test_account_found_by_subscription_id(self):
        self.account.razorpay_subscription_id = "sub_iron"
        self.account.save()
        self.post(envelope("subscription.activated", status="active", subscription_id="sub_iron"))

        event = WebhookEvent.objects.get()
        self.assertEqual(event.account_id, self.account.account_id)
        self.assertFalse(event.issue_flag)
        self.account.refresh_from_db()
        self.assertIsNotNone(self.account.subscription_start_date)

    def test_get_not_allowed(self):
        response = self.client.get(reverse("webhooks:razorpay-webhook"))
        self.assertEqual(response.status_code, 405)


class IngestTests(TestCase):
    def setUp(self):
        self.account = SubscriptionAccount.objects.create(
            gym_name="Iron Temple", status=SubscriptionAccount.STATUS_TRIAL, trial_end_date=T0 + timedelta(days=14)
        )

    def test_unknown_account_then_replay(self):
        ghost_id = str(uuid.uuid4())
        body = envelope("subscription.activated", account_id=ghost_id, status="active", subscription_id="sub_late")
        event = ingest(body, received_at=T0, now=T0)
        self.assertTrue(event.issue_flag)
        self.assertEqual(event.error_reason, UNKNOWN_ACCOUNT)

        self.account.razorpay_subscription_id = "sub_late"
        self.account.save()
        replay_event(event, now=T0 + timedelta(hours=1))

        event.refresh_from_db()
        self.assertFalse(event.issue_flag)
        self.assertEqual(event.error_reason, "")
        self.assertEqual(event.replay_count, 1)
        self.assertEqual(event.account_id, self.account.account_id)
        self.account.refresh_from_db()
        self.assertEqual(self.account.subscription_start_date, T0 + timedelta(days=14))

        with self.assertRaises(ReplayRefused):
            replay_event(event)

    def test_duplicates_are_never_replayed(self):
        body = envelope("payment.captured", account_id=self.account.account_id, status="captured")
        ingest(body, received_at=T0, now=T0)
        duplicate = ingest(body, received_at=T0, now=T0)
        self.assertTrue(duplicate.duplicate)
        with self.assertRaises(ReplayRefused):
            replay_event(duplicate)

    def test_truncated_rows_are_never_replayed(self):
        body = envelope("payment.captured", event_id="evt_" + "x" * 250, account_id=self.account.account_id, status="captured")
        event = ingest(body, received_at=T0, now=T0)
        with self.assertRaises(ReplayRefused):
            replay_event(event)
        self.assertEqual(event.replay_count, 0)

    def test_transient_lock_failure_is_retried(self):
        real_select_for_update = SubscriptionAccount.objects.select_for_update
        calls = []

        def flaky(*args, **kwargs):
            calls.append(args)
            if len(calls) == 1:
                raise OperationalError("database is locked")
            return real_select_for_update(*args, **kwargs)

        body = envelope("subscription.activated", account_id=self.account.account_id, status="active")
        with patch.object(SubscriptionAccount.objects, "select_for_update", side_effect=flaky):
            event = ingest(body, received_at=T0, now=T0)

        self.assertEqual(len(calls), 2)
        self.assertFalse(event.issue_flag)
        self.account.refresh_from_db()
        self.assertEqual(self.account.subscription_start_date, T0 + timedelta(days=14))

    @override_settings(SUBSCRIPTION_CONFLICT_RETRIES=2)
    def test_persistent_lock_failure_is_flagged_as_conflict(self):
        body = envelope("subscription.activated", account_id=self.account.account_id, status="active")
        with patch.object(
            SubscriptionAccount.objects, "select_for_update", side_effect=OperationalError("database is locked")
        ) as locked:
            event = ingest(body, received_at=T0, now=T0)

        self.assertEqual(locked.call_count, 3)
        self.assertTrue(event.issue_flag)
        self.assertEqual(event.error_reason, CONFLICT)
        self.account.refresh_from_db()
        self.assertIsNone(self.account.subscription_start_date)

    def test_processing_time(self):
        body = envelope("payment.authorized", account_id=self.account.account_id, status="authorized")
        event = ingest(body, received_at=T0, now=T0 + timedelta(milliseconds=250))
        self.assertEqual(event.processing_time_ms, 250.0)
        self.assertEqual(event.processed_at, T0 + timedelta(milliseconds=250))

    def test_mark_processed_leaves_ledger_fields(self):
        body = envelope("payment.authorized", account_id=self.account.account_id, status="authorized")
        event = append(body, received_at=T0)
        mark_processed(event, T0 - timedelta(seconds=1), ProcessingOutcome(True, "late clock"))

        event.refresh_from_db()
        self.assertEqual(event.processing_time_ms, 0.0)
        self.assertEqual(event.error_reason, "late clock")
        self.assertEqual(event.raw_payload, body)
        self.assertEqual(event.received_at, T0)

    def test_classify(self):
        body = envelope("payment.authorized", event_id="evt_9", status="authorized")
        first, second = append(body), append(body)
        self.assertFalse(classify(first).is_duplicate)
        # classifying the owner again stays first-seen
        self.assertFalse(classify(first).is_duplicate)

        result = classify(second)
        self.assertTrue(result.is_duplicate)
        self.assertEqual(result.prior_entry, first)

        with self.assertRaises(ValueError):
            classify(append(envelope("payment.authorized", event_id="", status="authorized")))


class WebhookDashboardTests(TestCase):
    def setUp(self):
        self.owner = User.objects.create_user(username="owner", password="pass1234", is_staff=True)
        self.client = Client()
        self.client.force_login(self.owner)

        self.iron = SubscriptionAccount.objects.create(gym_name="Iron Temple", status=SubscriptionAccount.STATUS_EXPIRED)
        self.flex = SubscriptionAccount.objects.create(gym_name="Flex Studio", status=SubscriptionAccount.STATUS_EXPIRED)

        day = timedelta(days=1)
        deliveries = [
            ("payment.captured", "evt_a", self.iron, "captured", T0),
            ("payment.captured", "evt_b", self.flex, "captured", T0 + day),
            ("payment.failed", "evt_c", self.iron, "failed", T0 + 2 * day),
            ("payment.captured", "evt_a", self.iron, "captured", T0 + 2 * day),
            ("subscription.cancelled", "evt_d", self.flex, "cancelled", T0 + 4 * day),
        ]
        for name, event_id, account, status, received_at in deliveries:
            ingest(
                envelope(name, event_id=event_id, account_id=account.account_id, status=status),
                received_at=received_at,
                now=received_at + timedelta(milliseconds=100),
            )
        self.report_range = ReportRange(date(2025, 1, 1), date(2025, 1, 5))

    def list(self, **params):
        return self.client.get(reverse("webhooks:webhook-list"), params)

    def test_list_requires_staff(self):
        response = Client().get(reverse("webhooks:webhook-list"))
        self.assertEqual(response.status_code, 302)

    def test_list_newest_first(self):
        data = self.list().json()
        self.assertEqual(data["pagination"]["total"], 5)
        self.assertEqual(data["webhooks"][0]["eventId"], "evt_d")
        self.assertNotIn("analytics", data)

    def test_filters(self):
        data = self.list(issueFlag="true").json()
        self.assertEqual([row["eventId"] for row in data["webhooks"]], ["evt_a"])
        self.assertTrue(data["webhooks"][0]["duplicate"])

        data = self.list(gymName="flex").json()
        self.assertEqual({row["eventId"] for row in data["webhooks"]}, {"evt_b", "evt_d"})

        data = self.list(eventType="subscription").json()
        self.assertEqual(data["pagination"]["total"], 1)

        data = self.list(adminId=self.iron.account_id, status="failed").json()
        self.assertEqual([row["eventId"] for row in data["webhooks"]], ["evt_c"])

        data = self.list(startDate="2025-01-02", endDate="2025-01-03").json()
        self.assertEqual(data["pagination"]["total"], 3)

    def test_pagination_and_sort(self):
        data = self.list(limit=2, page=2, sortBy="eventId", sortOrder="asc").json()
        self.assertEqual(data["pagination"], {"total": 5, "page": 2, "limit": 2, "pages": 3})
        self.assertEqual([row["eventId"] for row in data["webhooks"]], ["evt_b", "evt_c"])

    def test_invalid_filters(self):
        self.assertEqual(self.list(startDate="2025-02-01", endDate="2025-01-01").status_code, 400)
        self.assertEqual(self.list(limit=1000).status_code, 400)
        self.assertEqual(self.list(sortBy="password").status_code, 400)

    def test_list_with_analytics(self):
        data = self.list(includeAnalytics="true", startDate="2025-01-01", endDate="2025-01-05").json()
        self.assertEqual(data["analytics"], summary(self.report_range))

    def test_detail_and_replay(self):
        duplicate = WebhookEvent.objects.get(duplicate=True)
        response = self.client.get(reverse("webhooks:webhook-detail", args=[duplicate.pk]))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["webhook"]["errorReason"], DUPLICATE_REASON)

        response = self.client.post(reverse("webhooks:webhook-replay", args=[duplicate.pk]))
        self.assertEqual(response.status_code, 409)

    def test_payment_success_rate_ignores_duplicates(self):
        self.assertEqual(payment_success_rate(self.report_range), 66.67)

    def test_event_counts_include_every_row(self):
        counts = {row["type"]: row["count"] for row in event_counts(self.report_range)}
        self.assertEqual(counts, {"payment": 4, "subscription": 1})
        self.assertEqual(sum(counts.values()), WebhookEvent.objects.count())

    def test_daily_volume_is_contiguous(self):
        volume = daily_volume(self.report_range)
        self.assertEqual(
            volume,
            [
                {"date": "2025-01-01", "count": 1},
                {"date": "2025-01-02", "count": 1},
                {"date": "2025-01-03", "count": 2},
                {"date": "2025-01-04", "count": 0},
                {"date": "2025-01-05", "count": 1},
            ],
        )

    def test_processing_time_and_issues(self):
        self.assertEqual(average_processing_time_ms(self.report_range), 100.0)
        self.assertEqual(issues_count(self.report_range), 1)
        self.assertEqual(issues_count(ReportRange(date(2024, 1, 1), date(2024, 1, 31))), 0)
        self.assertEqual(payment_success_rate(ReportRange(date(2024, 1, 1), date(2024, 1, 31))), 0.0)

    def test_report_scoped_to_account(self):
        scoped = ReportRange(date(2025, 1, 1), date(2025, 1, 5), account_id=self.flex.account_id)
        self.assertEqual(payment_success_rate(scoped), 100.0)
        self.assertEqual(sum(row["count"] for row in daily_volume(scoped)), 2)

    def test_detailed_analytics(self):
        analytics = detailed_analytics(self.report_range)
        self.assertEqual(analytics["totalWebhooks"], 5)
        self.assertEqual(analytics["duplicateCount"], 1)
        self.assertEqual(analytics["issueCount"], 1)
        self.assertEqual(len(analytics["dailyTrends"]), 5)
        gyms = {row["gymName"]: row for row in analytics["gymCounts"]}
        self.assertEqual(gyms["Iron Temple"]["count"], 3)
        self.assertEqual(gyms["Iron Temple"]["issueCount"], 1)

        response = self.client.get(
            reverse("webhooks:webhook-analytics"), {"startDate": "2025-01-01", "endDate": "2025-01-05"}
        )
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.json()["success"])
        self.assertEqual(response.json()["analytics"]["totalWebhooks"], 5)

    def _date_payments(self):
        for event_id, received_at in (("evt_a", T0), ("evt_b", T0 + timedelta(days=1)), ("evt_c", T0 + timedelta(days=2))):
            PaymentRecord.objects.filter(event_id=event_id).update(created_at=received_at)
        earlier = PaymentRecord.objects.create(account=self.iron, event_id="evt_old", amount_cents=49900)
        PaymentRecord.objects.filter(pk=earlier.pk).update(created_at=T0 - timedelta(days=30))
        refund = {
            "id": "evt_r",
            "event": "refund.processed",
            "payload": {
                "refund": {
                    "entity": {"id": "rfnd_1", "amount": 10000, "status": "processed", "notes": {"account_id": self.iron.account_id}}
                }
            },
        }
        ingest(json.dumps(refund), received_at=T0 + timedelta(days=3), now=T0 + timedelta(days=3))

    def test_revenue_overview(self):
        self._date_payments()
        overview = revenue_overview(self.report_range)

        self.assertEqual(overview["totalRevenue"], 998.0)
        self.assertEqual(overview["totalCapturedPayments"], {"count": 2, "amount": 998.0})
        self.assertEqual(overview["totalFailedPayments"], {"count": 1, "amount": 499.0})
        self.assertEqual(overview["totalPayments"], {"captured": 2, "failed": 1})
        self.assertEqual(overview["totalRefunds"], {"count": 1, "amount": 100.0})
        # Iron Temple paid before the range, so only Flex Studio started a subscription in it
        self.assertEqual(overview["subscriptionStats"], {"created": 1, "renewed": 1, "cancelled": 1})
        self.assertEqual(overview["monthlyRevenueChart"], [{"month": "2025-01", "total": 998.0}])
        self.assertEqual(overview["topPlans"], [{"planName": "ActiveHub Monthly", "count": 2}])
        self.assertEqual(
            [(gym["gymName"], gym["total"]) for gym in overview["topPayingGyms"]],
            [("Flex Studio", 499.0), ("Iron Temple", 499.0)],
        )

    def test_revenue_overview_scoped_to_account(self):
        self._date_payments()
        scoped = revenue_overview(ReportRange(date(2025, 1, 1), date(2025, 1, 5), account_id=self.iron.account_id))
        self.assertEqual(scoped["totalRevenue"], 499.0)
        self.assertEqual(scoped["totalPayments"], {"captured": 1, "failed": 1})
        self.assertEqual(scoped["subscriptionStats"]["created"], 0)

        unknown = revenue_overview(ReportRange(date(2025, 1, 1), date(2025, 1, 5), account_id="not-an-account"))
        self.assertEqual(unknown["totalRevenue"], 0.0)
        self.assertEqual(unknown["topPayingGyms"], [])

    def test_revenue_analytics_endpoint(self):
        self._date_payments()
        response = self.client.get(
            reverse("webhooks:revenue-analytics"), {"startDate": "2025-01-01", "endDate": "2025-01-05"}
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["totalRevenue"], 998.0)

        response = self.client.get(reverse("webhooks:revenue-analytics"), {"startDate": "2025-01-05", "endDate": "2025-01-01"})
        self.assertEqual(response.status_code, 400)

        self.client.logout()
        response = self.client.get(reverse("webhooks:revenue-analytics"))
        self.assertEqual(response.status_code, 302)


@override_settings(WEBHOOK_SECRET=SECRET, RAZORPAY_KEY_ID="", RAZORPAY_KEY_SECRET="")
class TestWebhookCommandTests(TestCase):
    def test_command_applies_event(self):
        account = SubscriptionAccount.objects.create(gym_name="Iron Temple", status=SubscriptionAccount.STATUS_EXPIRED)
        call_command("test_webhook", "--account-id", account.account_id, "--event-id", "evt_cmd", stdout=StringIO())

        account.refresh_from_db()
        self.assertEqual(account.status, SubscriptionAccount.STATUS_ACTIVE)
        self.assertEqual(WebhookEvent.objects.get().event_id, "evt_cmd")

    def test_command_with_unknown_account_id(self):
        out = StringIO()
        call_command("test_webhook", "--account-id", "not-a-uuid", "--event-id", "evt_ghost", stdout=out)

        self.assertIn("not found locally", out.getvalue())
        self.assertNotIn("Account status is now", out.getvalue())
        event = WebhookEvent.objects.get()
        self.assertEqual(event.account_id, "not-a-uuid")
        self.assertEqual(event.error_reason, UNKNOWN_ACCOUNT)
