"""
Reconciliation Reporter: read-only aggregates over the webhook ledger and payment history.

Nothing here is cached or written back; every figure is computed from the ledger on
each call, so the dashboard can never disagree with the rows it summarises.
"""
from datetime import date, timedelta
from typing import Callable, Dict, List, NamedTuple

from django.core.exceptions import ValidationError
from django.db.models import Avg, Count, Max, Min, Q, QuerySet, Sum
from django.db.models.functions import ExtractHour, TruncDate, TruncMonth

from subscriptions.lifecycle import SUBSCRIPTION_CANCELLED
from subscriptions.models import PaymentRecord

from .models import WebhookEvent

SUCCESS_STATUSES = ("captured", "authorized", "active")
FAILED_STATUS = "failed"
DEFAULT_RANGE_DAYS = 30
TOP_LIMIT = 5


class ReportRange(NamedTuple):
    start: date
    end: date
    account_id: str = ""
    gym_name: str = ""


def ledger_rows(report_range: ReportRange) -> QuerySet:
    rows = WebhookEvent.objects.filter(
        received_at__date__gte=report_range.start,
        received_at__date__lte=report_range.end,
    )
    if report_range.account_id:
        rows = rows.filter(account_id=report_range.account_id)
    if report_range.gym_name:
        rows = rows.filter(gym_name__icontains=report_range.gym_name)
    return rows.order_by()


def _percentage(part: int, whole: int) -> float:
    return round(part * 100.0 / whole, 2) if whole else 0.0


def payment_success_rate(report_range: ReportRange) -> float:
    payments = ledger_rows(report_range).filter(event_type=WebhookEvent.TYPE_PAYMENT, duplicate=False)
    total = payments.count()
    return _percentage(payments.filter(status__in=SUCCESS_STATUSES).count(), total)


def event_counts(report_range: ReportRange) -> List[dict]:
    rows = ledger_rows(report_range).values("event_type").annotate(count=Count("id")).order_by("event_type")
    return [{"type": row["event_type"], "count": row["count"]} for row in rows]


def average_processing_time_ms(report_range: ReportRange) -> float:
    average = (
        ledger_rows(report_range)
        .filter(duplicate=False, processed_at__isnull=False)
        .aggregate(average=Avg("processing_time_ms"))["average"]
    )
    return round(average, 2) if average is not None else 0.0


def issues_count(report_range: ReportRange) -> int:
    return ledger_rows(report_range).filter(issue_flag=True).count()


def _by_day(report_range: ReportRange, **aggregates) -> Dict[date, dict]:
    rows = (
        ledger_rows(report_range)
        .annotate(day=TruncDate("received_at"))
        .values("day")
        .annotate(**aggregates)
    )
    return {row["day"]: row for row in rows}


def _each_day(report_range: ReportRange, build: Callable[[date], dict]) -> List[dict]:
    days = []
    day = report_range.start
    while day <= report_range.end:
        days.append(build(day))
        day += timedelta(days=1)
    return days


def daily_volume(report_range: ReportRange) -> List[dict]:
    counts = _by_day(report_range, count=Count("id"))
    return _each_day(
        report_range,
        lambda day: {"date": day.isoformat(), "count": counts.get(day, {}).get("count", 0)},
    )


def summary(report_range: ReportRange) -> dict:
    """Figures for the analytics panel above the webhook table."""
    return {
        "paymentSuccessRate": payment_success_rate(report_range),
        "eventCounts": event_counts(report_range),
        "averageProcessingTimeMs": average_processing_time_ms(report_range),
        "dailyWebhookCounts": daily_volume(report_range),
        "totalIssues": issues_count(report_range),
    }


def _status_counts(rows: QuerySet, event_type: str) -> List[dict]:
    grouped = rows.filter(event_type=event_type).values("status").annotate(count=Count("id")).order_by("-count")
    return [{"_id": row["status"], "count": row["count"]} for row in grouped]


def detailed_analytics(report_range: ReportRange) -> dict:
    """Breakdown for the owner's analytics dashboard."""
    rows = ledger_rows(report_range)
    processed = rows.filter(duplicate=False, processed_at__isnull=False)

    gyms = (
        rows.values("account_id", "gym_name")
        .annotate(count=Count("id"), issueCount=Count("id", filter=Q(issue_flag=True)))
        .order_by("-count")
    )
    hours = rows.annotate(hour=ExtractHour("received_at")).values("hour").annotate(count=Count("id")).order_by("hour")
    timings = (
        processed.values("event_type")
        .annotate(avgTime=Avg("processing_time_ms"), minTime=Min("processing_time_ms"), maxTime=Max("processing_time_ms"))
        .order_by("event_type")
    )
    trends = _by_day(
        report_range,
        total=Count("id"),
        success=Count("id", filter=Q(status__in=SUCCESS_STATUSES)),
        failed=Count("id", filter=Q(status=FAILED_STATUS)),
    )
    empty_day = {"total": 0, "success": 0, "failed": 0}

    return {
        "totalWebhooks": rows.count(),
        "paymentStatusCounts": _status_counts(rows, WebhookEvent.TYPE_PAYMENT),
        "subscriptionStatusCounts": _status_counts(rows, WebhookEvent.TYPE_SUBSCRIPTION),
        "eventTypeCounts": [{"_id": row["type"], "count": row["count"]} for row in event_counts(report_range)],
        "gymCounts": [
            {
                "_id": row["account_id"],
                "gymName": row["gym_name"],
                "count": row["count"],
                "issueCount": row["issueCount"],
            }
            for row in gyms
        ],
        "dailyTrends": _each_day(
            report_range,
            lambda day: {
                "date": day.isoformat(),
                **{key: trends.get(day, empty_day)[key] for key in ("total", "success", "failed")},
            },
        ),
        "hourlyDistribution": [{"_id": row["hour"], "count": row["count"]} for row in hours],
        "processingTimeByType": [
            {
                "_id": row["event_type"],
                "avgTime": round(row["avgTime"], 2),
                "minTime": row["minTime"],
                "maxTime": row["maxTime"],
            }
            for row in timings
        ],
        "issueCount": rows.filter(issue_flag=True).count(),
        "duplicateCount": rows.filter(duplicate=True).count(),
        "testModeCount": rows.filter(test_mode=True).count(),
    }


def _major(cents) -> float:
    return round((cents or 0) / 100, 2)


def _payments(report_range: ReportRange) -> QuerySet:
    payments = PaymentRecord.objects.all()
    if report_range.account_id:
        try:
            payments = payments.filter(account_id=report_range.account_id)
        except ValidationError:
            return payments.none()
    if report_range.gym_name:
        payments = payments.filter(account__gym_name__icontains=report_range.gym_name)
    return payments.order_by()


def _totals(payments: QuerySet) -> dict:
    totals = payments.aggregate(count=Count("id"), amount=Sum("amount_cents"))
    return {"count": totals["count"], "amount": _major(totals["amount"])}


def revenue_overview(report_range: ReportRange) -> dict:
    """
    Revenue figures for the owner's analytics page, in major currency units.

    Payment totals come from the payment history the state machine writes; refunds and
    cancellations only exist in the ledger, so those are counted from first deliveries.
    """
    all_payments = _payments(report_range)
    in_range = all_payments.filter(
        created_at__date__gte=report_range.start,
        created_at__date__lte=report_range.end,
    )
    captured = in_range.filter(status=PaymentRecord.STATUS_SUCCESS)
    failed = in_range.filter(status=PaymentRecord.STATUS_FAILED)
    captured_totals = _totals(captured)
    failed_totals = _totals(failed)

    first_deliveries = ledger_rows(report_range).filter(duplicate=False)
    refunds = first_deliveries.filter(event_type=WebhookEvent.TYPE_REFUND)
    refund_totals = refunds.aggregate(count=Count("id"), amount=Sum("amount"))

    # an account's first successful payment starts its subscription; later ones renew it
    created = (
        all_payments.filter(status=PaymentRecord.STATUS_SUCCESS)
        .values("account")
        .annotate(first=Min("created_at"))
        .filter(first__date__gte=report_range.start, first__date__lte=report_range.end)
        .count()
    )

    months = (
        captured.annotate(month=TruncMonth("created_at"))
        .values("month")
        .annotate(total=Sum("amount_cents"))
        .order_by("month")
    )
    plans = captured.values("plan").annotate(count=Count("id")).order_by("-count", "plan")[:TOP_LIMIT]
    gyms = (
        captured.values("account_id", "account__gym_name")
        .annotate(total=Sum("amount_cents"))
        .order_by("-total", "account__gym_name")[:TOP_LIMIT]
    )

    return {
        "totalRevenue": captured_totals["amount"],
        "totalCapturedPayments": captured_totals,
        "totalFailedPayments": failed_totals,
        "totalPayments": {"captured": captured_totals["count"], "failed": failed_totals["count"]},
        "totalRefunds": {"count": refund_totals["count"], "amount": _major(refund_totals["amount"])},
        "subscriptionStats": {
            "created": created,
            "renewed": max(captured_totals["count"] - created, 0),
            "cancelled": first_deliveries.filter(event_name=SUBSCRIPTION_CANCELLED).count(),
        },
        "monthlyRevenueChart": [
            {"month": row["month"].strftime("%Y-%m"), "total": _major(row["total"])} for row in months
        ],
        "topPlans": [{"planName": row["plan"], "count": row["count"]} for row in plans],
        "topPayingGyms": [
            {"_id": str(row["account_id"]), "gymName": row["account__gym_name"], "total": _major(row["total"])}
            for row in gyms
        ],
    }
