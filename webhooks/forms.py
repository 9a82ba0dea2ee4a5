from datetime import timedelta

from django import forms
from django.db.models import QuerySet
from django.utils import timezone

from .models import WebhookEvent
from .reporting import DEFAULT_RANGE_DAYS, ReportRange

# Query parameter names are the ones the owner dashboard sends.
SORT_FIELDS = {
    "receivedAt": "received_at",
    "processedAt": "processed_at",
    "event": "event_name",
    "eventId": "event_id",
    "eventType": "event_type",
    "status": "status",
    "amount": "amount",
    "gymName": "gym_name",
    "adminId": "account_id",
    "processingTimeMs": "processing_time_ms",
    "issueFlag": "issue_flag",
    "duplicate": "duplicate",
    "testMode": "test_mode",
}

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


class WebhookFilterForm(forms.Form):
    event = forms.CharField(required=False)
    eventType = forms.ChoiceField(choices=[("", "All")] + WebhookEvent.TYPE_CHOICES, required=False)
    status = forms.CharField(required=False)
    gymName = forms.CharField(required=False)
    adminId = forms.CharField(required=False)
    accountId = forms.CharField(required=False)
    issueFlag = forms.NullBooleanField(required=False)
    startDate = forms.DateField(required=False)
    endDate = forms.DateField(required=False)
    sortBy = forms.ChoiceField(choices=[(key, key) for key in SORT_FIELDS], required=False)
    sortOrder = forms.ChoiceField(choices=[("asc", "Ascending"), ("desc", "Descending")], required=False)
    page = forms.IntegerField(min_value=1, required=False)
    limit = forms.IntegerField(min_value=1, max_value=MAX_PAGE_SIZE, required=False)
    includeAnalytics = forms.BooleanField(required=False)

    def clean(self):
        cleaned_data = super().clean()
        start, end = cleaned_data.get("startDate"), cleaned_data.get("endDate")
        if start and end and start > end:
            raise forms.ValidationError("startDate must not be after endDate.")
        return cleaned_data

    @property
    def account_id(self) -> str:
        return self.cleaned_data.get("adminId") or self.cleaned_data.get("accountId") or ""

    @property
    def page_size(self) -> int:
        return self.cleaned_data.get("limit") or DEFAULT_PAGE_SIZE

    def filter_queryset(self, queryset: QuerySet) -> QuerySet:
        data = self.cleaned_data
        if data.get("event"):
            queryset = queryset.filter(event_name__icontains=data["event"])
        if data.get("eventType"):
            queryset = queryset.filter(event_type=data["eventType"])
        if data.get("status"):
            queryset = queryset.filter(status__iexact=data["status"])
        if data.get("gymName"):
            queryset = queryset.filter(gym_name__icontains=data["gymName"])
        if self.account_id:
            queryset = queryset.filter(account_id=self.account_id)
        if data.get("issueFlag") is not None:
            queryset = queryset.filter(issue_flag=data["issueFlag"])
        if data.get("startDate"):
            queryset = queryset.filter(received_at__date__gte=data["startDate"])
        if data.get("endDate"):
            queryset = queryset.filter(received_at__date__lte=data["endDate"])

        field = SORT_FIELDS[data.get("sortBy") or "receivedAt"]
        prefix = "" if data.get("sortOrder") == "asc" else "-"
        return queryset.order_by(f"{prefix}{field}", f"{prefix}id")

    def report_range(self) -> ReportRange:
        """Date range for analytics; defaults to the last 30 days."""
        start, end = self.cleaned_data.get("startDate"), self.cleaned_data.get("endDate")
        today = timezone.localdate()
        end = end or max(today, start or today)
        start = start or end - timedelta(days=DEFAULT_RANGE_DAYS)
        return ReportRange(start, end, account_id=self.account_id, gym_name=self.cleaned_data.get("gymName") or "")
