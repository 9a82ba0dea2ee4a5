import logging

from django.contrib.admin.views.decorators import staff_member_required
from django.core.paginator import Paginator
from django.http import HttpRequest, HttpResponse, JsonResponse
from django.shortcuts import get_object_or_404
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_GET, require_POST

from subscriptions.services import get_webhook_secret, is_test_mode, verify_webhook_signature

from .forms import WebhookFilterForm
from .models import WebhookEvent
from .reporting import detailed_analytics, revenue_overview, summary
from .services import ReplayRefused, ingest, replay_event

logger = logging.getLogger(__name__)

RAZORPAY_SIGNATURE_HEADER = "X-Razorpay-Signature"


@csrf_exempt
@require_POST
def razorpay_webhook(request: HttpRequest) -> HttpResponse:
    """
    Receive Razorpay webhook events.

    Every delivery is written to the ledger, including ones that fail signature
    verification or cannot be parsed; those are flagged instead of rejected. The
    gateway always gets a 200 so it does not retry problems a retry cannot fix.
    """
    try:
        payload = request.body
        signature = request.headers.get(RAZORPAY_SIGNATURE_HEADER, "")

        webhook_secret = get_webhook_secret()
        if not webhook_secret:
            logger.error("No webhook secret configured")

        verified = verify_webhook_signature(payload, signature, webhook_secret)
        event = ingest(
            payload,
            headers=dict(request.headers),
            signature=signature,
            verified=verified,
            test_mode=is_test_mode(),
        )

        return JsonResponse({
            "received": True,
            "verified": verified,
            "eventId": event.event_id,
            "duplicate": event.duplicate,
            "issueFlag": event.issue_flag,
            "processed": not event.issue_flag,
        })

    except Exception as e:
        logger.error(f"Unexpected error in webhook endpoint: {e}", exc_info=True)
        return JsonResponse({"error": "Internal server error"}, status=500)


def _invalid_filters(form: WebhookFilterForm) -> JsonResponse:
    return JsonResponse({"success": False, "error": "Invalid filters", "details": form.errors.get_json_data()}, status=400)


@staff_member_required
@require_GET
def webhook_list(request: HttpRequest) -> JsonResponse:
    form = WebhookFilterForm(request.GET)
    if not form.is_valid():
        return _invalid_filters(form)

    queryset = form.filter_queryset(WebhookEvent.objects.all())
    paginator = Paginator(queryset, form.page_size)
    page = paginator.get_page(form.cleaned_data.get("page") or 1)

    body = {
        "webhooks": [event.as_dashboard_dict() for event in page.object_list],
        "pagination": {
            "total": paginator.count,
            "page": page.number,
            "limit": form.page_size,
            "pages": paginator.num_pages,
        },
    }
    if form.cleaned_data.get("includeAnalytics"):
        body["analytics"] = summary(form.report_range())
    return JsonResponse(body)


@staff_member_required
@require_GET
def webhook_analytics(request: HttpRequest) -> JsonResponse:
    form = WebhookFilterForm(request.GET)
    if not form.is_valid():
        return _invalid_filters(form)
    return JsonResponse({"success": True, "analytics": detailed_analytics(form.report_range())})


@staff_member_required
@require_GET
def revenue_analytics(request: HttpRequest) -> JsonResponse:
    form = WebhookFilterForm(request.GET)
    if not form.is_valid():
        return _invalid_filters(form)
    return JsonResponse(revenue_overview(form.report_range()))


@staff_member_required
@require_GET
def webhook_detail(request: HttpRequest, pk: int) -> JsonResponse:
    event = get_object_or_404(WebhookEvent, pk=pk)
    return JsonResponse({"webhook": {**event.as_dashboard_dict(), "headers": event.headers, "payload": event.payload}})


@staff_member_required
@require_POST
def webhook_replay(request: HttpRequest, pk: int) -> JsonResponse:
    event = get_object_or_404(WebhookEvent, pk=pk)
    try:
        replay_event(event)
    except ReplayRefused as e:
        return JsonResponse({"success": False, "error": str(e)}, status=409)

    return JsonResponse({"success": True, "webhook": event.as_dashboard_dict()})
