import json
import logging
from io import BytesIO

from django.contrib.admin.views.decorators import staff_member_required
from django.contrib.auth.decorators import login_required
from django.contrib.auth.mixins import LoginRequiredMixin
from django.db.models import Q
from django.http import HttpRequest, HttpResponse, JsonResponse
from django.shortcuts import get_object_or_404
from django.views import View
from django.views.decorators.http import require_GET, require_POST
from reportlab.lib import colors
from reportlab.lib.pagesizes import letter
from reportlab.lib.styles import getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from .lifecycle import InvalidTransition, read_account, request_cancellation, status_snapshot
from .models import PaymentRecord, SubscriptionAccount
from .services import (
    GatewayError,
    create_razorpay_subscription,
    get_public_razorpay_key,
    get_razorpay_keys,
    verify_subscription_signature,
)

logger = logging.getLogger(__name__)


def _own_account(request: HttpRequest) -> SubscriptionAccount:
    return get_object_or_404(SubscriptionAccount, user=request.user)


def _iso(value):
    return value.isoformat() if value else None


@login_required
@require_GET
def subscription_status(request: HttpRequest) -> JsonResponse:
    """Current subscription state, reconciled against the clock before it is returned."""
    account = read_account(_own_account(request).pk)
    return JsonResponse(status_snapshot(account))


@login_required
@require_POST
def cancel_subscription(request: HttpRequest) -> JsonResponse:
    account = _own_account(request)
    try:
        account = request_cancellation(account.pk)
    except InvalidTransition as e:
        logger.info(f"Cancellation refused for account {account.pk}: {e}")
        return JsonResponse({"success": False, "error": str(e)}, status=409)

    logger.info(f"Cancellation requested for account {account.pk}")
    return JsonResponse({"success": True, **status_snapshot(account)})


@login_required
@require_GET
def payment_history(request: HttpRequest) -> JsonResponse:
    payments = PaymentRecord.objects.filter(account__user=request.user)
    history = [
        {
            "paymentId": payment.payment_id or payment.event_id,
            "amount": payment.amount_display,
            "plan": payment.plan,
            "startDate": _iso(payment.period_start),
            "endDate": _iso(payment.period_end),
            "status": payment.status,
            "createdAt": _iso(payment.created_at),
        }
        for payment in payments
    ]
    return JsonResponse(history, safe=False)


@login_required
@require_POST
def create_subscription(request: HttpRequest) -> JsonResponse:
    """Start a Razorpay checkout for the signed-in gym."""
    account = _own_account(request)
    try:
        subscription = create_razorpay_subscription(account)
    except GatewayError as e:
        return JsonResponse({"error": str(e)}, status=502)

    return JsonResponse({"subscriptionId": subscription["id"], "key": get_public_razorpay_key()})


@login_required
@require_POST
def verify_subscription(request: HttpRequest) -> JsonResponse:
    """
    Check the checkout handler's signature.

    Nothing changes here: the account moves only when the matching webhook arrives.
    """
    try:
        data = json.loads(request.body.decode("utf-8") or "{}")
    except (json.JSONDecodeError, UnicodeDecodeError):
        return JsonResponse({"verified": False, "error": "Invalid JSON"}, status=400)

    _, key_secret = get_razorpay_keys()
    verified = verify_subscription_signature(
        data.get("razorpay_payment_id", ""),
        data.get("razorpay_subscription_id", ""),
        data.get("razorpay_signature", ""),
        key_secret,
    )
    if not verified:
        logger.warning(f"Checkout signature mismatch for user {request.user.pk}")
    return JsonResponse({"verified": verified}, status=200 if verified else 400)


@staff_member_required
@require_GET
def owner_gyms(request: HttpRequest) -> JsonResponse:
    accounts = SubscriptionAccount.objects.all()
    search = request.GET.get("search", "").strip()
    if search:
        accounts = accounts.filter(Q(gym_name__icontains=search) | Q(email__icontains=search))

    gyms = []
    for account in accounts:
        account = read_account(account.pk)
        last_payment = account.payments.filter(status=PaymentRecord.STATUS_SUCCESS).first()
        gyms.append(
            {
                "_id": account.account_id,
                "gymName": account.gym_name,
                "email": account.email,
                "subscription": {
                    "status": account.status,
                    "startDate": _iso(account.subscription_start_date),
                    "endDate": _iso(account.subscription_end_date),
                    "trialEndsAt": _iso(account.trial_end_date),
                    "graceEndDate": _iso(account.grace_end_date),
                    "pendingCancellation": account.pending_cancellation,
                    "amount": last_payment.amount_display if last_payment else None,
                },
            }
        )
    return JsonResponse({"gyms": gyms})


class InvoiceView(LoginRequiredMixin, View):
    """Generate and download a PDF receipt for a subscription payment."""

    def get(self, request, pk):
        payment = get_object_or_404(
            PaymentRecord,
            pk=pk,
            account__user=request.user,
            status=PaymentRecord.STATUS_SUCCESS,
        )
        account = payment.account

        buffer = BytesIO()
        doc = SimpleDocTemplate(buffer, pagesize=letter)
        elements = []
        styles = getSampleStyleSheet()

        elements.append(Paragraph(f"<b>Receipt - Payment {payment.payment_id or payment.pk}</b>", styles["Title"]))
        elements.append(Spacer(1, 0.3 * inch))

        elements.append(Paragraph(
            f"<b>Date:</b> {payment.created_at.strftime('%B %d, %Y')}<br/>"
            f"<b>Gym:</b> {account.gym_name}<br/>"
            f"<b>Email:</b> {account.email}",
            styles["Normal"]
        ))
        elements.append(Spacer(1, 0.3 * inch))

        period = "-"
        if payment.period_start and payment.period_end:
            period = f"{payment.period_start:%d %b %Y} - {payment.period_end:%d %b %Y}"
        data = [
            ["Plan", "Period", "Amount"],
            [payment.plan, period, f"{payment.amount_display:.2f}"],
            ["", "Total", f"{payment.amount_display:.2f}"],
        ]
        table = Table(data, colWidths=[2.5 * inch, 3 * inch, 1.5 * inch])
        table.setStyle(TableStyle([
            ("BACKGROUND", (0, 0), (-1, 0), colors.grey),
            ("TEXTCOLOR", (0, 0), (-1, 0), colors.whitesmoke),
            ("ALIGN", (0, 0), (-1, -1), "CENTER"),
            ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
            ("BOTTOMPADDING", (0, 0), (-1, 0), 12),
            ("BACKGROUND", (0, 1), (-1, -2), colors.beige),
            ("GRID", (0, 0), (-1, -1), 1, colors.black),
        ]))
        elements.append(table)

        doc.build(elements)
        buffer.seek(0)

        response = HttpResponse(buffer, content_type="application/pdf")
        response["Content-Disposition"] = f'attachment; filename="receipt_{payment.pk}.pdf"'
        return response
