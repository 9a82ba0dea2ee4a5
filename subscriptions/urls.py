from django.urls import path

from . import views

app_name = "subscriptions"

urlpatterns = [
    path("subscription/status/", views.subscription_status, name="status"),
    path("subscription/cancel/", views.cancel_subscription, name="cancel"),
    path("payment/history/", views.payment_history, name="payment-history"),
    path("payment/invoice/<int:pk>/", views.InvoiceView.as_view(), name="invoice"),
    path("payment/create-subscription/", views.create_subscription, name="create-subscription"),
    path("payment/verify-subscription/", views.verify_subscription, name="verify-subscription"),
    path("owner/gyms/", views.owner_gyms, name="owner-gyms"),
]
