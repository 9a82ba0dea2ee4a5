from django.urls import path

from . import views

app_name = "webhooks"

urlpatterns = [
    path("webhooks/razorpay/", views.razorpay_webhook, name="razorpay-webhook"),
    path("owner/webhooks/detailed/", views.webhook_list, name="webhook-list"),
    path("owner/webhooks/analytics/", views.webhook_analytics, name="webhook-analytics"),
    path("owner/analytics/", views.revenue_analytics, name="revenue-analytics"),
    path("owner/webhooks/<int:pk>/", views.webhook_detail, name="webhook-detail"),
    path("owner/webhooks/replay/<int:pk>/", views.webhook_replay, name="webhook-replay"),
]
