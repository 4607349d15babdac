from django.urls import path
from . import views
app_name = "payments"
urlpatterns = [
    path("create-order", views.create_order_view, name="create_order"),
    path("verify", views.verify_view, name="verify"),
    path("callback", views.callback_view, name="callback"),  # https://.../payments/callback
    path("webhook", views.webhook_view, name="webhook"),
    path("refund", views.refund_view, name="refund"),
]
