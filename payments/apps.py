from django.apps import AppConfig


class PaymentsConfig(AppConfig):
    default_auto_field = "django.db.models.AutoField"
    name = "payments"

    gateway = None

    def ready(self):
        from .integrations.razorpay import RazorpayClient

        self.gateway = RazorpayClient.from_settings()
