import uuid

from django.conf import settings
from django.db import models


def _default_currency() -> str:
    return getattr(settings, "PAYMENTS_CURRENCY", "INR")


class PaymentRoute(models.TextChoices):
    COD = "COD", "Cash on delivery"
    PREPAID = "Prepaid", "Prepaid"


class OrderPaymentStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    PAID = "paid", "Paid"
    FAILED = "failed", "Failed"
    REFUNDED = "refunded", "Refunded"


class PaymentStatus(models.TextChoices):
    CREATED = "created", "Created"
    CAPTURED = "captured", "Captured"
    FAILED = "failed", "Failed"
    REFUNDED = "refunded", "Refunded"
    PARTIALLY_REFUNDED = "partially_refunded", "Partially refunded"


class OrderSequence(models.Model):
    """Per-day counter backing customer-facing order numbers."""

    date_key = models.CharField(max_length=6, unique=True)  # yymmdd
    last_value = models.PositiveIntegerField(default=0)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return f"{self.date_key}: {self.last_value}"


class Order(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    order_number = models.CharField(max_length=32, unique=True, db_index=True)

    # minor units (paise)
    total_amount = models.PositiveBigIntegerField()
    currency = models.CharField(max_length=8, default=_default_currency)

    payment_route = models.CharField(max_length=16, choices=PaymentRoute.choices, default=PaymentRoute.PREPAID)
    payment_status = models.CharField(
        max_length=16, choices=OrderPaymentStatus.choices, default=OrderPaymentStatus.PENDING, db_index=True,
    )
    payment = models.ForeignKey(
        "payments.Payment", on_delete=models.SET_NULL, null=True, blank=True, related_name="+",
    )

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ("-created_at",)

    def __str__(self):
        return f"{self.order_number} ({self.payment_status})"

    def save(self, *args, **kwargs):
        if not self.order_number:
            from .utils import generate_order_number
            self.order_number = generate_order_number()
        super().save(*args, **kwargs)

    @property
    def is_paid(self) -> bool:
        return self.payment_status == OrderPaymentStatus.PAID


class Payment(models.Model):
    order = models.ForeignKey(Order, on_delete=models.PROTECT, related_name="payments")

    gateway_order_id = models.CharField(max_length=64, unique=True)
    # populated once the customer completes payment at the gateway
    gateway_payment_id = models.CharField(max_length=64, blank=True, null=True)
    signature = models.CharField(max_length=128, blank=True, default="")

    amount = models.PositiveBigIntegerField()
    currency = models.CharField(max_length=8, default=_default_currency)
    status = models.CharField(
        max_length=24, choices=PaymentStatus.choices, default=PaymentStatus.CREATED, db_index=True,
    )
    method = models.CharField(max_length=32, blank=True, default="")

    amount_refunded = models.PositiveBigIntegerField(default=0)
    refund_id = models.CharField(max_length=64, blank=True, default="")
    # set before the gateway refund call; blocks any further refund request
    refund_started_at = models.DateTimeField(blank=True, null=True)
    notes = models.JSONField(blank=True, null=True)
    last_gateway_payload = models.JSONField(blank=True, null=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ("-created_at",)
        constraints = [
            models.UniqueConstraint(
                fields=["gateway_payment_id"],
                condition=models.Q(gateway_payment_id__isnull=False),
                name="uq_payment_gateway_payment_id",
            ),
        ]

    def __str__(self):
        return f"{self.gateway_order_id} ({self.status})"

    @property
    def is_settled(self) -> bool:
        return self.status != PaymentStatus.CREATED
