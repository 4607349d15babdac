from django.contrib import admin
from .models import Order, Payment


class PaymentInline(admin.TabularInline):
    model = Payment
    extra = 0
    can_delete = False
    fields = ("gateway_order_id", "gateway_payment_id", "amount", "status", "method", "created_at")
    readonly_fields = fields


@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):
    list_display = ("order_number", "payment_route", "payment_status", "total_amount", "currency", "created_at")
    search_fields = ("order_number", "payments__gateway_order_id", "payments__gateway_payment_id")
    list_filter = ("payment_status", "payment_route", "created_at")
    # status fields are owned by the payments services
    readonly_fields = ("payment_status", "payment", "created_at", "updated_at")
    inlines = [PaymentInline]


@admin.register(Payment)
class PaymentAdmin(admin.ModelAdmin):
    list_display = ("gateway_order_id", "gateway_payment_id", "status", "amount", "currency", "order", "created_at")
    search_fields = ("gateway_order_id", "gateway_payment_id", "order__order_number", "refund_id")
    list_filter = ("status", "method", "created_at")
    readonly_fields = (
        "order", "gateway_order_id", "gateway_payment_id", "signature", "amount", "status",
        "amount_refunded", "refund_id", "refund_started_at", "last_gateway_payload", "created_at", "updated_at",
    )
