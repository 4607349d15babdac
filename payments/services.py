"""Payment reconciliation.

All three confirmation paths (client verify, browser callback, gateway
webhook) end up in :func:`_settle`, which moves a ``created`` Payment to its
terminal status exactly once and updates the parent Order in the same
transaction. The gateway client is passed in by the caller.
"""

import logging
from dataclasses import dataclass
from enum import Enum

from django.core.exceptions import ValidationError
from django.db import DatabaseError, IntegrityError, transaction
from django.utils import timezone

from . import state
from .integrations.razorpay import GatewayUnreachable, RazorpayError
from .models import Order, OrderPaymentStatus, Payment, PaymentRoute, PaymentStatus
from .utils import mask

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    INVALID_SIGNATURE = "invalid_signature"
    PAYMENT_NOT_FOUND = "payment_not_found"
    ORDER_NOT_FOUND = "order_not_found"
    PARTIAL_RECONCILIATION_FAILURE = "partial_reconciliation_failure"
    GATEWAY_UNREACHABLE = "gateway_unreachable"
    GATEWAY_ERROR = "gateway_error"
    NOT_CAPTURED = "not_captured"
    ALREADY_REFUNDED = "already_refunded"
    VALIDATION_ERROR = "validation_error"

    def __str__(self):
        return self.value


class ReconcileStatus(str, Enum):
    CONFIRMED = "confirmed"
    ALREADY_CONFIRMED = "already-confirmed"
    REJECTED = "rejected"

    def __str__(self):
        return self.value


class PaymentError(Exception):
    def __init__(self, kind, message="", order=None):
        self.kind = ErrorKind(kind)
        self.order = order
        super().__init__(message or self.kind.value)


@dataclass
class ReconcileResult:
    status: ReconcileStatus
    payment: Payment | None = None
    error: ErrorKind | None = None

    @property
    def ok(self) -> bool:
        return self.status != ReconcileStatus.REJECTED

    @property
    def order(self):
        return self.payment.order if self.payment is not None else None

    @property
    def order_id(self):
        return str(self.payment.order_id) if self.payment is not None else None

    @property
    def order_number(self):
        order = self.order
        return order.order_number if order is not None else None


class _OrderWriteFailed(Exception):
    pass


WEBHOOK_EVENTS = {
    "payment.captured": PaymentStatus.CAPTURED,
    "payment.failed": PaymentStatus.FAILED,
}


def get_order(order_id):
    try:
        return Order.objects.filter(pk=order_id).first()
    except (ValidationError, ValueError):
        return None


def _reload(pk) -> Payment:
    return Payment.objects.select_related("order").get(pk=pk)


# ---------- Intent creation ----------
def create_payment_intent(gateway, *, order_id, order_number, amount: int):
    """Mint a gateway intent for a prepaid order and record a ``created`` Payment.

    ``amount`` is in minor units and must equal the order total. Returns
    ``(payment, intent)`` where ``intent`` is the gateway's order object.
    """
    order = get_order(order_id)
    if order is None:
        raise PaymentError(ErrorKind.ORDER_NOT_FOUND, "Order not found")
    if order_number and order.order_number != order_number:
        raise PaymentError(ErrorKind.VALIDATION_ERROR, "orderNumber does not match order", order)
    if order.payment_route != PaymentRoute.PREPAID:
        raise PaymentError(ErrorKind.VALIDATION_ERROR, "Order is not a prepaid order", order)
    if order.payment_status == OrderPaymentStatus.PAID:
        raise PaymentError(ErrorKind.VALIDATION_ERROR, "Order is already paid", order)
    if amount != order.total_amount:
        raise PaymentError(ErrorKind.VALIDATION_ERROR, "Amount does not match order total", order)

    try:
        intent = gateway.create_order(
            amount,
            receipt=order.order_number,
            notes={"order_id": str(order.pk), "order_number": order.order_number},
            currency=order.currency,
        )
    except GatewayUnreachable as e:
        raise PaymentError(ErrorKind.GATEWAY_UNREACHABLE, str(e), order)
    except RazorpayError as e:
        raise PaymentError(ErrorKind.GATEWAY_ERROR, str(e), order)

    gateway_order_id = intent.get("id") or ""
    if not gateway_order_id:
        raise PaymentError(ErrorKind.GATEWAY_ERROR, "Gateway did not return an order id", order)

    payment = Payment.objects.create(
        order=order,
        gateway_order_id=gateway_order_id,
        amount=amount,
        currency=intent.get("currency") or order.currency,
    )
    logger.info("Payment intent %s created for order %s", gateway_order_id, order.order_number)
    return payment, intent


# ---------- Reconciliation ----------
def reconcile(gateway, gateway_order_id, gateway_payment_id, signature) -> ReconcileResult:
    """Bring a Payment in line with the gateway after the customer paid.

    Returns ``rejected`` for a bad signature or unknown intent and
    ``already-confirmed`` (without touching the gateway or the database) when
    the Payment has already settled. Raises :class:`PaymentError` when the
    outcome cannot be determined (``gateway_unreachable``) or could not be
    stored (``partial_reconciliation_failure``).
    """
    if not gateway.verify_signature(gateway_order_id, gateway_payment_id, signature):
        return ReconcileResult(ReconcileStatus.REJECTED, error=ErrorKind.INVALID_SIGNATURE)

    payment = Payment.objects.select_related("order").filter(gateway_order_id=gateway_order_id).first()
    if payment is None:
        logger.error("Signed payment %s references unknown gateway order %s", gateway_payment_id, gateway_order_id)
        return ReconcileResult(ReconcileStatus.REJECTED, error=ErrorKind.PAYMENT_NOT_FOUND)

    if payment.is_settled:
        logger.info("Payment %s already %s; nothing to do", gateway_order_id, payment.status)
        return ReconcileResult(ReconcileStatus.ALREADY_CONFIRMED, payment)

    return _settle_from_gateway(gateway, payment, gateway_payment_id, signature)


def settle_pending(gateway, payment: Payment) -> ReconcileResult:
    """Retry a ``created`` Payment whose verified payment id is already on file."""
    if payment.is_settled:
        return ReconcileResult(ReconcileStatus.ALREADY_CONFIRMED, payment)
    if not payment.gateway_payment_id:
        return ReconcileResult(ReconcileStatus.REJECTED, payment, ErrorKind.PAYMENT_NOT_FOUND)
    return _settle_from_gateway(gateway, payment, payment.gateway_payment_id, payment.signature)


def _settle_from_gateway(gateway, payment, gateway_payment_id, signature) -> ReconcileResult:
    try:
        details = gateway.fetch_payment(gateway_payment_id)
    except GatewayUnreachable as e:
        _remember_claim(payment, gateway_payment_id, signature)
        raise PaymentError(ErrorKind.GATEWAY_UNREACHABLE, str(e), payment.order)
    except RazorpayError as e:
        raise PaymentError(ErrorKind.GATEWAY_ERROR, str(e), payment.order)

    target = _target_status(payment, details.get("status"), details.get("amount"))
    return _settle(
        payment, target,
        gateway_payment_id=gateway_payment_id,
        signature=signature,
        method=details.get("method") or "",
        payload=details,
    )


def _target_status(payment, gateway_status, gateway_amount) -> PaymentStatus:
    target = state.status_from_gateway(gateway_status)
    if target == PaymentStatus.CAPTURED and gateway_amount is not None and int(gateway_amount) != payment.amount:
        logger.error(
            "Gateway captured %s for payment %s but %s was expected; settling as failed",
            gateway_amount, payment.gateway_order_id, payment.amount,
        )
        return PaymentStatus.FAILED
    return target


def _remember_claim(payment, gateway_payment_id, signature):
    # keep the verified claim so a later sweep can finish the job; status stays created
    try:
        with transaction.atomic():
            Payment.objects.filter(pk=payment.pk, status=PaymentStatus.CREATED).update(
                gateway_payment_id=gateway_payment_id,
                signature=signature or "",
                updated_at=timezone.now(),
            )
    except IntegrityError:
        logger.exception("Could not record payment id %s on %s", gateway_payment_id, payment.gateway_order_id)


def _settle(payment, target, *, gateway_payment_id, signature, method, payload) -> ReconcileResult:
    try:
        with transaction.atomic():
            locked = Payment.objects.select_for_update().get(pk=payment.pk)
            if locked.is_settled:
                # another path won the race while we were talking to the gateway
                return ReconcileResult(ReconcileStatus.ALREADY_CONFIRMED, _reload(locked.pk))

            locked.status = state.transition(locked.status, target)
            if gateway_payment_id:
                locked.gateway_payment_id = gateway_payment_id
            if signature:
                locked.signature = signature
            if method:
                locked.method = method
            locked.last_gateway_payload = payload
            locked.save(update_fields=[
                "status", "gateway_payment_id", "signature", "method", "last_gateway_payload", "updated_at",
            ])

            try:
                _write_order(locked)
            except (DatabaseError, Order.DoesNotExist) as e:
                raise _OrderWriteFailed(str(e)) from e
    except _OrderWriteFailed as e:
        logger.error(
            "Order update failed while settling payment %s as %s; transaction rolled back: %s",
            payment.gateway_order_id, target, e,
        )
        raise PaymentError(
            ErrorKind.PARTIAL_RECONCILIATION_FAILURE,
            "Payment settled but order could not be updated",
            payment.order,
        )

    settled = _reload(payment.pk)
    logger.info(
        "Payment %s (%s) settled as %s; order %s is %s",
        settled.gateway_order_id, settled.gateway_payment_id, settled.status,
        settled.order.order_number, settled.order.payment_status,
    )
    return ReconcileResult(ReconcileStatus.CONFIRMED, settled)


def _write_order(payment: Payment) -> Order:
    order = Order.objects.select_for_update().get(pk=payment.order_id)
    if order.payment_id not in (None, payment.pk) and order.payment_status in (
        OrderPaymentStatus.PAID, OrderPaymentStatus.REFUNDED,
    ):
        # the order is already settled by a different attempt; never downgrade it
        if payment.status == PaymentStatus.CAPTURED:
            logger.error(
                "Second capture %s on order %s already paid by payment #%s; refund required",
                payment.gateway_payment_id, order.order_number, order.payment_id,
            )
        return order

    order.payment_status = state.order_status_for(payment.status)
    order.payment = payment
    order.save(update_fields=["payment_status", "payment", "updated_at"])
    return order


# ---------- Webhook ----------
def apply_webhook_event(event: str, entity: dict):
    """Settle a Payment from an authenticated webhook event.

    Returns ``None`` for events this app does not handle. The event kind is
    taken as the gateway's authoritative status, so no gateway call is made.
    """
    target = WEBHOOK_EVENTS.get(event)
    if target is None:
        return None

    gateway_payment_id = str(entity.get("id") or "")
    gateway_order_id = str(entity.get("order_id") or "")

    payment = None
    if gateway_payment_id:
        payment = Payment.objects.select_related("order").filter(gateway_payment_id=gateway_payment_id).first()
    if payment is None and target == PaymentStatus.CAPTURED and gateway_order_id:
        # webhook overtook the browser; only a capture may claim the intent this way
        payment = Payment.objects.select_related("order").filter(gateway_order_id=gateway_order_id).first()
    if payment is None:
        return ReconcileResult(ReconcileStatus.REJECTED, error=ErrorKind.PAYMENT_NOT_FOUND)

    if payment.is_settled:
        return ReconcileResult(ReconcileStatus.ALREADY_CONFIRMED, payment)

    if target == PaymentStatus.CAPTURED:
        target = _target_status(payment, "captured", entity.get("amount"))
    return _settle(
        payment, target,
        gateway_payment_id=gateway_payment_id,
        signature="",
        method=entity.get("method") or "",
        payload=entity,
    )


# ---------- Refunds ----------
def refund_payment(gateway, gateway_payment_id, amount=None, notes=None):
    """Refund a captured payment in full or in part (``amount`` in minor units).

    ``refund_started_at`` is stamped and committed before the gateway call.
    Any later request for the same payment fails ``already_refunded``, even
    when this one refunded at the gateway but could not record it locally
    (reported as ``partial_reconciliation_failure``). The stamp is cleared
    only when the gateway did not confirm the refund. Returns
    ``(payment, refund)``.
    """
    if not gateway_payment_id:
        raise PaymentError(ErrorKind.VALIDATION_ERROR, "gatewayPaymentId is required")

    payment, refund_amount = _claim_refund(gateway_payment_id, amount)

    try:
        refund = gateway.refund(gateway_payment_id, amount, notes)
    except GatewayUnreachable as e:
        logger.warning("Refund for %s not confirmed by gateway: %s", mask(gateway_payment_id), e)
        _release_refund(payment)
        raise PaymentError(ErrorKind.GATEWAY_UNREACHABLE, str(e), payment.order)
    except RazorpayError as e:
        _release_refund(payment)
        raise PaymentError(ErrorKind.GATEWAY_ERROR, str(e), payment.order)

    try:
        with transaction.atomic():
            locked = Payment.objects.select_for_update().get(pk=payment.pk)
            locked.status = state.transition(locked.status, state.refund_status(refund_amount, locked.amount))
            locked.amount_refunded = int(refund.get("amount") or refund_amount)
            locked.refund_id = refund.get("id") or ""
            if notes:
                locked.notes = notes
            locked.save(update_fields=["status", "amount_refunded", "refund_id", "notes", "updated_at"])

            Order.objects.filter(pk=locked.order_id).update(
                payment_status=state.order_status_for(locked.status),
                updated_at=timezone.now(),
            )
    except DatabaseError as e:
        logger.error(
            "Refund %s (%s) issued for payment %s but not recorded; payment stays locked for refunds: %s",
            refund.get("id"), refund.get("amount") or refund_amount, gateway_payment_id, e,
        )
        raise PaymentError(
            ErrorKind.PARTIAL_RECONCILIATION_FAILURE,
            "Refund issued but payment could not be updated",
        )

    logger.info("Payment %s %s (%s refunded)", gateway_payment_id, locked.status, locked.amount_refunded)
    return _reload(payment.pk), refund


def _claim_refund(gateway_payment_id, amount):
    with transaction.atomic():
        payment = Payment.objects.select_for_update().filter(gateway_payment_id=gateway_payment_id).first()
        if payment is None:
            raise PaymentError(ErrorKind.PAYMENT_NOT_FOUND, "Payment not found")
        if payment.status in state.REFUNDED_STATES:
            raise PaymentError(ErrorKind.ALREADY_REFUNDED, "Payment has already been refunded", payment.order)
        if payment.status != PaymentStatus.CAPTURED:
            raise PaymentError(ErrorKind.NOT_CAPTURED, "Only captured payments can be refunded", payment.order)
        if payment.refund_started_at is not None:
            logger.error(
                "Refund for %s requested again; a refund started at %s was never recorded",
                gateway_payment_id, payment.refund_started_at,
            )
            raise PaymentError(ErrorKind.ALREADY_REFUNDED, "A refund is already in progress for this payment", payment.order)

        refund_amount = payment.amount if amount is None else amount
        if refund_amount <= 0 or refund_amount > payment.amount:
            raise PaymentError(ErrorKind.VALIDATION_ERROR, "Refund amount must be between 0 and the captured amount", payment.order)

        now = timezone.now()
        Payment.objects.filter(pk=payment.pk).update(refund_started_at=now, updated_at=now)
        payment.refund_started_at = now
    return payment, refund_amount


def _release_refund(payment):
    Payment.objects.filter(pk=payment.pk, status=PaymentStatus.CAPTURED).update(
        refund_started_at=None, updated_at=timezone.now(),
    )
