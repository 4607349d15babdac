"""Payment/order state machine.

Every new ``Payment.status`` and ``Order.payment_status`` value written by the
payments app is produced here. Callers ask for a transition; anything outside
the table below raises :class:`InvalidTransition`.
"""

from .models import OrderPaymentStatus, PaymentStatus

GATEWAY_CAPTURED = "captured"

_ALLOWED = {
    PaymentStatus.CREATED: {PaymentStatus.CAPTURED, PaymentStatus.FAILED},
    PaymentStatus.CAPTURED: {PaymentStatus.REFUNDED, PaymentStatus.PARTIALLY_REFUNDED},
}

_ORDER_STATUS = {
    PaymentStatus.CAPTURED: OrderPaymentStatus.PAID,
    PaymentStatus.FAILED: OrderPaymentStatus.FAILED,
    PaymentStatus.REFUNDED: OrderPaymentStatus.REFUNDED,
    PaymentStatus.PARTIALLY_REFUNDED: OrderPaymentStatus.REFUNDED,
}

REFUNDED_STATES = frozenset({PaymentStatus.REFUNDED, PaymentStatus.PARTIALLY_REFUNDED})


class InvalidTransition(Exception):
    def __init__(self, current, target):
        self.current = current
        self.target = target
        super().__init__(f"Payment cannot move from {current} to {target}")


def can_transition(current, target) -> bool:
    return PaymentStatus(target) in _ALLOWED.get(PaymentStatus(current), ())


def transition(current, target) -> PaymentStatus:
    """Return ``target`` as a PaymentStatus if ``current -> target`` is allowed."""
    if not can_transition(current, target):
        raise InvalidTransition(current, target)
    return PaymentStatus(target)


def order_status_for(payment_status) -> OrderPaymentStatus:
    return _ORDER_STATUS[PaymentStatus(payment_status)]


def status_from_gateway(gateway_status) -> PaymentStatus:
    # authorized/created/refunded at the gateway are not a completed capture
    if str(gateway_status or "").lower() == GATEWAY_CAPTURED:
        return PaymentStatus.CAPTURED
    return PaymentStatus.FAILED


def refund_status(refund_amount: int, captured_amount: int) -> PaymentStatus:
    if refund_amount < captured_amount:
        return PaymentStatus.PARTIALLY_REFUNDED
    return PaymentStatus.REFUNDED
