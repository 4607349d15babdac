"""In-memory gateway and model factories shared by the payments tests."""

from django.conf import settings

from .integrations.razorpay import GatewayUnreachable
from .models import Order, Payment, PaymentRoute
from .utils import sign_payment, verify_payment_signature


class FakeGateway:
    """Records every call; answers from ``payments`` / ``refunds`` dicts."""

    def __init__(self, secret=None):
        self.secret = secret or settings.RAZORPAY_KEY_SECRET
        self.public_key = settings.RAZORPAY_KEY_ID
        self.calls = []
        self.payments = {}
        self.fetch_error = None
        self.create_error = None
        self.refund_error = None
        self._seq = 0

    def calls_to(self, name):
        return [c for c in self.calls if c[0] == name]

    def set_payment(self, payment_id, status="captured", amount=99900, method="upi", order_id=""):
        self.payments[payment_id] = {
            "id": payment_id, "entity": "payment", "status": status,
            "amount": amount, "method": method, "order_id": order_id,
        }

    def create_order(self, amount, receipt, notes=None, currency="INR"):
        self.calls.append(("create_order", amount, receipt))
        if self.create_error:
            raise self.create_error
        self._seq += 1
        return {"id": f"order_test{self._seq}", "amount": amount, "currency": currency, "receipt": receipt, "status": "created"}

    def fetch_payment(self, payment_id):
        self.calls.append(("fetch_payment", payment_id))
        if self.fetch_error:
            raise self.fetch_error
        if payment_id not in self.payments:
            raise GatewayUnreachable(f"no payment {payment_id}")
        return dict(self.payments[payment_id])

    def refund(self, payment_id, amount=None, notes=None):
        self.calls.append(("refund", payment_id, amount))
        if self.refund_error:
            raise self.refund_error
        full = self.payments.get(payment_id, {}).get("amount", 0)
        return {"id": f"rfnd_{len(self.calls_to('refund'))}", "entity": "refund", "amount": amount or full, "payment_id": payment_id}

    def verify_signature(self, order_id, payment_id, signature):
        self.calls.append(("verify_signature", order_id, payment_id))
        return verify_payment_signature(order_id, payment_id, signature, self.secret)


def sign(gateway_order_id, gateway_payment_id):
    return sign_payment(gateway_order_id, gateway_payment_id, settings.RAZORPAY_KEY_SECRET)


def make_order(total_amount=99900, payment_route=PaymentRoute.PREPAID, **kwargs):
    return Order.objects.create(total_amount=total_amount, payment_route=payment_route, **kwargs)


def make_payment(order, gateway_order_id="go_1", **kwargs):
    kwargs.setdefault("amount", order.total_amount)
    return Payment.objects.create(order=order, gateway_order_id=gateway_order_id, **kwargs)
