from decimal import Decimal
from io import StringIO
from unittest.mock import MagicMock, patch

import requests
from django.core.management import call_command
from django.test import SimpleTestCase, TestCase

from . import utils
from .integrations.razorpay import GatewayUnreachable, RazorpayClient, RazorpayError
from .models import OrderPaymentStatus, Payment, PaymentStatus
from .testing import FakeGateway, make_order, make_payment, sign

SECRET = "s3cret"


class SignatureTests(SimpleTestCase):
    def test_payment_signature_round_trip(self):
        sig = utils.sign_payment("order_1", "pay_1", SECRET)
        self.assertTrue(utils.verify_payment_signature("order_1", "pay_1", sig, SECRET))

    def test_payment_signature_binds_both_ids(self):
        sig = utils.sign_payment("order_1", "pay_1", SECRET)
        self.assertFalse(utils.verify_payment_signature("order_2", "pay_1", sig, SECRET))
        self.assertFalse(utils.verify_payment_signature("order_1", "pay_2", sig, SECRET))
        self.assertFalse(utils.verify_payment_signature("order_1", "pay_1", sig, "other"))

    def test_empty_inputs_rejected(self):
        sig = utils.sign_payment("order_1", "pay_1", SECRET)
        self.assertFalse(utils.verify_payment_signature("", "pay_1", sig, SECRET))
        self.assertFalse(utils.verify_payment_signature("order_1", "", sig, SECRET))
        self.assertFalse(utils.verify_payment_signature("order_1", "pay_1", "", SECRET))
        self.assertFalse(utils.verify_payment_signature("order_1", "pay_1", None, SECRET))

    def test_non_ascii_signature_rejected(self):
        body = b'{"event":"payment.captured"}'
        for sig in ("é" * 64, "sigé", "☃"):
            with self.subTest(sig=sig):
                self.assertFalse(utils.verify_payment_signature("order_1", "pay_1", sig, SECRET))
                self.assertFalse(utils.verify_webhook_signature(body, sig, SECRET))

    def test_missing_secret_never_verifies(self):
        sig = utils.sign_payment("order_1", "pay_1", "")
        with self.assertLogs("payments.utils", level="ERROR"):
            self.assertFalse(utils.verify_payment_signature("order_1", "pay_1", sig, ""))

    def test_webhook_signature_over_raw_body(self):
        body = b'{"event":"payment.captured"}'
        sig = utils.sign_webhook(body, SECRET)
        self.assertTrue(utils.verify_webhook_signature(body, sig, SECRET))
        self.assertFalse(utils.verify_webhook_signature(body + b" ", sig, SECRET))
        self.assertFalse(utils.verify_webhook_signature(body, "", SECRET))


class MinorUnitTests(SimpleTestCase):
    def test_to_minor_units(self):
        self.assertEqual(utils.to_minor_units(999), 99900)
        self.assertEqual(utils.to_minor_units("999.5"), 99950)
        self.assertEqual(utils.to_minor_units(" 10.05 "), 1005)
        self.assertEqual(utils.to_minor_units(Decimal("0.01")), 1)

    def test_to_minor_units_rejects(self):
        for bad in (None, True, "abc", "1.005", "NaN", "Infinity", ""):
            with self.subTest(value=bad), self.assertRaises(ValueError):
                utils.to_minor_units(bad)

    def test_mask(self):
        self.assertEqual(utils.mask("pay_1234567890"), "pay_1234...")
        self.assertEqual(utils.mask("short"), "short")
        self.assertEqual(utils.mask(""), "")


def _response(status_code, data=None, text=""):
    resp = MagicMock()
    resp.status_code = status_code
    if data is None:
        resp.json.side_effect = ValueError("no json")
    else:
        resp.json.return_value = data
    resp.text = text
    return resp


class RazorpayClientTests(SimpleTestCase):
    def setUp(self):
        self.session = MagicMock()
        self.rzp = RazorpayClient("rzp_key", "rzp_secret", base_url="https://gateway.test/v1/", timeout=3, session=self.session)

    def test_create_order_posts_minor_units_with_timeout(self):
        self.session.request.return_value = _response(200, {"id": "order_1", "amount": 99900})

        data = self.rzp.create_order(99900, receipt="TC-1", notes={"order_id": "x"})

        self.assertEqual(data["id"], "order_1")
        args, kwargs = self.session.request.call_args
        self.assertEqual(args, ("POST", "https://gateway.test/v1/orders"))
        self.assertEqual(kwargs["timeout"], 3)
        self.assertEqual(kwargs["json"]["amount"], 99900)
        self.assertEqual(kwargs["json"]["currency"], "INR")
        self.assertEqual(kwargs["json"]["payment_capture"], 1)
        self.assertEqual(kwargs["auth"].username, "rzp_key")

    def test_fetch_payment(self):
        self.session.request.return_value = _response(200, {"id": "pay_1", "status": "captured"})
        self.assertEqual(self.rzp.fetch_payment("pay_1")["status"], "captured")
        args, _ = self.session.request.call_args
        self.assertEqual(args, ("GET", "https://gateway.test/v1/payments/pay_1"))

    def test_full_refund_omits_amount(self):
        self.session.request.return_value = _response(200, {"id": "rfnd_1"})
        self.rzp.refund("pay_1")
        args, kwargs = self.session.request.call_args
        self.assertEqual(args, ("POST", "https://gateway.test/v1/payments/pay_1/refund"))
        self.assertNotIn("amount", kwargs["json"])

    def test_timeout_is_unreachable(self):
        self.session.request.side_effect = requests.Timeout("read timed out")
        with self.assertRaises(GatewayUnreachable):
            self.rzp.fetch_payment("pay_1")

    def test_server_error_is_unreachable(self):
        self.session.request.return_value = _response(502, text="bad gateway")
        with self.assertRaises(GatewayUnreachable) as cm:
            self.rzp.fetch_payment("pay_1")
        self.assertEqual(cm.exception.status_code, 502)

    def test_client_error_is_gateway_error(self):
        self.session.request.return_value = _response(400, {"error": {"description": "bad id"}})
        with self.assertLogs("payments.integrations.razorpay", level="ERROR"):
            with self.assertRaises(RazorpayError) as cm:
                self.rzp.fetch_payment("pay_1")
        self.assertNotIsInstance(cm.exception, GatewayUnreachable)
        self.assertEqual(cm.exception.status_code, 400)

    def test_missing_keys(self):
        client = RazorpayClient("", "", session=self.session)
        with self.assertRaises(RazorpayError):
            client.fetch_payment("pay_1")
        self.session.request.assert_not_called()

    def test_verify_signature_uses_key_secret(self):
        sig = utils.sign_payment("order_1", "pay_1", "rzp_secret")
        self.assertTrue(self.rzp.verify_signature("order_1", "pay_1", sig))
        with self.assertLogs("payments.integrations.razorpay", level="WARNING"):
            self.assertFalse(self.rzp.verify_signature("order_1", "pay_1", "0" * 64))


class ReconcilePendingPaymentsCommandTests(TestCase):
    def setUp(self):
        self.gateway = FakeGateway()
        self.order = make_order(total_amount=99900)
        self.payment = make_payment(self.order, gateway_order_id="go_1")
        Payment.objects.filter(pk=self.payment.pk).update(gateway_payment_id="pay_1", signature=sign("go_1", "pay_1"))
        # never claimed; must be skipped
        make_payment(make_order(), gateway_order_id="go_2")

    def _run(self):
        out = StringIO()
        with patch("payments.management.commands.reconcile_pending_payments.apps") as apps:
            apps.get_app_config.return_value.gateway = self.gateway
            call_command("reconcile_pending_payments", "--sleep", "0", "--older-than-minutes", "0", stdout=out)
        return out.getvalue()

    def test_settles_claimed_payments(self):
        self.gateway.set_payment("pay_1", order_id="go_1")

        output = self._run()

        self.assertIn("Settled 1 payments.", output)
        self.payment.refresh_from_db()
        self.order.refresh_from_db()
        self.assertEqual(self.payment.status, PaymentStatus.CAPTURED)
        self.assertEqual(self.order.payment_status, OrderPaymentStatus.PAID)
        self.assertEqual(self.gateway.calls_to("fetch_payment"), [("fetch_payment", "pay_1")])

    def test_gateway_still_down(self):
        self.gateway.fetch_error = GatewayUnreachable("timeout")

        output = self._run()

        self.assertIn("gateway_unreachable", output)
        self.payment.refresh_from_db()
        self.assertEqual(self.payment.status, PaymentStatus.CREATED)
