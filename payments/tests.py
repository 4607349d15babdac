import uuid
from unittest.mock import patch

from django.db import DatabaseError
from django.test import SimpleTestCase, TestCase
from django.utils import timezone

from . import services, state
from .integrations.razorpay import GatewayUnreachable, RazorpayError
from .models import OrderPaymentStatus, Payment, PaymentRoute, PaymentStatus
from .services import ErrorKind, PaymentError, ReconcileStatus
from .testing import FakeGateway, make_order, make_payment, sign


class StateMachineTests(SimpleTestCase):
    def test_created_moves_to_captured_or_failed(self):
        self.assertEqual(state.transition("created", "captured"), PaymentStatus.CAPTURED)
        self.assertEqual(state.transition(PaymentStatus.CREATED, PaymentStatus.FAILED), PaymentStatus.FAILED)

    def test_captured_only_moves_to_refund_states(self):
        self.assertEqual(state.transition("captured", "refunded"), PaymentStatus.REFUNDED)
        self.assertEqual(state.transition("captured", "partially_refunded"), PaymentStatus.PARTIALLY_REFUNDED)
        with self.assertRaises(state.InvalidTransition):
            state.transition("captured", "failed")

    def test_nothing_returns_to_created(self):
        for current in ("captured", "failed", "refunded", "partially_refunded"):
            with self.subTest(current=current), self.assertRaises(state.InvalidTransition):
                state.transition(current, "created")

    def test_terminal_states_stay_put(self):
        for current in ("failed", "refunded", "partially_refunded"):
            with self.subTest(current=current), self.assertRaises(state.InvalidTransition):
                state.transition(current, "captured")

    def test_gateway_status_mapping(self):
        self.assertEqual(state.status_from_gateway("captured"), PaymentStatus.CAPTURED)
        for other in ("authorized", "failed", "created", "", None):
            self.assertEqual(state.status_from_gateway(other), PaymentStatus.FAILED)

    def test_order_status_for_payment_status(self):
        self.assertEqual(state.order_status_for("captured"), OrderPaymentStatus.PAID)
        self.assertEqual(state.order_status_for("failed"), OrderPaymentStatus.FAILED)
        self.assertEqual(state.order_status_for("partially_refunded"), OrderPaymentStatus.REFUNDED)

    def test_refund_status(self):
        self.assertEqual(state.refund_status(50, 100), PaymentStatus.PARTIALLY_REFUNDED)
        self.assertEqual(state.refund_status(100, 100), PaymentStatus.REFUNDED)


class OrderNumberTests(TestCase):
    def test_orders_get_sequential_numbers(self):
        first = make_order()
        second = make_order()
        self.assertRegex(first.order_number, r"^TC-\d{6}-0001$")
        self.assertRegex(second.order_number, r"^TC-\d{6}-0002$")

    def test_explicit_order_number_kept(self):
        order = make_order(order_number="TC-241229-0042")
        self.assertEqual(order.order_number, "TC-241229-0042")


class CreatePaymentIntentTests(TestCase):
    def setUp(self):
        self.gateway = FakeGateway()
        self.order = make_order(total_amount=99900)

    def _create(self, **overrides):
        kwargs = {"order_id": str(self.order.pk), "order_number": self.order.order_number, "amount": 99900}
        kwargs.update(overrides)
        return services.create_payment_intent(self.gateway, **kwargs)

    def test_creates_created_payment(self):
        payment, intent = self._create()
        self.assertEqual(payment.status, PaymentStatus.CREATED)
        self.assertEqual(payment.gateway_order_id, intent["id"])
        self.assertEqual(payment.amount, 99900)
        self.assertEqual(payment.order_id, self.order.pk)
        self.assertEqual(self.gateway.calls_to("create_order"), [("create_order", 99900, self.order.order_number)])

    def test_repeated_calls_create_separate_rows(self):
        self._create()
        self._create()
        self.assertEqual(self.order.payments.filter(status=PaymentStatus.CREATED).count(), 2)

    def test_rejects_cash_on_delivery(self):
        cod = make_order(payment_route=PaymentRoute.COD)
        with self.assertRaises(PaymentError) as cm:
            self._create(order_id=str(cod.pk), order_number=cod.order_number)
        self.assertEqual(cm.exception.kind, ErrorKind.VALIDATION_ERROR)
        self.assertEqual(self.gateway.calls, [])

    def test_rejects_paid_order(self):
        self.order.payment_status = OrderPaymentStatus.PAID
        self.order.save()
        with self.assertRaises(PaymentError) as cm:
            self._create()
        self.assertEqual(cm.exception.kind, ErrorKind.VALIDATION_ERROR)

    def test_rejects_amount_other_than_order_total(self):
        with self.assertRaises(PaymentError) as cm:
            self._create(amount=50000)
        self.assertEqual(cm.exception.kind, ErrorKind.VALIDATION_ERROR)
        self.assertFalse(Payment.objects.exists())

    def test_unknown_order(self):
        for order_id in (str(uuid.uuid4()), "not-a-uuid"):
            with self.subTest(order_id=order_id), self.assertRaises(PaymentError) as cm:
                self._create(order_id=order_id)
            self.assertEqual(cm.exception.kind, ErrorKind.ORDER_NOT_FOUND)

    def test_gateway_down_creates_nothing(self):
        self.gateway.create_error = GatewayUnreachable("timeout")
        with self.assertRaises(PaymentError) as cm:
            self._create()
        self.assertEqual(cm.exception.kind, ErrorKind.GATEWAY_UNREACHABLE)
        self.assertFalse(Payment.objects.exists())


class ReconcileTests(TestCase):
    def setUp(self):
        self.gateway = FakeGateway()
        self.order = make_order(total_amount=99900)
        self.payment = make_payment(self.order, gateway_order_id="go_1")
        self.gateway.set_payment("pay_1", status="captured", amount=99900, order_id="go_1")

    def _reconcile(self, signature=None):
        return services.reconcile(self.gateway, "go_1", "pay_1", signature or sign("go_1", "pay_1"))

    def test_valid_capture_marks_order_paid(self):
        result = self._reconcile()

        self.assertEqual(result.status, ReconcileStatus.CONFIRMED)
        self.assertEqual(result.order_id, str(self.order.pk))
        self.assertEqual(result.order_number, self.order.order_number)
        self.payment.refresh_from_db()
        self.order.refresh_from_db()
        self.assertEqual(self.payment.status, PaymentStatus.CAPTURED)
        self.assertEqual(self.payment.gateway_payment_id, "pay_1")
        self.assertEqual(self.payment.method, "upi")
        self.assertEqual(self.order.payment_status, OrderPaymentStatus.PAID)
        self.assertEqual(self.order.payment_id, self.payment.pk)

    def test_second_call_is_read_only(self):
        self._reconcile()
        self.payment.refresh_from_db()
        updated_at = self.payment.updated_at

        result = self._reconcile()

        self.assertEqual(result.status, ReconcileStatus.ALREADY_CONFIRMED)
        self.assertEqual(len(self.gateway.calls_to("fetch_payment")), 1)
        self.payment.refresh_from_db()
        self.assertEqual(self.payment.updated_at, updated_at)

    def test_already_confirmed_issues_no_writes(self):
        self._reconcile()
        # one select, no writes
        with self.assertNumQueries(1):
            result = self._reconcile()
        self.assertEqual(result.status, ReconcileStatus.ALREADY_CONFIRMED)

    def test_tampered_signature_never_mutates(self):
        for prior in (PaymentStatus.CREATED, PaymentStatus.CAPTURED, PaymentStatus.FAILED, PaymentStatus.REFUNDED):
            with self.subTest(prior=prior):
                Payment.objects.filter(pk=self.payment.pk).update(status=prior)
                before = Payment.objects.get(pk=self.payment.pk)

                result = self._reconcile(signature="0" * 64)

                self.assertEqual(result.status, ReconcileStatus.REJECTED)
                self.assertEqual(result.error, ErrorKind.INVALID_SIGNATURE)
                after = Payment.objects.get(pk=self.payment.pk)
                self.assertEqual(after.status, prior)
                self.assertEqual(after.updated_at, before.updated_at)
        self.assertEqual(self.gateway.calls_to("fetch_payment"), [])
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, OrderPaymentStatus.PENDING)

    def test_unknown_intent(self):
        result = services.reconcile(self.gateway, "go_x", "pay_1", sign("go_x", "pay_1"))
        self.assertEqual(result.status, ReconcileStatus.REJECTED)
        self.assertEqual(result.error, ErrorKind.PAYMENT_NOT_FOUND)

    def test_gateway_non_capture_marks_failed(self):
        self.gateway.set_payment("pay_1", status="failed", amount=99900)

        result = self._reconcile()

        self.assertEqual(result.status, ReconcileStatus.CONFIRMED)
        self.payment.refresh_from_db()
        self.order.refresh_from_db()
        self.assertEqual(self.payment.status, PaymentStatus.FAILED)
        self.assertEqual(self.order.payment_status, OrderPaymentStatus.FAILED)

    def test_captured_amount_mismatch_never_marks_paid(self):
        self.gateway.set_payment("pay_1", status="captured", amount=100)

        with self.assertLogs("payments.services", level="ERROR"):
            self._reconcile()

        self.order.refresh_from_db()
        self.payment.refresh_from_db()
        self.assertEqual(self.payment.status, PaymentStatus.FAILED)
        self.assertNotEqual(self.order.payment_status, OrderPaymentStatus.PAID)

    def test_gateway_timeout_leaves_payment_created_and_retry_succeeds(self):
        self.gateway.fetch_error = GatewayUnreachable("read timed out")

        with self.assertRaises(PaymentError) as cm:
            self._reconcile()

        self.assertEqual(cm.exception.kind, ErrorKind.GATEWAY_UNREACHABLE)
        self.payment.refresh_from_db()
        self.assertEqual(self.payment.status, PaymentStatus.CREATED)
        self.assertEqual(self.payment.gateway_payment_id, "pay_1")
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, OrderPaymentStatus.PENDING)

        self.gateway.fetch_error = None
        result = self._reconcile()

        self.assertEqual(result.status, ReconcileStatus.CONFIRMED)
        self.payment.refresh_from_db()
        self.assertEqual(self.payment.status, PaymentStatus.CAPTURED)

    def test_gateway_refusal_is_not_a_failed_payment(self):
        self.gateway.fetch_error = RazorpayError("bad request", 400)
        with self.assertRaises(PaymentError) as cm:
            self._reconcile()
        self.assertEqual(cm.exception.kind, ErrorKind.GATEWAY_ERROR)
        self.payment.refresh_from_db()
        self.assertEqual(self.payment.status, PaymentStatus.CREATED)

    def test_order_write_failure_is_distinguishable_and_rolled_back(self):
        with patch("payments.services._write_order", side_effect=DatabaseError("order table locked")):
            with self.assertRaises(PaymentError) as cm:
                self._reconcile()

        self.assertEqual(cm.exception.kind, ErrorKind.PARTIAL_RECONCILIATION_FAILURE)
        self.payment.refresh_from_db()
        self.assertEqual(self.payment.status, PaymentStatus.CREATED)

        result = self._reconcile()
        self.assertEqual(result.status, ReconcileStatus.CONFIRMED)

    def test_losing_a_race_reports_already_confirmed(self):
        stale = Payment.objects.get(pk=self.payment.pk)
        self._reconcile()

        result = services._settle(
            stale, PaymentStatus.FAILED,
            gateway_payment_id="pay_1", signature="", method="", payload={},
        )

        self.assertEqual(result.status, ReconcileStatus.ALREADY_CONFIRMED)
        self.payment.refresh_from_db()
        self.assertEqual(self.payment.status, PaymentStatus.CAPTURED)

    def test_stale_attempt_never_downgrades_paid_order(self):
        self._reconcile()
        retry = make_payment(self.order, gateway_order_id="go_2")
        self.gateway.set_payment("pay_2", status="failed", amount=99900)

        services.reconcile(self.gateway, "go_2", "pay_2", sign("go_2", "pay_2"))

        retry.refresh_from_db()
        self.order.refresh_from_db()
        self.assertEqual(retry.status, PaymentStatus.FAILED)
        self.assertEqual(self.order.payment_status, OrderPaymentStatus.PAID)
        self.assertEqual(self.order.payment_id, self.payment.pk)

    def test_settle_pending_uses_recorded_claim(self):
        Payment.objects.filter(pk=self.payment.pk).update(gateway_payment_id="pay_1", signature=sign("go_1", "pay_1"))
        self.payment.refresh_from_db()

        result = services.settle_pending(self.gateway, self.payment)

        self.assertEqual(result.status, ReconcileStatus.CONFIRMED)
        self.assertEqual(self.gateway.calls_to("verify_signature"), [])

    def test_settle_pending_without_claim(self):
        result = services.settle_pending(self.gateway, self.payment)
        self.assertEqual(result.error, ErrorKind.PAYMENT_NOT_FOUND)
        self.assertEqual(self.gateway.calls, [])


class RefundTests(TestCase):
    def setUp(self):
        self.gateway = FakeGateway()
        self.order = make_order(total_amount=99900, payment_status=OrderPaymentStatus.PAID)
        self.payment = make_payment(
            self.order, gateway_order_id="go_1", gateway_payment_id="pay_1", status=PaymentStatus.CAPTURED,
        )
        self.gateway.set_payment("pay_1", amount=99900)

    def test_partial_refund_then_second_refund_rejected(self):
        payment, refund = services.refund_payment(self.gateway, "pay_1", amount=49950, notes={"reason": "size"})

        self.assertEqual(payment.status, PaymentStatus.PARTIALLY_REFUNDED)
        self.assertEqual(payment.amount_refunded, 49950)
        self.assertEqual(payment.refund_id, refund["id"])
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, OrderPaymentStatus.REFUNDED)

        with self.assertRaises(PaymentError) as cm:
            services.refund_payment(self.gateway, "pay_1", amount=49950)
        self.assertEqual(cm.exception.kind, ErrorKind.ALREADY_REFUNDED)
        self.assertEqual(len(self.gateway.calls_to("refund")), 1)

    def test_full_refund(self):
        payment, _ = services.refund_payment(self.gateway, "pay_1")
        self.assertEqual(payment.status, PaymentStatus.REFUNDED)
        self.assertEqual(payment.amount_refunded, 99900)
        self.assertEqual(self.gateway.calls_to("refund"), [("refund", "pay_1", None)])

    def test_only_captured_payments_refund(self):
        for status in (PaymentStatus.CREATED, PaymentStatus.FAILED):
            with self.subTest(status=status):
                Payment.objects.filter(pk=self.payment.pk).update(status=status)
                with self.assertRaises(PaymentError) as cm:
                    services.refund_payment(self.gateway, "pay_1")
                self.assertEqual(cm.exception.kind, ErrorKind.NOT_CAPTURED)
        self.assertEqual(self.gateway.calls_to("refund"), [])

    def test_refund_amount_bounds(self):
        for amount in (0, 99901):
            with self.subTest(amount=amount), self.assertRaises(PaymentError) as cm:
                services.refund_payment(self.gateway, "pay_1", amount=amount)
            self.assertEqual(cm.exception.kind, ErrorKind.VALIDATION_ERROR)
        self.assertEqual(self.gateway.calls_to("refund"), [])

    def test_unknown_payment(self):
        with self.assertRaises(PaymentError) as cm:
            services.refund_payment(self.gateway, "pay_missing")
        self.assertEqual(cm.exception.kind, ErrorKind.PAYMENT_NOT_FOUND)

    def test_gateway_unreachable_keeps_payment_captured(self):
        self.gateway.refund_error = GatewayUnreachable("timeout")
        with self.assertRaises(PaymentError) as cm:
            services.refund_payment(self.gateway, "pay_1")
        self.assertEqual(cm.exception.kind, ErrorKind.GATEWAY_UNREACHABLE)
        self.payment.refresh_from_db()
        self.assertEqual(self.payment.status, PaymentStatus.CAPTURED)
        self.assertIsNone(self.payment.refund_started_at)

        self.gateway.refund_error = None
        payment, _ = services.refund_payment(self.gateway, "pay_1")
        self.assertEqual(payment.status, PaymentStatus.REFUNDED)

    def test_gateway_refusal_allows_retry(self):
        self.gateway.refund_error = RazorpayError("refund not allowed", 400)
        with self.assertRaises(PaymentError) as cm:
            services.refund_payment(self.gateway, "pay_1")
        self.assertEqual(cm.exception.kind, ErrorKind.GATEWAY_ERROR)
        self.payment.refresh_from_db()
        self.assertIsNone(self.payment.refund_started_at)

    def test_unrecorded_refund_is_never_repeated(self):
        with patch.object(Payment, "save", side_effect=DatabaseError("disk full")):
            with self.assertLogs("payments.services", level="ERROR") as logs:
                with self.assertRaises(PaymentError) as cm:
                    services.refund_payment(self.gateway, "pay_1", amount=49950)

        self.assertEqual(cm.exception.kind, ErrorKind.PARTIAL_RECONCILIATION_FAILURE)
        self.assertIn("rfnd_1", "\n".join(logs.output))
        self.payment.refresh_from_db()
        self.assertEqual(self.payment.status, PaymentStatus.CAPTURED)
        self.assertIsNotNone(self.payment.refund_started_at)

        with self.assertLogs("payments.services", level="ERROR"):
            with self.assertRaises(PaymentError) as cm:
                services.refund_payment(self.gateway, "pay_1", amount=49950)
        self.assertEqual(cm.exception.kind, ErrorKind.ALREADY_REFUNDED)
        self.assertEqual(len(self.gateway.calls_to("refund")), 1)

    def test_refund_in_progress_rejected(self):
        Payment.objects.filter(pk=self.payment.pk).update(refund_started_at=timezone.now())

        with self.assertLogs("payments.services", level="ERROR"):
            with self.assertRaises(PaymentError) as cm:
                services.refund_payment(self.gateway, "pay_1")

        self.assertEqual(cm.exception.kind, ErrorKind.ALREADY_REFUNDED)
        self.assertEqual(self.gateway.calls_to("refund"), [])
