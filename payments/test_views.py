import json
import uuid
from unittest.mock import patch
from urllib.parse import parse_qs, urlsplit

from django.contrib.auth import get_user_model
from django.db import DatabaseError
from django.test import TestCase
from django.urls import reverse

from .integrations.razorpay import GatewayUnreachable
from .models import OrderPaymentStatus, Payment, PaymentRoute, PaymentStatus
from .testing import FakeGateway, make_order, make_payment, sign


class GatewayPatchMixin:
    def setUp(self):
        super().setUp()
        self.gateway = FakeGateway()
        patcher = patch('payments.views._gateway', return_value=self.gateway)
        patcher.start()
        self.addCleanup(patcher.stop)

    def _post_json(self, name, payload):
        return self.client.post(reverse(name), data=json.dumps(payload), content_type='application/json')


class CreateOrderViewTests(GatewayPatchMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.order = make_order(total_amount=99900)

    def test_returns_intent_for_checkout(self):
        resp = self._post_json('payments:create_order', {
            'orderId': str(self.order.pk), 'orderNumber': self.order.order_number, 'amount': '999.00',
        })

        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertTrue(data['success'])
        self.assertEqual(data['gateway']['intentId'], 'order_test1')
        self.assertEqual(data['gateway']['amount'], 99900)
        self.assertEqual(data['gateway']['publicKey'], 'rzp_test_key')
        self.assertEqual(data['payment']['status'], 'created')
        self.assertEqual(data['payment']['amount'], 99900)
        self.assertEqual(data['gateway']['amount'], data['payment']['amount'])
        self.assertTrue(Payment.objects.filter(gateway_order_id='order_test1', order=self.order).exists())

    def test_missing_fields(self):
        resp = self._post_json('payments:create_order', {'orderId': str(self.order.pk)})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()['error'], 'validation_error')
        self.assertEqual(self.gateway.calls, [])

    def test_bad_amount(self):
        for amount in ('abc', '999.001', '-5'):
            with self.subTest(amount=amount):
                resp = self._post_json('payments:create_order', {
                    'orderId': str(self.order.pk), 'orderNumber': self.order.order_number, 'amount': amount,
                })
                self.assertEqual(resp.status_code, 400)

    def test_unknown_order(self):
        resp = self._post_json('payments:create_order', {
            'orderId': str(uuid.uuid4()), 'orderNumber': 'TC-000000-0001', 'amount': 999,
        })
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(resp.json()['error'], 'order_not_found')

    def test_cash_on_delivery_rejected(self):
        cod = make_order(payment_route=PaymentRoute.COD)
        resp = self._post_json('payments:create_order', {
            'orderId': str(cod.pk), 'orderNumber': cod.order_number, 'amount': 999,
        })
        self.assertEqual(resp.status_code, 400)

    def test_get_not_allowed(self):
        resp = self.client.get(reverse('payments:create_order'))
        self.assertEqual(resp.status_code, 405)


class VerifyViewTests(GatewayPatchMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.order = make_order(total_amount=99900)
        self.payment = make_payment(self.order, gateway_order_id='go_1')
        self.gateway.set_payment('pay_1', order_id='go_1')

    def _verify(self, **overrides):
        payload = {
            'orderId': str(self.order.pk),
            'gatewayOrderId': 'go_1',
            'gatewayPaymentId': 'pay_1',
            'signature': sign('go_1', 'pay_1'),
        }
        payload.update(overrides)
        return self._post_json('payments:verify', payload)

    def test_valid_payment(self):
        resp = self._verify()

        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertTrue(data['success'])
        self.assertEqual(data['status'], 'confirmed')
        self.assertEqual(data['order']['payment_status'], 'paid')
        self.assertEqual(data['order']['order_number'], self.order.order_number)
        self.assertEqual(data['payment']['status'], 'captured')

    def test_repeat_verify_is_already_confirmed(self):
        self._verify()
        resp = self._verify()
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()['status'], 'already-confirmed')
        self.assertEqual(len(self.gateway.calls_to('fetch_payment')), 1)

    def test_gateway_field_aliases(self):
        resp = self._post_json('payments:verify', {
            'orderId': str(self.order.pk),
            'razorpay_order_id': 'go_1',
            'razorpay_payment_id': 'pay_1',
            'razorpay_signature': sign('go_1', 'pay_1'),
        })
        self.assertEqual(resp.status_code, 200)

    def test_tampered_signature(self):
        resp = self._verify(signature='f' * 64)

        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()['error'], 'invalid_signature')
        self.payment.refresh_from_db()
        self.assertEqual(self.payment.status, PaymentStatus.CREATED)

    def test_non_ascii_signature(self):
        resp = self._verify(signature='é' * 64)

        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()['error'], 'invalid_signature')
        self.assertEqual(self.gateway.calls_to('fetch_payment'), [])

    def test_missing_fields(self):
        resp = self._verify(signature='')
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()['error'], 'validation_error')

    def test_unknown_intent(self):
        resp = self._verify(gatewayOrderId='go_x', signature=sign('go_x', 'pay_1'))
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()['error'], 'payment_not_found')

    def test_order_id_must_own_the_payment(self):
        other = make_order()
        resp = self._verify(orderId=str(other.pk))
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(resp.json()['error'], 'order_not_found')

    def test_gateway_unreachable(self):
        self.gateway.fetch_error = GatewayUnreachable('timeout')

        resp = self._verify()

        self.assertEqual(resp.status_code, 503)
        self.assertEqual(resp.json()['error'], 'gateway_unreachable')
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, OrderPaymentStatus.PENDING)


class CallbackViewTests(GatewayPatchMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.order = make_order(total_amount=99900)
        self.payment = make_payment(self.order, gateway_order_id='go_1')
        self.gateway.set_payment('pay_1', order_id='go_1')

    def _callback(self, signature=None, method='post'):
        data = {
            'razorpay_order_id': 'go_1',
            'razorpay_payment_id': 'pay_1',
            'razorpay_signature': sign('go_1', 'pay_1') if signature is None else signature,
        }
        resp = getattr(self.client, method)(reverse('payments:callback'), data=data)
        self.assertEqual(resp.status_code, 302)
        url = urlsplit(resp['Location'])
        self.assertEqual(f'{url.scheme}://{url.netloc}{url.path}', 'https://shop.example.com/payment-callback')
        return {k: v[0] for k, v in parse_qs(url.query).items()}

    def test_success_redirect(self):
        params = self._callback()

        self.assertEqual(params['status'], 'success')
        self.assertEqual(params['order_id'], str(self.order.pk))
        self.assertEqual(params['order_number'], self.order.order_number)
        self.assertEqual(params['payment_status'], 'paid')

    def test_get_callback(self):
        params = self._callback(method='get')
        self.assertEqual(params['status'], 'success')

    def test_invalid_signature_redirects_with_error(self):
        params = self._callback(signature='0' * 64)

        self.assertEqual(params, {'status': 'error', 'error': 'invalid_signature'})
        self.payment.refresh_from_db()
        self.assertEqual(self.payment.status, PaymentStatus.CREATED)

    def test_non_ascii_signature_redirects_with_error(self):
        params = self._callback(signature='é' * 64)
        self.assertEqual(params, {'status': 'error', 'error': 'invalid_signature'})

    def test_missing_params(self):
        resp = self.client.post(reverse('payments:callback'), data={})
        self.assertEqual(resp.status_code, 302)
        self.assertIn('error=validation_error', resp['Location'])

    def test_gateway_unreachable_keeps_order_context(self):
        self.gateway.fetch_error = GatewayUnreachable('timeout')

        params = self._callback()

        self.assertEqual(params['error'], 'gateway_unreachable')
        self.assertEqual(params['order_number'], self.order.order_number)

    def test_unexpected_failure_still_redirects(self):
        with patch('payments.services.reconcile', side_effect=RuntimeError('boom')):
            with self.assertLogs('payments.views', level='ERROR'):
                params = self._callback()
        self.assertEqual(params, {'status': 'error', 'error': 'callback_processing_failed'})


class RefundViewTests(GatewayPatchMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.order = make_order(total_amount=99900, payment_status=OrderPaymentStatus.PAID)
        self.payment = make_payment(
            self.order, gateway_order_id='go_1', gateway_payment_id='pay_1', status=PaymentStatus.CAPTURED,
        )
        self.gateway.set_payment('pay_1')
        User = get_user_model()
        self.staff = User.objects.create_user('ops', 'ops@example.com', 'pw', is_staff=True)
        self.customer = User.objects.create_user('cust', 'cust@example.com', 'pw')

    def test_requires_admin(self):
        resp = self._post_json('payments:refund', {'gatewayPaymentId': 'pay_1'})
        self.assertEqual(resp.status_code, 403)

        self.client.force_login(self.customer)
        resp = self._post_json('payments:refund', {'gatewayPaymentId': 'pay_1'})
        self.assertEqual(resp.status_code, 403)
        self.assertEqual(self.gateway.calls, [])

    def test_partial_refund_then_repeat(self):
        self.client.force_login(self.staff)

        resp = self._post_json('payments:refund', {'gatewayPaymentId': 'pay_1', 'amount': '499.50', 'notes': 'damaged'})

        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertEqual(data['payment']['status'], 'partially_refunded')
        self.assertEqual(data['payment']['amount_refunded'], 49950)
        self.assertEqual(self.gateway.calls_to('refund'), [('refund', 'pay_1', 49950)])
        self.payment.refresh_from_db()
        self.assertEqual(self.payment.notes, {'reason': 'damaged'})

        resp = self._post_json('payments:refund', {'gatewayPaymentId': 'pay_1', 'amount': '499.50'})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()['error'], 'already_refunded')

    def test_unknown_payment(self):
        self.client.force_login(self.staff)
        resp = self._post_json('payments:refund', {'gatewayPaymentId': 'pay_missing'})
        self.assertEqual(resp.status_code, 404)

    def test_refund_over_captured_amount(self):
        self.client.force_login(self.staff)
        resp = self._post_json('payments:refund', {'gatewayPaymentId': 'pay_1', 'amount': 1000})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()['error'], 'validation_error')

    def test_unrecorded_refund_reports_failure_and_blocks_retry(self):
        self.client.force_login(self.staff)

        with patch.object(Payment, 'save', side_effect=DatabaseError('disk full')):
            with self.assertLogs('payments.services', level='ERROR'):
                resp = self._post_json('payments:refund', {'gatewayPaymentId': 'pay_1'})

        self.assertEqual(resp.status_code, 500)
        self.assertEqual(resp.json()['error'], 'partial_reconciliation_failure')

        with self.assertLogs('payments.services', level='ERROR'):
            resp = self._post_json('payments:refund', {'gatewayPaymentId': 'pay_1'})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()['error'], 'already_refunded')
        self.assertEqual(len(self.gateway.calls_to('refund')), 1)
