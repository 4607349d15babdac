import json
import logging
from urllib.parse import urlencode

from django.apps import apps
from django.conf import settings
from django.http import JsonResponse
from django.shortcuts import redirect
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_POST

from . import services
from .models import Order
from .services import ErrorKind, PaymentError, ReconcileStatus
from .utils import mask, to_minor_units, verify_webhook_signature

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    ErrorKind.VALIDATION_ERROR: 400,
    ErrorKind.INVALID_SIGNATURE: 400,
    ErrorKind.PAYMENT_NOT_FOUND: 400,
    ErrorKind.NOT_CAPTURED: 400,
    ErrorKind.ALREADY_REFUNDED: 400,
    ErrorKind.ORDER_NOT_FOUND: 404,
    ErrorKind.PARTIAL_RECONCILIATION_FAILURE: 500,
    ErrorKind.GATEWAY_ERROR: 502,
    ErrorKind.GATEWAY_UNREACHABLE: 503,
}


def _gateway():
    return apps.get_app_config("payments").gateway


def _json_body(request):
    try: return json.loads(request.body.decode("utf-8"))
    except (ValueError, UnicodeDecodeError): return None


def _first(data, *keys) -> str:
    for k in keys:
        v = data.get(k)
        if v:
            return str(v).strip()
    return ""


def _error(kind, message="", status=None):
    kind = ErrorKind(kind)
    return JsonResponse(
        {"success": False, "error": kind.value, "message": message or kind.value},
        status=status or ERROR_STATUS[kind],
    )


def _payment_json(payment):
    return {
        "id": payment.pk,
        "order_id": str(payment.order_id),
        "gateway_order_id": payment.gateway_order_id,
        "gateway_payment_id": payment.gateway_payment_id,
        "amount": payment.amount,
        "currency": payment.currency,
        "status": payment.status,
        "method": payment.method,
        "amount_refunded": payment.amount_refunded,
        "created_at": payment.created_at.isoformat(),
        "updated_at": payment.updated_at.isoformat(),
    }


def _is_admin(request) -> bool:
    user = getattr(request, "user", None)
    return bool(user and user.is_authenticated and user.is_staff)


@csrf_exempt
@require_POST
def create_order_view(request):
    body = _json_body(request)
    if not isinstance(body, dict):
        return _error(ErrorKind.VALIDATION_ERROR, "Invalid JSON body")
    missing = [k for k in ("orderId", "orderNumber", "amount") if not body.get(k)]
    if missing:
        return _error(ErrorKind.VALIDATION_ERROR, f"Missing fields: {', '.join(missing)}")
    try:
        amount = to_minor_units(body["amount"])
    except ValueError as e:
        return _error(ErrorKind.VALIDATION_ERROR, str(e))
    if amount <= 0:
        return _error(ErrorKind.VALIDATION_ERROR, "amount must be > 0")

    gateway = _gateway()
    try:
        payment, intent = services.create_payment_intent(
            gateway, order_id=body["orderId"], order_number=str(body["orderNumber"]), amount=amount,
        )
    except PaymentError as e:
        logger.warning("create-order for %s refused: %s (%s)", body.get("orderId"), e.kind, e)
        return _error(e.kind, str(e))

    return JsonResponse({
        "success": True,
        "gateway": {
            "intentId": payment.gateway_order_id,
            "amount": payment.amount,
            "currency": payment.currency,
            "publicKey": gateway.public_key,
        },
        "payment": _payment_json(payment),
    })


@csrf_exempt
@require_POST
def verify_view(request):
    """Synchronous confirmation from the checkout widget."""
    body = _json_body(request)
    if not isinstance(body, dict):
        return _error(ErrorKind.VALIDATION_ERROR, "Invalid JSON body")
    order_id = _first(body, "orderId")
    gw_order_id = _first(body, "gatewayOrderId", "razorpay_order_id")
    gw_payment_id = _first(body, "gatewayPaymentId", "razorpay_payment_id")
    signature = _first(body, "signature", "razorpay_signature")
    if not (order_id and gw_order_id and gw_payment_id and signature):
        return _error(
            ErrorKind.VALIDATION_ERROR,
            "Missing required fields: orderId, gatewayOrderId, gatewayPaymentId, signature",
        )

    try:
        result = services.reconcile(_gateway(), gw_order_id, gw_payment_id, signature)
    except PaymentError as e:
        logger.error("verify for %s failed: %s (%s)", gw_order_id, e.kind, e)
        return _error(e.kind, str(e))

    if not result.ok:
        return _error(result.error, "Payment could not be verified")

    order = services.get_order(order_id)
    if order is None or str(order.pk) != result.order_id:
        return _error(ErrorKind.ORDER_NOT_FOUND, "Order not found")

    return JsonResponse({
        "success": True,
        "message": "Payment verified successfully" if result.status == ReconcileStatus.CONFIRMED
        else "Payment already verified",
        "status": result.status.value,
        "payment": _payment_json(result.payment),
        "order": {
            "id": str(order.pk),
            "order_number": order.order_number,
            "payment_status": order.payment_status,
        },
    })


def _callback_redirect(params: dict):
    base = getattr(settings, "STOREFRONT_URL", "").rstrip("/")
    return redirect(f"{base}/payment-callback?{urlencode(params)}")


def _error_params(kind, order=None) -> dict:
    params = {"status": "error", "error": str(kind)}
    if order is not None:
        params["order_id"] = str(order.pk)
        params["order_number"] = order.order_number
    return params


@csrf_exempt
def callback_view(request):
    """Browser redirect target after payment. Always answers with a redirect."""
    try:
        data = request.POST.dict() or request.GET.dict()
        gw_payment_id = _first(data, "razorpay_payment_id", "gatewayPaymentId")
        gw_order_id = _first(data, "razorpay_order_id", "gatewayOrderId")
        signature = _first(data, "razorpay_signature", "signature")
        if not (gw_payment_id and gw_order_id and signature):
            return _callback_redirect(_error_params(ErrorKind.VALIDATION_ERROR))

        try:
            result = services.reconcile(_gateway(), gw_order_id, gw_payment_id, signature)
        except PaymentError as e:
            logger.error("callback for %s failed: %s (%s)", gw_order_id, e.kind, e)
            return _callback_redirect(_error_params(e.kind, e.order))

        if not result.ok:
            return _callback_redirect(_error_params(result.error))

        order = Order.objects.get(pk=result.payment.order_id)
        return _callback_redirect({
            "status": "success",
            "order_id": str(order.pk),
            "order_number": order.order_number,
            "payment_status": order.payment_status,
        })
    except Exception:
        # a paying customer must never land on an error page
        logger.exception("Unhandled error in payment callback")
        return _callback_redirect({"status": "error", "error": "callback_processing_failed"})


def _webhook_ack(success: bool, message: str):
    return JsonResponse({"success": success, "message": message}, status=200)


@csrf_exempt
@require_POST
def webhook_view(request):
    """Out-of-band gateway notifications. Always 200 so the gateway never retries."""
    try:
        signature = request.headers.get("X-Razorpay-Signature") or request.headers.get("X-Signature") or ""
        secret = getattr(settings, "RAZORPAY_WEBHOOK_SECRET", "")
        if not verify_webhook_signature(request.body, signature, secret):
            logger.warning("Rejected webhook with invalid signature %s", mask(signature))
            return _webhook_ack(False, "Invalid webhook signature")

        payload = _json_body(request)
        if not isinstance(payload, dict):
            logger.warning("Rejected webhook with unparseable body")
            return _webhook_ack(False, "Invalid JSON")

        event = str(payload.get("event") or "")
        entity = ((payload.get("payload") or {}).get("payment") or {}).get("entity") or {}
        if not isinstance(entity, dict) or not entity:
            logger.info("Ignoring webhook %s without payment entity", event or "<none>")
            return _webhook_ack(True, "Webhook ignored")

        try:
            result = services.apply_webhook_event(event, entity)
        except PaymentError as e:
            logger.error("Webhook %s for payment %s failed: %s (%s)", event, entity.get("id"), e.kind, e)
            return _webhook_ack(False, "Webhook processed with errors")

        if result is None:
            logger.info("Ignoring webhook event %s", event)
            return _webhook_ack(True, "Webhook ignored")
        if not result.ok:
            logger.error("Webhook %s for payment %s rejected: %s", event, entity.get("id"), result.error)
            return _webhook_ack(False, "Webhook processed with errors")

        logger.info("Webhook %s for payment %s: %s", event, entity.get("id"), result.status)
        return _webhook_ack(True, "Webhook processed")
    except Exception:
        logger.exception("Unhandled error in payment webhook")
        return _webhook_ack(False, "Webhook processed with errors")


@require_POST
def refund_view(request):
    if not _is_admin(request):
        return JsonResponse({"success": False, "error": "forbidden", "message": "Admin access required"}, status=403)

    body = _json_body(request)
    if not isinstance(body, dict):
        return _error(ErrorKind.VALIDATION_ERROR, "Invalid JSON body")
    gw_payment_id = _first(body, "gatewayPaymentId", "paymentId")
    if not gw_payment_id:
        return _error(ErrorKind.VALIDATION_ERROR, "gatewayPaymentId is required")

    amount = None
    if body.get("amount") not in (None, ""):
        try:
            amount = to_minor_units(body["amount"])
        except ValueError as e:
            return _error(ErrorKind.VALIDATION_ERROR, str(e))
    notes = body.get("notes")
    if isinstance(notes, str):
        notes = {"reason": notes}

    try:
        payment, refund = services.refund_payment(_gateway(), gw_payment_id, amount=amount, notes=notes)
    except PaymentError as e:
        logger.warning("Refund for %s refused: %s (%s)", gw_payment_id, e.kind, e)
        status = 404 if e.kind == ErrorKind.PAYMENT_NOT_FOUND else None
        return _error(e.kind, str(e), status=status)

    return JsonResponse({
        "success": True,
        "message": "Refund processed successfully",
        "refund": refund,
        "payment": _payment_json(payment),
    })
