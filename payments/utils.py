"""Utility helpers for the payments app."""

import hashlib
import hmac
import logging
from decimal import Decimal, InvalidOperation

from django.conf import settings
from django.db import transaction
from django.utils import timezone

logger = logging.getLogger(__name__)

MINOR_UNITS = Decimal("100")


def _hmac_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def _digest_matches(expected: str, received: str) -> bool:
    # hex digests only; non-ASCII input never matches
    received = received.strip()
    if not received.isascii():
        return False
    return hmac.compare_digest(expected.encode("ascii"), received.encode("ascii"))


def verify_payment_signature(gateway_order_id: str, gateway_payment_id: str, signature: str, secret: str) -> bool:
    """Check the gateway's signature over ``"<order_id>|<payment_id>"``.

    Empty or non-string inputs are rejected before hashing. A missing secret
    never verifies.
    """
    parts = (gateway_order_id, gateway_payment_id, signature)
    if not all(isinstance(p, str) and p.strip() for p in parts):
        return False
    if not secret:
        logger.error("Payment signature check attempted without a key secret configured")
        return False

    msg = f"{gateway_order_id}|{gateway_payment_id}".encode("utf-8")
    expected = _hmac_hex(secret, msg)
    return _digest_matches(expected, signature)


def verify_webhook_signature(body: bytes, signature: str, secret: str) -> bool:
    """Check an HMAC-SHA256 signature over the raw webhook body."""
    if not secret:
        logger.error("RAZORPAY_WEBHOOK_SECRET missing; rejecting webhook")
        return False
    if not body or not isinstance(signature, str) or not signature.strip():
        return False
    expected = _hmac_hex(secret, body)
    return _digest_matches(expected, signature)


def sign_payment(gateway_order_id: str, gateway_payment_id: str, secret: str) -> str:
    return _hmac_hex(secret, f"{gateway_order_id}|{gateway_payment_id}".encode("utf-8"))


def sign_webhook(body: bytes, secret: str) -> str:
    return _hmac_hex(secret, body)


def to_minor_units(amount) -> int:
    """Convert a major-unit amount (``999``, ``"999.00"``) to paise.

    Raises ``ValueError`` for anything that is not a finite number or has more
    than two decimal places.
    """
    if isinstance(amount, bool) or amount is None:
        raise ValueError("Invalid amount value")
    try:
        value = Decimal(str(amount).strip())
    except (InvalidOperation, TypeError):
        raise ValueError("Invalid amount value")
    if not value.is_finite():
        raise ValueError("Invalid amount value")
    minor = value * MINOR_UNITS
    if minor != minor.to_integral_value():
        raise ValueError("Amount has more than two decimal places")
    return int(minor)


def mask(value: str, keep: int = 8) -> str:
    if not value:
        return ""
    return value[:keep] + "..." if len(value) > keep else value


def generate_order_number(prefix=None) -> str:
    """Return the next ``<PREFIX>-<yymmdd>-<NNNN>`` order number for today."""
    from .models import OrderSequence

    prefix = prefix or getattr(settings, "ORDER_NUMBER_PREFIX", "TC")
    date_key = timezone.localdate().strftime("%y%m%d")
    with transaction.atomic():
        seq, _ = OrderSequence.objects.select_for_update().get_or_create(date_key=date_key)
        seq.last_value += 1
        seq.save(update_fields=["last_value", "updated_at"])
    return f"{prefix}-{date_key}-{seq.last_value:04d}"
