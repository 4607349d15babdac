import json
import logging

import requests
from django.conf import settings
from requests import RequestException
from requests.auth import HTTPBasicAuth

from ..utils import mask, verify_payment_signature

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.razorpay.com/v1"
DEFAULT_TIMEOUT = 10


class RazorpayError(Exception):
    def __init__(self, message, status_code=None, payload=None):
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload


class GatewayUnreachable(RazorpayError):
    """The gateway could not be reached or did not answer in time.

    Callers must treat this as "outcome unknown", never as a failed payment.
    """


def _hint(status_code: int) -> str:
    if status_code == 401: return "Check RAZORPAY_KEY_ID / RAZORPAY_KEY_SECRET."
    if status_code == 400: return "Bad request: amount/currency/receipt/payment id."
    if status_code == 404: return "Unknown order or payment id."
    return f"HTTP {status_code}"


class RazorpayClient:
    """Thin REST client for the Razorpay orders/payments/refunds API.

    One instance is built at start-up (see ``PaymentsConfig.ready``) and
    handed to the payment services; nothing here touches the database.
    """

    def __init__(self, key_id, key_secret, *, base_url=DEFAULT_BASE_URL, timeout=DEFAULT_TIMEOUT, session=None):
        self.key_id = key_id or ""
        self.key_secret = key_secret or ""
        self.base_url = (base_url or DEFAULT_BASE_URL).rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    @classmethod
    def from_settings(cls):
        return cls(
            getattr(settings, "RAZORPAY_KEY_ID", ""),
            getattr(settings, "RAZORPAY_KEY_SECRET", ""),
            base_url=getattr(settings, "RAZORPAY_BASE_URL", DEFAULT_BASE_URL),
            timeout=getattr(settings, "RAZORPAY_TIMEOUT", DEFAULT_TIMEOUT),
        )

    @property
    def public_key(self) -> str:
        return self.key_id

    def _request(self, method: str, path: str, payload=None) -> dict:
        if not (self.key_id and self.key_secret):
            raise RazorpayError("Razorpay keys not configured (RAZORPAY_KEY_ID / RAZORPAY_KEY_SECRET)")

        url = f"{self.base_url}{path}"
        try:
            resp = self.session.request(
                method, url,
                json=payload,
                auth=HTTPBasicAuth(self.key_id, self.key_secret),
                headers={"Content-Type": "application/json", "Accept": "application/json"},
                timeout=self.timeout,
            )
        except RequestException as e:
            logger.warning("Razorpay %s %s unreachable: %s", method, path, e)
            raise GatewayUnreachable(f"Gateway request failed: {e}")

        try: data = resp.json()
        except ValueError: data = {"raw": resp.text}

        if 200 <= resp.status_code < 300:
            return data
        if resp.status_code >= 500 or resp.status_code == 429:
            logger.warning("Razorpay %s %s returned %s", method, path, resp.status_code)
            raise GatewayUnreachable(f"Gateway error {resp.status_code}", resp.status_code, data)

        logger.error("Razorpay %s %s failed: status=%s body=%s", method, path, resp.status_code, json.dumps(data)[:800])
        raise RazorpayError(
            f"{_hint(resp.status_code)} Response: {json.dumps(data)[:800]}", resp.status_code, data,
        )

    def create_order(self, amount: int, receipt: str, notes=None, currency="INR") -> dict:
        """Mint a payment intent for ``amount`` minor units."""
        payload = {
            "amount": int(amount),
            "currency": currency,
            "receipt": receipt,
            "notes": notes or {},
            "payment_capture": 1,
        }
        data = self._request("POST", "/orders", payload)
        logger.info("Razorpay order %s created for receipt=%s amount=%s", data.get("id"), receipt, amount)
        return data

    def fetch_payment(self, payment_id: str) -> dict:
        return self._request("GET", f"/payments/{payment_id}")

    def refund(self, payment_id: str, amount=None, notes=None) -> dict:
        """Refund ``amount`` minor units, or the full captured amount when omitted."""
        payload = {"notes": notes or {}}
        if amount:
            payload["amount"] = int(amount)
        data = self._request("POST", f"/payments/{payment_id}/refund", payload)
        logger.info("Razorpay refund %s issued for payment %s", data.get("id"), payment_id)
        return data

    def verify_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        ok = verify_payment_signature(order_id, payment_id, signature, self.key_secret)
        if not ok:
            logger.warning(
                "Payment signature mismatch for order=%s payment=%s sig=%s",
                order_id, payment_id, mask(signature or ""),
            )
        return ok
