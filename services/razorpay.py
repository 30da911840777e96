import hashlib
import hmac
import logging
from dataclasses import dataclass, field
from typing import Any, Dict

import requests

from core.config import settings
from core.money import to_minor_units

logger = logging.getLogger(__name__)


@dataclass
class GatewayResult:
    success: bool
    data: Dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    def __getitem__(self, key: str) -> Any:
        return self.data[key]

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)


def _auth() -> tuple[str, str]:
    return settings.RAZORPAY_KEY_ID, settings.RAZORPAY_KEY_SECRET


def _error_message(exc: requests.RequestException, fallback: str) -> str:
    response = getattr(exc, "response", None)
    if response is not None:
        try:
            description = response.json().get("error", {}).get("description")
        except ValueError:
            description = None
        if description:
            return description
    return str(exc) or fallback


def _hmac_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def create_intent(amount_minor: int, receipt: str, payer_email: str | None) -> GatewayResult:
    """Create a Razorpay order the checkout widget will collect against."""
    if isinstance(amount_minor, bool) or not isinstance(amount_minor, int) or amount_minor <= 0:
        return GatewayResult(False, error="Invalid amount: must be a positive integer (in paise)")

    receipt = str(receipt)[: settings.RAZORPAY_RECEIPT_MAX_LENGTH]
    payload = {
        "amount": amount_minor,
        "currency": settings.PAYMENT_CURRENCY,
        "receipt": receipt,
        "notes": {"receipt": receipt, "payer_email": payer_email or ""},
    }
    logger.info("Creating Razorpay order: receipt=%s amount=%s", receipt, amount_minor)
    try:
        resp = requests.post(
            f"{settings.RAZORPAY_BASE_URL}/orders",
            json=payload,
            auth=_auth(),
            timeout=settings.GATEWAY_TIMEOUT_SECONDS,
        )
        resp.raise_for_status()
    except requests.RequestException as exc:
        message = _error_message(exc, "Failed to create Razorpay order.")
        logger.error("Razorpay order creation failed for receipt %s: %s", receipt, message)
        return GatewayResult(False, error=message)

    body = resp.json()
    logger.info("Razorpay order created: %s", body.get("id"))
    return GatewayResult(
        True,
        data={
            "intent_id": body["id"],
            "amount": body.get("amount", amount_minor),
            "currency": body.get("currency", settings.PAYMENT_CURRENCY),
            "key": settings.RAZORPAY_KEY_ID,
        },
    )


def sign_payment(order_id: str, payment_id: str) -> str:
    return _hmac_hex(settings.RAZORPAY_KEY_SECRET, f"{order_id}|{payment_id}".encode())


def verify_signature(order_id: str, payment_id: str, signature: str | None) -> bool:
    if not order_id or not payment_id or not signature:
        return False
    valid = hmac.compare_digest(sign_payment(order_id, payment_id), str(signature))
    logger.info("Signature verification for %s/%s: %s", order_id, payment_id, "valid" if valid else "invalid")
    return valid


def verify_webhook_signature(body: bytes, signature: str | None) -> bool:
    if not signature or not settings.RAZORPAY_WEBHOOK_SECRET:
        return False
    return hmac.compare_digest(_hmac_hex(settings.RAZORPAY_WEBHOOK_SECRET, body), signature)


def fetch_payment(payment_id: str) -> GatewayResult:
    try:
        resp = requests.get(
            f"{settings.RAZORPAY_BASE_URL}/payments/{payment_id}",
            auth=_auth(),
            timeout=settings.GATEWAY_TIMEOUT_SECONDS,
        )
        resp.raise_for_status()
    except requests.RequestException as exc:
        message = _error_message(exc, "Failed to fetch payment details.")
        logger.error("Fetching payment %s failed: %s", payment_id, message)
        return GatewayResult(False, error=message)
    payment = resp.json()
    return GatewayResult(
        True,
        data={
            "payment": payment,
            "status": payment.get("status"),
            "amount": payment.get("amount"),
            "email": payment.get("email"),
        },
    )


def refund(payment_id: str, amount, reason: str = "Order cancelled") -> GatewayResult:
    amount_minor = to_minor_units(amount)
    logger.info("Initiating refund for payment %s: amount=%s reason=%s", payment_id, amount, reason)
    try:
        resp = requests.post(
            f"{settings.RAZORPAY_BASE_URL}/payments/{payment_id}/refund",
            json={"amount": amount_minor, "notes": {"reason": reason}},
            auth=_auth(),
            timeout=settings.GATEWAY_TIMEOUT_SECONDS,
        )
        resp.raise_for_status()
    except requests.RequestException as exc:
        message = _error_message(exc, "Failed to process refund.")
        logger.error("Refund for payment %s failed: %s", payment_id, message)
        return GatewayResult(False, error=message)
    body = resp.json()
    logger.info("Refund %s created for payment %s (%s)", body.get("id"), payment_id, body.get("status"))
    return GatewayResult(True, data={"refund_id": body.get("id"), "status": body.get("status")})
