"""
Payment gateway adapters.

The payment service only talks to ``PaymentGateway``: open a charge, fetch a
charge's status, verify a signature, and translate a webhook body into a
``WebhookEvent``. Everything Razorpay or Stripe specific stays in this module.
"""

import json
import logging
from typing import NamedTuple, Optional

import razorpay
from razorpay.errors import SignatureVerificationError as RazorpaySignatureError
import stripe

from config import Settings

logger = logging.getLogger(__name__)

# Normalized event kinds understood by the payment service.
CAPTURED = "captured"
FAILED = "failed"
REFUNDED = "refunded"


class Charge(NamedTuple):
    id: str
    status: str
    client_secret: Optional[str] = None


class WebhookEvent(NamedTuple):
    type: str
    kind: Optional[str]
    charge_id: Optional[str] = None
    transaction_id: Optional[str] = None


def to_minor_units(amount: float) -> int:
    return int(round(float(amount) * 100))


class PaymentGateway:
    name = "base"
    # gateway status -> payment status (pending, succeeded, failed, refunded)
    status_map = {}

    def __init__(self, signature_secret: Optional[str], webhook_secret: Optional[str]):
        self.signature_secret = signature_secret
        self.webhook_secret = webhook_secret

    def create_charge(self, amount_minor: int, currency: str, method_token: Optional[str] = None, metadata: Optional[dict] = None) -> Charge:
        raise NotImplementedError

    def retrieve_charge(self, charge_id: str) -> str:
        raise NotImplementedError

    def verify_signature(self, payload: bytes, signature: str, secret: str) -> bool:
        raise NotImplementedError

    def verify_payment(self, charge_id: str, payment_ref: str, signature: str) -> bool:
        """Check a client confirmation signed over ``charge_id|payment_ref``."""
        if not self.signature_secret:
            return False
        return self.verify_signature(f"{charge_id}|{payment_ref}".encode(), signature, self.signature_secret)

    def parse_event(self, body: bytes) -> WebhookEvent:
        raise NotImplementedError

    def normalize_status(self, gateway_status: Optional[str]) -> str:
        return self.status_map.get(gateway_status or "", "pending")


def _is_ascii_token(signature: Optional[str]) -> bool:
    # header values arrive latin-1 decoded; SDK comparisons need ascii str
    return bool(signature) and signature.isascii()


class RazorpayGateway(PaymentGateway):
    name = "razorpay"
    status_map = {
        "created": "pending",
        "attempted": "pending",
        "authorized": "pending",
        "paid": "succeeded",
        "captured": "succeeded",
        "failed": "failed",
        "refunded": "refunded",
    }
    event_kinds = {
        "payment.captured": CAPTURED,
        "order.paid": CAPTURED,
        "payment.failed": FAILED,
        "refund.processed": REFUNDED,
    }

    def __init__(self, key_id: Optional[str], key_secret: Optional[str], webhook_secret: Optional[str]):
        super().__init__(key_secret, webhook_secret)
        self.key_id = key_id
        self._client = None

    @property
    def client(self):
        if self._client is None:
            self._client = razorpay.Client(auth=(self.key_id, self.signature_secret))
        return self._client

    def create_charge(self, amount_minor, currency, method_token=None, metadata=None):
        metadata = metadata or {}
        order = self.client.order.create(data={
            "amount": amount_minor,
            "currency": currency.upper(),
            "receipt": metadata.get("receipt"),
            "notes": metadata,
        })
        return Charge(id=order["id"], status=order.get("status", "created"))

    def retrieve_charge(self, charge_id):
        return self.client.order.fetch(charge_id).get("status")

    def verify_payment(self, charge_id, payment_ref, signature):
        if not _is_ascii_token(signature) or not self.signature_secret:
            return False
        try:
            return bool(self.client.utility.verify_payment_signature({
                "razorpay_order_id": charge_id,
                "razorpay_payment_id": payment_ref,
                "razorpay_signature": signature,
            }))
        except RazorpaySignatureError:
            return False

    def verify_signature(self, payload, signature, secret):
        if not _is_ascii_token(signature) or not secret:
            return False
        try:
            return bool(self.client.utility.verify_webhook_signature(payload.decode("utf-8"), signature, secret))
        except (RazorpaySignatureError, UnicodeDecodeError):
            return False

    def parse_event(self, body):
        data = json.loads(body)
        event_type = data.get("event", "")
        payload = data.get("payload", {})
        if event_type == "refund.processed":
            refund = payload.get("refund", {}).get("entity", {})
            return WebhookEvent(event_type, REFUNDED, None, refund.get("payment_id"))
        payment = payload.get("payment", {}).get("entity", {})
        charge_id = payment.get("order_id")
        if event_type == "order.paid":
            charge_id = payload.get("order", {}).get("entity", {}).get("id", charge_id)
        return WebhookEvent(event_type, self.event_kinds.get(event_type), charge_id, payment.get("id"))


class StripeGateway(PaymentGateway):
    name = "stripe"
    status_map = {
        "requires_payment_method": "pending",
        "requires_confirmation": "pending",
        "requires_action": "pending",
        "requires_capture": "pending",
        "processing": "pending",
        "succeeded": "succeeded",
        "canceled": "failed",
    }
    event_kinds = {
        "payment_intent.succeeded": CAPTURED,
        "payment_intent.payment_failed": FAILED,
        "charge.refunded": REFUNDED,
    }

    def __init__(self, secret_key: Optional[str], webhook_secret: Optional[str]):
        # Stripe confirms client side payments by retrieving the intent, not by a signed pair.
        super().__init__(None, webhook_secret)
        self.secret_key = secret_key

    def create_charge(self, amount_minor, currency, method_token=None, metadata=None):
        params = {
            "api_key": self.secret_key,
            "amount": amount_minor,
            "currency": currency.lower(),
            "metadata": metadata or {},
        }
        if method_token:
            params.update(payment_method=method_token, payment_method_types=["card"], confirm=True)
        intent = stripe.PaymentIntent.create(**params)
        return Charge(id=intent.id, status=intent.status, client_secret=intent.client_secret)

    def retrieve_charge(self, charge_id):
        return stripe.PaymentIntent.retrieve(charge_id, api_key=self.secret_key).status

    def verify_signature(self, payload, signature, secret):
        if not _is_ascii_token(signature) or not secret:
            return False
        try:
            stripe.WebhookSignature.verify_header(payload.decode("utf-8"), signature, secret)
        except (stripe.SignatureVerificationError, UnicodeDecodeError):
            return False
        return True

    def parse_event(self, body):
        data = json.loads(body)
        event_type = data.get("type", "")
        obj = data.get("data", {}).get("object", {})
        if event_type == "charge.refunded":
            return WebhookEvent(event_type, REFUNDED, obj.get("payment_intent"), obj.get("id"))
        return WebhookEvent(event_type, self.event_kinds.get(event_type), obj.get("id"), obj.get("latest_charge") or obj.get("id"))


def build_gateway(settings: Settings) -> PaymentGateway:
    if settings.payment_gateway == "stripe":
        gateway = StripeGateway(settings.stripe_secret_key, settings.stripe_webhook_secret)
    else:
        gateway = RazorpayGateway(settings.razorpay_key_id, settings.razorpay_key_secret, settings.razorpay_webhook_secret)
    logger.info("Using %s payment gateway", gateway.name)
    return gateway
