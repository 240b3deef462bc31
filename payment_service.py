"""
Payment reconciliation.

Charges are opened through a ``PaymentGateway`` and recorded in the
``payment`` collection. Gateway outcomes arrive either from the client
(signed confirmation or an explicit status fetch) or from the gateway's
webhook, and are mirrored onto the payment, its order and its booking.
Applying the same outcome twice leaves the records unchanged.
"""

import logging
from typing import Optional

from bson import ObjectId

from database import NEWEST_FIRST, create_document, get_documents, oid, serialize_doc, transaction, utcnow
from errors import AuthorizationError, GatewayError, NotFoundError, SignatureError, StateConflictError, ValidationError
from gateways import CAPTURED, FAILED, REFUNDED, PaymentGateway, WebhookEvent, to_minor_units
from lifecycle import BookingStatus, OrderStatus, can_transition
from order_service import record_transition
from schemas import Payment
from security import is_admin

logger = logging.getLogger(__name__)


def _owned_by(doc: dict, user: dict, field: str = "user_id") -> bool:
    return doc.get(field) == str(user["_id"])


def _load_source(db, user: dict, order_id: Optional[str], booking_id: Optional[str]):
    if bool(order_id) == bool(booking_id):
        raise ValidationError("Provide exactly one of order_id or booking_id")

    if order_id:
        order = db["order"].find_one({"_id": oid(order_id)})
        if not order:
            raise NotFoundError("Order not found")
        if not _owned_by(order, user):
            raise AuthorizationError("Not authorized to pay for this order")
        if order.get("payment_details", {}).get("status") == "paid":
            raise StateConflictError("Order is already paid")
        if order["status"] in (OrderStatus.CANCELLED.value, OrderStatus.REFUNDED.value):
            raise StateConflictError(f"Order cannot be paid when status is {order['status']}")
        metadata = {"order_id": order_id, "user_id": str(user["_id"]), "receipt": order.get("order_number")}
        return float(order["total_amount"]), metadata

    booking = db["booking"].find_one({"_id": oid(booking_id)})
    if not booking:
        raise NotFoundError("Booking not found")
    if not _owned_by(booking, user):
        raise AuthorizationError("Not authorized to pay for this booking")
    if booking.get("payment_status") == "paid":
        raise StateConflictError("Booking is already paid")
    if booking.get("status") == BookingStatus.CANCELLED.value:
        raise StateConflictError("Booking is cancelled")
    service = None
    if ObjectId.is_valid(booking.get("service_id", "")):
        service = db["service"].find_one({"_id": oid(booking["service_id"])})
    if not service:
        raise NotFoundError("Service not found")
    metadata = {"booking_id": booking_id, "user_id": str(user["_id"]), "receipt": f"BKG{booking_id[-8:]}"}
    return float(service["price"]), metadata


def initiate_payment(
    db,
    gateway: PaymentGateway,
    currency: str,
    user: dict,
    order_id: Optional[str] = None,
    booking_id: Optional[str] = None,
    method_token: Optional[str] = None,
    payment_method: Optional[str] = None,
    use_transactions: bool = True,
) -> dict:
    amount, metadata = _load_source(db, user, order_id, booking_id)

    try:
        charge = gateway.create_charge(to_minor_units(amount), currency, method_token, metadata)
    except Exception as exc:
        logger.error("Charge creation failed on %s for %s", gateway.name, metadata, exc_info=True)
        raise GatewayError("Payment processing failed") from exc

    payment = Payment(
        order_id=order_id,
        booking_id=booking_id,
        user_id=str(user["_id"]),
        amount=amount,
        currency=currency,
        gateway=gateway.name,
        gateway_charge_id=charge.id,
        gateway_status=charge.status,
        status="pending",
        payment_method=payment_method or method_token,
    )
    payment_id = create_document(db, "payment", payment)
    logger.info("Opened %s charge %s for %s %s", gateway.name, charge.id, amount, currency)

    # Only a charge the gateway already reports as settled marks the source paid.
    if gateway.normalize_status(charge.status) == "succeeded":
        stored = db["payment"].find_one({"_id": oid(payment_id)})
        _mark_paid(db, stored, charge.id, str(user["_id"]), use_transactions)

    return {
        "success": True,
        "payment": serialize_doc(db["payment"].find_one({"_id": oid(payment_id)})),
        "charge_id": charge.id,
        "client_secret": charge.client_secret,
        "key_id": getattr(gateway, "key_id", None),
    }


def _settle_order(db, order_id: str, payment_status: str, actor_id: Optional[str], use_transactions: bool, transaction_id: Optional[str] = None) -> None:
    if not ObjectId.is_valid(order_id or ""):
        return
    now = utcnow()
    with transaction(db, use_transactions) as session:
        order = db["order"].find_one({"_id": oid(order_id)}, session=session)
        if not order:
            logger.warning("Payment references missing order %s", order_id)
            return
        sets = {"payment_details.status": payment_status}
        target = None
        note = None
        if payment_status == "paid":
            sets["payment_details.transaction_id"] = transaction_id
            sets["payment_details.paid_at"] = now
            target, note = OrderStatus.CONFIRMED, "Payment received"
        elif payment_status == "refunded":
            if order.get("cancellation"):
                sets["cancellation.refund_status"] = "processed"
            target, note = OrderStatus.REFUNDED, "Refund processed"
        elif order.get("payment_details", {}).get("status") == "paid":
            # a late failure event never downgrades a settled order
            return

        if target is not None and can_transition(order["status"], target):
            record_transition(db, order, target, note, actor_id, extra_set=sets, session=session)
        else:
            sets["updated_at"] = now
            db["order"].update_one({"_id": order["_id"]}, {"$set": sets}, session=session)


def _settle_booking(db, booking_id: str, payment_status: str) -> None:
    if not ObjectId.is_valid(booking_id or ""):
        return
    booking = db["booking"].find_one({"_id": oid(booking_id)})
    if not booking:
        logger.warning("Payment references missing booking %s", booking_id)
        return
    sets = {"payment_status": payment_status, "updated_at": utcnow()}
    if payment_status == "paid" and booking.get("status") == BookingStatus.PENDING.value:
        sets["status"] = BookingStatus.CONFIRMED.value
    db["booking"].update_one({"_id": booking["_id"]}, {"$set": sets})


def _apply_outcome(db, payment: dict, status: str, source_status: str, actor_id: Optional[str], use_transactions: bool, transaction_id: Optional[str] = None) -> None:
    sets = {"status": status, "verified_at": utcnow(), "updated_at": utcnow()}
    if transaction_id:
        sets["transaction_id"] = transaction_id
    db["payment"].update_one({"_id": payment["_id"]}, {"$set": sets})
    if payment.get("order_id"):
        _settle_order(db, payment["order_id"], source_status, actor_id, use_transactions, transaction_id)
    if payment.get("booking_id"):
        _settle_booking(db, payment["booking_id"], source_status)


def _mark_paid(db, payment, transaction_id, actor_id, use_transactions):
    _apply_outcome(db, payment, "succeeded", "paid", actor_id, use_transactions, transaction_id)


def _mark_failed(db, payment, actor_id, use_transactions):
    _apply_outcome(db, payment, "failed", "failed", actor_id, use_transactions)


def _mark_refunded(db, payment, actor_id, use_transactions):
    _apply_outcome(db, payment, "refunded", "refunded", actor_id, use_transactions)


def _find_owned_payment(db, charge_id: str, user: dict) -> dict:
    payment = db["payment"].find_one({"gateway_charge_id": charge_id})
    if not payment:
        raise NotFoundError("Payment not found")
    if not _owned_by(payment, user) and not is_admin(user):
        raise AuthorizationError("Unauthorized access to payment")
    return payment


def verify_payment_signature(db, gateway: PaymentGateway, charge_id: str, payment_ref: str, signature: str, user: dict, use_transactions: bool = True) -> dict:
    if not gateway.signature_secret:
        raise ValidationError(f"{gateway.name} payments are confirmed through /api/payments/complete")
    if not gateway.verify_payment(charge_id, payment_ref, signature):
        logger.warning("Rejected payment signature for charge %s", charge_id)
        raise SignatureError("Invalid payment signature")

    payment = _find_owned_payment(db, charge_id, user)
    if payment.get("status") != "succeeded":
        _mark_paid(db, payment, payment_ref, str(user["_id"]), use_transactions)
    return {"success": True, "payment": serialize_doc(db["payment"].find_one({"_id": payment["_id"]}))}


def complete_payment(db, gateway: PaymentGateway, charge_id: str, user: dict, use_transactions: bool = True) -> dict:
    payment = _find_owned_payment(db, charge_id, user)
    try:
        gateway_status = gateway.retrieve_charge(charge_id)
    except Exception as exc:
        logger.error("Could not retrieve %s charge %s", gateway.name, charge_id, exc_info=True)
        raise GatewayError("Payment verification failed") from exc

    db["payment"].update_one(
        {"_id": payment["_id"]},
        {"$set": {"gateway_status": gateway_status, "verified_at": utcnow(), "updated_at": utcnow()}},
    )
    status = gateway.normalize_status(gateway_status)
    if status != payment.get("status"):
        if status == "succeeded":
            _mark_paid(db, payment, charge_id, str(user["_id"]), use_transactions)
        elif status == "failed":
            _mark_failed(db, payment, str(user["_id"]), use_transactions)
    return {
        "success": True,
        "status": gateway_status,
        "payment": serialize_doc(db["payment"].find_one({"_id": payment["_id"]})),
    }


def _payment_for_event(db, event: WebhookEvent):
    if event.charge_id:
        payment = db["payment"].find_one({"gateway_charge_id": event.charge_id})
        if payment:
            return payment
    if event.transaction_id:
        return db["payment"].find_one({"transaction_id": event.transaction_id})
    return None


def handle_webhook(db, gateway: PaymentGateway, body: bytes, signature: Optional[str], use_transactions: bool = True) -> dict:
    if not gateway.verify_signature(body, signature, gateway.webhook_secret):
        logger.warning("Rejected %s webhook with invalid signature", gateway.name)
        raise SignatureError("Invalid webhook signature")

    try:
        event = gateway.parse_event(body)
    except (ValueError, AttributeError) as exc:
        raise ValidationError("Malformed webhook payload") from exc

    if event.kind is None:
        logger.info("Ignoring %s webhook event %s", gateway.name, event.type)
        return {"received": True}

    payment = _payment_for_event(db, event)
    if not payment:
        logger.warning("No payment matches %s event %s (charge %s)", gateway.name, event.type, event.charge_id)
        return {"received": True}

    if event.kind == CAPTURED and payment.get("status") != "succeeded":
        _mark_paid(db, payment, event.transaction_id, None, use_transactions)
    elif event.kind == FAILED and payment.get("status") not in ("failed", "succeeded", "refunded"):
        _mark_failed(db, payment, None, use_transactions)
    elif event.kind == REFUNDED and payment.get("status") != "refunded":
        _mark_refunded(db, payment, None, use_transactions)
    else:
        logger.info("Payment %s already reflects %s", payment["_id"], event.type)
        return {"received": True, "event": event.type}

    logger.info("Applied %s webhook %s to payment %s", gateway.name, event.type, payment["_id"])
    return {"received": True, "event": event.type}


def _payment_context(db, payment: dict, detailed: bool = False) -> dict:
    out = serialize_doc(payment)
    if payment.get("order_id") and ObjectId.is_valid(payment["order_id"]):
        order = db["order"].find_one({"_id": oid(payment["order_id"])})
        if order:
            out["order"] = {
                "id": str(order["_id"]),
                "order_number": order.get("order_number"),
                "total_amount": order.get("total_amount"),
                "status": order.get("status"),
            }
    if payment.get("booking_id") and ObjectId.is_valid(payment["booking_id"]):
        booking = db["booking"].find_one({"_id": oid(payment["booking_id"])})
        if booking:
            ctx = serialize_doc(booking)
            service = None
            if ObjectId.is_valid(booking.get("service_id", "")):
                service = db["service"].find_one({"_id": oid(booking["service_id"])})
            if service:
                fields = ("name", "price", "description") if detailed else ("name", "price")
                ctx["service"] = {k: service.get(k) for k in fields}
            if detailed and ObjectId.is_valid(booking.get("provider_id") or ""):
                provider = db["user"].find_one({"_id": oid(booking["provider_id"])})
                if provider:
                    ctx["provider"] = {"name": provider.get("name"), "email": provider.get("email")}
            out["booking"] = ctx
    return out


def payment_history(db, user: dict) -> list:
    docs = get_documents(db, "payment", {"user_id": str(user["_id"])}, sort=NEWEST_FIRST)
    return [_payment_context(db, d) for d in docs]


def payment_detail(db, payment_id: str, user: dict) -> dict:
    payment = db["payment"].find_one({"_id": oid(payment_id)})
    if not payment:
        raise NotFoundError("Payment not found")
    if not _owned_by(payment, user):
        raise AuthorizationError("Unauthorized access to payment details")
    out = _payment_context(db, payment, detailed=True)
    out["user"] = {"name": user.get("name"), "email": user.get("email")}
    return out
