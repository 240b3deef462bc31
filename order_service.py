"""
Order lifecycle: creation, status transitions, cancellation, listing and stats.

Lifecycle writes are read-modify-write sequences. They run inside
``database.transaction`` and the final update is conditional on the
``version`` that was read, so two writers racing on one order can never both
succeed.
"""

import logging
import math
import re
import secrets
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from bson import ObjectId
from pydantic import BaseModel
from pymongo.errors import DuplicateKeyError

from database import as_bson_datetime, create_document, oid, serialize_doc, transaction, utcnow
from errors import CONCURRENCY_MESSAGE, AuthorizationError, ConcurrencyError, NotFoundError, StateConflictError, ValidationError
from lifecycle import (
    TRANSITION_TARGETS,
    OrderStatus,
    ensure_transition,
    is_cancellable,
    parse_order_status,
)
from schemas import Cancellation, Order, OrderItem, PaymentDetails, StatusHistoryEntry
from security import is_admin, public_user

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100
ORDER_NUMBER_ATTEMPTS = 3
_SORT_FIELD = re.compile(r"^[A-Za-z_][A-Za-z0-9_.]*$")


def generate_order_number(now: Optional[datetime] = None) -> str:
    now = now or utcnow()
    return f"ORD{int(now.timestamp() * 1000)}{secrets.randbelow(1000):03d}"


def build_line_items(items: Iterable) -> List[OrderItem]:
    lines = []
    for item in items:
        data = item.model_dump() if isinstance(item, BaseModel) else dict(item)
        data["subtotal"] = data["quantity"] * data["price"]
        lines.append(OrderItem(**data))
    return lines


def create_order(db, user: dict, items, payment_method: Optional[str] = None, customer_notes: Optional[str] = None) -> dict:
    if not items:
        raise ValidationError("Items are required and must be a non-empty array")

    lines = build_line_items(items)
    subtotal = sum(line.subtotal for line in lines)
    tax = 0
    discount = 0
    total_amount = subtotal + tax - discount

    now = utcnow()
    actor_id = str(user["_id"])
    order = Order(
        order_number=generate_order_number(now),
        user_id=actor_id,
        items=lines,
        status=OrderStatus.PENDING.value,
        subtotal=subtotal,
        tax=tax,
        discount=discount,
        total_amount=total_amount,
        payment_details=PaymentDetails(method=payment_method or "cash", status="pending"),
        status_history=[StatusHistoryEntry(status=OrderStatus.PENDING.value, note="Order placed", updated_by=actor_id, timestamp=now)],
        customer_notes=customer_notes,
    )
    for attempt in range(ORDER_NUMBER_ATTEMPTS):
        try:
            order_id = create_document(db, "order", order)
            break
        except DuplicateKeyError:
            if attempt == ORDER_NUMBER_ATTEMPTS - 1:
                raise
            order.order_number = generate_order_number()
    logger.info("Order %s created for user %s (total %s)", order.order_number, actor_id, total_amount)
    return serialize_doc(db["order"].find_one({"_id": oid(order_id)}))


def record_transition(db, order: dict, target: OrderStatus, note: Optional[str], actor_id: Optional[str], extra_set: Optional[dict] = None, session=None) -> None:
    """Move ``order`` to ``target`` and append one history entry.

    Raises StateConflictError for transitions the status machine forbids and
    ConcurrencyError when the stored order no longer has the version read.
    """
    ensure_transition(order["status"], target)
    now = utcnow()
    entry = StatusHistoryEntry(status=target.value, note=note, updated_by=actor_id, timestamp=now)
    updates = {"status": target.value, "updated_at": now}
    if target == OrderStatus.COMPLETED:
        updates["completed_at"] = now
    if extra_set:
        updates.update(extra_set)
    result = db["order"].update_one(
        {"_id": order["_id"], "version": order.get("version")},
        {
            "$set": updates,
            "$push": {"status_history": entry.model_dump()},
            "$inc": {"version": 1},
        },
        session=session,
    )
    if result.matched_count == 0:
        raise ConcurrencyError(CONCURRENCY_MESSAGE)
    logger.info("Order %s: %s -> %s", order.get("order_number"), order["status"], target.value)


def update_order_status(db, order_id: str, status: str, note: Optional[str], actor: dict, use_transactions: bool = True) -> dict:
    target = parse_order_status(status)
    if target not in TRANSITION_TARGETS:
        raise ValidationError("Invalid status")
    _id = oid(order_id)

    with transaction(db, use_transactions) as session:
        order = db["order"].find_one({"_id": _id}, session=session)
        if not order:
            raise NotFoundError("Order not found")
        record_transition(db, order, target, note, str(actor["_id"]), session=session)

    return get_order(db, order_id, actor)


def cancel_order(db, order_id: str, actor: dict, reason: Optional[str] = None, note: Optional[str] = None, refund_status: Optional[str] = None, use_transactions: bool = True) -> dict:
    _id = oid(order_id)

    with transaction(db, use_transactions) as session:
        order = db["order"].find_one({"_id": _id}, session=session)
        if not order:
            raise NotFoundError("Order not found")
        if not is_admin(actor) and order.get("user_id") != str(actor["_id"]):
            raise AuthorizationError("Not authorized to cancel this order")
        if not is_cancellable(order["status"]):
            raise StateConflictError(f"Order cannot be cancelled when status is {order['status']}")
        actor_id = str(actor["_id"])
        cancellation = Cancellation(
            reason=reason,
            note=note,
            cancelled_at=utcnow(),
            cancelled_by=actor_id,
            refund_status=refund_status or "not_applicable",
        )
        record_transition(
            db,
            order,
            OrderStatus.CANCELLED,
            reason,
            actor_id,
            extra_set={"cancellation": cancellation.model_dump()},
            session=session,
        )

    return get_order(db, order_id, actor)


def get_order(db, order_id: str, user: dict) -> dict:
    order = db["order"].find_one({"_id": oid(order_id)})
    if not order:
        raise NotFoundError("Order not found")
    if not is_admin(user) and order.get("user_id") != str(user["_id"]):
        raise AuthorizationError("Not authorized to view this order")
    return _with_customer(db, order)


def _with_customer(db, order: dict) -> dict:
    out = serialize_doc(order)
    customer = None
    if order.get("user_id") and ObjectId.is_valid(order["user_id"]):
        doc = db["user"].find_one({"_id": oid(order["user_id"])})
        if doc:
            full = public_user(doc)
            customer = {k: full[k] for k in ("id", "name", "email", "phone")}
    out["customer"] = customer
    return out


def parse_date(value: str, field: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid {field}, expected an ISO 8601 date")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_sort(sort_by: Optional[str]):
    if not sort_by:
        return [("created_at", -1)]
    field, _, direction = sort_by.partition(":")
    if not _SORT_FIELD.match(field):
        raise ValidationError("Invalid sortBy field")
    return [(field, -1 if direction == "desc" else 1)]


def paginate(collection, filter_dict: dict, page: int, limit: int, sort):
    page = max(page or 1, 1)
    limit = min(max(limit or DEFAULT_PAGE_SIZE, 1), MAX_PAGE_SIZE)
    docs = list(collection.find(filter_dict).sort(sort).skip((page - 1) * limit).limit(limit))
    total = collection.count_documents(filter_dict)
    pagination = {
        "current_page": page,
        "total_pages": math.ceil(total / limit),
        "total_items": total,
        "items_per_page": limit,
    }
    return docs, pagination


def list_orders(
    db,
    user: dict,
    status: Optional[str] = None,
    payment_status: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    search: Optional[str] = None,
    page: int = 1,
    limit: int = DEFAULT_PAGE_SIZE,
    sort_by: Optional[str] = None,
) -> dict:
    query = {}
    if not is_admin(user):
        query["user_id"] = str(user["_id"])
    if status:
        query["status"] = status
    if payment_status:
        query["payment_details.status"] = payment_status
    if start_date and end_date:
        query["created_at"] = {
            "$gte": as_bson_datetime(parse_date(start_date, "startDate")),
            "$lte": as_bson_datetime(parse_date(end_date, "endDate")),
        }
    if search:
        pattern = re.escape(search)
        query["$or"] = [
            {"order_number": {"$regex": pattern, "$options": "i"}},
            {"items.name": {"$regex": pattern, "$options": "i"}},
        ]

    docs, pagination = paginate(db["order"], query, page, limit, parse_sort(sort_by))
    return {"orders": [_with_customer(db, d) for d in docs], "pagination": pagination}


def order_stats(db, start_date: Optional[str] = None, end_date: Optional[str] = None) -> dict:
    start = parse_date(start_date, "startDate") if start_date else datetime.fromtimestamp(0, tz=timezone.utc)
    end = parse_date(end_date, "endDate") if end_date else utcnow()
    in_range = {"created_at": {"$gte": as_bson_datetime(start), "$lte": as_bson_datetime(end)}}

    status_wise = list(db["order"].aggregate([
        {"$match": in_range},
        {"$group": {"_id": "$status", "count": {"$sum": 1}, "total_amount": {"$sum": "$total_amount"}}},
    ]))
    payment_stats = list(db["order"].aggregate([
        {"$match": in_range},
        {"$group": {"_id": "$payment_details.method", "count": {"$sum": 1}, "total_amount": {"$sum": "$total_amount"}}},
    ]))

    today = utcnow().replace(hour=0, minute=0, second=0, microsecond=0)
    since_today = {"created_at": {"$gte": as_bson_datetime(today)}}
    today_amount = 0.0
    for d in db["order"].find(since_today, {"total_amount": 1}):
        today_amount += float(d.get("total_amount", 0))
    today_stats = {
        "total_orders": db["order"].count_documents(since_today),
        "total_amount": round(today_amount, 2),
        "completed_orders": db["order"].count_documents({**since_today, "status": OrderStatus.COMPLETED.value}),
        "cancelled_orders": db["order"].count_documents({**since_today, "status": OrderStatus.CANCELLED.value}),
    }

    return {
        "status_wise_stats": [{"status": s.pop("_id"), **s} for s in status_wise],
        "today_stats": today_stats,
        "payment_stats": [{"method": p.pop("_id"), **p} for p in payment_stats],
    }
