import logging
from datetime import datetime
from typing import Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from database import create_document, get_db, oid, serialize_doc, utcnow
from errors import AuthorizationError, NotFoundError, StateConflictError, ValidationError
from lifecycle import BookingStatus, ensure_booking_transition
from order_service import paginate, parse_sort
from schemas import Booking as BookingSchema
from security import get_current_user, is_admin

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/bookings", tags=["bookings"])

BOOKING_CONFLICT = "Booking was modified by another request, reload and try again"


class CreateBookingPayload(BaseModel):
    service_id: str
    date: datetime
    time: str = Field(..., min_length=1)
    duration: Optional[int] = Field(None, ge=1)
    notes: Optional[str] = None


class UpdateBookingPayload(BaseModel):
    date: Optional[datetime] = None
    time: Optional[str] = Field(None, min_length=1)
    duration: Optional[int] = Field(None, ge=1)
    notes: Optional[str] = None


class CancelBookingPayload(BaseModel):
    cancellation_reason: Optional[str] = None


class BookingStatusPayload(BaseModel):
    status: str


def _find_booking(db, booking_id: str) -> dict:
    booking = db["booking"].find_one({"_id": oid(booking_id)})
    if not booking:
        raise NotFoundError("Booking not found")
    return booking


def _is_party(booking: dict, user: dict) -> bool:
    uid = str(user["_id"])
    return booking.get("user_id") == uid or booking.get("provider_id") == uid


def _with_context(db, booking: dict) -> dict:
    out = serialize_doc(booking)
    if ObjectId.is_valid(booking.get("service_id", "")):
        service = db["service"].find_one({"_id": oid(booking["service_id"])})
        if service:
            out["service"] = {k: service.get(k) for k in ("name", "description", "price", "duration", "category", "image")}
    for field, key in (("user_id", "user"), ("provider_id", "provider")):
        if ObjectId.is_valid(booking.get(field) or ""):
            person = db["user"].find_one({"_id": oid(booking[field])})
            if person:
                out[key] = {"name": person.get("name"), "email": person.get("email"), "phone": person.get("phone")}
    return out


@router.post("", status_code=201)
def create_booking(payload: CreateBookingPayload, user=Depends(get_current_user), db=Depends(get_db)):
    service = db["service"].find_one({"_id": oid(payload.service_id)})
    if not service or service.get("is_active") is False:
        raise NotFoundError("Service not found")
    if not service.get("availability", True):
        raise ValidationError("Service is not available for booking")
    booking = BookingSchema(
        user_id=str(user["_id"]),
        service_id=payload.service_id,
        provider_id=service.get("created_by"),
        date=payload.date,
        time=payload.time,
        duration=payload.duration or service.get("duration", 60),
        notes=payload.notes,
    )
    booking_id = create_document(db, "booking", booking)
    logger.info("Booking %s created for service %s", booking_id, payload.service_id)
    return _with_context(db, _find_booking(db, booking_id))


@router.get("")
def list_bookings(
    status: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1),
    sortBy: Optional[str] = None,
    user=Depends(get_current_user),
    db=Depends(get_db),
):
    query = {}
    if not is_admin(user):
        uid = str(user["_id"])
        query["$or"] = [{"user_id": uid}, {"provider_id": uid}]
    if status:
        query["status"] = status
    docs, pagination = paginate(db["booking"], query, page, limit, parse_sort(sortBy))
    return {"bookings": [_with_context(db, d) for d in docs], "pagination": pagination}


@router.get("/{booking_id}")
def get_booking(booking_id: str, user=Depends(get_current_user), db=Depends(get_db)):
    booking = _find_booking(db, booking_id)
    if not (_is_party(booking, user) or is_admin(user)):
        raise AuthorizationError("Not authorized to view this booking")
    return _with_context(db, booking)


@router.put("/{booking_id}")
def update_booking(booking_id: str, payload: UpdateBookingPayload, user=Depends(get_current_user), db=Depends(get_db)):
    booking = _find_booking(db, booking_id)
    if booking.get("user_id") != str(user["_id"]):
        raise NotFoundError("Booking not found")
    if booking.get("status") != BookingStatus.PENDING.value:
        raise StateConflictError(f"Booking cannot be changed as it is already {booking.get('status')}")
    updates = {k: v for k, v in payload.model_dump().items() if v is not None}
    if not updates:
        raise ValidationError("No updates provided")
    updates["updated_at"] = utcnow()
    db["booking"].update_one({"_id": booking["_id"]}, {"$set": updates})
    return _with_context(db, _find_booking(db, booking_id))


@router.delete("/{booking_id}")
def cancel_booking(booking_id: str, payload: Optional[CancelBookingPayload] = None, user=Depends(get_current_user), db=Depends(get_db)):
    booking = _find_booking(db, booking_id)
    if not _is_party(booking, user):
        raise AuthorizationError("Not authorized to cancel this booking")
    if booking.get("status") in (BookingStatus.COMPLETED.value, BookingStatus.CANCELLED.value):
        raise StateConflictError(f"Booking cannot be cancelled as it is already {booking['status']}")
    now = utcnow()
    res = db["booking"].update_one(
        {"_id": booking["_id"], "status": booking["status"]},
        {"$set": {
            "status": BookingStatus.CANCELLED.value,
            "cancellation_reason": payload.cancellation_reason if payload else None,
            "cancelled_by": str(user["_id"]),
            "cancelled_at": now,
            "updated_at": now,
        }},
    )
    if res.matched_count == 0:
        raise StateConflictError(BOOKING_CONFLICT)
    logger.info("Booking %s cancelled by %s", booking_id, user["_id"])
    return {"message": "Booking cancelled successfully", "booking": _with_context(db, _find_booking(db, booking_id))}


@router.patch("/{booking_id}/status")
def update_booking_status(booking_id: str, payload: BookingStatusPayload, user=Depends(get_current_user), db=Depends(get_db)):
    booking = _find_booking(db, booking_id)
    if not (is_admin(user) or booking.get("provider_id") == str(user["_id"])):
        raise AuthorizationError("Only the provider or an admin can change booking status")
    target = ensure_booking_transition(booking["status"], payload.status)
    sets = {"status": target.value, "updated_at": utcnow()}
    if target == BookingStatus.CANCELLED:
        sets.update(cancelled_by=str(user["_id"]), cancelled_at=utcnow())
    res = db["booking"].update_one({"_id": booking["_id"], "status": booking["status"]}, {"$set": sets})
    if res.matched_count == 0:
        raise StateConflictError(BOOKING_CONFLICT)
    return _with_context(db, _find_booking(db, booking_id))
