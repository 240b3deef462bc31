from typing import List, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field, field_validator

import order_service
from config import Settings, get_settings
from database import get_db
from lifecycle import describe_transitions
from schemas import ItemType, PaymentMethod, RefundStatus
from security import get_current_user, require_admin

router = APIRouter(prefix="/api", tags=["orders"])


class OrderItemIn(BaseModel):
    type: ItemType
    item_id: str
    name: str = Field(..., min_length=1)
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0)

    @field_validator("item_id")
    @classmethod
    def item_id_is_object_id(cls, v):
        if not ObjectId.is_valid(v):
            raise ValueError("Invalid item ID format")
        return v


class CreateOrderPayload(BaseModel):
    items: Optional[List[OrderItemIn]] = None
    payment_method: Optional[PaymentMethod] = None
    customer_notes: Optional[str] = None


class UpdateStatusPayload(BaseModel):
    status: str = Field(
        ...,
        description="Target status. Allowed moves:\n" + describe_transitions()
        + "\nrefunded is only reached through a gateway refund.",
    )
    note: Optional[str] = None


class CancelOrderPayload(BaseModel):
    reason: Optional[str] = None
    note: Optional[str] = None
    refund_status: Optional[RefundStatus] = None


@router.post("/orders", status_code=201)
def create_order(payload: CreateOrderPayload, user=Depends(get_current_user), db=Depends(get_db)):
    order = order_service.create_order(db, user, payload.items, payload.payment_method, payload.customer_notes)
    return {"success": True, "message": "Order created successfully", "data": order}


@router.get("/orders")
def list_orders(
    status: Optional[str] = None,
    paymentStatus: Optional[str] = None,
    startDate: Optional[str] = None,
    endDate: Optional[str] = None,
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(order_service.DEFAULT_PAGE_SIZE, ge=1),
    sortBy: Optional[str] = None,
    user=Depends(get_current_user),
    db=Depends(get_db),
):
    return order_service.list_orders(
        db,
        user,
        status=status,
        payment_status=paymentStatus,
        start_date=startDate,
        end_date=endDate,
        search=search,
        page=page,
        limit=limit,
        sort_by=sortBy,
    )


@router.get("/orders-stats")
def order_stats(
    startDate: Optional[str] = None,
    endDate: Optional[str] = None,
    admin=Depends(require_admin),
    db=Depends(get_db),
):
    return order_service.order_stats(db, startDate, endDate)


@router.get("/orders/{order_id}")
def get_order(order_id: str, user=Depends(get_current_user), db=Depends(get_db)):
    return order_service.get_order(db, order_id, user)


@router.patch("/orders/{order_id}/status")
def update_order_status(
    order_id: str,
    payload: UpdateStatusPayload,
    admin=Depends(require_admin),
    db=Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    return order_service.update_order_status(
        db, order_id, payload.status, payload.note, admin, use_transactions=settings.mongo_transactions
    )


@router.post("/orders/{order_id}/cancel")
def cancel_order(
    order_id: str,
    payload: CancelOrderPayload,
    user=Depends(get_current_user),
    db=Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    return order_service.cancel_order(
        db,
        order_id,
        user,
        reason=payload.reason,
        note=payload.note,
        refund_status=payload.refund_status,
        use_transactions=settings.mongo_transactions,
    )
