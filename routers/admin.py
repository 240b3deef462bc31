import re
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from database import get_db, oid, utcnow
from errors import NotFoundError, ValidationError
from order_service import paginate, parse_sort
from security import public_user, require_admin

router = APIRouter(prefix="/api/admin", tags=["admin"])


class AdminUserUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    phone: Optional[str] = None
    role: Optional[Literal["user", "admin"]] = None
    is_active: Optional[bool] = None
    is_verified: Optional[bool] = None


@router.get("/users")
def list_users(
    search: Optional[str] = None,
    role: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1),
    sortBy: Optional[str] = None,
    admin=Depends(require_admin),
    db=Depends(get_db),
):
    query = {}
    if role:
        query["role"] = role
    if search:
        pattern = re.escape(search)
        query["$or"] = [
            {"name": {"$regex": pattern, "$options": "i"}},
            {"email": {"$regex": pattern, "$options": "i"}},
        ]
    docs, pagination = paginate(db["user"], query, page, limit, parse_sort(sortBy))
    return {"users": [public_user(d) for d in docs], "pagination": pagination}


@router.put("/users/{user_id}")
def update_user(user_id: str, payload: AdminUserUpdate, admin=Depends(require_admin), db=Depends(get_db)):
    updates = {k: v for k, v in payload.model_dump().items() if v is not None}
    if not updates:
        raise ValidationError("No updates provided")
    updates["updated_at"] = utcnow()
    res = db["user"].update_one({"_id": oid(user_id)}, {"$set": updates})
    if res.matched_count == 0:
        raise NotFoundError("User not found")
    return public_user(db["user"].find_one({"_id": oid(user_id)}))


@router.delete("/users/{user_id}")
def delete_user(user_id: str, admin=Depends(require_admin), db=Depends(get_db)):
    res = db["user"].delete_one({"_id": oid(user_id)})
    if res.deleted_count == 0:
        raise NotFoundError("User not found")
    return {"message": "User deleted successfully"}


@router.patch("/users/{user_id}/toggle-status")
def toggle_user_status(user_id: str, admin=Depends(require_admin), db=Depends(get_db)):
    user = db["user"].find_one({"_id": oid(user_id)})
    if not user:
        raise NotFoundError("User not found")
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"is_active": not user.get("is_active", True), "updated_at": utcnow()}})
    return public_user(db["user"].find_one({"_id": user["_id"]}))


@router.get("/counts")
def dashboard_counts(admin=Depends(require_admin), db=Depends(get_db)):
    return {
        "users": db["user"].count_documents({}),
        "orders": db["order"].count_documents({}),
        "products": db["product"].count_documents({}),
        "services": db["service"].count_documents({}),
        "bookings": db["booking"].count_documents({}),
    }
