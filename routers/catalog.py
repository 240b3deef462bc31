"""
Products and services share one catalog implementation: public reads plus
admin create/list/get/update/delete/toggle, parameterized by collection.
"""

import re
from typing import List, Optional, Type

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field, field_validator

from database import NEWEST_FIRST, create_document, get_db, get_documents, oid, serialize_doc, utcnow
from errors import NotFoundError, ValidationError
from schemas import Product as ProductSchema
from schemas import Service as ServiceSchema
from schemas import ServiceCategory, validate_image_url
from security import require_admin

public_router = APIRouter(prefix="/api", tags=["catalog"])
admin_router = APIRouter(prefix="/api/admin", tags=["admin"])


class ProductUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    category: Optional[str] = None
    stock: Optional[int] = Field(None, ge=0)
    sizes: Optional[List[str]] = None
    pincodes: Optional[List[str]] = None
    image: Optional[str] = None


class ServiceUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    duration: Optional[int] = Field(None, ge=1)
    category: Optional[ServiceCategory] = None
    image: Optional[str] = None
    availability: Optional[bool] = None

    @field_validator("image")
    @classmethod
    def image_must_be_url(cls, v):
        return validate_image_url(v)


def register_catalog(
    path: str,
    collection: str,
    label: str,
    create_model: Type[BaseModel],
    update_model: Type[BaseModel],
    public_filter: dict,
    owner_field: Optional[str] = None,
):
    def find_or_404(db, item_id: str) -> dict:
        doc = db[collection].find_one({"_id": oid(item_id)})
        if not doc:
            raise NotFoundError(f"{label} not found")
        return doc

    @public_router.get(f"/{path}", name=f"list_public_{path}")
    def list_public(category: Optional[str] = None, search: Optional[str] = None, db=Depends(get_db)):
        query = dict(public_filter)
        if category:
            query["category"] = category
        if search:
            pattern = re.escape(search)
            query["$or"] = [
                {"name": {"$regex": pattern, "$options": "i"}},
                {"description": {"$regex": pattern, "$options": "i"}},
            ]
        return [serialize_doc(d) for d in get_documents(db, collection, query, sort=NEWEST_FIRST)]

    @public_router.get(f"/{path}/{{item_id}}", name=f"get_public_{path}")
    def get_public(item_id: str, db=Depends(get_db)):
        doc = find_or_404(db, item_id)
        if doc.get("is_active") is False:
            raise NotFoundError(f"{label} not found")
        return serialize_doc(doc)

    @admin_router.post(f"/{path}", status_code=201, name=f"create_{path}")
    def create_item(payload: create_model, admin=Depends(require_admin), db=Depends(get_db)):
        data = payload.model_dump()
        if owner_field and not data.get(owner_field):
            data[owner_field] = str(admin["_id"])
        item_id = create_document(db, collection, data)
        return serialize_doc(db[collection].find_one({"_id": oid(item_id)}))

    @admin_router.get(f"/{path}", name=f"list_admin_{path}")
    def list_items(admin=Depends(require_admin), db=Depends(get_db)):
        return [serialize_doc(d) for d in get_documents(db, collection, sort=NEWEST_FIRST)]

    @admin_router.get(f"/{path}/{{item_id}}", name=f"get_admin_{path}")
    def get_item(item_id: str, admin=Depends(require_admin), db=Depends(get_db)):
        return serialize_doc(find_or_404(db, item_id))

    @admin_router.put(f"/{path}/{{item_id}}", name=f"update_{path}")
    def update_item(item_id: str, payload: update_model, admin=Depends(require_admin), db=Depends(get_db)):
        updates = {k: v for k, v in payload.model_dump().items() if v is not None}
        if not updates:
            raise ValidationError("No updates provided")
        updates["updated_at"] = utcnow()
        res = db[collection].update_one({"_id": oid(item_id)}, {"$set": updates})
        if res.matched_count == 0:
            raise NotFoundError(f"{label} not found")
        return serialize_doc(find_or_404(db, item_id))

    @admin_router.delete(f"/{path}/{{item_id}}", name=f"delete_{path}")
    def delete_item(item_id: str, admin=Depends(require_admin), db=Depends(get_db)):
        res = db[collection].delete_one({"_id": oid(item_id)})
        if res.deleted_count == 0:
            raise NotFoundError(f"{label} not found")
        return {"message": f"{label} deleted successfully"}

    @admin_router.patch(f"/{path}/{{item_id}}/toggle-status", name=f"toggle_{path}")
    def toggle_item(item_id: str, admin=Depends(require_admin), db=Depends(get_db)):
        doc = find_or_404(db, item_id)
        db[collection].update_one(
            {"_id": doc["_id"]},
            {"$set": {"is_active": not doc.get("is_active", True), "updated_at": utcnow()}},
        )
        return serialize_doc(find_or_404(db, item_id))


register_catalog(
    "products", "product", "Product", ProductSchema, ProductUpdate,
    public_filter={"is_active": {"$ne": False}},
)
register_catalog(
    "services", "service", "Service", ServiceSchema, ServiceUpdate,
    public_filter={"is_active": {"$ne": False}, "availability": True},
    owner_field="created_by",
)
