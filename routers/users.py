from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, EmailStr, Field

from database import get_db, utcnow
from security import get_current_user, hash_password, public_user, verify_password

router = APIRouter(prefix="/api/users", tags=["users"])


class ChangePasswordPayload(BaseModel):
    current_password: str = Field(..., min_length=6)
    new_password: str = Field(..., min_length=6)


class UpdateProfilePayload(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(None, pattern=r"^[0-9]{10,15}$")


@router.get("/me")
def me(user=Depends(get_current_user)):
    return public_user(user)


@router.put("/change-password")
def change_password(payload: ChangePasswordPayload, user=Depends(get_current_user), db=Depends(get_db)):
    if not verify_password(payload.current_password, user.get("hashed_password", "")):
        raise HTTPException(status_code=400, detail="Current password is incorrect")
    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {"hashed_password": hash_password(payload.new_password), "updated_at": utcnow()}},
    )
    return {"message": "Password updated successfully"}


@router.put("/update-profile")
def update_profile(payload: UpdateProfilePayload, user=Depends(get_current_user), db=Depends(get_db)):
    updates = {k: v for k, v in payload.model_dump().items() if v is not None}
    if "name" in updates:
        updates["name"] = updates["name"].strip()
    if "email" in updates:
        updates["email"] = str(updates["email"]).strip().lower()
        taken = db["user"].find_one({"email": updates["email"], "_id": {"$ne": user["_id"]}})
        if taken:
            raise HTTPException(status_code=400, detail="Email already registered")
    if updates:
        updates["updated_at"] = utcnow()
        db["user"].update_one({"_id": user["_id"]}, {"$set": updates})
    return public_user(db["user"].find_one({"_id": user["_id"]}))
