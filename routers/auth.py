import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, EmailStr, Field
from pymongo.errors import DuplicateKeyError

from config import Settings, get_settings
from database import create_document, get_db
from mailer import send_password_reset_email, send_verification_email
from schemas import User as UserSchema
from security import create_access_token, generate_token, hash_password, public_user, verify_password

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])


class SignupPayload(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=6)
    phone: Optional[str] = None


class LoginPayload(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class EmailPayload(BaseModel):
    email: EmailStr


class ResetPasswordPayload(BaseModel):
    email: EmailStr
    token: str
    new_password: str = Field(..., min_length=6)


def _normalize(email: str) -> str:
    return str(email).strip().lower()


@router.post("/signup", status_code=201)
def signup(payload: SignupPayload, db=Depends(get_db), settings: Settings = Depends(get_settings)):
    email = _normalize(payload.email)
    if db["user"].find_one({"email": email}):
        raise HTTPException(status_code=400, detail="Email already registered")
    token = generate_token()
    user_doc = UserSchema(
        name=payload.name.strip(),
        email=email,
        phone=payload.phone,
        hashed_password=hash_password(payload.password),
        role="user",
        verification_token=token,
    )
    try:
        create_document(db, "user", user_doc)
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="Email already registered")
    send_verification_email(settings, email, payload.name, token)
    logger.info("User %s signed up", email)
    return {"message": "User created. Please verify your email."}


@router.get("/verify/{token}")
def verify_email(token: str, db=Depends(get_db)):
    user = db["user"].find_one({"verification_token": token})
    if not user:
        raise HTTPException(status_code=400, detail="Invalid verification token")
    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {"is_verified": True, "verification_token": None}},
    )
    return {"message": "Email verified successfully"}


@router.post("/login")
def login(payload: LoginPayload, db=Depends(get_db), settings: Settings = Depends(get_settings)):
    user = db["user"].find_one({"email": _normalize(payload.email)})
    if not user or not verify_password(payload.password, user.get("hashed_password", "")):
        raise HTTPException(status_code=400, detail="Invalid credentials")
    if not user.get("is_verified"):
        raise HTTPException(status_code=400, detail="Please verify your email first")
    if not user.get("is_active", True):
        raise HTTPException(status_code=403, detail="Account is deactivated")
    token = create_access_token({"sub": str(user["_id"]), "role": user.get("role", "user")}, settings)
    return {"token": token, "token_type": "bearer", "user": public_user(user)}


@router.post("/forgotPassword")
def forgot_password(payload: EmailPayload, db=Depends(get_db), settings: Settings = Depends(get_settings)):
    email = _normalize(payload.email)
    user = db["user"].find_one({"email": email})
    if not user:
        raise HTTPException(status_code=400, detail="Email not registered")
    token = generate_token()
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"reset_token": token}})
    send_password_reset_email(settings, email, token)
    return {"message": "Password reset code sent to your email"}


@router.post("/resetPassword")
def reset_password(payload: ResetPasswordPayload, db=Depends(get_db)):
    user = db["user"].find_one({"email": _normalize(payload.email)})
    if not user or not user.get("reset_token") or user["reset_token"] != payload.token:
        raise HTTPException(status_code=400, detail="Invalid or expired reset token")
    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {"hashed_password": hash_password(payload.new_password), "reset_token": None}},
    )
    return {"message": "Password updated successfully"}


@router.post("/resentVerifyLink")
def resend_verification(payload: EmailPayload, db=Depends(get_db), settings: Settings = Depends(get_settings)):
    email = _normalize(payload.email)
    user = db["user"].find_one({"email": email})
    if not user:
        raise HTTPException(status_code=400, detail="Email not registered")
    if user.get("is_verified"):
        raise HTTPException(status_code=400, detail="Email already verified")
    token = generate_token()
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"verification_token": token}})
    send_verification_email(settings, email, user.get("name", ""), token)
    return {"message": "Verification link sent"}
