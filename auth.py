import logging
import os
from datetime import timedelta
from typing import Any, Dict, Optional

from bson import ObjectId
from fastapi import Depends, Header, HTTPException, Request, Response
from jose import JWTError, jwt
from passlib.context import CryptContext
from pymongo import ReturnDocument

from database import as_utc, db, utcnow

logger = logging.getLogger(__name__)

# Security/JWT
JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_ALG = "HS256"
JWT_EXPIRE_DAYS = int(os.getenv("JWT_EXPIRE_DAYS", 7))
COOKIE_NAME = "jwt"
COOKIE_SECURE = os.getenv("COOKIE_SECURE", "false").lower() == "true"

# Lockout
MAX_LOGIN_ATTEMPTS = int(os.getenv("MAX_LOGIN_ATTEMPTS", 5))
LOCK_TIME_MINUTES = int(os.getenv("LOCK_TIME_MINUTES", 120))
LOCKED_MESSAGE = "Account is temporarily locked due to too many failed login attempts"

MIN_PASSWORD_LENGTH = 6

pwd_context = CryptContext(
    schemes=["bcrypt"],
    deprecated="auto",
    bcrypt__rounds=int(os.getenv("BCRYPT_ROUNDS", 12)),
)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    return pwd_context.verify(password, password_hash or "")


def public_user(user: Dict[str, Any]) -> Dict[str, Any]:
    """User document safe to send to a client"""
    data = {k: v for k, v in user.items() if k != "password_hash"}
    data["id"] = str(data.pop("_id"))
    for key in ("created_at", "updated_at", "lock_until"):
        if data.get(key) is not None:
            data[key] = data[key].isoformat()
    return data


# Auth helpers
def create_token(user: dict) -> str:
    payload = {
        "sub": str(user["_id"]),
        "role": user.get("role", "user"),
        "exp": utcnow() + timedelta(days=JWT_EXPIRE_DAYS),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALG)


def set_auth_cookie(response: Response, token: str):
    response.set_cookie(
        COOKIE_NAME,
        token,
        httponly=True,
        secure=COOKIE_SECURE,
        samesite="strict",
        max_age=JWT_EXPIRE_DAYS * 24 * 60 * 60,
    )


def clear_auth_cookie(response: Response):
    response.delete_cookie(COOKIE_NAME, httponly=True, samesite="strict")


def get_current_user(request: Request, authorization: Optional[str] = Header(None)):
    token = None
    if authorization:
        token = authorization.replace("Bearer ", "").strip()
    if not token:
        token = request.cookies.get(COOKIE_NAME)
    if not token:
        raise HTTPException(status_code=401, detail="Unauthorized - No token provided")
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])
    except JWTError:
        raise HTTPException(status_code=401, detail="Unauthorized - Invalid token")
    user_id = payload.get("sub")
    if not user_id or not ObjectId.is_valid(user_id):
        raise HTTPException(status_code=401, detail="Unauthorized - Invalid token")
    user = db["user"].find_one({"_id": ObjectId(user_id)})
    if not user:
        raise HTTPException(status_code=401, detail="Invalid token user")
    if not user.get("is_active", True):
        raise HTTPException(status_code=403, detail="Account is deactivated. Please contact support")
    return user


def is_admin(user: dict) -> bool:
    return user.get("role") == "admin"


def require_admin(user=Depends(get_current_user)):
    if not is_admin(user):
        raise HTTPException(status_code=403, detail="Forbidden - Admin access required")
    return user


def require_self_or_admin(user_id: str, user=Depends(get_current_user)):
    if str(user["_id"]) != user_id and not is_admin(user):
        raise HTTPException(status_code=403, detail="Forbidden - You can only access your own account")
    return user


def is_locked(user: dict) -> bool:
    lock_until = as_utc(user.get("lock_until"))
    return bool(lock_until and lock_until > utcnow())


def authenticate(email: str, password: str) -> dict:
    """
    Check credentials and keep the lockout counters in step.

    Unknown email -> 401. Locked account -> 423 regardless of the password.
    The failure that reaches MAX_LOGIN_ATTEMPTS locks the account and answers
    423; earlier failures answer 401. Success clears the counters.
    """
    user = db["user"].find_one({"email": email.lower()})
    if not user:
        raise HTTPException(status_code=401, detail="Invalid email or password")

    if is_locked(user):
        raise HTTPException(status_code=423, detail=LOCKED_MESSAGE)

    if not user.get("is_active", True):
        raise HTTPException(status_code=403, detail="Account is deactivated. Please contact support")

    if not verify_password(password, user.get("password_hash", "")):
        if user.get("lock_until"):
            # lock has expired, start a fresh count
            db["user"].update_one(
                {"_id": user["_id"], "lock_until": user["lock_until"]},
                {"$set": {"login_attempts": 0, "lock_until": None}},
            )
        counted = db["user"].find_one_and_update(
            {"_id": user["_id"], "lock_until": None},
            {"$inc": {"login_attempts": 1}, "$set": {"updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if counted is None:
            raise HTTPException(status_code=423, detail=LOCKED_MESSAGE)
        attempts = counted["login_attempts"]
        if attempts >= MAX_LOGIN_ATTEMPTS:
            db["user"].update_one(
                {"_id": user["_id"]},
                {"$set": {
                    "login_attempts": 0,
                    "lock_until": utcnow() + timedelta(minutes=LOCK_TIME_MINUTES),
                    "updated_at": utcnow(),
                }},
            )
            logger.warning("Locked account %s after %d failed logins", user["_id"], attempts)
            raise HTTPException(status_code=423, detail=LOCKED_MESSAGE)
        raise HTTPException(status_code=401, detail="Invalid email or password")

    if user.get("login_attempts") or user.get("lock_until"):
        db["user"].update_one(
            {"_id": user["_id"]},
            {"$set": {"login_attempts": 0, "lock_until": None, "updated_at": utcnow()}},
        )
        user["login_attempts"] = 0
        user["lock_until"] = None
    return user
