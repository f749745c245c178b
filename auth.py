"""
Authentication & authorization helpers.
Password hashing, JWT issuance/verification and the role-gating dependencies.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import Depends, Header, HTTPException
from jose import JWTError, jwt
from passlib.context import CryptContext
from pymongo.database import Database

import settings
from database import get_db

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

FORBIDDEN = "user forbidden to perform an operation on this resource"

VERIFY_ACCOUNT = "verify"
RESET_PASSWORD = "reset"


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    return pwd_context.verify(password, password_hash)


def _encode(data: dict, expires: timedelta) -> str:
    to_encode = data.copy()
    to_encode.update({"exp": datetime.now(timezone.utc) + expires})
    return jwt.encode(to_encode, settings.JWT_SECRET, algorithm=settings.JWT_ALG)


def create_token(user_id: str, email: str, expires: Optional[timedelta] = None) -> str:
    if expires is None:
        expires = timedelta(days=settings.JWT_EXPIRES_DAYS)
    return _encode({"id": user_id, "email": email}, expires)


def create_link_token(user_id: str, purpose: str) -> str:
    """Token embedded in verification and password-reset mail links."""
    return _encode({"id": user_id, "purpose": purpose},
                   timedelta(minutes=settings.MAIL_LINK_EXPIRES_MINUTES))


def decode_link_token(token: str, purpose: str) -> str:
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALG])
    except JWTError:
        raise HTTPException(status_code=400, detail="Invalid or expired link token")
    if payload.get("purpose") != purpose or not payload.get("id"):
        raise HTTPException(status_code=400, detail="Invalid or expired link token")
    return payload["id"]


def get_token_payload(authorization: Optional[str] = Header(None)) -> Dict[str, Any]:
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing Authorization header")
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("Invalid auth scheme")
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid Authorization header")
    try:
        return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALG])
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid or expired token")


def get_current_user(payload: Dict[str, Any] = Depends(get_token_payload),
                     database: Database = Depends(get_db)) -> Dict[str, Any]:
    """Load the user the bearer token refers to."""
    try:
        user_id = ObjectId(payload.get("id"))
    except (InvalidId, TypeError):
        raise HTTPException(status_code=403, detail=FORBIDDEN)
    user = database["user"].find_one({"_id": user_id})
    if not user:
        raise HTTPException(status_code=403, detail=FORBIDDEN)
    return user


def restrict_to(*roles: str) -> Callable[..., Dict[str, Any]]:
    """Dependency factory letting through only users holding one of `roles`."""

    def dependency(user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
        if user.get("role") not in roles:
            logger.info("user %s with role %s denied, needs %s", user["_id"], user.get("role"), roles)
            raise HTTPException(status_code=403, detail=FORBIDDEN)
        return user

    return dependency
