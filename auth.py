"""
Bearer token authentication and access guards.

Tokens are HS256 JWTs carrying user_id, email and role.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from fastapi import Depends, Header, HTTPException
from jose import JWTError, jwt
from pydantic import BaseModel

import config
from database import DocumentStore, to_object_id

ENTITLED_STATUSES = ["active", "trial"]


class Claims(BaseModel):
    user_id: str
    email: str
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def create_access_token(user_id: Any, email: str, role: str = "user", expires_in: Optional[timedelta] = None) -> str:
    now = datetime.now(timezone.utc)
    claims = {
        "user_id": str(user_id),
        "email": email,
        "role": role,
        "iat": now,
        "exp": now + (expires_in or timedelta(hours=config.JWT_EXPIRATION_HOURS)),
    }
    return jwt.encode(claims, config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)


def decode_token(token: str) -> Claims:
    try:
        payload = jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALGORITHM])
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    if to_object_id(payload.get("user_id")) is None:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    return Claims(
        user_id=payload["user_id"],
        email=payload.get("email", ""),
        role=payload.get("role", "user"),
    )


def get_current_user(authorization: Optional[str] = Header(None)) -> Claims:
    if not authorization:
        raise HTTPException(status_code=401, detail="Authorization header is required")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=401, detail="Authorization header must be a Bearer token")
    return decode_token(token.strip())


def require_admin(user: Claims = Depends(get_current_user)) -> Claims:
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Insufficient permissions")
    return user


def find_active_subscription(store: DocumentStore, user_id: Any) -> Optional[Dict[str, Any]]:
    """
    The subscription that currently entitles the user, if any.

    Only the query filter keeps this to one record; nothing in the collection
    prevents a second matching document.
    """
    return store.find_one(
        "subscription",
        {
            "user_id": to_object_id(user_id),
            "status": {"$in": ENTITLED_STATUSES},
            "current_period_end": {"$gt": datetime.now(timezone.utc)},
        },
    )


def has_entitlement(store: DocumentStore, user: Claims) -> bool:
    return user.is_admin or find_active_subscription(store, user.user_id) is not None
