from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

import bcrypt
import jwt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.orm import Session

from titikrasa.common import _now
from titikrasa.config import settings
from titikrasa.db import get_db
from titikrasa.errors import ERR, app_error
from titikrasa.models import Profile, Role, UserRole

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


@dataclass
class Actor:
    user_id: str
    email: str
    name: str
    role: Optional[str]

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @property
    def is_manager(self) -> bool:
        return self.role == "manager"


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


def password_fingerprint(password_hash: str) -> str:
    return hashlib.sha256(password_hash.encode("utf-8")).hexdigest()[:16]


def _encode(user_id: str, token_type: str, minutes: int, **claims) -> tuple[str, int]:
    expires_at = _now() + timedelta(minutes=minutes)
    token = jwt.encode(
        {"sub": user_id, "typ": token_type, "exp": expires_at, **claims},
        settings.jwt_secret,
        algorithm=settings.jwt_algorithm,
    )
    return token, int(expires_at.timestamp())


def create_access_token(user_id: str) -> tuple[str, int]:
    return _encode(user_id, "access", settings.access_token_minutes)


def create_reset_token(user_id: str, password_hash: str) -> tuple[str, int]:
    """Reset tokens stop working as soon as the password they were issued for changes."""
    return _encode(
        user_id, "reset", settings.reset_token_minutes, pwd=password_fingerprint(password_hash)
    )


def decode_claims(token: str, token_type: str) -> dict:
    """Return the claims of ``token`` or raise a 401."""
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise app_error(ERR.UNAUTHORIZED, message="Token has expired")
    except jwt.PyJWTError:
        raise app_error(ERR.UNAUTHORIZED, message="Invalid authentication credentials")
    if payload.get("typ") != token_type or not payload.get("sub"):
        raise app_error(ERR.UNAUTHORIZED, message="Invalid authentication credentials")
    return payload


def decode_token(token: str, token_type: str) -> str:
    return decode_claims(token, token_type)["sub"]


def role_of(db: Session, user_id: str) -> Optional[str]:
    return db.scalar(
        select(Role.name).join(UserRole, UserRole.role_id == Role.id).where(UserRole.user_id == user_id)
    )


def get_actor(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db),
) -> Actor:
    if credentials is None:
        raise app_error(ERR.UNAUTHORIZED)
    user_id = decode_token(credentials.credentials, "access")
    profile = db.get(Profile, user_id)
    if not profile:
        raise app_error(ERR.UNAUTHORIZED)
    if not profile.is_active:
        raise app_error(ERR.FORBIDDEN, message="Account is inactive. Contact administrator.")
    return Actor(
        user_id=profile.user_id,
        email=profile.email,
        name=profile.name,
        role=role_of(db, profile.user_id),
    )


def require_roles(*roles: str):
    def _guard(actor: Actor = Depends(get_actor)) -> Actor:
        if actor.role not in roles:
            raise app_error(ERR.FORBIDDEN)
        return actor

    return _guard


staff_actor = require_roles("admin", "manager", "staff")
manager_actor = require_roles("admin", "manager")
admin_actor = require_roles("admin")
