from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from titikrasa.auth import (
    Actor,
    create_access_token,
    decode_claims,
    get_actor,
    hash_password,
    password_fingerprint,
    role_of,
    verify_password,
)
from titikrasa.common import _meta, _now, ok
from titikrasa.db import get_db
from titikrasa.errors import ERR, app_error
from titikrasa.models import Profile

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["Auth"])

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


class LoginRequest(BaseModel):
    model_config = {
        "json_schema_extra": {"example": {"email": "admin@titikrasa.id", "password": "secret123"}}
    }
    email: str = Field(min_length=1, pattern=EMAIL_PATTERN)
    password: str = Field(min_length=1)


class PasswordResetConfirm(BaseModel):
    token: str = Field(min_length=1)
    password: str = Field(min_length=8, max_length=128)


@router.post("/login")
def login(payload: LoginRequest, db: Session = Depends(get_db)) -> dict:
    profile = db.scalar(
        select(Profile).where(func.lower(Profile.email) == payload.email.strip().lower())
    )
    if not profile or not verify_password(payload.password, profile.password_hash):
        raise app_error(ERR.UNAUTHORIZED, message="Email or password is incorrect")
    if not profile.is_active:
        raise app_error(ERR.FORBIDDEN, message="Account is inactive. Contact administrator.")

    profile.last_login_at = _now()
    db.commit()
    token, expires_at = create_access_token(profile.user_id)
    logger.info("user %s signed in", profile.user_id)

    meta = _meta()
    meta["session_expires_at"] = expires_at
    return ok(
        {
            "user_id": profile.user_id,
            "role": role_of(db, profile.user_id),
            "access_token": token,
            "token_type": "bearer",
        },
        meta,
    )


@router.post("/logout")
def logout(actor: Actor = Depends(get_actor)) -> dict:
    return ok({"success": True})


@router.post("/reset-password")
def confirm_password_reset(payload: PasswordResetConfirm, db: Session = Depends(get_db)) -> dict:
    claims = decode_claims(payload.token, "reset")
    user_id = claims["sub"]
    profile = db.get(Profile, user_id)
    if not profile:
        raise app_error(ERR.NOT_FOUND, message="User not found")
    if claims.get("pwd") != password_fingerprint(profile.password_hash):
        raise app_error(ERR.UNAUTHORIZED, message="Reset link has already been used")
    profile.password_hash = hash_password(payload.password)
    profile.updated_at = _now()
    db.commit()
    logger.info("password reset for user %s", user_id)
    return ok({"success": True})
