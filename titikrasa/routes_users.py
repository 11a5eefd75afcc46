from __future__ import annotations

import logging
from typing import Literal, Optional
from urllib.parse import urlencode, urlsplit

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from titikrasa.auth import (
    Actor,
    admin_actor,
    create_reset_token,
    get_actor,
    hash_password,
    manager_actor,
)
from titikrasa.common import _iso, _now, _page_meta, _paginate_by_page, db_error, ok
from titikrasa.config import settings
from titikrasa.db import ROLE_NAMES, get_db
from titikrasa.errors import ERR, app_error
from titikrasa.models import AuditLog, Profile, Role, UserRole

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Users"])

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"

RoleName = Literal["admin", "manager", "staff"]


class UserCreate(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {
                "email": "kasir@titikrasa.id",
                "name": "Kasir Pagi",
                "phone": "0812-0000-1111",
                "role": "staff",
                "password": "rahasia123",
            }
        }
    }
    email: str = Field(min_length=1, max_length=254, pattern=EMAIL_PATTERN)
    name: str = Field(min_length=1, max_length=120)
    phone: str = Field(min_length=3, max_length=30)
    role: RoleName
    password: str = Field(min_length=8, max_length=128)


class UserUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    phone: Optional[str] = Field(default=None, max_length=30)
    role: Optional[RoleName] = None
    is_active: Optional[bool] = None


class ResetPasswordRequest(BaseModel):
    redirect_to: Optional[str] = Field(default=None, pattern=r"^https?://")


class ProfileUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    email: Optional[str] = Field(default=None, max_length=254, pattern=EMAIL_PATTERN)
    phone: Optional[str] = Field(default=None, min_length=3, max_length=30)
    password: Optional[str] = Field(default=None, min_length=8, max_length=128)
    avatar: Optional[str] = Field(default=None, pattern=r"^(https?://.*)?$")


def serialize_user(profile: Profile, role: Optional[str]) -> dict:
    return {
        "user_id": profile.user_id,
        "name": profile.name,
        "email": profile.email,
        "phone": profile.phone,
        "avatar": profile.avatar,
        "role": role,
        "is_active": profile.is_active,
        "last_login_at": _iso(profile.last_login_at),
        "created_at": _iso(profile.created_at),
        "updated_at": _iso(profile.updated_at),
    }


def _users_query(db: Session):
    return (
        db.query(Profile, Role.name)
        .outerjoin(UserRole, UserRole.user_id == Profile.user_id)
        .outerjoin(Role, Role.id == UserRole.role_id)
    )


def fetch_user(db: Session, user_id: str) -> dict:
    row = _users_query(db).filter(Profile.user_id == user_id).first()
    if not row:
        raise app_error(ERR.NOT_FOUND, message="User not found")
    return serialize_user(*row)


def _role_id(db: Session, name: str) -> str:
    role_id = db.scalar(select(Role.id).where(Role.name == name))
    if not role_id:
        raise app_error(ERR.SERVER_ERROR, message=f"Role {name} is not configured")
    return role_id


def is_last_admin(db: Session, user_id: str) -> bool:
    """True when ``user_id`` is an admin and no other admin account exists."""
    admin_ids = set(
        db.scalars(
            select(UserRole.user_id)
            .join(Role, Role.id == UserRole.role_id)
            .where(Role.name == "admin")
        )
    )
    return user_id in admin_ids and len(admin_ids) == 1


def _guard_last_admin(db: Session, user_id: str, message: str) -> None:
    if is_last_admin(db, user_id):
        raise app_error(ERR.FORBIDDEN, message=message)


def record_audit(
    db: Session,
    actor_id: str,
    action: str,
    entity_id: Optional[str],
    before: Optional[dict],
    after: Optional[dict],
) -> None:
    db.add(
        AuditLog(
            actor_id=actor_id,
            action=action,
            entity="users",
            entity_id=entity_id,
            before=before,
            after=after,
            created_at=_now(),
        )
    )


def _email_taken(db: Session, email: str, exclude_user_id: Optional[str] = None) -> bool:
    query = select(Profile.user_id).where(func.lower(Profile.email) == email.lower())
    if exclude_user_id:
        query = query.where(Profile.user_id != exclude_user_id)
    return db.scalar(query) is not None


@router.get("/api/users")
def list_users(
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=1000),
    search: Optional[str] = Query(default=None),
    status: Literal["all", "active", "inactive"] = Query(default="all"),
    role: Optional[RoleName] = Query(default=None),
    actor: Actor = Depends(manager_actor),
    db: Session = Depends(get_db),
) -> dict:
    query = _users_query(db)
    if status != "all":
        query = query.filter(Profile.is_active.is_(status == "active"))
    if role:
        query = query.filter(Role.name == role)
    if search and search.strip():
        pattern = f"%{search.strip().lower()}%"
        query = query.filter(
            or_(func.lower(Profile.name).like(pattern), func.lower(Profile.email).like(pattern))
        )
    rows, total = _paginate_by_page(query.order_by(Profile.created_at.desc()), page, page_size)
    meta = _page_meta(page, page_size, total)
    meta["filters"] = {"search": search, "status": status, "role": role}
    return ok({"items": [serialize_user(profile, name) for profile, name in rows]}, meta)


@router.post("/api/users", status_code=201)
def create_user(
    payload: UserCreate,
    actor: Actor = Depends(admin_actor),
    db: Session = Depends(get_db),
) -> dict:
    email = payload.email.strip().lower()
    if _email_taken(db, email):
        raise app_error(ERR.CONFLICT, message="Email is already registered")

    now = _now()
    profile = Profile(
        name=payload.name.strip(),
        email=email,
        phone=payload.phone.strip(),
        password_hash=hash_password(payload.password),
        is_active=True,
        created_at=now,
        updated_at=now,
    )
    try:
        db.add(profile)
        db.flush()
        db.add(UserRole(user_id=profile.user_id, role_id=_role_id(db, payload.role)))
        db.flush()
        after = serialize_user(profile, payload.role)
        record_audit(db, actor.user_id, "users.create", profile.user_id, None, after)
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise app_error(ERR.CONFLICT, message="Email is already registered") from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise db_error(exc, "Failed to create user") from exc
    logger.info("user %s created by %s", profile.user_id, actor.user_id)
    return ok(fetch_user(db, profile.user_id))


@router.get("/api/users/roles")
def list_roles(actor: Actor = Depends(manager_actor), db: Session = Depends(get_db)) -> dict:
    roles = db.query(Role).all()
    order = {name: index for index, name in enumerate(ROLE_NAMES)}
    roles.sort(key=lambda role: order.get(role.name, len(order)))
    return ok({"items": [{"id": role.id, "name": role.name} for role in roles]})


@router.get("/api/users/{user_id}")
def get_user(
    user_id: str, actor: Actor = Depends(manager_actor), db: Session = Depends(get_db)
) -> dict:
    return ok(fetch_user(db, user_id))


@router.patch("/api/users/{user_id}")
def update_user(
    user_id: str,
    payload: UserUpdate,
    actor: Actor = Depends(admin_actor),
    db: Session = Depends(get_db),
) -> dict:
    changes = payload.model_dump(exclude_unset=True, exclude_none=True)
    if not changes:
        raise app_error(ERR.BAD_REQUEST, message="No changes provided")
    before = fetch_user(db, user_id)
    profile = db.get(Profile, user_id)

    if payload.is_active is False:
        if user_id == actor.user_id:
            raise app_error(ERR.BAD_REQUEST, message="You cannot deactivate your own account")
        _guard_last_admin(db, user_id, "Cannot deactivate the last admin")
    if payload.role and payload.role != before["role"] and before["role"] == "admin":
        _guard_last_admin(db, user_id, "Cannot demote the last admin")

    if payload.name is not None:
        profile.name = payload.name.strip()
    if payload.phone is not None:
        phone = payload.phone.strip()
        if phone and len(phone) < 3:
            raise app_error(ERR.VALIDATION_ERROR, message="Phone number is too short")
        profile.phone = phone or None
    if payload.is_active is not None:
        profile.is_active = payload.is_active
    profile.updated_at = _now()

    try:
        if payload.role and payload.role != before["role"]:
            assignment = db.get(UserRole, user_id)
            role_id = _role_id(db, payload.role)
            if assignment is None:
                db.add(UserRole(user_id=user_id, role_id=role_id))
            else:
                assignment.role_id = role_id
        db.flush()
        after = serialize_user(profile, payload.role or before["role"])
        record_audit(db, actor.user_id, "users.update", user_id, before, after)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise db_error(exc, "Failed to update user") from exc
    return ok(fetch_user(db, user_id))


@router.delete("/api/users/{user_id}")
def delete_user(
    user_id: str, actor: Actor = Depends(admin_actor), db: Session = Depends(get_db)
) -> dict:
    if user_id == actor.user_id:
        raise app_error(ERR.BAD_REQUEST, message="You cannot delete your own account")
    before = fetch_user(db, user_id)
    _guard_last_admin(db, user_id, "Cannot delete the last admin")
    try:
        assignment = db.get(UserRole, user_id)
        if assignment is not None:
            db.delete(assignment)
        db.delete(db.get(Profile, user_id))
        record_audit(db, actor.user_id, "users.delete", user_id, before, None)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise db_error(exc, "Failed to delete user") from exc
    logger.info("user %s deleted by %s", user_id, actor.user_id)
    return ok({"success": True})


def _same_origin(url: str, allowed: str) -> bool:
    candidate, base = urlsplit(url), urlsplit(allowed)
    return (candidate.scheme, candidate.netloc.lower()) == (base.scheme, base.netloc.lower())


@router.post("/api/users/{user_id}/reset-password")
def reset_user_password(
    user_id: str,
    payload: Optional[ResetPasswordRequest] = None,
    actor: Actor = Depends(admin_actor),
    db: Session = Depends(get_db),
) -> dict:
    target = fetch_user(db, user_id)
    if not target["email"]:
        raise app_error(ERR.BAD_REQUEST, message="User does not have a valid email")

    redirect_to = payload.redirect_to if payload else None
    if redirect_to and not _same_origin(redirect_to, settings.password_reset_url):
        raise app_error(ERR.BAD_REQUEST, message="Redirect URL is not allowed")
    profile = db.get(Profile, user_id)
    token, expires_at = create_reset_token(user_id, profile.password_hash)
    base = redirect_to or settings.password_reset_url
    separator = "&" if "?" in base else "?"
    record_audit(
        db, actor.user_id, "users.resetPassword", user_id, None, {"redirect_to": redirect_to}
    )
    db.commit()
    return ok(
        {
            "reset_link": f"{base}{separator}{urlencode({'token': token})}",
            "expires_at": expires_at,
        }
    )


def _ensure_self_or_admin(actor: Actor, user_id: str) -> None:
    if actor.user_id != user_id and not actor.is_admin:
        raise app_error(ERR.FORBIDDEN)


@router.get("/api/profile/{user_id}")
def get_profile(
    user_id: str, actor: Actor = Depends(get_actor), db: Session = Depends(get_db)
) -> dict:
    _ensure_self_or_admin(actor, user_id)
    return ok(fetch_user(db, user_id))


@router.patch("/api/profile/{user_id}")
def update_profile(
    user_id: str,
    payload: ProfileUpdate,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
) -> dict:
    _ensure_self_or_admin(actor, user_id)
    changes = payload.model_dump(exclude_unset=True, exclude_none=True)
    if not changes:
        raise app_error(ERR.BAD_REQUEST, message="No changes provided")
    before = fetch_user(db, user_id)
    profile = db.get(Profile, user_id)

    if payload.email is not None:
        email = payload.email.strip().lower()
        if _email_taken(db, email, exclude_user_id=user_id):
            raise app_error(ERR.CONFLICT, message="Email is already registered")
        profile.email = email
    if payload.name is not None:
        profile.name = payload.name.strip()
    if payload.phone is not None:
        profile.phone = payload.phone.strip()
    if payload.avatar is not None:
        profile.avatar = payload.avatar or None
    if payload.password is not None:
        profile.password_hash = hash_password(payload.password)
    profile.updated_at = _now()

    try:
        db.flush()
        after = serialize_user(profile, before["role"])
        record_audit(db, actor.user_id, "profile.update", user_id, before, after)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise db_error(exc, "Failed to update profile") from exc
    return ok(fetch_user(db, user_id))
