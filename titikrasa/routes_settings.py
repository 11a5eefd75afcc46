from __future__ import annotations

from typing import Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from titikrasa.auth import Actor, admin_actor, staff_actor
from titikrasa.common import ok
from titikrasa.db import get_db
from titikrasa.errors import ERR, app_error
from titikrasa.settings_store import get_settings, update_settings

router = APIRouter(prefix="/api/settings", tags=["Settings"])

PREFIX_PATTERN = r"^[A-Z0-9]+$"


class TaxSettings(BaseModel):
    rate: float = Field(ge=0, le=0.3)
    auto_apply: bool = True
    label: Optional[str] = Field(default=None, max_length=60)


class DiscountSettings(BaseModel):
    mode: Literal["none", "percentage", "nominal"]
    value: float = Field(ge=0)


class StoreProfileSettings(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    address: str = Field(min_length=1, max_length=255)
    phone: str = Field(min_length=3, max_length=30)
    logo_url: Optional[str] = Field(default=None, pattern=r"^https?://")
    footer_note: Optional[str] = Field(default=None, max_length=160)


class ReceiptNumberingSettings(BaseModel):
    pos_prefix: str = Field(min_length=2, max_length=6, pattern=PREFIX_PATTERN)
    reseller_prefix: str = Field(min_length=2, max_length=6, pattern=PREFIX_PATTERN)
    padding: int = Field(ge=3, le=6)
    auto_reset: Literal["none", "daily"]


class SettingsUpdate(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {
                "tax": {"rate": 0.11, "auto_apply": True},
                "receipt_numbering": {
                    "pos_prefix": "POS",
                    "reseller_prefix": "RES",
                    "padding": 4,
                    "auto_reset": "daily",
                },
            }
        }
    }
    tax: Optional[TaxSettings] = None
    discount: Optional[DiscountSettings] = None
    store_profile: Optional[StoreProfileSettings] = None
    receipt_numbering: Optional[ReceiptNumberingSettings] = None


@router.get("")
def read_settings(actor: Actor = Depends(staff_actor), db: Session = Depends(get_db)) -> dict:
    return ok(get_settings(db))


@router.patch("")
def patch_settings(
    payload: SettingsUpdate,
    actor: Actor = Depends(admin_actor),
    db: Session = Depends(get_db),
) -> dict:
    updates = {
        section: value.model_dump(exclude_none=section == "tax")
        for section, value in (
            ("tax", payload.tax),
            ("discount", payload.discount),
            ("store_profile", payload.store_profile),
            ("receipt_numbering", payload.receipt_numbering),
        )
        if value is not None
    }
    if not updates:
        raise app_error(ERR.BAD_REQUEST, message="No changes provided")
    return ok(update_settings(db, updates))
