from __future__ import annotations

import logging
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from titikrasa.common import db_error
from titikrasa.config import settings
from titikrasa.models import Setting
from titikrasa.pricing import round_half_up

logger = logging.getLogger(__name__)

SETTINGS_KEYS = {
    "tax": "pos.tax_rate",
    "discount": "pos.default_discount",
    "store_profile": "store.profile",
    "receipt_numbering": "pos.receipt_numbering",
}

DISCOUNT_MODES = ("none", "percentage", "nominal")
RECEIPT_RESETS = ("none", "daily")

DEFAULT_STORE_PROFILE = {
    "name": "Titikrasa Coffee",
    "address": "Jl. Contoh No. 123, Bandung",
    "phone": "+62-812-0000-0000",
    "logo_url": None,
    "footer_note": "Terima kasih telah berbelanja di Titikrasa",
}

DEFAULT_RECEIPT_NUMBERING = {
    "pos_prefix": "POS",
    "reseller_prefix": "RES",
    "padding": 4,
    "auto_reset": "daily",
}


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _clamp(value: float, low: float, high: float) -> float:
    return min(max(value, low), high)


def default_tax() -> dict:
    return {
        "rate": settings.default_tax_rate,
        "auto_apply": True,
        "label": f"Default {round(settings.default_tax_rate * 100)}%",
    }


def parse_tax(value: Optional[dict]) -> dict:
    defaults = default_tax()
    if not isinstance(value, dict):
        return defaults
    if _is_number(value.get("rate")):
        rate = value["rate"]
    elif _is_number(value.get("value")):
        rate = value["value"]
    else:
        rate = defaults["rate"]
    return {
        "rate": _clamp(float(rate), 0, 0.3),
        "auto_apply": value["auto_apply"]
        if isinstance(value.get("auto_apply"), bool)
        else defaults["auto_apply"],
        "label": value["label"] if isinstance(value.get("label"), str) else defaults["label"],
    }


def parse_discount(value: Optional[dict]) -> dict:
    if not isinstance(value, dict):
        return {"mode": "none", "value": 0}
    mode = value.get("mode") if value.get("mode") in DISCOUNT_MODES else "none"
    raw = value["value"] if _is_number(value.get("value")) else 0
    if mode == "percentage":
        normalized: float = _clamp(float(raw), 0, 1)
    else:
        normalized = max(round_half_up(raw), 0)
    return {"mode": mode, "value": normalized}


def parse_store_profile(value: Optional[dict]) -> dict:
    if not isinstance(value, dict):
        return dict(DEFAULT_STORE_PROFILE)

    def _text(key: str) -> str:
        item = value.get(key)
        return item if isinstance(item, str) and item else DEFAULT_STORE_PROFILE[key]

    return {
        "name": _text("name"),
        "address": _text("address"),
        "phone": _text("phone"),
        "logo_url": value["logo_url"] if isinstance(value.get("logo_url"), str) else None,
        "footer_note": value["footer_note"]
        if isinstance(value.get("footer_note"), str)
        else DEFAULT_STORE_PROFILE["footer_note"],
    }


def parse_receipt_numbering(value: Optional[dict]) -> dict:
    if not isinstance(value, dict):
        return dict(DEFAULT_RECEIPT_NUMBERING)
    padding = value.get("padding")
    return {
        "pos_prefix": value["pos_prefix"]
        if isinstance(value.get("pos_prefix"), str) and value["pos_prefix"]
        else DEFAULT_RECEIPT_NUMBERING["pos_prefix"],
        "reseller_prefix": value["reseller_prefix"]
        if isinstance(value.get("reseller_prefix"), str) and value["reseller_prefix"]
        else DEFAULT_RECEIPT_NUMBERING["reseller_prefix"],
        "padding": int(_clamp(int(padding), 3, 6))
        if _is_number(padding)
        else DEFAULT_RECEIPT_NUMBERING["padding"],
        "auto_reset": value["auto_reset"]
        if value.get("auto_reset") in RECEIPT_RESETS
        else DEFAULT_RECEIPT_NUMBERING["auto_reset"],
    }


_PARSERS = {
    "tax": parse_tax,
    "discount": parse_discount,
    "store_profile": parse_store_profile,
    "receipt_numbering": parse_receipt_numbering,
}


def get_settings(db: Session) -> dict:
    try:
        rows = db.query(Setting).all()
    except SQLAlchemyError as exc:
        raise db_error(exc, "Failed to load settings") from exc
    stored = {row.key: row.value for row in rows}
    return {section: _PARSERS[section](stored.get(key)) for section, key in SETTINGS_KEYS.items()}


def get_tax_rate(db: Session) -> float:
    row = db.get(Setting, SETTINGS_KEYS["tax"])
    return parse_tax(row.value if row else None)["rate"]


def update_settings(db: Session, updates: dict[str, dict]) -> dict:
    """Upsert the given sections, keyed as in ``SETTINGS_KEYS``, and return the parsed result."""
    try:
        for section, value in updates.items():
            key = SETTINGS_KEYS[section]
            row = db.get(Setting, key)
            if row is None:
                db.add(Setting(key=key, value=value))
            else:
                row.value = value
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise db_error(exc, "Failed to save settings") from exc
    logger.info("settings updated: %s", ", ".join(sorted(updates)))
    return get_settings(db)
