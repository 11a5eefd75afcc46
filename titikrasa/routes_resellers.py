from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from titikrasa.auth import Actor, manager_actor
from titikrasa.common import _iso, _now, _page_meta, _paginate_by_page, as_utc, db_error, ok
from titikrasa.db import get_db
from titikrasa.errors import ERR, app_error
from titikrasa.models import Menu, Order, OrderItem, Reseller
from titikrasa.pricing import parse_totals

router = APIRouter(prefix="/api/resellers", tags=["Resellers"])

CATALOG_SOURCE_ROWS = 500
HIGHLIGHT_COUNT = 6
RECENT_ORDER_COUNT = 10


def _text_or_none(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


def _number_or_none(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return value


def parse_contact(contact: Any) -> dict:
    if not isinstance(contact, dict):
        return {}
    return {key: _text_or_none(contact.get(key)) for key in ("phone", "email", "address", "note")}


def parse_terms(terms: Any) -> dict:
    if not isinstance(terms, dict):
        return {}
    return {
        "payment_term_days": _number_or_none(terms.get("payment_term_days")),
        "discount_percent": _number_or_none(terms.get("discount_percent")),
    }


def serialize_reseller(reseller: Reseller) -> dict:
    return {
        "id": reseller.id,
        "name": reseller.name,
        "contact": parse_contact(reseller.contact),
        "terms": parse_terms(reseller.terms),
        "is_active": reseller.is_active,
        "created_at": _iso(reseller.created_at),
    }


def _serialize_reseller_order(order: Order) -> dict:
    return {
        "id": order.id,
        "number": order.number,
        "status": order.status,
        "payment_status": order.payment_status,
        "payment_method": order.payment_method,
        "due_date": _iso(order.due_date),
        "total_amount": parse_totals(order.totals)["grand"],
        "created_at": _iso(order.created_at),
        "paid_at": _iso(order.paid_at),
    }


def build_catalog_highlights(rows: list[tuple[OrderItem, Optional[Menu], datetime]]) -> list[dict]:
    """Group ordered lines by menu, keeping total qty and the most recent price."""
    entries: dict[str, dict] = {}
    for item, menu, ordered_at in rows:
        entry = entries.get(item.menu_id)
        if entry is None:
            entry = entries[item.menu_id] = {
                "menu_id": item.menu_id,
                "menu_name": menu.name if menu else "Menu",
                "thumbnail_url": menu.thumbnail_url if menu else None,
                "total_qty": 0,
                "last_order_at": None,
                "last_price": None,
                "_last": None,
            }
        entry["total_qty"] += item.qty or 0
        ordered_at = as_utc(ordered_at) if ordered_at else None
        if ordered_at and (entry["_last"] is None or ordered_at > entry["_last"]):
            entry["_last"] = ordered_at
            entry["last_order_at"] = ordered_at.isoformat()
            price = item.price
            if price is None and menu is not None:
                price = menu.reseller_price
            entry["last_price"] = price

    ordered = sorted(
        entries.values(),
        key=lambda entry: entry["_last"].timestamp() if entry["_last"] else 0,
        reverse=True,
    )
    for entry in ordered:
        entry.pop("_last")
    return ordered


def _catalog_rows(db: Session, reseller_id: str) -> list[tuple[OrderItem, Optional[Menu], datetime]]:
    return (
        db.query(OrderItem, Menu, Order.created_at)
        .join(Order, Order.id == OrderItem.order_id)
        .outerjoin(Menu, Menu.id == OrderItem.menu_id)
        .filter(Order.reseller_id == reseller_id, Order.channel == "reseller")
        .order_by(Order.created_at.desc())
        .limit(CATALOG_SOURCE_ROWS)
        .all()
    )


def _get_reseller(db: Session, reseller_id: str) -> Reseller:
    reseller = db.get(Reseller, reseller_id)
    if not reseller:
        raise app_error(ERR.NOT_FOUND, message="Reseller not found")
    return reseller


class ResellerContact(BaseModel):
    phone: Optional[str] = Field(default=None, min_length=3, max_length=30)
    email: Optional[str] = Field(default=None, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    address: Optional[str] = Field(default=None, max_length=255)
    note: Optional[str] = Field(default=None, max_length=255)


class ResellerTerms(BaseModel):
    payment_term_days: Optional[int] = Field(default=None, ge=0, le=365)
    discount_percent: Optional[float] = Field(default=None, ge=0, le=100)


class ResellerCreate(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {
                "name": "Warung Bu Sari",
                "contact": {"phone": "0812-3456-7890", "address": "Jl. Dago 12"},
                "terms": {"payment_term_days": 14},
            }
        }
    }
    name: str = Field(min_length=1, max_length=120)
    contact: Optional[ResellerContact] = None
    terms: Optional[ResellerTerms] = None
    is_active: bool = True


class ResellerUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    contact: Optional[ResellerContact] = None
    terms: Optional[ResellerTerms] = None
    is_active: Optional[bool] = None


def _clean(model: Optional[BaseModel]) -> dict:
    if model is None:
        return {}
    return {key: value for key, value in model.model_dump().items() if value not in (None, "")}


@router.get("")
def list_resellers(
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=200),
    search: Optional[str] = Query(default=None),
    status: Literal["all", "active", "inactive"] = Query(default="all"),
    actor: Actor = Depends(manager_actor),
    db: Session = Depends(get_db),
) -> dict:
    query = db.query(Reseller)
    if search and search.strip():
        query = query.filter(func.lower(Reseller.name).like(f"%{search.strip().lower()}%"))
    if status != "all":
        query = query.filter(Reseller.is_active.is_(status == "active"))
    rows, total = _paginate_by_page(query.order_by(Reseller.created_at.desc()), page, page_size)
    meta = _page_meta(page, page_size, total)
    meta["filters"] = {"search": search, "status": status}
    return ok({"items": [serialize_reseller(row) for row in rows]}, meta)


@router.post("", status_code=201)
def create_reseller(
    payload: ResellerCreate,
    actor: Actor = Depends(manager_actor),
    db: Session = Depends(get_db),
) -> dict:
    reseller = Reseller(
        name=payload.name.strip(),
        contact=_clean(payload.contact),
        terms=_clean(payload.terms),
        is_active=payload.is_active,
        created_at=_now(),
    )
    try:
        db.add(reseller)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise db_error(exc, "Failed to create reseller") from exc
    db.refresh(reseller)
    return ok(serialize_reseller(reseller))


@router.get("/{reseller_id}")
def get_reseller(
    reseller_id: str, actor: Actor = Depends(manager_actor), db: Session = Depends(get_db)
) -> dict:
    reseller = _get_reseller(db, reseller_id)
    base = db.query(Order).filter(Order.channel == "reseller", Order.reseller_id == reseller_id)
    unpaid = base.filter(Order.payment_status == "unpaid").all()
    recent = base.order_by(Order.created_at.desc()).limit(RECENT_ORDER_COUNT).all()
    return ok(
        {
            "reseller": serialize_reseller(reseller),
            "stats": {
                "total_orders": base.count(),
                "unpaid_count": len(unpaid),
                "total_outstanding": sum(parse_totals(order.totals)["grand"] for order in unpaid),
            },
            "recent_orders": [_serialize_reseller_order(order) for order in recent],
            "catalog_highlights": build_catalog_highlights(_catalog_rows(db, reseller_id))[
                :HIGHLIGHT_COUNT
            ],
        }
    )


@router.patch("/{reseller_id}")
def update_reseller(
    reseller_id: str,
    payload: ResellerUpdate,
    actor: Actor = Depends(manager_actor),
    db: Session = Depends(get_db),
) -> dict:
    reseller = _get_reseller(db, reseller_id)
    changes = payload.model_dump(exclude_unset=True)
    if not changes:
        raise app_error(ERR.BAD_REQUEST, message="No changes provided")
    if payload.name is not None:
        reseller.name = payload.name.strip()
    if "contact" in changes:
        reseller.contact = _clean(payload.contact)
    if "terms" in changes:
        reseller.terms = _clean(payload.terms)
    if payload.is_active is not None:
        reseller.is_active = payload.is_active
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise db_error(exc, "Failed to update reseller") from exc
    db.refresh(reseller)
    return ok(serialize_reseller(reseller))


@router.delete("/{reseller_id}")
def delete_reseller(
    reseller_id: str, actor: Actor = Depends(manager_actor), db: Session = Depends(get_db)
) -> dict:
    reseller = _get_reseller(db, reseller_id)
    order_count = db.scalar(
        select(func.count()).select_from(Order).where(Order.reseller_id == reseller_id)
    )
    if order_count:
        raise app_error(
            ERR.BAD_REQUEST,
            message="Reseller has orders; deactivate it instead",
            details={"count": order_count},
        )
    db.delete(reseller)
    db.commit()
    return ok({"success": True})


@router.get("/{reseller_id}/orders")
def list_reseller_orders(
    reseller_id: str,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
    payment_status: Literal["all", "paid", "unpaid", "void"] = Query(default="all"),
    search: Optional[str] = Query(default=None),
    actor: Actor = Depends(manager_actor),
    db: Session = Depends(get_db),
) -> dict:
    _get_reseller(db, reseller_id)
    query = db.query(Order).filter(Order.channel == "reseller", Order.reseller_id == reseller_id)
    if payment_status != "all":
        query = query.filter(Order.payment_status == payment_status)
    if search and search.strip():
        query = query.filter(func.lower(Order.number).like(f"%{search.strip().lower()}%"))
    rows, total = _paginate_by_page(query.order_by(Order.created_at.desc()), page, page_size)
    meta = _page_meta(page, page_size, total)
    meta["filters"] = {"payment_status": payment_status, "search": search}
    return ok({"items": [_serialize_reseller_order(order) for order in rows]}, meta)


@router.get("/{reseller_id}/catalog")
def list_reseller_catalog(
    reseller_id: str,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
    search: Optional[str] = Query(default=None),
    actor: Actor = Depends(manager_actor),
    db: Session = Depends(get_db),
) -> dict:
    _get_reseller(db, reseller_id)
    entries = build_catalog_highlights(_catalog_rows(db, reseller_id))
    term = (search or "").strip().lower()
    if term:
        entries = [entry for entry in entries if term in entry["menu_name"].lower()]
    offset = (page - 1) * page_size
    meta = _page_meta(page, page_size, len(entries))
    meta["filters"] = {"search": search}
    return ok({"items": entries[offset : offset + page_size]}, meta)
