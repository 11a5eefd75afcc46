"""POS checkout.

The database may provide a ``pos_checkout(payload)`` procedure that writes the
order, its items and its kitchen ticket in one go. When it is not installed the
same rows are written one statement at a time, and a failure after the order
row exists deletes whatever was written for that order.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import date, datetime, timedelta
from typing import Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator
from sqlalchemy import delete, select, text
from sqlalchemy.exc import DBAPIError, IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from titikrasa.auth import Actor
from titikrasa.common import _now, db_error
from titikrasa.errors import ERR, app_error
from titikrasa.models import KdsTicket, Order, OrderItem
from titikrasa.orders import fetch_order, serialize_orders
from titikrasa.pricing import (
    build_order_number,
    build_ticket_items,
    compute_order_totals,
    variant_label,
)
from titikrasa.settings_store import get_tax_rate

logger = logging.getLogger(__name__)

CLIENT_REF_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")
UNDEFINED_FUNCTION = "42883"
RESELLER_DUE_DAYS = 7


class CheckoutItem(BaseModel):
    id: Optional[str] = None
    menu_id: str
    menu_name: str
    menu_sku: Optional[str] = None
    variant: Optional[str] = None
    size: Optional[str] = None
    temperature: Optional[str] = None
    qty: int = Field(ge=1)
    unit_price: int = Field(ge=0)
    discount: int = Field(default=0, ge=0)
    tax: int = Field(default=0, ge=0)


class CheckoutDiscount(BaseModel):
    type: Literal["amount", "percent"] = "amount"
    value: float = Field(default=0, ge=0)


class CheckoutRequest(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {
                "channel": "pos",
                "payment_method": "cash",
                "payment_status": "paid",
                "client_id": "till-01-000123",
                "items": [
                    {
                        "menu_id": "5a0c1f8e-0a4b-4a53-9d7a-1c1e1b0f1e01",
                        "menu_name": "Es Kopi Susu",
                        "variant": "m|ice",
                        "size": "m",
                        "temperature": "ice",
                        "qty": 2,
                        "unit_price": 22000,
                    }
                ],
                "discount": {"type": "percent", "value": 10},
            }
        }
    }

    channel: Literal["pos", "reseller"] = "pos"
    reseller_id: Optional[str] = None
    payment_method: Literal["cash", "transfer"] = "cash"
    payment_status: Literal["paid", "unpaid", "void"] = "paid"
    due_date: Optional[date] = None
    note: str = Field(default="", max_length=500)
    customer_name: str = Field(default="", max_length=140)
    client_id: Optional[str] = Field(default=None, min_length=8, max_length=64)
    items: list[CheckoutItem] = Field(min_length=1)
    discount: CheckoutDiscount = Field(default_factory=CheckoutDiscount)
    tax_rate: Optional[float] = Field(default=None, ge=0, le=1)
    bypass_served: bool = False
    amount_received: Optional[int] = Field(default=None, ge=0)

    @field_validator("client_id")
    @classmethod
    def _client_ref_charset(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not CLIENT_REF_PATTERN.match(value):
            raise ValueError("client_id may only contain letters, digits, underscore or dash")
        return value

    @model_validator(mode="after")
    def _channel_rules(self) -> "CheckoutRequest":
        if self.channel == "reseller" and not self.reseller_id:
            raise ValueError("reseller_id is required for the reseller channel")
        if self.payment_status == "unpaid" and self.channel == "pos":
            raise ValueError("POS orders cannot be left unpaid")
        if self.payment_status == "void":
            raise ValueError("use the void endpoint to void an order")
        return self


def find_by_client_ref(db: Session, client_ref: str) -> Optional[dict]:
    order = db.scalar(select(Order).where(Order.client_ref == client_ref))
    if not order:
        return None
    return serialize_orders(db, [order])[0]


def _procedure_missing(exc: SQLAlchemyError) -> bool:
    orig = getattr(exc, "orig", None)
    if getattr(orig, "pgcode", None) == UNDEFINED_FUNCTION:
        return True
    return "pos_checkout" in str(orig or exc).lower()


def _call_procedure(db: Session, payload: dict) -> None:
    db.execute(text("SELECT pos_checkout(:payload)"), {"payload": json.dumps(payload)})
    db.commit()


def _insert_order(db: Session, payload: dict) -> None:
    db.add(
        Order(
            id=payload["order_id"],
            number=payload["number"],
            channel=payload["channel"],
            reseller_id=payload["reseller_id"],
            payment_method=payload["payment_method"],
            payment_status=payload["payment_status"],
            status=payload["status"],
            due_date=date.fromisoformat(payload["due_date"]) if payload["due_date"] else None,
            customer_note=payload["customer_note"],
            totals=payload["totals"],
            paid_at=datetime.fromisoformat(payload["paid_at"]) if payload["paid_at"] else None,
            created_by=payload["created_by"],
            client_ref=payload["client_ref"],
            created_at=_now(),
        )
    )
    db.commit()


def _insert_items(db: Session, order_id: str, items: list[dict]) -> None:
    db.add_all(OrderItem(order_id=order_id, **item) for item in items)
    db.commit()


def _insert_ticket(db: Session, order_id: str, ticket_items: list[dict]) -> None:
    db.add(KdsTicket(order_id=order_id, items=ticket_items, created_at=_now()))
    db.commit()


def cleanup_order(db: Session, order_id: str) -> None:
    db.rollback()
    db.execute(delete(OrderItem).where(OrderItem.order_id == order_id))
    db.execute(delete(KdsTicket).where(KdsTicket.order_id == order_id))
    db.execute(delete(Order).where(Order.id == order_id))
    db.commit()
    logger.warning("removed partially written order %s", order_id)


def manual_checkout(db: Session, payload: dict) -> Optional[dict]:
    """Write the order row by row.

    Returns the order already stored under the same ``client_ref`` when a
    concurrent retry got there first, otherwise ``None``.
    """
    order_id = payload["order_id"]
    try:
        _insert_order(db, payload)
    except IntegrityError as exc:
        db.rollback()
        existing = find_by_client_ref(db, payload["client_ref"]) if payload["client_ref"] else None
        if existing:
            return existing
        raise db_error(exc, "Failed to create order") from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise db_error(exc, "Failed to create order") from exc

    try:
        _insert_items(db, order_id, payload["items"])
    except SQLAlchemyError as exc:
        cleanup_order(db, order_id)
        raise db_error(exc, "Failed to add order items") from exc

    if payload["ticket_items"]:
        try:
            _insert_ticket(db, order_id, payload["ticket_items"])
        except SQLAlchemyError as exc:
            cleanup_order(db, order_id)
            raise db_error(exc, "Failed to create kitchen ticket") from exc

    return None


def build_checkout_payload(request: CheckoutRequest, actor: Actor, tax_rate: float) -> dict:
    now = _now()
    items = [item.model_copy(update={"id": item.id or str(uuid4())}) for item in request.items]
    totals = compute_order_totals(items, request.discount.model_dump(), tax_rate)

    paid = request.payment_status == "paid"
    due_date = None
    if request.channel == "reseller" and request.payment_status == "unpaid":
        due_date = request.due_date or (now.date() + timedelta(days=RESELLER_DUE_DAYS))

    ticket_items = build_ticket_items(
        [
            {
                "id": item.id,
                "qty": item.qty,
                "menu_name": item.menu_name,
                "variant_label": variant_label(item.size, item.temperature),
            }
            for item in items
        ],
        request.bypass_served,
        actor.user_id,
        now,
    )

    return {
        "order_id": str(uuid4()),
        "number": build_order_number(now),
        "channel": request.channel,
        "reseller_id": request.reseller_id if request.channel == "reseller" else None,
        "payment_method": request.payment_method,
        "payment_status": request.payment_status,
        "status": "paid" if paid else "open",
        "due_date": due_date.isoformat() if due_date else None,
        "customer_note": request.note or None,
        "totals": totals,
        "paid_at": now.isoformat() if paid else None,
        "created_by": actor.user_id,
        "client_ref": request.client_id,
        "items": [
            {
                "id": item.id,
                "menu_id": item.menu_id,
                "qty": item.qty,
                "price": item.unit_price,
                "discount": item.discount,
                "tax": item.tax,
                "variant": item.variant,
            }
            for item in items
        ],
        "ticket_items": ticket_items,
    }


def checkout(db: Session, request: CheckoutRequest, actor: Actor) -> tuple[dict, bool]:
    """Create the order and return ``(order, created)``.

    ``created`` is false when ``client_id`` matched an order that already exists.
    """
    if request.client_id:
        existing = find_by_client_ref(db, request.client_id)
        if existing:
            return existing, False

    tax_rate = request.tax_rate if request.tax_rate is not None else get_tax_rate(db)
    payload = build_checkout_payload(request, actor, tax_rate)

    try:
        _call_procedure(db, payload)
    except IntegrityError as exc:
        db.rollback()
        existing = find_by_client_ref(db, request.client_id) if request.client_id else None
        if existing:
            return existing, False
        raise app_error(
            ERR.SERVER_ERROR,
            message="Failed to complete checkout",
            details={"hint": str(exc.orig)},
        ) from exc
    except DBAPIError as exc:
        db.rollback()
        if not _procedure_missing(exc):
            raise app_error(
                ERR.SERVER_ERROR,
                message="Failed to complete checkout",
                details={"hint": str(exc.orig)},
            ) from exc
        logger.info("pos_checkout unavailable, writing order %s directly", payload["order_id"])
        existing = manual_checkout(db, payload)
        if existing:
            return existing, False

    return fetch_order(db, payload["order_id"]), True
