from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy import delete, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from titikrasa.auth import Actor, staff_actor
from titikrasa.checkout import CheckoutRequest, checkout
from titikrasa.common import _meta, _now, db_error, ok
from titikrasa.db import get_db
from titikrasa.errors import ERR, app_error
from titikrasa.models import KdsTicket, Order, OrderItem, Reseller
from titikrasa.orders import fetch_order, serialize_orders
from titikrasa.pricing import parse_ticket_items
from titikrasa.routes_menus import search_menus
from titikrasa.routes_resellers import serialize_reseller
from titikrasa.settings_store import get_settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/pos", tags=["POS"])

BOOTSTRAP_ORDER_LIMIT = 20


class PaymentUpdate(BaseModel):
    model_config = {
        "json_schema_extra": {"example": {"payment_status": "paid", "payment_method": "transfer"}}
    }
    payment_status: Literal["paid", "unpaid", "void"]
    payment_method: Optional[Literal["cash", "transfer"]] = None
    due_date: Optional[date] = None
    paid_at: Optional[datetime] = None


class VoidRequest(BaseModel):
    reason: str = Field(min_length=3, max_length=300)


def _list_orders(
    db: Session,
    channel: str,
    status: str,
    payment_status: str,
    search: Optional[str],
    limit: int,
) -> list[dict]:
    query = db.query(Order)
    if channel != "all":
        query = query.filter(Order.channel == channel)
    if status != "all":
        query = query.filter(Order.status == status)
    if payment_status != "all":
        query = query.filter(Order.payment_status == payment_status)
    if search and search.strip():
        query = query.filter(func.lower(Order.number).like(f"%{search.strip().lower()}%"))
    orders = query.order_by(Order.created_at.desc()).limit(limit).all()
    return serialize_orders(db, orders)


@router.get("/menus")
def list_pos_menus(
    search: Optional[str] = Query(default=None),
    actor: Actor = Depends(staff_actor),
    db: Session = Depends(get_db),
) -> dict:
    return ok({"items": search_menus(db, search)})


@router.get("/bootstrap")
def pos_bootstrap(actor: Actor = Depends(staff_actor), db: Session = Depends(get_db)) -> dict:
    resellers = (
        db.query(Reseller).filter(Reseller.is_active.is_(True)).order_by(Reseller.name).all()
    )
    filters = {"channel": "all", "status": "open", "payment_status": "all", "limit": BOOTSTRAP_ORDER_LIMIT}
    return ok(
        {
            "menus": search_menus(db, None),
            "resellers": [serialize_reseller(reseller) for reseller in resellers],
            "orders": {
                "items": _list_orders(db, "all", "open", "all", None, BOOTSTRAP_ORDER_LIMIT),
                "filters": filters,
            },
            "default_tax_rate": get_settings(db)["tax"]["rate"],
        }
    )


@router.get("/orders")
def list_orders(
    channel: Literal["pos", "reseller", "all"] = Query(default="pos"),
    status: Literal["open", "paid", "void", "refunded", "all"] = Query(default="open"),
    payment_status: Literal["paid", "unpaid", "void", "all"] = Query(default="all"),
    search: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    actor: Actor = Depends(staff_actor),
    db: Session = Depends(get_db),
) -> dict:
    try:
        items = _list_orders(db, channel, status, payment_status, search, limit)
    except SQLAlchemyError as exc:
        raise db_error(exc, "Failed to load orders") from exc
    meta = _meta()
    meta["filters"] = {
        "channel": channel,
        "status": status,
        "payment_status": payment_status,
        "search": search,
    }
    meta["pagination"] = {"page": 1, "page_size": len(items), "total": len(items)}
    return ok({"items": items}, meta)


@router.post("/orders", status_code=201)
def create_order(
    payload: CheckoutRequest,
    actor: Actor = Depends(staff_actor),
    db: Session = Depends(get_db),
):
    order, created = checkout(db, payload, actor)
    if not created:
        return JSONResponse(status_code=200, content=ok(order))
    logger.info("order %s created by %s", order["number"], actor.user_id)
    return ok(order)


@router.get("/orders/{order_id}")
def get_order(
    order_id: str, actor: Actor = Depends(staff_actor), db: Session = Depends(get_db)
) -> dict:
    return ok(fetch_order(db, order_id))


@router.patch("/orders/{order_id}")
def update_order_payment(
    order_id: str,
    payload: PaymentUpdate,
    actor: Actor = Depends(staff_actor),
    db: Session = Depends(get_db),
) -> dict:
    order = db.get(Order, order_id)
    if not order:
        raise app_error(ERR.NOT_FOUND, message="Order not found")
    if payload.payment_status == "void":
        raise app_error(ERR.BAD_REQUEST, message="Use the void endpoint to cancel an order")
    if order.channel == "pos" and payload.due_date:
        raise app_error(ERR.BAD_REQUEST, message="POS orders do not have a due date")

    changes = payload.model_dump(exclude_unset=True)
    if payload.payment_method:
        order.payment_method = payload.payment_method
    order.payment_status = payload.payment_status
    if payload.payment_status == "paid":
        order.status = "paid"
        order.paid_at = payload.paid_at or _now()
    else:
        order.status = "open"
        order.paid_at = None
    if "due_date" in changes:
        order.due_date = payload.due_date

    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise db_error(exc, "Failed to update order payment") from exc
    return ok(fetch_order(db, order_id))


@router.delete("/orders/{order_id}")
def delete_order(
    order_id: str, actor: Actor = Depends(staff_actor), db: Session = Depends(get_db)
) -> dict:
    order = db.get(Order, order_id)
    if not order:
        raise app_error(ERR.NOT_FOUND, message="Order not found")
    if order.payment_status == "paid":
        raise app_error(ERR.BAD_REQUEST, message="Paid orders cannot be deleted")
    try:
        db.execute(delete(OrderItem).where(OrderItem.order_id == order_id))
        db.execute(delete(KdsTicket).where(KdsTicket.order_id == order_id))
        db.execute(delete(Order).where(Order.id == order_id))
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise db_error(exc, "Failed to delete order") from exc
    logger.info("order %s deleted by %s", order_id, actor.user_id)
    return ok({"success": True, "deleted": order_id})


@router.post("/orders/{order_id}/void")
def void_order(
    order_id: str,
    payload: VoidRequest,
    actor: Actor = Depends(staff_actor),
    db: Session = Depends(get_db),
) -> dict:
    order = db.get(Order, order_id)
    if not order:
        raise app_error(ERR.NOT_FOUND, message="Order not found")
    if order.status == "void":
        return ok(fetch_order(db, order_id))

    now = _now()
    order.status = "void"
    order.payment_status = "void"
    order.due_date = None
    order.paid_at = None
    order.customer_note = "\n".join(
        part for part in (order.customer_note, f"(void) {payload.reason}") if part
    )
    for ticket in db.query(KdsTicket).filter(KdsTicket.order_id == order_id).all():
        ticket.items = [
            {**item, "status": "served", "updated_at": now.isoformat(), "updated_by": actor.user_id}
            for item in parse_ticket_items(ticket.items)
        ]

    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise db_error(exc, "Failed to void order") from exc
    logger.info("order %s voided by %s", order_id, actor.user_id)
    return ok(fetch_order(db, order_id))
