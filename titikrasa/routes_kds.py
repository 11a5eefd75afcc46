from __future__ import annotations

import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from titikrasa.auth import Actor, staff_actor
from titikrasa.common import _iso, _now, db_error, ok
from titikrasa.db import get_db
from titikrasa.errors import ERR, app_error
from titikrasa.models import KdsTicket, Order
from titikrasa.pricing import parse_ticket_items

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/kds", tags=["KDS"])


class TicketItemUpdate(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {"order_item_id": "0f7a6a34-2b2d-4d4b-8b68-5f1f7cfd9b10", "status": "ready"}
        }
    }
    order_item_id: str
    status: Literal["queue", "making", "ready", "served"]


def serialize_kds_ticket(ticket: KdsTicket, order: Optional[Order]) -> dict:
    items = parse_ticket_items(ticket.items)
    return {
        "id": ticket.id,
        "order_id": ticket.order_id,
        "order_number": order.number if order else None,
        "channel": order.channel if order else None,
        "payment_status": order.payment_status if order else None,
        "status": order.status if order else None,
        "created_at": _iso(ticket.created_at),
        "items": items,
        "bypass_served": all(item["status"] == "served" for item in items),
    }


def all_served(items: list[dict]) -> bool:
    return bool(items) and all(item["status"] == "served" for item in items)


@router.get("/tickets")
def list_tickets(actor: Actor = Depends(staff_actor), db: Session = Depends(get_db)) -> dict:
    rows = (
        db.query(KdsTicket, Order)
        .outerjoin(Order, Order.id == KdsTicket.order_id)
        .order_by(KdsTicket.created_at.asc())
        .all()
    )
    return ok({"tickets": [serialize_kds_ticket(ticket, order) for ticket, order in rows]})


@router.patch("/tickets/{ticket_id}")
def update_ticket_item(
    ticket_id: str,
    payload: TicketItemUpdate,
    actor: Actor = Depends(staff_actor),
    db: Session = Depends(get_db),
) -> dict:
    ticket = db.get(KdsTicket, ticket_id)
    if not ticket:
        raise app_error(ERR.NOT_FOUND, message="Ticket not found")

    raw_items = ticket.items if isinstance(ticket.items, list) else []
    matched = False
    next_items = []
    for item in raw_items:
        if isinstance(item, dict) and item.get("order_item_id") == payload.order_item_id:
            matched = True
            item = {
                **item,
                "status": payload.status,
                "updated_at": _now().isoformat(),
                "updated_by": actor.user_id,
            }
        next_items.append(item)
    if not matched:
        raise app_error(ERR.BAD_REQUEST, message="Ticket item not found")

    ticket.items = next_items
    order = db.get(Order, ticket.order_id)
    if (
        order is not None
        and all_served(parse_ticket_items(next_items))
        and order.payment_status == "paid"
        and order.status != "paid"
    ):
        order.status = "paid"
        logger.info("order %s closed after all items were served", order.id)

    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise db_error(exc, "Failed to update ticket") from exc
    db.refresh(ticket)
    return ok(serialize_kds_ticket(ticket, db.get(Order, ticket.order_id)))
