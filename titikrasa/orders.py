from __future__ import annotations

from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from titikrasa.common import _iso
from titikrasa.errors import ERR, app_error
from titikrasa.models import KdsTicket, Menu, MenuCategory, Order, OrderItem, Reseller
from titikrasa.pricing import parse_ticket_items, parse_totals


def split_variant(variant: Optional[str]) -> tuple[Optional[str], Optional[str]]:
    if not variant:
        return None, None
    size, _, temperature = variant.partition("|")
    return size or None, temperature or None


def serialize_ticket(ticket: KdsTicket) -> dict:
    return {
        "id": ticket.id,
        "order_id": ticket.order_id,
        "items": parse_ticket_items(ticket.items),
        "created_at": _iso(ticket.created_at),
    }


def serialize_orders(db: Session, orders: list[Order]) -> list[dict]:
    """Map order rows to views with their items, reseller and kitchen ticket."""
    if not orders:
        return []
    order_ids = [order.id for order in orders]

    items_by_order: dict[str, list[OrderItem]] = {}
    for item in db.scalars(select(OrderItem).where(OrderItem.order_id.in_(order_ids))):
        items_by_order.setdefault(item.order_id, []).append(item)

    menu_ids = {item.menu_id for items in items_by_order.values() for item in items}
    menus = (
        {menu.id: menu for menu in db.scalars(select(Menu).where(Menu.id.in_(menu_ids)))}
        if menu_ids
        else {}
    )
    category_ids = {menu.category_id for menu in menus.values() if menu.category_id}
    icons = (
        {
            category.id: category.icon_url
            for category in db.scalars(
                select(MenuCategory).where(MenuCategory.id.in_(category_ids))
            )
        }
        if category_ids
        else {}
    )

    tickets: dict[str, KdsTicket] = {}
    for ticket in db.scalars(
        select(KdsTicket).where(KdsTicket.order_id.in_(order_ids)).order_by(KdsTicket.created_at)
    ):
        tickets.setdefault(ticket.order_id, ticket)

    reseller_ids = {order.reseller_id for order in orders if order.reseller_id}
    resellers = (
        {
            reseller.id: reseller
            for reseller in db.scalars(select(Reseller).where(Reseller.id.in_(reseller_ids)))
        }
        if reseller_ids
        else {}
    )

    data = []
    for order in orders:
        reseller = resellers.get(order.reseller_id) if order.reseller_id else None
        ticket = tickets.get(order.id)
        data.append(
            {
                "id": order.id,
                "number": order.number,
                "channel": order.channel,
                "payment_method": order.payment_method,
                "payment_status": order.payment_status,
                "status": order.status,
                "due_date": _iso(order.due_date),
                "totals": parse_totals(order.totals),
                "created_at": _iso(order.created_at),
                "paid_at": _iso(order.paid_at),
                "customer_note": order.customer_note,
                "client_ref": order.client_ref,
                "reseller": {"id": reseller.id, "name": reseller.name} if reseller else None,
                "items": [
                    _serialize_item(item, menus.get(item.menu_id), icons)
                    for item in items_by_order.get(order.id, [])
                ],
                "ticket": serialize_ticket(ticket) if ticket else None,
            }
        )
    return data


def _serialize_item(item: OrderItem, menu: Optional[Menu], icons: dict) -> dict:
    size, temperature = split_variant(item.variant)
    thumbnail = None
    if menu is not None:
        thumbnail = menu.thumbnail_url or icons.get(menu.category_id)
    return {
        "id": item.id,
        "menu_id": item.menu_id,
        "menu_name": menu.name if menu else "Unknown Menu",
        "menu_sku": menu.sku if menu else None,
        "thumbnail_url": thumbnail,
        "variant": item.variant,
        "size": size,
        "temperature": temperature,
        "qty": item.qty,
        "price": item.price,
        "discount": item.discount,
        "tax": item.tax,
    }


def fetch_order(db: Session, order_id: str) -> dict:
    order = db.get(Order, order_id)
    if not order:
        raise app_error(ERR.NOT_FOUND, message="Order not found")
    return serialize_orders(db, [order])[0]
