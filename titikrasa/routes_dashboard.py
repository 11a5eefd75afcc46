"""Dashboard summaries over a calendar window in the store's timezone."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Literal, Optional
from zoneinfo import ZoneInfo

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from titikrasa.auth import Actor, staff_actor
from titikrasa.common import _iso, _now, _page_meta, _paginate_by_page, as_utc, db_error, ok
from titikrasa.config import settings
from titikrasa.db import get_db
from titikrasa.models import KdsTicket, Order, PurchaseOrder, Reseller, StoreIngredient
from titikrasa.pricing import parse_ticket_items, parse_totals, round_half_up
from titikrasa.routes_procurement import grand_total_of

router = APIRouter(prefix="/api/dashboard", tags=["Dashboard"])

RangeName = Literal["today", "week", "month", "year"]

TRANSACTION_COUNT = 8
LOW_STOCK_COUNT = 6
RECEIVABLE_COUNT = 6
PENDING_PO_COUNT = 5

GRANULARITY = {"today": "hourly", "week": "daily", "month": "daily", "year": "monthly"}


def store_zone() -> ZoneInfo:
    return ZoneInfo(settings.store_timezone)


def date_range(
    range_name: str, now: Optional[datetime] = None, zone: Optional[ZoneInfo] = None
) -> tuple[datetime, datetime, str]:
    """Return ``(start, end, granularity)``; ``end`` is exclusive and both are UTC."""
    zone = zone or store_zone()
    local = (now or _now()).astimezone(zone)
    day = local.replace(hour=0, minute=0, second=0, microsecond=0)
    if range_name == "week":
        start = day - timedelta(days=day.weekday())
        end = start + timedelta(days=7)
    elif range_name == "month":
        start = day.replace(day=1)
        end = (start + timedelta(days=32)).replace(day=1)
    elif range_name == "year":
        start = day.replace(month=1, day=1)
        end = start.replace(year=start.year + 1)
    else:
        start = day
        end = start + timedelta(days=1)
    return (
        start.astimezone(timezone.utc),
        end.astimezone(timezone.utc),
        GRANULARITY.get(range_name, "hourly"),
    )


def bucket_start(value: datetime, granularity: str, zone: Optional[ZoneInfo] = None) -> datetime:
    local = as_utc(value).astimezone(zone or store_zone())
    if granularity == "hourly":
        return local.replace(minute=0, second=0, microsecond=0)
    if granularity == "monthly":
        return local.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    return local.replace(hour=0, minute=0, second=0, microsecond=0)


def bucket_label(value: datetime, granularity: str) -> str:
    if granularity == "hourly":
        return value.strftime("%H:00")
    if granularity == "monthly":
        return value.strftime("%b %Y")
    return value.strftime("%d %b")


def build_revenue_chart(
    orders: list, granularity: str, zone: Optional[ZoneInfo] = None
) -> list[dict]:
    buckets: dict[datetime, int] = {}
    for order in orders:
        if order.payment_status == "void":
            continue
        key = bucket_start(order.created_at, granularity, zone)
        buckets[key] = buckets.get(key, 0) + parse_totals(order.totals)["grand"]
    return [
        {"date": bucket_label(key, granularity), "revenue": revenue}
        for key, revenue in sorted(buckets.items())
    ]


def _transaction(order: Order) -> dict:
    return {
        "id": order.id,
        "number": order.number,
        "channel": order.channel,
        "payment_status": order.payment_status,
        "created_at": _iso(order.created_at),
        "grand_total": parse_totals(order.totals)["grand"],
    }


def _kds_pending(db: Session, window: tuple) -> int:
    pending = 0
    tickets = select(KdsTicket.items).join(Order, Order.id == KdsTicket.order_id).where(*window)
    for items in db.scalars(tickets):
        pending += sum(1 for item in parse_ticket_items(items) if item["status"] != "served")
    return pending


@router.get("/metrics")
def dashboard_metrics(
    range_name: RangeName = Query(alias="range"),
    actor: Actor = Depends(staff_actor),
    db: Session = Depends(get_db),
) -> dict:
    start, end, granularity = date_range(range_name)
    window = (Order.created_at >= start, Order.created_at < end)
    try:
        status_counts = dict(
            db.query(Order.payment_status, func.count(Order.id))
            .filter(*window)
            .group_by(Order.payment_status)
            .all()
        )
        revenue = db.scalar(
            select(func.coalesce(func.sum(Order.totals["grand"].as_integer()), 0)).where(
                *window, Order.payment_status == "paid"
            )
        )
        chart_rows = (
            db.query(Order.created_at, Order.payment_status, Order.totals).filter(*window).all()
        )
        latest = (
            db.query(Order)
            .filter(*window)
            .order_by(Order.created_at.desc())
            .limit(TRANSACTION_COUNT)
            .all()
        )
        completed_pos = (
            db.query(PurchaseOrder)
            .filter(
                PurchaseOrder.status == "complete",
                PurchaseOrder.completed_at >= start,
                PurchaseOrder.completed_at < end,
            )
            .all()
        )
        pipeline_pos = (
            db.query(PurchaseOrder)
            .filter(PurchaseOrder.status.in_(["pending", "draft"]))
            .order_by(PurchaseOrder.issued_at.desc())
            .all()
        )
        low_stock_query = db.query(StoreIngredient).filter(
            StoreIngredient.is_active.is_(True),
            StoreIngredient.min_stock > 0,
            StoreIngredient.current_stock <= StoreIngredient.min_stock,
        )
        low_stock_count = low_stock_query.count()
        low_stock = (
            low_stock_query.order_by(StoreIngredient.current_stock.asc()).limit(LOW_STOCK_COUNT).all()
        )
        receivable_rows = (
            db.query(Order, Reseller.name)
            .outerjoin(Reseller, Reseller.id == Order.reseller_id)
            .filter(Order.channel == "reseller", Order.payment_status == "unpaid")
            .order_by(Order.due_date.asc())
            .all()
        )
        kds_pending = _kds_pending(db, window)
    except SQLAlchemyError as exc:
        raise db_error(exc, "Failed to load dashboard summary") from exc

    paid_count = status_counts.get("paid", 0)
    expenses = sum(grand_total_of(po.totals) for po in completed_pos)
    receivables = [
        {
            "id": order.id,
            "number": order.number,
            "reseller_name": reseller_name,
            "due_date": _iso(order.due_date),
            "grand_total": parse_totals(order.totals)["grand"],
        }
        for order, reseller_name in receivable_rows
    ]
    metrics = {
        "revenue": revenue,
        "expenses": expenses,
        "aov": round_half_up(revenue / paid_count) if paid_count else 0,
        "net_profit": revenue - expenses,
        "total_orders": sum(status_counts.values()),
        "paid_orders": paid_count,
        "unpaid_orders": status_counts.get("unpaid", 0),
        "void_orders": status_counts.get("void", 0),
        "kds_pending": kds_pending,
        "low_stock_count": low_stock_count,
        "reseller_receivables": sum(entry["grand_total"] for entry in receivables),
        "pending_purchase_orders": len(pipeline_pos),
    }
    summary = {
        "range": range_name,
        "start": start.isoformat(),
        "end": end.isoformat(),
        "granularity": granularity,
        "metrics": metrics,
        "chart": build_revenue_chart(chart_rows, granularity),
        "transactions": [_transaction(order) for order in latest],
        "low_stock": [
            {
                "id": row.id,
                "name": row.name,
                "current_stock": row.current_stock,
                "min_stock": row.min_stock,
                "base_uom": row.base_uom,
            }
            for row in low_stock
        ],
        "receivables": receivables[:RECEIVABLE_COUNT],
        "pending_purchase_orders": [
            {
                "id": po.id,
                "status": po.status,
                "issued_at": _iso(po.issued_at),
                "total": grand_total_of(po.totals),
            }
            for po in pipeline_pos[:PENDING_PO_COUNT]
        ],
    }
    return ok({"summary": summary})


@router.get("/orders")
def dashboard_orders(
    range_name: RangeName = Query(alias="range"),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=10, ge=1, le=50),
    actor: Actor = Depends(staff_actor),
    db: Session = Depends(get_db),
) -> dict:
    start, end, _ = date_range(range_name)
    query = (
        db.query(Order)
        .filter(Order.created_at >= start, Order.created_at < end)
        .order_by(Order.created_at.desc())
    )
    try:
        rows, total = _paginate_by_page(query, page, page_size)
    except SQLAlchemyError as exc:
        raise db_error(exc, "Failed to load order history") from exc
    return ok([_transaction(order) for order in rows], _page_meta(page, page_size, total))
