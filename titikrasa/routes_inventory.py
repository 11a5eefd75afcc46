from __future__ import annotations

import logging
from datetime import datetime
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy import func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from titikrasa.auth import Actor, manager_actor, staff_actor
from titikrasa.common import _iso, _now, _page_meta, _paginate_by_page, as_utc, db_error, ok
from titikrasa.db import get_db
from titikrasa.errors import ERR, app_error
from titikrasa.models import (
    IngredientSupplierLink,
    PurchaseOrder,
    StockAdjustment,
    StoreIngredient,
    Supplier,
    SupplierCatalogItem,
)
from titikrasa.stock import apply_adjustment, create_adjustment, normalize_adjustment_items

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/inventory", tags=["Inventory"])

MAX_PAGE_SIZE = 200

BaseUom = Literal["gr", "ml", "pcs"]


class IngredientCreate(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {"name": "Susu UHT", "sku": "ING-MILK", "base_uom": "ml", "min_stock": 2000}
        }
    }
    name: str = Field(min_length=1, max_length=120)
    sku: Optional[str] = Field(default=None, max_length=64)
    base_uom: BaseUom = "pcs"
    min_stock: int = Field(default=0, ge=0)
    is_active: bool = True


class IngredientUpdate(BaseModel):
    sku: Optional[str] = Field(default=None, max_length=64)
    min_stock: Optional[int] = Field(default=None, ge=0)
    is_active: Optional[bool] = None


class AdjustmentLine(BaseModel):
    ingredient_id: str
    counted_qty: float = Field(ge=0)


class AdjustmentCreate(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {
                "notes": "Weekly count",
                "items": [{"ingredient_id": "a3c1...", "counted_qty": 1500}],
                "commit": True,
            }
        }
    }
    notes: str = Field(min_length=1, max_length=500)
    items: list[AdjustmentLine] = Field(min_length=1)
    commit: bool = True


class AdjustmentAction(BaseModel):
    action: Literal["approve"]


def _link_key(link: IngredientSupplierLink) -> float:
    if link.last_purchased_at is None:
        return float("-inf")
    return as_utc(link.last_purchased_at).timestamp()


def pick_latest_links(
    rows: list[tuple[IngredientSupplierLink, Optional[str]]],
) -> dict[str, tuple[IngredientSupplierLink, Optional[str]]]:
    """Keep one link per ingredient: the latest purchase wins, preferred breaks ties."""
    picked: dict[str, tuple[IngredientSupplierLink, Optional[str]]] = {}
    for link, supplier_name in rows:
        existing = picked.get(link.store_ingredient_id)
        if existing is None:
            picked[link.store_ingredient_id] = (link, supplier_name)
            continue
        current, candidate = _link_key(existing[0]), _link_key(link)
        if candidate > current or (
            candidate == current and link.preferred and not existing[0].preferred
        ):
            picked[link.store_ingredient_id] = (link, supplier_name)
    return picked


def _link_rows(db: Session, ingredient_ids: list[str]):
    if not ingredient_ids:
        return []
    return (
        db.query(IngredientSupplierLink, Supplier.name)
        .join(SupplierCatalogItem, SupplierCatalogItem.id == IngredientSupplierLink.catalog_item_id)
        .outerjoin(Supplier, Supplier.id == SupplierCatalogItem.supplier_id)
        .filter(IngredientSupplierLink.store_ingredient_id.in_(ingredient_ids))
        .all()
    )


def serialize_ingredient(ingredient: StoreIngredient, link=None) -> dict:
    link_row, supplier_name = link if link else (None, None)
    return {
        "id": ingredient.id,
        "name": ingredient.name,
        "sku": ingredient.sku,
        "base_uom": ingredient.base_uom,
        "min_stock": ingredient.min_stock,
        "current_stock": ingredient.current_stock,
        "avg_cost": ingredient.avg_cost,
        "is_active": ingredient.is_active,
        "last_purchase_price": link_row.last_purchase_price if link_row else None,
        "last_purchase_at": _iso(link_row.last_purchased_at) if link_row else None,
        "last_supplier_name": supplier_name,
    }


def serialize_adjustment(adjustment: StockAdjustment) -> dict:
    return {
        "id": adjustment.id,
        "status": adjustment.status,
        "notes": adjustment.notes,
        "items": normalize_adjustment_items(adjustment.items),
        "created_by": adjustment.created_by,
        "approved_by": adjustment.approved_by,
        "created_at": _iso(adjustment.created_at),
        "approved_at": _iso(adjustment.approved_at),
    }


def _get_ingredient(db: Session, ingredient_id: str) -> StoreIngredient:
    ingredient = db.get(StoreIngredient, ingredient_id)
    if not ingredient:
        raise app_error(ERR.NOT_FOUND, message="Ingredient not found")
    return ingredient


def _ingredient_detail(db: Session, ingredient: StoreIngredient) -> dict:
    links = pick_latest_links(_link_rows(db, [ingredient.id]))
    detail = serialize_ingredient(ingredient, links.get(ingredient.id))
    detail["created_at"] = _iso(ingredient.created_at)
    return detail


@router.get("/store-ingredients")
def list_store_ingredients(
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=MAX_PAGE_SIZE),
    status: Literal["all", "active", "inactive"] = Query(default="all"),
    search: Optional[str] = Query(default=None),
    low_stock_only: bool = Query(default=False),
    actor: Actor = Depends(staff_actor),
    db: Session = Depends(get_db),
) -> dict:
    query = db.query(StoreIngredient)
    if status != "all":
        query = query.filter(StoreIngredient.is_active.is_(status == "active"))
    if search and search.strip():
        pattern = f"%{search.strip().lower()}%"
        query = query.filter(
            or_(
                func.lower(StoreIngredient.name).like(pattern),
                func.lower(StoreIngredient.sku).like(pattern),
            )
        )
    if low_stock_only:
        query = query.filter(StoreIngredient.current_stock <= StoreIngredient.min_stock)
    try:
        rows, total = _paginate_by_page(query.order_by(StoreIngredient.name), page, page_size)
        links = pick_latest_links(_link_rows(db, [row.id for row in rows]))
    except SQLAlchemyError as exc:
        raise db_error(exc, "Failed to fetch store ingredients") from exc

    meta = _page_meta(page, page_size, total)
    meta["filters"] = {"status": status, "search": search, "low_stock_only": low_stock_only}
    return ok({"items": [serialize_ingredient(row, links.get(row.id)) for row in rows]}, meta)


@router.post("/store-ingredients", status_code=201)
def create_store_ingredient(
    payload: IngredientCreate,
    actor: Actor = Depends(manager_actor),
    db: Session = Depends(get_db),
) -> dict:
    ingredient = StoreIngredient(
        name=payload.name.strip(),
        sku=(payload.sku or "").strip() or None,
        base_uom=payload.base_uom,
        min_stock=payload.min_stock,
        current_stock=0,
        avg_cost=0,
        is_active=payload.is_active,
        created_at=_now(),
    )
    try:
        db.add(ingredient)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise db_error(exc, "Failed to create store ingredient") from exc
    db.refresh(ingredient)
    return ok(_ingredient_detail(db, ingredient))


@router.get("/store-ingredients/{ingredient_id}")
def get_store_ingredient(
    ingredient_id: str, actor: Actor = Depends(staff_actor), db: Session = Depends(get_db)
) -> dict:
    return ok(_ingredient_detail(db, _get_ingredient(db, ingredient_id)))


@router.patch("/store-ingredients/{ingredient_id}")
def update_store_ingredient(
    ingredient_id: str,
    payload: IngredientUpdate,
    actor: Actor = Depends(manager_actor),
    db: Session = Depends(get_db),
) -> dict:
    ingredient = _get_ingredient(db, ingredient_id)
    changes = payload.model_dump(exclude_unset=True)
    if not changes:
        raise app_error(ERR.BAD_REQUEST, message="No changes provided")
    if "sku" in changes:
        ingredient.sku = (payload.sku or "").strip() or None
    if payload.min_stock is not None:
        ingredient.min_stock = payload.min_stock
    if payload.is_active is not None:
        ingredient.is_active = payload.is_active
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise db_error(exc, "Failed to update store ingredient") from exc
    db.refresh(ingredient)
    return ok(_ingredient_detail(db, ingredient))


def _history_sort_key(entry: dict) -> tuple[int, float]:
    completed = entry["_completed"]
    return (0, -completed.timestamp()) if completed else (1, 0.0)


@router.get("/store-ingredients/{ingredient_id}/purchase-history")
def purchase_history(
    ingredient_id: str,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=MAX_PAGE_SIZE),
    supplier_id: Optional[str] = Query(default=None),
    date_from: Optional[datetime] = Query(default=None, alias="from"),
    date_to: Optional[datetime] = Query(default=None, alias="to"),
    actor: Actor = Depends(staff_actor),
    db: Session = Depends(get_db),
) -> dict:
    _get_ingredient(db, ingredient_id)
    query = db.query(PurchaseOrder, Supplier.name).outerjoin(
        Supplier, Supplier.id == PurchaseOrder.supplier_id
    )
    if supplier_id:
        query = query.filter(PurchaseOrder.supplier_id == supplier_id)

    entries = []
    for purchase_order, supplier_name in query.all():
        completed = as_utc(purchase_order.completed_at) if purchase_order.completed_at else None
        if date_from and (completed is None or completed < as_utc(date_from)):
            continue
        if date_to and (completed is None or completed > as_utc(date_to)):
            continue
        for item in purchase_order.items or []:
            if not isinstance(item, dict) or item.get("store_ingredient_id") != ingredient_id:
                continue
            qty = item.get("qty") or 0
            price = item.get("price") or 0
            entries.append(
                {
                    "purchase_order_id": purchase_order.id,
                    "status": purchase_order.status,
                    "supplier_id": purchase_order.supplier_id,
                    "supplier_name": supplier_name,
                    "qty": qty,
                    "base_uom": item.get("base_uom"),
                    "price": price,
                    "line_total": qty * price,
                    "issued_at": _iso(purchase_order.issued_at),
                    "completed_at": _iso(purchase_order.completed_at),
                    "_completed": completed,
                }
            )

    entries.sort(key=_history_sort_key)
    for entry in entries:
        entry.pop("_completed")
    offset = (page - 1) * page_size
    meta = _page_meta(page, page_size, len(entries))
    meta["filters"] = {"supplier_id": supplier_id}
    return ok({"items": entries[offset : offset + page_size]}, meta)


@router.get("/stock-adjustments")
def list_stock_adjustments(
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=MAX_PAGE_SIZE),
    status: Literal["all", "draft", "approved"] = Query(default="all"),
    actor: Actor = Depends(staff_actor),
    db: Session = Depends(get_db),
) -> dict:
    query = db.query(StockAdjustment)
    if status != "all":
        query = query.filter(StockAdjustment.status == status)
    rows, total = _paginate_by_page(query.order_by(StockAdjustment.created_at.desc()), page, page_size)
    meta = _page_meta(page, page_size, total)
    meta["filters"] = {"status": status}
    return ok({"items": [serialize_adjustment(row) for row in rows]}, meta)


@router.post("/stock-adjustments", status_code=201)
def create_stock_adjustment(
    payload: AdjustmentCreate,
    actor: Actor = Depends(staff_actor),
    db: Session = Depends(get_db),
) -> dict:
    counts = [(line.ingredient_id, line.counted_qty) for line in payload.items]
    adjustment = create_adjustment(db, actor, payload.notes.strip(), counts, commit=payload.commit)
    logger.info(
        "stock adjustment %s created by %s (%s)", adjustment.id, actor.user_id, adjustment.status
    )
    return ok(serialize_adjustment(adjustment))


@router.get("/stock-adjustments/{adjustment_id}")
def get_stock_adjustment(
    adjustment_id: str, actor: Actor = Depends(staff_actor), db: Session = Depends(get_db)
) -> dict:
    adjustment = db.get(StockAdjustment, adjustment_id)
    if not adjustment:
        raise app_error(ERR.NOT_FOUND, message="Stock adjustment not found")
    return ok(serialize_adjustment(adjustment))


@router.patch("/stock-adjustments/{adjustment_id}")
def approve_stock_adjustment(
    adjustment_id: str,
    payload: AdjustmentAction,
    actor: Actor = Depends(manager_actor),
    db: Session = Depends(get_db),
) -> dict:
    adjustment = db.scalar(select(StockAdjustment).where(StockAdjustment.id == adjustment_id))
    if not adjustment:
        raise app_error(ERR.NOT_FOUND, message="Stock adjustment not found")
    return ok(serialize_adjustment(apply_adjustment(db, adjustment, actor)))
