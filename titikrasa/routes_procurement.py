from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from titikrasa.auth import Actor, manager_actor
from titikrasa.common import _iso, _now, _page_meta, _paginate_by_page, as_utc, db_error, ok
from titikrasa.db import get_db
from titikrasa.errors import ERR, app_error
from titikrasa.models import (
    IngredientSupplierLink,
    PurchaseOrder,
    StoreIngredient,
    Supplier,
    SupplierCatalogItem,
)
from titikrasa.pricing import round_half_up
from titikrasa.stock import complete_purchase_order

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/procurements", tags=["Procurement"])

MAX_PAGE_SIZE = 200
MAX_TRANSACTION_ROWS = 600

BaseUom = Literal["gr", "ml", "pcs"]
PurchaseOrderStatus = Literal["draft", "pending", "complete"]


class SupplierContact(BaseModel):
    name: Optional[str] = Field(default=None, max_length=120)
    email: Optional[str] = Field(default=None, max_length=120, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    phone: Optional[str] = Field(default=None, max_length=60)
    address: Optional[str] = Field(default=None, max_length=255)
    note: Optional[str] = Field(default=None, max_length=255)


class SupplierCreate(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {"name": "CV Susu Segar", "contact": {"phone": "022-555-0101"}}
        }
    }
    name: str = Field(min_length=1, max_length=200)
    contact: Optional[SupplierContact] = None
    is_active: bool = True


class SupplierUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    contact: Optional[SupplierContact] = None
    is_active: Optional[bool] = None


class CatalogItemCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    base_uom: BaseUom
    purchase_price: int = Field(ge=0)
    unit_label: Optional[str] = Field(default=None, max_length=40)
    conversion_rate: float = Field(default=1, gt=0)
    is_active: bool = True


class CatalogItemUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    base_uom: Optional[BaseUom] = None
    purchase_price: Optional[int] = Field(default=None, ge=0)
    unit_label: Optional[str] = Field(default=None, max_length=40)
    conversion_rate: Optional[float] = Field(default=None, gt=0)
    is_active: Optional[bool] = None


class LinkCreate(BaseModel):
    catalog_item_id: str
    store_ingredient_id: str
    preferred: bool = False


class LinkUpdate(BaseModel):
    preferred: bool


class PurchaseOrderLine(BaseModel):
    catalog_item_id: str
    qty: float = Field(ge=1)
    price: Optional[float] = Field(default=None, ge=0)


class PurchaseOrderCreate(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {
                "supplier_id": "b0d6...",
                "status": "pending",
                "items": [{"catalog_item_id": "c81e...", "qty": 5000, "price": 18}],
            }
        }
    }
    supplier_id: str
    status: PurchaseOrderStatus = "draft"
    items: list[PurchaseOrderLine] = Field(min_length=1)
    totals: Optional[dict[str, Any]] = None
    issued_at: Optional[datetime] = None


class PurchaseOrderUpdate(BaseModel):
    status: Optional[PurchaseOrderStatus] = None
    items: Optional[list[PurchaseOrderLine]] = None
    totals: Optional[dict[str, Any]] = None
    issued_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


def _clean(model: Optional[BaseModel]) -> dict:
    if model is None:
        return {}
    return {
        key: value.strip()
        for key, value in model.model_dump().items()
        if isinstance(value, str) and value.strip()
    }


def parse_supplier_contact(value: Any) -> dict:
    if not isinstance(value, dict):
        return {}
    return {
        key: value.get(key) if isinstance(value.get(key), str) else None
        for key in ("name", "email", "phone", "address", "note")
    }


def grand_total_of(totals: Any) -> int:
    if isinstance(totals, dict):
        value = totals.get("grand_total")
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return int(value)
    return 0


def serialize_supplier(supplier: Supplier, catalog_count: int = 0) -> dict:
    return {
        "id": supplier.id,
        "name": supplier.name,
        "contact": parse_supplier_contact(supplier.contact),
        "is_active": supplier.is_active,
        "catalog_count": catalog_count,
        "created_at": _iso(supplier.created_at),
    }


def serialize_catalog_item(item: SupplierCatalogItem, links: Optional[list[dict]] = None) -> dict:
    data = {
        "id": item.id,
        "supplier_id": item.supplier_id,
        "name": item.name,
        "base_uom": item.base_uom,
        "purchase_price": item.purchase_price,
        "unit_label": item.unit_label,
        "conversion_rate": item.conversion_rate,
        "is_active": item.is_active,
        "created_at": _iso(item.created_at),
    }
    if links is not None:
        data["links"] = links
    return data


def serialize_link(link: IngredientSupplierLink, ingredient: Optional[StoreIngredient]) -> dict:
    return {
        "id": link.id,
        "catalog_item_id": link.catalog_item_id,
        "store_ingredient_id": link.store_ingredient_id,
        "ingredient_name": ingredient.name if ingredient else None,
        "base_uom": ingredient.base_uom if ingredient else None,
        "preferred": link.preferred,
        "last_purchase_price": link.last_purchase_price,
        "last_purchased_at": _iso(link.last_purchased_at),
    }


def serialize_purchase_order(purchase_order: PurchaseOrder, supplier_name: Optional[str]) -> dict:
    totals = purchase_order.totals if isinstance(purchase_order.totals, dict) else {}
    return {
        "id": purchase_order.id,
        "supplier_id": purchase_order.supplier_id,
        "supplier_name": supplier_name or "Unknown supplier",
        "status": purchase_order.status,
        "items": [item for item in purchase_order.items or [] if isinstance(item, dict)],
        "totals": totals,
        "grand_total": grand_total_of(totals),
        "issued_at": _iso(purchase_order.issued_at),
        "completed_at": _iso(purchase_order.completed_at),
        "created_by": purchase_order.created_by,
        "created_at": _iso(purchase_order.created_at),
    }


def aggregate_supplier_orders(purchase_orders: list[PurchaseOrder]) -> tuple[list[dict], dict]:
    """Summarise purchase orders per order: item count, spend, newest issued first."""
    orders = []
    for purchase_order in purchase_orders:
        item_count = 0
        total_amount = 0
        for item in purchase_order.items or []:
            if not isinstance(item, dict):
                continue
            qty = item.get("qty") or 0
            item_count += qty
            total_amount += qty * (item.get("price") or 0)
        orders.append(
            {
                "id": purchase_order.id,
                "status": purchase_order.status,
                "issued_at": _iso(purchase_order.issued_at),
                "completed_at": _iso(purchase_order.completed_at),
                "item_count": item_count,
                "total_amount": total_amount,
                "_issued": as_utc(purchase_order.issued_at).timestamp()
                if purchase_order.issued_at
                else 0,
            }
        )
    orders.sort(key=lambda order: order["_issued"], reverse=True)
    for order in orders:
        order.pop("_issued")
    stats = {
        "total_purchase_orders": len(orders),
        "pending_purchase_orders": sum(1 for order in orders if order["status"] != "complete"),
        "total_spend": sum(order["total_amount"] for order in orders),
    }
    return orders, stats


def _get_supplier(db: Session, supplier_id: str) -> Supplier:
    supplier = db.get(Supplier, supplier_id)
    if not supplier:
        raise app_error(ERR.NOT_FOUND, message="Supplier not found")
    return supplier


def _get_catalog_item(db: Session, supplier_id: str, catalog_id: str) -> SupplierCatalogItem:
    item = db.get(SupplierCatalogItem, catalog_id)
    if not item or item.supplier_id != supplier_id:
        raise app_error(ERR.NOT_FOUND, message="Catalog item not found")
    return item


def _get_link(db: Session, supplier_id: str, link_id: str) -> IngredientSupplierLink:
    row = (
        db.query(IngredientSupplierLink)
        .join(SupplierCatalogItem, SupplierCatalogItem.id == IngredientSupplierLink.catalog_item_id)
        .filter(IngredientSupplierLink.id == link_id, SupplierCatalogItem.supplier_id == supplier_id)
        .first()
    )
    if not row:
        raise app_error(ERR.NOT_FOUND, message="Supplier link not found")
    return row


def _unprefer_others(db: Session, link: IngredientSupplierLink) -> None:
    db.execute(
        update(IngredientSupplierLink)
        .where(
            IngredientSupplierLink.catalog_item_id == link.catalog_item_id,
            IngredientSupplierLink.id != link.id,
        )
        .values(preferred=False)
    )


def _commit(db: Session, message: str) -> None:
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise db_error(exc, message) from exc


def _catalog_counts(db: Session, supplier_ids: list[str]) -> dict[str, int]:
    if not supplier_ids:
        return {}
    rows = db.execute(
        select(SupplierCatalogItem.supplier_id, func.count())
        .where(SupplierCatalogItem.supplier_id.in_(supplier_ids))
        .group_by(SupplierCatalogItem.supplier_id)
    )
    return {supplier_id: count for supplier_id, count in rows}


@router.get("/suppliers")
def list_suppliers(
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=MAX_PAGE_SIZE),
    search: Optional[str] = Query(default=None),
    status: Literal["all", "active", "inactive"] = Query(default="all"),
    actor: Actor = Depends(manager_actor),
    db: Session = Depends(get_db),
) -> dict:
    query = db.query(Supplier)
    if search and search.strip():
        query = query.filter(func.lower(Supplier.name).like(f"%{search.strip().lower()}%"))
    if status != "all":
        query = query.filter(Supplier.is_active.is_(status == "active"))
    rows, total = _paginate_by_page(query.order_by(Supplier.created_at.desc()), page, page_size)
    counts = _catalog_counts(db, [row.id for row in rows])
    meta = _page_meta(page, page_size, total)
    meta["filters"] = {"search": search, "status": status}
    return ok({"items": [serialize_supplier(row, counts.get(row.id, 0)) for row in rows]}, meta)


@router.post("/suppliers", status_code=201)
def create_supplier(
    payload: SupplierCreate,
    actor: Actor = Depends(manager_actor),
    db: Session = Depends(get_db),
) -> dict:
    supplier = Supplier(
        name=payload.name.strip(),
        contact=_clean(payload.contact),
        is_active=payload.is_active,
        created_at=_now(),
    )
    db.add(supplier)
    _commit(db, "Failed to create supplier")
    db.refresh(supplier)
    return ok(serialize_supplier(supplier))


@router.get("/suppliers/{supplier_id}")
def get_supplier(
    supplier_id: str, actor: Actor = Depends(manager_actor), db: Session = Depends(get_db)
) -> dict:
    supplier = _get_supplier(db, supplier_id)
    catalog_items = (
        db.query(SupplierCatalogItem)
        .filter(SupplierCatalogItem.supplier_id == supplier_id)
        .order_by(SupplierCatalogItem.created_at.desc())
        .all()
    )
    link_rows = (
        db.query(IngredientSupplierLink, StoreIngredient)
        .outerjoin(StoreIngredient, StoreIngredient.id == IngredientSupplierLink.store_ingredient_id)
        .filter(IngredientSupplierLink.catalog_item_id.in_([item.id for item in catalog_items]))
        .all()
        if catalog_items
        else []
    )
    links: dict[str, list[dict]] = {}
    for link, ingredient in link_rows:
        links.setdefault(link.catalog_item_id, []).append(serialize_link(link, ingredient))

    purchase_orders = (
        db.query(PurchaseOrder)
        .filter(PurchaseOrder.supplier_id == supplier_id)
        .limit(MAX_TRANSACTION_ROWS)
        .all()
    )
    orders, stats = aggregate_supplier_orders(purchase_orders)
    stats["active_catalog_items"] = sum(1 for item in catalog_items if item.is_active)
    ingredients = (
        db.query(StoreIngredient)
        .filter(StoreIngredient.is_active.is_(True))
        .order_by(StoreIngredient.name)
        .all()
    )
    return ok(
        {
            "supplier": serialize_supplier(supplier, len(catalog_items)),
            "catalog": [serialize_catalog_item(item, links.get(item.id, [])) for item in catalog_items],
            "store_ingredients": [
                {"id": row.id, "name": row.name, "base_uom": row.base_uom} for row in ingredients
            ],
            "stats": stats,
            "orders": orders,
        }
    )


@router.patch("/suppliers/{supplier_id}")
def update_supplier(
    supplier_id: str,
    payload: SupplierUpdate,
    actor: Actor = Depends(manager_actor),
    db: Session = Depends(get_db),
) -> dict:
    supplier = _get_supplier(db, supplier_id)
    changes = payload.model_dump(exclude_unset=True)
    if not changes:
        raise app_error(ERR.BAD_REQUEST, message="No changes provided")
    if payload.name is not None:
        supplier.name = payload.name.strip()
    if "contact" in changes:
        supplier.contact = _clean(payload.contact)
    if payload.is_active is not None:
        supplier.is_active = payload.is_active
    _commit(db, "Failed to update supplier")
    db.refresh(supplier)
    return ok(serialize_supplier(supplier))


@router.delete("/suppliers/{supplier_id}")
def delete_supplier(
    supplier_id: str, actor: Actor = Depends(manager_actor), db: Session = Depends(get_db)
) -> dict:
    supplier = _get_supplier(db, supplier_id)
    po_count = db.scalar(
        select(func.count()).select_from(PurchaseOrder).where(PurchaseOrder.supplier_id == supplier_id)
    )
    if po_count:
        raise app_error(
            ERR.BAD_REQUEST,
            message="Supplier has purchase orders; deactivate it instead",
            details={"count": po_count},
        )
    catalog_ids = select(SupplierCatalogItem.id).where(SupplierCatalogItem.supplier_id == supplier_id)
    for link in db.scalars(
        select(IngredientSupplierLink).where(IngredientSupplierLink.catalog_item_id.in_(catalog_ids))
    ):
        db.delete(link)
    for item in db.scalars(select(SupplierCatalogItem).where(SupplierCatalogItem.supplier_id == supplier_id)):
        db.delete(item)
    db.delete(supplier)
    _commit(db, "Failed to delete supplier")
    return ok({"success": True})


@router.get("/suppliers/{supplier_id}/catalog")
def list_catalog(
    supplier_id: str,
    status: Literal["all", "active", "inactive"] = Query(default="all"),
    search: Optional[str] = Query(default=None),
    actor: Actor = Depends(manager_actor),
    db: Session = Depends(get_db),
) -> dict:
    _get_supplier(db, supplier_id)
    query = db.query(SupplierCatalogItem).filter(SupplierCatalogItem.supplier_id == supplier_id)
    if status != "all":
        query = query.filter(SupplierCatalogItem.is_active.is_(status == "active"))
    if search and search.strip():
        query = query.filter(
            func.lower(SupplierCatalogItem.name).like(f"%{search.strip().lower()}%")
        )
    rows = query.order_by(SupplierCatalogItem.created_at.desc()).all()
    return ok({"items": [serialize_catalog_item(row) for row in rows]})


@router.post("/suppliers/{supplier_id}/catalog", status_code=201)
def create_catalog_item(
    supplier_id: str,
    payload: CatalogItemCreate,
    actor: Actor = Depends(manager_actor),
    db: Session = Depends(get_db),
) -> dict:
    _get_supplier(db, supplier_id)
    item = SupplierCatalogItem(
        supplier_id=supplier_id,
        name=payload.name.strip(),
        base_uom=payload.base_uom,
        purchase_price=payload.purchase_price,
        unit_label=payload.unit_label,
        conversion_rate=payload.conversion_rate,
        is_active=payload.is_active,
        created_at=_now(),
    )
    db.add(item)
    _commit(db, "Failed to create catalog item")
    db.refresh(item)
    return ok({"item": serialize_catalog_item(item)})


@router.patch("/suppliers/{supplier_id}/catalog/{catalog_id}")
def update_catalog_item(
    supplier_id: str,
    catalog_id: str,
    payload: CatalogItemUpdate,
    actor: Actor = Depends(manager_actor),
    db: Session = Depends(get_db),
) -> dict:
    item = _get_catalog_item(db, supplier_id, catalog_id)
    changes = payload.model_dump(exclude_unset=True)
    if not changes:
        raise app_error(ERR.BAD_REQUEST, message="No changes provided")
    for key, value in changes.items():
        if value is None and key != "unit_label":
            continue
        setattr(item, key, value.strip() if key == "name" else value)
    _commit(db, "Failed to update catalog item")
    db.refresh(item)
    return ok({"item": serialize_catalog_item(item)})


@router.delete("/suppliers/{supplier_id}/catalog/{catalog_id}")
def delete_catalog_item(
    supplier_id: str,
    catalog_id: str,
    actor: Actor = Depends(manager_actor),
    db: Session = Depends(get_db),
) -> dict:
    item = _get_catalog_item(db, supplier_id, catalog_id)
    for link in db.scalars(
        select(IngredientSupplierLink).where(IngredientSupplierLink.catalog_item_id == catalog_id)
    ):
        db.delete(link)
    db.delete(item)
    _commit(db, "Failed to delete catalog item")
    return ok({"success": True})


@router.get("/suppliers/{supplier_id}/links")
def list_links(
    supplier_id: str, actor: Actor = Depends(manager_actor), db: Session = Depends(get_db)
) -> dict:
    _get_supplier(db, supplier_id)
    rows = (
        db.query(IngredientSupplierLink, StoreIngredient)
        .join(SupplierCatalogItem, SupplierCatalogItem.id == IngredientSupplierLink.catalog_item_id)
        .outerjoin(StoreIngredient, StoreIngredient.id == IngredientSupplierLink.store_ingredient_id)
        .filter(SupplierCatalogItem.supplier_id == supplier_id)
        .all()
    )
    return ok({"items": [serialize_link(link, ingredient) for link, ingredient in rows]})


@router.post("/suppliers/{supplier_id}/links", status_code=201)
def create_link(
    supplier_id: str,
    payload: LinkCreate,
    actor: Actor = Depends(manager_actor),
    db: Session = Depends(get_db),
) -> dict:
    catalog_item = db.get(SupplierCatalogItem, payload.catalog_item_id)
    if not catalog_item:
        raise app_error(ERR.NOT_FOUND, message="Catalog item not found")
    if catalog_item.supplier_id != supplier_id:
        raise app_error(ERR.BAD_REQUEST, message="Supplier mismatch")
    ingredient = db.get(StoreIngredient, payload.store_ingredient_id)
    if not ingredient:
        raise app_error(ERR.NOT_FOUND, message="Ingredient not found")
    existing = db.scalar(
        select(IngredientSupplierLink).where(
            IngredientSupplierLink.catalog_item_id == payload.catalog_item_id,
            IngredientSupplierLink.store_ingredient_id == payload.store_ingredient_id,
        )
    )
    if existing:
        raise app_error(
            ERR.BAD_REQUEST,
            message="This ingredient is already linked to the selected catalog item",
        )
    link = IngredientSupplierLink(
        catalog_item_id=payload.catalog_item_id,
        store_ingredient_id=payload.store_ingredient_id,
        preferred=payload.preferred,
    )
    db.add(link)
    db.flush()
    if payload.preferred:
        _unprefer_others(db, link)
    _commit(db, "Failed to create supplier link")
    db.refresh(link)
    return ok(serialize_link(link, ingredient))


@router.patch("/suppliers/{supplier_id}/links/{link_id}")
def update_link(
    supplier_id: str,
    link_id: str,
    payload: LinkUpdate,
    actor: Actor = Depends(manager_actor),
    db: Session = Depends(get_db),
) -> dict:
    link = _get_link(db, supplier_id, link_id)
    link.preferred = payload.preferred
    if payload.preferred:
        _unprefer_others(db, link)
    _commit(db, "Failed to update supplier link")
    db.refresh(link)
    return ok(serialize_link(link, db.get(StoreIngredient, link.store_ingredient_id)))


@router.delete("/suppliers/{supplier_id}/links/{link_id}")
def delete_link(
    supplier_id: str,
    link_id: str,
    actor: Actor = Depends(manager_actor),
    db: Session = Depends(get_db),
) -> dict:
    link = _get_link(db, supplier_id, link_id)
    pending = db.scalars(select(PurchaseOrder).where(PurchaseOrder.status == "pending"))
    for purchase_order in pending:
        if any(
            isinstance(item, dict) and item.get("store_ingredient_id") == link.store_ingredient_id
            for item in purchase_order.items or []
        ):
            raise app_error(
                ERR.BAD_REQUEST,
                message="A pending purchase order still uses this ingredient",
                details={"purchase_order_id": purchase_order.id},
            )
    db.delete(link)
    _commit(db, "Failed to delete supplier link")
    return ok({"success": True})


@router.get("/suppliers/{supplier_id}/transactions")
def list_supplier_transactions(
    supplier_id: str,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=10, ge=1, le=MAX_PAGE_SIZE),
    status: Literal["all", "draft", "pending", "complete"] = Query(default="all"),
    search: Optional[str] = Query(default=None),
    actor: Actor = Depends(manager_actor),
    db: Session = Depends(get_db),
) -> dict:
    supplier = _get_supplier(db, supplier_id)
    purchase_orders = (
        db.query(PurchaseOrder)
        .filter(PurchaseOrder.supplier_id == supplier_id)
        .limit(MAX_TRANSACTION_ROWS)
        .all()
    )
    orders, stats = aggregate_supplier_orders(purchase_orders)
    if status != "all":
        orders = [order for order in orders if order["status"] == status]
    term = (search or "").strip().lower()
    if term:
        orders = [order for order in orders if term in order["id"].lower()]
    offset = (page - 1) * page_size
    meta = _page_meta(page, page_size, len(orders))
    meta["filters"] = {"status": status, "search": search}
    return ok(
        {
            "supplier": {"id": supplier.id, "name": supplier.name},
            "items": orders[offset : offset + page_size],
            "stats": stats,
        },
        meta,
    )


def _resolve_ingredient(db: Session, catalog_item: SupplierCatalogItem) -> str:
    """Return the store ingredient behind a catalog item, creating one if unlinked."""
    links = db.scalars(
        select(IngredientSupplierLink).where(
            IngredientSupplierLink.catalog_item_id == catalog_item.id
        )
    ).all()
    link = next((entry for entry in links if entry.preferred), None) or (links[0] if links else None)
    if link is not None:
        return link.store_ingredient_id

    ingredient = StoreIngredient(
        name=catalog_item.name,
        base_uom=catalog_item.base_uom,
        is_active=True,
        created_at=_now(),
    )
    db.add(ingredient)
    db.flush()
    db.add(
        IngredientSupplierLink(
            catalog_item_id=catalog_item.id,
            store_ingredient_id=ingredient.id,
            preferred=True,
        )
    )
    db.flush()
    logger.info("created store ingredient %s for catalog item %s", ingredient.id, catalog_item.id)
    return ingredient.id


def build_purchase_order_items(
    db: Session, supplier_id: str, lines: list[PurchaseOrderLine]
) -> tuple[list[dict], int]:
    resolved: dict[str, str] = {}
    items = []
    computed_total = 0
    for line in lines:
        catalog_item = db.get(SupplierCatalogItem, line.catalog_item_id)
        if catalog_item is None:
            raise app_error(
                ERR.BAD_REQUEST,
                message="Invalid catalog item",
                details={"catalog_item_id": line.catalog_item_id},
            )
        if catalog_item.supplier_id != supplier_id:
            raise app_error(
                ERR.BAD_REQUEST,
                message="Catalog item does not belong to supplier",
                details={"catalog_item_id": line.catalog_item_id},
            )
        if catalog_item.id not in resolved:
            resolved[catalog_item.id] = _resolve_ingredient(db, catalog_item)

        qty = max(0, round_half_up(line.qty))
        if qty <= 0:
            raise app_error(
                ERR.BAD_REQUEST,
                message="Quantity must be greater than zero",
                details={"catalog_item_id": catalog_item.id},
            )
        price = line.price if line.price is not None else catalog_item.purchase_price or 0
        price = max(0, round_half_up(price))
        computed_total += price * qty
        items.append(
            {
                "catalog_item_id": catalog_item.id,
                "supplier_id": supplier_id,
                "store_ingredient_id": resolved[catalog_item.id],
                "qty": qty,
                "base_uom": catalog_item.base_uom,
                "price": price,
            }
        )
    return items, computed_total


def _po_view(db: Session, purchase_order: PurchaseOrder) -> dict:
    supplier = db.get(Supplier, purchase_order.supplier_id)
    return serialize_purchase_order(purchase_order, supplier.name if supplier else None)


def _get_purchase_order(db: Session, purchase_order_id: str) -> PurchaseOrder:
    purchase_order = db.get(PurchaseOrder, purchase_order_id)
    if not purchase_order:
        raise app_error(ERR.NOT_FOUND, message="Purchase order not found")
    return purchase_order


@router.get("/purchase-orders")
def list_purchase_orders(
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=MAX_PAGE_SIZE),
    status: Literal["all", "draft", "pending", "complete"] = Query(default="all"),
    supplier_id: Optional[str] = Query(default=None),
    search: Optional[str] = Query(default=None),
    issued_from: Optional[datetime] = Query(default=None),
    issued_to: Optional[datetime] = Query(default=None),
    actor: Actor = Depends(manager_actor),
    db: Session = Depends(get_db),
) -> dict:
    query = db.query(PurchaseOrder, Supplier.name).outerjoin(
        Supplier, Supplier.id == PurchaseOrder.supplier_id
    )
    if status != "all":
        query = query.filter(PurchaseOrder.status == status)
    if supplier_id:
        query = query.filter(PurchaseOrder.supplier_id == supplier_id)
    if search and search.strip():
        query = query.filter(func.lower(PurchaseOrder.id).like(f"%{search.strip().lower()}%"))
    if issued_from:
        query = query.filter(PurchaseOrder.issued_at >= issued_from)
    if issued_to:
        query = query.filter(PurchaseOrder.issued_at <= issued_to)
    try:
        rows, total = _paginate_by_page(
            query.order_by(PurchaseOrder.issued_at.desc(), PurchaseOrder.created_at.desc()),
            page,
            page_size,
        )
    except SQLAlchemyError as exc:
        raise db_error(exc, "Failed to fetch purchase orders") from exc
    meta = _page_meta(page, page_size, total)
    meta["filters"] = {"status": status, "supplier_id": supplier_id, "search": search}
    return ok({"items": [serialize_purchase_order(po, name) for po, name in rows]}, meta)


@router.post("/purchase-orders", status_code=201)
def create_purchase_order(
    payload: PurchaseOrderCreate,
    actor: Actor = Depends(manager_actor),
    db: Session = Depends(get_db),
) -> dict:
    _get_supplier(db, payload.supplier_id)
    try:
        items, computed_total = build_purchase_order_items(db, payload.supplier_id, payload.items)
    except Exception:
        db.rollback()
        raise

    totals = dict(payload.totals or {})
    if not isinstance(totals.get("grand_total"), (int, float)) or isinstance(
        totals.get("grand_total"), bool
    ):
        totals["grand_total"] = computed_total
    purchase_order = PurchaseOrder(
        supplier_id=payload.supplier_id,
        status="draft" if payload.status == "complete" else payload.status,
        items=items,
        totals=totals,
        issued_at=payload.issued_at or _now(),
        created_by=actor.user_id,
        created_at=_now(),
    )
    db.add(purchase_order)
    _commit(db, "Failed to create purchase order")
    db.refresh(purchase_order)
    if payload.status == "complete":
        complete_purchase_order(db, purchase_order)
        db.refresh(purchase_order)
    logger.info("purchase order %s created by %s", purchase_order.id, actor.user_id)
    return ok(_po_view(db, purchase_order))


@router.get("/purchase-orders/{purchase_order_id}")
def get_purchase_order(
    purchase_order_id: str, actor: Actor = Depends(manager_actor), db: Session = Depends(get_db)
) -> dict:
    return ok(_po_view(db, _get_purchase_order(db, purchase_order_id)))


@router.patch("/purchase-orders/{purchase_order_id}")
def update_purchase_order(
    purchase_order_id: str,
    payload: PurchaseOrderUpdate,
    actor: Actor = Depends(manager_actor),
    db: Session = Depends(get_db),
) -> dict:
    purchase_order = _get_purchase_order(db, purchase_order_id)
    changes = payload.model_dump(exclude_unset=True)
    if not changes:
        raise app_error(ERR.BAD_REQUEST, message="No changes provided")
    if "items" in changes:
        raise app_error(ERR.BAD_REQUEST, message="Updating purchase order items is not supported")

    completing = payload.status == "complete" and purchase_order.status != "complete"
    if payload.status is not None and purchase_order.status == "complete" and payload.status != "complete":
        raise app_error(ERR.BAD_REQUEST, message="Completed purchase orders cannot be reopened")
    if payload.status is not None and not completing:
        purchase_order.status = payload.status
    if payload.totals is not None:
        purchase_order.totals = {**(purchase_order.totals or {}), **payload.totals}
    if payload.issued_at is not None:
        purchase_order.issued_at = payload.issued_at
    if payload.completed_at is not None and not completing:
        purchase_order.completed_at = payload.completed_at

    if completing:
        complete_purchase_order(db, purchase_order)
    else:
        _commit(db, "Failed to update purchase order")
    db.refresh(purchase_order)
    return ok(_po_view(db, purchase_order))


@router.delete("/purchase-orders/{purchase_order_id}")
def delete_purchase_order(
    purchase_order_id: str, actor: Actor = Depends(manager_actor), db: Session = Depends(get_db)
) -> dict:
    purchase_order = _get_purchase_order(db, purchase_order_id)
    if purchase_order.status == "complete":
        raise app_error(ERR.BAD_REQUEST, message="Completed purchase orders cannot be deleted")
    db.delete(purchase_order)
    _commit(db, "Failed to delete purchase order")
    logger.info("purchase order %s deleted by %s", purchase_order_id, actor.user_id)
    return ok({"success": True})
