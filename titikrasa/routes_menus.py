from __future__ import annotations

import re
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field, model_validator
from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from titikrasa.auth import Actor, manager_actor, staff_actor
from titikrasa.common import _iso, _meta, _now, db_error, ok
from titikrasa.db import get_db
from titikrasa.errors import ERR, app_error
from titikrasa.models import Menu, MenuCategory, OrderItem
from titikrasa.pricing import persist_variants

router = APIRouter(tags=["Menus"])

SKU_PATTERN = r"^[A-Za-z0-9_-]*$"

MenuSize = Literal["s", "m", "l"]
MenuTemperature = Literal["hot", "ice"]


def _slugify(value: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-") or "category"


def serialize_category(category: MenuCategory) -> dict:
    return {
        "id": category.id,
        "name": category.name,
        "slug": category.slug,
        "icon_url": category.icon_url,
        "sort_order": category.sort_order,
        "is_active": category.is_active,
        "created_at": _iso(category.created_at),
    }


def serialize_menu(menu: Menu, category: Optional[MenuCategory] = None) -> dict:
    return {
        "id": menu.id,
        "name": menu.name,
        "sku": menu.sku,
        "type": "variant" if menu.variants else "simple",
        "category_id": menu.category_id,
        "category": {"id": category.id, "name": category.name, "icon_url": category.icon_url}
        if category
        else None,
        "price": menu.price,
        "reseller_price": menu.reseller_price,
        "is_active": menu.is_active,
        "thumbnail_url": menu.thumbnail_url,
        "variants": menu.variants,
        "created_at": _iso(menu.created_at),
    }


def serialize_menus(db: Session, menus: list[Menu]) -> list[dict]:
    category_ids = {menu.category_id for menu in menus if menu.category_id}
    categories = (
        {
            category.id: category
            for category in db.scalars(
                select(MenuCategory).where(MenuCategory.id.in_(category_ids))
            )
        }
        if category_ids
        else {}
    )
    return [serialize_menu(menu, categories.get(menu.category_id)) for menu in menus]


def search_menus(db: Session, search: Optional[str], active_only: bool = True) -> list[dict]:
    query = db.query(Menu)
    if active_only:
        query = query.filter(Menu.is_active.is_(True))
    term = (search or "").strip()
    if term:
        pattern = f"%{term.lower()}%"
        query = query.filter(
            or_(func.lower(Menu.name).like(pattern), func.lower(Menu.sku).like(pattern))
        )
    return serialize_menus(db, query.order_by(Menu.name).all())


class VariantPrices(BaseModel):
    retail: dict[MenuSize, dict[MenuTemperature, Optional[int]]] = Field(default_factory=dict)
    reseller: dict[MenuSize, dict[MenuTemperature, Optional[int]]] = Field(default_factory=dict)


class MenuVariants(BaseModel):
    allowed_sizes: list[MenuSize] = Field(min_length=1)
    allowed_temperatures: list[MenuTemperature] = Field(min_length=1)
    default_size: Optional[MenuSize] = None
    default_temperature: Optional[MenuTemperature] = None
    prices: VariantPrices

    @model_validator(mode="after")
    def _defaults_allowed(self) -> "MenuVariants":
        if self.default_size and self.default_size not in self.allowed_sizes:
            raise ValueError("default_size must be one of allowed_sizes")
        if self.default_temperature and self.default_temperature not in self.allowed_temperatures:
            raise ValueError("default_temperature must be one of allowed_temperatures")
        for channel in (self.prices.retail, self.prices.reseller):
            for per_size in channel.values():
                if any(price is not None and price < 0 for price in per_size.values()):
                    raise ValueError("variant prices must be at least 0")
        return self


class MenuCreate(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {
                "type": "simple",
                "name": "Kopi Tubruk",
                "sku": "KT-01",
                "price": 15000,
                "reseller_price": 12000,
            }
        }
    }
    type: Literal["simple", "variant"]
    name: str = Field(min_length=1)
    sku: Optional[str] = Field(default=None, max_length=64, pattern=SKU_PATTERN)
    category_id: Optional[str] = None
    thumbnail_url: Optional[str] = None
    is_active: bool = True
    price: Optional[int] = Field(default=None, ge=0)
    reseller_price: Optional[int] = Field(default=None, ge=0)
    variants: Optional[MenuVariants] = None

    @model_validator(mode="after")
    def _shape_matches_type(self) -> "MenuCreate":
        if self.type == "simple" and self.price is None:
            raise ValueError("price is required for simple menus")
        if self.type == "variant" and self.variants is None:
            raise ValueError("variants are required for variant menus")
        return self


class MenuUpdate(BaseModel):
    type: Optional[Literal["simple", "variant"]] = None
    name: Optional[str] = Field(default=None, min_length=1)
    sku: Optional[str] = Field(default=None, max_length=64, pattern=SKU_PATTERN)
    category_id: Optional[str] = None
    thumbnail_url: Optional[str] = None
    is_active: Optional[bool] = None
    price: Optional[int] = Field(default=None, ge=0)
    reseller_price: Optional[int] = Field(default=None, ge=0)
    variants: Optional[MenuVariants] = None


class MenuPublish(BaseModel):
    is_active: bool


class CategoryCreate(BaseModel):
    model_config = {"json_schema_extra": {"example": {"name": "Coffee", "sort_order": 1}}}
    name: str = Field(min_length=1, max_length=120)
    slug: Optional[str] = Field(default=None, max_length=120)
    icon_url: Optional[str] = None
    sort_order: Optional[int] = Field(default=None, ge=0)
    is_active: bool = True


class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    slug: Optional[str] = Field(default=None, max_length=120)
    icon_url: Optional[str] = None
    sort_order: Optional[int] = Field(default=None, ge=0)
    is_active: Optional[bool] = None


def _get_menu(db: Session, menu_id: str) -> Menu:
    menu = db.get(Menu, menu_id)
    if not menu:
        raise app_error(ERR.NOT_FOUND, message="Menu not found")
    return menu


def _check_category(db: Session, category_id: Optional[str]) -> None:
    if category_id and not db.get(MenuCategory, category_id):
        raise app_error(ERR.BAD_REQUEST, message="Menu category not found")


def _save_menu(db: Session, menu: Menu, message: str) -> dict:
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise app_error(ERR.VALIDATION_ERROR, message="SKU is already used by another menu") from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise db_error(exc, message) from exc
    db.refresh(menu)
    return serialize_menus(db, [menu])[0]


@router.get("/api/menus")
def list_menus(
    search: Optional[str] = Query(default=None),
    status: Literal["all", "active", "inactive"] = Query(default="all"),
    category_id: Optional[str] = Query(default=None),
    type: Literal["all", "simple", "variant"] = Query(default="all"),
    limit: int = Query(default=200, ge=1, le=500),
    actor: Actor = Depends(staff_actor),
    db: Session = Depends(get_db),
) -> dict:
    query = db.query(Menu)
    if search and search.strip():
        pattern = f"%{search.strip().lower()}%"
        query = query.filter(
            or_(func.lower(Menu.name).like(pattern), func.lower(Menu.sku).like(pattern))
        )
    if status != "all":
        query = query.filter(Menu.is_active.is_(status == "active"))
    if category_id:
        query = query.filter(Menu.category_id == category_id)
    menus = query.order_by(Menu.created_at.desc()).limit(limit).all()
    if type != "all":
        menus = [menu for menu in menus if bool(menu.variants) == (type == "variant")]
    items = serialize_menus(db, menus)
    meta = _meta()
    meta["filters"] = {
        "search": search,
        "status": status,
        "category_id": category_id,
        "type": type,
    }
    return ok({"items": items}, meta)


@router.post("/api/menus", status_code=201)
def create_menu(
    payload: MenuCreate,
    actor: Actor = Depends(manager_actor),
    db: Session = Depends(get_db),
) -> dict:
    _check_category(db, payload.category_id)
    menu = Menu(
        name=payload.name.strip(),
        sku=payload.sku or None,
        category_id=payload.category_id,
        thumbnail_url=payload.thumbnail_url or None,
        is_active=payload.is_active,
        created_at=_now(),
    )
    if payload.type == "simple":
        menu.price = payload.price
        menu.reseller_price = payload.reseller_price
    else:
        menu.variants = persist_variants(payload.variants.model_dump())
    db.add(menu)
    return ok(_save_menu(db, menu, "Failed to create menu"))


@router.get("/api/menus/{menu_id}")
def get_menu(
    menu_id: str, actor: Actor = Depends(staff_actor), db: Session = Depends(get_db)
) -> dict:
    return ok(serialize_menus(db, [_get_menu(db, menu_id)])[0])


@router.patch("/api/menus/{menu_id}")
def update_menu(
    menu_id: str,
    payload: MenuUpdate,
    actor: Actor = Depends(manager_actor),
    db: Session = Depends(get_db),
) -> dict:
    menu = _get_menu(db, menu_id)
    changes = payload.model_dump(exclude_unset=True)
    if not changes:
        raise app_error(ERR.BAD_REQUEST, message="No changes provided")
    if "category_id" in changes:
        _check_category(db, payload.category_id)
        menu.category_id = payload.category_id or None
    if payload.name is not None:
        menu.name = payload.name.strip()
    if "sku" in changes:
        menu.sku = payload.sku or None
    if "thumbnail_url" in changes:
        menu.thumbnail_url = payload.thumbnail_url or None
    if payload.is_active is not None:
        menu.is_active = payload.is_active

    kind = payload.type or ("variant" if menu.variants else "simple")
    if kind == "variant":
        if payload.variants is not None:
            menu.variants = persist_variants(payload.variants.model_dump())
        elif not menu.variants:
            raise app_error(ERR.BAD_REQUEST, message="variants are required for variant menus")
        menu.price = None
        menu.reseller_price = None
    else:
        if payload.price is not None:
            menu.price = payload.price
        if "reseller_price" in changes:
            menu.reseller_price = payload.reseller_price
        if menu.price is None:
            raise app_error(ERR.BAD_REQUEST, message="price is required for simple menus")
        menu.variants = None
    return ok(_save_menu(db, menu, "Failed to update menu"))


@router.post("/api/menus/{menu_id}/publish")
def publish_menu(
    menu_id: str,
    payload: MenuPublish,
    actor: Actor = Depends(manager_actor),
    db: Session = Depends(get_db),
) -> dict:
    menu = _get_menu(db, menu_id)
    menu.is_active = payload.is_active
    return ok(_save_menu(db, menu, "Failed to publish menu"))


@router.delete("/api/menus/{menu_id}")
def delete_menu(
    menu_id: str, actor: Actor = Depends(manager_actor), db: Session = Depends(get_db)
) -> dict:
    menu = _get_menu(db, menu_id)
    used = db.scalar(select(func.count()).select_from(OrderItem).where(OrderItem.menu_id == menu.id))
    if used:
        raise app_error(
            ERR.BAD_REQUEST,
            message="Menu has been ordered before; deactivate it instead",
            details={"count": used},
        )
    try:
        db.delete(menu)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise db_error(exc, "Failed to delete menu") from exc
    return ok({"success": True, "deleted": menu_id})


@router.get("/api/menu-categories")
def list_categories(
    status: Literal["all", "active", "inactive"] = Query(default="all"),
    actor: Actor = Depends(staff_actor),
    db: Session = Depends(get_db),
) -> dict:
    query = db.query(MenuCategory)
    if status != "all":
        query = query.filter(MenuCategory.is_active.is_(status == "active"))
    categories = query.order_by(MenuCategory.sort_order, MenuCategory.name).all()
    return ok({"items": [serialize_category(category) for category in categories]})


@router.post("/api/menu-categories", status_code=201)
def create_category(
    payload: CategoryCreate,
    actor: Actor = Depends(manager_actor),
    db: Session = Depends(get_db),
) -> dict:
    sort_order = payload.sort_order
    if sort_order is None:
        sort_order = (db.scalar(select(func.max(MenuCategory.sort_order))) or 0) + 1
    category = MenuCategory(
        name=payload.name.strip(),
        slug=_slugify(payload.slug or payload.name),
        icon_url=payload.icon_url or None,
        sort_order=sort_order,
        is_active=payload.is_active,
        created_at=_now(),
    )
    db.add(category)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise app_error(ERR.VALIDATION_ERROR, message="Category slug is already used") from exc
    db.refresh(category)
    return ok(serialize_category(category))


@router.get("/api/menu-categories/{category_id}")
def get_category(
    category_id: str, actor: Actor = Depends(staff_actor), db: Session = Depends(get_db)
) -> dict:
    category = db.get(MenuCategory, category_id)
    if not category:
        raise app_error(ERR.NOT_FOUND, message="Menu category not found")
    return ok(serialize_category(category))


@router.patch("/api/menu-categories/{category_id}")
def update_category(
    category_id: str,
    payload: CategoryUpdate,
    actor: Actor = Depends(manager_actor),
    db: Session = Depends(get_db),
) -> dict:
    category = db.get(MenuCategory, category_id)
    if not category:
        raise app_error(ERR.NOT_FOUND, message="Menu category not found")
    changes = payload.model_dump(exclude_unset=True)
    if not changes:
        return ok(serialize_category(category))
    if payload.name is not None:
        category.name = payload.name.strip()
    if payload.slug is not None:
        category.slug = _slugify(payload.slug)
    if "icon_url" in changes:
        category.icon_url = payload.icon_url or None
    if payload.sort_order is not None:
        category.sort_order = payload.sort_order
    if payload.is_active is not None:
        category.is_active = payload.is_active
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise app_error(ERR.VALIDATION_ERROR, message="Category slug is already used") from exc
    db.refresh(category)
    return ok(serialize_category(category))


@router.delete("/api/menu-categories/{category_id}")
def delete_category(
    category_id: str, actor: Actor = Depends(manager_actor), db: Session = Depends(get_db)
) -> dict:
    category = db.get(MenuCategory, category_id)
    if not category:
        raise app_error(ERR.NOT_FOUND, message="Menu category not found")
    used = db.scalar(
        select(func.count()).select_from(Menu).where(Menu.category_id == category_id)
    )
    if used:
        raise app_error(
            ERR.BAD_REQUEST,
            message="Category is still used by menus",
            details={"count": used},
        )
    db.delete(category)
    db.commit()
    return ok({"success": True, "deleted": category_id})
