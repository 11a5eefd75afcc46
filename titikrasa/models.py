from datetime import date, datetime
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from titikrasa.db import Base

ID_TYPE = String(36)
JSON_TYPE = JSON().with_variant(JSONB, "postgresql")


def _uuid() -> str:
    return str(uuid4())


class Role(Base):
    __tablename__ = "roles"

    id: Mapped[str] = mapped_column(ID_TYPE, primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(Text, nullable=False, unique=True)


class Profile(Base):
    __tablename__ = "profiles"

    user_id: Mapped[str] = mapped_column(ID_TYPE, primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    email: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    phone: Mapped[str | None] = mapped_column(Text)
    avatar: Mapped[str | None] = mapped_column(Text)
    password_hash: Mapped[str] = mapped_column(Text, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    last_login_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class UserRole(Base):
    __tablename__ = "user_roles"

    user_id: Mapped[str] = mapped_column(
        ID_TYPE, ForeignKey("profiles.user_id"), primary_key=True
    )
    role_id: Mapped[str] = mapped_column(ID_TYPE, ForeignKey("roles.id"), nullable=False)


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[str] = mapped_column(ID_TYPE, primary_key=True, default=_uuid)
    actor_id: Mapped[str] = mapped_column(ID_TYPE, nullable=False)
    action: Mapped[str] = mapped_column(Text, nullable=False)
    entity: Mapped[str] = mapped_column(Text, nullable=False)
    entity_id: Mapped[str | None] = mapped_column(ID_TYPE)
    before: Mapped[dict | None] = mapped_column(JSON_TYPE)
    after: Mapped[dict | None] = mapped_column(JSON_TYPE)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class Setting(Base):
    __tablename__ = "settings"

    key: Mapped[str] = mapped_column(Text, primary_key=True)
    value: Mapped[dict | None] = mapped_column(JSON_TYPE)


class MenuCategory(Base):
    __tablename__ = "menu_categories"

    id: Mapped[str] = mapped_column(ID_TYPE, primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    slug: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    icon_url: Mapped[str | None] = mapped_column(Text)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class Menu(Base):
    __tablename__ = "menus"

    id: Mapped[str] = mapped_column(ID_TYPE, primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    sku: Mapped[str | None] = mapped_column(Text, unique=True)
    category_id: Mapped[str | None] = mapped_column(ID_TYPE, ForeignKey("menu_categories.id"))
    price: Mapped[int | None] = mapped_column(Integer)
    reseller_price: Mapped[int | None] = mapped_column(Integer)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    thumbnail_url: Mapped[str | None] = mapped_column(Text)
    variants: Mapped[dict | None] = mapped_column(JSON_TYPE)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class Reseller(Base):
    __tablename__ = "resellers"

    id: Mapped[str] = mapped_column(ID_TYPE, primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    contact: Mapped[dict | None] = mapped_column(JSON_TYPE)
    terms: Mapped[dict | None] = mapped_column(JSON_TYPE)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (Index("ix_orders_created_at", "created_at"),)

    id: Mapped[str] = mapped_column(ID_TYPE, primary_key=True, default=_uuid)
    number: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    channel: Mapped[str] = mapped_column(Text, nullable=False, default="pos")
    reseller_id: Mapped[str | None] = mapped_column(ID_TYPE, ForeignKey("resellers.id"))
    payment_method: Mapped[str] = mapped_column(Text, nullable=False, default="cash")
    payment_status: Mapped[str] = mapped_column(Text, nullable=False, default="paid")
    status: Mapped[str] = mapped_column(Text, nullable=False, default="open")
    due_date: Mapped[date | None] = mapped_column(Date)
    customer_note: Mapped[str | None] = mapped_column(Text)
    totals: Mapped[dict] = mapped_column(JSON_TYPE, nullable=False)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_by: Mapped[str | None] = mapped_column(ID_TYPE)
    client_ref: Mapped[str | None] = mapped_column(Text, unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class OrderItem(Base):
    __tablename__ = "order_items"

    id: Mapped[str] = mapped_column(ID_TYPE, primary_key=True, default=_uuid)
    order_id: Mapped[str] = mapped_column(ID_TYPE, ForeignKey("orders.id"), nullable=False)
    menu_id: Mapped[str] = mapped_column(ID_TYPE, ForeignKey("menus.id"), nullable=False)
    qty: Mapped[int] = mapped_column(Integer, nullable=False)
    price: Mapped[int] = mapped_column(Integer, nullable=False)
    discount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    tax: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    variant: Mapped[str | None] = mapped_column(Text)


class KdsTicket(Base):
    __tablename__ = "kds_tickets"

    id: Mapped[str] = mapped_column(ID_TYPE, primary_key=True, default=_uuid)
    order_id: Mapped[str] = mapped_column(ID_TYPE, ForeignKey("orders.id"), nullable=False)
    items: Mapped[list] = mapped_column(JSON_TYPE, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class StoreIngredient(Base):
    __tablename__ = "store_ingredients"

    id: Mapped[str] = mapped_column(ID_TYPE, primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    sku: Mapped[str | None] = mapped_column(Text)
    base_uom: Mapped[str] = mapped_column(Text, nullable=False, default="pcs")
    min_stock: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    current_stock: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    avg_cost: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class StockAdjustment(Base):
    __tablename__ = "stock_adjustments"

    id: Mapped[str] = mapped_column(ID_TYPE, primary_key=True, default=_uuid)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="draft")
    notes: Mapped[str | None] = mapped_column(Text)
    items: Mapped[list] = mapped_column(JSON_TYPE, nullable=False)
    created_by: Mapped[str | None] = mapped_column(ID_TYPE)
    approved_by: Mapped[str | None] = mapped_column(ID_TYPE)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class StockLedger(Base):
    __tablename__ = "stock_ledger"
    __table_args__ = (Index("ix_stock_ledger_ref", "ref_type", "ref_id"),)

    id: Mapped[str] = mapped_column(ID_TYPE, primary_key=True, default=_uuid)
    ingredient_id: Mapped[str] = mapped_column(
        ID_TYPE, ForeignKey("store_ingredients.id"), nullable=False
    )
    delta_qty: Mapped[int] = mapped_column(Integer, nullable=False)
    uom: Mapped[str] = mapped_column(Text, nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    ref_type: Mapped[str | None] = mapped_column(Text)
    ref_id: Mapped[str | None] = mapped_column(ID_TYPE)
    at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class Supplier(Base):
    __tablename__ = "suppliers"

    id: Mapped[str] = mapped_column(ID_TYPE, primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    contact: Mapped[dict | None] = mapped_column(JSON_TYPE)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class SupplierCatalogItem(Base):
    __tablename__ = "supplier_catalog_items"

    id: Mapped[str] = mapped_column(ID_TYPE, primary_key=True, default=_uuid)
    supplier_id: Mapped[str] = mapped_column(
        ID_TYPE, ForeignKey("suppliers.id"), nullable=False
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)
    base_uom: Mapped[str] = mapped_column(Text, nullable=False)
    purchase_price: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    unit_label: Mapped[str | None] = mapped_column(Text)
    conversion_rate: Mapped[float] = mapped_column(Float, nullable=False, default=1)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class IngredientSupplierLink(Base):
    __tablename__ = "ingredient_supplier_links"

    id: Mapped[str] = mapped_column(ID_TYPE, primary_key=True, default=_uuid)
    catalog_item_id: Mapped[str] = mapped_column(
        ID_TYPE, ForeignKey("supplier_catalog_items.id"), nullable=False
    )
    store_ingredient_id: Mapped[str] = mapped_column(
        ID_TYPE, ForeignKey("store_ingredients.id"), nullable=False
    )
    preferred: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_purchase_price: Mapped[int | None] = mapped_column(Integer)
    last_purchased_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class PurchaseOrder(Base):
    __tablename__ = "purchase_orders"

    id: Mapped[str] = mapped_column(ID_TYPE, primary_key=True, default=_uuid)
    supplier_id: Mapped[str] = mapped_column(
        ID_TYPE, ForeignKey("suppliers.id"), nullable=False
    )
    status: Mapped[str] = mapped_column(Text, nullable=False, default="draft")
    items: Mapped[list] = mapped_column(JSON_TYPE, nullable=False)
    totals: Mapped[dict] = mapped_column(JSON_TYPE, nullable=False)
    issued_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_by: Mapped[str | None] = mapped_column(ID_TYPE)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
