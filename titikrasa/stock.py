"""Stock counts and purchase-order receiving.

Stock opname writes each ingredient on its own and undoes the earlier writes
when a later one fails. Receiving a purchase order runs in a single transaction.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from titikrasa.auth import Actor
from titikrasa.common import _now, db_error
from titikrasa.errors import ERR, app_error
from titikrasa.models import (
    IngredientSupplierLink,
    PurchaseOrder,
    StockAdjustment,
    StockLedger,
    StoreIngredient,
)
from titikrasa.pricing import round_half_up

logger = logging.getLogger(__name__)


def compute_adjustment_items(
    counts: Iterable[tuple[str, float]], ingredients: dict[str, Any]
) -> list[dict]:
    """Turn ``(ingredient_id, counted)`` pairs into stored adjustment lines.

    ``ingredients`` maps ids to objects with ``current_stock`` and ``base_uom``.
    """
    items = []
    for ingredient_id, counted in counts:
        ingredient = ingredients.get(ingredient_id)
        if ingredient is None:
            raise app_error(
                ERR.BAD_REQUEST,
                message="Invalid ingredient selected",
                details={"ingredient_id": ingredient_id},
            )
        counted_qty = max(0, round_half_up(counted))
        items.append(
            {
                "ingredient_id": ingredient_id,
                "counted_qty": counted_qty,
                "delta_qty": counted_qty - (ingredient.current_stock or 0),
                "base_uom": ingredient.base_uom,
                "reason": "opname",
            }
        )
    return items


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


def normalize_adjustment_items(value: Any) -> list[dict]:
    if not isinstance(value, list):
        return []
    items = []
    for entry in value:
        if not isinstance(entry, dict):
            continue
        ingredient_id = entry.get("ingredient_id")
        delta_qty = _as_int(entry.get("delta_qty"))
        counted_qty = _as_int(entry.get("counted_qty"))
        if not isinstance(ingredient_id, str) or delta_qty is None or counted_qty is None:
            continue
        items.append(
            {
                "ingredient_id": ingredient_id,
                "delta_qty": delta_qty,
                "counted_qty": counted_qty,
                "base_uom": entry.get("base_uom"),
                "reason": entry.get("reason") if isinstance(entry.get("reason"), str) else "opname",
            }
        )
    return items


def _write_stock(
    db: Session, ingredient: StoreIngredient, counted_qty: int, adjustment_id: str
) -> Optional[str]:
    """Set one ingredient's stock and record the movement. Returns the ledger id."""
    delta = counted_qty - (ingredient.current_stock or 0)
    ingredient.current_stock = counted_qty
    ledger_id = None
    if delta:
        entry = StockLedger(
            ingredient_id=ingredient.id,
            delta_qty=delta,
            uom=ingredient.base_uom,
            reason="opname",
            ref_type="stock_adjustment",
            ref_id=adjustment_id,
            at=_now(),
        )
        db.add(entry)
        db.flush()
        ledger_id = entry.id
    db.commit()
    return ledger_id


def _revert_writes(db: Session, written: list[tuple[str, int, Optional[str]]]) -> None:
    db.rollback()
    for ingredient_id, previous, ledger_id in reversed(written):
        ingredient = db.get(StoreIngredient, ingredient_id)
        if ingredient is not None:
            ingredient.current_stock = previous
        if ledger_id:
            db.execute(delete(StockLedger).where(StockLedger.id == ledger_id))
    db.commit()
    logger.warning("reverted %d stock writes", len(written))


def apply_adjustment(db: Session, adjustment: StockAdjustment, actor: Actor) -> StockAdjustment:
    """Write the counted quantities and mark the adjustment approved."""
    if adjustment.status == "approved":
        return adjustment

    items = normalize_adjustment_items(adjustment.items)
    if not items:
        raise app_error(ERR.BAD_REQUEST, message="Stock adjustment has no items")

    adjustment_id = adjustment.id
    written: list[tuple[str, int, Optional[str]]] = []
    try:
        for item in items:
            ingredient = db.get(StoreIngredient, item["ingredient_id"])
            if ingredient is None:
                raise app_error(
                    ERR.BAD_REQUEST,
                    message="Invalid ingredient selected",
                    details={"ingredient_id": item["ingredient_id"]},
                )
            previous = ingredient.current_stock or 0
            ledger_id = _write_stock(db, ingredient, item["counted_qty"], adjustment_id)
            written.append((ingredient.id, previous, ledger_id))

        adjustment = db.get(StockAdjustment, adjustment_id)
        adjustment.status = "approved"
        adjustment.approved_by = actor.user_id
        adjustment.approved_at = _now()
        db.commit()
    except SQLAlchemyError as exc:
        _revert_writes(db, written)
        raise db_error(exc, "Failed to apply stock adjustment") from exc
    except Exception:
        _revert_writes(db, written)
        raise

    db.refresh(adjustment)
    logger.info("stock adjustment %s approved with %d lines", adjustment_id, len(items))
    return adjustment


def create_adjustment(
    db: Session,
    actor: Actor,
    notes: str,
    counts: list[tuple[str, float]],
    commit: bool = True,
) -> StockAdjustment:
    ingredient_ids = list({ingredient_id for ingredient_id, _ in counts})
    ingredients = {
        row.id: row
        for row in db.scalars(select(StoreIngredient).where(StoreIngredient.id.in_(ingredient_ids)))
    }
    items = compute_adjustment_items(counts, ingredients)

    adjustment = StockAdjustment(
        status="draft",
        notes=notes,
        items=items,
        created_by=actor.user_id,
        created_at=_now(),
    )
    try:
        db.add(adjustment)
        db.commit()
        db.refresh(adjustment)
    except SQLAlchemyError as exc:
        db.rollback()
        raise db_error(exc, "Failed to create stock adjustment") from exc

    if not commit:
        return adjustment

    adjustment_id = adjustment.id
    try:
        return apply_adjustment(db, adjustment, actor)
    except Exception:
        db.rollback()
        db.execute(delete(StockAdjustment).where(StockAdjustment.id == adjustment_id))
        db.commit()
        logger.warning("discarded stock adjustment %s after failed approval", adjustment_id)
        raise


def weighted_average_cost(stock: int, avg_cost: int, qty: int, price: int) -> int:
    new_stock = stock + qty
    if new_stock == 0:
        return avg_cost
    return round_half_up((stock * avg_cost + qty * price) / max(new_stock, 1))


def complete_purchase_order(db: Session, purchase_order: PurchaseOrder) -> None:
    """Receive every line into stock and mark the order complete. Commits."""
    now = _now()
    try:
        for item in purchase_order.items or []:
            ingredient = db.get(StoreIngredient, item.get("store_ingredient_id"))
            qty = int(item.get("qty") or 0)
            price = int(item.get("price") or 0)
            if ingredient is None or qty <= 0:
                continue
            stock = ingredient.current_stock or 0
            ingredient.avg_cost = weighted_average_cost(stock, ingredient.avg_cost or 0, qty, price)
            ingredient.current_stock = stock + qty
            db.add(
                StockLedger(
                    ingredient_id=ingredient.id,
                    delta_qty=qty,
                    uom=item.get("base_uom") or ingredient.base_uom,
                    reason="po",
                    ref_type="purchase_order",
                    ref_id=purchase_order.id,
                    at=now,
                )
            )
            link = db.scalar(
                select(IngredientSupplierLink).where(
                    IngredientSupplierLink.catalog_item_id == item.get("catalog_item_id"),
                    IngredientSupplierLink.store_ingredient_id == ingredient.id,
                )
            )
            if link is not None:
                link.last_purchase_price = price
                link.last_purchased_at = now
        purchase_order.status = "complete"
        purchase_order.completed_at = now
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise db_error(exc, "Failed to receive purchase order") from exc
    logger.info("purchase order %s received", purchase_order.id)
