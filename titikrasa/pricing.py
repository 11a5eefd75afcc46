"""Order arithmetic and the small helpers that shape orders and kitchen tickets.

Everything here is pure: no sessions, no clocks except where a ``now`` is
passed in. Money is always an integer in minor units.
"""

from __future__ import annotations

import math
import secrets
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

ORDER_NUMBER_PREFIX = "TR"
TICKET_STATUSES = ("queue", "making", "ready", "served")
MENU_SIZES = ("s", "m", "l")
MENU_TEMPERATURES = ("hot", "ice")

SIZE_LABELS = {"s": "Small (S)", "m": "Medium (M)", "l": "Large (L)"}
TEMPERATURE_LABELS = {"hot": "Hot", "ice": "Ice"}


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def compute_order_totals(items: Iterable[Any], discount: Optional[dict], tax_rate: float) -> dict:
    """Return ``subtotal``, ``discount``, ``tax`` and ``grand`` for a cart.

    ``items`` are objects or dicts carrying ``unit_price`` and ``qty``.
    ``discount`` is ``{"type": "amount" | "percent", "value": number}``.
    """
    subtotal = 0
    for item in items:
        unit_price = item["unit_price"] if isinstance(item, dict) else item.unit_price
        qty = item["qty"] if isinstance(item, dict) else item.qty
        subtotal += int(unit_price) * int(qty)

    discount = discount or {}
    kind = discount.get("type") or "amount"
    value = float(discount.get("value") or 0)
    if kind == "percent":
        discount_value = round_half_up(value / 100 * subtotal)
    else:
        discount_value = round_half_up(value)
    discount_value = min(discount_value, subtotal)

    net = max(subtotal - discount_value, 0)
    tax = round_half_up(net * tax_rate)
    return {"subtotal": subtotal, "discount": discount_value, "tax": tax, "grand": net + tax}


def parse_totals(value: Any) -> dict:
    if not isinstance(value, dict):
        return {"subtotal": 0, "discount": 0, "tax": 0, "grand": 0}

    def _num(key: str) -> int:
        try:
            return int(value.get(key) or 0)
        except (TypeError, ValueError):
            return 0

    return {key: _num(key) for key in ("subtotal", "discount", "tax", "grand")}


def build_order_number(now: Optional[datetime] = None) -> str:
    now = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    return f"{ORDER_NUMBER_PREFIX}-{now:%Y%m%d}-{secrets.token_hex(3).upper()}"


def variant_label(size: Optional[str], temperature: Optional[str]) -> Optional[str]:
    if not size:
        return None
    label = SIZE_LABELS.get(size, size.upper())
    if not temperature:
        return label
    return f"{label} · {TEMPERATURE_LABELS.get(temperature, temperature.upper())}"


def build_ticket_items(
    items: Iterable[dict], bypass_served: bool, actor_id: Optional[str], now: datetime
) -> list[dict]:
    status = "served" if bypass_served else "queue"
    return [
        {
            "order_item_id": item["id"],
            "status": status,
            "qty": item["qty"],
            "updated_at": now.isoformat(),
            "updated_by": actor_id,
            "menu_name": item.get("menu_name"),
            "variant_label": item.get("variant_label"),
        }
        for item in items
    ]


def parse_ticket_items(value: Any) -> list[dict]:
    """Read stored ticket JSON, dropping entries without an id or a known status."""
    if not isinstance(value, list):
        return []
    parsed = []
    for entry in value:
        if not isinstance(entry, dict):
            continue
        order_item_id = entry.get("order_item_id")
        status = entry.get("status")
        if not isinstance(order_item_id, str) or not order_item_id:
            continue
        if status not in TICKET_STATUSES:
            continue
        qty = entry.get("qty")
        updated_at = entry.get("updated_at")
        parsed.append(
            {
                "order_item_id": order_item_id,
                "status": status,
                "qty": qty if isinstance(qty, int) and not isinstance(qty, bool) else 1,
                "updated_at": updated_at
                if isinstance(updated_at, str)
                else datetime.now(timezone.utc).isoformat(),
                "updated_by": entry.get("updated_by")
                if isinstance(entry.get("updated_by"), str)
                else None,
                "menu_name": entry.get("menu_name")
                if isinstance(entry.get("menu_name"), str)
                else None,
                "variant_label": entry.get("variant_label")
                if isinstance(entry.get("variant_label"), str)
                else None,
            }
        )
    return parsed


def persist_variants(variants: dict) -> dict:
    """Normalise a variant config to the stored shape, filling in defaults."""
    sizes = [size for size in variants.get("allowed_sizes") or [] if size in MENU_SIZES]
    temps = [
        temp for temp in variants.get("allowed_temperatures") or [] if temp in MENU_TEMPERATURES
    ]
    prices = variants.get("prices") or {}

    def _price_map(raw: Optional[dict]) -> dict:
        raw = raw or {}
        result: dict = {}
        for size in sizes:
            per_size = raw.get(size) or {}
            result[size] = {temp: per_size.get(temp) for temp in temps}
        return result

    return {
        "allowed_sizes": sizes,
        "allowed_temperatures": temps,
        "default_size": variants.get("default_size") or (sizes[0] if sizes else None),
        "default_temperature": variants.get("default_temperature") or (temps[0] if temps else None),
        "prices": {
            "retail": _price_map(prices.get("retail")),
            "reseller": _price_map(prices.get("reseller")),
        },
    }


def resolve_menu_price(
    menu: Any,
    channel: str,
    size: Optional[str] = None,
    temperature: Optional[str] = None,
) -> Optional[int]:
    variants = menu.variants
    if not variants:
        return menu.reseller_price if channel == "reseller" else menu.price

    price_map = (variants.get("prices") or {}).get(
        "reseller" if channel == "reseller" else "retail"
    ) or {}
    if not size or not temperature:
        size = variants.get("default_size")
        temperature = variants.get("default_temperature")
        if not size or not temperature:
            return None
    return (price_map.get(size) or {}).get(temperature)
