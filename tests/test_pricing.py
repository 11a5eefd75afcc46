import re
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

from titikrasa.pricing import (
    build_order_number,
    build_ticket_items,
    compute_order_totals,
    parse_ticket_items,
    parse_totals,
    persist_variants,
    resolve_menu_price,
    round_half_up,
    variant_label,
)


def test_round_half_up_rounds_halves_away_from_zero() -> None:
    assert round_half_up(0.5) == 1
    assert round_half_up(2.5) == 3
    assert round_half_up(1.4) == 1
    assert round_half_up(7) == 7


def test_totals_with_percent_discount_and_tax() -> None:
    items = [{"unit_price": 22000, "qty": 2}, {"unit_price": 15000, "qty": 1}]
    totals = compute_order_totals(items, {"type": "percent", "value": 10}, 0.11)
    assert totals == {"subtotal": 59000, "discount": 5900, "tax": 5841, "grand": 58941}
    assert totals["grand"] == totals["subtotal"] - totals["discount"] + totals["tax"]


def test_totals_accept_item_objects() -> None:
    items = [SimpleNamespace(unit_price=12500, qty=3)]
    totals = compute_order_totals(items, None, 0)
    assert totals == {"subtotal": 37500, "discount": 0, "tax": 0, "grand": 37500}


def test_amount_discount_is_clamped_to_subtotal() -> None:
    totals = compute_order_totals(
        [{"unit_price": 10000, "qty": 1}], {"type": "amount", "value": 15000}, 0.11
    )
    assert totals == {"subtotal": 10000, "discount": 10000, "tax": 0, "grand": 0}


def test_percent_discount_over_full_price_is_clamped_to_subtotal() -> None:
    totals = compute_order_totals(
        [{"unit_price": 10000, "qty": 1}], {"type": "percent", "value": 150}, 0.11
    )
    assert totals == {"subtotal": 10000, "discount": 10000, "tax": 0, "grand": 0}
    assert totals["grand"] == totals["subtotal"] - totals["discount"] + totals["tax"]


def test_percent_discount_rounds_half_up() -> None:
    totals = compute_order_totals(
        [{"unit_price": 12345, "qty": 1}], {"type": "percent", "value": 10}, 0
    )
    assert totals["discount"] == 1235
    assert totals["grand"] == 11110


def test_tax_rounds_half_up() -> None:
    totals = compute_order_totals([{"unit_price": 5, "qty": 1}], None, 0.1)
    assert totals["tax"] == 1
    assert totals["grand"] == 6


def test_parse_totals_fills_missing_values() -> None:
    assert parse_totals(None) == {"subtotal": 0, "discount": 0, "tax": 0, "grand": 0}
    assert parse_totals({"subtotal": "100", "grand": "oops"}) == {
        "subtotal": 100,
        "discount": 0,
        "tax": 0,
        "grand": 0,
    }


def test_order_number_uses_utc_date() -> None:
    jakarta = timezone(timedelta(hours=7))
    number = build_order_number(datetime(2026, 1, 3, 5, 0, tzinfo=jakarta))
    assert re.fullmatch(r"TR-20260102-[0-9A-F]{6}", number)


def test_order_numbers_differ() -> None:
    now = datetime(2026, 1, 2, tzinfo=timezone.utc)
    assert len({build_order_number(now) for _ in range(20)}) > 1


def test_variant_label() -> None:
    assert variant_label("m", "ice") == "Medium (M) · Ice"
    assert variant_label("l", None) == "Large (L)"
    assert variant_label(None, "hot") is None


def test_ticket_items_follow_bypass_flag() -> None:
    now = datetime(2026, 5, 1, 8, 0, tzinfo=timezone.utc)
    items = [{"id": "item-1", "qty": 2, "menu_name": "Es Kopi Susu", "variant_label": None}]

    queued = build_ticket_items(items, False, "user-1", now)
    served = build_ticket_items(items, True, "user-1", now)

    assert queued[0]["status"] == "queue"
    assert queued[0]["order_item_id"] == "item-1"
    assert queued[0]["updated_by"] == "user-1"
    assert queued[0]["updated_at"] == now.isoformat()
    assert served[0]["status"] == "served"


def test_parse_ticket_items_skips_malformed_entries() -> None:
    parsed = parse_ticket_items(
        [
            {"order_item_id": "a", "status": "making", "qty": 3},
            {"order_item_id": "b", "status": "burnt"},
            {"status": "queue"},
            "garbage",
            {"order_item_id": "c", "status": "ready", "qty": True},
        ]
    )
    assert [item["order_item_id"] for item in parsed] == ["a", "c"]
    assert parsed[0]["qty"] == 3
    assert parsed[1]["qty"] == 1
    assert parse_ticket_items({"not": "a list"}) == []


def test_variant_prices_by_channel() -> None:
    variants = persist_variants(
        {
            "allowed_sizes": ["m", "l"],
            "allowed_temperatures": ["ice"],
            "prices": {
                "retail": {"m": {"ice": 22000}, "l": {"ice": 26000}},
                "reseller": {"m": {"ice": 18000}},
            },
        }
    )
    menu = SimpleNamespace(variants=variants, price=None, reseller_price=None)

    assert variants["default_size"] == "m"
    assert variants["prices"]["reseller"]["l"] == {"ice": None}
    assert resolve_menu_price(menu, "pos", "l", "ice") == 26000
    assert resolve_menu_price(menu, "reseller", "m", "ice") == 18000
    assert resolve_menu_price(menu, "pos") == 22000


def test_simple_menu_price_by_channel() -> None:
    menu = SimpleNamespace(variants=None, price=15000, reseller_price=12000)
    assert resolve_menu_price(menu, "pos") == 15000
    assert resolve_menu_price(menu, "reseller") == 12000
