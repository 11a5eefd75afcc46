from types import SimpleNamespace

import pytest

from titikrasa.errors import AppError
from titikrasa.stock import (
    compute_adjustment_items,
    normalize_adjustment_items,
    weighted_average_cost,
)

INGREDIENTS = {
    "milk": SimpleNamespace(current_stock=1200, base_uom="ml"),
    "beans": SimpleNamespace(current_stock=500, base_uom="gr"),
}


def test_adjustment_delta_is_counted_minus_current() -> None:
    items = compute_adjustment_items([("milk", 1000), ("beans", 640.5)], INGREDIENTS)
    assert items == [
        {
            "ingredient_id": "milk",
            "counted_qty": 1000,
            "delta_qty": -200,
            "base_uom": "ml",
            "reason": "opname",
        },
        {
            "ingredient_id": "beans",
            "counted_qty": 641,
            "delta_qty": 141,
            "base_uom": "gr",
            "reason": "opname",
        },
    ]


def test_negative_count_is_floored_at_zero() -> None:
    [item] = compute_adjustment_items([("beans", -4)], INGREDIENTS)
    assert item["counted_qty"] == 0
    assert item["delta_qty"] == -500


def test_unknown_ingredient_is_rejected() -> None:
    with pytest.raises(AppError) as excinfo:
        compute_adjustment_items([("sugar", 10)], INGREDIENTS)
    assert excinfo.value.status_code == 400
    assert excinfo.value.details == {"ingredient_id": "sugar"}


def test_normalize_drops_incomplete_lines() -> None:
    items = normalize_adjustment_items(
        [
            {"ingredient_id": "milk", "delta_qty": "5", "counted_qty": 10, "base_uom": "ml"},
            {"ingredient_id": "beans", "delta_qty": None, "counted_qty": 3},
            {"delta_qty": 1, "counted_qty": 1},
        ]
    )
    assert items == [
        {
            "ingredient_id": "milk",
            "delta_qty": 5,
            "counted_qty": 10,
            "base_uom": "ml",
            "reason": "opname",
        }
    ]
    assert normalize_adjustment_items(None) == []


def test_weighted_average_cost() -> None:
    assert weighted_average_cost(100, 50, 100, 70) == 60
    assert weighted_average_cost(0, 0, 10, 25) == 25
    assert weighted_average_cost(3, 10, 0, 99) == 10
    assert weighted_average_cost(0, 42, 0, 99) == 42
