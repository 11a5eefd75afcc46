from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from titikrasa import stock
from titikrasa.models import StockAdjustment, StockLedger, StoreIngredient


def _create_ingredient(harness, name, base_uom="ml", min_stock=0, current_stock=0) -> str:
    resp = harness.client.post(
        "/api/inventory/store-ingredients",
        json={"name": name, "base_uom": base_uom, "min_stock": min_stock},
        headers=harness.headers("manager"),
    )
    assert resp.status_code == 201
    ingredient_id = resp.json()["data"]["id"]
    if current_stock:
        with harness.session() as db:
            db.get(StoreIngredient, ingredient_id).current_stock = current_stock
            db.commit()
    return ingredient_id


def _stock_of(harness, ingredient_id) -> int:
    with harness.session() as db:
        return db.get(StoreIngredient, ingredient_id).current_stock


def _ledger(harness) -> list[tuple[str, int, str]]:
    with harness.session() as db:
        rows = db.scalars(select(StockLedger)).all()
        return sorted((row.ingredient_id, row.delta_qty, row.reason) for row in rows)


def test_ingredient_crud(harness) -> None:
    resp = harness.client.post(
        "/api/inventory/store-ingredients",
        json={"name": "Susu UHT", "sku": "ING-MILK", "base_uom": "ml", "min_stock": 2000},
        headers=harness.headers("manager"),
    )
    assert resp.status_code == 201
    created = resp.json()["data"]
    assert created["current_stock"] == 0
    assert created["last_supplier_name"] is None

    forbidden = harness.client.post(
        "/api/inventory/store-ingredients",
        json={"name": "Gula Aren"},
        headers=harness.headers("staff"),
    )
    assert forbidden.status_code == 403

    empty = harness.client.patch(
        f"/api/inventory/store-ingredients/{created['id']}",
        json={},
        headers=harness.headers("manager"),
    )
    assert empty.status_code == 400
    assert empty.json()["error"]["message"] == "No changes provided"

    updated = harness.client.patch(
        f"/api/inventory/store-ingredients/{created['id']}",
        json={"min_stock": 500, "is_active": False},
        headers=harness.headers("manager"),
    ).json()["data"]
    assert updated["min_stock"] == 500
    assert updated["is_active"] is False

    missing = harness.client.get(
        "/api/inventory/store-ingredients/nope", headers=harness.headers()
    )
    assert missing.status_code == 404


def test_ingredient_list_filters(harness) -> None:
    _create_ingredient(harness, "Susu UHT", min_stock=2000, current_stock=500)
    _create_ingredient(harness, "Gula Aren", base_uom="gr", min_stock=100, current_stock=900)

    low = harness.client.get(
        "/api/inventory/store-ingredients",
        params={"low_stock_only": True},
        headers=harness.headers(),
    ).json()
    assert [item["name"] for item in low["data"]["items"]] == ["Susu UHT"]
    assert low["meta"]["pagination"]["total"] == 1

    searched = harness.client.get(
        "/api/inventory/store-ingredients", params={"search": "gula"}, headers=harness.headers()
    ).json()
    assert [item["name"] for item in searched["data"]["items"]] == ["Gula Aren"]


def test_adjustment_with_commit_updates_stock_and_ledger(harness) -> None:
    milk = _create_ingredient(harness, "Susu UHT", current_stock=1200)
    beans = _create_ingredient(harness, "Biji Kopi", base_uom="gr", current_stock=500)

    resp = harness.client.post(
        "/api/inventory/stock-adjustments",
        json={
            "notes": "Weekly count",
            "items": [
                {"ingredient_id": milk, "counted_qty": 1000},
                {"ingredient_id": beans, "counted_qty": 500},
            ],
        },
        headers=harness.headers("staff"),
    )

    assert resp.status_code == 201
    adjustment = resp.json()["data"]
    assert adjustment["status"] == "approved"
    assert adjustment["approved_by"] == harness.users["staff"]
    assert [item["delta_qty"] for item in adjustment["items"]] == [-200, 0]
    assert _stock_of(harness, milk) == 1000
    assert _stock_of(harness, beans) == 500
    assert _ledger(harness) == [(milk, -200, "opname")]


def test_draft_adjustment_is_approved_by_manager(harness) -> None:
    milk = _create_ingredient(harness, "Susu UHT", current_stock=1200)
    draft = harness.client.post(
        "/api/inventory/stock-adjustments",
        json={"notes": "Spot check", "items": [{"ingredient_id": milk, "counted_qty": 1300}], "commit": False},
        headers=harness.headers("staff"),
    ).json()["data"]
    assert draft["status"] == "draft"
    assert _stock_of(harness, milk) == 1200

    url = f"/api/inventory/stock-adjustments/{draft['id']}"
    denied = harness.client.patch(url, json={"action": "approve"}, headers=harness.headers("staff"))
    assert denied.status_code == 403

    approved = harness.client.patch(
        url, json={"action": "approve"}, headers=harness.headers("manager")
    ).json()["data"]
    assert approved["status"] == "approved"
    assert approved["approved_by"] == harness.users["manager"]
    assert _stock_of(harness, milk) == 1300

    again = harness.client.patch(url, json={"action": "approve"}, headers=harness.headers("admin"))
    assert again.json()["data"]["approved_by"] == harness.users["manager"]
    assert _ledger(harness) == [(milk, 100, "opname")]

    listed = harness.client.get(
        "/api/inventory/stock-adjustments", params={"status": "approved"}, headers=harness.headers()
    ).json()["data"]["items"]
    assert [item["id"] for item in listed] == [draft["id"]]


def test_adjustment_with_unknown_ingredient_is_rejected(harness) -> None:
    resp = harness.client.post(
        "/api/inventory/stock-adjustments",
        json={"notes": "Typo", "items": [{"ingredient_id": "missing", "counted_qty": 3}]},
        headers=harness.headers(),
    )
    assert resp.status_code == 400
    assert resp.json()["error"]["details"] == {"ingredient_id": "missing"}
    with harness.session() as db:
        assert db.scalar(select(func.count()).select_from(StockAdjustment)) == 0


def test_failed_write_reverts_earlier_rows(harness, monkeypatch) -> None:
    milk = _create_ingredient(harness, "Susu UHT", current_stock=1200)
    beans = _create_ingredient(harness, "Biji Kopi", base_uom="gr", current_stock=500)
    original = stock._write_stock
    calls = []

    def flaky_write(db, ingredient, counted_qty, adjustment_id):
        calls.append(ingredient.id)
        if len(calls) == 2:
            raise SQLAlchemyError("disk full")
        return original(db, ingredient, counted_qty, adjustment_id)

    monkeypatch.setattr(stock, "_write_stock", flaky_write)

    resp = harness.client.post(
        "/api/inventory/stock-adjustments",
        json={
            "notes": "Monthly count",
            "items": [
                {"ingredient_id": milk, "counted_qty": 900},
                {"ingredient_id": beans, "counted_qty": 450},
            ],
        },
        headers=harness.headers(),
    )

    assert resp.status_code == 500
    assert resp.json()["error"]["message"] == "Failed to apply stock adjustment"
    assert calls == [milk, beans]
    assert _stock_of(harness, milk) == 1200
    assert _stock_of(harness, beans) == 500
    assert _ledger(harness) == []
    with harness.session() as db:
        assert db.scalar(select(func.count()).select_from(StockAdjustment)) == 0
