from titikrasa import routes_dashboard
from titikrasa.common import _now
from titikrasa.models import StoreIngredient


def _setup_day(harness) -> None:
    manager = harness.headers("manager")
    menu_id = harness.client.post(
        "/api/menus",
        json={"type": "simple", "name": "Es Kopi Susu", "price": 22000},
        headers=manager,
    ).json()["data"]["id"]
    reseller_id = harness.client.post(
        "/api/resellers", json={"name": "Warung Bu Sari"}, headers=manager
    ).json()["data"]["id"]
    items = [{"menu_id": menu_id, "menu_name": "Es Kopi Susu", "qty": 2, "unit_price": 22000}]

    def checkout(**extra):
        resp = harness.client.post(
            "/api/pos/orders", json={"items": items, **extra}, headers=harness.headers()
        )
        assert resp.status_code == 201
        return resp.json()["data"]

    checkout()
    voided = checkout()
    harness.client.post(
        f"/api/pos/orders/{voided['id']}/void", json={"reason": "wrong order"}, headers=harness.headers()
    )
    checkout(channel="reseller", reseller_id=reseller_id, payment_status="unpaid")

    supplier_id = harness.client.post(
        "/api/procurements/suppliers", json={"name": "CV Susu Segar"}, headers=manager
    ).json()["data"]["id"]
    catalog_id = harness.client.post(
        f"/api/procurements/suppliers/{supplier_id}/catalog",
        json={"name": "Susu Full Cream", "base_uom": "ml", "purchase_price": 20},
        headers=manager,
    ).json()["data"]["item"]["id"]
    for status in ("complete", "pending"):
        harness.client.post(
            "/api/procurements/purchase-orders",
            json={"supplier_id": supplier_id, "status": status, "items": [{"catalog_item_id": catalog_id, "qty": 50}]},
            headers=manager,
        )

    with harness.session() as db:
        db.add(
            StoreIngredient(
                name="Gula Aren", base_uom="gr", min_stock=100, current_stock=40, created_at=_now()
            )
        )
        db.commit()


def test_metrics_for_today(harness) -> None:
    _setup_day(harness)

    resp = harness.client.get(
        "/api/dashboard/metrics", params={"range": "today"}, headers=harness.headers()
    )

    assert resp.status_code == 200
    summary = resp.json()["data"]["summary"]
    assert summary["granularity"] == "hourly"
    assert summary["metrics"] == {
        "revenue": 48840,
        "expenses": 1000,
        "aov": 48840,
        "net_profit": 47840,
        "total_orders": 3,
        "paid_orders": 1,
        "unpaid_orders": 1,
        "void_orders": 1,
        "kds_pending": 2,
        "low_stock_count": 1,
        "reseller_receivables": 48840,
        "pending_purchase_orders": 1,
    }
    assert sum(point["revenue"] for point in summary["chart"]) == 97680
    assert len(summary["transactions"]) == 3
    assert [row["name"] for row in summary["low_stock"]] == ["Gula Aren"]
    assert [row["grand_total"] for row in summary["receivables"]] == [48840]
    assert [po["status"] for po in summary["pending_purchase_orders"]] == ["pending"]


def test_metrics_cover_every_order_beyond_the_transaction_list(harness, monkeypatch) -> None:
    _setup_day(harness)
    monkeypatch.setattr(routes_dashboard, "TRANSACTION_COUNT", 1)

    summary = harness.client.get(
        "/api/dashboard/metrics", params={"range": "year"}, headers=harness.headers()
    ).json()["data"]["summary"]

    assert len(summary["transactions"]) == 1
    metrics = summary["metrics"]
    assert metrics["total_orders"] == 3
    assert metrics["revenue"] == 48840
    assert metrics["aov"] == 48840
    assert metrics["kds_pending"] == 2
    assert sum(point["revenue"] for point in summary["chart"]) == 97680


def test_dashboard_order_history_is_paged(harness) -> None:
    _setup_day(harness)

    resp = harness.client.get(
        "/api/dashboard/orders",
        params={"range": "week", "page": 1, "page_size": 2},
        headers=harness.headers(),
    )

    assert resp.status_code == 200
    body = resp.json()
    assert len(body["data"]) == 2
    assert body["meta"]["pagination"] == {"page": 1, "page_size": 2, "total": 3, "total_pages": 2}


def test_dashboard_rejects_unknown_range(harness) -> None:
    resp = harness.client.get(
        "/api/dashboard/metrics", params={"range": "decade"}, headers=harness.headers()
    )
    assert resp.status_code == 422
