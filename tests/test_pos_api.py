import re
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from titikrasa import checkout as checkout_module
from titikrasa.models import KdsTicket, Order, OrderItem


def _create_menu(harness, name="Es Kopi Susu", sku="EKS-01", price=22000) -> str:
    resp = harness.client.post(
        "/api/menus",
        json={"type": "simple", "name": name, "sku": sku, "price": price, "reseller_price": 18000},
        headers=harness.headers("manager"),
    )
    assert resp.status_code == 201
    return resp.json()["data"]["id"]


def _create_reseller(harness, name="Warung Bu Sari") -> str:
    resp = harness.client.post(
        "/api/resellers",
        json={"name": name, "terms": {"payment_term_days": 14}},
        headers=harness.headers("manager"),
    )
    assert resp.status_code == 201
    return resp.json()["data"]["id"]


def _checkout(harness, menu_id, role="staff", **overrides):
    payload = {
        "items": [{"menu_id": menu_id, "menu_name": "Es Kopi Susu", "qty": 2, "unit_price": 22000}],
    }
    payload.update(overrides)
    return harness.client.post("/api/pos/orders", json=payload, headers=harness.headers(role))


def _count(harness, model) -> int:
    with harness.session() as db:
        return db.scalar(select(func.count()).select_from(model))


def test_root_and_health(harness) -> None:
    assert harness.client.get("/").json() == {"status": "ok"}
    assert harness.client.get("/health").json() == {"status": "healthy"}


def test_orders_require_a_token(harness) -> None:
    resp = harness.client.get("/api/pos/orders")
    assert resp.status_code == 401
    body = resp.json()
    assert body["data"] is None
    assert body["error"]["code"] == "unauthorized"


def test_checkout_writes_order_items_and_ticket(harness) -> None:
    menu_id = _create_menu(harness)

    resp = _checkout(harness, menu_id, note="less sugar")

    assert resp.status_code == 201
    order = resp.json()["data"]
    assert re.fullmatch(r"TR-\d{8}-[0-9A-F]{6}", order["number"])
    assert order["channel"] == "pos"
    assert order["status"] == "paid"
    assert order["payment_status"] == "paid"
    assert order["paid_at"] is not None
    assert order["due_date"] is None
    assert order["customer_note"] == "less sugar"
    assert order["totals"] == {"subtotal": 44000, "discount": 0, "tax": 4840, "grand": 48840}
    assert len(order["items"]) == 1
    assert order["items"][0]["menu_name"] == "Es Kopi Susu"
    assert order["items"][0]["price"] == 22000
    ticket_items = order["ticket"]["items"]
    assert [item["status"] for item in ticket_items] == ["queue"]
    assert ticket_items[0]["order_item_id"] == order["items"][0]["id"]
    assert _count(harness, Order) == 1
    assert _count(harness, OrderItem) == 1
    assert _count(harness, KdsTicket) == 1


def test_checkout_caps_percent_discount_at_subtotal(harness) -> None:
    menu_id = _create_menu(harness)

    resp = _checkout(harness, menu_id, discount={"type": "percent", "value": 150})

    assert resp.status_code == 201
    assert resp.json()["data"]["totals"] == {
        "subtotal": 44000,
        "discount": 44000,
        "tax": 0,
        "grand": 0,
    }


def test_checkout_uses_stored_tax_rate(harness) -> None:
    menu_id = _create_menu(harness)
    resp = harness.client.patch(
        "/api/settings", json={"tax": {"rate": 0.1}}, headers=harness.headers("admin")
    )
    assert resp.status_code == 200

    order = _checkout(harness, menu_id, discount={"type": "amount", "value": 4000}).json()["data"]

    assert order["totals"] == {"subtotal": 44000, "discount": 4000, "tax": 4000, "grand": 44000}


def test_checkout_with_client_id_is_idempotent(harness) -> None:
    menu_id = _create_menu(harness)

    first = _checkout(harness, menu_id, client_id="till-01-000123")
    second = _checkout(harness, menu_id, client_id="till-01-000123")

    assert first.status_code == 201
    assert second.status_code == 200
    assert second.json()["data"]["id"] == first.json()["data"]["id"]
    assert _count(harness, Order) == 1


def test_concurrent_retry_with_same_client_id_returns_existing_order(harness, monkeypatch) -> None:
    menu_id = _create_menu(harness)
    first = _checkout(harness, menu_id, client_id="till-02-000777")
    assert first.status_code == 201

    lookup = checkout_module.find_by_client_ref
    calls = []

    def stale_lookup(db, client_ref):
        calls.append(client_ref)
        if len(calls) == 1:
            return None
        return lookup(db, client_ref)

    monkeypatch.setattr(checkout_module, "find_by_client_ref", stale_lookup)

    retry = _checkout(harness, menu_id, client_id="till-02-000777")

    assert retry.status_code == 200
    assert retry.json()["data"]["id"] == first.json()["data"]["id"]
    assert len(calls) == 2
    assert _count(harness, Order) == 1
    assert _count(harness, OrderItem) == 1
    assert _count(harness, KdsTicket) == 1


def test_checkout_rejects_bad_client_id(harness) -> None:
    menu_id = _create_menu(harness)
    resp = _checkout(harness, menu_id, client_id="till 01/000123")
    assert resp.status_code == 422
    assert resp.json()["error"]["code"] == "validation_error"


def test_pos_orders_cannot_be_left_unpaid(harness) -> None:
    menu_id = _create_menu(harness)
    resp = _checkout(harness, menu_id, payment_status="unpaid")
    assert resp.status_code == 422
    assert resp.json()["error"]["details"]["issues"]
    assert _count(harness, Order) == 0


def test_reseller_channel_requires_reseller(harness) -> None:
    menu_id = _create_menu(harness)
    resp = _checkout(harness, menu_id, channel="reseller", payment_status="unpaid")
    assert resp.status_code == 422


def test_unpaid_reseller_order_defaults_due_date(harness) -> None:
    menu_id = _create_menu(harness)
    reseller_id = _create_reseller(harness)

    resp = _checkout(
        harness,
        menu_id,
        channel="reseller",
        reseller_id=reseller_id,
        payment_status="unpaid",
        payment_method="transfer",
    )

    assert resp.status_code == 201
    order = resp.json()["data"]
    expected = (datetime.now(timezone.utc).date() + timedelta(days=7)).isoformat()
    assert order["status"] == "open"
    assert order["paid_at"] is None
    assert order["due_date"] == expected
    assert order["reseller"] == {"id": reseller_id, "name": "Warung Bu Sari"}


def test_failed_ticket_insert_removes_the_order(harness, monkeypatch) -> None:
    menu_id = _create_menu(harness)

    def failing_insert(db, order_id, ticket_items):
        raise SQLAlchemyError("kds_tickets unavailable")

    monkeypatch.setattr("titikrasa.checkout._insert_ticket", failing_insert)

    resp = _checkout(harness, menu_id)

    assert resp.status_code == 500
    error = resp.json()["error"]
    assert error["code"] == "server_error"
    assert error["message"] == "Failed to create kitchen ticket"
    assert "kds_tickets unavailable" in error["details"]["hint"]
    assert _count(harness, Order) == 0
    assert _count(harness, OrderItem) == 0
    assert _count(harness, KdsTicket) == 0


def test_failed_items_insert_removes_the_order(harness, monkeypatch) -> None:
    menu_id = _create_menu(harness)

    def failing_insert(db, order_id, items):
        raise SQLAlchemyError("order_items unavailable")

    monkeypatch.setattr("titikrasa.checkout._insert_items", failing_insert)

    resp = _checkout(harness, menu_id)

    assert resp.status_code == 500
    assert _count(harness, Order) == 0


def test_kitchen_closes_paid_order_once_everything_is_served(harness) -> None:
    menu_id = _create_menu(harness)
    order = _checkout(harness, menu_id).json()["data"]
    with harness.session() as db:
        db.get(Order, order["id"]).status = "open"
        db.commit()

    tickets = harness.client.get("/api/kds/tickets", headers=harness.headers()).json()["data"]
    ticket = tickets["tickets"][0]
    assert ticket["order_number"] == order["number"]
    assert ticket["bypass_served"] is False

    resp = harness.client.patch(
        f"/api/kds/tickets/{ticket['id']}",
        json={"order_item_id": order["items"][0]["id"], "status": "served"},
        headers=harness.headers(),
    )

    assert resp.status_code == 200
    updated = resp.json()["data"]
    assert updated["bypass_served"] is True
    assert updated["status"] == "paid"
    assert updated["items"][0]["updated_by"] == harness.users["staff"]


def test_kitchen_rejects_unknown_item(harness) -> None:
    menu_id = _create_menu(harness)
    order = _checkout(harness, menu_id).json()["data"]

    resp = harness.client.patch(
        f"/api/kds/tickets/{order['ticket']['id']}",
        json={"order_item_id": "missing", "status": "ready"},
        headers=harness.headers(),
    )

    assert resp.status_code == 400
    assert resp.json()["error"]["message"] == "Ticket item not found"


def test_void_marks_ticket_served_and_notes_reason(harness) -> None:
    menu_id = _create_menu(harness)
    order = _checkout(harness, menu_id, note="less sugar").json()["data"]

    resp = harness.client.post(
        f"/api/pos/orders/{order['id']}/void",
        json={"reason": "customer cancelled"},
        headers=harness.headers(),
    )

    assert resp.status_code == 200
    voided = resp.json()["data"]
    assert voided["status"] == "void"
    assert voided["payment_status"] == "void"
    assert voided["paid_at"] is None
    assert voided["customer_note"] == "less sugar\n(void) customer cancelled"
    assert {item["status"] for item in voided["ticket"]["items"]} == {"served"}

    again = harness.client.post(
        f"/api/pos/orders/{order['id']}/void",
        json={"reason": "second try"},
        headers=harness.headers(),
    )
    assert again.json()["data"]["customer_note"] == "less sugar\n(void) customer cancelled"


def test_payment_update_rules(harness) -> None:
    menu_id = _create_menu(harness)
    reseller_id = _create_reseller(harness)
    pos_order = _checkout(harness, menu_id).json()["data"]
    reseller_order = _checkout(
        harness, menu_id, channel="reseller", reseller_id=reseller_id, payment_status="unpaid"
    ).json()["data"]

    void_resp = harness.client.patch(
        f"/api/pos/orders/{pos_order['id']}",
        json={"payment_status": "void"},
        headers=harness.headers(),
    )
    assert void_resp.status_code == 400

    due_resp = harness.client.patch(
        f"/api/pos/orders/{pos_order['id']}",
        json={"payment_status": "paid", "due_date": "2026-12-01"},
        headers=harness.headers(),
    )
    assert due_resp.status_code == 400

    paid_resp = harness.client.patch(
        f"/api/pos/orders/{reseller_order['id']}",
        json={"payment_status": "paid", "payment_method": "transfer"},
        headers=harness.headers(),
    )
    assert paid_resp.status_code == 200
    paid = paid_resp.json()["data"]
    assert paid["status"] == "paid"
    assert paid["payment_method"] == "transfer"
    assert paid["paid_at"] is not None

    reopened = harness.client.patch(
        f"/api/pos/orders/{reseller_order['id']}",
        json={"payment_status": "unpaid"},
        headers=harness.headers(),
    ).json()["data"]
    assert reopened["status"] == "open"
    assert reopened["paid_at"] is None


def test_only_unpaid_orders_can_be_deleted(harness) -> None:
    menu_id = _create_menu(harness)
    reseller_id = _create_reseller(harness)
    paid = _checkout(harness, menu_id).json()["data"]
    unpaid = _checkout(
        harness, menu_id, channel="reseller", reseller_id=reseller_id, payment_status="unpaid"
    ).json()["data"]

    blocked = harness.client.delete(f"/api/pos/orders/{paid['id']}", headers=harness.headers())
    assert blocked.status_code == 400

    deleted = harness.client.delete(f"/api/pos/orders/{unpaid['id']}", headers=harness.headers())
    assert deleted.status_code == 200
    assert deleted.json()["data"] == {"success": True, "deleted": unpaid["id"]}
    missing = harness.client.get(f"/api/pos/orders/{unpaid['id']}", headers=harness.headers())
    assert missing.status_code == 404
    assert _count(harness, Order) == 1
    assert _count(harness, KdsTicket) == 1


def test_order_list_filters_and_bootstrap(harness) -> None:
    menu_id = _create_menu(harness)
    reseller_id = _create_reseller(harness)
    _checkout(harness, menu_id)
    unpaid = _checkout(
        harness, menu_id, channel="reseller", reseller_id=reseller_id, payment_status="unpaid"
    ).json()["data"]

    resp = harness.client.get(
        "/api/pos/orders",
        params={"channel": "all", "status": "all", "payment_status": "unpaid"},
        headers=harness.headers(),
    )
    assert resp.status_code == 200
    items = resp.json()["data"]["items"]
    assert [item["id"] for item in items] == [unpaid["id"]]

    bootstrap = harness.client.get("/api/pos/bootstrap", headers=harness.headers()).json()["data"]
    assert [menu["id"] for menu in bootstrap["menus"]] == [menu_id]
    assert [reseller["id"] for reseller in bootstrap["resellers"]] == [reseller_id]
    assert [order["id"] for order in bootstrap["orders"]["items"]] == [unpaid["id"]]
    assert bootstrap["default_tax_rate"] == 0.11


def test_reseller_detail_summarises_receivables(harness) -> None:
    menu_id = _create_menu(harness)
    reseller_id = _create_reseller(harness)
    for _ in range(2):
        _checkout(
            harness, menu_id, channel="reseller", reseller_id=reseller_id, payment_status="unpaid"
        )
    _checkout(harness, menu_id, channel="reseller", reseller_id=reseller_id)

    resp = harness.client.get(f"/api/resellers/{reseller_id}", headers=harness.headers("manager"))

    assert resp.status_code == 200
    detail = resp.json()["data"]
    assert detail["reseller"]["terms"]["payment_term_days"] == 14
    assert detail["stats"] == {"total_orders": 3, "unpaid_count": 2, "total_outstanding": 97680}
    assert len(detail["recent_orders"]) == 3

    staff = harness.client.get(f"/api/resellers/{reseller_id}", headers=harness.headers("staff"))
    assert staff.status_code == 403
