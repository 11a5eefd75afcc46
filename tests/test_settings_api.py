def test_staff_reads_defaults(harness) -> None:
    resp = harness.client.get("/api/settings", headers=harness.headers("staff"))

    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["tax"]["rate"] == 0.11
    assert data["discount"] == {"mode": "none", "value": 0}
    assert data["receipt_numbering"] == {
        "pos_prefix": "POS",
        "reseller_prefix": "RES",
        "padding": 4,
        "auto_reset": "daily",
    }


def test_only_admins_change_settings(harness) -> None:
    body = {"discount": {"mode": "percentage", "value": 0.1}}
    assert harness.client.patch("/api/settings", json=body, headers=harness.headers("manager")).status_code == 403

    resp = harness.client.patch("/api/settings", json=body, headers=harness.headers("admin"))

    assert resp.status_code == 200
    assert resp.json()["data"]["discount"] == {"mode": "percentage", "value": 0.1}


def test_empty_update_is_rejected(harness) -> None:
    resp = harness.client.patch("/api/settings", json={}, headers=harness.headers("admin"))
    assert resp.status_code == 400
    assert resp.json()["error"]["message"] == "No changes provided"


def test_settings_payload_is_validated(harness) -> None:
    headers = harness.headers("admin")
    too_high = harness.client.patch("/api/settings", json={"tax": {"rate": 0.5}}, headers=headers)
    assert too_high.status_code == 422

    bad_prefix = harness.client.patch(
        "/api/settings",
        json={
            "receipt_numbering": {
                "pos_prefix": "pos",
                "reseller_prefix": "RES",
                "padding": 4,
                "auto_reset": "daily",
            }
        },
        headers=headers,
    )
    assert bad_prefix.status_code == 422


def test_store_profile_and_numbering_round_trip(harness) -> None:
    resp = harness.client.patch(
        "/api/settings",
        json={
            "store_profile": {
                "name": "Titikrasa Dago",
                "address": "Jl. Dago 88, Bandung",
                "phone": "022-250-0000",
                "footer_note": "Sampai jumpa lagi",
            },
            "receipt_numbering": {
                "pos_prefix": "KSR",
                "reseller_prefix": "GRS",
                "padding": 5,
                "auto_reset": "none",
            },
        },
        headers=harness.headers("admin"),
    )

    assert resp.status_code == 200
    fresh = harness.client.get("/api/settings", headers=harness.headers("staff")).json()["data"]
    assert fresh["store_profile"]["name"] == "Titikrasa Dago"
    assert fresh["store_profile"]["logo_url"] is None
    assert fresh["receipt_numbering"]["padding"] == 5
    assert fresh["receipt_numbering"]["auto_reset"] == "none"
    assert fresh["tax"]["rate"] == 0.11
