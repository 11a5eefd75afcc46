from titikrasa.settings_store import (
    DEFAULT_RECEIPT_NUMBERING,
    DEFAULT_STORE_PROFILE,
    parse_discount,
    parse_receipt_numbering,
    parse_store_profile,
    parse_tax,
)


def test_tax_defaults_when_missing() -> None:
    assert parse_tax(None) == {"rate": 0.11, "auto_apply": True, "label": "Default 11%"}


def test_tax_rate_is_clamped() -> None:
    assert parse_tax({"rate": 0.5})["rate"] == 0.3
    assert parse_tax({"rate": -1})["rate"] == 0
    assert parse_tax({"value": 0.05, "auto_apply": False}) == {
        "rate": 0.05,
        "auto_apply": False,
        "label": "Default 11%",
    }


def test_tax_ignores_non_numeric_rate() -> None:
    assert parse_tax({"rate": "0.2", "label": "PB1"}) == {
        "rate": 0.11,
        "auto_apply": True,
        "label": "PB1",
    }


def test_discount_modes() -> None:
    assert parse_discount(None) == {"mode": "none", "value": 0}
    assert parse_discount({"mode": "percentage", "value": 1.5}) == {
        "mode": "percentage",
        "value": 1.0,
    }
    assert parse_discount({"mode": "nominal", "value": 1500.6}) == {
        "mode": "nominal",
        "value": 1501,
    }
    assert parse_discount({"mode": "nominal", "value": -20}) == {"mode": "nominal", "value": 0}
    assert parse_discount({"mode": "bogus", "value": 3}) == {"mode": "none", "value": 3}


def test_receipt_numbering_padding_is_clamped() -> None:
    assert parse_receipt_numbering({"padding": 9})["padding"] == 6
    assert parse_receipt_numbering({"padding": 1})["padding"] == 3
    assert parse_receipt_numbering(None) == DEFAULT_RECEIPT_NUMBERING


def test_receipt_numbering_falls_back_per_field() -> None:
    parsed = parse_receipt_numbering({"pos_prefix": "KSR", "reseller_prefix": "", "auto_reset": "weekly"})
    assert parsed == {
        "pos_prefix": "KSR",
        "reseller_prefix": "RES",
        "padding": 4,
        "auto_reset": "daily",
    }


def test_store_profile_defaults() -> None:
    assert parse_store_profile("nope") == DEFAULT_STORE_PROFILE
    profile = parse_store_profile({"name": "Titikrasa Dago", "logo_url": "https://cdn/x.png"})
    assert profile["name"] == "Titikrasa Dago"
    assert profile["address"] == DEFAULT_STORE_PROFILE["address"]
    assert profile["logo_url"] == "https://cdn/x.png"
