"""Preço da consulta e formatação de moeda."""
import pytest

from clinica.db import db_session
from clinica.errors import DomainError
from clinica.models import SystemConfiguration
from clinica.pricing import (
    PricingConfig,
    calculate_consultation_price,
    format_currency,
    get_pricing_config,
    update_pricing_config,
)


def test_specialty_mode_prefers_specialty_price():
    price = calculate_consultation_price(200.0, 150.0, PricingConfig("specialty", "BRL", 0.0))

    assert price.base_price == 150.0
    assert price.source == "specialty"


def test_doctor_mode_prefers_doctor_fee():
    price = calculate_consultation_price(200.0, 150.0, PricingConfig("doctor", "BRL", 0.0))

    assert price.base_price == 200.0
    assert price.source == "doctor"


def test_falls_back_to_other_source_then_default():
    assert calculate_consultation_price(None, 180.0, PricingConfig("doctor")).source == "specialty"

    default = calculate_consultation_price(None, None, PricingConfig("doctor"))
    assert default.source == "default"
    assert default.base_price == 150.0


def test_tax_is_added_to_final_price():
    price = calculate_consultation_price(None, 200.0, PricingConfig("specialty", "BRL", 10.0))

    assert price.tax_amount == 20.0
    assert price.final_price == 220.0


@pytest.mark.parametrize(
    "amount,currency,expected",
    [(1234.56, "BRL", "R$ 1.234,56"), (0, "BRL", "R$ 0,00"), (1000000, "BRL", "R$ 1.000.000,00"), (99.9, "USD", "US$ 99,90")],
)
def test_format_currency(amount, currency, expected):
    assert format_currency(amount, currency) == expected


def test_pricing_config_defaults_from_settings():
    with db_session() as s:
        cfg = get_pricing_config(s)

    assert cfg == PricingConfig("specialty", "BRL", 0.0)


def test_update_pricing_config_persists():
    with db_session() as s:
        update_pricing_config(s, consultation_pricing_mode="doctor", default_currency="usd", tax_rate=5)

    with db_session() as s:
        cfg = get_pricing_config(s)
        row = s.get(SystemConfiguration, "CONSULTATION_PRICING_MODE")
        assert row.category == "PRICING"

    assert cfg == PricingConfig("doctor", "USD", 5.0)


def test_update_pricing_config_rejects_invalid_values():
    with db_session() as s:
        with pytest.raises(DomainError) as exc:
            update_pricing_config(s, consultation_pricing_mode="clinic")
        assert exc.value.code == "INVALID_PRICING_MODE"

        with pytest.raises(DomainError) as exc:
            update_pricing_config(s, tax_rate=-1)
        assert exc.value.code == "INVALID_TAX_RATE"


def test_invalid_stored_mode_falls_back_to_default():
    with db_session() as s:
        s.add(SystemConfiguration(key="CONSULTATION_PRICING_MODE", value="bogus"))

    with db_session() as s:
        assert get_pricing_config(s).consultation_pricing_mode == "specialty"
