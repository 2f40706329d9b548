"""
Preço das consultas.

O valor pode vir do médico (consultation_fee) ou da especialidade (price),
conforme CONSULTATION_PRICING_MODE em system_configurations; quando nenhum
dos dois existe usa-se o preço padrão.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from sqlalchemy import select
from sqlalchemy.orm import Session

from . import config
from .errors import DomainError
from .logging_config import get_logger
from .models import SystemConfiguration

log = get_logger(__name__)

PricingMode = Literal["doctor", "specialty"]
PRICING_MODES = ("doctor", "specialty")

_KEY_MODE = "CONSULTATION_PRICING_MODE"
_KEY_CURRENCY = "DEFAULT_CURRENCY"
_KEY_TAX = "TAX_RATE"

_DESCRIPTIONS = {
    _KEY_MODE: "Modo de precificação das consultas (doctor ou specialty)",
    _KEY_CURRENCY: "Moeda padrão do sistema",
    _KEY_TAX: "Taxa de imposto em percentual",
}


@dataclass(frozen=True)
class PricingConfig:
    consultation_pricing_mode: PricingMode = "specialty"
    default_currency: str = "BRL"
    tax_rate: float = 0.0  # percentual


@dataclass(frozen=True)
class PriceCalculation:
    base_price: float
    tax_amount: float
    final_price: float
    source: Literal["doctor", "specialty", "default"]
    currency: str


def default_pricing_config() -> PricingConfig:
    mode = config.CONSULTATION_PRICING_MODE if config.CONSULTATION_PRICING_MODE in PRICING_MODES else "specialty"
    return PricingConfig(mode, config.DEFAULT_CURRENCY, config.TAX_RATE)


def get_pricing_config(s: Session) -> PricingConfig:
    rows = s.scalars(
        select(SystemConfiguration).where(SystemConfiguration.key.in_([_KEY_MODE, _KEY_CURRENCY, _KEY_TAX]))
    )
    values = {r.key: r.value for r in rows}
    defaults = default_pricing_config()

    mode = values.get(_KEY_MODE, defaults.consultation_pricing_mode)
    if mode not in PRICING_MODES:
        log.warning("invalid_pricing_mode", value=mode)
        mode = defaults.consultation_pricing_mode
    try:
        tax_rate = float(values.get(_KEY_TAX, defaults.tax_rate))
    except ValueError:
        log.warning("invalid_tax_rate", value=values.get(_KEY_TAX))
        tax_rate = defaults.tax_rate

    return PricingConfig(mode, values.get(_KEY_CURRENCY, defaults.default_currency), tax_rate)


def update_pricing_config(
    s: Session,
    consultation_pricing_mode: str | None = None,
    default_currency: str | None = None,
    tax_rate: float | None = None,
) -> PricingConfig:
    updates: dict[str, str] = {}
    if consultation_pricing_mode is not None:
        if consultation_pricing_mode not in PRICING_MODES:
            raise DomainError("Modo de precificação inválido (use doctor ou specialty).", code="INVALID_PRICING_MODE")
        updates[_KEY_MODE] = consultation_pricing_mode
    if default_currency is not None:
        updates[_KEY_CURRENCY] = default_currency.strip().upper()
    if tax_rate is not None:
        if tax_rate < 0:
            raise DomainError("A taxa de imposto não pode ser negativa.", code="INVALID_TAX_RATE")
        updates[_KEY_TAX] = str(tax_rate)

    for key, value in updates.items():
        row = s.get(SystemConfiguration, key)
        if row:
            row.value = value
        else:
            s.add(SystemConfiguration(key=key, value=value, description=_DESCRIPTIONS[key], category="PRICING"))
    s.flush()

    log.info("pricing_config_updated", keys=sorted(updates))
    return get_pricing_config(s)


def calculate_consultation_price(
    doctor_fee: float | None,
    specialty_price: float | None,
    pricing: PricingConfig | None = None,
) -> PriceCalculation:
    pricing = pricing or default_pricing_config()

    candidates = [("doctor", doctor_fee), ("specialty", specialty_price)]
    if pricing.consultation_pricing_mode == "specialty":
        candidates.reverse()

    base_price, source = config.DEFAULT_CONSULTATION_PRICE, "default"
    for name, value in candidates:
        if value:
            base_price, source = float(value), name
            break

    tax_amount = round(base_price * pricing.tax_rate / 100, 2)
    return PriceCalculation(
        base_price=base_price,
        tax_amount=tax_amount,
        final_price=round(base_price + tax_amount, 2),
        source=source,
        currency=pricing.default_currency,
    )


_SYMBOLS = {"BRL": "R$", "USD": "US$", "EUR": "€"}


def format_currency(amount: float, currency: str = "BRL") -> str:
    """Formato brasileiro: R$ 1.234,56."""
    text = f"{abs(amount):,.2f}".replace(",", "_").replace(".", ",").replace("_", ".")
    sign = "-" if amount < 0 else ""
    return f"{sign}{_SYMBOLS.get(currency.upper(), currency.upper())} {text}"
