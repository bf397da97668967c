"""
Pricing calculations and rate management.

Converts provider-reported token usage into provider cost and billable units.
The conversion itself is pure: rates are always passed in explicitly, and the
choice between stored overrides and configured defaults is made by the
caller through ``resolve_rates``.
"""

import math
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_UP
from typing import Callable, Dict, Mapping, Optional

from .token_counter import TokenUsage
from token_meter.storage.kv import KeyValueStore
from token_meter.storage.models import PRICE_IN_KEY, PRICE_OUT_KEY


# Rates are quoted in dollars per one million tokens
RATE_SCALE = 1_000_000

DEFAULT_PRICE_IN = Decimal("0.497")
DEFAULT_PRICE_OUT = Decimal("4.881")


@dataclass(frozen=True)
class ModelRates:
    """Per-token pricing for the metered model."""
    price_in: Decimal  # Cost per RATE_SCALE prompt tokens
    price_out: Decimal  # Cost per RATE_SCALE completion tokens

    def __post_init__(self):
        """Validate rates are positive finite numbers."""
        for name in ("price_in", "price_out"):
            value = getattr(self, name)
            if not isinstance(value, Decimal):
                value = _to_decimal(value)
                object.__setattr__(self, name, value)
            if value is None or not value.is_finite() or value <= 0:
                raise ValueError(f"{name} must be a positive finite number")


DEFAULT_RATES = ModelRates(price_in=DEFAULT_PRICE_IN, price_out=DEFAULT_PRICE_OUT)


@dataclass(frozen=True)
class CostBreakdown:
    """Provider cost and billable units for one usage record."""
    input_cost: float
    output_cost: float
    provider_cost: float
    billable_units: int


BillingPolicy = Callable[[TokenUsage], int]


def one_to_one(usage: TokenUsage) -> int:
    """Default policy: one billable unit per provider token."""
    return usage.total_tokens


def margin_policy(multiplier: float) -> BillingPolicy:
    """Build a policy that bills ``multiplier`` units per provider token.

    Fractional results round up so the account is never under-charged.
    """
    factor = _to_decimal(multiplier)
    if factor is None or not factor.is_finite() or factor <= 0:
        raise ValueError("multiplier must be a positive finite number")

    def _policy(usage: TokenUsage) -> int:
        units = Decimal(usage.total_tokens) * factor
        return int(units.to_integral_value(rounding=ROUND_UP))

    return _policy


def convert_usage(
    usage: TokenUsage,
    rates: ModelRates,
    scale: int = RATE_SCALE,
    policy: BillingPolicy = one_to_one
) -> CostBreakdown:
    """Calculate provider cost and billable units for token usage.

    Args:
        usage: Token usage data
        rates: Rates to price the usage with
        scale: Token count the rates are quoted per
        policy: Mapping from provider tokens to billable units

    Returns:
        CostBreakdown with unrounded provider cost
    """
    input_cost = Decimal(usage.prompt_tokens) * rates.price_in / Decimal(scale)
    output_cost = Decimal(usage.completion_tokens) * rates.price_out / Decimal(scale)

    return CostBreakdown(
        input_cost=float(input_cost),
        output_cost=float(output_cost),
        provider_cost=float(input_cost + output_cost),
        billable_units=policy(usage)
    )


def parse_rate(raw: object, default: Decimal) -> Decimal:
    """Parse a rate override, falling back to ``default`` when unusable.

    Missing, non-numeric, non-finite and non-positive values all fall back.
    """
    value = _to_decimal(raw)
    if value is None or not value.is_finite() or value <= 0:
        return default
    return value


def resolve_rates(
    overrides: Mapping[str, object],
    defaults: ModelRates = DEFAULT_RATES
) -> ModelRates:
    """Resolve effective rates from overrides on top of defaults.

    Args:
        overrides: Mapping with optional ``price_in``/``price_out`` entries
        defaults: Rates used for any missing or unusable override

    Returns:
        Effective ModelRates
    """
    return ModelRates(
        price_in=parse_rate(overrides.get("price_in"), defaults.price_in),
        price_out=parse_rate(overrides.get("price_out"), defaults.price_out)
    )


class PricingOverrides:
    """Administrative pricing overrides persisted in the store."""

    def __init__(self, store: KeyValueStore):
        self.store = store

    def load(self) -> Dict[str, Optional[str]]:
        """Read raw override values; absent overrides map to None."""
        return {
            "price_in": self.store.get(PRICE_IN_KEY),
            "price_out": self.store.get(PRICE_OUT_KEY),
        }

    def set_prices(
        self,
        price_in: Optional[float] = None,
        price_out: Optional[float] = None
    ) -> None:
        """Store new rate overrides. Omitted rates keep their current value.

        Raises:
            ValueError: If a supplied rate is not a positive finite number
        """
        updates = {}
        for name, key, value in (
            ("price_in", PRICE_IN_KEY, price_in),
            ("price_out", PRICE_OUT_KEY, price_out),
        ):
            if value is None:
                continue
            if isinstance(value, bool) or not isinstance(value, (int, float, Decimal)):
                raise ValueError(f"{name} must be a number")
            if not math.isfinite(value) or value <= 0:
                raise ValueError(f"{name} must be a positive finite number")
            updates[key] = str(value)

        for key, value in updates.items():
            self.store.put(key, value)


def _to_decimal(raw: object) -> Optional[Decimal]:
    if raw is None or isinstance(raw, bool):
        return None
    try:
        return Decimal(str(raw).strip())
    except (InvalidOperation, ValueError):
        return None
