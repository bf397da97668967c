"""
Configuration management and loading.

Handles metering settings from YAML files and environment variables.
"""

import os
from dataclasses import dataclass, field, replace
from decimal import Decimal
from pathlib import Path
from typing import Dict, Mapping, Optional

import yaml

from token_meter.core.pricing import (
    DEFAULT_PRICE_IN,
    DEFAULT_PRICE_OUT,
    RATE_SCALE,
    ModelRates,
    parse_rate,
)
from token_meter.storage.db import DEFAULT_DB_PATH


ENV_PRICE_IN = "MODEL_PRICE_IN"
ENV_PRICE_OUT = "MODEL_PRICE_OUT"


@dataclass(frozen=True)
class PricingConfig:
    """Compiled-in model rates, in dollars per ``scale`` tokens."""
    price_in: Decimal = DEFAULT_PRICE_IN
    price_out: Decimal = DEFAULT_PRICE_OUT
    scale: int = RATE_SCALE

    def __post_init__(self):
        """Validate pricing values are positive."""
        if self.scale <= 0:
            raise ValueError("scale must be > 0")
        # Raises ValueError for non-positive or non-finite rates
        ModelRates(price_in=self.price_in, price_out=self.price_out)

    @property
    def rates(self) -> ModelRates:
        return ModelRates(price_in=self.price_in, price_out=self.price_out)


@dataclass(frozen=True)
class RateLimitConfig:
    """Per-account request limits."""
    max_requests: int = 60
    window_seconds: int = 60

    def __post_init__(self):
        """Validate rate limit values are positive."""
        if self.max_requests <= 0:
            raise ValueError("max_requests must be > 0")
        if self.window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")


@dataclass(frozen=True)
class LimitsConfig:
    """Per-request size limits."""
    max_output_units: int = 2000

    def __post_init__(self):
        """Validate the output cap is positive."""
        if self.max_output_units <= 0:
            raise ValueError("max_output_units must be > 0")


@dataclass(frozen=True)
class StoreConfig:
    """Location of the file-backed store."""
    path: str = DEFAULT_DB_PATH


@dataclass(frozen=True)
class MeteringConfig:
    """Complete metering configuration."""
    pricing: PricingConfig = field(default_factory=PricingConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    limits: LimitsConfig = field(default_factory=LimitsConfig)
    store: StoreConfig = field(default_factory=StoreConfig)


_SECTION_KEYS = {
    "pricing": {"price_in", "price_out", "scale"},
    "rate_limit": {"max_requests", "window_seconds"},
    "limits": {"max_output_units"},
    "store": {"path"},
}


def load_metering_config(path: str) -> MeteringConfig:
    """Load and validate metering configuration from a YAML file.

    Every section is optional and falls back to defaults, but unknown keys
    and invalid values are rejected rather than ignored.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated MeteringConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Metering config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    unknown_keys = set(raw_config.keys()) - set(_SECTION_KEYS)
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    sections = {
        name: _section(raw_config, name) for name in _SECTION_KEYS
    }

    pricing_data = sections["pricing"]
    pricing_kwargs = {}
    for key in ("price_in", "price_out"):
        if key in pricing_data:
            pricing_kwargs[key] = _positive_number(pricing_data[key], f"pricing.{key}")
    if "scale" in pricing_data:
        pricing_kwargs["scale"] = _positive_int(pricing_data["scale"], "pricing.scale")

    rate_data = sections["rate_limit"]
    limits_data = sections["limits"]
    store_data = sections["store"]

    store_kwargs = {}
    if "path" in store_data:
        if not isinstance(store_data["path"], str) or not store_data["path"].strip():
            raise ValueError("'store.path' must be a non-empty string")
        store_kwargs["path"] = store_data["path"]

    return MeteringConfig(
        pricing=PricingConfig(**pricing_kwargs),
        rate_limit=RateLimitConfig(**{
            key: _positive_int(value, f"rate_limit.{key}")
            for key, value in rate_data.items()
        }),
        limits=LimitsConfig(**{
            key: _positive_int(value, f"limits.{key}")
            for key, value in limits_data.items()
        }),
        store=StoreConfig(**store_kwargs)
    )


def apply_env_overrides(
    config: MeteringConfig,
    environ: Optional[Mapping[str, str]] = None
) -> MeteringConfig:
    """Apply ``MODEL_PRICE_IN``/``MODEL_PRICE_OUT`` on top of a config.

    Unparsable or non-positive values keep the configured rate.
    """
    env = os.environ if environ is None else environ
    pricing = config.pricing
    pricing = replace(
        pricing,
        price_in=parse_rate(env.get(ENV_PRICE_IN), pricing.price_in),
        price_out=parse_rate(env.get(ENV_PRICE_OUT), pricing.price_out)
    )
    return replace(config, pricing=pricing)


def load_config(path: Optional[str] = None) -> MeteringConfig:
    """Load the effective configuration: file (if any), then environment."""
    config = load_metering_config(path) if path else MeteringConfig()
    return apply_env_overrides(config)


def _section(raw_config: Dict, name: str) -> Dict:
    data = raw_config.get(name)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    unknown_keys = set(data.keys()) - _SECTION_KEYS[name]
    if unknown_keys:
        raise ValueError(f"Unknown keys in {name}: {unknown_keys}")
    return data


def _positive_number(value, path: str) -> Decimal:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ValueError(f"'{path}' must be > 0")
    return Decimal(str(value))


def _positive_int(value, path: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValueError(f"'{path}' must be a positive integer")
    return value
