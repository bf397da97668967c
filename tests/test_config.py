"""
Unit tests for configuration loading and validation.

Tests strict validation, defaults, and environment overrides.
"""

import os
import tempfile
from decimal import Decimal

import pytest
import yaml

from token_meter.config.loader import (
    LimitsConfig,
    MeteringConfig,
    PricingConfig,
    RateLimitConfig,
    apply_env_overrides,
    load_config,
    load_metering_config,
)


class TestConfigLoading:
    """Test configuration loading and validation."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_config(self, config_data, filename: str = "config.yaml") -> str:
        """Write configuration data to temporary file."""
        config_path = os.path.join(self.temp_dir, filename)
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump(config_data, f)
        return config_path

    def test_valid_config_loads_correctly(self):
        """Test that a complete configuration loads correctly."""
        config_path = self._write_config({
            "pricing": {"price_in": 0.5, "price_out": 5, "scale": 1000},
            "rate_limit": {"max_requests": 10, "window_seconds": 30},
            "limits": {"max_output_units": 4096},
            "store": {"path": "/tmp/meter.db"},
        })

        config = load_metering_config(config_path)

        assert config.pricing.price_in == Decimal("0.5")
        assert config.pricing.price_out == Decimal("5")
        assert config.pricing.scale == 1000
        assert config.rate_limit.max_requests == 10
        assert config.rate_limit.window_seconds == 30
        assert config.limits.max_output_units == 4096
        assert config.store.path == "/tmp/meter.db"

    def test_missing_sections_use_defaults(self):
        """Test that omitted sections fall back to defaults."""
        config = load_metering_config(self._write_config({"limits": {"max_output_units": 10}}))

        assert config.limits.max_output_units == 10
        assert config.pricing == PricingConfig()
        assert config.rate_limit == RateLimitConfig()
        assert config.store.path == "token_meter.db"

    def test_partial_section(self):
        """Test that a section may set only some keys."""
        config = load_metering_config(self._write_config({"pricing": {"price_out": 9.5}}))
        assert config.pricing.price_in == Decimal("0.497")
        assert config.pricing.price_out == Decimal("9.5")

    def test_missing_file(self):
        with pytest.raises(FileNotFoundError, match="Metering config file not found"):
            load_metering_config(os.path.join(self.temp_dir, "absent.yaml"))

    def test_empty_file(self):
        config_path = os.path.join(self.temp_dir, "empty.yaml")
        open(config_path, 'w').close()
        with pytest.raises(ValueError, match="Configuration file is empty"):
            load_metering_config(config_path)

    def test_invalid_yaml(self):
        config_path = os.path.join(self.temp_dir, "bad.yaml")
        with open(config_path, 'w', encoding='utf-8') as f:
            f.write("pricing: [unclosed")
        with pytest.raises(yaml.YAMLError, match="Invalid YAML"):
            load_metering_config(config_path)

    def test_non_mapping_config(self):
        with pytest.raises(ValueError, match="must be a dictionary"):
            load_metering_config(self._write_config(["pricing"]))

    def test_unknown_top_level_key(self):
        with pytest.raises(ValueError, match="Unknown configuration keys"):
            load_metering_config(self._write_config({"billing": {}}))

    def test_unknown_section_key(self):
        with pytest.raises(ValueError, match="Unknown keys in rate_limit"):
            load_metering_config(self._write_config({"rate_limit": {"burst": 5}}))

    def test_section_must_be_mapping(self):
        with pytest.raises(ValueError, match="'limits' must be a dictionary"):
            load_metering_config(self._write_config({"limits": 5}))

    @pytest.mark.parametrize("value", [0, -1, "cheap", True])
    def test_invalid_price(self, value):
        with pytest.raises(ValueError, match="pricing.price_in"):
            load_metering_config(self._write_config({"pricing": {"price_in": value}}))

    @pytest.mark.parametrize("section,key,value", [
        ("rate_limit", "max_requests", 0),
        ("rate_limit", "window_seconds", 1.5),
        ("limits", "max_output_units", -5),
        ("pricing", "scale", "million"),
    ])
    def test_invalid_integer(self, section, key, value):
        with pytest.raises(ValueError, match=f"{section}.{key}"):
            load_metering_config(self._write_config({section: {key: value}}))

    def test_invalid_store_path(self):
        with pytest.raises(ValueError, match="store.path"):
            load_metering_config(self._write_config({"store": {"path": ""}}))


class TestConfigValidation:
    """Test dataclass-level validation."""

    def test_defaults(self):
        config = MeteringConfig()
        assert config.pricing.scale == 1_000_000
        assert config.rate_limit.max_requests == 60
        assert config.rate_limit.window_seconds == 60
        assert config.limits.max_output_units == 2000

    def test_pricing_rejects_non_positive(self):
        with pytest.raises(ValueError):
            PricingConfig(price_in=Decimal("0"))
        with pytest.raises(ValueError, match="scale"):
            PricingConfig(scale=0)

    def test_rate_limit_rejects_non_positive(self):
        with pytest.raises(ValueError, match="max_requests"):
            RateLimitConfig(max_requests=0)

    def test_limits_rejects_non_positive(self):
        with pytest.raises(ValueError, match="max_output_units"):
            LimitsConfig(max_output_units=0)


class TestEnvironmentOverrides:
    """Test MODEL_PRICE_IN/MODEL_PRICE_OUT handling."""

    def test_env_overrides_prices(self):
        config = apply_env_overrides(
            MeteringConfig(),
            {"MODEL_PRICE_IN": "1.5", "MODEL_PRICE_OUT": "12"}
        )
        assert config.pricing.price_in == Decimal("1.5")
        assert config.pricing.price_out == Decimal("12")

    def test_unparsable_env_keeps_configured(self):
        config = apply_env_overrides(
            MeteringConfig(pricing=PricingConfig(price_in=Decimal("2"))),
            {"MODEL_PRICE_IN": "two", "MODEL_PRICE_OUT": "-1"}
        )
        assert config.pricing.price_in == Decimal("2")
        assert config.pricing.price_out == Decimal("4.881")

    def test_empty_env_is_noop(self):
        assert apply_env_overrides(MeteringConfig(), {}) == MeteringConfig()

    def test_load_config_without_path(self, monkeypatch):
        monkeypatch.setenv("MODEL_PRICE_OUT", "7")
        monkeypatch.delenv("MODEL_PRICE_IN", raising=False)
        config = load_config()
        assert config.pricing.price_out == Decimal("7")
        assert config.pricing.price_in == Decimal("0.497")
