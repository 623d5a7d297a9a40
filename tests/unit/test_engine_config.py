"""Unit tests for configuration management."""

from dataclasses import replace
from datetime import date
from pathlib import Path

import pytest
import yaml

from autobook_app.config.defaults import EngineConfig, get_default_config
from autobook_app.config.loader import ConfigLoader
from autobook_app.config.validation import ConfigValidator, ValidationError
from autobook_app.state.models import BookingConfiguration, DateRange


class TestDefaultConfig:
    """Test suite for default configuration."""

    def test_default_config_creation(self) -> None:
        """Test the defaults of the job runner."""
        config = get_default_config()

        assert config.retry.max_attempts == 3
        assert config.retry.min_delay_ms == 1000
        assert config.retry.max_delay_ms == 10000
        assert config.retry.factor == 2.0
        assert config.retry.randomize is True
        assert config.execution.deadline_seconds == 300.0

    def test_default_config_is_valid(self) -> None:
        """Test the defaults pass validation."""
        loader = ConfigLoader.create(Path("/nonexistent"))
        assert ConfigValidator.validate_config(loader.merge_config()) == []


class TestConfigLoader:
    """Test suite for configuration loader."""

    def test_config_loader_creation(self) -> None:
        """Test the default config directory is the project config folder."""
        loader = ConfigLoader.create()

        assert isinstance(loader.config_dir, Path)
        assert loader.config_dir.name == "config"

    def test_missing_file_uses_defaults(self, tmp_path) -> None:
        """Test an empty config directory yields the defaults."""
        loader = ConfigLoader.create(tmp_path)

        assert loader.load_config() == get_default_config()

    def test_yaml_overrides(self, tmp_path) -> None:
        """Test YAML values override defaults section by section."""
        (tmp_path / "engine.yaml").write_text(yaml.safe_dump({
            "retry": {"max_attempts": 5},
            "store": {"db_path": "custom.db"},
        }))
        loader = ConfigLoader.create(tmp_path)

        config = loader.load_config()

        assert config.retry.max_attempts == 5
        assert config.retry.min_delay_ms == 1000
        assert config.store.db_path == "custom.db"

    def test_explicit_overrides_win(self, tmp_path) -> None:
        """Test explicit overrides beat the YAML file."""
        (tmp_path / "engine.yaml").write_text(yaml.safe_dump({"retry": {"max_attempts": 5}}))
        loader = ConfigLoader.create(tmp_path)

        config = loader.load_config({"retry": {"max_attempts": 2}})

        assert config.retry.max_attempts == 2

    def test_unknown_keys_are_ignored(self, tmp_path) -> None:
        """Test stray keys do not break typed loading."""
        (tmp_path / "engine.yaml").write_text(yaml.safe_dump({
            "retry": {"max_attempts": 4, "jitter_mode": "full"},
            "unknown_section": {"a": 1},
        }))

        config = ConfigLoader.create(tmp_path).load_config()

        assert isinstance(config, EngineConfig)
        assert config.retry.max_attempts == 4

    def test_project_config_file_loads(self) -> None:
        """Test the shipped engine.yaml is valid."""
        loader = ConfigLoader.create()

        assert ConfigValidator.validate_config(loader.merge_config()) == []
        assert isinstance(loader.load_config(), EngineConfig)


class TestConfigValidator:
    """Test suite for configuration validation."""

    def test_invalid_retry_params(self) -> None:
        """Test retry parameter checks."""
        errors = ConfigValidator.validate_retry_params({
            "max_attempts": 0,
            "min_delay_ms": 5000,
            "max_delay_ms": 1000,
            "factor": 0.5,
            "randomize": "yes",
        })

        fields = {error.field for error in errors}
        assert fields == {"max_attempts", "max_delay_ms", "factor", "randomize"}

    def test_boolean_is_not_an_integer(self) -> None:
        """Test True is not accepted as an attempt count."""
        errors = ConfigValidator.validate_retry_params({"max_attempts": True})
        assert errors == [ValidationError("max_attempts", "Must be a positive integer", True)]

    def test_invalid_execution_params(self) -> None:
        """Test execution parameter checks."""
        errors = ConfigValidator.validate_execution_params({
            "deadline_seconds": 0,
            "cancel_grace_seconds": -1,
            "max_cycles": 0,
        })

        assert {error.field for error in errors} == {
            "deadline_seconds", "cancel_grace_seconds", "max_cycles"
        }

    def test_invalid_propagation_and_logging(self) -> None:
        """Test propagation and logging checks through validate_config."""
        errors = ConfigValidator.validate_config({
            "propagation": {"poll_interval_ms": 0, "subscriber_retry_attempts": -1},
            "logging": {"level": "VERBOSE"},
        })

        assert {error.field for error in errors} == {
            "poll_interval_ms", "subscriber_retry_attempts", "level"
        }


class TestBookingConfigurationValidation:
    """Test validation of user booking configurations."""

    def test_valid_configuration(self, booking_configuration) -> None:
        """Test the fixture configuration is valid."""
        assert ConfigValidator.validate_booking_configuration(booking_configuration) == []

    @pytest.mark.parametrize("field,value", [
        ("license_type", ""),
        ("exam", ""),
        ("locations", ()),
        ("date_ranges", ()),
    ])
    def test_missing_fields(self, booking_configuration, field, value) -> None:
        """Test each required field is checked."""
        broken = replace(booking_configuration, **{field: value})

        errors = ConfigValidator.validate_booking_configuration(broken)

        assert [error.field for error in errors] == [field]

    def test_reversed_date_range(self) -> None:
        """Test a range ending before it starts is rejected."""
        configuration = BookingConfiguration(
            id="c1", owner="u1", license_type="B", exam="Körprov",
            locations=("Stockholm",),
            date_ranges=(DateRange(date(2026, 12, 1), date(2026, 11, 1)),),
        )

        errors = ConfigValidator.validate_booking_configuration(configuration)

        assert len(errors) == 1
        assert errors[0].field == "date_ranges[0]"
