"""Configuration validation utilities."""

from dataclasses import dataclass
from typing import Any

from ..state.models import BookingConfiguration

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


@dataclass(frozen=True)
class ValidationError:
    """Represents a configuration validation error."""
    field: str
    message: str
    value: Any


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class ConfigValidator:
    """Validates engine parameters and user booking configurations."""

    @staticmethod
    def validate_retry_params(params: dict[str, Any]) -> list[ValidationError]:
        """Validate retry parameters."""
        errors = []

        if "max_attempts" in params:
            value = params["max_attempts"]
            if not isinstance(value, int) or isinstance(value, bool) or value < 1:
                errors.append(ValidationError(
                    field="max_attempts",
                    message="Must be a positive integer",
                    value=value
                ))

        for name in ("min_delay_ms", "max_delay_ms"):
            if name in params:
                value = params[name]
                if not _is_number(value) or value < 0:
                    errors.append(ValidationError(
                        field=name,
                        message="Must be a non-negative number",
                        value=value
                    ))

        min_delay = params.get("min_delay_ms")
        max_delay = params.get("max_delay_ms")
        if _is_number(min_delay) and _is_number(max_delay) and min_delay > max_delay:
            errors.append(ValidationError(
                field="max_delay_ms",
                message="Must be greater than or equal to min_delay_ms",
                value=max_delay
            ))

        if "factor" in params:
            value = params["factor"]
            if not _is_number(value) or value < 1:
                errors.append(ValidationError(
                    field="factor",
                    message="Must be a number greater than or equal to 1",
                    value=value
                ))

        if "randomize" in params:
            value = params["randomize"]
            if not isinstance(value, bool):
                errors.append(ValidationError(
                    field="randomize",
                    message="Must be a boolean",
                    value=value
                ))

        return errors

    @staticmethod
    def validate_execution_params(params: dict[str, Any]) -> list[ValidationError]:
        """Validate execution deadlines and automation settings."""
        errors = []

        for name in ("deadline_seconds", "auth_timeout_seconds"):
            if name in params:
                value = params[name]
                if not _is_number(value) or value <= 0:
                    errors.append(ValidationError(
                        field=name,
                        message="Must be a positive number",
                        value=value
                    ))

        for name in ("cancel_grace_seconds", "cycle_delay_seconds"):
            if name in params:
                value = params[name]
                if not _is_number(value) or value < 0:
                    errors.append(ValidationError(
                        field=name,
                        message="Must be a non-negative number",
                        value=value
                    ))

        for name in ("max_cycles", "refresh_interval"):
            if name in params:
                value = params[name]
                if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
                    errors.append(ValidationError(
                        field=name,
                        message="Must be a positive integer",
                        value=value
                    ))

        return errors

    @staticmethod
    def validate_propagation_params(params: dict[str, Any]) -> list[ValidationError]:
        """Validate change propagation parameters."""
        errors = []

        for name in ("poll_interval_ms", "batch_size", "dedupe_window"):
            if name in params:
                value = params[name]
                if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
                    errors.append(ValidationError(
                        field=name,
                        message="Must be a positive integer",
                        value=value
                    ))

        for name in ("subscriber_retry_attempts", "subscriber_retry_delay_ms"):
            if name in params:
                value = params[name]
                if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                    errors.append(ValidationError(
                        field=name,
                        message="Must be a non-negative integer",
                        value=value
                    ))

        return errors

    @staticmethod
    def validate_logging_params(params: dict[str, Any]) -> list[ValidationError]:
        """Validate logging parameters."""
        errors = []

        if "level" in params:
            value = params["level"]
            if not isinstance(value, str) or value.upper() not in _LOG_LEVELS:
                errors.append(ValidationError(
                    field="level",
                    message=f"Must be one of {sorted(_LOG_LEVELS)}",
                    value=value
                ))

        return errors

    @staticmethod
    def validate_config(config: dict[str, Any]) -> list[ValidationError]:
        """Validate complete configuration."""
        errors = []

        if "retry" in config:
            errors.extend(ConfigValidator.validate_retry_params(config["retry"]))

        if "execution" in config:
            errors.extend(ConfigValidator.validate_execution_params(config["execution"]))

        if "propagation" in config:
            errors.extend(ConfigValidator.validate_propagation_params(config["propagation"]))

        if "logging" in config:
            errors.extend(ConfigValidator.validate_logging_params(config["logging"]))

        return errors

    @staticmethod
    def validate_booking_configuration(configuration: BookingConfiguration) -> list[ValidationError]:
        """
        Validate a user booking configuration.

        A configuration failing these checks can never lead to a booking, so
        the executor treats it as a fatal failure.
        """
        errors = []

        if not configuration.license_type:
            errors.append(ValidationError(
                field="license_type",
                message="License type is required",
                value=configuration.license_type
            ))

        if not configuration.exam:
            errors.append(ValidationError(
                field="exam",
                message="Exam type is required",
                value=configuration.exam
            ))

        if not configuration.locations:
            errors.append(ValidationError(
                field="locations",
                message="At least one test location is required",
                value=list(configuration.locations)
            ))

        if not configuration.date_ranges:
            errors.append(ValidationError(
                field="date_ranges",
                message="At least one date range is required",
                value=[]
            ))

        for index, date_range in enumerate(configuration.date_ranges):
            if date_range.start > date_range.end:
                errors.append(ValidationError(
                    field=f"date_ranges[{index}]",
                    message="Range start must not be after its end",
                    value=f"{date_range.start.isoformat()}..{date_range.end.isoformat()}"
                ))

        return errors
