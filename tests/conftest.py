"""Pytest configuration and shared fixtures."""

import os
import shutil
import tempfile
from datetime import date

import pytest

from autobook_app.config.defaults import (
    EngineConfig,
    ExecutionParams,
    LoggingParams,
    PropagationParams,
    RetryParams,
    StoreParams,
)
from autobook_app.persistence.session_store import SessionStore
from autobook_app.state.models import BookingConfiguration, DateRange


@pytest.fixture
def temp_dir():
    """Temporary directory removed after the test."""
    path = tempfile.mkdtemp()
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def store(temp_dir) -> SessionStore:
    """Session store on a fresh SQLite database."""
    return SessionStore(os.path.join(temp_dir, "sessions.db"))


@pytest.fixture
def booking_configuration() -> BookingConfiguration:
    """Valid booking configuration for one owner."""
    return BookingConfiguration(
        id="config-001",
        owner="user-001",
        license_type="B",
        exam="Körprov",
        locations=("Stockholm", "Uppsala"),
        date_ranges=(DateRange(date(2026, 11, 1), date(2026, 11, 30)),),
        vehicle_language=("Svenska",),
        personal_number="19900101-1234",
    )


@pytest.fixture
def fast_config(temp_dir) -> EngineConfig:
    """Engine configuration with millisecond-scale delays for tests."""
    return EngineConfig(
        retry=RetryParams(max_attempts=3, min_delay_ms=1, max_delay_ms=10, factor=2.0, randomize=False),
        execution=ExecutionParams(deadline_seconds=5.0, auth_timeout_seconds=2.0, cancel_grace_seconds=1.0),
        propagation=PropagationParams(poll_interval_ms=20, subscriber_retry_attempts=2, subscriber_retry_delay_ms=1),
        store=StoreParams(db_path=os.path.join(temp_dir, "engine.db")),
        logging=LoggingParams(),
    )
