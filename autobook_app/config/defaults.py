"""Default configuration parameters for the booking engine."""

from dataclasses import dataclass


@dataclass(frozen=True)
class RetryParams:
    """Retry and backoff policy for failed booking attempts."""
    max_attempts: int = 3                  # Attempts in total, first one included
    min_delay_ms: int = 1000               # Lower bound of every backoff delay
    max_delay_ms: int = 10000              # Upper bound of every backoff delay
    factor: float = 2.0                    # Exponential growth per attempt
    randomize: bool = True                 # Jitter in [1, 2) on the base delay


@dataclass(frozen=True)
class ExecutionParams:
    """Deadlines and automation settings for a single run."""
    deadline_seconds: float = 300.0        # Whole run, retries included
    auth_timeout_seconds: float = 120.0    # Waiting for the BankID step
    cancel_grace_seconds: float = 5.0      # Wait for a cancelled step to unwind
    max_cycles: int = 100                  # Search cycles per attempt
    cycle_delay_seconds: float = 10.0      # Pause between search cycles
    refresh_interval: int = 30             # Reload the page every N cycles


@dataclass(frozen=True)
class PropagationParams:
    """Change propagation bus parameters."""
    poll_interval_ms: int = 500            # Fallback poll when no wake-up arrives
    batch_size: int = 100                  # Events read per pump iteration
    subscriber_retry_attempts: int = 3     # Redeliveries before dead-lettering
    subscriber_retry_delay_ms: int = 200
    dedupe_window: int = 10000             # Event ids remembered per subscriber


@dataclass(frozen=True)
class StoreParams:
    """Session store parameters."""
    db_path: str = "autobook.db"
    connect_timeout_seconds: float = 30.0
    busy_retry_attempts: int = 5           # Retries of transient SQLite errors
    busy_retry_delay_ms: int = 50


@dataclass(frozen=True)
class LoggingParams:
    """Logging output parameters."""
    level: str = "INFO"
    format_json: bool = False
    include_timestamp: bool = True
    include_caller: bool = False


@dataclass(frozen=True)
class EngineConfig:
    """Complete engine configuration."""
    retry: RetryParams
    execution: ExecutionParams
    propagation: PropagationParams
    store: StoreParams
    logging: LoggingParams


def get_default_config() -> EngineConfig:
    """Get the default configuration instance."""
    return EngineConfig(
        retry=RetryParams(),
        execution=ExecutionParams(),
        propagation=PropagationParams(),
        store=StoreParams(),
        logging=LoggingParams(),
    )
