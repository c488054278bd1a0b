"""Configuration management with validation.

Limits are enforced at configuration load time so a misconfigured run fails
before it reads the declaration or touches the state store.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class EmptyReplaceKeyPolicy(str, Enum):
    """How an empty ``replace_key_with`` redirect target is interpreted."""

    ROOT = "root"  # Redirect to the domain root
    EMPTY_SEGMENT = "empty-segment"  # Keep the empty path segment as declared


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_STATE_DIR = ".provisioner"

DEFAULT_MAX_WORKERS = 4
MIN_MAX_WORKERS = 1
MAX_MAX_WORKERS = 32

DEFAULT_PROVIDER_TIMEOUT_SECONDS = 120
DEFAULT_PROVIDER_MAX_RETRIES = 3
DEFAULT_RETRY_BACKOFF_BASE_SECONDS = 1.0

DEFAULT_VALIDATION_TIMEOUT_SECONDS = 1800
MAX_VALIDATION_TIMEOUT_SECONDS = 7200
DEFAULT_VALIDATION_POLL_INITIAL_SECONDS = 5.0
DEFAULT_VALIDATION_POLL_MAX_SECONDS = 60.0
DEFAULT_VALIDATION_MAX_POLLS = 120

# Input size limits
MAX_SPEC_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max declaration
MAX_MAPPING_FILE_SIZE_BYTES = 5 * 1024 * 1024  # 5MB max mapping source
MAX_PLAN_FILE_SIZE_BYTES = 20 * 1024 * 1024
MAX_MAPPING_ENTRIES = 10000
MAX_RESOURCES_PER_GRAPH = 20000


@dataclass(frozen=True)
class Config:
    """Engine configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-apply.
    """

    state_dir: Path = field(default_factory=lambda: Path(DEFAULT_STATE_DIR))

    # Executor
    max_workers: int = DEFAULT_MAX_WORKERS
    provider_timeout_seconds: float = DEFAULT_PROVIDER_TIMEOUT_SECONDS
    provider_max_retries: int = DEFAULT_PROVIDER_MAX_RETRIES
    retry_backoff_base_seconds: float = DEFAULT_RETRY_BACKOFF_BASE_SECONDS

    # Validation polling
    validation_timeout_seconds: float = DEFAULT_VALIDATION_TIMEOUT_SECONDS
    validation_poll_initial_seconds: float = DEFAULT_VALIDATION_POLL_INITIAL_SECONDS
    validation_poll_max_seconds: float = DEFAULT_VALIDATION_POLL_MAX_SECONDS
    validation_max_polls: int = DEFAULT_VALIDATION_MAX_POLLS

    # Declaration behavior
    empty_replace_key: EmptyReplaceKeyPolicy | None = None

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not (MIN_MAX_WORKERS <= self.max_workers <= MAX_MAX_WORKERS):
            errors.append(
                f"MAX_WORKERS must be between {MIN_MAX_WORKERS} and {MAX_MAX_WORKERS}"
            )

        if self.provider_timeout_seconds <= 0:
            errors.append("PROVIDER_TIMEOUT must be positive")

        if self.provider_max_retries < 1:
            errors.append("PROVIDER_MAX_RETRIES must be at least 1")

        if self.retry_backoff_base_seconds < 0:
            errors.append("RETRY_BACKOFF_BASE cannot be negative")

        if not (0 < self.validation_timeout_seconds <= MAX_VALIDATION_TIMEOUT_SECONDS):
            errors.append(
                f"VALIDATION_TIMEOUT must be between 1 and {MAX_VALIDATION_TIMEOUT_SECONDS} seconds"
            )

        if self.validation_poll_initial_seconds < 0:
            errors.append("VALIDATION_POLL_INITIAL cannot be negative")

        if self.validation_poll_max_seconds < self.validation_poll_initial_seconds:
            errors.append("VALIDATION_POLL_MAX must be >= VALIDATION_POLL_INITIAL")

        if self.validation_max_polls < 1:
            errors.append("VALIDATION_MAX_POLLS must be at least 1")

        if self.state_dir.exists() and not self.state_dir.is_dir():
            errors.append(f"STATE_DIR is not a directory: {self.state_dir}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            STATE_DIR: State store root (default: .provisioner)
            MAX_WORKERS: Changes applied concurrently (default: 4)
            PROVIDER_TIMEOUT: Timeout for a single provider call in seconds (default: 120)
            PROVIDER_MAX_RETRIES: Attempts for retryable provider errors (default: 3)
            RETRY_BACKOFF_BASE: Backoff base in seconds (default: 1.0)
            VALIDATION_TIMEOUT: Deadline for external validation in seconds (default: 1800)
            VALIDATION_POLL_INITIAL: First validation poll delay (default: 5)
            VALIDATION_POLL_MAX: Validation poll delay cap (default: 60)
            VALIDATION_MAX_POLLS: Maximum validation polls (default: 120)
            EMPTY_REPLACE_KEY: "root" or "empty-segment" (default: unset)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_policy(value: str | None) -> EmptyReplaceKeyPolicy | None:
            if not value:
                return None
            try:
                return EmptyReplaceKeyPolicy(value)
            except ValueError as e:
                valid = [p.value for p in EmptyReplaceKeyPolicy]
                raise ConfigurationError(f"EMPTY_REPLACE_KEY must be one of {valid}: {value}") from e

        return cls(
            state_dir=Path(os.environ.get("STATE_DIR", DEFAULT_STATE_DIR)),
            max_workers=get_int("MAX_WORKERS", DEFAULT_MAX_WORKERS),
            provider_timeout_seconds=get_float(
                "PROVIDER_TIMEOUT", DEFAULT_PROVIDER_TIMEOUT_SECONDS
            ),
            provider_max_retries=get_int("PROVIDER_MAX_RETRIES", DEFAULT_PROVIDER_MAX_RETRIES),
            retry_backoff_base_seconds=get_float(
                "RETRY_BACKOFF_BASE", DEFAULT_RETRY_BACKOFF_BASE_SECONDS
            ),
            validation_timeout_seconds=get_float(
                "VALIDATION_TIMEOUT", DEFAULT_VALIDATION_TIMEOUT_SECONDS
            ),
            validation_poll_initial_seconds=get_float(
                "VALIDATION_POLL_INITIAL", DEFAULT_VALIDATION_POLL_INITIAL_SECONDS
            ),
            validation_poll_max_seconds=get_float(
                "VALIDATION_POLL_MAX", DEFAULT_VALIDATION_POLL_MAX_SECONDS
            ),
            validation_max_polls=get_int("VALIDATION_MAX_POLLS", DEFAULT_VALIDATION_MAX_POLLS),
            empty_replace_key=get_policy(os.environ.get("EMPTY_REPLACE_KEY")),
        )
