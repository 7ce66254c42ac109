"""Configuration management with validation.

Wait and retry bounds for the reconcilers are loaded from the environment
and validated at load time so that a bad value fails the run before any
authorization write is attempted.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, replace


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Propagation waits (seconds)
DEFAULT_ROLE_PROPAGATION_WAIT_SECONDS = 90
DEFAULT_ASSIGNMENT_RETRY_WAIT_SECONDS = 20
DEFAULT_VERIFY_WAIT_SECONDS = 15
DEFAULT_DELETION_WAIT_SECONDS = 60
DEFAULT_ROLE_WRITE_RETRY_WAIT_SECONDS = 10
ASSIGNMENT_DELETE_PAUSE_SECONDS = 2

# Retry bounds
DEFAULT_ASSIGNMENT_RETRIES = 5
DEFAULT_VERIFY_RETRIES = 8
DEFAULT_DELETION_RETRIES = 10
DEFAULT_ROLE_WRITE_RETRIES = 3

MAX_RETRIES = 50
MAX_WAIT_SECONDS = 3600

# Input validation patterns
VALID_SUBSCRIPTION_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
MAX_RESOURCE_GROUP_NAME_LENGTH = 90


@dataclass(frozen=True)
class RetryPolicy:
    """Bounds for one retry loop.

    The loop makes at most ``attempts`` attempts; ``wait_seconds`` is the
    base wait that the caller scales per attempt.
    """

    attempts: int
    wait_seconds: float

    def linear_wait(self, attempt: int) -> float:
        """Wait before the next attempt: base wait times the attempt number."""
        return self.wait_seconds * attempt


@dataclass(frozen=True)
class Config:
    """Reconciler configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-run.
    """

    subscription_id: str | None = None
    managed_identity_client_id: str | None = None

    role_propagation_wait_seconds: float = DEFAULT_ROLE_PROPAGATION_WAIT_SECONDS

    assignment_retries: int = DEFAULT_ASSIGNMENT_RETRIES
    assignment_retry_wait_seconds: float = DEFAULT_ASSIGNMENT_RETRY_WAIT_SECONDS

    verify_retries: int = DEFAULT_VERIFY_RETRIES
    verify_wait_seconds: float = DEFAULT_VERIFY_WAIT_SECONDS

    deletion_retries: int = DEFAULT_DELETION_RETRIES
    deletion_wait_seconds: float = DEFAULT_DELETION_WAIT_SECONDS

    role_write_retries: int = DEFAULT_ROLE_WRITE_RETRIES
    role_write_retry_wait_seconds: float = DEFAULT_ROLE_WRITE_RETRY_WAIT_SECONDS

    assignment_delete_pause_seconds: float = ASSIGNMENT_DELETE_PAUSE_SECONDS

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if self.subscription_id and not re.match(
            VALID_SUBSCRIPTION_ID_PATTERN, self.subscription_id.lower()
        ):
            errors.append(f"AZURE_SUBSCRIPTION_ID must be a valid GUID: {self.subscription_id}")

        for key, value in (
            ("ROLE_ASSIGNMENT_RETRIES", self.assignment_retries),
            ("ROLE_VERIFY_RETRIES", self.verify_retries),
            ("ROLE_DELETION_RETRIES", self.deletion_retries),
            ("ROLE_WRITE_RETRIES", self.role_write_retries),
        ):
            if not (1 <= value <= MAX_RETRIES):
                errors.append(f"{key} must be between 1 and {MAX_RETRIES}: {value}")

        for key, wait in (
            ("ROLE_PROPAGATION_WAIT", self.role_propagation_wait_seconds),
            ("ROLE_ASSIGNMENT_RETRY_WAIT", self.assignment_retry_wait_seconds),
            ("ROLE_VERIFY_WAIT", self.verify_wait_seconds),
            ("ROLE_DELETION_WAIT", self.deletion_wait_seconds),
            ("ROLE_WRITE_RETRY_WAIT", self.role_write_retry_wait_seconds),
        ):
            if not (0 <= wait <= MAX_WAIT_SECONDS):
                errors.append(f"{key} must be between 0 and {MAX_WAIT_SECONDS} seconds: {wait}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def assignment_policy(self) -> RetryPolicy:
        return RetryPolicy(self.assignment_retries, self.assignment_retry_wait_seconds)

    @property
    def verify_policy(self) -> RetryPolicy:
        return RetryPolicy(self.verify_retries, self.verify_wait_seconds)

    @property
    def deletion_policy(self) -> RetryPolicy:
        return RetryPolicy(self.deletion_retries, self.deletion_wait_seconds)

    @property
    def role_write_policy(self) -> RetryPolicy:
        return RetryPolicy(self.role_write_retries, self.role_write_retry_wait_seconds)

    def with_subscription(self, subscription_id: str) -> Config:
        """Return a copy bound to ``subscription_id``."""
        return replace(self, subscription_id=subscription_id)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            AZURE_SUBSCRIPTION_ID: Default subscription for lock and removal tools
            MANAGED_IDENTITY_CLIENT_ID: Client ID of a user-assigned managed identity
            ROLE_PROPAGATION_WAIT: Seconds to wait after a role definition write (default: 90)
            ROLE_ASSIGNMENT_RETRIES: Create attempts per scope (default: 5)
            ROLE_ASSIGNMENT_RETRY_WAIT: Base wait for linear create backoff (default: 20)
            ROLE_VERIFY_RETRIES: Read-back polls per scope (default: 8)
            ROLE_VERIFY_WAIT: Base wait for escalating verify backoff (default: 15)
            ROLE_DELETION_RETRIES: Role definition delete attempts (default: 10)
            ROLE_DELETION_WAIT: Settle delay between delete attempts (default: 60)
            ROLE_WRITE_RETRIES: Role definition create/update attempts (default: 3)
            ROLE_WRITE_RETRY_WAIT: Base wait for create/update backoff (default: 10)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None or value == "":
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None or value == "":
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        return cls(
            subscription_id=os.environ.get("AZURE_SUBSCRIPTION_ID") or None,
            managed_identity_client_id=os.environ.get("MANAGED_IDENTITY_CLIENT_ID") or None,
            role_propagation_wait_seconds=get_float(
                "ROLE_PROPAGATION_WAIT", DEFAULT_ROLE_PROPAGATION_WAIT_SECONDS
            ),
            assignment_retries=get_int("ROLE_ASSIGNMENT_RETRIES", DEFAULT_ASSIGNMENT_RETRIES),
            assignment_retry_wait_seconds=get_float(
                "ROLE_ASSIGNMENT_RETRY_WAIT", DEFAULT_ASSIGNMENT_RETRY_WAIT_SECONDS
            ),
            verify_retries=get_int("ROLE_VERIFY_RETRIES", DEFAULT_VERIFY_RETRIES),
            verify_wait_seconds=get_float("ROLE_VERIFY_WAIT", DEFAULT_VERIFY_WAIT_SECONDS),
            deletion_retries=get_int("ROLE_DELETION_RETRIES", DEFAULT_DELETION_RETRIES),
            deletion_wait_seconds=get_float("ROLE_DELETION_WAIT", DEFAULT_DELETION_WAIT_SECONDS),
            role_write_retries=get_int("ROLE_WRITE_RETRIES", DEFAULT_ROLE_WRITE_RETRIES),
            role_write_retry_wait_seconds=get_float(
                "ROLE_WRITE_RETRY_WAIT", DEFAULT_ROLE_WRITE_RETRY_WAIT_SECONDS
            ),
        )
