"""Credential acquisition and security audit logging.

This module enforces a secretless credential model:
- Credentials come from a managed identity, workload identity or an
  existing Azure CLI login of the pipeline agent
- NO client secrets or passwords are read from the environment

SECURITY INVARIANTS:
1. AZURE_CLIENT_SECRET and friends must never be present in the environment
2. EnvironmentCredential is always excluded from the credential chain
3. Every authorization write is recorded as a structured audit event
"""

from __future__ import annotations

import logging
import os

from azure.core.credentials import TokenCredential
from azure.identity import DefaultAzureCredential, ManagedIdentityCredential

logger = logging.getLogger(__name__)

# Environment variables that indicate credential leakage
FORBIDDEN_CREDENTIAL_ENV_VARS: tuple[str, ...] = (
    "AZURE_CLIENT_SECRET",
    "AZURE_CLIENT_CERTIFICATE_PATH",
    "AZURE_CLIENT_CERTIFICATE_PASSWORD",
    "AZURE_USERNAME",
    "AZURE_PASSWORD",
)

SECRETLESS_VIOLATION_MESSAGE = (
    "Detected {env_var} in the environment. Secret-based authentication is not "
    "allowed; sign in with a managed identity, workload identity or 'az login' instead."
)


class SecretlessViolationError(Exception):
    """Raised when a credential secret is found in the environment.

    This is a fatal error: no Azure call is made after it.
    """

    pass


def enforce_secretless_architecture() -> None:
    """Enforce that no credential secrets are present in the environment.

    Raises:
        SecretlessViolationError: If any credential environment variables detected.
    """
    for env_var in FORBIDDEN_CREDENTIAL_ENV_VARS:
        if os.environ.get(env_var):
            logger.critical(
                "Secretless architecture violation",
                extra={
                    "security_event": "credential_detected",
                    "env_var": env_var,
                    "action": "startup_blocked",
                },
            )
            raise SecretlessViolationError(SECRETLESS_VIOLATION_MESSAGE.format(env_var=env_var))

    logger.debug("Secretless architecture verified", extra={"security_event": "secretless_verified"})


def get_credential(managed_identity_client_id: str | None = None) -> TokenCredential:
    """Get a token credential after verifying the secretless model.

    Args:
        managed_identity_client_id: Client ID of a user-assigned managed
            identity. If None, the default chain (workload identity,
            managed identity, Azure CLI) is used without environment secrets.

    Raises:
        SecretlessViolationError: If credential environment variables detected.
    """
    enforce_secretless_architecture()

    if managed_identity_client_id:
        logger.info(
            "Using user-assigned managed identity",
            extra={
                "client_id": managed_identity_client_id[:8] + "..."
                if len(managed_identity_client_id) > 8
                else managed_identity_client_id
            },
        )
        return ManagedIdentityCredential(client_id=managed_identity_client_id)

    logger.info("Using default credential chain without environment secrets")
    return DefaultAzureCredential(exclude_environment_credential=True)


def log_security_audit_event(
    event_type: str,
    target_resource: str | None = None,
    action: str | None = None,
    result: str | None = None,
    principal_id: str | None = None,
) -> None:
    """Log a security-relevant audit event.

    All authorization and lock mutations are logged with structured data
    for SIEM ingestion.

    Args:
        event_type: Kind of object touched (role_definition, role_assignment, lock).
        target_resource: Resource id or scope being changed.
        action: Action being performed (create, update, delete).
        result: Result of the action (success, failure, skipped).
        principal_id: Principal the change applies to, if any.
    """
    logger.info(
        f"Security audit: {event_type}",
        extra={
            "security_audit": True,
            "event_type": event_type,
            "target_resource": target_resource,
            "action": action,
            "result": result,
            "principal_id": principal_id,
        },
    )
