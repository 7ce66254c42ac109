"""Tests for secretless credential enforcement and audit events.

These tests verify that credential acquisition refuses secret-based
authentication and that audit events carry structured fields.
"""

from __future__ import annotations

import logging
import os
from unittest import mock

import pytest

from apim_rbac.security import (
    FORBIDDEN_CREDENTIAL_ENV_VARS,
    SecretlessViolationError,
    enforce_secretless_architecture,
    get_credential,
    log_security_audit_event,
)


class TestSecretlessEnforcement:
    """Tests for secretless architecture enforcement."""

    def test_clean_environment_passes(self) -> None:
        """Test that enforcement passes with no credential env vars."""
        with mock.patch.dict(os.environ, {}, clear=True):
            enforce_secretless_architecture()

    @pytest.mark.parametrize("env_var", FORBIDDEN_CREDENTIAL_ENV_VARS)
    def test_forbidden_env_var_raises(self, env_var: str) -> None:
        """Test that each forbidden env var raises SecretlessViolationError."""
        with mock.patch.dict(os.environ, {env_var: "some-secret-value"}, clear=True):
            with pytest.raises(SecretlessViolationError) as exc_info:
                enforce_secretless_architecture()

        assert env_var in str(exc_info.value)

    def test_empty_value_is_not_a_violation(self) -> None:
        """Test that a blank variable is treated as unset."""
        with mock.patch.dict(os.environ, {"AZURE_CLIENT_SECRET": ""}, clear=True):
            enforce_secretless_architecture()


class TestGetCredential:
    """Tests for credential selection."""

    def test_rejects_secret_env_var(self) -> None:
        """Test that get_credential enforces secretless before building anything."""
        with mock.patch.dict(os.environ, {"AZURE_CLIENT_SECRET": "secret"}, clear=True):
            with pytest.raises(SecretlessViolationError):
                get_credential()

    @mock.patch("apim_rbac.security.DefaultAzureCredential")
    def test_default_chain_excludes_environment(self, mock_default: mock.Mock) -> None:
        """Test that the default chain never reads environment secrets."""
        with mock.patch.dict(os.environ, {}, clear=True):
            result = get_credential()

        mock_default.assert_called_once_with(exclude_environment_credential=True)
        assert result is mock_default.return_value

    @mock.patch("apim_rbac.security.DefaultAzureCredential")
    @mock.patch("apim_rbac.security.ManagedIdentityCredential")
    def test_user_assigned_with_client_id(
        self, mock_managed: mock.Mock, mock_default: mock.Mock
    ) -> None:
        """Test that a client id selects the user-assigned managed identity."""
        client_id = "test-client-id-12345"

        with mock.patch.dict(os.environ, {}, clear=True):
            result = get_credential(client_id)

        mock_managed.assert_called_once_with(client_id=client_id)
        mock_default.assert_not_called()
        assert result is mock_managed.return_value


class TestForbiddenEnvVarsList:
    """Tests for the forbidden environment variables list."""

    def test_contains_secret_and_password_credentials(self) -> None:
        assert "AZURE_CLIENT_SECRET" in FORBIDDEN_CREDENTIAL_ENV_VARS
        assert "AZURE_PASSWORD" in FORBIDDEN_CREDENTIAL_ENV_VARS
        assert "AZURE_CLIENT_CERTIFICATE_PASSWORD" in FORBIDDEN_CREDENTIAL_ENV_VARS

    def test_list_is_tuple(self) -> None:
        """Test that the list is immutable (tuple, not list)."""
        assert isinstance(FORBIDDEN_CREDENTIAL_ENV_VARS, tuple)


class TestAuditEvents:
    """Tests for structured audit logging."""

    def test_audit_event_fields(self, caplog: pytest.LogCaptureFixture) -> None:
        """Test that audit events carry the structured fields."""
        with caplog.at_level(logging.INFO, logger="apim_rbac.security"):
            log_security_audit_event(
                "lock", target_resource="lock-1", action="delete", result="success"
            )

        record = caplog.records[-1]
        assert record.security_audit is True
        assert record.event_type == "lock"
        assert record.target_resource == "lock-1"
        assert record.action == "delete"
        assert record.result == "success"
