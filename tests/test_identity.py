"""Tests for identity resolution."""

from __future__ import annotations

import pytest

from apim_rbac.client import AuthorizationError
from apim_rbac.identity import (
    IdentityResolutionError,
    IdentityResolver,
    guess_kind,
    role_name_segment,
)
from apim_rbac.models import Identity, IdentityKind
from azure_mock import MockAuthorizationClient


class TestGuessKind:
    """Tests for the user/group heuristic."""

    def test_email_looks_like_user(self) -> None:
        assert guess_kind("alice@contoso.com") == IdentityKind.USER

    def test_name_looks_like_group(self) -> None:
        assert guess_kind("API Team") == IdentityKind.GROUP


class TestIdentityResolver:
    """Tests for IdentityResolver."""

    def test_user_confirmed(self, mock_client: MockAuthorizationClient) -> None:
        user = mock_client.add_user("alice@contoso.com")

        resolved = IdentityResolver(mock_client).resolve("alice@contoso.com")

        assert resolved.identity == user
        assert resolved.kind == IdentityKind.USER
        assert not resolved.kind_changed
        assert mock_client.call_count("find_principal") == 1

    def test_group_confirmed(self, mock_client: MockAuthorizationClient) -> None:
        group = mock_client.add_group("API Team")

        resolved = IdentityResolver(mock_client).resolve("  API Team ")

        assert resolved.identity.id == group.id
        assert resolved.kind == IdentityKind.GROUP

    def test_falls_back_to_other_kind(self, mock_client: MockAuthorizationClient) -> None:
        """Test that a group named like an email still resolves as a group."""
        group = mock_client.add_group("apim-admins@contoso.com")

        resolved = IdentityResolver(mock_client).resolve("apim-admins@contoso.com")

        assert resolved.identity.id == group.id
        assert resolved.hinted_kind == IdentityKind.USER
        assert resolved.kind == IdentityKind.GROUP
        assert resolved.kind_changed

    def test_user_object_id_falls_back_to_user(self, mock_client: MockAuthorizationClient) -> None:
        """Test that a bare object id hinted as a group can still be a user."""
        user = mock_client.add_user("bob@contoso.com", object_id="7f1d2c3b-0000-4000-8000-000000000001")

        resolved = IdentityResolver(mock_client).resolve(user.id)

        assert resolved.kind == IdentityKind.USER
        assert resolved.kind_changed

    def test_unknown_identity(self, mock_client: MockAuthorizationClient) -> None:
        with pytest.raises(IdentityResolutionError) as exc_info:
            IdentityResolver(mock_client).resolve("ghost@contoso.com")

        assert "ghost@contoso.com" in str(exc_info.value)
        assert mock_client.call_count("find_principal") == 2

    def test_empty_identity(self, mock_client: MockAuthorizationClient) -> None:
        with pytest.raises(IdentityResolutionError):
            IdentityResolver(mock_client).resolve("   ")

        assert mock_client.call_count("find_principal") == 0

    def test_directory_denied_propagates(self, mock_client: MockAuthorizationClient) -> None:
        mock_client.fail("find_principal", AuthorizationError("denied", status_code=403))

        with pytest.raises(AuthorizationError):
            IdentityResolver(mock_client).resolve("alice@contoso.com")


class TestRoleNameSegment:
    """Tests for the identity part of derived role names."""

    def test_user_email_uses_local_part(self) -> None:
        identity = Identity(id="u", kind=IdentityKind.USER, user_principal_name="alice@contoso.com")

        assert role_name_segment("alice@contoso.com", identity) == "alice"

    def test_user_object_id_uses_upn(self) -> None:
        identity = Identity(id="u", kind=IdentityKind.USER, user_principal_name="alice@contoso.com")

        assert role_name_segment("u", identity) == "alice"

    def test_group_uses_display_name(self) -> None:
        identity = Identity(id="g", kind=IdentityKind.GROUP, display_name="API Team")

        assert role_name_segment("API Team", identity) == "API-Team"

    def test_group_without_display_name(self) -> None:
        identity = Identity(id="g", kind=IdentityKind.GROUP)

        assert role_name_segment("Ops Group", identity) == "Ops-Group"
