"""Identity resolution for user and group principals.

The caller supplies a free-form identity string. Whether it names a user
or a group is only a guess (an ``@`` suggests a user principal name), so
resolution tries the hinted kind first and the other kind second. The
confirmed kind is what matters downstream: it is part of the derived
role name.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .client import AuthorizationClient
from .models import Identity, IdentityKind

logger = logging.getLogger(__name__)


class IdentityResolutionError(Exception):
    """Raised when an identity matches neither a user nor a group."""

    pass


@dataclass(frozen=True)
class ResolvedIdentity:
    """Result of resolving an identity string."""

    identity: Identity
    hinted_kind: IdentityKind

    @property
    def kind(self) -> IdentityKind:
        return self.identity.kind

    @property
    def kind_changed(self) -> bool:
        """True when the directory confirmed a different kind than the hint."""
        return self.identity.kind != self.hinted_kind


def guess_kind(raw: str) -> IdentityKind:
    """Guess the principal kind from the identity string."""
    return IdentityKind.USER if "@" in raw else IdentityKind.GROUP


class IdentityResolver:
    """Resolve an identity string to a directory principal.

    Lookups are assumed read-consistent, so there are no retries here:
    the hinted kind is tried, then the other kind, then resolution fails.
    """

    def __init__(self, client: AuthorizationClient) -> None:
        self._client = client

    def resolve(self, raw: str) -> ResolvedIdentity:
        """Resolve ``raw`` to a principal.

        Raises:
            IdentityResolutionError: If neither kind matches.
        """
        name = raw.strip()
        if not name:
            raise IdentityResolutionError("Identity must not be empty")

        hinted = guess_kind(name)
        logger.info(
            "Identity kind guessed from name",
            extra={"identity": name, "hinted_kind": hinted.value},
        )

        for kind in (hinted, hinted.other):
            identity = self._client.find_principal(name, kind)
            if identity is not None and identity.id:
                resolved = ResolvedIdentity(identity=identity, hinted_kind=hinted)
                if resolved.kind_changed:
                    logger.warning(
                        "Identity resolved as a different kind than guessed",
                        extra={
                            "identity": name,
                            "hinted_kind": hinted.value,
                            "confirmed_kind": kind.value,
                        },
                    )
                logger.info(
                    "Identity confirmed",
                    extra={"identity": name, "kind": kind.value, "object_id": identity.id},
                )
                return resolved
            logger.warning(
                "Identity not found as this kind",
                extra={"identity": name, "kind": kind.value},
            )

        raise IdentityResolutionError(
            f"Failed to find identity as either {hinted.value} or {hinted.other.value}: {name}"
        )


def role_name_segment(raw: str, identity: Identity) -> str:
    """Derive the identity part of a role name.

    Users supplied as an email use the local part. Users supplied any other
    way use the local part of their user principal name, falling back to
    the display name. Groups use the display name, falling back to the
    raw input. Spaces become dashes.
    """
    raw = raw.strip()
    if identity.kind == IdentityKind.USER:
        if "@" in raw:
            return raw.split("@", 1)[0]
        if identity.user_principal_name:
            return identity.user_principal_name.split("@", 1)[0]
        if identity.display_name:
            return identity.display_name.replace(" ", "-")
        return raw.replace(" ", "-")

    if identity.display_name:
        return identity.display_name.replace(" ", "-")
    return raw.replace(" ", "-")
