"""Pydantic models for identities, role definitions, assignments and locks.

These models provide:
1. Typed records instead of ad hoc JSON field extraction
2. Validation at the process boundary (fail fast, fail loudly)
3. Tolerant reading of role definition payloads in either casing
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Annotated, Any

from pydantic import AliasChoices, BaseModel, Field, ValidationError, field_validator

# Actions that a synthesized role must never allow on the API resource type
PROTECTED_ACTIONS: frozenset[str] = frozenset(
    {
        "Microsoft.ApiManagement/service/apis/delete",
        "Microsoft.ApiManagement/service/apis/write",
    }
)


class InputError(Exception):
    """Raised for malformed command-line input (bad JSON, wrong shapes)."""

    pass


# =============================================================================
# Identity
# =============================================================================


class IdentityKind(str, Enum):
    """Directory principal kinds that can receive role assignments."""

    USER = "user"
    GROUP = "group"

    @property
    def other(self) -> IdentityKind:
        return IdentityKind.GROUP if self is IdentityKind.USER else IdentityKind.USER

    @property
    def principal_type(self) -> str:
        """Principal type string expected by the role assignment API."""
        return "User" if self is IdentityKind.USER else "Group"


class Identity(BaseModel):
    """A resolved directory principal."""

    model_config = {"frozen": True, "populate_by_name": True, "extra": "ignore"}

    id: Annotated[str, Field(min_length=1)]
    kind: IdentityKind
    display_name: str | None = Field(None, alias="displayName")
    user_principal_name: str | None = Field(None, alias="userPrincipalName")


# =============================================================================
# Role definitions and assignments
# =============================================================================


def _aliases(camel: str) -> AliasChoices:
    """Accept ``camelCase`` and ``PascalCase`` spellings of a field."""
    return AliasChoices(camel, camel[0].upper() + camel[1:])


class RoleDefinitionPayload(BaseModel):
    """Custom role definition body sent to the authorization backend.

    Reading accepts both ``actions`` and ``Actions`` style keys because
    different API versions and tools emit different casing. Serialization
    with ``by_alias=True`` always emits camelCase.
    """

    model_config = {"frozen": True, "populate_by_name": True, "extra": "ignore"}

    name: str = Field(
        min_length=1, max_length=512, alias="name", validation_alias=_aliases("name")
    )
    description: str = Field("", alias="description", validation_alias=_aliases("description"))
    actions: list[str] = Field(
        default_factory=list, alias="actions", validation_alias=_aliases("actions")
    )
    not_actions: list[str] = Field(
        default_factory=list, alias="notActions", validation_alias=_aliases("notActions")
    )
    data_actions: list[str] = Field(
        default_factory=list, alias="dataActions", validation_alias=_aliases("dataActions")
    )
    not_data_actions: list[str] = Field(
        default_factory=list, alias="notDataActions", validation_alias=_aliases("notDataActions")
    )
    assignable_scopes: list[str] = Field(
        alias="assignableScopes", validation_alias=_aliases("assignableScopes")
    )

    @field_validator("assignable_scopes")
    @classmethod
    def validate_scopes(cls, v: list[str]) -> list[str]:
        if not v:
            raise ValueError("assignableScopes must not be empty")
        return v

    @field_validator("actions")
    @classmethod
    def validate_actions(cls, v: list[str]) -> list[str]:
        forbidden = sorted(PROTECTED_ACTIONS.intersection(v))
        if forbidden:
            raise ValueError(f"actions must not include protected actions: {forbidden}")
        return v

    def to_json(self) -> str:
        return json.dumps(self.model_dump(by_alias=True), indent=2)


class RoleDefinitionRecord(BaseModel):
    """A role definition as it exists in the backend."""

    model_config = {"frozen": True, "populate_by_name": True, "extra": "ignore"}

    id: str
    name: str = Field(validation_alias=AliasChoices("roleName", "role_name"))
    role_type: str | None = Field(
        None, validation_alias=AliasChoices("roleType", "role_type", "type")
    )
    assignable_scopes: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("assignableScopes", "AssignableScopes", "assignable_scopes"),
    )

    @property
    def is_custom(self) -> bool:
        return (self.role_type or "").lower() == "customrole"

    @property
    def guid(self) -> str:
        """Trailing GUID segment of the definition id."""
        return self.id.rstrip("/").rsplit("/", 1)[-1]


class RoleAssignment(BaseModel):
    """A binding of one principal to one role definition at one scope."""

    model_config = {"frozen": True, "populate_by_name": True, "extra": "ignore"}

    id: str
    role_definition_id: str = Field(
        validation_alias=AliasChoices("roleDefinitionId", "role_definition_id")
    )
    principal_id: str = Field(validation_alias=AliasChoices("principalId", "principal_id"))
    scope: str
    role_definition_name: str | None = Field(
        None, validation_alias=AliasChoices("roleDefinitionName", "role_definition_name")
    )


def same_role(role_definition_id: str, other_id: str) -> bool:
    """Compare role definition ids by their trailing GUID.

    Assignment records carry subscription-qualified definition ids while
    definition listings may be scoped differently.
    """
    left = role_definition_id.rstrip("/").rsplit("/", 1)[-1].lower()
    right = other_id.rstrip("/").rsplit("/", 1)[-1].lower()
    return left == right


def same_scope(left: str, right: str) -> bool:
    """ARM scopes compare case-insensitively and ignore a trailing slash."""
    return left.rstrip("/").lower() == right.rstrip("/").lower()


# =============================================================================
# Locks
# =============================================================================


class LockLevel(str, Enum):
    """Management lock levels."""

    CAN_NOT_DELETE = "CanNotDelete"
    READ_ONLY = "ReadOnly"


class ResourceLock(BaseModel):
    """One entry of a lock snapshot.

    ``name`` and ``level`` are optional on read so that a snapshot supplied
    by a caller can be restored partially; entries missing either are
    skipped at restore time.
    """

    model_config = {"frozen": True, "extra": "ignore"}

    id: str | None = None
    level: LockLevel | None = None
    name: str | None = None
    notes: str | None = None

    @field_validator("name", mode="before")
    @classmethod
    def blank_name_is_missing(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator("level", mode="before")
    @classmethod
    def blank_level_is_missing(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v


# =============================================================================
# Outcomes
# =============================================================================


class OutcomeStatus(str, Enum):
    """Result of one unit of work (one scope, one role, one lock)."""

    SUCCEEDED = "succeeded"
    UNCHANGED = "unchanged"
    SKIPPED = "skipped"
    UNVERIFIED = "unverified"
    FAILED = "failed"


@dataclass(frozen=True)
class UnitOutcome:
    """Outcome of one unit of work, accumulated by the reconcilers."""

    unit: str
    status: OutcomeStatus
    detail: str = ""

    @property
    def failed(self) -> bool:
        return self.status == OutcomeStatus.FAILED


def summarize(outcomes: list[UnitOutcome]) -> dict[str, int]:
    """Count outcomes per status for the final run summary."""
    counts: dict[str, int] = {}
    for outcome in outcomes:
        counts[outcome.status.value] = counts.get(outcome.status.value, 0) + 1
    return counts


# =============================================================================
# Boundary parsing
# =============================================================================


def _load_json(raw: str | None, what: str) -> Any:
    if raw is None or not raw.strip():
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise InputError(f"Invalid JSON format for {what}: {e.msg}") from e


def parse_name_list(raw: str | None, what: str = "names") -> list[str]:
    """Parse a JSON array of names.

    ``None``, an empty string and JSON ``null`` all yield an empty list.

    Raises:
        InputError: If the input is not JSON or not an array of strings.
    """
    data = _load_json(raw, what)
    if data is None:
        return []
    if not isinstance(data, list) or not all(isinstance(item, str) for item in data):
        raise InputError(f"{what} must be a JSON array of strings")
    return data


def parse_lock_snapshot(raw: str | None) -> list[ResourceLock]:
    """Parse a lock snapshot JSON array into ResourceLock values.

    Raises:
        InputError: If the input is not a JSON array of lock objects.
    """
    data = _load_json(raw, "locks")
    if data is None:
        return []
    if not isinstance(data, list):
        raise InputError("locks must be a JSON array")
    try:
        return [ResourceLock.model_validate(item) for item in data]
    except ValidationError as e:
        raise InputError(f"Invalid lock entry: {e}") from e


def dump_lock_snapshot(locks: list[ResourceLock]) -> str:
    """Serialize a snapshot as a compact JSON array of ``{id, level, name, notes}``."""
    return json.dumps([lock.model_dump(mode="json") for lock in locks])
