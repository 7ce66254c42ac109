"""Least-privilege role definition synthesis.

A role definition is derived, never stored: its name is a pure function of
the principal kind, the principal name and the managed resource, so every
run can find the definition it created earlier by re-deriving the name.

LEAST-PRIVILEGE BOUNDARY:
The permission set for each granularity is a fixed allow-list minus a
fixed deny-list. The deny-list always excludes deleting or rewriting the
API itself and everything above API scope (revisions, schemas, users,
gateways). Operation-level grants additionally cannot touch API-level
policies.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

from .client import (
    AlreadyExistsError,
    AuthorizationClient,
    AuthorizationError,
    BackendError,
    NotFoundError,
    TransientBackendError,
)
from .config import RetryPolicy
from .models import (
    PROTECTED_ACTIONS,
    Identity,
    IdentityKind,
    RoleAssignment,
    RoleDefinitionPayload,
    RoleDefinitionRecord,
)
from .scopes import APIM_PROVIDER_SEGMENT
from .security import log_security_audit_event

logger = logging.getLogger(__name__)

SERVICE = "Microsoft.ApiManagement/service"

# Role names containing any of these may override the custom role's restrictions
HIGH_PRIVILEGE_MARKERS: tuple[str, ...] = ("Owner", "Contributor", "Administrator")

# Namespace for deterministic role definition GUIDs
ROLE_DEFINITION_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_URL, "apim-rbac/role-definitions")


class Granularity(str, Enum):
    """Resource level a synthesized role is scoped to."""

    API = "api"
    OPERATION = "operation"


class RoleAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"


class RoleDefinitionWriteError(Exception):
    """Raised when creating or updating the role definition keeps failing."""

    pass


@dataclass(frozen=True)
class PermissionSet:
    allow: tuple[str, ...]
    deny: tuple[str, ...]

    @property
    def actions(self) -> list[str]:
        """Allow-list minus deny-list, in declaration order."""
        denied = set(self.deny) | PROTECTED_ACTIONS
        return [a for a in self.allow if a not in denied]

    @property
    def not_actions(self) -> list[str]:
        return list(self.deny)


PERMISSIONS: dict[Granularity, PermissionSet] = {
    Granularity.API: PermissionSet(
        allow=(
            f"{SERVICE}/apis/read",
            f"{SERVICE}/apis/operations/read",
            f"{SERVICE}/apis/operations/write",
            f"{SERVICE}/apis/operations/delete",
            f"{SERVICE}/apis/policies/read",
            f"{SERVICE}/apis/operations/policies/read",
            f"{SERVICE}/apis/operations/policies/write",
            f"{SERVICE}/apis/operations/policies/delete",
        ),
        deny=(
            f"{SERVICE}/apis/write",
            f"{SERVICE}/apis/delete",
            f"{SERVICE}/apis/revisions/*",
            f"{SERVICE}/apis/schemas/*",
            f"{SERVICE}/users/*",
            f"{SERVICE}/gateways/*",
        ),
    ),
    Granularity.OPERATION: PermissionSet(
        allow=(
            f"{SERVICE}/apis/read",
            f"{SERVICE}/apis/operations/read",
            f"{SERVICE}/apis/operations/write",
            f"{SERVICE}/apis/operations/policies/read",
            f"{SERVICE}/apis/operations/policies/write",
        ),
        deny=(
            f"{SERVICE}/apis/write",
            f"{SERVICE}/apis/delete",
            f"{SERVICE}/apis/policies/write",
            f"{SERVICE}/apis/policies/delete",
            f"{SERVICE}/apis/revisions/*",
            f"{SERVICE}/apis/schemas/*",
            f"{SERVICE}/users/*",
            f"{SERVICE}/gateways/*",
        ),
    ),
}


def permissions_for(granularity: Granularity) -> PermissionSet:
    return PERMISSIONS[granularity]


def derive_role_name(
    granularity: Granularity,
    kind: IdentityKind,
    identity_name: str,
    resource_name: str | None = None,
) -> str:
    """Derive the role definition name.

    API-level roles cover every API granted to the principal, so the
    resource part is the literal ``APIs``. Operation-level roles are per API.
    """
    if granularity == Granularity.API:
        return f"ApiRole-{kind.value}-{identity_name}-APIs"
    if not resource_name:
        raise ValueError("Operation-level roles require the API name")
    return f"OperationRole-{kind.value}-{identity_name}-{resource_name}"


def role_definition_guid(role_name: str) -> str:
    """Deterministic GUID for a new definition, so a retried create is idempotent."""
    return str(uuid.uuid5(ROLE_DEFINITION_NAMESPACE, role_name))


def build_role_definition(
    granularity: Granularity,
    role_name: str,
    assignable_scopes: list[str],
    resource_name: str | None = None,
) -> RoleDefinitionPayload:
    """Build the role definition payload for ``granularity``."""
    permissions = permissions_for(granularity)
    if granularity == Granularity.API:
        description = (
            "Custom role to allow API management within specific APIs in APIM "
            "while providing read-only access to other resources."
        )
    else:
        description = (
            f"Custom role for managing specific operations within the {resource_name} API in APIM"
        )
    return RoleDefinitionPayload(
        name=role_name,
        description=description,
        actions=permissions.actions,
        not_actions=permissions.not_actions,
        data_actions=[],
        not_data_actions=[],
        assignable_scopes=list(assignable_scopes),
    )


@dataclass(frozen=True)
class ConflictWarning:
    """A co-existing high-privilege role that may override the custom role."""

    role_name: str
    scope: str


def find_conflicts(assignments: list[RoleAssignment]) -> list[ConflictWarning]:
    """Return high-privilege assignments outside the API Management namespace."""
    conflicts: list[ConflictWarning] = []
    for assignment in assignments:
        name = assignment.role_definition_name or ""
        if not any(marker in name for marker in HIGH_PRIVILEGE_MARKERS):
            continue
        if APIM_PROVIDER_SEGMENT.lower() in assignment.scope.lower():
            continue
        conflicts.append(ConflictWarning(role_name=name, scope=assignment.scope))
    return conflicts


@dataclass(frozen=True)
class RolePlan:
    """What the synthesizer intends to do with one role definition."""

    action: RoleAction
    payload: RoleDefinitionPayload
    existing: RoleDefinitionRecord | None = None
    conflicts: list[ConflictWarning] = field(default_factory=list)

    @property
    def role_name(self) -> str:
        return self.payload.name


@dataclass(frozen=True)
class RoleWriteResult:
    """The definition as written and whether it was created or updated."""

    record: RoleDefinitionRecord
    action: RoleAction


class RoleDefinitionSynthesizer:
    """Plan and apply the custom role definition for one principal."""

    def __init__(
        self,
        client: AuthorizationClient,
        policy: RetryPolicy,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._client = client
        self._policy = policy
        self._sleep = sleep

    def find(self, role_name: str, scope: str | None = None) -> RoleDefinitionRecord | None:
        definitions = self._client.list_role_definitions(role_name, scope)
        return definitions[0] if definitions else None

    def audit_conflicts(self, principal: Identity) -> list[ConflictWarning]:
        """List the principal's effective assignments and log high-privilege ones.

        Never fatal: a failure to list is logged and yields no conflicts,
        except for authorization failures which abort like everywhere else.
        """
        try:
            assignments = self._client.list_role_assignments(
                principal_id=principal.id, include_inherited=True
            )
        except AuthorizationError:
            raise
        except BackendError as e:
            logger.warning(
                "Could not retrieve existing role assignments",
                extra={"principal_id": principal.id, "error": str(e)},
            )
            return []

        logger.info(
            "Current role assignments",
            extra={
                "principal_id": principal.id,
                "assignments": [
                    {"role": a.role_definition_name, "scope": a.scope} for a in assignments
                ],
            },
        )

        conflicts = find_conflicts(assignments)
        for conflict in conflicts:
            logger.warning(
                "Higher-level role might override custom role restrictions",
                extra={
                    "principal_id": principal.id,
                    "role": conflict.role_name,
                    "scope": conflict.scope,
                },
            )
        return conflicts

    def _find_with_retry(self, role_name: str) -> RoleDefinitionRecord | None:
        """``find`` with the role-write backoff; the last attempt's error propagates."""
        for attempt in range(1, self._policy.attempts):
            try:
                return self.find(role_name)
            except TransientBackendError as e:
                wait_time = self._policy.linear_wait(attempt)
                logger.warning(
                    "Role definition lookup failed, retrying",
                    extra={
                        "role": role_name,
                        "attempt": attempt,
                        "max_attempts": self._policy.attempts,
                        "wait_seconds": wait_time,
                        "error": str(e),
                    },
                )
                self._sleep(wait_time)
        return self.find(role_name)

    def plan(
        self,
        principal: Identity,
        granularity: Granularity,
        role_name: str,
        assignable_scopes: list[str],
        resource_name: str | None = None,
    ) -> RolePlan:
        """Decide between create and update for ``role_name``.

        On update, co-existing high-privilege assignments are collected as
        conflict warnings.
        """
        payload = build_role_definition(granularity, role_name, assignable_scopes, resource_name)
        existing = self._find_with_retry(role_name)
        if existing is None:
            logger.info("Role does not exist. Creating a new role.", extra={"role": role_name})
            return RolePlan(action=RoleAction.CREATE, payload=payload)

        logger.info("Role already exists. Modifying the role.", extra={"role": role_name})
        return RolePlan(
            action=RoleAction.UPDATE,
            payload=payload,
            existing=existing,
            conflicts=self.audit_conflicts(principal),
        )

    def _write(self, plan: RolePlan) -> RoleWriteResult:
        if plan.action == RoleAction.UPDATE and plan.existing is not None:
            record = self._client.update_role_definition(plan.existing, plan.payload)
            return RoleWriteResult(record, RoleAction.UPDATE)
        try:
            record = self._client.create_role_definition(
                plan.payload, role_definition_guid(plan.role_name)
            )
            return RoleWriteResult(record, RoleAction.CREATE)
        except AlreadyExistsError:
            # Created by an earlier, interrupted run: switch to update
            existing = self.find(plan.role_name)
            if existing is None:
                raise
            record = self._client.update_role_definition(existing, plan.payload)
            return RoleWriteResult(record, RoleAction.UPDATE)

    def apply(self, plan: RolePlan) -> RoleWriteResult:
        """Create or update the role definition with bounded linear backoff.

        Raises:
            AuthorizationError: Immediately, on a permission failure.
            RoleDefinitionWriteError: When retries are exhausted or the
                payload is rejected as invalid.
        """
        logger.info("Role definition payload", extra={"role_definition": plan.payload.to_json()})
        last_error: BackendError | None = None

        for attempt in range(1, self._policy.attempts + 1):
            try:
                written = self._write(plan)
            except AuthorizationError:
                logger.error(
                    "Not permitted to write role definitions. "
                    "Check for 'Microsoft.Authorization/roleDefinitions/write'.",
                    extra={"role": plan.role_name},
                )
                raise
            except (TransientBackendError, NotFoundError) as e:
                last_error = e
                if attempt < self._policy.attempts:
                    wait_time = self._policy.linear_wait(attempt)
                    logger.warning(
                        "Role definition write failed, retrying",
                        extra={
                            "role": plan.role_name,
                            "attempt": attempt,
                            "max_attempts": self._policy.attempts,
                            "wait_seconds": wait_time,
                            "error": str(e),
                        },
                    )
                    self._sleep(wait_time)
                continue
            except BackendError as e:
                raise RoleDefinitionWriteError(
                    f"Failed to {plan.action.value} role definition '{plan.role_name}': {e}"
                ) from e

            logger.info(
                "Role definition written",
                extra={
                    "role": plan.role_name,
                    "role_id": written.record.id,
                    "action": written.action.value,
                },
            )
            log_security_audit_event(
                "role_definition",
                target_resource=written.record.id,
                action=written.action.value,
                result="success",
            )
            return written

        raise RoleDefinitionWriteError(
            f"Failed to {plan.action.value} role definition '{plan.role_name}' "
            f"after {self._policy.attempts} attempts: {last_error}"
        )
