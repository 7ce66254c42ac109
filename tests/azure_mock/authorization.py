"""In-memory authorization backend.

Implements the AuthorizationClient protocol with dictionaries so the
reconcilers can be exercised without Azure connectivity. Supports:
- user and group directory entries (with group membership)
- built-in and custom role definitions with assignable scopes
- role assignments with optional read-after-write lag
- existing API Management resources for scope probes
- resource group locks
- error injection per method
"""

from __future__ import annotations

import uuid
from collections import defaultdict
from typing import Any

from apim_rbac.client import (
    AlreadyExistsError,
    NotFoundError,
    PermanentBackendError,
    TransientBackendError,
)
from apim_rbac.models import (
    Identity,
    IdentityKind,
    ResourceLock,
    RoleAssignment,
    RoleDefinitionPayload,
    RoleDefinitionRecord,
    same_role,
    same_scope,
)

SUBSCRIPTION_ID = "12345678-1234-1234-1234-123456789012"
RESOURCE_GROUP = "rg-apim"
SERVICE_NAME = "apim-test"
SERVICE_SCOPE = (
    f"/subscriptions/{SUBSCRIPTION_ID}/resourceGroups/{RESOURCE_GROUP}"
    f"/providers/Microsoft.ApiManagement/service/{SERVICE_NAME}"
)

BUILT_IN_ROLES = (
    "API Management Service Reader Role",
    "API Management Service Contributor",
    "Owner",
    "Contributor",
    "Reader",
)


def _within(scope: str, parent: str) -> bool:
    scope = scope.rstrip("/").lower()
    parent = parent.rstrip("/").lower()
    return parent == "" or scope == parent or scope.startswith(parent + "/")


class MockAuthorizationClient:
    """Fake authorization backend with inspectable state."""

    def __init__(self, subscription_id: str = SUBSCRIPTION_ID) -> None:
        self.subscription_id = subscription_id
        self.users: dict[str, Identity] = {}
        self.groups: dict[str, Identity] = {}
        self.memberships: dict[str, set[str]] = defaultdict(set)
        self.role_definitions: dict[str, RoleDefinitionRecord] = {}
        self.payloads: dict[str, RoleDefinitionPayload] = {}
        self.assignments: list[RoleAssignment] = []
        self.resources: set[str] = set()
        self.locks: dict[str, list[ResourceLock]] = defaultdict(list)
        self.calls: list[tuple[str, tuple[Any, ...]]] = []

        # Number of listings that still hide a freshly created assignment
        self.assignment_visibility_lag = 0
        self._hidden: dict[str, int] = {}
        self._faults: dict[str, list[Exception]] = defaultdict(list)

        for name in BUILT_IN_ROLES:
            role_id = f"/providers/Microsoft.Authorization/roleDefinitions/{uuid.uuid5(uuid.NAMESPACE_DNS, name)}"
            self.role_definitions[role_id] = RoleDefinitionRecord(
                id=role_id, name=name, role_type="BuiltInRole", assignable_scopes=["/"]
            )

    # -------------------------------------------------------------------------
    # Test setup helpers
    # -------------------------------------------------------------------------

    def fail(self, method: str, *errors: Exception) -> None:
        """Queue errors raised by the next calls to ``method``, in order."""
        self._faults[method].extend(errors)

    def _record(self, method: str, *args: Any) -> None:
        self.calls.append((method, args))
        if self._faults[method]:
            raise self._faults[method].pop(0)

    def call_count(self, method: str) -> int:
        return sum(1 for name, _ in self.calls if name == method)

    def add_user(self, upn: str, display_name: str | None = None, object_id: str | None = None) -> Identity:
        identity = Identity(
            id=object_id or str(uuid.uuid4()),
            kind=IdentityKind.USER,
            display_name=display_name or upn.split("@", 1)[0],
            user_principal_name=upn,
        )
        self.users[upn.lower()] = identity
        self.users[identity.id] = identity
        return identity

    def add_group(self, display_name: str, object_id: str | None = None) -> Identity:
        identity = Identity(
            id=object_id or str(uuid.uuid4()), kind=IdentityKind.GROUP, display_name=display_name
        )
        self.groups[display_name] = identity
        self.groups[identity.id] = identity
        return identity

    def add_member(self, group: Identity, user: Identity) -> None:
        self.memberships[user.id].add(group.id)

    def add_resource(self, *resource_ids: str) -> None:
        for resource_id in resource_ids:
            self.resources.add(resource_id.lower())

    def add_lock(self, resource_group: str, name: str, level: str, notes: str | None = None) -> ResourceLock:
        lock = ResourceLock.model_validate(
            {
                "id": f"/subscriptions/{self.subscription_id}/resourceGroups/{resource_group}"
                f"/providers/Microsoft.Authorization/locks/{name}",
                "level": level,
                "name": name,
                "notes": notes,
            }
        )
        self.locks[resource_group].append(lock)
        return lock

    def add_custom_role(self, name: str, assignable_scopes: list[str]) -> RoleDefinitionRecord:
        role_id = (
            f"/subscriptions/{self.subscription_id}/providers/Microsoft.Authorization"
            f"/roleDefinitions/{uuid.uuid4()}"
        )
        record = RoleDefinitionRecord(
            id=role_id, name=name, role_type="CustomRole", assignable_scopes=assignable_scopes
        )
        self.role_definitions[role_id] = record
        return record

    def add_assignment(self, principal_id: str, role_name: str, scope: str) -> RoleAssignment:
        role = self._definition_named(role_name)
        assert role is not None, f"unknown role {role_name}"
        assignment = RoleAssignment(
            id=f"{scope}/providers/Microsoft.Authorization/roleAssignments/{uuid.uuid4()}",
            role_definition_id=role.id,
            principal_id=principal_id,
            scope=scope,
            role_definition_name=role.name,
        )
        self.assignments.append(assignment)
        return assignment

    def assignments_for(self, principal_id: str, role_name: str | None = None) -> list[RoleAssignment]:
        return [
            a
            for a in self.assignments
            if a.principal_id == principal_id
            and (role_name is None or a.role_definition_name == role_name)
        ]

    def definition(self, role_name: str) -> RoleDefinitionRecord | None:
        return self._definition_named(role_name)

    def _definition_named(self, role_name: str) -> RoleDefinitionRecord | None:
        for record in self.role_definitions.values():
            if record.name == role_name:
                return record
        return None

    # -------------------------------------------------------------------------
    # AuthorizationClient protocol
    # -------------------------------------------------------------------------

    def find_principal(self, name: str, kind: IdentityKind) -> Identity | None:
        self._record("find_principal", name, kind)
        if kind == IdentityKind.USER:
            return self.users.get(name.lower()) or self.users.get(name)
        return self.groups.get(name)

    def list_role_definitions(self, role_name: str, scope: str | None = None) -> list[RoleDefinitionRecord]:
        self._record("list_role_definitions", role_name, scope)
        record = self._definition_named(role_name)
        if record is None:
            return []
        if scope and not any(_within(scope, s) for s in record.assignable_scopes):
            return []
        return [record]

    def create_role_definition(
        self, payload: RoleDefinitionPayload, role_definition_guid: str
    ) -> RoleDefinitionRecord:
        self._record("create_role_definition", payload, role_definition_guid)
        if self._definition_named(payload.name) is not None:
            raise AlreadyExistsError("exists", code="RoleDefinitionWithSameNameExists", status_code=409)
        role_id = (
            f"/subscriptions/{self.subscription_id}/providers/Microsoft.Authorization"
            f"/roleDefinitions/{role_definition_guid}"
        )
        record = RoleDefinitionRecord(
            id=role_id,
            name=payload.name,
            role_type="CustomRole",
            assignable_scopes=list(payload.assignable_scopes),
        )
        self.role_definitions[role_id] = record
        self.payloads[role_id] = payload
        return record

    def update_role_definition(
        self, existing: RoleDefinitionRecord, payload: RoleDefinitionPayload
    ) -> RoleDefinitionRecord:
        self._record("update_role_definition", existing, payload)
        if existing.id not in self.role_definitions:
            raise NotFoundError("missing", code="RoleDefinitionDoesNotExist", status_code=404)
        for assignment in self.assignments:
            if not same_role(assignment.role_definition_id, existing.id):
                continue
            if not any(_within(assignment.scope, s) for s in payload.assignable_scopes):
                raise PermanentBackendError(
                    "Cannot remove an assignable scope that still has assignments",
                    code="InvalidActionOrNotAction",
                    status_code=400,
                )
        record = existing.model_copy(update={"assignable_scopes": list(payload.assignable_scopes)})
        self.role_definitions[existing.id] = record
        self.payloads[existing.id] = payload
        return record

    def delete_role_definition(self, role: RoleDefinitionRecord) -> None:
        self._record("delete_role_definition", role)
        if role.id not in self.role_definitions:
            raise NotFoundError("Role definition does not exist", status_code=404)
        if any(same_role(a.role_definition_id, role.id) for a in self.assignments):
            raise TransientBackendError(
                "Role has assignments", code="RoleDefinitionHasAssignments", status_code=409
            )
        del self.role_definitions[role.id]
        self.payloads.pop(role.id, None)

    def list_role_assignments(
        self,
        *,
        principal_id: str | None = None,
        role_definition_id: str | None = None,
        scope: str | None = None,
        include_inherited: bool = False,
    ) -> list[RoleAssignment]:
        self._record("list_role_assignments", principal_id, role_definition_id, scope, include_inherited)
        principals = {principal_id} if principal_id else set()
        if principal_id and include_inherited:
            principals |= self.memberships.get(principal_id, set())

        result: list[RoleAssignment] = []
        for assignment in self.assignments:
            if principal_id and assignment.principal_id not in principals:
                continue
            if role_definition_id and not same_role(assignment.role_definition_id, role_definition_id):
                continue
            if scope and not include_inherited and not same_scope(assignment.scope, scope):
                continue
            hidden = self._hidden.get(assignment.id, 0)
            if hidden > 0:
                self._hidden[assignment.id] = hidden - 1
                continue
            result.append(assignment)
        return result

    def create_role_assignment(self, principal: Identity, role_name: str, scope: str) -> RoleAssignment:
        self._record("create_role_assignment", principal, role_name, scope)
        role = self._definition_named(role_name)
        if role is None or not any(_within(scope, s) for s in role.assignable_scopes):
            raise NotFoundError(f"Role '{role_name}' is not visible at {scope}", status_code=404)
        for assignment in self.assignments:
            if (
                assignment.principal_id == principal.id
                and same_role(assignment.role_definition_id, role.id)
                and same_scope(assignment.scope, scope)
            ):
                raise AlreadyExistsError("exists", code="RoleAssignmentExists", status_code=409)
        assignment = self.add_assignment(principal.id, role_name, scope)
        if self.assignment_visibility_lag:
            self._hidden[assignment.id] = self.assignment_visibility_lag
        return assignment

    def delete_role_assignment_by_id(self, assignment_id: str) -> None:
        self._record("delete_role_assignment_by_id", assignment_id)
        for assignment in self.assignments:
            if assignment.id == assignment_id:
                self.assignments.remove(assignment)
                return
        raise NotFoundError("Role assignment not found", status_code=404)

    def delete_role_assignment(self, principal_id: str, role_name: str, scope: str) -> None:
        self._record("delete_role_assignment", principal_id, role_name, scope)
        matches = [
            a
            for a in self.assignments
            if a.principal_id == principal_id
            and a.role_definition_name == role_name
            and same_scope(a.scope, scope)
        ]
        if not matches:
            raise NotFoundError("Role assignment not found", status_code=404)
        for assignment in matches:
            self.assignments.remove(assignment)

    def resource_exists(self, resource_id: str) -> bool:
        self._record("resource_exists", resource_id)
        return resource_id.lower() in self.resources

    def list_locks(self, resource_group: str) -> list[ResourceLock]:
        self._record("list_locks", resource_group)
        return list(self.locks.get(resource_group, []))

    def create_lock(self, resource_group: str, lock: ResourceLock) -> ResourceLock:
        self._record("create_lock", resource_group, lock)
        created = lock.model_copy(
            update={
                "id": f"/subscriptions/{self.subscription_id}/resourceGroups/{resource_group}"
                f"/providers/Microsoft.Authorization/locks/{lock.name}"
            }
        )
        existing = [l for l in self.locks[resource_group] if l.name != lock.name]
        self.locks[resource_group] = [*existing, created]
        return created

    def delete_lock(self, resource_group: str, lock_name: str) -> None:
        self._record("delete_lock", resource_group, lock_name)
        before = self.locks.get(resource_group, [])
        after = [l for l in before if l.name != lock_name]
        if len(after) == len(before):
            raise NotFoundError(f"Lock '{lock_name}' not found", status_code=404)
        self.locks[resource_group] = after
