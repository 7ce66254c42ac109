"""Authorization backend client for role definitions, assignments and locks.

The reconcilers depend only on the ``AuthorizationClient`` protocol. The
production implementation wraps the Azure SDK management clients and the
Microsoft Graph directory API; tests substitute an in-memory fake.

ERROR CLASSIFICATION:
Every SDK failure is converted at this boundary into one of the
``BackendError`` subclasses so that callers decide retry policy on a
typed error instead of matching message text:
- AuthorizationError: caller lacks permission, never retried
- NotFoundError: resource absent or not yet visible
- AlreadyExistsError: create raced with an existing object
- TransientBackendError: propagation lag, throttling, server errors
- PermanentBackendError: request rejected as invalid
"""

from __future__ import annotations

import logging
import re
import uuid
from typing import Any, Protocol
from urllib.parse import quote

import requests
from azure.core.credentials import TokenCredential
from azure.core.exceptions import HttpResponseError, ResourceNotFoundError
from azure.mgmt.authorization import AuthorizationManagementClient
from azure.mgmt.authorization.models import (
    Permission,
    RoleAssignmentCreateParameters,
    RoleDefinition,
)
from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.resource.locks import ManagementLockClient
from azure.mgmt.resource.locks.models import ManagementLockObject

from .models import (
    Identity,
    IdentityKind,
    ResourceLock,
    RoleAssignment,
    RoleDefinitionPayload,
    RoleDefinitionRecord,
    same_role,
    same_scope,
)

logger = logging.getLogger(__name__)

GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
GRAPH_TOKEN_SCOPE = "https://graph.microsoft.com/.default"
GRAPH_TIMEOUT_SECONDS = 30

# API version used for existence probes of API Management child resources
APIM_API_VERSION = "2022-08-01"

VALID_GUID_PATTERN = r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"

# ARM error codes grouped by how callers should react
AUTHORIZATION_ERROR_CODES = frozenset(
    {"AuthorizationFailed", "LinkedAuthorizationFailed", "InsufficientPrivileges"}
)
NOT_FOUND_ERROR_CODES = frozenset(
    {
        "RoleDefinitionDoesNotExist",
        "RoleAssignmentNotFound",
        "ResourceNotFound",
        "NotFound",
        "ResourceGroupNotFound",
    }
)
ALREADY_EXISTS_ERROR_CODES = frozenset({"RoleAssignmentExists", "RoleDefinitionWithSameNameExists"})
TRANSIENT_ERROR_CODES = frozenset(
    {
        "RoleDefinitionHasAssignments",
        "PrincipalNotFound",
        "TooManyRequests",
        "RetryableError",
        "Conflict",
    }
)
NOT_FOUND_MESSAGE_PATTERN = re.compile(r"not found|does not exist|could not be found", re.IGNORECASE)


class BackendError(Exception):
    """Base class for classified authorization backend failures."""

    def __init__(self, message: str, *, code: str | None = None, status_code: int | None = None):
        super().__init__(message)
        self.code = code
        self.status_code = status_code


class AuthorizationError(BackendError):
    """The caller is not permitted to perform the operation. Always fatal."""


class NotFoundError(BackendError):
    """The target does not exist, or is not yet visible after a write."""


class AlreadyExistsError(BackendError):
    """A create collided with an existing object."""


class TransientBackendError(BackendError):
    """Propagation lag, throttling or a server-side failure. Retryable."""


class PermanentBackendError(BackendError):
    """The request itself is invalid (bad scope, bad role). Not retryable."""


def classify_http_error(error: HttpResponseError) -> BackendError:
    """Map an Azure SDK error to the backend error taxonomy.

    Classification uses the ARM error code first, then the HTTP status,
    then the message text for services that return neither.
    """
    code = error.error.code if error.error else None
    status = error.status_code
    message = str(error.message or error)

    if code in AUTHORIZATION_ERROR_CODES or status in (401, 403):
        return AuthorizationError(message, code=code, status_code=status)
    if code in ALREADY_EXISTS_ERROR_CODES:
        return AlreadyExistsError(message, code=code, status_code=status)
    if code in TRANSIENT_ERROR_CODES:
        return TransientBackendError(message, code=code, status_code=status)
    if (
        isinstance(error, ResourceNotFoundError)
        or code in NOT_FOUND_ERROR_CODES
        or status == 404
    ):
        return NotFoundError(message, code=code, status_code=status)
    if status == 429 or (status is not None and status >= 500):
        return TransientBackendError(message, code=code, status_code=status)
    if NOT_FOUND_MESSAGE_PATTERN.search(message):
        return NotFoundError(message, code=code, status_code=status)
    if status is not None and 400 <= status < 500:
        return PermanentBackendError(message, code=code, status_code=status)
    return TransientBackendError(message, code=code, status_code=status)


class AuthorizationClient(Protocol):
    """Operations the reconcilers need from the authorization backend."""

    def find_principal(self, name: str, kind: IdentityKind) -> Identity | None: ...

    def list_role_definitions(
        self, role_name: str, scope: str | None = None
    ) -> list[RoleDefinitionRecord]: ...

    def create_role_definition(
        self, payload: RoleDefinitionPayload, role_definition_guid: str
    ) -> RoleDefinitionRecord: ...

    def update_role_definition(
        self, existing: RoleDefinitionRecord, payload: RoleDefinitionPayload
    ) -> RoleDefinitionRecord: ...

    def delete_role_definition(self, role: RoleDefinitionRecord) -> None: ...

    def list_role_assignments(
        self,
        *,
        principal_id: str | None = None,
        role_definition_id: str | None = None,
        scope: str | None = None,
        include_inherited: bool = False,
    ) -> list[RoleAssignment]: ...

    def create_role_assignment(
        self, principal: Identity, role_name: str, scope: str
    ) -> RoleAssignment: ...

    def delete_role_assignment_by_id(self, assignment_id: str) -> None: ...

    def delete_role_assignment(self, principal_id: str, role_name: str, scope: str) -> None: ...

    def resource_exists(self, resource_id: str) -> bool: ...

    def list_locks(self, resource_group: str) -> list[ResourceLock]: ...

    def create_lock(self, resource_group: str, lock: ResourceLock) -> ResourceLock: ...

    def delete_lock(self, resource_group: str, lock_name: str) -> None: ...


def _odata_quote(value: str) -> str:
    """Escape a string literal for an OData ``$filter`` expression."""
    return value.replace("'", "''")


class AzureAuthorizationClient:
    """AuthorizationClient backed by the Azure management SDKs and Graph.

    All calls are synchronous. SDK errors are re-raised as classified
    ``BackendError`` subclasses.
    """

    def __init__(
        self,
        credential: TokenCredential,
        subscription_id: str,
        *,
        session: requests.Session | None = None,
    ) -> None:
        self._credential = credential
        self._subscription_id = subscription_id
        self._subscription_scope = f"/subscriptions/{subscription_id}"
        self._authorization = AuthorizationManagementClient(credential, subscription_id)
        self._resources = ResourceManagementClient(credential, subscription_id)
        self._locks = ManagementLockClient(credential, subscription_id)
        self._session = session or requests.Session()
        self._role_names: dict[str, str] = {}

    # -------------------------------------------------------------------------
    # Directory
    # -------------------------------------------------------------------------

    def _graph_get(self, path: str, params: dict[str, str] | None = None) -> dict[str, Any] | None:
        token = self._credential.get_token(GRAPH_TOKEN_SCOPE).token
        response = self._session.get(
            f"{GRAPH_BASE_URL}{path}",
            headers={"Authorization": f"Bearer {token}"},
            params=params,
            timeout=GRAPH_TIMEOUT_SECONDS,
        )
        # 400 is what Graph returns for a malformed UPN, i.e. an invalid lookup
        if response.status_code in (400, 404):
            return None
        if response.status_code in (401, 403):
            raise AuthorizationError(
                f"Directory lookup denied ({response.status_code})",
                status_code=response.status_code,
            )
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientBackendError(
                f"Directory lookup failed ({response.status_code})",
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            raise PermanentBackendError(
                f"Directory lookup failed ({response.status_code}): {response.text[:200]}",
                status_code=response.status_code,
            )
        data = response.json()
        return data if isinstance(data, dict) else None

    def find_principal(self, name: str, kind: IdentityKind) -> Identity | None:
        """Look up a user by UPN/object id or a group by object id/display name.

        Returns None when the directory has no single match.
        """
        select = {"$select": "id,displayName,userPrincipalName"}
        if kind == IdentityKind.USER:
            data = self._graph_get(f"/users/{quote(name, safe='@')}", select)
        elif re.match(VALID_GUID_PATTERN, name):
            data = self._graph_get(f"/groups/{name}", {"$select": "id,displayName"})
        else:
            listing = self._graph_get(
                "/groups",
                {"$filter": f"displayName eq '{_odata_quote(name)}'", "$select": "id,displayName"},
            )
            matches = (listing or {}).get("value") or []
            if len(matches) != 1:
                if len(matches) > 1:
                    logger.warning(
                        "Group display name is ambiguous",
                        extra={"identity": name, "matches": len(matches)},
                    )
                return None
            data = matches[0]

        if not data or not data.get("id"):
            return None
        return Identity(
            id=data["id"],
            kind=kind,
            display_name=data.get("displayName"),
            user_principal_name=data.get("userPrincipalName"),
        )

    # -------------------------------------------------------------------------
    # Role definitions
    # -------------------------------------------------------------------------

    @staticmethod
    def _to_record(definition: RoleDefinition) -> RoleDefinitionRecord:
        return RoleDefinitionRecord(
            id=definition.id,
            name=definition.role_name,
            role_type=definition.role_type,
            assignable_scopes=list(definition.assignable_scopes or []),
        )

    def list_role_definitions(
        self, role_name: str, scope: str | None = None
    ) -> list[RoleDefinitionRecord]:
        try:
            definitions = self._authorization.role_definitions.list(
                scope or self._subscription_scope,
                filter=f"roleName eq '{_odata_quote(role_name)}'",
            )
            return [self._to_record(d) for d in definitions]
        except HttpResponseError as e:
            raise classify_http_error(e) from e

    def _write_role_definition(
        self, role_definition_guid: str, payload: RoleDefinitionPayload
    ) -> RoleDefinitionRecord:
        definition = RoleDefinition(
            role_name=payload.name,
            description=payload.description,
            role_type="CustomRole",
            permissions=[
                Permission(
                    actions=list(payload.actions),
                    not_actions=list(payload.not_actions),
                    data_actions=list(payload.data_actions),
                    not_data_actions=list(payload.not_data_actions),
                )
            ],
            assignable_scopes=list(payload.assignable_scopes),
        )
        try:
            result = self._authorization.role_definitions.create_or_update(
                self._subscription_scope, role_definition_guid, definition
            )
        except HttpResponseError as e:
            raise classify_http_error(e) from e
        return self._to_record(result)

    def create_role_definition(
        self, payload: RoleDefinitionPayload, role_definition_guid: str
    ) -> RoleDefinitionRecord:
        return self._write_role_definition(role_definition_guid, payload)

    def update_role_definition(
        self, existing: RoleDefinitionRecord, payload: RoleDefinitionPayload
    ) -> RoleDefinitionRecord:
        return self._write_role_definition(existing.guid, payload)

    def delete_role_definition(self, role: RoleDefinitionRecord) -> None:
        try:
            deleted = self._authorization.role_definitions.delete(
                self._subscription_scope, role.guid
            )
        except HttpResponseError as e:
            raise classify_http_error(e) from e
        if deleted is None:
            raise NotFoundError(f"Role definition '{role.name}' does not exist")

    def _role_name_for(self, role_definition_id: str) -> str | None:
        key = role_definition_id.lower()
        if key not in self._role_names:
            try:
                definition = self._authorization.role_definitions.get_by_id(role_definition_id)
            except HttpResponseError as e:
                logger.debug(
                    "Could not resolve role definition name",
                    extra={"role_definition_id": role_definition_id, "error": str(e)},
                )
                return None
            self._role_names[key] = definition.role_name
        return self._role_names[key]

    def _role_definition_for(self, role_name: str, scope: str) -> RoleDefinitionRecord:
        definitions = self.list_role_definitions(role_name, scope)
        if not definitions:
            raise NotFoundError(f"Role definition '{role_name}' is not visible at {scope}")
        return definitions[0]

    # -------------------------------------------------------------------------
    # Role assignments
    # -------------------------------------------------------------------------

    def list_role_assignments(
        self,
        *,
        principal_id: str | None = None,
        role_definition_id: str | None = None,
        scope: str | None = None,
        include_inherited: bool = False,
    ) -> list[RoleAssignment]:
        """List assignments filtered by principal, role and exact scope.

        With ``include_inherited`` the principal filter also matches
        assignments granted through group membership and at parent scopes.
        """
        ops = self._authorization.role_assignments
        try:
            if principal_id and include_inherited:
                raw = ops.list_for_subscription(filter=f"assignedTo('{principal_id}')")
            elif scope and principal_id:
                raw = ops.list_for_scope(scope, filter=f"principalId eq '{principal_id}'")
            elif scope:
                raw = ops.list_for_scope(scope, filter="atScope()")
            elif principal_id:
                raw = ops.list_for_subscription(filter=f"principalId eq '{principal_id}'")
            else:
                raw = ops.list_for_subscription()
            assignments = list(raw)
        except HttpResponseError as e:
            raise classify_http_error(e) from e

        result: list[RoleAssignment] = []
        for item in assignments:
            if role_definition_id and not same_role(item.role_definition_id, role_definition_id):
                continue
            if scope and not include_inherited and not same_scope(item.scope, scope):
                continue
            if principal_id and not include_inherited and item.principal_id != principal_id:
                continue
            result.append(
                RoleAssignment(
                    id=item.id,
                    role_definition_id=item.role_definition_id,
                    principal_id=item.principal_id,
                    scope=item.scope,
                    role_definition_name=self._role_name_for(item.role_definition_id),
                )
            )
        return result

    def create_role_assignment(
        self, principal: Identity, role_name: str, scope: str
    ) -> RoleAssignment:
        role = self._role_definition_for(role_name, scope)
        parameters = RoleAssignmentCreateParameters(
            role_definition_id=role.id,
            principal_id=principal.id,
            principal_type=principal.kind.principal_type,
        )
        try:
            created = self._authorization.role_assignments.create(
                scope, str(uuid.uuid4()), parameters
            )
        except HttpResponseError as e:
            raise classify_http_error(e) from e
        return RoleAssignment(
            id=created.id,
            role_definition_id=created.role_definition_id,
            principal_id=created.principal_id,
            scope=created.scope or scope,
            role_definition_name=role_name,
        )

    def delete_role_assignment_by_id(self, assignment_id: str) -> None:
        try:
            self._authorization.role_assignments.delete_by_id(assignment_id)
        except HttpResponseError as e:
            raise classify_http_error(e) from e

    def delete_role_assignment(self, principal_id: str, role_name: str, scope: str) -> None:
        role = self._role_definition_for(role_name, scope)
        matches = self.list_role_assignments(
            principal_id=principal_id, role_definition_id=role.id, scope=scope
        )
        if not matches:
            raise NotFoundError(
                f"No assignment of '{role_name}' for {principal_id} at {scope}"
            )
        for assignment in matches:
            name = assignment.id.rstrip("/").rsplit("/", 1)[-1]
            try:
                self._authorization.role_assignments.delete(assignment.scope, name)
            except HttpResponseError as e:
                raise classify_http_error(e) from e

    # -------------------------------------------------------------------------
    # Resources and locks
    # -------------------------------------------------------------------------

    def resource_exists(self, resource_id: str) -> bool:
        try:
            self._resources.resources.get_by_id(resource_id, api_version=APIM_API_VERSION)
        except ResourceNotFoundError:
            return False
        except HttpResponseError as e:
            error = classify_http_error(e)
            if isinstance(error, NotFoundError):
                return False
            raise error from e
        return True

    @staticmethod
    def _to_lock(lock: Any) -> ResourceLock:
        level = getattr(lock.level, "value", lock.level)
        return ResourceLock.model_validate(
            {"id": lock.id, "level": level, "name": lock.name, "notes": lock.notes}
        )

    def list_locks(self, resource_group: str) -> list[ResourceLock]:
        try:
            locks = self._locks.management_locks.list_at_resource_group_level(resource_group)
            return [self._to_lock(lock) for lock in locks]
        except HttpResponseError as e:
            raise classify_http_error(e) from e

    def create_lock(self, resource_group: str, lock: ResourceLock) -> ResourceLock:
        name, level = lock.name, lock.level
        if not name or level is None:
            raise PermanentBackendError("Lock requires both name and level")
        try:
            created = self._locks.management_locks.create_or_update_at_resource_group_level(
                resource_group,
                name,
                ManagementLockObject(level=level.value, notes=lock.notes),
            )
        except HttpResponseError as e:
            raise classify_http_error(e) from e
        return self._to_lock(created)

    def delete_lock(self, resource_group: str, lock_name: str) -> None:
        try:
            self._locks.management_locks.delete_at_resource_group_level(resource_group, lock_name)
        except HttpResponseError as e:
            raise classify_http_error(e) from e
