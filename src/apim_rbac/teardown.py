"""Safe teardown of role assignments and custom role definitions.

Teardown is idempotent: a role that no longer exists is a no-op, and an
assignment that is already gone does not fail the run.

SHARED-ROLE SAFETY:
A custom role definition is only deleted once no other principal holds an
assignment against it. Built-in roles are never deleted; only the
principal's own assignments of them are removed.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TypeVar

from .client import (
    AuthorizationClient,
    AuthorizationError,
    BackendError,
    NotFoundError,
    TransientBackendError,
)
from .config import Config
from .models import (
    Identity,
    OutcomeStatus,
    RoleAssignment,
    RoleDefinitionRecord,
    UnitOutcome,
)
from .security import log_security_audit_event

logger = logging.getLogger(__name__)

T = TypeVar("T")

SHARED_RESOURCE_SKIP = "role is still assigned to other principals"
BUILT_IN_ROLE_KEPT = "built-in role definition is never deleted"


class RoleDeletionError(Exception):
    """Raised when a custom role definition cannot be deleted after all retries."""

    pass


def remove_assignment(
    client: AuthorizationClient, assignment: RoleAssignment, role_name: str
) -> UnitOutcome:
    """Delete one assignment by id, falling back to principal/role/scope.

    Failures are logged and returned as an outcome, never raised, except
    for authorization failures.
    """
    logger.info("Deleting role assignment", extra={"assignment_id": assignment.id})
    try:
        client.delete_role_assignment_by_id(assignment.id)
    except AuthorizationError:
        raise
    except BackendError as e:
        logger.warning(
            "Failed to delete role assignment by id, trying principal, role and scope",
            extra={"assignment_id": assignment.id, "error": str(e)},
        )
        try:
            client.delete_role_assignment(assignment.principal_id, role_name, assignment.scope)
        except AuthorizationError:
            raise
        except NotFoundError:
            logger.info("Role assignment already gone", extra={"assignment_id": assignment.id})
            return UnitOutcome(assignment.scope, OutcomeStatus.UNCHANGED, "already deleted")
        except BackendError as e2:
            logger.warning(
                "Could not delete role assignment. Continuing...",
                extra={"assignment_id": assignment.id, "error": str(e2)},
            )
            log_security_audit_event(
                "role_assignment",
                target_resource=assignment.scope,
                action="delete",
                result="failure",
                principal_id=assignment.principal_id,
            )
            return UnitOutcome(assignment.scope, OutcomeStatus.FAILED, str(e2))
        logger.info(
            "Deleted role assignment using principal, role and scope",
            extra={"assignment_id": assignment.id},
        )

    log_security_audit_event(
        "role_assignment",
        target_resource=assignment.scope,
        action="delete",
        result="success",
        principal_id=assignment.principal_id,
    )
    return UnitOutcome(assignment.scope, OutcomeStatus.SUCCEEDED, "deleted")


@dataclass
class TeardownReport:
    """Per-role and per-assignment outcomes of a teardown run."""

    roles: list[UnitOutcome] = field(default_factory=list)
    assignments: list[UnitOutcome] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not any(outcome.failed for outcome in self.roles)


class TeardownReconciler:
    """Remove a principal's assignments and, when unshared, the custom roles."""

    def __init__(
        self,
        client: AuthorizationClient,
        config: Config,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._client = client
        self._config = config
        self._policy = config.deletion_policy
        self._sleep = sleep

    def _lookup(self, description: str, role_name: str, call: Callable[[], T]) -> T:
        """Run a read against the backend, retrying transient failures.

        The last attempt's error propagates to the caller.
        """
        for attempt in range(1, self._policy.attempts):
            try:
                return call()
            except TransientBackendError as e:
                wait_time = self._policy.linear_wait(attempt)
                logger.warning(
                    "Backend lookup failed, retrying",
                    extra={
                        "operation": description,
                        "role": role_name,
                        "attempt": attempt,
                        "max_attempts": self._policy.attempts,
                        "wait_seconds": wait_time,
                        "error": str(e),
                    },
                )
                self._sleep(wait_time)
        return call()

    def delete_assignments(self, role: RoleDefinitionRecord, principal_id: str) -> list[UnitOutcome]:
        """Delete every assignment binding ``role`` to ``principal_id``."""
        try:
            assignments = self._client.list_role_assignments(
                principal_id=principal_id, role_definition_id=role.id
            )
        except AuthorizationError:
            raise
        except BackendError as e:
            logger.warning(
                "Failed to list role assignments", extra={"role": role.name, "error": str(e)}
            )
            assignments = []

        logger.info(
            "Found assignments to delete", extra={"role": role.name, "count": len(assignments)}
        )
        outcomes: list[UnitOutcome] = []
        for index, assignment in enumerate(assignments):
            outcomes.append(remove_assignment(self._client, assignment, role.name))
            if index < len(assignments) - 1:
                self._sleep(self._config.assignment_delete_pause_seconds)
        return outcomes

    def other_holders(self, role: RoleDefinitionRecord, principal_id: str) -> list[RoleAssignment]:
        """Assignments of ``role`` held by any principal other than ``principal_id``."""
        assignments = self._lookup(
            "list assignments of role",
            role.name,
            lambda: self._client.list_role_assignments(role_definition_id=role.id),
        )
        return [a for a in assignments if a.principal_id != principal_id]

    def delete_role_definition(self, role: RoleDefinitionRecord) -> None:
        """Delete a custom role definition once its assignments have settled.

        Raises:
            AuthorizationError: Immediately, on a permission failure.
            RoleDeletionError: When retries are exhausted.
        """
        logger.info(
            "Waiting for RBAC propagation",
            extra={"role": role.name, "wait_seconds": self._policy.wait_seconds},
        )
        self._sleep(self._policy.wait_seconds)

        last_error: BackendError | None = None
        for attempt in range(1, self._policy.attempts + 1):
            logger.info("Deleting role definition", extra={"role": role.name, "attempt": attempt})
            try:
                self._client.delete_role_definition(role)
            except AuthorizationError as e:
                logger.error(
                    "Authorization failed for role deletion",
                    extra={"role": role.name, "error": str(e)},
                )
                raise
            except NotFoundError:
                logger.info("Role already deleted. Treating as success.", extra={"role": role.name})
                return
            except BackendError as e:
                last_error = e
                if isinstance(e, TransientBackendError) and e.code == "RoleDefinitionHasAssignments":
                    message = "Azure still sees lingering assignments"
                else:
                    message = "Unexpected error deleting role definition"
                if attempt < self._policy.attempts:
                    logger.warning(
                        message,
                        extra={
                            "role": role.name,
                            "attempt": attempt,
                            "wait_seconds": self._policy.wait_seconds,
                            "error": str(e),
                        },
                    )
                    self._sleep(self._policy.wait_seconds)
                continue

            logger.info("Deleted role definition", extra={"role": role.name})
            log_security_audit_event(
                "role_definition", target_resource=role.id, action="delete", result="success"
            )
            return

        log_security_audit_event(
            "role_definition", target_resource=role.id, action="delete", result="failure"
        )
        raise RoleDeletionError(
            f"Failed to delete role definition '{role.name}' after "
            f"{self._policy.attempts} attempts: {last_error}"
        )

    def remove_role(self, role_name: str, principal: Identity, report: TeardownReport) -> UnitOutcome:
        """Tear down one role for ``principal``, recording assignment outcomes in ``report``.

        Backend failures that outlast the retries end this role as FAILED;
        authorization failures propagate.
        """
        logger.info("Processing role", extra={"role": role_name})
        try:
            definitions = self._lookup(
                "look up role definition",
                role_name,
                lambda: self._client.list_role_definitions(role_name),
            )
        except AuthorizationError:
            raise
        except BackendError as e:
            logger.error(
                "Could not look up role definition", extra={"role": role_name, "error": str(e)}
            )
            return UnitOutcome(role_name, OutcomeStatus.FAILED, str(e))

        if not definitions:
            logger.info("Role does not exist. Skipping.", extra={"role": role_name})
            return UnitOutcome(role_name, OutcomeStatus.SKIPPED, "role does not exist")

        role = definitions[0]
        report.assignments.extend(self.delete_assignments(role, principal.id))

        if not role.is_custom:
            logger.info("Skipping built-in role", extra={"role": role_name})
            return UnitOutcome(role_name, OutcomeStatus.UNCHANGED, BUILT_IN_ROLE_KEPT)

        logger.info("Custom role. Verifying no other principals have this role...")
        try:
            others = self.other_holders(role, principal.id)
        except AuthorizationError:
            raise
        except BackendError as e:
            logger.error(
                "Could not check other holders of role", extra={"role": role_name, "error": str(e)}
            )
            return UnitOutcome(role_name, OutcomeStatus.FAILED, str(e))

        if others:
            logger.info(
                "Role is still assigned to other identities. Skipping delete.",
                extra={"role": role_name, "other_assignments": len(others)},
            )
            return UnitOutcome(role_name, OutcomeStatus.SKIPPED, SHARED_RESOURCE_SKIP)

        self.delete_role_definition(role)
        return UnitOutcome(role_name, OutcomeStatus.SUCCEEDED, "role definition deleted")

    def _log_assignments(self, principal: Identity, heading: str) -> None:
        try:
            assignments = self._client.list_role_assignments(
                principal_id=principal.id, include_inherited=True
            )
        except AuthorizationError:
            raise
        except BackendError as e:
            logger.warning("Could not list role assignments", extra={"error": str(e)})
            return
        logger.info(
            heading,
            extra={
                "principal_id": principal.id,
                "assignments": [
                    {"role": a.role_definition_name, "scope": a.scope} for a in assignments
                ],
            },
        )

    def remove(self, principal: Identity, role_names: list[str]) -> TeardownReport:
        """Tear down every requested role for ``principal``.

        Raises:
            AuthorizationError: On any permission failure.
            RoleDeletionError: When a custom role definition cannot be deleted.
        """
        report = TeardownReport()
        if not role_names:
            logger.info("No roles provided to delete.")
            return report

        self._log_assignments(principal, "Current role assignments")
        logger.info("Roles to process", extra={"roles": role_names})
        for role_name in role_names:
            report.roles.append(self.remove_role(role_name, principal, report))
        self._log_assignments(principal, "Remaining role assignments")
        return report
