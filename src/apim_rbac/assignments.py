"""Idempotent role assignment with propagation-tolerant retries.

For each validated scope the reconciler makes sure exactly one assignment
binds the principal to the custom role, then reads it back until it is
visible. Role writes and assignment writes are eventually consistent, so:

- creation is retried with linear backoff (wait = base × attempt)
- read-back is polled with escalating backoff (wait = base × poll)
- a scope that exhausts its retries is recorded as failed and the
  reconciler moves on to the next scope
- an authorization failure aborts the whole run immediately
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from .client import (
    AlreadyExistsError,
    AuthorizationClient,
    AuthorizationError,
    BackendError,
    NotFoundError,
    PermanentBackendError,
    TransientBackendError,
)
from .config import Config
from .models import (
    Identity,
    OutcomeStatus,
    RoleAssignment,
    RoleDefinitionRecord,
    UnitOutcome,
    same_scope,
)
from .security import log_security_audit_event
from .teardown import remove_assignment

logger = logging.getLogger(__name__)

# Built-in role granted at service scope so the principal can enumerate the service
READER_ROLE_NAME = "API Management Service Reader Role"


@dataclass
class AssignmentReport:
    """Accumulated per-scope outcomes for one role."""

    role_name: str
    outcomes: list[UnitOutcome] = field(default_factory=list)
    reader: UnitOutcome | None = None
    pruned: list[UnitOutcome] = field(default_factory=list)

    @property
    def failed(self) -> list[UnitOutcome]:
        units = [*self.outcomes, *([self.reader] if self.reader else [])]
        return [o for o in units if o.failed]

    @property
    def unverified(self) -> list[UnitOutcome]:
        return [o for o in self.outcomes if o.status == OutcomeStatus.UNVERIFIED]

    @property
    def success(self) -> bool:
        return not self.failed


class AssignmentReconciler:
    """Create and verify assignments of one role across many scopes."""

    def __init__(
        self,
        client: AuthorizationClient,
        config: Config,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._client = client
        self._config = config
        self._sleep = sleep

    def _find_existing(self, principal: Identity, role_name: str, scope: str) -> list[RoleAssignment]:
        assignments = self._client.list_role_assignments(principal_id=principal.id, scope=scope)
        return [
            a
            for a in assignments
            if (a.role_definition_name or "").lower() == role_name.lower()
            and same_scope(a.scope, scope)
        ]

    def wait_for_role_visibility(self, role_name: str, scopes: list[str]) -> list[str]:
        """Poll until the role definition is listable at every scope.

        Returns the scopes where it never became visible. Assignment is
        still attempted there; this only absorbs propagation delay early.
        """
        policy = self._config.verify_policy
        not_visible: list[str] = []
        for scope in scopes:
            for attempt in range(1, policy.attempts + 1):
                logger.info(
                    "Verifying role exists at scope",
                    extra={"role": role_name, "scope": scope, "attempt": attempt},
                )
                try:
                    if self._client.list_role_definitions(role_name, scope):
                        logger.info("Role verified at scope", extra={"scope": scope})
                        break
                except AuthorizationError:
                    raise
                except BackendError as e:
                    logger.warning(
                        "Failed to list role definitions", extra={"scope": scope, "error": str(e)}
                    )
                if attempt < policy.attempts:
                    logger.info(
                        "Role not yet available at scope",
                        extra={"scope": scope, "wait_seconds": policy.wait_seconds},
                    )
                    self._sleep(policy.wait_seconds)
            else:
                logger.warning(
                    "Could not verify role at scope. Will still attempt assignment but it may fail.",
                    extra={"role": role_name, "scope": scope, "attempts": policy.attempts},
                )
                not_visible.append(scope)
        return not_visible

    def ensure_assignment(self, principal: Identity, role_name: str, scope: str) -> UnitOutcome:
        """Make sure ``principal`` holds ``role_name`` at ``scope``.

        Raises:
            AuthorizationError: Immediately, on a permission failure.
        """
        policy = self._config.assignment_policy
        last_error: BackendError | None = None
        context = {"principal_id": principal.id, "role": role_name, "scope": scope}

        for attempt in range(1, policy.attempts + 1):
            logger.info(
                "Assigning role", extra={**context, "attempt": attempt, "max_attempts": policy.attempts}
            )
            try:
                existing = self._find_existing(principal, role_name, scope)
            except AuthorizationError:
                raise
            except BackendError as e:
                logger.warning(
                    "Error checking if assignment exists", extra={**context, "error": str(e)}
                )
                existing = []

            if existing:
                logger.info("Role assignment already exists. Skipping creation.", extra=context)
                return UnitOutcome(scope, OutcomeStatus.UNCHANGED, "assignment already exists")

            try:
                created = self._client.create_role_assignment(principal, role_name, scope)
            except AuthorizationError:
                logger.error("Not permitted to assign role", extra=context)
                raise
            except AlreadyExistsError:
                logger.info("Role assignment already exists", extra=context)
                return UnitOutcome(scope, OutcomeStatus.UNCHANGED, "assignment already exists")
            except PermanentBackendError as e:
                logger.error(
                    "Role assignment rejected",
                    extra={**context, "error": str(e), "code": e.code},
                )
                return UnitOutcome(scope, OutcomeStatus.FAILED, str(e))
            except (TransientBackendError, NotFoundError) as e:
                last_error = e
                logger.warning("Failed to assign role", extra={**context, "error": str(e)})
                if attempt < policy.attempts:
                    wait_time = policy.linear_wait(attempt)
                    logger.info(
                        "Waiting before retry", extra={**context, "wait_seconds": wait_time}
                    )
                    self._sleep(wait_time)
                continue

            logger.info("Assigned role", extra={**context, "assignment_id": created.id})
            log_security_audit_event(
                "role_assignment",
                target_resource=scope,
                action="create",
                result="success",
                principal_id=principal.id,
            )
            return UnitOutcome(scope, OutcomeStatus.SUCCEEDED, created.id)

        logger.error("Role assignment retries exhausted", extra={**context, "attempts": policy.attempts})
        return UnitOutcome(
            scope, OutcomeStatus.FAILED, f"retries exhausted after {policy.attempts} attempts: {last_error}"
        )

    def verify_assignment(self, principal: Identity, role_name: str, scope: str) -> bool:
        """Poll read-back of the assignment with escalating backoff."""
        policy = self._config.verify_policy
        for poll in range(1, policy.attempts + 1):
            logger.info("Checking role assignment", extra={"scope": scope, "attempt": poll})
            try:
                if self._find_existing(principal, role_name, scope):
                    logger.info("Role assignment visible", extra={"scope": scope})
                    return True
            except AuthorizationError:
                raise
            except BackendError as e:
                logger.warning("Read-back failed", extra={"scope": scope, "error": str(e)})
            if poll < policy.attempts:
                wait_time = policy.linear_wait(poll)
                logger.warning(
                    "Role assignment not yet visible",
                    extra={"scope": scope, "wait_seconds": wait_time},
                )
                self._sleep(wait_time)

        logger.error(
            "Role assignment not visible after all checks",
            extra={"scope": scope, "attempts": policy.attempts},
        )
        return False

    def ensure_reader_role(self, principal: Identity, service_scope: str) -> UnitOutcome:
        """Grant the service reader role once, at the service scope."""
        logger.info(
            "Assigning service reader role",
            extra={"role": READER_ROLE_NAME, "scope": service_scope},
        )
        outcome = self.ensure_assignment(principal, READER_ROLE_NAME, service_scope)
        if outcome.failed:
            logger.error(
                "Failed to assign service reader role",
                extra={"role": READER_ROLE_NAME, "error": outcome.detail},
            )
        return outcome

    def prune_stale(
        self, principal: Identity, role: RoleDefinitionRecord, keep_scopes: list[str]
    ) -> list[UnitOutcome]:
        """Delete the principal's assignments of ``role`` outside ``keep_scopes``.

        Needed before narrowing a definition's assignable scopes: the
        backend refuses to drop a scope that still has assignments.
        """
        try:
            assignments = self._client.list_role_assignments(
                principal_id=principal.id, role_definition_id=role.id
            )
        except AuthorizationError:
            raise
        except BackendError as e:
            logger.warning("Could not list existing assignments", extra={"error": str(e)})
            return []

        stale = [a for a in assignments if not any(same_scope(a.scope, s) for s in keep_scopes)]
        if stale:
            logger.info(
                "Removing assignments at scopes no longer requested",
                extra={"role": role.name, "scopes": [a.scope for a in stale]},
            )
        return [remove_assignment(self._client, a, role.name) for a in stale]

    def reconcile(
        self,
        principal: Identity,
        role_name: str,
        scopes: list[str],
        service_scope: str,
    ) -> AssignmentReport:
        """Assign ``role_name`` at every scope and verify each assignment.

        Raises:
            AuthorizationError: On any permission failure.
        """
        report = AssignmentReport(role_name=role_name)
        report.reader = self.ensure_reader_role(principal, service_scope)

        self.wait_for_role_visibility(role_name, scopes)

        for scope in scopes:
            report.outcomes.append(self.ensure_assignment(principal, role_name, scope))

        for index, outcome in enumerate(report.outcomes):
            if outcome.failed:
                continue
            if not self.verify_assignment(principal, role_name, outcome.unit):
                report.outcomes[index] = UnitOutcome(
                    outcome.unit, OutcomeStatus.UNVERIFIED, "assignment not yet visible"
                )

        if report.failed:
            logger.warning(
                "Some role assignments failed. Permissions may not be properly set.",
                extra={"role": role_name, "failed": [o.unit for o in report.failed]},
            )
        return report
