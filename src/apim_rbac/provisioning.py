"""Provisioning pipeline for API-level and operation-level roles.

Control flow for one invocation:
1. Resolve the identity (user or group, confirmed by the directory)
2. Build and validate the assignable scopes
3. Plan and apply the custom role definition
4. Wait for the definition to propagate
5. Assign and verify the role at every scope, plus the service reader role
6. Audit the principal's remaining high-privilege roles

Fatal conditions propagate as exceptions; per-scope failures are collected
in the returned result.

CONCURRENCY:
Two runs that derive the same role name must not overlap. The derived
name is available up front via ``role_name`` so callers can serialize.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from .assignments import AssignmentReconciler, AssignmentReport
from .client import AuthorizationClient
from .config import Config
from .identity import IdentityResolver, ResolvedIdentity, role_name_segment
from .models import InputError, UnitOutcome
from .roles import (
    ConflictWarning,
    Granularity,
    RoleAction,
    RoleDefinitionSynthesizer,
    derive_role_name,
)
from .scopes import ScopeBuilder, ScopeBuildResult

logger = logging.getLogger(__name__)


@dataclass
class ProvisionResult:
    """Result of one provisioning run."""

    identity: ResolvedIdentity
    granularity: Granularity
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    role_name: str | None = None
    role_action: RoleAction | None = None
    scopes: ScopeBuildResult = field(default_factory=ScopeBuildResult)
    report: AssignmentReport | None = None
    reader: UnitOutcome | None = None
    conflicts: list[ConflictWarning] = field(default_factory=list)

    @property
    def outcomes(self) -> list[UnitOutcome]:
        if self.report is not None:
            reader = [self.report.reader] if self.report.reader else []
            return [*reader, *self.report.outcomes]
        return [self.reader] if self.reader else []

    @property
    def success(self) -> bool:
        return not any(o.failed for o in self.outcomes)

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()


class Provisioner:
    """Wire the resolver, scope builder, synthesizer and assignment reconciler."""

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
        self._resolver = IdentityResolver(client)
        self._synthesizer = RoleDefinitionSynthesizer(
            client, config.role_write_policy, sleep=sleep
        )
        self._assignments = AssignmentReconciler(client, config, sleep=sleep)

    def role_name(
        self, granularity: Granularity, resolved: ResolvedIdentity, raw_identity: str, api_name: str | None = None
    ) -> str:
        segment = role_name_segment(raw_identity, resolved.identity)
        return derive_role_name(granularity, resolved.kind, segment, api_name)

    def _provision(
        self,
        result: ProvisionResult,
        builder: ScopeBuilder,
        raw_identity: str,
        scopes: ScopeBuildResult,
        api_name: str | None,
    ) -> ProvisionResult:
        principal = result.identity.identity
        role_name = self.role_name(result.granularity, result.identity, raw_identity, api_name)
        result.role_name = role_name
        result.scopes = scopes
        logger.info("Role name derived", extra={"role": role_name, "scopes": scopes.scopes})

        plan = self._synthesizer.plan(
            principal, result.granularity, role_name, scopes.scopes, api_name
        )
        result.conflicts = plan.conflicts

        pruned: list[UnitOutcome] = []
        if plan.existing is not None:
            pruned = self._assignments.prune_stale(principal, plan.existing, scopes.scopes)

        written = self._synthesizer.apply(plan)
        result.role_action = written.action

        logger.info(
            "Waiting for role definition to propagate",
            extra={"role": role_name, "wait_seconds": self._config.role_propagation_wait_seconds},
        )
        self._sleep(self._config.role_propagation_wait_seconds)

        result.report = self._assignments.reconcile(
            principal, role_name, scopes.scopes, builder.service
        )
        result.report.pruned = pruned

        final_conflicts = self._synthesizer.audit_conflicts(principal)
        if not final_conflicts:
            logger.info(
                "No conflicting higher-level roles detected. API deletion should be properly restricted."
            )
        else:
            logger.warning(
                "Recommendation: Remove these higher-level role assignments to ensure API protection."
            )
        result.end_time = datetime.now(UTC)
        return result

    def provision_api_roles(
        self,
        subscription_id: str,
        resource_group: str,
        service_name: str,
        raw_identity: str,
        api_names: list[str],
    ) -> ProvisionResult:
        """Grant API-level management without API delete/write.

        An empty API list only grants the service reader role.

        Raises:
            IdentityResolutionError, ScopeValidationError, AuthorizationError,
            RoleDefinitionWriteError: On fatal conditions.
        """
        resolved = self._resolver.resolve(raw_identity)
        result = ProvisionResult(identity=resolved, granularity=Granularity.API)
        builder = ScopeBuilder(self._client, subscription_id, resource_group, service_name)

        if not api_names:
            logger.info("No API names provided. Skipping custom role creation.")
            result.reader = self._assignments.ensure_reader_role(resolved.identity, builder.service)
            result.end_time = datetime.now(UTC)
            return result

        scopes = builder.build_api_scopes(api_names)
        return self._provision(result, builder, raw_identity, scopes, None)

    def provision_operation_roles(
        self,
        subscription_id: str,
        resource_group: str,
        service_name: str,
        raw_identity: str,
        api_name: str,
        operation_names: list[str],
    ) -> ProvisionResult:
        """Grant operation-level management within one API.

        Raises:
            InputError: If no operation names were supplied.
            IdentityResolutionError, ScopeValidationError, AuthorizationError,
            RoleDefinitionWriteError: On fatal conditions.
        """
        if not operation_names:
            raise InputError("No operation names provided. Skipping custom role creation.")
        if not api_name.strip():
            raise InputError("API name must not be empty")

        resolved = self._resolver.resolve(raw_identity)
        result = ProvisionResult(identity=resolved, granularity=Granularity.OPERATION)
        builder = ScopeBuilder(self._client, subscription_id, resource_group, service_name)
        scopes = builder.build_operation_scopes(api_name.strip(), operation_names)
        return self._provision(result, builder, raw_identity, scopes, api_name.strip())
