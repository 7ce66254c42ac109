"""Authorization scope construction and validation.

API Management scopes are hierarchical ARM resource ids:

    service:   /subscriptions/{sub}/resourceGroups/{rg}/providers/Microsoft.ApiManagement/service/{svc}
    API:       {service}/apis/{api}
    operation: {service}/apis/{api}/operations/{op}

Each candidate is probed against the backend. Missing targets are dropped
with a warning; only an empty result is fatal.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .client import AuthorizationClient

logger = logging.getLogger(__name__)

APIM_PROVIDER = "Microsoft.ApiManagement"
APIM_PROVIDER_SEGMENT = f"/providers/{APIM_PROVIDER}/"


class ScopeValidationError(Exception):
    """Raised when no requested target resolves to an existing scope."""

    pass


def service_scope(subscription_id: str, resource_group: str, service_name: str) -> str:
    return (
        f"/subscriptions/{subscription_id}/resourceGroups/{resource_group}"
        f"/providers/{APIM_PROVIDER}/service/{service_name}"
    )


def api_scope(service: str, api_name: str) -> str:
    return f"{service}/apis/{api_name}"


def operation_scope(service: str, api_name: str, operation_name: str) -> str:
    return f"{api_scope(service, api_name)}/operations/{operation_name}"


@dataclass
class ScopeBuildResult:
    """Validated scopes in request order plus the targets that were dropped."""

    scopes: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


def _unique(names: list[str]) -> list[str]:
    seen: set[str] = set()
    result: list[str] = []
    for name in names:
        cleaned = name.strip()
        if not cleaned:
            logger.warning("Skipping blank target name")
            continue
        if cleaned in seen:
            continue
        seen.add(cleaned)
        result.append(cleaned)
    return result


class ScopeBuilder:
    """Build validated assignable scopes for one API Management service."""

    def __init__(
        self,
        client: AuthorizationClient,
        subscription_id: str,
        resource_group: str,
        service_name: str,
    ) -> None:
        self._client = client
        self.service = service_scope(subscription_id, resource_group, service_name)

    def _probe(self, names: list[str], to_scope: dict[str, str]) -> ScopeBuildResult:
        result = ScopeBuildResult()
        for name in names:
            scope = to_scope[name]
            logger.info("Checking if resource exists", extra={"scope": scope})
            if self._client.resource_exists(scope):
                result.scopes.append(scope)
            else:
                logger.warning(
                    "Resource does not exist, skipping target",
                    extra={"target": name, "scope": scope},
                )
                result.skipped.append(name)
        return result

    def build_api_scopes(self, api_names: list[str]) -> ScopeBuildResult:
        """Validate API-level scopes.

        Raises:
            ScopeValidationError: If none of the APIs exist.
        """
        names = _unique(api_names)
        result = self._probe(names, {n: api_scope(self.service, n) for n in names})
        if not result.scopes:
            raise ScopeValidationError("No valid API names found in the provided list")
        return result

    def build_operation_scopes(self, api_name: str, operation_names: list[str]) -> ScopeBuildResult:
        """Validate operation-level scopes under one API.

        An operation scope is only valid if its parent API exists, so the
        parent is probed first.

        Raises:
            ScopeValidationError: If the API or all of its requested
                operations are missing.
        """
        parent = api_scope(self.service, api_name)
        names = _unique(operation_names)
        if not self._client.resource_exists(parent):
            logger.error("Parent API does not exist", extra={"scope": parent})
            raise ScopeValidationError(f"API '{api_name}' does not exist: {parent}")

        result = self._probe(
            names, {n: operation_scope(self.service, api_name, n) for n in names}
        )
        if not result.scopes:
            raise ScopeValidationError(
                "No valid operation names found in the provided list or none exist in Azure"
            )
        return result
