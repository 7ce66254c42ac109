"""Capture, lift and restore management locks on a resource group.

A snapshot is a plain list of ``ResourceLock`` values: it can be printed
as JSON, stored by the caller, and handed back to ``restore`` later.
Removal and restore are best-effort: one failing lock never stops the
others. Locks are advisory metadata, so there are no retries beyond the
SDK's own.
"""

from __future__ import annotations

import logging

from .client import AuthorizationClient, BackendError
from .models import OutcomeStatus, ResourceLock, UnitOutcome
from .security import log_security_audit_event

logger = logging.getLogger(__name__)


class LockSnapshotManager:
    """Identify, remove and restore resource group locks."""

    def __init__(self, client: AuthorizationClient) -> None:
        self._client = client

    def identify(self, resource_group: str) -> list[ResourceLock]:
        """Snapshot the locks on ``resource_group``; empty when there are none."""
        locks = self._client.list_locks(resource_group)
        logger.info("Found locks", extra={"resource_group": resource_group, "count": len(locks)})
        return [
            ResourceLock(id=lock.id, level=lock.level, name=lock.name, notes=lock.notes)
            for lock in locks
        ]

    def remove(
        self, resource_group: str, snapshot: list[ResourceLock] | None = None
    ) -> list[UnitOutcome]:
        """Delete every lock in ``snapshot`` (or the current locks) by name."""
        if snapshot is None:
            snapshot = self.identify(resource_group)
        if not snapshot:
            logger.info("No locks found in resource group.", extra={"resource_group": resource_group})
            return []

        logger.info("Removing locks", extra={"resource_group": resource_group})
        outcomes: list[UnitOutcome] = []
        for lock in snapshot:
            if not lock.name:
                logger.warning("Lock entry has no name. Skipping.", extra={"lock_id": lock.id})
                outcomes.append(UnitOutcome(lock.id or "<unnamed>", OutcomeStatus.SKIPPED, "missing name"))
                continue

            logger.info("Deleting lock", extra={"resource_group": resource_group, "lock_name": lock.name})
            try:
                self._client.delete_lock(resource_group, lock.name)
            except BackendError as e:
                logger.error(
                    "Failed to delete lock",
                    extra={"resource_group": resource_group, "lock_name": lock.name, "error": str(e)},
                )
                log_security_audit_event(
                    "lock", target_resource=lock.id or lock.name, action="delete", result="failure"
                )
                outcomes.append(UnitOutcome(lock.name, OutcomeStatus.FAILED, str(e)))
                continue

            log_security_audit_event(
                "lock", target_resource=lock.id or lock.name, action="delete", result="success"
            )
            outcomes.append(UnitOutcome(lock.name, OutcomeStatus.SUCCEEDED, "deleted"))
        return outcomes

    def restore(self, resource_group: str, snapshot: list[ResourceLock]) -> list[UnitOutcome]:
        """Recreate the locks in ``snapshot`` with their original name, level and notes.

        Entries missing a name or level are skipped with a warning. When a
        name appears more than once, the first entry wins.
        """
        if not snapshot:
            logger.info("No locks to recreate.")
            return []

        outcomes: list[UnitOutcome] = []
        seen: set[str] = set()
        for lock in snapshot:
            name, level = lock.name, lock.level
            if not name or level is None:
                logger.warning(
                    "Missing name or level in lock data. Skipping lock.",
                    extra={"lock_id": lock.id, "lock_name": name},
                )
                outcomes.append(
                    UnitOutcome(
                        name or lock.id or "<unnamed>", OutcomeStatus.SKIPPED, "missing name or level"
                    )
                )
                continue

            if name in seen:
                logger.warning(
                    "Duplicate lock name in snapshot, keeping the first entry",
                    extra={"lock_name": name},
                )
                outcomes.append(UnitOutcome(name, OutcomeStatus.SKIPPED, "duplicate name"))
                continue
            seen.add(name)

            logger.info(
                "Creating lock",
                extra={
                    "resource_group": resource_group,
                    "lock_name": name,
                    "level": level.value,
                    "notes": lock.notes,
                },
            )
            try:
                created = self._client.create_lock(resource_group, lock)
            except BackendError as e:
                logger.error(
                    "Failed to create lock",
                    extra={"resource_group": resource_group, "lock_name": name, "error": str(e)},
                )
                log_security_audit_event(
                    "lock", target_resource=name, action="create", result="failure"
                )
                outcomes.append(UnitOutcome(name, OutcomeStatus.FAILED, str(e)))
                continue

            logger.info("Created lock", extra={"resource_group": resource_group, "lock_name": name})
            log_security_audit_event(
                "lock", target_resource=created.id or name, action="create", result="success"
            )
            outcomes.append(UnitOutcome(name, OutcomeStatus.SUCCEEDED, "created"))
        return outcomes
