"""Command-line entry points.

Usage:
    apim-locks identify <resourceGroup>                 # print lock snapshot JSON
    apim-locks remove <resourceGroup> [locksJson]       # lift locks
    apim-locks-restore <resourceGroup> <locksJson>      # recreate locks
    apim-assign-api-roles <sub> <rg> <service> <identity> <apiNamesJson>
    apim-assign-operation-roles <sub> <rg> <service> <identity> <apiName> <operationsJson>
    apim-remove-roles <identity> <rolesToDeleteJson>

Every command exits 0 on success and 1 on bad usage or any fatal condition.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Sequence

import click

from .client import AuthorizationClient, AzureAuthorizationClient, BackendError
from .config import MAX_RESOURCE_GROUP_NAME_LENGTH, Config, ConfigurationError
from .identity import IdentityResolutionError, IdentityResolver
from .locks import LockSnapshotManager
from .main import setup_logging
from .models import (
    InputError,
    UnitOutcome,
    dump_lock_snapshot,
    parse_lock_snapshot,
    parse_name_list,
    summarize,
)
from .provisioning import ProvisionResult, Provisioner
from .roles import RoleDefinitionWriteError
from .scopes import ScopeValidationError
from .security import SecretlessViolationError, get_credential
from .teardown import RoleDeletionError, TeardownReconciler

logger = logging.getLogger(__name__)

LOCK_OPERATIONS = ("identify", "remove")

# Exceptions that end a run with exit code 1
FATAL_ERRORS: tuple[type[Exception], ...] = (
    InputError,
    ConfigurationError,
    SecretlessViolationError,
    IdentityResolutionError,
    ScopeValidationError,
    RoleDefinitionWriteError,
    RoleDeletionError,
    BackendError,
)


def create_client(config: Config) -> AuthorizationClient:
    """Build the Azure-backed client for ``config.subscription_id``."""
    if not config.subscription_id:
        raise ConfigurationError(
            "A subscription is required: pass --subscription-id or set AZURE_SUBSCRIPTION_ID"
        )
    credential = get_credential(config.managed_identity_client_id)
    return AzureAuthorizationClient(credential, config.subscription_id)


def load_config(subscription_id: str | None = None) -> Config:
    config = Config.from_env()
    if subscription_id:
        config = config.with_subscription(subscription_id)
    return config


def validate_resource_group(ctx: click.Context, param: click.Parameter, value: str) -> str:
    if not value or len(value) > MAX_RESOURCE_GROUP_NAME_LENGTH:
        raise click.BadParameter(
            f"must be 1-{MAX_RESOURCE_GROUP_NAME_LENGTH} characters", ctx=ctx, param=param
        )
    return value


def log_summary(title: str, outcomes: Sequence[UnitOutcome]) -> None:
    logger.info(title, extra={"summary": summarize(list(outcomes))})
    for outcome in outcomes:
        level = logging.ERROR if outcome.failed else logging.INFO
        logger.log(
            level,
            "Outcome",
            extra={"unit": outcome.unit, "status": outcome.status.value, "detail": outcome.detail},
        )


def run(command: click.Command, argv: Sequence[str] | None = None) -> int:
    """Invoke ``command`` and map every failure to exit code 1."""
    setup_logging()
    try:
        rv = command.main(args=list(argv) if argv is not None else None, standalone_mode=False)
    except click.ClickException as e:
        e.show()
        return 1
    except click.exceptions.Abort:
        return 1
    except FATAL_ERRORS as e:
        logger.error(str(e), extra={"error_type": type(e).__name__})
        return 1
    except Exception as e:
        logger.exception("Unexpected failure", extra={"error": str(e)})
        return 1
    return rv if isinstance(rv, int) else 0


subscription_option = click.option(
    "--subscription-id",
    envvar="AZURE_SUBSCRIPTION_ID",
    default=None,
    help="Subscription holding the resources (default: $AZURE_SUBSCRIPTION_ID).",
)


# =============================================================================
# Lock commands
# =============================================================================


@click.command(name="apim-locks")
@click.argument("operation")
@click.argument("resource_group", callback=validate_resource_group)
@click.argument("locks_json", required=False)
@subscription_option
def locks_command(
    operation: str, resource_group: str, locks_json: str | None, subscription_id: str | None
) -> int:
    """Identify or remove the management locks of RESOURCE_GROUP.

    \b
    identify  print the locks as a JSON array of {id, level, name, notes}
    remove    delete the locks in LOCKS_JSON, or all current locks
    """
    if operation not in LOCK_OPERATIONS:
        logger.error(
            "Unknown operation", extra={"operation": operation, "valid_operations": list(LOCK_OPERATIONS)}
        )
        return 1

    snapshot = parse_lock_snapshot(locks_json) if locks_json else None
    manager = LockSnapshotManager(create_client(load_config(subscription_id)))

    if operation == "identify":
        click.echo(dump_lock_snapshot(manager.identify(resource_group)))
        return 0

    outcomes = manager.remove(resource_group, snapshot)
    log_summary("Lock removal summary", outcomes)
    return 1 if any(o.failed for o in outcomes) else 0


@click.command(name="apim-locks-restore")
@click.argument("resource_group", callback=validate_resource_group)
@click.argument("locks_json")
@subscription_option
def restore_command(resource_group: str, locks_json: str, subscription_id: str | None) -> int:
    """Recreate the locks in LOCKS_JSON on RESOURCE_GROUP."""
    snapshot = parse_lock_snapshot(locks_json)
    manager = LockSnapshotManager(create_client(load_config(subscription_id)))
    outcomes = manager.restore(resource_group, snapshot)
    log_summary("Lock restore summary", outcomes)
    return 1 if any(o.failed for o in outcomes) else 0


# =============================================================================
# Role commands
# =============================================================================


def report_provisioning(result: ProvisionResult) -> int:
    logger.info(
        "Provisioned identity",
        extra={"kind": result.identity.kind.value, "object_id": result.identity.identity.id},
    )
    log_summary("Role assignment summary", result.outcomes)
    for conflict in result.conflicts:
        logger.warning(
            "Conflicting role", extra={"role": conflict.role_name, "scope": conflict.scope}
        )
    if result.scopes.skipped:
        logger.warning("Skipped missing targets", extra={"skipped": result.scopes.skipped})
    if not result.success:
        failed = sum(1 for o in result.outcomes if o.failed)
        logger.error("Role assignment completed with failures.", extra={"failed": failed})
        return 1
    logger.info(
        "Role assignment completed successfully.",
        extra={"role": result.role_name, "duration_seconds": result.duration_seconds},
    )
    return 0


@click.command(name="apim-assign-api-roles")
@click.argument("subscription_id")
@click.argument("resource_group", callback=validate_resource_group)
@click.argument("service_name")
@click.argument("identity")
@click.argument("api_names_json")
def assign_api_roles_command(
    subscription_id: str,
    resource_group: str,
    service_name: str,
    identity: str,
    api_names_json: str,
) -> int:
    """Grant IDENTITY management of the APIs in API_NAMES_JSON without delete rights."""
    api_names = parse_name_list(api_names_json, "API names")
    config = load_config(subscription_id)
    provisioner = Provisioner(create_client(config), config)
    result = provisioner.provision_api_roles(
        subscription_id, resource_group, service_name, identity, api_names
    )
    return report_provisioning(result)


@click.command(name="apim-assign-operation-roles")
@click.argument("subscription_id")
@click.argument("resource_group", callback=validate_resource_group)
@click.argument("service_name")
@click.argument("identity")
@click.argument("api_name")
@click.argument("operations_json")
def assign_operation_roles_command(
    subscription_id: str,
    resource_group: str,
    service_name: str,
    identity: str,
    api_name: str,
    operations_json: str,
) -> int:
    """Grant IDENTITY management of the operations of API_NAME in OPERATIONS_JSON."""
    operation_names = parse_name_list(operations_json, "operation names")
    config = load_config(subscription_id)
    provisioner = Provisioner(create_client(config), config)
    result = provisioner.provision_operation_roles(
        subscription_id, resource_group, service_name, identity, api_name, operation_names
    )
    return report_provisioning(result)


@click.command(name="apim-remove-roles")
@click.argument("identity")
@click.argument("roles_json")
@subscription_option
def remove_roles_command(identity: str, roles_json: str, subscription_id: str | None) -> int:
    """Remove IDENTITY's assignments of the roles in ROLES_JSON and unshared custom roles."""
    role_names = parse_name_list(roles_json, "rolesToDelete")
    config = load_config(subscription_id)
    client = create_client(config)
    resolved = IdentityResolver(client).resolve(identity)
    report = TeardownReconciler(client, config).remove(resolved.identity, role_names)
    log_summary("Role removal summary", [*report.roles, *report.assignments])
    logger.info("Role management process complete.")
    return 0 if report.success else 1


# =============================================================================
# Console script wrappers
# =============================================================================


def locks_main() -> None:
    sys.exit(run(locks_command))


def restore_main() -> None:
    sys.exit(run(restore_command))


def assign_api_roles_main() -> None:
    sys.exit(run(assign_api_roles_command))


def assign_operation_roles_main() -> None:
    sys.exit(run(assign_operation_roles_command))


def remove_roles_main() -> None:
    sys.exit(run(remove_roles_command))
