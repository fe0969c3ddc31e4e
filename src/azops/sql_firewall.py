"""
Detects and remediates Azure SQL Server firewall blocks.

A connection probe is run against the target database. When the server
rejects the client, its error text names the client address and points at
``sp_set_firewall_rule``; that address is then allowed through a single-IP
firewall rule. Rules are removed by exact name or by a name pattern.

Typical runbook usage:

    params = ConnectionParameters.from_settings(password=password)
    with temporary_firewall_access(params, rule_name_prefix="deploy-"):
        run_migrations(params)

Nothing is tracked between calls: every operation re-reads the live
firewall rule list or the current probe error.
"""

import logging
import re
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Literal, Optional, Union

from azure.mgmt.sql import SqlManagementClient
from azure.mgmt.sql.models import FirewallRule
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError

from .alerting import send_error_email
from .connectors.azure import get_sql_management_client
from .connectors.mssql import ConnectionParameters, create_mssql_engine

logger = logging.getLogger(__name__)

PROBE_COLUMN = "probe_time"
PROBE_QUERY = f"SELECT getdate() AS {PROBE_COLUMN}"

FIREWALL_ERROR_MARKER = "sp_set_firewall_rule"
_IPV4_REGEX = re.compile(r"(\d+)\.(\d+)\.(\d+)\.(\d+)")


class FirewallError(Exception):
    """Base class for firewall detection and remediation failures."""


class FirewallDetectionError(FirewallError):
    """The probe outcome could not be classified as connected or blocked."""


class ServerResolutionError(FirewallError):
    """The server name or its resource group could not be determined."""


@dataclass(frozen=True)
class ServerReference:
    resource_group_name: str
    server_name: str


@dataclass(frozen=True)
class DetectionResult:
    """Outcome of a connection probe. `client_ip` is None when connected."""

    client_ip: Optional[str] = None

    @property
    def connected(self) -> bool:
        return self.client_ip is None


# --- Detection ---


def parse_firewall_client_ip(error_text: str) -> Optional[str]:
    """
    Extract the blocked client address from a SQL Server login error.

    Returns the first IPv4 address in the text, but only when the text
    also mentions sp_set_firewall_rule. Returns None otherwise.
    """
    if FIREWALL_ERROR_MARKER not in error_text:
        return None
    match = _IPV4_REGEX.search(error_text)
    if not match:
        return None
    return match.group(0)


def _driver_error_text(exc: DBAPIError) -> str:
    orig = exc.orig
    if orig is None:
        return str(exc)
    # pyodbc puts (sqlstate, message) in args
    messages = [arg for arg in getattr(orig, "args", ()) if isinstance(arg, str)]
    return " ".join(messages) if messages else str(orig)


def _run_probe(engine: Engine) -> tuple[Optional[dict], list[str]]:
    """Run the probe query, collecting driver errors instead of raising them."""
    errors: list[str] = []
    try:
        with engine.connect() as conn:
            row = conn.execute(text(PROBE_QUERY)).mappings().first()
    except DBAPIError as e:
        errors.append(_driver_error_text(e))
        return None, errors
    return (dict(row) if row is not None else None), errors


def detect_firewall_block(
    params: ConnectionParameters, engine: Optional[Engine] = None
) -> DetectionResult:
    """
    Probe the database and classify the outcome.

    Args:
        params: The connection target.
        engine: Optional engine to probe with. A fresh unpooled engine is
            created (and disposed) from `params` when omitted.

    Returns:
        DetectionResult with `client_ip` set when the firewall blocks us.

    Raises:
        FirewallDetectionError: If the probe failed with an error that is
            not a firewall block, or returned no row and no error.
    """
    owns_engine = engine is None
    if engine is None:
        engine = create_mssql_engine(params)
    try:
        row, errors = _run_probe(engine)
    finally:
        if owns_engine:
            engine.dispose()

    if row is not None and PROBE_COLUMN in row:
        logger.info(f"Connected to {params.server_instance}, no firewall rule needed")
        return DetectionResult()

    if not errors:
        raise FirewallDetectionError(
            f"Probe against {params.server_instance} returned no "
            f"'{PROBE_COLUMN}' column and no error"
        )

    error_text = errors[0]
    client_ip = parse_firewall_client_ip(error_text)
    if client_ip is None:
        logger.error(f"Unrecognized connection error from {params.server_instance}: {error_text}")
        raise FirewallDetectionError(
            f"Connection to {params.server_instance} failed with an error "
            f"that is not a firewall block: {error_text}"
        )

    logger.info(f"Firewall on {params.server_instance} blocks client {client_ip}")
    return DetectionResult(client_ip=client_ip)


def detect_required_firewall_client_ip(
    params: ConnectionParameters, engine: Optional[Engine] = None
) -> Union[str, Literal[False]]:
    """Return the client IP that needs a firewall rule, or False if connected."""
    result = detect_firewall_block(params, engine=engine)
    return False if result.connected else result.client_ip


# --- Server resolution ---


def server_name_from_instance(server_instance: Optional[str]) -> str:
    """
    Derive the logical server name from a server instance string.

    'my-sqlsrv.database.windows.net'          -> 'my-sqlsrv'
    'tcp:my-sqlsrv.database.windows.net,1433' -> 'my-sqlsrv'
    """
    if not server_instance:
        return ""
    host = server_instance.strip()
    if host.lower().startswith("tcp:"):
        host = host[4:]
    host = host.split(",", 1)[0]
    return host.split(".", 1)[0]


def _resource_group_from_id(resource_id: str) -> Optional[str]:
    # /subscriptions/<id>/resourceGroups/<rg>/providers/Microsoft.Sql/servers/<name>
    parts = resource_id.split("/")
    for i, part in enumerate(parts[:-1]):
        if part.lower() == "resourcegroups":
            return parts[i + 1]
    return None


def lookup_resource_group(server_name: str, sql_client: SqlManagementClient) -> str:
    """
    Find the resource group of a SQL server in the client's subscription.

    Raises:
        ServerResolutionError: If no server with that name exists.
    """
    for server in sql_client.servers.list():
        if server.name and server.name.lower() == server_name.lower():
            resource_group = _resource_group_from_id(server.id or "")
            if resource_group:
                logger.debug(f"Server {server_name} is in resource group {resource_group}")
                return resource_group
    raise ServerResolutionError(f"SQL server '{server_name}' not found in subscription")


def _require_server_name(params: ConnectionParameters, server_name: Optional[str]) -> str:
    server_name = server_name or server_name_from_instance(params.server_instance)
    if not server_name:
        raise ServerResolutionError(
            "Server name not given and not derivable from the server instance"
        )
    return server_name


def resolve_server_reference(
    params: ConnectionParameters,
    server_name: Optional[str] = None,
    resource_group_name: Optional[str] = None,
    sql_client: Optional[SqlManagementClient] = None,
) -> ServerReference:
    """
    Work out which server (and resource group) a firewall rule belongs to.

    Explicit arguments win, then the name derived from
    `params.server_instance`, then a lookup through the management API.

    Raises:
        ServerResolutionError: If no server name or resource group can be found.
    """
    server_name = _require_server_name(params, server_name)

    if not resource_group_name:
        client = sql_client or get_sql_management_client()
        resource_group_name = lookup_resource_group(server_name, client)

    return ServerReference(
        resource_group_name=resource_group_name, server_name=server_name
    )


# --- Rule management ---


def _provision_client_access_rule(
    params: ConnectionParameters,
    rule_name: Optional[str],
    rule_name_prefix: Optional[str],
    resource_group_name: Optional[str],
    server_name: Optional[str],
    engine: Optional[Engine],
    sql_client: Optional[SqlManagementClient],
) -> Optional[tuple[str, ServerReference, SqlManagementClient]]:
    client_ip = detect_required_firewall_client_ip(params, engine=engine)
    if client_ip is False:
        return None

    server_name = _require_server_name(params, server_name)
    client = sql_client or get_sql_management_client()
    server = resolve_server_reference(
        params,
        server_name=server_name,
        resource_group_name=resource_group_name,
        sql_client=client,
    )
    name = rule_name or f"{rule_name_prefix or ''}{uuid.uuid4()}"

    logger.info(
        f"Creating firewall rule '{name}' for {client_ip} on "
        f"{server.resource_group_name}/{server.server_name}"
    )
    client.firewall_rules.create_or_update(
        server.resource_group_name,
        server.server_name,
        name,
        FirewallRule(start_ip_address=client_ip, end_ip_address=client_ip),
    )
    return name, server, client


def ensure_firewall_client_access_rule(
    params: ConnectionParameters,
    rule_name: Optional[str] = None,
    rule_name_prefix: Optional[str] = "",
    resource_group_name: Optional[str] = None,
    server_name: Optional[str] = None,
    engine: Optional[Engine] = None,
    sql_client: Optional[SqlManagementClient] = None,
) -> Union[str, Literal[False]]:
    """
    Allow the current client through the server firewall if it is blocked.

    Args:
        params: The connection target.
        rule_name: Exact rule name. Takes precedence over `rule_name_prefix`.
        rule_name_prefix: Prefix for a generated '<prefix><uuid4>' name.
        resource_group_name: Skips the resource group lookup when given.
        server_name: Defaults to the host part of `params.server_instance`.
        engine: Optional engine for the connection probe.
        sql_client: Optional SqlManagementClient; built from settings if omitted.

    Returns:
        The name of the created rule, or False when already connected
        (nothing is created). The caller owns the rule from here on.
    """
    provisioned = _provision_client_access_rule(
        params,
        rule_name,
        rule_name_prefix,
        resource_group_name,
        server_name,
        engine,
        sql_client,
    )
    if provisioned is None:
        return False
    return provisioned[0]


def remove_firewall_rule(
    resource_group_name: str,
    server_name: str,
    rule_name: str,
    sql_client: Optional[SqlManagementClient] = None,
) -> None:
    """Delete a single firewall rule by exact name."""
    client = sql_client or get_sql_management_client()
    logger.info(f"Deleting firewall rule '{rule_name}' on {resource_group_name}/{server_name}")
    client.firewall_rules.delete(resource_group_name, server_name, rule_name)


def remove_firewall_rules_by_pattern(
    resource_group_name: str,
    server_name: str,
    pattern: str,
    sql_client: Optional[SqlManagementClient] = None,
) -> None:
    """
    Delete every firewall rule whose name matches `pattern`.

    The pattern is a regular expression searched anywhere in the name;
    anchor it ('^deploy-') to match prefixes only. The first failed
    delete is raised and the remaining rules are left in place.
    """
    regex = re.compile(pattern)
    client = sql_client or get_sql_management_client()

    rules = list(client.firewall_rules.list_by_server(resource_group_name, server_name))
    matching = [rule.name for rule in rules if rule.name and regex.search(rule.name)]
    logger.info(
        f"{len(matching)} of {len(rules)} firewall rules on "
        f"{resource_group_name}/{server_name} match '{pattern}'"
    )

    for name in matching:
        try:
            remove_firewall_rule(resource_group_name, server_name, name, sql_client=client)
        except Exception as e:
            logger.error(f"Failed to delete firewall rule '{name}': {e}")
            raise


def _remove_temporary_rule(
    name: str,
    server: ServerReference,
    client: SqlManagementClient,
    reraise: bool = True,
) -> None:
    try:
        remove_firewall_rule(
            server.resource_group_name, server.server_name, name, sql_client=client
        )
    except Exception as e:
        logger.error(
            f"Temporary firewall rule '{name}' on {server.server_name} "
            f"was not removed: {e}",
            exc_info=True,
        )
        send_error_email(e, f"remove firewall rule {name} ({server.server_name})")
        if reraise:
            raise


@contextmanager
def temporary_firewall_access(
    params: ConnectionParameters,
    rule_name: Optional[str] = None,
    rule_name_prefix: Optional[str] = "",
    resource_group_name: Optional[str] = None,
    server_name: Optional[str] = None,
    engine: Optional[Engine] = None,
    sql_client: Optional[SqlManagementClient] = None,
) -> Iterator[Union[str, Literal[False]]]:
    """
    Context manager that opens the firewall for the block and closes it after.

    Yields the created rule name, or False when no rule was needed. The
    rule is deleted on exit, also when the block raises. A failed delete
    is logged and reported by e-mail. It is re-raised only when the block
    itself succeeded, so an error from the block is never replaced.
    """
    provisioned = _provision_client_access_rule(
        params,
        rule_name,
        rule_name_prefix,
        resource_group_name,
        server_name,
        engine,
        sql_client,
    )
    if provisioned is None:
        yield False
        return

    name, server, client = provisioned
    try:
        yield name
    except BaseException:
        _remove_temporary_rule(name, server, client, reraise=False)
        raise
    else:
        _remove_temporary_rule(name, server, client)
