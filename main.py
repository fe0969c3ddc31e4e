# main.py
"""
Example deployment runbook.

Reads the SQL password from Key Vault, opens the Azure SQL firewall for
this machine if needed, runs a query and removes the rule again.
Configure it through cfg/cfg.yml or env vars, e.g.:

    AZURE__TENANT_ID, AZURE__SUBSCRIPTION_ID, AZURE__KEY_VAULT_NAME
    SQL__SERVER_INSTANCE, SQL__DATABASE, SQL__USERNAME, SQL__PASSWORD_SECRET_NAME
"""

import logging
from typing import Optional

from sqlalchemy import text

from azops.alerting import send_error_email
from azops.config import settings
from azops.connectors.mssql import ConnectionParameters, create_mssql_engine
from azops.logging import setup_logging
from azops.sql_firewall import temporary_firewall_access
from azops.tokens import get_access_token
from azops.vault import read_secret_plaintext

setup_logging(script_name="deploy")

logger = logging.getLogger(__name__)


def load_sql_password() -> Optional[str]:
    """Read the SQL password from Key Vault when a secret name is configured."""
    secret_name = settings.SQL.PASSWORD_SECRET_NAME
    if not secret_name:
        return None
    return read_secret_plaintext(settings.AZURE.KEY_VAULT_NAME, secret_name)


def check_management_token() -> None:
    """Verify the service principal can get a management token."""
    azure = settings.AZURE
    if not azure.has_client_secret:
        logger.info("No service principal configured, skipping token check.")
        return
    token = get_access_token(
        tenant_id=azure.TENANT_ID,
        application_id=azure.CLIENT_ID,
        application_secret=azure.CLIENT_SECRET,
        resource=azure.TOKEN_RESOURCE,
    )
    logger.info(f"Management token expires in {token.get('expires_in')}s")


def main() -> None:
    logger.info(f"Starting deployment runbook in {settings.AZOPS_ENVIRONMENT} mode.")

    check_management_token()
    params = ConnectionParameters.from_settings(password=load_sql_password())

    with temporary_firewall_access(
        params,
        rule_name_prefix=settings.SQL.FIREWALL_RULE_PREFIX,
        resource_group_name=settings.SQL.RESOURCE_GROUP_NAME,
    ) as rule_name:
        if rule_name:
            logger.info(f"Temporary firewall rule in place: {rule_name}")

        engine = create_mssql_engine(params)
        try:
            with engine.connect() as conn:
                database = conn.execute(text("SELECT DB_NAME()")).scalar()
            logger.info(f"Connected to database {database}")
        finally:
            engine.dispose()

    logger.info("Deployment runbook finished.")


if __name__ == "__main__":
    try:
        main()
    except Exception as e:
        logger.critical(f"Unhandled exception in main: {e}", exc_info=True)
        send_error_email(e, "deploy runbook")
        raise
