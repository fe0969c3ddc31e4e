"""
Client factories for the Azure services the automation helpers talk to
(Key Vault secrets, SQL resource management).
"""

import logging
from functools import lru_cache
from typing import Optional

from azure.core.credentials import TokenCredential
from azure.identity import ClientSecretCredential, DefaultAzureCredential
from azure.keyvault.secrets import SecretClient
from azure.mgmt.sql import SqlManagementClient

from ..config import settings

logger = logging.getLogger(__name__)


@lru_cache
def get_azure_credential() -> TokenCredential:
    """
    Returns the credential used by every Azure SDK client.

    A ClientSecretCredential when AZURE.TENANT_ID, CLIENT_ID and
    CLIENT_SECRET are all configured, otherwise DefaultAzureCredential
    (env vars, managed identity, az login, etc.).
    """
    azure = settings.AZURE
    if azure.has_client_secret:
        logger.debug(f"Using client secret credential for app {azure.CLIENT_ID}")
        return ClientSecretCredential(
            tenant_id=azure.TENANT_ID,
            client_id=azure.CLIENT_ID,
            client_secret=azure.CLIENT_SECRET,
        )
    logger.debug("Using DefaultAzureCredential")
    return DefaultAzureCredential()


def key_vault_url(vault_name: str) -> str:
    """Build the vault URI from its short name, e.g. 'kv-prod'."""
    return f"https://{vault_name}.{settings.AZURE.KEY_VAULT_DNS_SUFFIX}"


def get_key_vault_client(vault_name: Optional[str] = None) -> SecretClient:
    """
    Returns an Azure Key Vault secrets client.

    Args:
        vault_name: Short vault name. Defaults to AZURE.KEY_VAULT_NAME.

    Raises:
        ValueError: If no vault name is given or configured.
    """
    vault_name = vault_name or settings.AZURE.KEY_VAULT_NAME
    if not vault_name:
        raise ValueError("No Key Vault name given and AZURE.KEY_VAULT_NAME is not set")

    vault_url = key_vault_url(vault_name)
    try:
        client = SecretClient(vault_url=vault_url, credential=get_azure_credential())
    except Exception as e:
        logger.critical(f"Failed to create SecretClient for {vault_url}: {e}")
        raise
    logger.debug(f"SecretClient created for {vault_url}")
    return client


def get_sql_management_client(
    subscription_id: Optional[str] = None,
) -> SqlManagementClient:
    """
    Returns an Azure SQL resource management client.

    Args:
        subscription_id: Defaults to AZURE.SUBSCRIPTION_ID.

    Raises:
        ValueError: If no subscription id is given or configured.
    """
    subscription_id = subscription_id or settings.AZURE.SUBSCRIPTION_ID
    if not subscription_id:
        raise ValueError(
            "No subscription id given and AZURE.SUBSCRIPTION_ID is not set"
        )

    try:
        client = SqlManagementClient(get_azure_credential(), subscription_id)
    except Exception as e:
        logger.critical(f"Failed to create SqlManagementClient: {e}")
        raise
    logger.debug(f"SqlManagementClient created for subscription {subscription_id}")
    return client
