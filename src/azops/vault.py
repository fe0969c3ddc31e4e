"""
Reads Key Vault secrets as plain text.

The secret value is copied into a mutable buffer that is zeroed as soon
as the caller's scope ends, so no decoded copy is kept around by this
module beyond the conversion.
"""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Optional

from azure.core.exceptions import AzureError
from azure.keyvault.secrets import SecretClient

from .connectors.azure import get_key_vault_client

logger = logging.getLogger(__name__)


def _zero(buffer: bytearray) -> None:
    for i in range(len(buffer)):
        buffer[i] = 0


@contextmanager
def secret_buffer(
    vault_name: str,
    secret_name: str,
    client: Optional[SecretClient] = None,
) -> Iterator[bytearray]:
    """
    Fetch a secret and yield its UTF-8 value in a mutable buffer.

    The buffer is overwritten with zeros when the `with` block exits,
    whether it exits normally or by an exception.

    Example:
        with secret_buffer("kv-prod", "sql-password") as buf:
            connect(password=buf.decode())
    """
    client = client or get_key_vault_client(vault_name)
    try:
        secret = client.get_secret(secret_name)
    except AzureError as e:
        logger.error(f"Failed to read secret '{secret_name}' from vault '{vault_name}': {e}")
        raise

    buffer = bytearray((secret.value or "").encode("utf-8"))
    try:
        yield buffer
    finally:
        _zero(buffer)
        logger.debug(f"Secret buffer for '{secret_name}' released")


def read_secret_plaintext(
    vault_name: str,
    secret_name: str,
    client: Optional[SecretClient] = None,
) -> str:
    """
    Return the plain-text value of a Key Vault secret.

    Args:
        vault_name: Short vault name, e.g. 'kv-frontend-prod'.
        secret_name: Name of the secret in the vault.
        client: Optional SecretClient; built from settings if omitted.

    Raises:
        azure.core.exceptions.ResourceNotFoundError: If the secret does not exist.
    """
    with secret_buffer(vault_name, secret_name, client=client) as buffer:
        value = buffer.decode("utf-8")
    logger.info(f"Read secret '{secret_name}' from vault '{vault_name}'")
    return value
