"""
Utilities for connecting to an Azure SQL (SQL Server) database.

This module provides:
- `ConnectionParameters`, the caller-supplied connection target.
- A standardized function to create a SQLAlchemy engine over pyodbc.
"""

import logging
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import create_engine
from sqlalchemy.engine import URL, Engine
from sqlalchemy.pool import NullPool

from ..config import settings

logger = logging.getLogger(__name__)


class ConnectionParameters(BaseModel):
    """Connection target for a single SQL Server database."""

    model_config = ConfigDict(frozen=True)

    server_instance: str = ""
    database: str = ""
    username: str = ""
    password: str = Field("", repr=False)

    @classmethod
    def from_settings(cls, password: Optional[str] = None) -> "ConnectionParameters":
        """
        Build parameters from the SQL section of the global settings.

        Args:
            password: Overrides SQL.PASSWORD, e.g. with a value read
                from Key Vault.
        """
        sql = settings.SQL
        return cls(
            server_instance=sql.SERVER_INSTANCE,
            database=sql.DATABASE,
            username=sql.USERNAME,
            password=password if password is not None else (sql.PASSWORD or ""),
        )

    def url(self, driver: Optional[str] = None) -> URL:
        """
        Return a SQLAlchemy URL for the mssql+pyodbc dialect.

        ``URL.create`` escapes the credentials, so passwords with
        special characters need no manual quoting.
        """
        return URL.create(
            "mssql+pyodbc",
            username=self.username or None,
            password=self.password or None,
            host=self.server_instance,
            database=self.database or None,
            query={
                "driver": driver or settings.SQL.ODBC_DRIVER,
                "Encrypt": "yes",
            },
        )


def create_mssql_engine(
    params: ConnectionParameters,
    driver: Optional[str] = None,
    connect_timeout: Optional[int] = None,
) -> Engine:
    """
    Creates a SQLAlchemy engine for the given connection parameters.

    Engines are not pooled or cached: every call opens fresh connections,
    so each probe sees the current server-side firewall state.

    Args:
        params: The connection target.
        driver: ODBC driver name. Defaults to SQL.ODBC_DRIVER.
        connect_timeout: Login timeout in seconds. Defaults to
            SQL.CONNECT_TIMEOUT.

    Returns:
        A SQLAlchemy Engine instance.
    """
    timeout = connect_timeout if connect_timeout is not None else settings.SQL.CONNECT_TIMEOUT
    try:
        engine = create_engine(
            params.url(driver),
            poolclass=NullPool,
            connect_args={"timeout": timeout},
        )
    except Exception as e:
        logger.critical(
            f"Failed to create SQL Server engine for {params.server_instance}: {e}",
            exc_info=True,
        )
        raise
    logger.debug(f"SQL Server engine created for {params.server_instance}")
    return engine
