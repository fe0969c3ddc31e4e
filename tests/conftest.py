import importlib
from typing import Any, Callable, Optional
from unittest.mock import MagicMock

import pytest
from pydantic import ValidationError
from pytest import MonkeyPatch

from azops import alerting, logging
from azops import config as config_module
from azops.connectors import azure, mssql
from azops.connectors.mssql import ConnectionParameters

# Modules that read `settings` at import time
_SETTINGS_DEPENDENTS = [alerting, logging, azure, mssql]


def _reload_all() -> None:
    importlib.reload(config_module)
    for module in _SETTINGS_DEPENDENTS:
        importlib.reload(module)


@pytest.fixture
def reload_settings(monkeypatch: MonkeyPatch) -> Any:
    """
    Fixture to force a reload of the config module and
    all dependent modules *after* setting new env vars.
    """

    def _set_env_and_reload(vars_dict: dict[str, str]) -> None:
        """
        Sets env vars (an empty value unsets the var) and triggers the reload.
        """
        for k, v in vars_dict.items():
            if v == "":
                monkeypatch.delenv(k, raising=False)
            else:
                monkeypatch.setenv(k, v)

        config_module.get_settings.cache_clear()
        azure.get_azure_credential.cache_clear()

        try:
            _reload_all()
        except ValidationError:
            raise  # Re-raise it for the test

    yield _set_env_and_reload

    # --- Teardown (after test) ---
    monkeypatch.undo()
    config_module.get_settings.cache_clear()
    azure.get_azure_credential.cache_clear()

    try:
        _reload_all()
    except ValidationError:
        pass  # We don't care about validation errors on cleanup


@pytest.fixture
def connection_params() -> ConnectionParameters:
    return ConnectionParameters(
        server_instance="my-sqlsrv.database.windows.net",
        database="appdb",
        username="deployer",
        password="p@ss;word",
    )


@pytest.fixture
def sql_client() -> MagicMock:
    """A stand-in for azure.mgmt.sql.SqlManagementClient."""
    return MagicMock()


@pytest.fixture
def probe_engine() -> Callable[..., MagicMock]:
    """
    Factory for mock SQLAlchemy engines whose probe query returns `row`
    or whose connect() raises `error`.
    """

    def _make(row: Any = None, error: Optional[Exception] = None) -> MagicMock:
        engine = MagicMock()
        if error is not None:
            engine.connect.side_effect = error
            return engine

        conn = MagicMock()
        # This makes `with engine.connect() as conn:` work
        engine.connect.return_value.__enter__.return_value = conn
        conn.execute.return_value.mappings.return_value.first.return_value = row
        return engine

    return _make
