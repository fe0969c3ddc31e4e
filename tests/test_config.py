from pathlib import Path
from typing import Any

import pytest
from pydantic import ValidationError
from pytest import MonkeyPatch

from azops import config as config_module

CFG_YAML = """\
AZOPS_ENVIRONMENT: Staging
AZURE:
  SUBSCRIPTION_ID: yaml-sub
  KEY_VAULT_NAME: kv-yaml
SQL:
  SERVER_INSTANCE: yaml-srv.database.windows.net
  DATABASE: yamldb
  PASSWORD: yaml_password
  FIREWALL_RULE_PREFIX: yaml-
"""


@pytest.fixture
def cfg_dir(tmp_path: Path, monkeypatch: MonkeyPatch) -> Path:
    """Run the test from a directory whose parent holds cfg/cfg.yml."""
    (tmp_path / "cfg").mkdir()
    (tmp_path / "cfg" / "cfg.yml").write_text(CFG_YAML)
    workdir = tmp_path / "runbooks"
    workdir.mkdir()
    monkeypatch.chdir(workdir)
    return tmp_path


def test_defaults_without_config(reload_settings: Any, tmp_path: Path, monkeypatch: MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    reload_settings({"AZOPS_ENVIRONMENT": "", "SQL__FIREWALL_RULE_PREFIX": ""})
    settings = config_module.get_settings()

    assert settings.AZOPS_ENVIRONMENT == "Development"
    assert settings.AZURE.KEY_VAULT_DNS_SUFFIX == "vault.azure.net"
    assert settings.SQL.ODBC_DRIVER == "ODBC Driver 18 for SQL Server"
    assert settings.SQL.FIREWALL_RULE_PREFIX == "azops-"
    assert settings.MONITORING.SMTP_SERVER is None


def test_load_from_environment_variables(reload_settings: Any) -> None:
    reload_settings(
        {
            "AZOPS_ENVIRONMENT": "Production",
            "AZURE__TENANT_ID": "env-tenant",
            "AZURE__CLIENT_ID": "env-client",
            "AZURE__CLIENT_SECRET": "env-secret",
            "SQL__SERVER_INSTANCE": "env-srv.database.windows.net",
            "SQL__CONNECT_TIMEOUT": "5",
            "MONITORING__EMAIL_RECIPIENTS": '["ops@example.com"]',
        }
    )
    settings = config_module.get_settings()

    assert settings.AZOPS_ENVIRONMENT == "Production"
    assert settings.AZURE.has_client_secret
    assert settings.SQL.SERVER_INSTANCE == "env-srv.database.windows.net"
    assert settings.SQL.CONNECT_TIMEOUT == 5
    assert settings.MONITORING.EMAIL_RECIPIENTS == ["ops@example.com"]
    assert "env-secret" not in repr(settings.AZURE)


def test_load_from_yaml_file(reload_settings: Any, cfg_dir: Path) -> None:
    reload_settings({"AZOPS_ENVIRONMENT": "", "SQL__PASSWORD": ""})
    settings = config_module.get_settings()

    assert settings.AZOPS_ENVIRONMENT == "Staging"
    assert settings.AZURE.SUBSCRIPTION_ID == "yaml-sub"
    assert settings.SQL.DATABASE == "yamldb"
    assert settings.SQL.FIREWALL_RULE_PREFIX == "yaml-"


def test_env_overrides_yaml(reload_settings: Any, cfg_dir: Path) -> None:
    reload_settings(
        {
            "SQL__PASSWORD": "env_password",
            "AZURE__KEY_VAULT_NAME": "kv-env",
        }
    )
    settings = config_module.get_settings()

    assert settings.SQL.PASSWORD == "env_password"
    assert settings.AZURE.KEY_VAULT_NAME == "kv-env"
    # Untouched keys still come from YAML
    assert settings.SQL.SERVER_INSTANCE == "yaml-srv.database.windows.net"


def test_locate_config_file_walks_up(cfg_dir: Path) -> None:
    located = config_module._locate_config_file("cfg/cfg.yml", max_depth=2)
    assert located == str(cfg_dir / "cfg" / "cfg.yml")


def test_invalid_setting_raises(reload_settings: Any) -> None:
    with pytest.raises(ValidationError, match="CONNECT_TIMEOUT"):
        reload_settings({"SQL__CONNECT_TIMEOUT": "not-a-number"})
