from functools import lru_cache
from pathlib import Path
from typing import Any, Optional, cast

import yaml
from pydantic import (
    BaseModel,
    EmailStr,
    Field,
    ValidationError,
)
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)


# --- File Loading Logic ---
def _yaml_config_settings_source() -> dict[str, Any]:
    """
    A Pydantic settings source that loads values from a YAML file.
    It searches up to 5 parent directories for 'cfg/cfg.yml'.
    """
    config_path = _locate_config_file("cfg/cfg.yml", max_depth=5)
    if not config_path:
        # Settings will rely purely on env vars or defaults.
        print("INFO: 'cfg/cfg.yml' not found. Relying on environment variables.")
        return {}

    try:
        with open(config_path) as f:
            config = yaml.safe_load(f)
            return config or {}
    except yaml.YAMLError as e:
        print(f"ERROR: Could not parse config YAML: {e}")
        return {}
    except OSError as e:
        print(f"ERROR: Could not read config file {config_path}: {e}")
        return {}


def _locate_config_file(cfg_file: str, max_depth: int = 5) -> Optional[str]:
    """
    Searches parent directories for a configuration file.
    Starts from the current working directory.
    """
    current_dir = Path.cwd()
    for _ in range(max_depth):
        config_path = current_dir / cfg_file
        if config_path.is_file():
            return str(config_path)

        if current_dir.parent == current_dir:
            # Reached root
            break
        current_dir = current_dir.parent

    return None


# --- Pydantic Schemas (Data Validation) ---
class AzureSettings(BaseModel):
    """Schema for the Azure tenant, service principal and Key Vault."""

    TENANT_ID: Optional[str] = None
    SUBSCRIPTION_ID: Optional[str] = None
    CLIENT_ID: Optional[str] = None
    CLIENT_SECRET: Optional[str] = Field(None, repr=False)

    KEY_VAULT_NAME: Optional[str] = None
    KEY_VAULT_DNS_SUFFIX: str = "vault.azure.net"

    # Resource URI the runbook requests a token for
    TOKEN_RESOURCE: str = "https://management.azure.com"

    @property
    def has_client_secret(self) -> bool:
        """True when a full service principal (tenant, id, secret) is configured."""
        return bool(self.TENANT_ID and self.CLIENT_ID and self.CLIENT_SECRET)


class SqlSettings(BaseModel):
    """Schema for the Azure SQL target and firewall rule defaults."""

    SERVER_INSTANCE: str = ""
    DATABASE: str = ""
    USERNAME: str = ""
    PASSWORD: Optional[str] = Field(None, repr=False)

    # If set, the password is read from Key Vault instead of PASSWORD
    PASSWORD_SECRET_NAME: Optional[str] = None

    ODBC_DRIVER: str = "ODBC Driver 18 for SQL Server"
    CONNECT_TIMEOUT: int = 30

    FIREWALL_RULE_PREFIX: str = "azops-"
    RESOURCE_GROUP_NAME: Optional[str] = None


class MonitoringSettings(BaseModel):
    """Schema for email alerting."""

    EMAIL_RECIPIENTS: list[EmailStr] = []
    SENDER_EMAIL: EmailStr = "noreply@example.com"
    SMTP_SERVER: Optional[str] = None
    SMTP_PORT: int = 25


# --- Main Settings Class ---
class AppSettings(BaseSettings):
    """
    The main settings class for the application.

    It validates and loads settings from:
    1. Environment variables (highest priority, for secrets)
    2. 'cfg/cfg.yml' file (for defaults)
    3. Pydantic model defaults (lowest priority)
    """

    # Environment name (e.g., 'Development', 'Staging', 'Production')
    AZOPS_ENVIRONMENT: str = "Development"

    AZURE: AzureSettings = Field(default_factory=AzureSettings)
    SQL: SqlSettings = Field(default_factory=SqlSettings)
    MONITORING: MonitoringSettings = Field(default_factory=MonitoringSettings)

    model_config = SettingsConfigDict(
        env_nested_delimiter="__",  # Allows SQL__SERVER_INSTANCE env var
        case_sensitive=False,
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """
        Customizes the load order:
        1. Env vars (env_settings)
        2. YAML file (_yaml_config_settings_source)
        3. Pydantic defaults (init_settings)
        """
        return (
            env_settings,
            cast(PydanticBaseSettingsSource, _yaml_config_settings_source),
            init_settings,
        )


# --- Global Settings Singleton ---
@lru_cache
def get_settings() -> AppSettings:
    """
    Returns a cached instance of the AppSettings.

    This function is the single entry point for accessing settings.
    It will load and validate them only once.

    Raises:
        ValidationError: If any settings are invalid.
    """
    try:
        return AppSettings()
    except ValidationError as e:
        print("--- CRITICAL: CONFIGURATION ERROR ---")
        print(f"Failed to load or validate settings: {e}")
        print("Please check your environment variables and/or cfg/cfg.yml file.")
        raise


# Singleton instance to be imported by other modules
settings: AppSettings = get_settings()
