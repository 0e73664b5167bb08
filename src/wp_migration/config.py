"""Configuration management for WP Bridge using Pydantic.

This module provides type-safe configuration models for the remote source
credentials, the local content store, the credential vault, performance
tuning and logging.
"""

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from wp_migration.client.exceptions import ConfigError

_PREFIX_PATTERN = re.compile(r"^[A-Za-z0-9_]+$")
_ENV_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-(.*?))?\}")


class CredentialRecord(BaseModel):
    """Connection descriptor for the remote source database.

    Persisted only in encrypted form (see ``client.vault``); decrypted into
    memory for the duration of a connection attempt.
    """

    host: str = Field(default="localhost", description="host, host:port, [ipv6]:port or socket path")
    port: int | None = Field(default=None, ge=1, le=65535, description="TCP port (default 3306)")
    socket: str | None = Field(default=None, description="Unix socket path")
    database: str = Field(default="", description="Database name")
    user: str = Field(default="", description="Database user")
    password: SecretStr = Field(default=SecretStr(""), description="Database password")
    charset: str = Field(default="utf8mb4", description="Connection charset")
    collation: str = Field(default="utf8mb4_unicode_520_ci", description="Connection collation")
    table_prefix: str = Field(default="wp_", description="Remote table prefix")
    is_multi_tenant: bool = Field(default=False, description="Remote installation is multisite")
    media_base_url: str = Field(default="", description="Legacy uploads base URL")
    driver: str = Field(default="mysql+pymysql", description="SQLAlchemy driver name")

    @field_validator("table_prefix")
    @classmethod
    def validate_table_prefix(cls, v: str) -> str:
        """Table prefixes are inlined as identifiers, so only [A-Za-z0-9_] is allowed."""
        v = v or "wp_"
        if not _PREFIX_PATTERN.match(v):
            raise ValueError("table_prefix may only contain letters, digits and underscores")
        return v

    @field_validator("media_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        """Normalize base URL."""
        return v.strip().rstrip("/")

    def require_complete(self) -> None:
        """Raise ConfigError when host, database or user is missing."""
        missing = [
            name for name in ("host", "database", "user") if not str(getattr(self, name)).strip()
        ]
        if missing:
            raise ConfigError(
                "Incomplete source credentials", details={"missing": ",".join(missing)}
            )

    def to_plain_dict(self) -> dict[str, Any]:
        """Dump including the secret, for sealing into the vault."""
        data = self.model_dump()
        data["password"] = self.password.get_secret_value()
        return data


class TargetConfig(BaseModel):
    """Local content store configuration."""

    database_url: str = Field(
        default="sqlite:///wp_bridge.db",
        description="SQLAlchemy URL of the local content store",
    )
    media_base_url: str = Field(default="", description="New uploads base URL")
    uploads_dir: str = Field(default="uploads", description="Local uploads root directory")
    allowed_kinds: list[str] = Field(
        default_factory=lambda: ["post", "page", "attachment"],
        description="Entity kinds that exist locally; unknown kinds fall back to 'post'",
    )
    taxonomies: dict[str, list[str]] = Field(
        default_factory=lambda: {"post": ["category", "post_tag"], "page": []},
        description="Taxonomies allowed per entity kind",
    )
    tenant_filename_prefix: bool = Field(
        default=False,
        description="Prefix attachment filenames with t<tenant>- to avoid collisions",
    )
    reference_meta_keys: list[str] = Field(
        default_factory=list,
        description="Extra meta keys whose numeric values reference attachments",
    )
    skip_logins: list[str] = Field(
        default_factory=list, description="Remote user logins never imported"
    )

    @field_validator("media_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        """Normalize base URL."""
        return v.strip().rstrip("/")

    def allowed_taxonomies(self, kind: str) -> set[str]:
        """Taxonomies that may be assigned to entities of ``kind``."""
        return set(self.taxonomies.get(kind, []))

    def known_taxonomies(self) -> set[str]:
        """Every taxonomy registered for any kind."""
        return {tax for taxes in self.taxonomies.values() for tax in taxes}


class VaultConfig(BaseModel):
    """Credential vault configuration."""

    key_material: SecretStr | None = Field(
        default=None, description="Opaque installation secret used to derive the vault key"
    )
    key_file: str | None = Field(default=None, description="File holding the installation secret")
    context: str = Field(default="default", description="Key derivation context (e.g. host name)")

    def load_key_bytes(self) -> bytes:
        """Return the raw key material.

        Raises:
            ConfigError: If neither key_material nor a readable key_file is set
        """
        if self.key_material is not None and self.key_material.get_secret_value():
            return self.key_material.get_secret_value().encode()
        if self.key_file:
            path = Path(self.key_file)
            if not path.exists():
                raise ConfigError("Vault key file not found", details={"path": str(path)})
            data = path.read_bytes().strip()
            if data:
                return data
        raise ConfigError("Vault key material is not configured")


class PerformanceConfig(BaseModel):
    """Performance tuning configuration."""

    chunk_size: int = Field(default=500, ge=1, le=5000, description="Entries per fetched page")
    term_chunk_size: int = Field(default=500, ge=1, le=5000, description="Terms per page")
    user_chunk_size: int = Field(default=500, ge=1, le=5000, description="Users per page")
    connect_timeout: int = Field(default=5, ge=1, le=120, description="Remote connect timeout (s)")
    read_timeout: int = Field(default=60, ge=1, le=3600, description="Remote read timeout (s)")
    download_timeout: float = Field(
        default=30.0, ge=1.0, le=600.0, description="Attachment transfer timeout (s)"
    )
    download_retries: int = Field(
        default=2, ge=1, le=10, description="Attempts per attachment download"
    )


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(
        default="WARNING",
        description="Console log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    file_level: str = Field(
        default="DEBUG",
        description="File log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    format: str = Field(default="json", description="Log format (json or console)")
    file: str | None = Field(default="logs/wp-bridge.log", description="Log file path")

    @field_validator("level", "file_level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Log level must be one of: {', '.join(valid_levels)}")
        return v_upper

    @field_validator("format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        """Validate log format."""
        valid_formats = ["json", "console"]
        v_lower = v.lower()
        if v_lower not in valid_formats:
            raise ValueError(f"Log format must be one of: {', '.join(valid_formats)}")
        return v_lower


class MigrationConfig(BaseSettings):
    """Main WP Bridge configuration."""

    model_config = SettingsConfigDict(
        env_prefix="WP_BRIDGE_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    # Remote source; usually loaded from the vault instead
    source: CredentialRecord | None = Field(
        default=None, description="Source credentials (overrides the vault when set)"
    )

    target: TargetConfig = Field(default_factory=TargetConfig, description="Local store")

    vault: VaultConfig = Field(default_factory=VaultConfig, description="Credential vault")

    performance: PerformanceConfig = Field(
        default_factory=PerformanceConfig, description="Performance configuration"
    )

    logging: LoggingConfig = Field(
        default_factory=LoggingConfig, description="Logging configuration"
    )

    report_dir: str = Field(default="reports", description="Directory for run reports")


def load_config_from_yaml(config_path: str | Path) -> MigrationConfig:
    """Load configuration from YAML file.

    Args:
        config_path: Path to YAML configuration file

    Returns:
        MigrationConfig: Loaded configuration

    Raises:
        ConfigError: If the file is missing, empty or references unset variables
    """
    config_path = Path(config_path)

    if not config_path.exists():
        raise ConfigError("Configuration file not found", details={"path": str(config_path)})

    with open(config_path) as f:
        config_data = yaml.safe_load(f)

    if not config_data:
        raise ConfigError("Empty configuration file", details={"path": str(config_path)})

    config_data = _expand_env_vars(config_data)

    return MigrationConfig(**config_data)


def _expand_env_vars(data: Any) -> Any:
    """Recursively expand environment variables in config data.

    Supports ``${VAR}`` and ``${VAR:-default}`` anywhere inside a string.
    """
    if isinstance(data, dict):
        return {k: _expand_env_vars(v) for k, v in data.items()}
    if isinstance(data, list):
        return [_expand_env_vars(item) for item in data]
    if isinstance(data, str):

        def _replace(match: re.Match[str]) -> str:
            var_name, default = match.group(1), match.group(2)
            env_value = os.environ.get(var_name)
            if env_value is None:
                if default is not None:
                    return default
                raise ConfigError(
                    f"Environment variable '{var_name}' not found. "
                    "Please set it in your environment or .env file."
                )
            return env_value

        return _ENV_PATTERN.sub(_replace, data)
    return data


def save_config_to_yaml(config: MigrationConfig, output_path: str | Path) -> None:
    """Save configuration to YAML file, without secrets.

    Args:
        config: Configuration to save
        output_path: Path to output YAML file
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    # SecretStr fields dump as masked strings
    config_dict = config.model_dump(mode="json", exclude={"vault": {"key_material"}})

    with open(output_path, "w") as f:
        yaml.dump(config_dict, f, default_flow_style=False, sort_keys=False)
