"""Configuration management using Pydantic.

Provides:
- Typed, immutable configuration models with validation
- YAML file loading with defaults
- Environment variable overrides for secrets
- Required-field gating for requested stages
"""

from pathlib import Path
from typing import Any, Iterable, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from fvps.core.exceptions import ConfigError, FVPSError
from fvps.core.validation import (
    validate_ip_address,
    validate_port,
    validate_site_name,
    validate_swap_size,
    validate_timezone,
    validate_username,
)


# Default configuration path (relative to the working directory)
DEFAULT_CONFIG_PATH = Path("config.yml")

# Keys masked by to_yaml(redact=True)
SECRET_FIELDS = {"root_password", "admin_password"}


def _as_text(value: Any) -> Any:
    # YAML reads `10.11` as a float and `22` as an int
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return value


class ServerConfig(BaseModel):
    """Target host settings."""

    model_config = ConfigDict(frozen=True)

    ip_address: str = ""
    timezone: str = "Asia/Kolkata"
    swap_size: str = "2G"

    @field_validator("timezone")
    @classmethod
    def check_timezone(cls, v: str) -> str:
        return validate_timezone(v)

    @field_validator("swap_size", mode="before")
    @classmethod
    def check_swap_size(cls, v: Any) -> str:
        return validate_swap_size(str(v))


class SSHConfig(BaseModel):
    """SSH connection settings."""

    model_config = ConfigDict(frozen=True)

    port: int = 22
    hardened_port: int = 8520
    key_path: Optional[str] = None
    connect_timeout: int = Field(10, gt=0)
    known_hosts: str = "~/.ssh/known_hosts"

    @field_validator("port", "hardened_port")
    @classmethod
    def check_port(cls, v: int) -> int:
        return validate_port(v)


class UserConfig(BaseModel):
    """Administrative account used for the first connection."""

    model_config = ConfigDict(frozen=True)

    username: str = "root"

    @field_validator("username")
    @classmethod
    def check_username(cls, v: str) -> str:
        return validate_username(v, "user.username")


class FrappeConfig(BaseModel):
    """Application account, bench and site settings."""

    model_config = ConfigDict(frozen=True)

    username: str = "app"
    version: str = "develop"
    bench_name: str = "frappe-bench"
    site_name: str = ""
    admin_password: Optional[str] = None
    install_erpnext: bool = True
    node_version: str = "22"

    @field_validator("username")
    @classmethod
    def check_username(cls, v: str) -> str:
        return validate_username(v, "frappe.username")

    @field_validator("version", "node_version", mode="before")
    @classmethod
    def coerce_text(cls, v: Any) -> Any:
        return _as_text(v)

    @field_validator("bench_name")
    @classmethod
    def check_bench_name(cls, v: str) -> str:
        if "/" in v or v in {".", ".."}:
            raise ValueError("bench_name must be a plain directory name")
        return v

    @field_validator("site_name")
    @classmethod
    def check_site_name(cls, v: str) -> str:
        return validate_site_name(v)

    @property
    def home(self) -> str:
        """Home directory of the application account."""
        return f"/home/{self.username}"

    @property
    def bench_path(self) -> str:
        """Absolute path of the bench directory."""
        return f"{self.home}/{self.bench_name}"


class DatabaseConfig(BaseModel):
    """MariaDB settings."""

    model_config = ConfigDict(frozen=True)

    mariadb_version: str = "10.11"
    root_password: Optional[str] = None

    @field_validator("mariadb_version", mode="before")
    @classmethod
    def coerce_version(cls, v: Any) -> Any:
        return _as_text(v)


class ProvisionConfig(BaseModel):
    """Root configuration model for one provisioning target.

    Loaded once per invocation from config.yml and passed explicitly to
    everything that needs it. Instances are immutable.
    """

    model_config = ConfigDict(frozen=True)

    server: ServerConfig = Field(default_factory=ServerConfig)
    ssh: SSHConfig = Field(default_factory=SSHConfig)
    user: UserConfig = Field(default_factory=UserConfig)
    frappe: FrappeConfig = Field(default_factory=FrappeConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)

    @model_validator(mode="after")
    def check_target_address(self) -> "ProvisionConfig":
        validate_ip_address(self.server.ip_address)
        return self

    @classmethod
    def load(cls, path: Path) -> "ProvisionConfig":
        """Load configuration from YAML file.

        Secrets from the environment (see SecretsConfig) override the
        values found in the file.

        Args:
            path: Path to configuration file

        Returns:
            Loaded configuration

        Raises:
            ConfigError: If file not found or invalid
        """
        if not path.exists():
            raise ConfigError(
                f"Configuration file not found: {path}",
                hint="Create it with: fvps config example > config.yml",
            )

        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(
                f"Invalid YAML in configuration file: {path}",
                details=[str(e)],
            ) from e
        except PermissionError:
            raise ConfigError(
                f"Cannot read configuration file: {path}",
                hint="Check file permissions",
            )

        if not isinstance(data, dict):
            raise ConfigError(
                f"Configuration file must contain a mapping: {path}",
            )

        data = _apply_secret_overrides(data, SecretsConfig())

        try:
            return cls(**data)
        except FVPSError:
            raise
        except Exception as e:
            raise ConfigError(
                f"Invalid configuration in {path}",
                details=[str(e)],
            ) from e

    def get(self, dotted: str) -> Any:
        """Resolve a dotted field name such as "frappe.site_name"."""
        value: Any = self
        for part in dotted.split("."):
            value = getattr(value, part)
        return value

    def missing_fields(self, names: Iterable[str]) -> list[str]:
        """Return the names among `names` whose values are empty."""
        missing = []
        for name in names:
            value = self.get(name)
            if value is None or (isinstance(value, str) and not value.strip()):
                missing.append(name)
        return missing

    def to_yaml(self, redact: bool = True) -> str:
        """Convert configuration to YAML string, masking secrets."""
        data = self.model_dump(exclude_none=True)
        if redact:
            for section in data.values():
                for key in SECRET_FIELDS & section.keys():
                    section[key] = "********"
        return yaml.dump(data, default_flow_style=False, sort_keys=False)


class SecretsConfig(BaseSettings):
    """Secrets loaded from environment variables (or a local .env file)."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    fvps_db_root_password: Optional[str] = Field(None, alias="FVPS_DB_ROOT_PASSWORD")
    fvps_admin_password: Optional[str] = Field(None, alias="FVPS_ADMIN_PASSWORD")


def _apply_secret_overrides(data: dict, secrets: SecretsConfig) -> dict:
    overrides = {
        ("database", "root_password"): secrets.fvps_db_root_password,
        ("frappe", "admin_password"): secrets.fvps_admin_password,
    }
    merged = dict(data)
    for (section, key), value in overrides.items():
        if not value:
            continue
        section_data = dict(merged.get(section) or {})
        section_data[key] = value
        merged[section] = section_data
    return merged


def require_fields(config: ProvisionConfig, stages: Iterable[Any]) -> None:
    """Check every field the given stages declare as required.

    Runs before any remote connection is opened.

    Raises:
        ConfigError: Naming every empty field and the stages needing it
    """
    needed: dict[str, list[str]] = {}
    for stage in stages:
        for name in stage.required_fields:
            needed.setdefault(name, []).append(stage.name)

    missing = config.missing_fields(needed)
    if missing:
        raise ConfigError(
            f"Missing required configuration: {', '.join(missing)}",
            hint="Set the missing values in config.yml",
            details=[f"{name} is required by: {', '.join(needed[name])}" for name in missing],
        )


def get_example_config() -> str:
    """Generate example configuration file content."""
    return """# Frappe VPS provisioning configuration
# Secrets may be left out and supplied through the environment:
#   FVPS_DB_ROOT_PASSWORD, FVPS_ADMIN_PASSWORD

server:
  ip_address: 203.0.113.10   # required
  timezone: Asia/Kolkata
  swap_size: 2G

ssh:
  port: 22                   # port used before hardening
  hardened_port: 8520        # port sshd listens on after hardening
  # key_path: ~/.ssh/id_ed25519
  connect_timeout: 10
  known_hosts: ~/.ssh/known_hosts

# Administrative account for the first connection
user:
  username: root

frappe:
  username: app              # non-root sudo user that owns the bench
  version: develop           # branch passed to bench init --frappe-branch
  bench_name: frappe-bench
  site_name: erp.example.com # required by `fvps bench`
  install_erpnext: true
  node_version: "22"
  # admin_password: generated when omitted

database:
  mariadb_version: "10.11"
  # root_password: generated when omitted
"""
