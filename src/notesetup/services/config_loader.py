"""Settings loading for NoteSetup."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple
from urllib.parse import unquote, urlparse

import yaml

from notesetup.errors import ConfigError, ConfigIncomplete
from notesetup.models import ConnectionParams, WorkloadConfig
from notesetup.services.credential_broker import DEFAULT_CREDENTIAL_TIMEOUT
from notesetup.services.host import REQUIRED_TOOLS, SUPPORTED_VERSIONS
from notesetup.services.installer import DOCKER_SCRIPT_URL
from notesetup.services.windows import DOCKER_DESKTOP_URL
from notesetup.services.workload import DEFAULT_READINESS_ATTEMPTS, DEFAULT_READINESS_INTERVAL

ENV_PREFIX = "NOTESETUP_"
SETTINGS_FILE_NAME = "settings.yml"


def default_data_dir() -> Path:
    base = os.environ.get("XDG_DATA_HOME") or os.path.join(os.path.expanduser("~"), ".local", "share")
    return Path(base) / "notesetup"


class ConfigLoader:
    """Loads YAML settings files."""

    SUPPORTED_KEYS = {
        "database_url",
        "mysql_root_password",
        "mysql_user",
        "mysql_password",
        "mysql_database",
        "image",
        "container_name",
        "host_port",
        "container_port",
        "volume_name",
        "guarded_port",
        "supported_versions",
        "required_tools",
        "readiness_attempts",
        "readiness_interval_seconds",
        "credential_timeout_seconds",
        "connect_timeout_seconds",
        "docker_script_url",
        "docker_script_sha256",
        "docker_desktop_url",
        "docker_desktop_sha256",
        "data_dir",
    }

    def load(self, config_path: Optional[str]) -> Dict[str, Any]:
        if not config_path:
            return {}

        path = Path(config_path)
        if not path.exists():
            raise ConfigError(f"Config file not found: {config_path}")

        try:
            parsed = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (yaml.YAMLError, OSError) as exc:
            raise ConfigError(f"Invalid config file '{config_path}': {exc}") from exc

        if parsed is None:
            return {}
        if not isinstance(parsed, dict):
            raise ConfigError("Config file must contain a YAML mapping at the root.")

        unknown = sorted(set(parsed.keys()) - self.SUPPORTED_KEYS)
        if unknown:
            unknown_list = ", ".join(unknown)
            raise ConfigError(f"Unknown configuration keys: {unknown_list}")

        return parsed

    def load_with_environment(
        self,
        config_path: Optional[str],
        environ: Optional[Mapping[str, str]] = None,
    ) -> Dict[str, Any]:
        """File values overridden by ``NOTESETUP_<KEY>`` environment variables."""
        values = self.load(config_path)
        environ = os.environ if environ is None else environ
        for key in self.SUPPORTED_KEYS:
            env_value = environ.get(f"{ENV_PREFIX}{key.upper()}")
            if env_value not in (None, ""):
                values[key] = env_value
        return values


@dataclass(frozen=True)
class Settings:
    """Resolved settings with built-in fallbacks for every unset key."""

    database_url: str = ""
    mysql_root_password: str = "rootpass"
    mysql_user: str = "notes"
    mysql_password: str = "notes_password"
    mysql_database: str = "app_db"
    image: str = "mysql:8.0"
    container_name: str = "docker-mysql-1"
    host_port: int = 3307
    container_port: int = 3306
    volume_name: str = "mysql_data"
    guarded_port: int = 3306
    supported_versions: Tuple[str, ...] = SUPPORTED_VERSIONS
    required_tools: Tuple[str, ...] = REQUIRED_TOOLS
    readiness_attempts: int = DEFAULT_READINESS_ATTEMPTS
    readiness_interval_seconds: float = DEFAULT_READINESS_INTERVAL
    credential_timeout_seconds: float = DEFAULT_CREDENTIAL_TIMEOUT
    connect_timeout_seconds: float = 5.0
    docker_script_url: str = DOCKER_SCRIPT_URL
    docker_script_sha256: Optional[str] = None
    docker_desktop_url: str = DOCKER_DESKTOP_URL
    docker_desktop_sha256: Optional[str] = None
    data_dir: Path = field(default_factory=default_data_dir)
    source: str = "built-in defaults"

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any], source: str = "built-in defaults") -> "Settings":
        kwargs: Dict[str, Any] = {"source": source}
        try:
            for key, value in values.items():
                if value is None:
                    continue
                if key in ("host_port", "container_port", "guarded_port", "readiness_attempts"):
                    value = int(value)
                elif key in (
                    "readiness_interval_seconds",
                    "credential_timeout_seconds",
                    "connect_timeout_seconds",
                ):
                    value = float(value)
                elif key in ("supported_versions", "required_tools"):
                    if isinstance(value, str):
                        value = value.split(",")
                    # YAML reads 20.10 as the float 20.1; only quoted entries keep their text.
                    invalid = [item for item in value if not isinstance(item, str)]
                    if invalid:
                        raise ValueError(f"entries must be quoted strings, got {invalid!r}")
                    value = tuple(item.strip() for item in value if item.strip())
                elif key == "data_dir":
                    value = Path(os.path.expanduser(str(value)))
                else:
                    value = str(value)
                kwargs[key] = value
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"Invalid value for '{key}' in {source}: {exc}") from exc
        return cls(**kwargs)

    def connection_params(self) -> ConnectionParams:
        if not self.database_url:
            return ConnectionParams(
                user=self.mysql_user,
                password=self.mysql_password,
                database=self.mysql_database,
                host="127.0.0.1",
                port=self.host_port,
            )

        parsed = urlparse(self.database_url)
        if parsed.scheme not in ("mysql", "mysql+pymysql", "mariadb"):
            raise ConfigError(f"database_url must be a mysql:// URL, got scheme '{parsed.scheme}'.")

        params = {
            "user": unquote(parsed.username or ""),
            "password": unquote(parsed.password or ""),
            "database": parsed.path.lstrip("/"),
        }
        missing = [name for name, value in params.items() if not value]
        if missing:
            raise ConfigIncomplete([f"database_url.{name}" for name in missing], source=self.source)

        try:
            port = parsed.port or self.host_port
        except ValueError as exc:
            raise ConfigError(f"database_url has an invalid port: {exc}") from exc

        return ConnectionParams(host=parsed.hostname or "127.0.0.1", port=port, **params)

    def workload_config(self) -> WorkloadConfig:
        params = self.connection_params()
        return WorkloadConfig(
            image=self.image,
            container_name=self.container_name,
            ports={params.port: self.container_port},
            volume_name=self.volume_name,
            environment={
                "MYSQL_ROOT_PASSWORD": self.mysql_root_password,
                "MYSQL_DATABASE": params.database,
                "MYSQL_USER": params.user,
                "MYSQL_PASSWORD": params.password,
            },
            credentials_source=self.source,
        )
