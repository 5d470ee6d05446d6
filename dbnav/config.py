"""App configuration loading helpers."""

from __future__ import annotations

import logging
import logging.config
from pathlib import Path

import tomllib

from pydantic import BaseModel, Field, ValidationError

from .dialects import MAX_TABLE_COUNT
from .manager import MAX_CONNECT_ATTEMPTS
from .models import ConnectionNode, DatabaseType, SshConfig

CONFIG_DIR = Path.home() / ".config" / "dbnav"
CONFIG_FILE = CONFIG_DIR / "config.toml"
LOG_FILE = CONFIG_DIR / "dbnav.log"

DEFAULT_PORTS = {
    DatabaseType.MYSQL: 3306,
    DatabaseType.POSTGRES: 5432,
    DatabaseType.DEMO: 0,
}

LOG = logging.getLogger(__name__)


class SshProfileConfig(BaseModel):
    """SSH jump host settings for a connection profile."""

    host: str
    port: int = 22
    username: str | None = None
    password: str | None = None
    private_key_path: str | None = None
    passphrase: str | None = None
    local_port: int = 0
    strict_host_key: bool = True
    connect_timeout: float = 10.0

    def to_ssh_config(self) -> SshConfig:
        return SshConfig(**self.model_dump())


class ConnectionProfileConfig(BaseModel):
    """Connection profile configuration stored in config.toml."""

    name: str
    db_type: DatabaseType = DatabaseType.MYSQL
    host: str = "localhost"
    port: int | None = None
    user: str = "root"
    password: str | None = None
    database: str | None = None
    include_databases: str | None = None
    connect_timeout: float = 5.0
    ssh: SshProfileConfig | None = None

    def to_node(self) -> ConnectionNode:
        """Runtime node for this profile, filling in the engine's default port."""

        return ConnectionNode(
            host=self.host,
            port=self.port if self.port is not None else DEFAULT_PORTS[self.db_type],
            user=self.user,
            database=self.database,
            password=self.password,
            db_type=self.db_type,
            name=self.name,
            ssh=self.ssh.to_ssh_config() if self.ssh else None,
            include_databases=self.include_databases,
            connect_timeout=self.connect_timeout,
        )


class AppConfig(BaseModel):
    """Shape of the application configuration file."""

    theme: str = "dark"
    log_level: str = "INFO"
    max_connect_attempts: int = MAX_CONNECT_ATTEMPTS
    max_table_count: int = MAX_TABLE_COUNT
    profiles: list[ConnectionProfileConfig] = Field(default_factory=lambda: list(_default_profiles()))
    active_profile: str | None = None

    def profile(self, name: str) -> ConnectionProfileConfig:
        for profile in self.profiles:
            if profile.name == name:
                return profile
        raise ValueError(f"Profile '{name}' not found.")

    def with_active_profile(self, name: str | None) -> AppConfig:
        """Return a copy with the active profile updated."""

        return self.model_copy(update={"active_profile": name})


def load_config() -> AppConfig:
    """Load configuration from disk; fall back to defaults if missing or invalid."""

    try:
        with CONFIG_FILE.open("rb") as handle:
            raw = tomllib.load(handle)
    except FileNotFoundError:
        return AppConfig()
    except (tomllib.TOMLDecodeError, OSError) as exc:
        LOG.warning("Ignoring unreadable config file", extra={"path": str(CONFIG_FILE), "error": str(exc)})
        return AppConfig()
    try:
        return AppConfig.model_validate(raw)
    except ValidationError as exc:
        LOG.warning("Ignoring invalid config file", extra={"path": str(CONFIG_FILE), "error": str(exc)})
        return AppConfig()


def save_config(config: AppConfig) -> None:
    """Persist configuration to disk."""

    CONFIG_FILE.parent.mkdir(parents=True, exist_ok=True)
    lines: list[str] = [
        f"theme = {_quote(config.theme)}",
        f"log_level = {_quote(config.log_level)}",
        f"max_connect_attempts = {config.max_connect_attempts}",
        f"max_table_count = {config.max_table_count}",
    ]
    if config.active_profile:
        lines.append(f"active_profile = {_quote(config.active_profile)}")
    for profile in config.profiles:
        lines.append("")
        lines.append("[[profiles]]")
        lines.append(f"name = {_quote(profile.name)}")
        lines.append(f"db_type = {_quote(profile.db_type.value)}")
        lines.append(f"host = {_quote(profile.host)}")
        if profile.port is not None:
            lines.append(f"port = {profile.port}")
        lines.append(f"user = {_quote(profile.user)}")
        for key in ("password", "database", "include_databases"):
            value = getattr(profile, key)
            if value:
                lines.append(f"{key} = {_quote(value)}")
        lines.append(f"connect_timeout = {profile.connect_timeout}")
        if profile.ssh:
            ssh = profile.ssh
            lines.append("")
            lines.append("[profiles.ssh]")
            lines.append(f"host = {_quote(ssh.host)}")
            lines.append(f"port = {ssh.port}")
            for key in ("username", "password", "private_key_path", "passphrase"):
                value = getattr(ssh, key)
                if value:
                    lines.append(f"{key} = {_quote(value)}")
            lines.append(f"local_port = {ssh.local_port}")
            lines.append(f"strict_host_key = {str(ssh.strict_host_key).lower()}")
            lines.append(f"connect_timeout = {ssh.connect_timeout}")
    CONFIG_FILE.write_text("\n".join(lines) + "\n")


def configure_logging(config: AppConfig, log_file: Path | None = None) -> None:
    """Send log records to a rotating file so they never draw over the TUI."""

    target = log_file or LOG_FILE
    target.parent.mkdir(parents=True, exist_ok=True)
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "detailed": {
                    "format": "%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s",
                },
            },
            "handlers": {
                "file": {
                    "class": "logging.handlers.RotatingFileHandler",
                    "filename": str(target),
                    "maxBytes": 1_048_576,
                    "backupCount": 3,
                    "encoding": "utf-8",
                    "formatter": "detailed",
                },
            },
            "loggers": {
                "dbnav": {
                    "level": config.log_level.upper(),
                    "handlers": ["file"],
                    "propagate": False,
                },
            },
        }
    )


def _quote(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _default_profiles() -> tuple[ConnectionProfileConfig, ...]:
    """Default profiles shown on first run before config is customized."""

    return (
        ConnectionProfileConfig(
            name="Local Demo",
            db_type=DatabaseType.DEMO,
            host="demo",
            user="demo",
            database="demo",
        ),
        ConnectionProfileConfig(
            name="Local MySQL",
            db_type=DatabaseType.MYSQL,
            host="localhost",
            port=3306,
            user="root",
        ),
    )
