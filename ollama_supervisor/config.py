"""
Configuration for the supervisor.

Loads settings from environment variables with sensible defaults. A .env
file in the working directory is honoured. The resulting Config is frozen:
it is read once at startup and passed to every component.
"""

import os
import shlex
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional
from urllib.parse import urlsplit

from dotenv import load_dotenv

from .exceptions import ConfigError

load_dotenv()

DEFAULT_MODELS_ROOT = "/home/ollama/.ollama/models"
DEFAULT_BIND_ADDRESS = "0.0.0.0:11434"
DEFAULT_PORT = 11434
DEFAULT_SERVER_COMMAND = "/usr/local/bin/ollama serve"
DEFAULT_HEALTH_PATH = "/api/health"

# Hosts a server binds to that a client cannot connect to directly
WILDCARD_HOSTS = {"", "0.0.0.0", "::"}


def _env_str(name: str, default: str) -> str:
    value = os.environ.get(name, "").strip()
    return value or default


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from None
    if value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got {value}")
    return value


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from None
    if value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got {value}")
    return value


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name, "").strip().lower()
    if not raw:
        return default
    if raw in ("1", "true", "yes", "on"):
        return True
    if raw in ("0", "false", "no", "off"):
        return False
    raise ConfigError(f"{name} must be a boolean, got {raw!r}")


def _env_command(name: str, default: str) -> tuple[str, ...]:
    raw = _env_str(name, default)
    try:
        parts = shlex.split(raw)
    except ValueError as e:
        raise ConfigError(f"{name} is not a valid command line: {e}") from None
    if not parts:
        raise ConfigError(f"{name} must not be empty")
    return tuple(parts)


def parse_models_list(value: Optional[str]) -> tuple[str, ...]:
    """Split a comma-delimited model list, dropping blanks and duplicates."""
    if not value:
        return ()
    models = []
    for item in value.split(","):
        name = item.strip()
        if name and name not in models:
            models.append(name)
    return tuple(models)


def server_url_from_bind(bind_address: str) -> str:
    """Turn a server bind address into a URL a local client can reach.

    "0.0.0.0:11434" -> "http://localhost:11434", "example:8080" ->
    "http://example:8080", "https://host" -> "https://host:11434".
    """
    address = bind_address.strip().rstrip("/")
    scheme = "http"
    if "://" in address:
        scheme, address = address.split("://", 1)

    # An unbracketed IPv6 address ("::", "fe80::1") carries no port
    if address.count(":") > 1 and not address.startswith("["):
        address = f"[{address}]"

    try:
        parts = urlsplit(f"{scheme}://{address}")
        port = parts.port or DEFAULT_PORT
    except ValueError as e:
        raise ConfigError(f"Invalid bind address {bind_address!r}: {e}") from None

    host = parts.hostname or ""
    if host in WILDCARD_HOSTS:
        host = "localhost"
    elif ":" in host:
        host = f"[{host}]"

    return f"{scheme}://{host}:{port}"


def _default_companion_command() -> str:
    return f"{shlex.quote(sys.executable)} -m ollama_supervisor.sync"


@dataclass(frozen=True)
class Config:
    """Supervisor configuration."""

    # Storage
    models_root: Path = Path(DEFAULT_MODELS_ROOT)

    # Server
    bind_address: str = DEFAULT_BIND_ADDRESS
    server_command: tuple[str, ...] = tuple(shlex.split(DEFAULT_SERVER_COMMAND))

    # Companion (model sync)
    models_list: tuple[str, ...] = ()
    companion_command: tuple[str, ...] = field(
        default_factory=lambda: tuple(shlex.split(_default_companion_command()))
    )
    strict_companion_gate: bool = False
    sync_interval: float = 60.0

    # Health probe
    health_path: str = DEFAULT_HEALTH_PATH
    health_max_attempts: int = 30
    health_interval: float = 1.0
    health_request_timeout: float = 2.0

    # Shutdown
    shutdown_grace_period: float = 10.0

    # Logging
    log_level: str = "INFO"
    log_file: Optional[Path] = None
    log_max_bytes: int = 10 * 1024 * 1024  # 10MB
    log_backup_count: int = 5

    @property
    def server_url(self) -> str:
        """URL the supervisor and the companion use to reach the server."""
        return server_url_from_bind(self.bind_address)

    @property
    def health_endpoint(self) -> str:
        path = self.health_path if self.health_path.startswith("/") else f"/{self.health_path}"
        return f"{self.server_url}{path}"

    @property
    def companion_enabled(self) -> bool:
        return bool(self.models_list)


def load_config() -> Config:
    """Build a Config from the current environment.

    Raises ConfigError when a variable holds an unusable value.
    """
    bind_address = _env_str("OLLAMA_HOST", DEFAULT_BIND_ADDRESS)
    # Validate early so a bad address fails at startup rather than at probe time
    server_url_from_bind(bind_address)

    log_file = os.environ.get("LOG_FILE", "").strip()
    log_level = _env_str("LOG_LEVEL", "INFO").upper()
    if log_level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
        raise ConfigError(f"LOG_LEVEL must be a logging level name, got {log_level!r}")

    return Config(
        models_root=Path(_env_str("OLLAMA_MODELS", DEFAULT_MODELS_ROOT)).expanduser(),
        bind_address=bind_address,
        server_command=_env_command("OLLAMA_SERVER_COMMAND", DEFAULT_SERVER_COMMAND),
        models_list=parse_models_list(os.environ.get("OLLAMA_MODELS_LIST")),
        companion_command=_env_command(
            "OLLAMA_COMPANION_COMMAND", _default_companion_command()
        ),
        strict_companion_gate=_env_bool("STRICT_COMPANION_GATE", False),
        sync_interval=_env_float("SYNC_INTERVAL", 60.0, minimum=1.0),
        health_path=_env_str("HEALTH_PATH", DEFAULT_HEALTH_PATH),
        health_max_attempts=_env_int("HEALTH_MAX_ATTEMPTS", 30, minimum=1),
        health_interval=_env_float("HEALTH_INTERVAL", 1.0),
        health_request_timeout=_env_float("HEALTH_REQUEST_TIMEOUT", 2.0, minimum=0.1),
        shutdown_grace_period=_env_float("SHUTDOWN_GRACE_PERIOD", 10.0),
        log_level=log_level,
        log_file=Path(log_file).expanduser() if log_file else None,
        log_max_bytes=_env_int("LOG_MAX_BYTES", 10 * 1024 * 1024, minimum=1),
        log_backup_count=_env_int("LOG_BACKUP_COUNT", 5),
    )
