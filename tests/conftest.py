"""
Pytest configuration and shared fixtures.

Process tests spawn real, short-lived Python children; nothing here needs
an Ollama binary or network access beyond localhost.
"""

import os
import shlex
import socket
import sys
from dataclasses import replace
from pathlib import Path

import pytest

from ollama_supervisor.config import Config

REPO_ROOT = Path(__file__).resolve().parent.parent

SUPERVISOR_ENV_VARS = (
    "OLLAMA_MODELS",
    "OLLAMA_HOST",
    "OLLAMA_MODELS_LIST",
    "OLLAMA_SERVER_COMMAND",
    "OLLAMA_COMPANION_COMMAND",
    "HEALTH_PATH",
    "HEALTH_MAX_ATTEMPTS",
    "HEALTH_INTERVAL",
    "HEALTH_REQUEST_TIMEOUT",
    "STRICT_COMPANION_GATE",
    "SHUTDOWN_GRACE_PERIOD",
    "SYNC_INTERVAL",
    "LOG_LEVEL",
    "LOG_FILE",
    "LOG_MAX_BYTES",
    "LOG_BACKUP_COUNT",
)


def python_command(code: str) -> tuple[str, ...]:
    """Command line running code in a fresh interpreter."""
    return (sys.executable, "-c", code)


def python_command_line(code: str) -> str:
    """Same as python_command, as a single shell-quoted string for env vars."""
    return shlex.join(python_command(code))


def sleeper(seconds: float = 60, pid_file: Path = None) -> tuple[str, ...]:
    """A child that optionally records its PID, then sleeps."""
    lines = ["import os, time"]
    if pid_file is not None:
        lines.append(f"open({str(pid_file)!r}, 'w').write(str(os.getpid()))")
    lines.append(f"time.sleep({seconds})")
    return python_command("\n".join(lines))


def orphaning_server(child_pid_file: Path, status: int = 0) -> tuple[str, ...]:
    """A server that starts a long-lived child, then exits with status."""
    code = (
        "import os, subprocess, sys, time\n"
        f"subprocess.Popen({list(sleeper(pid_file=child_pid_file))!r})\n"
        f"while not os.path.exists({str(child_pid_file)!r}):\n"
        "    time.sleep(0.05)\n"
        f"sys.exit({status})"
    )
    return python_command(code)


@pytest.fixture
def clean_env(monkeypatch):
    """Remove every variable the supervisor reads."""
    for name in SUPERVISOR_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


@pytest.fixture
def unused_port() -> int:
    """A localhost port nothing is listening on."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture
def models_root(tmp_path) -> Path:
    root = tmp_path / "models"
    root.mkdir()
    return root


@pytest.fixture
def make_config(models_root, unused_port):
    """Factory for a Config tuned for fast tests."""
    base = Config(
        models_root=models_root,
        bind_address=f"127.0.0.1:{unused_port}",
        server_command=sleeper(),
        companion_command=sleeper(),
        health_max_attempts=2,
        health_interval=0.01,
        health_request_timeout=0.5,
        shutdown_grace_period=5.0,
    )

    def factory(**overrides) -> Config:
        return replace(base, **overrides)

    return factory


@pytest.fixture
def subprocess_env(clean_env, models_root, unused_port) -> dict:
    """Environment for running the supervisor as a child process."""
    env = {k: v for k, v in os.environ.items() if k not in SUPERVISOR_ENV_VARS}
    env["PYTHONPATH"] = os.pathsep.join(
        p for p in (str(REPO_ROOT), env.get("PYTHONPATH")) if p
    )
    env["OLLAMA_MODELS"] = str(models_root)
    env["OLLAMA_HOST"] = f"127.0.0.1:{unused_port}"
    env["HEALTH_MAX_ATTEMPTS"] = "1"
    env["HEALTH_INTERVAL"] = "0"
    env["HEALTH_REQUEST_TIMEOUT"] = "0.5"
    env["SHUTDOWN_GRACE_PERIOD"] = "5"
    return env
