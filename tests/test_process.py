"""Tests for the server and companion process managers."""

import json
import logging
import signal
import time

import psutil
import pytest

from ollama_supervisor.exceptions import SpawnError
from ollama_supervisor.health import HealthOutcome, HealthState
from ollama_supervisor.process import (
    CompanionProcessManager,
    ProcessRole,
    ProcessState,
    ServerProcessManager,
    exit_status,
    reap_handles,
)
from tests.conftest import orphaning_server, python_command, sleeper

pytestmark = pytest.mark.integration

HEALTHY = HealthState(attempts=1, outcome=HealthOutcome.HEALTHY)
UNHEALTHY = HealthState(attempts=2, outcome=HealthOutcome.UNHEALTHY_AFTER_TIMEOUT)


def wait_for_file(path, timeout=10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if path.exists() and path.read_text():
            return path.read_text()
        time.sleep(0.05)
    raise AssertionError(f"{path} was not written within {timeout}s")


def is_gone(pid):
    """True once pid has exited. Orphans may linger as zombies until init reaps them."""
    try:
        return psutil.Process(pid).status() == psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return True


@pytest.fixture
def server():
    manager = ServerProcessManager()
    yield manager
    if manager.handle is not None:
        reap_handles([manager.handle], grace_period=0)


@pytest.fixture
def companion():
    manager = CompanionProcessManager()
    yield manager
    if manager.handle is not None:
        reap_handles([manager.handle], grace_period=0)


class TestServerProcessManager:
    def test_launch_returns_running_handle(self, server, make_config):
        handle = server.launch(make_config())

        assert handle is server.handle
        assert handle.role is ProcessRole.SERVER
        assert handle.state is ProcessState.RUNNING
        assert handle.is_running()
        assert psutil.pid_exists(handle.pid)

    def test_server_gets_bind_address_and_models_root(self, server, make_config, tmp_path):
        out = tmp_path / "env.json"
        code = (
            "import json, os\n"
            f"json.dump({{k: os.environ.get(k) for k in ('OLLAMA_HOST', 'OLLAMA_MODELS')}}, "
            f"open({str(out)!r}, 'w'))"
        )
        config = make_config(server_command=python_command(code))

        server.launch(config)
        assert server.wait(timeout=10) == 0

        env = json.loads(out.read_text())
        assert env == {
            "OLLAMA_HOST": config.bind_address,
            "OLLAMA_MODELS": str(config.models_root),
        }

    def test_spawn_failure_raises(self, server, make_config, tmp_path):
        config = make_config(server_command=(str(tmp_path / "no-such-binary"), "serve"))

        with pytest.raises(SpawnError) as excinfo:
            server.launch(config)

        assert excinfo.value.role == "server"
        assert server.handle is None

    def test_second_launch_is_refused(self, server, make_config):
        first = server.launch(make_config())

        with pytest.raises(SpawnError, match="already running"):
            server.launch(make_config())

        assert server.handle is first

    def test_terminate_does_not_block_and_stops_process(self, server, make_config):
        handle = server.launch(make_config())

        started = time.monotonic()
        server.terminate()
        assert time.monotonic() - started < 1.0

        assert server.wait(timeout=10) == -signal.SIGTERM
        assert handle.state is ProcessState.TERMINATED

    def test_terminate_is_idempotent(self, server, make_config):
        handle = server.launch(make_config())

        assert server.terminate(handle) is True
        assert server.terminate(handle) is False
        server.wait(timeout=10)
        assert server.terminate(handle) is False

        assert handle.termination_requested
        assert handle.state is ProcessState.TERMINATED

    def test_terminate_after_exit_is_noop(self, server, make_config):
        handle = server.launch(make_config(server_command=python_command("pass")))
        server.wait(timeout=10)

        assert server.terminate(handle) is False
        assert not handle.termination_requested

    def test_terminate_without_handle_is_noop(self, server):
        assert server.terminate() is False

    def test_wait_times_out_while_running(self, server, make_config):
        server.launch(make_config())

        assert server.wait(timeout=0.1) is None
        assert server.handle.is_running()

    def test_release_discards_terminated_handle(self, server, make_config):
        server.launch(make_config(server_command=python_command("pass")))
        server.release()  # still possibly running: keep or drop, never raise
        server.wait(timeout=10)
        server.release()

        assert server.handle is None


class TestCompanionProcessManager:
    def test_not_configured_spawns_nothing(self, companion, make_config, caplog):
        with caplog.at_level(logging.INFO, logger="ollama_supervisor.process"):
            for health in (HEALTHY, UNHEALTHY):
                assert companion.launch_if_configured(make_config(), health) is None

        assert companion.handle is None
        assert "OLLAMA_MODELS_LIST not set" in caplog.text

    def test_launches_when_healthy(self, companion, make_config):
        handle = companion.launch_if_configured(
            make_config(models_list=("tinyllama",)), HEALTHY
        )

        assert handle is not None
        assert handle.role is ProcessRole.COMPANION
        assert handle.is_running()

    def test_launches_even_when_unhealthy(self, companion, make_config, caplog):
        with caplog.at_level(logging.WARNING, logger="ollama_supervisor.process"):
            handle = companion.launch_if_configured(
                make_config(models_list=("tinyllama",)), UNHEALTHY
            )

        assert handle is not None
        assert "starting model sync anyway" in caplog.text

    def test_strict_gate_blocks_when_unhealthy(self, companion, make_config):
        config = make_config(models_list=("tinyllama",), strict_companion_gate=True)

        assert companion.launch_if_configured(config, UNHEALTHY) is None
        assert companion.handle is None

    def test_strict_gate_allows_when_healthy(self, companion, make_config):
        config = make_config(models_list=("tinyllama",), strict_companion_gate=True)

        assert companion.launch_if_configured(config, HEALTHY) is not None

    def test_environment_points_at_server(self, companion, make_config, tmp_path):
        out = tmp_path / "env.json"
        code = (
            "import json, os\n"
            "keys = ('OLLAMA_HOST', 'OLLAMA_MODELS_LIST', 'OLLAMA_MODELS')\n"
            f"json.dump({{k: os.environ.get(k) for k in keys}}, open({str(out)!r}, 'w'))"
        )
        config = make_config(
            models_list=("tinyllama", "vendor/name"),
            companion_command=python_command(code),
        )

        handle = companion.launch_if_configured(config, HEALTHY)
        handle.process.wait(timeout=10)

        env = json.loads(out.read_text())
        assert env == {
            "OLLAMA_HOST": config.server_url,
            "OLLAMA_MODELS_LIST": "tinyllama,vendor/name",
            "OLLAMA_MODELS": str(config.models_root),
        }

    def test_spawn_failure_is_not_fatal(self, companion, make_config, tmp_path, caplog):
        config = make_config(
            models_list=("tinyllama",),
            companion_command=(str(tmp_path / "missing-sync"),),
        )

        with caplog.at_level(logging.ERROR, logger="ollama_supervisor.process"):
            assert companion.launch_if_configured(config, HEALTHY) is None

        assert "continuing without model sync" in caplog.text

    def test_check_reports_early_exit_once(self, companion, make_config, caplog):
        config = make_config(
            models_list=("tinyllama",),
            companion_command=python_command("raise SystemExit(4)"),
        )
        handle = companion.launch_if_configured(config, HEALTHY)
        handle.process.wait(timeout=10)

        with caplog.at_level(logging.WARNING, logger="ollama_supervisor.process"):
            companion.check()
            companion.check()

        assert caplog.text.count("exited early with status 4") == 1


class TestReapHandles:
    def test_waits_for_terminated_processes(self, server, make_config):
        handle = server.launch(make_config())
        server.terminate()

        reap_handles([handle, None], grace_period=5)

        assert handle.state is ProcessState.TERMINATED
        assert not psutil.pid_exists(handle.pid)

    def test_kills_process_ignoring_sigterm(self, server, make_config, tmp_path):
        ready = tmp_path / "ready"
        code = (
            "import signal, time\n"
            "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
            f"open({str(ready)!r}, 'w').write('1')\n"
            "time.sleep(60)"
        )
        handle = server.launch(make_config(server_command=python_command(code)))
        wait_for_file(ready)
        server.terminate()

        started = time.monotonic()
        reap_handles([handle], grace_period=0.5)

        assert time.monotonic() - started < 5
        assert handle.state is ProcessState.TERMINATED
        assert not psutil.pid_exists(handle.pid)

    def test_kills_descendants(self, server, make_config, tmp_path):
        child_pid_file = tmp_path / "child.pid"
        grandchild = sleeper(pid_file=child_pid_file)
        code = (
            "import subprocess, time\n"
            f"subprocess.Popen({list(grandchild)!r})\n"
            "time.sleep(60)"
        )
        handle = server.launch(make_config(server_command=python_command(code)))
        child_pid = int(wait_for_file(child_pid_file))
        server.terminate()

        reap_handles([handle], grace_period=5)

        assert not psutil.pid_exists(handle.pid)
        deadline = time.monotonic() + 5
        while not is_gone(child_pid) and time.monotonic() < deadline:
            time.sleep(0.05)
        assert is_gone(child_pid)

    def test_reaps_children_left_by_exited_leader(self, server, make_config, tmp_path):
        child_pid_file = tmp_path / "child.pid"
        handle = server.launch(
            make_config(server_command=orphaning_server(child_pid_file, status=3))
        )
        assert server.wait(timeout=10) == 3
        child_pid = int(wait_for_file(child_pid_file))
        assert not is_gone(child_pid)

        assert server.terminate(handle) is True
        reap_handles([handle], grace_period=5)

        assert is_gone(child_pid)
        assert handle.returncode == 3

    def test_kills_orphans_without_termination_request(
        self, server, make_config, tmp_path
    ):
        child_pid_file = tmp_path / "child.pid"
        handle = server.launch(
            make_config(server_command=orphaning_server(child_pid_file, status=0))
        )
        server.wait(timeout=10)
        child_pid = int(wait_for_file(child_pid_file))

        reap_handles([handle], grace_period=0.2)

        assert is_gone(child_pid)


@pytest.mark.unit
@pytest.mark.parametrize(
    "returncode, status",
    [(0, 0), (3, 3), (-signal.SIGTERM, 128 + signal.SIGTERM), (-signal.SIGKILL, 137)],
)
def test_exit_status(returncode, status):
    assert exit_status(returncode) == status
