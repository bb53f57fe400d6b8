"""
Process managers for the server and the model sync companion.

Each manager owns at most one ProcessHandle for its role. Children run in
their own session so a termination request reaches the whole process group,
and they inherit the supervisor's stdout/stderr so their output lands in the
container log.
"""

import logging
import os
import signal
import subprocess
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Iterable, Optional, Sequence

import psutil

from .config import Config
from .exceptions import SpawnError
from .health import HealthState

logger = logging.getLogger(__name__)

# Seconds to wait for SIGKILLed processes to disappear
KILL_TIMEOUT = 5
WAIT_SLICE = 0.05


class ProcessRole(Enum):
    SERVER = "server"
    COMPANION = "companion"


class ProcessState(Enum):
    RUNNING = "running"
    TERMINATED = "terminated"


@dataclass
class ProcessHandle:
    """A spawned, supervised child process."""

    role: ProcessRole
    process: subprocess.Popen
    command: tuple[str, ...] = ()
    started_at: datetime = field(default_factory=datetime.now)
    state: ProcessState = ProcessState.RUNNING
    termination_requested: bool = False

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def pgid(self) -> int:
        # Spawned with start_new_session, so the leader's PID names the group
        # for as long as any member is alive, even after the leader exits.
        return self.process.pid

    @property
    def returncode(self) -> Optional[int]:
        return self.process.returncode

    def poll(self) -> Optional[int]:
        """Check whether the process has exited, reaping it if so."""
        returncode = self.process.poll()
        if returncode is not None:
            self.state = ProcessState.TERMINATED
        return returncode

    def is_running(self) -> bool:
        return self.state is ProcessState.RUNNING and self.poll() is None


def _signal_group(handle: ProcessHandle, sig: int) -> bool:
    """Send sig to the handle's process group. Returns False if the group is gone."""
    try:
        os.killpg(handle.pgid, sig)
    except ProcessLookupError:
        return False
    return True


def _group_members(pgid: int) -> list[psutil.Process]:
    members = []
    for proc in psutil.process_iter():
        try:
            if os.getpgid(proc.pid) == pgid:
                members.append(proc)
        except OSError:
            continue
    return members


def _is_gone(proc: psutil.Process) -> bool:
    # Orphans may linger as zombies until init reaps them
    try:
        return proc.status() == psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return True


def _wait_gone(
    handles: list[ProcessHandle], procs: list[psutil.Process], timeout: float
) -> list[psutil.Process]:
    """Poll until every proc has exited or timeout passes. Returns the survivors.

    Leaders are reaped through their handles so their exit status is kept.
    """
    deadline = time.monotonic() + timeout
    while True:
        for handle in handles:
            handle.poll()
        alive = [p for p in procs if not _is_gone(p)]
        if not alive or time.monotonic() >= deadline:
            return alive
        time.sleep(WAIT_SLICE)


class ManagedProcess:
    """Base class for a manager owning a single child process."""

    role: ProcessRole

    def __init__(self):
        self._handle: Optional[ProcessHandle] = None

    @property
    def handle(self) -> Optional[ProcessHandle]:
        return self._handle

    def _spawn(self, command: Sequence[str], env: Optional[dict] = None) -> ProcessHandle:
        command = tuple(command)
        if self._handle is not None and self._handle.is_running():
            raise SpawnError(self.role.value, list(command), "already running")
        if not command:
            raise SpawnError(self.role.value, [], "no command configured")

        try:
            process = subprocess.Popen(
                list(command),
                env=env,
                start_new_session=True,  # Create new process group
            )
        except OSError as e:
            raise SpawnError(self.role.value, list(command), str(e)) from e

        self._handle = ProcessHandle(role=self.role, process=process, command=command)
        logger.info(f"Started {self.role.value} with PID {process.pid}")
        return self._handle

    def terminate(self, handle: Optional[ProcessHandle] = None) -> bool:
        """Ask the process to stop with SIGTERM. Does not wait or log.

        Safe to call from a signal handler. The whole process group is
        signalled, including children left behind by a leader that has
        already exited. Terminating a handle that was already asked to stop,
        or whose group is entirely gone, is a no-op. Returns True if SIGTERM
        was sent by this call.
        """
        handle = handle or self._handle
        if handle is None or handle.termination_requested:
            return False

        # Reap an exited leader first so only live members are signalled
        handle.poll()
        if not _signal_group(handle, signal.SIGTERM):
            return False
        handle.termination_requested = True
        return True

    def release(self) -> None:
        """Discard the handle once its process is confirmed gone."""
        if self._handle is not None and self._handle.poll() is not None:
            logger.debug(
                f"{self.role.value} (PID {self._handle.pid}) exited with "
                f"status {self._handle.returncode}"
            )
            self._handle = None


class ServerProcessManager(ManagedProcess):
    """Owns the Ollama server process."""

    role = ProcessRole.SERVER

    def launch(self, config: Config) -> ProcessHandle:
        """Start the server. Raises SpawnError if it cannot be spawned."""
        env = os.environ.copy()
        env["OLLAMA_HOST"] = config.bind_address
        env["OLLAMA_MODELS"] = str(config.models_root)
        logger.info(f"Starting server: {' '.join(config.server_command)}")
        return self._spawn(config.server_command, env=env)

    def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        """Wait up to timeout seconds for the server to exit.

        Returns its exit status, or None if it is still running.
        """
        if self._handle is None:
            return None
        try:
            returncode = self._handle.process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            return None
        self._handle.state = ProcessState.TERMINATED
        return returncode


class CompanionProcessManager(ManagedProcess):
    """Owns the optional model sync process."""

    role = ProcessRole.COMPANION

    def __init__(self):
        super().__init__()
        self._exit_reported = False

    def launch_if_configured(
        self, config: Config, health: HealthState
    ) -> Optional[ProcessHandle]:
        """Start the companion if a model list is configured.

        The health outcome only gates the launch when strict_companion_gate
        is set. Spawn failures are logged, never raised.
        """
        if not config.companion_enabled:
            logger.info("OLLAMA_MODELS_LIST not set, model sync disabled")
            logger.info(
                "Set OLLAMA_MODELS_LIST to enable auto-sync "
                "(e.g., OLLAMA_MODELS_LIST=tinyllama,llama3.2)"
            )
            return None

        if not health.healthy:
            if config.strict_companion_gate:
                logger.warning(
                    f"Server is not healthy ({health.outcome.value}), "
                    "STRICT_COMPANION_GATE is set: model sync not started"
                )
                return None
            logger.warning(
                f"Server readiness unconfirmed ({health.outcome.value}), "
                "starting model sync anyway"
            )

        logger.info(f"Models to sync: {', '.join(config.models_list)}")
        env = os.environ.copy()
        env["OLLAMA_HOST"] = config.server_url
        env["OLLAMA_MODELS_LIST"] = ",".join(config.models_list)
        env["OLLAMA_MODELS"] = str(config.models_root)

        try:
            return self._spawn(config.companion_command, env=env)
        except SpawnError as e:
            logger.error(f"{e}; continuing without model sync")
            return None

    def check(self) -> None:
        """Log once if the companion exited without being asked to."""
        handle = self._handle
        if handle is None or self._exit_reported or handle.termination_requested:
            return
        returncode = handle.poll()
        if returncode is not None:
            self._exit_reported = True
            logger.warning(f"Model sync exited early with status {returncode}, not restarting")


def reap_handles(handles: Iterable[Optional[ProcessHandle]], grace_period: float) -> None:
    """Wait up to grace_period for handles to exit, then kill what is left.

    Every member of each handle's process group is included, also when the
    leader has already exited, as are descendants of a live leader that
    moved to a group of their own. Nothing outlives the supervisor.
    """
    handles = [h for h in handles if h is not None]
    procs: dict[int, psutil.Process] = {}

    for handle in handles:
        handle.poll()
        for proc in _group_members(handle.pgid):
            procs[proc.pid] = proc
        if handle.poll() is None:
            try:
                leader = psutil.Process(handle.pid)
                for proc in [leader] + leader.children(recursive=True):
                    procs[proc.pid] = proc
            except psutil.Error:
                pass

    if procs:
        alive = _wait_gone(handles, list(procs.values()), grace_period)
        if alive:
            logger.warning(
                f"{len(alive)} process(es) did not stop within {grace_period}s, killing"
            )
            for handle in handles:
                _signal_group(handle, signal.SIGKILL)
            for proc in alive:
                try:
                    proc.kill()
                except psutil.NoSuchProcess:
                    pass
            _wait_gone(handles, alive, KILL_TIMEOUT)

    for handle in handles:
        handle.poll()
        handle.state = ProcessState.TERMINATED


def exit_status(returncode: int) -> int:
    """Map a Popen returncode to a shell-style exit status."""
    if returncode < 0:
        return 128 - returncode
    return returncode
