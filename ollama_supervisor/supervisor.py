"""
Entry orchestrator.

Sequences startup (scan, server, health probe, companion), then blocks
until the server exits or a termination signal arrives, and tears down
everything it started.

    SCANNING -> SERVER_STARTING -> PROBING -> COMPANION_DECIDING
        -> SUPERVISING -> SHUTTING_DOWN -> EXITED

Failing to spawn the server jumps straight to EXITED with a non-zero status.
"""

import logging
from enum import Enum
from typing import Optional

from .config import Config
from .exceptions import SpawnError
from .health import HealthProber, HealthState
from .process import (
    CompanionProcessManager,
    ServerProcessManager,
    exit_status,
    reap_handles,
)
from .scanner import log_manifests
from .signals import ShutdownCoordinator

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_SPAWN_FAILURE = 1
EXIT_CONFIG_ERROR = 2


class Phase(Enum):
    SCANNING = "scanning"
    SERVER_STARTING = "server-starting"
    PROBING = "probing"
    COMPANION_DECIDING = "companion-deciding"
    SUPERVISING = "supervising"
    SHUTTING_DOWN = "shutting-down"
    EXITED = "exited"


class Supervisor:
    """Runs the server and the optional companion for the container's lifetime."""

    def __init__(
        self,
        config: Config,
        server: Optional[ServerProcessManager] = None,
        companion: Optional[CompanionProcessManager] = None,
        prober: Optional[HealthProber] = None,
        poll_interval: float = 0.5,
    ):
        self.config = config
        self.server = server or ServerProcessManager()
        self.companion = companion or CompanionProcessManager()
        self.prober = prober or HealthProber(request_timeout=config.health_request_timeout)
        self.shutdown = ShutdownCoordinator(self.server, self.companion)
        self.poll_interval = poll_interval
        self.phase = Phase.SCANNING
        self.health: Optional[HealthState] = None

    def run(self, install_signals: bool = True) -> int:
        """Run until the server exits or a signal arrives. Returns the exit status."""
        logger.info("=== Ollama supervisor starting ===")
        if install_signals:
            self.shutdown.install()
        try:
            return self._run()
        finally:
            if install_signals:
                self.shutdown.uninstall()

    def _enter(self, phase: Phase):
        logger.debug(f"Phase {self.phase.value} -> {phase.value}")
        self.phase = phase

    def _run(self) -> int:
        self._enter(Phase.SCANNING)
        self._scan()

        self._enter(Phase.SERVER_STARTING)
        if self.shutdown.requested:
            self._report_shutdown_request()
            logger.info("Server was not started")
            self._enter(Phase.EXITED)
            return EXIT_OK
        try:
            self.server.launch(self.config)
        except SpawnError as e:
            logger.critical(f"{e}, exiting")
            self._enter(Phase.EXITED)
            return EXIT_SPAWN_FAILURE

        self._enter(Phase.PROBING)
        self.health = self.prober.probe(
            self.config.health_endpoint,
            max_attempts=self.config.health_max_attempts,
            interval=self.config.health_interval,
        )

        self._enter(Phase.COMPANION_DECIDING)
        if not self.shutdown.requested:
            self.companion.launch_if_configured(self.config, self.health)

        self._enter(Phase.SUPERVISING)
        logger.info("Stack started successfully")
        returncode = self._supervise()

        self._enter(Phase.SHUTTING_DOWN)
        status = self._shut_down(returncode)

        self._enter(Phase.EXITED)
        return status

    def _scan(self):
        root = self.config.models_root
        try:
            root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.warning(f"Could not create models directory {root}: {e}")
        try:
            log_manifests(root)
        except Exception as e:
            logger.warning(f"Model scan failed: {e}")

    def _supervise(self) -> Optional[int]:
        """Block until the server exits or shutdown is requested.

        Returns the server's returncode, or None if it was still running
        when shutdown was requested.
        """
        while not self.shutdown.requested:
            returncode = self.server.wait(timeout=self.poll_interval)
            if returncode is not None:
                if self.shutdown.requested:
                    break
                if returncode == 0:
                    logger.info("Server exited")
                else:
                    logger.warning(f"Server exited with status {returncode}")
                return returncode
            self.companion.check()
        return None

    def _report_shutdown_request(self):
        shutdown = self.shutdown
        logger.info(f"Received {shutdown.signal_name or 'shutdown request'}, shutting down...")
        for role in shutdown.terminated:
            logger.info(f"Sent SIGTERM to {role.value}")
        for role, error in shutdown.errors:
            logger.warning(f"Error terminating {role.value}: {error}")

    def _shut_down(self, returncode: Optional[int]) -> int:
        if self.shutdown.requested:
            self._report_shutdown_request()
        else:
            logger.info("Shutting down...")

        for manager in (self.companion, self.server):
            handle = manager.handle
            try:
                if manager.terminate():
                    logger.info(
                        f"Sent SIGTERM to {manager.role.value} (process group {handle.pgid})"
                    )
            except OSError as e:
                logger.warning(f"Could not terminate {manager.role.value}: {e}")

        reap_handles(
            [self.companion.handle, self.server.handle],
            grace_period=self.config.shutdown_grace_period,
        )
        self.companion.release()
        self.server.release()

        if self.shutdown.repeated_signals:
            logger.info(
                f"Ignored {self.shutdown.repeated_signals} repeated signal(s) during shutdown"
            )

        if self.shutdown.requested or returncode is None:
            logger.info("Shutdown complete")
            return EXIT_OK

        status = exit_status(returncode)
        logger.info(f"Shutdown complete, exiting with status {status}")
        return status
