"""
Model sync companion.

Brings the set of models known to the Ollama server in line with
OLLAMA_MODELS_LIST: missing models are pulled, models that are no longer
listed are removed. Runs as a child of the supervisor via
`python -m ollama_supervisor.sync`. A pass that fails is retried every
SYNC_INTERVAL seconds; after a complete pass it idles until SIGTERM/SIGINT.
"""

import json
import logging
import signal
import sys
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable

import httpx

from .config import load_config
from .exceptions import ConfigError
from .logs import setup_logging
from .scanner import MANIFEST_FILENAME, model_dir_name, scan_manifests
from .supervisor import EXIT_CONFIG_ERROR

logger = logging.getLogger(__name__)

# Pulls block until the download finishes
PULL_TIMEOUT = 3600.0
API_TIMEOUT = 10.0

DEFAULT_TAG = "latest"


def normalize_model_name(name: str) -> str:
    """Add the implicit ":latest" tag so "llama3" and "llama3:latest" compare equal."""
    name = name.strip()
    if ":" not in name.rsplit("/", 1)[-1]:
        return f"{name}:{DEFAULT_TAG}"
    return name


@dataclass
class SyncPlan:
    """Changes needed to bring the server in line with the desired models."""

    to_pull: list[str] = field(default_factory=list)
    to_remove: list[str] = field(default_factory=list)

    @property
    def in_sync(self) -> bool:
        return not self.to_pull and not self.to_remove


@dataclass
class SyncReport:
    pulled: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


class ModelSyncer:
    """Reconciles the server's models with a desired list."""

    def __init__(self, client: httpx.Client, models_root: Path):
        self.client = client
        self.models_root = Path(models_root)

    def local_from_disk(self) -> set[str]:
        return {
            normalize_model_name(record.model_name)
            for record in scan_manifests(self.models_root)
        }

    def local_from_api(self) -> set[str]:
        """Model names reported by /api/tags. Empty if the server can't be reached."""
        try:
            response = self.client.get("/api/tags", timeout=API_TIMEOUT)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.debug(f"Could not list models from API: {e}")
            return set()

        return {
            normalize_model_name(model["name"])
            for model in data.get("models") or []
            if isinstance(model, dict) and model.get("name")
        }

    def exists_on_disk(self, model: str) -> bool:
        """True if the model has a manifest listing at least one layer."""
        manifest = self.models_root / model_dir_name(model) / MANIFEST_FILENAME
        try:
            data = json.loads(manifest.read_text())
        except (OSError, ValueError):
            return False
        layers = data.get("layers") if isinstance(data, dict) else None
        return isinstance(layers, list) and len(layers) > 0

    def plan(self, desired: Iterable[str]) -> SyncPlan:
        # Keep the names as given for pulling, compare on normalized names
        wanted = {normalize_model_name(model): model for model in desired}
        local_disk = self.local_from_disk()
        local_api = self.local_from_api()
        local = local_disk | local_api

        logger.info("=== Sync Status ===")
        logger.info(f"Models on disk: {sorted(local_disk)}")
        logger.info(f"Models from API: {sorted(local_api)}")
        logger.info(f"Desired models: {sorted(wanted)}")

        plan = SyncPlan()
        for key in sorted(wanted.keys() - local):
            model = wanted[key]
            if self.exists_on_disk(model):
                logger.info(f"Model {model} on disk, API sync needed")
            else:
                plan.to_pull.append(model)
        plan.to_remove.extend(sorted(local - wanted.keys()))
        return plan

    def pull(self, model: str) -> bool:
        try:
            response = self.client.post(
                "/api/pull",
                json={"name": model, "stream": False},
                timeout=PULL_TIMEOUT,
            )
            response.raise_for_status()
            return True
        except httpx.HTTPError as e:
            logger.error(f"Failed to pull {model}: {e}")
            return False

    def delete(self, model: str) -> bool:
        try:
            response = self.client.request(
                "DELETE",
                "/api/delete",
                json={"name": model},
                timeout=API_TIMEOUT,
            )
            response.raise_for_status()
            return True
        except httpx.HTTPError as e:
            logger.error(f"Failed to remove {model}: {e}")
            return False

    def sync(self, desired: Iterable[str]) -> SyncReport:
        """Pull missing models and remove unlisted ones."""
        report = SyncReport()
        plan = self.plan(desired)

        if plan.in_sync:
            logger.info("All models in sync")
            return report

        for model in plan.to_pull:
            logger.info(f"Pulling: {model}")
            if self.pull(model):
                logger.info(f"Pulled: {model}")
                report.pulled.append(model)
            else:
                report.failed.append(model)

        for model in plan.to_remove:
            logger.info(f"Removing: {model}")
            if self.delete(model):
                logger.info(f"Removed: {model}")
                report.removed.append(model)
            else:
                report.failed.append(model)

        logger.info("=== Sync Complete ===")
        return report

    def run(self, desired: Iterable[str], stop_event: threading.Event, interval: float):
        """Sync now, then wait for stop_event.

        A pass with failures (an unreachable server included) is retried every
        interval seconds. Once a pass completes the models are left alone, so
        a model pulled by hand later is not removed.
        """
        desired = set(desired)
        pending = True
        while True:
            if pending:
                try:
                    pending = bool(self.sync(desired).failed)
                except Exception as e:
                    logger.error(f"Sync error: {e}")
                if pending:
                    logger.info(f"Retrying sync in {interval}s")
            if stop_event.wait(interval):
                break


def main():
    """Run the sync loop as a standalone process."""
    try:
        config = load_config()
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(EXIT_CONFIG_ERROR)

    setup_logging(config)
    logger.info("=== Model sync started ===")
    logger.info(f"Models directory: {config.models_root}")
    logger.info(f"Retry interval: {config.sync_interval}s")
    logger.info(f"Ollama host: {config.server_url}")

    if not config.models_list:
        logger.info("OLLAMA_MODELS_LIST is empty, nothing to sync")
        return

    logger.info(f"Models to maintain: {', '.join(config.models_list)}")

    stop_event = threading.Event()
    received = []

    def handle_signal(signum, frame):
        if stop_event.is_set():
            return
        received.append(signum)
        stop_event.set()
        # Unwinds out of a blocking request such as a pull
        raise KeyboardInterrupt

    signal.signal(signal.SIGTERM, handle_signal)
    signal.signal(signal.SIGINT, handle_signal)

    try:
        with httpx.Client(base_url=config.server_url) as client:
            ModelSyncer(client, config.models_root).run(
                config.models_list, stop_event, config.sync_interval
            )
    except KeyboardInterrupt:
        logger.debug("Sync interrupted")

    if received:
        logger.info(f"Received {signal.Signals(received[0]).name}, model sync stopped")
    else:
        logger.info("Model sync stopped")


if __name__ == "__main__":
    main()
