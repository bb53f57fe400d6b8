"""
Disk scanner for locally cached models.

A model is cached when its directory under the storage root holds a
manifest.json. Namespaced names ("vendor/name") are flattened on disk to
"vendor--name", so the scanner recovers the model name from the directory.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Union

logger = logging.getLogger(__name__)

MANIFEST_FILENAME = "manifest.json"
DIR_SEPARATOR = "--"


@dataclass(frozen=True)
class ManifestRecord:
    """A cached model found on disk."""

    model_name: str
    path: Path


def model_name_from_dir(dir_name: str) -> str:
    """Recover a model name from its on-disk directory name."""
    return dir_name.replace(DIR_SEPARATOR, "/")


def model_dir_name(model_name: str) -> str:
    """Directory name a model is stored under."""
    return model_name.replace("/", DIR_SEPARATOR)


def scan_manifests(root: Union[str, Path]) -> Iterator[ManifestRecord]:
    """Yield a ManifestRecord for every manifest file under root.

    A missing root yields nothing. Unreadable directories are skipped.
    """
    root = Path(root)
    if not root.is_dir():
        logger.debug(f"Models directory {root} does not exist")
        return

    def on_error(error: OSError):
        logger.debug(f"Skipping {error.filename}: {error.strerror}")

    for dirpath, dirnames, filenames in os.walk(root, onerror=on_error):
        dirnames.sort()
        if MANIFEST_FILENAME not in filenames:
            continue
        manifest = Path(dirpath) / MANIFEST_FILENAME
        if not manifest.is_file():
            continue
        model_dir = manifest.parent
        yield ManifestRecord(
            model_name=model_name_from_dir(model_dir.name),
            path=model_dir,
        )


def log_manifests(root: Union[str, Path]) -> int:
    """Log every cached model under root. Returns how many were found."""
    logger.info(f"Checking existing models in {root}")
    count = 0
    for record in scan_manifests(root):
        logger.info(f"  Found: {record.model_name}")
        count += 1
    if not count:
        logger.info("  No cached models found")
    return count
