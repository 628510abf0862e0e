"""
Artifact location and validation.

Runs before any network operation so that a missing build output never leaves
a target half-updated.
"""

import logging
import os
from pathlib import Path

from .config import DeploySettings
from .errors import ArtifactMissing
from .models import Artifact

logger = logging.getLogger(__name__)


def _check_readable_file(path: Path) -> None:
    if not path.exists():
        raise ArtifactMissing(str(path), "not found, run the build first")
    if not path.is_file():
        raise ArtifactMissing(str(path), "not a regular file")
    if not os.access(path, os.R_OK):
        raise ArtifactMissing(str(path), "not readable")


def locate(settings: DeploySettings) -> Artifact:
    """
    Resolve and validate the build output for a deployment.

    Args:
        settings: Deployment settings

    Returns:
        Artifact with absolute paths

    Raises:
        ArtifactMissing: If the binary or a declared config file is unusable
    """
    release_dir = Path(settings.release_dir)
    binary = release_dir / settings.binary
    _check_readable_file(binary)

    config_files = []
    for name in settings.config_files:
        config_path = Path(name)
        _check_readable_file(config_path)
        config_files.append(str(config_path.resolve()))

    docs_dir = release_dir / "docs"
    docs = str(docs_dir.resolve()) if docs_dir.is_dir() else None

    artifact = Artifact(binary=str(binary.resolve()), config_files=config_files, docs_dir=docs)
    logger.info(f"Located artifact {artifact.binary} ({len(config_files)} config files)")
    return artifact
