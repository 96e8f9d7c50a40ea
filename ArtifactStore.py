"""ArtifactStore.py -- Hand report bundles from one CI job to another.

The analysis of the base commit and the analysis of the head commit run as
separate jobs; the display job later needs both result sets.  A bundle is a
named, flat collection of files.  ``LocalArtifactStore`` keeps bundles as
directories under a root shared between the jobs (a cache path, a mounted
volume or a workspace directory restored by the workflow).
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import List

logger = logging.getLogger(__name__)


class ArtifactStore:
    def upload(self, name: str, *files: str | Path) -> List[str]:
        raise NotImplementedError

    def download(self, name: str, destination: str | Path = ".") -> Path:
        raise NotImplementedError


class LocalArtifactStore(ArtifactStore):
    """Bundles stored as ``<root>/<name>/<file>``.

    ``download`` copies a bundle into ``<destination>/<name>/``; a bundle
    that was never uploaded yields an empty directory so callers can probe
    for known filenames without special-casing.
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def upload(self, name: str, *files: str | Path) -> List[str]:
        bundle = self.root / name
        if bundle.exists():
            shutil.rmtree(bundle)
        bundle.mkdir(parents=True, exist_ok=True)

        stored: List[str] = []
        for file_path in files:
            src = Path(file_path)
            if not src.exists():
                logger.warning("Skipping missing file for artifact %s: %s", name, src)
                continue
            shutil.copy2(src, bundle / src.name)
            stored.append(src.name)
        logger.info("Uploaded artifact %s with %d files to %s", name, len(stored), bundle)
        return stored

    def download(self, name: str, destination: str | Path = ".") -> Path:
        target = Path(destination) / name
        source = self.root / name
        if target.exists():
            shutil.rmtree(target)
        if not source.is_dir():
            logger.warning("Artifact %s not found under %s", name, self.root)
            target.mkdir(parents=True, exist_ok=True)
            return target
        shutil.copytree(source, target)
        logger.info("Downloaded artifact %s to %s", name, target)
        return target
