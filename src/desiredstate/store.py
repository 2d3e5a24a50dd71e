"""Local deployment store. The filesystem is the system of record.

Layout:
    <deploy_dir>/
    ├── <component>/           # applied deployment
    │   ├── .hash              # digest of the applied package
    │   ├── docker-compose.yaml
    │   └── ...
    └── .staging-<component>-* # in-flight replacement, never listed

A component directory is only ever installed by renaming a fully staged
directory into place, and the staged directory already carries its
``.hash``. A directory therefore never claims a digest it does not hold.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Optional

from .lifecycle import has_descriptor

logger = logging.getLogger("desiredstate.store")

HASH_FILE = ".hash"
STAGING_PREFIX = ".staging-"


class DeploymentStore:
    """Reads and mutates the deploy directory tree.

    Args:
        deploy_dir: Root directory holding one subdirectory per component.
    """

    def __init__(self, deploy_dir: Path):
        self.deploy_dir = Path(deploy_dir).expanduser()

    def ensure(self) -> None:
        self.deploy_dir.mkdir(parents=True, exist_ok=True)

    def component_dir(self, name: str) -> Path:
        return self.deploy_dir / name

    def read_digest(self, name: str) -> Optional[str]:
        """Stored digest of a component, or None if absent/unreadable."""
        hash_file = self.component_dir(name) / HASH_FILE
        try:
            return hash_file.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        except OSError as exc:
            logger.warning("%s: cannot read stored digest: %s", name, exc)
            return None

    def list_local_components(self) -> list[str]:
        """Names of all deployed components (non-hidden top-level dirs)."""
        if not self.deploy_dir.is_dir():
            return []
        return sorted(
            entry.name
            for entry in self.deploy_dir.iterdir()
            if entry.is_dir() and not entry.name.startswith(".")
        )

    def has_descriptor(self, name: str) -> bool:
        return has_descriptor(self.component_dir(name))

    def remove_component(self, name: str) -> None:
        """Delete a component directory and everything in it."""
        target = self.component_dir(name)
        if target.exists():
            shutil.rmtree(target)
            logger.info("%s: removed deployment directory", name)

    def stage(self, name: str) -> Path:
        """Create an empty staging directory for a component.

        Staging lives inside the deploy dir so install() is a same-
        filesystem rename.
        """
        self.ensure()
        return Path(tempfile.mkdtemp(prefix=f"{STAGING_PREFIX}{name}-", dir=self.deploy_dir))

    @staticmethod
    def write_digest(directory: Path, digest: str) -> None:
        (Path(directory) / HASH_FILE).write_text(digest, encoding="utf-8")

    def install(self, name: str, staged: Path) -> Path:
        """Replace a component directory with a staged one.

        Returns:
            The installed component directory.
        """
        target = self.component_dir(name)
        if target.exists():
            shutil.rmtree(target)
        os.replace(staged, target)
        # mkdtemp creates 0700 directories
        target.chmod(0o755)
        return target

    def discard(self, staged: Path) -> None:
        shutil.rmtree(staged, ignore_errors=True)

    def sweep_staging(self) -> list[str]:
        """Remove staging leftovers from an interrupted pass."""
        if not self.deploy_dir.is_dir():
            return []
        removed = []
        for entry in self.deploy_dir.iterdir():
            if entry.is_dir() and entry.name.startswith(STAGING_PREFIX):
                shutil.rmtree(entry, ignore_errors=True)
                removed.append(entry.name)
                logger.warning("Removed leftover staging directory %s", entry.name)
        return removed
