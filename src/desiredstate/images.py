"""Load image archives into the local Docker engine.

Application payloads ship their container images as ``docker save``
archives so the host never has to pull from a public registry.

Prerequisites:
- Docker daemon running and accessible (DOCKER_HOST or default socket)
- docker Python SDK
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import docker
from docker.errors import DockerException

from .archive import find_files
from .errors import ImageLoadError

logger = logging.getLogger("desiredstate.images")

IMAGE_ARCHIVE_SUFFIX = ".tar"


class DockerImageLoader:
    """Feeds image archives to the Docker engine.

    Args:
        docker_host: Docker daemon socket/URL (default: DOCKER_HOST or the
            SDK's default socket).
    """

    def __init__(self, docker_host: Optional[str] = None) -> None:
        self._docker_host = docker_host or os.environ.get("DOCKER_HOST", "")
        self._client_instance = None

    def _client(self):
        """Return a connected Docker client, created on first use.

        Raises:
            ImageLoadError: If the daemon is unreachable.
        """
        if self._client_instance is not None:
            return self._client_instance

        kwargs: Dict[str, Any] = {}
        if self._docker_host:
            kwargs["environment"] = {"DOCKER_HOST": self._docker_host}
        try:
            client = docker.from_env(**kwargs)
            client.ping()
        except DockerException as exc:
            raise ImageLoadError(f"Cannot connect to Docker daemon: {exc}") from exc
        self._client_instance = client
        return client

    def load(self, archive: Path) -> list[str]:
        """Load one image archive.

        Args:
            archive: Path to a ``docker save`` tarball.

        Returns:
            The progress lines reported by the engine.

        Raises:
            ImageLoadError: If the engine rejects the archive.
            OSError: If the archive cannot be read.
        """
        client = self._client()
        lines: list[str] = []
        logger.info("Loading image archive %s", archive.name)
        with open(archive, "rb") as fh:
            try:
                for chunk in client.api.load_image(fh, quiet=False):
                    if "error" in chunk:
                        raise ImageLoadError(f"{archive.name}: {chunk['error']}")
                    text = (chunk.get("stream") or chunk.get("status") or "").strip()
                    if text:
                        lines.append(text)
                        logger.info("%s: %s", archive.name, text)
            except DockerException as exc:
                raise ImageLoadError(f"{archive.name}: {exc}") from exc
        return lines

    def load_all(self, directory: Path) -> list[Path]:
        """Load every image archive found under a directory.

        Returns:
            The archives that were loaded, in walk order.
        """
        archives = find_files(directory, IMAGE_ARCHIVE_SUFFIX)
        for archive in archives:
            self.load(archive)
        return archives
