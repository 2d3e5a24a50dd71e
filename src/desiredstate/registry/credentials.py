"""Registry credentials from a Docker ``config.json``.

The agent never writes credentials; it only reads whatever ``docker
login`` (or an installer) left behind. A missing file or an unknown host
simply means anonymous access.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import os
from pathlib import Path
from typing import Optional

logger = logging.getLogger("desiredstate.registry.credentials")

_HUB_ALIASES = {"registry-1.docker.io", "index.docker.io", "docker.io"}
_HUB_KEY = "https://index.docker.io/v1/"


def default_docker_config() -> Path:
    """Location of the Docker client config, honoring ``DOCKER_CONFIG``."""
    base = os.environ.get("DOCKER_CONFIG")
    if base:
        return Path(base).expanduser() / "config.json"
    return Path.home() / ".docker" / "config.json"


def _normalize_host(key: str) -> str:
    host = key.split("://", 1)[-1]
    return host.split("/", 1)[0]


class DockerConfigCredentials:
    """Read-only view of the ``auths`` section of a Docker config file.

    Args:
        path: Config file. Defaults to :func:`default_docker_config`.
    """

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path).expanduser() if path else default_docker_config()
        self._auths: dict[str, dict] = {}
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            logger.debug("No registry credentials at %s", self.path)
            return
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Cannot read registry credentials %s: %s", self.path, exc)
            return
        for key, entry in (data.get("auths") or {}).items():
            if isinstance(entry, dict):
                self._auths[_normalize_host(key)] = entry

    def get(self, registry: str) -> Optional[tuple[str, str]]:
        """Return (username, password) for a registry host, if known."""
        entry = self._auths.get(registry)
        if entry is None and registry in _HUB_ALIASES:
            entry = self._auths.get(_normalize_host(_HUB_KEY))
        if not entry:
            return None

        if entry.get("auth"):
            try:
                decoded = base64.b64decode(entry["auth"]).decode("utf-8")
            except (binascii.Error, UnicodeDecodeError):
                logger.warning("Malformed auth entry for %s", registry)
                return None
            username, sep, password = decoded.partition(":")
            if not sep:
                logger.warning("Malformed auth entry for %s", registry)
                return None
            return username, password

        if entry.get("username") and entry.get("password"):
            return entry["username"], entry["password"]
        return None
