"""Registry coordinates: artifact references and blob locations.

Two shapes of address show up in a desired-state deployment:

- the desired-state artifact itself, a plain image reference such as
  ``ghcr.io/org/deploy:desired`` or ``ghcr.io/org/deploy@sha256:...``
- key and package locations inside the document, which are blob URLs
  like ``http://ghcr.io/v2/org/app/blobs/sha256:...``

Blob locations go through a resolver chain so other URL conventions can
be plugged in without touching the fetchers.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional, Sequence

from ..errors import RegistryError

DOCKER_HUB = "registry-1.docker.io"

_DIGEST_RE = re.compile(r"^[a-z0-9]+(?:[.+_-][a-z0-9]+)*:[a-fA-F0-9]{32,}$")


@dataclass(frozen=True)
class ArtifactReference:
    """A resolved ``registry/repository[:tag][@digest]`` reference."""

    registry: str
    repository: str
    tag: Optional[str] = None
    digest: Optional[str] = None

    @property
    def reference(self) -> str:
        """The manifest reference to request: digest wins over tag."""
        return self.digest or self.tag or "latest"

    def __str__(self) -> str:
        out = f"{self.registry}/{self.repository}"
        if self.tag:
            out += f":{self.tag}"
        if self.digest:
            out += f"@{self.digest}"
        return out


@dataclass(frozen=True)
class BlobReference:
    """Content-addressed blob coordinates."""

    registry: str
    repository: str
    digest: str

    def __str__(self) -> str:
        return f"{self.registry}/{self.repository}@{self.digest}"


def parse_reference(ref: str) -> ArtifactReference:
    """Parse an image-style artifact reference.

    Follows the docker conventions: a first path component without a dot
    or port (and not ``localhost``) means Docker Hub, and single-segment
    Hub repositories live under ``library/``.

    Args:
        ref: Reference such as ``ghcr.io/org/deploy:desired``.

    Returns:
        The parsed ArtifactReference.

    Raises:
        RegistryError: If the reference is empty or malformed.
    """
    ref = ref.strip()
    if not ref or " " in ref:
        raise RegistryError(f"Invalid artifact reference: {ref!r}")

    digest = None
    if "@" in ref:
        ref, digest = ref.split("@", 1)
        if not _DIGEST_RE.match(digest):
            raise RegistryError(f"Invalid digest in reference: {digest}")

    tag = None
    last = ref.rsplit("/", 1)[-1]
    if ":" in last:
        ref, tag = ref.rsplit(":", 1)
        if not tag:
            raise RegistryError(f"Empty tag in reference: {ref}")

    parts = ref.split("/", 1)
    if len(parts) == 2 and ("." in parts[0] or ":" in parts[0] or parts[0] == "localhost"):
        registry, repository = parts
    else:
        registry, repository = DOCKER_HUB, ref
        if "/" not in repository:
            repository = f"library/{repository}"

    if not repository:
        raise RegistryError(f"Missing repository in reference: {ref}")
    if tag is None and digest is None:
        tag = "latest"
    return ArtifactReference(registry=registry, repository=repository, tag=tag, digest=digest)


class ReferenceResolver:
    """Turns a location string into blob coordinates.

    Resolvers return None for locations they do not understand so the
    next resolver in the chain gets a chance.
    """

    def resolve(self, location: str) -> Optional[BlobReference]:
        raise NotImplementedError


class BlobUrlResolver(ReferenceResolver):
    """Distribution-API blob URLs: ``<scheme>://<host>/v2/<repo>/blobs/<digest>``.

    Any host and any repository depth is accepted. The URL scheme is
    ignored: whether a registry is reached over TLS is the client's call,
    since registries like ghcr.io publish ``http://`` locations but only
    serve HTTPS.
    """

    _PATTERN = re.compile(
        r"^(?P<scheme>https?)://(?P<host>[^/]+)/v2/(?P<repo>.+?)/blobs/(?P<digest>[^/]+)$"
    )

    def resolve(self, location: str) -> Optional[BlobReference]:
        match = self._PATTERN.match(location.strip())
        if not match or not _DIGEST_RE.match(match.group("digest")):
            return None
        return BlobReference(
            registry=match.group("host"),
            repository=match.group("repo"),
            digest=match.group("digest"),
        )


def resolve_location(location: str, resolvers: Sequence[ReferenceResolver]) -> BlobReference:
    """Resolve a location with the first resolver that understands it.

    Raises:
        RegistryError: If no resolver accepts the location.
    """
    for resolver in resolvers:
        blob = resolver.resolve(location)
        if blob is not None:
            return blob
    raise RegistryError(f"Unsupported location format: {location}")
