"""
Fetchers for the desired-state document and content blobs.

Neither fetcher retries. A failed fetch fails the pass (desired state)
or the component (package) and the next tick tries again.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence

from .errors import NotFoundError, ParseError
from .models import DESIRED_STATE_MEDIA_TYPE, ApplicationDeployment
from .registry.client import BlobStream, RegistryClient
from .registry.reference import (
    BlobReference,
    BlobUrlResolver,
    ReferenceResolver,
    parse_reference,
    resolve_location,
)

logger = logging.getLogger("desiredstate.fetcher")


class DesiredStateFetcher:
    """Retrieves the desired-state manifest from an OCI artifact.

    Args:
        client: Registry client.
        reference: Artifact reference, e.g. ``ghcr.io/org/deploy:desired``.
        media_type: Layer media type that marks the desired-state document.
    """

    def __init__(
        self,
        client: RegistryClient,
        reference: str,
        media_type: str = DESIRED_STATE_MEDIA_TYPE,
    ) -> None:
        self._client = client
        self._ref = parse_reference(reference)
        self._media_type = media_type

    @property
    def reference(self) -> str:
        return str(self._ref)

    def fetch(self) -> ApplicationDeployment:
        """Download and parse the current desired state.

        Returns:
            The parsed ApplicationDeployment.

        Raises:
            RegistryError: Transport or authentication failure.
            NotFoundError: The artifact has no desired-state layer.
            ParseError: The document is malformed.
        """
        self._client.ping(self._ref.registry, self._ref.repository)
        manifest = self._client.get_manifest(self._ref)

        layers = manifest.get("layers")
        if not isinstance(layers, list):
            raise NotFoundError(f"{self._ref}: manifest has no layers")

        for layer in layers:
            if not isinstance(layer, dict) or layer.get("mediaType") != self._media_type:
                continue
            digest = layer.get("digest")
            if not digest:
                raise ParseError(f"{self._ref}: desired-state layer has no digest")
            blob = BlobReference(self._ref.registry, self._ref.repository, digest)
            with self._client.get_blob(blob) as stream:
                body = stream.read()
            deployment = ApplicationDeployment.from_yaml(body)
            logger.debug(
                "Desired state %s: %d component(s)",
                deployment.metadata.name or self._ref,
                len(deployment.components),
            )
            return deployment

        raise NotFoundError(f"{self._ref}: no {self._media_type} layer found")


class PackageFetcher:
    """Content-addressed retrieval of keys and packages.

    The digest in a location is used for addressing only; trust is
    established later by signature verification.

    Args:
        client: Registry client.
        resolvers: Location resolvers tried in order. Defaults to the
            distribution-API blob URL resolver.
    """

    def __init__(
        self,
        client: RegistryClient,
        resolvers: Optional[Sequence[ReferenceResolver]] = None,
    ) -> None:
        self._client = client
        self._resolvers = list(resolvers) if resolvers else [BlobUrlResolver()]

    def open(self, location: str) -> BlobStream:
        """Open a blob stream for a location.

        Raises:
            RegistryError: Unsupported location, transport failure, or
                unknown digest.
        """
        blob = resolve_location(location, self._resolvers)
        logger.info("Downloading %s", blob)
        return self._client.get_blob(blob)

    def read(self, location: str) -> bytes:
        """Fetch a blob fully into memory (used for key rings)."""
        with self.open(location) as stream:
            return stream.read()
