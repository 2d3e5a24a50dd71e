"""
Minimal OCI distribution-API client.

Covers exactly what the agent needs: ping, get a manifest by reference,
and stream a blob by digest. Token auth follows the registry's
``WWW-Authenticate`` challenge and answers it with credentials from the
Docker config. Every public call checks the shared cancellation event
first so a shutdown can abort a pass between requests.
"""

from __future__ import annotations

import json
import logging
import re
import threading
from typing import Any, Dict, Optional

import requests
import urllib3

from ..errors import ParseError, ReconcileCancelled, RegistryError
from .credentials import DockerConfigCredentials
from .reference import ArtifactReference, BlobReference

logger = logging.getLogger("desiredstate.registry")

MANIFEST_ACCEPT = ", ".join([
    "application/vnd.oci.image.manifest.v1+json",
    "application/vnd.docker.distribution.manifest.v2+json",
    "application/vnd.oci.image.index.v1+json",
    "application/vnd.docker.distribution.manifest.list.v2+json",
])

_CHALLENGE_PARAM = re.compile(r'(\w+)="([^"]*)"')


def _parse_challenge(header: str) -> tuple[str, Dict[str, str]]:
    """Split a WWW-Authenticate header into scheme and parameters."""
    scheme, _, rest = header.strip().partition(" ")
    return scheme.lower(), dict(_CHALLENGE_PARAM.findall(rest))


class BlobStream:
    """Readable stream over a blob response body.

    Closing it releases the underlying connection. Usable as a context
    manager. A connection that breaks while the body is read raises
    RegistryError like any other transport failure.

    Args:
        response: Streamed response of a blob GET.
        label: Blob coordinates used in error messages.
    """

    def __init__(self, response: requests.Response, label: str = "blob"):
        self._response = response
        self._label = label
        self._raw = response.raw
        self._raw.decode_content = True

    def read(self, size: int = -1) -> bytes:
        try:
            if size is None or size < 0:
                return self._raw.read()
            return self._raw.read(size)
        except (urllib3.exceptions.HTTPError, requests.RequestException, OSError) as exc:
            raise RegistryError(f"Reading {self._label} failed: {exc}") from exc

    def close(self) -> None:
        self._response.close()

    def __enter__(self) -> BlobStream:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


class RegistryClient:
    """Talks to OCI registries on behalf of the fetchers.

    Args:
        credentials: Credential store; anonymous access if None.
        cancel_event: Set on shutdown; checked before each request.
        timeout: Per-request timeout in seconds.
        insecure_registries: Hosts reached over plain HTTP.
        session: Optional preconfigured requests session.
    """

    def __init__(
        self,
        credentials: Optional[DockerConfigCredentials] = None,
        cancel_event: Optional[threading.Event] = None,
        timeout: float = 30.0,
        insecure_registries: Optional[list[str]] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._credentials = credentials
        self._cancel = cancel_event or threading.Event()
        self._timeout = timeout
        self._insecure = set(insecure_registries or [])
        self._session = session or requests.Session()
        self._tokens: Dict[tuple[str, str], str] = {}

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _check_cancelled(self) -> None:
        if self._cancel.is_set():
            raise ReconcileCancelled("Shutdown requested, aborting registry call")

    def _url(self, registry: str, path: str) -> str:
        scheme = "http" if registry in self._insecure else "https"
        return f"{scheme}://{registry}/v2/{path}"

    def _auth(self, registry: str) -> Optional[tuple[str, str]]:
        if self._credentials is None:
            return None
        return self._credentials.get(registry)

    def _fetch_token(self, registry: str, repository: str, params: Dict[str, str]) -> str:
        """Exchange credentials for a bearer token at the challenge realm."""
        realm = params.get("realm")
        if not realm:
            raise RegistryError(f"{registry}: bearer challenge without realm")

        query = {"scope": params.get("scope") or f"repository:{repository}:pull"}
        if params.get("service"):
            query["service"] = params["service"]

        try:
            resp = self._session.get(
                realm, params=query, auth=self._auth(registry), timeout=self._timeout,
            )
        except requests.RequestException as exc:
            raise RegistryError(f"{registry}: token request failed: {exc}") from exc

        if resp.status_code >= 400:
            raise RegistryError(
                f"{registry}: token request failed: {resp.status_code}",
                status_code=resp.status_code,
            )
        try:
            body = resp.json()
        except ValueError as exc:
            raise RegistryError(f"{registry}: malformed token response") from exc

        token = body.get("token") or body.get("access_token")
        if not token:
            raise RegistryError(f"{registry}: token response carries no token")
        return token

    def _request(
        self,
        registry: str,
        repository: str,
        path: str,
        headers: Optional[Dict[str, str]] = None,
        stream: bool = False,
    ) -> requests.Response:
        """GET a distribution-API path, answering one auth challenge.

        Raises:
            ReconcileCancelled: If shutdown was requested.
            RegistryError: On transport errors or any 4xx/5xx status.
        """
        self._check_cancelled()
        url = self._url(registry, path)
        send_headers = dict(headers or {})
        key = (registry, repository)
        if key in self._tokens:
            send_headers["Authorization"] = f"Bearer {self._tokens[key]}"

        try:
            resp = self._session.get(
                url, headers=send_headers, stream=stream, timeout=self._timeout,
            )
            if resp.status_code == 401:
                resp.close()
                scheme, params = _parse_challenge(resp.headers.get("WWW-Authenticate", ""))
                if scheme == "bearer":
                    self._tokens[key] = self._fetch_token(registry, repository, params)
                    send_headers["Authorization"] = f"Bearer {self._tokens[key]}"
                    resp = self._session.get(
                        url, headers=send_headers, stream=stream, timeout=self._timeout,
                    )
                elif scheme == "basic" and self._auth(registry):
                    resp = self._session.get(
                        url,
                        headers=send_headers,
                        auth=self._auth(registry),
                        stream=stream,
                        timeout=self._timeout,
                    )
        except requests.RequestException as exc:
            raise RegistryError(f"GET {url} failed: {exc}") from exc

        if resp.status_code >= 400:
            resp.close()
            raise RegistryError(
                f"GET {url} failed: {resp.status_code}", status_code=resp.status_code,
            )
        return resp

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def ping(self, registry: str, repository: str) -> None:
        """Check that the registry answers and accepts our credentials."""
        resp = self._request(registry, repository, "")
        resp.close()

    def get_manifest(self, ref: ArtifactReference) -> Dict[str, Any]:
        """Fetch and decode the manifest a reference points at.

        Raises:
            RegistryError: On transport or HTTP errors.
            ParseError: If the body is not a JSON object.
        """
        resp = self._request(
            ref.registry,
            ref.repository,
            f"{ref.repository}/manifests/{ref.reference}",
            headers={"Accept": MANIFEST_ACCEPT},
        )
        try:
            manifest = json.loads(resp.content)
        except ValueError as exc:
            raise ParseError(f"{ref}: manifest is not valid JSON") from exc
        if not isinstance(manifest, dict):
            raise ParseError(f"{ref}: manifest is not a JSON object")
        logger.debug("Fetched manifest %s (%s)", ref, manifest.get("mediaType", "unknown"))
        return manifest

    def get_blob(self, blob: BlobReference) -> BlobStream:
        """Open a content-addressed blob as a stream.

        The caller owns the returned stream and must close it.
        """
        resp = self._request(
            blob.registry, blob.repository, f"{blob.repository}/blobs/{blob.digest}", stream=True,
        )
        return BlobStream(resp, label=str(blob))
