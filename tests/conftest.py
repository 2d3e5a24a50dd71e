"""Shared test fixtures for desiredstate."""

from __future__ import annotations

import io
import tarfile
from pathlib import Path
from typing import Callable, Optional, Union

import pgpy
import pytest
from pgpy.constants import (
    HashAlgorithm,
    KeyFlags,
    PubKeyAlgorithm,
    SymmetricKeyAlgorithm,
)

Entry = Union[bytes, str, None, tarfile.TarInfo]


def _generate_key(name: str) -> pgpy.PGPKey:
    """Generate an unprotected RSA-2048 signing key."""
    key = pgpy.PGPKey.new(PubKeyAlgorithm.RSAEncryptOrSign, 2048)
    uid = pgpy.PGPUID.new(name, email=f"{name.lower()}@example.com")
    key.add_uid(
        uid,
        usage={KeyFlags.Sign, KeyFlags.Certify},
        hashes=[HashAlgorithm.SHA256],
        ciphers=[SymmetricKeyAlgorithm.AES256],
    )
    return key


@pytest.fixture(scope="session")
def signing_key() -> pgpy.PGPKey:
    """Session-scoped key that signs the test packages."""
    return _generate_key("Publisher")


@pytest.fixture(scope="session")
def other_key() -> pgpy.PGPKey:
    """An unrelated key that never signed anything."""
    return _generate_key("Stranger")


@pytest.fixture(scope="session")
def public_armor(signing_key: pgpy.PGPKey) -> str:
    return str(signing_key.pubkey)


@pytest.fixture
def make_tgz() -> Callable[..., bytes]:
    """Build a .tar.gz in memory.

    Entries map a name to file content (bytes/str), None for a directory,
    or a ready TarInfo for special entry types.
    """

    def _make(entries: dict[str, Entry], mode: int = 0o644) -> bytes:
        buf = io.BytesIO()
        with tarfile.open(fileobj=buf, mode="w:gz") as tar:
            for name, content in entries.items():
                if isinstance(content, tarfile.TarInfo):
                    tar.addfile(content)
                    continue
                info = tarfile.TarInfo(name=name)
                if content is None:
                    info.type = tarfile.DIRTYPE
                    info.mode = 0o755
                    tar.addfile(info)
                    continue
                data = content.encode() if isinstance(content, str) else content
                info.size = len(data)
                info.mode = mode
                tar.addfile(info, io.BytesIO(data))
        return buf.getvalue()

    return _make


@pytest.fixture
def build_package(make_tgz, signing_key) -> Callable[..., bytes]:
    """Build a signed package: an outer tgz holding ``<app>.app`` + ``.sig``.

    Args (of the returned builder):
        payload: Entries of the application archive.
        app_name: Base name of the application file.
        key: Key to sign with; defaults to the publisher key.
        tamper: Flip the app bytes after signing.
    """

    def _build(
        payload: Optional[dict[str, Entry]] = None,
        app_name: str = "demo",
        key: Optional[pgpy.PGPKey] = None,
        tamper: bool = False,
    ) -> bytes:
        payload = payload if payload is not None else {
            "docker-compose.yaml": "services:\n  web:\n    image: demo:1\n",
        }
        app_bytes = make_tgz(payload)
        signature = (key or signing_key).sign(app_bytes)
        if tamper:
            app_bytes = app_bytes + b"\0"
        return make_tgz({
            f"{app_name}.app": app_bytes,
            f"{app_name}.app.sig": bytes(signature),
        })

    return _build


@pytest.fixture
def deploy_dir(tmp_path: Path) -> Path:
    """Provide an empty deployment root."""
    root = tmp_path / "deploy"
    root.mkdir()
    return root
