"""Detached PGP signature verification (PGPy backend).

A package is only trusted when exactly one key from the declared key
ring issued its signature and that signature checks out over the full
contents of the application file.
"""

from __future__ import annotations

import logging
from pathlib import Path

import pgpy
from pgpy.errors import PGPError

from .errors import KeyParseError, SignatureInvalidError

logger = logging.getLogger("desiredstate.signature")


def load_keyring(armored: str | bytes) -> list[pgpy.PGPKey]:
    """Parse an ASCII-armored public key ring.

    Args:
        armored: One or more armored public key blocks.

    Returns:
        Distinct keys from the ring, in the order they appear.

    Raises:
        KeyParseError: If the data is not a key ring or holds no keys.
    """
    if not armored or not armored.strip():
        raise KeyParseError("Public key ring is empty")
    try:
        loaded = pgpy.PGPKey.from_blob(armored)
    except Exception as exc:
        raise KeyParseError(f"Cannot parse public key ring: {exc}") from exc

    if isinstance(loaded, tuple):
        primary, others = loaded
        candidates = [primary, *(others or {}).values()]
    else:
        candidates = [loaded]

    keys: list[pgpy.PGPKey] = []
    seen: set[str] = set()
    for key in candidates:
        if not isinstance(key, pgpy.PGPKey) or not key.is_primary or key.fingerprint is None:
            continue
        fingerprint = str(key.fingerprint)
        if fingerprint in seen:
            continue
        seen.add(fingerprint)
        keys.append(key)

    if not keys:
        raise KeyParseError("Public key ring contains no keys")
    return keys


def _key_ids(key: pgpy.PGPKey) -> set[str]:
    ids = {key.fingerprint.keyid}
    ids.update(key.subkeys.keys())
    return ids


def verify_detached_signature(
    pub_key: str | bytes,
    signed_file: Path,
    signature_file: Path,
) -> str:
    """Verify a detached signature over a file.

    Args:
        pub_key: Armored public key ring.
        signed_file: The file that was signed.
        signature_file: Detached signature, armored or binary.

    Returns:
        Fingerprint of the key that issued the signature.

    Raises:
        KeyParseError: The key ring is unusable.
        SignatureInvalidError: The signature is malformed, was not
            issued by exactly one key in the ring, or does not verify.
        OSError: Either file cannot be read.
    """
    signed_file = Path(signed_file)
    logger.info("Verifying signature of %s", signed_file)

    keys = load_keyring(pub_key)
    data = signed_file.read_bytes()
    raw_signature = Path(signature_file).read_bytes()

    try:
        signature = pgpy.PGPSignature.from_blob(raw_signature)
        if isinstance(signature, tuple):
            signature = signature[0]
        signer = signature.signer
    except Exception as exc:
        raise SignatureInvalidError(f"Malformed signature {signature_file}: {exc}") from exc
    if not signer:
        raise SignatureInvalidError(f"Malformed signature {signature_file}: no issuer")

    issuers = [key for key in keys if signer in _key_ids(key)]
    if not issuers:
        raise SignatureInvalidError(f"Signature by key {signer} matches no key in the ring")

    valid = []
    for key in issuers:
        try:
            if key.verify(data, signature):
                valid.append(key)
        except PGPError as exc:
            logger.debug("Key %s rejected signature: %s", key.fingerprint, exc)

    if not valid:
        raise SignatureInvalidError(f"Signature verification failed for {signed_file.name}")
    if len(valid) > 1:
        raise SignatureInvalidError(
            f"Signature of {signed_file.name} is ambiguous: {len(valid)} keys match"
        )

    logger.info("Signature verified successfully (key %s)", valid[0].fingerprint)
    return str(valid[0].fingerprint)
