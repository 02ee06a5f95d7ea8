"""Content fingerprints over canonical payload bytes."""

import hashlib

from qrtrack.payload import Payload, canonicalize

DEFAULT_ALGORITHM = "sha256"


def fingerprint(canonical: bytes, algorithm: str = DEFAULT_ALGORITHM) -> str:
    """Stable hex digest of canonical bytes. Pure and deterministic."""
    return hashlib.new(algorithm, canonical).hexdigest()


def fingerprint_payload(payload: Payload, algorithm: str = DEFAULT_ALGORITHM) -> str:
    return fingerprint(canonicalize(payload), algorithm)
