"""Key normalization and digests."""

import hashlib


def normalize_private_key(data: bytes | str) -> bytes:
    """
    Normalize key material the way it is written to disk.

    OpenSSH refuses keys without a trailing newline and secret stores tend to
    hand back CRLF, so both are fixed up here. The digest is computed over
    the normalized bytes.
    """
    if isinstance(data, str):
        data = data.encode("utf-8")
    data = data.replace(b"\r\n", b"\n").strip(b"\n")
    return data + b"\n"


def compute_digest(data: bytes) -> str:
    """SHA256 hex digest of raw bytes."""
    return hashlib.sha256(data).hexdigest()
