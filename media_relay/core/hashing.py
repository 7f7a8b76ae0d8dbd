"""Content hashing used as the identity of every stored artifact."""

import hashlib
import re
from typing import Union

HASH_ALGORITHM = "sha256"

_HASH_PATTERN = re.compile(r"^[a-f0-9]{64}$")

HashPart = Union[bytes, bytearray, memoryview, str, None]


def hash_bytes(data: bytes) -> str:
    """Hash raw bytes to a 64 character lowercase hex digest.

    Args:
        data: Bytes to hash, may be empty

    Returns:
        Hex digest
    """
    return hashlib.new(HASH_ALGORITHM, data).hexdigest()


def hash_string(value: str) -> str:
    """Hash a UTF-8 string."""
    return hash_bytes(str(value).encode("utf-8"))


def hash_parts(*parts: HashPart) -> str:
    """Hash an ordered sequence of parts without concatenating them.

    Each part is prefixed with its length so that part boundaries are part
    of the identity. ``None`` parts are skipped.

    Args:
        *parts: Strings or byte buffers

    Returns:
        Hex digest
    """
    hasher = hashlib.new(HASH_ALGORITHM)
    for part in parts:
        if part is None:
            continue
        chunk = part.encode("utf-8") if isinstance(part, str) else bytes(part)
        hasher.update(len(chunk).to_bytes(8, "big"))
        hasher.update(chunk)
    return hasher.hexdigest()


def hash_with_discriminator(data: bytes, token: str | None) -> str:
    """Hash bytes together with a transform discriminator token.

    An empty token means the identity transform, which hashes to the same
    value as the bytes alone.
    """
    if not token:
        return hash_bytes(data)
    return hash_parts(data, token)


def is_content_hash(value: str) -> bool:
    """Check that a value looks like a digest produced here."""
    return bool(value) and bool(_HASH_PATTERN.match(value))
