"""Checksum parsing, normalisation, and streaming verification helpers.

Artifact definitions declare expected digests in several shapes: a bare hex
digest, an ``algorithm:value`` pair, or occasionally with upper-case hex.  This
module normalises those declarations into :class:`ExpectedChecksum` and offers
:class:`StreamingHasher`, which hashes bytes as they are written so a download
never has to be re-read from disk before verification.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from .errors import ParseError

__all__ = [
    "ExpectedChecksum",
    "StreamingHasher",
    "file_digest",
    "parse_expected_hash",
]

SUPPORTED_ALGORITHMS = ("md5", "sha1", "sha256", "sha512")
_LENGTH_TO_ALGORITHM = {32: "md5", 40: "sha1", 64: "sha256", 128: "sha512"}
_HEX_PATTERN = re.compile(r"^[0-9a-f]+$")
_READ_CHUNK = 1 << 20


@dataclass(frozen=True)
class ExpectedChecksum:
    """Expected checksum derived from an artifact's tool declaration."""

    algorithm: str
    value: str

    def matches(self, digest: str) -> bool:
        return digest.strip().lower() == self.value

    def __str__(self) -> str:
        return f"{self.algorithm}:{self.value}"


def parse_expected_hash(
    value: Optional[str], *, context: str = "expected_hash"
) -> Optional[ExpectedChecksum]:
    """Normalise ``value`` to an :class:`ExpectedChecksum`; ``None`` for empty input.

    Raises:
        ParseError: If the value is not a hex digest of a supported algorithm.
    """

    if value is None:
        return None
    text = value.strip().lower()
    if not text:
        return None
    algorithm: Optional[str] = None
    if ":" in text:
        algorithm, text = (part.strip() for part in text.split(":", 1))
        if algorithm not in SUPPORTED_ALGORITHMS:
            raise ParseError(f"{context}: unsupported checksum algorithm '{algorithm}'")
    if not _HEX_PATTERN.fullmatch(text):
        raise ParseError(f"{context}: checksum value must be a hexadecimal digest")
    inferred = _LENGTH_TO_ALGORITHM.get(len(text))
    if inferred is None:
        raise ParseError(f"{context}: digest length {len(text)} matches no supported algorithm")
    if algorithm is not None and algorithm != inferred:
        raise ParseError(f"{context}: {algorithm} digest has the wrong length ({len(text)})")
    return ExpectedChecksum(algorithm=inferred, value=text)


class StreamingHasher:
    """Accumulate SHA-256 (always) plus the expected algorithm while streaming."""

    def __init__(self, expected: Optional[ExpectedChecksum] = None) -> None:
        self.expected = expected
        self._hashers: Dict[str, Any] = {"sha256": hashlib.sha256()}
        if expected is not None and expected.algorithm not in self._hashers:
            self._hashers[expected.algorithm] = hashlib.new(expected.algorithm)
        self.bytes_seen = 0

    def update(self, chunk: bytes) -> None:
        for hasher in self._hashers.values():
            hasher.update(chunk)
        self.bytes_seen += len(chunk)

    @property
    def sha256(self) -> str:
        return self._hashers["sha256"].hexdigest()

    def digest_for(self, algorithm: str) -> str:
        return self._hashers[algorithm].hexdigest()

    def verified(self) -> bool:
        """True when no digest is expected or the expected digest matches."""

        if self.expected is None:
            return True
        return self.expected.matches(self.digest_for(self.expected.algorithm))


def file_digest(path: Path, algorithm: str = "sha256") -> str:
    """Compute the ``algorithm`` digest of ``path`` without loading it whole."""

    hasher = hashlib.new(algorithm)
    with path.open("rb") as stream:
        for chunk in iter(lambda: stream.read(_READ_CHUNK), b""):
            hasher.update(chunk)
    return hasher.hexdigest()
