"""Digest calculation and validation utilities."""

import hashlib
import re
from typing import Union

from ..exceptions import DigestMismatchError, SizeMismatchError

# Regex pattern for valid digest format (algorithm:hex)
DIGEST_PATTERN = re.compile(r"^[a-z0-9]+:[a-f0-9]+$")

# Hex length of the encoded part for each supported algorithm
ALGORITHM_HEX_LENGTHS = {"sha256": 64, "sha512": 128}


def calculate_digest(data: Union[bytes, bytearray], algorithm: str = "sha256") -> str:
    """Calculate digest of data.

    Args:
        data: Data to hash
        algorithm: Hash algorithm (default: sha256)

    Returns:
        Digest string in format "algorithm:hex"

    Raises:
        ValueError: If algorithm is not supported
        ValueError: If data is not bytes-like
    """
    if not isinstance(data, (bytes, bytearray)):
        raise ValueError("Data must be bytes or bytearray")

    if algorithm not in ALGORITHM_HEX_LENGTHS:
        raise ValueError(f"Unsupported algorithm: {algorithm}")

    hasher = hashlib.new(algorithm)
    hasher.update(data)
    return f"{algorithm}:{hasher.hexdigest()}"


def validate_digest(digest: str) -> bool:
    """Validate digest format.

    Args:
        digest: Digest string to validate

    Returns:
        True if valid digest format
    """
    if not isinstance(digest, str):
        return False

    if not DIGEST_PATTERN.match(digest):
        return False

    algorithm, encoded = digest.split(":", 1)
    return ALGORITHM_HEX_LENGTHS.get(algorithm) == len(encoded)


def split_digest(digest: str) -> tuple[str, str]:
    """Split a digest into its algorithm and encoded (hex) parts.

    Raises:
        ValueError: If digest format is invalid
    """
    if not validate_digest(digest):
        raise ValueError(f"Invalid digest format: {digest}")
    algorithm, encoded = digest.split(":", 1)
    return algorithm, encoded


def verify_digest(data: Union[bytes, bytearray], expected_digest: str) -> bool:
    """Verify data matches expected digest.

    Args:
        data: Data to verify
        expected_digest: Expected digest string

    Returns:
        True if data matches digest

    Raises:
        ValueError: If digest format is invalid
    """
    algorithm, _ = split_digest(expected_digest)
    actual_digest = calculate_digest(data, algorithm)
    return actual_digest == expected_digest


class DigestVerifier:
    """Incrementally verifies streamed content against a digest and size.

    Feed every chunk to ``update`` and call ``verify`` once the stream ends.
    Overlong content is rejected as soon as it exceeds ``size``.
    """

    def __init__(self, digest: str, size: int) -> None:
        algorithm, _ = split_digest(digest)
        self.digest = digest
        self.size = size
        self.read = 0
        self._hasher = hashlib.new(algorithm)
        self._algorithm = algorithm

    def update(self, chunk: bytes) -> None:
        self.read += len(chunk)
        if self.read > self.size:
            raise SizeMismatchError(
                f"content for {self.digest} exceeds expected size {self.size} B"
            )
        self._hasher.update(chunk)

    def verify(self) -> None:
        """Raise if the content seen so far does not match the descriptor."""
        if self.read != self.size:
            raise SizeMismatchError(
                f"read {self.read} B but expected {self.size} B for {self.digest}"
            )
        actual = f"{self._algorithm}:{self._hasher.hexdigest()}"
        if actual != self.digest:
            raise DigestMismatchError(
                f"content digest {actual} does not match expected {self.digest}"
            )
