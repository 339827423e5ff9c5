"""Utility functions for the OCI mirror."""

from .digest import (
    DigestVerifier,
    calculate_digest,
    split_digest,
    validate_digest,
    verify_digest,
)
from .reference import parse_reference

__all__ = [
    "DigestVerifier",
    "calculate_digest",
    "parse_reference",
    "split_digest",
    "validate_digest",
    "verify_digest",
]
