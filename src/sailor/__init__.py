"""Sailor kernel utilities."""

from .canonical_json import CanonicalJsonTypeError, canonical_dumps, canonical_loads
from .schema_hash import schema_hash

__all__ = [
    "CanonicalJsonTypeError",
    "canonical_dumps",
    "canonical_loads",
    "schema_hash",
]
