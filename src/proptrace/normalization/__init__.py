"""Address normalization helpers."""

from proptrace.normalization.address import (
    CanonicalAddress,
    address_fingerprint,
    canonicalize_address,
    normalize_street,
    normalize_zip,
    validate_address_input,
)

__all__ = [
    "CanonicalAddress",
    "address_fingerprint",
    "canonicalize_address",
    "normalize_street",
    "normalize_zip",
    "validate_address_input",
]
