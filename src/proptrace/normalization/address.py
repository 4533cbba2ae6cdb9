"""Address canonicalization and fingerprinting.

Every trace lookup keys off the fingerprint produced here, so two spellings of
the same property ("123 Main Street Apt 4B" and "123 MAIN ST") must collapse to
the same canonical string. The rules are intentionally simple and fixed:

* unit designators (``APT``, ``APARTMENT``, ``UNIT``, ``STE``, ``SUITE``, ``#``)
  and the token that follows them are dropped,
* a fixed table of street suffixes and directionals is contracted,
* punctuation is stripped and whitespace collapsed,
* the postal code is reduced to its first five digits.

The canonical string is ``ADDRESS|CITY|STATE|ZIP5``; the fingerprint is its
hex-encoded SHA-256 digest.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass

from proptrace.errors import ValidationError

UNIT_PATTERN = re.compile(r"(?:\b(?:APT|APARTMENT|UNIT|STE|SUITE)\b\.?|#)\s*[A-Z0-9-]+", re.IGNORECASE)
PUNCTUATION_PATTERN = re.compile(r"[^\w\s]")
WHITESPACE_PATTERN = re.compile(r"\s+")
ZIP_PATTERN = re.compile(r"^\d{5}(-\d{4})?$")
STATE_PATTERN = re.compile(r"^[A-Za-z]{2}$")

STREET_ABBREVIATIONS: dict[str, str] = {
    "STREET": "ST",
    "AVENUE": "AVE",
    "BOULEVARD": "BLVD",
    "DRIVE": "DR",
    "LANE": "LN",
    "COURT": "CT",
    "CIRCLE": "CIR",
    "PLACE": "PL",
    "ROAD": "RD",
    "PARKWAY": "PKWY",
    "HIGHWAY": "HWY",
    "NORTH": "N",
    "SOUTH": "S",
    "EAST": "E",
    "WEST": "W",
}

_ABBREVIATION_PATTERN = re.compile(r"\b(" + "|".join(STREET_ABBREVIATIONS) + r")\b")


@dataclass(frozen=True, slots=True)
class CanonicalAddress:
    """Canonical form of one property address."""

    street: str
    city: str
    state: str
    zip5: str
    canonical: str
    fingerprint: str


def validate_address_input(address: str | None, city: str | None, state: str | None, zip_code: str | None) -> None:
    """Raise :class:`ValidationError` naming the first invalid field."""

    if not address or len(address.strip()) < 3:
        raise ValidationError("address", "Address is required and must be at least 3 characters")
    if not city or len(city.strip()) < 2:
        raise ValidationError("city", "City is required")
    if not state or not STATE_PATTERN.match(state.strip()):
        raise ValidationError("state", "State must be a 2-letter abbreviation")
    if not zip_code or not ZIP_PATTERN.match(zip_code.strip()):
        raise ValidationError("zip", "ZIP code must be 5 or 9 digits")


def normalize_street(address: str) -> str:
    """Return the canonical street line for ``address``."""

    cleaned = address.upper().strip()
    cleaned = UNIT_PATTERN.sub("", cleaned)
    cleaned = _ABBREVIATION_PATTERN.sub(lambda match: STREET_ABBREVIATIONS[match.group(1)], cleaned)
    cleaned = PUNCTUATION_PATTERN.sub("", cleaned)
    return WHITESPACE_PATTERN.sub(" ", cleaned).strip()


def normalize_zip(zip_code: str | None) -> str:
    digits = re.sub(r"\D", "", zip_code or "")
    return digits[:5]


def address_fingerprint(canonical: str) -> str:
    """Return the hex SHA-256 digest of a canonical address string."""

    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def canonicalize_address(address: str, city: str, state: str, zip_code: str | None) -> CanonicalAddress:
    """Build the canonical string and fingerprint for one address."""

    street = normalize_street(address or "")
    clean_city = (city or "").upper().strip()
    clean_state = (state or "").upper().strip()
    zip5 = normalize_zip(zip_code)
    canonical = f"{street}|{clean_city}|{clean_state}|{zip5}"
    return CanonicalAddress(
        street=street,
        city=clean_city,
        state=clean_state,
        zip5=zip5,
        canonical=canonical,
        fingerprint=address_fingerprint(canonical),
    )


__all__ = [
    "CanonicalAddress",
    "STREET_ABBREVIATIONS",
    "address_fingerprint",
    "canonicalize_address",
    "normalize_street",
    "normalize_zip",
    "validate_address_input",
]
