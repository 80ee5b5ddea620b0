"""Shared validation utilities"""

import re
from typing import Optional

_COUNTRY_RE = re.compile(r"^[A-Za-z]{2}$")
_CURRENCY_RE = re.compile(r"^[A-Za-z]{3}$")


def validate_country_code(country: Optional[str]) -> str:
    """
    Validate and normalize an ISO 3166 alpha-2 country code.

    Raises:
        ValueError: If the code is missing or malformed
    """
    if not country or not _COUNTRY_RE.match(country.strip()):
        raise ValueError("country must be a 2-letter ISO code")
    return country.strip().upper()


def validate_currency_code(currency: Optional[str]) -> str:
    """Validate and normalize an ISO 4217 currency code"""
    if not currency or not _CURRENCY_RE.match(currency.strip()):
        raise ValueError("currency must be a 3-letter ISO code")
    return currency.strip().upper()


def normalize_scope(value: Optional[str]) -> Optional[str]:
    """Normalize an optional category/city scope value; blank means unscoped"""
    if value is None:
        return None
    value = value.strip()
    return value or None


def validate_fraction(value: Optional[float], field: str) -> Optional[float]:
    """Validate a 0..1 ratio"""
    if value is None:
        return value
    if value < 0 or value > 1:
        raise ValueError(f"{field} must be between 0 and 1")
    return value
