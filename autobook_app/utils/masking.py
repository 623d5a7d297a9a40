"""Masking helpers for personal data that must not reach logs."""

from typing import Optional


def mask_personal_number(value: Optional[str]) -> Optional[str]:
    """Keep only the last four characters of a personal identity number."""
    if not value:
        return value
    digits = value.replace("-", "").strip()
    if len(digits) <= 4:
        return "*" * len(digits)
    return "*" * (len(digits) - 4) + digits[-4:]
