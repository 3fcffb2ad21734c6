"""
Business key normalization shared by the reference catalog and row resolution.

The same function must build a catalog index and look a row's value up in it,
otherwise matches silently fail. All functions are total and idempotent.

    >>> normalize_plate("ab-123 cd")
    'AB123CD'
    >>> normalize_card_number("  7077a1 ")
    '7077A1'
    >>> normalize_pan("700001234=", strip_suffix_marker=True)
    '700001234'
"""

from typing import Optional

PAN_SUFFIX_MARKER = "="


def normalize_plate(raw: Optional[str]) -> str:
    """Keep letters and digits only, upper-cased. Empty input gives an empty key."""
    if not raw:
        return ""
    return "".join(ch for ch in raw if ch.isalnum()).upper()


def normalize_card_number(raw: Optional[str]) -> str:
    """Trim surrounding whitespace and upper-case."""
    if not raw:
        return ""
    return raw.strip().upper()


def normalize_pan(raw: Optional[str], strip_suffix_marker: bool = True) -> str:
    """
    Normalize a card PAN.

    Track data PANs can carry a trailing ``=`` marker. With
    ``strip_suffix_marker`` the marker is removed so that ``"123="`` and
    ``"123"`` share a key; without it the marker is part of the key.
    """
    key = normalize_card_number(raw)
    if strip_suffix_marker:
        key = key.rstrip(PAN_SUFFIX_MARKER).rstrip()
    return key
