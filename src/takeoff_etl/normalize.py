"""Normalization functions for material-takeoff ingestion.

All functions accept str | None.  Header helpers return strings; value
helpers return the normalized value or None when the input is blank.
"""

from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation

NOSIZE = "NOSIZE"

_MARKER_SUFFIX_RE = re.compile(r"[*+!#]+$")
_SLASH_RE = re.compile(r"\s*/\s*")
_FOLD_SEPARATORS_RE = re.compile(r"[_\-]+")
_FOLD_PUNCT_RE = re.compile(r"[^\w\s/]")


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: normalize_space
# ---------------------------------------------------------------------------

def normalize_space(value: str | None) -> str | None:
    """Collapse internal runs of whitespace to single spaces, then trim."""
    v = trim(value)
    if v is None:
        return None
    return re.sub(r"\s+", " ", v)


# ---------------------------------------------------------------------------
# Rule 3: clean_header  (tier 1 / tier 2 column matching)
# ---------------------------------------------------------------------------

def clean_header(value: str | None) -> str:
    """Trim, drop trailing marker characters, collapse spaces, tighten slashes.

    Takeoff templates flag required columns with trailing ``*``, ``+``,
    ``!`` or ``#`` ("DRAWING*").  Only a trailing run is removed, so
    ``DRAW*ING`` stays as it is.  Case is preserved.
    """
    v = normalize_space(value)
    if v is None:
        return ""
    v = _MARKER_SUFFIX_RE.sub("", v).rstrip()
    v = _SLASH_RE.sub("/", v)
    return v


# ---------------------------------------------------------------------------
# Rule 4: fold_header  (tier 3 synonym matching)
# ---------------------------------------------------------------------------

def fold_header(value: str | None) -> str:
    """Lowercased, punctuation-free form of a header (slashes kept).

    Underscores and hyphens act as word separators, so ``TEST_PACKAGE``,
    ``test-package`` and ``Test Package`` all fold to ``test package``.
    """
    v = clean_header(value).lower()
    v = _FOLD_SEPARATORS_RE.sub(" ", v)
    v = _FOLD_PUNCT_RE.sub("", v)
    v = re.sub(r"\s+", " ", v).strip()
    return _SLASH_RE.sub("/", v)


# ---------------------------------------------------------------------------
# Rule 5: normalize_drawing
# ---------------------------------------------------------------------------

def normalize_drawing(value: str | None) -> str | None:
    """Uppercase, trim and collapse spaces.

    The result is the drawings.drawing_no_norm uniqueness key.  Sheet
    indicators ("P-001 01of02") are kept, so each sheet is its own
    drawing.
    """
    v = normalize_space(value)
    if v is None:
        return None
    return v.upper()


# ---------------------------------------------------------------------------
# Rule 6: normalize_size
# ---------------------------------------------------------------------------

def normalize_size(value: str | None) -> str:
    """Size token used inside identity keys.

    Blank → NOSIZE.  Otherwise quotes and spaces are dropped, '/' becomes
    'X' and the result is uppercased: '1/2"' → '1X2', '2' → '2'.
    """
    v = trim(value)
    if v is None:
        return NOSIZE
    v = re.sub(r"[\"'\s]", "", v)
    v = v.replace("/", "X").upper()
    return v or NOSIZE


# ---------------------------------------------------------------------------
# Rule 7: normalize_item_type
# ---------------------------------------------------------------------------

def normalize_item_type(value: str | None) -> str | None:
    """Fold free-text component types to the internal lower_snake form.

    'Valve' → 'valve', 'Field Weld' → 'field_weld', 'MISC-COMPONENT' →
    'misc_component'.
    """
    v = normalize_space(value)
    if v is None:
        return None
    v = re.sub(r"[\s\-]+", "_", v.lower())
    return re.sub(r"_+", "_", v).strip("_") or None


# ---------------------------------------------------------------------------
# Rule 8: parse_quantity
# ---------------------------------------------------------------------------

def parse_quantity(value: str | None) -> int:
    """Parse a non-negative integer quantity.

    Accepts '4', ' 4 ', '4.0' and '1,000'.  Raises ValueError with a
    user-facing reason for blank, non-numeric, exponent-form ('1e9'),
    negative or fractional input.
    """
    v = trim(value)
    if v is None:
        raise ValueError("QTY is empty")
    try:
        qty = Decimal(v.replace(",", ""))
    except InvalidOperation:
        raise ValueError(f"QTY must be a number, got {v!r}") from None
    if not qty.is_finite():
        raise ValueError(f"QTY must be a number, got {v!r}")
    if "e" in v.lower():
        raise ValueError(f"QTY must be a plain number, got {v!r}")
    if qty < 0:
        raise ValueError(f"QTY must be >= 0, got {v}")
    if qty != qty.to_integral_value():
        raise ValueError(f"QTY must be an integer, got {v}")
    return int(qty)
