"""String processing utilities for the budget control tools.

Catalog codes and names are typed by people, so the same account shows up as
"Cimentación", "CIMENTACION " or "cimentacion".  The helpers here give the
matching code one canonical form to compare.
"""

import unicodedata

from utils.patterns import CURRENCY_SYMBOLS, DIGIT_RUN, UNDERSCORE, WHITESPACE


def safe_float(val, default: float = 0.0) -> float:
    """Safely convert value to float with fallback default.

    Handles:
    - None, empty strings -> default
    - Numeric types -> float
    - Strings with currency symbols, whitespace, commas
    - Invalid input -> default

    Args:
        val: Value to convert (any type)
        default: Value to return on failure (default: 0.0)

    Returns:
        float: Parsed value or default
    """
    if val is None or val == '':
        return default
    if isinstance(val, (int, float)):
        return float(val)

    try:
        s = str(val).strip()
        s = CURRENCY_SYMBOLS.sub('', s)
        s = s.replace(',', '').strip()
        return float(s) if s else default
    except (ValueError, TypeError):
        return default


def normalize_whitespace(s: str) -> str:
    """Normalize multiple whitespace characters to single spaces.

    Example:
        "Acero   de\\n refuerzo" -> "Acero de refuerzo"
    """
    return WHITESPACE.sub(' ', s).strip()


def strip_accents(s: str) -> str:
    """Remove combining accent marks ("Cimentación" -> "Cimentacion")."""
    decomposed = unicodedata.normalize('NFD', s)
    return ''.join(ch for ch in decomposed if not unicodedata.combining(ch))


def normalize_for_comparison(text: str | None) -> str:
    """Return the canonical form used when comparing catalog names.

    Lower-cases, trims, removes accents, treats underscores as spaces and
    collapses whitespace.  ``None`` becomes the empty string.

    Example:
        "  MANO_DE_OBRA Cimentación " -> "mano de obra cimentacion"
    """
    if not text:
        return ''
    s = strip_accents(text.lower())
    s = UNDERSCORE.sub(' ', s)
    return normalize_whitespace(s)


def normalize_code(code: str | None) -> str:
    """Case-insensitive form of a catalog code (trimmed, upper-cased)."""
    if not code:
        return ''
    return code.strip().upper()


def natural_code_key(code: str | None) -> tuple:
    """Sort key that orders numeric code segments by value.

    "2" sorts before "10", and "01.2" before "01.10".
    """
    parts = DIGIT_RUN.split(code or '')
    return tuple(
        (0, int(p), '') if p.isdigit() else (1, 0, p.lower())
        for p in parts if p
    )
