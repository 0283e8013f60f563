"""Phone normalization for matching Telegram contacts against stored parents."""

import re

from sqlalchemy import func

DEFAULT_COUNTRY_CODE = "998"
LOCAL_NUMBER_DIGITS = 9

_NON_PHONE_CHARS = re.compile(r"[^\d+]")
# Formatting staff commonly type into stored numbers.
STORED_SEPARATORS = (" ", "-", "(", ")")


def normalize_phone(raw: str) -> str:
    """Keep digits and a leading `+`, drop everything else."""

    cleaned = _NON_PHONE_CHARS.sub("", raw or "")
    if not cleaned:
        return ""
    head, tail = cleaned[0], cleaned[1:].replace("+", "")
    return head + tail


def lookup_variants(raw: str, country_code: str = DEFAULT_COUNTRY_CODE) -> list[str]:
    """Candidate spellings of one number, in lookup order, without duplicates.

    Parents are entered by staff in whatever form they were given, so a
    contact shared as `998901234567` must still find `+998901234567` or the
    bare local `901234567`. Compare against `compact_phone_column`, which
    strips the separators staff type between digit groups.
    """

    normalized = normalize_phone(raw)
    digits = normalized.lstrip("+")
    candidates = [normalized, digits]
    if digits.startswith(country_code):
        candidates.append("+" + digits)
    if len(digits) >= LOCAL_NUMBER_DIGITS:
        candidates.append(digits[-LOCAL_NUMBER_DIGITS:])
    if len(digits) == LOCAL_NUMBER_DIGITS:
        candidates.append(country_code + digits)
        candidates.append("+" + country_code + digits)

    seen = []
    for candidate in candidates:
        if candidate and candidate not in seen:
            seen.append(candidate)
    return seen


def compact_phone_column(column):
    """SQL expression for a stored phone with `STORED_SEPARATORS` removed."""

    expr = column
    for separator in STORED_SEPARATORS:
        expr = func.replace(expr, separator, "")
    return expr
