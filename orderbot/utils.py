"""Shared utilities used across the order bot."""

import re
import unicodedata

_DIGIT_RE = re.compile(r"\d")
_WHITESPACE_RE = re.compile(r"\s+")


def normalize_phone(value: str) -> str:
    """Normalize a phone number by stripping everything except digits and a leading +.

    Chat channels append suffixes such as ``@c.us``; those are dropped too.

    Examples:
        >>> normalize_phone("5511 99999-0000@c.us")
        '5511999990000'
        >>> normalize_phone("+55 (11) 99999-0000")
        '+5511999990000'
    """
    value = value.strip().split("@", 1)[0]
    if value.startswith("+"):
        return "+" + re.sub(r"[^\d]", "", value[1:])
    return re.sub(r"[^\d]", "", value)


def strip_accents(value: str) -> str:
    """Remove diacritics, keeping the base characters.

    Examples:
        >>> strip_accents("Porco & Pinhão")
        'Porco & Pinhao'
    """
    decomposed = unicodedata.normalize("NFD", value)
    return "".join(ch for ch in decomposed if unicodedata.category(ch) != "Mn")


def fold(value: str) -> str:
    """Lower-case and accent-fold text for keyword matching."""
    return strip_accents(value or "").lower()


def slugify(value: str) -> str:
    """Diacritic-stripped, lower-cased, whitespace-to-hyphen slug."""
    return _WHITESPACE_RE.sub("-", strip_accents(value.strip()).lower())


def make_identifier(category: str, name: str) -> str:
    """Build a menu item identifier from its category and name.

    Examples:
        >>> make_identifier("Pizza Salgada", "Pizza Amazonas")
        'pizza-salgada_pizza-amazonas'
    """
    return f"{slugify(category)}_{slugify(name)}"


def has_digit(value: str | None) -> bool:
    """True when the text carries at least one digit (house number check)."""
    return bool(value) and bool(_DIGIT_RE.search(value))


def display_flavor(name: str) -> str:
    """Drop the 'Pizza ' prefix used in menu names for captions."""
    return name.replace("Pizza ", "").strip()
