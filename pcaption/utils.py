"""Utility helpers for whitespace checks and loose option values."""

from __future__ import annotations

import re
from typing import Any, Optional

BLANK_LINE_PATTERN = re.compile(r"^[ \t]*$")
WHITESPACE_ONLY_PATTERN = re.compile(r"^[\s　]+$")
ASCII_ONLY_PATTERN = re.compile(r"^[\x00-\x7F]*$")


def is_blank_line(line: Optional[str]) -> bool:
    """Return True for a missing line or one holding only spaces and tabs."""
    if line is None:
        return True
    return bool(BLANK_LINE_PATTERN.match(line))


def is_blank(value: Optional[str]) -> bool:
    """Return True for empty text or text made of (ideographic) whitespace."""
    if not value:
        return True
    return bool(WHITESPACE_ONLY_PATTERN.match(value))


def is_ascii_only(value: str) -> bool:
    return bool(ASCII_ONLY_PATTERN.match(value))


def coerce_bool(value: Any) -> Optional[bool]:
    """Accept real booleans only; anything else is reported as unset."""
    if value is True or value is False:
        return value
    return None
