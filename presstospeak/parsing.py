"""Lenient coercion of optional form fields and dotted version strings.

Tuning hints that fail to parse are treated as absent rather than rejected.
"""
import math
import re
from typing import Any, List, Optional


VERSION_PATTERN = re.compile(r"^\d+(?:\.\d+){0,3}$")


def parse_string(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def parse_boolean(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if not isinstance(value, str):
        return None
    normalized = value.strip().lower()
    if normalized in ("true", "1"):
        return True
    if normalized in ("false", "0"):
        return False
    return None


def parse_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        parsed = float(value)
    except ValueError:
        return None
    return parsed if math.isfinite(parsed) else None


def is_dotted_numeric_version(value: str) -> bool:
    return bool(VERSION_PATTERN.match(value))


def _segments(value: str) -> List[int]:
    if not is_dotted_numeric_version(value):
        raise ValueError("Version must use dotted numeric format")
    return [int(segment) for segment in value.split(".")]


def compare_dotted_versions(left: str, right: str) -> int:
    """-1, 0 or 1; missing trailing segments count as zero."""
    left_segments = _segments(left)
    right_segments = _segments(right)
    width = max(len(left_segments), len(right_segments))
    left_segments += [0] * (width - len(left_segments))
    right_segments += [0] * (width - len(right_segments))
    if left_segments < right_segments:
        return -1
    if left_segments > right_segments:
        return 1
    return 0
