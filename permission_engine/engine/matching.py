"""Wildcard-aware permission code matching (`orders.*` covers `orders.<anything>`)."""

from __future__ import annotations

from collections.abc import Iterable


def code_matches(pattern: str, code: str) -> bool:
    if pattern == code or pattern == "*":
        return True
    if pattern.endswith(".*"):
        return code.startswith(pattern[:-1])
    return False


def matches_any(patterns: Iterable[str], code: str) -> bool:
    if isinstance(patterns, (set, frozenset)) and code in patterns:
        return True
    return any(code_matches(pattern, code) for pattern in patterns)
