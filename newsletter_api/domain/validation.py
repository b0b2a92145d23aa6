from __future__ import annotations


FORBIDDEN_CHARACTERS = frozenset('/()"<>\\{}')


def is_empty_or_whitespace(value: str) -> bool:
    return value.strip() == ""


def is_too_long(value: str, limit: int) -> bool:
    return len(value) > limit


def contains_forbidden_characters(value: str) -> bool:
    return any(char in FORBIDDEN_CHARACTERS for char in value)
