# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_auth_broker

"""
Claim path resolution over loosely typed JSON documents.

A claim path is either a dotted string (``"realm_access.roles"``) or a sequence of
segments (``["https://example.com/roles"]``) for keys that themselves contain dots.
Lookups are best-effort: anything that cannot be resolved is absent (``None``).
"""

from collections.abc import Mapping, Sequence
from typing import Any

ClaimPath = str | Sequence[str]


def parse_claim_path(path: ClaimPath) -> tuple[str, ...]:
    """
    Splits a claim path into its segments.

    Args:
        path: Dotted string or sequence of segments.

    Returns:
        The tuple of segments.

    Raises:
        ValueError: If the path is empty or contains an empty segment.
    """
    if isinstance(path, str):
        segments = tuple(path.strip().split("."))
    else:
        segments = tuple(path)

    if not segments or any(not isinstance(s, str) or not s.strip() for s in segments):
        raise ValueError(f"Invalid claim path: {path!r}")
    return segments


def extract(document: Any, path: ClaimPath) -> Any:
    """
    Resolves a claim path against a JSON document.

    Each segment indexes into a mapping. A purely numeric segment also indexes into a list.
    Numbers, booleans, strings and null are leaves and cannot be traversed.

    Args:
        document: The decoded JSON document.
        path: The claim path.

    Returns:
        The value found, or None if any segment is missing.
    """
    current = document
    for segment in parse_claim_path(path):
        if isinstance(current, Mapping):
            if segment not in current:
                return None
            current = current[segment]
        elif isinstance(current, list) and segment.isdigit():
            index = int(segment)
            if index >= len(current):
                return None
            current = current[index]
        else:
            return None
    return current


def extract_string(document: Any, path: ClaimPath) -> str | None:
    """
    Extracts a single string value. Integers are rendered as strings (numeric user ids).
    """
    value = extract(document, path)
    if isinstance(value, str):
        return value or None
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return None


def extract_list(document: Any, path: ClaimPath) -> list[str] | None:
    """
    Extracts an ordered list of strings.

    A scalar string is coerced to a single-element list. Non-string list items are skipped
    and duplicates are dropped, keeping the first occurrence.
    """
    value = extract(document, path)
    if isinstance(value, str):
        return [value] if value else []
    if not isinstance(value, list):
        return None

    # dict preserves insertion order
    items = {item: None for item in value if isinstance(item, str) and item}
    return list(items)


def extract_bool(document: Any, path: ClaimPath) -> bool | None:
    value = extract(document, path)
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in ("true", "false"):
        return value.lower() == "true"
    return None
