"""Shared utility functions for Helmsman."""

from __future__ import annotations

import re

_FENCE_RE = re.compile(r"^```[a-zA-Z0-9_-]*\s*\n?(.*?)\n?```\s*$", re.DOTALL)


def truncate(text: str, limit: int, suffix: str = "...") -> str:
    """Cut text to ``limit`` characters, appending ``suffix`` when cut."""
    if len(text) <= limit:
        return text
    return text[:limit] + suffix


def strip_code_fence(text: str) -> str:
    """Remove a single surrounding Markdown code fence (```json ... ```).

    Text without a fence is returned stripped but otherwise unchanged.
    """
    stripped = text.strip()
    match = _FENCE_RE.match(stripped)
    if match:
        return match.group(1).strip()
    return stripped
