"""``${path}`` substitution over run input, prior step outputs and context.

Placeholders use dotted paths rooted in the scope mapping, e.g.
``${input.customer_id}``, ``${steps.2.total}``, ``${steps.review.approved}``
or ``${env.API_TOKEN}``. A string consisting of exactly one placeholder
keeps the referenced value's type; placeholders embedded in longer strings
are stringified. Unresolved placeholders are left untouched.
"""

from __future__ import annotations

import os
import re
from typing import Any, Mapping

_PLACEHOLDER = re.compile(r"\$\{([^}]+)\}")


class _Missing:
    def __repr__(self) -> str:  # pragma: no cover - debugging aid
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()


def lookup(data: Any, path: str) -> Any:
    """Resolve a dotted ``path`` inside nested mappings and sequences.

    Returns :data:`MISSING` when any segment cannot be resolved.
    """
    current = data
    for segment in path.strip().split("."):
        if segment == "":
            return MISSING
        if isinstance(current, Mapping):
            if segment in current:
                current = current[segment]
            elif segment.isdigit() and int(segment) in current:
                current = current[int(segment)]
            else:
                return MISSING
        elif isinstance(current, (list, tuple)) and segment.lstrip("-").isdigit():
            index = int(segment)
            if -len(current) <= index < len(current):
                current = current[index]
            else:
                return MISSING
        else:
            return MISSING
    return current


def _resolve(path: str, scope: Mapping[str, Any]) -> Any:
    root, _, rest = path.strip().partition(".")
    if root == "env":
        return os.environ.get(rest, MISSING) if rest else MISSING
    if root not in scope:
        return MISSING
    return lookup(scope[root], rest) if rest else scope[root]


def render(value: Any, scope: Mapping[str, Any]) -> Any:
    """Recursively substitute placeholders in ``value``."""
    if isinstance(value, str):
        whole = _PLACEHOLDER.fullmatch(value)
        if whole:
            resolved = _resolve(whole.group(1), scope)
            return value if resolved is MISSING else resolved

        def _substitute(match: re.Match) -> str:
            resolved = _resolve(match.group(1), scope)
            return match.group(0) if resolved is MISSING else str(resolved)

        return _PLACEHOLDER.sub(_substitute, value)
    if isinstance(value, dict):
        return {k: render(v, scope) for k, v in value.items()}
    if isinstance(value, list):
        return [render(v, scope) for v in value]
    return value


def resolve_secret(value: Any) -> Any:
    """Read ``env:NAME`` references from the environment."""
    if isinstance(value, str) and value.startswith("env:"):
        return os.environ.get(value[4:], "")
    return value
