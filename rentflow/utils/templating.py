"""Dotted-path lookup and ``{{ placeholder }}`` rendering for action payloads."""

from __future__ import annotations

import re
from typing import Any, Mapping

_PLACEHOLDER = re.compile(r"\{\{\s*([\w.\-]+)\s*\}\}")


class _Missing:
    def __repr__(self) -> str:  # pragma: no cover - debugging aid
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()


class TemplateError(ValueError):
    """A placeholder references a value absent from the render context."""


def get_nested(data: Mapping[str, Any] | None, path: str) -> Any:
    """Resolve ``a.b.c`` through nested mappings.

    Returns ``MISSING`` when any segment is absent or the value is ``None``.
    Integer segments index into lists.
    """
    current: Any = data
    for part in path.split("."):
        if isinstance(current, Mapping):
            if part not in current:
                return MISSING
            current = current[part]
        elif isinstance(current, (list, tuple)) and part.isdigit():
            idx = int(part)
            if idx >= len(current):
                return MISSING
            current = current[idx]
        else:
            return MISSING
        if current is None:
            return MISSING
    return current


def render(value: Any, context: Mapping[str, Any]) -> Any:
    """Render placeholders in ``value`` (recursing into dicts and lists).

    A string that is exactly one placeholder yields the raw context value so
    numbers, dates and nested objects keep their type.
    """
    if isinstance(value, str):
        return _render_str(value, context)
    if isinstance(value, Mapping):
        return {key: render(item, context) for key, item in value.items()}
    if isinstance(value, list):
        return [render(item, context) for item in value]
    return value


def _render_str(text: str, context: Mapping[str, Any]) -> Any:
    whole = _PLACEHOLDER.fullmatch(text.strip())
    if whole:
        resolved = get_nested(context, whole.group(1))
        if resolved is MISSING:
            raise TemplateError(f"Unresolved placeholder: {whole.group(1)}")
        return resolved

    def _substitute(match: re.Match[str]) -> str:
        resolved = get_nested(context, match.group(1))
        if resolved is MISSING:
            raise TemplateError(f"Unresolved placeholder: {match.group(1)}")
        return str(resolved)

    return _PLACEHOLDER.sub(_substitute, text)
