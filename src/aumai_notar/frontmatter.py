"""Minimal front matter codec for signed documents.

Only flat ``key: value`` scalars are understood, plus the ``signatures`` list::

    ---
    name: my-doc
    version: "1.0"
    signatures:
      - keyId: key_2024
        publisher: example.com
        value: "ed25519:..."
    ---
    Body text.

This is deliberately not a YAML parser.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any

from aumai_notar.models import SignatureEntry

_BLOCK_RE = re.compile(r"---\r?\n(.*?)\r?\n---\r?\n?(.*)", re.DOTALL)
_LINE_SPLIT_RE = re.compile(r"\r?\n")
_NUMBER_RE = re.compile(r"[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")
_LEADING_ZERO_RE = re.compile(r"0\d")
_SEMVER_RE = re.compile(r"\d+\.\d+\.\d+")
_ESCAPE_RE = re.compile(r'\\(["\\])')

_SIGNATURES_KEY = "signatures"
_ITEM_PREFIX = "- keyId:"


# ---------------------------------------------------------------------------
# Scalars
# ---------------------------------------------------------------------------


def _unquote(raw: str) -> str | None:
    """Return the inner text of a quoted scalar, or ``None`` if unquoted."""
    if len(raw) >= 2 and raw[0] == raw[-1] and raw[0] in ('"', "'"):
        inner = raw[1:-1]
        if raw[0] == '"':
            inner = _ESCAPE_RE.sub(r"\1", inner)
        return inner
    return None


def parse_scalar(raw: str) -> str | bool | int | float:
    """Decode one inline value."""
    quoted = _unquote(raw)
    if quoted is not None:
        return quoted
    if raw == "true":
        return True
    if raw == "false":
        return False
    if _NUMBER_RE.fullmatch(raw):
        unsigned = raw.lstrip("+-")
        if _LEADING_ZERO_RE.match(unsigned) or _SEMVER_RE.match(unsigned):
            return raw
        try:
            return int(raw)
        except ValueError:
            return float(raw)
    return raw


def _needs_quotes(value: str) -> bool:
    if any(ch in value for ch in (":", "#", '"', "'")):
        return True
    if value[:1].isdigit():
        return True
    # Anything else that would not read back as the same string.
    return value != value.strip() or parse_scalar(value) != value


def format_scalar(value: Any) -> str:
    """Encode one inline value so that :func:`parse_scalar` reads it back."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        if value and _needs_quotes(value):
            escaped = value.replace("\\", "\\\\").replace('"', '\\"')
            return f'"{escaped}"'
        return value
    return str(value)


def _entry_field(raw: str) -> str:
    quoted = _unquote(raw)
    return quoted if quoted is not None else raw


# ---------------------------------------------------------------------------
# Parse / stringify
# ---------------------------------------------------------------------------


def _parse_signatures(
    lines: list[str], index: int
) -> tuple[list[SignatureEntry], int]:
    """Consume the indented list following ``signatures:`` starting at *index*."""
    entries: list[SignatureEntry] = []
    while index < len(lines):
        line = lines[index]
        if not line or not line.startswith(("  ", "\t")):
            break
        stripped = line.strip()
        if not stripped.startswith(_ITEM_PREFIX):
            index += 1
            continue

        item: dict[str, str] = {
            "key_id": _entry_field(stripped[len(_ITEM_PREFIX):].strip())
        }
        index += 1
        while index < len(lines):
            follow = lines[index].strip()
            if follow.startswith("publisher:"):
                item["publisher"] = _entry_field(follow[len("publisher:"):].strip())
            elif follow.startswith("value:"):
                item["value"] = _entry_field(follow[len("value:"):].strip())
            else:
                break
            index += 1

        if "publisher" in item and "value" in item:
            entries.append(SignatureEntry(**item))
    return entries, index


def parse(raw: str) -> tuple[dict[str, Any], str]:
    """Split *raw* into ``(fields, body)``.

    A missing or malformed header yields ``({}, raw)``.
    """
    match = _BLOCK_RE.fullmatch(raw)
    if match is None:
        return {}, raw

    header, body = match.group(1), match.group(2)
    fields: dict[str, Any] = {}
    lines = _LINE_SPLIT_RE.split(header)

    index = 0
    while index < len(lines):
        stripped = lines[index].strip()
        colon = stripped.find(":")
        if not stripped or colon < 1:
            index += 1
            continue

        key = stripped[:colon].strip()
        rest = stripped[colon + 1:].strip()

        if key == _SIGNATURES_KEY and rest == "":
            fields[key], index = _parse_signatures(lines, index + 1)
            continue

        fields[key] = parse_scalar(rest)
        index += 1

    return fields, body


def stringify(body: str, fields: Mapping[str, Any]) -> str:
    """Render *fields* as a front matter header followed by *body*."""
    lines = ["---"]
    for key, value in fields.items():
        if value is None:
            continue
        if key == _SIGNATURES_KEY and isinstance(value, list):
            lines.append(f"{_SIGNATURES_KEY}:")
            for entry in value:
                if not isinstance(entry, SignatureEntry):
                    entry = SignatureEntry.model_validate(entry)
                lines.append(f"  - keyId: {format_scalar(entry.key_id)}")
                lines.append(f"    publisher: {format_scalar(entry.publisher)}")
                lines.append(f"    value: {format_scalar(entry.value)}")
            continue
        lines.append(f"{key}: {format_scalar(value)}")
    lines.append("---")
    return "\n".join(lines) + "\n" + body


__all__ = ["format_scalar", "parse", "parse_scalar", "stringify"]
