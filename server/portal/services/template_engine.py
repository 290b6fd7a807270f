"""Placeholder substitution for email subjects and bodies.

Templates reference record fields with ``{{path}}`` where ``path`` is a dotted
sequence of keys. A path is resolved against the top-level record as a literal
key first and only then walked through nested mappings, so a key named
``"a.b"`` wins over ``record["a"]["b"]``. Resolution never raises: a missing
path renders as an empty string.
"""

from __future__ import annotations

import json
import re
from collections.abc import Mapping
from datetime import datetime
from typing import Any

from dateutil import parser as date_parser

PLACEHOLDER_PATTERN = re.compile(r"\{\{([^}]+)\}\}")
DATE_PATH_MARKERS = ("date", "_at", "_on")

UNRESOLVED = object()

_DEFAULT_A = datetime(2000, 1, 1)
_DEFAULT_B = datetime(2001, 2, 2)


def extract_variables(template: str | None) -> list[str]:
    """Return the distinct placeholder paths in first-occurrence order."""

    if not template:
        return []
    variables: list[str] = []
    for match in PLACEHOLDER_PATTERN.finditer(template):
        path = match.group(1).strip()
        if path not in variables:
            variables.append(path)
    return variables


def resolve_path(record: Mapping[str, Any], path: str) -> Any:
    if path in record:
        return record[path]
    current: Any = record
    for segment in path.split("."):
        if not isinstance(current, Mapping) or segment not in current:
            return UNRESOLVED
        current = current[segment]
    return current


def is_date_path(path: str) -> bool:
    lowered = path.lower()
    return any(marker in lowered for marker in DATE_PATH_MARKERS)


def parse_date(value: str) -> datetime | None:
    """Parse ``value`` only when it names a full calendar date.

    Parsing against two different defaults exposes any component that was
    filled in rather than read, so ``"10"`` or ``"May"`` are rejected.
    """

    try:
        first = date_parser.parse(value, default=_DEFAULT_A)
        second = date_parser.parse(value, default=_DEFAULT_B)
    except (ValueError, OverflowError):
        return None
    if first.date() != second.date():
        return None
    return first


def format_value(path: str, value: Any) -> str:
    if value is None or value is UNRESOLVED:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str) and is_date_path(path):
        parsed = parse_date(value)
        if parsed is None:
            return value
        # Calendar fields of the parsed value are kept as written; no tz shift.
        return f"{parsed.month:02d}/{parsed.day:02d}/{parsed.year:04d}"
    if isinstance(value, Mapping):
        return json.dumps(value, default=str)
    if isinstance(value, (list, tuple)):
        return ", ".join(format_value(path, item) for item in value)
    return str(value)


def process_template(template: str | None, record: Mapping[str, Any] | None) -> str | None:
    """Substitute every placeholder in ``template`` with values from ``record``.

    Each occurrence is resolved independently; unmatched ``{{`` sequences are
    left as they are.
    """

    if not template or record is None:
        return template

    def _substitute(match: re.Match[str]) -> str:
        path = match.group(1).strip()
        return format_value(path, resolve_path(record, path))

    return PLACEHOLDER_PATTERN.sub(_substitute, template)


def find_missing_variables(template: str | None, record: Mapping[str, Any] | None) -> list[str]:
    if record is None:
        return extract_variables(template)
    return [path for path in extract_variables(template) if resolve_path(record, path) in (None, UNRESOLVED)]
