"""Translation file parsing for file-based audits (JSON, CSV, HTML)."""
from __future__ import annotations

import csv
import io
import json
import logging
from dataclasses import dataclass
from typing import Any

from locaudit.fetcher import extract_text

log = logging.getLogger(__name__)

FILE_TYPES = ("json", "csv", "html")


@dataclass
class TranslationPair:
    key: str
    value: str


def _flatten(obj: dict[str, Any], prefix: str = "") -> list[TranslationPair]:
    pairs: list[TranslationPair] = []
    for k, v in obj.items():
        full_key = f"{prefix}.{k}" if prefix else str(k)
        if isinstance(v, dict):
            pairs.extend(_flatten(v, full_key))
        elif isinstance(v, str):
            pairs.append(TranslationPair(full_key, v))
    return pairs


def parse_json_translations(raw: str) -> list[TranslationPair]:
    """Flatten a nested i18n JSON object into dotted-key pairs.

    Only string leaves are kept; arrays, numbers and booleans are skipped.
    Raises ValueError on invalid JSON or a non-object top level.
    """
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid JSON translation file: {exc}") from exc
    if not isinstance(parsed, dict):
        raise ValueError("JSON translation file must contain an object at the top level")
    return _flatten(parsed)


def parse_csv_translations(raw: str) -> list[TranslationPair]:
    """Read ``key,value`` rows from a CSV with a header line.

    A ``value`` column is required. The key comes from the ``key`` column if
    present, otherwise from the first column. Blank lines are skipped.
    """
    reader = csv.DictReader(io.StringIO(raw.lstrip("\ufeff")))
    fields = [f.strip() for f in (reader.fieldnames or [])]
    if "value" not in fields:
        raise ValueError("CSV must have a value column. Found: " + ", ".join(fields))
    reader.fieldnames = fields
    key_field = "key" if "key" in fields else fields[0]

    pairs: list[TranslationPair] = []
    for row in reader:
        if not any((v or "").strip() for v in row.values() if isinstance(v, str)):
            continue
        pairs.append(TranslationPair(row.get(key_field) or "", row.get("value") or ""))
    return pairs


def pairs_to_text(pairs: list[TranslationPair]) -> str:
    return "\n".join(f"{p.key}: {p.value}" for p in pairs)


def file_to_text(raw: str, file_type: str) -> tuple[str, str]:
    """Return ``(text_to_audit, html_snapshot)`` for an uploaded file."""
    file_type = file_type.strip().lower()
    if file_type == "json":
        return pairs_to_text(parse_json_translations(raw)), ""
    if file_type == "csv":
        return pairs_to_text(parse_csv_translations(raw)), ""
    if file_type == "html":
        return extract_text(raw), raw
    raise ValueError(f"Unsupported file type {file_type!r}, expected one of {', '.join(FILE_TYPES)}")
