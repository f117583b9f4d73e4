"""Derivation of search-index rows from entities.

Every field of a ``search_index`` row is a pure function of the entity's
current ``name``, ``type`` and ``data`` document, which is what lets the
indexer throw the table away and rebuild it at any time.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Mapping, Optional

PATH_FIELDS = ("path", "filePath", "file_path", "location", "url", "src")
TAG_FIELDS = ("tags", "keywords", "categories", "labels")
TEXT_FIELDS = ("description", "summary", "content", "text", "comment")

_CAMEL_BOUNDARY = re.compile(r"([A-Z])")
_SEPARATORS = re.compile(r"[_-]")
_WHITESPACE = re.compile(r"\s+")


@dataclass(frozen=True)
class SearchIndexEntry:
    entity_id: str
    original_name: str
    normalized_name: str
    name_tokens: str
    file_path: Optional[str]
    file_extension: Optional[str]
    entity_type: str
    tags: str
    full_text: str
    trigrams: str

    def as_params(self) -> tuple:
        return (
            self.entity_id,
            self.original_name,
            self.normalized_name,
            self.name_tokens,
            self.file_path,
            self.file_extension,
            self.entity_type,
            self.tags,
            self.full_text,
            self.trigrams,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def load_data(raw: Any, *, context: str) -> Dict[str, Any]:
    """Decode an entity ``data`` column; undecodable documents count as empty."""
    if isinstance(raw, Mapping):
        return dict(raw)
    if raw is None or raw == "":
        return {}
    try:
        value = json.loads(raw)
    except (TypeError, json.JSONDecodeError):
        logging.warning("Failed to decode data for %s", context, exc_info=True)
        return {}
    return value if isinstance(value, dict) else {}


def normalize_name(name: str) -> str:
    return name.lower()


def name_tokens(name: str) -> str:
    """``getUserName`` / ``get_user-name`` -> ``get user name``."""
    spaced = _CAMEL_BOUNDARY.sub(r" \1", name)
    spaced = _SEPARATORS.sub(" ", spaced)
    return _WHITESPACE.sub(" ", spaced.lower().strip())


def extract_file_path(data: Mapping[str, Any]) -> Optional[str]:
    for field in PATH_FIELDS:
        value = data.get(field)
        if isinstance(value, str) and value:
            return value
    return None


def file_extension(path: Optional[str]) -> Optional[str]:
    if not path:
        return None
    base = re.split(r"[\\/]", path)[-1]
    dot = base.rfind(".")
    if dot <= 0 or dot == len(base) - 1:
        return None
    return base[dot + 1 :].lower()


def extract_tags(data: Mapping[str, Any]) -> str:
    tags: List[str] = []
    for field in TAG_FIELDS:
        value = data.get(field)
        if not value:
            continue
        if isinstance(value, (list, tuple)):
            tags.extend(tag for tag in value if isinstance(tag, str) and tag)
        elif isinstance(value, str):
            tags.append(value)
    return " ".join(tags).lower()


def full_text(name: str, entity_type: str, data: Mapping[str, Any]) -> str:
    parts = [name, entity_type]
    for field in TEXT_FIELDS:
        value = data.get(field)
        if isinstance(value, str) and value:
            parts.append(value)
    return " ".join(parts).lower()


def generate_trigrams(text: str) -> List[str]:
    """Overlapping 3-character windows, first occurrence order, no duplicates."""
    if len(text) < 3:
        return []
    seen: Dict[str, None] = {}
    for i in range(len(text) - 2):
        seen.setdefault(text[i : i + 3], None)
    return list(seen)


def trigrams(text: str) -> str:
    return " ".join(generate_trigrams(text))


def trigram_similarity(candidate: Optional[str], query: Optional[str]) -> float:
    """Share of the candidate's trigram string covered by trigrams it has in common with the query.

    Both arguments are space-joined trigram strings as stored in
    ``search_index.trigrams``. Registered as a SQL function, so it must
    tolerate NULLs.
    """
    if not candidate:
        return 0.0
    shared = set((query or "").split())
    remaining = " ".join(t for t in candidate.split() if t not in shared)
    return (len(candidate) - len(remaining)) / len(candidate)


def build_index_entry(entity: Mapping[str, Any]) -> SearchIndexEntry:
    """Derive the ``search_index`` row for an entity row or dict.

    Names like ``Dashboard.tsx`` carry their own extension, so the extension
    falls back to the entity name when ``data`` has no path field.
    """
    entity_id = str(entity["id"])
    name = str(entity["name"])
    entity_type = str(entity["type"])
    data = load_data(entity.get("data"), context=f"entity:{entity_id}")

    path = extract_file_path(data)
    normalized = normalize_name(name)
    return SearchIndexEntry(
        entity_id=entity_id,
        original_name=name,
        normalized_name=normalized,
        name_tokens=name_tokens(name),
        file_path=path,
        file_extension=file_extension(path) or file_extension(name),
        entity_type=entity_type,
        tags=extract_tags(data),
        full_text=full_text(name, entity_type, data),
        trigrams=trigrams(normalized),
    )
