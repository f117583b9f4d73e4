"""Classification of raw search strings into pattern types.

Patterns overlap (``/a/`` is both a path and a regex, ``*.ts*`` both an
extension and a wildcard), so ``QueryParser.parse`` checks them in a fixed
order and the first match wins:

    *            wildcard      everything
    *.tsx        extension     file_extension = 'tsx'
    t:Component  type          entity_type = 'Component'
    src/*.ts     path          file_path LIKE ...
    "Exact"      exact         normalized_name = 'exact'
    ~dashbord    fuzzy         trigram similarity
    /^use/i      regex         client-side re.search
    *x* / *x / x*              contains / suffix / prefix
    anything else              text (name prefix > name contains > content)
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple

from .errors import EmptyQueryError, InvalidPattern


class PatternType(str, Enum):
    WILDCARD = "wildcard"
    PREFIX = "prefix"
    SUFFIX = "suffix"
    CONTAINS = "contains"
    EXTENSION = "extension"
    TYPE = "type"
    EXACT = "exact"
    PATH = "path"
    FUZZY = "fuzzy"
    REGEX = "regex"
    TEXT = "text"
    COMPOSITE = "composite"


@dataclass(frozen=True)
class QueryModifier:
    type: str
    field: str
    value: str


@dataclass(frozen=True)
class ParsedQuery:
    type: PatternType
    value: str
    modifiers: Tuple[QueryModifier, ...] = ()
    raw: str = ""
    filters: Tuple["ParsedQuery", ...] = ()

    @property
    def regex_flags(self) -> str:
        for modifier in self.modifiers:
            if modifier.type == "transform" and modifier.field == "regex":
                return modifier.value
        return ""


@dataclass(frozen=True)
class PatternInfo:
    description: str
    expected_results: str
    performance: str  # "fast" | "medium" | "slow"


# JavaScript-style flag letters accepted in /pattern/flags literals.
REGEX_FLAG_LETTERS = "gimsuy"
_REGEX_LITERAL = re.compile(r"^/((?:[^/\\]|\\.)+)/([a-z]*)$", re.DOTALL)
_FLAG_MAP = {"i": re.IGNORECASE, "m": re.MULTILINE, "s": re.DOTALL}


def regex_flags_to_re(flags: str) -> int:
    """``"gi"`` -> ``re.IGNORECASE``; g, u and y have no effect on a search test."""
    value = 0
    for letter in flags:
        if letter not in REGEX_FLAG_LETTERS:
            raise InvalidPattern(f"Unknown regex flag {letter!r}")
        value |= _FLAG_MAP.get(letter, 0)
    return value


def compile_regex(pattern: str, flags: str = "") -> "re.Pattern[str]":
    try:
        return re.compile(pattern, regex_flags_to_re(flags))
    except re.error as exc:
        raise InvalidPattern(f"Invalid regex pattern: {exc}", cause=exc) from exc


def _regex_literal(query: str) -> Optional[Tuple[str, str]]:
    match = _REGEX_LITERAL.match(query)
    if not match:
        return None
    body, flags = match.group(1), match.group(2)
    if any(letter not in REGEX_FLAG_LETTERS for letter in flags):
        return None
    return body, flags


class QueryParser:
    def parse(self, query: str) -> ParsedQuery:
        logging.debug("Parsing search query %r", query)
        q = (query or "").strip()
        if not q:
            raise EmptyQueryError("Empty search query")

        if q == "*":
            return ParsedQuery(PatternType.WILDCARD, "*", raw=q)

        if q.startswith("*.") and len(q) > 2:
            return ParsedQuery(PatternType.EXTENSION, q[2:], raw=query)

        if q.startswith("t:") and len(q) > 2:
            return ParsedQuery(PatternType.TYPE, q[2:], raw=query)

        literal = _regex_literal(q)
        if "/" in q and literal is None:
            return ParsedQuery(PatternType.PATH, q, raw=query)

        if q.startswith('"') and q.endswith('"') and len(q) > 2:
            return ParsedQuery(PatternType.EXACT, q[1:-1], raw=query)

        if q.startswith("~") and len(q) > 1:
            return ParsedQuery(PatternType.FUZZY, q[1:], raw=query)

        if literal is not None:
            body, flags = literal
            try:
                compile_regex(body, flags)
            except InvalidPattern as exc:
                logging.warning("Invalid regex pattern %r, falling back to text search: %s", body, exc)
            else:
                modifiers = (QueryModifier("transform", "regex", flags),) if flags else ()
                return ParsedQuery(PatternType.REGEX, body, modifiers=modifiers, raw=query)

        if "*" in q:
            if q.startswith("*") and q.endswith("*") and len(q) > 2:
                return ParsedQuery(PatternType.CONTAINS, q[1:-1], raw=query)
            if q.startswith("*") and len(q) > 1:
                return ParsedQuery(PatternType.SUFFIX, q[1:], raw=query)
            if q.endswith("*") and len(q) > 1:
                return ParsedQuery(PatternType.PREFIX, q[:-1], raw=query)
            # Inner wildcards are not segmented; the engine treats this as match-all.
            logging.warning("Wildcard inside %r is not supported; matching all entities.", q)
            return ParsedQuery(PatternType.WILDCARD, q, raw=query)

        logging.debug("Defaulting to text search for %r", q)
        return ParsedQuery(PatternType.TEXT, q, raw=query)

    def parse_composite(self, query: str) -> ParsedQuery:
        """Parse ``t:Component *.tsx Dash*`` into an AND of its parts."""
        parts = self.split_composite(query)
        if not parts:
            raise EmptyQueryError("Empty search query")
        if len(parts) == 1:
            return self.parse(parts[0])
        filters = tuple(self.parse(part) for part in parts)
        return ParsedQuery(PatternType.COMPOSITE, query, raw=query, filters=filters)

    @staticmethod
    def split_composite(query: str) -> List[str]:
        """Split on spaces outside double quotes; backslash escapes the next character.

        Quotes and backslashes are kept in the parts so each part still
        parses as written.
        """
        parts: List[str] = []
        current: List[str] = []
        in_quotes = False
        escape_next = False
        for ch in query or "":
            if escape_next:
                current.append(ch)
                escape_next = False
                continue
            if ch == "\\":
                escape_next = True
                current.append(ch)
                continue
            if ch == '"':
                in_quotes = not in_quotes
                current.append(ch)
                continue
            if ch == " " and not in_quotes:
                token = "".join(current).strip()
                if token:
                    parts.append(token)
                current = []
                continue
            current.append(ch)
        token = "".join(current).strip()
        if token:
            parts.append(token)
        return parts

    def validate(self, parsed: ParsedQuery) -> List[str]:
        errors: List[str] = []
        if not parsed.value:
            errors.append("Query value cannot be empty")
        if parsed.type is PatternType.REGEX:
            try:
                compile_regex(parsed.value, parsed.regex_flags)
            except InvalidPattern as exc:
                errors.append(str(exc))
        if parsed.type is PatternType.EXTENSION and ("/" in parsed.value or "\\" in parsed.value):
            errors.append("File extension cannot contain path separators")
        if parsed.type is PatternType.COMPOSITE:
            if not parsed.filters:
                errors.append("Composite query has no filters")
            for sub in parsed.filters:
                errors.extend(self.validate(sub))
        return errors

    def get_pattern_info(self, parsed: ParsedQuery) -> PatternInfo:
        v = parsed.value
        t = parsed.type
        if t is PatternType.WILDCARD:
            return PatternInfo("Match all entities", "All entities in the system", "medium")
        if t is PatternType.PREFIX:
            return PatternInfo(f'Match entities starting with "{v}"', f'Entities whose names start with "{v}"', "fast")
        if t is PatternType.SUFFIX:
            return PatternInfo(f'Match entities ending with "{v}"', f'Entities whose names end with "{v}"', "medium")
        if t is PatternType.CONTAINS:
            return PatternInfo(f'Match entities containing "{v}"', f'Entities whose names contain "{v}"', "medium")
        if t is PatternType.EXTENSION:
            return PatternInfo(f'Match entities with file extension "{v}"', f"Entities with .{v} file extension", "fast")
        if t is PatternType.TYPE:
            return PatternInfo(f'Match entities of type "{v}"', f"All {v} entities", "fast")
        if t is PatternType.EXACT:
            return PatternInfo(f'Match entities with exact name "{v}"', f'Entities named exactly "{v}"', "fast")
        if t is PatternType.PATH:
            return PatternInfo(f'Match entities by file path pattern "{v}"', "Entities in matching file paths", "fast")
        if t is PatternType.FUZZY:
            return PatternInfo(f'Fuzzy match for "{v}"', f'Entities with names similar to "{v}"', "slow")
        if t is PatternType.REGEX:
            return PatternInfo(f"Regular expression match: /{v}/{parsed.regex_flags}", "Entities matching the regex pattern", "slow")
        if t is PatternType.TEXT:
            return PatternInfo(f'Text search for "{v}"', f'Entities containing "{v}" in name or content', "medium")
        return PatternInfo(
            f"{len(parsed.filters)} search patterns combined",
            "Entities matching all specified patterns",
            "medium",
        )
