"""Standardization patterns (SQL LIKE strings) and their matching rules.

Goal:
- Map many raw receipt spellings ("TRPNCA OJ", "tropicana oj 52oz") to one
  standardized name + category.
- Keep matching testable without a database: LikePattern implements
  case-insensitive LIKE semantics in-process.

Important:
- Patterns are stored lowercased with whitespace collapsed.
- `%` matches any run of characters, `_` exactly one; a backslash escapes either.
- Literal item names are escaped before being turned into patterns, so
  "2% Milk" never becomes a wildcard.
- Stored mappings are first-writer-wins; new patterns are additive.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Protocol, Sequence

ESCAPE_CHAR = "\\"
WILDCARDS = ("%", "_")


def normalize_pattern(s: str) -> str:
    s = s.strip().lower()
    s = re.sub(r"\s+", " ", s)
    return s


def escape_like(s: str) -> str:
    """Escape LIKE metacharacters so `s` matches only itself."""
    out = s.replace(ESCAPE_CHAR, ESCAPE_CHAR * 2)
    for w in WILDCARDS:
        out = out.replace(w, ESCAPE_CHAR + w)
    return out


class PatternKind(str, Enum):
    EXACT = "exact"  # no wildcards
    PREFIX = "prefix"  # "abc%"
    SUFFIX = "suffix"  # "%abc"
    CONTAINS = "contains"  # "%abc%"
    COMPLEX = "complex"  # anything else ("a%b", "ab_c", ...)


def _tokenize(pattern: str) -> list[tuple[str, bool]]:
    """Split a LIKE pattern into (char, is_wildcard) tokens, resolving escapes."""
    tokens: list[tuple[str, bool]] = []
    i = 0
    while i < len(pattern):
        ch = pattern[i]
        if ch == ESCAPE_CHAR and i + 1 < len(pattern):
            tokens.append((pattern[i + 1], False))
            i += 2
            continue
        tokens.append((ch, ch in WILDCARDS))
        i += 1
    return tokens


@dataclass(frozen=True)
class LikePattern:
    """A normalized LIKE pattern with explicit wildcard semantics."""

    text: str

    @classmethod
    def parse(cls, raw: str) -> "LikePattern":
        return cls(normalize_pattern(raw))

    @classmethod
    def exact(cls, name: str) -> "LikePattern":
        return cls(escape_like(normalize_pattern(name)))

    @classmethod
    def contains(cls, name: str) -> "LikePattern":
        literal = escape_like(normalize_pattern(name))
        return cls(f"%{literal}%" if literal else "")

    @property
    def literal(self) -> str:
        """Pattern text with wildcards removed and escapes resolved."""
        return "".join(ch for ch, wild in _tokenize(self.text) if not wild)

    @property
    def literal_length(self) -> int:
        return len(self.literal)

    @property
    def kind(self) -> PatternKind:
        tokens = _tokenize(self.text)
        wild_idx = [i for i, (_, wild) in enumerate(tokens) if wild]
        if not wild_idx:
            return PatternKind.EXACT
        # Only `%` at the edges counts as a simple prefix/suffix/contains shape.
        if any(tokens[i][0] != "%" for i in wild_idx):
            return PatternKind.COMPLEX
        last = len(tokens) - 1
        if wild_idx == [last]:
            return PatternKind.PREFIX
        if wild_idx == [0]:
            return PatternKind.SUFFIX
        if wild_idx == [0, last] and last > 0:
            return PatternKind.CONTAINS
        return PatternKind.COMPLEX

    @property
    def is_usable(self) -> bool:
        """Non-empty and carries at least one literal character."""
        return bool(self.text) and self.literal_length > 0

    def to_regex(self) -> re.Pattern[str]:
        parts: list[str] = []
        for ch, wild in _tokenize(self.text):
            if wild:
                parts.append(".*" if ch == "%" else ".")
            else:
                parts.append(re.escape(ch))
        return re.compile("".join(parts), re.IGNORECASE | re.DOTALL)

    def matches(self, value: str) -> bool:
        """Case-insensitive LIKE match against whitespace-normalized `value`."""
        if not self.text:
            return False
        return self.to_regex().fullmatch(normalize_pattern(value)) is not None

    def specificity(self) -> tuple[int, int]:
        """Sort key: exact patterns first, then more literal characters."""
        return (1 if self.kind is PatternKind.EXACT else 0, self.literal_length)


@dataclass(frozen=True)
class PatternMapping:
    pattern: str
    standardized_name: str
    category: str = "Other"


class PatternStore(Protocol):
    """Persistence contract for pattern mappings.

    upsert() must ignore conflicts on `pattern` (first writer wins) and return
    the number of rows actually inserted.
    """

    async def upsert(self, mappings: Sequence[PatternMapping]) -> int: ...

    async def query_by_pattern(self, text: str) -> list[PatternMapping]: ...

    async def known_categories(self) -> list[str]: ...


def clean_patterns(raw: Iterable[str]) -> list[str]:
    """Normalize, drop unusable entries and de-dup while preserving order."""
    out: list[str] = []
    seen: set[str] = set()
    for x in raw:
        p = LikePattern.parse(str(x or ""))
        if not p.is_usable or p.text in seen:
            continue
        out.append(p.text)
        seen.add(p.text)
    return out


def build_item_patterns(original_name: str, suggested: Iterable[str] = ()) -> list[str]:
    """Patterns stored for one ingested item: `%<original>%` plus suggestions.

    Always returns at least one pattern when `original_name` has any text.
    """
    base = LikePattern.contains(original_name).text
    return clean_patterns([base, *suggested])


def build_mappings(
    *,
    original_name: str,
    standardized_name: str,
    category: str,
    patterns: Iterable[str],
) -> list[PatternMapping]:
    name = (standardized_name or "").strip()
    if not name:
        return []
    return [
        PatternMapping(pattern=p, standardized_name=name, category=(category or "Other").strip() or "Other")
        for p in build_item_patterns(original_name, patterns)
    ]


def best_display_match(text: str, mappings: Iterable[PatternMapping]) -> PatternMapping | None:
    """Pick the longest specific stored pattern that matches `text`.

    Used for display only; persistence never replaces existing mappings.
    """
    candidates = [m for m in mappings if LikePattern(m.pattern).is_usable and LikePattern(m.pattern).matches(text)]
    if not candidates:
        return None
    # max() keeps the first of equals, so ties go to the alphabetically smallest pattern.
    candidates.sort(key=lambda m: m.pattern)
    return max(candidates, key=lambda m: LikePattern(m.pattern).specificity())
