"""Two-stage item name standardization.

Stage 1 (detailed): raw receipt text -> brand-qualified, spelled-out name + category.
    "TRPNCA OJ" -> "Tropicana Orange Juice" (Beverages)
Stage 2 (generic): detailed name -> brand-free comparison name + LIKE patterns.
    "Tropicana Orange Juice" -> "Orange Juice", ["%tropicana%orange juice%", "%trpnca oj%"]

Each stage is a single forced function call validated with pydantic. A stage
either returns one result per input (same order) or raises NormalizationFailure.

standardize() never raises; it degrades one step at a time:
- known pattern for the raw name  -> reuse stored mapping, no LLM call
- stage 1 fails                   -> generic = lowercased, whitespace-collapsed raw name
- stage 2 fails                   -> generic = detailed name, single exact pattern
Pinned generic names (per detailed name) override later stage 2 output.
"""

from __future__ import annotations

import logging
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Any, Protocol, Sequence

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from app.services.llm_client import LlmClient, LlmError
from app.services.patterns import (
    LikePattern,
    PatternStore,
    best_display_match,
    clean_patterns,
    normalize_pattern,
)

logger = logging.getLogger("uvicorn.error")

DEFAULT_CATEGORIES: tuple[str, ...] = (
    "Beverages",
    "Dairy",
    "Produce",
    "Meat",
    "Bakery",
    "Snacks",
    "Frozen",
    "Canned",
    "Dry Goods",
    "Household",
    "Personal Care",
    "Other",
)
FALLBACK_CATEGORY = "Other"

FN_DETAILED = "standardizeDetailedItems"
FN_GENERIC = "standardizeGenericItems"

# Where a GenericItem's generic name came from
SOURCE_LLM = "llm"
SOURCE_PINNED = "pinned"
SOURCE_PATTERN = "pattern"
SOURCE_FALLBACK_RAW = "fallback_raw"
SOURCE_FALLBACK_DETAILED = "fallback_detailed"


class NormalizationFailure(RuntimeError):
    pass


@dataclass(frozen=True)
class DetailedItem:
    original_name: str
    detailed_name: str
    category: str


@dataclass(frozen=True)
class GenericItem:
    original_name: str
    detailed_name: str
    category: str
    generic_name: str
    patterns: tuple[str, ...] = field(default_factory=tuple)
    source: str = SOURCE_LLM


class NamePins(Protocol):
    async def get(self, detailed_name: str) -> tuple[str, str] | None: ...

    async def pin(self, detailed_name: str, generic_name: str, category: str) -> bool: ...


# ============================================================
# LLM payload schemas
# ============================================================


class _Entry(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    original_name: str = Field(default="", alias="originalName")


class _DetailedEntry(_Entry):
    detailed_name: str = Field(alias="detailedName", min_length=1)
    category: str = FALLBACK_CATEGORY

    @field_validator("detailed_name")
    @classmethod
    def _strip_name(cls, v: str) -> str:
        v = " ".join(str(v).split())
        if not v:
            raise ValueError("detailedName is blank")
        return v

    @field_validator("category", mode="before")
    @classmethod
    def _default_category(cls, v: Any) -> str:
        return " ".join(str(v or "").split()) or FALLBACK_CATEGORY


class _DetailedResponse(BaseModel):
    detailed_items: list[_DetailedEntry] = Field(alias="detailedItems")


class _GenericEntry(_Entry):
    detailed_name: str = Field(default="", alias="detailedName")
    generic_name: str = Field(alias="genericName")
    category: str | None = None
    patterns: list[str] = Field(default_factory=list)

    @field_validator("generic_name")
    @classmethod
    def _strip_generic(cls, v: str) -> str:
        v = " ".join(str(v).split())
        if not v:
            raise ValueError("genericName is blank")
        return v

    @field_validator("patterns", mode="before")
    @classmethod
    def _coerce_patterns(cls, v: Any) -> list[str]:
        if v is None:
            return []
        if isinstance(v, str):
            return [v]
        return [str(x) for x in v if x is not None]


class _GenericResponse(BaseModel):
    standardized_items: list[_GenericEntry] = Field(alias="standardizedItems")


DETAILED_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "detailedItems": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "originalName": {"type": "string", "description": "Input name, unchanged."},
                    "detailedName": {
                        "type": "string",
                        "description": "Full product name with brand spelled out, variety and size.",
                    },
                    "category": {"type": "string"},
                },
                "required": ["originalName", "detailedName", "category"],
            },
        }
    },
    "required": ["detailedItems"],
}

GENERIC_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "standardizedItems": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "originalName": {"type": "string"},
                    "detailedName": {"type": "string"},
                    "genericName": {
                        "type": "string",
                        "description": "Brand-free name used to compare prices across stores.",
                    },
                    "category": {"type": "string"},
                    "patterns": {
                        "type": "array",
                        "items": {"type": "string"},
                        "description": "Lowercase SQL LIKE patterns (% wildcards) matching variants.",
                    },
                },
                "required": ["originalName", "genericName", "category", "patterns"],
            },
        }
    },
    "required": ["standardizedItems"],
}


def _detailed_prompts(raw_names: Sequence[str], categories: Sequence[str]) -> tuple[str, str]:
    system_prompt = (
        "You turn grocery receipt line items into clear product names.\n"
        "Receipts abbreviate heavily: 'OJ' is orange juice, 'TRPNCA' is Tropicana, "
        "'NFC' is not-from-concentrate.\n"
        "For every input return exactly one entry, in the same order:\n"
        "- originalName: the input text, unchanged\n"
        "- detailedName: brand spelled out in full, plus variety, flavor, fat content, "
        "form and size when present, in Title Case\n"
        "- category: prefer one of the known categories; add a new one only if none fits\n"
        f"Known categories: {', '.join(categories)}"
    )
    user_prompt = "Items:\n" + "\n".join(f"- {n}" for n in raw_names)
    return system_prompt, user_prompt


def _generic_prompts(detailed: Sequence[DetailedItem]) -> tuple[str, str]:
    system_prompt = (
        "You group grocery products for price comparison across stores.\n"
        "For every input return exactly one entry, in the same order:\n"
        "- genericName: remove brand, size and package count; keep anything that changes "
        "what the product is (2 Percent Milk is not Milk, Shredded Cheese is not Block Cheese, "
        "Strawberry Yogurt is not Yogurt)\n"
        "- category: keep the given category unless clearly wrong\n"
        "- patterns: 1-5 lowercase SQL LIKE patterns using % that match other ways this product "
        "is printed on receipts (abbreviations, with and without brand)\n"
        "- originalName and detailedName: copy from the input"
    )
    user_prompt = "Items:\n" + "\n".join(
        f"- originalName: {d.original_name} | detailedName: {d.detailed_name} | category: {d.category}"
        for d in detailed
    )
    return system_prompt, user_prompt


def _align(inputs: Sequence[str], entries: list[Any]) -> list[Any]:
    """Match entries back to inputs by case-insensitive original name.

    Falls back to position when counts agree but names were rewritten.
    """
    buckets: dict[str, deque[Any]] = defaultdict(deque)
    for e in entries:
        buckets[normalize_pattern(e.original_name)].append(e)

    out: list[Any] = []
    for name in inputs:
        bucket = buckets.get(normalize_pattern(name))
        if not bucket:
            break
        out.append(bucket.popleft())
    else:
        return out

    if len(entries) == len(inputs):
        return list(entries)
    raise NormalizationFailure(f"expected {len(inputs)} results, got {len(entries)} with unmatched names")


def fallback_from_raw(raw_name: str) -> GenericItem:
    cleaned = " ".join(raw_name.split())
    generic = normalize_pattern(raw_name)
    return GenericItem(
        original_name=raw_name,
        detailed_name=cleaned,
        category=FALLBACK_CATEGORY,
        generic_name=generic,
        patterns=(LikePattern.exact(raw_name).text,),
        source=SOURCE_FALLBACK_RAW,
    )


def fallback_from_detailed(item: DetailedItem) -> GenericItem:
    return GenericItem(
        original_name=item.original_name,
        detailed_name=item.detailed_name,
        category=item.category,
        generic_name=item.detailed_name,
        patterns=(LikePattern.exact(item.detailed_name).text,),
        source=SOURCE_FALLBACK_DETAILED,
    )


class NameNormalizer:
    """Standardize receipt item names with an injected LLM client and stores."""

    def __init__(
        self,
        llm: LlmClient,
        *,
        model: str,
        pattern_store: PatternStore | None = None,
        pins: NamePins | None = None,
        reuse_known_patterns: bool = True,
    ):
        self.llm = llm
        self.model = model
        self.pattern_store = pattern_store
        self.pins = pins
        self.reuse_known_patterns = reuse_known_patterns

    # --------------------------------------------------------
    # Stage 1
    # --------------------------------------------------------

    async def normalize_detailed(
        self, raw_names: Sequence[str], known_categories: Sequence[str] = ()
    ) -> list[DetailedItem]:
        if not raw_names:
            return []
        categories = list(dict.fromkeys(c for c in known_categories if c and c.strip())) or list(
            DEFAULT_CATEGORIES
        )
        system_prompt, user_prompt = _detailed_prompts(raw_names, categories)
        try:
            payload = await self.llm.call_function(
                model=self.model,
                system_prompt=system_prompt,
                user_prompt=user_prompt,
                function_name=FN_DETAILED,
                description="Return a detailed, spelled-out name and category for every receipt item.",
                parameters=DETAILED_SCHEMA,
            )
            parsed = _DetailedResponse.model_validate(payload)
        except (LlmError, ValidationError) as e:
            raise NormalizationFailure(f"stage 1 failed: {e}") from e

        aligned = _align(raw_names, parsed.detailed_items)
        return [
            DetailedItem(original_name=raw, detailed_name=e.detailed_name, category=e.category)
            for raw, e in zip(raw_names, aligned)
        ]

    # --------------------------------------------------------
    # Stage 2
    # --------------------------------------------------------

    async def normalize_generic(self, detailed: Sequence[DetailedItem]) -> list[GenericItem]:
        if not detailed:
            return []
        system_prompt, user_prompt = _generic_prompts(detailed)
        try:
            payload = await self.llm.call_function(
                model=self.model,
                system_prompt=system_prompt,
                user_prompt=user_prompt,
                function_name=FN_GENERIC,
                description="Return a brand-free generic name and LIKE patterns for every item.",
                parameters=GENERIC_SCHEMA,
            )
            parsed = _GenericResponse.model_validate(payload)
        except (LlmError, ValidationError) as e:
            raise NormalizationFailure(f"stage 2 failed: {e}") from e

        aligned = _align([d.original_name for d in detailed], parsed.standardized_items)
        out: list[GenericItem] = []
        for d, e in zip(detailed, aligned):
            patterns = clean_patterns(e.patterns) or [LikePattern.contains(e.generic_name).text]
            out.append(
                GenericItem(
                    original_name=d.original_name,
                    detailed_name=d.detailed_name,
                    category=" ".join((e.category or "").split()) or d.category,
                    generic_name=e.generic_name,
                    patterns=tuple(patterns),
                )
            )
        return out

    # --------------------------------------------------------
    # Full pipeline with fallbacks
    # --------------------------------------------------------

    async def standardize(self, raw_names: Sequence[str]) -> list[GenericItem]:
        """Standardize a batch; always returns one GenericItem per input, in order."""
        results: list[GenericItem | None] = [None] * len(raw_names)

        pending: list[int] = []
        for i, name in enumerate(raw_names):
            known = await self._known_mapping(name)
            if known is not None:
                results[i] = known
            else:
                pending.append(i)

        if pending:
            pending_names = [raw_names[i] for i in pending]
            generic_items = await self._run_stages(pending_names)
            for i, item in zip(pending, generic_items):
                results[i] = item

        return [r for r in results if r is not None]

    async def _run_stages(self, raw_names: list[str]) -> list[GenericItem]:
        categories = await self._known_categories()
        try:
            detailed = await self.normalize_detailed(raw_names, categories)
        except NormalizationFailure as e:
            logger.warning(f"[normalizer] {e}; using raw names for {len(raw_names)} items")
            return [fallback_from_raw(n) for n in raw_names]

        try:
            generic = await self.normalize_generic(detailed)
        except NormalizationFailure as e:
            logger.warning(f"[normalizer] {e}; using detailed names for {len(detailed)} items")
            generic = [fallback_from_detailed(d) for d in detailed]

        return [await self._apply_pin(g) for g in generic]

    async def _known_categories(self) -> list[str]:
        if self.pattern_store is None:
            return list(DEFAULT_CATEGORIES)
        try:
            known = await self.pattern_store.known_categories()
        except Exception:
            logger.exception("[normalizer] failed to load known categories")
            return list(DEFAULT_CATEGORIES)
        return list(dict.fromkeys([*known, *DEFAULT_CATEGORIES]))

    async def _known_mapping(self, raw_name: str) -> GenericItem | None:
        """Reuse a stored mapping when a pattern already covers this exact text."""
        if not self.reuse_known_patterns or self.pattern_store is None:
            return None
        if not normalize_pattern(raw_name):
            return None
        try:
            rows = await self.pattern_store.query_by_pattern(raw_name)
        except Exception:
            logger.exception(f"[normalizer] pattern lookup failed for {raw_name!r}")
            return None

        target = normalize_pattern(raw_name)
        near_identical = [r for r in rows if LikePattern(r.pattern).literal == target]
        best = best_display_match(raw_name, near_identical)
        if best is None:
            return None
        return GenericItem(
            original_name=raw_name,
            detailed_name=" ".join(raw_name.split()),
            category=best.category,
            generic_name=best.standardized_name,
            patterns=(best.pattern,),
            source=SOURCE_PATTERN,
        )

    async def _apply_pin(self, item: GenericItem) -> GenericItem:
        if self.pins is None:
            return item
        pinned = await self.pins.get(item.detailed_name)
        if pinned is not None:
            generic_name, category = pinned
            if generic_name == item.generic_name and category == item.category:
                return item
            return GenericItem(
                original_name=item.original_name,
                detailed_name=item.detailed_name,
                category=category,
                generic_name=generic_name,
                patterns=item.patterns,
                source=SOURCE_PINNED,
            )
        if item.source == SOURCE_LLM:
            await self.pins.pin(item.detailed_name, item.generic_name, item.category)
        return item
