"""On-demand standardization tooling.

- Preview or insert patterns for a list of names (or the items of a receipt)
- Look up which stored patterns match a text
- Apply user feedback on a standardized name (approval / correction / suggestion)
- Backfill items that were persisted without a standardized name
- Rebuild the product_prices snapshot from receipt history

Patterns follow the same first-writer-wins rule as ingestion: feedback can add
new patterns but never rewrites an existing one.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, time, timezone
from typing import Any, Iterable, Literal, Protocol, Sequence

from pydantic import BaseModel, Field, ValidationError, field_validator

from app.services.ingestion import PATTERN_SOURCES, ReceiptNotFound, build_normalizer
from app.services.llm_client import LlmClient, LlmError, get_llm_client
from app.services.normalizer import FALLBACK_CATEGORY, GenericItem, NameNormalizer
from app.services.patterns import (
    LikePattern,
    PatternMapping,
    best_display_match,
    build_mappings,
    clean_patterns,
    normalize_pattern,
)
from app.settings import get_settings
from app.stores.postgres import get_session
from app.stores.repositories import PriceObservation, SnapshotPrice, SqlPatternStore, SqlReceiptRepository

logger = logging.getLogger("uvicorn.error")

FEEDBACK_APPROVAL = "approval"
FEEDBACK_CORRECTION = "correction"
FEEDBACK_SUGGESTION = "suggestion"

ACTION_NONE = "none"
ACTION_APPROVED = "approved_existing"
ACTION_UPDATED = "updated_standardization"
ACTION_REJECTED = "suggestion_rejected"
ACTION_PATTERN_EXISTS = "pattern_exists"
ACTION_VALIDATION_FAILED = "validation_failed"
ACTION_CREATED = "created_new_standardization"

BACKFILL_BATCH_SIZE = 20

FN_CREATE_STANDARDIZATION = "createStandardization"

CREATE_STANDARDIZATION_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "standardized_name": {"type": "string"},
        "category": {"type": "string"},
        "patterns": {"type": "array", "items": {"type": "string"}},
        "explanation": {"type": "string"},
    },
    "required": ["standardized_name", "category", "patterns"],
}


class FeedbackPatternStore(Protocol):
    async def upsert(self, mappings: Sequence[PatternMapping]) -> int: ...

    async def insert_new(self, mappings: Sequence[PatternMapping]) -> list[str]: ...

    async def query_by_pattern(self, text: str) -> list[PatternMapping]: ...

    async def exists(self, pattern: str) -> bool: ...


class FeedbackRecorder(Protocol):
    async def record_feedback(self, **fields: Any) -> Any: ...


# ============================================================
# Request / result types
# ============================================================


class FeedbackRequest(BaseModel):
    original_item_name: str = Field(min_length=1)
    feedback_type: Literal["correction", "suggestion", "approval"]
    current_standardized_name: str | None = None
    suggested_standardized_name: str | None = None
    user_id: str | None = None

    @field_validator("original_item_name")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        v = " ".join(v.split())
        if not v:
            raise ValueError("original_item_name must not be blank")
        return v

    @field_validator("current_standardized_name", "suggested_standardized_name", "user_id")
    @classmethod
    def _blank_to_none(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = " ".join(v.split())
        return v or None


class _SuggestedStandardization(BaseModel):
    standardized_name: str
    category: str = FALLBACK_CATEGORY
    patterns: list[str] = Field(default_factory=list)
    explanation: str | None = None

    @field_validator("standardized_name")
    @classmethod
    def _strip_name(cls, v: str) -> str:
        v = " ".join(v.split())
        if not v:
            raise ValueError("standardized_name must not be empty")
        return v


@dataclass
class FeedbackOutcome:
    action_taken: str = ACTION_NONE
    new_patterns: list[PatternMapping] = field(default_factory=list)
    ai_suggestion: dict[str, Any] | None = None

    def to_response(self) -> dict[str, Any]:
        return {
            "success": True,
            "action_taken": self.action_taken,
            "new_patterns": [_mapping_payload(m) for m in self.new_patterns],
            "ai_suggestion": self.ai_suggestion,
        }


def _mapping_payload(m: PatternMapping) -> dict[str, str]:
    return {"pattern": m.pattern, "standardized_name": m.standardized_name, "category": m.category}


def _item_payload(item: GenericItem) -> dict[str, Any]:
    return {
        "original_name": item.original_name,
        "detailed_name": item.detailed_name,
        "standardized_name": item.generic_name,
        "category": item.category,
        "patterns": list(item.patterns),
        "source": item.source,
    }


# ============================================================
# Standardize / lookup
# ============================================================


def mappings_for_items(items: Iterable[GenericItem]) -> list[PatternMapping]:
    """Patterns an ingestion run would store for these items."""
    out: list[PatternMapping] = []
    for it in items:
        if it.source not in PATTERN_SOURCES:
            continue
        out.extend(
            build_mappings(
                original_name=it.original_name,
                standardized_name=it.generic_name,
                category=it.category,
                patterns=it.patterns,
            )
        )
    return out


async def standardize_names(
    names: Sequence[str],
    *,
    normalizer: NameNormalizer,
    pattern_store: FeedbackPatternStore,
    insert_patterns: bool = False,
) -> dict[str, Any]:
    cleaned = [" ".join(n.split()) for n in names if n and n.strip()]
    if not cleaned:
        return {"items": [], "patterns": [], "patterns_generated": 0, "patterns_inserted": 0}

    items = await normalizer.standardize(cleaned)
    mappings = mappings_for_items(items)

    inserted = 0
    if insert_patterns and mappings:
        inserted = await pattern_store.upsert(mappings)
        logger.info(f"[standardize] inserted {inserted}/{len(mappings)} patterns for {len(cleaned)} names")

    return {
        "items": [_item_payload(it) for it in items],
        "patterns": [_mapping_payload(m) for m in mappings],
        "patterns_generated": len(mappings),
        "patterns_inserted": inserted,
    }


async def lookup_patterns(text: str, *, pattern_store: FeedbackPatternStore) -> dict[str, Any]:
    t = normalize_pattern(text)
    if not t:
        return {"text": t, "matches": [], "best_match": None}
    rows = await pattern_store.query_by_pattern(t)
    best = best_display_match(t, rows)
    return {
        "text": t,
        "matches": [_mapping_payload(m) for m in rows],
        "best_match": _mapping_payload(best) if best else None,
    }


# ============================================================
# Feedback
# ============================================================


class FeedbackService:
    """Apply one piece of user feedback to the pattern store and record it."""

    def __init__(
        self,
        llm: LlmClient,
        *,
        model: str,
        pattern_store: FeedbackPatternStore,
        recorder: FeedbackRecorder,
    ):
        self.llm = llm
        self.model = model
        self.pattern_store = pattern_store
        self.recorder = recorder

    async def apply(self, feedback: FeedbackRequest) -> FeedbackOutcome:
        outcome = FeedbackOutcome()
        if feedback.feedback_type == FEEDBACK_APPROVAL and feedback.current_standardized_name:
            outcome.action_taken = ACTION_APPROVED
        elif (
            feedback.feedback_type == FEEDBACK_CORRECTION
            and feedback.current_standardized_name
            and feedback.suggested_standardized_name
        ):
            outcome = await self._correction(feedback)
        elif feedback.feedback_type == FEEDBACK_SUGGESTION and feedback.suggested_standardized_name:
            outcome = await self._suggestion(feedback)

        await self.recorder.record_feedback(
            user_id=feedback.user_id,
            original_item_name=feedback.original_item_name,
            current_standardized_name=feedback.current_standardized_name,
            suggested_standardized_name=feedback.suggested_standardized_name,
            feedback_type=feedback.feedback_type,
            action_taken=outcome.action_taken,
            ai_suggestion_json=(
                json.dumps(outcome.ai_suggestion, ensure_ascii=False) if outcome.ai_suggestion is not None else None
            ),
        )
        logger.info(
            f"[feedback] type={feedback.feedback_type} item={feedback.original_item_name!r} "
            f"action={outcome.action_taken} new_patterns={len(outcome.new_patterns)}"
        )
        return outcome

    async def _existing_category(self, original: str) -> str:
        rows = await self.pattern_store.query_by_pattern(original)
        best = best_display_match(original, rows)
        return best.category if best else FALLBACK_CATEGORY

    async def _correction(self, feedback: FeedbackRequest) -> FeedbackOutcome:
        user_prompt = (
            f'Original name: "{feedback.original_item_name}"\n'
            f'Current standardized name: "{feedback.current_standardized_name}"\n'
            f'User suggested name: "{feedback.suggested_standardized_name}"\n\n'
            "Is the user's suggestion appropriate? Answer only YES or NO and then provide a brief explanation."
        )
        try:
            verdict = await self.llm.complete_text(
                model=self.model,
                system_prompt=(
                    "You are an expert in product standardization. "
                    "Validate if a user's suggested standardized name is appropriate for a product."
                ),
                user_prompt=user_prompt,
                max_tokens=150,
            )
        except LlmError as e:
            logger.warning(f"[feedback] correction validation failed item={feedback.original_item_name!r}: {e}")
            return FeedbackOutcome(action_taken=ACTION_VALIDATION_FAILED, ai_suggestion={"error": str(e)})

        approved = verdict.strip().upper().startswith("YES")
        outcome = FeedbackOutcome(
            action_taken=ACTION_REJECTED,
            ai_suggestion={"validation": verdict, "approved": approved},
        )
        if not approved:
            return outcome

        mapping = PatternMapping(
            pattern=LikePattern.exact(feedback.original_item_name).text,
            standardized_name=feedback.suggested_standardized_name or "",
            category=await self._existing_category(feedback.original_item_name),
        )
        if await self.pattern_store.exists(mapping.pattern):
            outcome.action_taken = ACTION_PATTERN_EXISTS
            return outcome
        if await self.pattern_store.upsert([mapping]) == 0:
            # Lost a race with a concurrent writer.
            outcome.action_taken = ACTION_PATTERN_EXISTS
            return outcome
        outcome.action_taken = ACTION_UPDATED
        outcome.new_patterns = [mapping]
        return outcome

    async def _suggestion(self, feedback: FeedbackRequest) -> FeedbackOutcome:
        original = feedback.original_item_name
        suggested = feedback.suggested_standardized_name or ""
        try:
            payload = await self.llm.call_function(
                model=self.model,
                system_prompt=(
                    "You are an expert in grocery product standardization. Analyze an item name and a user's "
                    "suggested standardized name to create appropriate standardization patterns."
                ),
                user_prompt=(
                    f'Original item name: "{original}"\n'
                    f'User\'s suggested standardized name: "{suggested}"\n\n'
                    "Determine the best product category and create SQL LIKE patterns to match similar items. "
                    "Also suggest any improvements to the standardized name if needed."
                ),
                function_name=FN_CREATE_STANDARDIZATION,
                description="Create a standardized name, category and LIKE patterns for a grocery item.",
                parameters=CREATE_STANDARDIZATION_SCHEMA,
            )
            proposal = _SuggestedStandardization.model_validate(payload)
        except (LlmError, ValidationError) as e:
            logger.warning(f"[feedback] suggestion enhancement failed item={original!r}: {e}")
            proposal = _SuggestedStandardization(
                standardized_name=suggested,
                category=FALLBACK_CATEGORY,
                patterns=[LikePattern.exact(original).text],
            )

        patterns = clean_patterns(proposal.patterns) or [LikePattern.exact(original).text]
        category = " ".join(proposal.category.split()) or FALLBACK_CATEGORY
        mappings = [
            PatternMapping(pattern=p, standardized_name=proposal.standardized_name, category=category)
            for p in patterns
        ]
        fresh = [m for m in mappings if not await self.pattern_store.exists(m.pattern)]
        inserted = set(await self.pattern_store.insert_new(fresh)) if fresh else set()
        return FeedbackOutcome(
            action_taken=ACTION_CREATED if inserted else ACTION_PATTERN_EXISTS,
            new_patterns=[m for m in fresh if m.pattern in inserted],
            ai_suggestion=proposal.model_dump(exclude_none=True),
        )


# ============================================================
# Product price snapshot
# ============================================================


def latest_prices(observations: Iterable[PriceObservation]) -> list[SnapshotPrice]:
    """Most recent observed price per (store, standardized name)."""
    latest: dict[tuple[str, str], PriceObservation] = {}
    for o in observations:
        name = " ".join((o.standardized_name or "").split())
        store = o.store_name.strip()
        if not name or not store or o.price is None or o.price <= 0:
            continue
        key = (store.lower(), name.lower())
        current = latest.get(key)
        if current is None or _recency(o) > _recency(current):
            latest[key] = o

    out: list[SnapshotPrice] = []
    for o in latest.values():
        day = o.observed_on
        observed_at = datetime.combine(day, time.min, tzinfo=timezone.utc) if day else o.created_at
        out.append(
            SnapshotPrice(
                standardized_name=" ".join((o.standardized_name or "").split()),
                store_name=o.store_name.strip(),
                price=o.price,
                observed_at=observed_at,
            )
        )
    out.sort(key=lambda s: (s.standardized_name.lower(), s.store_name.lower()))
    return out


def _recency(o: PriceObservation) -> tuple[Any, int]:
    return (o.observed_on or datetime.min.date(), o.item_id)


async def refresh_product_prices() -> int:
    """Rebuild the product_prices snapshot; returns the number of rows written."""
    async with get_session() as session:
        repo = SqlReceiptRepository(session)
        rows = latest_prices(await repo.price_observations())
        written = await repo.replace_product_prices(rows)
    logger.info(f"[snapshot] product_prices refreshed rows={written}")
    return written


# ============================================================
# Backfill
# ============================================================


async def backfill_standardized_names(
    *,
    batch_size: int = BACKFILL_BATCH_SIZE,
    max_batches: int | None = None,
    normalizer: NameNormalizer | None = None,
) -> dict[str, int]:
    """Standardize persisted items that have no standardized name, in batches."""
    normalizer = normalizer or build_normalizer(SqlPatternStore())
    stats = {"batches": 0, "scanned": 0, "updated": 0}
    after_id = 0
    while max_batches is None or stats["batches"] < max_batches:
        async with get_session() as session:
            repo = SqlReceiptRepository(session)
            items = await repo.items_missing_standardized_name(limit=batch_size, after_id=after_id)
            if not items:
                break
            after_id = items[-1].id
            generic = await normalizer.standardize([it.original_item_name for it in items])
            for it, g in zip(items, generic):
                if not g.generic_name:
                    continue
                it.standardized_item_name = g.generic_name
                it.detailed_name = it.detailed_name or g.detailed_name
                it.category = it.category or g.category
                stats["updated"] += 1
        stats["batches"] += 1
        stats["scanned"] += len(items)
        logger.info(f"[backfill] batch={stats['batches']} scanned={len(items)} updated_total={stats['updated']}")
    return stats


# ============================================================
# Wiring for routes
# ============================================================


async def standardize_request(
    *,
    item_names: Sequence[str] | None = None,
    receipt_id: str | None = None,
    insert_patterns: bool = False,
) -> dict[str, Any]:
    names = list(item_names or [])
    if receipt_id:
        async with get_session() as session:
            receipt = await SqlReceiptRepository(session).get_receipt(receipt_id, with_items=True)
            if receipt is None:
                raise ReceiptNotFound(f"Receipt {receipt_id} not found")
            names.extend(it.original_item_name for it in receipt.items)
    pattern_store = SqlPatternStore()
    return await standardize_names(
        names,
        normalizer=build_normalizer(pattern_store),
        pattern_store=pattern_store,
        insert_patterns=insert_patterns,
    )


async def lookup_request(text: str) -> dict[str, Any]:
    return await lookup_patterns(text, pattern_store=SqlPatternStore())


async def feedback_request(feedback: FeedbackRequest) -> dict[str, Any]:
    async with get_session() as session:
        service = FeedbackService(
            get_llm_client(),
            model=get_settings().openai_model_normalize,
            pattern_store=SqlPatternStore(),
            recorder=SqlReceiptRepository(session),
        )
        outcome = await service.apply(feedback)
    return outcome.to_response()
