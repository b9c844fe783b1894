"""Feedback handling, pattern preview/lookup and snapshot rebuild."""

import json
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from decimal import Decimal
from types import SimpleNamespace

import pytest
from pydantic import ValidationError

from app.services import standardization
from app.services.llm_client import LlmError
from app.services.normalizer import FN_DETAILED, FN_GENERIC, NameNormalizer
from app.services.patterns import PatternMapping
from app.services.standardization import (
    ACTION_APPROVED,
    ACTION_CREATED,
    ACTION_PATTERN_EXISTS,
    ACTION_REJECTED,
    ACTION_UPDATED,
    ACTION_VALIDATION_FAILED,
    FN_CREATE_STANDARDIZATION,
    FeedbackRequest,
    FeedbackService,
    backfill_standardized_names,
    latest_prices,
    lookup_patterns,
    refresh_product_prices,
    standardize_names,
)
from app.stores.repositories import PriceObservation

OJ = PatternMapping("%trpnca oj%", "Orange Juice", "Beverages")


@pytest.fixture
def service(llm, pattern_store, receipts) -> FeedbackService:
    return FeedbackService(llm, model="m", pattern_store=pattern_store, recorder=receipts)


def correction(suggested: str = "Tropicana Orange Juice") -> FeedbackRequest:
    return FeedbackRequest(
        original_item_name="TRPNCA OJ",
        feedback_type="correction",
        current_standardized_name="Orange Juice",
        suggested_standardized_name=suggested,
        user_id="u-1",
    )


def test_feedback_request_validation() -> None:
    with pytest.raises(ValidationError):
        FeedbackRequest(original_item_name="   ", feedback_type="approval")
    with pytest.raises(ValidationError):
        FeedbackRequest(original_item_name="BNNS", feedback_type="complaint")

    req = FeedbackRequest(original_item_name=" BNNS ", feedback_type="suggestion", suggested_standardized_name=" ")
    assert req.original_item_name == "BNNS"
    assert req.suggested_standardized_name is None


@pytest.mark.asyncio
async def test_approval_is_recorded_without_llm(service, llm, receipts) -> None:
    outcome = await service.apply(
        FeedbackRequest(original_item_name="BNNS", feedback_type="approval", current_standardized_name="Bananas")
    )

    assert outcome.action_taken == ACTION_APPROVED
    assert llm.calls == []
    [row] = receipts.feedback
    assert row["action_taken"] == ACTION_APPROVED
    assert row["ai_suggestion_json"] is None


@pytest.mark.asyncio
async def test_approved_correction_adds_exact_pattern_with_existing_category(service, llm, pattern_store) -> None:
    pattern_store.rows[OJ.pattern] = OJ
    llm.script_text("YES - more specific and still a generic product name.")

    outcome = await service.apply(correction())

    assert outcome.action_taken == ACTION_UPDATED
    [added] = outcome.new_patterns
    assert added == PatternMapping("trpnca oj", "Tropicana Orange Juice", "Beverages")
    # The broader pattern keeps its original mapping
    assert pattern_store.rows[OJ.pattern] == OJ
    assert outcome.to_response()["new_patterns"] == [
        {"pattern": "trpnca oj", "standardized_name": "Tropicana Orange Juice", "category": "Beverages"}
    ]


@pytest.mark.asyncio
async def test_correction_for_existing_exact_pattern_changes_nothing(service, llm, pattern_store) -> None:
    existing = PatternMapping("trpnca oj", "Orange Juice", "Beverages")
    pattern_store.rows[existing.pattern] = existing
    llm.script_text("YES")

    outcome = await service.apply(correction())

    assert outcome.action_taken == ACTION_PATTERN_EXISTS
    assert outcome.new_patterns == []
    assert pattern_store.rows["trpnca oj"] == existing


@pytest.mark.asyncio
async def test_rejected_correction(service, llm, pattern_store, receipts) -> None:
    llm.script_text("NO - that is a brand, not a product.")

    outcome = await service.apply(correction("Tropicana"))

    assert outcome.action_taken == ACTION_REJECTED
    assert outcome.ai_suggestion["approved"] is False
    assert pattern_store.rows == {}
    assert json.loads(receipts.feedback[0]["ai_suggestion_json"])["approved"] is False


@pytest.mark.asyncio
async def test_correction_validation_outage_is_recorded(service, llm, receipts) -> None:
    llm.script_text(LlmError("LLM upstream error (HTTP 503)"))

    outcome = await service.apply(correction())

    assert outcome.action_taken == ACTION_VALIDATION_FAILED
    assert receipts.feedback[0]["action_taken"] == ACTION_VALIDATION_FAILED


@pytest.mark.asyncio
async def test_suggestion_uses_llm_patterns_and_skips_existing(service, llm, pattern_store) -> None:
    pattern_store.rows["%bnns%"] = PatternMapping("%bnns%", "Bananas", "Produce")
    llm.script_function(
        FN_CREATE_STANDARDIZATION,
        {"standardized_name": "Bananas", "category": "Produce", "patterns": ["%bnns%", "%banana%"]},
    )

    outcome = await service.apply(
        FeedbackRequest(original_item_name="BNNS", feedback_type="suggestion", suggested_standardized_name="Banana")
    )

    assert outcome.action_taken == ACTION_CREATED
    assert [m.pattern for m in outcome.new_patterns] == ["%banana%"]
    assert outcome.ai_suggestion["standardized_name"] == "Bananas"


@pytest.mark.asyncio
async def test_suggestion_reports_only_patterns_the_store_inserted(service, llm, pattern_store, monkeypatch) -> None:
    # Another writer stores %bnns% between the existence check and the insert
    pattern_store.rows["%bnns%"] = PatternMapping("%bnns%", "Banana", "Fruit")

    async def not_seen_yet(pattern: str) -> bool:
        return False

    monkeypatch.setattr(pattern_store, "exists", not_seen_yet)
    llm.script_function(
        FN_CREATE_STANDARDIZATION,
        {"standardized_name": "Bananas", "category": "Produce", "patterns": ["%bnns%", "%banana%"]},
    )

    outcome = await service.apply(
        FeedbackRequest(original_item_name="BNNS", feedback_type="suggestion", suggested_standardized_name="Bananas")
    )

    assert outcome.action_taken == ACTION_CREATED
    assert [m.pattern for m in outcome.new_patterns] == ["%banana%"]
    assert pattern_store.rows["%bnns%"].standardized_name == "Banana"

@pytest.mark.asyncio
async def test_suggestion_falls_back_to_exact_pattern_when_llm_fails(service, llm, pattern_store) -> None:
    llm.script_function(FN_CREATE_STANDARDIZATION, LlmError("timeout"))

    outcome = await service.apply(
        FeedbackRequest(original_item_name="BNNS", feedback_type="suggestion", suggested_standardized_name="Bananas")
    )

    assert outcome.action_taken == ACTION_CREATED
    assert pattern_store.rows["bnns"] == PatternMapping("bnns", "Bananas", "Other")


def _normalizer(llm, store) -> NameNormalizer:
    llm.script_function(
        FN_DETAILED,
        {"detailedItems": [{"originalName": "BNNS", "detailedName": "Bananas", "category": "Produce"}]},
    )
    llm.script_function(
        FN_GENERIC,
        {
            "standardizedItems": [
                {"originalName": "BNNS", "genericName": "Bananas", "category": "Produce", "patterns": ["%banana%"]}
            ]
        },
    )
    return NameNormalizer(llm, model="m", pattern_store=store)


@pytest.mark.asyncio
async def test_preview_does_not_write_patterns(llm, pattern_store) -> None:
    result = await standardize_names(["BNNS", "  "], normalizer=_normalizer(llm, pattern_store), pattern_store=pattern_store)

    assert [i["standardized_name"] for i in result["items"]] == ["Bananas"]
    assert result["patterns_generated"] == 2
    assert result["patterns_inserted"] == 0
    assert pattern_store.rows == {}


@pytest.mark.asyncio
async def test_insert_writes_patterns(llm, pattern_store) -> None:
    result = await standardize_names(
        ["BNNS"], normalizer=_normalizer(llm, pattern_store), pattern_store=pattern_store, insert_patterns=True
    )

    assert result["patterns_inserted"] == 2
    assert set(pattern_store.rows) == {"%bnns%", "%banana%"}


@pytest.mark.asyncio
async def test_lookup_reports_most_specific_match(pattern_store) -> None:
    pattern_store.rows[OJ.pattern] = OJ
    pattern_store.rows["%trpnca%"] = PatternMapping("%trpnca%", "Juice", "Beverages")

    result = await lookup_patterns("  TRPNCA   OJ ", pattern_store=pattern_store)

    assert result["text"] == "trpnca oj"
    assert len(result["matches"]) == 2
    assert result["best_match"]["pattern"] == "%trpnca oj%"


def _obs(item_id: int, name: str | None, store: str, price: str, day: date) -> PriceObservation:
    return PriceObservation(
        receipt_id="r",
        item_id=item_id,
        standardized_name=name,
        detailed_name=None,
        original_name="X",
        category=None,
        store_name=store,
        price=Decimal(price),
        purchase_date=day,
        created_at=None,
    )


def test_latest_prices_keeps_most_recent_per_store_and_name() -> None:
    rows = latest_prices(
        [
            _obs(1, "Milk", "ALDI", "3.00", date(2026, 9, 1)),
            _obs(2, "Milk", "aldi ", "2.80", date(2026, 10, 1)),
            _obs(3, "Milk", "Walmart", "3.10", date(2026, 9, 15)),
            _obs(4, None, "Walmart", "1.00", date(2026, 10, 1)),
            _obs(5, "Eggs", "Walmart", "0.00", date(2026, 10, 1)),
        ]
    )

    assert [(r.store_name, r.price) for r in rows] == [("aldi", Decimal("2.80")), ("Walmart", Decimal("3.10"))]
    assert rows[0].observed_at == datetime(2026, 10, 1, tzinfo=timezone.utc)


# ============================================================
# Backfill and snapshot refresh (session and repository patched)
# ============================================================


class _BackfillRepo:
    def __init__(self, items) -> None:
        self.items = items
        self.after_ids: list[int] = []
        self.snapshot_rows: list | None = None

    async def items_missing_standardized_name(self, *, limit: int = 20, after_id: int = 0):
        self.after_ids.append(after_id)
        pending = [it for it in self.items if it.id > after_id and it.standardized_item_name is None]
        return sorted(pending, key=lambda it: it.id)[:limit]

    async def price_observations(self):
        return [
            _obs(1, "Milk", "ALDI", "3.00", date(2026, 9, 1)),
            _obs(2, "Milk", "ALDI", "2.80", date(2026, 10, 1)),
        ]

    async def replace_product_prices(self, rows) -> int:
        self.snapshot_rows = list(rows)
        return len(self.snapshot_rows)


def _row(item_id: int, name: str, *, detailed: str | None = None, category: str | None = None):
    return SimpleNamespace(
        id=item_id,
        original_item_name=name,
        standardized_item_name=None,
        detailed_name=detailed,
        category=category,
    )


@pytest.fixture
def backfill_repo(monkeypatch):
    repo = _BackfillRepo(
        [
            _row(1, "BNNS"),
            _row(2, "GV MLK 2%", detailed="Great Value 2% Milk", category="Dairy"),
            _row(3, "EGGS LG"),
        ]
    )

    @asynccontextmanager
    async def fake_session():
        yield object()

    monkeypatch.setattr(standardization, "get_session", fake_session)
    monkeypatch.setattr(standardization, "SqlReceiptRepository", lambda session: repo)
    return repo


@pytest.mark.asyncio
async def test_backfill_pages_by_id_and_keeps_existing_details(llm, backfill_repo) -> None:
    llm.script_function(
        FN_DETAILED,
        {
            "detailedItems": [
                {"originalName": "BNNS", "detailedName": "Bananas", "category": "Produce"},
                {"originalName": "GV MLK 2%", "detailedName": "2% Milk", "category": "Beverages"},
            ]
        },
        LlmError("timeout"),
    )
    llm.script_function(
        FN_GENERIC,
        {
            "standardizedItems": [
                {"originalName": "BNNS", "genericName": "Bananas", "category": "Produce", "patterns": []},
                {"originalName": "GV MLK 2%", "genericName": "Milk", "category": "Beverages", "patterns": []},
            ]
        },
    )

    stats = await backfill_standardized_names(batch_size=2, normalizer=NameNormalizer(llm, model="m"))

    assert stats == {"batches": 2, "scanned": 3, "updated": 3}
    assert backfill_repo.after_ids == [0, 2, 3]
    bananas, milk, eggs = backfill_repo.items
    assert (bananas.standardized_item_name, bananas.category) == ("Bananas", "Produce")
    assert (milk.standardized_item_name, milk.detailed_name, milk.category) == ("Milk", "Great Value 2% Milk", "Dairy")
    # Second batch fell back to the raw name
    assert (eggs.standardized_item_name, eggs.category) == ("eggs lg", "Other")


@pytest.mark.asyncio
async def test_backfill_stops_after_max_batches(llm, backfill_repo) -> None:
    stats = await backfill_standardized_names(batch_size=2, max_batches=1, normalizer=NameNormalizer(llm, model="m"))

    assert stats == {"batches": 1, "scanned": 2, "updated": 2}
    assert backfill_repo.after_ids == [0]
    assert backfill_repo.items[2].standardized_item_name is None


@pytest.mark.asyncio
async def test_refresh_writes_latest_price_per_store_and_name(backfill_repo) -> None:
    written = await refresh_product_prices()

    assert written == 1
    [row] = backfill_repo.snapshot_rows
    assert (row.standardized_name, row.store_name, row.price) == ("Milk", "ALDI", Decimal("2.80"))
