"""Alternative finder: source priority, savings math, tie-breaks, failures."""

from decimal import Decimal

import pytest

from app.services.alternatives import (
    SOURCE_HISTORY,
    SOURCE_SNAPSHOT,
    AlternativeFinder,
    MatchingFailure,
    compute_savings,
    normalize_store_label,
)
from app.services.patterns import PatternMapping
from fakes import FakePatternStore, FakeSource


@pytest.mark.asyncio
async def test_snapshot_only_finds_walmart_for_aldi_orange_juice(candidate) -> None:
    snapshot = FakeSource(
        [
            ("Orange Juice", candidate("Walmart", "4.99", "Orange Juice")),
            ("Orange Juice", candidate("Jewel Osco", "6.99", "Orange Juice")),
        ]
    )
    finder = AlternativeFinder(FakeSource(), snapshot)

    match = await finder.find_cheapest("Orange Juice", "5.99", "ALDI")

    assert match is not None
    assert match.alternative_store == "Walmart"
    assert match.alternative_price == Decimal("4.99")
    assert match.savings_amount == Decimal("1.00")
    assert match.savings_percentage == pytest.approx(16.69, abs=0.01)
    assert match.source == SOURCE_SNAPSHOT
    assert match.to_payload() == {
        "store_name": "Walmart",
        "price": 4.99,
        "item_name": "Orange Juice",
        "savings": 1.0,
        "percentage_savings": 16.69,
    }


@pytest.mark.asyncio
async def test_history_has_priority_over_cheaper_snapshot(candidate) -> None:
    history = FakeSource([("orange juice", candidate("Target", "3.00", "Simply Orange Juice"))])
    snapshot = FakeSource([("orange juice", candidate("Walmart", "2.00", "Orange Juice"))])
    finder = AlternativeFinder(history, snapshot)

    match = await finder.find_cheapest("Orange Juice", Decimal("5.99"), "ALDI")

    assert match is not None
    assert match.alternative_store == "Target"
    assert match.alternative_price == Decimal("3.00")
    assert match.source == SOURCE_HISTORY


@pytest.mark.asyncio
async def test_no_cheaper_candidate_returns_none(candidate) -> None:
    snapshot = FakeSource([("orange juice", candidate("Walmart", "5.99"))])
    finder = AlternativeFinder(FakeSource(), snapshot)

    assert await finder.find_cheapest("Orange Juice", "5.99", "ALDI") is None


@pytest.mark.asyncio
async def test_non_positive_or_missing_price_skips_search() -> None:
    history, snapshot = FakeSource(), FakeSource()
    finder = AlternativeFinder(history, snapshot)

    assert await finder.find_cheapest("Orange Juice", 0, "ALDI") is None
    assert await finder.find_cheapest("Orange Juice", None, "ALDI") is None
    assert await finder.find_cheapest("   ", "1.00", "ALDI") is None
    assert history.calls == [] and snapshot.calls == []


@pytest.mark.asyncio
async def test_same_store_is_excluded_case_insensitively(candidate) -> None:
    snapshot = FakeSource([("bread", candidate("aldi", "1.00"))])
    finder = AlternativeFinder(FakeSource(), snapshot)

    assert await finder.find_cheapest("Bread", "2.00", "ALDI") is None


@pytest.mark.asyncio
async def test_equal_lowest_price_breaks_tie_by_store_name(candidate) -> None:
    snapshot = FakeSource(
        [
            ("bread", candidate("Walmart", "1.29", "White Bread")),
            ("bread", candidate("ALDI", "1.29", "Sandwich Bread")),
        ]
    )
    finder = AlternativeFinder(FakeSource(), snapshot)

    match = await finder.find_cheapest("Bread", "3.49", "Jewel Osco")
    assert match is not None
    assert match.alternative_store == "ALDI"


@pytest.mark.asyncio
async def test_history_search_includes_names_from_identical_patterns(candidate) -> None:
    store = FakePatternStore([PatternMapping("orange juice", "Orange Juice NFC", "Beverages")])
    history = FakeSource([("orange juice nfc", candidate("Target", "3.50"))])
    finder = AlternativeFinder(history, FakeSource(), pattern_store=store)

    match = await finder.find_cheapest("Orange Juice", "4.00", "ALDI")

    assert history.calls == [["Orange Juice", "Orange Juice NFC"]]
    assert match is not None
    assert match.alternative_store == "Target"
    # Falls back to the searched name when the source row has no item name
    assert match.alternative_item_name == "Orange Juice"


@pytest.mark.asyncio
async def test_source_error_raises_matching_failure() -> None:
    finder = AlternativeFinder(FakeSource(fail_for=["milk"]), FakeSource())

    with pytest.raises(MatchingFailure) as exc:
        await finder.find_cheapest("Milk", "3.00", "ALDI")
    assert exc.value.item_name == "Milk"


@pytest.mark.asyncio
async def test_one_failing_item_does_not_affect_siblings(candidate) -> None:
    history = FakeSource([("bread", candidate("Walmart", "1.99"))], fail_for=["milk"])
    finder = AlternativeFinder(history, FakeSource(), max_concurrency=1)

    matches, errors = await finder.find_for_items([("Milk", "3.00"), ("Bread", "3.49")], "Jewel Osco")

    assert matches[0] is None
    assert matches[1] is not None and matches[1].alternative_store == "Walmart"
    assert len(errors) == 1 and errors[0].item_name == "Milk"


def test_compute_savings() -> None:
    savings, pct = compute_savings(Decimal("5.99"), Decimal("4.99"))
    assert savings == Decimal("1.00")
    assert pct == pytest.approx(16.694, abs=0.001)


@pytest.mark.parametrize(
    ("raw", "label"),
    [
        ("365 by Whole Foods Market", "Whole Foods"),
        ("WAL-MART SUPERCENTER", "Walmart"),
        ("Jewel-Osco #3421", "Jewel Osco"),
        ("Corner Market #12", "Corner Market"),
        ("Family Grocer", "Family Grocer"),
    ],
)
def test_normalize_store_label(raw: str, label: str) -> None:
    assert normalize_store_label(raw) == label
