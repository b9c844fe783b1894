"""Pattern persistence: first writer wins."""

import pytest
from sqlalchemy.dialects import postgresql

from app.services.patterns import PatternMapping
from app.stores.repositories import build_pattern_upsert
from fakes import FakePatternStore


def test_upsert_statement_ignores_conflicts_on_pattern() -> None:
    stmt = build_pattern_upsert([PatternMapping("%trpnca oj%", "Orange Juice", "Beverages")])
    sql = str(stmt.compile(dialect=postgresql.dialect()))

    assert "INSERT INTO item_standardization" in sql
    assert "ON CONFLICT (original_pattern) DO NOTHING" in sql
    assert "RETURNING item_standardization.original_pattern" in sql


def test_upsert_statement_dedups_patterns_within_one_batch() -> None:
    stmt = build_pattern_upsert(
        [
            PatternMapping("%trpnca oj%", "Orange Juice", "Beverages"),
            PatternMapping("%trpnca oj%", "OJ Tropicana", "Drinks"),
            PatternMapping("%orange juice%", "Orange Juice", "Beverages"),
        ]
    )
    params = stmt.compile(dialect=postgresql.dialect()).params
    patterns = sorted(v for k, v in params.items() if k.startswith("original_pattern"))
    assert patterns == ["%orange juice%", "%trpnca oj%"]
    # The first mapping of a duplicated pattern is the one sent
    assert "OJ Tropicana" not in params.values()


@pytest.mark.asyncio
async def test_second_mapping_for_same_pattern_leaves_first_unchanged() -> None:
    store = FakePatternStore()

    first = await store.upsert([PatternMapping("%trpnca oj%", "Orange Juice", "Beverages")])
    second = await store.upsert([PatternMapping("%trpnca oj%", "OJ Tropicana", "Drinks")])

    assert (first, second) == (1, 0)
    [row] = await store.query_by_pattern("TRPNCA OJ")
    assert (row.standardized_name, row.category) == ("Orange Juice", "Beverages")
