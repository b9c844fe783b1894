"""Cheaper-alternative search for standardized receipt items.

Two sources are searched concurrently for the same generic name:
- history (source A): persisted receipt items bought at other stores
- snapshot (source B): the per-store product_prices table

If history has any candidate it is used exclusively, even when the snapshot
is cheaper: an actual purchase is stronger evidence than a snapshot row.
Within the chosen source the winner is the lowest price; ties go to the store
name (case-insensitive, alphabetical), then the item name.

savings    = current - alternative          (always > 0 for a reported match)
percentage = savings / current * 100
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Protocol, Sequence

from app.services.patterns import LikePattern, PatternStore, normalize_pattern

logger = logging.getLogger("uvicorn.error")

SOURCE_HISTORY = "history"
SOURCE_SNAPSHOT = "snapshot"

DEFAULT_CANDIDATE_LIMIT = 5


class MatchingFailure(RuntimeError):
    """A candidate source failed for one item."""

    def __init__(self, item_name: str, message: str):
        super().__init__(f"{item_name}: {message}")
        self.item_name = item_name


@dataclass(frozen=True)
class PriceCandidate:
    store_name: str
    price: Decimal
    item_name: str


@dataclass(frozen=True)
class AlternativeMatch:
    source_item: str
    current_price: Decimal
    alternative_store: str
    alternative_price: Decimal
    alternative_item_name: str
    savings_amount: Decimal
    savings_percentage: float
    source: str

    def to_payload(self) -> dict[str, Any]:
        """Shape used in API responses and stored with the receipt item."""
        return {
            "store_name": self.alternative_store,
            "price": float(self.alternative_price),
            "item_name": self.alternative_item_name,
            "savings": float(self.savings_amount),
            "percentage_savings": round(self.savings_percentage, 2),
        }


class CandidateSource(Protocol):
    async def cheaper_than(
        self,
        names: Sequence[str],
        *,
        price: Decimal,
        exclude_store: str,
        limit: int,
    ) -> list[PriceCandidate]: ...


def to_decimal(value: Any) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value if value.is_finite() else None
    try:
        d = Decimal(str(value).strip().replace("$", "").replace(",", ""))
    except (InvalidOperation, ValueError):
        return None
    return d if d.is_finite() else None


def compute_savings(current_price: Decimal, alternative_price: Decimal) -> tuple[Decimal, float]:
    savings = current_price - alternative_price
    return savings, float(savings / current_price * 100)


# ============================================================
# Store labels
# ============================================================

# Sub-brands and formats collapse to the chain name for display.
_STORE_ALIASES: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"whole\s*foods", re.I), "Whole Foods"),
    (re.compile(r"jewel[\s\-]*osco", re.I), "Jewel Osco"),
    (re.compile(r"wal[\s\-]*mart", re.I), "Walmart"),
    (re.compile(r"\baldi\b", re.I), "ALDI"),
    (re.compile(r"trader\s*joe'?s", re.I), "Trader Joe's"),
    (re.compile(r"mariano'?s", re.I), "Mariano's"),
    (re.compile(r"\bcostco\b", re.I), "Costco"),
    (re.compile(r"\bkroger\b", re.I), "Kroger"),
    (re.compile(r"\btarget\b", re.I), "Target"),
    (re.compile(r"\bsafeway\b", re.I), "Safeway"),
)
_STORE_NUMBER = re.compile(r"\s*(?:#|no\.?\s*|store\s*)\d+\s*$", re.I)


def normalize_store_label(store_name: str) -> str:
    """Display label for an alternative's store ("365 by Whole Foods Market" -> "Whole Foods")."""
    label = " ".join((store_name or "").split())
    if not label:
        return label
    for rx, canonical in _STORE_ALIASES:
        if rx.search(label):
            return canonical
    return _STORE_NUMBER.sub("", label).strip() or label


# ============================================================
# Finder
# ============================================================


def _rank(candidates: list[PriceCandidate], *, current_price: Decimal, current_store: str) -> list[PriceCandidate]:
    store_key = current_store.strip().lower()
    valid = [
        c
        for c in candidates
        if c.price is not None
        and Decimal(0) < c.price < current_price
        and c.store_name.strip().lower() != store_key
    ]
    return sorted(valid, key=lambda c: (c.price, c.store_name.lower(), c.item_name.lower()))


class AlternativeFinder:
    """Find the cheapest equivalent of an item at another store."""

    def __init__(
        self,
        historical: CandidateSource,
        snapshot: CandidateSource,
        *,
        pattern_store: PatternStore | None = None,
        candidate_limit: int = DEFAULT_CANDIDATE_LIMIT,
        max_concurrency: int = 2,
    ):
        self.historical = historical
        self.snapshot = snapshot
        self.pattern_store = pattern_store
        self.candidate_limit = max(1, int(candidate_limit))
        self.max_concurrency = max(1, int(max_concurrency))

    async def _history_names(self, generic_name: str) -> list[str]:
        """Generic name plus standardized names stored patterns map it to."""
        names = [generic_name]
        if self.pattern_store is None:
            return names
        try:
            rows = await self.pattern_store.query_by_pattern(generic_name)
        except Exception as e:
            logger.warning(f"[alternatives] pattern lookup failed for {generic_name!r}: {e}")
            return names
        target = normalize_pattern(generic_name)
        seen = {target}
        for r in rows:
            if LikePattern(r.pattern).literal != target:
                continue
            key = normalize_pattern(r.standardized_name)
            if key and key not in seen:
                names.append(r.standardized_name)
                seen.add(key)
        return names

    async def find_cheapest(
        self,
        generic_name: str,
        current_price: Decimal | float | str | None,
        current_store: str,
    ) -> AlternativeMatch | None:
        """Cheapest alternative for one item, or None.

        Raises MatchingFailure if a source query errors.
        """
        name = " ".join((generic_name or "").split())
        price = to_decimal(current_price)
        if not name or price is None or price <= 0:
            return None
        store = current_store or ""

        history_names = await self._history_names(name)
        results = await asyncio.gather(
            self.historical.cheaper_than(
                history_names, price=price, exclude_store=store, limit=self.candidate_limit
            ),
            self.snapshot.cheaper_than([name], price=price, exclude_store=store, limit=self.candidate_limit),
            return_exceptions=True,
        )
        for res in results:
            if isinstance(res, Exception):
                raise MatchingFailure(name, str(res)[:200]) from res
        history_raw, snapshot_raw = results

        history = _rank(list(history_raw), current_price=price, current_store=store)[: self.candidate_limit]
        snapshot = _rank(list(snapshot_raw), current_price=price, current_store=store)[: self.candidate_limit]

        if history:
            chosen, source = history, SOURCE_HISTORY
        elif snapshot:
            chosen, source = snapshot, SOURCE_SNAPSHOT
        else:
            return None

        best = chosen[0]
        savings, percentage = compute_savings(price, best.price)
        return AlternativeMatch(
            source_item=name,
            current_price=price,
            alternative_store=normalize_store_label(best.store_name),
            alternative_price=best.price,
            alternative_item_name=best.item_name or name,
            savings_amount=savings,
            savings_percentage=percentage,
            source=source,
        )

    async def find_for_items(
        self,
        items: Sequence[tuple[str, Decimal | float | str | None]],
        current_store: str,
    ) -> tuple[list[AlternativeMatch | None], list[MatchingFailure]]:
        """Search every (generic_name, price) pair with bounded concurrency.

        A failing item yields None in its slot and a MatchingFailure in the
        error list; siblings are unaffected.
        """
        sem = asyncio.Semaphore(self.max_concurrency)

        async def _one(name: str, price: Any) -> AlternativeMatch | None:
            async with sem:
                return await self.find_cheapest(name, price, current_store)

        results = await asyncio.gather(*(_one(n, p) for n, p in items), return_exceptions=True)

        matches: list[AlternativeMatch | None] = []
        errors: list[MatchingFailure] = []
        for (name, _), res in zip(items, results):
            if isinstance(res, BaseException):
                err = res if isinstance(res, MatchingFailure) else MatchingFailure(name, str(res)[:200])
                logger.error(f"[alternatives] search failed item={name!r} store={current_store!r}: {err}")
                errors.append(err)
                matches.append(None)
            else:
                matches.append(res)
        return matches, errors
