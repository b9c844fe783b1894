"""Read-time price comparisons over persisted receipt items.

Pure functions do the math on PriceObservation rows; the async loaders fetch
rows and never raise: any failure is logged and yields an empty result so the
response shape stays stable.

- Store comparison: lowest price per store for each standardized name, items
  seen at 2+ stores, spread = max - min, percentage = spread / min * 100.
- Temporal comparison: per (store, standardized name), 2+ observations in
  date order, percentage change = (max - min) / min * 100.
- Unified best price: for one receipt, the cheapest known price for each item
  from the same store at another time (temporal), another store (store) or
  the product_prices snapshot (alternative), within a lookback window.

Items without a standardized name are excluded everywhere.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Iterable, Sequence

from app.services.alternatives import compute_savings
from app.settings import get_settings
from app.stores.postgres import get_session
from app.stores.repositories import (
    PriceObservation,
    SnapshotPrice,
    SqlPriceSnapshotSource,
    SqlReceiptRepository,
)

logger = logging.getLogger("uvicorn.error")

COMPARISON_TEMPORAL = "temporal"
COMPARISON_STORE = "store"
COMPARISON_ALTERNATIVE = "alternative"

# Lower wins when two sources offer the same price.
_TYPE_PRIORITY = {COMPARISON_TEMPORAL: 0, COMPARISON_STORE: 1, COMPARISON_ALTERNATIVE: 2}

UNCATEGORIZED = "Uncategorized"


def _key(name: str | None) -> str:
    return " ".join((name or "").lower().split())


def _usable(observations: Iterable[PriceObservation]) -> list[PriceObservation]:
    return [o for o in observations if _key(o.standardized_name) and o.price is not None and o.price > 0]


def _money(value: Decimal) -> float:
    return float(value.quantize(Decimal("0.01")))


def _pct(numerator: Decimal, denominator: Decimal) -> float:
    return float(numerator / denominator * 100)


# ============================================================
# Store comparison
# ============================================================


def compare_across_stores(observations: Iterable[PriceObservation]) -> list[dict[str, Any]]:
    groups: dict[str, dict[str, Any]] = {}
    for o in _usable(observations):
        g = groups.setdefault(
            _key(o.standardized_name),
            {"item_name": " ".join(o.standardized_name.split()), "category": None, "stores": {}, "labels": {}},
        )
        if g["category"] is None and o.category:
            g["category"] = o.category
        label = o.store_name.strip() or "Unknown Store"
        store = label.lower()
        g["labels"].setdefault(store, label)
        best = g["stores"].get(store)
        if best is None or o.price < best.price:
            g["stores"][store] = o

    out: list[dict[str, Any]] = []
    for g in groups.values():
        if len(g["stores"]) < 2:
            continue
        stores = sorted(g["stores"].items(), key=lambda kv: (kv[1].price, kv[0].lower()))
        min_price = stores[0][1].price
        max_price = stores[-1][1].price
        spread = max_price - min_price
        out.append(
            {
                "item_name": g["item_name"],
                "stores": [
                    {
                        "store_name": g["labels"][store],
                        "price": float(o.price),
                        "detailed_name": o.detailed_name or g["item_name"],
                    }
                    for store, o in stores
                ],
                "price_difference": _money(spread),
                "percentage_difference": _pct(spread, min_price),
                "category": g["category"] or UNCATEGORIZED,
            }
        )
    out.sort(key=lambda c: (-c["percentage_difference"], c["item_name"].lower()))
    return out


# ============================================================
# Temporal comparison
# ============================================================


def compare_over_time(observations: Iterable[PriceObservation]) -> list[dict[str, Any]]:
    groups: dict[tuple[str, str], list[PriceObservation]] = defaultdict(list)
    for o in _usable(observations):
        groups[(o.store_name.strip().lower(), _key(o.standardized_name))].append(o)

    out: list[dict[str, Any]] = []
    for points in groups.values():
        if len(points) < 2:
            continue
        points.sort(key=lambda o: (o.observed_on or date.min, o.item_id))
        prices = [o.price for o in points]
        min_price, max_price = min(prices), max(prices)
        first = points[0]
        out.append(
            {
                "item_name": " ".join(first.standardized_name.split()),
                "store_name": first.store_name,
                "price_points": [
                    {
                        "price": float(o.price),
                        "date": o.observed_on.isoformat() if o.observed_on else None,
                        "detailed_name": o.detailed_name or first.standardized_name,
                    }
                    for o in points
                ],
                "min_price": float(min_price),
                "max_price": float(max_price),
                "price_difference": _money(max_price - min_price),
                "percentage_change": _pct(max_price - min_price, min_price),
                "category": next((o.category for o in points if o.category), UNCATEGORIZED),
            }
        )
    out.sort(key=lambda c: (-c["percentage_change"], c["item_name"].lower(), c["store_name"].lower()))
    return out


# ============================================================
# Unified best price
# ============================================================


@dataclass(frozen=True)
class _Offer:
    comparison_type: str
    store_name: str
    price: Decimal
    item_name: str
    observed_on: date | None


def _within(day: date | None, anchor: date | None, lookback_days: int) -> bool:
    if day is None or anchor is None:
        return True
    return abs((day - anchor).days) <= lookback_days


def best_prices_for_receipt(
    receipt_items: Sequence[PriceObservation],
    observations: Iterable[PriceObservation],
    snapshots: Iterable[SnapshotPrice] = (),
    *,
    lookback_days: int = 30,
) -> dict[str, Any]:
    """Cheapest known price per receipt item; only strictly cheaper offers count.

    The window is centered on each item's purchase date.
    """
    by_name: dict[str, list[PriceObservation]] = defaultdict(list)
    for o in _usable(observations):
        by_name[_key(o.standardized_name)].append(o)
    snaps_by_name: dict[str, list[SnapshotPrice]] = defaultdict(list)
    for s in snapshots:
        if _key(s.standardized_name) and s.price is not None and s.price > 0:
            snaps_by_name[_key(s.standardized_name)].append(s)

    items: list[dict[str, Any]] = []
    total = Decimal("0")
    for item in _usable(receipt_items):
        name = _key(item.standardized_name)
        anchor = item.observed_on
        store = item.store_name.strip().lower()

        offers: list[_Offer] = []
        for o in by_name.get(name, []):
            if o.item_id == item.item_id or o.receipt_id == item.receipt_id:
                continue
            if not _within(o.observed_on, anchor, lookback_days):
                continue
            kind = COMPARISON_TEMPORAL if o.store_name.strip().lower() == store else COMPARISON_STORE
            offers.append(
                _Offer(kind, o.store_name, o.price, o.detailed_name or o.standardized_name, o.observed_on)
            )
        for s in snaps_by_name.get(name, []):
            if s.store_name.strip().lower() == store:
                continue
            if not _within(s.observed_at.date() if s.observed_at else None, anchor, lookback_days):
                continue
            offers.append(
                _Offer(
                    COMPARISON_ALTERNATIVE,
                    s.store_name,
                    s.price,
                    s.standardized_name,
                    s.observed_at.date() if s.observed_at else None,
                )
            )

        cheaper = [x for x in offers if x.price < item.price]
        if not cheaper:
            continue
        best = min(cheaper, key=lambda x: (x.price, _TYPE_PRIORITY[x.comparison_type], x.store_name.lower()))
        savings, percentage = compute_savings(item.price, best.price)
        total += savings
        items.append(
            {
                "id": item.item_id,
                "name": item.original_name,
                "standardized_name": item.standardized_name,
                "current_price": float(item.price),
                "current_store": item.store_name,
                "current_date": anchor.isoformat() if anchor else None,
                "cheaper_alternative": {
                    "store_name": best.store_name,
                    "price": float(best.price),
                    "item_name": best.item_name,
                    "savings": _money(savings),
                    "percentage_savings": round(percentage, 2),
                    "comparison_type": best.comparison_type,
                    "is_temporal": best.comparison_type == COMPARISON_TEMPORAL,
                    "better_date": best.observed_on.isoformat() if best.observed_on else None,
                },
            }
        )
    return {"total_savings": _money(total), "items": items}


# ============================================================
# Cheaper alternatives overview
# ============================================================


def cheaper_alternatives_overview(observations: Iterable[PriceObservation]) -> list[dict[str, Any]]:
    """Best saving per standardized name: an item vs. the cheapest price at another store."""
    by_name: dict[str, list[PriceObservation]] = defaultdict(list)
    for o in _usable(observations):
        by_name[_key(o.standardized_name)].append(o)

    out: list[dict[str, Any]] = []
    for rows in by_name.values():
        best_row: dict[str, Any] | None = None
        for current in rows:
            store = current.store_name.strip().lower()
            others = [o for o in rows if o.store_name.strip().lower() != store and o.price < current.price]
            if not others:
                continue
            cheaper = min(others, key=lambda o: (o.price, o.store_name.lower()))
            diff, pct = compute_savings(current.price, cheaper.price)
            if best_row is not None and pct <= best_row["percentage_difference"]:
                continue
            best_row = {
                "item_name": " ".join(current.standardized_name.split()),
                "current_item": current.detailed_name or current.original_name,
                "current_price": float(current.price),
                "current_store": current.store_name,
                "cheaper_item": cheaper.detailed_name or cheaper.original_name,
                "cheaper_price": float(cheaper.price),
                "cheaper_store": cheaper.store_name,
                "price_difference": _money(diff),
                "percentage_difference": pct,
                "category": current.category or "Other",
            }
        if best_row is not None:
            out.append(best_row)
    out.sort(key=lambda c: (-c["percentage_difference"], c["item_name"].lower()))
    return out


def calculate_total_savings(comparisons: Iterable[dict[str, Any]]) -> float:
    total = Decimal("0")
    for c in comparisons:
        value = c.get("price_difference", c.get("savings"))
        if value is None and isinstance(c.get("cheaper_alternative"), dict):
            value = c["cheaper_alternative"].get("savings")
        if value:
            total += Decimal(str(value))
    return _money(total)


def group_by_category(comparisons: Iterable[dict[str, Any]]) -> dict[str, list[dict[str, Any]]]:
    groups: dict[str, list[dict[str, Any]]] = {}
    for c in comparisons:
        groups.setdefault(c.get("category") or UNCATEGORIZED, []).append(c)
    return groups


# ============================================================
# Loaders (never raise)
# ============================================================


async def load_store_comparisons() -> list[dict[str, Any]]:
    try:
        async with get_session() as session:
            observations = await SqlReceiptRepository(session).price_observations()
        return compare_across_stores(observations)
    except Exception:
        logger.exception("[comparisons] store comparison failed")
        return []


async def load_temporal_comparisons() -> list[dict[str, Any]]:
    try:
        async with get_session() as session:
            observations = await SqlReceiptRepository(session).price_observations()
        return compare_over_time(observations)
    except Exception:
        logger.exception("[comparisons] temporal comparison failed")
        return []


async def load_cheaper_alternatives() -> list[dict[str, Any]]:
    try:
        async with get_session() as session:
            observations = await SqlReceiptRepository(session).price_observations()
        return cheaper_alternatives_overview(observations)
    except Exception:
        logger.exception("[comparisons] cheaper alternatives failed")
        return []


async def load_unified_comparison(receipt_id: str, *, days_lookback: int | None = None) -> dict[str, Any]:
    lookback = days_lookback if days_lookback is not None else get_settings().comparison_lookback_days
    try:
        async with get_session() as session:
            repo = SqlReceiptRepository(session)
            receipt = await repo.get_receipt(receipt_id)
            if receipt is None:
                return {"total_savings": 0.0, "items": []}
            anchor = receipt.purchase_date or (receipt.created_at or datetime.now(timezone.utc)).date()
            receipt_items = await repo.price_observations(receipt_id=receipt_id)
            names = list({o.standardized_name for o in receipt_items if o.standardized_name})
            observations = await repo.price_observations(
                since=anchor - timedelta(days=lookback), standardized_names=names
            )
        snapshots = await SqlPriceSnapshotSource().prices_for(names)
        return best_prices_for_receipt(receipt_items, observations, snapshots, lookback_days=lookback)
    except Exception:
        logger.exception(f"[comparisons] unified comparison failed receipt={receipt_id}")
        return {"total_savings": 0.0, "items": []}
