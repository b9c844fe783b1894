"""SQL repositories over the async session.

Read-side stores (patterns, alternative sources) open a short session per call
so the alternative finder can run its two source queries concurrently.
SqlReceiptRepository works inside the caller's session (one transaction per
ingestion).
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Sequence

from sqlalchemy import delete, func, literal, select
from sqlalchemy.dialects.postgresql import Insert, insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.models import ProductPrice, Receipt, ReceiptItem, StandardizationFeedback, StandardizationPattern
from app.services.alternatives import PriceCandidate
from app.services.patterns import PatternMapping, normalize_pattern
from app.stores.postgres import get_session

logger = logging.getLogger("uvicorn.error")

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]

MAX_PATTERN_MATCHES = 200


@dataclass(frozen=True)
class PriceObservation:
    """One purchased item joined with its receipt's store and date."""

    receipt_id: str
    item_id: int
    standardized_name: str | None
    detailed_name: str | None
    original_name: str
    category: str | None
    store_name: str
    price: Decimal
    purchase_date: date | None
    created_at: datetime | None

    @property
    def observed_on(self) -> date | None:
        if self.purchase_date is not None:
            return self.purchase_date
        return self.created_at.date() if self.created_at is not None else None


@dataclass(frozen=True)
class SnapshotPrice:
    standardized_name: str
    store_name: str
    price: Decimal
    observed_at: datetime | None


# ============================================================
# Pattern store
# ============================================================


def build_pattern_upsert(mappings: Sequence[PatternMapping]) -> Insert:
    """INSERT ... ON CONFLICT (original_pattern) DO NOTHING RETURNING original_pattern."""
    rows: list[dict[str, str]] = []
    seen: set[str] = set()
    for m in mappings:
        if not m.pattern or m.pattern in seen:
            continue
        rows.append(
            {
                "original_pattern": m.pattern,
                "standardized_name": m.standardized_name,
                "category": m.category,
            }
        )
        seen.add(m.pattern)
    return (
        pg_insert(StandardizationPattern)
        .values(rows)
        .on_conflict_do_nothing(index_elements=["original_pattern"])
        .returning(StandardizationPattern.original_pattern)
    )


class SqlPatternStore:
    def __init__(self, session_factory: SessionFactory = get_session):
        self._session = session_factory

    async def insert_new(self, mappings: Sequence[PatternMapping]) -> list[str]:
        """Patterns this call actually inserted; rows already present are skipped."""
        if not any(m.pattern for m in mappings):
            return []
        stmt = build_pattern_upsert(mappings)
        async with self._session() as session:
            return list((await session.execute(stmt)).scalars().all())

    async def upsert(self, mappings: Sequence[PatternMapping]) -> int:
        return len(await self.insert_new(mappings))

    async def query_by_pattern(self, text: str) -> list[PatternMapping]:
        t = normalize_pattern(text)
        if not t:
            return []
        stmt = (
            select(StandardizationPattern)
            .where(literal(t).ilike(StandardizationPattern.original_pattern))
            .order_by(StandardizationPattern.id)
            .limit(MAX_PATTERN_MATCHES)
        )
        async with self._session() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [
            PatternMapping(pattern=r.original_pattern, standardized_name=r.standardized_name, category=r.category)
            for r in rows
        ]

    async def known_categories(self) -> list[str]:
        stmt = (
            select(StandardizationPattern.category)
            .where(StandardizationPattern.category.is_not(None))
            .group_by(StandardizationPattern.category)
            .order_by(func.count().desc())
            .limit(100)
        )
        async with self._session() as session:
            return [str(c) for c in (await session.execute(stmt)).scalars().all() if c]

    async def exists(self, pattern: str) -> bool:
        stmt = select(StandardizationPattern.id).where(StandardizationPattern.original_pattern == pattern)
        async with self._session() as session:
            return (await session.execute(stmt)).first() is not None


# ============================================================
# Alternative sources
# ============================================================


class SqlHistoricalItemSource:
    """Source A: receipt items bought at other stores."""

    def __init__(self, session_factory: SessionFactory = get_session):
        self._session = session_factory

    async def cheaper_than(
        self,
        names: Sequence[str],
        *,
        price: Decimal,
        exclude_store: str,
        limit: int,
    ) -> list[PriceCandidate]:
        lowered = list(dict.fromkeys(n.strip().lower() for n in names if n and n.strip()))
        if not lowered:
            return []
        stmt = (
            select(
                ReceiptItem.detailed_name,
                ReceiptItem.standardized_item_name,
                ReceiptItem.item_price,
                Receipt.store_name,
            )
            .join(Receipt, Receipt.id == ReceiptItem.receipt_id)
            .where(func.lower(ReceiptItem.standardized_item_name).in_(lowered))
            .where(ReceiptItem.item_price > 0)
            .where(ReceiptItem.item_price < price)
            .where(func.lower(Receipt.store_name) != exclude_store.strip().lower())
            .order_by(ReceiptItem.item_price.asc(), Receipt.store_name.asc())
            .limit(limit)
        )
        async with self._session() as session:
            rows = (await session.execute(stmt)).all()
        return [
            PriceCandidate(
                store_name=str(store or ""),
                price=Decimal(item_price),
                item_name=str(detailed or standardized or ""),
            )
            for detailed, standardized, item_price, store in rows
        ]


class SqlPriceSnapshotSource:
    """Source B: per-store current price table."""

    def __init__(self, session_factory: SessionFactory = get_session):
        self._session = session_factory

    async def cheaper_than(
        self,
        names: Sequence[str],
        *,
        price: Decimal,
        exclude_store: str,
        limit: int,
    ) -> list[PriceCandidate]:
        lowered = list(dict.fromkeys(n.strip().lower() for n in names if n and n.strip()))
        if not lowered:
            return []
        stmt = (
            select(ProductPrice)
            .where(func.lower(ProductPrice.standardized_item_name).in_(lowered))
            .where(ProductPrice.price > 0)
            .where(ProductPrice.price < price)
            .where(func.lower(ProductPrice.store_name) != exclude_store.strip().lower())
            .order_by(ProductPrice.price.asc(), ProductPrice.store_name.asc())
            .limit(limit)
        )
        async with self._session() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [
            PriceCandidate(store_name=r.store_name, price=Decimal(r.price), item_name=r.standardized_item_name)
            for r in rows
        ]

    async def prices_for(self, names: Sequence[str]) -> list[SnapshotPrice]:
        lowered = list(dict.fromkeys(n.strip().lower() for n in names if n and n.strip()))
        if not lowered:
            return []
        stmt = select(ProductPrice).where(func.lower(ProductPrice.standardized_item_name).in_(lowered))
        async with self._session() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [
            SnapshotPrice(
                standardized_name=r.standardized_item_name,
                store_name=r.store_name,
                price=Decimal(r.price),
                observed_at=r.observed_at,
            )
            for r in rows
        ]


# ============================================================
# Receipts
# ============================================================


class SqlReceiptRepository:
    """Receipt + item persistence inside one session."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create_receipt(self, **fields: Any) -> Receipt:
        receipt = Receipt(**fields)
        self.session.add(receipt)
        await self.session.flush()
        return receipt

    async def add_items(self, receipt_id: str, items: Sequence[dict[str, Any]]) -> list[ReceiptItem]:
        rows = [ReceiptItem(receipt_id=receipt_id, **item) for item in items]
        self.session.add_all(rows)
        await self.session.flush()
        return rows

    async def delete_items(self, receipt_id: str) -> int:
        res = await self.session.execute(delete(ReceiptItem).where(ReceiptItem.receipt_id == receipt_id))
        return int(res.rowcount or 0)

    async def count_items(self, receipt_id: str) -> int:
        res = await self.session.execute(
            select(func.count(ReceiptItem.id)).where(ReceiptItem.receipt_id == receipt_id)
        )
        return int(res.scalar_one())

    async def get_receipt(self, receipt_id: str, *, with_items: bool = False) -> Receipt | None:
        stmt = select(Receipt).where(Receipt.id == receipt_id)
        if with_items:
            stmt = stmt.options(selectinload(Receipt.items))
        return (await self.session.execute(stmt)).scalar_one_or_none()

    async def list_receipts(self, *, limit: int = 50, offset: int = 0) -> list[tuple[Receipt, int]]:
        counts = (
            select(ReceiptItem.receipt_id, func.count(ReceiptItem.id).label("n"))
            .group_by(ReceiptItem.receipt_id)
            .subquery()
        )
        stmt = (
            select(Receipt, func.coalesce(counts.c.n, 0))
            .outerjoin(counts, counts.c.receipt_id == Receipt.id)
            .order_by(Receipt.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        return [(r, int(n)) for r, n in (await self.session.execute(stmt)).all()]

    async def receipts_without_items(self, *, limit: int = 100) -> list[str]:
        stmt = (
            select(Receipt.id)
            .outerjoin(ReceiptItem, ReceiptItem.receipt_id == Receipt.id)
            .where(ReceiptItem.id.is_(None))
            .where(Receipt.raw_receipt_json.is_not(None))
            .order_by(Receipt.created_at.asc())
            .limit(limit)
        )
        return [str(x) for x in (await self.session.execute(stmt)).scalars().all()]

    async def price_observations(
        self,
        *,
        since: date | None = None,
        standardized_names: Sequence[str] | None = None,
        receipt_id: str | None = None,
    ) -> list[PriceObservation]:
        stmt = (
            select(ReceiptItem, Receipt.store_name, Receipt.purchase_date)
            .join(Receipt, Receipt.id == ReceiptItem.receipt_id)
            .where(ReceiptItem.standardized_item_name.is_not(None))
            .where(ReceiptItem.standardized_item_name != "")
        )
        if receipt_id is not None:
            stmt = stmt.where(ReceiptItem.receipt_id == receipt_id)
        if since is not None:
            stmt = stmt.where(func.coalesce(Receipt.purchase_date, func.date(ReceiptItem.created_at)) >= since)
        if standardized_names is not None:
            lowered = list(dict.fromkeys(n.strip().lower() for n in standardized_names if n and n.strip()))
            if not lowered:
                return []
            stmt = stmt.where(func.lower(ReceiptItem.standardized_item_name).in_(lowered))
        stmt = stmt.order_by(ReceiptItem.id)

        out: list[PriceObservation] = []
        for item, store_name, purchase_date in (await self.session.execute(stmt)).all():
            out.append(
                PriceObservation(
                    receipt_id=item.receipt_id,
                    item_id=item.id,
                    standardized_name=item.standardized_item_name,
                    detailed_name=item.detailed_name,
                    original_name=item.original_item_name,
                    category=item.category,
                    store_name=str(store_name or ""),
                    price=Decimal(item.item_price),
                    purchase_date=purchase_date,
                    created_at=item.created_at,
                )
            )
        return out

    async def items_missing_standardized_name(self, *, limit: int = 20, after_id: int = 0) -> list[ReceiptItem]:
        stmt = (
            select(ReceiptItem)
            .where((ReceiptItem.standardized_item_name.is_(None)) | (ReceiptItem.standardized_item_name == ""))
            .where(ReceiptItem.id > after_id)
            .order_by(ReceiptItem.id)
            .limit(limit)
        )
        return list((await self.session.execute(stmt)).scalars().all())

    async def replace_product_prices(self, rows: Sequence[SnapshotPrice]) -> int:
        """Upsert the snapshot: one row per (standardized name, store)."""
        if not rows:
            return 0
        stmt = pg_insert(ProductPrice).values(
            [
                {
                    "standardized_item_name": r.standardized_name,
                    "store_name": r.store_name,
                    "price": r.price,
                    "observed_at": r.observed_at,
                }
                for r in rows
            ]
        )
        stmt = stmt.on_conflict_do_update(
            constraint="uq_product_prices_item_store",
            set_={
                "price": stmt.excluded.price,
                "observed_at": stmt.excluded.observed_at,
                "updated_at": func.now(),
            },
        )
        await self.session.execute(stmt)
        return len(rows)

    async def record_feedback(self, **fields: Any) -> StandardizationFeedback:
        row = StandardizationFeedback(**fields)
        self.session.add(row)
        await self.session.flush()
        return row
