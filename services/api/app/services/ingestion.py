"""Ingestion service: receipt image -> extraction -> standardization -> alternatives -> DB.

Flow for one upload:
1. Validate input (image present, size limit, optional client JSON has items)
2. Store the image (fatal on failure)
3. Extract line items with the vision model, or use the client JSON (fatal on failure)
4. Standardize item names (degrades, never fatal)
5. Search cheaper alternatives per item (a failing item passes through)
6. Persist receipt + items, then upsert newly learned patterns (ignore duplicates)
7. Build the response

Reprocessing re-runs steps 4-6 from the stored raw receipt JSON. Receipts that
already have items are skipped unless replacement is requested, in which case
existing items are deleted and rebuilt.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from app.models import Receipt
from app.models.receipt import CATEGORY_LENGTH
from app.services.alternatives import AlternativeFinder, AlternativeMatch
from app.services.extraction import (
    ExtractedItem,
    ExtractedReceipt,
    ExtractionFailure,
    ReceiptExtractor,
    parse_receipt_payload,
)
from app.services.llm_client import get_llm_client
from app.services.normalizer import (
    SOURCE_LLM,
    SOURCE_PINNED,
    GenericItem,
    NameNormalizer,
    fallback_from_raw,
)
from app.services.patterns import PatternMapping, PatternStore, build_mappings
from app.settings import get_settings
from app.stores.images import StoredImage, get_image_store
from app.stores.postgres import get_session
from app.stores.redis import GenericNamePins, receipt_lock
from app.stores.repositories import (
    SqlHistoricalItemSource,
    SqlPatternStore,
    SqlPriceSnapshotSource,
    SqlReceiptRepository,
)

logger = logging.getLogger("uvicorn.error")

# Generic names from these sources are trusted enough to become stored patterns.
PATTERN_SOURCES = frozenset({SOURCE_LLM, SOURCE_PINNED})


class ValidationFailure(ValueError):
    pass


class ReceiptNotFound(LookupError):
    pass


class IngestionStage(str, Enum):
    RECEIVED = "received"
    IMAGE_STORED = "image_stored"
    EXTRACTED = "extracted"
    EXTRACTION_FAILED = "extraction_failed"
    NORMALIZED = "normalized"
    ALTERNATIVES_SEARCHED = "alternatives_searched"
    PERSISTED = "persisted"
    RESPONDED = "responded"


class ImageStore(Protocol):
    async def save(
        self, data: bytes, *, filename: str | None = None, content_type: str | None = None
    ) -> StoredImage: ...


class ReceiptRepository(Protocol):
    async def create_receipt(self, **fields: Any) -> Receipt: ...

    async def add_items(self, receipt_id: str, items: Sequence[dict[str, Any]]) -> list[Any]: ...

    async def delete_items(self, receipt_id: str) -> int: ...

    async def count_items(self, receipt_id: str) -> int: ...

    async def get_receipt(self, receipt_id: str, *, with_items: bool = False) -> Receipt | None: ...


@dataclass
class ReceiptUpload:
    image_bytes: bytes
    filename: str | None = None
    content_type: str | None = None
    receipt_data: dict[str, Any] | None = None


@dataclass
class ProcessedItem:
    extracted: ExtractedItem
    generic: GenericItem
    alternative: AlternativeMatch | None = None

    def to_row(self) -> dict[str, Any]:
        it = self.extracted
        final_price = it.final_price if it.final_price is not None else it.price * it.quantity
        return {
            "original_item_name": it.name,
            "detailed_name": self.generic.detailed_name or it.name,
            "standardized_item_name": self.generic.generic_name or None,
            "category": (self.generic.category or "Other")[:CATEGORY_LENGTH],
            "quantity": it.quantity,
            "item_price": it.price,
            "final_price": final_price,
            "regular_price": it.regular_price,
            "cheaper_alternative_json": (
                json.dumps(self.alternative.to_payload(), ensure_ascii=False) if self.alternative else None
            ),
        }

    def to_payload(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "name": self.extracted.name,
            "price": float(self.extracted.price),
            "quantity": self.extracted.quantity,
            "detailed_name": self.generic.detailed_name,
            "standardized_name": self.generic.generic_name,
            "category": self.generic.category,
        }
        if self.alternative is not None:
            out["cheaper_alternative"] = self.alternative.to_payload()
        return out


@dataclass
class IngestionResult:
    receipt_id: str = ""
    receipt_url: str = ""
    store_name: str = ""
    status: str = "processed"
    items: list[ProcessedItem] = field(default_factory=list)
    stages: list[IngestionStage] = field(default_factory=lambda: [IngestionStage.RECEIVED])
    matching_errors: list[str] = field(default_factory=list)
    patterns_inserted: int = 0

    @property
    def stage(self) -> IngestionStage:
        return self.stages[-1]

    def advance(self, stage: IngestionStage) -> None:
        self.stages.append(stage)

    @property
    def items_with_alternatives(self) -> int:
        return sum(1 for it in self.items if it.alternative is not None)

    def to_response(self) -> dict[str, Any]:
        return {
            "success": True,
            "status": self.status,
            "receipt_id": self.receipt_id,
            "receipt_url": self.receipt_url,
            "store_name": self.store_name,
            "items_count": len(self.items),
            "items": [it.to_payload() for it in self.items],
            "items_with_alternatives": self.items_with_alternatives,
            "patterns_inserted": self.patterns_inserted,
        }


def _receipt_fields(receipt: ExtractedReceipt) -> dict[str, Any]:
    return {
        "store_name": receipt.store_name,
        "store_location": receipt.store_location,
        "store_phone_number": receipt.store_phone_number,
        "purchase_date": receipt.purchase_date,
        "purchase_time": receipt.purchase_time,
        "subtotal": receipt.subtotal,
        "taxes": receipt.taxes,
        "total_price": receipt.total_price,
        "total_discounts": receipt.total_discounts,
        "net_sales": receipt.net_sales,
        "change_given": receipt.change_given,
        "payment_method": receipt.payment_method,
        "raw_receipt_json": json.dumps(receipt.raw, ensure_ascii=False, default=str),
    }


class IngestionCoordinator:
    """Orchestrates one receipt through the pipeline with injected collaborators."""

    def __init__(
        self,
        *,
        image_store: ImageStore,
        extractor: ReceiptExtractor,
        normalizer: NameNormalizer,
        finder: AlternativeFinder,
        receipts: ReceiptRepository,
        pattern_store: PatternStore,
        max_upload_bytes: int = 10 * 1024 * 1024,
    ):
        self.image_store = image_store
        self.extractor = extractor
        self.normalizer = normalizer
        self.finder = finder
        self.receipts = receipts
        self.pattern_store = pattern_store
        self.max_upload_bytes = max_upload_bytes

    # --------------------------------------------------------
    # Upload
    # --------------------------------------------------------

    def _validate(self, upload: ReceiptUpload) -> ExtractedReceipt | None:
        if not upload.image_bytes:
            raise ValidationFailure("No image provided")
        if len(upload.image_bytes) > self.max_upload_bytes:
            raise ValidationFailure(
                f"Image is too large ({len(upload.image_bytes)} bytes, limit {self.max_upload_bytes})"
            )
        if upload.content_type and not upload.content_type.lower().startswith("image/"):
            raise ValidationFailure(f"Unsupported file type: {upload.content_type}")
        if upload.receipt_data is None:
            return None
        try:
            return parse_receipt_payload(upload.receipt_data)
        except ExtractionFailure as e:
            raise ValidationFailure(f"Invalid receipt data: {e}") from e

    async def ingest(self, upload: ReceiptUpload) -> IngestionResult:
        provided = self._validate(upload)
        result = IngestionResult()

        stored = await self.image_store.save(
            upload.image_bytes, filename=upload.filename, content_type=upload.content_type
        )
        result.receipt_url = stored.url
        result.advance(IngestionStage.IMAGE_STORED)

        if provided is not None:
            extracted = provided
        else:
            try:
                extracted = await self.extractor.extract_receipt(
                    upload.image_bytes, upload.content_type or "image/jpeg"
                )
            except ExtractionFailure:
                result.advance(IngestionStage.EXTRACTION_FAILED)
                logger.warning(f"[ingest] extraction failed image={stored.key}")
                raise
        result.advance(IngestionStage.EXTRACTED)
        result.store_name = extracted.store_name

        result.items = await self._process_items(extracted.items, extracted.store_name, result)

        fields = _receipt_fields(extracted)
        receipt = await self.receipts.create_receipt(image_url=stored.url, **fields)
        result.receipt_id = receipt.id
        await self.receipts.add_items(receipt.id, [it.to_row() for it in result.items])
        result.advance(IngestionStage.PERSISTED)

        logger.info(
            f"[ingest] receipt={receipt.id} store={extracted.store_name!r} items={len(result.items)} "
            f"alternatives={result.items_with_alternatives} "
            f"matching_errors={len(result.matching_errors)}"
        )
        return result

    # --------------------------------------------------------
    # Reprocess
    # --------------------------------------------------------

    async def reprocess(self, receipt_id: str, *, replace_existing: bool = False) -> IngestionResult:
        receipt = await self.receipts.get_receipt(receipt_id)
        if receipt is None:
            raise ReceiptNotFound(f"Receipt {receipt_id} not found")

        result = IngestionResult(receipt_id=receipt.id, receipt_url=receipt.image_url, store_name=receipt.store_name)

        existing = await self.receipts.count_items(receipt_id)
        if existing and not replace_existing:
            logger.info(f"[ingest] reprocess skipped receipt={receipt_id} existing_items={existing}")
            result.status = "skipped"
            return result

        try:
            payload = json.loads(receipt.raw_receipt_json or "null")
            extracted = parse_receipt_payload(payload)
        except (ValueError, ExtractionFailure) as e:
            raise ValidationFailure(f"Receipt {receipt_id} has no stored items to reprocess") from e
        result.advance(IngestionStage.EXTRACTED)

        result.items = await self._process_items(extracted.items, receipt.store_name, result)

        if existing:
            deleted = await self.receipts.delete_items(receipt_id)
            logger.info(f"[ingest] reprocess receipt={receipt_id} deleted_items={deleted}")
        await self.receipts.add_items(receipt_id, [it.to_row() for it in result.items])
        result.advance(IngestionStage.PERSISTED)
        result.status = "reprocessed"
        return result

    # --------------------------------------------------------
    # Shared steps
    # --------------------------------------------------------

    async def _process_items(
        self, items: list[ExtractedItem], store_name: str, result: IngestionResult
    ) -> list[ProcessedItem]:
        names = [it.name for it in items]
        try:
            generic = await self.normalizer.standardize(names)
            if len(generic) != len(names):
                raise RuntimeError(f"expected {len(names)} standardized items, got {len(generic)}")
        except Exception:
            logger.exception(f"[ingest] standardization crashed; using raw names for {len(names)} items")
            generic = [fallback_from_raw(n) for n in names]
        result.advance(IngestionStage.NORMALIZED)

        matches, errors = await self.finder.find_for_items(
            [(g.generic_name, it.price) for g, it in zip(generic, items)],
            store_name,
        )
        result.matching_errors.extend(str(e) for e in errors)
        result.advance(IngestionStage.ALTERNATIVES_SEARCHED)

        return [ProcessedItem(extracted=it, generic=g, alternative=m) for it, g, m in zip(items, generic, matches)]

    async def learn_patterns(self, result: IngestionResult) -> int:
        """Store patterns from LLM-standardized items of a persisted result.

        Call after the receipt session has committed.
        """
        mappings: list[PatternMapping] = []
        for it in result.items:
            if it.generic.source not in PATTERN_SOURCES:
                continue
            mappings.extend(
                build_mappings(
                    original_name=it.extracted.name,
                    standardized_name=it.generic.generic_name,
                    category=it.generic.category,
                    patterns=it.generic.patterns,
                )
            )
        if not mappings:
            return 0
        try:
            result.patterns_inserted = await self.pattern_store.upsert(mappings)
        except Exception:
            logger.exception(f"[ingest] pattern upsert failed for {len(mappings)} patterns")
            return 0
        logger.info(f"[ingest] receipt={result.receipt_id} patterns_inserted={result.patterns_inserted}")
        return result.patterns_inserted


# ============================================================
# Wiring for routes and scripts
# ============================================================


def build_normalizer(pattern_store: PatternStore | None = None) -> NameNormalizer:
    settings = get_settings()
    return NameNormalizer(
        get_llm_client(),
        model=settings.openai_model_normalize,
        pattern_store=pattern_store,
        pins=GenericNamePins(ttl=settings.generic_name_pin_ttl) if settings.pin_generic_names else None,
        reuse_known_patterns=settings.reuse_known_patterns,
    )


def build_finder(pattern_store: PatternStore | None = None) -> AlternativeFinder:
    settings = get_settings()
    return AlternativeFinder(
        SqlHistoricalItemSource(),
        SqlPriceSnapshotSource(),
        pattern_store=pattern_store,
        candidate_limit=settings.alternative_candidate_limit,
        max_concurrency=settings.alternative_search_max_concurrency,
    )


def build_coordinator(session: AsyncSession) -> IngestionCoordinator:
    settings = get_settings()
    pattern_store = SqlPatternStore()
    return IngestionCoordinator(
        image_store=get_image_store(),
        extractor=ReceiptExtractor(get_llm_client(), model=settings.openai_model_extract),
        normalizer=build_normalizer(pattern_store),
        finder=build_finder(pattern_store),
        receipts=SqlReceiptRepository(session),
        pattern_store=pattern_store,
        max_upload_bytes=settings.max_upload_bytes,
    )


async def ingest_receipt_upload(upload: ReceiptUpload) -> dict[str, Any]:
    """Run the full pipeline for one upload and return the response payload."""
    async with get_session() as session:
        coordinator = build_coordinator(session)
        result = await coordinator.ingest(upload)
    await coordinator.learn_patterns(result)
    result.advance(IngestionStage.RESPONDED)
    return result.to_response()


async def reprocess_receipt(receipt_id: str, *, replace_existing: bool = False) -> dict[str, Any]:
    async with receipt_lock(receipt_id):
        async with get_session() as session:
            coordinator = build_coordinator(session)
            result = await coordinator.reprocess(receipt_id, replace_existing=replace_existing)
        await coordinator.learn_patterns(result)
    result.advance(IngestionStage.RESPONDED)
    return result.to_response()
