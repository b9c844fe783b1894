"""Receipt extraction: image -> structured receipt.

The vision model is an untrusted function returning text. Its output (or a
client-supplied JSON payload) is parsed into ExtractedReceipt, accepting:
- the nested shape: store_information / purchase_details / items /
  financial_summary / payment_information
- the flat shape: storeName|store_name, date, items, subtotal, tax, total

Every missing or malformed field gets one fallback value; a receipt without
any usable line item is an ExtractionFailure.
"""

from __future__ import annotations

import base64
import logging
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from pydantic import BaseModel, Field

from app.models.receipt import (
    PAYMENT_METHOD_LENGTH,
    PHONE_NUMBER_LENGTH,
    PURCHASE_TIME_LENGTH,
    STORE_NAME_LENGTH,
)
from app.services.alternatives import to_decimal
from app.services.llm_client import LlmClient, LlmError

logger = logging.getLogger("uvicorn.error")

DEFAULT_STORE_NAME = "Unknown Store"

_DATE_FORMATS = ("%Y-%m-%d", "%m/%d/%Y", "%m/%d/%y", "%Y/%m/%d", "%m-%d-%Y", "%d.%m.%Y", "%b %d, %Y", "%B %d, %Y")

EXTRACTION_SYSTEM_PROMPT = (
    "You read grocery receipt images and return their contents as one JSON object.\n"
    "Use exactly this shape (numbers without currency symbols, null when unreadable):\n"
    "{\n"
    '  "store_information": {"name": string, "address": string, "phone_number": string},\n'
    '  "purchase_details": {"date": "YYYY-MM-DD", "time": "HH:MM"},\n'
    '  "items": [{"name": string, "price": number, "quantity": number, '
    '"regular_price": number, "discounts": [{"type": string, "amount": number}], "final_price": number}],\n'
    '  "taxes": [{"category": string, "rate": string, "amount": number}],\n'
    '  "financial_summary": {"subtotal": number, "total_discounts": number, "net_sales": number, '
    '"total_taxes": number, "total_amount": number, "change_given": number},\n'
    '  "payment_information": {"method": string}\n'
    "}\n"
    "Copy item names exactly as printed, including abbreviations. "
    "price is the unit price; final_price is the amount charged for the line."
)


class ExtractionFailure(RuntimeError):
    pass


class ExtractedItem(BaseModel):
    name: str
    price: Decimal = Decimal("0")
    quantity: int = Field(default=1, ge=1)
    regular_price: Decimal | None = None
    final_price: Decimal | None = None


class ExtractedReceipt(BaseModel):
    store_name: str = DEFAULT_STORE_NAME
    store_location: str | None = None
    store_phone_number: str | None = None
    purchase_date: date | None = None
    purchase_time: str | None = None
    subtotal: Decimal | None = None
    taxes: Decimal | None = None
    total_price: Decimal | None = None
    total_discounts: Decimal | None = None
    net_sales: Decimal | None = None
    change_given: Decimal | None = None
    payment_method: str | None = None
    items: list[ExtractedItem] = Field(default_factory=list)
    raw: dict[str, Any] = Field(default_factory=dict, exclude=True)


def _section(payload: dict[str, Any], key: str) -> dict[str, Any]:
    v = payload.get(key)
    return v if isinstance(v, dict) else {}


def _first(*values: Any) -> Any:
    for v in values:
        if v is None:
            continue
        if isinstance(v, str) and not v.strip():
            continue
        return v
    return None


def _text(value: Any, limit: int | None = None) -> str | None:
    if value is None or isinstance(value, (dict, list)):
        return None
    s = " ".join(str(value).split())
    if limit is not None:
        s = s[:limit].rstrip()
    return s or None


def _money(value: Any) -> Decimal | None:
    d = to_decimal(value)
    if d is None:
        return None
    return d.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def parse_purchase_date(value: Any) -> date | None:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    s = _text(value)
    if not s:
        return None
    try:
        return datetime.fromisoformat(s.replace("Z", "+00:00")).date()
    except ValueError:
        pass
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(s, fmt).date()
        except ValueError:
            continue
    logger.info(f"[extraction] unparseable purchase date {s!r}")
    return None


def _quantity(value: Any) -> int:
    d = to_decimal(value)
    if d is None or d < 1:
        return 1
    return int(d)


def _parse_item(raw: Any) -> ExtractedItem | None:
    if isinstance(raw, str):
        raw = {"name": raw}
    if not isinstance(raw, dict):
        return None
    name = _text(_first(raw.get("name"), raw.get("item_name"), raw.get("description")))
    if not name:
        return None

    quantity = _quantity(raw.get("quantity"))
    final_price = _money(_first(raw.get("final_price"), raw.get("total")))
    price = _money(_first(raw.get("price"), raw.get("unit_price")))
    if price is None and final_price is not None:
        price = (final_price / quantity).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    if price is None or price < 0:
        price = Decimal("0.00")

    return ExtractedItem(
        name=name,
        price=price,
        quantity=quantity,
        regular_price=_money(raw.get("regular_price")),
        final_price=final_price,
    )


def parse_receipt_payload(payload: dict[str, Any]) -> ExtractedReceipt:
    """Validate an extraction payload (nested or flat) into ExtractedReceipt.

    Raises ExtractionFailure when no line item can be read.
    """
    if not isinstance(payload, dict):
        raise ExtractionFailure("Receipt data must be a JSON object")

    store = _section(payload, "store_information")
    purchase = _section(payload, "purchase_details")
    summary = _section(payload, "financial_summary")
    payment = _section(payload, "payment_information")

    raw_items = payload.get("items")
    items = [it for it in (_parse_item(x) for x in raw_items) if it is not None] if isinstance(raw_items, list) else []
    if not items:
        raise ExtractionFailure("No line items found on the receipt")

    taxes = _first(summary.get("total_taxes"), payload.get("tax"))
    if taxes is None and isinstance(payload.get("taxes"), list):
        amounts = [_money(t.get("amount")) for t in payload["taxes"] if isinstance(t, dict)]
        amounts = [a for a in amounts if a is not None]
        taxes = sum(amounts, Decimal("0.00")) if amounts else None
    elif taxes is None:
        taxes = payload.get("taxes")

    return ExtractedReceipt(
        store_name=_text(
            _first(store.get("name"), payload.get("storeName"), payload.get("store_name")), STORE_NAME_LENGTH
        )
        or DEFAULT_STORE_NAME,
        store_location=_text(_first(store.get("address"), payload.get("store_location"))),
        store_phone_number=_text(
            _first(store.get("phone_number"), payload.get("store_phone_number")), PHONE_NUMBER_LENGTH
        ),
        purchase_date=parse_purchase_date(_first(purchase.get("date"), payload.get("date"), payload.get("purchase_date"))),
        purchase_time=_text(
            _first(purchase.get("time"), payload.get("time"), payload.get("purchase_time")), PURCHASE_TIME_LENGTH
        ),
        subtotal=_money(_first(summary.get("subtotal"), payload.get("subtotal"))),
        taxes=_money(taxes),
        total_price=_money(_first(summary.get("total_amount"), payload.get("total"), payload.get("total_price"))),
        total_discounts=_money(_first(summary.get("total_discounts"), payload.get("total_discounts"))),
        net_sales=_money(_first(summary.get("net_sales"), payload.get("net_sales"))),
        change_given=_money(_first(summary.get("change_given"), payload.get("change_given"))),
        payment_method=_text(_first(payment.get("method"), payload.get("payment_method")), PAYMENT_METHOD_LENGTH),
        items=items,
        raw=payload,
    )


class ReceiptExtractor:
    """Vision extraction through the injected LLM client."""

    def __init__(self, llm: LlmClient, *, model: str):
        self.llm = llm
        self.model = model

    async def extract_receipt(self, image_bytes: bytes, mime_type: str = "image/jpeg") -> ExtractedReceipt:
        if not image_bytes:
            raise ExtractionFailure("Empty image")
        data_url = f"data:{mime_type or 'image/jpeg'};base64,{base64.b64encode(image_bytes).decode('ascii')}"
        user_content = [
            {"type": "text", "text": "Extract this receipt as JSON."},
            {"type": "image_url", "image_url": {"url": data_url, "detail": "high"}},
        ]
        try:
            payload = await self.llm.complete_json(
                model=self.model,
                system_prompt=EXTRACTION_SYSTEM_PROMPT,
                user_content=user_content,
                max_tokens=2048,
            )
        except LlmError as e:
            raise ExtractionFailure(f"Could not read the receipt: {e}") from e

        receipt = parse_receipt_payload(payload)
        logger.info(f"[extraction] store={receipt.store_name!r} items={len(receipt.items)}")
        return receipt
