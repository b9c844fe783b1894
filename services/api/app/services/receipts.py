"""Receipt read service: detail view and listing."""

import json
import logging
from decimal import Decimal
from typing import Any

from app.models import Receipt, ReceiptItem
from app.stores.postgres import get_session
from app.stores.repositories import SqlReceiptRepository

logger = logging.getLogger("uvicorn.error")


def _num(value: Decimal | None) -> float | None:
    return float(value) if value is not None else None


def _alternative(raw: str | None) -> dict[str, Any] | None:
    if not raw:
        return None
    try:
        payload = json.loads(raw)
    except ValueError:
        logger.warning("[receipts] unreadable cheaper_alternative_json")
        return None
    return payload if isinstance(payload, dict) else None


def item_to_dict(item: ReceiptItem) -> dict[str, Any]:
    quantity = item.quantity or 1
    final_price = item.final_price if item.final_price is not None else item.item_price * quantity
    return {
        "id": item.id,
        "name": item.original_item_name,
        "detailed_name": item.detailed_name,
        "standardized_name": item.standardized_item_name,
        "category": item.category,
        "quantity": quantity,
        "price": float(item.item_price),
        "final_price": float(final_price),
        "regular_price": _num(item.regular_price),
        "unit_price": round(float(final_price) / quantity, 2),
        "cheaper_alternative": _alternative(item.cheaper_alternative_json),
    }


def receipt_to_dict(receipt: Receipt, *, items: list[ReceiptItem] | None = None) -> dict[str, Any]:
    out: dict[str, Any] = {
        "id": receipt.id,
        "image_url": receipt.image_url,
        "store_name": receipt.store_name,
        "store_location": receipt.store_location,
        "store_phone_number": receipt.store_phone_number,
        "purchase_date": receipt.purchase_date.isoformat() if receipt.purchase_date else None,
        "purchase_time": receipt.purchase_time,
        "subtotal": _num(receipt.subtotal),
        "taxes": _num(receipt.taxes),
        "total_price": _num(receipt.total_price),
        "total_discounts": _num(receipt.total_discounts),
        "net_sales": _num(receipt.net_sales),
        "change_given": _num(receipt.change_given),
        "payment_method": receipt.payment_method,
        "created_at": receipt.created_at.isoformat() if receipt.created_at else None,
    }
    if items is not None:
        rows = [item_to_dict(it) for it in sorted(items, key=lambda it: it.id)]
        out["items"] = rows
        out["items_count"] = len(rows)
        out["potential_savings"] = round(
            sum(float(r["cheaper_alternative"].get("savings") or 0) for r in rows if r["cheaper_alternative"]), 2
        )
    return out


async def get_receipt_detail(receipt_id: str) -> dict[str, Any] | None:
    """Receipt with its items, or None when the id is unknown."""
    async with get_session() as session:
        receipt = await SqlReceiptRepository(session).get_receipt(receipt_id, with_items=True)
        if receipt is None:
            return None
        return receipt_to_dict(receipt, items=list(receipt.items))


async def list_receipts(*, limit: int = 50, offset: int = 0) -> dict[str, Any]:
    async with get_session() as session:
        rows = await SqlReceiptRepository(session).list_receipts(limit=limit, offset=offset)
    receipts = []
    for receipt, count in rows:
        payload = receipt_to_dict(receipt)
        payload["items_count"] = count
        receipts.append(payload)
    return {"count": len(receipts), "limit": limit, "offset": offset, "receipts": receipts}
