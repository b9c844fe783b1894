"""Receipt payload parsing and vision extraction (scripted LLM)."""

from datetime import date
from decimal import Decimal

import pytest

from app.models.receipt import PAYMENT_METHOD_LENGTH, PHONE_NUMBER_LENGTH, STORE_NAME_LENGTH
from app.services.extraction import (
    DEFAULT_STORE_NAME,
    ExtractionFailure,
    ReceiptExtractor,
    parse_purchase_date,
    parse_receipt_payload,
)
from app.services.llm_client import LlmError

NESTED = {
    "store_information": {"name": "ALDI", "address": "123 Main St", "phone_number": "555-0100"},
    "purchase_details": {"date": "2026-10-01", "time": "14:32"},
    "items": [
        {"name": "TRPNCA OJ", "price": 5.99, "quantity": 1, "final_price": 5.99},
        {"name": "BNNS", "price": None, "quantity": "2", "final_price": "1.18"},
        {"name": "", "price": 1.00},
    ],
    "taxes": [{"category": "Food", "rate": "1%", "amount": 0.07}],
    "financial_summary": {"subtotal": 7.17, "total_amount": "$7.24", "change_given": 0},
    "payment_information": {"method": "VISA"},
}


def test_parse_nested_payload() -> None:
    receipt = parse_receipt_payload(NESTED)

    assert receipt.store_name == "ALDI"
    assert receipt.store_location == "123 Main St"
    assert receipt.purchase_date == date(2026, 10, 1)
    assert receipt.purchase_time == "14:32"
    assert receipt.total_price == Decimal("7.24")
    assert receipt.taxes == Decimal("0.07")
    assert receipt.payment_method == "VISA"
    assert [i.name for i in receipt.items] == ["TRPNCA OJ", "BNNS"]
    # Unit price derived from the line total when missing
    assert receipt.items[1].quantity == 2
    assert receipt.items[1].price == Decimal("0.59")


def test_long_text_fields_are_clamped_to_column_length() -> None:
    receipt = parse_receipt_payload(
        {
            "store_name": "ALDI " + "x" * 300,
            "store_phone_number": "555-0100 " * 10,
            "purchase_time": "14:32 (local time, as printed)",
            "payment_method": "VISA " * 40,
            "store_location": "1 Main St " * 50,
            "items": [{"name": "Milk", "price": 3.49}],
        }
    )

    assert len(receipt.store_name) == STORE_NAME_LENGTH
    assert receipt.store_name.startswith("ALDI x")
    assert len(receipt.store_phone_number) <= PHONE_NUMBER_LENGTH
    assert receipt.purchase_time == "14:32 (local time, a"
    assert len(receipt.payment_method) <= PAYMENT_METHOD_LENGTH
    # Unbounded column
    assert len(receipt.store_location) > 400


def test_parse_flat_payload_with_defaults() -> None:
    receipt = parse_receipt_payload(
        {"storeName": "", "date": "10/02/2026", "items": ["Bread", {"name": "Milk", "price": "3.49"}], "total": 3.49}
    )

    assert receipt.store_name == DEFAULT_STORE_NAME
    assert receipt.purchase_date == date(2026, 10, 2)
    assert [(i.name, i.price, i.quantity) for i in receipt.items] == [
        ("Bread", Decimal("0.00"), 1),
        ("Milk", Decimal("3.49"), 1),
    ]


@pytest.mark.parametrize("payload", [{}, {"items": []}, {"items": [{"price": 1}]}, {"items": "Bread"}])
def test_payload_without_items_fails(payload: dict) -> None:
    with pytest.raises(ExtractionFailure):
        parse_receipt_payload(payload)


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("2026-10-01", date(2026, 10, 1)),
        ("10/01/26", date(2026, 10, 1)),
        ("Oct 01, 2026", date(2026, 10, 1)),
        ("2026-10-01T09:15:00Z", date(2026, 10, 1)),
        ("not a date", None),
        (None, None),
    ],
)
def test_parse_purchase_date(raw, expected) -> None:
    assert parse_purchase_date(raw) == expected


@pytest.mark.asyncio
async def test_extractor_sends_image_and_parses_reply(llm) -> None:
    llm.script_json(NESTED)
    extractor = ReceiptExtractor(llm, model="gpt-4o-mini")

    receipt = await extractor.extract_receipt(b"\x89PNG fake", "image/png")

    assert receipt.store_name == "ALDI"
    assert llm.calls == [("json", "gpt-4o-mini")]


@pytest.mark.asyncio
async def test_extractor_wraps_llm_errors(llm) -> None:
    llm.script_json(LlmError("LLM upstream error (HTTP 503)"))
    extractor = ReceiptExtractor(llm, model="m")

    with pytest.raises(ExtractionFailure, match="Could not read the receipt"):
        await extractor.extract_receipt(b"img")


@pytest.mark.asyncio
async def test_extractor_rejects_empty_image(llm) -> None:
    with pytest.raises(ExtractionFailure):
        await ReceiptExtractor(llm, model="m").extract_receipt(b"")
    assert llm.calls == []
