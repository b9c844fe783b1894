"""HTTP surface: status codes and the error envelope, with services patched out."""

import json

import pytest
from httpx import ASGITransport, AsyncClient

from app.main import app
from app.routes import comparisons as comparison_routes
from app.routes import receipts as receipt_routes
from app.services.extraction import ExtractionFailure
from app.services.ingestion import ReceiptNotFound, ValidationFailure
from app.stores.redis import LockBusy


@pytest.fixture
async def client():
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


def _image() -> dict:
    return {"image": ("receipt.jpg", b"\xff\xd8fake", "image/jpeg")}


@pytest.mark.asyncio
async def test_upload_success(client: AsyncClient, monkeypatch: pytest.MonkeyPatch):
    seen = {}

    async def fake_ingest(upload):
        seen["upload"] = upload
        return {"success": True, "receipt_id": "r-1", "items_count": 1}

    monkeypatch.setattr(receipt_routes, "ingest_receipt_upload", fake_ingest)

    response = await client.post(
        "/v1/receipts/upload",
        files=_image(),
        data={"receipt_data": json.dumps({"store_name": "ALDI", "items": [{"name": "BNNS", "price": 0.59}]})},
    )

    assert response.status_code == 200
    assert response.json()["receipt_id"] == "r-1"
    assert seen["upload"].content_type == "image/jpeg"
    assert seen["upload"].receipt_data["store_name"] == "ALDI"


@pytest.mark.asyncio
async def test_upload_validation_failure_uses_error_envelope(client: AsyncClient, monkeypatch: pytest.MonkeyPatch):
    async def fake_ingest(upload):
        raise ValidationFailure("No image provided")

    monkeypatch.setattr(receipt_routes, "ingest_receipt_upload", fake_ingest)

    response = await client.post("/v1/receipts/upload", data={"receipt_data": "{}"})

    assert response.status_code == 400
    assert response.json() == {
        "error": {"code": "VALIDATION_FAILED", "message": "No image provided", "detail": None}
    }


@pytest.mark.asyncio
async def test_upload_extraction_failure(client: AsyncClient, monkeypatch: pytest.MonkeyPatch):
    async def fake_ingest(upload):
        raise ExtractionFailure("Could not read the receipt")

    monkeypatch.setattr(receipt_routes, "ingest_receipt_upload", fake_ingest)

    response = await client.post("/v1/receipts/upload", files=_image())

    assert response.status_code == 502
    assert response.json()["error"]["code"] == "EXTRACTION_FAILED"


@pytest.mark.asyncio
async def test_upload_rejects_malformed_receipt_data(client: AsyncClient, monkeypatch: pytest.MonkeyPatch):
    async def fake_ingest(upload):
        raise AssertionError("pipeline must not run")

    monkeypatch.setattr(receipt_routes, "ingest_receipt_upload", fake_ingest)

    for body in ("{not json", "[1, 2]"):
        response = await client.post("/v1/receipts/upload", files=_image(), data={"receipt_data": body})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_FAILED"


@pytest.mark.parametrize(
    ("error", "status", "code"),
    [
        (ReceiptNotFound("Receipt r-9 not found"), 404, "RECEIPT_NOT_FOUND"),
        (ValidationFailure("Receipt r-9 has no stored items to reprocess"), 400, "VALIDATION_FAILED"),
        (LockBusy("receipt:r-9"), 409, "REPROCESS_IN_PROGRESS"),
    ],
)
@pytest.mark.asyncio
async def test_reprocess_errors(client: AsyncClient, monkeypatch: pytest.MonkeyPatch, error, status, code):
    async def fake_reprocess(receipt_id, *, replace_existing=False):
        raise error

    monkeypatch.setattr(receipt_routes, "reprocess_receipt", fake_reprocess)

    response = await client.post("/v1/receipts/r-9/reprocess", params={"replace_existing": "true"})

    assert response.status_code == status
    assert response.json()["error"]["code"] == code


@pytest.mark.asyncio
async def test_receipt_detail_not_found(client: AsyncClient, monkeypatch: pytest.MonkeyPatch):
    async def fake_detail(receipt_id):
        return None

    monkeypatch.setattr(receipt_routes, "get_receipt_detail", fake_detail)

    response = await client.get("/v1/receipts/r-404")
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "RECEIPT_NOT_FOUND"


@pytest.mark.asyncio
async def test_unified_comparison_requires_receipt_id(client: AsyncClient):
    response = await client.get("/v1/comparisons/unified")
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "VALIDATION_FAILED"


@pytest.mark.asyncio
async def test_store_comparison_payload(client: AsyncClient, monkeypatch: pytest.MonkeyPatch):
    async def fake_load():
        return [
            {"item_name": "Bread", "category": "Bakery", "price_difference": 2.2},
            {"item_name": "Milk", "category": None, "price_difference": 0.5},
        ]

    monkeypatch.setattr(comparison_routes, "load_store_comparisons", fake_load)

    response = await client.get("/v1/comparisons/stores")

    assert response.status_code == 200
    data = response.json()
    assert data["total_potential_savings"] == pytest.approx(2.7)
    assert set(data["by_category"]) == {"Bakery", "Uncategorized"}


@pytest.mark.asyncio
async def test_feedback_rejects_unknown_type(client: AsyncClient):
    response = await client.post(
        "/v1/standardization/feedback",
        json={"original_item_name": "BNNS", "feedback_type": "complaint"},
    )
    assert response.status_code == 422
    assert response.json()["error"]["code"] == "VALIDATION_FAILED"


@pytest.mark.asyncio
async def test_preview_requires_names_or_receipt(client: AsyncClient):
    response = await client.post("/v1/standardization/preview", json={})
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "VALIDATION_FAILED"
