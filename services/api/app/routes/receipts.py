"""Receipt endpoints.

POST /v1/receipts/upload                - image (+ optional receipt_data JSON) -> processed receipt
POST /v1/receipts/{receipt_id}/reprocess - re-run standardization and matching from stored JSON
GET  /v1/receipts                       - list receipts
GET  /v1/receipts/{receipt_id}          - receipt detail with items
GET  /v1/receipts/images/{filename}     - stored receipt image

Routers are thin: call services for business logic.
"""

import json
import logging

from fastapi import APIRouter, File, Form, HTTPException, Query, UploadFile
from fastapi.responses import FileResponse

from app.services.extraction import ExtractionFailure
from app.services.ingestion import (
    ReceiptNotFound,
    ReceiptUpload,
    ValidationFailure,
    ingest_receipt_upload,
    reprocess_receipt,
)
from app.services.receipts import get_receipt_detail, list_receipts
from app.stores.images import ImageStorageError, get_image_store
from app.stores.redis import LockBusy

router = APIRouter()
logger = logging.getLogger("uvicorn.error")


def _error(status_code: int, code: str, message: str) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"code": code, "message": message})


@router.post("/upload")
async def upload_receipt(
    image: UploadFile | None = File(default=None),
    receipt_data: str | None = Form(default=None),
) -> dict:
    """Process one receipt photo.

    `receipt_data` may carry an already-extracted receipt (JSON string); the
    image is still required and stored.
    """
    image_bytes = await image.read() if image is not None else b""

    provided = None
    if receipt_data:
        try:
            provided = json.loads(receipt_data)
        except ValueError:
            raise _error(400, "VALIDATION_FAILED", "receipt_data is not valid JSON")
        if not isinstance(provided, dict):
            raise _error(400, "VALIDATION_FAILED", "receipt_data must be a JSON object")

    upload = ReceiptUpload(
        image_bytes=image_bytes,
        filename=image.filename if image is not None else None,
        content_type=image.content_type if image is not None else None,
        receipt_data=provided,
    )
    try:
        return await ingest_receipt_upload(upload)
    except ValidationFailure as e:
        raise _error(400, "VALIDATION_FAILED", str(e))
    except ExtractionFailure as e:
        raise _error(502, "EXTRACTION_FAILED", str(e))
    except ImageStorageError as e:
        logger.error(f"[receipts] image storage failed: {e}")
        raise _error(500, "IMAGE_STORAGE_FAILED", "Failed to store receipt image")


@router.post("/{receipt_id}/reprocess")
async def reprocess(
    receipt_id: str,
    replace_existing: bool = Query(default=False, description="Delete and rebuild existing items"),
) -> dict:
    try:
        return await reprocess_receipt(receipt_id, replace_existing=replace_existing)
    except ReceiptNotFound as e:
        raise _error(404, "RECEIPT_NOT_FOUND", str(e))
    except ValidationFailure as e:
        raise _error(400, "VALIDATION_FAILED", str(e))
    except LockBusy as e:
        raise _error(409, "REPROCESS_IN_PROGRESS", str(e))


@router.get("")
async def get_receipts(
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> dict:
    return await list_receipts(limit=limit, offset=offset)


@router.get("/images/{filename}")
async def get_receipt_image(filename: str) -> FileResponse:
    path = get_image_store().get_path(filename)
    if path is None:
        raise _error(404, "IMAGE_NOT_FOUND", f"Image not found: {filename}")
    return FileResponse(path)


@router.get("/{receipt_id}")
async def get_receipt(receipt_id: str) -> dict:
    receipt = await get_receipt_detail(receipt_id)
    if receipt is None:
        raise _error(404, "RECEIPT_NOT_FOUND", f"Receipt {receipt_id} not found")
    return receipt
