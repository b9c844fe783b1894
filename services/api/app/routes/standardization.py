"""Standardization tooling endpoints.

POST /v1/standardization/preview  - standardize names without storing patterns
POST /v1/standardization/insert   - standardize names and store new patterns
GET  /v1/standardization/patterns - stored patterns matching a text
POST /v1/standardization/feedback - user feedback on a standardized name
"""

import logging

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, Field

from app.services.ingestion import ReceiptNotFound
from app.services.standardization import (
    FeedbackRequest,
    feedback_request,
    lookup_request,
    standardize_request,
)

router = APIRouter()
logger = logging.getLogger("uvicorn.error")


class StandardizeRequest(BaseModel):
    """Either item_names or receipt_id (or both)."""

    item_names: list[str] = Field(default_factory=list, max_length=200)
    receipt_id: str | None = None


async def _standardize(request: StandardizeRequest, *, insert_patterns: bool) -> dict:
    if not request.item_names and not request.receipt_id:
        raise HTTPException(
            status_code=400,
            detail={"code": "VALIDATION_FAILED", "message": "item_names or receipt_id is required"},
        )
    try:
        return await standardize_request(
            item_names=request.item_names,
            receipt_id=request.receipt_id,
            insert_patterns=insert_patterns,
        )
    except ReceiptNotFound as e:
        raise HTTPException(status_code=404, detail={"code": "RECEIPT_NOT_FOUND", "message": str(e)})


@router.post("/preview")
async def preview(request: StandardizeRequest) -> dict:
    return await _standardize(request, insert_patterns=False)


@router.post("/insert")
async def insert(request: StandardizeRequest) -> dict:
    return await _standardize(request, insert_patterns=True)


@router.get("/patterns")
async def patterns(text: str = Query(..., min_length=1, description="Item text to match")) -> dict:
    return await lookup_request(text)


@router.post("/feedback")
async def feedback(request: FeedbackRequest) -> dict:
    return await feedback_request(request)
