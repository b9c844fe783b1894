"""API routes."""

from fastapi import APIRouter

from app.routes import comparisons, receipts, standardization

api_router = APIRouter()

# Receipt upload, reprocess and reads
api_router.include_router(receipts.router, prefix="/v1/receipts", tags=["receipts"])

# Price comparisons over persisted items
api_router.include_router(comparisons.router, prefix="/v1/comparisons", tags=["comparisons"])

# Standardization tooling (preview, patterns, feedback)
api_router.include_router(standardization.router, prefix="/v1/standardization", tags=["standardization"])
