"""Price comparison endpoints.

These never fail on data problems: the services log and return empty results.
"""

from fastapi import APIRouter, HTTPException, Query

from app.services.comparisons import (
    calculate_total_savings,
    group_by_category,
    load_cheaper_alternatives,
    load_store_comparisons,
    load_temporal_comparisons,
    load_unified_comparison,
)

router = APIRouter()


@router.get("/stores")
async def store_comparison() -> dict:
    """Same item at different stores."""
    comparisons = await load_store_comparisons()
    return {
        "comparisons": comparisons,
        "by_category": group_by_category(comparisons),
        "total_potential_savings": calculate_total_savings(comparisons),
    }


@router.get("/temporal")
async def temporal_comparison() -> dict:
    """Same item at the same store over time."""
    comparisons = await load_temporal_comparisons()
    return {"comparisons": comparisons, "by_category": group_by_category(comparisons)}


@router.get("/alternatives")
async def cheaper_alternatives() -> dict:
    comparisons = await load_cheaper_alternatives()
    return {
        "comparisons": comparisons,
        "total_potential_savings": calculate_total_savings(comparisons),
    }


@router.get("/unified")
async def unified_comparison(
    receipt_id: str | None = Query(default=None, description="Receipt to price-check"),
    days_lookback: int | None = Query(default=None, ge=1, le=365),
) -> dict:
    """Best known price for every item of one receipt."""
    if not receipt_id:
        raise HTTPException(
            status_code=400,
            detail={"code": "VALIDATION_FAILED", "message": "receipt_id is required"},
        )
    return await load_unified_comparison(receipt_id, days_lookback=days_lookback)
