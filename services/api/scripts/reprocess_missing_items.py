#!/usr/bin/env python3
"""Rebuild items for receipts that were stored without any line items.

Uses the raw receipt JSON kept on each receipt and the regular reprocess path
(standardization, alternative search, pattern learning). Receipts that already
have items are left alone.

Run (local / cron):
  cd services/api
  python -m scripts.reprocess_missing_items

Optional env vars:
  REPROCESS_LIMIT=100
"""

import asyncio
import logging
import os
import sys


# Ensure imports work when executed as a script/module
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.services.ingestion import ReceiptNotFound, ValidationFailure, reprocess_receipt  # noqa: E402
from app.services.llm_client import close_llm_client  # noqa: E402
from app.stores.postgres import close_db, get_session, init_db, ping_db  # noqa: E402
from app.stores.redis import LockBusy, close_redis, init_redis  # noqa: E402
from app.stores.repositories import SqlReceiptRepository  # noqa: E402

logger = logging.getLogger("uvicorn.error")


async def main() -> None:
    await init_db()
    await ping_db()
    try:
        await init_redis()
    except Exception as e:
        # Reprocess locks are skipped without Redis.
        logger.warning(f"[reprocess] redis unavailable: {e}")

    try:
        limit = int(os.getenv("REPROCESS_LIMIT", "100"))
        async with get_session() as session:
            receipt_ids = await SqlReceiptRepository(session).receipts_without_items(limit=limit)

        totals = {"candidates": len(receipt_ids), "reprocessed": 0, "items": 0, "failed": 0}
        for receipt_id in receipt_ids:
            try:
                result = await reprocess_receipt(receipt_id)
            except (ReceiptNotFound, ValidationFailure, LockBusy) as e:
                logger.warning(f"[reprocess] receipt={receipt_id} skipped: {e}")
                totals["failed"] += 1
                continue
            if result["status"] == "reprocessed":
                totals["reprocessed"] += 1
                totals["items"] += result["items_count"]

        print({"ok": True, **totals})
    finally:
        await close_llm_client()
        await close_redis()
        await close_db()


if __name__ == "__main__":
    asyncio.run(main())
