#!/usr/bin/env python3
"""Standardize receipt items that were stored without a standardized name.

Items are processed in batches of BACKFILL_BATCH (default 20) through the same
two-stage normalizer used at ingestion.

Run (local / cron):
  cd services/api
  python -m scripts.backfill_standardized_names

Optional env vars:
  BACKFILL_BATCH=20
  BACKFILL_MAX_BATCHES=50
"""

import asyncio
import logging
import os
import sys


# Ensure imports work when executed as a script/module
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.services.llm_client import close_llm_client  # noqa: E402
from app.services.standardization import BACKFILL_BATCH_SIZE, backfill_standardized_names  # noqa: E402
from app.stores.postgres import close_db, init_db, ping_db  # noqa: E402
from app.stores.redis import close_redis, init_redis  # noqa: E402

logger = logging.getLogger("uvicorn.error")


async def main() -> None:
    await init_db()
    await ping_db()
    try:
        await init_redis()
    except Exception as e:
        # Without Redis generic names are not pinned; the backfill still runs.
        logger.warning(f"[backfill] redis unavailable: {e}")

    try:
        batch_size = int(os.getenv("BACKFILL_BATCH", str(BACKFILL_BATCH_SIZE)))
        max_batches = int(os.getenv("BACKFILL_MAX_BATCHES", "50"))
        stats = await backfill_standardized_names(batch_size=batch_size, max_batches=max_batches)
        print({"ok": True, **stats})
    finally:
        await close_llm_client()
        await close_redis()
        await close_db()


if __name__ == "__main__":
    asyncio.run(main())
