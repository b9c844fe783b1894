#!/usr/bin/env python3
"""Rebuild the product_prices snapshot from receipt history.

Keeps one row per (standardized item name, store) holding the most recently
observed price. The snapshot is the fallback source when searching cheaper
alternatives at ingestion time.

Run (local / cron):
  cd services/api
  python -m scripts.refresh_product_prices
"""

import asyncio
import os
import sys


# Ensure imports work when executed as a script/module
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.services.standardization import refresh_product_prices  # noqa: E402
from app.stores.postgres import close_db, init_db, ping_db  # noqa: E402


async def main() -> None:
    await init_db()
    await ping_db()
    try:
        written = await refresh_product_prices()
        print({"ok": True, "product_prices": written})
    finally:
        await close_db()


if __name__ == "__main__":
    asyncio.run(main())
