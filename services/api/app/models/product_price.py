"""Per-store current price snapshot.

One row per (standardized item name, store). Refreshed from receipt history
by scripts/refresh_product_prices.py and searched as a fallback source for
cheaper alternatives.
"""

from datetime import datetime
from decimal import Decimal

from sqlalchemy import DateTime, Numeric, String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from app.stores.postgres import Base


class ProductPrice(Base):
    __tablename__ = "product_prices"
    __table_args__ = (
        UniqueConstraint("standardized_item_name", "store_name", name="uq_product_prices_item_store"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)

    standardized_item_name: Mapped[str] = mapped_column(Text, index=True)
    store_name: Mapped[str] = mapped_column(String(200))
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), index=True)

    # When the price was last seen on a receipt
    observed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )
