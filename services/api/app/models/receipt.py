"""Receipt and ReceiptItem models.

A receipt owns its line items; deleting a receipt cascades to its items
through the foreign key (ON DELETE CASCADE).
"""

from datetime import date, datetime
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import Date, DateTime, ForeignKey, Integer, Numeric, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.stores.postgres import Base


def generate_receipt_id() -> str:
    """Generate unique receipt ID."""
    return str(uuid4())


# Bounded text columns; parsers clamp to these before insert.
STORE_NAME_LENGTH = 200
PHONE_NUMBER_LENGTH = 50
PURCHASE_TIME_LENGTH = 20
PAYMENT_METHOD_LENGTH = 100
CATEGORY_LENGTH = 100


class Receipt(Base):
    """One scanned receipt."""

    __tablename__ = "receipts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_receipt_id)

    image_url: Mapped[str] = mapped_column(Text)

    # Store
    store_name: Mapped[str] = mapped_column(String(STORE_NAME_LENGTH), index=True, default="Unknown Store")
    store_location: Mapped[str | None] = mapped_column(Text)
    store_phone_number: Mapped[str | None] = mapped_column(String(PHONE_NUMBER_LENGTH))

    # Purchase
    purchase_date: Mapped[date | None] = mapped_column(Date, index=True)
    purchase_time: Mapped[str | None] = mapped_column(String(PURCHASE_TIME_LENGTH))

    # Totals
    subtotal: Mapped[Decimal | None] = mapped_column(Numeric(10, 2))
    taxes: Mapped[Decimal | None] = mapped_column(Numeric(10, 2))
    total_price: Mapped[Decimal | None] = mapped_column(Numeric(10, 2))
    total_discounts: Mapped[Decimal | None] = mapped_column(Numeric(10, 2))
    net_sales: Mapped[Decimal | None] = mapped_column(Numeric(10, 2))
    change_given: Mapped[Decimal | None] = mapped_column(Numeric(10, 2))
    payment_method: Mapped[str | None] = mapped_column(String(PAYMENT_METHOD_LENGTH))

    # Extraction output as received (JSON text, used by reprocessing)
    raw_receipt_json: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    items: Mapped[list["ReceiptItem"]] = relationship(
        back_populates="receipt",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="ReceiptItem.id",
    )


class ReceiptItem(Base):
    """One line item on a receipt."""

    __tablename__ = "receipt_items"

    id: Mapped[int] = mapped_column(primary_key=True)
    receipt_id: Mapped[str] = mapped_column(
        ForeignKey("receipts.id", ondelete="CASCADE"),
        index=True,
    )

    # Names: raw text, brand-qualified display name, brand-free comparison key
    original_item_name: Mapped[str] = mapped_column(Text)
    detailed_name: Mapped[str | None] = mapped_column(Text)
    standardized_item_name: Mapped[str | None] = mapped_column(Text, index=True)
    category: Mapped[str] = mapped_column(String(CATEGORY_LENGTH), default="Other")

    quantity: Mapped[int] = mapped_column(Integer, default=1)
    item_price: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    final_price: Mapped[Decimal | None] = mapped_column(Numeric(10, 2))
    regular_price: Mapped[Decimal | None] = mapped_column(Numeric(10, 2))

    # Alternative found at ingestion time (JSON object or NULL)
    cheaper_alternative_json: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    receipt: Mapped[Receipt] = relationship(back_populates="items")
