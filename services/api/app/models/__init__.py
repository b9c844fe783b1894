"""SQLAlchemy ORM models.

Models represent database tables:
- receipts / receipt_items: Scanned receipts and their line items
- item_standardization: LIKE pattern -> standardized name + category
- product_prices: Per-store current price snapshot
- user_standardization_feedback: User approvals/corrections/suggestions
"""

from app.models.receipt import Receipt, ReceiptItem
from app.models.standardization import StandardizationFeedback, StandardizationPattern
from app.models.product_price import ProductPrice

__all__ = [
    "Receipt",
    "ReceiptItem",
    "StandardizationPattern",
    "StandardizationFeedback",
    "ProductPrice",
]
