"""Standardization patterns and user feedback.

Patterns are SQL LIKE strings (lowercased) that map raw receipt text to a
standardized (generic) name and category. The first mapping stored for a
pattern wins; later inserts of the same pattern are ignored.
"""

from datetime import datetime

from sqlalchemy import DateTime, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from app.stores.postgres import Base


class StandardizationPattern(Base):
    __tablename__ = "item_standardization"

    id: Mapped[int] = mapped_column(primary_key=True)

    # Lowercased LIKE pattern, e.g. "%trpnca oj%"
    original_pattern: Mapped[str] = mapped_column(Text, unique=True)

    standardized_name: Mapped[str] = mapped_column(Text, index=True)
    category: Mapped[str] = mapped_column(String(100), default="Other")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class StandardizationFeedback(Base):
    __tablename__ = "user_standardization_feedback"

    id: Mapped[int] = mapped_column(primary_key=True)

    user_id: Mapped[str | None] = mapped_column(String(100), index=True)
    original_item_name: Mapped[str] = mapped_column(Text)
    current_standardized_name: Mapped[str | None] = mapped_column(Text)
    suggested_standardized_name: Mapped[str | None] = mapped_column(Text)

    # "approval" | "correction" | "suggestion"
    feedback_type: Mapped[str] = mapped_column(String(20), index=True)
    # What was done with it, e.g. "updated_standardization", "suggestion_rejected", "pattern_exists"
    action_taken: Mapped[str] = mapped_column(String(50))

    # LLM verdict or enhancement (JSON text)
    ai_suggestion_json: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
