"""initial_receipts_schema

Revision ID: 1f4e2a7c9b30
Revises:
Create Date: 2026-10-19
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "1f4e2a7c9b30"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "receipts",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("image_url", sa.Text(), nullable=False),
        sa.Column("store_name", sa.String(length=200), nullable=False),
        sa.Column("store_location", sa.Text(), nullable=True),
        sa.Column("store_phone_number", sa.String(length=50), nullable=True),
        sa.Column("purchase_date", sa.Date(), nullable=True),
        sa.Column("purchase_time", sa.String(length=20), nullable=True),
        sa.Column("subtotal", sa.Numeric(10, 2), nullable=True),
        sa.Column("taxes", sa.Numeric(10, 2), nullable=True),
        sa.Column("total_price", sa.Numeric(10, 2), nullable=True),
        sa.Column("total_discounts", sa.Numeric(10, 2), nullable=True),
        sa.Column("net_sales", sa.Numeric(10, 2), nullable=True),
        sa.Column("change_given", sa.Numeric(10, 2), nullable=True),
        sa.Column("payment_method", sa.String(length=100), nullable=True),
        sa.Column("raw_receipt_json", sa.Text(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_receipts_store_name"), "receipts", ["store_name"], unique=False)
    op.create_index(op.f("ix_receipts_purchase_date"), "receipts", ["purchase_date"], unique=False)

    op.create_table(
        "receipt_items",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("receipt_id", sa.String(length=36), nullable=False),
        sa.Column("original_item_name", sa.Text(), nullable=False),
        sa.Column("detailed_name", sa.Text(), nullable=True),
        sa.Column("standardized_item_name", sa.Text(), nullable=True),
        sa.Column("category", sa.String(length=100), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("item_price", sa.Numeric(10, 2), nullable=False),
        sa.Column("final_price", sa.Numeric(10, 2), nullable=True),
        sa.Column("regular_price", sa.Numeric(10, 2), nullable=True),
        sa.Column("cheaper_alternative_json", sa.Text(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.ForeignKeyConstraint(["receipt_id"], ["receipts.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_receipt_items_receipt_id"), "receipt_items", ["receipt_id"], unique=False)
    op.create_index(
        op.f("ix_receipt_items_standardized_item_name"),
        "receipt_items",
        ["standardized_item_name"],
        unique=False,
    )

    op.create_table(
        "item_standardization",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("original_pattern", sa.Text(), nullable=False),
        sa.Column("standardized_name", sa.Text(), nullable=False),
        sa.Column("category", sa.String(length=100), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("original_pattern"),
    )
    op.create_index(
        op.f("ix_item_standardization_standardized_name"),
        "item_standardization",
        ["standardized_name"],
        unique=False,
    )

    op.create_table(
        "product_prices",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("standardized_item_name", sa.Text(), nullable=False),
        sa.Column("store_name", sa.String(length=200), nullable=False),
        sa.Column("price", sa.Numeric(10, 2), nullable=False),
        sa.Column("observed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("standardized_item_name", "store_name", name="uq_product_prices_item_store"),
    )
    op.create_index(
        op.f("ix_product_prices_standardized_item_name"),
        "product_prices",
        ["standardized_item_name"],
        unique=False,
    )
    op.create_index(op.f("ix_product_prices_price"), "product_prices", ["price"], unique=False)

    op.create_table(
        "user_standardization_feedback",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.String(length=100), nullable=True),
        sa.Column("original_item_name", sa.Text(), nullable=False),
        sa.Column("current_standardized_name", sa.Text(), nullable=True),
        sa.Column("suggested_standardized_name", sa.Text(), nullable=True),
        sa.Column("feedback_type", sa.String(length=20), nullable=False),
        sa.Column("action_taken", sa.String(length=50), nullable=False),
        sa.Column("ai_suggestion_json", sa.Text(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_user_standardization_feedback_user_id"),
        "user_standardization_feedback",
        ["user_id"],
        unique=False,
    )
    op.create_index(
        op.f("ix_user_standardization_feedback_feedback_type"),
        "user_standardization_feedback",
        ["feedback_type"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index(
        op.f("ix_user_standardization_feedback_feedback_type"), table_name="user_standardization_feedback"
    )
    op.drop_index(op.f("ix_user_standardization_feedback_user_id"), table_name="user_standardization_feedback")
    op.drop_table("user_standardization_feedback")

    op.drop_index(op.f("ix_product_prices_price"), table_name="product_prices")
    op.drop_index(op.f("ix_product_prices_standardized_item_name"), table_name="product_prices")
    op.drop_table("product_prices")

    op.drop_index(op.f("ix_item_standardization_standardized_name"), table_name="item_standardization")
    op.drop_table("item_standardization")

    op.drop_index(op.f("ix_receipt_items_standardized_item_name"), table_name="receipt_items")
    op.drop_index(op.f("ix_receipt_items_receipt_id"), table_name="receipt_items")
    op.drop_table("receipt_items")

    op.drop_index(op.f("ix_receipts_purchase_date"), table_name="receipts")
    op.drop_index(op.f("ix_receipts_store_name"), table_name="receipts")
    op.drop_table("receipts")
