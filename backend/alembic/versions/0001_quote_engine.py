"""Quotes, sales orders, purchase orders, product conversions, stock balances,
audit log and event outbox.

Revision ID: 0001_quote_engine
Revises:
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa


revision = "0001_quote_engine"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # --- Sales quotes ---
    op.create_table(
        "sales_quote",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("quote_number", sa.String(length=64), nullable=False),
        sa.Column("contact_id", sa.String(length=64), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="USD"),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="draft"),
        sa.Column("quote_date", sa.Date(), nullable=False),
        sa.Column("valid_until", sa.Date(), nullable=True),
        sa.Column("estimated_eta", sa.String(length=128), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("internal_notes", sa.Text(), nullable=True),
        sa.Column("terms_and_conditions", sa.Text(), nullable=True),
        sa.Column("shipping_address", sa.JSON(), nullable=True),
        sa.Column("billing_address", sa.JSON(), nullable=True),
        sa.Column("subtotal_amount", sa.Numeric(18, 2), nullable=False, server_default="0"),
        sa.Column("discount_amount", sa.Numeric(18, 2), nullable=False, server_default="0"),
        sa.Column("tax_amount", sa.Numeric(18, 2), nullable=False, server_default="0"),
        sa.Column("total_amount", sa.Numeric(18, 2), nullable=False, server_default="0"),
        sa.Column("items_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_quantity", sa.Numeric(18, 6), nullable=False, server_default="0"),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rejected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("converted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("sales_order_id", sa.String(length=64), nullable=True),
        sa.Column("purchase_order_id", sa.String(length=64), nullable=True),
        sa.Column("duplicated_from_id", sa.String(length=36),
                  sa.ForeignKey("sales_quote.id", ondelete="SET NULL"), nullable=True),
        sa.Column("meta", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("quote_number", name="uq_sales_quote_quote_number"),
        sa.UniqueConstraint("sales_order_id", name="uq_sales_quote_sales_order_id"),
    )
    op.create_index("ix_sales_quote_quote_number", "sales_quote", ["quote_number"])
    op.create_index("ix_sales_quote_contact_id", "sales_quote", ["contact_id"])
    op.create_index("ix_sales_quote_status", "sales_quote", ["status"])
    op.create_index("ix_sales_quote_quote_date", "sales_quote", ["quote_date"])
    op.create_index("ix_sales_quote_valid_until", "sales_quote", ["valid_until"])
    op.create_index("ix_sales_quote_purchase_order_id", "sales_quote", ["purchase_order_id"])
    op.create_index("ix_sales_quote_status_valid", "sales_quote", ["status", "valid_until"])

    op.create_table(
        "sales_quote_line",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("quote_id", sa.String(length=36), sa.ForeignKey("sales_quote.id", ondelete="CASCADE"), nullable=False),
        sa.Column("line_number", sa.Integer(), nullable=False),
        sa.Column("product_id", sa.String(length=64), nullable=False),
        sa.Column("product_name", sa.String(length=256), nullable=True),
        sa.Column("product_sku", sa.String(length=64), nullable=True),
        sa.Column("quantity", sa.Numeric(18, 6), nullable=False),
        sa.Column("list_price", sa.Numeric(18, 4), nullable=False),
        sa.Column("unit_price", sa.Numeric(18, 4), nullable=False),
        sa.Column("discount_percentage", sa.Numeric(5, 2), nullable=False, server_default="0"),
        sa.Column("discount_amount", sa.Numeric(18, 2), nullable=False, server_default="0"),
        sa.Column("tax_rate", sa.Numeric(7, 4), nullable=False, server_default="0"),
        sa.Column("tax_amount", sa.Numeric(18, 2), nullable=False, server_default="0"),
        sa.Column("line_total", sa.Numeric(18, 2), nullable=False, server_default="0"),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("meta", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("quantity > 0", name="ck_quote_line_quantity_positive"),
        sa.CheckConstraint("unit_price >= 0", name="ck_quote_line_price_non_negative"),
        sa.CheckConstraint("list_price >= 0", name="ck_quote_line_list_price_non_negative"),
    )
    op.create_index("ix_sales_quote_line_quote_id", "sales_quote_line", ["quote_id"])
    op.create_index("ix_sales_quote_line_product_id", "sales_quote_line", ["product_id"])

    # --- Sales orders ---
    op.create_table(
        "sales_order",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("order_number", sa.String(length=64), nullable=False),
        sa.Column("order_date", sa.Date(), nullable=False),
        sa.Column("contact_id", sa.String(length=64), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="USD"),
        sa.Column("subtotal_amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("discount_amount", sa.Numeric(18, 2), nullable=False, server_default="0"),
        sa.Column("tax_amount", sa.Numeric(18, 2), nullable=False, server_default="0"),
        sa.Column("total_amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="PENDING"),
        sa.Column("source_type", sa.String(length=32), nullable=False, server_default="QUOTE_CONVERSION"),
        sa.Column("quote_id", sa.String(length=36), nullable=True),
        sa.Column("shipping_address", sa.JSON(), nullable=True),
        sa.Column("billing_address", sa.JSON(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("meta", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("order_number", name="uq_sales_order_order_number"),
    )
    op.create_index("ix_sales_order_order_number", "sales_order", ["order_number"])
    op.create_index("ix_sales_order_order_date", "sales_order", ["order_date"])
    op.create_index("ix_sales_order_contact_id", "sales_order", ["contact_id"])
    op.create_index("ix_sales_order_quote_id", "sales_order", ["quote_id"], unique=True)

    op.create_table(
        "sales_order_line",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("order_id", sa.String(length=36), sa.ForeignKey("sales_order.id", ondelete="CASCADE"), nullable=False),
        sa.Column("line_number", sa.Integer(), nullable=False),
        sa.Column("product_id", sa.String(length=64), nullable=False),
        sa.Column("quantity", sa.Numeric(18, 6), nullable=False),
        sa.Column("unit_price", sa.Numeric(18, 4), nullable=False),
        sa.Column("discount_amount", sa.Numeric(18, 2), nullable=False, server_default="0"),
        sa.Column("tax_amount", sa.Numeric(18, 2), nullable=False, server_default="0"),
        sa.Column("line_total", sa.Numeric(18, 2), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_sales_order_line_order_id", "sales_order_line", ["order_id"])
    op.create_index("ix_sales_order_line_product_id", "sales_order_line", ["product_id"])

    # --- Purchasing ---
    op.create_table(
        "purchase_order",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("po_number", sa.String(length=64), nullable=False),
        sa.Column("po_date", sa.Date(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="DRAFT"),
        sa.Column("source_type", sa.String(length=32), nullable=False, server_default="QUOTE_SHORTFALL"),
        sa.Column("quote_id", sa.String(length=36), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("meta", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("po_number", name="uq_purchase_order_po_number"),
    )
    op.create_index("ix_purchase_order_po_number", "purchase_order", ["po_number"])
    op.create_index("ix_purchase_order_po_date", "purchase_order", ["po_date"])
    op.create_index("ix_purchase_order_quote_id", "purchase_order", ["quote_id"])

    op.create_table(
        "purchase_order_line",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("purchase_order_id", sa.String(length=36),
                  sa.ForeignKey("purchase_order.id", ondelete="CASCADE"), nullable=False),
        sa.Column("line_number", sa.Integer(), nullable=False),
        sa.Column("product_id", sa.String(length=64), nullable=False),
        sa.Column("quantity", sa.Numeric(18, 6), nullable=False),
        sa.Column("required_quantity", sa.Numeric(18, 6), nullable=True),
        sa.Column("available_quantity", sa.Numeric(18, 6), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_purchase_order_line_purchase_order_id", "purchase_order_line", ["purchase_order_id"])
    op.create_index("ix_purchase_order_line_product_id", "purchase_order_line", ["product_id"])

    # --- Inventory ---
    op.create_table(
        "inventory_product_conversion",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("source_product_id", sa.String(length=64), nullable=False),
        sa.Column("destination_product_id", sa.String(length=64), nullable=False),
        sa.Column("conversion_factor", sa.Numeric(18, 6), nullable=False),
        sa.Column("waste_percentage", sa.Numeric(5, 2), nullable=True, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("source_product_id <> destination_product_id", name="ck_conversion_distinct_products"),
        sa.CheckConstraint("conversion_factor > 0", name="ck_conversion_factor_positive"),
        sa.CheckConstraint("waste_percentage >= 0 AND waste_percentage <= 100", name="ck_conversion_waste_range"),
    )
    op.create_index("ix_inventory_product_conversion_source_product_id", "inventory_product_conversion",
                    ["source_product_id"])
    op.create_index("ix_inventory_product_conversion_destination_product_id", "inventory_product_conversion",
                    ["destination_product_id"])
    op.create_index("ix_conversion_pair_active", "inventory_product_conversion",
                    ["source_product_id", "destination_product_id", "is_active"])

    op.create_table(
        "inventory_balance",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("product_id", sa.String(length=64), nullable=False),
        sa.Column("location_code", sa.String(length=64), nullable=False),
        sa.Column("state", sa.String(length=16), nullable=False, server_default="AVAILABLE"),
        sa.Column("qty", sa.Numeric(18, 6), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("product_id", "location_code", "state", name="uq_balance_product_location_state"),
    )
    op.create_index("ix_inventory_balance_product_id", "inventory_balance", ["product_id"])

    # --- Audit + outbox ---
    op.create_table(
        "sys_audit_log",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("actor", sa.String(length=128), nullable=False),
        sa.Column("action", sa.String(length=128), nullable=False),
        sa.Column("entity_type", sa.String(length=64), nullable=False),
        sa.Column("entity_id", sa.String(length=64), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_sys_audit_log_actor", "sys_audit_log", ["actor"])
    op.create_index("ix_sys_audit_log_action", "sys_audit_log", ["action"])
    op.create_index("ix_sys_audit_log_entity_type", "sys_audit_log", ["entity_type"])
    op.create_index("ix_sys_audit_log_entity_id", "sys_audit_log", ["entity_id"])
    op.create_index("ix_audit_entity_time", "sys_audit_log", ["entity_type", "entity_id", "created_at"])

    op.create_table(
        "outbox_event",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("topic", sa.String(length=128), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("available_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("delivered", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_outbox_event_topic", "outbox_event", ["topic"])
    op.create_index("ix_outbox_topic_created", "outbox_event", ["topic", "created_at"])
    op.create_index("ix_outbox_delivery", "outbox_event", ["delivered", "available_at"])


def downgrade():
    # indexes go with their tables
    op.drop_table("outbox_event")
    op.drop_table("sys_audit_log")
    op.drop_table("inventory_balance")
    op.drop_table("inventory_product_conversion")
    op.drop_table("purchase_order_line")
    op.drop_table("purchase_order")
    op.drop_table("sales_order_line")
    op.drop_table("sales_order")
    op.drop_table("sales_quote_line")
    op.drop_table("sales_quote")
