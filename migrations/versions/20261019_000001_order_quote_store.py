"""Order documents and append-only quote revisions.

Revision ID: 20261019_000001
Revises:
Create Date: 2026-10-19 00:00:01
"""

from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261019_000001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


ORDER_STATUSES = ("pending_approval", "in_review", "in_preparation", "on_its_way", "delivered", "rejected")


def _table_exists(bind, table_name: str) -> bool:
    inspector = sa.inspect(bind)
    return bool(inspector.has_table(table_name))


def upgrade() -> None:
    bind = op.get_bind()

    if not _table_exists(bind, "orders"):
        status_values = ",".join(f"'{status}'" for status in ORDER_STATUSES)
        op.create_table(
            "orders",
            sa.Column("id", sa.Text(), nullable=False),
            sa.Column("buyer_id", sa.Text(), nullable=False),
            sa.Column("status", sa.Text(), nullable=False),
            sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("1")),
            sa.Column("payload", sa.Text(), nullable=False),
            sa.Column("created_at", sa.Text(), nullable=False),
            sa.Column("updated_at", sa.Text(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
            sa.CheckConstraint(f"status IN ({status_values})", name="ck_orders_status"),
        )
        op.create_index("idx_orders_status", "orders", ["status"], unique=False)
        op.create_index("idx_orders_buyer", "orders", ["buyer_id"], unique=False)

    if not _table_exists(bind, "quote_revisions"):
        op.create_table(
            "quote_revisions",
            sa.Column("order_id", sa.Text(), nullable=False),
            sa.Column("supplier_id", sa.Text(), nullable=False),
            sa.Column("revision", sa.Integer(), nullable=False),
            sa.Column("payload", sa.Text(), nullable=False),
            sa.Column("submitted_at", sa.Text(), nullable=False),
            sa.PrimaryKeyConstraint("order_id", "supplier_id", "revision"),
        )
        op.create_index("idx_quote_revisions_order", "quote_revisions", ["order_id"], unique=False)


def downgrade() -> None:
    bind = op.get_bind()
    if _table_exists(bind, "quote_revisions"):
        op.drop_index("idx_quote_revisions_order", table_name="quote_revisions")
        op.drop_table("quote_revisions")
    if _table_exists(bind, "orders"):
        op.drop_index("idx_orders_buyer", table_name="orders")
        op.drop_index("idx_orders_status", table_name="orders")
        op.drop_table("orders")
