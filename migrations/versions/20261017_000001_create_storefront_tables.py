"""Create products, inventory and key-value tables.

Revision ID: 20261017_000001
Revises:
Create Date: 2026-10-17 00:00:01.000000
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261017_000001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)

    if not inspector.has_table("products"):
        op.create_table(
            "products",
            sa.Column("id", sa.String(), primary_key=True),
            sa.Column("slug", sa.String(), nullable=False, unique=True),
            sa.Column("name", sa.Text(), nullable=False),
            sa.Column("price_ref", sa.String(), nullable=True),
            sa.Column("unit_price", sa.Numeric(10, 2), nullable=True),
            sa.Column("is_bundle", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("created_at", sa.DateTime(), server_default=sa.text("now()"), nullable=False),
        )

    if not inspector.has_table("inventory"):
        op.create_table(
            "inventory",
            sa.Column(
                "product_id",
                sa.String(),
                sa.ForeignKey("products.id"),
                primary_key=True,
            ),
            sa.Column("quantity", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("updated_at", sa.DateTime(), server_default=sa.text("now()"), nullable=False),
        )

    if not inspector.has_table("kv_entries"):
        op.create_table(
            "kv_entries",
            sa.Column("key", sa.String(), primary_key=True),
            sa.Column("value", sa.Text(), nullable=False),
            sa.Column("expires_at", sa.DateTime(), nullable=True),
            sa.Column("created_at", sa.DateTime(), server_default=sa.text("now()"), nullable=False),
        )
        op.create_index("ix_kv_entries_expires_at", "kv_entries", ["expires_at"])

    if not inspector.has_table("kv_counters"):
        op.create_table(
            "kv_counters",
            sa.Column("name", sa.String(), primary_key=True),
            sa.Column("value", sa.BigInteger(), nullable=False, server_default=sa.text("0")),
            sa.Column("updated_at", sa.DateTime(), server_default=sa.text("now()"), nullable=False),
        )


def downgrade() -> None:
    op.drop_table("kv_counters")
    op.drop_index("ix_kv_entries_expires_at", table_name="kv_entries")
    op.drop_table("kv_entries")
    op.drop_table("inventory")
    op.drop_table("products")
