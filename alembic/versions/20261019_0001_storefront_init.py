"""Initialize storefront schema.

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19 00:00:00.000000
"""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def _table_exists(bind: sa.engine.Connection, table_name: str) -> bool:
    inspector = sa.inspect(bind)
    return table_name in set(inspector.get_table_names())


def _has_index(bind: sa.engine.Connection, table_name: str, index_name: str) -> bool:
    inspector = sa.inspect(bind)
    if table_name not in set(inspector.get_table_names()):
        return False
    return any(item.get("name") == index_name for item in inspector.get_indexes(table_name))


def upgrade() -> None:
    bind = op.get_bind()

    if not _table_exists(bind, "store_plans"):
        op.create_table(
            "store_plans",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("name", sa.String(length=120), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("price_monthly_cents", sa.Integer(), nullable=False),
            sa.Column("price_annually_cents", sa.Integer(), nullable=False),
            sa.Column("features", sa.JSON(), nullable=False),
            sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("discord_role_id", sa.String(length=64), nullable=True),
            sa.Column("price_ref_monthly", sa.String(length=128), nullable=True),
            sa.Column("price_ref_annually", sa.String(length=128), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
    if not _has_index(bind, "store_plans", op.f("ix_store_plans_name")):
        op.create_index(op.f("ix_store_plans_name"), "store_plans", ["name"], unique=True)
    if not _has_index(bind, "store_plans", op.f("ix_store_plans_active")):
        op.create_index(op.f("ix_store_plans_active"), "store_plans", ["active"], unique=False)

    if not _table_exists(bind, "store_orders"):
        op.create_table(
            "store_orders",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("user_id", sa.String(length=64), nullable=False),
            sa.Column("plan_id", sa.String(length=36), nullable=False),
            sa.Column(
                "plan_price_tier",
                sa.Enum("MONTHLY", "ANNUALLY", name="planpricetier", native_enum=False),
                nullable=False,
            ),
            sa.Column("quantity", sa.Integer(), nullable=False),
            sa.Column(
                "status",
                sa.Enum(
                    "PENDING",
                    "COMPLETED",
                    "CANCELLED",
                    "FAILED",
                    "REFUNDED",
                    name="orderstatus",
                    native_enum=False,
                ),
                nullable=False,
            ),
            sa.Column("total_amount_cents", sa.Integer(), nullable=False),
            sa.Column("currency", sa.String(length=8), nullable=False),
            sa.Column("external_payment_ref", sa.String(length=128), nullable=True),
            sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["plan_id"], ["store_plans.id"]),
            sa.PrimaryKeyConstraint("id"),
        )
    for index_name, columns in [
        (op.f("ix_store_orders_user_id"), ["user_id"]),
        (op.f("ix_store_orders_plan_id"), ["plan_id"]),
        (op.f("ix_store_orders_external_payment_ref"), ["external_payment_ref"]),
        ("ix_store_orders_user_status", ["user_id", "status"]),
    ]:
        if not _has_index(bind, "store_orders", index_name):
            op.create_index(index_name, "store_orders", columns, unique=False)

    if not _table_exists(bind, "identity_account_links"):
        op.create_table(
            "identity_account_links",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("user_id", sa.String(length=64), nullable=False),
            sa.Column("provider", sa.String(length=32), nullable=False),
            sa.Column("provider_account_id", sa.String(length=128), nullable=False),
            sa.Column("display_name", sa.String(length=120), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("user_id", "provider", name="uq_identity_account_links_user_provider"),
        )
    for index_name, columns in [
        (op.f("ix_identity_account_links_user_id"), ["user_id"]),
        (op.f("ix_identity_account_links_provider"), ["provider"]),
    ]:
        if not _has_index(bind, "identity_account_links", index_name):
            op.create_index(index_name, "identity_account_links", columns, unique=False)


def downgrade() -> None:
    bind = op.get_bind()

    for table_name, index_name in [
        ("identity_account_links", op.f("ix_identity_account_links_provider")),
        ("identity_account_links", op.f("ix_identity_account_links_user_id")),
        ("store_orders", "ix_store_orders_user_status"),
        ("store_orders", op.f("ix_store_orders_external_payment_ref")),
        ("store_orders", op.f("ix_store_orders_plan_id")),
        ("store_orders", op.f("ix_store_orders_user_id")),
        ("store_plans", op.f("ix_store_plans_active")),
        ("store_plans", op.f("ix_store_plans_name")),
    ]:
        if _has_index(bind, table_name, index_name):
            op.drop_index(index_name, table_name=table_name)

    for table_name in ["identity_account_links", "store_orders", "store_plans"]:
        if _table_exists(bind, table_name):
            op.drop_table(table_name)
