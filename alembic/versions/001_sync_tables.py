"""Sync tables: queue, change log, item sync status, dry run results.

The OPMS catalog tables are owned by OPMS itself and already exist in
production; they are created here only when absent so a fresh development
database can run the whole engine.

Revision ID: 001_sync_tables
Revises:
Create Date: 2026-10-17

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "001_sync_tables"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _tz() -> sa.DateTime:
    return sa.DateTime(timezone=True)


def _create_opms_tables(existing: set[str]) -> None:
    if "opms_vendors" not in existing:
        op.create_table(
            "opms_vendors",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column("name", sa.String(200), nullable=False),
            sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("archived", sa.Boolean(), nullable=False, server_default=sa.false()),
        )

    if "opms_netsuite_vendor_mapping" not in existing:
        op.create_table(
            "opms_netsuite_vendor_mapping",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column(
                "opms_vendor_id",
                sa.Integer(),
                sa.ForeignKey("opms_vendors.id"),
                nullable=False,
                unique=True,
            ),
            sa.Column("opms_vendor_name", sa.String(200), nullable=False),
            sa.Column("netsuite_vendor_id", sa.String(50), nullable=False),
            sa.Column("netsuite_vendor_name", sa.String(200), nullable=False),
            sa.Column("match_method", sa.String(50), nullable=True),
            sa.Column("confidence", sa.Float(), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        )

    if "opms_products" not in existing:
        op.create_table(
            "opms_products",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column("name", sa.String(300), nullable=True),
            sa.Column("archived", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("product_type", sa.String(1), nullable=False, server_default="R"),
            sa.Column("width", sa.Numeric(10, 3), nullable=True),
            sa.Column("vrepeat", sa.Numeric(10, 3), nullable=True),
            sa.Column("hrepeat", sa.Numeric(10, 3), nullable=True),
            sa.Column("vendor_id", sa.Integer(), sa.ForeignKey("opms_vendors.id"), nullable=True),
            sa.Column("vendor_product_name", sa.String(300), nullable=True),
            sa.Column("prop_65", sa.String(1), nullable=True),
            sa.Column("ab_2998_compliant", sa.String(1), nullable=True),
            sa.Column("tariff_code", sa.String(50), nullable=True),
            sa.Column("front_content", sa.Text(), nullable=True),
            sa.Column("back_content", sa.Text(), nullable=True),
            sa.Column("abrasion", sa.Text(), nullable=True),
            sa.Column("firecodes", sa.Text(), nullable=True),
            sa.Column("finishes", sa.JSON(), nullable=True),
            sa.Column("cleanings", sa.JSON(), nullable=True),
            sa.Column("origins", sa.JSON(), nullable=True),
            sa.Column("uses", sa.JSON(), nullable=True),
            sa.Column("updated_at", _tz(), server_default=sa.func.now()),
            sa.Column("updated_by", sa.Integer(), nullable=True),
        )

    if "opms_items" not in existing:
        op.create_table(
            "opms_items",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column("product_id", sa.Integer(), sa.ForeignKey("opms_products.id"), nullable=False),
            sa.Column("code", sa.String(20), nullable=True),
            sa.Column("archived", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("vendor_code", sa.String(100), nullable=True),
            sa.Column("vendor_color", sa.String(200), nullable=True),
            sa.Column("colors", sa.JSON(), nullable=True),
            sa.Column("updated_at", _tz(), server_default=sa.func.now()),
            sa.Column("updated_by", sa.Integer(), nullable=True),
        )
        op.create_index("ix_opms_items_product_id", "opms_items", ["product_id"])
        op.create_index("ix_opms_items_code", "opms_items", ["code"])

    if "opms_product_prices" not in existing:
        op.create_table(
            "opms_product_prices",
            sa.Column(
                "product_id",
                sa.Integer(),
                sa.ForeignKey("opms_products.id"),
                primary_key=True,
            ),
            sa.Column("p_res_cut", sa.Numeric(12, 2), nullable=True),
            sa.Column("p_hosp_roll", sa.Numeric(12, 2), nullable=True),
            sa.Column("cost_cut", sa.Numeric(12, 2), nullable=True),
            sa.Column("cost_roll", sa.Numeric(12, 2), nullable=True),
            sa.Column("updated_at", _tz(), server_default=sa.func.now()),
            sa.Column("updated_by", sa.Integer(), nullable=True),
        )


def upgrade() -> None:
    existing = set(sa.inspect(op.get_bind()).get_table_names())
    _create_opms_tables(existing)

    op.create_table(
        "opms_sync_queue",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("entity_type", sa.String(20), nullable=False),
        sa.Column("entity_id", sa.Integer(), nullable=False),
        sa.Column("event_type", sa.String(10), nullable=False, server_default="UPDATE"),
        sa.Column("priority", sa.String(10), nullable=False, server_default="NORMAL"),
        sa.Column("status", sa.String(20), nullable=False, server_default="PENDING"),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("event_data", sa.JSON(), nullable=True),
        sa.Column("next_attempt_at", _tz(), nullable=True),
        sa.Column("worker_id", sa.String(100), nullable=True),
        sa.Column("coalesce_key", sa.String(60), nullable=True),
        sa.Column("created_at", _tz(), nullable=False, server_default=sa.func.now()),
        sa.Column("started_at", _tz(), nullable=True),
        sa.Column("processed_at", _tz(), nullable=True),
        sa.UniqueConstraint("coalesce_key", name="uq_sync_queue_coalesce_key"),
    )
    op.create_index("ix_sync_queue_claim", "opms_sync_queue", ["status", "priority", "created_at"])
    op.create_index(
        "ix_sync_queue_entity", "opms_sync_queue", ["entity_type", "entity_id", "status"]
    )

    op.create_table(
        "opms_change_log",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("table_name", sa.String(50), nullable=False),
        sa.Column("entity_type", sa.String(20), nullable=False),
        sa.Column("entity_id", sa.Integer(), nullable=False),
        sa.Column("event_type", sa.String(10), nullable=False),
        sa.Column("change_source", sa.String(30), nullable=False),
        sa.Column("actor_id", sa.Integer(), nullable=True),
        sa.Column("changed_fields", sa.JSON(), nullable=True),
        sa.Column("job_created", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("job_id", sa.Integer(), nullable=True),
        sa.Column("suppressed_reason", sa.String(100), nullable=True),
        sa.Column("created_at", _tz(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_change_log_entity", "opms_change_log", ["entity_type", "entity_id"])

    op.create_table(
        "opms_item_sync_status",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("entity_type", sa.String(20), nullable=False),
        sa.Column("entity_id", sa.Integer(), nullable=False),
        sa.Column("remote_id", sa.String(50), nullable=True),
        sa.Column("last_outcome", sa.String(20), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("last_job_id", sa.Integer(), nullable=True),
        sa.Column("last_synced_at", _tz(), nullable=True),
        sa.Column("last_inbound_at", _tz(), nullable=True),
        sa.Column("last_inbound_remote_modified", _tz(), nullable=True),
        sa.Column("updated_at", _tz(), server_default=sa.func.now()),
        sa.UniqueConstraint("entity_type", "entity_id", name="uq_item_sync_status_entity"),
    )

    op.create_table(
        "opms_dry_run_results",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("entity_type", sa.String(20), nullable=False),
        sa.Column("entity_id", sa.Integer(), nullable=False),
        sa.Column("operation", sa.String(10), nullable=False),
        sa.Column("remote_id", sa.String(50), nullable=True),
        sa.Column("request_payload", sa.JSON(), nullable=True),
        sa.Column("simulated_response", sa.JSON(), nullable=True),
        sa.Column("created_at", _tz(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index(
        "ix_opms_dry_run_results_entity_id", "opms_dry_run_results", ["entity_id"]
    )


def downgrade() -> None:
    op.drop_index("ix_opms_dry_run_results_entity_id", table_name="opms_dry_run_results")
    op.drop_table("opms_dry_run_results")
    op.drop_table("opms_item_sync_status")
    op.drop_index("ix_change_log_entity", table_name="opms_change_log")
    op.drop_table("opms_change_log")
    op.drop_index("ix_sync_queue_entity", table_name="opms_sync_queue")
    op.drop_index("ix_sync_queue_claim", table_name="opms_sync_queue")
    op.drop_table("opms_sync_queue")
