"""telemetry core schema

Revision ID: 20261018_0001
Revises:
Create Date: 2026-10-18 09:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "20261018_0001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps(*, updated: bool = False) -> list[sa.Column]:
    columns = [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]
    if updated:
        columns.append(
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)
        )
    return columns


def upgrade() -> None:
    op.create_table(
        "systems",
        sa.Column("id", sa.BigInteger(), sa.Identity(always=False), nullable=False),
        sa.Column("vendor_type", sa.String(length=32), nullable=False),
        sa.Column("vendor_site_id", sa.String(length=128), nullable=False),
        sa.Column("display_name", sa.String(length=255), nullable=True),
        sa.Column("status", sa.String(length=16), server_default="active", nullable=False),
        sa.Column("timezone_offset_min", sa.Integer(), server_default="0", nullable=False),
        sa.Column("owner_ref", sa.String(length=255), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("status IN ('active','disabled','removed')", name="ck_systems_status"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_systems_vendor_site", "systems", ["vendor_type", "vendor_site_id"])

    op.create_table(
        "points",
        sa.Column("id", sa.BigInteger(), sa.Identity(always=False), nullable=False),
        sa.Column("system_id", sa.BigInteger(), nullable=False),
        sa.Column("point_index", sa.Integer(), nullable=False),
        sa.Column("point_key", sa.String(length=160), nullable=False),
        sa.Column("display_name", sa.String(length=255), nullable=False),
        sa.Column("path_stem", sa.String(length=160), nullable=True),
        sa.Column("metric_type", sa.String(length=32), nullable=False),
        sa.Column("metric_unit", sa.String(length=32), nullable=False),
        sa.Column("active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["system_id"], ["systems.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("system_id", "point_index", name="uq_points_system_index"),
        sa.UniqueConstraint("system_id", "point_key", name="uq_points_system_key"),
    )
    op.create_index("ix_points_system_metric", "points", ["system_id", "metric_type"])

    op.create_table(
        "sessions",
        sa.Column("id", sa.BigInteger(), sa.Identity(always=False), nullable=False),
        sa.Column("system_id", sa.BigInteger(), nullable=False),
        sa.Column("label", sa.String(length=128), nullable=True),
        sa.Column("cause", sa.String(length=16), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("successful", sa.Boolean(), nullable=True),
        sa.Column("error_code", sa.String(length=64), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("response", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("num_rows", sa.Integer(), server_default="0", nullable=False),
        *_timestamps(),
        sa.CheckConstraint(
            "cause IN ('CRON','ADMIN','USER','PUSH','USER-TEST','ADMIN-DRYRUN')",
            name="ck_sessions_cause",
        ),
        sa.ForeignKeyConstraint(["system_id"], ["systems.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("id", "system_id", name="uq_sessions_id_system"),
    )
    op.create_index("ix_sessions_system_started", "sessions", ["system_id", "started_at"])
    op.create_index("ix_sessions_system_label", "sessions", ["system_id", "label"])

    op.create_table(
        "point_readings",
        sa.Column("id", sa.BigInteger(), sa.Identity(always=False), nullable=False),
        sa.Column("system_id", sa.BigInteger(), nullable=False),
        sa.Column("point_index", sa.Integer(), nullable=False),
        sa.Column("session_id", sa.BigInteger(), nullable=True),
        sa.Column("measurement_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("received_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("value", sa.Float(), nullable=True),
        sa.Column("value_str", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("data_quality", sa.String(length=16), server_default="good", nullable=False),
        sa.CheckConstraint(
            "data_quality IN ('good','error','estimated','interpolated')",
            name="ck_point_readings_quality",
        ),
        sa.ForeignKeyConstraint(
            ["system_id", "point_index"],
            ["points.system_id", "points.point_index"],
            ondelete="CASCADE",
            name="fk_point_readings_point",
        ),
        sa.ForeignKeyConstraint(
            ["session_id", "system_id"],
            ["sessions.id", "sessions.system_id"],
            name="fk_point_readings_session_system",
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "system_id",
            "point_index",
            "measurement_time",
            name="uq_point_readings_point_time",
        ),
    )
    op.execute(
        "CREATE INDEX ix_point_readings_system_time ON point_readings (system_id, measurement_time DESC)"
    )
    op.create_index("ix_point_readings_session", "point_readings", ["session_id"])

    op.create_table(
        "point_readings_agg_5m",
        sa.Column("system_id", sa.BigInteger(), nullable=False),
        sa.Column("point_index", sa.Integer(), nullable=False),
        sa.Column("interval_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("avg", sa.Float(), nullable=True),
        sa.Column("min", sa.Float(), nullable=True),
        sa.Column("max", sa.Float(), nullable=True),
        sa.Column("last", sa.Float(), nullable=True),
        sa.Column("last_str", sa.Text(), nullable=True),
        sa.Column("delta", sa.Float(), nullable=True),
        sa.Column("sample_count", sa.Integer(), nullable=False),
        sa.Column("error_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("session_id", sa.BigInteger(), nullable=True),
        *_timestamps(updated=True),
        sa.CheckConstraint(
            "(EXTRACT(EPOCH FROM interval_end)::bigint % 300) = 0",
            name="ck_point_readings_agg_5m_grid",
        ),
        sa.ForeignKeyConstraint(
            ["system_id", "point_index"],
            ["points.system_id", "points.point_index"],
            ondelete="CASCADE",
            name="fk_point_readings_agg_5m_point",
        ),
        sa.PrimaryKeyConstraint("system_id", "point_index", "interval_end"),
    )
    op.create_index(
        "ix_point_readings_agg_5m_system_end",
        "point_readings_agg_5m",
        ["system_id", "interval_end"],
    )

    op.create_table(
        "readings_agg_1d",
        sa.Column("system_id", sa.BigInteger(), nullable=False),
        sa.Column("day", sa.Date(), nullable=False),
        *[
            sa.Column(name, sa.Float(), nullable=True)
            for name in (
                "solar_kwh",
                "load_kwh",
                "battery_in_kwh",
                "battery_out_kwh",
                "grid_in_kwh",
                "grid_out_kwh",
            )
        ],
        *[
            sa.Column(f"{role}_power_{stat}_w", sa.Integer(), nullable=True)
            for role in ("solar", "load", "battery", "grid")
            for stat in ("min", "avg", "max")
        ],
        *[
            sa.Column(f"battery_soc_{stat}", sa.Float(), nullable=True)
            for stat in ("min", "avg", "max", "end")
        ],
        *[
            sa.Column(f"{role}_lifetime_kwh", sa.Float(), nullable=True)
            for role in ("solar", "load", "battery_in", "battery_out", "grid_in", "grid_out")
        ],
        sa.Column("interval_count", sa.Integer(), nullable=False),
        sa.Column(
            "counter_resets",
            postgresql.JSONB(astext_type=sa.Text()),
            server_default=sa.text("'[]'::jsonb"),
            nullable=False,
        ),
        sa.Column("version", sa.Integer(), server_default="1", nullable=False),
        *_timestamps(updated=True),
        sa.ForeignKeyConstraint(["system_id"], ["systems.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("system_id", "day"),
    )

    op.create_table(
        "polling_status",
        sa.Column("system_id", sa.BigInteger(), nullable=False),
        sa.Column("last_poll_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_success_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("last_response", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("consecutive_errors", sa.Integer(), server_default="0", nullable=False),
        sa.Column("total_polls", sa.Integer(), server_default="0", nullable=False),
        sa.Column("successful_polls", sa.Integer(), server_default="0", nullable=False),
        sa.Column("next_poll_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "schedule_hints",
            postgresql.JSONB(astext_type=sa.Text()),
            server_default=sa.text("'{}'::jsonb"),
            nullable=False,
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["system_id"], ["systems.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("system_id"),
    )

    op.create_table(
        "latest_values",
        sa.Column("system_id", sa.BigInteger(), nullable=False),
        sa.Column("point_path", sa.String(length=200), nullable=False),
        sa.Column("point_index", sa.Integer(), nullable=False),
        sa.Column("value", sa.Float(), nullable=True),
        sa.Column("value_str", sa.Text(), nullable=True),
        sa.Column("measurement_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("received_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("metric_unit", sa.String(length=32), nullable=False),
        sa.Column("display_name", sa.String(length=255), nullable=False),
        sa.ForeignKeyConstraint(["system_id"], ["systems.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("system_id", "point_path"),
    )


def downgrade() -> None:
    op.drop_table("latest_values")
    op.drop_table("polling_status")
    op.drop_table("readings_agg_1d")
    op.drop_index("ix_point_readings_agg_5m_system_end", table_name="point_readings_agg_5m")
    op.drop_table("point_readings_agg_5m")
    op.drop_index("ix_point_readings_session", table_name="point_readings")
    op.execute("DROP INDEX IF EXISTS ix_point_readings_system_time")
    op.drop_table("point_readings")
    op.drop_index("ix_sessions_system_label", table_name="sessions")
    op.drop_index("ix_sessions_system_started", table_name="sessions")
    op.drop_table("sessions")
    op.drop_index("ix_points_system_metric", table_name="points")
    op.drop_table("points")
    op.drop_index("ix_systems_vendor_site", table_name="systems")
    op.drop_table("systems")
