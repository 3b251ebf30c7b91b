from datetime import date, datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Float,
    ForeignKey,
    ForeignKeyConstraint,
    Identity,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base


SESSION_CAUSES = ("CRON", "ADMIN", "USER", "PUSH", "USER-TEST", "ADMIN-DRYRUN")


class MonitoredSystem(Base):
    __tablename__ = "systems"
    __table_args__ = (
        CheckConstraint(
            "status IN ('active','disabled','removed')",
            name="ck_systems_status",
        ),
        Index("ix_systems_vendor_site", "vendor_type", "vendor_site_id"),
    )

    id: Mapped[int] = mapped_column(BigInteger, Identity(always=False), primary_key=True)
    vendor_type: Mapped[str] = mapped_column(String(32), nullable=False)
    vendor_site_id: Mapped[str] = mapped_column(String(128), nullable=False)
    display_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default="active",
        server_default="active",
    )
    timezone_offset_min: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        server_default="0",
    )
    owner_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )


class Point(Base):
    __tablename__ = "points"
    __table_args__ = (
        UniqueConstraint("system_id", "point_index", name="uq_points_system_index"),
        UniqueConstraint("system_id", "point_key", name="uq_points_system_key"),
        Index("ix_points_system_metric", "system_id", "metric_type"),
    )

    id: Mapped[int] = mapped_column(BigInteger, Identity(always=False), primary_key=True)
    system_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("systems.id", ondelete="CASCADE"),
        nullable=False,
    )
    point_index: Mapped[int] = mapped_column(Integer, nullable=False)
    point_key: Mapped[str] = mapped_column(String(160), nullable=False)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    path_stem: Mapped[str | None] = mapped_column(String(160), nullable=True)
    metric_type: Mapped[str] = mapped_column(String(32), nullable=False)
    metric_unit: Mapped[str] = mapped_column(String(32), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )


class AcquisitionSession(Base):
    __tablename__ = "sessions"
    __table_args__ = (
        UniqueConstraint("id", "system_id", name="uq_sessions_id_system"),
        CheckConstraint(
            "cause IN ('CRON','ADMIN','USER','PUSH','USER-TEST','ADMIN-DRYRUN')",
            name="ck_sessions_cause",
        ),
        Index("ix_sessions_system_started", "system_id", "started_at"),
        Index("ix_sessions_system_label", "system_id", "label"),
    )

    id: Mapped[int] = mapped_column(BigInteger, Identity(always=False), primary_key=True)
    system_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("systems.id", ondelete="CASCADE"),
        nullable=False,
    )
    label: Mapped[str | None] = mapped_column(String(128), nullable=True)
    cause: Mapped[str] = mapped_column(String(16), nullable=False)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    successful: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    response: Mapped[dict | list | None] = mapped_column(JSONB, nullable=True)
    num_rows: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )


class PointReading(Base):
    __tablename__ = "point_readings"
    __table_args__ = (
        UniqueConstraint(
            "system_id",
            "point_index",
            "measurement_time",
            name="uq_point_readings_point_time",
        ),
        ForeignKeyConstraint(
            ["system_id", "point_index"],
            ["points.system_id", "points.point_index"],
            ondelete="CASCADE",
            name="fk_point_readings_point",
        ),
        ForeignKeyConstraint(
            ["session_id", "system_id"],
            ["sessions.id", "sessions.system_id"],
            name="fk_point_readings_session_system",
        ),
        CheckConstraint(
            "data_quality IN ('good','error','estimated','interpolated')",
            name="ck_point_readings_quality",
        ),
        Index("ix_point_readings_system_time", "system_id", "measurement_time"),
        Index("ix_point_readings_session", "session_id"),
    )

    id: Mapped[int] = mapped_column(BigInteger, Identity(always=False), primary_key=True)
    system_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    point_index: Mapped[int] = mapped_column(Integer, nullable=False)
    session_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    measurement_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    received_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    value: Mapped[float | None] = mapped_column(Float, nullable=True)
    value_str: Mapped[str | None] = mapped_column(Text, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    data_quality: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default="good",
        server_default="good",
    )


class PointReadingAgg5m(Base):
    __tablename__ = "point_readings_agg_5m"
    __table_args__ = (
        ForeignKeyConstraint(
            ["system_id", "point_index"],
            ["points.system_id", "points.point_index"],
            ondelete="CASCADE",
            name="fk_point_readings_agg_5m_point",
        ),
        CheckConstraint(
            "(EXTRACT(EPOCH FROM interval_end)::bigint % 300) = 0",
            name="ck_point_readings_agg_5m_grid",
        ),
        Index("ix_point_readings_agg_5m_system_end", "system_id", "interval_end"),
    )

    system_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    point_index: Mapped[int] = mapped_column(Integer, primary_key=True)
    interval_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), primary_key=True)
    avg: Mapped[float | None] = mapped_column(Float, nullable=True)
    min: Mapped[float | None] = mapped_column(Float, nullable=True)
    max: Mapped[float | None] = mapped_column(Float, nullable=True)
    last: Mapped[float | None] = mapped_column(Float, nullable=True)
    last_str: Mapped[str | None] = mapped_column(Text, nullable=True)
    delta: Mapped[float | None] = mapped_column(Float, nullable=True)
    sample_count: Mapped[int] = mapped_column(Integer, nullable=False)
    error_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    session_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )


class DailyAggregate(Base):
    __tablename__ = "readings_agg_1d"

    system_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("systems.id", ondelete="CASCADE"),
        primary_key=True,
    )
    day: Mapped[date] = mapped_column(Date, primary_key=True)

    solar_kwh: Mapped[float | None] = mapped_column(Float)
    load_kwh: Mapped[float | None] = mapped_column(Float)
    battery_in_kwh: Mapped[float | None] = mapped_column(Float)
    battery_out_kwh: Mapped[float | None] = mapped_column(Float)
    grid_in_kwh: Mapped[float | None] = mapped_column(Float)
    grid_out_kwh: Mapped[float | None] = mapped_column(Float)

    solar_power_min_w: Mapped[int | None] = mapped_column(Integer)
    solar_power_avg_w: Mapped[int | None] = mapped_column(Integer)
    solar_power_max_w: Mapped[int | None] = mapped_column(Integer)
    load_power_min_w: Mapped[int | None] = mapped_column(Integer)
    load_power_avg_w: Mapped[int | None] = mapped_column(Integer)
    load_power_max_w: Mapped[int | None] = mapped_column(Integer)
    battery_power_min_w: Mapped[int | None] = mapped_column(Integer)
    battery_power_avg_w: Mapped[int | None] = mapped_column(Integer)
    battery_power_max_w: Mapped[int | None] = mapped_column(Integer)
    grid_power_min_w: Mapped[int | None] = mapped_column(Integer)
    grid_power_avg_w: Mapped[int | None] = mapped_column(Integer)
    grid_power_max_w: Mapped[int | None] = mapped_column(Integer)

    battery_soc_min: Mapped[float | None] = mapped_column(Float)
    battery_soc_avg: Mapped[float | None] = mapped_column(Float)
    battery_soc_max: Mapped[float | None] = mapped_column(Float)
    battery_soc_end: Mapped[float | None] = mapped_column(Float)

    solar_lifetime_kwh: Mapped[float | None] = mapped_column(Float)
    load_lifetime_kwh: Mapped[float | None] = mapped_column(Float)
    battery_in_lifetime_kwh: Mapped[float | None] = mapped_column(Float)
    battery_out_lifetime_kwh: Mapped[float | None] = mapped_column(Float)
    grid_in_lifetime_kwh: Mapped[float | None] = mapped_column(Float)
    grid_out_lifetime_kwh: Mapped[float | None] = mapped_column(Float)

    interval_count: Mapped[int] = mapped_column(Integer, nullable=False)
    counter_resets: Mapped[list] = mapped_column(
        JSONB,
        nullable=False,
        default=list,
        server_default=text("'[]'::jsonb"),
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )


class PollingStatus(Base):
    __tablename__ = "polling_status"

    system_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("systems.id", ondelete="CASCADE"),
        primary_key=True,
    )
    last_poll_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_success_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_error_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_error: Mapped[str | None] = mapped_column(Text)
    last_response: Mapped[dict | list | None] = mapped_column(JSONB)
    consecutive_errors: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    total_polls: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    successful_polls: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    next_poll_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    schedule_hints: Mapped[dict] = mapped_column(
        JSONB,
        nullable=False,
        default=dict,
        server_default=text("'{}'::jsonb"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )


class LatestValue(Base):
    __tablename__ = "latest_values"

    system_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("systems.id", ondelete="CASCADE"),
        primary_key=True,
    )
    point_path: Mapped[str] = mapped_column(String(200), primary_key=True)
    point_index: Mapped[int] = mapped_column(Integer, nullable=False)
    value: Mapped[float | None] = mapped_column(Float)
    value_str: Mapped[str | None] = mapped_column(Text)
    measurement_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    received_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    metric_unit: Mapped[str] = mapped_column(String(32), nullable=False)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
