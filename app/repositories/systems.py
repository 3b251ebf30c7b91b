from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import text
from sqlalchemy.orm import Session


@dataclass(frozen=True)
class SystemRecord:
    id: int
    vendor_type: str
    vendor_site_id: str
    status: str
    timezone_offset_min: int
    owner_ref: str | None = None
    display_name: str | None = None
    last_poll_time: datetime | None = None
    schedule_hints: dict[str, Any] = field(default_factory=dict)


_SYSTEM_COLUMNS = """
    s.id,
    s.vendor_type,
    s.vendor_site_id,
    s.status,
    s.timezone_offset_min,
    s.owner_ref,
    s.display_name,
    ps.last_poll_time,
    ps.schedule_hints
"""


def list_active_systems(db: Session) -> list[SystemRecord]:
    rows = db.execute(
        text(
            f"""
            SELECT {_SYSTEM_COLUMNS}
            FROM systems s
            LEFT JOIN polling_status ps ON ps.system_id = s.id
            WHERE s.status = 'active'
            ORDER BY s.id ASC
            """
        )
    ).mappings()
    return [_row_to_system(row) for row in rows]


def get_system(db: Session, *, system_id: int) -> SystemRecord | None:
    row = db.execute(
        text(
            f"""
            SELECT {_SYSTEM_COLUMNS}
            FROM systems s
            LEFT JOIN polling_status ps ON ps.system_id = s.id
            WHERE s.id = :system_id
            """
        ),
        {"system_id": system_id},
    ).mappings().first()
    if row is None:
        return None
    return _row_to_system(row)


def get_system_by_vendor_site_id(
    db: Session,
    *,
    vendor_type: str,
    vendor_site_id: str,
) -> SystemRecord | None:
    # site ids may repeat across systems; prefer the oldest active one
    row = db.execute(
        text(
            f"""
            SELECT {_SYSTEM_COLUMNS}
            FROM systems s
            LEFT JOIN polling_status ps ON ps.system_id = s.id
            WHERE s.vendor_type = :vendor_type
              AND s.vendor_site_id = :vendor_site_id
              AND s.status <> 'removed'
            ORDER BY (s.status = 'active') DESC, s.id ASC
            LIMIT 1
            """
        ),
        {"vendor_type": vendor_type, "vendor_site_id": vendor_site_id},
    ).mappings().first()
    if row is None:
        return None
    return _row_to_system(row)


def _row_to_system(row: Any) -> SystemRecord:
    hints = row.get("schedule_hints")
    return SystemRecord(
        id=int(row["id"]),
        vendor_type=str(row["vendor_type"]),
        vendor_site_id=str(row["vendor_site_id"]),
        status=str(row["status"]),
        timezone_offset_min=int(row["timezone_offset_min"] or 0),
        owner_ref=row.get("owner_ref"),
        display_name=row.get("display_name"),
        last_poll_time=row.get("last_poll_time"),
        schedule_hints=dict(hints) if isinstance(hints, dict) else {},
    )
