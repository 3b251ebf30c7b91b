from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import text
from sqlalchemy.orm import Session

logger = logging.getLogger("app.integrity")

_CROSS_SYSTEM_TABLES = ("point_readings", "point_readings_agg_5m")


@dataclass(frozen=True)
class CrossSystemRefs:
    table: str
    rows: int
    sample: list[dict[str, int]]


def find_cross_system_session_refs(db: Session, *, sample_limit: int = 20) -> list[CrossSystemRefs]:
    findings: list[CrossSystemRefs] = []
    for table in _CROSS_SYSTEM_TABLES:
        count = db.scalar(
            text(
                f"""
                SELECT COUNT(*)
                FROM {table} r
                JOIN sessions s ON s.id = r.session_id
                WHERE s.system_id <> r.system_id
                """
            )
        )
        rows = db.execute(
            text(
                f"""
                SELECT r.system_id, r.point_index, r.session_id, s.system_id AS session_system_id
                FROM {table} r
                JOIN sessions s ON s.id = r.session_id
                WHERE s.system_id <> r.system_id
                ORDER BY r.system_id, r.point_index
                LIMIT :limit
                """
            ),
            {"limit": sample_limit},
        ).mappings()
        findings.append(
            CrossSystemRefs(
                table=table,
                rows=int(count or 0),
                sample=[{key: int(value) for key, value in row.items()} for row in rows],
            )
        )
    return findings


def repair_cross_system_session_refs(db: Session) -> dict[str, int]:
    repaired: dict[str, int] = {}
    for table in _CROSS_SYSTEM_TABLES:
        result = db.execute(
            text(
                f"""
                UPDATE {table} r
                SET session_id = NULL
                FROM sessions s
                WHERE s.id = r.session_id
                  AND s.system_id <> r.system_id
                """
            )
        )
        repaired[table] = max(0, result.rowcount or 0)
    if any(repaired.values()):
        logger.warning("nulled cross-system session references %s", repaired)
    return repaired
