"""Activity Upsert Engine.

Phase 1 (summary) is a single INSERT ... ON CONFLICT DO UPDATE on the
unique source_activity_id, so concurrent deliveries of the same activity
converge on one row without application locking. Phase 2 (detail) merges
into an existing row only; it never creates one.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from contextlib import AbstractContextManager
from datetime import datetime, timezone
from typing import Any, Protocol

from loguru import logger
from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from athlete_sync.db.models import GarminActivity
from athlete_sync.db.session import get_session
from athlete_sync.integrations.garmin.errors import ActivityValidationError
from athlete_sync.integrations.garmin.schemas import SUMMARY_FIELDS, ActivityRecord, NormalizedSummary

SessionFactory = Callable[[], AbstractContextManager[Session]]


class ActivityStore(Protocol):
    """Storage interface for Garmin activity records."""

    def upsert_summary(self, summary: NormalizedSummary) -> ActivityRecord: ...

    def merge_detail(self, source_activity_id: str, detail_payload: dict[str, Any]) -> ActivityRecord | None: ...

    def get(self, source_activity_id: str) -> ActivityRecord | None: ...

    def list_for_athlete(self, athlete_id: str) -> list[ActivityRecord]: ...


def _dialect_insert(session: Session):
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert
    if dialect == "sqlite":
        return sqlite_insert
    raise NotImplementedError(f"Activity upsert is not supported on dialect {dialect!r}")


class SqlActivityStore:
    """SQLAlchemy-backed ActivityStore over the garmin_activities table."""

    def __init__(self, session_factory: SessionFactory = get_session) -> None:
        self._session_factory = session_factory

    def upsert_summary(self, summary: NormalizedSummary) -> ActivityRecord:
        """Create the activity, or overwrite its summary fields (last write wins).

        athlete_id, detail_payload, hydrated_at and synced_at of an existing
        row are never modified.

        Raises:
            ActivityValidationError: If athlete_id or source_activity_id is missing
        """
        if not summary.athlete_id:
            raise ActivityValidationError("athlete_id")
        if not summary.source_activity_id:
            raise ActivityValidationError("source_activity_id")

        now = datetime.now(timezone.utc)
        summary_values = {field: getattr(summary, field) for field in SUMMARY_FIELDS}

        with self._session_factory() as session:
            insert = _dialect_insert(session)
            stmt = insert(GarminActivity).values(
                id=str(uuid.uuid4()),
                athlete_id=summary.athlete_id,
                source_activity_id=summary.source_activity_id,
                source=summary.source,
                synced_at=now,
                last_updated_at=now,
                **summary_values,
            )
            update_set = {field: stmt.excluded[field] for field in SUMMARY_FIELDS}
            update_set["last_updated_at"] = stmt.excluded.last_updated_at
            session.execute(
                stmt.on_conflict_do_update(index_elements=[GarminActivity.source_activity_id], set_=update_set)
            )

            row = session.execute(
                select(GarminActivity)
                .where(GarminActivity.source_activity_id == summary.source_activity_id)
                .execution_options(populate_existing=True)
            ).scalar_one()
            record = ActivityRecord.model_validate(row)

        logger.info(
            f"[GARMIN_INGEST] Upserted activity {record.source_activity_id} for athlete_id={record.athlete_id} "
            f"(state={record.state})"
        )
        return record

    def merge_detail(self, source_activity_id: str, detail_payload: dict[str, Any]) -> ActivityRecord | None:
        """Shallow-merge detail data into an existing activity.

        The matched row is locked for the merge. hydrated_at keeps its first
        value on repeated deliveries.

        Returns:
            The hydrated record, or None (and no write) if no activity matches
        """
        with self._session_factory() as session:
            row = session.execute(
                select(GarminActivity).where(GarminActivity.source_activity_id == source_activity_id).with_for_update()
            ).scalar_one_or_none()
            if row is None:
                return None

            now = datetime.now(timezone.utc)
            row.detail_payload = {**(row.detail_payload or {}), **detail_payload}
            if row.hydrated_at is None:
                row.hydrated_at = now
            row.last_updated_at = now
            session.flush()
            session.refresh(row)
            record = ActivityRecord.model_validate(row)

        logger.info(f"[GARMIN_INGEST] Hydrated activity {source_activity_id} with keys={sorted(detail_payload)}")
        return record

    def get(self, source_activity_id: str) -> ActivityRecord | None:
        with self._session_factory() as session:
            row = session.execute(
                select(GarminActivity).where(GarminActivity.source_activity_id == source_activity_id)
            ).scalar_one_or_none()
            return ActivityRecord.model_validate(row) if row else None

    def list_for_athlete(self, athlete_id: str) -> list[ActivityRecord]:
        with self._session_factory() as session:
            rows = session.execute(
                select(GarminActivity)
                .where(GarminActivity.athlete_id == athlete_id)
                .order_by(GarminActivity.start_time.desc())
            ).scalars()
            return [ActivityRecord.model_validate(row) for row in rows]
