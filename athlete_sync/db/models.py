from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, DateTime, Float, Index, Integer, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all database models."""


class GarminIntegration(Base):
    """Garmin OAuth credentials and connection state for one local athlete.

    Stores:
    - athlete_id: Local athlete identity (owned by the athlete CRUD layer)
    - remote_user_id: Garmin user ID (nullable, unique when set). Webhooks are
      routed to the athlete through this column, so it is nulled on
      deregistration/disconnect.
    - access_token / refresh_token: Fernet-encrypted, present only while connected
    - scope, expires_in_seconds, token_expires_at: grant metadata
    - connected_at, last_sync_at, disconnected_at: lifecycle timestamps
    - is_connected: authoritative connection flag
    - permissions: last known capability grant (JSON snapshot)
    - user_name, profile_id, user_profile, user_sleep, user_preferences:
      auxiliary data from the Garmin user-profile endpoint
    """

    __tablename__ = "garmin_integrations"

    athlete_id: Mapped[str] = mapped_column(String, primary_key=True, index=True)
    remote_user_id: Mapped[str | None] = mapped_column(String, nullable=True, unique=True)

    access_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    refresh_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    scope: Mapped[str | None] = mapped_column(String, nullable=True)
    expires_in_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)
    token_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    is_connected: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    connected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    disconnected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    permissions: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    # Profile data
    user_name: Mapped[str | None] = mapped_column(String, nullable=True)
    profile_id: Mapped[str | None] = mapped_column(String, nullable=True)
    user_profile: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    user_sleep: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    user_preferences: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )


# Lookups ignore case and surrounding whitespace, so uniqueness must too
Index(
    "uq_garmin_integrations_remote_user_id_normalized",
    func.lower(func.trim(GarminIntegration.remote_user_id)),
    unique=True,
)


class GarminActivity(Base):
    """Garmin activity records, built in two phases.

    Phase 1 (summary webhook) inserts the row with typed summary columns.
    Phase 2 (activity-details webhook) merges detail_payload and sets hydrated_at.

    source_activity_id is Garmin's own activityId and is unique across all
    rows: it is the join key between the two phases and the conflict target
    of the summary upsert.
    """

    __tablename__ = "garmin_activities"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    athlete_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    source_activity_id: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    source: Mapped[str] = mapped_column(String, nullable=False, default="garmin")

    # Summary (phase 1)
    activity_type: Mapped[str | None] = mapped_column(String, nullable=True)
    activity_name: Mapped[str | None] = mapped_column(String, nullable=True)
    start_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)
    distance_meters: Mapped[float | None] = mapped_column(Float, nullable=True)
    average_speed: Mapped[float | None] = mapped_column(Float, nullable=True)
    calories: Mapped[float | None] = mapped_column(Float, nullable=True)
    average_heart_rate: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_heart_rate: Mapped[int | None] = mapped_column(Integer, nullable=True)
    elevation_gain_meters: Mapped[float | None] = mapped_column(Float, nullable=True)
    steps: Mapped[int | None] = mapped_column(Integer, nullable=True)
    start_latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    start_longitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    end_latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    end_longitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    device_name: Mapped[str | None] = mapped_column(String, nullable=True)
    summary_payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    # Detail (phase 2)
    detail_payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    synced_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    hydrated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        Index("idx_garmin_activities_athlete_start_time", "athlete_id", "start_time"),
    )
