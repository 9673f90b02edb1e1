from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

SOURCE_GARMIN = "garmin"

CAPABILITY_READ_ACTIVITY = "read-activity"
CAPABILITY_WRITE_ACTIVITY = "write-activity"


def parse_scope(scope: str | None) -> frozenset[str]:
    """Parse Garmin's space-delimited scope string into a capability set.

    READ / CONNECT_READ / PARTNER_READ grant read-activity,
    WRITE / CONNECT_WRITE / PARTNER_WRITE grant write-activity.
    """
    capabilities: set[str] = set()
    for token in (scope or "").split():
        upper = token.strip().upper()
        if upper.endswith("READ"):
            capabilities.add(CAPABILITY_READ_ACTIVITY)
        elif upper.endswith("WRITE"):
            capabilities.add(CAPABILITY_WRITE_ACTIVITY)
    return frozenset(capabilities)


class TokenSet(BaseModel):
    """Token endpoint response (authorization_code or refresh_token grant)."""

    access_token: str
    refresh_token: str | None = None
    expires_in: int | None = None
    scope: str | None = None


class IntegrationRecord(BaseModel):
    """Decrypted view of one athlete's Garmin integration row."""

    athlete_id: str
    remote_user_id: str | None = None
    access_token: str | None = None
    refresh_token: str | None = None
    scope: str | None = None
    expires_in_seconds: int | None = None
    token_expires_at: datetime | None = None
    is_connected: bool = False
    connected_at: datetime | None = None
    last_sync_at: datetime | None = None
    disconnected_at: datetime | None = None
    permissions: dict[str, Any] | None = None
    user_name: str | None = None
    profile_id: str | None = None
    user_profile: dict[str, Any] | None = None
    user_sleep: dict[str, Any] | None = None
    user_preferences: dict[str, Any] | None = None

    @property
    def capabilities(self) -> frozenset[str]:
        return parse_scope(self.scope)


class IntegrationStatus(BaseModel):
    """Read model exposed to the athlete CRUD layer. Never carries tokens."""

    athlete_id: str
    connected: bool
    capabilities: list[str] = Field(default_factory=list)
    scope: str | None = None
    permissions: dict[str, Any] | None = None
    last_sync_at: datetime | None = None
    connected_at: datetime | None = None
    disconnected_at: datetime | None = None
    remote_user_id: str | None = None


class GarminProfile(BaseModel):
    """Parsed user-profile endpoint response."""

    user_id: str | None = None
    user_name: str | None = None
    profile_id: str | None = None
    user_data: dict[str, Any] = Field(default_factory=dict)
    user_sleep: dict[str, Any] = Field(default_factory=dict)
    preferences: dict[str, Any] = Field(default_factory=dict)


class NormalizedSummary(BaseModel):
    """Typed activity summary produced by the normalizer.

    athlete_id and source_activity_id are optional here so that the
    validator, not the model, decides and names the missing field.
    """

    athlete_id: str | None = None
    source_activity_id: str | None = None
    source: str = SOURCE_GARMIN
    activity_type: str | None = None
    activity_name: str | None = None
    start_time: datetime | None = None
    duration_seconds: int | None = None
    distance_meters: float | None = None
    average_speed: float | None = None
    calories: float | None = None
    average_heart_rate: int | None = None
    max_heart_rate: int | None = None
    elevation_gain_meters: float | None = None
    steps: int | None = None
    start_latitude: float | None = None
    start_longitude: float | None = None
    end_latitude: float | None = None
    end_longitude: float | None = None
    device_name: str | None = None
    summary_payload: dict[str, Any] | None = None


class NormalizedDetail(BaseModel):
    """Detail payload for phase-2 hydration plus its join-key candidates."""

    activity_id: str | None = None
    summary_activity_id: str | None = None
    detail_payload: dict[str, Any] = Field(default_factory=dict)

    @property
    def join_key_candidates(self) -> list[str]:
        """Candidates in match order: top-level id first, nested summary id second."""
        candidates: list[str] = []
        for key in (self.activity_id, self.summary_activity_id):
            if key and key not in candidates:
                candidates.append(key)
        return candidates


class ActivityRecord(BaseModel):
    """Stored Garmin activity."""

    id: str
    athlete_id: str
    source_activity_id: str
    source: str = SOURCE_GARMIN
    activity_type: str | None = None
    activity_name: str | None = None
    start_time: datetime | None = None
    duration_seconds: int | None = None
    distance_meters: float | None = None
    average_speed: float | None = None
    calories: float | None = None
    average_heart_rate: int | None = None
    max_heart_rate: int | None = None
    elevation_gain_meters: float | None = None
    steps: int | None = None
    start_latitude: float | None = None
    start_longitude: float | None = None
    end_latitude: float | None = None
    end_longitude: float | None = None
    device_name: str | None = None
    summary_payload: dict[str, Any] | None = None
    detail_payload: dict[str, Any] | None = None
    synced_at: datetime | None = None
    hydrated_at: datetime | None = None
    last_updated_at: datetime | None = None

    model_config = {"from_attributes": True}

    @property
    def state(self) -> Literal["summary", "hydrated"]:
        return "hydrated" if self.hydrated_at is not None else "summary"


SUMMARY_FIELDS: tuple[str, ...] = (
    "activity_type",
    "activity_name",
    "start_time",
    "duration_seconds",
    "distance_meters",
    "average_speed",
    "calories",
    "average_heart_rate",
    "max_heart_rate",
    "elevation_gain_meters",
    "steps",
    "start_latitude",
    "start_longitude",
    "end_latitude",
    "end_longitude",
    "device_name",
    "summary_payload",
)
