"""Normalization layer for Garmin activity webhooks.

Converts Garmin summary and detail payloads into NormalizedSummary /
NormalizedDetail. Pure mapper functions with no side effects.

Garmin has shipped several field names for the same concept over time
(e.g. calories vs activeKilocalories), so every field is read from a fixed
precedence list and the first present value wins. Absent or unparsable
values map to None, never to a default.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from datetime import datetime, timezone
from typing import Any

from loguru import logger

from athlete_sync.integrations.garmin.errors import ActivityValidationError
from athlete_sync.integrations.garmin.schemas import NormalizedDetail, NormalizedSummary

ACTIVITY_ID_KEYS = ("activityId", "activity_id")
REMOTE_USER_ID_KEYS = ("userId", "user_id", "userIdString", "garminUserId")

_NAME_KEYS = ("activityName", "name")
_START_EPOCH_KEYS = ("startTimeInSeconds",)
_START_ISO_KEYS = ("startTimeGMT", "startTimeLocal")
_DURATION_KEYS = ("durationInSeconds", "duration", "elapsedDuration")
_DISTANCE_KEYS = ("distanceInMeters", "distance")
_SPEED_KEYS = ("averageSpeedInMetersPerSecond", "averageSpeed")
_CALORIE_KEYS = ("calories", "activeKilocalories", "totalKilocalories")
_AVG_HR_KEYS = ("averageHeartRateInBeatsPerMinute", "averageHeartRate", "averageHR")
_MAX_HR_KEYS = ("maxHeartRateInBeatsPerMinute", "maxHeartRate", "maxHR")
_ELEVATION_KEYS = ("totalElevationGainInMeters", "elevationGain", "totalElevationGain")
_STEPS_KEYS = ("steps", "totalSteps")
_START_LAT_KEYS = ("startingLatitudeInDegree", "startLatitude")
_START_LON_KEYS = ("startingLongitudeInDegree", "startLongitude")
_END_LAT_KEYS = ("endingLatitudeInDegree", "endLatitude")
_END_LON_KEYS = ("endingLongitudeInDegree", "endLongitude")
_TYPE_KEYS = ("activityType", "sportType")

# Keys that identify the owner rather than describe the activity
_ROUTING_KEYS = REMOTE_USER_ID_KEYS + ("userAccessToken",)

_CONSUMED_SUMMARY_KEYS = frozenset(
    ACTIVITY_ID_KEYS
    + _ROUTING_KEYS
    + _NAME_KEYS
    + _START_EPOCH_KEYS
    + _START_ISO_KEYS
    + _DURATION_KEYS
    + _DISTANCE_KEYS
    + _SPEED_KEYS
    + _CALORIE_KEYS
    + _AVG_HR_KEYS
    + _MAX_HR_KEYS
    + _ELEVATION_KEYS
    + _STEPS_KEYS
    + _START_LAT_KEYS
    + _START_LON_KEYS
    + _END_LAT_KEYS
    + _END_LON_KEYS
    + _TYPE_KEYS
    + ("deviceName",)
)


def first_present(payload: Mapping[str, Any], keys: Sequence[str]) -> Any:
    """Return the first value that is present and not None/empty string."""
    for key in keys:
        value = payload.get(key)
        if value is not None and value != "":
            return value
    return None


def _coerce(value: Any, cast: Callable[[Any], Any], field: str) -> Any:
    if value is None:
        return None
    try:
        return cast(value)
    except (TypeError, ValueError):
        logger.debug(f"[GARMIN_NORMALIZE] Ignoring unparsable {field}={value!r}")
        return None


def _to_int(value: Any) -> int:
    return int(round(float(value)))


def _to_id(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def extract_activity_id(payload: Mapping[str, Any]) -> str | None:
    """Garmin's own activity identifier, as a string join key."""
    return _to_id(first_present(payload, ACTIVITY_ID_KEYS))


def extract_remote_user_id(payload: Mapping[str, Any], fallback: Any = None) -> str | None:
    """Item-level Garmin user id, falling back to the batch root value."""
    return _to_id(first_present(payload, REMOTE_USER_ID_KEYS)) or _to_id(fallback)


def _parse_start_time(payload: Mapping[str, Any]) -> datetime | None:
    epoch = first_present(payload, _START_EPOCH_KEYS)
    if epoch is not None:
        try:
            return datetime.fromtimestamp(float(epoch), tz=timezone.utc)
        except (TypeError, ValueError, OverflowError, OSError):
            logger.debug(f"[GARMIN_NORMALIZE] Ignoring unparsable startTimeInSeconds={epoch!r}")

    iso_value = first_present(payload, _START_ISO_KEYS)
    if isinstance(iso_value, str):
        try:
            parsed = datetime.fromisoformat(iso_value.replace("Z", "+00:00"))
        except ValueError:
            logger.debug(f"[GARMIN_NORMALIZE] Ignoring unparsable start time {iso_value!r}")
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def _parse_activity_type(payload: Mapping[str, Any]) -> str | None:
    raw_type = first_present(payload, _TYPE_KEYS)
    if isinstance(raw_type, Mapping):
        raw_type = raw_type.get("typeKey")
    if raw_type is None:
        return None
    return str(raw_type).strip().lower() or None


def _parse_device_name(payload: Mapping[str, Any]) -> str | None:
    name = payload.get("deviceName")
    if not name:
        meta = payload.get("deviceMetaData")
        if isinstance(meta, Mapping):
            name = meta.get("deviceName")
    return str(name) if name else None


def normalize_activity_summary(payload: Mapping[str, Any], athlete_id: str | None) -> NormalizedSummary:
    """Normalize one Garmin activity summary webhook item.

    Args:
        payload: Raw summary item
        athlete_id: Resolved local athlete ID

    Returns:
        NormalizedSummary; unknown keys are retained in summary_payload
    """
    leftovers = {key: value for key, value in payload.items() if key not in _CONSUMED_SUMMARY_KEYS}

    normalized = NormalizedSummary(
        athlete_id=athlete_id,
        source_activity_id=extract_activity_id(payload),
        activity_type=_parse_activity_type(payload),
        activity_name=_coerce(first_present(payload, _NAME_KEYS), str, "activityName"),
        start_time=_parse_start_time(payload),
        duration_seconds=_coerce(first_present(payload, _DURATION_KEYS), _to_int, "duration"),
        distance_meters=_coerce(first_present(payload, _DISTANCE_KEYS), float, "distance"),
        average_speed=_coerce(first_present(payload, _SPEED_KEYS), float, "averageSpeed"),
        calories=_coerce(first_present(payload, _CALORIE_KEYS), float, "calories"),
        average_heart_rate=_coerce(first_present(payload, _AVG_HR_KEYS), _to_int, "averageHeartRate"),
        max_heart_rate=_coerce(first_present(payload, _MAX_HR_KEYS), _to_int, "maxHeartRate"),
        elevation_gain_meters=_coerce(first_present(payload, _ELEVATION_KEYS), float, "elevationGain"),
        steps=_coerce(first_present(payload, _STEPS_KEYS), _to_int, "steps"),
        start_latitude=_coerce(first_present(payload, _START_LAT_KEYS), float, "startLatitude"),
        start_longitude=_coerce(first_present(payload, _START_LON_KEYS), float, "startLongitude"),
        end_latitude=_coerce(first_present(payload, _END_LAT_KEYS), float, "endLatitude"),
        end_longitude=_coerce(first_present(payload, _END_LON_KEYS), float, "endLongitude"),
        device_name=_parse_device_name(payload),
        summary_payload=leftovers or None,
    )

    logger.debug(
        f"[GARMIN_NORMALIZE] Summary activity_id={normalized.source_activity_id}, "
        f"type={normalized.activity_type}, duration={normalized.duration_seconds}s"
    )
    return normalized


def validate_summary(summary: NormalizedSummary) -> list[str]:
    """Reject summaries that cannot be stored, and collect soft warnings.

    Raises:
        ActivityValidationError: naming the missing mandatory field

    Returns:
        Warnings for missing core (but optional) data
    """
    if not summary.athlete_id:
        raise ActivityValidationError("athlete_id")
    if not summary.source_activity_id:
        raise ActivityValidationError("source_activity_id")

    warnings: list[str] = []
    if not summary.activity_type:
        warnings.append("activity_type is missing")
    if summary.start_time is None:
        warnings.append("start_time is missing")
    if summary.duration_seconds is None:
        warnings.append("duration_seconds is missing")
    return warnings


def _pick(sources: Sequence[Mapping[str, Any]], keys: Sequence[str]) -> Any:
    for source in sources:
        value = first_present(source, keys)
        if value is not None:
            return value
    return None


def _drop_none(values: dict[str, Any]) -> dict[str, Any] | None:
    cleaned = {key: value for key, value in values.items() if value is not None}
    return cleaned or None


def normalize_activity_detail(payload: Mapping[str, Any]) -> NormalizedDetail:
    """Normalize one Garmin activity-details webhook item.

    Deep metrics are read from the item itself first, then from its nested
    ``summary`` object (where Garmin puts cadence/power aggregates).
    """
    nested = payload.get("summary")
    summary: Mapping[str, Any] = nested if isinstance(nested, Mapping) else {}
    sources = (payload, summary)

    detail: dict[str, Any] = {}

    laps = _pick(sources, ("lapSummaries", "laps"))
    if laps:
        detail["lap_summaries"] = laps

    splits = _pick(sources, ("splitSummaries", "splits"))
    if splits:
        detail["split_summaries"] = splits

    cadence = _drop_none(
        {
            "average": _pick(sources, ("averageRunCadenceInStepsPerMinute", "averageRunCadence", "averageCadence", "averageBikeCadenceInRoundsPerMinute")),
            "max": _pick(sources, ("maxRunCadenceInStepsPerMinute", "maxRunCadence", "maxCadence", "maxBikeCadenceInRoundsPerMinute")),
        }
    )
    if cadence:
        detail["cadence"] = cadence

    power = _drop_none(
        {
            "average": _pick(sources, ("averagePowerInWatts", "averagePower")),
            "max": _pick(sources, ("maxPowerInWatts", "maxPower")),
        }
    )
    if power:
        detail["power"] = power

    training_effect = _drop_none(
        {
            "aerobic": _pick(sources, ("aerobicTrainingEffect",)),
            "anaerobic": _pick(sources, ("anaerobicTrainingEffect",)),
            "label": _pick(sources, ("trainingEffectLabel",)),
        }
    )
    if training_effect:
        detail["training_effect"] = training_effect

    zones = _pick(sources, ("timeInHeartRateZones", "heartRateZones"))
    if zones:
        detail["heart_rate_zones"] = zones

    samples = _pick(sources, ("samples",))
    if samples:
        detail["samples"] = samples

    return NormalizedDetail(
        activity_id=extract_activity_id(payload),
        summary_activity_id=extract_activity_id(summary),
        detail_payload=detail,
    )
