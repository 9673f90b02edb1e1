from datetime import datetime, timezone

import pytest

from athlete_sync.integrations.garmin.errors import ActivityValidationError
from athlete_sync.integrations.garmin.normalize import (
    extract_remote_user_id,
    normalize_activity_detail,
    normalize_activity_summary,
    validate_summary,
)


def test_summary_maps_garmin_push_fields():
    raw = {
        "userId": "u-123",
        "summaryId": "g-999",
        "activityId": 999,
        "activityName": "Morning Run",
        "activityType": "RUNNING",
        "startTimeInSeconds": 1736496000,
        "durationInSeconds": 3600,
        "distanceInMeters": 10000.5,
        "averageSpeedInMetersPerSecond": 2.78,
        "activeKilocalories": 650,
        "averageHeartRateInBeatsPerMinute": 145,
        "maxHeartRateInBeatsPerMinute": 172,
        "totalElevationGainInMeters": 120,
        "steps": 9800,
        "startingLatitudeInDegree": 40.1,
        "startingLongitudeInDegree": -105.2,
        "deviceName": "Forerunner 965",
    }

    summary = normalize_activity_summary(raw, athlete_id="athlete-1")

    assert summary.athlete_id == "athlete-1"
    assert summary.source_activity_id == "999"
    assert summary.source == "garmin"
    assert summary.activity_type == "running"
    assert summary.activity_name == "Morning Run"
    assert summary.start_time == datetime(2025, 1, 10, 8, 0, tzinfo=timezone.utc)
    assert summary.duration_seconds == 3600
    assert summary.distance_meters == 10000.5
    assert summary.average_speed == 2.78
    assert summary.calories == 650
    assert summary.average_heart_rate == 145
    assert summary.max_heart_rate == 172
    assert summary.elevation_gain_meters == 120
    assert summary.steps == 9800
    assert summary.start_latitude == 40.1
    assert summary.start_longitude == -105.2
    assert summary.device_name == "Forerunner 965"
    # Unconsumed keys are kept, routing keys are not
    assert summary.summary_payload == {"summaryId": "g-999"}


def test_first_present_variant_wins():
    raw = {
        "activityId": "a1",
        "calories": 500,
        "activeKilocalories": 650,
        "averageHR": 130,
        "elevationGain": 55,
        "duration": 1800,
        "elapsedDuration": 2000,
    }

    summary = normalize_activity_summary(raw, athlete_id="athlete-1")

    assert summary.calories == 500
    assert summary.average_heart_rate == 130
    assert summary.elevation_gain_meters == 55
    assert summary.duration_seconds == 1800


def test_missing_optional_fields_map_to_none():
    summary = normalize_activity_summary({"activityId": "a1"}, athlete_id="athlete-1")

    assert summary.activity_type is None
    assert summary.start_time is None
    assert summary.duration_seconds is None
    assert summary.calories is None
    assert summary.device_name is None
    assert summary.summary_payload is None


def test_unparsable_values_map_to_none():
    summary = normalize_activity_summary(
        {"activityId": "a1", "durationInSeconds": "n/a", "startTimeGMT": "yesterday", "distanceInMeters": {"v": 1}},
        athlete_id="athlete-1",
    )

    assert summary.duration_seconds is None
    assert summary.start_time is None
    assert summary.distance_meters is None


def test_activity_type_object_and_iso_start():
    summary = normalize_activity_summary(
        {
            "activity_id": "a2",
            "activityType": {"typeKey": "Trail_Running"},
            "startTimeGMT": "2025-01-10T08:00:00",
            "deviceMetaData": {"deviceName": "fenix 7"},
        },
        athlete_id="athlete-1",
    )

    assert summary.source_activity_id == "a2"
    assert summary.activity_type == "trail_running"
    assert summary.start_time == datetime(2025, 1, 10, 8, 0, tzinfo=timezone.utc)
    assert summary.device_name == "fenix 7"


def test_remote_user_id_precedence_and_root_fallback():
    assert extract_remote_user_id({"userId": " u-1 ", "garminUserId": "u-2"}) == "u-1"
    assert extract_remote_user_id({"userIdString": "u-3"}) == "u-3"
    assert extract_remote_user_id({}, fallback="root-user") == "root-user"
    assert extract_remote_user_id({"userId": ""}, fallback=None) is None


class TestValidateSummary:
    def test_missing_join_key_named(self):
        summary = normalize_activity_summary({"activityName": "No id"}, athlete_id="athlete-1")

        with pytest.raises(ActivityValidationError) as exc_info:
            validate_summary(summary)

        assert exc_info.value.field == "source_activity_id"

    def test_missing_athlete_named(self):
        summary = normalize_activity_summary({"activityId": "a1"}, athlete_id=None)

        with pytest.raises(ActivityValidationError) as exc_info:
            validate_summary(summary)

        assert exc_info.value.field == "athlete_id"
        assert "athlete_id is required" in str(exc_info.value)

    def test_warnings_for_missing_core_data(self):
        summary = normalize_activity_summary({"activityId": "a1"}, athlete_id="athlete-1")

        warnings = validate_summary(summary)

        assert warnings == ["activity_type is missing", "start_time is missing", "duration_seconds is missing"]


def test_detail_join_key_candidates():
    detail = normalize_activity_detail({"activityId": "g-999", "summary": {"activityId": "g-998"}})
    assert detail.join_key_candidates == ["g-999", "g-998"]

    nested_only = normalize_activity_detail({"summaryId": "g-999-detail", "summary": {"activityId": 999}})
    assert nested_only.activity_id is None
    assert nested_only.join_key_candidates == ["999"]

    same = normalize_activity_detail({"activityId": "x", "summary": {"activityId": "x"}})
    assert same.join_key_candidates == ["x"]


def test_detail_extracts_deep_metrics_from_top_level_and_summary():
    detail = normalize_activity_detail(
        {
            "activityId": "g-999",
            "laps": [{"startTimeInSeconds": 1736496000}],
            "samples": [{"heartRate": 140}],
            "summary": {
                "averageRunCadenceInStepsPerMinute": 172,
                "maxRunCadenceInStepsPerMinute": 190,
                "averagePowerInWatts": 250,
                "aerobicTrainingEffect": 3.4,
            },
        }
    )

    assert detail.detail_payload == {
        "lap_summaries": [{"startTimeInSeconds": 1736496000}],
        "cadence": {"average": 172, "max": 190},
        "power": {"average": 250},
        "training_effect": {"aerobic": 3.4},
        "samples": [{"heartRate": 140}],
    }
