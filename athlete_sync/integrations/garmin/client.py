"""Garmin profile API client.

Thin httpx client for the two bearer-token endpoints used after connect:
- user-info: the Garmin user ID that webhooks are routed by
- user-profile: profile, sleep and preference data
"""

from __future__ import annotations

from typing import Any

import httpx
from loguru import logger

from athlete_sync.config.settings import settings
from athlete_sync.integrations.garmin.errors import GarminApiError
from athlete_sync.integrations.garmin.schemas import GarminProfile

_USER_DATA_KEYS = (
    "gender",
    "weight",
    "height",
    "birthDate",
    "activityLevel",
    "handedness",
    "vo2MaxRunning",
    "vo2MaxCycling",
    "lactateThresholdSpeed",
    "lactateThresholdHeartRate",
    "moderateIntensityMinutesHrZone",
    "vigorousIntensityMinutesHrZone",
    "hydrationMeasurementUnit",
    "firstbeatMaxStressScore",
    "thresholdHeartRateAutoDetected",
    "ftpAutoDetected",
)
_PREFERENCE_KEYS = (
    "measurementSystem",
    "timeFormat",
    "intensityMinutesCalcMethod",
    "availableTrainingDays",
    "preferredLongTrainingDays",
)
_SLEEP_KEYS = ("sleepTime", "defaultSleepTime", "wakeTime", "defaultWakeTime")


def _subset(source: Any, keys: tuple[str, ...]) -> dict[str, Any]:
    if not isinstance(source, dict):
        return {}
    return {key: source[key] for key in keys if source.get(key) is not None}


def parse_user_profile(data: dict[str, Any]) -> GarminProfile:
    """Parse a user-profile endpoint response into GarminProfile."""
    user_data = data.get("userData")
    profile_id = data.get("profileId") or data.get("id")
    return GarminProfile(
        user_id=str(data["id"]) if data.get("id") is not None else None,
        user_name=data.get("userName") or data.get("displayName"),
        profile_id=str(profile_id) if profile_id is not None else None,
        user_data=_subset(user_data, _USER_DATA_KEYS),
        user_sleep=_subset(data.get("userSleep"), _SLEEP_KEYS),
        preferences=_subset(user_data, _PREFERENCE_KEYS),
    )


class GarminProfileClient:
    """Bearer-token client for Garmin user endpoints."""

    def __init__(
        self,
        *,
        user_info_url: str | None = None,
        user_profile_url: str | None = None,
        timeout: float | None = None,
    ) -> None:
        self._user_info_url = user_info_url or settings.garmin_user_info_url
        self._user_profile_url = user_profile_url or settings.garmin_user_profile_url
        self._timeout = timeout or settings.garmin_http_timeout_seconds

    def _get(self, url: str, access_token: str) -> dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/json",
        }
        try:
            resp = httpx.get(url, headers=headers, timeout=self._timeout)
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.warning(f"[GARMIN_CLIENT] {url} returned {e.response.status_code}: {e.response.text[:200]}")
            raise GarminApiError(f"Garmin API returned {e.response.status_code}", status_code=e.response.status_code) from e
        except httpx.HTTPError as e:
            logger.warning(f"[GARMIN_CLIENT] {url} request failed: {type(e).__name__}: {e}")
            raise GarminApiError(f"Garmin API request failed: {e}") from e

        try:
            data = resp.json()
        except ValueError as e:
            raise GarminApiError("Garmin API returned a non-JSON body", status_code=resp.status_code) from e
        if not isinstance(data, dict):
            raise GarminApiError("Garmin API returned an unexpected body", status_code=resp.status_code)
        return data

    def fetch_user_id(self, access_token: str) -> str:
        """Fetch the Garmin user ID for the token owner.

        Raises:
            GarminApiError: If the request fails or the response has no userId
        """
        data = self._get(self._user_info_url, access_token)
        user_id = data.get("userId")
        if user_id is None or not str(user_id).strip():
            raise GarminApiError("Garmin user-info response has no userId")
        logger.info(f"[GARMIN_CLIENT] Fetched Garmin user ID {user_id}")
        return str(user_id).strip()

    def fetch_user_profile(self, access_token: str) -> GarminProfile:
        data = self._get(self._user_profile_url, access_token)
        profile = parse_user_profile(data)
        logger.debug(f"[GARMIN_CLIENT] Fetched Garmin profile profile_id={profile.profile_id}")
        return profile
