"""Garmin webhook endpoints.

Rules: always ACK with 200 right away, no logic inline. Each endpoint hands
the raw body to acknowledge_webhook, which schedules processing as a
background task that runs after the response is sent.

Mounted at /webhooks/garmin and at the legacy /api/garmin prefix that
existing Garmin developer-portal configurations still point at.
"""

from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.responses import JSONResponse

from athlete_sync.api.dependencies.garmin import get_webhook_processor
from athlete_sync.integrations.garmin.webhook_handlers import GarminWebhookProcessor, acknowledge_webhook

router = APIRouter(prefix="/webhooks/garmin", tags=["webhooks", "garmin"])
legacy_router = APIRouter(prefix="/api/garmin", tags=["webhooks", "garmin"])


async def garmin_webhook_activities(
    request: Request,
    background_tasks: BackgroundTasks,
    processor: GarminWebhookProcessor = Depends(get_webhook_processor),
) -> JSONResponse:
    """Activity summaries (also manually updated activities)."""
    body = await request.body()
    return acknowledge_webhook(body, background_tasks, processor.process_activity_summaries, "activities")


async def garmin_webhook_activity_details(
    request: Request,
    background_tasks: BackgroundTasks,
    processor: GarminWebhookProcessor = Depends(get_webhook_processor),
) -> JSONResponse:
    body = await request.body()
    return acknowledge_webhook(body, background_tasks, processor.process_activity_details, "activity-details")


async def garmin_webhook_permissions(
    request: Request,
    background_tasks: BackgroundTasks,
    processor: GarminWebhookProcessor = Depends(get_webhook_processor),
) -> JSONResponse:
    body = await request.body()
    return acknowledge_webhook(body, background_tasks, processor.process_permission_changes, "permissions")


async def garmin_webhook_deregistration(
    request: Request,
    background_tasks: BackgroundTasks,
    processor: GarminWebhookProcessor = Depends(get_webhook_processor),
) -> JSONResponse:
    """Deregistration; Garmin has delivered it as both POST and PUT."""
    body = await request.body()
    return acknowledge_webhook(body, background_tasks, processor.process_deregistrations, "deregistration")


async def garmin_webhook_ping() -> dict[str, str]:
    return {"status": "ok", "service": "garmin-webhooks"}


for _router in (router, legacy_router):
    _router.add_api_route("/activities", garmin_webhook_activities, methods=["POST"])
    _router.add_api_route("/activity", garmin_webhook_activities, methods=["POST"], include_in_schema=False)
    _router.add_api_route("/manually-updated-activities", garmin_webhook_activities, methods=["POST"])
    _router.add_api_route("/activity-details", garmin_webhook_activity_details, methods=["POST"])
    _router.add_api_route("/permissions", garmin_webhook_permissions, methods=["POST"])
    _router.add_api_route("/deregistration", garmin_webhook_deregistration, methods=["POST", "PUT"])
    _router.add_api_route("/ping", garmin_webhook_ping, methods=["GET"])
