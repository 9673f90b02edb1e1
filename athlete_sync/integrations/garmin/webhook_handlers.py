"""Garmin webhook handling.

Two phases, testable independently:

1. acknowledge_webhook: parse the body, schedule processing on FastAPI
   BackgroundTasks and return 200 right away. The sender retries on any
   non-2xx or slow response, so every path answers 200.
2. GarminWebhookProcessor: processes a parsed payload item by item. One
   item failing never aborts its siblings; processing errors are terminal
   for that delivery.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal

from fastapi import BackgroundTasks
from fastapi.responses import JSONResponse
from loguru import logger

from athlete_sync.config.settings import settings
from athlete_sync.integrations.garmin.activity_store import ActivityStore
from athlete_sync.integrations.garmin.errors import ActivityValidationError
from athlete_sync.integrations.garmin.identity import IdentityResolver
from athlete_sync.integrations.garmin.normalize import (
    extract_activity_id,
    extract_remote_user_id,
    normalize_activity_detail,
    normalize_activity_summary,
    validate_summary,
)
from athlete_sync.integrations.garmin.schemas import parse_scope
from athlete_sync.integrations.garmin.token_store import TokenStore

SUMMARY_BATCH_KEYS = ("activities", "manuallyUpdatedActivities")
DETAIL_BATCH_KEYS = ("activityDetails",)
PERMISSION_BATCH_KEYS = ("userPermissionsChange",)
DEREGISTRATION_BATCH_KEYS = ("deregistrations",)

OutcomeStatus = Literal["processed", "skipped", "failed"]


@dataclass
class ItemOutcome:
    status: OutcomeStatus
    key: str | None = None
    reason: str | None = None


@dataclass
class WebhookBatchResult:
    """Per-delivery processing summary."""

    event: str
    outcomes: list[ItemOutcome] = field(default_factory=list)

    @property
    def received(self) -> int:
        return len(self.outcomes)

    @property
    def processed(self) -> int:
        return self._count("processed")

    @property
    def skipped(self) -> int:
        return self._count("skipped")

    @property
    def failed(self) -> int:
        return self._count("failed")

    def _count(self, status: OutcomeStatus) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == status)

    def add(self, status: OutcomeStatus, key: str | None = None, reason: str | None = None) -> None:
        self.outcomes.append(ItemOutcome(status=status, key=key, reason=reason))


def extract_items(payload: Any, batch_keys: Iterable[str]) -> list[Any]:
    """Unwrap a batch: ``{<key>: [...]}``, a bare list, or a single item."""
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        for key in batch_keys:
            if key in payload:
                items = payload[key]
                if isinstance(items, list):
                    return items
                return [items] if items is not None else []
        return [payload]
    return []


def _root_user_id(payload: Any) -> Any:
    return payload.get("userId") if isinstance(payload, dict) else None


def _permission_scope(item: dict[str, Any]) -> tuple[str | None, list[str]]:
    """Return (explicit OAuth scope or None, granted permission names)."""
    scope = item.get("scope")
    scope = scope.strip() if isinstance(scope, str) and scope.strip() else None
    permissions = item.get("permissions")
    if isinstance(permissions, list):
        return scope, [str(permission) for permission in permissions]
    return scope, scope.split() if scope else []


class GarminWebhookProcessor:
    """Processes parsed Garmin webhook payloads against the injected stores."""

    def __init__(self, token_store: TokenStore, activity_store: ActivityStore, resolver: IdentityResolver | None = None) -> None:
        self._token_store = token_store
        self._activity_store = activity_store
        self._resolver = resolver or IdentityResolver(token_store)

    def process_activity_summaries(self, payload: Any) -> WebhookBatchResult:
        result = WebhookBatchResult(event="activities")
        root_user_id = _root_user_id(payload)

        for item in extract_items(payload, SUMMARY_BATCH_KEYS):
            if not isinstance(item, dict):
                result.add("skipped", reason="invalid_item")
                continue
            activity_id = extract_activity_id(item)
            try:
                remote_user_id = extract_remote_user_id(item, root_user_id)
                integration = self._resolver.resolve(remote_user_id)
                if integration is None:
                    result.add("skipped", activity_id, "unresolved_user")
                    continue

                summary = normalize_activity_summary(item, integration.athlete_id)
                try:
                    warnings = validate_summary(summary)
                except ActivityValidationError as e:
                    logger.warning(f"[GARMIN_WEBHOOK] Rejected activity summary: {e} (field={e.field})")
                    result.add("skipped", activity_id, f"missing_{e.field}")
                    continue
                for warning in warnings:
                    logger.debug(f"[GARMIN_WEBHOOK] Activity {activity_id}: {warning}")

                self._activity_store.upsert_summary(summary)
                result.add("processed", activity_id)
            except Exception:
                logger.exception(f"[GARMIN_WEBHOOK] Failed to process activity summary {activity_id}")
                result.add("failed", activity_id, "error")

        self._log_result(result)
        return result

    def process_activity_details(self, payload: Any) -> WebhookBatchResult:
        """Hydrate existing activities with detail data.

        A detail whose summary has not been stored yet is dropped; there is
        no pending buffer for out-of-order deliveries.
        """
        result = WebhookBatchResult(event="activity-details")

        for item in extract_items(payload, DETAIL_BATCH_KEYS):
            if not isinstance(item, dict):
                result.add("skipped", reason="invalid_item")
                continue
            try:
                detail = normalize_activity_detail(item)
                candidates = detail.join_key_candidates
                if not candidates:
                    logger.warning("[GARMIN_WEBHOOK] Activity detail has no activityId, dropping")
                    result.add("skipped", reason="missing_join_key")
                    continue

                matched = None
                for candidate in candidates:
                    matched = self._activity_store.merge_detail(candidate, detail.detail_payload)
                    if matched is not None:
                        break

                if matched is None:
                    logger.warning(
                        f"[GARMIN_WEBHOOK] No stored activity for detail "
                        f"(activityId={detail.activity_id}, summary.activityId={detail.summary_activity_id}), dropping"
                    )
                    result.add("skipped", candidates[0], "no_matching_summary")
                    continue
                result.add("processed", matched.source_activity_id)
            except Exception:
                logger.exception("[GARMIN_WEBHOOK] Failed to process activity detail")
                result.add("failed", extract_activity_id(item), "error")

        self._log_result(result)
        return result

    def process_permission_changes(self, payload: Any) -> WebhookBatchResult:
        result = WebhookBatchResult(event="permissions")
        root_user_id = _root_user_id(payload)

        for item in extract_items(payload, PERMISSION_BATCH_KEYS):
            if not isinstance(item, dict):
                result.add("skipped", reason="invalid_item")
                continue
            remote_user_id = extract_remote_user_id(item, root_user_id)
            try:
                integration = self._resolver.resolve(remote_user_id)
                if integration is None:
                    result.add("skipped", remote_user_id, "unresolved_user")
                    continue

                scope, granted = _permission_scope(item)
                # Permission names (ACTIVITY_EXPORT, ...) are not OAuth scopes; keep the stored grant
                effective_scope = scope if scope is not None else integration.scope
                snapshot = {
                    "scope": effective_scope,
                    "capabilities": sorted(parse_scope(effective_scope)),
                    "permissions": granted,
                    "updated_at": datetime.now(timezone.utc).isoformat(),
                }
                self._token_store.update_permissions(integration.athlete_id, scope=scope, permissions=snapshot)
                logger.info(f"[GARMIN_WEBHOOK] Permissions updated for athlete_id={integration.athlete_id}: {granted}")
                result.add("processed", remote_user_id)
            except Exception:
                logger.exception(f"[GARMIN_WEBHOOK] Failed to process permission change for Garmin user {remote_user_id}")
                result.add("failed", remote_user_id, "error")

        self._log_result(result)
        return result

    def process_deregistrations(self, payload: Any) -> WebhookBatchResult:
        """Clear the integration of every deregistered Garmin user.

        Repeated deliveries are no-ops: the first one nulls remote_user_id,
        so later ones no longer resolve.
        """
        result = WebhookBatchResult(event="deregistration")
        root_user_id = _root_user_id(payload)

        for item in extract_items(payload, DEREGISTRATION_BATCH_KEYS):
            if not isinstance(item, dict):
                result.add("skipped", reason="invalid_item")
                continue
            remote_user_id = extract_remote_user_id(item, root_user_id)
            try:
                integration = self._resolver.resolve(remote_user_id)
                if integration is None:
                    result.add("skipped", remote_user_id, "unresolved_user")
                    continue

                self._token_store.clear(integration.athlete_id)
                logger.info(f"[GARMIN_WEBHOOK] Deregistered Garmin user {remote_user_id} (athlete_id={integration.athlete_id})")
                result.add("processed", remote_user_id)
            except Exception:
                logger.exception(f"[GARMIN_WEBHOOK] Failed to process deregistration for Garmin user {remote_user_id}")
                result.add("failed", remote_user_id, "error")

        self._log_result(result)
        return result

    @staticmethod
    def _log_result(result: WebhookBatchResult) -> None:
        logger.info(
            f"[GARMIN_WEBHOOK] {result.event}: received={result.received}, processed={result.processed}, "
            f"skipped={result.skipped}, failed={result.failed}"
        )


def run_webhook_processing(process: Callable[[Any], WebhookBatchResult], payload: Any, event: str) -> WebhookBatchResult | None:
    """Background entry point. The response is already sent, so errors are only logged."""
    try:
        return process(payload)
    except Exception:
        logger.exception(f"[GARMIN_WEBHOOK] Background processing failed for {event} webhook")
        return None


def acknowledge_webhook(
    body: bytes,
    background_tasks: BackgroundTasks,
    process: Callable[[Any], WebhookBatchResult],
    event: str,
) -> JSONResponse:
    """Parse a webhook body, schedule its processing and acknowledge it.

    Caller must return the JSONResponse as-is.

    Args:
        body: Raw request body
        background_tasks: FastAPI background tasks
        process: Processor method to run after the response is sent
        event: Event name for logging

    Returns:
        JSONResponse with status 200
    """
    if not settings.garmin_webhooks_enabled:
        logger.debug(f"[GARMIN_WEBHOOK] Webhooks disabled, ignoring {event} event")
        return JSONResponse(
            status_code=200,
            content={"status": "ignored", "reason": "webhooks_disabled"},
        )

    try:
        payload = json.loads(body.decode())
    except (UnicodeDecodeError, ValueError) as e:
        logger.error(f"[GARMIN_WEBHOOK] Failed to parse {event} webhook payload: {e}")
        return JSONResponse(
            status_code=200,
            content={"status": "error", "reason": "invalid_payload"},
        )

    logger.info(f"[GARMIN_WEBHOOK] Received {event} webhook")
    background_tasks.add_task(run_webhook_processing, process, payload, event)

    return JSONResponse(
        status_code=200,
        content={"status": "acknowledged", "event": event},
    )
