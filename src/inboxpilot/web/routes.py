"""HTTP routes for InboxPilot.

Contains one router, mounted under ``/api``:
- Provider webhooks (Outlook change notifications, Gmail Pub/Sub push)
- Queue callback that runs a delayed action
- Rule management and executed-rule history with approve / reject
- Bulk processing of chosen messages, and a health check

Webhook routes answer 200 for everything except failed authentication so
providers do not retry deliveries that can never succeed.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import hmac
import json
from dataclasses import asdict
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field

from inboxpilot.config_schema import AppConfig
from inboxpilot.core.errors import (
    ConflictError,
    InboxPilotError,
    NotFoundError,
    SchedulerError,
)
from inboxpilot.core.logging import capture_exception, get_logger
from inboxpilot.db.store import DatabaseStore, EmailAccount
from inboxpilot.engine.context import Services
from inboxpilot.engine.process_history import (
    ERROR,
    OK,
    process_gmail_notification,
    process_outlook_notification,
)
from inboxpilot.engine.run_rules import apply_executed_rule, run_rules
from inboxpilot.rules.types import ActionItem, ActionType, ExecutedRuleStatus, SystemType
from inboxpilot.scheduling.executor import execute_scheduled_action
from inboxpilot.scheduling.scheduler import is_delayed, validate_delayed_action
from inboxpilot.web.dependencies import get_account, get_config, get_services, get_store

logger = get_logger(__name__)

api_router = APIRouter(prefix="/api")


# ---------------------------------------------------------------------------
# Pydantic models for API input validation
# ---------------------------------------------------------------------------


class ActionModel(BaseModel):
    """One action of a rule. Text fields may hold ``{{placeholders}}``."""

    type: ActionType
    label: str | None = None
    subject: str | None = None
    content: str | None = None
    to: str | None = None
    cc: str | None = None
    bcc: str | None = None
    url: str | None = None
    folder_name: str | None = None
    delay_in_minutes: int | None = Field(default=None, ge=1)

    def to_item(self) -> ActionItem:
        return ActionItem(**self.model_dump())


class RuleCreateRequest(BaseModel):
    name: str = Field(min_length=1)
    instructions: str = Field(min_length=1)
    actions: list[ActionModel] = Field(default_factory=list)
    enabled: bool = True
    automate: bool = True
    run_on_threads: bool = False
    system_type: SystemType | None = None


class RuleUpdateRequest(BaseModel):
    """Fields left out are unchanged; ``actions`` replaces the whole list."""

    name: str | None = Field(default=None, min_length=1)
    instructions: str | None = Field(default=None, min_length=1)
    actions: list[ActionModel] | None = None
    enabled: bool | None = None
    automate: bool | None = None
    run_on_threads: bool | None = None
    position: int | None = None


class ExecuteScheduledActionRequest(BaseModel):
    scheduled_action_id: int = Field(alias="scheduledActionId")


class BulkProcessRequest(BaseModel):
    """Request body for running the rules over chosen messages."""

    message_ids: list[str] = Field(min_length=1)
    force_execute: bool = False
    skip_processed: bool = True


def _action_items(actions: list[ActionModel]) -> list[ActionItem]:
    items = [action.to_item() for action in actions]
    for item in items:
        if is_delayed(item):
            try:
                validate_delayed_action(item)
            except SchedulerError as e:
                raise HTTPException(status_code=422, detail=str(e)) from None
    return items


# ---------------------------------------------------------------------------
# Provider webhooks
# ---------------------------------------------------------------------------


def _message_id_from_notification(notification: dict[str, Any]) -> str | None:
    resource_data = notification.get("resourceData") or {}
    if resource_data.get("id"):
        return resource_data["id"]
    resource = notification.get("resource") or ""
    # Users/{user-id}/Messages/{message-id}
    parts = resource.split("/")
    if len(parts) >= 2 and parts[-2].lower() == "messages":
        return parts[-1]
    return None


@api_router.post("/outlook/webhook")
async def outlook_webhook(
    request: Request,
    services: Services = Depends(get_services),
):
    """Microsoft Graph change notifications.

    Answers the subscription validation handshake by echoing
    ``validationToken`` as text/plain.
    """
    validation_token = request.query_params.get("validationToken")
    if validation_token is not None:
        return PlainTextResponse(validation_token)

    try:
        body = await request.json()
    except json.JSONDecodeError:
        raise HTTPException(status_code=400, detail="Invalid JSON body") from None

    notifications = body.get("value") if isinstance(body, dict) else None
    if not isinstance(notifications, list):
        raise HTTPException(status_code=400, detail="Missing notification list")
    notifications = [n for n in notifications if isinstance(n, dict)]

    expected_state = services.config.microsoft.webhook_client_state
    if expected_state and any(
        not hmac.compare_digest(str(n.get("clientState") or ""), expected_state)
        for n in notifications
    ):
        logger.warning("outlook_client_state_mismatch")
        raise HTTPException(status_code=403, detail="Invalid clientState")

    result = OK
    for notification in notifications:
        subscription_id = notification.get("subscriptionId")
        message_id = _message_id_from_notification(notification)
        if not subscription_id or not message_id:
            logger.warning("outlook_notification_incomplete", notification=notification)
            continue
        outcome = await process_outlook_notification(
            services, subscription_id=subscription_id, message_id=message_id
        )
        if outcome.get("error"):
            result = ERROR
    return result


@api_router.post("/google/webhook")
async def google_webhook(
    request: Request,
    services: Services = Depends(get_services),
):
    """Gmail Pub/Sub push deliveries, verified by the ``token`` query parameter."""
    expected_token = services.config.google.pubsub_verification_token
    token = request.query_params.get("token") or ""
    if not expected_token or not hmac.compare_digest(token, expected_token):
        logger.warning("google_webhook_invalid_token")
        raise HTTPException(status_code=403, detail="Invalid verification token")

    try:
        body = await request.json()
        data = json.loads(base64.b64decode(body["message"]["data"]))
        email_address = data["emailAddress"]
        history_id = int(data["historyId"])
    except (json.JSONDecodeError, binascii.Error, KeyError, TypeError, ValueError):
        logger.warning("google_webhook_invalid_payload")
        raise HTTPException(status_code=400, detail="Invalid Pub/Sub payload") from None

    return await process_gmail_notification(
        services, email_address=email_address, history_id=history_id
    )


# ---------------------------------------------------------------------------
# Queue callback
# ---------------------------------------------------------------------------


@api_router.post("/scheduled-actions/execute")
async def execute_scheduled(
    payload: ExecuteScheduledActionRequest,
    request: Request,
    services: Services = Depends(get_services),
):
    """Run a delayed action. Called by the queue with the forwarded bearer secret."""
    secret = services.config.queue.callback_secret
    authorization = request.headers.get("authorization") or ""
    if not secret or not hmac.compare_digest(authorization, f"Bearer {secret}"):
        logger.warning("scheduled_action_callback_unauthorized")
        raise HTTPException(status_code=401, detail="Unauthorized")

    result = await execute_scheduled_action(services, payload.scheduled_action_id)
    return {"ok": True, **asdict(result)}


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


async def _get_account_rule(store: DatabaseStore, account: EmailAccount, rule_id: int):
    rule = await store.get_rule(rule_id)
    if rule is None or rule.email_account_id != account.id:
        raise HTTPException(status_code=404, detail="Rule not found")
    return rule


@api_router.get("/accounts/{account_id}/rules")
async def list_rules(
    account: EmailAccount = Depends(get_account),
    store: DatabaseStore = Depends(get_store),
):
    rules = await store.list_rules(account.id)
    return {"rules": [asdict(rule) for rule in rules]}


@api_router.post("/accounts/{account_id}/rules", status_code=201)
async def create_rule(
    body: RuleCreateRequest,
    account: EmailAccount = Depends(get_account),
    store: DatabaseStore = Depends(get_store),
):
    try:
        rule = await store.create_rule(
            account.id,
            body.name,
            body.instructions,
            _action_items(body.actions),
            enabled=body.enabled,
            automate=body.automate,
            run_on_threads=body.run_on_threads,
            system_type=body.system_type,
        )
    except ConflictError as e:
        raise HTTPException(status_code=409, detail=str(e)) from None
    return asdict(rule)


@api_router.get("/accounts/{account_id}/rules/{rule_id}")
async def get_rule(
    rule_id: int,
    account: EmailAccount = Depends(get_account),
    store: DatabaseStore = Depends(get_store),
):
    return asdict(await _get_account_rule(store, account, rule_id))


@api_router.put("/accounts/{account_id}/rules/{rule_id}")
async def update_rule(
    rule_id: int,
    body: RuleUpdateRequest,
    account: EmailAccount = Depends(get_account),
    store: DatabaseStore = Depends(get_store),
):
    await _get_account_rule(store, account, rule_id)
    try:
        rule = await store.update_rule(
            rule_id,
            name=body.name,
            instructions=body.instructions,
            enabled=body.enabled,
            automate=body.automate,
            run_on_threads=body.run_on_threads,
            position=body.position,
            actions=_action_items(body.actions) if body.actions is not None else None,
        )
    except ConflictError as e:
        raise HTTPException(status_code=409, detail=str(e)) from None
    if rule is None:
        raise HTTPException(status_code=404, detail="Rule not found")
    return asdict(rule)


@api_router.delete("/accounts/{account_id}/rules/{rule_id}", status_code=204)
async def delete_rule(
    rule_id: int,
    account: EmailAccount = Depends(get_account),
    store: DatabaseStore = Depends(get_store),
):
    await _get_account_rule(store, account, rule_id)
    await store.delete_rule(rule_id)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Executed rules
# ---------------------------------------------------------------------------


async def _get_account_executed_rule(
    store: DatabaseStore, account: EmailAccount, executed_rule_id: int
):
    executed = await store.get_executed_rule(executed_rule_id)
    if executed is None or executed.email_account_id != account.id:
        raise HTTPException(status_code=404, detail="Executed rule not found")
    return executed


@api_router.get("/accounts/{account_id}/executed-rules")
async def list_executed_rules(
    status: ExecutedRuleStatus | None = None,
    limit: int = 50,
    account: EmailAccount = Depends(get_account),
    store: DatabaseStore = Depends(get_store),
):
    """Executed-rule history, newest first. ``status=PENDING`` lists approvals."""
    executed = await store.list_executed_rules(account.id, status=status, limit=min(limit, 500))
    return {"executed_rules": [asdict(item) for item in executed]}


@api_router.post("/accounts/{account_id}/executed-rules/{executed_rule_id}/approve")
async def approve_executed_rule(
    executed_rule_id: int,
    account: EmailAccount = Depends(get_account),
    services: Services = Depends(get_services),
):
    """Run the stored actions of a PENDING executed rule."""
    store = services.store
    executed = await _get_account_executed_rule(store, account, executed_rule_id)

    claimed = await store.update_executed_rule_status(
        executed.id,
        ExecutedRuleStatus.APPLYING,
        expected_status=ExecutedRuleStatus.PENDING,
    )
    if not claimed:
        raise HTTPException(status_code=409, detail="Executed rule is not pending")
    executed.status = ExecutedRuleStatus.APPLYING

    try:
        provider = await services.provider_for(account)
        message = await provider.get_message(executed.message_id)
        status, scheduled = await apply_executed_rule(
            services=services,
            provider=provider,
            account=account,
            message=message,
            executed=executed,
        )
    except NotFoundError:
        await store.update_executed_rule_status(
            executed.id, ExecutedRuleStatus.ERROR, reason="Email no longer exists"
        )
        raise HTTPException(status_code=404, detail="Email no longer exists") from None
    except InboxPilotError as e:
        await store.update_executed_rule_status(executed.id, ExecutedRuleStatus.ERROR, reason=str(e))
        logger.error("approve_failed", executed_rule_id=executed.id, error=str(e))
        raise HTTPException(status_code=502, detail=str(e)) from None
    except Exception as e:
        await store.update_executed_rule_status(executed.id, ExecutedRuleStatus.ERROR, reason=str(e))
        capture_exception(e, email_account_id=account.id, executed_rule_id=executed.id)
        raise HTTPException(status_code=502, detail=f"Action failed: {e}") from None

    logger.info("executed_rule_approved", executed_rule_id=executed.id, status=str(status))
    return {
        "id": executed.id,
        "status": status,
        "scheduled_action_ids": [s.id for s in scheduled],
    }


@api_router.post("/accounts/{account_id}/executed-rules/{executed_rule_id}/reject")
async def reject_executed_rule(
    executed_rule_id: int,
    account: EmailAccount = Depends(get_account),
    store: DatabaseStore = Depends(get_store),
):
    executed = await _get_account_executed_rule(store, account, executed_rule_id)
    rejected = await store.update_executed_rule_status(
        executed.id,
        ExecutedRuleStatus.REJECTED,
        expected_status=ExecutedRuleStatus.PENDING,
    )
    if not rejected:
        raise HTTPException(status_code=409, detail="Executed rule is not pending")
    logger.info("executed_rule_rejected", executed_rule_id=executed.id)
    return {"id": executed.id, "status": ExecutedRuleStatus.REJECTED}


# ---------------------------------------------------------------------------
# Bulk processing and health
# ---------------------------------------------------------------------------


@api_router.post("/accounts/{account_id}/process")
async def bulk_process(
    body: BulkProcessRequest,
    account: EmailAccount = Depends(get_account),
    services: Services = Depends(get_services),
):
    """Run the enabled rules over the given messages with bounded concurrency."""
    rules = await services.store.list_rules(account.id, enabled_only=True)
    if not rules:
        raise HTTPException(status_code=422, detail="Account has no enabled rules")

    provider = await services.provider_for(account)
    semaphore = asyncio.Semaphore(services.config.webhook.bulk_process_concurrency)

    async def process_one(message_id: str) -> dict[str, Any]:
        async with semaphore:
            try:
                message = await provider.get_message(message_id)
                if body.skip_processed and await services.store.find_executed_rule(
                    account.id, message.thread_id, message.id
                ):
                    return {"message_id": message_id, "status": "ALREADY_PROCESSED"}
                result = await run_rules(
                    services=services,
                    provider=provider,
                    account=account,
                    message=message,
                    rules=rules,
                    force_execute=body.force_execute,
                )
            except NotFoundError:
                return {"message_id": message_id, "status": "NOT_FOUND"}
            except Exception as e:
                capture_exception(e, email_account_id=account.id, message_id=message_id)
                return {"message_id": message_id, "status": "FAILED", "error": str(e)}

            return {
                "message_id": message_id,
                "status": result.status,
                "rule": result.rule.name if result.rule else None,
                "reason": result.reason,
            }

    results = await asyncio.gather(*(process_one(mid) for mid in dict.fromkeys(body.message_ids)))
    return {"results": results}


@api_router.get("/health")
async def health_check(config: AppConfig = Depends(get_config)):
    """Health check endpoint for Docker and monitoring."""
    return {
        "status": "healthy",
        "queue_enabled": config.queue.enabled,
        "version": "0.1.0",
    }
