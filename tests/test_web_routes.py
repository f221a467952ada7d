"""Tests for web routes and API endpoints.

Tests the FastAPI application routes using httpx AsyncClient, covering the
provider webhooks, the queue callback, rule management, approval and the
health endpoint.
"""

import base64
import json
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from inboxpilot.db.store import EmailAccount
from inboxpilot.engine.context import Services
from inboxpilot.rules.types import (
    ActionItem,
    ActionType,
    ExecutedRuleStatus,
    ScheduledActionStatus,
)
from inboxpilot.web.app import create_app

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def app(services: Services) -> FastAPI:
    """Create a FastAPI app wired to the test services."""
    return create_app(services)


@pytest.fixture
async def client(app: FastAPI) -> AsyncClient:
    """Return an httpx AsyncClient for the test app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


def _pubsub_body(email: str, history_id: int) -> dict:
    data = json.dumps({"emailAddress": email, "historyId": history_id}).encode()
    return {"message": {"data": base64.b64encode(data).decode(), "messageId": "1"}}


async def _pending(services: Services, account: EmailAccount, actions: list[ActionItem]):
    rule = await services.store.create_rule(account.id, "Invoices", "Invoices", actions)
    return await services.store.upsert_executed_rule(
        email_account_id=account.id,
        thread_id="thread-1",
        message_id="msg-1",
        status=ExecutedRuleStatus.PENDING,
        rule_id=rule.id,
        actions=actions,
    )


# ---------------------------------------------------------------------------
# Health and middleware
# ---------------------------------------------------------------------------


class TestHealth:
    async def test_health(self, client: AsyncClient) -> None:
        response = await client.get("/api/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "queue_enabled": True, "version": "0.1.0"}

    async def test_request_id_is_echoed(self, client: AsyncClient) -> None:
        response = await client.get("/api/health", headers={"X-Request-ID": "abc123"})
        assert response.headers["X-Request-ID"] == "abc123"

        generated = await client.get("/api/health")
        assert len(generated.headers["X-Request-ID"]) == 12


# ---------------------------------------------------------------------------
# Outlook webhook
# ---------------------------------------------------------------------------


class TestOutlookWebhook:
    async def test_validation_handshake(self, client: AsyncClient) -> None:
        response = await client.post("/api/outlook/webhook?validationToken=hello%20graph")

        assert response.status_code == 200
        assert response.text == "hello graph"
        assert response.headers["content-type"].startswith("text/plain")

    async def test_client_state_mismatch(self, client: AsyncClient) -> None:
        response = await client.post(
            "/api/outlook/webhook",
            json={"value": [{"subscriptionId": "sub-123", "clientState": "wrong"}]},
        )
        assert response.status_code == 403

    async def test_missing_notification_list(self, client: AsyncClient) -> None:
        response = await client.post("/api/outlook/webhook", json={"nope": True})
        assert response.status_code == 400

    async def test_notification_is_processed(
        self,
        client: AsyncClient,
        services: Services,
        provider: AsyncMock,
        account: EmailAccount,
        make_message,
    ) -> None:
        await services.store.create_rule(
            account.id, "Invoices", "Invoices", [ActionItem(type=ActionType.ARCHIVE)]
        )
        provider.get_message.return_value = make_message(message_id="AAMk-1")

        response = await client.post(
            "/api/outlook/webhook",
            json={
                "value": [
                    {
                        "subscriptionId": "sub-123",
                        "clientState": "client-state",
                        "resource": "Users/u-1/Messages/AAMk-1",
                    }
                ]
            },
        )

        assert response.status_code == 200
        assert response.json() == {"ok": True}
        provider.get_message.assert_awaited_once_with("AAMk-1")

    async def test_non_object_entries_are_ignored(
        self, client: AsyncClient, provider: AsyncMock
    ) -> None:
        response = await client.post("/api/outlook/webhook", json={"value": ["junk", 7, None]})

        assert response.status_code == 200
        assert response.json() == {"ok": True}
        provider.get_message.assert_not_awaited()
        provider.archive_thread.assert_awaited_once_with("thread-1")


# ---------------------------------------------------------------------------
# Gmail webhook
# ---------------------------------------------------------------------------


class TestGoogleWebhook:
    async def test_rejects_bad_token(self, client: AsyncClient) -> None:
        response = await client.post(
            "/api/google/webhook?token=wrong", json=_pubsub_body("user@example.com", 1)
        )
        assert response.status_code == 403

    async def test_rejects_when_no_token_configured(
        self, client: AsyncClient, services: Services
    ) -> None:
        services.config.google.pubsub_verification_token = None
        response = await client.post(
            "/api/google/webhook?token=", json=_pubsub_body("user@example.com", 1)
        )
        assert response.status_code == 403

    async def test_rejects_bad_payload(self, client: AsyncClient) -> None:
        response = await client.post(
            "/api/google/webhook?token=pubsub-token", json={"message": {"data": "!!!"}}
        )
        assert response.status_code == 400

    async def test_unknown_account_is_ok(self, client: AsyncClient, provider: AsyncMock) -> None:
        response = await client.post(
            "/api/google/webhook?token=pubsub-token", json=_pubsub_body("ghost@example.com", 5)
        )

        assert response.status_code == 200
        assert response.json() == {"ok": True}

    async def test_history_is_processed(
        self,
        client: AsyncClient,
        services: Services,
        provider: AsyncMock,
        account: EmailAccount,
    ) -> None:
        await services.store.create_rule(account.id, "Invoices", "Invoices", [])
        provider.list_history = AsyncMock(return_value=([], "1200"))

        response = await client.post(
            "/api/google/webhook?token=pubsub-token", json=_pubsub_body(account.email, 1100)
        )

        assert response.json() == {"ok": True}
        assert provider.list_history.await_args.args == ("600",)


# ---------------------------------------------------------------------------
# Queue callback
# ---------------------------------------------------------------------------


class TestScheduledActionCallback:
    async def test_requires_bearer_secret(self, client: AsyncClient) -> None:
        response = await client.post(
            "/api/scheduled-actions/execute", json={"scheduledActionId": 1}
        )
        assert response.status_code == 401

        response = await client.post(
            "/api/scheduled-actions/execute",
            json={"scheduledActionId": 1},
            headers={"Authorization": "Bearer wrong"},
        )
        assert response.status_code == 401

    async def test_runs_action(
        self,
        client: AsyncClient,
        services: Services,
        provider: AsyncMock,
        account: EmailAccount,
        make_message,
    ) -> None:
        executed = await _pending(services, account, [])
        scheduled = await services.store.create_scheduled_action(
            executed_rule_id=executed.id,
            email_account_id=account.id,
            message_id="msg-1",
            thread_id="thread-1",
            action=ActionItem(type=ActionType.MARK_READ, delay_in_minutes=5),
            scheduled_for=datetime.now(UTC),
        )
        provider.get_message.return_value = make_message()

        response = await client.post(
            "/api/scheduled-actions/execute",
            json={"scheduledActionId": scheduled.id},
            headers={"Authorization": "Bearer cron-secret"},
        )

        assert response.status_code == 200
        assert response.json() == {
            "ok": True,
            "scheduled_action_id": scheduled.id,
            "status": "completed",
            "detail": None,
        }
        row = await services.store.get_scheduled_action(scheduled.id)
        assert row.status == ScheduledActionStatus.COMPLETED

    async def test_unknown_id_is_skipped(self, client: AsyncClient) -> None:
        response = await client.post(
            "/api/scheduled-actions/execute",
            json={"scheduledActionId": 404},
            headers={"Authorization": "Bearer cron-secret"},
        )
        assert response.status_code == 200
        assert response.json()["status"] == "skipped"


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


class TestRules:
    async def test_crud(self, client: AsyncClient, account: EmailAccount) -> None:
        base = f"/api/accounts/{account.id}/rules"
        created = await client.post(
            base,
            json={
                "name": "Receipts",
                "instructions": "Receipts and invoices",
                "actions": [{"type": "LABEL", "label": "Receipts"}],
            },
        )
        assert created.status_code == 201
        rule_id = created.json()["id"]

        duplicate = await client.post(base, json={"name": "Receipts", "instructions": "Again"})
        assert duplicate.status_code == 409

        updated = await client.put(
            f"{base}/{rule_id}",
            json={"automate": False, "actions": [{"type": "ARCHIVE", "delay_in_minutes": 30}]},
        )
        assert updated.status_code == 200
        assert updated.json()["automate"] is False
        assert updated.json()["actions"][0]["type"] == "ARCHIVE"

        listed = await client.get(base)
        assert [r["name"] for r in listed.json()["rules"]] == ["Receipts"]

        deleted = await client.delete(f"{base}/{rule_id}")
        assert deleted.status_code == 204
        assert (await client.get(f"{base}/{rule_id}")).status_code == 404

    async def test_rejects_ineligible_delay(self, client: AsyncClient, account: EmailAccount) -> None:
        response = await client.post(
            f"/api/accounts/{account.id}/rules",
            json={
                "name": "Digest",
                "instructions": "Weekly",
                "actions": [{"type": "DIGEST", "delay_in_minutes": 60}],
            },
        )
        assert response.status_code == 422

    async def test_unknown_account(self, client: AsyncClient) -> None:
        response = await client.get("/api/accounts/999/rules")
        assert response.status_code == 404


# ---------------------------------------------------------------------------
# Approve / reject
# ---------------------------------------------------------------------------


class TestApproval:
    async def test_approve_runs_actions_once(
        self,
        client: AsyncClient,
        services: Services,
        provider: AsyncMock,
        account: EmailAccount,
        make_message,
    ) -> None:
        executed = await _pending(services, account, [ActionItem(type=ActionType.ARCHIVE)])
        provider.get_message.return_value = make_message()
        url = f"/api/accounts/{account.id}/executed-rules/{executed.id}/approve"

        response = await client.post(url)

        assert response.status_code == 200
        assert response.json()["status"] == "APPLIED"
        provider.archive_thread.assert_awaited_once()
        assert (await client.post(url)).status_code == 409

    async def test_approve_deleted_message(
        self,
        client: AsyncClient,
        services: Services,
        provider: AsyncMock,
        account: EmailAccount,
    ) -> None:
        from inboxpilot.core.errors import NotFoundError

        executed = await _pending(services, account, [ActionItem(type=ActionType.ARCHIVE)])
        provider.get_message.side_effect = NotFoundError("gone")

        response = await client.post(
            f"/api/accounts/{account.id}/executed-rules/{executed.id}/approve"
        )

        assert response.status_code == 404
        reloaded = await services.store.get_executed_rule(executed.id)
        assert reloaded.status == ExecutedRuleStatus.ERROR

    async def test_approve_invalid_action_records_error(
        self,
        client: AsyncClient,
        services: Services,
        provider: AsyncMock,
        account: EmailAccount,
        make_message,
    ) -> None:
        executed = await _pending(
            services, account, [ActionItem(type=ActionType.SEND_EMAIL, subject="Hi", content="Hello")]
        )
        provider.get_message.return_value = make_message()

        response = await client.post(
            f"/api/accounts/{account.id}/executed-rules/{executed.id}/approve"
        )

        assert response.status_code == 502
        provider.send_email.assert_not_awaited()
        reloaded = await services.store.get_executed_rule(executed.id)
        assert reloaded.status == ExecutedRuleStatus.ERROR

    async def test_reject(
        self, client: AsyncClient, services: Services, account: EmailAccount
    ) -> None:
        executed = await _pending(services, account, [ActionItem(type=ActionType.ARCHIVE)])
        url = f"/api/accounts/{account.id}/executed-rules/{executed.id}/reject"

        response = await client.post(url)

        assert response.status_code == 200
        assert response.json()["status"] == "REJECTED"
        assert (await client.post(url)).status_code == 409

        pending = await client.get(
            f"/api/accounts/{account.id}/executed-rules", params={"status": "PENDING"}
        )
        assert pending.json()["executed_rules"] == []


# ---------------------------------------------------------------------------
# Bulk processing
# ---------------------------------------------------------------------------


class TestBulkProcess:
    async def test_requires_enabled_rules(self, client: AsyncClient, account: EmailAccount) -> None:
        response = await client.post(
            f"/api/accounts/{account.id}/process", json={"message_ids": ["msg-1"]}
        )
        assert response.status_code == 422

    async def test_reports_per_message_status(
        self,
        client: AsyncClient,
        services: Services,
        provider: AsyncMock,
        llm: MagicMock,
        account: EmailAccount,
        make_message,
    ) -> None:
        from inboxpilot.core.errors import NotFoundError

        await services.store.create_rule(
            account.id, "Invoices", "Invoices", [ActionItem(type=ActionType.MARK_READ)]
        )

        async def get_message(message_id: str):
            if message_id == "missing":
                raise NotFoundError("gone")
            return make_message(message_id=message_id, thread_id=f"thread-{message_id}")

        provider.get_message.side_effect = get_message

        response = await client.post(
            f"/api/accounts/{account.id}/process",
            json={"message_ids": ["msg-1", "missing", "msg-1"]},
        )

        results = {r["message_id"]: r for r in response.json()["results"]}
        assert len(response.json()["results"]) == 2
        assert results["msg-1"]["status"] == "APPLIED"
        assert results["msg-1"]["rule"] == "Invoices"
        assert results["missing"]["status"] == "NOT_FOUND"
