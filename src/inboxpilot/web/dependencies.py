"""FastAPI dependency injection helpers.

Extracts the shared Services built during the lifespan from app.state.

Usage:
    from inboxpilot.web.dependencies import get_store

    @router.get("/accounts/{account_id}/rules")
    async def list_rules(account_id: int, store: DatabaseStore = Depends(get_store)):
        ...
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import Depends, HTTPException, Request

from inboxpilot.db.store import DatabaseStore, EmailAccount

if TYPE_CHECKING:
    from inboxpilot.config_schema import AppConfig
    from inboxpilot.engine.context import Services


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_store(request: Request) -> DatabaseStore:
    """Get the shared DatabaseStore from app state."""
    return request.app.state.services.store


def get_config(request: Request) -> AppConfig:
    """Get the AppConfig the services were built with."""
    return request.app.state.services.config


async def get_account(account_id: int, store: DatabaseStore = Depends(get_store)) -> EmailAccount:
    """Resolve the ``account_id`` path parameter or answer 404."""
    account = await store.get_email_account(account_id)
    if account is None:
        raise HTTPException(status_code=404, detail="Email account not found")
    return account
