"""Tests for WABA discovery and creation strategies."""

import pytest

from waconnect.domain.services.identity_resolution import (
    IdentityResolutionEngine,
    ResolutionContext,
    ResolutionState,
)
from waconnect.persistence.repositories.integration_log_repository import IntegrationLogRepository
from waconnect.settings import settings

from graph_helpers import graph_error, stub_empty_discovery


def _context(tenant_id: int, business_id: str | None = None) -> ResolutionContext:
    return ResolutionContext(tenant_id=tenant_id, user_token="user-token", business_id=business_id)


@pytest.mark.asyncio
async def test_discovery_first_match_wins(db_session, graph, graph_stub, tenant):
    stub_empty_discovery(graph_stub)
    graph_stub.data("/B1/owned_whatsapp_business_accounts", [{"id": "W1", "name": "Harbor Grill"}])
    graph_stub.data("/B1/client_whatsapp_business_accounts", [{"id": "W2"}])
    engine = IdentityResolutionEngine(db_session, graph)

    outcome = await engine.discover(_context(tenant.id))

    assert outcome.state == ResolutionState.FOUND
    assert outcome.waba_id == "W1"
    assert outcome.business_id == "B1"
    assert outcome.strategy == "owned_waba"
    assert outcome.attempts == [("me_waba", False), ("owned_waba", True)]
    # Later strategies are never attempted once one succeeds
    assert "/B1/client_whatsapp_business_accounts" not in graph_stub.paths()
    assert "/me/accounts" not in graph_stub.paths()


@pytest.mark.asyncio
async def test_discovery_via_connected_page(db_session, graph, graph_stub, tenant):
    stub_empty_discovery(graph_stub)
    graph_stub.data("/me/accounts", [{"id": "P1"}, {"id": "P2"}])
    graph_stub.on("GET", "/P1", id="P1")
    graph_stub.on("GET", "/P2", id="P2", connected_whatsapp_business_account={"id": "W5"})
    engine = IdentityResolutionEngine(db_session, graph)

    outcome = await engine.discover(_context(tenant.id))

    assert outcome.state == ResolutionState.FOUND
    assert outcome.waba_id == "W5"
    assert outcome.strategy == "page_connected_waba"


@pytest.mark.asyncio
async def test_discovery_miss_is_unresolved_not_error(db_session, graph, graph_stub, tenant):
    stub_empty_discovery(graph_stub)
    # A failing strategy is recorded and discovery moves on
    graph_stub.on("GET", "/me/whatsapp_business_accounts", graph_error(500, "Temporary failure", code=2))
    engine = IdentityResolutionEngine(db_session, graph)

    outcome = await engine.discover(_context(tenant.id))

    assert outcome.state == ResolutionState.UNRESOLVED
    assert [name for name, _ in outcome.attempts] == [
        "me_waba", "owned_waba", "client_waba", "page_connected_waba",
    ]
    entries = await IntegrationLogRepository(db_session).list_for_tenant(tenant.id, step="waba_discovery")
    assert [(e.strategy, e.success) for e in entries] == [
        ("me_waba", False),
        ("owned_waba", False),
        ("client_waba", False),
        ("page_connected_waba", False),
    ]
    assert entries[0].details["status_code"] == 500


@pytest.mark.asyncio
async def test_creation_stops_at_first_success(db_session, graph, graph_stub, tenant, monkeypatch):
    monkeypatch.setattr(settings, "meta_system_user_token", "system-token")
    monkeypatch.setattr(settings, "meta_bsp_business_id", "BSP1")
    stub_empty_discovery(graph_stub, business_id="B2")
    graph_stub.on("POST", "/BSP1/client_whatsapp_business_accounts", graph_error(403, "Permission denied", code=200))
    graph_stub.on("POST", "/B2/whatsapp_business_accounts", id="W9")
    engine = IdentityResolutionEngine(db_session, graph)

    outcome = await engine.resolve(_context(tenant.id))

    assert outcome.state == ResolutionState.CREATING
    assert outcome.waba_id == "W9"
    assert outcome.strategy == "client_business_waba"
    assert outcome.business_id == "B2"

    entries = await IntegrationLogRepository(db_session).list_for_tenant(tenant.id, step="waba_creation")
    assert [(e.strategy, e.success) for e in entries] == [
        ("bsp_client_waba", False),
        ("client_business_waba", True),
    ]
    assert "/B2/client_whatsapp_applications" not in graph_stub.paths("POST")

    created = graph_stub.calls[-1]
    assert created.headers["Authorization"] == "Bearer system-token"


@pytest.mark.asyncio
async def test_all_creators_failing_leaves_tenant_awaiting(db_session, graph, graph_stub, tenant):
    stub_empty_discovery(graph_stub)
    graph_stub.on("POST", "/B1/client_whatsapp_applications", graph_error(400, "Not allowed", code=10))
    engine = IdentityResolutionEngine(db_session, graph)

    outcome = await engine.resolve(_context(tenant.id))

    assert outcome.state == ResolutionState.FAILED
    assert outcome.waba_id is None
    entries = await IntegrationLogRepository(db_session).list_for_tenant(tenant.id, step="waba_creation")
    assert [(e.strategy, e.success) for e in entries] == [
        ("bsp_client_waba", False),
        ("client_business_waba", False),
        ("client_whatsapp_application", False),
    ]
    assert entries[0].error_message == "BSP credentials are not configured"


@pytest.mark.asyncio
async def test_strategy_order_is_stable(db_session, graph, graph_stub, tenant):
    stub_empty_discovery(graph_stub)
    engine = IdentityResolutionEngine(db_session, graph)

    first = await engine.resolve(_context(tenant.id))
    second = await engine.resolve(_context(tenant.id))

    assert [name for name, _ in first.attempts] == [name for name, _ in second.attempts]


@pytest.mark.asyncio
async def test_subscribe_app_treats_already_subscribed_as_success(db_session, graph, graph_stub, tenant):
    graph_stub.on(
        "POST",
        "/W1/subscribed_apps",
        graph_error(400, "App already subscribed", code=100, subcode=2018001),
    )
    engine = IdentityResolutionEngine(db_session, graph)

    assert await engine.subscribe_app(tenant.id, "W1", "user-token") is True

    entries = await IntegrationLogRepository(db_session).list_for_tenant(tenant.id, step="subscribe_app")
    assert entries[0].success is True


@pytest.mark.asyncio
async def test_subscribe_app_failure_is_logged(db_session, graph, graph_stub, tenant):
    graph_stub.on("POST", "/W1/subscribed_apps", graph_error(403, "Permission denied", code=200))
    engine = IdentityResolutionEngine(db_session, graph)

    assert await engine.subscribe_app(tenant.id, "W1", "user-token") is False

    entries = await IntegrationLogRepository(db_session).list_for_tenant(tenant.id, step="subscribe_app")
    assert entries[0].success is False
    assert "Permission denied" in entries[0].error_message


@pytest.mark.asyncio
async def test_find_waba_for_phone_number(db_session, graph, graph_stub, tenant):
    stub_empty_discovery(graph_stub)
    graph_stub.data("/B1/client_whatsapp_business_accounts", [{"id": "W1"}, {"id": "W2"}])
    graph_stub.data("/W1/phone_numbers", [{"id": "PN1"}])
    graph_stub.data("/W2/phone_numbers", [{"id": "PN2"}])
    engine = IdentityResolutionEngine(db_session, graph)

    assert await engine.find_waba_for_phone_number(_context(tenant.id), "PN2") == "W2"
    assert await engine.find_waba_for_phone_number(_context(tenant.id), "PN9") is None
