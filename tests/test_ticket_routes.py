from __future__ import annotations

import httpx
import pytest
from fastapi.testclient import TestClient

from pulse.core.config import Settings, get_settings
from pulse.dependencies.tickets import get_dispatch_engine, get_ticket_workflow
from pulse.main import create_app

USER = {"Authorization": "Bearer user-token"}
DIGITAL = {"Authorization": "Bearer digital-token"}
MANAGER = {"Authorization": "Bearer manager-token"}
ADMIN = {"Authorization": "Bearer admin-token"}

TICKET = {"title": "VPN drops", "description": "Disconnects every hour", "type": "Network"}


@pytest.fixture
def api_client(monkeypatch, workflow, dispatcher, registry):
    monkeypatch.setenv("STORAGE_BACKEND", "memory")
    get_settings.cache_clear()
    app = create_app()
    app.dependency_overrides[get_ticket_workflow] = lambda: workflow
    app.dependency_overrides[get_dispatch_engine] = lambda: dispatcher

    try:
        with TestClient(app) as client:
            app.state.metrics_registry = registry
            yield client
    finally:
        app.dependency_overrides.clear()
        get_settings.cache_clear()


def test_requests_without_token_are_unauthorized(api_client):
    assert api_client.get("/tickets").status_code == 401
    assert api_client.get("/tickets", headers={"Authorization": "Bearer nope"}).status_code == 401


def test_create_ticket_returns_created(api_client):
    response = api_client.post("/tickets", json=TICKET, headers=USER)

    assert response.status_code == 201
    body = response.json()
    assert body["ticket"]["status"] == "Open"
    assert body["ticket"]["ticket_number"].startswith("TK")
    assert body["notification_scheduled"] is True
    assert body["audit_degraded"] is False


def test_create_ticket_validates_payload(api_client):
    response = api_client.post("/tickets", json={"title": "", "description": "x", "type": "y"}, headers=USER)

    assert response.status_code == 422


def test_approval_flow_and_conflict(api_client):
    ticket_id = api_client.post("/tickets", json=TICKET, headers=DIGITAL).json()["ticket"]["id"]

    forbidden = api_client.put(f"/tickets/{ticket_id}/approve", headers=DIGITAL)
    approved = api_client.put(f"/tickets/{ticket_id}/approve", headers=MANAGER)
    again = api_client.put(f"/tickets/{ticket_id}/approve", headers=MANAGER)

    assert forbidden.status_code == 403
    assert approved.status_code == 200
    assert approved.json()["ticket"]["status"] == "Open"
    assert again.status_code == 409


def test_reject_accepts_optional_reason(api_client):
    ticket_id = api_client.post("/tickets", json=TICKET, headers=ADMIN).json()["ticket"]["id"]

    response = api_client.put(f"/tickets/{ticket_id}/reject", json={"reason": "Duplicate"}, headers=MANAGER)
    history = api_client.get(f"/tickets/{ticket_id}/history", headers=MANAGER)

    assert response.status_code == 200
    assert response.json()["ticket"]["status"] == "Rejected"
    assert [entry["change_reason"] for entry in history.json()] == ["Ticket created", "Duplicate"]


def test_missing_ticket_returns_not_found(api_client):
    response = api_client.put("/tickets/999/status", json={"status": "Closed"}, headers=MANAGER)

    assert response.status_code == 404


def test_unknown_status_is_unprocessable(api_client):
    ticket_id = api_client.post("/tickets", json=TICKET, headers=USER).json()["ticket"]["id"]

    response = api_client.put(f"/tickets/{ticket_id}/status", json={"status": "Escalated"}, headers=MANAGER)

    assert response.status_code == 422


def test_remark_updates_status(api_client):
    ticket_id = api_client.post("/tickets", json=TICKET, headers=USER).json()["ticket"]["id"]

    response = api_client.post(
        f"/tickets/{ticket_id}/remarks", json={"remark": "Router replaced", "status": "Resolved"}, headers=DIGITAL
    )

    assert response.status_code == 200
    ticket = response.json()["ticket"]
    assert ticket["remark"] == "Router replaced"
    assert ticket["resolved_at"] is not None


def test_ticket_visibility(api_client):
    ticket_id = api_client.post("/tickets", json=TICKET, headers=USER).json()["ticket"]["id"]

    assert api_client.get(f"/tickets/{ticket_id}", headers=USER).status_code == 200
    assert api_client.get(f"/tickets/{ticket_id}", headers=DIGITAL).status_code == 200
    assert [item["id"] for item in api_client.get("/tickets", headers=USER).json()] == [ticket_id]
    assert api_client.get("/tickets", headers=MANAGER).json() == []


def test_all_tickets_requires_support_role(api_client):
    api_client.post("/tickets", json=TICKET, headers=USER)

    assert api_client.get("/tickets/all", headers=USER).status_code == 403
    assert len(api_client.get("/tickets/all", headers=MANAGER).json()) == 1
    assert len(api_client.get("/tickets/all", headers=ADMIN).json()) == 1


def test_test_email_endpoint_reports_dispatch_result(api_client, gateway):
    forbidden = api_client.post("/notifications/test", json={"to": "probe@example.com"}, headers=USER)
    response = api_client.post("/notifications/test", json={"to": "probe@example.com"}, headers=MANAGER)

    assert forbidden.status_code == 403
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["outcomes"][0]["recipient"] == "probe@example.com"
    assert "probe@example.com" in gateway.recipients()


def test_metrics_endpoint_renders_prometheus_text(api_client):
    api_client.post("/tickets", json=TICKET, headers=USER)

    response = api_client.get("/metrics")

    assert response.status_code == 200
    assert 'ticket_transitions_total{action="create"} 1.0' in response.text


def test_admin_soft_delete(api_client):
    ticket_id = api_client.post("/tickets", json=TICKET, headers=USER).json()["ticket"]["id"]

    forbidden = api_client.request("DELETE", f"/admin/tickets/{ticket_id}", headers=MANAGER)
    deleted = api_client.request(
        "DELETE", f"/admin/tickets/{ticket_id}", json={"reason": "Raised twice"}, headers=ADMIN
    )
    again = api_client.request("DELETE", f"/admin/tickets/{ticket_id}", headers=ADMIN)

    assert forbidden.status_code == 403
    assert deleted.status_code == 200
    body = deleted.json()
    assert body["ticket"]["is_deleted"] is True
    assert body["ticket"]["delete_reason"] == "Raised twice"
    assert body["notification_scheduled"] is False
    assert again.status_code == 404
    assert api_client.get(f"/tickets/{ticket_id}", headers=USER).status_code == 404
    assert api_client.get("/tickets/all", headers=MANAGER).json() == []


def test_mail_health_reports_reachable_gateway(api_client, gateway):
    forbidden = api_client.get("/email/health", headers=ADMIN)
    response = api_client.get("/email/health", headers=DIGITAL)

    assert forbidden.status_code == 403
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["reachable"] is True
    assert body["gateway_url"] == get_settings().mail_gateway_url
    assert gateway.opened == gateway.closed == 1


def test_mail_health_reports_unreachable_gateway(api_client, gateway):
    gateway.fail_connect(httpx.ConnectError("connection refused"))

    response = api_client.get("/email/health", headers=MANAGER)

    assert response.status_code == 503
    body = response.json()
    assert body["status"] == "unhealthy"
    assert body["failure_kind"] == "unreachable"


def test_mail_config_lists_retry_settings_and_missing_values(api_client):
    forbidden = api_client.get("/email/config", headers=USER)
    defaults = api_client.get("/email/config", headers=MANAGER).json()
    api_client.app.dependency_overrides[get_settings] = lambda: Settings(ops_team_email="")
    missing = api_client.get("/email/config", headers=MANAGER).json()

    assert forbidden.status_code == 403
    assert defaults["connect_attempts"] == 3
    assert defaults["send_backoff_base"] == 3.0
    assert defaults["missing"] == []
    assert missing["missing"] == ["ops_team_email"]
