"""
Tests for capgate/api/v1/capabilities.py and capgate/main.py - HTTP surface.
"""
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from fastapi import status
from httpx import ASGITransport, AsyncClient

from capgate.main import app
from conftest import make_result

BASE = "/api/v1/capabilities"


@pytest_asyncio.fixture
async def client(capability_service):
    """HTTP client bound to the app with the test service installed."""
    app.state.capability_service = capability_service
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.state.capability_service = None


class TestAgentEndpoints:
    """Menu and execution endpoints."""

    @pytest.mark.asyncio
    async def test_list_capabilities(self, client, caller_headers):
        response = await client.get(BASE, headers=caller_headers(role="public"))

        assert response.status_code == status.HTTP_200_OK
        names = [c["name"] for c in response.json()]
        assert "getEquipmentList" in names
        assert "queryTable" not in names
        assert set(response.json()[0]) == {"name", "description", "parameterSchema"}

    @pytest.mark.asyncio
    async def test_tools(self, client, caller_headers):
        response = await client.get(f"{BASE}/tools", headers=caller_headers())

        body = response.json()
        assert body["tools"][0]["type"] == "function"
        assert "Tool: getEquipmentList" in body["prompt"]

    @pytest.mark.asyncio
    async def test_execute_success(self, client, caller_headers, mock_db_session):
        rows = [{"id": 1, "name": "Big Freezer"}]
        mock_db_session.execute.return_value = make_result(rows)

        response = await client.post(
            f"{BASE}/execute",
            json={"capabilityName": "getEquipmentList", "arguments": {"active": True}},
            headers=caller_headers(),
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {"ok": True, "value": rows}

    @pytest.mark.asyncio
    async def test_execute_failure_is_still_200(self, client, caller_headers):
        response = await client.post(
            f"{BASE}/execute",
            json={"capabilityName": "systemDiagnostics"},
            headers=caller_headers(role="user"),
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["ok"] is False
        assert response.json()["errorKind"] == "PermissionError"

    @pytest.mark.asyncio
    async def test_missing_caller_headers(self, client):
        response = await client.post(f"{BASE}/execute", json={"capabilityName": "listTables"})

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY

    @pytest.mark.asyncio
    async def test_unknown_role_header(self, client, caller_headers):
        response = await client.get(BASE, headers=caller_headers(role="superuser"))

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["detail"] == "Unknown caller role: superuser"

    @pytest.mark.asyncio
    async def test_service_not_initialized(self, client, caller_headers):
        app.state.capability_service = None

        response = await client.get(BASE, headers=caller_headers())

        assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE


class TestTableEndpoints:
    """Schema discovery endpoints."""

    @pytest.mark.asyncio
    async def test_list_tables(self, client, caller_headers):
        response = await client.get(f"{BASE}/tables", headers=caller_headers(role="public"))

        assert [t["name"] for t in response.json()] == ["environmental_data", "equipment", "power_data"]

    @pytest.mark.asyncio
    async def test_describe_table(self, client, caller_headers):
        response = await client.get(f"{BASE}/tables/power_data", headers=caller_headers())

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["table"] == "power_data"

    @pytest.mark.asyncio
    async def test_describe_unknown_table(self, client, caller_headers):
        response = await client.get(f"{BASE}/tables/users", headers=caller_headers(role="admin"))

        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert response.json()["detail"]["errorKind"] == "NotFoundError"

    @pytest.mark.asyncio
    async def test_describe_forbidden_table(self, client, caller_headers):
        response = await client.get(f"{BASE}/tables/maintenance_log", headers=caller_headers(role="public"))

        assert response.status_code == status.HTTP_403_FORBIDDEN
        assert response.json()["detail"]["errorKind"] == "PermissionError"


class TestAdminEndpoints:
    """Registry administration is admin only."""

    SPEC = {
        "name": "listEquipment",
        "description": "Equipment inventory under another name",
        "implementation": "equipment.list",
        "accessLevel": "public",
        "parameterSchema": {"type": "object", "properties": {}, "required": []},
    }

    @pytest.mark.asyncio
    async def test_register(self, client, caller_headers, capability_service):
        response = await client.post(BASE, json=self.SPEC, headers=caller_headers(role="admin"))

        assert response.status_code == status.HTTP_201_CREATED
        assert response.json() == {
            "name": "listEquipment",
            "implementation": "equipment.list",
            "accessLevel": "public",
            "enabled": True,
        }
        assert capability_service.registry.get("listEquipment") is not None

    @pytest.mark.asyncio
    async def test_register_requires_admin(self, client, caller_headers):
        response = await client.post(BASE, json=self.SPEC, headers=caller_headers(role="manager"))

        assert response.status_code == status.HTTP_403_FORBIDDEN

    @pytest.mark.asyncio
    async def test_register_unknown_implementation(self, client, caller_headers):
        spec = {**self.SPEC, "implementation": "os.system"}

        response = await client.post(BASE, json=spec, headers=caller_headers(role="admin"))

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY
        assert response.json()["detail"]["errorKind"] == "ValidationError"

    @pytest.mark.asyncio
    async def test_disable_and_enable(self, client, caller_headers):
        admin = caller_headers(role="admin")

        disabled = await client.post(f"{BASE}/getEquipmentList/disable", headers=admin)
        listed = await client.get(BASE, headers=caller_headers(role="public"))
        enabled = await client.post(f"{BASE}/getEquipmentList/enable", headers=admin)

        assert disabled.json()["enabled"] is False
        assert "getEquipmentList" not in [c["name"] for c in listed.json()]
        assert enabled.json()["enabled"] is True

    @pytest.mark.asyncio
    async def test_disable_unknown(self, client, caller_headers):
        response = await client.post(f"{BASE}/ghost/disable", headers=caller_headers(role="admin"))

        assert response.status_code == status.HTTP_404_NOT_FOUND


class TestHealth:
    """Test /health."""

    @pytest.mark.asyncio
    async def test_healthy(self, client):
        with patch("capgate.main.check_db_connection", new_callable=AsyncMock) as mock_db:
            mock_db.return_value = True
            response = await client.get("/health")

        assert response.status_code == status.HTTP_200_OK
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"] == {"database": True, "capabilities": True}
        assert body["capabilities"] > 0

    @pytest.mark.asyncio
    async def test_unhealthy_when_db_down(self, client):
        with patch("capgate.main.check_db_connection", new_callable=AsyncMock) as mock_db:
            mock_db.return_value = False
            response = await client.get("/health")

        assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
        assert response.json()["status"] == "unhealthy"

    @pytest.mark.asyncio
    async def test_request_id_header(self, client):
        with patch("capgate.main.check_db_connection", new_callable=AsyncMock, return_value=True):
            response = await client.get("/health")

        assert "X-Request-ID" in response.headers

    @pytest.mark.asyncio
    async def test_upstream_request_id_kept(self, client):
        with patch("capgate.main.check_db_connection", new_callable=AsyncMock, return_value=True):
            response = await client.get("/health", headers={"X-Request-ID": "edge-7f3a"})

        assert response.headers["X-Request-ID"] == "edge-7f3a"

    @pytest.mark.asyncio
    async def test_malformed_request_id_replaced(self, client):
        with patch("capgate.main.check_db_connection", new_callable=AsyncMock, return_value=True):
            response = await client.get("/health", headers={"X-Request-ID": "bad id\" <script>"})

        assert response.headers["X-Request-ID"] != "bad id\" <script>"
        assert len(response.headers["X-Request-ID"]) == 8
