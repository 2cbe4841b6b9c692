"""
API tests for the auth and cases routers against the in-memory engine.
"""
import httpx
import pytest
from fastapi import APIRouter, FastAPI

from orderhub.routes import auth_router, cases_router, set_cases_deps
from orderhub.routes.auth import create_token


def build_app(engine) -> FastAPI:
    set_cases_deps(engine.case_store, engine.event_log, engine.evidence, engine.runtime)
    app = FastAPI()
    api_router = APIRouter(prefix="/api")
    api_router.include_router(auth_router)
    api_router.include_router(cases_router)
    app.include_router(api_router)
    return app


@pytest.fixture
async def client(engine):
    transport = httpx.ASGITransport(app=build_app(engine))
    async with httpx.AsyncClient(transport=transport, base_url="http://orderhub.test") as http:
        yield http


def bearer(username: str = "admin") -> dict:
    return {"Authorization": f"Bearer {create_token(username)}"}


async def create_case(client, engine) -> str:
    url = engine.register_file()
    response = await client.post("/api/cases", json={"tenant_id": "tenant-1", "file_url": url,
                                                     "file_name": "acme.xlsx"}, headers=bearer())
    assert response.status_code == 200
    await engine.runtime.wait_idle()
    return response.json()["case_id"]


class TestAuth:

    @pytest.mark.asyncio
    async def test_login(self, client):
        response = await client.post("/api/auth/login", json={"username": "admin", "password": "admin"})
        assert response.status_code == 200
        data = response.json()
        assert data["token"]
        assert data["user"]["username"] == "admin"

        me = await client.get("/api/auth/me", headers={"Authorization": f"Bearer {data['token']}"})
        assert me.status_code == 200
        assert me.json()["role"] == "administrator"

    @pytest.mark.asyncio
    async def test_bad_credentials(self, client):
        response = await client.post("/api/auth/login", json={"username": "admin", "password": "nope"})
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_me_requires_token(self, client):
        """No header is 401; a malformed token is 401."""
        assert (await client.get("/api/auth/me")).status_code == 401
        bad = await client.get("/api/auth/me", headers={"Authorization": "Bearer not-a-jwt"})
        assert bad.status_code == 401
        assert bad.json()["detail"] == "Invalid token"


class TestCaseIntake:

    @pytest.mark.asyncio
    async def test_create_and_read(self, client, engine):
        """Intake starts the workflow; the case is readable with its version."""
        case_id = await create_case(client, engine)

        response = await client.get(f"/api/cases/{case_id}")
        assert response.status_code == 200
        data = response.json()
        assert data["case"]["status"] == "awaiting_approval"
        assert data["case"]["user_id"] == "admin"
        assert data["version"] >= 1

        listing = (await client.get("/api/cases")).json()
        assert listing["total"] == 1
        assert listing["cases"][0]["id"] == case_id

    @pytest.mark.asyncio
    async def test_unknown_case(self, client):
        assert (await client.get("/api/cases/missing")).status_code == 404
        assert (await client.get("/api/cases/missing/events")).status_code == 404
        response = await client.post("/api/cases/missing/signals/approval", json={"approved": True})
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_state_events_and_evidence(self, client, engine):
        case_id = await create_case(client, engine)

        state = (await client.get(f"/api/cases/{case_id}/state")).json()
        assert state["running"] is True
        assert state["waiting_for"] == "approval"

        events = (await client.get(f"/api/cases/{case_id}/events")).json()
        assert events["events"][0]["type"] == "case_created"
        assert [e["sequence_number"] for e in events["events"]] == list(range(1, events["count"] + 1))

        parsed = (await client.get(f"/api/cases/{case_id}/events", params={"event_type": "file_parsed"})).json()
        assert parsed["count"] == 1

        evidence = (await client.get(f"/api/cases/{case_id}/evidence")).json()
        assert evidence["count"] > 0
        assert all(a["path"].startswith("committee/") for a in evidence["artifacts"])


class TestSignals:

    @pytest.mark.asyncio
    async def test_approval_finalizes(self, client, engine):
        """Approval over the API runs the case to finalized; the closed run is reported."""
        case_id = await create_case(client, engine)

        response = await client.post(f"/api/cases/{case_id}/signals/approval", json={"approved": True},
                                     headers=bearer())
        assert response.status_code == 200
        assert response.json()["accepted"] is True
        await engine.runtime.wait_for_result(case_id)

        state = (await client.get(f"/api/cases/{case_id}/state")).json()
        assert state["running"] is False
        assert state["status"] == "finalized"
        assert state["run_status"] == "completed"
        assert state["result"]["order_number"] == "SO-00001"

    @pytest.mark.asyncio
    async def test_signal_after_terminal_is_conflict(self, client, engine):
        """Once a case is cancelled it no longer accepts input."""
        case_id = await create_case(client, engine)
        await client.post(f"/api/cases/{case_id}/signals/approval",
                          json={"approved": False, "reason": "duplicate order"})
        await engine.runtime.wait_for_result(case_id)

        response = await client.post(f"/api/cases/{case_id}/signals/approval", json={"approved": True})
        assert response.status_code == 409
        assert response.json()["detail"] == "Case is not accepting input"

    @pytest.mark.asyncio
    async def test_bad_correction_path(self, client, engine):
        """Corrections are validated before they reach the workflow."""
        case_id = await create_case(client, engine)
        response = await client.post(f"/api/cases/{case_id}/signals/corrections",
                                     json={"corrections": [{"field_path": "line_items[0].rate",
                                                            "corrected_value": 1}]})
        assert response.status_code == 422
        assert engine.runtime.query(case_id)["pending"]["correction_batches"] == 0

    @pytest.mark.asyncio
    async def test_corrections_get_ids(self, client, engine):
        case_id = await create_case(client, engine)
        response = await client.post(f"/api/cases/{case_id}/signals/corrections",
                                      json={"corrections": [{"field_path": "customer.name",
                                                             "corrected_value": "Acme Foods"}]},
                                      headers=bearer())
        assert response.status_code == 200
        assert len(response.json()["correction_ids"]) == 1

    @pytest.mark.asyncio
    async def test_correction_for_unknown_row(self, client, engine):
        """A row the parsed order does not have is refused up front."""
        case_id = await create_case(client, engine)
        response = await client.post(f"/api/cases/{case_id}/signals/corrections",
                                     json={"corrections": [{"field_path": "line_items[7].quantity",
                                                            "corrected_value": 4}]})
        assert response.status_code == 422
        assert response.json()["detail"] == "No line item for row 7"
        assert engine.runtime.query(case_id)["pending"]["correction_batches"] == 0

    @pytest.mark.asyncio
    async def test_corrections_after_finalized_are_conflict(self, client, engine):
        """Once the order is submitted its content can no longer be corrected."""
        case_id = await create_case(client, engine)
        await client.post(f"/api/cases/{case_id}/signals/approval", json={"approved": True})
        await engine.runtime.wait_for_result(case_id)

        response = await client.post(f"/api/cases/{case_id}/signals/corrections",
                                     json={"corrections": [{"field_path": "line_items[1].quantity",
                                                            "corrected_value": 4}]})
        assert response.status_code == 409
        assert response.json()["detail"].startswith("Case is no longer accepting corrections")
