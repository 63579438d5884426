"""
Visa CRM - Conversion API tests
ASGI in-process client against the FastAPI app, database swapped for the
in-memory fixture. Errors come back as {"success": false, "error", "retryable"}.
"""

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from config import get_db
from routes.auth import get_current_user
from routes.conversions import get_conversion_service
from server import app
from services.conversion_errors import TransportError
from services.conversion_service import ConversionService
from services.stores import ClientStore

TEST_USER = {"id": "user-1", "email": "agent@visa-crm.test", "role": "admin"}


@pytest_asyncio.fixture
async def api(db):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_current_user] = lambda: TEST_USER
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def anonymous_api(db):
    app.dependency_overrides[get_db] = lambda: db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


class DownClientStore(ClientStore):
    async def find_by_email(self, email):
        raise TransportError("timeout", {"operation": "client email lookup"})


class TestAuth:

    @pytest.mark.asyncio
    async def test_requires_token(self, anonymous_api):
        response = await anonymous_api.get("/api/team-members")
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_expired_session(self, db, anonymous_api):
        await db.sessions.insert_one({
            "token": "old-token", "user_id": "user-1", "expires_at": "2020-01-01T00:00:00+00:00"
        })

        response = await anonymous_api.get(
            "/api/team-members", headers={"Authorization": "Bearer old-token"}
        )

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_valid_session(self, db, anonymous_api):
        await db.users.insert_one({**TEST_USER, "is_active": True})
        await db.sessions.insert_one({
            "token": "good-token", "user_id": "user-1", "expires_at": "2999-01-01T00:00:00+00:00"
        })

        response = await anonymous_api.get(
            "/api/team-members", headers={"Authorization": "Bearer good-token"}
        )

        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_disabled_account(self, db, anonymous_api):
        await db.users.insert_one({**TEST_USER, "active": False})
        await db.sessions.insert_one({
            "token": "good-token", "user_id": "user-1", "expires_at": "2999-01-01T00:00:00+00:00"
        })

        response = await anonymous_api.get(
            "/api/team-members", headers={"Authorization": "Bearer good-token"}
        )

        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_session_of_deleted_user(self, db, anonymous_api):
        await db.sessions.insert_one({
            "token": "orphan-token", "user_id": "gone", "expires_at": "2999-01-01T00:00:00+00:00"
        })

        response = await anonymous_api.get(
            "/api/team-members", headers={"Authorization": "Bearer orphan-token"}
        )

        assert response.status_code == 401


class TestTeamMembers:

    @pytest.mark.asyncio
    async def test_lists_active_members_by_name(self, api, seed):
        await seed.team_member("Zara Khan")
        await seed.team_member("Amit Shah")
        await seed.team_member("Gone Away", active=False)

        response = await api.get("/api/team-members")

        data = response.json()
        assert data["count"] == 2
        assert [m["display_name"] for m in data["team_members"]] == ["Amit Shah", "Zara Khan"]
        assert set(data["team_members"][0]) == {"id", "display_name"}


class TestConvertEndpoints:

    @pytest.mark.asyncio
    async def test_convert_new_client(self, db, api, seed):
        member = await seed.team_member()
        e1 = await seed.enquiry()

        response = await api.post(
            f"/api/enquiries/{e1['id']}/convert",
            json={"assigned_team_member_id": member["id"]}
        )

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["status"] == "converted"
        assert data["decision"] == "create_new"
        event = await db.event_log.find_one({"action": "convert_enquiry"})
        assert event["user"] == "agent@visa-crm.test"

    @pytest.mark.asyncio
    async def test_two_call_flow(self, db, api, seed):
        member = await seed.team_member()
        e1 = await seed.enquiry()
        e2 = await seed.enquiry(email="ASHA@example.org")
        first = (await api.post(
            f"/api/enquiries/{e1['id']}/convert",
            json={"assigned_team_member_id": member["id"]}
        )).json()

        check = (await api.post(f"/api/enquiries/{e2['id']}/check-duplicate")).json()
        assert check["exists"] is True
        assert check["matched_client_id"] == first["client_id"]

        response = await api.post(
            f"/api/enquiries/{e2['id']}/commit-conversion",
            json={
                "decision": "merge_into_existing",
                "assigned_team_member_id": member["id"],
                "matched_client_id": check["matched_client_id"]
            }
        )

        data = response.json()
        assert data["status"] == "merged"
        assert data["client_id"] == first["client_id"]
        client = await db.clients.find_one({"id": first["client_id"]})
        assert client["source_enquiry_ids"] == [e1["id"], e2["id"]]

    @pytest.mark.asyncio
    async def test_convert_duplicate_is_aborted(self, api, seed):
        member = await seed.team_member()
        existing = await seed.client("asha@example.org")
        e1 = await seed.enquiry()

        response = await api.post(
            f"/api/enquiries/{e1['id']}/convert",
            json={"assigned_team_member_id": member["id"]}
        )

        data = response.json()
        assert response.status_code == 200
        assert data["status"] == "aborted"
        assert data["matched_client_id"] == existing["id"]
        assert data["match"]["client"]["id"] == existing["id"]

    @pytest.mark.asyncio
    async def test_invalid_decision_rejected(self, api, seed):
        e1 = await seed.enquiry()

        response = await api.post(
            f"/api/enquiries/{e1['id']}/commit-conversion", json={"decision": "overwrite"}
        )

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_repair_endpoint(self, api, seed):
        existing = await seed.client("asha@example.org")
        e1 = await seed.enquiry()

        response = await api.post(f"/api/enquiries/{e1['id']}/repair-conversion", json={})

        data = response.json()
        assert data["status"] == "merged"
        assert data["client_id"] == existing["id"]
        assert data["reconciled"] is True


class TestErrors:

    @pytest.mark.asyncio
    async def test_assignment_required(self, api, seed):
        e1 = await seed.enquiry()

        response = await api.post(f"/api/enquiries/{e1['id']}/convert", json={})

        assert response.status_code == 422
        data = response.json()
        assert data["success"] is False
        assert data["error"] == "assignment_required"
        assert data["retryable"] is False

    @pytest.mark.asyncio
    async def test_not_found(self, api):
        response = await api.post("/api/enquiries/missing/convert", json={"skip_assignment": True})

        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    @pytest.mark.asyncio
    async def test_already_converted(self, api, seed):
        member = await seed.team_member()
        e1 = await seed.enquiry()
        body = {"assigned_team_member_id": member["id"]}
        first = (await api.post(f"/api/enquiries/{e1['id']}/convert", json=body)).json()

        response = await api.post(f"/api/enquiries/{e1['id']}/convert", json=body)

        assert response.status_code == 409
        data = response.json()
        assert data["error"] == "already_converted"
        assert data["details"]["client_id"] == first["client_id"]

    @pytest.mark.asyncio
    async def test_transport_failure_is_retryable(self, db, api, seed):
        member = await seed.team_member()
        e1 = await seed.enquiry()
        app.dependency_overrides[get_conversion_service] = lambda: ConversionService(
            db, clients=DownClientStore(db)
        )

        response = await api.post(
            f"/api/enquiries/{e1['id']}/convert",
            json={"assigned_team_member_id": member["id"]}
        )

        assert response.status_code == 503
        data = response.json()
        assert data["error"] == "transport"
        assert data["retryable"] is True


class TestCheckDuplicateUser:

    @pytest.mark.asyncio
    async def test_existing_enquiry(self, api, seed):
        enquiry = await seed.enquiry()

        response = await api.post(
            "/api/enquiries/check-duplicate-user", json={"email": "ASHA@example.org"}
        )

        data = response.json()
        assert data["exists"] is True
        assert data["type"] == "enquiry"
        assert data["user_data"]["id"] == enquiry["id"]

    @pytest.mark.asyncio
    async def test_requires_contact(self, api):
        response = await api.post("/api/enquiries/check-duplicate-user", json={})

        assert response.status_code == 422
        assert response.json()["error"] == "validation_error"
