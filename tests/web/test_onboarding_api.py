"""
Tests for the onboarding HTTP endpoints.

Dependencies are overridden with in-memory fakes; no Supabase calls.
"""

import pytest
from fastapi.testclient import TestClient

from conftest import USER_ID, FakeSessionProvider, no_sleep
from onboarding.api import get_service, get_session_provider
from onboarding.completion import OnboardingCompletionService
from onboarding.errors import FatalStoreError, TransientStoreError
from onboarding.state import StoreName
from planora.web.app import app
from planora.web.auth import (
    AuthenticatedUser,
    SessionCredentials,
    get_current_user,
    get_session_credentials,
)


@pytest.fixture
def service(primary, identity, cache):
    return OnboardingCompletionService(primary, identity, cache, sleep=no_sleep)


@pytest.fixture
def session_provider():
    return FakeSessionProvider()


@pytest.fixture
def client(service, session_provider):
    app.dependency_overrides[get_service] = lambda: service
    app.dependency_overrides[get_session_provider] = lambda: session_provider
    app.dependency_overrides[get_session_credentials] = lambda: SessionCredentials(
        access_token="access", refresh_token="refresh", user_id=USER_ID,
    )
    app.dependency_overrides[get_current_user] = lambda: AuthenticatedUser(
        id=USER_ID, email="ada@example.com", access_token="access",
    )
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestComplete:

    def test_completed(self, client, primary, raw_preferences):
        response = client.post("/api/onboarding/complete", json={"preferences": raw_preferences})

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "completed"
        assert data["may_proceed"] is True
        assert data["next_route"] == "/"
        assert data["session"] is None
        assert data["preferences"]["distanceBand"] is None
        assert primary.writes == 1

    def test_refreshed_session_returned(self, client, session_provider, raw_preferences):
        session_provider.expires_in = 5

        data = client.post("/api/onboarding/complete", json={"preferences": raw_preferences}).json()

        assert data["session"]["access_token"] == "access-refreshed"
        assert data["session"]["refresh_token"] == "refresh-refreshed"

    def test_field_issues(self, client, primary):
        response = client.post(
            "/api/onboarding/complete",
            json={"preferences": {"budgetMin": 2000, "budgetMax": 1000}},
        )

        assert response.status_code == 422
        fields = [issue["field"] for issue in response.json()["detail"]["issues"]]
        assert "budgetMin" in fields
        assert "departureCity" in fields
        assert primary.upsert_calls == []

    def test_attempt_must_be_positive(self, client, raw_preferences):
        response = client.post("/api/onboarding/complete", json={"preferences": raw_preferences, "attempt": 0})
        assert response.status_code == 422

    def test_expired_session(self, client, session_provider, raw_preferences):
        session_provider.expires_in = -10
        session_provider.refresh_ok = False

        response = client.post("/api/onboarding/complete", json={"preferences": raw_preferences})

        assert response.status_code == 401
        assert response.json()["detail"]["recoverable"] is True

    def test_durable_store_failure(self, client, primary, raw_preferences):
        primary.failures = [FatalStoreError(StoreName.PRIMARY, "permission denied")]

        response = client.post("/api/onboarding/complete", json={"preferences": raw_preferences})

        assert response.status_code == 502
        assert response.json()["detail"]["next_route"] == "/onboarding"


class TestRecovery:

    def test_nothing_to_recover(self, client):
        assert client.get("/api/onboarding/recovery").status_code == 404
        assert client.post("/api/onboarding/recovery/resubmit").status_code == 404

    def test_resubmit_after_reauth(self, client, session_provider, primary, raw_preferences):
        session_provider.present = False
        session_provider.refresh_ok = False
        client.post("/api/onboarding/complete", json={"preferences": raw_preferences})

        recovery = client.get("/api/onboarding/recovery")
        assert recovery.status_code == 200
        assert recovery.json()["attempt"] == 1
        assert recovery.json()["preferences"]["departureCity"] == "Lisbon"

        session_provider.present = True
        response = client.post("/api/onboarding/recovery/resubmit")

        assert response.status_code == 200
        assert response.json()["status"] == "completed"
        assert response.json()["attempt"] == 1
        assert primary.writes == 1


class TestStatusAndVerify:

    def test_new_user_status(self, client):
        data = client.get("/api/onboarding/status").json()

        assert data["completed"] is False
        assert data["next_route"] == "/onboarding"

    def test_status_after_completion(self, client, raw_preferences):
        client.post("/api/onboarding/complete", json={"preferences": raw_preferences})

        data = client.get("/api/onboarding/status").json()

        assert data["completed"] is True
        assert data["source"] == "cache"

    def test_status_unavailable(self, client, primary):
        primary.read_failures = [TransientStoreError(StoreName.PRIMARY, "503")]

        assert client.get("/api/onboarding/status").status_code == 503

    def test_verify(self, client):
        data = client.post("/api/onboarding/verify", json={"repair": False}).json()

        assert data["user_id"] == USER_ID
        assert data["consistent"] is True

    def test_options(self, client):
        data = client.get("/api/onboarding/options").json()
        assert {"duration", "budget_flexibility"} <= set(data)


class TestAuth:

    def test_missing_authorization(self, raw_preferences):
        response = TestClient(app).post("/api/onboarding/complete", json={"preferences": raw_preferences})
        assert response.status_code == 401

    def test_malformed_token(self, raw_preferences):
        response = TestClient(app).post(
            "/api/onboarding/complete",
            json={"preferences": raw_preferences},
            headers={"Authorization": "Bearer not-a-jwt"},
        )
        assert response.status_code == 401
