"""
End-to-end Gmail sync through the HTTP app: real Fernet cipher, real Google
token refresh client (token endpoint mocked with pytest-httpx), in-memory
repositories.
"""

from datetime import UTC, datetime, timedelta
from urllib.parse import parse_qs

import pytest
from fastapi.testclient import TestClient

from app.features.sync.container import build_container
from app.features.sync.domain import Integration, ProviderSyncResult, SyncServiceName, SyncStatus
from app.features.sync.domain.exceptions import ProviderAuthError
from app.features.sync.services.provider_clients import GOOGLE_TOKEN_URL, GoogleTokenRefreshClient
from app.infrastructure.cache import LocalCacheBackend, QueryCache
from app.main import app
from app.services.infrastructure.encryption_service import FernetCredentialCipher, generate_new_key
from tests.conftest import (
    FakeClock,
    FakeIntegrationRepository,
    FakeJobRepository,
    FakeSessionRepository,
)

KEY = ("user-123", "google", "gmail")


class ExpiringTokenGmailClient:
    """Rejects the first call with a 401, then imports ``raw_ids``."""

    provider = "google"
    service = "gmail"

    def __init__(self, raw_ids):
        self.raw_ids = raw_ids
        self.calls = 0

    async def sync(self, user_id, options, reporter):
        self.calls += 1
        if self.calls == 1:
            raise ProviderAuthError("Invalid Credentials", provider=self.provider, status_code=401)
        await reporter.report(progress_percentage=100, imported_items=len(self.raw_ids))
        return ProviderSyncResult(success=True, items_synced=len(self.raw_ids), raw_event_ids=self.raw_ids)


class EchoNormalizer:
    async def normalize(self, user_id, payload):
        return {"event_id": f"evt-{payload['raw_event_id']}"}


@pytest.fixture
def cipher():
    return FernetCredentialCipher(generate_new_key())


@pytest.fixture
def repos():
    clock = FakeClock(datetime.now(UTC))
    return FakeJobRepository(clock), FakeSessionRepository(clock), FakeIntegrationRepository()


@pytest.fixture
def gmail_client():
    return ExpiringTokenGmailClient(["raw-1", "raw-2", "raw-3"])


@pytest.fixture
def client(repos, cipher, gmail_client, apply_auth_override):
    jobs, sessions, integrations = repos
    integrations.add(
        Integration(
            user_id="user-123",
            provider="google",
            service="gmail",
            access_token=cipher.encrypt("ya29.stale"),
            refresh_token=cipher.encrypt("1//refresh"),
            expiry_date=datetime.now(UTC) - timedelta(minutes=1),
        )
    )
    refresh_client = GoogleTokenRefreshClient(
        client_id="client-id.apps.googleusercontent.com",
        client_secret="secret",
        backoff_factor=0,
    )
    app.state.sync = build_container(
        QueryCache(LocalCacheBackend()),
        provider_clients={SyncServiceName.GMAIL: gmail_client},
        refresh_clients={"google": refresh_client},
        cipher=cipher,
        normalizer=EchoNormalizer(),
        jobs=jobs,
        sessions=sessions,
        integrations=integrations,
    )
    apply_auth_override(app)

    yield TestClient(app)

    app.dependency_overrides.clear()
    del app.state.sync


def test_auth_failure_refreshes_credentials_and_completes(client, httpx_mock, repos, cipher, gmail_client):
    _, sessions, integrations = repos
    httpx_mock.add_response(
        method="POST",
        url=GOOGLE_TOKEN_URL,
        json={"access_token": "ya29.fresh", "expires_in": 3599},
    )

    response = client.post("/sync/gmail/run", json={"preferences": {"days_back": 7}})

    assert response.status_code == 200
    data = response.json()
    assert data["stats"]["synced_items"] == 3
    assert data["stats"]["processed_jobs"] == 3
    assert data["partial_failure"] is False
    assert gmail_client.calls == 2

    form = parse_qs(httpx_mock.get_requests()[0].content.decode())
    assert form["refresh_token"] == ["1//refresh"]
    assert form["grant_type"] == ["refresh_token"]

    stored = integrations.integrations[KEY]
    assert cipher.decrypt(stored.access_token) == "ya29.fresh"
    assert cipher.decrypt(stored.refresh_token) == "1//refresh"
    assert stored.expiry_date > datetime.now(UTC) + timedelta(minutes=55)

    progress = client.get(f"/sync/progress/{data['session_id']}").json()
    assert progress["status"] == SyncStatus.COMPLETED.value
    assert progress["progress_percentage"] == 100

    batch = client.get(f"/jobs/batches/{data['stats']['batch_id']}", params={"include_jobs": True}).json()
    assert batch["complete"] is True
    assert batch["counts"]["done"] == 3
    assert {job["result"]["output"]["event_id"] for job in batch["jobs"]} == {
        "evt-raw-1",
        "evt-raw-2",
        "evt-raw-3",
    }

    assert client.get("/sync/errors/summary").json()["total_errors"] == 0
    assert sessions.sessions[data["session_id"]].preferences == {"days_back": 7}


def test_revoked_refresh_token_fails_session_and_shows_in_summary(client, httpx_mock, repos):
    _, sessions, integrations = repos
    httpx_mock.add_response(
        method="POST",
        url=GOOGLE_TOKEN_URL,
        status_code=400,
        json={"error": "invalid_grant", "error_description": "Token has been expired or revoked."},
    )

    response = client.post("/sync/gmail/run")

    assert response.status_code == 502
    detail = response.json()["detail"]
    assert detail["error_details"]["category"] == "auth"
    assert detail["error_details"]["severity"] == "critical"
    assert detail["error_details"]["recovery_strategies"] == ["reauthenticate"]

    session = sessions.sessions[detail["session_id"]]
    assert session.status is SyncStatus.FAILED
    assert integrations.updates == []

    summary = client.get("/sync/errors/summary", params={"hours": 1}).json()
    assert summary["total_errors"] == 1
    assert summary["by_category"] == {"auth": 1}
    assert summary["by_severity"] == {"critical": 1}
    assert "Check authentication credentials and token validity" in summary["recommendations"]

    assert client.delete(f"/sync/progress/{session.id}").status_code == 409
