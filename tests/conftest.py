import fnmatch
import itertools
import uuid
from dataclasses import replace
from datetime import UTC, datetime, timedelta

import pytest

from app.auth.verify import auth_dependency
from app.features.sync.domain import (
    ACTIVE_SYNC_STATUSES,
    TERMINAL_SYNC_STATUSES,
    Integration,
    Job,
    JobKind,
    JobStatus,
    SyncServiceName,
    SyncSession,
    SyncStatus,
)
from app.features.sync.repository.sync_session_repository import UPDATABLE_COLUMNS
from app.services.infrastructure.encryption_service import EncryptionError


@pytest.fixture
def auth_override():
    def _override():
        return {"sub": "user-123"}

    return _override


@pytest.fixture
def apply_auth_override(auth_override):
    def _apply(app):
        app.dependency_overrides[auth_dependency] = auth_override

    return _apply


class FakeRedis:
    def __init__(self):
        self.store: dict[str, str] = {}

    async def ping(self) -> bool:
        return True

    async def set_with_ttl(self, key: str, value: str, ttl_s: int | None = None) -> bool:
        self.store[key] = value
        return True

    async def get(self, key: str) -> str | None:
        return self.store.get(key)

    async def delete(self, key: str) -> bool:
        return self.store.pop(key, None) is not None

    async def delete_many(self, keys: list[str]) -> int:
        return sum(1 for key in keys if self.store.pop(key, None) is not None)

    async def scan_keys(self, match: str, count: int = 500) -> list[str]:
        return [key for key in self.store if fnmatch.fnmatchcase(key, match)]


@pytest.fixture
def fake_redis():
    return FakeRedis()


class FakeClock:
    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 5, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


class FakeCipher:
    """Reversible stand-in for the Fernet cipher."""

    def encrypt(self, plaintext: str) -> bytes:
        return b"enc:" + plaintext.encode()

    def decrypt(self, ciphertext: bytes) -> str:
        if not ciphertext.startswith(b"enc:"):
            raise EncryptionError("Invalid ciphertext")
        return ciphertext[4:].decode()


@pytest.fixture
def cipher():
    return FakeCipher()


class FakeJobRepository:
    """In-memory ``jobs`` table with the same transition guards as the SQL."""

    def __init__(self, clock: FakeClock | None = None):
        self.clock = clock or FakeClock()
        self.jobs: dict[str, Job] = {}
        self._seq = itertools.count()

    def _stamp(self) -> datetime:
        # strictly increasing so oldest-first ordering is deterministic
        return self.clock() + timedelta(microseconds=next(self._seq))

    async def insert_job(self, user_id, kind, payload, batch_id=None) -> Job:
        now = self._stamp()
        job = Job(
            id=str(uuid.uuid4()),
            user_id=user_id,
            kind=JobKind(kind),
            payload=dict(payload),
            status=JobStatus.QUEUED,
            attempts=0,
            batch_id=batch_id,
            created_at=now,
            updated_at=now,
        )
        self.jobs[job.id] = job
        return replace(job)

    async def insert_jobs(self, user_id, kind, payloads, batch_id) -> list[Job]:
        return [await self.insert_job(user_id, kind, payload, batch_id) for payload in payloads]

    async def list_jobs(self, user_id, status=None, batch_id=None, limit=100):
        jobs = [
            job
            for job in self.jobs.values()
            if job.user_id == user_id
            and (status is None or job.status == status)
            and (batch_id is None or job.batch_id == batch_id)
        ]
        jobs.sort(key=lambda job: job.created_at, reverse=True)
        return [replace(job) for job in jobs[:limit]]

    async def claim_queued_jobs(self, user_id, limit, batch_id=None, kinds=None):
        eligible = sorted(
            (
                job
                for job in self.jobs.values()
                if job.user_id == user_id
                and job.status is JobStatus.QUEUED
                and (batch_id is None or job.batch_id == batch_id)
                and (not kinds or job.kind in kinds)
            ),
            key=lambda job: (job.created_at, job.id),
        )[:limit]
        for job in eligible:
            job.status = JobStatus.PROCESSING
        return [replace(job) for job in eligible]

    async def finish_job(self, job_id, status, attempts, result):
        job = self.jobs.get(job_id)
        if job is None or job.status is not JobStatus.PROCESSING:
            return False
        job.status = JobStatus(status)
        job.attempts = attempts
        job.result = result
        job.updated_at = self._stamp()
        return True

    async def release_jobs(self, job_ids):
        released = 0
        for job_id in job_ids:
            job = self.jobs.get(job_id)
            if job is not None and job.status is JobStatus.PROCESSING:
                job.status = JobStatus.QUEUED
                released += 1
        return released

    async def count_by_status(self, user_id, batch_id=None):
        counts = {status.value: 0 for status in JobStatus}
        for job in self.jobs.values():
            if job.user_id == user_id and (batch_id is None or job.batch_id == batch_id):
                counts[job.status.value] += 1
        return counts

    async def list_failed_since(self, user_id, since, limit=500):
        return [
            replace(job)
            for job in self.jobs.values()
            if job.user_id == user_id and job.status is JobStatus.ERROR and job.updated_at >= since
        ][:limit]

    async def recover_stuck_jobs(self, threshold_minutes, max_attempts):
        cutoff = self.clock() - timedelta(minutes=threshold_minutes)
        counts = {"requeued": 0, "failed": 0}
        for job in self.jobs.values():
            if job.status is JobStatus.PROCESSING and job.updated_at < cutoff:
                job.attempts += 1
                if job.attempts >= max_attempts:
                    job.status = JobStatus.ERROR
                    counts["failed"] += 1
                else:
                    job.status = JobStatus.QUEUED
                    counts["requeued"] += 1
        return counts


class FakeSessionRepository:
    """In-memory ``sync_sessions`` table; updates only match active rows."""

    def __init__(self, clock: FakeClock | None = None):
        self.clock = clock or FakeClock()
        self.sessions: dict[str, SyncSession] = {}
        self.update_calls = 0

    def add(self, session: SyncSession) -> SyncSession:
        self.sessions[session.id] = session
        return session

    async def insert_session(self, user_id, service, preferences, current_step):
        session = SyncSession(
            id=str(uuid.uuid4()),
            user_id=user_id,
            service=SyncServiceName(service),
            status=SyncStatus.STARTED,
            progress_percentage=0,
            current_step=current_step,
            total_items=None,
            imported_items=0,
            processed_items=0,
            failed_items=0,
            error_details=None,
            preferences=dict(preferences),
            started_at=self.clock(),
        )
        self.sessions[session.id] = session
        return replace(session)

    async def get_session(self, session_id, user_id=None):
        session = self.sessions.get(session_id)
        if session is None or (user_id is not None and session.user_id != user_id):
            return None
        return replace(session)

    async def compare_and_update(self, session_id, changes, user_id=None):
        self.update_calls += 1
        unknown = set(changes) - set(UPDATABLE_COLUMNS)
        if unknown:
            raise ValueError(f"Unsupported session columns: {sorted(unknown)}")

        session = self.sessions.get(session_id)
        if session is None or (user_id is not None and session.user_id != user_id):
            return None
        if session.status not in ACTIVE_SYNC_STATUSES:
            return None

        for column, value in changes.items():
            if column == "status":
                value = SyncStatus(value)
            setattr(session, column, value)
        if session.status in TERMINAL_SYNC_STATUSES and session.completed_at is None:
            session.completed_at = self.clock()
        return replace(session)

    async def list_sessions(self, user_id, service=None, status=None, limit=50):
        sessions = [
            s
            for s in self.sessions.values()
            if s.user_id == user_id
            and (service is None or s.service == service)
            and (status is None or s.status == status)
        ]
        sessions.sort(key=lambda s: s.started_at, reverse=True)
        return [replace(s) for s in sessions[:limit]]

    async def list_active(self, user_id):
        return [
            replace(s)
            for s in self.sessions.values()
            if s.user_id == user_id and s.status in ACTIVE_SYNC_STATUSES
        ]

    async def list_failed_since(self, user_id, since, limit=200):
        return [
            replace(s)
            for s in self.sessions.values()
            if s.user_id == user_id
            and s.status is SyncStatus.FAILED
            and s.completed_at is not None
            and s.completed_at >= since
        ][:limit]

    async def latest_preferences(self, user_id, service):
        sessions = [
            s for s in self.sessions.values() if s.user_id == user_id and s.service == service
        ]
        if not sessions:
            return None
        return max(sessions, key=lambda s: s.started_at).preferences

    async def delete_started_before(self, cutoff):
        old = [sid for sid, s in self.sessions.items() if s.started_at < cutoff]
        for sid in old:
            del self.sessions[sid]
        return len(old)


class FakeIntegrationRepository:
    def __init__(self):
        self.integrations: dict[tuple[str, str, str], Integration] = {}
        self.updates: list[dict] = []

    def add(self, integration: Integration) -> Integration:
        key = (integration.user_id, integration.provider, integration.service)
        self.integrations[key] = integration
        return integration

    async def get_integration(self, user_id, provider, service):
        integration = self.integrations.get((user_id, provider, service))
        return replace(integration) if integration else None

    async def update_tokens(self, user_id, provider, service, access_token, refresh_token, expiry_date):
        integration = self.integrations.get((user_id, provider, service))
        if integration is None:
            return False
        integration.access_token = access_token
        if refresh_token is not None:
            integration.refresh_token = refresh_token
        integration.expiry_date = expiry_date
        self.updates.append(
            {"user_id": user_id, "provider": provider, "service": service, "expiry_date": expiry_date}
        )
        return True

    async def list_expiring(self, provider, before, limit=200):
        return [
            replace(i)
            for i in self.integrations.values()
            if i.provider == provider
            and i.refresh_token is not None
            and i.expiry_date is not None
            and i.expiry_date <= before
        ][:limit]


@pytest.fixture
def job_repo(clock):
    return FakeJobRepository(clock)


@pytest.fixture
def session_repo(clock):
    return FakeSessionRepository(clock)


@pytest.fixture
def integration_repo():
    return FakeIntegrationRepository()


def make_session(
    user_id: str = "user-123",
    status: SyncStatus = SyncStatus.STARTED,
    started_at: datetime | None = None,
    service: SyncServiceName = SyncServiceName.GMAIL,
    **fields,
) -> SyncSession:
    values = {
        "id": str(uuid.uuid4()),
        "user_id": user_id,
        "service": service,
        "status": status,
        "progress_percentage": 0,
        "current_step": None,
        "total_items": None,
        "imported_items": 0,
        "processed_items": 0,
        "failed_items": 0,
        "error_details": None,
        "preferences": {},
        "started_at": started_at or datetime(2024, 5, 1, 12, 0, tzinfo=UTC),
        "completed_at": None,
    }
    values.update(fields)
    return SyncSession(**values)


@pytest.fixture
def session_factory():
    return make_session
