"""Tests for the ARQ refresh worker functions."""

from datetime import date, timedelta

import pytest
from sqlalchemy.orm import sessionmaker

from adsync import database
from adsync.exceptions import CredentialInvalid, UpstreamError
from adsync.schemas import RefreshResult
from adsync.workers import arq_worker


class _FakeArqRedis:
    def __init__(self):
        self.enqueued = []

    async def enqueue_job(self, function, *args, **kwargs):
        self.enqueued.append((function, args))
        return object()


@pytest.fixture
def worker_sessions(test_db_engine, monkeypatch):
    factory = sessionmaker(bind=test_db_engine, autoflush=False, autocommit=False)
    monkeypatch.setattr(database, "SessionLocal", factory)
    return factory


@pytest.mark.anyio
async def test_scheduled_refresh_enqueues_only_usable_credentials(worker_sessions, make_credential, monkeypatch):
    messages = []
    monkeypatch.setattr(arq_worker, "capture_message", lambda message, level="info", extra=None: messages.append((level, extra)))
    make_credential(user_id="ok-user")
    make_credential(user_id="flagged-user", requires_reauth=True)
    make_credential(user_id="expired-user", expires_in=timedelta(hours=-1))
    redis = _FakeArqRedis()

    summary = await arq_worker.scheduled_meta_refresh({"redis": redis})

    assert redis.enqueued == [("process_meta_refresh_job", ("ok-user",))]
    assert summary == {"eligible": 1, "enqueued": 1, "requires_reauth": 1}
    assert messages == [("warning", {"count": 1})]


@pytest.mark.anyio
async def test_refresh_job_returns_counts(worker_sessions, monkeypatch):
    captured = {}

    async def fake_refresh(db, user_id, *, since=None, lock=None):
        captured.update(user_id=user_id, since=since, lock=lock)
        return RefreshResult(accounts=1, campaigns=2, ad_sets=3, ads=5, insights=15)

    monkeypatch.setattr(arq_worker, "trigger_manual_refresh", fake_refresh)
    sentinel_lock = object()

    result = await arq_worker.process_meta_refresh_job(
        {"sync_lock": sentinel_lock}, "user-1", since="2024-03-01",
    )

    assert result == {"success": True, "accounts": 1, "campaigns": 2, "ad_sets": 3, "ads": 5, "insights": 15}
    assert captured == {"user_id": "user-1", "since": date(2024, 3, 1), "lock": sentinel_lock}


@pytest.mark.anyio
async def test_refresh_job_reports_invalid_credential(worker_sessions, monkeypatch):
    async def fake_refresh(db, user_id, *, since=None, lock=None):
        raise CredentialInvalid("expired")

    monkeypatch.setattr(arq_worker, "trigger_manual_refresh", fake_refresh)

    result = await arq_worker.process_meta_refresh_job({}, "user-1")

    assert result == {"success": False, "reason": "expired"}


@pytest.mark.anyio
async def test_refresh_job_reports_failures_to_sentry(worker_sessions, monkeypatch):
    reported = []

    async def fake_refresh(db, user_id, *, since=None, lock=None):
        raise UpstreamError("Graph API down", status_code=503)

    monkeypatch.setattr(arq_worker, "trigger_manual_refresh", fake_refresh)
    monkeypatch.setattr(arq_worker, "capture_exception", lambda exc, extra=None: reported.append((exc, extra)))

    result = await arq_worker.process_meta_refresh_job({}, "user-1")

    assert result == {"success": False, "error": "Graph API down"}
    assert reported[0][1]["user_id"] == "user-1"


def test_refresh_schedule():
    assert arq_worker._refresh_schedule(15) == {"minute": {0, 15, 30, 45}}
    assert arq_worker._refresh_schedule(60) == {"minute": {0}, "hour": set(range(24))}
    assert arq_worker._refresh_schedule(360) == {"minute": {0}, "hour": {0, 6, 12, 18}}


def test_worker_settings_register_functions():
    names = {function.__name__ for function in arq_worker.WorkerSettings.functions}
    assert names == {"process_meta_refresh_job", "scheduled_meta_refresh"}
    assert len(arq_worker.WorkerSettings.cron_jobs) == 1


def test_launcher_passes_burst_flag(monkeypatch):
    from adsync.workers import start_arq_worker

    launched = []
    monkeypatch.setattr(start_arq_worker, "run_worker", lambda settings, **kwargs: launched.append((settings, kwargs)))

    start_arq_worker.main(["--burst", "--log-level", "WARNING"])
    start_arq_worker.main([])

    assert launched == [
        (arq_worker.WorkerSettings, {"burst": True}),
        (arq_worker.WorkerSettings, {"burst": False}),
    ]
