"""Tests for sync job tracking and the refresh entry points."""

from uuid import uuid4

import httpx
import pytest

from sqlalchemy.exc import OperationalError

from adsync.exceptions import CredentialInvalid, PersistenceError, SyncAlreadyRunning, UpstreamError
from adsync.models import MetaAdAccount, MetaCampaign, SyncJob, SyncJobStatusEnum
from adsync.schemas import AdAccountRow, CampaignRow
from adsync.services import meta_persistence
from adsync.services import sync_job_service as svc
from adsync.services.sync_lock import SyncLock


def _valid_debug_token():
    return httpx.MockTransport(
        lambda request: httpx.Response(200, json={"data": {"is_valid": True}})
    )


def _three_account_api(meta_api_cls, **kwargs):
    accounts = [AdAccountRow(id=f"act_{i}", name=f"Account {i}") for i in (1, 2, 3)]
    campaigns = {
        account.id: [CampaignRow(id=f"c-{account.id}", account_id=account.id, name="Campaign")]
        for account in accounts
    }
    return meta_api_cls(accounts=accounts, campaigns=campaigns, **kwargs)


@pytest.mark.anyio
async def test_successful_run_marks_job_success(test_db_session, meta_api_cls):
    api = _three_account_api(meta_api_cls)

    result = await svc.run_refresh_job(test_db_session, user_id="user-1", credential_id=None, api=api)

    job = test_db_session.query(SyncJob).one()
    assert result.accounts == 3
    assert job.status == SyncJobStatusEnum.success
    assert job.finished_at is not None
    assert job.finished_at >= job.started_at
    assert job.error_payload is None
    assert job.stats["campaigns"] == 3


@pytest.mark.anyio
async def test_failure_midway_marks_job_failed_and_keeps_committed_batches(test_db_session, meta_api_cls):
    """WHAT: An upstream error on account 2 of 3 fails the job; account 1 data stays."""
    api = _three_account_api(
        meta_api_cls,
        fail_on=("list_ad_sets", "act_2"),
        error=UpstreamError("(#17) User request limit reached", status_code=400),
    )

    with pytest.raises(UpstreamError, match="request limit"):
        await svc.run_refresh_job(test_db_session, user_id="user-1", credential_id=None, api=api)

    job = test_db_session.query(SyncJob).one()
    assert job.status == SyncJobStatusEnum.failed
    assert job.finished_at is not None
    assert job.error_payload == {
        "message": "(#17) User request limit reached",
        "error_type": "UpstreamError",
    }

    assert test_db_session.query(MetaAdAccount).count() == 3
    stored_campaigns = {campaign.id for campaign in test_db_session.query(MetaCampaign).all()}
    assert stored_campaigns == {"c-act_1", "c-act_2"}
    assert ("list_campaigns", "act_3") not in api.calls


@pytest.mark.anyio
async def test_each_attempt_is_a_new_job(test_db_session, meta_api_cls):
    api = _three_account_api(meta_api_cls)

    await svc.run_refresh_job(test_db_session, user_id="user-1", credential_id=None, api=api)
    await svc.run_refresh_job(test_db_session, user_id="user-1", credential_id=None, api=api)

    jobs = svc.list_sync_jobs(test_db_session, "user-1")
    assert len(jobs) == 2
    assert all(job.status == SyncJobStatusEnum.success for job in jobs)
    assert svc.get_sync_job(test_db_session, jobs[0].id).id == jobs[0].id
    assert svc.get_sync_job(test_db_session, uuid4()) is None


@pytest.mark.anyio
async def test_manual_refresh_validates_and_tracks(test_db_session, make_credential, meta_api_cls, fake_redis, monkeypatch):
    credential = make_credential(access_token="EAAB-live")
    api = _three_account_api(meta_api_cls)
    tokens_seen = []

    def _client_factory(access_token, **kwargs):
        tokens_seen.append(access_token)
        return api

    monkeypatch.setattr(svc, "MetaAdsClient", _client_factory)

    result = await svc.trigger_manual_refresh(
        test_db_session,
        "user-1",
        lock=SyncLock(fake_redis, timeout=60),
        transport=_valid_debug_token(),
    )

    assert result.accounts == 3
    assert tokens_seen == ["EAAB-live"]
    job = test_db_session.query(SyncJob).one()
    assert job.credential_id == credential.id
    assert job.status == SyncJobStatusEnum.success
    assert fake_redis.locks == set()
    assert fake_redis.lock_timeouts == {"meta_sync_lock:user-1": 60}


@pytest.mark.anyio
async def test_manual_refresh_rejects_flagged_credential_without_job(test_db_session, make_credential):
    make_credential(requires_reauth=True)

    with pytest.raises(CredentialInvalid) as excinfo:
        await svc.trigger_manual_refresh(test_db_session, "user-1")

    assert excinfo.value.reason == "revoked"
    assert test_db_session.query(SyncJob).count() == 0


@pytest.mark.anyio
async def test_manual_refresh_refuses_when_lock_is_held(test_db_session, make_credential, meta_api_cls, fake_redis, monkeypatch):
    make_credential()
    monkeypatch.setattr(svc, "MetaAdsClient", lambda token, **kwargs: _three_account_api(meta_api_cls))
    fake_redis.locks.add("meta_sync_lock:user-1")

    with pytest.raises(SyncAlreadyRunning):
        await svc.trigger_manual_refresh(
            test_db_session, "user-1",
            lock=SyncLock(fake_redis, timeout=60),
            transport=_valid_debug_token(),
        )

    assert test_db_session.query(SyncJob).count() == 0


@pytest.mark.anyio
async def test_lock_is_released_when_refresh_fails(test_db_session, make_credential, meta_api_cls, fake_redis, monkeypatch):
    make_credential()
    api = _three_account_api(meta_api_cls, fail_on=("list_ad_accounts", None), error=UpstreamError("boom"))
    monkeypatch.setattr(svc, "MetaAdsClient", lambda token, **kwargs: api)

    with pytest.raises(UpstreamError):
        await svc.trigger_manual_refresh(
            test_db_session, "user-1",
            lock=SyncLock(fake_redis, timeout=60),
            transport=_valid_debug_token(),
        )

    assert fake_redis.locks == set()
    assert test_db_session.query(SyncJob).one().status == SyncJobStatusEnum.failed


@pytest.mark.anyio
async def test_initialize_workspace_marks_initial_sync(test_db_session, make_credential, meta_api_cls, monkeypatch):
    make_credential()
    monkeypatch.setattr(svc, "MetaAdsClient", lambda token, **kwargs: _three_account_api(meta_api_cls))

    await svc.initialize_ad_workspace(test_db_session, "user-1", transport=_valid_debug_token())

    accounts = test_db_session.query(MetaAdAccount).all()
    assert len(accounts) == 3
    assert all(account.initial_sync_completed_at is not None for account in accounts)


@pytest.mark.anyio
async def test_persistence_failure_is_recorded_on_job(test_db_session, meta_api_cls, monkeypatch):
    def failing_upsert(db, rows):
        raise PersistenceError("Failed to upsert campaigns: disk full")

    monkeypatch.setattr(meta_persistence, "upsert_campaigns", failing_upsert)

    with pytest.raises(PersistenceError):
        await svc.run_refresh_job(
            test_db_session, user_id="user-1", credential_id=None, api=_three_account_api(meta_api_cls),
        )

    job = test_db_session.query(SyncJob).one()
    assert job.status == SyncJobStatusEnum.failed
    assert job.finished_at is not None
    assert job.error_payload == {
        "message": "Failed to upsert campaigns: disk full",
        "error_type": "PersistenceError",
    }


@pytest.mark.anyio
async def test_job_is_not_left_running_when_success_commit_fails(test_db_session, meta_api_cls, monkeypatch):
    real_commit = test_db_session.commit

    def commit_rejecting_success():
        closing = [
            obj for obj in test_db_session.dirty
            if isinstance(obj, SyncJob) and obj.status == SyncJobStatusEnum.success
        ]
        if closing:
            raise OperationalError("COMMIT", {}, Exception("database is locked"))
        real_commit()

    monkeypatch.setattr(test_db_session, "commit", commit_rejecting_success)

    with pytest.raises(PersistenceError, match="database is locked"):
        await svc.run_refresh_job(
            test_db_session, user_id="user-1", credential_id=None, api=_three_account_api(meta_api_cls),
        )

    job = test_db_session.query(SyncJob).one()
    assert job.status == SyncJobStatusEnum.failed
    assert job.error_payload["error_type"] == "PersistenceError"
