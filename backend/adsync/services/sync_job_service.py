"""Sync job tracking and refresh entry points.

WHAT:
    - `run_refresh_job`: wraps one sync engine run in a SyncJob row
      (RUNNING -> SUCCESS | FAILED).
    - `trigger_manual_refresh` / `initialize_ad_workspace`: validate the
      user's credential, take the per-user lock and run a tracked refresh.
    - `get_sync_job` / `list_sync_jobs`: job status for callers.

WHY:
    - Every attempt leaves an audit row, even when it fails halfway.
    - A job is never left RUNNING after the wrapped call returns or raises
      (a process crash is the only way to orphan one).

REFERENCES:
    - backend/adsync/services/meta_sync_service.py (wrapped engine)
    - backend/adsync/workers/arq_worker.py (scheduled refresh)
"""

from __future__ import annotations

import datetime as dt
import logging
from typing import List, Optional
from uuid import UUID

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from adsync.exceptions import PersistenceError
from adsync.models import SyncJob, SyncJobStatusEnum
from adsync.schemas import RefreshResult
from adsync.services.meta_ads_client import MetaAdsClient
from adsync.services.meta_sync_service import refresh_meta_data
from adsync.services.sync_lock import SyncLock
from adsync.services.token_service import get_credential
from adsync.services.token_validation_service import ensure_valid_token
from adsync.utils.clock import utcnow

logger = logging.getLogger(__name__)


def _start_job(db: Session, user_id: str, credential_id: Optional[UUID]) -> SyncJob:
    job = SyncJob(
        user_id=user_id,
        credential_id=credential_id,
        status=SyncJobStatusEnum.running,
        started_at=utcnow(),
    )
    db.add(job)
    db.commit()
    logger.info("[SYNC_JOB] Job %s started for user %s", job.id, user_id)
    return job


def _record_failure(db: Session, job: SyncJob, exc: Exception) -> None:
    db.rollback()
    try:
        job.status = SyncJobStatusEnum.failed
        job.finished_at = utcnow()
        job.error_payload = {"message": str(exc), "error_type": type(exc).__name__}
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("[SYNC_JOB] Could not record failure for job %s", job.id)


async def run_refresh_job(
    db: Session,
    *,
    user_id: str,
    credential_id: Optional[UUID],
    api,
    since: Optional[dt.date] = None,
    mark_initial_sync: bool = False,
) -> RefreshResult:
    """Run `refresh_meta_data` inside a tracked SyncJob.

    On failure the session is rolled back, the job is marked FAILED with
    `error_payload = {"message", "error_type"}` and the original exception
    is re-raised. If the SUCCESS update cannot be committed the job is
    marked FAILED instead and a PersistenceError is raised.
    """
    job = _start_job(db, user_id, credential_id)
    job_id = job.id

    try:
        result = await refresh_meta_data(
            db,
            user_id=user_id,
            credential_id=credential_id,
            api=api,
            since=since,
            mark_initial_sync=mark_initial_sync,
        )
    except Exception as exc:
        _record_failure(db, job, exc)
        logger.error("[SYNC_JOB] Job %s failed for user %s: %s", job_id, user_id, exc)
        raise

    try:
        job.status = SyncJobStatusEnum.success
        job.finished_at = utcnow()
        job.stats = result.model_dump()
        db.commit()
    except SQLAlchemyError as exc:
        error = PersistenceError(f"Failed to record result of job {job_id}: {exc}")
        _record_failure(db, job, error)
        logger.error("[SYNC_JOB] Job %s could not be closed for user %s: %s", job_id, user_id, exc)
        raise error from exc

    logger.info("[SYNC_JOB] Job %s succeeded for user %s: %s", job.id, user_id, job.stats)
    return result


async def _run_validated_refresh(
    db: Session,
    user_id: str,
    *,
    since: Optional[dt.date],
    mark_initial_sync: bool,
    lock: Optional[SyncLock],
    transport: Optional[httpx.AsyncBaseTransport],
) -> RefreshResult:
    access_token = await ensure_valid_token(db, user_id, transport=transport)
    credential = get_credential(db, user_id)
    api = MetaAdsClient(access_token, transport=transport)

    async def _run() -> RefreshResult:
        return await run_refresh_job(
            db,
            user_id=user_id,
            credential_id=credential.id,
            api=api,
            since=since,
            mark_initial_sync=mark_initial_sync,
        )

    if lock is None:
        return await _run()
    with lock.hold(user_id):
        return await _run()


async def trigger_manual_refresh(
    db: Session,
    user_id: str,
    *,
    since: Optional[dt.date] = None,
    lock: Optional[SyncLock] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> RefreshResult:
    """Validate the credential and run a tracked refresh for the user.

    Raises:
        CredentialInvalid: The credential is missing or needs re-authorization
        SyncAlreadyRunning: `lock` is held by another refresh
        UpstreamError / PersistenceError: The refresh failed (job marked FAILED)
    """
    logger.info("[SYNC_JOB] Manual refresh requested for user %s (since=%s)", user_id, since)
    return await _run_validated_refresh(
        db, user_id, since=since, mark_initial_sync=False, lock=lock, transport=transport,
    )


async def initialize_ad_workspace(
    db: Session,
    user_id: str,
    *,
    lock: Optional[SyncLock] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> RefreshResult:
    """Full pull that stamps `initial_sync_completed_at` on every account."""
    logger.info("[SYNC_JOB] Workspace initialization requested for user %s", user_id)
    return await _run_validated_refresh(
        db, user_id, since=None, mark_initial_sync=True, lock=lock, transport=transport,
    )


def get_sync_job(db: Session, job_id: UUID) -> Optional[SyncJob]:
    return db.get(SyncJob, job_id)


def list_sync_jobs(db: Session, user_id: str, limit: int = 20) -> List[SyncJob]:
    """Most recent jobs first."""
    return (
        db.query(SyncJob)
        .filter(SyncJob.user_id == user_id)
        .order_by(SyncJob.started_at.desc())
        .limit(limit)
        .all()
    )
