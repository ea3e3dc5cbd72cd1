"""Meta sync engine.

WHAT:
    `refresh_meta_data` pulls a user's full Meta hierarchy (accounts ->
    campaigns -> ad sets -> ads, plus daily insights at campaign, adset and
    ad level) and merges it into storage.

WHY:
    - Shared by the OAuth callback (initial pull), manual refresh and the
      scheduled ARQ worker.
    - Every write is a keyed upsert, so running it twice with the same
      upstream data leaves storage unchanged.
    - Database work runs in a worker thread (asyncio.to_thread) so other
      ARQ jobs keep reading from the Graph API meanwhile.

ORDER:
    Accounts are written first. Then, account by account and strictly in
    order: campaigns, ad sets, ads, insights (campaign, adset, ad). Each
    batch commits on its own; the first failure aborts the remaining work
    and batches already committed stay in place.

REFERENCES:
    - backend/adsync/services/meta_ads_client.py (reads)
    - backend/adsync/services/meta_persistence.py (writes)
    - backend/adsync/services/sync_job_service.py (job tracking wrapper)
"""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
from typing import Iterable, List, Optional, Set, TypeVar
from uuid import UUID

from sqlalchemy.orm import Session

from adsync.models import InsightLevelEnum, MetaAdSet, MetaCampaign
from adsync.schemas import AdRow, AdSetRow, RefreshResult
from adsync.services import meta_persistence
from adsync.utils.clock import utcnow

logger = logging.getLogger(__name__)

INSIGHT_LEVELS = (InsightLevelEnum.campaign, InsightLevelEnum.adset, InsightLevelEnum.ad)

RowT = TypeVar("RowT", AdSetRow, AdRow)


def _known_parent_ids(db: Session, model, fetched: Set[str], referenced: Iterable[Optional[str]]) -> Set[str]:
    """Parent ids that exist after this pass: fetched now or already stored."""
    missing = {ref for ref in referenced if ref and ref not in fetched}
    return fetched | meta_persistence.existing_ids(db, model, missing)


def _unlink_unknown_campaigns(rows: List[RowT], known: Set[str], account_id: str) -> None:
    for row in rows:
        if row.campaign_id and row.campaign_id not in known:
            logger.debug(
                "[META_SYNC] %s %s references unknown campaign %s in %s, storing unlinked",
                type(row).__name__, row.id, row.campaign_id, account_id,
            )
            row.campaign_id = None


def _unlink_unknown_ad_sets(rows: List[AdRow], known: Set[str], account_id: str) -> None:
    for row in rows:
        if row.ad_set_id and row.ad_set_id not in known:
            logger.debug(
                "[META_SYNC] Ad %s references unknown ad set %s in %s, storing unlinked",
                row.id, row.ad_set_id, account_id,
            )
            row.ad_set_id = None


async def refresh_meta_data(
    db: Session,
    *,
    user_id: str,
    credential_id: Optional[UUID],
    api,
    since: Optional[dt.date] = None,
    mark_initial_sync: bool = False,
) -> RefreshResult:
    """Pull and merge the user's Meta hierarchy.

    Args:
        db: Database session
        user_id: Owner of the synced accounts
        credential_id: Credential the accounts are linked to
        api: MetaAdsClient (or any object with the same list_* coroutines)
        since: Only fetch insights from this date to today
        mark_initial_sync: Stamp `initial_sync_completed_at` on every account

    Returns:
        RefreshResult with the number of rows fetched per kind

    Raises:
        UpstreamError: A provider read failed
        PersistenceError: A batch write failed (that batch is rolled back)
    """
    logger.info(
        "[META_SYNC] Starting refresh for user %s (since=%s, initial=%s)",
        user_id, since, mark_initial_sync,
    )

    accounts = await api.list_ad_accounts()
    await asyncio.to_thread(
        meta_persistence.upsert_ad_accounts,
        db,
        accounts,
        user_id=user_id,
        credential_id=credential_id,
        initial_sync_completed_at=utcnow() if mark_initial_sync else None,
    )

    result = RefreshResult(accounts=len(accounts))

    for account in accounts:
        account_id = account.id

        campaigns = await api.list_campaigns(account_id)
        await asyncio.to_thread(meta_persistence.upsert_campaigns, db, campaigns)
        result.campaigns += len(campaigns)

        ad_sets = await api.list_ad_sets(account_id)
        known_campaigns = await asyncio.to_thread(
            _known_parent_ids,
            db, MetaCampaign, {campaign.id for campaign in campaigns},
            [ad_set.campaign_id for ad_set in ad_sets],
        )
        _unlink_unknown_campaigns(ad_sets, known_campaigns, account_id)
        await asyncio.to_thread(meta_persistence.upsert_ad_sets, db, ad_sets)
        result.ad_sets += len(ad_sets)

        ads = await api.list_ads(account_id)
        known_campaigns = await asyncio.to_thread(
            _known_parent_ids,
            db, MetaCampaign, known_campaigns, [ad.campaign_id for ad in ads],
        )
        known_ad_sets = await asyncio.to_thread(
            _known_parent_ids,
            db, MetaAdSet, {ad_set.id for ad_set in ad_sets}, [ad.ad_set_id for ad in ads],
        )
        _unlink_unknown_campaigns(ads, known_campaigns, account_id)
        _unlink_unknown_ad_sets(ads, known_ad_sets, account_id)
        await asyncio.to_thread(meta_persistence.upsert_ads, db, ads)
        result.ads += len(ads)

        for level in INSIGHT_LEVELS:
            insights = await api.list_insights(account_id, level, since=since)
            await asyncio.to_thread(meta_persistence.upsert_insights, db, insights)
            result.insights += len(insights)

        logger.info(
            "[META_SYNC] Account %s synced: %d campaigns, %d ad sets, %d ads",
            account_id, len(campaigns), len(ad_sets), len(ads),
        )

    logger.info("[META_SYNC] Refresh complete for user %s: %s", user_id, result.model_dump())
    return result
