"""Bulk persistence for the Meta entity hierarchy.

WHAT:
    Multi-row `INSERT ... ON CONFLICT DO UPDATE` writers for ad accounts,
    campaigns, ad sets, ads and insights, plus the lookups the sync engine
    and callers use to read rows back.

WHY:
    - Each call writes one batch in a single transaction: either every row of
      the batch lands or none does.
    - Keyed upserts make re-running a sync safe (no duplicate rows).

MERGE RULES:
    - Entities: provider-omitted optional attributes keep the stored value
      (COALESCE(excluded.col, col)).
    - Insights: every column is overwritten from the latest fetch. spend,
      impressions and clicks default to 0; cpa, roas and purchase_value
      stay NULL when not reported.

REFERENCES:
    - backend/adsync/services/meta_sync_service.py (sole writer during refresh)
    - https://docs.sqlalchemy.org/en/20/dialects/postgresql.html#insert-on-conflict-upsert
"""

from __future__ import annotations

import datetime as dt
import logging
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Set
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from adsync.exceptions import PersistenceError
from adsync.models import (
    InsightLevelEnum,
    MetaAd,
    MetaAdAccount,
    MetaAdSet,
    MetaCampaign,
    MetaInsight,
)
from adsync.schemas import AdAccountRow, AdRow, AdSetRow, CampaignRow, InsightRow
from adsync.utils.clock import utcnow

logger = logging.getLogger(__name__)

# Rows per INSERT statement; keeps bound parameters well under driver limits.
UPSERT_CHUNK_SIZE = 500

INSIGHT_KEY_COLUMNS = ("account_id", "entity_id", "level", "date")


def _insert_for(db: Session) -> Callable:
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise PersistenceError(f"Bulk upsert is not supported on dialect '{dialect}'")


def _chunks(rows: Sequence[Dict[str, Any]], size: int) -> Iterator[Sequence[Dict[str, Any]]]:
    for start in range(0, len(rows), size):
        yield rows[start:start + size]


def _dedupe(rows: Iterable[Dict[str, Any]], key_columns: Sequence[str]) -> List[Dict[str, Any]]:
    """Collapse rows sharing a conflict key (last one wins).

    PostgreSQL rejects a single INSERT ... ON CONFLICT that touches the same
    key twice, and the provider occasionally repeats rows across pages.
    """
    unique: Dict[tuple, Dict[str, Any]] = {}
    for row in rows:
        unique[tuple(row[col] for col in key_columns)] = row
    return list(unique.values())


def _bulk_upsert(
    db: Session,
    model,
    rows: Sequence[Dict[str, Any]],
    *,
    key_columns: Sequence[str],
    update_columns: Sequence[str],
    keep_existing_on_null: Sequence[str] = (),
    label: str,
) -> int:
    """Upsert `rows` into `model` as one transaction.

    Columns in `keep_existing_on_null` are written as COALESCE(new, stored).

    Returns:
        Number of distinct rows written

    Raises:
        PersistenceError: If any statement fails (the whole batch is rolled back)
    """
    if not rows:
        return 0

    rows = _dedupe(rows, key_columns)
    insert = _insert_for(db)
    table = model.__table__

    try:
        for chunk in _chunks(rows, UPSERT_CHUNK_SIZE):
            stmt = insert(table).values(list(chunk))
            set_ = {}
            for col in update_columns:
                if col in keep_existing_on_null:
                    set_[col] = func.coalesce(stmt.excluded[col], table.c[col])
                else:
                    set_[col] = stmt.excluded[col]
            stmt = stmt.on_conflict_do_update(index_elements=list(key_columns), set_=set_)
            db.execute(stmt)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("[META_PERSIST] %s upsert failed, batch rolled back: %s", label, exc)
        raise PersistenceError(f"Failed to upsert {label}: {exc}") from exc

    logger.info("[META_PERSIST] Upserted %d %s", len(rows), label)
    return len(rows)


# Writers ---------------------------------------------------------------------

def upsert_ad_accounts(
    db: Session,
    accounts: Sequence[AdAccountRow],
    *,
    user_id: str,
    credential_id: Optional[UUID],
    initial_sync_completed_at: Optional[dt.datetime] = None,
) -> int:
    """Upsert ad accounts for a user.

    `initial_sync_completed_at` is only written when given; otherwise the
    stored stamp (if any) is kept.
    """
    now = utcnow()
    rows = [
        {
            "id": account.id,
            "user_id": user_id,
            "credential_id": credential_id,
            "name": account.name,
            "currency": account.currency,
            "status": account.status,
            "timezone_name": account.timezone_name,
            "initial_sync_completed_at": initial_sync_completed_at,
            "created_at": now,
            "updated_at": now,
        }
        for account in accounts
    ]
    return _bulk_upsert(
        db,
        MetaAdAccount,
        rows,
        key_columns=("id",),
        update_columns=(
            "user_id", "credential_id", "name", "currency", "status",
            "timezone_name", "initial_sync_completed_at", "updated_at",
        ),
        keep_existing_on_null=(
            "credential_id", "currency", "status", "timezone_name", "initial_sync_completed_at",
        ),
        label="ad accounts",
    )


def upsert_campaigns(db: Session, campaigns: Sequence[CampaignRow]) -> int:
    now = utcnow()
    rows = [
        {**campaign.model_dump(), "created_at": now, "updated_at": now}
        for campaign in campaigns
    ]
    optional = ("status", "objective", "buying_type", "start_time", "stop_time")
    return _bulk_upsert(
        db,
        MetaCampaign,
        rows,
        key_columns=("id",),
        update_columns=("account_id", "name", *optional, "updated_at"),
        keep_existing_on_null=optional,
        label="campaigns",
    )


def upsert_ad_sets(db: Session, ad_sets: Sequence[AdSetRow]) -> int:
    now = utcnow()
    rows = [
        {**ad_set.model_dump(), "created_at": now, "updated_at": now}
        for ad_set in ad_sets
    ]
    optional = (
        "campaign_id", "status", "optimization_goal", "daily_budget",
        "lifetime_budget", "start_time", "end_time",
    )
    return _bulk_upsert(
        db,
        MetaAdSet,
        rows,
        key_columns=("id",),
        update_columns=("account_id", "name", *optional, "updated_at"),
        keep_existing_on_null=optional,
        label="ad sets",
    )


def upsert_ads(db: Session, ads: Sequence[AdRow]) -> int:
    now = utcnow()
    rows = [
        {**ad.model_dump(), "created_at": now, "updated_at": now}
        for ad in ads
    ]
    optional = ("campaign_id", "ad_set_id", "status", "creative_id")
    return _bulk_upsert(
        db,
        MetaAd,
        rows,
        key_columns=("id",),
        update_columns=("account_id", "name", *optional, "updated_at"),
        keep_existing_on_null=optional,
        label="ads",
    )


def upsert_insights(db: Session, insights: Sequence[InsightRow]) -> int:
    """Upsert insight rows on (account_id, entity_id, level, date), overwriting every metric."""
    now = utcnow()
    rows = [
        {
            "account_id": insight.account_id,
            "entity_id": insight.entity_id,
            "level": InsightLevelEnum(insight.level),
            "date": insight.date,
            "spend": insight.spend if insight.spend is not None else 0,
            "impressions": insight.impressions if insight.impressions is not None else 0,
            "clicks": insight.clicks if insight.clicks is not None else 0,
            "cpa": insight.cpa,
            "roas": insight.roas,
            "purchase_value": insight.purchase_value,
            "currency": insight.currency,
            "synced_at": now,
        }
        for insight in insights
    ]
    return _bulk_upsert(
        db,
        MetaInsight,
        rows,
        key_columns=INSIGHT_KEY_COLUMNS,
        update_columns=(
            "spend", "impressions", "clicks", "cpa", "roas",
            "purchase_value", "currency", "synced_at",
        ),
        label="insights",
    )


# Lookups ---------------------------------------------------------------------

def existing_ids(db: Session, model, ids: Iterable[str]) -> Set[str]:
    """Return the subset of `ids` already stored for an id-keyed entity model."""
    wanted = {entity_id for entity_id in ids if entity_id}
    if not wanted:
        return set()
    found = db.query(model.id).filter(model.id.in_(wanted)).all()
    return {row[0] for row in found}


def list_ad_accounts(db: Session, user_id: str) -> List[MetaAdAccount]:
    return (
        db.query(MetaAdAccount)
        .filter(MetaAdAccount.user_id == user_id)
        .order_by(MetaAdAccount.id)
        .all()
    )


def get_ad_account(db: Session, account_id: str) -> Optional[MetaAdAccount]:
    return db.get(MetaAdAccount, account_id)


def get_campaign(db: Session, campaign_id: str) -> Optional[MetaCampaign]:
    return db.get(MetaCampaign, campaign_id)


def get_ad_set(db: Session, ad_set_id: str) -> Optional[MetaAdSet]:
    return db.get(MetaAdSet, ad_set_id)


def get_ad(db: Session, ad_id: str) -> Optional[MetaAd]:
    return db.get(MetaAd, ad_id)


def get_insight(
    db: Session,
    account_id: str,
    entity_id: str,
    level: InsightLevelEnum,
    date: dt.date,
) -> Optional[MetaInsight]:
    """Look up one insight row by its composite key."""
    return (
        db.query(MetaInsight)
        .filter(
            MetaInsight.account_id == account_id,
            MetaInsight.entity_id == entity_id,
            MetaInsight.level == InsightLevelEnum(level),
            MetaInsight.date == date,
        )
        .first()
    )
