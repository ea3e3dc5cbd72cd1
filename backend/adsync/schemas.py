"""Pydantic schemas for the internal (provider-independent) row shapes.

The Meta client translates Graph API payloads into these models; the
persistence layer and the sync engine only ever see these shapes.
"""

import datetime as dt
from typing import Optional

from pydantic import BaseModel, Field

from adsync.models import InsightLevelEnum


class AdAccountRow(BaseModel):
    """Ad account as returned by `/me/adaccounts`."""

    id: str = Field(description="Provider account id, e.g. act_123456789")
    name: str
    currency: Optional[str] = None
    status: Optional[str] = Field(default=None, description="Provider account_status as string")
    timezone_name: Optional[str] = None


class CampaignRow(BaseModel):
    id: str
    account_id: str
    name: str
    status: Optional[str] = None
    objective: Optional[str] = None
    buying_type: Optional[str] = None
    start_time: Optional[dt.datetime] = None
    stop_time: Optional[dt.datetime] = None


class AdSetRow(BaseModel):
    id: str
    account_id: str
    campaign_id: Optional[str] = None
    name: str
    status: Optional[str] = None
    optimization_goal: Optional[str] = None
    daily_budget: Optional[float] = None
    lifetime_budget: Optional[float] = None
    start_time: Optional[dt.datetime] = None
    end_time: Optional[dt.datetime] = None


class AdRow(BaseModel):
    id: str
    account_id: str
    campaign_id: Optional[str] = None
    ad_set_id: Optional[str] = None
    name: str
    status: Optional[str] = None
    creative_id: Optional[str] = None


class InsightRow(BaseModel):
    """One day of metrics for one entity at one level.

    Metrics the provider did not report are None. The persistence layer
    stores spend/impressions/clicks as 0 in that case and leaves
    cpa/roas/purchase_value NULL.
    """

    account_id: str
    entity_id: str
    level: InsightLevelEnum
    date: dt.date
    spend: Optional[float] = None
    impressions: Optional[int] = None
    clicks: Optional[int] = None
    cpa: Optional[float] = None
    roas: Optional[float] = None
    purchase_value: Optional[float] = None
    currency: Optional[str] = None


class RefreshResult(BaseModel):
    """Per-kind counts of rows fetched and upserted by one refresh."""

    accounts: int = 0
    campaigns: int = 0
    ad_sets: int = 0
    ads: int = 0
    insights: int = 0


class TokenValidationResult(BaseModel):
    """Outcome of a credential validation.

    `access_token` is the decrypted plaintext and is only set when `valid`.
    `reason` is None when valid, otherwise one of:
    missing, revoked, expired, unauthorized, unknown.
    """

    valid: bool
    reason: Optional[str] = None
    access_token: Optional[str] = Field(default=None, repr=False)
