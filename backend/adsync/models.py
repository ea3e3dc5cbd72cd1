"""SQLAlchemy ORM models and enums.

This module defines the local mirror of a user's Meta advertising hierarchy.
Provider-assigned ids are used as primary keys for accounts, campaigns, ad sets
and ads so upserts key directly on them. Credentials and sync jobs use UUIDs.
"""

import uuid
import enum

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import declarative_base, relationship

from adsync.utils.clock import utcnow


# Single Base used by the entire application
Base = declarative_base()


# Enums ---------------------------------------------------------

class InsightLevelEnum(str, enum.Enum):
    campaign = "campaign"
    adset = "adset"
    ad = "ad"


class SyncJobStatusEnum(str, enum.Enum):
    pending = "pending"
    running = "running"
    success = "success"
    failed = "failed"


# Credentials ---------------------------------------------------

class MetaCredential(Base):
    """Encrypted Meta access credential, one per user.

    WHAT:
        Stores the user's delegated access token (Fernet-encrypted) together
        with its validity bookkeeping.
    WHY:
        `requires_reauth` is the single source of truth for "can this token be
        used". Once set, every consumer fails fast until the user reconnects.
    REFERENCES:
        - backend/adsync/security.py (encrypt_secret / decrypt_secret)
        - backend/adsync/services/token_validation_service.py
    """
    __tablename__ = "meta_credentials"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(String, nullable=False, unique=True, index=True)
    ad_account_ids = Column(JSON, nullable=False, default=list)
    access_token_enc = Column(Text, nullable=False)
    refresh_token_enc = Column(Text, nullable=True)
    scope = Column(String, nullable=True)
    expires_at = Column(DateTime, nullable=False)
    last_validated_at = Column(DateTime, nullable=True)
    requires_reauth = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    ad_accounts = relationship("MetaAdAccount", back_populates="credential")
    sync_jobs = relationship("SyncJob", back_populates="credential")

    def __str__(self):
        return f"Meta credential for {self.user_id} (expires: {self.expires_at:%Y-%m-%d %H:%M})"


# Entity hierarchy ----------------------------------------------

class MetaAdAccount(Base):
    """Ad account reachable with a user's credential (e.g. `act_123456789`)."""
    __tablename__ = "meta_ad_accounts"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    credential_id = Column(UUID(as_uuid=True), ForeignKey("meta_credentials.id"), nullable=True)
    name = Column(String, nullable=False)
    currency = Column(String, nullable=True)
    status = Column(String, nullable=True)
    timezone_name = Column(String, nullable=True)
    initial_sync_completed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    credential = relationship("MetaCredential", back_populates="ad_accounts")
    campaigns = relationship("MetaCampaign", back_populates="account")

    def __str__(self):
        return f"{self.name} ({self.id})"


class MetaCampaign(Base):
    __tablename__ = "meta_campaigns"

    id = Column(String, primary_key=True)
    account_id = Column(String, ForeignKey("meta_ad_accounts.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    status = Column(String, nullable=True)
    objective = Column(String, nullable=True)
    buying_type = Column(String, nullable=True)
    start_time = Column(DateTime, nullable=True)
    stop_time = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    account = relationship("MetaAdAccount", back_populates="campaigns")
    ad_sets = relationship("MetaAdSet", back_populates="campaign")

    def __str__(self):
        return f"{self.name} (campaign)"


class MetaAdSet(Base):
    """Ad set. `campaign_id` stays NULL when the provider omits the parent."""
    __tablename__ = "meta_ad_sets"

    id = Column(String, primary_key=True)
    account_id = Column(String, ForeignKey("meta_ad_accounts.id"), nullable=False, index=True)
    campaign_id = Column(String, ForeignKey("meta_campaigns.id"), nullable=True, index=True)
    name = Column(String, nullable=False)
    status = Column(String, nullable=True)
    optimization_goal = Column(String, nullable=True)
    daily_budget = Column(Numeric(18, 4, asdecimal=False), nullable=True)
    lifetime_budget = Column(Numeric(18, 4, asdecimal=False), nullable=True)
    start_time = Column(DateTime, nullable=True)
    end_time = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    campaign = relationship("MetaCampaign", back_populates="ad_sets")
    ads = relationship("MetaAd", back_populates="ad_set")

    def __str__(self):
        return f"{self.name} (adset)"


class MetaAd(Base):
    """Ad. Parent references are optional, orphaned ads are still stored."""
    __tablename__ = "meta_ads"

    id = Column(String, primary_key=True)
    account_id = Column(String, ForeignKey("meta_ad_accounts.id"), nullable=False, index=True)
    campaign_id = Column(String, ForeignKey("meta_campaigns.id"), nullable=True, index=True)
    ad_set_id = Column(String, ForeignKey("meta_ad_sets.id"), nullable=True, index=True)
    name = Column(String, nullable=False)
    status = Column(String, nullable=True)
    creative_id = Column(String, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    ad_set = relationship("MetaAdSet", back_populates="ads")

    def __str__(self):
        return f"{self.name} (ad)"


class MetaInsight(Base):
    """Daily performance fact for one campaign, ad set or ad.

    Keyed by (account_id, entity_id, level, date). `entity_id` is the primary
    key of the MetaCampaign / MetaAdSet / MetaAd matching `level`.

    Every sync overwrites the whole row: Meta revises attribution for dates
    that were already recorded. spend/impressions/clicks default to 0, while
    cpa/roas/purchase_value stay NULL when not reported ("not reported" is
    different from "no conversions").
    """
    __tablename__ = "meta_insights"
    __table_args__ = (
        UniqueConstraint("account_id", "entity_id", "level", "date", name="uq_meta_insights_key"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(String, ForeignKey("meta_ad_accounts.id"), nullable=False, index=True)
    entity_id = Column(String, nullable=False)
    level = Column(Enum(InsightLevelEnum, values_callable=lambda obj: [e.value for e in obj]), nullable=False)
    date = Column(Date, nullable=False)

    spend = Column(Numeric(18, 4, asdecimal=False), nullable=False, default=0)
    impressions = Column(Integer, nullable=False, default=0)
    clicks = Column(Integer, nullable=False, default=0)
    cpa = Column(Numeric(18, 4, asdecimal=False), nullable=True)
    roas = Column(Numeric(18, 4, asdecimal=False), nullable=True)
    purchase_value = Column(Numeric(18, 4, asdecimal=False), nullable=True)
    currency = Column(String, nullable=True)

    synced_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def __str__(self):
        return f"{self.date:%Y-%m-%d} - {self.level.value} {self.entity_id} - {self.spend}"


# Sync audit ----------------------------------------------------

class SyncJob(Base):
    """Audit record of one synchronization attempt.

    Created RUNNING when the attempt starts, transitions exactly once to
    SUCCESS or FAILED (setting `finished_at`). Never re-run in place.
    """
    __tablename__ = "sync_jobs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(String, nullable=False, index=True)
    credential_id = Column(UUID(as_uuid=True), ForeignKey("meta_credentials.id"), nullable=True)
    status = Column(
        Enum(SyncJobStatusEnum, values_callable=lambda obj: [e.value for e in obj]),
        nullable=False,
        default=SyncJobStatusEnum.pending,
    )
    started_at = Column(DateTime, nullable=False, default=utcnow)
    finished_at = Column(DateTime, nullable=True)
    error_payload = Column(JSON, nullable=True)
    stats = Column(JSON, nullable=True)

    credential = relationship("MetaCredential", back_populates="sync_jobs")

    def __str__(self):
        return f"Sync {self.status.value} for {self.user_id} - {self.started_at:%Y-%m-%d %H:%M}"
