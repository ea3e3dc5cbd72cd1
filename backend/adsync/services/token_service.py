"""Credential store for encrypted Meta access tokens.

WHAT:
    Persists one `MetaCredential` per user (encrypted token, expiry and
    validation state) and exposes the state transitions the validator needs.

WHY:
    - Keeps encryption and credential bookkeeping out of the OAuth and sync flows.
    - One place that decides which credentials the scheduled refresh may use.

REFERENCES:
    - backend/adsync/security.py (encrypt_secret / decrypt_secret)
    - backend/adsync/services/meta_oauth_service.py (writes credentials)
    - backend/adsync/services/token_validation_service.py (mutates validity)
"""

from __future__ import annotations

from datetime import datetime
import logging
from typing import List, Optional, Sequence

from sqlalchemy.orm import Session

from adsync.models import MetaCredential
from adsync.security import decrypt_secret, encrypt_secret
from adsync.utils.clock import utcnow

logger = logging.getLogger(__name__)


def get_credential(db: Session, user_id: str) -> Optional[MetaCredential]:
    """Find the credential for a user (unique on user_id)."""
    return (
        db.query(MetaCredential)
        .filter(MetaCredential.user_id == user_id)
        .first()
    )


def store_meta_credential(
    db: Session,
    user_id: str,
    *,
    access_token: str,
    expires_at: datetime,
    ad_account_ids: Sequence[str],
    scope: Optional[str] = None,
    refresh_token: Optional[str] = None,
) -> MetaCredential:
    """Encrypt and upsert the user's credential.

    WHAT:
        Creates the credential on first connect, otherwise overwrites the
        token, expiry and account list in place. Always leaves the credential
        freshly validated with `requires_reauth` cleared.
    WHY:
        Reconnecting is how a user recovers from `requires_reauth`, so the
        new token supersedes the old one instead of adding a second row.

    The caller owns the transaction (the row is flushed, not committed).
    """
    label = f"meta:{user_id}"
    encrypted_access = encrypt_secret(access_token, context=f"{label}:access")
    encrypted_refresh = (
        encrypt_secret(refresh_token, context=f"{label}:refresh") if refresh_token else None
    )
    now = utcnow()

    credential = get_credential(db, user_id)
    if credential:
        credential.access_token_enc = encrypted_access
        if encrypted_refresh:
            credential.refresh_token_enc = encrypted_refresh
        credential.expires_at = expires_at
        credential.scope = scope
        credential.ad_account_ids = list(ad_account_ids)
        credential.last_validated_at = now
        credential.requires_reauth = False
        logger.info("[TOKEN_SERVICE] Updated encrypted token for %s", label)
    else:
        credential = MetaCredential(
            user_id=user_id,
            access_token_enc=encrypted_access,
            refresh_token_enc=encrypted_refresh,
            expires_at=expires_at,
            scope=scope,
            ad_account_ids=list(ad_account_ids),
            last_validated_at=now,
            requires_reauth=False,
        )
        db.add(credential)
        logger.info("[TOKEN_SERVICE] Created encrypted token for %s", label)

    db.flush()
    return credential


def decrypt_access_token(credential: MetaCredential) -> str:
    """Return the plaintext access token.

    Raises:
        ValueError: If the stored ciphertext cannot be decrypted
    """
    return decrypt_secret(credential.access_token_enc, context=f"meta:{credential.user_id}:access")


def mark_requires_reauth(db: Session, credential: MetaCredential) -> None:
    """Flag the credential as unusable until the user reconnects."""
    credential.requires_reauth = True
    credential.last_validated_at = utcnow()
    db.commit()
    logger.warning("[TOKEN_SERVICE] Credential for %s now requires re-authorization", credential.user_id)


def record_successful_validation(
    db: Session,
    credential: MetaCredential,
    *,
    expires_at: Optional[datetime] = None,
) -> None:
    """Stamp a successful provider check, optionally with a revised expiry."""
    credential.last_validated_at = utcnow()
    if expires_at is not None:
        credential.expires_at = expires_at
    credential.requires_reauth = False
    db.commit()
    logger.info("[TOKEN_SERVICE] Credential for %s validated", credential.user_id)


def list_credentials_eligible_for_refresh(
    db: Session,
    reference: Optional[datetime] = None,
) -> List[MetaCredential]:
    """Credentials the scheduled refresh may use: not flagged and not expired."""
    reference = reference or utcnow()
    return (
        db.query(MetaCredential)
        .filter(MetaCredential.requires_reauth.is_(False))
        .filter(MetaCredential.expires_at > reference)
        .order_by(MetaCredential.user_id)
        .all()
    )


def list_credentials_needing_reauth(db: Session) -> List[MetaCredential]:
    return (
        db.query(MetaCredential)
        .filter(MetaCredential.requires_reauth.is_(True))
        .order_by(MetaCredential.user_id)
        .all()
    )
