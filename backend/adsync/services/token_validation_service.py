"""Meta credential validation.

WHAT:
    Checks a stored credential against Meta's `/debug_token` introspection
    endpoint and records the outcome on the credential.

WHY:
    - Tokens can be revoked or expire outside our control; every refresh
      re-checks before spending API calls.
    - `requires_reauth` is sticky: once a credential is found unusable it
      stays that way until the user reconnects.

REASONS:
    missing       no credential for the user
    revoked       credential already flagged `requires_reauth`
    expired       `expires_at` has passed (flags the credential)
    unknown       introspection returned a non-2xx status (flags the credential)
    unauthorized  introspection reports the token invalid (flags the credential)

REFERENCES:
    - https://developers.facebook.com/docs/graph-api/reference/debug_token
    - backend/adsync/services/token_service.py (state transitions)
"""

from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Optional

import httpx
from sqlalchemy.orm import Session

from adsync.config import Settings, get_settings
from adsync.exceptions import CredentialInvalid, UpstreamError
from adsync.schemas import TokenValidationResult
from adsync.services.meta_ads_client import graph_error_message, graph_payload
from adsync.services.token_service import (
    decrypt_access_token,
    get_credential,
    mark_requires_reauth,
    record_successful_validation,
)
from adsync.utils.clock import utcnow

logger = logging.getLogger(__name__)


def _expiry_from_introspection(data: dict) -> Optional[datetime]:
    """Convert `expires_at` (epoch seconds) to naive UTC; 0 means no expiry."""
    expires_at = data.get("expires_at")
    if not expires_at:
        return None
    try:
        return datetime.fromtimestamp(int(expires_at), tz=timezone.utc).replace(tzinfo=None)
    except (TypeError, ValueError, OverflowError):
        return None


async def validate_token(
    db: Session,
    user_id: str,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    settings: Optional[Settings] = None,
) -> TokenValidationResult:
    """Validate the user's stored credential.

    Returns:
        TokenValidationResult with the plaintext token only when valid

    Raises:
        UpstreamError: Introspection could not be reached or returned a
            malformed body (credential untouched)
        ValueError: Stored token cannot be decrypted
    """
    settings = settings or get_settings()

    credential = get_credential(db, user_id)
    if credential is None:
        return TokenValidationResult(valid=False, reason="missing")

    if credential.requires_reauth:
        return TokenValidationResult(valid=False, reason="revoked")

    if credential.expires_at <= utcnow():
        logger.info("[TOKEN_VALIDATION] Credential for %s expired at %s", user_id, credential.expires_at)
        mark_requires_reauth(db, credential)
        return TokenValidationResult(valid=False, reason="expired")

    access_token = decrypt_access_token(credential)
    app_token = f"{settings.require('META_APP_ID')}|{settings.require('META_APP_SECRET')}"

    try:
        async with httpx.AsyncClient(
            timeout=settings.META_HTTP_TIMEOUT_SECONDS,
            transport=transport,
        ) as client:
            response = await client.get(
                f"{settings.graph_url}/debug_token",
                params={"input_token": access_token, "access_token": app_token},
            )
    except httpx.HTTPError as exc:
        logger.error("[TOKEN_VALIDATION] Introspection request failed for %s: %s", user_id, exc)
        raise UpstreamError(f"Token introspection failed: {exc}") from exc

    if not response.is_success:
        logger.warning(
            "[TOKEN_VALIDATION] Introspection returned %d for %s: %s",
            response.status_code, user_id, graph_error_message(response),
        )
        mark_requires_reauth(db, credential)
        return TokenValidationResult(valid=False, reason="unknown")

    data = graph_payload(response).get("data")
    if not isinstance(data, dict):
        data = {}
    if not data.get("is_valid"):
        logger.warning("[TOKEN_VALIDATION] Meta reports token invalid for %s", user_id)
        mark_requires_reauth(db, credential)
        return TokenValidationResult(valid=False, reason="unauthorized")

    record_successful_validation(db, credential, expires_at=_expiry_from_introspection(data))
    return TokenValidationResult(valid=True, access_token=access_token)


async def ensure_valid_token(
    db: Session,
    user_id: str,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    settings: Optional[Settings] = None,
) -> str:
    """Return a validated plaintext access token.

    Raises:
        CredentialInvalid: The credential is missing or unusable (`reason` says why)
    """
    result = await validate_token(db, user_id, transport=transport, settings=settings)
    if not result.valid:
        raise CredentialInvalid(result.reason or "unknown")
    return result.access_token
