"""Meta OAuth 2.0 + PKCE flow.

WHAT:
    - `build_authorization_url`: issues `state` and a PKCE verifier, stores
      both server-side and returns the Facebook login dialog URL.
    - `complete_authorization`: validates the callback, exchanges the code,
      upgrades to a long-lived token, stores the credential and the reachable
      ad accounts, then runs the initial sync.

WHY:
    - PKCE binds the authorization code to the verifier that only this
      server holds; `state` ties the callback to the request that started it.
    - State and verifier live in Redis with a short TTL (10 minutes) keyed
      by user, and are removed as soon as a callback is processed.

FLOW:
    1. build_authorization_url -> user is redirected to the Meta dialog
    2. Meta redirects back with code + state
    3. complete_authorization -> credential stored, initial SyncJob recorded

REFERENCES:
    - https://developers.facebook.com/docs/facebook-login/guides/advanced/manual-flow
    - https://datatracker.ietf.org/doc/html/rfc7636 (PKCE)
    - backend/adsync/services/sync_job_service.py (initial sync)
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import logging
import secrets
from contextlib import nullcontext
from datetime import timedelta
from typing import Optional
from urllib.parse import urlencode

import httpx
from sqlalchemy.orm import Session

from adsync.config import Settings, get_settings
from adsync.exceptions import InvalidState, MissingVerifier, UpstreamError
from adsync.models import MetaCredential
from adsync.services import meta_persistence
from adsync.services.meta_ads_client import MetaAdsClient, graph_error_message, graph_payload
from adsync.services.sync_job_service import run_refresh_job
from adsync.services.sync_lock import SyncLock
from adsync.services.token_service import store_meta_credential
from adsync.utils.clock import utcnow

logger = logging.getLogger(__name__)

# Meta omits expires_in for some long-lived tokens; they last ~60 days.
DEFAULT_TOKEN_LIFETIME_SECONDS = 60 * 24 * 60 * 60


def _state_key(user_id: str) -> str:
    return f"meta_oauth:{user_id}:state"


def _verifier_key(user_id: str) -> str:
    return f"meta_oauth:{user_id}:code_verifier"


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def generate_state() -> str:
    return _b64url(secrets.token_bytes(32))


def generate_code_verifier() -> str:
    return _b64url(secrets.token_bytes(64))


def code_challenge_for(verifier: str) -> str:
    """S256 challenge: base64url(sha256(verifier)) without padding."""
    return _b64url(hashlib.sha256(verifier.encode("ascii")).digest())


def _read(session_store, key: str) -> Optional[str]:
    value = session_store.get(key)
    if isinstance(value, bytes):
        value = value.decode("utf-8")
    return value


def clear_oauth_session(user_id: str, session_store) -> None:
    """Drop any pending state and verifier for the user."""
    session_store.delete(_state_key(user_id), _verifier_key(user_id))


def build_authorization_url(
    user_id: str,
    session_store,
    *,
    settings: Optional[Settings] = None,
) -> str:
    """Start the authorization leg.

    Args:
        user_id: Local user starting the connect flow
        session_store: Redis client (setex/get/delete) holding the OAuth session

    Returns:
        Meta login dialog URL to redirect the user to
    """
    settings = settings or get_settings()
    app_id = settings.require("META_APP_ID")
    redirect_uri = settings.require("META_OAUTH_REDIRECT_URI")

    state = generate_state()
    verifier = generate_code_verifier()

    ttl = settings.OAUTH_SESSION_TTL_SECONDS
    session_store.setex(_state_key(user_id), ttl, state)
    session_store.setex(_verifier_key(user_id), ttl, verifier)

    params = {
        "client_id": app_id,
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "scope": ",".join(settings.meta_scopes),
        "state": state,
        "code_challenge": code_challenge_for(verifier),
        "code_challenge_method": "S256",
    }
    logger.info("[META_OAUTH] Authorization started for user %s (scopes=%s)", user_id, params["scope"])
    return f"{settings.META_DIALOG_URL}?{urlencode(params)}"


async def _exchange_code(
    client: httpx.AsyncClient,
    settings: Settings,
    *,
    code: str,
    verifier: str,
) -> dict:
    """POST the authorization code and verifier for a short-lived token."""
    try:
        response = await client.post(
            f"{settings.graph_url}/oauth/access_token",
            data={
                "client_id": settings.require("META_APP_ID"),
                "client_secret": settings.require("META_APP_SECRET"),
                "redirect_uri": settings.require("META_OAUTH_REDIRECT_URI"),
                "code": code,
                "code_verifier": verifier,
            },
        )
    except httpx.HTTPError as exc:
        raise UpstreamError(f"Meta token exchange failed: {exc}") from exc

    if not response.is_success:
        provider_message = graph_error_message(response)
        logger.error("[META_OAUTH] Token exchange failed (%d): %s", response.status_code, provider_message)
        raise UpstreamError(
            provider_message or "Failed to exchange authorization code",
            status_code=response.status_code,
            provider_message=provider_message,
        )

    payload = graph_payload(response)
    if not payload.get("access_token"):
        raise UpstreamError("Token exchange response did not include an access token",
                            status_code=response.status_code)
    return payload


async def _upgrade_to_long_lived(
    client: httpx.AsyncClient,
    settings: Settings,
    access_token: str,
) -> Optional[dict]:
    """Exchange a short-lived token for a long-lived one.

    Returns the provider payload, or None when the upgrade failed for any
    reason (the short-lived token remains usable).
    """
    try:
        response = await client.get(
            f"{settings.graph_url}/oauth/access_token",
            params={
                "grant_type": "fb_exchange_token",
                "client_id": settings.require("META_APP_ID"),
                "client_secret": settings.require("META_APP_SECRET"),
                "fb_exchange_token": access_token,
            },
        )
    except httpx.HTTPError as exc:
        logger.warning("[META_OAUTH] Long-lived token exchange failed, keeping short-lived token: %s", exc)
        return None

    if not response.is_success:
        logger.warning(
            "[META_OAUTH] Long-lived token exchange returned %d, keeping short-lived token: %s",
            response.status_code, graph_error_message(response),
        )
        return None

    try:
        payload = response.json()
    except ValueError:
        logger.warning("[META_OAUTH] Long-lived token exchange returned invalid JSON, keeping short-lived token")
        return None
    if not isinstance(payload, dict) or not payload.get("access_token"):
        logger.warning("[META_OAUTH] Long-lived token exchange returned no token, keeping short-lived token")
        return None
    return payload


async def complete_authorization(
    db: Session,
    user_id: str,
    code: str,
    state: str,
    session_store,
    *,
    lock: Optional[SyncLock] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    settings: Optional[Settings] = None,
) -> MetaCredential:
    """Finish the callback leg and run the initial sync.

    Nothing is persisted when validation, the code exchange or the account
    listing fails. The stored state and verifier are single-use: they are
    cleared as soon as they have been checked, and on every failure path.
    When `lock` is given the initial sync holds the per-user sync lock.

    Raises:
        InvalidState: `state` missing, expired or not the one issued
        MissingVerifier: no stored PKCE verifier
        UpstreamError: code exchange or account listing failed
        SyncAlreadyRunning: `lock` is held by another refresh (the credential
            is kept)
        PersistenceError / UpstreamError: the initial sync failed (the
            credential is kept and the failed SyncJob is recorded)

    Returns:
        The stored MetaCredential
    """
    settings = settings or get_settings()

    try:
        saved_state = _read(session_store, _state_key(user_id))
        if not saved_state or not state or not hmac.compare_digest(
            saved_state.encode("utf-8"), state.encode("utf-8")
        ):
            logger.warning("[META_OAUTH] State mismatch for user %s", user_id)
            raise InvalidState()

        verifier = _read(session_store, _verifier_key(user_id))
        if not verifier:
            logger.warning("[META_OAUTH] Missing code verifier for user %s", user_id)
            raise MissingVerifier()

        clear_oauth_session(user_id, session_store)

        async with httpx.AsyncClient(
            timeout=settings.META_HTTP_TIMEOUT_SECONDS,
            transport=transport,
        ) as client:
            token_payload = await _exchange_code(client, settings, code=code, verifier=verifier)
            access_token = token_payload["access_token"]
            expires_in = token_payload.get("expires_in")

            long_lived = await _upgrade_to_long_lived(client, settings, access_token)
            if long_lived:
                access_token = long_lived["access_token"]
                expires_in = long_lived.get("expires_in") or expires_in
                logger.info("[META_OAUTH] Upgraded to long-lived token for user %s", user_id)

        if not expires_in:
            expires_in = DEFAULT_TOKEN_LIFETIME_SECONDS
        expires_at = utcnow() + timedelta(seconds=int(expires_in))

        api = MetaAdsClient(access_token, transport=transport, settings=settings)
        accounts = await api.list_ad_accounts()
        logger.info("[META_OAUTH] User %s can reach %d ad accounts", user_id, len(accounts))

        credential = store_meta_credential(
            db,
            user_id,
            access_token=access_token,
            expires_at=expires_at,
            ad_account_ids=[account.id for account in accounts],
            scope=",".join(settings.meta_scopes),
        )
        db.commit()

        await asyncio.to_thread(
            meta_persistence.upsert_ad_accounts,
            db,
            accounts,
            user_id=user_id,
            credential_id=credential.id,
        )

        with lock.hold(user_id) if lock is not None else nullcontext():
            await run_refresh_job(
                db,
                user_id=user_id,
                credential_id=credential.id,
                api=api,
                mark_initial_sync=True,
            )
        return credential
    finally:
        clear_oauth_session(user_id, session_store)
