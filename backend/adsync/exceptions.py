"""
Sync Exceptions
===============

Exception types for the Meta credential lifecycle and sync engine.

WHY THIS FILE EXISTS
--------------------
The OAuth flow, the validator and the sync engine fail in different ways:
- OAuth callback integrity failures (state mismatch, lost verifier)
- Non-success responses from the Graph API
- Credentials that can no longer be used
- Store failures in the middle of a bulk upsert

Callers (workers, HTTP layers outside this package) catch these to decide
whether to prompt re-authorization, surface an error or record a failed job.

RELATED FILES
-------------
- adsync/services/meta_oauth_service.py: InvalidState, MissingVerifier
- adsync/services/meta_ads_client.py: UpstreamError
- adsync/services/token_validation_service.py: CredentialInvalid
- adsync/services/meta_persistence.py: PersistenceError
- adsync/services/sync_lock.py: SyncAlreadyRunning
"""

from typing import Optional


class AdSyncError(Exception):
    """Base exception for all credential and sync errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class OAuthError(AdSyncError):
    """OAuth callback could not be completed."""


class InvalidState(OAuthError):
    """Returned `state` does not match the value issued at initiation."""

    def __init__(self, message: str = "OAuth state is invalid or expired"):
        super().__init__(message)


class MissingVerifier(OAuthError):
    """No stored PKCE code verifier for this user."""

    def __init__(self, message: str = "Missing PKCE code verifier for OAuth callback"):
        super().__init__(message)


class UpstreamError(AdSyncError):
    """
    The ad platform answered with a non-success status (or not at all).

    ATTRIBUTES:
        status_code: HTTP status of the failing response, None for transport errors
        provider_message: `error.message` from the Graph API envelope when present
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        provider_message: Optional[str] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.provider_message = provider_message


class CredentialInvalid(AdSyncError):
    """
    Stored credential cannot be used for API calls.

    `reason` is one of: missing, expired, revoked, unauthorized, unknown.
    Not fatal to the system; callers should prompt the user to reconnect.
    """

    def __init__(self, reason: str, message: Optional[str] = None):
        super().__init__(message or f"Meta credential is not usable: {reason}")
        self.reason = reason


class PersistenceError(AdSyncError):
    """A bulk upsert batch failed and was rolled back."""


class SyncAlreadyRunning(AdSyncError):
    """Another sync currently holds the per-user lock."""

    def __init__(self, user_id: str):
        super().__init__(f"A Meta sync is already running for user {user_id}")
        self.user_id = user_id
