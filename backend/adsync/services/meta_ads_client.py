"""Meta Marketing (Graph) API client.

WHAT:
    Thin async wrapper over the Graph API edges the sync engine reads:
    - /me/adaccounts
    - /{account_id}/campaigns, /adsets, /ads
    - /{account_id}/insights at campaign, adset and ad level

    Every call drains the cursor chain (`paging.next`) before returning and
    translates provider payloads into the rows in `adsync.schemas`.

WHY:
    - The sync engine needs the complete entity set of an account before it
      writes, so pages are accumulated rather than streamed.
    - No provider field names leak past this module.

REFERENCES:
    - https://developers.facebook.com/docs/graph-api/results (cursor paging)
    - https://developers.facebook.com/docs/marketing-api/insights
    - backend/adsync/services/meta_sync_service.py (consumer)
"""

from __future__ import annotations

import datetime as dt
import json
import logging
from typing import Any, Dict, List, Optional

import httpx

from adsync.config import Settings, get_settings
from adsync.exceptions import UpstreamError
from adsync.models import InsightLevelEnum
from adsync.schemas import AdAccountRow, AdRow, AdSetRow, CampaignRow, InsightRow

logger = logging.getLogger(__name__)


ACCOUNT_FIELDS = "id,account_id,name,currency,account_status,timezone_name"
CAMPAIGN_FIELDS = "id,name,status,objective,buying_type,start_time,stop_time"
AD_SET_FIELDS = (
    "id,name,status,campaign_id,optimization_goal,daily_budget,"
    "lifetime_budget,start_time,end_time"
)
AD_FIELDS = "id,name,status,campaign_id,adset_id,creative{id}"
INSIGHT_FIELDS = ",".join([
    "campaign_id",
    "adset_id",
    "ad_id",
    "date_start",
    "date_stop",
    "spend",
    "impressions",
    "clicks",
    "cpa",
    "purchase_roas",
    "purchase_conversion_value",
    "account_currency",
])

# Which provider field carries the entity id for each insights level
INSIGHT_ENTITY_FIELD = {
    InsightLevelEnum.campaign: "campaign_id",
    InsightLevelEnum.adset: "adset_id",
    InsightLevelEnum.ad: "ad_id",
}


# Coercion helpers ------------------------------------------------------------

def _to_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _to_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def _parse_datetime(value: Optional[str]) -> Optional[dt.datetime]:
    """Parse Graph API timestamps (e.g. 2024-03-01T10:00:00-0800) to naive UTC."""
    if not value:
        return None
    parsed = None
    for parser in (
        lambda v: dt.datetime.strptime(v, "%Y-%m-%dT%H:%M:%S%z"),
        dt.datetime.fromisoformat,
    ):
        try:
            parsed = parser(value)
            break
        except (TypeError, ValueError):
            continue
    if parsed is None:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(dt.timezone.utc).replace(tzinfo=None)
    return parsed


def _parse_date(value: Optional[str]) -> Optional[dt.date]:
    if not value:
        return None
    try:
        return dt.date.fromisoformat(value[:10])
    except (TypeError, ValueError):
        return None


def _first_value(items: Any) -> Optional[float]:
    """Extract `value` from the first element of an action-value list (e.g. purchase_roas)."""
    if isinstance(items, list) and items and isinstance(items[0], dict):
        return _to_float(items[0].get("value"))
    return None


def graph_error_message(response: httpx.Response) -> Optional[str]:
    """Return `error.message` from a Graph API error envelope, if any."""
    try:
        payload = response.json()
    except ValueError:
        return None
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict):
            return error.get("message")
    return None


def graph_payload(response: httpx.Response) -> Dict[str, Any]:
    """Decode a successful Graph response body.

    Raises:
        UpstreamError: The body is not a JSON object
    """
    try:
        payload = response.json()
    except ValueError as exc:
        raise UpstreamError("Malformed Graph response", status_code=response.status_code) from exc
    if not isinstance(payload, dict):
        raise UpstreamError("Malformed Graph response", status_code=response.status_code)
    return payload


class MetaAdsClient:
    """Async client for the Meta Graph API, bound to one user access token.

    Usage:
        client = MetaAdsClient(access_token)
        accounts = await client.list_ad_accounts()
        insights = await client.list_insights("act_123", "campaign", since=date(2024, 3, 1))

    `transport` is passed to `httpx.AsyncClient` (tests use httpx.MockTransport).
    """

    def __init__(
        self,
        access_token: str,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        settings: Optional[Settings] = None,
    ):
        if not access_token:
            raise ValueError("access_token is required")
        self._access_token = access_token
        self._transport = transport
        self.settings = settings or get_settings()
        self.base_url = self.settings.graph_url

    def _http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.settings.META_HTTP_TIMEOUT_SECONDS,
            transport=self._transport,
        )

    async def _fetch_all_pages(self, path: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        """GET `path` and follow `paging.next` until exhausted.

        Raises:
            UpstreamError: On a non-2xx page, a transport failure, or a cursor
                chain longer than META_MAX_PAGES
        """
        results: List[Dict[str, Any]] = []
        url: Optional[str] = f"{self.base_url}{path}"
        query: Optional[Dict[str, Any]] = {
            **params,
            "access_token": self._access_token,
            "limit": self.settings.META_PAGE_LIMIT,
        }
        max_pages = self.settings.META_MAX_PAGES
        pages = 0

        async with self._http_client() as client:
            while url:
                if pages >= max_pages:
                    logger.error("[META_CLIENT] %s exceeded %d pages, aborting", path, max_pages)
                    raise UpstreamError(f"Pagination for {path} exceeded {max_pages} pages")

                try:
                    # `next` URLs already carry every query parameter
                    response = await client.get(url, params=query)
                except httpx.HTTPError as exc:
                    logger.error("[META_CLIENT] Request to %s failed: %s", path, exc)
                    raise UpstreamError(f"Meta API request failed: {exc}") from exc

                pages += 1
                if not response.is_success:
                    provider_message = graph_error_message(response)
                    logger.error(
                        "[META_CLIENT] %s returned %d: %s",
                        path, response.status_code, provider_message,
                    )
                    raise UpstreamError(
                        provider_message or f"Meta API error (HTTP {response.status_code})",
                        status_code=response.status_code,
                        provider_message=provider_message,
                    )

                try:
                    payload = graph_payload(response)
                except UpstreamError:
                    logger.error("[META_CLIENT] %s returned a malformed body", path)
                    raise
                data = payload.get("data")
                if isinstance(data, list):
                    results.extend(data)

                url = (payload.get("paging") or {}).get("next")
                query = None

        logger.info("[META_CLIENT] Fetched %d rows from %s (%d pages)", len(results), path, pages)
        return results

    # Entity reads ------------------------------------------------------------

    async def list_ad_accounts(self) -> List[AdAccountRow]:
        raw = await self._fetch_all_pages("/me/adaccounts", {"fields": ACCOUNT_FIELDS})
        accounts = []
        for item in raw:
            status = item.get("account_status")
            accounts.append(AdAccountRow(
                id=item["id"],
                name=item.get("name") or item["id"],
                currency=item.get("currency"),
                status=str(status) if status is not None else None,
                timezone_name=item.get("timezone_name"),
            ))
        return accounts

    async def list_campaigns(self, account_id: str) -> List[CampaignRow]:
        raw = await self._fetch_all_pages(f"/{account_id}/campaigns", {"fields": CAMPAIGN_FIELDS})
        return [
            CampaignRow(
                id=item["id"],
                account_id=account_id,
                name=item.get("name") or item["id"],
                status=item.get("status"),
                objective=item.get("objective"),
                buying_type=item.get("buying_type"),
                start_time=_parse_datetime(item.get("start_time")),
                stop_time=_parse_datetime(item.get("stop_time")),
            )
            for item in raw
        ]

    async def list_ad_sets(self, account_id: str) -> List[AdSetRow]:
        raw = await self._fetch_all_pages(f"/{account_id}/adsets", {"fields": AD_SET_FIELDS})
        return [
            AdSetRow(
                id=item["id"],
                account_id=account_id,
                campaign_id=item.get("campaign_id"),
                name=item.get("name") or item["id"],
                status=item.get("status"),
                optimization_goal=item.get("optimization_goal"),
                daily_budget=_to_float(item.get("daily_budget")),
                lifetime_budget=_to_float(item.get("lifetime_budget")),
                start_time=_parse_datetime(item.get("start_time")),
                end_time=_parse_datetime(item.get("end_time")),
            )
            for item in raw
        ]

    async def list_ads(self, account_id: str) -> List[AdRow]:
        raw = await self._fetch_all_pages(f"/{account_id}/ads", {"fields": AD_FIELDS})
        return [
            AdRow(
                id=item["id"],
                account_id=account_id,
                campaign_id=item.get("campaign_id"),
                ad_set_id=item.get("adset_id"),
                name=item.get("name") or item["id"],
                status=item.get("status"),
                creative_id=(item.get("creative") or {}).get("id"),
            )
            for item in raw
        ]

    # Time series -------------------------------------------------------------

    async def list_insights(
        self,
        account_id: str,
        level: InsightLevelEnum,
        since: Optional[dt.date] = None,
    ) -> List[InsightRow]:
        """Fetch daily insights for one level.

        With `since`, requests the window since..today (inclusive); otherwise
        the provider's default window applies. Rows without an entity id for
        the level or without a parsable date are dropped.
        """
        level = InsightLevelEnum(level)
        params: Dict[str, Any] = {
            "level": level.value,
            "fields": INSIGHT_FIELDS,
            "time_increment": 1,
        }
        if since is not None:
            until = dt.datetime.now(dt.timezone.utc).date()
            params["time_range"] = json.dumps(
                {"since": since.isoformat(), "until": until.isoformat()}
            )

        raw = await self._fetch_all_pages(f"/{account_id}/insights", params)

        entity_field = INSIGHT_ENTITY_FIELD[level]
        insights = []
        dropped = 0
        for item in raw:
            entity_id = item.get(entity_field)
            day = _parse_date(item.get("date_start"))
            if not entity_id or day is None:
                dropped += 1
                continue
            insights.append(InsightRow(
                account_id=account_id,
                entity_id=entity_id,
                level=level,
                date=day,
                spend=_to_float(item.get("spend")),
                impressions=_to_int(item.get("impressions")),
                clicks=_to_int(item.get("clicks")),
                cpa=_to_float(item.get("cpa")),
                roas=_first_value(item.get("purchase_roas")),
                purchase_value=_to_float(item.get("purchase_conversion_value")),
                currency=item.get("account_currency"),
            ))

        if dropped:
            logger.warning(
                "[META_CLIENT] Dropped %d %s insight rows for %s (missing entity id or date)",
                dropped, level.value, account_id,
            )
        return insights
