"""
Meta/Facebook Ads Extraction

Data Source: Meta Marketing API (Graph API)
API Type: REST API with cursor pagination (paging.next)
Key Endpoints:
  - /me/adaccounts for the ad accounts visible to the token
  - /{ad_account_id}/campaigns for campaign metadata (used to resolve names)
  - /{ad_account_id}/insights?level=campaign for campaign performance

Extraction Method: async requests with aiohttp, one session per sync cycle
Incremental Strategy: none - every cycle re-reads the trailing window (time_range)

Rate Limits:
  - Graph API rate limits (varies by app and account)
  - No backoff here; a throttled account simply fails for this cycle

Authentication: Access token (access_token query parameter)
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import aiohttp

from funnel_sync.config import DateWindow, SyncConfig
from funnel_sync.errors import MetaAdsAPIError
from funnel_sync.funnels import CampaignInsight

logger = logging.getLogger(__name__)

ACTIVE_ACCOUNT_STATUS = 1
UNKNOWN_CAMPAIGN_NAME = "Unknown Campaign"

ACCOUNT_FIELDS = "id,name,account_status"
CAMPAIGN_FIELDS = "id,name,status"
INSIGHT_FIELDS = (
    "campaign_id,campaign_name,spend,impressions,reach,clicks,"
    "ctr,cost_per_inline_link_click,frequency"
)


def normalize_account_id(account_id: str) -> str:
    """Return the account id in the act_<id> form the Graph API expects."""
    account_id = str(account_id).strip()
    return account_id if account_id.startswith("act_") else f"act_{account_id}"


@dataclass(frozen=True)
class AdAccount:
    id: str
    name: str
    account_status: Optional[int]

    @property
    def is_active(self) -> bool:
        return self.account_status == ACTIVE_ACCOUNT_STATUS

    @classmethod
    def from_api(cls, record: Dict[str, Any]) -> "AdAccount":
        status = record.get("account_status")
        try:
            status = int(status) if status is not None else None
        except (TypeError, ValueError):
            status = None
        return cls(
            id=normalize_account_id(record["id"]),
            name=record.get("name") or record["id"],
            account_status=status,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "account_status": self.account_status}


@dataclass(frozen=True)
class Campaign:
    id: str
    name: Optional[str]
    status: Optional[str]


class MetaAdsClient:
    """
    Thin async client over the Graph API endpoints the sync needs.

    Usage:
        async with MetaAdsClient(config) as client:
            accounts = await client.list_ad_accounts()

    A session may be passed in; otherwise one is opened on enter with a
    bounded total timeout per request and closed on exit.
    """

    def __init__(self, config: SyncConfig, session: Optional[aiohttp.ClientSession] = None):
        self.config = config
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "MetaAdsClient":
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self.config.request_timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self

    async def __aexit__(self, *exc_info) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    @property
    def session(self) -> aiohttp.ClientSession:
        if self._session is None:
            raise RuntimeError("MetaAdsClient used outside of 'async with'")
        return self._session

    async def fetch_graph(self, url: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Execute a single GET against the Graph API.

        Args:
            url: Absolute URL (endpoint or a paging.next link)
            params: Query parameters; None when the URL already carries them

        Returns:
            Decoded JSON body

        Raises:
            MetaAdsAPIError: On HTTP errors, Graph error payloads, network errors and timeouts
        """
        try:
            async with self.session.get(url, params=params) as response:
                if response.status >= 400:
                    error_text = await response.text()
                    logger.error(f"Meta API error {response.status}: {error_text}")
                    raise MetaAdsAPIError(
                        f"Meta API error {response.status}: {error_text}",
                        status=response.status,
                        payload=error_text,
                    )

                body = await response.text()
                try:
                    data = json.loads(body)
                except ValueError as e:
                    logger.error(f"Invalid JSON from Meta API ({response.status}): {body[:500]}")
                    raise MetaAdsAPIError(
                        "Invalid JSON from Meta API",
                        status=response.status,
                        payload=body,
                    ) from e
        except asyncio.TimeoutError as e:
            raise MetaAdsAPIError(
                f"Meta API request timed out after {self.config.request_timeout_seconds}s"
            ) from e
        except aiohttp.ClientError as e:
            raise MetaAdsAPIError(f"Network error calling Meta API: {e}") from e

        if not isinstance(data, dict):
            raise MetaAdsAPIError(f"Unexpected response format: {data!r}", payload=data)

        # Graph API can report errors with a 200 status
        if "error" in data:
            raise MetaAdsAPIError(f"Meta API error: {json.dumps(data['error'])}", payload=data)

        return data

    async def fetch_paginated(self, path: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Fetch every page of an edge, following paging.next until exhausted."""
        params = {
            "access_token": self.config.access_token,
            "limit": self.config.page_size,
            **params,
        }
        url: Optional[str] = f"{self.config.graph_url}/{path.lstrip('/')}"
        records: List[Dict[str, Any]] = []
        page_count = 0

        while url:
            page_count += 1
            data = await self.fetch_graph(url, params)
            items = data.get("data") or []
            records.extend(items)

            next_url = data.get("paging", {}).get("next")
            if not next_url or len(items) == 0:
                break

            url = next_url
            params = None  # next_url already includes params

        logger.debug(f"Fetched {len(records)} records from {path} across {page_count} pages")
        return records

    async def list_ad_accounts(self) -> List[AdAccount]:
        """List the ad accounts visible to the configured access token."""
        logger.info("Fetching Facebook Ad Accounts...")
        records = await self.fetch_paginated("me/adaccounts", {"fields": ACCOUNT_FIELDS})

        accounts = []
        for record in records:
            if not record.get("id"):
                logger.warning(f"Skipping ad account record without id: {record}")
                continue
            accounts.append(AdAccount.from_api(record))

        for account in accounts:
            logger.info(f"  - {account.name} ({account.id})")
        return accounts

    async def list_campaigns(self, account_id: str) -> List[Campaign]:
        """List the campaigns of one ad account."""
        account_id = normalize_account_id(account_id)
        records = await self.fetch_paginated(f"{account_id}/campaigns", {"fields": CAMPAIGN_FIELDS})
        campaigns = [
            Campaign(id=str(r["id"]), name=r.get("name"), status=r.get("status"))
            for r in records
            if r.get("id")
        ]
        logger.info(f"Found {len(campaigns)} campaigns")
        return campaigns

    async def fetch_insights(self, account_id: str, window: DateWindow) -> List[Dict[str, Any]]:
        """Fetch raw campaign-level insight records for the window."""
        account_id = normalize_account_id(account_id)
        records = await self.fetch_paginated(
            f"{account_id}/insights",
            {
                "time_range": json.dumps(window.as_time_range()),
                "level": "campaign",
                "fields": INSIGHT_FIELDS,
            },
        )
        logger.info(f"Retrieved insights for {len(records)} campaigns")
        return records

    async def fetch_campaign_insights(self, account_id: str, window: DateWindow) -> List[CampaignInsight]:
        """
        Fetch campaigns and insights for one account and resolve campaign names.

        Insight records without a campaign_name take the name from the campaign
        list, falling back to "Unknown Campaign".

        Raises:
            MetaAdsAPIError: If either request fails
        """
        account_id = normalize_account_id(account_id)
        logger.info(
            f"Fetching data for ad account {account_id} "
            f"({window.start_date.isoformat()} to {window.end_date.isoformat()})"
        )

        campaigns = await self.list_campaigns(account_id)
        raw_insights = await self.fetch_insights(account_id, window)
        return resolve_campaign_insights(raw_insights, campaigns)


def resolve_campaign_insights(
    raw_insights: List[Dict[str, Any]],
    campaigns: List[Campaign],
) -> List[CampaignInsight]:
    """Turn raw insight records into CampaignInsights with resolved names."""
    campaign_names = {c.id: c.name for c in campaigns if c.name}

    insights = []
    for record in raw_insights:
        campaign_id = str(record.get("campaign_id") or "")
        name = (
            record.get("campaign_name")
            or campaign_names.get(campaign_id)
            or UNKNOWN_CAMPAIGN_NAME
        )
        insights.append(CampaignInsight.from_api(record, campaign_name=name))
    return insights
