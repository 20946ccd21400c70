"""
Sync orchestration: accounts -> campaign insights -> funnels -> upserts.

Accounts are processed one after another. Whatever goes wrong inside one
account (API errors, unexpected data) is logged and recorded in the report;
the cycle then moves on to the next account. Only a failed or empty account
listing ends the cycle early, with OrchestrationError.

The same FunnelSync instance is shared by the daily scheduler and the manual
HTTP trigger. A cycle started while another one is running is not executed;
its report comes back with skipped=True.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from funnel_sync.config import DateWindow, SyncConfig
from funnel_sync.errors import OrchestrationError, TransportError
from funnel_sync.funnels import FunnelKey, aggregate_insights
from funnel_sync.meta_ads import AdAccount, MetaAdsClient
from funnel_sync.store import FunnelStore, FunnelWriter

logger = logging.getLogger(__name__)


@dataclass
class AccountResult:
    account_id: str
    account_name: str
    status: str  # "synced", "skipped_inactive", "no_data" or "failed"
    funnels_written: List[str] = field(default_factory=list)
    funnels_failed: List[str] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_id": self.account_id,
            "account_name": self.account_name,
            "status": self.status,
            "funnels_written": list(self.funnels_written),
            "funnels_failed": list(self.funnels_failed),
            "error": self.error,
        }


@dataclass
class SyncReport:
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    skipped: bool = False
    accounts: List[AccountResult] = field(default_factory=list)

    @property
    def failed_accounts(self) -> List[AccountResult]:
        return [a for a in self.accounts if a.status == "failed"]

    @property
    def funnels_written(self) -> int:
        return sum(len(a.funnels_written) for a in self.accounts)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "skipped": self.skipped,
            "funnels_written": self.funnels_written,
            "accounts": [a.to_dict() for a in self.accounts],
        }


class FunnelSync:
    """
    Runs sync cycles for every ad account visible to the access token.

    Args:
        config: Immutable runtime configuration
        store: Where finalized funnel rows are upserted
        client_factory: Builds the Meta API client for one cycle; replaced in tests
        today: Returns the date the trailing window ends on
    """

    def __init__(
        self,
        config: SyncConfig,
        store: FunnelStore,
        client_factory: Optional[Callable[[SyncConfig], MetaAdsClient]] = None,
        today: Callable[[], date] = date.today,
    ):
        self.config = config
        self.writer = FunnelWriter(store)
        self.client_factory = client_factory or MetaAdsClient
        self.today = today
        self._in_progress = False

    @property
    def in_progress(self) -> bool:
        return self._in_progress

    async def list_accounts(self) -> List[AdAccount]:
        """List ad accounts without aggregating anything (connectivity check)."""
        async with self.client_factory(self.config) as client:
            return await client.list_ad_accounts()

    async def run(self) -> SyncReport:
        """
        Run one full cycle over the current window.

        Returns:
            SyncReport; skipped=True when another cycle was already running

        Raises:
            OrchestrationError: If ad accounts cannot be listed or none exist
        """
        if self._in_progress:
            logger.warning("Sync already in progress - skipping this trigger")
            return SyncReport(skipped=True)

        self._in_progress = True
        try:
            return await self._run_cycle()
        finally:
            self._in_progress = False

    async def _run_cycle(self) -> SyncReport:
        window = self.config.current_window(today=self.today())
        report = SyncReport(
            start_date=window.start_date,
            end_date=window.end_date,
            started_at=datetime.now(timezone.utc),
        )

        logger.info("=" * 60)
        logger.info(
            f"Starting Facebook data sync for {window.start_date.isoformat()} "
            f"to {window.end_date.isoformat()}"
        )
        logger.info("=" * 60)

        async with self.client_factory(self.config) as client:
            try:
                accounts = await client.list_ad_accounts()
            except TransportError as e:
                logger.error(f"Error fetching ad accounts: {e}")
                raise OrchestrationError(f"Could not list ad accounts: {e}") from e

            if not accounts:
                logger.warning("No ad accounts found. Cannot proceed.")
                raise OrchestrationError("No ad accounts found")

            # FunnelKey -> name of the account that last wrote it this cycle
            written_keys: Dict[FunnelKey, str] = {}
            for account in accounts:
                result = await self._sync_account(client, account, window, written_keys)
                report.accounts.append(result)

        report.finished_at = datetime.now(timezone.utc)
        self._log_summary(report)
        return report

    async def _sync_account(
        self,
        client: MetaAdsClient,
        account: AdAccount,
        window: DateWindow,
        written_keys: Dict[FunnelKey, str],
    ) -> AccountResult:
        result = AccountResult(account_id=account.id, account_name=account.name, status="synced")

        if not account.is_active:
            logger.info(f"Skipping inactive account: {account.name} (status {account.account_status})")
            result.status = "skipped_inactive"
            return result

        logger.info(f"Processing account: {account.name} ({account.id})")

        try:
            insights = await client.fetch_campaign_insights(account.id, window)
            rows = aggregate_insights(insights, window.start_date, window.end_date)

            if not rows:
                logger.info(f"No campaign data for {account.name} in this window")
                result.status = "no_data"
                return result

            for row in rows:
                previous = written_keys.get(row.key)
                if previous is not None:
                    logger.warning(
                        f"{row.funnel_name} for {window.start_date.isoformat()} to "
                        f"{window.end_date.isoformat()} was already written by {previous} this cycle; "
                        f"{account.name} will overwrite it"
                    )

            write_report = await self.writer.write(rows)
            written = set(write_report.written)
            for row in rows:
                if row.funnel_name in written:
                    written_keys[row.key] = account.name
        except Exception as e:
            # One account must never take the cycle down
            logger.error(f"❌ Account {account.name} ({account.id}) failed: {e}", exc_info=True)
            result.status = "failed"
            result.error = str(e)
            return result

        result.funnels_written = write_report.written
        result.funnels_failed = write_report.failed
        logger.info(f"✅ {account.name}: {len(write_report.written)} funnels saved")
        return result

    def _log_summary(self, report: SyncReport) -> None:
        synced = [a for a in report.accounts if a.status == "synced"]
        inactive = [a for a in report.accounts if a.status == "skipped_inactive"]
        failed = report.failed_accounts

        logger.info("=" * 60)
        logger.info("Facebook data sync completed!")
        logger.info(f"Accounts synced: {len(synced)}, inactive: {len(inactive)}, failed: {len(failed)}")
        logger.info(f"Funnel rows written: {report.funnels_written}")
        if failed:
            logger.warning(f"Failed accounts: {', '.join(a.account_name for a in failed)}")
        logger.info("=" * 60)
