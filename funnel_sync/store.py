"""
Funnel analytics persistence.

Rows are keyed by (start_date, end_date, funnel_id). Writing a row whose key
already exists replaces every column of the stored row; nothing is ever
deleted, and re-running a cycle over the same window leaves exactly one row
per funnel.

Production writes go through a dlt pipeline using the merge/upsert strategy,
one pipeline run per funnel so a rejected row does not take the others down.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Protocol

import dlt
from dlt.common.pipeline import LoadInfo

from funnel_sync.config import SyncConfig
from funnel_sync.errors import PersistenceError
from funnel_sync.funnels import FunnelRow

logger = logging.getLogger(__name__)

FUNNEL_KEY_COLUMNS = ["start_date", "end_date", "funnel_id"]

FUNNEL_COLUMNS = {
    "funnel_id": {"data_type": "text", "nullable": False},
    "funnel_name": {"data_type": "text"},
    "start_date": {"data_type": "date", "nullable": False},
    "end_date": {"data_type": "date", "nullable": False},
    "amount_spent": {"data_type": "decimal"},
    "impressions": {"data_type": "bigint"},
    "reach": {"data_type": "bigint"},
    "ads_link_clicks": {"data_type": "bigint"},
    "frequency": {"data_type": "double"},
    "link_ctr": {"data_type": "double", "nullable": True},
    "is_current_week": {"data_type": "bool"},
}


class FunnelStore(Protocol):
    async def upsert(self, row: FunnelRow) -> None:
        """Insert the row, or replace the stored row with the same key."""
        ...


@dlt.resource(
    name="funnel_analytics",
    write_disposition={"disposition": "merge", "strategy": "upsert"},
    primary_key=FUNNEL_KEY_COLUMNS,
    columns=FUNNEL_COLUMNS,
)
def funnel_analytics(records: List[Dict[str, Any]]):
    yield from records


class DltFunnelStore:
    """FunnelStore backed by a dlt pipeline (postgres by default)."""

    def __init__(
        self,
        destination: str = "postgres",
        dataset_name: str = "meta_ads",
        table_name: str = "funnel_analytics",
        pipeline_name: str = "meta_ads_funnels",
        pipeline: Optional[dlt.Pipeline] = None,
    ):
        self.table_name = table_name
        self.pipeline = pipeline or dlt.pipeline(
            pipeline_name=pipeline_name,
            destination=destination,
            dataset_name=dataset_name,
        )

    @classmethod
    def from_config(cls, config: SyncConfig) -> "DltFunnelStore":
        return cls(
            destination=config.destination,
            dataset_name=config.dataset_name,
            table_name=config.table_name,
        )

    def _load(self, row: FunnelRow) -> LoadInfo:
        try:
            load_info = self.pipeline.run(
                funnel_analytics([row.to_record()]),
                table_name=self.table_name,
            )
        except Exception as e:
            raise PersistenceError(f"Failed to upsert {row.funnel_name}: {e}") from e

        if load_info.has_failed_jobs:
            raise PersistenceError(
                f"Failed to upsert {row.funnel_name}: {[str(job) for job in load_info.failed_jobs]}"
            )
        return load_info

    async def upsert(self, row: FunnelRow) -> None:
        # dlt loads are blocking; keep the event loop free while one runs
        await asyncio.to_thread(self._load, row)


@dataclass
class WriteReport:
    written: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


class FunnelWriter:
    """Stamps and upserts finalized funnel rows one at a time."""

    def __init__(self, store: FunnelStore):
        self.store = store

    async def write(self, rows: Iterable[FunnelRow]) -> WriteReport:
        report = WriteReport()
        rows = list(rows)

        if not rows:
            logger.info("No funnel data to save")
            return report

        logger.info(f"Saving data for {len(rows)} funnels...")

        for row in rows:
            row = row.stamped_current_week()
            try:
                await self.store.upsert(row)
            except PersistenceError as e:
                logger.error(f"❌ Error saving data for {row.funnel_name}: {e}")
                report.failed.append(row.funnel_name)
                continue
            except Exception as e:
                # Stores other than DltFunnelStore may not wrap their errors
                logger.error(f"❌ Error saving data for {row.funnel_name}: {e!r}", exc_info=True)
                report.failed.append(row.funnel_name)
                continue
            logger.info(f"Saved data for {row.funnel_name}")
            report.written.append(row.funnel_name)

        if report.failed:
            logger.warning(f"Saved {len(report.written)} funnels, {len(report.failed)} failed")
        else:
            logger.info("All funnel data saved successfully!")
        return report
