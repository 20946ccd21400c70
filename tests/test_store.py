"""
Tests for the upsert writer and the dlt-backed funnel store.
"""
import asyncio
from dataclasses import replace
from datetime import date
from decimal import Decimal
from types import SimpleNamespace

import dlt
import pytest

from conftest import InMemoryFunnelStore
from funnel_sync.errors import PersistenceError
from funnel_sync.funnels import FunnelRow
from funnel_sync.store import DltFunnelStore, FunnelWriter


def funnel_row(funnel_id="1", amount_spent="150", **overrides):
    values = dict(
        funnel_id=funnel_id,
        funnel_name=f"Funnel #{funnel_id}",
        start_date=date(2024, 3, 8),
        end_date=date(2024, 3, 15),
        amount_spent=Decimal(amount_spent),
        impressions=1500,
        reach=750,
        ads_link_clicks=30,
        frequency=2.0,
        link_ctr=2.0,
    )
    values.update(overrides)
    return FunnelRow(**values)


class TestFunnelWriter:
    """Tests for row-at-a-time upserts."""

    def test_same_key_twice_leaves_latest_row(self, store):
        writer = FunnelWriter(store)
        first = funnel_row(amount_spent="150")
        second = funnel_row(amount_spent="175.25", impressions=1600)

        asyncio.run(writer.write([first]))
        asyncio.run(writer.write([second]))

        assert len(store.rows) == 1
        stored = store.rows[second.key]
        assert stored.amount_spent == Decimal("175.25")
        assert stored.impressions == 1600

    def test_different_windows_are_different_rows(self, store):
        writer = FunnelWriter(store)
        this_week = funnel_row()
        last_week = funnel_row(start_date=date(2024, 3, 1), end_date=date(2024, 3, 8))

        asyncio.run(writer.write([this_week, last_week]))

        assert len(store.rows) == 2

    def test_rows_are_stamped_current_week(self, store):
        writer = FunnelWriter(store)

        asyncio.run(writer.write([funnel_row(is_current_week=False)]))

        assert all(row.is_current_week for row in store.rows.values())

    def test_failed_row_does_not_block_others(self):
        store = InMemoryFunnelStore(fail_on={"2"})
        writer = FunnelWriter(store)
        rows = [funnel_row("1"), funnel_row("2"), funnel_row("3")]

        report = asyncio.run(writer.write(rows))

        assert report.written == ["Funnel #1", "Funnel #3"]
        assert report.failed == ["Funnel #2"]
        assert len(store.writes) == 3
        assert {key[2] for key in store.rows} == {"1", "3"}

    def test_unwrapped_store_error_does_not_block_others(self):
        class UnreachableStore(InMemoryFunnelStore):
            async def upsert(self, row):
                self.writes.append(row)
                if row.funnel_id == "1":
                    raise ConnectionError("store down")
                self.rows[row.key] = row

        store = UnreachableStore()

        report = asyncio.run(FunnelWriter(store).write([funnel_row("1"), funnel_row("2")]))

        assert [row.funnel_id for row in store.writes] == ["1", "2"]
        assert report.failed == ["Funnel #1"]
        assert report.written == ["Funnel #2"]

    def test_write_order_does_not_matter(self):
        rows = [funnel_row("1"), funnel_row("2", amount_spent="9.99"), funnel_row("unknown")]
        forward, backward = InMemoryFunnelStore(), InMemoryFunnelStore()

        asyncio.run(FunnelWriter(forward).write(rows))
        asyncio.run(FunnelWriter(backward).write(list(reversed(rows))))

        assert forward.rows == backward.rows

    def test_nothing_to_write(self, store):
        report = asyncio.run(FunnelWriter(store).write([]))

        assert report.written == [] and report.failed == []
        assert store.writes == []


class RecordingPipeline:
    """Stands in for dlt.Pipeline.run and keeps what it was asked to load."""

    def __init__(self, error=None, failed_jobs=()):
        self.error = error
        self.failed_jobs = list(failed_jobs)
        self.runs = []

    def run(self, data, table_name=None, **kwargs):
        records = list(data)
        self.runs.append({"records": records, "table_name": table_name, "resource": data})
        if self.error:
            raise self.error
        return SimpleNamespace(has_failed_jobs=bool(self.failed_jobs), failed_jobs=self.failed_jobs)


class TestDltFunnelStore:
    """Tests for the dlt merge/upsert store."""

    def test_one_run_per_row(self):
        pipeline = RecordingPipeline()
        store = DltFunnelStore(table_name="funnel_analytics", pipeline=pipeline)

        asyncio.run(store.upsert(funnel_row("1")))
        asyncio.run(store.upsert(funnel_row("2")))

        assert len(pipeline.runs) == 2
        first = pipeline.runs[0]
        assert first["table_name"] == "funnel_analytics"
        assert first["records"] == [funnel_row("1").to_record()]

    def test_rows_go_through_funnel_analytics_resource(self):
        pipeline = RecordingPipeline()
        store = DltFunnelStore(pipeline=pipeline)

        asyncio.run(store.upsert(funnel_row()))

        assert pipeline.runs[0]["resource"].name == "funnel_analytics"

    def test_pipeline_exception_becomes_persistence_error(self):
        store = DltFunnelStore(pipeline=RecordingPipeline(error=RuntimeError("connection refused")))

        with pytest.raises(PersistenceError, match="connection refused"):
            asyncio.run(store.upsert(funnel_row()))

    def test_failed_jobs_become_persistence_error(self):
        store = DltFunnelStore(pipeline=RecordingPipeline(failed_jobs=["job-1"]))

        with pytest.raises(PersistenceError, match="Funnel #1"):
            asyncio.run(store.upsert(funnel_row()))

    def test_null_link_ctr_is_kept(self):
        pipeline = RecordingPipeline()
        store = DltFunnelStore(pipeline=pipeline)

        asyncio.run(store.upsert(replace(funnel_row(), impressions=0, link_ctr=None)))

        assert pipeline.runs[0]["records"][0]["link_ctr"] is None


class TestDltFunnelStoreOnDuckDB:
    """Tests for upsert semantics against a real dlt destination."""

    def load_rows(self, pipeline):
        with pipeline.sql_client() as client:
            table = client.make_qualified_table_name("funnel_analytics")
            return client.execute_sql(
                f"SELECT funnel_id, start_date, end_date, amount_spent, impressions, link_ctr, is_current_week "
                f"FROM {table} ORDER BY funnel_id"
            )

    def make_store(self, tmp_path):
        pipeline = dlt.pipeline(
            pipeline_name="funnel_upsert_test",
            destination=dlt.destinations.duckdb(str(tmp_path / "funnels.duckdb")),
            dataset_name="meta_ads",
            pipelines_dir=str(tmp_path / "pipelines"),
        )
        return DltFunnelStore(pipeline=pipeline), pipeline

    def test_same_key_twice_leaves_one_row_with_latest_values(self, tmp_path):
        store, pipeline = self.make_store(tmp_path)

        asyncio.run(store.upsert(funnel_row("1", amount_spent="150")))
        asyncio.run(store.upsert(funnel_row("1", amount_spent="175.25", impressions=0, link_ctr=None)))

        rows = self.load_rows(pipeline)
        assert len(rows) == 1, f"Expected one row per funnel key, found {len(rows)}"
        funnel_id, start_date, end_date, amount_spent, impressions, link_ctr, is_current_week = rows[0]
        assert funnel_id == "1"
        assert (start_date, end_date) == (date(2024, 3, 8), date(2024, 3, 15))
        assert amount_spent == Decimal("175.25")
        assert impressions == 0
        assert link_ctr is None
        assert is_current_week is True

    def test_other_keys_are_left_alone(self, tmp_path):
        store, pipeline = self.make_store(tmp_path)

        asyncio.run(store.upsert(funnel_row("1")))
        asyncio.run(store.upsert(funnel_row("2", amount_spent="9.99")))
        asyncio.run(store.upsert(funnel_row("1", amount_spent="200")))

        rows = self.load_rows(pipeline)
        assert [(row[0], row[3]) for row in rows] == [("1", Decimal("200")), ("2", Decimal("9.99"))]
