"""
Pytest configuration and shared fixtures.

Unit tests run against in-memory fakes of the Meta API client and the funnel
store. Data quality tests (test_funnel_analytics.py) need a reachable Postgres
and are skipped otherwise.
"""
import os
from datetime import date
from decimal import Decimal

import psycopg2
import pytest
from dotenv import load_dotenv

from funnel_sync.config import SyncConfig
from funnel_sync.errors import MetaAdsAPIError, PersistenceError
from funnel_sync.funnels import CampaignInsight
from funnel_sync.meta_ads import AdAccount

load_dotenv()

TODAY = date(2024, 3, 15)


@pytest.fixture(scope="session")
def db_connection():
    """
    Create a database connection that persists for the entire test session.
    """
    try:
        conn = psycopg2.connect(
            host=os.getenv("POSTGRES_HOST", "localhost"),
            port=os.getenv("POSTGRES_PORT", "5432"),
            database=os.getenv("POSTGRES_DATABASE", "funnel_db"),
            user=os.getenv("POSTGRES_USER", "postgres"),
            password=os.getenv("POSTGRES_PASSWORD", ""),
            connect_timeout=3,
        )
    except psycopg2.OperationalError as e:
        pytest.skip(f"Postgres not reachable: {e}")
    yield conn
    conn.close()


@pytest.fixture
def db_cursor(db_connection):
    """
    Create a cursor for executing queries. Rolls back after each test.
    """
    cursor = db_connection.cursor()
    yield cursor
    db_connection.rollback()
    cursor.close()


@pytest.fixture
def config():
    return SyncConfig(access_token="test-token", page_size=2, request_timeout_seconds=5)


def insight(campaign_id, name, spend="0", impressions=0, reach=0, clicks=0):
    return CampaignInsight(
        campaign_id=campaign_id,
        campaign_name=name,
        spend=Decimal(str(spend)),
        impressions=impressions,
        reach=reach,
        clicks=clicks,
    )


class InMemoryFunnelStore:
    """FunnelStore keeping rows in a dict keyed by (start_date, end_date, funnel_id)."""

    def __init__(self, fail_on=()):
        self.rows = {}
        self.writes = []
        self.fail_on = set(fail_on)

    async def upsert(self, row):
        self.writes.append(row)
        if row.funnel_id in self.fail_on:
            raise PersistenceError(f"rejected {row.funnel_name}")
        self.rows[row.key] = row


class FakeMetaAdsClient:
    """Stands in for MetaAdsClient; records every account it fetched."""

    def __init__(self, accounts=None, insights=None, list_error=None, fetch_errors=None):
        self.accounts = accounts or []
        self.insights = insights or {}
        self.list_error = list_error
        self.fetch_errors = fetch_errors or {}
        self.fetched = []
        self.windows = []

    def __call__(self, config):
        return self

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return None

    async def list_ad_accounts(self):
        if self.list_error:
            raise self.list_error
        return list(self.accounts)

    async def fetch_campaign_insights(self, account_id, window):
        self.fetched.append(account_id)
        self.windows.append(window)
        if account_id in self.fetch_errors:
            raise self.fetch_errors[account_id]
        return list(self.insights.get(account_id, []))


def account(account_id, name=None, status=1):
    return AdAccount(id=account_id, name=name or account_id, account_status=status)


@pytest.fixture
def store():
    return InMemoryFunnelStore()


@pytest.fixture
def funnel_one_insights():
    return [
        insight("c1", "Funnel 1 - Top", spend="100", impressions=1000, reach=500, clicks=20),
        insight("c2", "Funnel 1 - Mid", spend="50", impressions=500, reach=250, clicks=10),
    ]


@pytest.fixture
def api_error():
    return MetaAdsAPIError("Meta API error 400: Invalid OAuth access token", status=400)
