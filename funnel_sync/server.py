"""
HTTP front door and daily scheduler.

Endpoints:
  GET  /                          informational page
  GET  /test-facebook-connection  lists ad accounts (no aggregation)
  POST /sync-facebook-data        runs one full sync cycle and waits for it

The daily cycle is scheduled with APScheduler on the app's event loop at
schedule_hour:schedule_minute in schedule_timezone (UTC unless configured).
The host's local timezone is never used.
"""

import logging
from typing import Optional

from aiohttp import web
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from funnel_sync.config import SyncConfig
from funnel_sync.errors import OrchestrationError
from funnel_sync.store import DltFunnelStore
from funnel_sync.sync import FunnelSync

logger = logging.getLogger(__name__)

SYNC_KEY = web.AppKey("sync", FunnelSync)
SCHEDULER_KEY = web.AppKey("scheduler", AsyncIOScheduler)

INDEX_HTML = """
<h1>Facebook Ads Analytics API</h1>
<p>Available endpoints:</p>
<ul>
  <li><a href="/test-facebook-connection">Test Facebook Connection</a></li>
  <li>POST to /sync-facebook-data to trigger data sync</li>
</ul>
"""


async def index(request: web.Request) -> web.Response:
    return web.Response(text=INDEX_HTML, content_type="text/html")


async def test_connection(request: web.Request) -> web.Response:
    sync = request.app[SYNC_KEY]
    try:
        accounts = await sync.list_accounts()
    except Exception as e:
        logger.error(f"Facebook connection test failed: {e}")
        return web.json_response({"success": False, "error": str(e)}, status=500)

    return web.json_response({
        "success": True,
        "message": "Successfully connected to Facebook API",
        "adAccounts": [account.to_dict() for account in accounts],
    })


async def trigger_sync(request: web.Request) -> web.Response:
    sync = request.app[SYNC_KEY]
    logger.info("Manual sync triggered")

    if sync.in_progress:
        return web.json_response(
            {"success": False, "error": "A sync cycle is already in progress"},
            status=409,
        )

    try:
        report = await sync.run()
    except OrchestrationError as e:
        logger.error(f"Manual sync failed: {e}")
        return web.json_response({"success": False, "error": str(e)}, status=500)
    except Exception as e:
        logger.exception("Manual sync failed with unexpected error")
        return web.json_response({"success": False, "error": str(e)}, status=500)

    if report.skipped:
        return web.json_response(
            {"success": False, "error": "A sync cycle is already in progress"},
            status=409,
        )

    return web.json_response({
        "success": True,
        "message": "Facebook data sync completed",
        "report": report.to_dict(),
    })


async def run_scheduled_sync(sync: FunnelSync) -> None:
    """Scheduled entry point; failures are logged, never raised."""
    logger.info("Running scheduled Facebook data sync...")
    try:
        await sync.run()
    except OrchestrationError as e:
        logger.error(f"Scheduled sync ended early: {e}")
    except Exception:
        logger.exception("Scheduled sync failed with unexpected error")


def create_scheduler(sync: FunnelSync, config: SyncConfig) -> AsyncIOScheduler:
    scheduler = AsyncIOScheduler(timezone=config.schedule_timezone)
    scheduler.add_job(
        run_scheduled_sync,
        trigger=CronTrigger(
            hour=config.schedule_hour,
            minute=config.schedule_minute,
            timezone=config.schedule_timezone,
        ),
        args=[sync],
        id="daily_facebook_sync",
        name="Daily Facebook funnel sync",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    return scheduler


async def _start_scheduler(app: web.Application) -> None:
    scheduler = app[SCHEDULER_KEY]
    scheduler.start()
    for job in scheduler.get_jobs():
        logger.info(f"Scheduled '{job.name}' next run at {job.next_run_time}")


async def _stop_scheduler(app: web.Application) -> None:
    scheduler = app[SCHEDULER_KEY]
    if scheduler.running:
        scheduler.shutdown(wait=False)
    logger.info("Scheduler stopped")


def create_app(
    config: SyncConfig,
    sync: Optional[FunnelSync] = None,
    with_scheduler: bool = True,
) -> web.Application:
    """
    Build the aiohttp application.

    Args:
        config: Runtime configuration
        sync: Shared FunnelSync; built with a dlt-backed store when omitted
        with_scheduler: Start the daily cron job together with the app
    """
    if sync is None:
        sync = FunnelSync(config, DltFunnelStore.from_config(config))

    app = web.Application()
    app[SYNC_KEY] = sync
    app.router.add_get("/", index)
    app.router.add_get("/test-facebook-connection", test_connection)
    app.router.add_post("/sync-facebook-data", trigger_sync)

    if with_scheduler:
        app[SCHEDULER_KEY] = create_scheduler(sync, config)
        app.on_startup.append(_start_scheduler)
        app.on_cleanup.append(_stop_scheduler)

    return app
