"""
Poll Scheduler
Three interval jobs (killfeed, server stats, dirty faction sync) dispatched through a bounded worker pool
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from killfeed.config import BotConfig
from killfeed.utils.exceptions import KillfeedException
from killfeed.utils.poll_orchestrator import KILLFEED, SERVER_STATS, PollOrchestrator, PollResult

logger = logging.getLogger(__name__)

KILLFEED_JOB_ID = "killfeed_polling"
SERVER_STATS_JOB_ID = "server_stats_polling"
FACTION_SYNC_JOB_ID = "faction_stat_sync"


class TickTimer:
    """Context manager for tracking tick duration"""

    def __init__(self, label: str):
        self.label = label
        self.start_time = None

    def __enter__(self):
        self.start_time = time.time()
        logger.debug(f"🚀 Starting {self.label}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration = time.time() - self.start_time
        if exc_type:
            logger.error(f"❌ {self.label} failed after {duration:.2f}s: {exc_val}")
        else:
            logger.info(f"✅ {self.label} completed in {duration:.2f}s")


class PollScheduler:
    """Drives the orchestrator across every known server without ever raising out of a tick"""

    def __init__(self, config: BotConfig, db_manager, orchestrator: PollOrchestrator, faction_sync=None,
                 scheduler: Optional[AsyncIOScheduler] = None):
        self.config = config
        self.db_manager = db_manager
        self.orchestrator = orchestrator
        self.faction_sync = faction_sync
        self.scheduler = scheduler or AsyncIOScheduler()
        self.max_workers = config.max_concurrent_polls
        self.poll_timeout = config.poll_timeout_seconds
        self.semaphore: Optional[asyncio.Semaphore] = None

    def start(self):
        self.scheduler.add_job(
            self.run_killfeed_tick,
            'interval',
            seconds=self.config.killfeed_interval_seconds,
            id=KILLFEED_JOB_ID,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self.scheduler.add_job(
            self.run_server_stats_tick,
            'interval',
            seconds=self.config.server_stats_interval_seconds,
            id=SERVER_STATS_JOB_ID,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        if self.faction_sync:
            self.scheduler.add_job(
                self.run_faction_sync_tick,
                'interval',
                seconds=self.config.faction_sync_interval_seconds,
                id=FACTION_SYNC_JOB_ID,
                max_instances=1,
                coalesce=True,
                replace_existing=True,
            )

        if not self.scheduler.running:
            self.scheduler.start()
        logger.info(
            f"🔧 Scheduler started: killfeed every {self.config.killfeed_interval_seconds}s, "
            f"server stats every {self.config.server_stats_interval_seconds}s, "
            f"{self.max_workers} workers"
        )

    def shutdown(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")

    async def run_killfeed_tick(self) -> Dict[str, int]:
        return await self._tick("killfeed tick", KILLFEED, self.orchestrator.poll_killfeed)

    async def run_server_stats_tick(self) -> Dict[str, int]:
        return await self._tick("server stats tick", SERVER_STATS, self.orchestrator.poll_server_stats)

    async def run_faction_sync_tick(self) -> Dict[str, int]:
        try:
            with TickTimer("faction sync tick"):
                return await self.faction_sync.sync_dirty_factions()
        except Exception as e:
            logger.error(f"Faction sync tick failed: {e}")
            return {'synced': 0, 'skipped': 0, 'failed': 1}

    async def _tick(self, label: str, kind: str, poll: Callable[[Dict[str, Any]], Awaitable[PollResult]]) -> Dict[str, int]:
        summary = {'servers': 0, 'succeeded': 0, 'failed': 0, 'skipped': 0}
        try:
            servers: List[Dict[str, Any]] = await self.db_manager.list_all_servers()
        except KillfeedException as e:
            logger.error(f"{label}: could not load servers: {e}")
            return summary

        summary['servers'] = len(servers)
        if not servers:
            logger.debug(f"{label}: no servers configured")
            return summary

        if self.semaphore is None:
            self.semaphore = asyncio.Semaphore(self.max_workers)

        with TickTimer(f"{label} for {len(servers)} server(s)"):
            results = await asyncio.gather(*(self._dispatch(kind, poll, server) for server in servers))

        for outcome in results:
            summary[outcome] += 1
        return summary

    async def _dispatch(self, kind: str, poll: Callable[[Dict[str, Any]], Awaitable[PollResult]], server: Dict[str, Any]) -> str:
        name = server.get('name', server.get('server_id'))
        # Checked before queueing for a worker so an overlapping tick stays a no-op
        if self.orchestrator.is_polling(server, kind):
            logger.debug(f"⏭️ {name} still running its {kind} poll, skipped this tick")
            return 'skipped'

        async with self.semaphore:
            try:
                result = await asyncio.wait_for(poll(server), timeout=self.poll_timeout)
            except asyncio.TimeoutError:
                logger.error(f"⏰ Poll for {name} timed out after {self.poll_timeout}s")
                return 'failed'
            except Exception as e:
                logger.exception(f"❌ Poll for {name} raised: {e}")
                return 'failed'

        if result.skipped:
            return 'skipped'
        return 'succeeded' if result.success else 'failed'
