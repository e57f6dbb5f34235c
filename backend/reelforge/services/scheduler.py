"""
Scheduler Service

Runs the periodic watchdog sweep inside the API process.

Single-leader election via Postgres advisory locks:
- Only the instance that acquires the lock executes the tick
- Other instances silently skip
- Controlled by WATCHDOG_ENABLED env (default: true)
"""
from __future__ import annotations

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from reelforge.settings import get_settings

logger = logging.getLogger("scheduler")

# Advisory lock key (arbitrary int64, unique per job type)
LOCK_WATCHDOG = 910_001


class SchedulerService:
    """Periodic watchdog with per-tick leader election."""

    def __init__(self):
        self.scheduler = AsyncIOScheduler()
        self._session_factory: async_sessionmaker | None = None
        self._running = False

    def configure(self, database_url: str):
        """Configure database connection."""
        engine = create_async_engine(database_url, echo=False)
        self._session_factory = async_sessionmaker(engine, expire_on_commit=False)

    def _get_session(self) -> AsyncSession:
        if not self._session_factory:
            self.configure(get_settings().async_database_url)
        return self._session_factory()

    @staticmethod
    def _uses_advisory_locks(session: AsyncSession) -> bool:
        return session.bind.dialect.name == "postgresql"

    async def _try_advisory_lock(self, session: AsyncSession, lock_key: int) -> bool:
        """Non-blocking pg_try_advisory_lock; True means this instance is leader for the tick."""
        if not self._uses_advisory_locks(session):
            return True
        result = await session.execute(text(f"SELECT pg_try_advisory_lock({lock_key})"))
        return bool(result.scalar())

    async def _release_advisory_lock(self, session: AsyncSession, lock_key: int):
        if self._uses_advisory_locks(session):
            await session.execute(text(f"SELECT pg_advisory_unlock({lock_key})"))

    def start(self):
        """Start the scheduler (respects WATCHDOG_ENABLED env)."""
        settings = get_settings()
        if not settings.watchdog_enabled:
            logger.info("Scheduler DISABLED by WATCHDOG_ENABLED=false, skipping start")
            return
        if self._running:
            return

        self.scheduler.add_job(
            self._run_watchdog,
            IntervalTrigger(minutes=settings.watchdog_interval_minutes),
            id="watchdog",
            name="Fail rows stuck in an in-flight state",
            replace_existing=True,
        )
        self.scheduler.start()
        self._running = True
        logger.info(f"Scheduler started (watchdog every {settings.watchdog_interval_minutes}m)")

    def stop(self):
        if not self._running:
            return
        self.scheduler.shutdown(wait=False)
        self._running = False
        logger.info("Scheduler stopped")

    def is_running(self) -> bool:
        return self._running

    async def _run_watchdog(self):
        """Protected by advisory lock: only one instance executes per tick."""
        async with self._get_session() as session:
            if not await self._try_advisory_lock(session, LOCK_WATCHDOG):
                logger.debug("[watchdog] Advisory lock not acquired, another instance is leader, skipping tick")
                return None
            try:
                from reelforge.services.watchdog_service import run_watchdog
                return await run_watchdog(session, dry_run=False)
            except Exception as e:
                logger.error(f"[watchdog] tick failed: {e}")
                return None
            finally:
                await self._release_advisory_lock(session, LOCK_WATCHDOG)


scheduler_service = SchedulerService()
