# /telepharma/jobs/session_sweep.py

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from telepharma.services.contact_locks import ContactLocks
from telepharma.services.db_service import DatabaseService
from telepharma.services.session_governor import sweep_stale_sessions
from telepharma.workflows.engine import FlowEngine

logger = logging.getLogger(__name__)


class SessionSweeper:
    """Periodic job that returns long-idle conversations to the root menu."""

    JOB_ID = "stale_session_sweep_job"

    def __init__(
        self,
        db: DatabaseService,
        locks: ContactLocks,
        engine: FlowEngine,
        interval_minutes: int = 60,
        stale_minutes: int = 60,
    ):
        self.db = db
        self.locks = locks
        self.engine = engine
        self.interval_minutes = interval_minutes
        self.stale_after = timedelta(minutes=stale_minutes)
        self.scheduler: Optional[AsyncIOScheduler] = None

    async def run_once(self) -> int:
        logger.info("Starting scheduled stale session sweep...")
        try:
            return await sweep_stale_sessions(
                self.db, self.locks, self.engine, datetime.now(timezone.utc), self.stale_after
            )
        except Exception:
            # Keep the schedule alive; the next run retries.
            logger.exception("Stale session sweep failed")
            return 0

    def start(self):
        if self.scheduler and self.scheduler.running:
            return
        self.scheduler = AsyncIOScheduler(timezone="UTC")
        self.scheduler.add_job(
            self.run_once,
            'interval',
            minutes=self.interval_minutes,
            id=self.JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.start()
        logger.info(f"Scheduled job: stale session sweep (every {self.interval_minutes} minutes).")

    def stop(self):
        if self.scheduler and self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Stale session sweep stopped.")
        self.scheduler = None
