"""Backfill scheduler — delayed replenishment job for the featured set.

States:
  Idle       no job stored
  Pending    job stored, execute_at in the future
  Due        now >= execute_at, not yet executed
  Executed   job deleted after execution
  Superseded a new schedule() overwrote a still-pending job

The job is stored with a TTL of delay + buffer, so a job nobody executes
expires on its own.
"""

import logging
import time
from typing import Callable

from pydantic import ValidationError

from listings_edge.models.featured import BackfillJob, BackfillStatus
from listings_edge.services.store import KeyValueStore

logger = logging.getLogger(__name__)

JOB_KEY = "featured:backfill-job"


class BackfillScheduler:
    """Stores, inspects and clears the single pending backfill job."""

    def __init__(
        self,
        kv: KeyValueStore,
        delay_seconds: int = 300,
        buffer_seconds: int = 600,
        clock: Callable[[], float] = time.time,
    ):
        self.kv = kv
        self.delay_seconds = delay_seconds
        self.buffer_seconds = buffer_seconds
        self._clock = clock

    async def schedule(self, current_count: int, target_count: int) -> BackfillJob | None:
        """Arm a job for `target_count - current_count` ids. None if nothing is missing."""
        shortfall = target_count - current_count
        if shortfall <= 0:
            return None

        now = self._clock()
        job = BackfillJob(
            scheduled_at=now,
            execute_at=now + self.delay_seconds,
            shortfall=shortfall,
            target_count=target_count,
            current_count_at_schedule=current_count,
        )

        previous = await self.get_job()
        await self.kv.put(JOB_KEY, job.model_dump(), ttl=self.delay_seconds + self.buffer_seconds)

        if previous is not None:
            logger.info("Backfill superseded | old_execute_at=%.0f", previous.execute_at)
        logger.info(
            "Backfill scheduled | shortfall=%d | target=%d | execute_at=%.0f",
            shortfall, target_count, job.execute_at,
        )
        return job

    async def get_job(self) -> BackfillJob | None:
        raw = await self.kv.get(JOB_KEY)
        if raw is None:
            return None
        try:
            return BackfillJob.model_validate(raw)
        except ValidationError as e:
            logger.warning("Backfill job unreadable — ignoring | %s", str(e)[:200])
            return None

    async def status(self) -> BackfillStatus:
        """Read-only view for pollers."""
        job = await self.get_job()
        if job is None:
            return BackfillStatus()
        remaining = max(0.0, job.execute_at - self._clock())
        return BackfillStatus(
            pending=True,
            is_ready=remaining == 0.0,
            time_remaining=remaining,
            job=job,
        )

    async def delete(self):
        await self.kv.delete(JOB_KEY)
        logger.info("Backfill job cleared")
