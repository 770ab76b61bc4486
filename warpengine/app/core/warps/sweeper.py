############################################################
#
# warpengine - Serverless GPU Session Broker and Billing
#
# sweeper.py: Periodic reconciliation of warps against RunPod
#
############################################################

"""Reconciliation sweeper.

One sweep lists every warp that may still disagree with RunPod, syncs each
one in turn and cancels warps that are stuck in the queue, running without
heartbeats, or still running remotely after we marked them ended. Candidates
are handled sequentially; one candidate's failure never affects another.
"""

import asyncio
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from warpengine.app.core.clock import Clock, ensure_aware, utcnow
from warpengine.app.core.metrics import (
    LAST_SWEEP_TIMESTAMP,
    SWEEP_CANDIDATES,
    SWEEP_DURATION,
    SWEEP_RUNS,
)
from warpengine.app.core.warps.engine import WarpLifecycleEngine
from warpengine.app.core.warps.errors import RemoteJobError
from warpengine.app.db import crud
from warpengine.app.db.models import JobStatus, Warp
from warpengine.app.logging_config import get_logger
from warpengine.app.settings import Settings

logger = get_logger(__name__)

_INITIAL_STATUSES = (None, JobStatus.IN_QUEUE, JobStatus.PENDING)


class CancelReason(str, Enum):
    """Why the sweeper decided to cancel a warp."""

    STUCK = "stuck"
    INACTIVE = "inactive"
    DISCREPANCY = "discrepancy"


@dataclass
class SweepReport:
    """Counts from one sweep."""

    candidates: int = 0
    synced: int = 0
    sync_failed: int = 0
    confirmed: int = 0
    healthy: int = 0
    cancel_attempts: int = 0
    cancelled: int = 0
    skipped: int = 0
    errors: int = 0
    legacy_pods_retired: int = 0

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


class WarpSweeper:
    """
    Runs reconciliation sweeps on a fixed interval.

    The clock is injectable so threshold boundaries can be tested without
    real timers; run_once() performs a single sweep on demand.
    """

    def __init__(
        self,
        settings: Settings,
        engine: WarpLifecycleEngine,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Clock = utcnow,
    ):
        self._settings = settings
        self._engine = engine
        self._session_factory = session_factory
        self._clock = clock
        self._stuck_after = timedelta(seconds=settings.warp_stuck_threshold)
        self._inactive_after = timedelta(seconds=settings.warp_inactivity_threshold)
        self._legacy_inactive_after = timedelta(
            seconds=settings.legacy_pod_inactivity_threshold
        )
        self._task: Optional[asyncio.Task] = None
        self._run_lock = asyncio.Lock()
        self.last_report: Optional[SweepReport] = None
        self.last_run_at: Optional[datetime] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the background sweep loop."""
        if self.running:
            return
        self._task = asyncio.create_task(self._sweep_loop())
        logger.info(
            "sweeper_started",
            interval=self._settings.sweep_interval,
            stuck_threshold=self._settings.warp_stuck_threshold,
            inactivity_threshold=self._settings.warp_inactivity_threshold,
        )

    async def stop(self) -> None:
        """Stop the background sweep loop."""
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("sweeper_stopped")

    async def _sweep_loop(self) -> None:
        run_now = self._settings.sweep_on_startup
        while True:
            try:
                if not run_now:
                    await asyncio.sleep(self._settings.sweep_interval)
                run_now = False
                await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("sweep_loop_error", error=str(e))

    async def run_once(self) -> SweepReport:
        """Run one sweep.

        Only a failure to list candidates propagates; every per-warp
        failure is logged and counted.
        """
        async with self._run_lock:
            started = time.monotonic()
            report = SweepReport()

            try:
                async with self._session_factory() as db:
                    candidates = await crud.get_sweep_candidates(db)
            except Exception:
                SWEEP_RUNS.labels("failed").inc()
                logger.exception("sweep_candidate_query_failed")
                raise

            report.candidates = len(candidates)
            for warp in candidates:
                try:
                    await self._sweep_warp(warp, report)
                except Exception:
                    report.errors += 1
                    SWEEP_CANDIDATES.labels("error").inc()
                    logger.exception(
                        "sweep_candidate_failed", warp_id=warp.id, job_id=warp.job_id
                    )

            await self._drain_legacy_pods(report)

            duration = time.monotonic() - started
            SWEEP_DURATION.observe(duration)
            SWEEP_RUNS.labels("ok").inc()
            LAST_SWEEP_TIMESTAMP.set_to_current_time()
            self.last_report = report
            self.last_run_at = self._clock()

            logger.info(
                "sweep_completed",
                duration_ms=round(duration * 1000, 1),
                **report.as_dict(),
            )
            return report

    async def _sweep_warp(self, warp: Warp, report: SweepReport) -> None:
        was_unconfirmed_terminal = warp.is_terminal and not warp.runpod_confirmed_terminal

        synced = await self._engine.sync_warp(warp.id)
        if synced is None:
            report.sync_failed += 1
            SWEEP_CANDIDATES.labels("sync_failed").inc()
            return
        report.synced += 1

        if synced.runpod_confirmed_terminal:
            report.confirmed += 1
            SWEEP_CANDIDATES.labels("confirmed").inc()
            return

        reason = self.cancel_reason(synced, was_unconfirmed_terminal, self._clock())
        if reason is None:
            report.healthy += 1
            SWEEP_CANDIDATES.labels("healthy").inc()
            return

        report.cancel_attempts += 1
        logger.info(
            "sweep_cancel_triggered",
            warp_id=synced.id,
            job_id=synced.job_id,
            reason=reason.value,
            status=synced.job_status.value if synced.job_status else None,
        )
        try:
            result = await self._engine.cancel_warp(
                synced.created_by_id, synced.id, warp=synced
            )
        except RemoteJobError as e:
            report.errors += 1
            SWEEP_CANDIDATES.labels("cancel_failed").inc()
            logger.warning(
                "sweep_cancel_failed",
                warp_id=synced.id,
                job_id=synced.job_id,
                error=str(e),
            )
            return

        if result.already_terminal:
            report.skipped += 1
            SWEEP_CANDIDATES.labels("skipped").inc()
        else:
            report.cancelled += 1
            SWEEP_CANDIDATES.labels(f"cancelled_{reason.value}").inc()

    def cancel_reason(
        self, warp: Warp, was_unconfirmed_terminal: bool, now: datetime
    ) -> Optional[CancelReason]:
        """Which cancellation trigger, if any, fires for a synced warp."""
        status = warp.job_status

        if was_unconfirmed_terminal and status is not None and status.is_active:
            return CancelReason.DISCREPANCY

        if status in _INITIAL_STATUSES:
            created_at = ensure_aware(warp.created_at)
            if created_at is not None and now - created_at > self._stuck_after:
                return CancelReason.STUCK

        if status == JobStatus.IN_PROGRESS:
            updated_at = ensure_aware(warp.updated_at)
            if updated_at is not None and now - updated_at > self._inactive_after:
                return CancelReason.INACTIVE

        return None

    async def _drain_legacy_pods(self, report: SweepReport) -> None:
        """Terminate pre-serverless pods that stopped reporting liveness."""
        async with self._session_factory() as db:
            pods = await crud.get_running_legacy_pods(db)

        now = self._clock()
        for warp in pods:
            updated_at = ensure_aware(warp.updated_at)
            if updated_at is not None and now - updated_at <= self._legacy_inactive_after:
                continue
            try:
                result = await self._engine.retire_legacy_pod(warp)
            except Exception:
                report.errors += 1
                SWEEP_CANDIDATES.labels("error").inc()
                logger.exception(
                    "legacy_pod_retire_failed", warp_id=warp.id, pod_id=warp.pod_id
                )
                continue
            if not result.already_terminal:
                report.legacy_pods_retired += 1
                SWEEP_CANDIDATES.labels("legacy_pod_retired").inc()


# Global sweeper instance
_sweeper: Optional[WarpSweeper] = None


def get_sweeper() -> Optional[WarpSweeper]:
    """Get the global sweeper instance, if one was initialized."""
    return _sweeper


async def init_sweeper(
    settings: Settings,
    engine: WarpLifecycleEngine,
    session_factory: async_sessionmaker[AsyncSession],
) -> WarpSweeper:
    """Create the global sweeper and start it when sweeping is enabled."""
    global _sweeper
    _sweeper = WarpSweeper(settings, engine, session_factory)
    if settings.sweep_enabled:
        await _sweeper.start()
    else:
        logger.info("sweeper_disabled")
    return _sweeper


async def shutdown_sweeper() -> None:
    """Stop the global sweeper."""
    global _sweeper
    if _sweeper:
        await _sweeper.stop()
        _sweeper = None
