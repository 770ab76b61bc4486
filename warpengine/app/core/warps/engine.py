############################################################
#
# warpengine - Serverless GPU Session Broker and Billing
#
# engine.py: Warp lifecycle engine (create, sync, cancel, heartbeat)
#
############################################################

"""Warp lifecycle engine.

Owns every jobStatus transition and the boundary between remote job state
and the local ledger. Remote calls are never made while a database
transaction is open; each mutation re-reads its rows under a row lock so
concurrent callers (a user's cancel racing the sweeper's sync) serialize
and the loser observes the winner's result.
"""

import asyncio
import weakref
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from warpengine.app.core.billing.balance import (
    estimate_time_balance,
    finalize_time_balance,
)
from warpengine.app.core.clock import Clock, ensure_aware, utcnow
from warpengine.app.core.metrics import BALANCE_SECONDS_CHARGED, WARP_OPERATIONS
from warpengine.app.core.runpod.client import (
    RunpodClient,
    RunpodError,
    RunpodNotFoundError,
)
from warpengine.app.core.runpod.models import JobStatusReport
from warpengine.app.core.warps.errors import (
    InsufficientBalanceError,
    RemoteJobError,
    WarpAccessDeniedError,
    WarpNotActiveError,
    WarpNotFoundError,
    WarpValidationError,
)
from warpengine.app.db import crud
from warpengine.app.db.models import JobStatus, PodStatus, User, Warp
from warpengine.app.logging_config import get_logger
from warpengine.app.settings import Settings

logger = get_logger(__name__)


@dataclass
class CreateResult:
    """Warp returned by create; created is False for an existing active warp."""

    warp: Warp
    created: bool


@dataclass
class CancelResult:
    """Outcome of a cancellation.

    already_terminal marks the idempotent no-op case: the warp was terminal
    before this call could change it.
    """

    warp: Warp
    user: Optional[User]
    already_terminal: bool = False


@dataclass
class HeartbeatResult:
    warp: Warp
    estimated_balance: float


class WarpLifecycleEngine:
    """
    Orchestrates warp creation, status sync, cancellation and billing.

    Responsibilities:
    - Start remote jobs and record them (no local row without a job)
    - Reconcile a warp against RunPod's reported status
    - Cancel warps and finalize the owner's balance exactly once
    - Accept heartbeats and end warps whose balance ran out
    """

    def __init__(
        self,
        settings: Settings,
        runpod: RunpodClient,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Clock = utcnow,
    ):
        self._settings = settings
        self._runpod = runpod
        self._session_factory = session_factory
        self._clock = clock
        self._create_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    # ------------------------------------------------------------------
    # Session layer operations
    # ------------------------------------------------------------------

    async def create_warp(self, user_id: str) -> CreateResult:
        """Start a remote job for the user unless one is already active."""
        if not user_id:
            raise WarpValidationError("User ID is required")

        async with self._user_lock(user_id):
            async with self._session_factory() as db:
                user = await crud.get_user_by_id(db, user_id)
                if user is None or user.deleted_at is not None:
                    raise WarpNotFoundError(f"User {user_id} not found")
                existing = await crud.get_active_warp_for_user(db, user_id)

            if existing:
                logger.info(
                    "warp_already_active", user_id=user_id, warp_id=existing.id
                )
                WARP_OPERATIONS.labels("create", "existing").inc()
                return CreateResult(warp=existing, created=False)

            try:
                handle = await self._runpod.start_job()
            except RunpodError as e:
                logger.error("warp_job_start_failed", user_id=user_id, error=str(e))
                WARP_OPERATIONS.labels("create", "remote_error").inc()
                raise RemoteJobError(f"Could not start warp session: {e}") from e

            if not handle.id:
                WARP_OPERATIONS.labels("create", "remote_error").inc()
                raise RemoteJobError(
                    "Could not start warp session: RunPod returned no job ID"
                )

            status = JobStatus.parse(handle.status)
            if status is None:
                if handle.status:
                    logger.warning(
                        "warp_unknown_initial_status",
                        job_id=handle.id,
                        status=handle.status,
                    )
                status = JobStatus.IN_QUEUE

            now = self._clock()
            try:
                async with self._session_factory.begin() as db:
                    warp = await crud.create_warp(
                        db,
                        user_id=user_id,
                        job_id=handle.id,
                        job_status=status,
                        job_requested_at=now,
                    )
            except Exception:
                logger.exception(
                    "warp_record_create_failed", user_id=user_id, job_id=handle.id
                )
                await self._abandon_job(handle.id)
                raise

        logger.info(
            "warp_created",
            user_id=user_id,
            warp_id=warp.id,
            job_id=warp.job_id,
            status=status.value,
        )
        WARP_OPERATIONS.labels("create", "created").inc()
        return CreateResult(warp=warp, created=True)

    async def get_warp(self, user_id: str, warp_id: str) -> Warp:
        """Return one of the user's warps, synced with RunPod first."""
        self._require_ids(user_id, warp_id)
        async with self._session_factory() as db:
            warp = await crud.get_user_warp(db, user_id, warp_id)
        if warp is None:
            raise WarpNotFoundError("Warp not found or access denied", warp_id=warp_id)

        synced = await self.sync_warp(warp.id)
        return synced or warp

    async def list_warps(self, user_id: str) -> List[Warp]:
        """Return the user's warps as stored (no remote sync)."""
        if not user_id:
            raise WarpValidationError("User ID is required")
        async with self._session_factory() as db:
            return await crud.get_user_warps(db, user_id)

    async def heartbeat(self, user_id: str, warp_id: str) -> HeartbeatResult:
        """Record liveness for a running warp and estimate the remaining balance.

        Cancels the warp and raises InsufficientBalanceError once the
        estimate reaches zero. Never finalizes the balance itself.
        """
        self._require_ids(user_id, warp_id)
        async with self._session_factory() as db:
            warp = await crud.get_user_warp(db, user_id, warp_id, include_deleted=True)
            if warp is None:
                raise WarpNotFoundError(
                    "Warp not found or access denied", warp_id=warp_id
                )
            if warp.job_status != JobStatus.IN_PROGRESS:
                status = warp.job_status.value if warp.job_status else None
                raise WarpNotActiveError(
                    f"Warp is not IN_PROGRESS (status: {status}). Cannot heartbeat.",
                    warp_id=warp_id,
                )
            user = await crud.get_user_by_id(db, warp.created_by_id)
        if user is None:
            raise WarpNotFoundError(f"User {user_id} not found", warp_id=warp_id)

        now = self._clock()
        estimate = estimate_time_balance(
            user.time_balance,
            warp.job_started_at,
            warp.job_ended_at,
            now,
            already_billed=warp.billed_seconds,
        )

        if estimate <= 0:
            logger.info(
                "warp_balance_exhausted",
                user_id=user_id,
                warp_id=warp_id,
                estimated_balance=estimate,
            )
            WARP_OPERATIONS.labels("heartbeat", "insufficient_balance").inc()
            result = await self.cancel_warp(user_id, warp.id, warp=warp)
            raise InsufficientBalanceError(
                "Insufficient balance to continue Warp",
                warp=result.warp,
                user=result.user,
            )

        async with self._session_factory.begin() as db:
            await crud.touch_warp(db, warp.id, now)
        warp.updated_at = now

        WARP_OPERATIONS.labels("heartbeat", "ok").inc()
        return HeartbeatResult(warp=warp, estimated_balance=estimate)

    async def end_warp(self, user_id: str, warp_id: str) -> CancelResult:
        """User-initiated end of a warp."""
        self._require_ids(user_id, warp_id)
        async with self._session_factory() as db:
            warp = await crud.get_warp_by_id(db, warp_id)
        if warp is None:
            raise WarpNotFoundError("Warp not found", warp_id=warp_id)
        if warp.created_by_id != user_id:
            raise WarpAccessDeniedError("Not authorized to end this Warp", warp_id=warp_id)

        if warp.is_legacy_pod:
            return await self.retire_legacy_pod(warp)
        return await self.cancel_warp(user_id, warp_id, warp=warp)

    async def estimate_balance(self, warp: Warp) -> float:
        """Non-authoritative remaining balance for the warp's owner."""
        async with self._session_factory() as db:
            user = await crud.get_user_by_id(db, warp.created_by_id)
        if user is None:
            raise WarpNotFoundError(f"User {warp.created_by_id} not found", warp_id=warp.id)
        return estimate_time_balance(
            user.time_balance,
            warp.job_started_at,
            warp.job_ended_at,
            self._clock(),
            already_billed=warp.billed_seconds,
        )

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def sync_warp(self, warp_id: str) -> Optional[Warp]:
        """Reconcile one warp with RunPod's view of its job.

        Returns the (possibly unchanged) warp, or None when RunPod could not
        be queried; the warp is left untouched in that case.
        """
        async with self._session_factory() as db:
            warp = await crud.get_warp_by_id(db, warp_id)
        if warp is None:
            raise WarpNotFoundError("Warp not found", warp_id=warp_id)
        if warp.runpod_confirmed_terminal or not warp.job_id:
            return warp

        try:
            report = await self._runpod.get_job_status(warp.job_id)
        except RunpodNotFoundError as e:
            if warp.is_terminal:
                logger.info(
                    "warp_remote_missing_confirms_terminal",
                    warp_id=warp_id,
                    job_id=warp.job_id,
                )
                return await self._confirm_terminal(warp_id)
            logger.warning(
                "warp_remote_job_not_found",
                warp_id=warp_id,
                job_id=warp.job_id,
                error=str(e),
            )
            WARP_OPERATIONS.labels("sync", "remote_error").inc()
            return None
        except RunpodError as e:
            logger.error(
                "warp_sync_failed", warp_id=warp_id, job_id=warp.job_id, error=str(e)
            )
            WARP_OPERATIONS.labels("sync", "remote_error").inc()
            return None

        return await self._apply_report(warp_id, report)

    async def cancel_warp(
        self, user_id: str, warp_id: str, warp: Optional[Warp] = None
    ) -> CancelResult:
        """Cancel a warp's job and finalize the owner's balance.

        Ownership is not re-checked here; the session layer does that and
        the sweeper acts on the owner's behalf. A RunPod failure raises
        RemoteJobError and leaves the warp exactly as it was.
        """
        if warp is None:
            async with self._session_factory() as db:
                warp = await crud.get_warp_by_id(db, warp_id)
            if warp is None:
                raise WarpNotFoundError("Warp not found", warp_id=warp_id)

        if not warp.job_id:
            return await self._fail_without_job(warp.id)

        if warp.is_terminal:
            logger.info(
                "warp_cancel_already_terminal",
                warp_id=warp.id,
                status=warp.job_status.value,
            )
            WARP_OPERATIONS.labels("cancel", "already_terminal").inc()
            async with self._session_factory() as db:
                user = await crud.get_user_by_id(db, warp.created_by_id)
            return CancelResult(warp=warp, user=user, already_terminal=True)

        try:
            await self._runpod.cancel_job(warp.job_id)
        except RunpodNotFoundError:
            # Nothing left to cancel remotely; treat as confirmed terminal
            logger.warning(
                "warp_cancel_job_missing", warp_id=warp.id, job_id=warp.job_id
            )
            return await self._mark_cancelled(warp.id, confirmed=True)
        except RunpodError as e:
            logger.error(
                "warp_cancel_failed",
                user_id=user_id,
                warp_id=warp.id,
                job_id=warp.job_id,
                error=str(e),
            )
            WARP_OPERATIONS.labels("cancel", "remote_error").inc()
            raise RemoteJobError(
                f"Failed to cancel RunPod job {warp.job_id}: {e}", warp_id=warp.id
            ) from e

        return await self._mark_cancelled(warp.id, confirmed=False)

    async def retire_legacy_pod(self, warp: Warp) -> CancelResult:
        """Terminate a pre-serverless pod and bill its ready-to-end time."""
        if warp.pod_status != PodStatus.RUNNING.value or not warp.pod_id:
            async with self._session_factory() as db:
                user = await crud.get_user_by_id(db, warp.created_by_id)
            return CancelResult(warp=warp, user=user, already_terminal=True)

        try:
            await self._runpod.terminate_pod(warp.pod_id)
        except RunpodNotFoundError:
            logger.warning("legacy_pod_already_gone", warp_id=warp.id, pod_id=warp.pod_id)
        except RunpodError as e:
            logger.error(
                "legacy_pod_terminate_failed",
                warp_id=warp.id,
                pod_id=warp.pod_id,
                error=str(e),
            )
            raise RemoteJobError(
                f"Failed to terminate RunPod pod {warp.pod_id}: {e}", warp_id=warp.id
            ) from e

        now = self._clock()
        async with self._session_factory.begin() as db:
            locked = await self._lock_warp(db, warp.id)
            if locked.pod_status != PodStatus.RUNNING.value:
                user = await crud.get_user_by_id(db, locked.created_by_id)
                return CancelResult(warp=locked, user=user, already_terminal=True)

            locked.pod_status = PodStatus.ENDED.value
            locked.pod_ended_at = now
            locked.updated_at = now
            if locked.pod_ready_at is not None:
                user = await self._settle_in_tx(db, locked, locked.pod_ready_at, now)
            else:
                user = await crud.get_user_by_id(db, locked.created_by_id)

        logger.info("legacy_pod_retired", warp_id=locked.id, pod_id=locked.pod_id)
        WARP_OPERATIONS.labels("retire_pod", "ended").inc()
        return CancelResult(warp=locked, user=user)

    async def finalize_balance(self, warp_id: str) -> User:
        """Finalize the owner's balance for an ended warp in its own transaction."""
        async with self._session_factory.begin() as db:
            warp = await self._lock_warp(db, warp_id)
            return await self._settle_in_tx(
                db, warp, warp.job_started_at, warp.job_ended_at
            )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _user_lock(self, user_id: str) -> asyncio.Lock:
        lock = self._create_locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._create_locks[user_id] = lock
        return lock

    @staticmethod
    def _require_ids(user_id: str, warp_id: str) -> None:
        if not user_id:
            raise WarpValidationError("User ID is required")
        if not warp_id:
            raise WarpValidationError("Warp ID is required")

    async def _lock_warp(self, db: AsyncSession, warp_id: str) -> Warp:
        warp = await crud.get_warp_for_update(db, warp_id)
        if warp is None:
            raise WarpNotFoundError("Warp not found", warp_id=warp_id)
        return warp

    async def _abandon_job(self, job_id: str) -> None:
        """Best-effort cancel of a job whose local record could not be written."""
        try:
            await self._runpod.cancel_job(job_id)
            logger.warning("orphan_job_cancelled", job_id=job_id)
        except RunpodError as e:
            logger.error("orphan_job_cancel_failed", job_id=job_id, error=str(e))

    async def _apply_report(self, warp_id: str, report: JobStatusReport) -> Warp:
        now = self._clock()
        async with self._session_factory.begin() as db:
            warp = await self._lock_warp(db, warp_id)
            if warp.runpod_confirmed_terminal:
                return warp

            changes = self._diff_report(warp, report, now)
            if not changes:
                return warp

            for field, value in changes.items():
                setattr(warp, field, value)
            warp.updated_at = now

            if (
                changes.get("runpod_confirmed_terminal")
                and warp.job_started_at is not None
                and warp.job_ended_at is not None
            ):
                await self._settle_in_tx(
                    db, warp, warp.job_started_at, warp.job_ended_at
                )

        logger.info(
            "warp_synced",
            warp_id=warp_id,
            job_id=warp.job_id,
            changed=sorted(changes),
            status=warp.job_status.value if warp.job_status else None,
        )
        WARP_OPERATIONS.labels("sync", "updated").inc()
        return warp

    def _diff_report(
        self, warp: Warp, report: JobStatusReport, now: datetime
    ) -> Dict[str, Any]:
        """Fields of warp that RunPod's report changes."""
        changes: Dict[str, Any] = {}

        status = JobStatus.parse(report.status)
        if status is None:
            if report.status:
                logger.warning(
                    "warp_unknown_remote_status",
                    warp_id=warp.id,
                    job_id=warp.job_id,
                    status=report.status,
                )
            status = warp.job_status

        if status is not None and status != warp.job_status:
            changes["job_status"] = status
        if report.worker_id and report.worker_id != warp.worker_id:
            changes["worker_id"] = report.worker_id

        started_at = ensure_aware(warp.job_started_at)
        if status == JobStatus.IN_PROGRESS and started_at is None:
            started_at = now - timedelta(seconds=report.delay_seconds or 0.0)
            changes["job_started_at"] = started_at

        if status is not None and status.is_terminal:
            if warp.job_ended_at is None:
                if started_at is not None and report.execution_seconds is not None:
                    ended_at = started_at + timedelta(seconds=report.execution_seconds)
                else:
                    ended_at = now
                if started_at is not None:
                    ended_at = max(started_at, ended_at)
                changes["job_ended_at"] = ended_at
            changes["runpod_confirmed_terminal"] = True
        elif (
            status is not None
            and warp.job_status is not None
            and warp.job_status.is_terminal
            and warp.job_ended_at is not None
        ):
            # RunPod still runs a job we marked ended; reopen it
            changes["job_ended_at"] = None

        return changes

    async def _confirm_terminal(self, warp_id: str) -> Warp:
        now = self._clock()
        async with self._session_factory.begin() as db:
            warp = await self._lock_warp(db, warp_id)
            if warp.runpod_confirmed_terminal:
                return warp
            warp.runpod_confirmed_terminal = True
            warp.updated_at = now
            if warp.job_started_at is not None and warp.job_ended_at is not None:
                await self._settle_in_tx(
                    db, warp, warp.job_started_at, warp.job_ended_at
                )
        WARP_OPERATIONS.labels("sync", "confirmed_missing").inc()
        return warp

    async def _mark_cancelled(self, warp_id: str, confirmed: bool) -> CancelResult:
        now = self._clock()
        async with self._session_factory.begin() as db:
            warp = await self._lock_warp(db, warp_id)
            if warp.is_terminal:
                # A concurrent sync finished the warp first
                user = await crud.get_user_by_id(db, warp.created_by_id)
                WARP_OPERATIONS.labels("cancel", "already_terminal").inc()
                return CancelResult(warp=warp, user=user, already_terminal=True)

            warp.job_status = JobStatus.CANCELLED
            warp.job_ended_at = now
            warp.updated_at = now
            if confirmed:
                warp.runpod_confirmed_terminal = True

            if warp.job_started_at is not None:
                user = await self._settle_in_tx(db, warp, warp.job_started_at, now)
            else:
                user = await crud.get_user_by_id(db, warp.created_by_id)

        logger.info(
            "warp_cancelled",
            warp_id=warp.id,
            job_id=warp.job_id,
            confirmed=confirmed,
            time_balance=user.time_balance if user else None,
        )
        WARP_OPERATIONS.labels("cancel", "cancelled").inc()
        return CancelResult(warp=warp, user=user)

    async def _fail_without_job(self, warp_id: str) -> CancelResult:
        """Close a warp whose job was never created; nothing ran, nothing is billed."""
        now = self._clock()
        async with self._session_factory.begin() as db:
            warp = await self._lock_warp(db, warp_id)
            if warp.is_terminal and warp.runpod_confirmed_terminal:
                user = await crud.get_user_by_id(db, warp.created_by_id)
                return CancelResult(warp=warp, user=user, already_terminal=True)

            warp.job_status = JobStatus.FAILED
            warp.job_ended_at = now
            warp.runpod_confirmed_terminal = True
            warp.updated_at = now
            user = await crud.get_user_by_id(db, warp.created_by_id)

        logger.warning("warp_failed_without_job", warp_id=warp_id)
        WARP_OPERATIONS.labels("cancel", "failed_without_job").inc()
        return CancelResult(warp=warp, user=user)

    async def _settle_in_tx(
        self,
        db: AsyncSession,
        warp: Warp,
        started_at: Optional[datetime],
        ended_at: Optional[datetime],
    ) -> User:
        """Finalize the owner's balance inside the caller's transaction.

        The balance is re-read under a row lock immediately before the
        write; the warp's billed_seconds ledger caps the charge at the
        seconds not yet billed.
        """
        user = await crud.get_user_for_update(db, warp.created_by_id)
        if user is None:
            raise WarpNotFoundError(
                f"User {warp.created_by_id} not found", warp_id=warp.id
            )

        settlement = finalize_time_balance(
            user.time_balance,
            started_at,
            ended_at,
            already_billed=warp.billed_seconds or 0,
            warp_id=warp.id,
        )
        if settlement.changed:
            user.time_balance = settlement.time_balance
            warp.billed_seconds = settlement.billed_seconds
            BALANCE_SECONDS_CHARGED.inc(settlement.charged_seconds)
            logger.info(
                "warp_balance_finalized",
                warp_id=warp.id,
                user_id=user.id,
                charged_seconds=settlement.charged_seconds,
                time_balance=settlement.time_balance,
            )
        return user
