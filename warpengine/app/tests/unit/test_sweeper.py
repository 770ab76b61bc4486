############################################################
#
# warpengine - Serverless GPU Session Broker and Billing
#
# test_sweeper.py: Unit tests for the reconciliation sweeper
#
############################################################

"""Unit tests for WarpSweeper.

The clock is fixed, so threshold boundaries are exact.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import update

from warpengine.app.core.clock import ensure_aware
from warpengine.app.core.warps.sweeper import CancelReason, WarpSweeper
from warpengine.app.db import crud
from warpengine.app.db.models import JobStatus, PodStatus, Warp


@pytest.fixture
def sweeper(settings, warp_engine, session_factory, clock) -> WarpSweeper:
    return WarpSweeper(settings, warp_engine, session_factory, clock=clock)


class TestCandidates:
    @pytest.mark.asyncio
    async def test_candidate_selection(self, session_factory, make_user, make_warp, clock):
        await make_user("user_1")
        active = await make_warp(job_id="j-active", job_status=JobStatus.PAUSED)
        no_status = await make_warp(job_id="j-none")
        unconfirmed = await make_warp(job_id="j-unconf", job_status=JobStatus.CANCELLED)
        await make_warp(job_id="j-conf", job_status=JobStatus.COMPLETED, runpod_confirmed_terminal=True)
        await make_warp(job_id="j-deleted", job_status=JobStatus.IN_PROGRESS, deleted_at=clock.now)
        await make_warp(job_id=None, job_status=JobStatus.IN_QUEUE)

        async with session_factory() as db:
            candidates = await crud.get_sweep_candidates(db)

        assert {w.id for w in candidates} == {active.id, no_status.id, unconfirmed.id}


class TestThresholds:
    @pytest.mark.asyncio
    async def test_stuck_in_queue_past_threshold_is_cancelled(
        self, sweeper, make_user, make_warp, runpod, clock, load_warp
    ):
        await make_user("user_1")
        warp = await make_warp(job_id="j-stuck", job_status=JobStatus.IN_QUEUE, created_at=clock.ago(1201))
        runpod.set_job("j-stuck", "IN_QUEUE")

        report = await sweeper.run_once()

        assert report.cancel_attempts == 1
        assert report.cancelled == 1
        assert runpod.cancel_calls == ["j-stuck"]
        assert (await load_warp(warp.id)).job_status == JobStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_queue_at_threshold_is_left_alone(self, sweeper, make_user, make_warp, runpod, clock):
        await make_user("user_1")
        await make_warp(job_id="j-q", job_status=JobStatus.PENDING, created_at=clock.ago(1200))
        runpod.set_job("j-q", "PENDING")

        report = await sweeper.run_once()

        assert report.healthy == 1
        assert report.cancel_attempts == 0
        assert runpod.cancel_calls == []

    @pytest.mark.asyncio
    async def test_inactive_running_warp_is_cancelled(
        self, sweeper, running_warp, session_factory, runpod, clock, load_user
    ):
        warp = await running_warp(elapsed=2000, time_balance=5000)
        async with session_factory.begin() as db:
            await crud.touch_warp(db, warp.id, clock.ago(601))

        report = await sweeper.run_once()

        assert report.cancelled == 1
        assert runpod.cancel_calls == ["job-run"]
        assert (await load_user("user_1")).time_balance == 3000

    @pytest.mark.asyncio
    async def test_recent_heartbeat_keeps_warp_running(
        self, sweeper, running_warp, session_factory, runpod, clock
    ):
        warp = await running_warp(elapsed=2000)
        async with session_factory.begin() as db:
            await crud.touch_warp(db, warp.id, clock.ago(600))

        report = await sweeper.run_once()

        assert report.healthy == 1
        assert runpod.cancel_calls == []

    @pytest.mark.asyncio
    async def test_paused_warp_never_triggers(self, sweeper, make_user, make_warp, runpod, clock):
        await make_user("user_1")
        await make_warp(
            job_id="j-p",
            job_status=JobStatus.PAUSED,
            created_at=clock.ago(10000),
            updated_at=clock.ago(10000),
        )
        runpod.set_job("j-p", "PAUSED")

        report = await sweeper.run_once()

        assert report.healthy == 1
        assert runpod.cancel_calls == []

    def test_cancel_reason_uses_post_sync_status(self, sweeper, clock):
        warp = Warp(
            job_status=JobStatus.IN_PROGRESS,
            created_at=clock.ago(5000),
            updated_at=clock.ago(10),
        )
        # Old creation time only matters while queued
        assert sweeper.cancel_reason(warp, False, clock.now) is None
        warp.job_status = JobStatus.IN_QUEUE
        assert sweeper.cancel_reason(warp, False, clock.now) is CancelReason.STUCK
        warp.job_status = JobStatus.IN_PROGRESS
        assert sweeper.cancel_reason(warp, True, clock.now) is CancelReason.DISCREPANCY


class TestReconciliation:
    @pytest.mark.asyncio
    async def test_discrepancy_recancels(
        self, sweeper, make_user, make_warp, runpod, clock, load_warp, load_user
    ):
        await make_user("user_1", time_balance=900)
        warp = await make_warp(
            job_id="j-zombie",
            job_status=JobStatus.CANCELLED,
            job_started_at=clock.ago(300),
            job_ended_at=clock.ago(200),
            billed_seconds=100,
            created_at=clock.ago(310),
            updated_at=clock.ago(200),
        )
        runpod.set_job("j-zombie", "IN_PROGRESS")

        report = await sweeper.run_once()

        assert report.cancel_attempts == 1
        assert report.cancelled == 1
        assert runpod.cancel_calls == ["j-zombie"]
        stored = await load_warp(warp.id)
        assert stored.job_status == JobStatus.CANCELLED
        assert ensure_aware(stored.job_ended_at) == clock.now
        assert stored.billed_seconds == 300
        assert (await load_user("user_1")).time_balance == 700

    @pytest.mark.asyncio
    async def test_terminal_remote_confirms_without_cancel(
        self, sweeper, running_warp, runpod, load_warp, load_user
    ):
        warp = await running_warp(elapsed=100, time_balance=1000)
        runpod.set_job("job-run", "COMPLETED", executionTime=100000)

        report = await sweeper.run_once()

        assert report.confirmed == 1
        assert report.cancel_attempts == 0
        assert (await load_warp(warp.id)).runpod_confirmed_terminal
        assert (await load_user("user_1")).time_balance == 900

    @pytest.mark.asyncio
    async def test_second_sweep_skips_confirmed(self, sweeper, running_warp, runpod):
        await running_warp()
        runpod.set_job("job-run", "FAILED")

        await sweeper.run_once()
        report = await sweeper.run_once()

        assert report.candidates == 0
        assert runpod.status_calls == ["job-run"]

    @pytest.mark.asyncio
    async def test_race_to_terminal_is_benign_skip(
        self, sweeper, make_user, make_warp, runpod, session_factory, clock
    ):
        await make_user("user_1")
        warp = await make_warp(job_id="j-race", job_status=JobStatus.IN_QUEUE, created_at=clock.ago(5000))
        runpod.set_job("j-race", "IN_QUEUE")

        async def job_finished(job_id):
            async with session_factory.begin() as db:
                await db.execute(
                    update(Warp)
                    .where(Warp.id == warp.id)
                    .values(job_status=JobStatus.COMPLETED, updated_at=clock.now)
                )

        runpod.on_cancel = job_finished

        report = await sweeper.run_once()

        assert report.cancel_attempts == 1
        assert report.skipped == 1
        assert report.errors == 0


class TestErrorIsolation:
    @pytest.mark.asyncio
    async def test_sync_failure_does_not_stop_sweep(
        self, sweeper, make_user, make_warp, runpod, clock, remote_error
    ):
        await make_user("user_1")
        await make_user("user_2")
        await make_warp("user_1", job_id="j-bad", job_status=JobStatus.IN_QUEUE, created_at=clock.ago(5000))
        await make_warp("user_2", job_id="j-good", job_status=JobStatus.IN_QUEUE, created_at=clock.ago(4000))
        runpod.set_job("j-good", "IN_QUEUE")
        runpod.status_errors["j-bad"] = remote_error

        report = await sweeper.run_once()

        assert report.candidates == 2
        assert report.sync_failed == 1
        assert report.cancelled == 1
        assert runpod.cancel_calls == ["j-good"]

    @pytest.mark.asyncio
    async def test_cancel_failure_is_counted(
        self, sweeper, make_user, make_warp, runpod, clock, remote_error, load_warp
    ):
        await make_user("user_1")
        warp = await make_warp(job_id="j-q", job_status=JobStatus.IN_QUEUE, created_at=clock.ago(5000))
        runpod.set_job("j-q", "IN_QUEUE")
        runpod.cancel_error = remote_error

        report = await sweeper.run_once()

        assert report.errors == 1
        assert report.cancelled == 0
        assert (await load_warp(warp.id)).job_status == JobStatus.IN_QUEUE

    @pytest.mark.asyncio
    async def test_unexpected_error_is_isolated(
        self, sweeper, warp_engine, make_user, make_warp, runpod, clock
    ):
        await make_user("user_1")
        await make_warp(job_id="j-1", job_status=JobStatus.IN_QUEUE, created_at=clock.ago(10))
        await make_warp(job_id="j-2", job_status=JobStatus.IN_QUEUE, created_at=clock.ago(5))
        runpod.set_job("j-2", "IN_QUEUE")
        real_sync = warp_engine.sync_warp
        calls = []

        async def flaky_sync(warp_id):
            calls.append(warp_id)
            if len(calls) == 1:
                raise RuntimeError("boom")
            return await real_sync(warp_id)

        warp_engine.sync_warp = flaky_sync

        report = await sweeper.run_once()

        assert report.errors == 1
        assert report.healthy == 1

    @pytest.mark.asyncio
    async def test_candidate_query_failure_aborts(self, sweeper, monkeypatch):
        monkeypatch.setattr(
            crud, "get_sweep_candidates", AsyncMock(side_effect=RuntimeError("db gone"))
        )

        with pytest.raises(RuntimeError):
            await sweeper.run_once()


class TestLegacyPods:
    @pytest.mark.asyncio
    async def test_stale_running_pod_is_retired(
        self, sweeper, make_user, make_warp, runpod, clock, load_warp, load_user
    ):
        await make_user("user_1", time_balance=1000)
        warp = await make_warp(
            pod_id="pod-old",
            pod_status=PodStatus.RUNNING.value,
            pod_ready_at=clock.ago(400),
            created_at=clock.ago(500),
            updated_at=clock.ago(301),
        )

        report = await sweeper.run_once()

        assert report.legacy_pods_retired == 1
        assert runpod.terminated_pods == ["pod-old"]
        stored = await load_warp(warp.id)
        assert stored.pod_status == PodStatus.ENDED.value
        assert ensure_aware(stored.pod_ended_at) == clock.now
        assert (await load_user("user_1")).time_balance == 600

    @pytest.mark.asyncio
    async def test_recent_pod_and_historical_rows_untouched(
        self, sweeper, make_user, make_warp, runpod, clock
    ):
        await make_user("user_1")
        await make_warp(pod_id="pod-live", pod_status=PodStatus.RUNNING.value, updated_at=clock.ago(60))
        await make_warp(pod_id="pod-done", pod_status=PodStatus.ENDED.value, updated_at=clock.ago(9999))
        await make_warp(pod_id="pod-pending", pod_status=PodStatus.PENDING.value, updated_at=clock.ago(9999))

        report = await sweeper.run_once()

        assert report.legacy_pods_retired == 0
        assert runpod.terminated_pods == []

    @pytest.mark.asyncio
    async def test_terminate_failure_is_counted(
        self, sweeper, make_user, make_warp, runpod, clock, remote_error, load_warp
    ):
        await make_user("user_1")
        warp = await make_warp(pod_id="pod-x", pod_status=PodStatus.RUNNING.value, updated_at=clock.ago(1000))
        runpod.terminate_error = remote_error

        report = await sweeper.run_once()

        assert report.errors == 1
        assert (await load_warp(warp.id)).pod_status == PodStatus.RUNNING.value


class TestLoop:
    @pytest.mark.asyncio
    async def test_start_and_stop(self, sweeper):
        await sweeper.start()
        assert sweeper.running

        await sweeper.stop()
        assert not sweeper.running

    @pytest.mark.asyncio
    async def test_sweep_on_startup_runs_immediately(
        self, settings, warp_engine, session_factory, clock
    ):
        settings = settings.model_copy(update={"sweep_on_startup": True, "sweep_interval": 3600})
        sweeper = WarpSweeper(settings, warp_engine, session_factory, clock=clock)

        await sweeper.start()
        for _ in range(50):
            if sweeper.last_report is not None:
                break
            await asyncio.sleep(0.02)
        await sweeper.stop()

        assert sweeper.last_report is not None
        assert sweeper.last_report.candidates == 0
