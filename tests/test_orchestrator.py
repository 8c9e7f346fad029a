"""Run orchestration: isolation of tenant failures, status rules, cancellation, refresh."""

from __future__ import annotations

import asyncio
from datetime import date

import pytest

from conftest import FakeAdapter, MemoryRunTracker, StaticScope, make_tenant, wait_until
from scripts.school_sync.errors import UpstreamError
from scripts.school_sync.models import (
    RUN_CANCELLED,
    RUN_COMPLETED,
    RUN_FAILED,
    RUN_PENDING,
    SCHOOL_COMPLETED,
    SCHOOL_FAILED,
    SCHOOL_SKIPPED,
    SyncOptions,
    SyncScope,
)
from scripts.school_sync.orchestrator import (
    SyncOrchestrator,
    TenantOutcome,
    decide_run_status,
    summarize_errors,
)
from scripts.school_sync.refresh import RefreshPipeline
from scripts.school_sync.sources.base import MODE_SINGLE, Mapped, StepDefinition
from scripts.school_sync.tables import upsert

ITEMS = upsert("test.items", ("source", "config_id", "step", "n"), ("source", "config_id", "step", "n"))


def _store(step_name: str):
    async def transform(ctx, records):
        rows = [(ctx.tenant.source, ctx.tenant.config_id, step_name, r["n"]) for r in records]
        return Mapped().add(ITEMS, rows)
    return transform


STEPS = [
    StepDefinition("roster", "/roster", _store("roster"), mode=MODE_SINGLE, page_size=None),
    StepDefinition("attendance", "/attendance", _store("attendance"), mode=MODE_SINGLE, page_size=None),
]


class ScriptedHttp:
    """Per-config behaviour: an exception to raise or an async handler."""

    def __init__(self, behaviour=None) -> None:
        self.behaviour = behaviour or {}
        self.calls: list[tuple[int, str]] = []

    async def execute(self, tenant, request):
        self.calls.append((tenant.config_id, request.path))
        action = self.behaviour.get(tenant.config_id)
        if isinstance(action, Exception):
            raise action
        if action is not None:
            return await action(request)
        return [{"n": 1}, {"n": 2}]

    def close(self) -> None:
        pass


def _orchestrator(sync_config, db, tracker, tenants, http, refresh=None) -> SyncOrchestrator:
    adapters = {"nex": FakeAdapter("nex", STEPS), "mb": FakeAdapter("mb", STEPS)}
    return SyncOrchestrator(
        sync_config, db, StaticScope(tenants),
        tracker=tracker, adapters=adapters, http=http, refresh=refresh,
    )


def _tenants(n: int):
    return [make_tenant(i, school_id=f"S{i}") for i in range(1, n + 1)]


# ---------------------------------------------------------------------------
# status rules
# ---------------------------------------------------------------------------


class TestRunStatusRules:
    def test_any_skip_means_cancelled(self) -> None:
        outcomes = [TenantOutcome(make_tenant(1), SCHOOL_COMPLETED), TenantOutcome(make_tenant(2), SCHOOL_SKIPPED)]
        assert decide_run_status(outcomes) == RUN_CANCELLED

    def test_all_failed_means_failed(self) -> None:
        outcomes = [TenantOutcome(make_tenant(i), SCHOOL_FAILED, "x") for i in (1, 2)]
        assert decide_run_status(outcomes) == RUN_FAILED

    def test_partial_failure_still_completed(self) -> None:
        outcomes = [TenantOutcome(make_tenant(1), SCHOOL_FAILED, "x"), TenantOutcome(make_tenant(2), SCHOOL_COMPLETED)]
        assert decide_run_status(outcomes) == RUN_COMPLETED

    def test_no_tenants_is_completed(self) -> None:
        assert decide_run_status([]) == RUN_COMPLETED

    def test_error_summary_keeps_first_five(self) -> None:
        outcomes = [TenantOutcome(make_tenant(i), SCHOOL_FAILED, f"err{i}") for i in range(1, 8)]
        summary = summarize_errors(outcomes)
        assert summary.split("; ") == [f"School {i} (nex): err{i}" for i in range(1, 6)]

    def test_no_failures_no_summary(self) -> None:
        assert summarize_errors([TenantOutcome(make_tenant(1), SCHOOL_COMPLETED)]) is None


# ---------------------------------------------------------------------------
# run
# ---------------------------------------------------------------------------


class TestRun:
    @pytest.mark.asyncio
    async def test_one_failing_tenant_does_not_affect_siblings(self, sync_config, db, tracker) -> None:
        http = ScriptedHttp({3: UpstreamError(500, "boom")})
        orch = _orchestrator(sync_config, db, tracker, _tenants(5), http)

        result = await orch.run(SyncScope(all=True), SyncOptions(academic_year="2024"))

        assert result.status == RUN_COMPLETED
        assert (result.total_schools, result.schools_succeeded, result.schools_failed) == (5, 4, 1)
        assert result.error_summary.startswith("School 3 (nex): HTTP 500")
        assert tracker.statuses(result.run_id) == {
            1: SCHOOL_COMPLETED, 2: SCHOOL_COMPLETED, 3: SCHOOL_FAILED,
            4: SCHOOL_COMPLETED, 5: SCHOOL_COMPLETED,
        }
        # two steps x two records for each of the four healthy tenants
        assert len(db.rows("test.items")) == 16
        run = tracker.runs[result.run_id]
        assert run["status"] == RUN_COMPLETED
        assert run["schools_succeeded"] == 4

    @pytest.mark.asyncio
    async def test_all_failing_marks_run_failed(self, sync_config, db, tracker) -> None:
        http = ScriptedHttp({i: UpstreamError(503) for i in (1, 2)})
        result = await _orchestrator(sync_config, db, tracker, _tenants(2), http).run(SyncScope(all=True))
        assert result.status == RUN_FAILED
        assert tracker.runs[result.run_id]["status"] == RUN_FAILED

    @pytest.mark.asyncio
    async def test_zero_tenants(self, sync_config, db, tracker) -> None:
        result = await _orchestrator(sync_config, db, tracker, [], ScriptedHttp()).run(SyncScope(node_ids=["n1"]))
        assert result.status == RUN_COMPLETED
        assert result.total_schools == 0
        assert tracker.school_rows(result.run_id) == []

    @pytest.mark.asyncio
    async def test_tenants_without_school_id_are_excluded(self, sync_config, db, tracker) -> None:
        tenants = [make_tenant(1), make_tenant(2, school_id=None)]
        http = ScriptedHttp()
        result = await _orchestrator(sync_config, db, tracker, tenants, http).run(SyncScope(all=True))
        assert result.total_schools == 1
        assert list(tracker.statuses(result.run_id)) == [1]
        assert {cid for cid, _ in http.calls} == {1}

    @pytest.mark.asyncio
    async def test_steps_follow_endpoint_filter(self, sync_config, db, tracker) -> None:
        http = ScriptedHttp()
        orch = _orchestrator(sync_config, db, tracker, _tenants(1), http)
        await orch.run(SyncScope(all=True), SyncOptions(endpoints_nex=["attendance"]))
        assert http.calls == [(1, "/attendance")]

    @pytest.mark.asyncio
    async def test_unknown_endpoint_fails_the_school(self, sync_config, db, tracker) -> None:
        orch = _orchestrator(sync_config, db, tracker, _tenants(1), ScriptedHttp())
        result = await orch.run(SyncScope(all=True), SyncOptions(endpoints_nex=["grades"]))
        assert result.status == RUN_FAILED
        assert "grades" in result.error_summary

    @pytest.mark.asyncio
    async def test_missing_academic_year_defaults_to_current(self, sync_config, db, tracker) -> None:
        result = await _orchestrator(sync_config, db, tracker, _tenants(1), ScriptedHttp()).run(SyncScope(all=True))
        assert tracker.runs[result.run_id]["academic_year"] == str(date.today().year)

    @pytest.mark.asyncio
    async def test_tracker_failure_marks_run_failed_and_raises(self, sync_config, db) -> None:
        class BrokenTracker(MemoryRunTracker):
            async def begin_run(self, run_id, total_schools):
                raise RuntimeError("tracker down")

        tracker = BrokenTracker()
        orch = _orchestrator(sync_config, db, tracker, _tenants(1), ScriptedHttp())
        with pytest.raises(RuntimeError):
            await orch.run(SyncScope(all=True))
        run = tracker.runs[1]
        assert run["status"] == RUN_FAILED
        assert run["error_summary"] == "tracker down"

    @pytest.mark.asyncio
    async def test_school_that_cannot_be_recorded_does_not_abandon_siblings(self, sync_config, db) -> None:
        class LossyTracker(MemoryRunTracker):
            async def fail_school(self, row_id, message, results=None):
                raise RuntimeError("tracker write lost")

        async def slow(request):
            await asyncio.sleep(0.05)
            return [{"n": 1}]

        tracker = LossyTracker()
        http = ScriptedHttp({1: UpstreamError(500, "boom"), 2: slow, 3: slow})
        result = await _orchestrator(sync_config, db, tracker, _tenants(3), http).run(SyncScope(all=True))

        assert result.status == RUN_COMPLETED
        assert (result.schools_succeeded, result.schools_failed) == (2, 1)
        assert result.error_summary == "School 1 (nex): tracker write lost"
        statuses = tracker.statuses(result.run_id)
        assert statuses[2] == statuses[3] == SCHOOL_COMPLETED
        assert tracker.runs[result.run_id]["status"] == RUN_COMPLETED

    @pytest.mark.asyncio
    async def test_result_as_dict(self, sync_config, db, tracker) -> None:
        result = await _orchestrator(sync_config, db, tracker, _tenants(1), ScriptedHttp()).run(SyncScope(all=True))
        assert result.as_dict() == {
            "runId": result.run_id,
            "status": RUN_COMPLETED,
            "totalSchools": 1,
            "schoolsSucceeded": 1,
            "schoolsFailed": 0,
            "errorSummary": None,
        }


# ---------------------------------------------------------------------------
# cancellation
# ---------------------------------------------------------------------------


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_skips_tenants_that_have_not_finished(self, sync_config, db, tracker) -> None:
        gate = asyncio.Event()
        waiting: list[int] = []

        async def blocked(request):
            if request.path == "/roster":
                waiting.append(1)
                await gate.wait()
            return [{"n": 1}]

        http = ScriptedHttp({3: blocked, 4: blocked, 5: blocked})
        orch = _orchestrator(sync_config, db, tracker, _tenants(5), http)

        run_id = await orch.start(SyncScope(all=True), SyncOptions(academic_year="2024"))
        task = orch.registry.task(run_id)
        assert tracker.runs[run_id]["status"] == RUN_PENDING

        def ready() -> bool:
            done = [s for s in tracker.statuses(run_id).values() if s == SCHOOL_COMPLETED]
            return len(waiting) == 3 and len(done) == 2

        await wait_until(ready)
        assert await orch.cancel(run_id) is True
        gate.set()
        result = await task

        assert result.status == RUN_CANCELLED
        assert (result.schools_succeeded, result.schools_failed) == (2, 0)
        assert tracker.statuses(run_id) == {
            1: SCHOOL_COMPLETED, 2: SCHOOL_COMPLETED,
            3: SCHOOL_SKIPPED, 4: SCHOOL_SKIPPED, 5: SCHOOL_SKIPPED,
        }
        assert tracker.runs[run_id]["status"] == RUN_CANCELLED
        # the blocked tenants never reached their second step
        assert not any(cid in (3, 4, 5) and path == "/attendance" for cid, path in http.calls)

        await asyncio.sleep(0)
        assert orch.registry.live_runs() == []

    @pytest.mark.asyncio
    async def test_store_cancellation_stops_a_live_run(self, sync_config, db, tracker) -> None:
        gate = asyncio.Event()
        waiting: list[int] = []

        async def blocked(request):
            if request.path == "/roster":
                waiting.append(1)
                await gate.wait()
            return [{"n": 1}]

        http = ScriptedHttp({2: blocked, 3: blocked})
        orch = _orchestrator(sync_config, db, tracker, _tenants(3), http)
        task = asyncio.create_task(orch.run(SyncScope(all=True), SyncOptions(academic_year="2024")))

        def ready() -> bool:
            return len(waiting) == 2 and SCHOOL_COMPLETED in tracker.statuses(1).values()

        await wait_until(ready)
        assert await tracker.cancel_offline(1) is True
        gate.set()
        result = await task

        assert result.status == RUN_CANCELLED
        assert tracker.runs[1]["status"] == RUN_CANCELLED
        assert tracker.runs[1]["error_summary"] == "Run cancelled"
        assert tracker.statuses(1) == {1: SCHOOL_COMPLETED, 2: SCHOOL_SKIPPED, 3: SCHOOL_SKIPPED}
        assert not any(cid in (2, 3) and path == "/attendance" for cid, path in http.calls)

    @pytest.mark.asyncio
    async def test_foreground_run_is_cancellable_while_live(self, sync_config, db, tracker) -> None:
        gate = asyncio.Event()

        async def blocked(request):
            await gate.wait()
            return [{"n": 1}]

        http = ScriptedHttp({1: blocked})
        orch = _orchestrator(sync_config, db, tracker, _tenants(1), http)
        task = asyncio.create_task(orch.run(SyncScope(all=True)))

        await wait_until(lambda: len(http.calls) == 1)
        run_id = next(iter(tracker.runs))
        assert orch.registry.live_runs() == [run_id]
        assert await orch.cancel(run_id) is True
        gate.set()
        result = await task

        assert result.status == RUN_CANCELLED
        assert tracker.statuses(run_id) == {1: SCHOOL_SKIPPED}
        assert orch.registry.live_runs() == []

    @pytest.mark.asyncio
    async def test_finished_run_keeps_cancelled_status(self, sync_config, db, tracker) -> None:
        run_id = await tracker.create_run("all", SyncOptions())
        await tracker.cancel_offline(run_id)
        assert await tracker.finish_run(run_id, RUN_COMPLETED, 1, 0) is False
        assert tracker.runs[run_id]["status"] == RUN_CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_run_not_live_here_goes_to_store(self, sync_config, db, tracker) -> None:
        orch = _orchestrator(sync_config, db, tracker, [], ScriptedHttp())
        run_id = await tracker.create_run("all", SyncOptions(), status=RUN_PENDING)
        assert await orch.cancel(run_id) is True
        assert tracker.runs[run_id]["status"] == RUN_CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_finished_run_is_refused(self, sync_config, db, tracker) -> None:
        orch = _orchestrator(sync_config, db, tracker, _tenants(1), ScriptedHttp())
        result = await orch.run(SyncScope(all=True))
        assert await orch.cancel(result.run_id) is False
        assert tracker.runs[result.run_id]["status"] == RUN_COMPLETED


# ---------------------------------------------------------------------------
# refresh
# ---------------------------------------------------------------------------


class TestRefresh:
    @pytest.mark.asyncio
    async def test_refresh_failure_never_fails_the_run(self, sync_config, db, tracker) -> None:
        db.fail_execute = lambda sql: "rp.second" in sql
        pipeline = RefreshPipeline(db, steps=("rp.first", "rp.second", "rp.third"))
        orch = _orchestrator(sync_config, db, tracker, _tenants(1), ScriptedHttp(), refresh=pipeline)

        result = await orch.run(SyncScope(all=True), SyncOptions(academic_year="2024", run_refresh=True))
        assert result.status == RUN_COMPLETED
        assert len(result.refreshes) == 1

        outcome = await result.refreshes[0].wait()
        assert outcome.ok is False
        assert outcome.failed_step == "rp.second"
        called = [sql for sql, _ in db.executed]
        assert any("rp.first" in sql for sql in called)
        assert not any("rp.third" in sql for sql in called)

    @pytest.mark.asyncio
    async def test_refresh_runs_with_school_and_year(self, sync_config, db, tracker) -> None:
        pipeline = RefreshPipeline(db, steps=("rp.only",))
        orch = _orchestrator(sync_config, db, tracker, _tenants(1), ScriptedHttp(), refresh=pipeline)

        result = await orch.run_and_refresh(
            SyncScope(all=True), SyncOptions(academic_year="2024", run_refresh=True, triggered_by="cli")
        )
        assert result.refreshes[0].done()
        outcome = await result.refreshes[0].wait()
        assert outcome.ok is True
        sql, params = db.executed[-1]
        assert sql == "CALL rp.only(%s, %s, %s, %s)"
        assert params == ("S1", "2024", outcome.job_run_id, "cli")

    @pytest.mark.asyncio
    async def test_no_refresh_unless_requested(self, sync_config, db, tracker) -> None:
        pipeline = RefreshPipeline(db, steps=("rp.only",))
        orch = _orchestrator(sync_config, db, tracker, _tenants(1), ScriptedHttp(), refresh=pipeline)
        result = await orch.run(SyncScope(all=True), SyncOptions(academic_year="2024"))
        assert result.refreshes == []

    @pytest.mark.asyncio
    async def test_blank_academic_year_rejected(self, db) -> None:
        with pytest.raises(ValueError):
            await RefreshPipeline(db).run("S1", "  ")
