"""
Phoenix Loop Tests
==================
End-to-end over in-memory collaborators.

Covers:
    - Failed build → completed session (branch, commit, rebuild, telemetry)
    - Rejections before any session exists (no errors, network, disabled)
    - Retry back-edge after a failed repair
    - Circuit breaker trip fails the session
    - Retry budget exhaustion
    - Operator cancel (also before the first step), cleanup, stats, pull requests
    - A second session stays pending behind the active repair
    - A breaker trip from outside fails running and pending sessions
    - Unexpected exceptions fail the session instead of leaking

The AI is a fake that streams canned answers; retries never sleep.
"""
import asyncio
import time
from unittest.mock import AsyncMock

import pytest

from selfheal.agents.auto_commit import AutoCommitService
from selfheal.agents.circuit_breaker import CircuitBreaker
from selfheal.agents.phoenix_loop import PhoenixLoop
from selfheal.agents.repair_orchestrator import RepairOrchestrator
from selfheal.core.config import AutoCommitConfig, CircuitBreakerConfig, PhoenixConfig, RepairConfig
from selfheal.core.exceptions import NoRepairableErrorError, PhoenixDisabledError, SessionTerminalError
from selfheal.integrations.ci import InMemoryCI
from selfheal.integrations.vcs import InMemoryVCS
from selfheal.models.build_error import BuildContext
from selfheal.models.telemetry_event import (
    CIRCUIT_BREAKER_TRIPPED,
    CRASH_REPAIRED,
    REPAIR_FAILED,
    REPAIR_REJECTED,
)
from selfheal.patching.patch_engine import PatchEngine
from selfheal.services.telemetry import InMemoryTelemetrySink

APP = "function App() {\n  return items.map(i => i);\n}\n"

GOOD_ANSWER = (
    "<thinking>items may be undefined</thinking>\n"
    '<file path="src/App.js" type="patch">'
    "<search>  return items.map(i => i);</search>"
    "<replace>  return (items || []).map(i => i);</replace>"
    "</file>"
)

LOGS = [
    "> npm run build",
    "TypeError: Cannot read properties of undefined (reading 'map')",
]

OTHER_LOGS = [
    "> npm run build",
    "> next build",
    "ReferenceError: config is not defined",
]


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------
class FakeAI:
    """Streams queued answers; an empty queue yields an empty answer."""

    def __init__(self, *answers):
        self.answers = list(answers)
        self.prompts = []

    async def generate_stream(self, prompt):
        self.prompts.append(prompt)
        answer = self.answers.pop(0) if self.answers else ""
        for i in range(0, len(answer), 11):
            await asyncio.sleep(0)
            yield answer[i:i + 11]


class BlockingAI(FakeAI):
    def __init__(self, *answers):
        super().__init__(*answers)
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def generate_stream(self, prompt):
        self.started.set()
        await self.release.wait()
        async for chunk in super().generate_stream(prompt):
            yield chunk


class CrashingAI:
    async def generate_stream(self, prompt):
        raise RuntimeError("provider SDK bug")
        yield ""


class FakeClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _make_config(**overrides):
    values = dict(
        enabled=True,
        auto_retry=True,
        max_retries=3,
        retry_delay_seconds=0,
        open_pull_requests=False,
        session_ttl_seconds=24 * 60 * 60,
        circuit_breaker=CircuitBreakerConfig(),
        repair=RepairConfig(overflow_policy="drop", max_patch_reprompts=1),
        commit=AutoCommitConfig(branch_prefix="phoenix/fix", base_branch="main"),
    )
    values.update(overrides)
    return PhoenixConfig(**values)


def _make_loop(ai, config=None, sleep=None, clock=None):
    config = config or _make_config()
    telemetry = InMemoryTelemetrySink()
    vcs = InMemoryVCS({"src/App.js": APP})
    ci = InMemoryCI()
    orchestrator = RepairOrchestrator(
        CircuitBreaker(config.circuit_breaker), PatchEngine(), config.repair, telemetry=telemetry,
    )
    auto_commit = AutoCommitService(vcs, ci, config.commit, telemetry=telemetry)
    extra = {}
    if sleep is not None:
        extra["sleep"] = sleep
    if clock is not None:
        extra["clock"] = clock
    loop = PhoenixLoop(orchestrator, auto_commit, ai, config, telemetry=telemetry, **extra)
    return loop, vcs, ci, telemetry


def _make_context():
    return BuildContext(command="npm run build", exit_code=1, files={"src/App.js": APP})


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------
def test_failed_build_is_repaired_end_to_end():
    async def run_test():
        loop, vcs, ci, telemetry = _make_loop(FakeAI(GOOD_ANSWER))

        session = await loop.handle_build_failure("build-41", LOGS, _make_context())

        assert session.status == "completed"
        assert session.failure_reason is None
        assert session.branch.startswith("phoenix/fix/runtime/")
        assert session.commit == "commit1"
        assert session.patches_count == 1
        assert session.build_url == "memory://builds/build-1"
        assert ci.triggered == [session.branch]
        assert vcs.branches[session.branch]["src/App.js"][0] == APP.replace("items.map", "(items || []).map")
        assert "AI diagnosis: items may be undefined" in session.logs
        assert session.logs[-1] == "Session completed"

        repaired = telemetry.of_type(CRASH_REPAIRED)
        assert len(repaired) == 1
        assert repaired[0].session_id == session.id

        stats = loop.stats()
        assert (stats.total_sessions, stats.successful_repairs, stats.failed_repairs) == (1, 1, 0)
        assert stats.success_rate == 100.0
        assert stats.active_sessions == 0

    asyncio.run(run_test())


def test_pull_request_opened_when_configured():
    async def run_test():
        loop, vcs, _, _ = _make_loop(FakeAI(GOOD_ANSWER), _make_config(open_pull_requests=True))

        session = await loop.handle_build_failure("build-1", LOGS, _make_context())

        assert session.status == "completed"
        assert session.pr_url == "memory://pulls/1"
        assert vcs.pull_requests[0]["branch"] == session.branch

    asyncio.run(run_test())


# ---------------------------------------------------------------------------
# Rejections
# ---------------------------------------------------------------------------
def test_clean_log_is_rejected_without_session():
    async def run_test():
        loop, _, _, telemetry = _make_loop(FakeAI(GOOD_ANSWER))

        with pytest.raises(NoRepairableErrorError, match="no build errors detected"):
            await loop.handle_build_failure("build-1", ["compiled successfully"], _make_context())

        assert loop.all_sessions() == []
        assert len(telemetry.of_type(REPAIR_REJECTED)) == 1

    asyncio.run(run_test())


def test_network_error_is_rejected_without_session():
    async def run_test():
        ai = FakeAI(GOOD_ANSWER)
        loop, _, _, telemetry = _make_loop(ai)

        with pytest.raises(NoRepairableErrorError, match="network error is not auto-repairable"):
            await loop.handle_build_failure(
                "build-1", ["Error: connect ECONNREFUSED 127.0.0.1:5432"], _make_context(),
            )

        assert loop.all_sessions() == []
        assert ai.prompts == []
        rejected = telemetry.of_type(REPAIR_REJECTED)
        assert rejected[0].metadata["error_type"] == "network"

    asyncio.run(run_test())


def test_disabled_loop_refuses_work():
    async def run_test():
        loop, _, _, _ = _make_loop(FakeAI(GOOD_ANSWER))
        loop.set_enabled(False)
        assert not loop.enabled

        with pytest.raises(PhoenixDisabledError):
            await loop.handle_build_failure("build-1", LOGS, _make_context())

    asyncio.run(run_test())


# ---------------------------------------------------------------------------
# Retry + circuit breaker
# ---------------------------------------------------------------------------
def test_failed_repair_is_retried():
    async def run_test():
        sleep = AsyncMock()
        loop, vcs, _, _ = _make_loop(FakeAI("", GOOD_ANSWER), _make_config(retry_delay_seconds=2), sleep=sleep)

        session = await loop.handle_build_failure("build-1", LOGS, _make_context())

        assert session.status == "completed"
        assert session.retry_count == 1
        sleep.assert_awaited_once_with(2)
        # The fix branch is created once per session
        assert len([b for b in vcs.branches if b != "main"]) == 1
        assert any(line.startswith("Step failed: repairing: no applicable edits") for line in session.logs)

    asyncio.run(run_test())


def test_circuit_breaker_trip_fails_session():
    async def run_test():
        loop, _, _, telemetry = _make_loop(FakeAI())

        session = await loop.handle_build_failure("build-1", LOGS, _make_context())

        assert session.status == "failed"
        assert session.failure_reason.startswith("circuit breaker tripped: duplicate error")
        assert session.retry_count == 2
        assert len(telemetry.of_type(CIRCUIT_BREAKER_TRIPPED)) == 1

        stages = [e.metadata["stage"] for e in telemetry.of_type(REPAIR_FAILED)]
        assert stages.count("ai_repair") == 2
        assert stages.count("phoenix_loop") == 1
        assert loop.stats().failed_repairs == 1

    asyncio.run(run_test())


def test_retry_budget_exhausted():
    async def run_test():
        config = _make_config(
            max_retries=1,
            circuit_breaker=CircuitBreakerConfig(max_duplicate_attempts=10),
        )
        ai = FakeAI()
        loop, _, _, _ = _make_loop(ai, config)

        session = await loop.handle_build_failure("build-1", LOGS, _make_context())

        assert session.status == "failed"
        assert session.failure_reason == "repairing: no applicable edits"
        assert session.retry_count == 1
        assert len(ai.prompts) == 2

    asyncio.run(run_test())


def test_auto_retry_off_fails_on_first_error():
    async def run_test():
        loop, _, _, _ = _make_loop(FakeAI(), _make_config(auto_retry=False))

        session = await loop.handle_build_failure("build-1", LOGS, _make_context())

        assert session.status == "failed"
        assert session.retry_count == 0

    asyncio.run(run_test())


def test_unexpected_exception_fails_session():
    async def run_test():
        loop, _, _, _ = _make_loop(CrashingAI())

        session = await loop.handle_build_failure("build-1", LOGS, _make_context())

        assert session.status == "failed"
        assert session.failure_reason == "unexpected error: provider SDK bug"
        assert not loop.orchestrator.is_repairing

    asyncio.run(run_test())


# ---------------------------------------------------------------------------
# Operator controls
# ---------------------------------------------------------------------------
def test_cancel_running_session():
    async def run_test():
        ai = BlockingAI(GOOD_ANSWER)
        loop, _, ci, telemetry = _make_loop(ai)

        session = loop.start_session("build-1", LOGS, _make_context())
        await ai.started.wait()
        assert session.status == "repairing"
        assert loop.active_sessions() == [session]

        assert loop.cancel_session(session.id) is session
        assert session.status == "failed"
        assert session.failure_reason == "cancelled"

        await asyncio.sleep(0.05)
        assert loop.active_sessions() == []
        assert ci.triggered == []
        assert not loop.orchestrator.is_repairing
        assert len([e for e in telemetry.of_type(REPAIR_FAILED) if e.session_id == session.id]) == 1

        # Cancelling again is a no-op
        assert loop.cancel_session(session.id).failure_reason == "cancelled"
        assert loop.cancel_session("phoenix_unknown") is None

    asyncio.run(run_test())


def test_cancel_before_first_step_returns_failed_session():
    async def run_test():
        ai = FakeAI(GOOD_ANSWER)
        loop, _, ci, _ = _make_loop(ai)

        outer = asyncio.create_task(loop.handle_build_failure("build-1", LOGS, _make_context()))
        await asyncio.sleep(0)
        pending = loop.all_sessions()[0]
        assert pending.status == "detecting"
        loop.cancel_session(pending.id)

        session = await outer

        assert session is pending
        assert session.status == "failed"
        assert session.failure_reason == "cancelled"
        assert ai.prompts == []
        assert ci.triggered == []
        assert loop.active_sessions() == []

    asyncio.run(run_test())


def test_finished_session_is_sealed():
    async def run_test():
        loop, _, _, _ = _make_loop(FakeAI(GOOD_ANSWER))
        session = await loop.handle_build_failure("build-1", LOGS, _make_context())

        with pytest.raises(SessionTerminalError):
            session.log("too late")
        assert loop.get_session(session.id) is session

    asyncio.run(run_test())


def test_cleanup_old_sessions():
    async def run_test():
        clock = FakeClock(time.time())
        loop, _, _, _ = _make_loop(FakeAI(GOOD_ANSWER), clock=clock)
        await loop.handle_build_failure("build-1", LOGS, _make_context())

        assert loop.cleanup_old_sessions() == 0
        clock.now += 2 * 24 * 60 * 60
        assert loop.cleanup_old_sessions() == 1
        assert loop.all_sessions() == []

    asyncio.run(run_test())


def test_stats_before_any_session():
    loop, _, _, _ = _make_loop(FakeAI())
    stats = loop.stats()
    assert stats.total_sessions == 0
    assert stats.success_rate == 0.0


# ---------------------------------------------------------------------------
# Concurrent sessions
# ---------------------------------------------------------------------------
def test_second_session_waits_for_the_active_repair():
    async def run_test():
        ai = BlockingAI(GOOD_ANSWER, GOOD_ANSWER)
        loop, vcs, ci, _ = _make_loop(ai)

        first_task = asyncio.create_task(loop.handle_build_failure("build-1", LOGS, _make_context()))
        await ai.started.wait()
        second_task = asyncio.create_task(loop.handle_build_failure("build-2", OTHER_LOGS, _make_context()))
        await asyncio.sleep(0.05)

        second = next(s for s in loop.all_sessions() if s.build_id == "build-2")
        assert second.status == "repairing"
        assert second.retry_count == 0
        assert "Repair pending: repair already in progress" in second.logs
        assert len(loop.active_sessions()) == 2

        ai.release.set()
        first, second = await asyncio.gather(first_task, second_task)

        assert first.status == "completed"
        assert second.status == "completed"
        assert second.retry_count == 0
        assert not any(line.startswith("Step failed") for line in second.logs)
        assert first.branch != second.branch
        assert sorted(ci.triggered) == sorted([first.branch, second.branch])
        assert len(ai.prompts) == 2
        assert loop.stats().successful_repairs == 2

    asyncio.run(run_test())


def test_breaker_trip_interrupts_running_and_pending_sessions():
    async def run_test():
        ai = BlockingAI(GOOD_ANSWER, GOOD_ANSWER)
        loop, _, ci, telemetry = _make_loop(ai)

        first_task = asyncio.create_task(loop.handle_build_failure("build-1", LOGS, _make_context()))
        await ai.started.wait()
        second_task = asyncio.create_task(loop.handle_build_failure("build-2", OTHER_LOGS, _make_context()))
        await asyncio.sleep(0.05)
        assert loop.orchestrator.is_repairing

        # Trip from outside either session: same fingerprint as the running repair
        running = next(s for s in loop.all_sessions() if s.build_id == "build-1")
        breaker = loop.orchestrator.circuit_breaker
        while not breaker.stats().tripped:
            breaker.should_attempt_repair(running.error)

        first, second = await asyncio.gather(first_task, second_task)
        await asyncio.sleep(0.05)

        for session in (first, second):
            assert session.status == "failed"
            assert session.failure_reason.startswith("circuit breaker tripped: duplicate error")
        assert not loop.orchestrator.is_repairing
        assert loop.active_sessions() == []
        assert ci.triggered == []
        assert ai.prompts == []
        assert len(telemetry.of_type(CIRCUIT_BREAKER_TRIPPED)) == 1

        # While tripped, a new session fails on the blocked repair
        ai.release.set()
        third = await loop.handle_build_failure("build-3", LOGS, _make_context())
        assert third.status == "failed"
        assert third.failure_reason.startswith("circuit breaker tripped: Circuit breaker is tripped")
        assert third.retry_count == 0
        assert ci.triggered == []

    asyncio.run(run_test())
