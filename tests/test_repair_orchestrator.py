"""
Repair Orchestrator Tests
=========================
Covers:
    - Streamed patch applied → succeeded outcome with post-image
    - Circuit breaker rejection → blocked, AI never contacted
    - Overflow policy "drop" → busy; wait_idle returns once the guard drops
    - Overflow policy "queue" → newest parked trigger wins, older one superseded
    - Search miss → "REPAIR NEEDED" re-prompt, then success
    - Re-prompt budget exhausted, no edits, AI timeout, provider error
    - Shell blocks reported, never executed

Fake AI providers stream canned answers in small chunks. No network.
"""
import asyncio

from selfheal.agents.circuit_breaker import CircuitBreaker
from selfheal.agents.repair_orchestrator import RepairOrchestrator
from selfheal.core.config import RepairConfig
from selfheal.core.exceptions import AIProviderError
from selfheal.models.build_error import BuildContext, BuildError
from selfheal.models.telemetry_event import REPAIR_FAILED
from selfheal.services.telemetry import InMemoryTelemetrySink

APP = "function App() {\n  return items.map(i => i);\n}\n"

GOOD_ANSWER = (
    "<thinking>items may be undefined</thinking>\n"
    '<file path="src/App.js" type="patch">'
    "<search>  return items.map(i => i);</search>"
    "<replace>  return (items || []).map(i => i);</replace>"
    "</file>"
)

MISSING_ANSWER = (
    '<file path="src/App.js" type="patch">'
    "<search>const nothing = here;</search>"
    "<replace>const something = there;</replace>"
    "</file>"
)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------
class FakeAI:
    """Streams the queued answers one per call, 7 characters at a time."""

    def __init__(self, *answers):
        self.answers = list(answers)
        self.prompts = []

    async def generate_stream(self, prompt):
        self.prompts.append(prompt)
        answer = self.answers.pop(0) if self.answers else ""
        for i in range(0, len(answer), 7):
            await asyncio.sleep(0)
            yield answer[i:i + 7]


class BlockingAI(FakeAI):
    """Waits for ``release`` before streaming."""

    def __init__(self, *answers):
        super().__init__(*answers)
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def generate_stream(self, prompt):
        self.started.set()
        await self.release.wait()
        async for chunk in super().generate_stream(prompt):
            yield chunk


class FailingAI:
    def __init__(self):
        self.prompts = []

    async def generate_stream(self, prompt):
        self.prompts.append(prompt)
        raise AIProviderError("quota exceeded")
        yield ""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _make_error(message="TypeError: Cannot read properties of undefined (reading 'map')", error_id="error_1_0"):
    return BuildError(id=error_id, type="runtime", severity="error", message=message, confidence=70)


def _make_context():
    return BuildContext(command="npm run build", exit_code=1, files={"src/App.js": APP})


def _make_orchestrator(config=None, telemetry=None):
    orchestrator = RepairOrchestrator(CircuitBreaker(), config=config or RepairConfig(), telemetry=telemetry)
    events = []
    orchestrator.on_event(lambda event_type, payload: events.append((event_type, payload)))
    return orchestrator, events


# ---------------------------------------------------------------------------
# Success path
# ---------------------------------------------------------------------------
def test_streamed_patch_succeeds():
    async def run_test():
        orchestrator, events = _make_orchestrator()
        context = _make_context()
        ai = FakeAI(GOOD_ANSWER)

        outcome = await orchestrator.trigger_repair(_make_error(), context, ai)

        assert outcome.succeeded
        assert outcome.files == {"src/App.js": "function App() {\n  return (items || []).map(i => i);\n}\n"}
        assert len(outcome.patches) == 1
        assert outcome.patches[0].file == "src/App.js"
        assert outcome.thinking == "items may be undefined"
        # Caller's file map is left alone
        assert context.files["src/App.js"] == APP

        kinds = [e[0] for e in events]
        assert kinds[0] == "started"
        assert "thinking" in kinds
        assert "file_progress" in kinds
        assert kinds[-1] == "succeeded"
        assert not orchestrator.is_repairing

    asyncio.run(run_test())


def test_shell_blocks_are_reported_only():
    async def run_test():
        orchestrator, events = _make_orchestrator()
        ai = FakeAI("<shell>rm -rf node_modules</shell>" + GOOD_ANSWER)

        outcome = await orchestrator.trigger_repair(_make_error(), _make_context(), ai)

        assert outcome.succeeded
        shells = [p for kind, p in events if kind == "shell" and p["complete"]]
        assert shells == [{"command": "rm -rf node_modules", "complete": True}]

    asyncio.run(run_test())


# ---------------------------------------------------------------------------
# Circuit breaker gate
# ---------------------------------------------------------------------------
def test_blocked_repair_never_contacts_ai():
    async def run_test():
        orchestrator, events = _make_orchestrator()
        error = _make_error()
        orchestrator.circuit_breaker.should_attempt_repair(error)
        orchestrator.circuit_breaker.should_attempt_repair(error)
        ai = FakeAI(GOOD_ANSWER)

        outcome = await orchestrator.trigger_repair(error, _make_context(), ai)

        assert outcome.status == "blocked"
        assert outcome.reason.startswith("Same error occurred 2 times")
        assert ai.prompts == []
        blocked = [p for kind, p in events if kind == "blocked"]
        assert blocked[0]["stats"]["tripped"] is True
        assert orchestrator.stats()["blocked"] == 1

    asyncio.run(run_test())


# ---------------------------------------------------------------------------
# Single flight
# ---------------------------------------------------------------------------
def test_drop_policy_returns_busy():
    async def run_test():
        orchestrator, _ = _make_orchestrator(RepairConfig(overflow_policy="drop"))
        ai = BlockingAI(GOOD_ANSWER)

        first = asyncio.create_task(orchestrator.trigger_repair(_make_error(), _make_context(), ai))
        await ai.started.wait()
        assert orchestrator.is_repairing

        second = await orchestrator.trigger_repair(_make_error("ReferenceError: x is not defined", "e2"),
                                                   _make_context(), ai)
        assert second.status == "busy"
        assert second.reason == "repair already in progress"

        ai.release.set()
        assert (await first).succeeded
        assert not orchestrator.is_repairing
        assert orchestrator.stats()["busy"] == 1

    asyncio.run(run_test())


def test_wait_idle_returns_after_active_repair():
    async def run_test():
        orchestrator, _ = _make_orchestrator(RepairConfig(overflow_policy="drop"))
        ai = BlockingAI(GOOD_ANSWER)
        await orchestrator.wait_idle()

        first = asyncio.create_task(orchestrator.trigger_repair(_make_error(), _make_context(), ai))
        await ai.started.wait()
        waiter = asyncio.create_task(orchestrator.wait_idle())
        await asyncio.sleep(0.01)
        assert not waiter.done()

        ai.release.set()
        await first
        await asyncio.wait_for(waiter, timeout=1)
        assert not orchestrator.is_repairing

    asyncio.run(run_test())


def test_queue_policy_keeps_only_newest_trigger():
    async def run_test():
        orchestrator, events = _make_orchestrator(RepairConfig(overflow_policy="queue"))
        ai = BlockingAI(GOOD_ANSWER, GOOD_ANSWER)

        first = asyncio.create_task(orchestrator.trigger_repair(_make_error(), _make_context(), ai))
        await ai.started.wait()

        second = asyncio.create_task(orchestrator.trigger_repair(
            _make_error("ReferenceError: a is not defined", "e2"), _make_context(), ai))
        for _ in range(3):
            await asyncio.sleep(0)
        third = asyncio.create_task(orchestrator.trigger_repair(
            _make_error("ReferenceError: b is not defined", "e3"), _make_context(), ai))

        superseded = await second
        assert superseded.status == "busy"
        assert superseded.reason == "superseded"

        ai.release.set()
        assert (await first).succeeded
        assert (await third).succeeded
        assert len(ai.prompts) == 2
        assert not orchestrator.is_repairing
        assert [p["error_id"] for kind, p in events if kind == "queued"] == ["e2", "e3"]

    asyncio.run(run_test())


# ---------------------------------------------------------------------------
# Re-prompt + failures
# ---------------------------------------------------------------------------
def test_search_miss_triggers_reprompt():
    async def run_test():
        orchestrator, events = _make_orchestrator(RepairConfig(max_patch_reprompts=1))
        ai = FakeAI(MISSING_ANSWER, GOOD_ANSWER)

        outcome = await orchestrator.trigger_repair(_make_error(), _make_context(), ai)

        assert outcome.succeeded
        assert len(ai.prompts) == 2
        assert ai.prompts[1].startswith("REPAIR NEEDED: 1 of your patches could not be applied.")
        assert "const nothing = here;" in ai.prompts[1]
        assert APP in ai.prompts[1]
        assert [p["attempt"] for kind, p in events if kind == "repair_needed"] == [1]

    asyncio.run(run_test())


def test_reprompt_budget_exhausted():
    async def run_test():
        telemetry = InMemoryTelemetrySink()
        orchestrator, _ = _make_orchestrator(RepairConfig(max_patch_reprompts=1), telemetry=telemetry)
        ai = FakeAI(MISSING_ANSWER, MISSING_ANSWER)

        outcome = await orchestrator.trigger_repair(_make_error(), _make_context(), ai)

        assert outcome.status == "failed"
        assert outcome.reason == "patch failed: 1 search block(s) matched nothing"
        assert outcome.repair_needed[0].path == "src/App.js"
        failed = telemetry.of_type(REPAIR_FAILED)
        assert failed[0].metadata["stage"] == "ai_repair"

    asyncio.run(run_test())


def test_answer_without_edits_fails():
    async def run_test():
        orchestrator, _ = _make_orchestrator()
        ai = FakeAI("<thinking>I am not sure what to change</thinking>")

        outcome = await orchestrator.trigger_repair(_make_error(), _make_context(), ai)

        assert outcome.status == "failed"
        assert outcome.reason == "no applicable edits"
        assert outcome.thinking == "I am not sure what to change"

    asyncio.run(run_test())


def test_ai_timeout_fails_repair():
    async def run_test():
        orchestrator, _ = _make_orchestrator(RepairConfig(ai_timeout_seconds=0.05))
        ai = BlockingAI(GOOD_ANSWER)

        outcome = await orchestrator.trigger_repair(_make_error(), _make_context(), ai)

        assert outcome.status == "failed"
        assert outcome.reason == "AI stream timed out after 0.05s"
        assert not orchestrator.is_repairing

    asyncio.run(run_test())


def test_provider_error_fails_repair():
    async def run_test():
        orchestrator, _ = _make_orchestrator()

        outcome = await orchestrator.trigger_repair(_make_error(), _make_context(), FailingAI())

        assert outcome.status == "failed"
        assert outcome.reason == "AI provider error: quota exceeded"

    asyncio.run(run_test())


# ---------------------------------------------------------------------------
# Observability
# ---------------------------------------------------------------------------
def test_history_and_stats():
    async def run_test():
        orchestrator, _ = _make_orchestrator()
        orchestrator.on_event(lambda event_type, payload: 1 / 0)

        await orchestrator.trigger_repair(_make_error(), _make_context(), FakeAI(GOOD_ANSWER))
        await orchestrator.trigger_repair(_make_error("Unexpected token", "e2"), _make_context(), FakeAI(""))

        stats = orchestrator.stats()
        assert (stats["total"], stats["succeeded"], stats["failed"]) == (2, 1, 1)
        assert [r.error_id for r in orchestrator.history] == ["error_1_0", "e2"]

        orchestrator.clear_history()
        assert orchestrator.stats()["total"] == 0

    asyncio.run(run_test())
