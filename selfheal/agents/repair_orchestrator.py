"""
Repair Orchestrator
===================
Runs one AI repair attempt for a BuildError: gate → prompt → stream →
patch → outcome.

Flow (trigger_repair):
    1. Single-flight guard. While a repair is running, a new trigger is
       either dropped ("busy") or parked in a one-slot queue, depending on
       RepairConfig.overflow_policy. A newer parked trigger replaces the
       older one, whose caller receives "busy" / "superseded". Callers
       that got "busy" can await ``wait_idle`` before triggering again.
    2. CircuitBreaker gate. A rejection yields a "blocked" outcome and the
       AI is never contacted.
    3. Build the repair prompt and stream it through the AIProvider under
       ai_timeout_seconds. Every chunk goes through StreamBlockParser.feed_new.
    4. Each newly complete file block is applied with PatchEngine against a
       working copy of the file map.
    5. Search blocks that matched nothing are sent back to the AI with the
       current file content, at most max_patch_reprompts times.
    6. "succeeded" needs at least one patch and no outstanding failure.

Events (on_event listeners receive (event_type, payload)):
    started, thinking, shell, file_progress, repair_needed, queued,
    succeeded, failed, blocked, busy

Shell blocks are reported, never executed.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from selfheal.agents.circuit_breaker import CircuitBreaker
from selfheal.core.config import RepairConfig
from selfheal.core.constants import FILE_TAG, SHELL_TAG, THINKING_TAG
from selfheal.core.exceptions import AIProviderError
from selfheal.llm.client import AIProvider
from selfheal.llm.prompts import build_repair_prompt, build_reprompt
from selfheal.models.build_error import BuildContext, BuildError
from selfheal.models.patch import FilePatch, PatchFailure
from selfheal.models.repair_outcome import RepairOutcome
from selfheal.models.telemetry_event import REPAIR_FAILED, TelemetryEvent
from selfheal.parser.stream_parser import StreamBlockParser
from selfheal.patching.patch_engine import PatchEngine
from selfheal.services.telemetry import TelemetrySink, safe_record

logger = logging.getLogger(__name__)

EventListener = Callable[[str, Dict[str, Any]], None]

_MAX_HISTORY = 100


@dataclass
class RepairRecord:
    error_id: str
    error_type: str
    outcome: RepairOutcome
    duration_ms: int
    finished_at: float = field(default_factory=time.time)


@dataclass
class _StreamResult:
    patches: List[FilePatch] = field(default_factory=list)
    failures: List[PatchFailure] = field(default_factory=list)
    thinking: Optional[str] = None


class RepairOrchestrator:
    """
    Single-flight AI repair runner.

    Usage:
        orchestrator = RepairOrchestrator(CircuitBreaker(), PatchEngine())
        outcome = await orchestrator.trigger_repair(error, context, client)
        if outcome.succeeded:
            ... outcome.patches ...
    """

    def __init__(
        self,
        circuit_breaker: Optional[CircuitBreaker] = None,
        patch_engine: Optional[PatchEngine] = None,
        config: Optional[RepairConfig] = None,
        telemetry: Optional[TelemetrySink] = None,
    ) -> None:
        self.circuit_breaker = circuit_breaker or CircuitBreaker()
        self.patch_engine = patch_engine or PatchEngine()
        self.config = config or RepairConfig()
        self.telemetry = telemetry
        self._active = False
        self._idle = asyncio.Event()
        self._idle.set()
        self._pending: Optional[Tuple[Tuple[BuildError, BuildContext, AIProvider], asyncio.Future]] = None
        self._listeners: List[EventListener] = []
        self._history: List[RepairRecord] = []
        self._busy_count = 0

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------
    def on_event(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    def _emit(self, event_type: str, payload: Dict[str, Any]) -> None:
        for listener in list(self._listeners):
            try:
                listener(event_type, payload)
            except Exception as e:
                logger.error("Repair event listener failed on %s: %s", event_type, e)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------
    @property
    def is_repairing(self) -> bool:
        return self._active

    async def wait_idle(self) -> None:
        """Return once no repair is running or queued."""
        while self._active:
            await self._idle.wait()

    async def trigger_repair(
        self,
        error: BuildError,
        context: BuildContext,
        ai_provider: AIProvider,
    ) -> RepairOutcome:
        if self._active:
            if self.config.overflow_policy == "queue":
                return await self._enqueue(error, context, ai_provider)
            return self._busy(error, "repair already in progress")

        self._active = True
        self._idle.clear()
        try:
            return await self._run(error, context, ai_provider)
        finally:
            self._release()

    async def _enqueue(self, error: BuildError, context: BuildContext, ai_provider: AIProvider) -> RepairOutcome:
        if self._pending is not None:
            (old_error, _, _), old_future = self._pending
            if not old_future.done():
                old_future.set_result(self._busy(old_error, "superseded"))
        future = asyncio.get_running_loop().create_future()
        self._pending = ((error, context, ai_provider), future)
        logger.info("Repair for %s queued behind the active repair", error.id)
        self._emit("queued", {"error_id": error.id})
        return await future

    def _release(self) -> None:
        """Hand the guard to the queued trigger, or drop it."""
        if self._pending is None:
            self._active = False
            self._idle.set()
            return
        args, future = self._pending
        self._pending = None
        asyncio.get_running_loop().create_task(self._run_queued(args, future))

    async def _run_queued(self, args: Tuple[BuildError, BuildContext, AIProvider], future: asyncio.Future) -> None:
        try:
            if future.done():
                return
            try:
                outcome = await self._run(*args)
            except asyncio.CancelledError:
                future.cancel()
                raise
            except Exception as e:
                if not future.done():
                    future.set_exception(e)
                return
            if not future.done():
                future.set_result(outcome)
        finally:
            self._release()

    def _busy(self, error: BuildError, reason: str) -> RepairOutcome:
        self._busy_count += 1
        logger.info("Repair for %s not started: %s", error.id, reason)
        self._emit("busy", {"error_id": error.id, "reason": reason})
        return RepairOutcome(status="busy", reason=reason)

    # ------------------------------------------------------------------
    # One repair
    # ------------------------------------------------------------------
    async def _run(self, error: BuildError, context: BuildContext, ai_provider: AIProvider) -> RepairOutcome:
        started = time.monotonic()

        decision = self.circuit_breaker.should_attempt_repair(error)
        if not decision.allowed:
            logger.warning("Repair for %s blocked: %s", error.id, decision.reason)
            outcome = RepairOutcome(status="blocked", reason=decision.reason)
            self._emit("blocked", {
                "error_id": error.id,
                "reason": decision.reason,
                "stats": self.circuit_breaker.stats().model_dump(),
            })
            return self._record(error, outcome, started)

        self._emit("started", {"error_id": error.id, "error_type": error.type, "message": error.message})
        logger.info("Starting AI repair for %s error %s", error.type, error.id)

        working = dict(context.files)
        patches: List[FilePatch] = []
        thinking: Optional[str] = None
        prompt = build_repair_prompt(error, context)
        reprompts = 0

        while True:
            try:
                result = await asyncio.wait_for(
                    self._stream_once(prompt, ai_provider, working),
                    timeout=self.config.ai_timeout_seconds,
                )
            except asyncio.TimeoutError:
                reason = f"AI stream timed out after {self.config.ai_timeout_seconds}s"
                return self._fail(error, reason, started, thinking=thinking)
            except AIProviderError as e:
                return self._fail(error, f"AI provider error: {e}", started, thinking=thinking)

            patches.extend(result.patches)
            thinking = result.thinking or thinking
            if not result.failures:
                break
            if reprompts >= self.config.max_patch_reprompts:
                reason = f"patch failed: {len(result.failures)} search block(s) matched nothing"
                return self._fail(error, reason, started, thinking=thinking, repair_needed=result.failures)

            reprompts += 1
            logger.warning(
                "%d patch(es) did not apply, re-prompting (%d/%d)",
                len(result.failures), reprompts, self.config.max_patch_reprompts,
            )
            self._emit("repair_needed", {
                "error_id": error.id,
                "failures": [f.model_dump() for f in result.failures],
                "attempt": reprompts,
            })
            prompt = build_reprompt(result.failures, working)

        if not patches:
            return self._fail(error, "no applicable edits", started, thinking=thinking)

        touched = {p.file for p in patches}
        outcome = RepairOutcome(
            status="succeeded",
            patches=patches,
            files={path: working[path] for path in touched},
            thinking=thinking,
        )
        logger.info("Repair for %s produced %d patch(es) across %d file(s)", error.id, len(patches), len(touched))
        self._emit("succeeded", {"error_id": error.id, "patches": len(patches), "files": sorted(touched)})
        return self._record(error, outcome, started)

    async def _stream_once(self, prompt: str, ai_provider: AIProvider, working: Dict[str, str]) -> _StreamResult:
        """Stream one AI answer, applying file blocks to ``working`` as they complete."""
        parser = StreamBlockParser()
        result = _StreamResult()

        async for chunk in ai_provider.generate_stream(prompt):
            for block in parser.feed_new(chunk):
                if block.kind == THINKING_TAG:
                    if block.complete:
                        result.thinking = block.content.strip()
                    self._emit("thinking", {"content": block.content, "complete": block.complete})
                elif block.kind == SHELL_TAG:
                    self._emit("shell", {"command": block.content, "complete": block.complete})
                elif block.kind == FILE_TAG:
                    self._emit("file_progress", {
                        "path": block.path,
                        "edit_kind": block.attributes.edit_kind if block.attributes else None,
                        "chars": len(block.content),
                        "complete": block.complete,
                    })
                    if block.complete:
                        edit = self.patch_engine.apply_block(block, working)
                        if edit.success:
                            working[edit.path] = edit.content
                            result.patches.append(edit.patch)
                        else:
                            result.failures.append(edit.failure)

        for block in parser.abandoned_blocks():
            logger.warning("Stream ended inside a %s block (path=%s); ignoring it", block.kind, block.path)
        return result

    def _fail(
        self,
        error: BuildError,
        reason: str,
        started: float,
        thinking: Optional[str] = None,
        repair_needed: Optional[List[PatchFailure]] = None,
    ) -> RepairOutcome:
        logger.error("Repair for %s failed: %s", error.id, reason)
        outcome = RepairOutcome(
            status="failed", reason=reason, thinking=thinking, repair_needed=repair_needed or [],
        )
        self._emit("failed", {"error_id": error.id, "reason": reason})
        safe_record(self.telemetry, TelemetryEvent(
            type=REPAIR_FAILED,
            success=False,
            error_signature=CircuitBreaker.fingerprint(error),
            duration_ms=int((time.monotonic() - started) * 1000),
            metadata={"stage": "ai_repair", "error_type": error.type, "reason": reason},
        ))
        return self._record(error, outcome, started)

    def _record(self, error: BuildError, outcome: RepairOutcome, started: float) -> RepairOutcome:
        self._history.append(RepairRecord(
            error_id=error.id,
            error_type=error.type,
            outcome=outcome,
            duration_ms=int((time.monotonic() - started) * 1000),
        ))
        if len(self._history) > _MAX_HISTORY:
            del self._history[0]
        return outcome

    # ------------------------------------------------------------------
    # Observability + operator controls
    # ------------------------------------------------------------------
    @property
    def history(self) -> List[RepairRecord]:
        return list(self._history)

    def stats(self) -> Dict[str, Any]:
        statuses = [r.outcome.status for r in self._history]
        return {
            "total": len(statuses),
            "succeeded": statuses.count("succeeded"),
            "failed": statuses.count("failed"),
            "blocked": statuses.count("blocked"),
            "busy": self._busy_count,
            "is_repairing": self._active,
            "circuit_breaker": self.circuit_breaker.stats().model_dump(),
        }

    def reset_circuit_breaker(self) -> None:
        self.circuit_breaker.reset()

    def clear_history(self) -> None:
        self._history.clear()
        self._busy_count = 0
