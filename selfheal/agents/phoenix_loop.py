"""
Phoenix Loop
============
Build failure → fixed build. One RepairSession per accepted failure, driven
as an asyncio task through the session DAG:

    detecting → repairing → committing → rebuilding → completed
                    ↑______________|____________|       (retry)
    any non-terminal → failed

Steps:
    detecting   classify the logs, pick the most critical error, reject
                unrepairable ones before any session exists
    repairing   create the fix branch (once per session), run the
                RepairOrchestrator
    committing  AutoCommitService.commit_fix on the fix branch
    rebuilding  trigger CI on the fix branch, optionally open a PR
    completed   stats + CRASH_REPAIRED telemetry

Failure handling:
    - A retryable step failure takes the back-edge to ``repairing`` while
      auto_retry is on and retry_count < max_retries, after
      retry_delay_seconds. Anything else fails the session.
    - A "busy" outcome leaves the session pending: it waits for the
      orchestrator to go idle and triggers again. The retry budget is
      untouched.
    - A circuit breaker trip (listener or "blocked" outcome) fails every
      non-terminal session with "circuit breaker tripped: <reason>".
    - cancel_session fails the session with "cancelled" and cancels its task;
      handle_build_failure still returns the failed session.
    - Every failed session records REPAIR_FAILED telemetry.
"""
import asyncio
import logging
import time
import uuid
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

from selfheal.agents.auto_commit import AutoCommitService
from selfheal.agents.repair_orchestrator import RepairOrchestrator
from selfheal.core.config import PhoenixConfig
from selfheal.core.exceptions import (
    CircuitBreakerBlockedError,
    NoRepairableErrorError,
    PhoenixDisabledError,
    RepairStepError,
    SelfHealError,
    SessionTerminalError,
)
from selfheal.llm.client import AIProvider
from selfheal.models.build_error import BuildContext, BuildError
from selfheal.models.circuit import CircuitStats
from selfheal.models.commit import FixBranch
from selfheal.models.repair_session import PhoenixStats, RepairSession
from selfheal.models.telemetry_event import (
    CIRCUIT_BREAKER_TRIPPED,
    CRASH_REPAIRED,
    REPAIR_FAILED,
    REPAIR_REJECTED,
    TelemetryEvent,
)
from selfheal.parser.error_classifier import ErrorClassifier
from selfheal.services.telemetry import TelemetrySink, safe_record

logger = logging.getLogger(__name__)


class PhoenixLoop:
    """
    Self-healing loop over a RepairOrchestrator and an AutoCommitService.

    Usage:
        loop = PhoenixLoop(orchestrator, auto_commit, ai_client, PhoenixConfig())
        session = await loop.handle_build_failure("build-42", log_lines, context)
        session.status  # "completed" or "failed"
    """

    def __init__(
        self,
        orchestrator: RepairOrchestrator,
        auto_commit: AutoCommitService,
        ai_provider: AIProvider,
        config: Optional[PhoenixConfig] = None,
        classifier: Optional[ErrorClassifier] = None,
        telemetry: Optional[TelemetrySink] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.orchestrator = orchestrator
        self.auto_commit = auto_commit
        self.ai_provider = ai_provider
        self.config = config or PhoenixConfig()
        self.classifier = classifier or ErrorClassifier()
        self.telemetry = telemetry
        self._clock = clock
        self._sleep = sleep

        self._sessions: Dict[str, RepairSession] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._branches: Dict[str, FixBranch] = {}
        self._total_sessions = 0
        self._successful = 0
        self._failed = 0
        self._avg_repair_ms = 0.0

        self.orchestrator.circuit_breaker.on_trip(self._on_circuit_breaker_tripped)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------
    async def handle_build_failure(
        self,
        build_id: str,
        log_lines: Sequence[str],
        context: BuildContext,
    ) -> RepairSession:
        """
        Run the whole loop for one failed build and return the finished session.

        Raises
        ------
        PhoenixDisabledError
            The loop is switched off.
        NoRepairableErrorError
            The logs hold no error, or the most critical one cannot be
            repaired automatically. No session is created.
        """
        session = self.start_session(build_id, log_lines, context)
        task = self._tasks.get(session.id)
        if task is None:
            return session
        try:
            # wait() does not forward our own cancellation to the task
            await asyncio.wait({task})
        except asyncio.CancelledError:
            self.cancel_session(session.id)
            raise
        if task.cancelled() and not session.is_terminal:
            self._fail_session(session, "cancelled")
        return session

    def start_session(self, build_id: str, log_lines: Sequence[str], context: BuildContext) -> RepairSession:
        """Detect and schedule; the session task runs on the current event loop."""
        if not self.config.enabled:
            raise PhoenixDisabledError("Phoenix loop is disabled")

        parsed = self.classifier.classify(log_lines, context)
        if not parsed.errors:
            self._reject(build_id, None, "no build errors detected")
            raise NoRepairableErrorError("no build errors detected")

        error = ErrorClassifier.most_critical(parsed.errors)
        if error is None or not ErrorClassifier.is_repairable(error):
            reason = (
                f"{error.type} error is not auto-repairable (confidence {error.confidence})"
                if error else "no repairable errors found"
            )
            self._reject(build_id, error, reason)
            raise NoRepairableErrorError(reason)

        session = RepairSession(id=self._new_session_id(), build_id=build_id, error=error)
        session.log(f"Detected {error.type} error: {error.message}")
        self._sessions[session.id] = session
        self._total_sessions += 1
        logger.info("Phoenix session %s started for build %s (%s)", session.id, build_id, error.type)

        task = asyncio.get_running_loop().create_task(self._run_session(session, context))
        self._tasks[session.id] = task
        task.add_done_callback(lambda _t, sid=session.id: self._tasks.pop(sid, None))
        return session

    def _reject(self, build_id: str, error: Optional[BuildError], reason: str) -> None:
        logger.info("Build %s not repaired: %s", build_id, reason)
        safe_record(self.telemetry, TelemetryEvent(
            type=REPAIR_REJECTED,
            success=False,
            error_signature=self.orchestrator.circuit_breaker.fingerprint(error) if error else None,
            metadata={
                "build_id": build_id,
                "reason": reason,
                "error_type": error.type if error else None,
            },
        ))

    # ------------------------------------------------------------------
    # Session task
    # ------------------------------------------------------------------
    async def _run_session(self, session: RepairSession, context: BuildContext) -> None:
        try:
            await self._drive(session, context)
        except asyncio.CancelledError:
            if not session.is_terminal:
                self._fail_session(session, "cancelled")
        except SessionTerminalError:
            logger.info("Session %s was closed while a step was running", session.id)
        except Exception as e:
            logger.error("Phoenix session %s crashed: %s", session.id, e, exc_info=True)
            if not session.is_terminal:
                self._fail_session(session, f"unexpected error: {e}")

    async def _drive(self, session: RepairSession, context: BuildContext) -> None:
        while True:
            try:
                await self._attempt(session, context)
                return
            except SessionTerminalError:
                raise
            except CircuitBreakerBlockedError as e:
                self._fail_active_sessions(f"circuit breaker tripped: {e.reason}")
                return
            except SelfHealError as e:
                if session.is_terminal:
                    return
                if not self._can_retry(session, e):
                    self._fail_session(session, str(e))
                    return
                session.log(f"Step failed: {e}")
                session.begin_retry(self.config.max_retries)
                session.log(f"Retry {session.retry_count}/{self.config.max_retries} in {self.config.retry_delay_seconds:g}s")
                logger.warning(
                    "Session %s retry %d/%d after: %s",
                    session.id, session.retry_count, self.config.max_retries, e,
                )
                await self._sleep(self.config.retry_delay_seconds)
                if session.is_terminal:
                    return

    def _can_retry(self, session: RepairSession, error: SelfHealError) -> bool:
        return (
            error.retryable
            and self.config.auto_retry
            and session.retry_count < self.config.max_retries
        )

    async def _attempt(self, session: RepairSession, context: BuildContext) -> None:
        if session.status != "repairing":
            session.transition("repairing")

        branch = self._branches.get(session.id)
        if branch is None:
            session.log("Creating fix branch")
            branch = await self.auto_commit.create_fix_branch(session.error)
            self._branches[session.id] = branch
            session.branch = branch.name
            session.log(f"Created branch {branch.name}")

        session.log("Triggering AI repair")
        outcome = await self.orchestrator.trigger_repair(session.error, context, self.ai_provider)
        while outcome.status == "busy" and not session.is_terminal:
            # Pending behind another session's repair; not a failed attempt
            session.log(f"Repair pending: {outcome.reason}")
            await self.orchestrator.wait_idle()
            if session.is_terminal:
                return
            outcome = await self.orchestrator.trigger_repair(session.error, context, self.ai_provider)
        if session.is_terminal:
            return
        if outcome.status == "blocked":
            raise CircuitBreakerBlockedError(outcome.reason or "circuit breaker open")
        if not outcome.succeeded:
            raise RepairStepError("repairing", outcome.reason or outcome.status)
        if outcome.thinking:
            session.log(f"AI diagnosis: {outcome.thinking}")

        session.patches_count = len(outcome.patches)
        session.log(f"Repair produced {len(outcome.patches)} patch(es)")
        session.transition("committing")
        commit = await self.auto_commit.commit_fix(branch, outcome.patches, context.files, session.error)
        if not commit.success:
            raise RepairStepError("committing", "patches produced no changes")
        session.commit = commit.commit_id or session.commit
        session.log(f"Committed {commit.changes} file(s) as {session.commit}")

        session.transition("rebuilding")
        trigger = await self.auto_commit.trigger_rebuild(branch)
        session.build_url = trigger.build_url
        session.log(f"Rebuild {trigger.build_id} triggered")

        if self.config.open_pull_requests:
            try:
                session.pr_url = await self.auto_commit.create_pull_request(branch, commit)
                session.log(f"Opened pull request {session.pr_url}")
            except SelfHealError as e:
                logger.warning("Pull request for %s failed: %s", branch.name, e)
                session.log(f"Pull request failed: {e}")

        self._complete_session(session)

    # ------------------------------------------------------------------
    # Terminal transitions
    # ------------------------------------------------------------------
    def _complete_session(self, session: RepairSession) -> None:
        session.log("Session completed")
        session.transition("completed")
        self._successful += 1
        duration = session.duration_ms or 0
        self._avg_repair_ms += (duration - self._avg_repair_ms) / self._successful
        logger.info("Phoenix session %s completed in %d ms", session.id, duration)
        safe_record(self.telemetry, TelemetryEvent(
            type=CRASH_REPAIRED,
            success=True,
            error_signature=self.orchestrator.circuit_breaker.fingerprint(session.error),
            session_id=session.id,
            duration_ms=duration,
            metadata={
                "build_id": session.build_id,
                "error_type": session.error.type,
                "patches": session.patches_count,
                "retries": session.retry_count,
                "build_url": session.build_url,
            },
        ))

    def _fail_session(self, session: RepairSession, reason: str) -> None:
        session.log(f"Session failed: {reason}")
        session.transition("failed", reason)
        self._failed += 1
        logger.error("Phoenix session %s failed: %s", session.id, reason)
        safe_record(self.telemetry, TelemetryEvent(
            type=REPAIR_FAILED,
            success=False,
            error_signature=self.orchestrator.circuit_breaker.fingerprint(session.error),
            session_id=session.id,
            duration_ms=session.duration_ms,
            metadata={
                "stage": "phoenix_loop",
                "build_id": session.build_id,
                "error_type": session.error.type,
                "reason": reason,
                "retries": session.retry_count,
            },
        ))

    def _fail_active_sessions(self, reason: str) -> None:
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        for session in self.active_sessions():
            self._fail_session(session, reason)
            task = self._tasks.get(session.id)
            if task is not None and task is not current and not task.done():
                task.cancel()

    def _on_circuit_breaker_tripped(self, reason: str, stats: CircuitStats) -> None:
        logger.warning("Circuit breaker tripped (%s); failing %d active session(s)", reason, len(self.active_sessions()))
        safe_record(self.telemetry, TelemetryEvent(
            type=CIRCUIT_BREAKER_TRIPPED,
            success=False,
            metadata={"reason": reason, "stats": stats.model_dump()},
        ))
        self._fail_active_sessions(f"circuit breaker tripped: {reason}")

    # ------------------------------------------------------------------
    # Operator controls
    # ------------------------------------------------------------------
    def cancel_session(self, session_id: str) -> Optional[RepairSession]:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        if not session.is_terminal:
            self._fail_session(session, "cancelled")
            task = self._tasks.get(session_id)
            if task is not None and not task.done():
                task.cancel()
        return session

    def get_session(self, session_id: str) -> Optional[RepairSession]:
        return self._sessions.get(session_id)

    def active_sessions(self) -> List[RepairSession]:
        return [s for s in self._sessions.values() if not s.is_terminal]

    def all_sessions(self) -> List[RepairSession]:
        return list(self._sessions.values())

    def stats(self) -> PhoenixStats:
        total = self._total_sessions
        return PhoenixStats(
            total_sessions=total,
            successful_repairs=self._successful,
            failed_repairs=self._failed,
            avg_repair_time_ms=round(self._avg_repair_ms, 2),
            success_rate=round(self._successful / total * 100, 2) if total else 0.0,
            active_sessions=len(self.active_sessions()),
        )

    def cleanup_old_sessions(self, max_age_seconds: Optional[float] = None) -> int:
        """Drop finished sessions that ended more than ``max_age_seconds`` ago."""
        if max_age_seconds is None:
            max_age_seconds = self.config.session_ttl_seconds
        cutoff = self._clock() - max_age_seconds
        stale = [
            sid for sid, s in self._sessions.items()
            if s.end_time is not None and s.end_time.timestamp() < cutoff
        ]
        for sid in stale:
            del self._sessions[sid]
            self._branches.pop(sid, None)
        logger.info("Cleaned up %d old session(s)", len(stale))
        return len(stale)

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    def set_enabled(self, enabled: bool) -> None:
        self.config = self.config.model_copy(update={"enabled": enabled})
        logger.info("Phoenix loop %s", "enabled" if enabled else "disabled")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _new_session_id(self) -> str:
        return f"phoenix_{int(self._clock() * 1000)}_{uuid.uuid4().hex[:6]}"
