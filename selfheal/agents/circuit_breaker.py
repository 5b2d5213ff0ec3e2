"""
Circuit Breaker
===============
Stops automatic repair when the AI keeps failing on the same problem or
the code base is crash-looping.

Decision sequence (should_attempt_repair):
    1. Drop crash records older than the cooldown window.
    2. Tripped and still cooling down → reject ("N s remaining").
    3. Tripped and cooldown elapsed   → automatic reset.
    4. Same fingerprint seen max_duplicate_attempts times → trip
       "duplicate error", reject.
    5. History already holds max_crashes_per_minute records with at least
       two distinct fingerprints → trip "crash loop", reject.
    6. Otherwise record the crash and allow.

Every rejection counts towards ``total_blocked``.

Emergency brake:
    With ``enabled=False`` a trip is logged but never blocks; the call
    falls through to step 6.

Thread safety:
    All state lives behind one threading.Lock. Trip listeners run after the
    lock is released.
"""
import logging
import math
import threading
import time
from typing import Callable, List, Optional

from selfheal.core.config import CircuitBreakerConfig
from selfheal.models.build_error import BuildError
from selfheal.models.circuit import CircuitBreakerState, CircuitStats, CrashRecord, RepairDecision
from selfheal.utils.fingerprint import error_fingerprint

logger = logging.getLogger(__name__)

TripListener = Callable[[str, CircuitStats], None]


class CircuitBreaker:
    def __init__(
        self,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._state = CircuitBreakerState()
        self._lock = threading.Lock()
        self._listeners: List[TripListener] = []

    @property
    def cooldown_seconds(self) -> float:
        return self.config.cooldown_ms / 1000.0

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    def set_enabled(self, enabled: bool) -> None:
        with self._lock:
            self.config = self.config.model_copy(update={"enabled": enabled})
        logger.info("Circuit breaker emergency brake %s", "enabled" if enabled else "disabled")

    def on_trip(self, listener: TripListener) -> None:
        self._listeners.append(listener)

    @staticmethod
    def fingerprint(error: BuildError) -> str:
        return error_fingerprint(error.message, error.stack, error.type)

    # ------------------------------------------------------------------
    # Gate
    # ------------------------------------------------------------------
    def should_attempt_repair(self, error: BuildError) -> RepairDecision:
        error_hash = self.fingerprint(error)
        trip_reason: Optional[str] = None

        with self._lock:
            now = self._clock()
            state = self._state
            state.crash_history = [
                c for c in state.crash_history if now - c.timestamp < self.cooldown_seconds
            ]

            if state.tripped and state.trip_time is not None:
                since_trip = now - state.trip_time
                if since_trip < self.cooldown_seconds:
                    state.total_blocked += 1
                    remaining = math.ceil(self.cooldown_seconds - since_trip)
                    return RepairDecision(
                        allowed=False,
                        reason=f"Circuit breaker is tripped ({state.trip_reason}). Cooldown: {remaining}s remaining",
                    )
                self._reset_locked()
                logger.info("Circuit breaker cooldown elapsed; auto-reset")

            decision: Optional[RepairDecision] = None
            duplicates = sum(1 for c in state.crash_history if c.error_hash == error_hash)
            if duplicates >= self.config.max_duplicate_attempts:
                trip_reason = f"duplicate error: seen {duplicates} times: {error.message[:100]}"
                decision = RepairDecision(
                    allowed=False,
                    reason=f"Same error occurred {duplicates} times. Previous repair attempts failed.",
                )
            elif len(state.crash_history) >= self.config.max_crashes_per_minute:
                distinct = {c.error_hash for c in state.crash_history}
                if len(distinct) >= 2:
                    trip_reason = (
                        f"crash loop: {len(state.crash_history)} crashes in "
                        f"{self.cooldown_seconds:g}s"
                    )
                    decision = RepairDecision(
                        allowed=False,
                        reason=f"Too many crashes ({len(state.crash_history)}) in short succession. Code appears unstable.",
                    )

            if decision is not None and self.config.enabled:
                state.tripped = True
                state.trip_reason = trip_reason
                state.trip_time = now
                state.total_blocked += 1
                stats = self._stats_locked(now)
            else:
                if decision is not None:
                    logger.warning("Circuit breaker would trip (%s) but emergency brake is disabled", trip_reason)
                    trip_reason = None
                state.crash_history.append(CrashRecord(
                    timestamp=now, error_hash=error_hash, message=error.message, type=error.type,
                ))
                state.total_attempted += 1
                return RepairDecision(allowed=True)

        logger.warning("CIRCUIT BREAKER TRIPPED: %s (attempted=%d, blocked=%d, recent=%d)",
                       trip_reason, stats.total_attempted, stats.total_blocked, stats.recent_crash_count)
        self._notify(trip_reason, stats)
        return decision

    def _notify(self, reason: str, stats: CircuitStats) -> None:
        for listener in list(self._listeners):
            try:
                listener(reason, stats)
            except Exception as e:
                logger.error("Circuit breaker trip listener failed: %s", e)

    # ------------------------------------------------------------------
    # Operator controls + observability
    # ------------------------------------------------------------------
    def reset(self) -> None:
        with self._lock:
            self._reset_locked()
        logger.info("Circuit breaker reset")

    def _reset_locked(self) -> None:
        self._state.tripped = False
        self._state.trip_reason = None
        self._state.trip_time = None
        self._state.crash_history = []

    def state(self) -> CircuitBreakerState:
        with self._lock:
            return self._state.model_copy(deep=True)

    def stats(self) -> CircuitStats:
        with self._lock:
            return self._stats_locked(self._clock())

    def _stats_locked(self, now: float) -> CircuitStats:
        state = self._state
        if state.total_attempted > 0:
            rate = (state.total_attempted - state.total_blocked) / state.total_attempted * 100
        else:
            rate = 100.0
        remaining = 0
        if state.tripped and state.trip_time is not None:
            remaining = max(0, math.ceil(self.cooldown_seconds - (now - state.trip_time)))
        return CircuitStats(
            total_attempted=state.total_attempted,
            total_blocked=state.total_blocked,
            success_rate=round(max(0.0, rate), 2),
            tripped=state.tripped,
            recent_crash_count=len(state.crash_history),
            trip_reason=state.trip_reason,
            cooldown_remaining_seconds=remaining,
            enabled=self.config.enabled,
        )
