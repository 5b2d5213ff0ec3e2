"""
Repair Session Model
====================
One build failure travelling through the PhoenixLoop state machine.

Status DAG:
    detecting → repairing → committing → rebuilding → completed
    repairing | committing | rebuilding → repairing      (retry back-edge)
    any non-terminal → failed

Fields:
    id              — "phoenix_<ms>_<random>"
    build_id        — build the failure came from
    error           — the BuildError picked in detecting
    branch          — fix branch name, once created
    commit          — commit id on the fix branch, once committed
    status          — current DAG node
    retry_count     — back-edges taken so far
    logs            — human-readable progress lines
    failure_reason  — set when the session ends in "failed"
    patches_count   — patches produced by the last repair
    build_url/pr_url — CI run and pull request links

Terminal states:
    completed and failed are sealed. Every mutation afterwards, including
    plain attribute assignment, raises SessionTerminalError.
"""
from datetime import datetime, timezone
from typing import Dict, FrozenSet, List, Literal, Optional

from pydantic import BaseModel, Field, PrivateAttr

from selfheal.core.exceptions import InvalidTransitionError, SessionTerminalError
from .build_error import BuildError

SessionStatus = Literal["detecting", "repairing", "committing", "rebuilding", "completed", "failed"]

TERMINAL_STATES: FrozenSet[str] = frozenset({"completed", "failed"})

ALLOWED_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    "detecting": frozenset({"repairing", "failed"}),
    "repairing": frozenset({"committing", "repairing", "failed"}),
    "committing": frozenset({"rebuilding", "repairing", "failed"}),
    "rebuilding": frozenset({"completed", "repairing", "failed"}),
    "completed": frozenset(),
    "failed": frozenset(),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RepairSession(BaseModel):
    id: str
    build_id: str
    error: BuildError
    branch: Optional[str] = None
    commit: Optional[str] = None
    status: SessionStatus = "detecting"
    start_time: datetime = Field(default_factory=_utcnow)
    end_time: Optional[datetime] = None
    retry_count: int = 0
    logs: List[str] = Field(default_factory=list)
    failure_reason: Optional[str] = None
    patches_count: int = 0
    build_url: Optional[str] = None
    pr_url: Optional[str] = None

    _sealed: bool = PrivateAttr(default=False)

    def __setattr__(self, name, value):
        if not name.startswith("_") and self._sealed:
            raise SessionTerminalError(
                f"Session {self.id} is {self.status}; cannot set {name}"
            )
        super().__setattr__(name, value)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATES

    @property
    def duration_ms(self) -> Optional[int]:
        if self.end_time is None:
            return None
        return int((self.end_time - self.start_time).total_seconds() * 1000)

    def log(self, message: str) -> None:
        if self._sealed:
            raise SessionTerminalError(f"Session {self.id} is {self.status}; log is closed")
        self.logs.append(message)

    def transition(self, to: str, reason: Optional[str] = None) -> None:
        """
        Move the session along one DAG edge.

        Raises
        ------
        SessionTerminalError
            The session is already completed or failed.
        InvalidTransitionError
            ``to`` is not reachable from the current status in one step.
        """
        if self._sealed:
            raise SessionTerminalError(f"Session {self.id} is {self.status}; cannot move to {to}")
        if to not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(f"{self.status} -> {to} is not a valid transition")

        if to in TERMINAL_STATES:
            self.end_time = _utcnow()
            if to == "failed":
                self.failure_reason = reason or "unknown failure"
        self.status = to
        if to in TERMINAL_STATES:
            self._sealed = True

    def begin_retry(self, max_retries: int) -> None:
        """Take the back-edge to ``repairing`` if the retry budget allows it."""
        if self._sealed:
            raise SessionTerminalError(f"Session {self.id} is {self.status}; cannot retry")
        if self.retry_count >= max_retries:
            raise InvalidTransitionError(
                f"Retry budget exhausted ({self.retry_count}/{max_retries})"
            )
        if "repairing" not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(f"{self.status} has no retry edge")
        self.retry_count += 1
        self.status = "repairing"


class PhoenixStats(BaseModel):
    total_sessions: int = 0
    successful_repairs: int = 0
    failed_repairs: int = 0
    avg_repair_time_ms: float = 0.0
    success_rate: float = 0.0
    active_sessions: int = 0
