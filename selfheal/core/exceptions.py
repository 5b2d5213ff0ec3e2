"""
Exceptions
==========
Typed failures of the repair pipeline.

Non-fatal conditions (an abandoned stream block, a patch that matched no
tier) travel as values inside the pipeline. The classes here are raised at
the seams where a caller has to decide: retry, escalate, or give up.

    SelfHealError
    ├── PatchNotFoundError        all PatchEngine tiers failed
    ├── MalformedPatchError       file block without a search/replace pair
    ├── ChecksumMismatchError     post-image checksum did not match
    ├── CircuitBreakerBlockedError
    ├── AIProviderError           network / quota failure mid-stream
    ├── VCSError
    │   └── StaleRevisionError    write rejected, expected revision is stale
    ├── CommitRateLimitError      commits-per-hour exceeded (retryable)
    ├── RebuildTriggerError       CI collaborator failure
    ├── RepairStepError           one PhoenixLoop step failed
    ├── NoRepairableErrorError    nothing in the logs worth repairing
    ├── PhoenixDisabledError
    ├── InvalidTransitionError    session status edge not in the DAG
    └── SessionTerminalError      mutation of a completed/failed session
"""
from typing import Optional


class SelfHealError(Exception):
    """Base class for every pipeline error."""

    retryable: bool = False


class PatchNotFoundError(SelfHealError):
    def __init__(self, path: str, search: str, excerpt: str = "") -> None:
        self.path = path
        self.search = search
        self.excerpt = excerpt
        super().__init__(f"Search block not found in {path or '<unknown>'}")


class MalformedPatchError(SelfHealError):
    pass


class ChecksumMismatchError(SelfHealError):
    def __init__(self, expected: str, actual: str) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(f"Checksum mismatch: expected {expected}, got {actual}")


class CircuitBreakerBlockedError(SelfHealError):
    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


class AIProviderError(SelfHealError):
    retryable = True


class VCSError(SelfHealError):
    retryable = True


class StaleRevisionError(VCSError):
    def __init__(self, path: str, expected_revision: Optional[str] = None) -> None:
        self.path = path
        self.expected_revision = expected_revision
        super().__init__(f"Stale revision for {path} (expected {expected_revision})")


class CommitRateLimitError(SelfHealError):
    retryable = True


class RebuildTriggerError(SelfHealError):
    retryable = True


class RepairStepError(SelfHealError):
    """A PhoenixLoop step failed; ``retryable`` decides whether the budget applies."""

    def __init__(self, step: str, message: str, retryable: bool = True) -> None:
        self.step = step
        self.retryable = retryable
        super().__init__(f"{step}: {message}")


class NoRepairableErrorError(SelfHealError):
    pass


class PhoenixDisabledError(SelfHealError):
    pass


class InvalidTransitionError(SelfHealError):
    pass


class SessionTerminalError(SelfHealError):
    pass
