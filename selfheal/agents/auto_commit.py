"""
Auto-Commit Service
===================
Turns a successful repair into commits on a dedicated fix branch and asks
CI to rebuild it.

Branch naming:
    <branch_prefix>/<error_type>/<short_error_id>
    e.g. phoenix/fix/dependency/3k9x0a1b

Safety limits:
    - At most ``max_commits_per_hour`` commit_fix calls in any rolling hour
      (CommitRateLimitError, retryable)
    - Every write carries the revision read just before it; a stale
      revision is refetched and retried once, then the step fails
    - A file whose branch copy no longer matches the analysed content is
      never overwritten (StaleRevisionError); one that already holds the
      fix is skipped
    - Every VCS / CI call runs under its own timeout

Commit message:
    [PHOENIX] Auto-fix: <error type>

    Error ID: <short id>
    Files changed: a.js, b.js
"""
import asyncio
import logging
import time
from collections import deque
from datetime import datetime, timezone
from typing import Awaitable, Callable, Deque, Dict, List, Optional, TypeVar

from selfheal.core.config import AutoCommitConfig
from selfheal.core.constants import COMMIT_PREFIX, PR_TITLE_PREFIX, SHORT_ID_LENGTH
from selfheal.core.exceptions import (
    CommitRateLimitError,
    RebuildTriggerError,
    StaleRevisionError,
    VCSError,
)
from selfheal.integrations.ci import BuildTrigger, CICollaborator
from selfheal.integrations.vcs import CommitInfo, VCSCollaborator
from selfheal.models.build_error import BuildError
from selfheal.models.commit import CommitResult, FixBranch
from selfheal.models.patch import FilePatch
from selfheal.models.telemetry_event import (
    PHOENIX_BRANCH_CREATED,
    PHOENIX_FIX_COMMITTED,
    PHOENIX_PR_CREATED,
    PHOENIX_REBUILD_TRIGGERED,
    TelemetryEvent,
)
from selfheal.patching.diff_engine import DiffEngine
from selfheal.services.telemetry import TelemetrySink, safe_record
from selfheal.utils.fingerprint import short_id

logger = logging.getLogger(__name__)

T = TypeVar("T")

_RATE_WINDOW_SECONDS = 60 * 60


class AutoCommitService:
    """
    Fix-branch bookkeeping on top of a VCS and a CI collaborator.

    Usage:
        service = AutoCommitService(vcs, ci, AutoCommitConfig())
        branch = await service.create_fix_branch(error)
        result = await service.commit_fix(branch, patches, files, error)
        trigger = await service.trigger_rebuild(branch)
    """

    def __init__(
        self,
        vcs: VCSCollaborator,
        ci: CICollaborator,
        config: Optional[AutoCommitConfig] = None,
        telemetry: Optional[TelemetrySink] = None,
        diff_engine: Optional[DiffEngine] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.vcs = vcs
        self.ci = ci
        self.config = config or AutoCommitConfig()
        self.telemetry = telemetry
        self.diff_engine = diff_engine or DiffEngine()
        self._clock = clock
        self._history: List[CommitResult] = []
        self._branches: List[FixBranch] = []
        self._commit_times: Deque[float] = deque()

    # ------------------------------------------------------------------
    # Branches
    # ------------------------------------------------------------------
    def branch_name_for(self, error: BuildError) -> str:
        prefix = self.config.branch_prefix.rstrip("/")
        return f"{prefix}/{error.type}/{short_id(error.id, SHORT_ID_LENGTH)}"

    async def create_fix_branch(self, error: BuildError) -> FixBranch:
        name = self.branch_name_for(error)
        base = self.config.base_branch
        await self._vcs_call(self.vcs.create_branch(name, base), f"create branch {name}")

        branch = FixBranch(
            name=name,
            base_branch=base,
            error_type=error.type,
            error_id=error.id,
            created_at=self._now(),
        )
        self._branches.append(branch)
        logger.info("Created fix branch %s from %s", name, base)
        safe_record(self.telemetry, TelemetryEvent(
            type=PHOENIX_BRANCH_CREATED,
            success=True,
            metadata={"branch": name, "error_type": error.type, "error_id": short_id(error.id)},
        ))
        return branch

    # ------------------------------------------------------------------
    # Commits
    # ------------------------------------------------------------------
    async def commit_fix(
        self,
        branch: FixBranch,
        patches: List[FilePatch],
        files: Dict[str, str],
        error: BuildError,
    ) -> CommitResult:
        """
        Apply ``patches`` to ``files`` and write every changed file to the branch.

        Parameters
        ----------
        branch : FixBranch
            Target branch, from ``create_fix_branch``.
        patches : list of FilePatch
            In the order they were produced; later patches to the same file
            are relative to the earlier ones.
        files : dict
            path → content the patches were produced against. Not modified.
        error : BuildError
            The error being fixed, for the commit message.

        Returns
        -------
        CommitResult
            ``success`` is False when the patches changed nothing.

        Raises
        ------
        CommitRateLimitError
            Too many commits in the last hour.
        VCSError
            A read or write failed. StaleRevisionError after one retry, or
            at once when the branch copy of a file no longer matches ``files``.
        """
        self._check_rate_limit()

        working = dict(files)
        touched: List[str] = []
        for patch in patches:
            working[patch.file] = self.diff_engine.apply_patch(
                working.get(patch.file, ""), patch, verify_checksum=patch.checksum is not None,
            )
            if patch.file not in touched:
                touched.append(patch.file)
        changed = [p for p in touched if working[p] != files.get(p)]

        message = self.commit_message(error, changed)
        if not changed:
            logger.warning("Patches for %s produced no changes, nothing to commit", branch.name)
            result = CommitResult(success=False, branch_name=branch.name, message=message)
            self._history.append(result)
            return result

        logger.info("Committing %d file(s) to %s", len(changed), branch.name)
        info: Optional[CommitInfo] = None
        for path in changed:
            written = await self._write_file(branch.name, path, working[path], files.get(path), message)
            info = written or info

        self._commit_times.append(self._clock())
        result = CommitResult(
            success=True,
            commit_id=info.commit_id if info else None,
            commit_url=info.commit_url if info else None,
            branch_name=branch.name,
            message=message,
            changes=len(changed),
            files=changed,
            timestamp=self._now(),
        )
        self._history.append(result)
        safe_record(self.telemetry, TelemetryEvent(
            type=PHOENIX_FIX_COMMITTED,
            success=True,
            metadata={
                "branch": branch.name,
                "patches": len(patches),
                "changes": len(changed),
                "commit_id": (result.commit_id or "")[:SHORT_ID_LENGTH],
            },
        ))
        return result

    async def _write_file(
        self, branch: str, path: str, content: str, base: Optional[str], message: str,
    ) -> Optional[CommitInfo]:
        """
        put_file with the current revision; one refetch-and-retry on a stale revision.

        ``base`` is the content the patch was computed against. A branch
        copy that differs from it raises StaleRevisionError without writing.
        A branch copy that already equals ``content`` is left alone and None
        is returned.
        """
        for attempt in range(2):
            current = await self._vcs_call(self.vcs.get_file(path, branch), f"read {path}")
            revision = current.revision if current else None
            on_branch = current.content if current else None
            if on_branch == content:
                logger.info("%s on %s already holds the fix, skipping write", path, branch)
                return None
            if on_branch != base:
                logger.error("%s on %s differs from the analysed copy, refusing to overwrite", path, branch)
                raise StaleRevisionError(path, revision)
            try:
                return await self._vcs_call(
                    self.vcs.put_file(path, content, message, branch, expected_revision=revision),
                    f"write {path}",
                )
            except StaleRevisionError:
                if attempt == 1:
                    logger.error("Revision of %s on %s still stale after refetch", path, branch)
                    raise
                logger.warning("Stale revision for %s on %s, refetching", path, branch)
        raise VCSError(f"write {path} on {branch} did not complete")

    def commit_message(self, error: BuildError, files: List[str]) -> str:
        return (
            f"{COMMIT_PREFIX} {error.type}\n"
            f"\n"
            f"Error ID: {short_id(error.id, SHORT_ID_LENGTH)}\n"
            f"Files changed: {', '.join(files) or 'none'}\n"
            f"\n"
            f"{error.message[:200]}"
        )

    def _check_rate_limit(self) -> None:
        cutoff = self._clock() - _RATE_WINDOW_SECONDS
        while self._commit_times and self._commit_times[0] <= cutoff:
            self._commit_times.popleft()
        if len(self._commit_times) >= self.config.max_commits_per_hour:
            raise CommitRateLimitError(
                f"Auto-commit rate limit reached ({self.config.max_commits_per_hour}/hour)"
            )

    # ------------------------------------------------------------------
    # Rebuild + pull request
    # ------------------------------------------------------------------
    async def trigger_rebuild(self, branch: FixBranch) -> BuildTrigger:
        try:
            trigger = await asyncio.wait_for(
                self.ci.trigger_build(branch.name), timeout=self.config.ci_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise RebuildTriggerError(
                f"Rebuild of {branch.name} timed out after {self.config.ci_timeout_seconds}s"
            ) from e

        logger.info("Rebuild %s triggered for %s", trigger.build_id, branch.name)
        safe_record(self.telemetry, TelemetryEvent(
            type=PHOENIX_REBUILD_TRIGGERED,
            success=True,
            metadata={"branch": branch.name, "build_id": trigger.build_id, "build_url": trigger.build_url},
        ))
        return trigger

    async def create_pull_request(self, branch: FixBranch, commit: CommitResult, auto_merge: bool = False) -> str:
        title = f"{PR_TITLE_PREFIX} {branch.error_type} error"
        body = self.pull_request_body(branch, commit)
        url = await self._vcs_call(
            self.vcs.open_pull_request(branch.name, title, body, branch.base_branch),
            f"open pull request for {branch.name}",
        )
        if auto_merge:
            branch.status = "merged"
        logger.info("Opened pull request %s for %s", url, branch.name)
        safe_record(self.telemetry, TelemetryEvent(
            type=PHOENIX_PR_CREATED,
            success=True,
            metadata={"branch": branch.name, "pr_url": url, "auto_merge": auto_merge},
        ))
        return url

    @staticmethod
    def pull_request_body(branch: FixBranch, commit: CommitResult) -> str:
        files = "\n".join(f"- `{f}`" for f in commit.files) or "- none"
        return (
            "## Project Phoenix Auto-Fix\n"
            "\n"
            f"**Error type:** {branch.error_type}\n"
            f"**Error ID:** {short_id(branch.error_id, SHORT_ID_LENGTH)}\n"
            f"**Branch:** {branch.name}\n"
            f"**Commit:** {commit.commit_id or 'n/a'}\n"
            "\n"
            "### Files modified\n"
            f"{files}\n"
            "\n"
            "This pull request was generated automatically after a failed build. "
            "The fix branch has been rebuilt by CI; review the run before merging."
        )

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------
    def commit_history(self) -> List[CommitResult]:
        return list(self._history)

    def active_branches(self) -> List[FixBranch]:
        return [b for b in self._branches if b.status == "active"]

    def cleanup_old_branches(self, max_age_seconds: float = 24 * 60 * 60) -> int:
        """Forget branches older than ``max_age_seconds``; returns how many were dropped."""
        cutoff = self._clock() - max_age_seconds
        kept = [b for b in self._branches if b.created_at.timestamp() >= cutoff]
        removed = len(self._branches) - len(kept)
        for branch in self._branches:
            if branch.created_at.timestamp() < cutoff:
                logger.info("Cleaning up old fix branch %s", branch.name)
        self._branches = kept
        return removed

    def stats(self) -> Dict[str, float]:
        total = len(self._history)
        successful = sum(1 for c in self._history if c.success)
        changes = sum(c.changes for c in self._history)
        return {
            "total_commits": total,
            "success_rate": round(successful / total * 100, 2) if total else 100.0,
            "active_branches": len(self.active_branches()),
            "avg_changes_per_commit": round(changes / total, 2) if total else 0.0,
        }

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    async def _vcs_call(self, call: Awaitable[T], what: str) -> T:
        try:
            return await asyncio.wait_for(call, timeout=self.config.vcs_timeout_seconds)
        except asyncio.TimeoutError as e:
            raise VCSError(f"{what} timed out after {self.config.vcs_timeout_seconds}s") from e

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), timezone.utc)
