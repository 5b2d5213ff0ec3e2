"""
CI Collaborator
===============
Triggers a rebuild of a fix branch.

Contract:
    trigger_build(ref) → BuildTrigger{build_id, build_url}

GitHub Actions adapter:
    1. POST workflow_dispatch for CI_WORKFLOW_FILE on ``ref``
    2. GET the newest workflow run for that branch to learn its id / URL
       (the run may not be registered yet; a placeholder id is returned)
"""
import logging
from typing import List, Optional, Protocol, runtime_checkable

import httpx
from pydantic import BaseModel

from selfheal.core.exceptions import RebuildTriggerError

logger = logging.getLogger(__name__)


class BuildTrigger(BaseModel):
    build_id: str
    build_url: Optional[str] = None


@runtime_checkable
class CICollaborator(Protocol):
    async def trigger_build(self, ref: str) -> BuildTrigger:
        ...


class GitHubActionsCI:
    API_URL = "https://api.github.com"

    def __init__(self, token: str, repo: str, workflow_file: str = "ci.yml", timeout_seconds: float = 60.0) -> None:
        self.repo = repo
        self.workflow_file = workflow_file
        self.headers = {
            "Accept": "application/vnd.github.v3+json",
            "User-Agent": "Selfheal-Phoenix",
        }
        if token:
            self.headers["Authorization"] = f"token {token}"
        self._timeout = timeout_seconds

    async def trigger_build(self, ref: str) -> BuildTrigger:
        async with httpx.AsyncClient(base_url=self.API_URL, headers=self.headers, timeout=self._timeout) as client:
            try:
                resp = await client.post(
                    f"/repos/{self.repo}/actions/workflows/{self.workflow_file}/dispatches",
                    json={"ref": ref},
                )
                if resp.status_code >= 400:
                    raise RebuildTriggerError(
                        f"Workflow dispatch for {ref} failed: HTTP {resp.status_code}"
                    )

                runs_resp = await client.get(
                    f"/repos/{self.repo}/actions/runs",
                    params={"branch": ref, "event": "workflow_dispatch", "per_page": 1},
                )
                runs_resp.raise_for_status()
                runs = runs_resp.json().get("workflow_runs", [])
            except httpx.HTTPError as e:
                raise RebuildTriggerError(f"Triggering build for {ref} failed: {e}") from e

        if runs:
            run = runs[0]
            logger.info("Rebuild triggered for %s: run %s", ref, run.get("id"))
            return BuildTrigger(build_id=str(run.get("id")), build_url=run.get("html_url"))

        logger.info("Rebuild dispatched for %s; run not registered yet", ref)
        return BuildTrigger(
            build_id=f"dispatch-{ref}",
            build_url=f"https://github.com/{self.repo}/actions?query=branch%3A{ref}",
        )


class InMemoryCI:
    """Records triggered refs (dry runs, tests)."""

    def __init__(self) -> None:
        self.triggered: List[str] = []

    async def trigger_build(self, ref: str) -> BuildTrigger:
        self.triggered.append(ref)
        build_id = f"build-{len(self.triggered)}"
        return BuildTrigger(build_id=build_id, build_url=f"memory://builds/{build_id}")
