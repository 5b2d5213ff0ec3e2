"""
VCS / CI Collaborator Tests
===========================
Covers:
    - InMemoryVCS revision checks, branch copies, unknown branches
    - GitHubVCS contents/refs/pulls calls (httpx mocked)
    - GitHubActionsCI dispatch + run lookup (httpx mocked)
"""
import asyncio
import base64
from unittest.mock import MagicMock, patch

import httpx
import pytest

from selfheal.core.exceptions import RebuildTriggerError, StaleRevisionError, VCSError
from selfheal.integrations.ci import GitHubActionsCI, InMemoryCI
from selfheal.integrations.vcs import GitHubVCS, InMemoryVCS


def _resp(status_code=200, payload=None, text=""):
    resp = MagicMock()
    resp.status_code = status_code
    resp.json.return_value = payload or {}
    resp.text = text
    resp.raise_for_status = MagicMock()
    return resp


# ---------------------------------------------------------------------------
# In-memory VCS
# ---------------------------------------------------------------------------
def test_in_memory_revisions():
    async def run_test():
        vcs = InMemoryVCS({"a.txt": "one"})
        rev = await vcs.get_file("a.txt", "main")
        assert (rev.content, rev.revision) == ("one", "rev1")

        with pytest.raises(StaleRevisionError):
            await vcs.put_file("a.txt", "two", "msg", "main", expected_revision="rev0")

        info = await vcs.put_file("a.txt", "two", "msg", "main", expected_revision="rev1")
        assert info.commit_id == "commit1"
        assert info.commit_url == "memory://main/commit1"
        assert (await vcs.get_file("a.txt", "main")).content == "two"

        # New files need no revision
        await vcs.put_file("b.txt", "new", "msg", "main")
        assert await vcs.get_file("missing.txt", "main") is None

    asyncio.run(run_test())


def test_in_memory_branches():
    async def run_test():
        vcs = InMemoryVCS({"a.txt": "one"})
        await vcs.create_branch("fix", "main")
        rev = await vcs.get_file("a.txt", "fix")
        await vcs.put_file("a.txt", "patched", "msg", "fix", expected_revision=rev.revision)

        assert (await vcs.get_file("a.txt", "main")).content == "one"
        with pytest.raises(VCSError):
            await vcs.get_file("a.txt", "nope")

        await vcs.delete_file("a.txt", "rm", "fix", (await vcs.get_file("a.txt", "fix")).revision)
        assert await vcs.get_file("a.txt", "fix") is None

    asyncio.run(run_test())


def test_in_memory_ci():
    async def run_test():
        ci = InMemoryCI()
        trigger = await ci.trigger_build("phoenix/fix/runtime/abc")
        assert trigger.build_id == "build-1"
        assert ci.triggered == ["phoenix/fix/runtime/abc"]

    asyncio.run(run_test())


# ---------------------------------------------------------------------------
# GitHub VCS
# ---------------------------------------------------------------------------
def test_github_get_file():
    async def run_test():
        vcs = GitHubVCS("fake", "owner/repo")
        encoded = base64.b64encode(b"hello\n").decode("ascii")
        with patch("httpx.AsyncClient.get", return_value=_resp(200, {"content": encoded, "sha": "abc"})) as mock_get:
            rev = await vcs.get_file("src/App.js", "main")

        assert rev.content == "hello\n"
        assert rev.revision == "abc"
        mock_get.assert_called_once_with("/repos/owner/repo/contents/src/App.js", params={"ref": "main"})

        with patch("httpx.AsyncClient.get", return_value=_resp(404)):
            assert await vcs.get_file("missing.js", "main") is None
        with patch("httpx.AsyncClient.get", return_value=_resp(500)):
            with pytest.raises(VCSError):
                await vcs.get_file("src/App.js", "main")
        with patch("httpx.AsyncClient.get", side_effect=httpx.ConnectError("down")):
            with pytest.raises(VCSError):
                await vcs.get_file("src/App.js", "main")
        await vcs.close()

    asyncio.run(run_test())


def test_github_put_file():
    async def run_test():
        vcs = GitHubVCS("fake", "owner/repo")
        ok = _resp(200, {"commit": {"sha": "c1", "html_url": "https://github.com/owner/repo/commit/c1"}})
        with patch("httpx.AsyncClient.put", return_value=ok) as mock_put:
            info = await vcs.put_file("src/App.js", "x", "fix", "phoenix/fix", expected_revision="abc")

        assert info.commit_id == "c1"
        payload = mock_put.call_args.kwargs["json"]
        assert payload["sha"] == "abc"
        assert payload["branch"] == "phoenix/fix"
        assert base64.b64decode(payload["content"]) == b"x"

        with patch("httpx.AsyncClient.put", return_value=_resp(409)):
            with pytest.raises(StaleRevisionError):
                await vcs.put_file("src/App.js", "x", "fix", "phoenix/fix", expected_revision="old")
        with patch("httpx.AsyncClient.put", return_value=_resp(422, text='"sha" wasn\'t supplied')):
            with pytest.raises(StaleRevisionError):
                await vcs.put_file("src/App.js", "x", "fix", "phoenix/fix")
        await vcs.close()

    asyncio.run(run_test())


def test_github_create_branch_and_pull_request():
    async def run_test():
        vcs = GitHubVCS("fake", "owner/repo")
        base_ref = _resp(200, {"object": {"sha": "base123456"}})
        with patch("httpx.AsyncClient.get", return_value=base_ref), \
             patch("httpx.AsyncClient.post", return_value=_resp(201)) as mock_post:
            await vcs.create_branch("phoenix/fix", "main")
        mock_post.assert_called_once_with(
            "/repos/owner/repo/git/refs",
            json={"ref": "refs/heads/phoenix/fix", "sha": "base123456"},
        )

        # Existing branch is reused
        with patch("httpx.AsyncClient.get", return_value=base_ref), \
             patch("httpx.AsyncClient.post", return_value=_resp(422, text="Reference already exists")):
            await vcs.create_branch("phoenix/fix", "main")

        with patch("httpx.AsyncClient.get", return_value=_resp(404)):
            with pytest.raises(VCSError):
                await vcs.create_branch("phoenix/fix", "gone")

        pr = _resp(201, {"html_url": "https://github.com/owner/repo/pull/7"})
        with patch("httpx.AsyncClient.post", return_value=pr):
            url = await vcs.open_pull_request("phoenix/fix", "title", "body", "main")
        assert url == "https://github.com/owner/repo/pull/7"
        await vcs.close()

    asyncio.run(run_test())


# ---------------------------------------------------------------------------
# GitHub Actions CI
# ---------------------------------------------------------------------------
def test_actions_trigger_returns_run():
    async def run_test():
        ci = GitHubActionsCI("fake", "owner/repo", workflow_file="build.yml")
        runs = _resp(200, {"workflow_runs": [{"id": 42, "html_url": "https://github.com/owner/repo/actions/runs/42"}]})
        with patch("httpx.AsyncClient.post", return_value=_resp(204)) as mock_post, \
             patch("httpx.AsyncClient.get", return_value=runs):
            trigger = await ci.trigger_build("phoenix/fix")

        assert trigger.build_id == "42"
        assert trigger.build_url.endswith("/runs/42")
        mock_post.assert_called_once_with(
            "/repos/owner/repo/actions/workflows/build.yml/dispatches", json={"ref": "phoenix/fix"},
        )

    asyncio.run(run_test())


def test_actions_trigger_placeholder_when_run_not_registered():
    async def run_test():
        ci = GitHubActionsCI("fake", "owner/repo")
        with patch("httpx.AsyncClient.post", return_value=_resp(204)), \
             patch("httpx.AsyncClient.get", return_value=_resp(200, {"workflow_runs": []})):
            trigger = await ci.trigger_build("phoenix/fix")
        assert trigger.build_id == "dispatch-phoenix/fix"

    asyncio.run(run_test())


def test_actions_dispatch_failure():
    async def run_test():
        ci = GitHubActionsCI("fake", "owner/repo")
        with patch("httpx.AsyncClient.post", return_value=_resp(404)):
            with pytest.raises(RebuildTriggerError):
                await ci.trigger_build("phoenix/fix")
        with patch("httpx.AsyncClient.post", side_effect=httpx.ConnectError("down")):
            with pytest.raises(RebuildTriggerError):
                await ci.trigger_build("phoenix/fix")

    asyncio.run(run_test())
