"""
VCS Collaborator
================
Narrow contract the repair pipeline needs from version control, plus a
GitHub REST adapter and an in-memory implementation.

Contract:
    get_file(path, ref)                         → FileRevision | None
    put_file(path, content, message, branch,
             expected_revision=None)            → CommitInfo
    delete_file(path, message, branch, revision)
    create_branch(name, base)
    open_pull_request(branch, title, body, base) → url

Stale revisions:
    put_file raises StaleRevisionError when ``expected_revision`` no longer
    matches the file on the branch, so the caller can refetch and retry.
    GitHub reports this as HTTP 409, or 422 mentioning the sha.
"""
import base64
import itertools
import logging
from typing import Dict, List, Optional, Protocol, Tuple, runtime_checkable

import httpx
from pydantic import BaseModel

from selfheal.core.exceptions import StaleRevisionError, VCSError

logger = logging.getLogger(__name__)


class FileRevision(BaseModel):
    path: str
    content: str
    revision: str


class CommitInfo(BaseModel):
    commit_id: str
    commit_url: Optional[str] = None


@runtime_checkable
class VCSCollaborator(Protocol):
    async def get_file(self, path: str, ref: str) -> Optional[FileRevision]:
        ...

    async def put_file(self, path: str, content: str, message: str, branch: str,
                       expected_revision: Optional[str] = None) -> CommitInfo:
        ...

    async def delete_file(self, path: str, message: str, branch: str, revision: str) -> CommitInfo:
        ...

    async def create_branch(self, name: str, base: str) -> None:
        ...

    async def open_pull_request(self, branch: str, title: str, body: str, base: str) -> str:
        ...


# ---------------------------------------------------------------------------
# GitHub adapter
# ---------------------------------------------------------------------------
class GitHubVCS:
    """
    GitHub contents / refs / pulls API adapter.

    Usage:
        vcs = GitHubVCS(token, "owner/repo")
        rev = await vcs.get_file("package.json", "main")
        await vcs.close()
    """

    API_URL = "https://api.github.com"

    def __init__(self, token: str, repo: str, timeout_seconds: float = 30.0,
                 author_name: str = "Project Phoenix", author_email: str = "phoenix@selfheal.local") -> None:
        self.repo = repo
        self.author = {"name": author_name, "email": author_email}
        self.headers = {
            "Accept": "application/vnd.github.v3+json",
            "User-Agent": "Selfheal-Phoenix",
        }
        if token:
            self.headers["Authorization"] = f"token {token}"
        self._timeout = timeout_seconds
        self._http: Optional[httpx.AsyncClient] = None

    async def _get_http(self) -> httpx.AsyncClient:
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(
                base_url=self.API_URL, headers=self.headers, timeout=httpx.Timeout(self._timeout),
            )
        return self._http

    async def close(self) -> None:
        if self._http and not self._http.is_closed:
            await self._http.aclose()
            self._http = None

    def _contents_url(self, path: str) -> str:
        return f"/repos/{self.repo}/contents/{path.lstrip('/')}"

    async def get_file(self, path: str, ref: str) -> Optional[FileRevision]:
        http = await self._get_http()
        try:
            resp = await http.get(self._contents_url(path), params={"ref": ref})
        except httpx.HTTPError as e:
            raise VCSError(f"GET {path}@{ref} failed: {e}") from e
        if resp.status_code == 404:
            return None
        if resp.status_code >= 400:
            raise VCSError(f"GET {path}@{ref} failed: HTTP {resp.status_code}")
        data = resp.json()
        content = base64.b64decode(data.get("content", "")).decode("utf-8")
        return FileRevision(path=path, content=content, revision=data["sha"])

    async def put_file(self, path: str, content: str, message: str, branch: str,
                       expected_revision: Optional[str] = None) -> CommitInfo:
        http = await self._get_http()
        payload = {
            "message": message,
            "content": base64.b64encode(content.encode("utf-8")).decode("ascii"),
            "branch": branch,
            "committer": self.author,
        }
        if expected_revision:
            payload["sha"] = expected_revision
        try:
            resp = await http.put(self._contents_url(path), json=payload)
        except httpx.HTTPError as e:
            raise VCSError(f"PUT {path} on {branch} failed: {e}") from e
        self._raise_for_conflict(resp, path, expected_revision)
        if resp.status_code >= 400:
            raise VCSError(f"PUT {path} on {branch} failed: HTTP {resp.status_code}")
        commit = resp.json().get("commit", {})
        return CommitInfo(commit_id=commit.get("sha", ""), commit_url=commit.get("html_url"))

    async def delete_file(self, path: str, message: str, branch: str, revision: str) -> CommitInfo:
        http = await self._get_http()
        payload = {"message": message, "sha": revision, "branch": branch, "committer": self.author}
        try:
            resp = await http.request("DELETE", self._contents_url(path), json=payload)
        except httpx.HTTPError as e:
            raise VCSError(f"DELETE {path} on {branch} failed: {e}") from e
        self._raise_for_conflict(resp, path, revision)
        if resp.status_code >= 400:
            raise VCSError(f"DELETE {path} on {branch} failed: HTTP {resp.status_code}")
        commit = resp.json().get("commit", {})
        return CommitInfo(commit_id=commit.get("sha", ""), commit_url=commit.get("html_url"))

    @staticmethod
    def _raise_for_conflict(resp: httpx.Response, path: str, revision: Optional[str]) -> None:
        if resp.status_code == 409:
            raise StaleRevisionError(path, revision)
        if resp.status_code == 422 and "sha" in resp.text.lower():
            raise StaleRevisionError(path, revision)

    async def create_branch(self, name: str, base: str) -> None:
        http = await self._get_http()
        try:
            ref_resp = await http.get(f"/repos/{self.repo}/git/ref/heads/{base}")
            if ref_resp.status_code >= 400:
                raise VCSError(f"Base branch {base} not found: HTTP {ref_resp.status_code}")
            base_sha = ref_resp.json()["object"]["sha"]
            resp = await http.post(
                f"/repos/{self.repo}/git/refs",
                json={"ref": f"refs/heads/{name}", "sha": base_sha},
            )
        except httpx.HTTPError as e:
            raise VCSError(f"Creating branch {name} failed: {e}") from e
        if resp.status_code == 422 and "already exists" in resp.text:
            logger.info("Branch %s already exists, reusing it", name)
            return
        if resp.status_code >= 400:
            raise VCSError(f"Creating branch {name} failed: HTTP {resp.status_code}")
        logger.info("Created branch %s from %s (%s)", name, base, base_sha[:7])

    async def open_pull_request(self, branch: str, title: str, body: str, base: str) -> str:
        http = await self._get_http()
        try:
            resp = await http.post(
                f"/repos/{self.repo}/pulls",
                json={"title": title, "body": body, "head": branch, "base": base},
            )
        except httpx.HTTPError as e:
            raise VCSError(f"Opening pull request for {branch} failed: {e}") from e
        if resp.status_code >= 400:
            raise VCSError(f"Opening pull request for {branch} failed: HTTP {resp.status_code}")
        return resp.json().get("html_url", "")


# ---------------------------------------------------------------------------
# In-memory implementation (dry runs, tests)
# ---------------------------------------------------------------------------
class InMemoryVCS:
    """Branch → path → (content, revision) store with GitHub-like semantics."""

    def __init__(self, files: Optional[Dict[str, str]] = None, base_branch: str = "main") -> None:
        self._counter = itertools.count(1)
        self.branches: Dict[str, Dict[str, Tuple[str, str]]] = {
            base_branch: {p: (c, self._next_revision()) for p, c in (files or {}).items()}
        }
        self.commits: List[Dict[str, str]] = []
        self.pull_requests: List[Dict[str, str]] = []

    def _next_revision(self) -> str:
        return f"rev{next(self._counter)}"

    def _branch(self, name: str) -> Dict[str, Tuple[str, str]]:
        if name not in self.branches:
            raise VCSError(f"Unknown branch {name}")
        return self.branches[name]

    async def get_file(self, path: str, ref: str) -> Optional[FileRevision]:
        entry = self._branch(ref).get(path)
        if entry is None:
            return None
        return FileRevision(path=path, content=entry[0], revision=entry[1])

    async def put_file(self, path: str, content: str, message: str, branch: str,
                       expected_revision: Optional[str] = None) -> CommitInfo:
        files = self._branch(branch)
        current = files.get(path)
        if current is not None and expected_revision != current[1]:
            raise StaleRevisionError(path, expected_revision)
        files[path] = (content, self._next_revision())
        commit_id = f"commit{len(self.commits) + 1}"
        self.commits.append({"id": commit_id, "path": path, "branch": branch, "message": message})
        return CommitInfo(commit_id=commit_id, commit_url=f"memory://{branch}/{commit_id}")

    async def delete_file(self, path: str, message: str, branch: str, revision: str) -> CommitInfo:
        files = self._branch(branch)
        current = files.get(path)
        if current is None or current[1] != revision:
            raise StaleRevisionError(path, revision)
        del files[path]
        commit_id = f"commit{len(self.commits) + 1}"
        self.commits.append({"id": commit_id, "path": path, "branch": branch, "message": message})
        return CommitInfo(commit_id=commit_id, commit_url=f"memory://{branch}/{commit_id}")

    async def create_branch(self, name: str, base: str) -> None:
        if name not in self.branches:
            self.branches[name] = dict(self._branch(base))

    async def open_pull_request(self, branch: str, title: str, body: str, base: str) -> str:
        self.pull_requests.append({"branch": branch, "title": title, "body": body, "base": base})
        return f"memory://pulls/{len(self.pull_requests)}"
