"""
Commit Models
=============
Records kept by AutoCommitService.

FixBranch:
    name        — "<prefix>/<error_type>/<short_error_id>"
    status      — active | merged | abandoned

CommitResult:
    success     — False when the commit could not be made
    changes     — number of files written
    files       — paths written on the fix branch
"""
from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FixBranch(BaseModel):
    name: str
    base_branch: str
    error_type: str
    error_id: str
    created_at: datetime = Field(default_factory=_utcnow)
    status: Literal["active", "merged", "abandoned"] = "active"


class CommitResult(BaseModel):
    success: bool
    commit_id: Optional[str] = None
    commit_url: Optional[str] = None
    branch_name: str
    message: str
    changes: int = 0
    files: List[str] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=_utcnow)
