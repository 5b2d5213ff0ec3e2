"""
Patch Model
===========
Pydantic models for file edits produced by the AI or by DiffEngine.

Fields:
    kind        — "full" (content replaces the file) | "patch" (operation list)
    file        — repository-relative path
    content     — new file content (full patches only)
    operations  — insert / delete / replace at absolute offsets of the original
    checksum    — optional checksum of the expected post-image

PatchFailure:
    A search block that matched no PatchEngine tier. ``error`` carries the
    search text and an excerpt of the current file for the re-prompt.
"""
from typing import List, Literal, Optional

from pydantic import BaseModel, Field


class PatchOperation(BaseModel):
    type: Literal["insert", "delete", "replace"]
    position: int
    length: int = 0
    content: str = ""


class FilePatch(BaseModel):
    kind: Literal["full", "patch"] = "patch"
    file: str = ""
    content: Optional[str] = None
    operations: List[PatchOperation] = Field(default_factory=list)
    checksum: Optional[str] = None


class PatchFailure(BaseModel):
    path: str
    search: str = ""
    error: str
