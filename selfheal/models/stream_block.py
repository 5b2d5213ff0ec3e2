"""
Stream Block Model
==================
One thinking / shell / file unit extracted from a streamed AI response.

Fields:
    kind        — "thinking" | "shell" | "file"
    attributes  — file blocks only: path + edit_kind ("create" | "patch")
    content     — block body so far (verbatim; shell content is stripped)
    complete    — True once the closing tag has been seen; terminal
    ordinal     — occurrence index among blocks of the same kind

Identity:
    (kind, path, ordinal). Two file blocks that patch the same path in one
    stream are distinct blocks and both get applied.
"""
from typing import Literal, Optional, Tuple

from pydantic import BaseModel

BlockKind = Literal["thinking", "shell", "file"]
EditKind = Literal["create", "patch"]


class BlockAttributes(BaseModel):
    path: str
    edit_kind: EditKind = "patch"


class StreamBlock(BaseModel):
    kind: BlockKind
    attributes: Optional[BlockAttributes] = None
    content: str = ""
    complete: bool = False
    ordinal: int = 0

    @property
    def path(self) -> Optional[str]:
        return self.attributes.path if self.attributes else None

    @property
    def identity(self) -> Tuple[str, Optional[str], int]:
        return (self.kind, self.path, self.ordinal)


class SearchReplace(BaseModel):
    """Search/replace pair; whitespace is kept exactly as streamed."""

    search: str
    replace: str
