"""
Stream Block Parser
===================
Incrementally extracts thinking / shell / file blocks from streamed AI text.

Pipeline:
    1. Append the chunk to a cumulative buffer (tags may straddle chunks).
    2. Re-scan the whole buffer:
         thinking / shell — first occurrence only
         file             — every occurrence, in order
    3. A block is complete iff its closing tag is present.

Deduplication:
    ``feed`` is cumulative: a complete block is reported again on every
    later call. ``BlockDeduplicator`` filters such a list by
    (identity, complete); ``feed_new`` does the same internally. A complete
    block is emitted once; an incomplete block is emitted again only when
    its content grew.

Abandonment:
    A block that never closes stays ``complete=False``. That is not an
    error; ``abandoned_blocks`` lists such blocks once the stream is over.
"""
import logging
import re
from typing import Dict, List, Optional, Set, Tuple

from selfheal.core.constants import FILE_TAG, REPLACE_TAG, SEARCH_TAG, SHELL_TAG, THINKING_TAG
from selfheal.models.stream_block import BlockAttributes, EditKind, SearchReplace, StreamBlock

logger = logging.getLogger(__name__)

_THINKING_RE = re.compile(r"<thinking>([\s\S]*?)(</thinking>|\Z)")
_SHELL_RE = re.compile(r"<shell>([\s\S]*?)(</shell>|\Z)")
_FILE_RE = re.compile(r"<file\s+path=\"([^\"]+)\"\s+type=\"([^\"]+)\">([\s\S]*?)(</file>|\Z)")

_SEARCH_RE = re.compile(rf"<{SEARCH_TAG}>([\s\S]*?)</{SEARCH_TAG}>")
_REPLACE_RE = re.compile(rf"<{REPLACE_TAG}>([\s\S]*?)</{REPLACE_TAG}>")

_PATH_ATTR_RE = re.compile(r"path=\"([^\"]+)\"")
_TYPE_ATTR_RE = re.compile(r"type=\"([^\"]+)\"")


def parse_search_replace(content: str) -> Optional[SearchReplace]:
    """
    Extract the first <search>/<replace> pair from a file block.

    Whitespace is returned verbatim: indentation inside the pair matters
    for exact matching.

    Returns
    -------
    SearchReplace or None
        None when either tag pair is missing.
    """
    search_match = _SEARCH_RE.search(content)
    replace_match = _REPLACE_RE.search(content)
    if not search_match or not replace_match:
        return None
    return SearchReplace(search=search_match.group(1), replace=replace_match.group(1))


def edit_kind_of(raw: str) -> EditKind:
    """Map a streamed ``type`` attribute to an edit kind; anything but "create" patches."""
    return "create" if raw.strip().lower() == "create" else "patch"


class BlockDeduplicator:
    """Caller-side filter for the cumulative ``feed`` output."""

    def __init__(self) -> None:
        self._completed: Set[Tuple] = set()
        self._partial_lengths: Dict[Tuple, int] = {}

    def filter(self, blocks: List[StreamBlock]) -> List[StreamBlock]:
        fresh: List[StreamBlock] = []
        for block in blocks:
            identity = block.identity
            if identity in self._completed:
                continue
            if block.complete:
                self._completed.add(identity)
                self._partial_lengths.pop(identity, None)
                fresh.append(block)
                continue
            seen_length = self._partial_lengths.get(identity)
            if seen_length is not None and len(block.content) <= seen_length:
                continue
            self._partial_lengths[identity] = len(block.content)
            fresh.append(block)
        return fresh

    def reset(self) -> None:
        self._completed.clear()
        self._partial_lengths.clear()


class StreamBlockParser:
    def __init__(self) -> None:
        self._buffer = ""
        self._dedupe = BlockDeduplicator()
        self._last_blocks: List[StreamBlock] = []

    @property
    def buffer(self) -> str:
        return self._buffer

    def feed(self, chunk: str) -> List[StreamBlock]:
        """Append ``chunk`` and return every block currently in the buffer."""
        self._buffer += chunk
        blocks: List[StreamBlock] = []

        thinking = _THINKING_RE.search(self._buffer)
        if thinking:
            blocks.append(StreamBlock(
                kind=THINKING_TAG,
                content=thinking.group(1),
                complete=bool(thinking.group(2)),
            ))

        shell = _SHELL_RE.search(self._buffer)
        if shell:
            blocks.append(StreamBlock(
                kind=SHELL_TAG,
                content=shell.group(1).strip(),
                complete=bool(shell.group(2)),
            ))

        for ordinal, match in enumerate(_FILE_RE.finditer(self._buffer)):
            blocks.append(StreamBlock(
                kind=FILE_TAG,
                attributes=BlockAttributes(path=match.group(1), edit_kind=edit_kind_of(match.group(2))),
                content=match.group(3),
                complete=bool(match.group(4)),
                ordinal=ordinal,
            ))

        self._last_blocks = blocks
        return blocks

    def feed_new(self, chunk: str) -> List[StreamBlock]:
        """Like ``feed`` but only returns blocks not emitted before."""
        return self._dedupe.filter(self.feed(chunk))

    def abandoned_blocks(self) -> List[StreamBlock]:
        """Blocks still open; meaningful once the stream has ended."""
        abandoned = [b for b in self._last_blocks if not b.complete]
        for block in abandoned:
            logger.debug("Abandoned %s block (path=%s, %d chars)", block.kind, block.path, len(block.content))
        return abandoned

    # ------------------------------------------------------------------
    # Peek accessors (live progress display only)
    # ------------------------------------------------------------------
    def has_incomplete_blocks(self) -> bool:
        buf = self._buffer
        return (
            ("<thinking>" in buf and "</thinking>" not in buf)
            or ("<shell>" in buf and "</shell>" not in buf)
            or self.incomplete_file() is not None
        )

    def incomplete_thinking(self) -> Optional[str]:
        return self._incomplete_simple("thinking")

    def incomplete_shell(self) -> Optional[str]:
        return self._incomplete_simple("shell")

    def _incomplete_simple(self, tag: str) -> Optional[str]:
        start = self._buffer.find(f"<{tag}>")
        if start == -1 or f"</{tag}>" in self._buffer:
            return None
        return self._buffer[start + len(tag) + 2:].strip()

    def incomplete_file(self) -> Optional[Dict[str, str]]:
        """Path, edit kind and partial content of the file being written."""
        start = self._buffer.rfind("<file")
        if start == -1 or self._buffer.find("</file>", start) != -1:
            return None
        partial = self._buffer[start:]
        path_match = _PATH_ATTR_RE.search(partial)
        type_match = _TYPE_ATTR_RE.search(partial)
        if not path_match or not type_match:
            return None
        close = partial.find(">")
        content = partial[close + 1:] if close != -1 else ""
        return {"path": path_match.group(1), "edit_kind": edit_kind_of(type_match.group(1)), "content": content}

    def reset(self) -> None:
        self._buffer = ""
        self._last_blocks = []
        self._dedupe.reset()
