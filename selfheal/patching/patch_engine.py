"""
Patch Engine
============
Applies AI-authored search/replace patches even when the quoted context
drifted from the real file content.

Tiers (first success wins):
    0. structural — line diff of search → replace; every changed hunk plus
                    STRUCTURAL_CONTEXT_LINES of context must be found
                    verbatim in the file, in order. Any miss fails the tier.
    1. strict     — search verbatim in the file, first occurrence replaced.
    2. normalized — whitespace-free search must occur in the whitespace-free
                    file; then slide windows of len(search lines) ± WINDOW_SLACK
                    lines, score them, splice the best window scoring at
                    least SIMILARITY_THRESHOLD.
    3. anchored   — first/last non-blank search lines anchor a region; tier 2
                    runs on that region only and the result is spliced back.
                    When no window inside it scores high enough, the whole
                    region is scored as one window (the AI joined or split
                    lines beyond the window slack).

NotFound:
    ``apply`` returns a PatchResult with ``content=None``. Callers escalate
    to a re-prompt; ``apply_or_raise`` raises PatchNotFoundError instead.

Similarity:
    "sequence" (default) — difflib ratio on whitespace-stripped text.
    "positional"         — per-index character equality / longer length.
"""
import difflib
import logging
import re
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from selfheal.core.constants import FILE_TAG
from selfheal.core.exceptions import MalformedPatchError, PatchNotFoundError
from selfheal.models.patch import FilePatch, PatchFailure
from selfheal.models.stream_block import SearchReplace, StreamBlock
from selfheal.parser.stream_parser import parse_search_replace
from selfheal.patching.diff_engine import DiffEngine
from selfheal.utils.fingerprint import content_checksum

logger = logging.getLogger(__name__)

SIMILARITY_THRESHOLD = 0.80
WINDOW_SLACK = 1
STRUCTURAL_CONTEXT_LINES = 2
FAILURE_EXCERPT_CHARS = 500

_WHITESPACE = re.compile(r"\s+")


def _strip_ws(text: str) -> str:
    return _WHITESPACE.sub("", text)


# ---------------------------------------------------------------------------
# Similarity metrics
# ---------------------------------------------------------------------------
def sequence_similarity(a: str, b: str) -> float:
    """Edit-based similarity of the whitespace-stripped strings (0–1)."""
    na, nb = _strip_ws(a), _strip_ws(b)
    if not na and not nb:
        return 1.0
    if not na or not nb:
        return 0.0
    return difflib.SequenceMatcher(None, na, nb, autojunk=False).ratio()


def positional_similarity(a: str, b: str) -> float:
    """Characters equal at the same index after stripping whitespace, over the longer length."""
    na, nb = _strip_ws(a), _strip_ws(b)
    if not na and not nb:
        return 1.0
    if not na or not nb:
        return 0.0
    matches = sum(1 for x, y in zip(na, nb) if x == y)
    return matches / max(len(na), len(nb))


SIMILARITY_METRICS: Dict[str, Callable[[str, str], float]] = {
    "sequence": sequence_similarity,
    "positional": positional_similarity,
}


@dataclass(frozen=True)
class PatchResult:
    """``content`` is None when no tier matched."""

    content: Optional[str]
    tier: Optional[str] = None
    score: Optional[float] = None

    @property
    def found(self) -> bool:
        return self.content is not None


@dataclass
class FileEditResult:
    path: str
    content: Optional[str] = None
    patch: Optional[FilePatch] = None
    failure: Optional[PatchFailure] = None
    tier: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.failure is None


def _splice_lines(lines: List[str], start: int, end: int, replace: str) -> str:
    """Replace ``lines[start:end]`` (keepends) with ``replace``, keeping the region's line ending."""
    replacement = replace
    if end > start and lines[end - 1].endswith(("\n", "\r")) and replacement and not replacement.endswith("\n"):
        ending = "\r\n" if lines[end - 1].endswith("\r\n") else "\n"
        replacement += ending
    return "".join(lines[:start]) + replacement + "".join(lines[end:])


class PatchEngine:
    def __init__(
        self,
        similarity: str = "sequence",
        threshold: float = SIMILARITY_THRESHOLD,
        window_slack: int = WINDOW_SLACK,
        structural: bool = True,
        context_lines: int = STRUCTURAL_CONTEXT_LINES,
        diff_engine: Optional[DiffEngine] = None,
    ) -> None:
        if similarity not in SIMILARITY_METRICS:
            raise ValueError(f"Unknown similarity metric: {similarity}")
        self.similarity_name = similarity
        self._similarity = SIMILARITY_METRICS[similarity]
        self.threshold = threshold
        self.window_slack = window_slack
        self.structural = structural
        self.context_lines = context_lines
        self.diff_engine = diff_engine or DiffEngine()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def apply(self, original: str, patch: SearchReplace) -> PatchResult:
        # A verbatim hit is taken as-is: hunk context alone could match an
        # earlier, unrelated spot in the file.
        if patch.search in original:
            return PatchResult(original.replace(patch.search, patch.replace, 1), "strict", 1.0)

        if self.structural:
            content = self._apply_structural(original, patch)
            if content is not None:
                return PatchResult(content, "structural", 1.0)

        normalized = self._apply_normalized(original, patch)
        if normalized is not None:
            return PatchResult(normalized[0], "normalized", normalized[1])

        anchored = self._apply_anchored(original, patch)
        if anchored is not None:
            return PatchResult(anchored[0], "anchored", anchored[1])

        return PatchResult(None)

    def apply_or_raise(self, original: str, patch: SearchReplace, path: str = "") -> str:
        result = self.apply(original, patch)
        if result.content is None:
            raise PatchNotFoundError(path, patch.search, original[:FAILURE_EXCERPT_CHARS])
        return result.content

    def apply_block(self, block: StreamBlock, files: Dict[str, str], strict: bool = False) -> FileEditResult:
        """
        Apply one complete file block against a file map.

        The map is not modified; the caller decides whether to keep
        ``result.content``. With ``strict`` a malformed block raises
        MalformedPatchError and a search miss raises PatchNotFoundError
        instead of coming back as ``failure``.

        Parameters
        ----------
        block : StreamBlock
            A complete ``file`` block.
        files : dict
            path → current content.

        Returns
        -------
        FileEditResult
            ``patch`` on success, ``failure`` otherwise.
        """
        if block.kind != FILE_TAG or block.attributes is None:
            raise ValueError(f"Expected a file block, got {block.kind}")
        if not block.complete:
            raise ValueError("Only complete file blocks can be applied")

        path = block.attributes.path
        current = files.get(path, "")

        if block.attributes.edit_kind == "create":
            patch = FilePatch(kind="full", file=path, content=block.content,
                              checksum=content_checksum(block.content))
            return FileEditResult(path=path, content=block.content, patch=patch, tier="create")

        pair = parse_search_replace(block.content)
        if pair is None:
            if strict:
                raise MalformedPatchError(f"File block for {path} has no <search>/<replace> pair")
            logger.warning("Malformed patch block for %s: no search/replace pair", path)
            return FileEditResult(path=path, failure=PatchFailure(
                path=path, error="malformed patch block: missing <search>/<replace> pair",
            ))

        result = self.apply(current, pair)
        if result.content is None:
            if strict:
                raise PatchNotFoundError(path, pair.search, current[:FAILURE_EXCERPT_CHARS])
            logger.warning("Search block not found in %s (all tiers failed)", path)
            error = (
                f"Search block not found in file. Expected:\n{pair.search}\n\n"
                f"File content:\n{current[:FAILURE_EXCERPT_CHARS]}..."
            )
            return FileEditResult(path=path, failure=PatchFailure(path=path, search=pair.search, error=error))

        logger.info("Patched %s via %s tier", path, result.tier)
        patch = self.diff_engine.generate_patch(current, result.content, file=path)
        patch.checksum = content_checksum(result.content)
        return FileEditResult(path=path, content=result.content, patch=patch, tier=result.tier)

    # ------------------------------------------------------------------
    # Tier 0: structural
    # ------------------------------------------------------------------
    def _apply_structural(self, original: str, patch: SearchReplace) -> Optional[str]:
        if not patch.search.strip():
            return None
        search_lines = patch.search.splitlines(keepends=True)
        replace_lines = patch.replace.splitlines(keepends=True)
        matcher = difflib.SequenceMatcher(None, search_lines, replace_lines, autojunk=False)

        groups = list(matcher.get_grouped_opcodes(self.context_lines))
        if not groups:
            return None

        pieces: List[str] = []
        cursor = 0
        for group in groups:
            i1, j1 = group[0][1], group[0][3]
            i2, j2 = group[-1][2], group[-1][4]
            needle = "".join(search_lines[i1:i2])
            if not needle:
                return None
            at = original.find(needle, cursor)
            if at == -1:
                return None
            pieces.append(original[cursor:at])
            pieces.append("".join(replace_lines[j1:j2]))
            cursor = at + len(needle)
        pieces.append(original[cursor:])
        return "".join(pieces)

    # ------------------------------------------------------------------
    # Tier 2: normalized
    # ------------------------------------------------------------------
    def _apply_normalized(self, original: str, patch: SearchReplace) -> Optional[Tuple[str, float]]:
        norm_search = _strip_ws(patch.search)
        if not norm_search or norm_search not in _strip_ws(original):
            return None

        lines = original.splitlines(keepends=True)
        match = self._best_window(lines, patch.search)
        if match is None:
            return None
        start, end, score = match
        return _splice_lines(lines, start, end, patch.replace), score

    def _best_window(self, lines: List[str], search: str) -> Optional[Tuple[int, int, float]]:
        search_count = len(search.splitlines())
        sizes = [search_count]
        for slack in range(1, self.window_slack + 1):
            sizes.extend([search_count + slack, search_count - slack])

        best: Optional[Tuple[int, int, float]] = None
        for size in sizes:
            if size <= 0:
                continue
            for start in range(0, len(lines) - size + 1):
                window = "".join(lines[start:start + size])
                score = self._similarity(window, search)
                if score >= self.threshold and (best is None or score > best[2]):
                    best = (start, start + size, score)
        return best

    # ------------------------------------------------------------------
    # Tier 3: context-anchored
    # ------------------------------------------------------------------
    def _apply_anchored(self, original: str, patch: SearchReplace) -> Optional[Tuple[str, float]]:
        anchors = [line.strip() for line in patch.search.splitlines() if line.strip()]
        if len(anchors) < 2:
            return None
        first, last = anchors[0], anchors[-1]

        lines = original.splitlines(keepends=True)
        start = next((i for i, line in enumerate(lines) if line.strip() == first), -1)
        end = next((i for i in range(len(lines) - 1, -1, -1) if lines[i].strip() == last), -1)
        if start == -1 or end == -1 or start >= end:
            return None

        region = "".join(lines[start:end + 1])
        patched = self._apply_normalized(region, patch)
        if patched is not None:
            return "".join(lines[:start]) + patched[0] + "".join(lines[end + 1:]), patched[1]

        # Line count drifted past the window slack: score the anchored region as one window.
        score = self._similarity(region, patch.search)
        if score < self.threshold:
            return None
        return _splice_lines(lines, start, end + 1, patch.replace), score
