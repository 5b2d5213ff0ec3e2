"""
Diff Engine
===========
Patches between two *known* full versions of a file (not AI output).

generate_patch:
    1. Identical content            → patch with no operations.
    2. Either side < SMALL_FILE_CHARS and Levenshtein similarity
       < FULL_REPLACE_SIMILARITY    → "full" patch.
    3. Otherwise a line-based walk: on the first diverging line, look ahead
       at most RESYNC_LOOKAHEAD lines on each side for the next equal pair
       and emit insert / delete / replace for the gap. Offsets are absolute
       character positions in the *original* content.

Lines keep their line endings, so offsets are plain prefix sums and the
patched output is an exact concatenation of original and new lines.

apply_patch applies operations in descending position order; every offset
therefore refers to the original content regardless of earlier edits.
"""
import logging
from typing import Dict, List, Optional, Tuple

from selfheal.core.exceptions import ChecksumMismatchError
from selfheal.models.patch import FilePatch, PatchOperation
from selfheal.utils.fingerprint import content_checksum

logger = logging.getLogger(__name__)

RESYNC_LOOKAHEAD = 10
SMALL_FILE_CHARS = 100
FULL_REPLACE_SIMILARITY = 0.3


def levenshtein_distance(a: str, b: str) -> int:
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, 1):
        current = [i]
        for j, cb in enumerate(b, 1):
            current.append(min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + (ca != cb),
            ))
        previous = current
    return previous[-1]


class DiffEngine:
    def __init__(self, lookahead: int = RESYNC_LOOKAHEAD) -> None:
        self.lookahead = lookahead

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------
    def generate_patch(self, old: str, new: str, file: str = "") -> FilePatch:
        if old == new:
            return FilePatch(kind="patch", file=file, operations=[])

        if len(old) < SMALL_FILE_CHARS or len(new) < SMALL_FILE_CHARS:
            if self._below_full_replace_threshold(old, new):
                return FilePatch(kind="full", file=file, content=new, checksum=content_checksum(new))

        operations = self._diff_operations(old, new)
        return FilePatch(kind="patch", file=file, operations=operations, checksum=content_checksum(new))

    def _below_full_replace_threshold(self, old: str, new: str) -> bool:
        shorter, longer = sorted((len(old), len(new)))
        # Distance is at least the length gap, so the ratio alone can decide.
        if longer and shorter / longer < FULL_REPLACE_SIMILARITY:
            return True
        return self.similarity(old, new) < FULL_REPLACE_SIMILARITY

    def similarity(self, a: str, b: str) -> float:
        """Levenshtein similarity in [0, 1]."""
        longer, shorter = (a, b) if len(a) >= len(b) else (b, a)
        if not longer:
            return 1.0
        distance = levenshtein_distance(longer, shorter)
        return (len(longer) - distance) / len(longer)

    def _diff_operations(self, old: str, new: str) -> List[PatchOperation]:
        old_lines = old.splitlines(keepends=True)
        new_lines = new.splitlines(keepends=True)

        offsets = [0]
        for line in old_lines:
            offsets.append(offsets[-1] + len(line))

        operations: List[PatchOperation] = []
        oi, ni = 0, 0
        while oi < len(old_lines) or ni < len(new_lines):
            if oi >= len(old_lines):
                operations.append(PatchOperation(
                    type="insert", position=len(old), content="".join(new_lines[ni:]),
                ))
                break
            if ni >= len(new_lines):
                operations.append(PatchOperation(
                    type="delete", position=offsets[oi], length=len(old) - offsets[oi],
                ))
                break
            if old_lines[oi] == new_lines[ni]:
                oi += 1
                ni += 1
                continue

            match = self._find_next_match(old_lines, new_lines, oi, ni)
            mo, mn = match if match else (len(old_lines), len(new_lines))
            operations.extend(self._gap_operation(offsets, new_lines, oi, mo, ni, mn))
            if match is None:
                break
            oi, ni = mo, mn

        return self.optimize_operations(operations)

    def _find_next_match(
        self, old_lines: List[str], new_lines: List[str], old_start: int, new_start: int
    ) -> Optional[Tuple[int, int]]:
        for old_offset in range(self.lookahead):
            oi = old_start + old_offset
            if oi >= len(old_lines):
                break
            for new_offset in range(self.lookahead):
                ni = new_start + new_offset
                if ni >= len(new_lines):
                    break
                if old_lines[oi] == new_lines[ni]:
                    return oi, ni
        return None

    @staticmethod
    def _gap_operation(
        offsets: List[int], new_lines: List[str], oi: int, mo: int, ni: int, mn: int
    ) -> List[PatchOperation]:
        position = offsets[oi]
        length = offsets[mo] - offsets[oi]
        content = "".join(new_lines[ni:mn])
        if length and content:
            return [PatchOperation(type="replace", position=position, length=length, content=content)]
        if length:
            return [PatchOperation(type="delete", position=position, length=length)]
        if content:
            return [PatchOperation(type="insert", position=position, content=content)]
        return []

    def optimize_operations(self, operations: List[PatchOperation]) -> List[PatchOperation]:
        """Merge adjacent operations of the same type."""
        if len(operations) <= 1:
            return list(operations)

        merged: List[PatchOperation] = []
        current = operations[0]
        for nxt in operations[1:]:
            if current.type == nxt.type and self._can_merge(current, nxt):
                current = PatchOperation(
                    type=current.type,
                    position=current.position,
                    length=current.length + nxt.length,
                    content=current.content + nxt.content,
                )
            else:
                merged.append(current)
                current = nxt
        merged.append(current)
        return merged

    @staticmethod
    def _can_merge(first: PatchOperation, second: PatchOperation) -> bool:
        # Offsets refer to the original, so an insert only touches another
        # insert at the very same position.
        if first.type == "insert":
            return first.position == second.position
        return first.position + first.length == second.position

    # ------------------------------------------------------------------
    # Application
    # ------------------------------------------------------------------
    def apply_patch(self, content: str, patch: FilePatch, verify_checksum: bool = False) -> str:
        """
        Apply ``patch`` to ``content``.

        Raises
        ------
        ChecksumMismatchError
            ``verify_checksum`` is set and the result does not match the
            checksum carried by the patch.
        """
        if patch.kind == "full":
            result = patch.content if patch.content is not None else content
        else:
            result = content
            ordered = sorted(enumerate(patch.operations), key=lambda item: (item[1].position, item[0]), reverse=True)
            for _, operation in ordered:
                result = self._apply_operation(result, operation)

        if verify_checksum and patch.checksum:
            actual = content_checksum(result)
            if actual != patch.checksum:
                raise ChecksumMismatchError(patch.checksum, actual)
        return result

    @staticmethod
    def _apply_operation(content: str, operation: PatchOperation) -> str:
        start = operation.position
        if operation.type == "insert":
            return content[:start] + operation.content + content[start:]
        if operation.type == "delete":
            return content[:start] + content[start + operation.length:]
        return content[:start] + operation.content + content[start + operation.length:]

    def verify_patch(self, original: str, patch: FilePatch, expected: str) -> bool:
        return self.apply_patch(original, patch) == expected

    def create_reverse_patch(self, original: str, patch: FilePatch) -> FilePatch:
        if patch.kind == "full":
            return FilePatch(kind="full", file=patch.file, content=original, checksum=content_checksum(original))
        modified = self.apply_patch(original, patch)
        return FilePatch(
            kind="patch",
            file=patch.file,
            operations=self._diff_operations(modified, original),
            checksum=content_checksum(original),
        )

    def batch_patches(self, patches: List[FilePatch]) -> List[FilePatch]:
        """One patch per file. A full patch wins; operation lists are concatenated in order."""
        by_file: Dict[str, List[FilePatch]] = {}
        for patch in patches:
            by_file.setdefault(patch.file, []).append(patch)

        batched: List[FilePatch] = []
        for filename, file_patches in by_file.items():
            if len(file_patches) == 1:
                batched.append(file_patches[0])
                continue
            full = [p for p in file_patches if p.kind == "full"]
            if full:
                batched.append(full[-1])
                continue
            operations = [op for p in file_patches for op in p.operations]
            batched.append(FilePatch(kind="patch", file=filename, operations=self.optimize_operations(operations)))
        return batched
