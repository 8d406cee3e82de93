"""Two-level parent/child chunking for Markdown-like text.

Parents carry context for the answer generator, children are the retrieval
unit. Both levels are built by walking the text line by line; a boundary is
only placed outside an open code fence, so a fenced block always lands whole
inside one child even when that makes the child larger than its target.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import re

from ragkb.services.rag.errors import ValidationError
from ragkb.services.rag.types import ChildChunk, ChunkKind, ParentChunk

_FENCE_MARKERS = ("```", "~~~")
_HEADING_RE = re.compile(r"^(#{1,6})\s+\S")
_INLINE_CODE_RE = re.compile(r"`[^`\n]+`")
_DECLARATION_RE = re.compile(
    r"^\s*(?:pub(?:\([a-z]+\))?\s+|export\s+|async\s+|public\s+|private\s+|static\s+)*"
    r"(?:def|class|fn|func|function|struct|enum|impl|trait|interface|import|package"
    r"|const|let|var|#include|#define|from\s+[\w.]+\s+import)\b"
)
_PUNCTUATION_ONLY_RE = re.compile(r"^[\s{}()\[\];,]+$")

SUMMARY_LINE_MIN_CHARS = 50
SUMMARY_LINE_MAX_CHARS = 200


def _fence_marker(line: str) -> str | None:
    stripped = line.lstrip()
    for marker in _FENCE_MARKERS:
        if stripped.startswith(marker):
            return marker
    return None


def _advance_fence(open_fence: str | None, marker: str | None) -> str | None:
    if marker is None:
        return open_fence
    if open_fence is None:
        return marker
    if marker == open_fence:
        return None
    return open_fence


def _heading_level(line: str) -> int:
    match = _HEADING_RE.match(line)
    if match is None:
        return 0
    return len(match.group(1))


@dataclass
class _Segment:
    start_line: int
    lines: list[str] = field(default_factory=list)
    headers: tuple[str, ...] = ()

    @property
    def text(self) -> str:
        return "".join(self.lines)

    @property
    def end_line(self) -> int:
        return self.start_line + max(len(self.lines), 1) - 1

    def is_blank(self) -> bool:
        return not self.text.strip()


def _merge_blank_segments(segments: list[_Segment]) -> list[_Segment]:
    merged: list[_Segment] = []
    pending: _Segment | None = None

    for segment in segments:
        if segment.is_blank():
            if merged:
                merged[-1].lines.extend(segment.lines)
            elif pending is None:
                pending = segment
            else:
                pending.lines.extend(segment.lines)
            continue

        if pending is not None:
            segment = _Segment(
                start_line=pending.start_line,
                lines=pending.lines + segment.lines,
                headers=segment.headers,
            )
            pending = None
        merged.append(segment)

    return merged


def classify_chunk(text: str) -> ChunkKind:
    fenced_chars = 0
    total_chars = 0
    prose_lines = 0
    code_like_lines = 0
    declaration_lines = 0
    has_fence = False
    has_inline_code = False
    first_line: str | None = None
    open_fence: str | None = None

    for line in text.splitlines():
        marker = _fence_marker(line)
        weight = len("".join(line.split()))
        total_chars += weight
        if first_line is None and line.strip():
            first_line = line

        if open_fence is not None or marker is not None:
            has_fence = True
            fenced_chars += weight
        elif line.strip():
            prose_lines += 1
            if _DECLARATION_RE.match(line):
                declaration_lines += 1
                code_like_lines += 1
            elif _PUNCTUATION_ONLY_RE.match(line):
                code_like_lines += 1
            if _INLINE_CODE_RE.search(line):
                has_inline_code = True

        open_fence = _advance_fence(open_fence, marker)

    if total_chars == 0:
        return ChunkKind.TEXT
    if fenced_chars * 2 >= total_chars:
        return ChunkKind.CODE
    if declaration_lines and code_like_lines * 2 >= prose_lines:
        return ChunkKind.CODE
    if first_line is not None and _heading_level(first_line):
        return ChunkKind.HEADING
    if has_fence or has_inline_code:
        return ChunkKind.MIXED
    return ChunkKind.TEXT


def summarize(text: str, headers: tuple[str, ...]) -> str:
    summary = " > ".join(headers)
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped or line.startswith("#") or len(stripped) <= SUMMARY_LINE_MIN_CHARS:
            continue
        snippet = stripped[:SUMMARY_LINE_MAX_CHARS]
        if len(stripped) > SUMMARY_LINE_MAX_CHARS:
            snippet += "..."
        summary = f"{summary} | {snippet}" if summary else snippet
        break
    return summary


class HierarchicalChunker:
    def __init__(
        self,
        *,
        parent_target_size: int = 3500,
        child_target_size: int = 750,
        min_parent_size: int = 800,
        fence_break_min_size: int = 300,
    ) -> None:
        if child_target_size <= 0:
            raise ValidationError("child_target_size must be > 0")
        if parent_target_size < child_target_size:
            raise ValidationError("parent_target_size must be >= child_target_size")
        if min_parent_size < 0 or fence_break_min_size < 0:
            raise ValidationError("minimum sizes must be >= 0")

        self.parent_target_size = parent_target_size
        self.child_target_size = child_target_size
        self.min_parent_size = min_parent_size
        self.fence_break_min_size = fence_break_min_size

    def chunk(
        self,
        text: str,
        *,
        document_id: str = "doc",
    ) -> list[tuple[ParentChunk, list[ChildChunk]]]:
        normalized = text.replace("\r\n", "\n").replace("\r", "\n")
        if not normalized.strip():
            return []

        lines = normalized.splitlines(keepends=True)
        hierarchy: list[tuple[ParentChunk, list[ChildChunk]]] = []

        for parent_index, segment in enumerate(self._split_parents(lines)):
            parent_text = segment.text
            parent = ParentChunk(
                chunk_id=f"{document_id}-p{parent_index:04d}",
                document_id=document_id,
                index=parent_index,
                text=parent_text,
                start_line=segment.start_line + 1,
                end_line=segment.end_line + 1,
                headers=segment.headers,
                summary=summarize(parent_text, segment.headers),
            )
            children = [
                ChildChunk(
                    chunk_id=f"{parent.chunk_id}-c{child_index:03d}",
                    parent_id=parent.chunk_id,
                    document_id=document_id,
                    index=child_index,
                    text=child.text,
                    kind=classify_chunk(child.text),
                    start_line=child.start_line + 1,
                    end_line=child.end_line + 1,
                )
                for child_index, child in enumerate(self._split_children(segment))
            ]
            hierarchy.append((parent, children))

        return hierarchy

    def _split_parents(self, lines: list[str]) -> list[_Segment]:
        segments: list[_Segment] = []
        trail: list[str] = []
        current = _Segment(start_line=0)
        size = 0
        open_fence: str | None = None

        for number, line in enumerate(lines):
            marker = _fence_marker(line)
            level = _heading_level(line) if open_fence is None and marker is None else 0

            if level and level <= 2 and size >= self.min_parent_size:
                current.headers = tuple(trail)
                segments.append(current)
                current = _Segment(start_line=number)
                size = 0

            if level and level <= 2:
                trail = [line.strip()]
            elif level == 3:
                trail = trail[:1] + [line.strip()]

            current.lines.append(line)
            size += len(line)
            open_fence = _advance_fence(open_fence, marker)

            if size >= self.parent_target_size and open_fence is None:
                current.headers = tuple(trail)
                segments.append(current)
                current = _Segment(start_line=number + 1)
                size = 0

        if current.lines:
            # an unterminated fence ends with the document
            current.headers = tuple(trail)
            segments.append(current)

        return _merge_blank_segments(segments)

    def _split_children(self, parent: _Segment) -> list[_Segment]:
        if len(parent.text) <= self.child_target_size:
            return [_Segment(start_line=parent.start_line, lines=list(parent.lines))]

        segments: list[_Segment] = []
        current = _Segment(start_line=parent.start_line)
        size = 0
        open_fence: str | None = None

        for offset, line in enumerate(parent.lines):
            number = parent.start_line + offset
            marker = _fence_marker(line)

            opening = open_fence is None and marker is not None
            if opening and size >= self.fence_break_min_size and not current.is_blank():
                segments.append(current)
                current = _Segment(start_line=number)
                size = 0

            current.lines.append(line)
            size += len(line)
            open_fence = _advance_fence(open_fence, marker)

            if size >= self.child_target_size and open_fence is None:
                segments.append(current)
                current = _Segment(start_line=number + 1)
                size = 0

        if current.lines:
            segments.append(current)

        return _merge_blank_segments(segments)
