from __future__ import annotations

from dataclasses import dataclass


class ValidationError(ValueError):
    """Malformed caller input, rejected before any I/O."""


class TransientServiceError(RuntimeError):
    """An embedding or vector store call failed and may succeed on retry."""


class EmbeddingFailedError(RuntimeError):
    def __init__(self, *, document: str, chunk_errors: dict[str, str]) -> None:
        self.document = document
        self.chunk_errors = dict(chunk_errors)
        failed = ", ".join(sorted(self.chunk_errors))
        super().__init__(
            f"failed to embed {len(self.chunk_errors)} chunk(s) of {document}: {failed}"
        )


@dataclass(frozen=True)
class DuplicateIngestionSkip:
    fingerprint: str
    source: str
    previous_source: str
    previous_timestamp: str

    def describe(self) -> str:
        return (
            f"already ingested fingerprint={self.fingerprint[:12]} "
            f"from {self.previous_source} at {self.previous_timestamp}"
        )


@dataclass(frozen=True)
class CorpusInconsistency:
    chunk_id: str
    parent_id: str | None
    reason: str

    def describe(self) -> str:
        return f"{self.chunk_id}: {self.reason}"
