"""Append-only registry of ingested document fingerprints.

One ``fingerprint|source|chunk_count|timestamp`` line per successful ingestion,
in ingestion order. Reads parse a fresh snapshot of the file and never block
writers; writes go through a lock and a single ``O_APPEND`` write so that a
line is never interleaved with another process's append.
"""

from __future__ import annotations

from datetime import datetime, timezone
import hashlib
import logging
import os
from pathlib import Path
import threading

from ragkb.services.rag.types import FingerprintRecord

logger = logging.getLogger(__name__)

_SEPARATOR = "|"


def compute_fingerprint(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _clean_source(source: str) -> str:
    return source.replace(_SEPARATOR, "/").replace("\r", " ").replace("\n", " ")


def _format_line(record: FingerprintRecord) -> str:
    return _SEPARATOR.join(
        [
            record.fingerprint,
            _clean_source(record.source),
            str(record.chunk_count),
            record.timestamp,
        ]
    ) + "\n"


def _parse_line(line: str) -> FingerprintRecord | None:
    parts = line.rstrip("\n").split(_SEPARATOR)
    if len(parts) != 4:
        return None
    fingerprint, source, chunk_count, timestamp = parts
    if not fingerprint or not chunk_count.isdigit():
        return None
    return FingerprintRecord(
        fingerprint=fingerprint,
        source=source,
        chunk_count=int(chunk_count),
        timestamp=timestamp,
    )


class FingerprintLedger:
    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)
        self._write_lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def records(self) -> list[FingerprintRecord]:
        if not self._path.exists():
            return []

        records: list[FingerprintRecord] = []
        content = self._path.read_text(encoding="utf-8")
        for line_number, line in enumerate(content.splitlines(), start=1):
            if not line.strip():
                continue
            record = _parse_line(line)
            if record is None:
                logger.warning("skipping malformed ledger line %s:%d", self._path, line_number)
                continue
            records.append(record)
        return records

    def get(self, fingerprint: str) -> FingerprintRecord | None:
        for record in self.records():
            if record.fingerprint == fingerprint:
                return record
        return None

    def is_ingested(self, fingerprint: str) -> bool:
        return self.get(fingerprint) is not None

    def record(
        self,
        fingerprint: str,
        source: str,
        chunk_count: int,
        timestamp: datetime | str | None = None,
    ) -> FingerprintRecord:
        if not fingerprint or _SEPARATOR in fingerprint:
            raise ValueError(f"invalid fingerprint: {fingerprint!r}")
        if chunk_count < 0:
            raise ValueError("chunk_count must be >= 0")

        if timestamp is None:
            timestamp = datetime.now(timezone.utc)
        if isinstance(timestamp, datetime):
            timestamp = timestamp.isoformat()

        record = FingerprintRecord(
            fingerprint=fingerprint,
            source=_clean_source(source),
            chunk_count=chunk_count,
            timestamp=timestamp,
        )

        with self._write_lock:
            existing = self.get(fingerprint)
            if existing is not None:
                if existing.source != record.source:
                    logger.warning(
                        "fingerprint %s already recorded for %s; not recording %s",
                        fingerprint[:12],
                        existing.source,
                        record.source,
                    )
                return existing

            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self._path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o644)
            try:
                os.write(fd, _format_line(record).encode("utf-8"))
                os.fsync(fd)
            finally:
                os.close(fd)

        return record
