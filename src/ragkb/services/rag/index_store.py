from __future__ import annotations

from datetime import datetime, timezone
import json
from pathlib import Path

from ragkb.services.rag.types import StoredPoint
from ragkb.services.rag.vector_store import VectorStore

EXPORT_VERSION = "1"


def export_collection(store: VectorStore, path: Path, *, include_vectors: bool = True) -> int:
    points: list[dict[str, object]] = []
    for point in store.scroll():
        record: dict[str, object] = {"chunk_id": point.chunk_id, "payload": point.payload}
        if include_vectors:
            record["vector"] = point.vector
        points.append(record)

    payload = {
        "version": EXPORT_VERSION,
        "exported_at": datetime.now(timezone.utc).isoformat(),
        "point_count": len(points),
        "points": points,
    }

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps(payload, ensure_ascii=False, indent=2),
        encoding="utf-8",
    )
    return len(points)


def _load_points(path: Path) -> list[StoredPoint]:
    if not path.exists():
        raise FileNotFoundError(f"Export file not found: {path}")

    payload = json.loads(path.read_text(encoding="utf-8"))
    records = payload.get("points") if isinstance(payload, dict) else None
    if not isinstance(records, list):
        raise ValueError(f"Invalid export payload in {path}: 'points' must be a list")

    points: list[StoredPoint] = []
    for record in records:
        chunk_id = record.get("chunk_id") if isinstance(record, dict) else None
        point_payload = record.get("payload") if isinstance(record, dict) else None
        if not isinstance(chunk_id, str) or not isinstance(point_payload, dict):
            raise ValueError(f"Invalid export payload in {path}: malformed point {record!r}")

        vector = record.get("vector")
        if vector is not None and not isinstance(vector, list):
            raise ValueError(f"Invalid export payload in {path}: vector of {chunk_id} must be a list")
        points.append(
            StoredPoint(
                chunk_id=chunk_id,
                vector=[float(value) for value in vector] if vector is not None else None,
                payload=point_payload,
            )
        )
    return points


def import_collection(store: VectorStore, path: Path) -> int:
    points = _load_points(path)
    dimensions = {len(point.vector) for point in points if point.vector}
    if len(dimensions) > 1:
        raise ValueError(f"Invalid export payload in {path}: mixed vector dimensions {sorted(dimensions)}")
    if not dimensions:
        if any(point.payload.get("chunk_type") != "parent" for point in points):
            raise ValueError(f"Export {path} has no vectors; re-export with vectors to import it")
        return 0

    store.ensure_collection(dimensions.pop())
    store.upsert(points)
    return len(points)
