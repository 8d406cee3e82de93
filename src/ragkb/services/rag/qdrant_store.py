from __future__ import annotations

from typing import Any, Iterator, Sequence
import uuid

import httpx

from ragkb.services.rag.filters import Predicate, to_qdrant_filter
from ragkb.services.rag.types import Candidate, StoredPoint
from ragkb.services.rag.vector_store import VectorStoreError

CHILD_VECTOR = "child"
CHILD_CHUNK_TYPES = ["text", "code", "heading", "mixed"]
SCROLL_PAGE_SIZE = 256

_POINT_NAMESPACE = uuid.UUID("6f1d3c52-8a4e-4c1b-9f0e-2b7d5a9c3e41")


def point_id(chunk_id: str) -> str:
    return str(uuid.uuid5(_POINT_NAMESPACE, chunk_id))


class QdrantVectorStore:
    """Qdrant over its HTTP API.

    Children carry the named vector ``child``; parents are stored with an empty
    vector map so they can be fetched but never come back from a search.
    """

    def __init__(self, *, base_url: str, collection: str, timeout_seconds: float = 30.0) -> None:
        self._base_url = base_url.rstrip("/")
        self._collection = collection
        self._timeout_seconds = timeout_seconds

    @property
    def collection(self) -> str:
        return self._collection

    def _url(self, suffix: str = "") -> str:
        return f"{self._base_url}/collections/{self._collection}{suffix}"

    def _request(self, method: str, suffix: str = "", **kwargs: Any) -> httpx.Response:
        try:
            response = httpx.request(method, self._url(suffix), timeout=self._timeout_seconds, **kwargs)
        except httpx.HTTPError as exc:
            raise VectorStoreError(f"qdrant request failed: {exc}") from exc
        return response

    def _result(self, response: httpx.Response) -> Any:
        try:
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise VectorStoreError(f"qdrant request failed: {exc}") from exc
        if not isinstance(payload, dict) or "result" not in payload:
            raise VectorStoreError("invalid qdrant payload: missing result")
        return payload["result"]

    def ensure_collection(self, dimension: int) -> None:
        if dimension <= 0:
            raise ValueError("dimension must be > 0")

        response = self._request("GET")
        if response.status_code == 404:
            self._result(
                self._request(
                    "PUT",
                    json={"vectors": {CHILD_VECTOR: {"size": dimension, "distance": "Cosine"}}},
                )
            )
            return

        info = self._result(response)
        vectors = (
            info.get("config", {}).get("params", {}).get("vectors", {})
            if isinstance(info, dict)
            else {}
        )
        existing = vectors.get(CHILD_VECTOR) if isinstance(vectors, dict) else None
        if isinstance(existing, dict) and existing.get("size") not in (None, dimension):
            raise ValueError(
                f"collection {self._collection} has dimension {existing.get('size')}, "
                f"refusing vectors of dimension {dimension}"
            )

    def upsert(self, points: Sequence[StoredPoint]) -> None:
        if not points:
            return

        body = {
            "points": [
                {
                    "id": point_id(point.chunk_id),
                    "vector": {CHILD_VECTOR: list(point.vector)} if point.vector is not None else {},
                    "payload": {**point.payload, "chunk_id": point.chunk_id},
                }
                for point in points
            ]
        }
        self._result(self._request("PUT", "/points", params={"wait": "true"}, json=body))

    def approximate_search(
        self,
        query_vector: Sequence[float],
        k: int,
        predicates: Sequence[Predicate] | None = None,
    ) -> list[Candidate]:
        if k <= 0:
            return []

        query_filter = to_qdrant_filter(predicates or []) or {"must": []}
        query_filter["must"].append({"key": "chunk_type", "match": {"any": CHILD_CHUNK_TYPES}})

        response = self._request(
            "POST",
            "/points/search",
            json={
                "vector": {"name": CHILD_VECTOR, "vector": list(query_vector)},
                "limit": k,
                "with_payload": True,
                "filter": query_filter,
            },
        )
        if response.status_code == 404:
            raise FileNotFoundError(
                f"Qdrant collection not found: {self._collection}. Run `ragkb setup` first."
            )

        candidates: list[Candidate] = []
        for hit in self._result(response):
            payload = hit.get("payload") if isinstance(hit, dict) else None
            if not isinstance(payload, dict):
                continue
            chunk_id = payload.get("chunk_id")
            if not isinstance(chunk_id, str):
                continue
            candidates.append(
                Candidate(chunk_id=chunk_id, vector_score=float(hit.get("score", 0.0)), payload=payload)
            )
        return candidates

    def fetch(self, chunk_id: str) -> dict[str, Any] | None:
        response = self._request(
            "POST",
            "/points",
            json={"ids": [point_id(chunk_id)], "with_payload": True, "with_vector": False},
        )
        if response.status_code == 404:
            return None
        result = self._result(response)
        if not result:
            return None
        payload = result[0].get("payload")
        return payload if isinstance(payload, dict) else None

    def scroll(self) -> Iterator[StoredPoint]:
        offset: Any = None
        while True:
            body: dict[str, Any] = {
                "limit": SCROLL_PAGE_SIZE,
                "with_payload": True,
                "with_vector": True,
            }
            if offset is not None:
                body["offset"] = offset
            result = self._result(self._request("POST", "/points/scroll", json=body))

            for point in result.get("points", []):
                payload = dict(point.get("payload") or {})
                chunk_id = payload.pop("chunk_id", None)
                if not isinstance(chunk_id, str):
                    continue
                vector = point.get("vector")
                child_vector = vector.get(CHILD_VECTOR) if isinstance(vector, dict) else None
                yield StoredPoint(chunk_id=chunk_id, vector=child_vector, payload=payload)

            offset = result.get("next_page_offset")
            if offset is None:
                return

    def children_in_range(self, document_id: str, start_line: int, end_line: int) -> list[StoredPoint]:
        flt = {
            "must": [
                {"key": "document_id", "match": {"value": document_id}},
                {"key": "chunk_type", "match": {"any": CHILD_CHUNK_TYPES}},
                {"key": "start_line", "range": {"lte": end_line}},
                {"key": "end_line", "range": {"gte": start_line}},
            ]
        }
        points: list[StoredPoint] = []
        offset: Any = None
        while True:
            body: dict[str, Any] = {
                "limit": SCROLL_PAGE_SIZE,
                "with_payload": True,
                "with_vector": False,
                "filter": flt,
            }
            if offset is not None:
                body["offset"] = offset
            response = self._request("POST", "/points/scroll", json=body)
            if response.status_code == 404:
                raise FileNotFoundError(
                    f"Qdrant collection {self._collection!r} not found. Run `ragkb ingest` first."
                )
            result = self._result(response)

            for point in result.get("points", []):
                payload = dict(point.get("payload") or {})
                chunk_id = payload.pop("chunk_id", None)
                if isinstance(chunk_id, str):
                    points.append(StoredPoint(chunk_id=chunk_id, vector=None, payload=payload))

            offset = result.get("next_page_offset")
            if offset is None:
                return sorted(points, key=lambda point: point.payload.get("start_line", 0))

    def count(self) -> int:
        response = self._request("POST", "/points/count", json={"exact": True})
        if response.status_code == 404:
            return 0
        result = self._result(response)
        return int(result.get("count", 0))
