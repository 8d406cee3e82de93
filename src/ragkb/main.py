from datetime import datetime, timezone
import json
import re
from typing import Annotated, Any

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import select
from sqlalchemy.orm import Session

from ragkb.config import get_settings
from ragkb.db import create_schema, get_engine
from ragkb.llm import LLMClient, LLMClientError, OllamaChatClient, cited_labels, context_labels
from ragkb.models import JobRecord
from ragkb.services.rag import search
from ragkb.services.rag.assembler import build_context
from ragkb.services.rag.embedding_client import EmbeddingClient, OllamaEmbeddingClient
from ragkb.services.rag.errors import TransientServiceError, ValidationError
from ragkb.services.rag.filters import parse_predicates, predicate_from_dict
from ragkb.services.rag.types import AssembledResult, QueryResponse
from ragkb.services.rag.vector_store import VectorStore, build_store

app = FastAPI(title="ragkb", version="0.1.0")

INGEST_JOB_TYPE = "ingest"


class AskRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    question: str = Field(min_length=1)
    k: int = Field(default=5, ge=1, le=20)
    filters: list[dict[str, Any]] = Field(default_factory=list)
    with_parent: bool = True
    with_adjacent: bool = False


class IngestEnqueueRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    paths: list[str] | None = None


@app.on_event("startup")
def startup() -> None:
    create_schema(get_engine())


def get_llm_client() -> LLMClient:
    settings = get_settings()
    return OllamaChatClient(
        base_url=settings.ollama_base_url,
        default_model=settings.ollama_model,
        fallback_model=settings.ollama_fallback_model,
        timeout_seconds=settings.ollama_timeout_seconds,
    )


def get_embedding_client() -> EmbeddingClient:
    settings = get_settings()
    return OllamaEmbeddingClient(
        base_url=settings.ollama_embed_base_url,
        model=settings.ollama_embed_model,
        timeout_seconds=settings.ollama_timeout_seconds,
    )


def get_vector_store() -> VectorStore:
    return build_store(get_settings())


def _to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat()


def _job_summary(job: JobRecord) -> dict[str, Any]:
    return {
        "id": job.id,
        "type": job.type,
        "status": job.status,
    }


def _parse_json_object(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def _job_detail(job: JobRecord) -> dict[str, Any]:
    return {
        "id": job.id,
        "type": job.type,
        "status": job.status,
        "payload_json": _parse_json_object(job.payload_json),
        "attempts": job.attempts,
        "max_attempts": job.max_attempts,
        "created_at": _to_iso(job.created_at),
        "updated_at": _to_iso(job.updated_at),
        "started_at": _to_iso(job.started_at),
        "finished_at": _to_iso(job.finished_at),
        "error": job.error,
        "result_json": _parse_json_object(job.result_json),
    }


def _extract_numeric_suffix(value: str) -> int | None:
    match = re.search(r"(\d+)$", value)
    if match is None:
        return None
    return int(match.group(1))


def _next_job_id(session: Session) -> str:
    next_id = 1
    for existing_id in session.scalars(select(JobRecord.id)).all():
        parsed = _extract_numeric_suffix(str(existing_id))
        if parsed is None:
            continue
        next_id = max(next_id, parsed + 1)
    return str(next_id)


def _result_dict(result: AssembledResult) -> dict[str, Any]:
    body: dict[str, Any] = {
        "chunk_id": result.chunk_id,
        "source": result.source,
        "score": round(result.score.final, 6),
        "scores": result.score.as_dict(),
        "chunk_type": result.chunk_type,
        "parent_id": result.parent_id,
        "text": result.text,
    }
    if result.parent_text is not None:
        body["parent_text"] = result.parent_text
    if result.adjacent:
        body["adjacent"] = [
            {
                "chunk_id": chunk.chunk_id,
                "start_line": chunk.start_line,
                "end_line": chunk.end_line,
                "text": chunk.text,
            }
            for chunk in result.adjacent
        ]
    if result.warnings:
        body["warnings"] = [warning.describe() for warning in result.warnings]
    return body


def _run_search(**kwargs: Any) -> QueryResponse:
    try:
        return search(**kwargs)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except FileNotFoundError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    except TransientServiceError as exc:
        raise HTTPException(status_code=502, detail=f"retrieval backend failed: {exc}") from exc


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/ingest")
def enqueue_ingest(request: IngestEnqueueRequest | None = None) -> JSONResponse:
    payload_json = {"paths": request.paths} if request is not None and request.paths else None

    with Session(get_engine()) as session:
        existing = session.scalar(
            select(JobRecord)
            .where(JobRecord.type == INGEST_JOB_TYPE)
            .where(JobRecord.status.in_(["queued", "running"]))
            .order_by(JobRecord.created_at.asc(), JobRecord.id.asc())
            .limit(1)
        )
        if existing is not None:
            return JSONResponse(
                status_code=409,
                content={
                    "detail": "ingest already queued/running",
                    "existing_job_id": existing.id,
                },
            )

        job = JobRecord(
            id=_next_job_id(session),
            type=INGEST_JOB_TYPE,
            status="queued",
            payload_json=payload_json,
            attempts=0,
            max_attempts=3,
            updated_at=datetime.now(timezone.utc),
        )
        session.add(job)
        session.commit()
        job_id = job.id
        job_status = job.status

    return JSONResponse(status_code=202, content={"job_id": job_id, "status": job_status})


@app.get("/jobs")
def list_jobs(
    type: str | None = Query(default=None),
    status: str | None = Query(default=None),
) -> list[dict[str, Any]]:
    with Session(get_engine()) as session:
        stmt = select(JobRecord)
        if type is not None:
            stmt = stmt.where(JobRecord.type == type)
        if status is not None:
            stmt = stmt.where(JobRecord.status == status)

        jobs = session.scalars(
            stmt.order_by(JobRecord.created_at.asc(), JobRecord.id.asc())
        ).all()

    return [_job_summary(job) for job in jobs]


@app.get("/jobs/{job_id}")
def get_job(job_id: str) -> dict[str, Any]:
    with Session(get_engine()) as session:
        job = session.get(JobRecord, job_id)

    if job is None:
        raise HTTPException(status_code=404, detail="job not found")
    return _job_detail(job)


@app.get("/search")
def search_endpoint(
    q: str,
    embedding_client: Annotated[EmbeddingClient, Depends(get_embedding_client)],
    store: Annotated[VectorStore, Depends(get_vector_store)],
    k: int = 5,
    filter: Annotated[list[str] | None, Query()] = None,
    with_parent: bool = False,
    with_adjacent: bool = False,
    vector_weight: float | None = None,
    keyword_weight: float | None = None,
) -> dict[str, Any]:
    if not q.strip():
        raise HTTPException(status_code=400, detail="q must not be empty")

    settings = get_settings()
    try:
        predicates = parse_predicates(filter)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    response = _run_search(
        query_text=q,
        embedding_client=embedding_client,
        store=store,
        top_k=max(1, min(k, 20)),
        candidate_k=settings.candidate_k,
        vector_weight=settings.vector_weight if vector_weight is None else vector_weight,
        keyword_weight=settings.keyword_weight if keyword_weight is None else keyword_weight,
        predicates=predicates,
        with_parent=with_parent,
        with_adjacent=with_adjacent,
        adjacent_lines=settings.adjacent_lines,
    )

    return {
        "query": response.query,
        "results": [_result_dict(result) for result in response.results],
        "meta": {
            "candidate_count": response.candidate_count,
            "elapsed_ms": round(response.elapsed_ms, 3),
        },
    }


@app.post("/ask")
def ask(
    request: AskRequest,
    llm_client: Annotated[LLMClient, Depends(get_llm_client)],
    embedding_client: Annotated[EmbeddingClient, Depends(get_embedding_client)],
    store: Annotated[VectorStore, Depends(get_vector_store)],
) -> dict[str, Any]:
    question = request.question.strip()
    if not question:
        raise HTTPException(status_code=400, detail="question must not be empty")

    settings = get_settings()
    try:
        predicates = [predicate_from_dict(item) for item in request.filters]
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    response = _run_search(
        query_text=question,
        embedding_client=embedding_client,
        store=store,
        top_k=request.k,
        candidate_k=settings.candidate_k,
        vector_weight=settings.vector_weight,
        keyword_weight=settings.keyword_weight,
        predicates=predicates,
        with_parent=request.with_parent,
        with_adjacent=request.with_adjacent,
        adjacent_lines=settings.adjacent_lines,
    )
    context = build_context(response.results, settings.context_char_budget)

    try:
        chat_result = llm_client.generate_answer(question=question, context=context)
    except LLMClientError as exc:
        raise HTTPException(status_code=502, detail=f"LLM request failed: {exc}") from exc

    return {
        "answer": chat_result.answer,
        "sources": [_result_dict(result) for result in response.results],
        "citations": cited_labels(chat_result.answer, context_labels(context)),
        "meta": {
            "provider": "ollama",
            "model": chat_result.model,
            "used_fallback": chat_result.used_fallback,
            "retrieval_k": request.k,
            "retrieved_count": len(response.results),
            "context_chars": len(context),
            "ollama_base_url": settings.ollama_base_url,
        },
    }


def run() -> None:
    import uvicorn

    uvicorn.run("ragkb.main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    run()
