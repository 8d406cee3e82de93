from __future__ import annotations

import json
import os
from time import sleep
from typing import Any, Callable

from sqlalchemy import text
from sqlalchemy.engine import Engine

from ragkb.db import create_schema, get_engine
from ragkb.services.rag.job_runner import run_ingest_job

INGEST_JOB_TYPE = "ingest"


def _get_poll_seconds() -> int:
    value = os.getenv("WORKER_POLL_SECONDS", "5")
    return max(1, int(value))


def _get_default_max_attempts() -> int:
    value = os.getenv("JOB_MAX_ATTEMPTS", "3")
    return max(1, int(value))


def _normalize_payload(payload_json: Any) -> dict[str, Any] | None:
    if isinstance(payload_json, dict):
        return payload_json
    if isinstance(payload_json, str) and payload_json.strip():
        try:
            parsed = json.loads(payload_json)
        except json.JSONDecodeError:
            return None
        if isinstance(parsed, dict):
            return parsed
    return None


def _coerce_job_id(job_id: Any) -> int | str:
    if isinstance(job_id, bool):
        return str(job_id)
    if isinstance(job_id, int):
        return job_id
    if isinstance(job_id, str):
        normalized = job_id.strip()
        if normalized.isdigit():
            return int(normalized)
        return normalized
    return str(job_id)


def _claimed(row: Any) -> dict[str, Any]:
    return {
        "id": _coerce_job_id(row["id"]),
        "payload_json": _normalize_payload(row["payload_json"]),
        "attempts": int(row["attempts"] or 0),
        "max_attempts": int(row["max_attempts"] or _get_default_max_attempts()),
    }


def _claim_next_ingest_job(engine: Engine) -> dict[str, Any] | None:
    if engine.dialect.name == "postgresql":
        with engine.begin() as connection:
            row = connection.execute(
                text(
                    """
                    SELECT id, payload_json, attempts, max_attempts
                    FROM jobs
                    WHERE type = :job_type AND status = 'queued'
                    ORDER BY created_at ASC, id ASC
                    FOR UPDATE SKIP LOCKED
                    LIMIT 1
                    """
                ),
                {"job_type": INGEST_JOB_TYPE},
            ).mappings().first()
            if row is None:
                return None

            connection.execute(
                text(
                    """
                    UPDATE jobs
                    SET status = 'running',
                        started_at = CURRENT_TIMESTAMP,
                        updated_at = CURRENT_TIMESTAMP,
                        finished_at = NULL,
                        error = NULL
                    WHERE CAST(id AS TEXT) = CAST(:job_id AS TEXT)
                    """
                ),
                {"job_id": _coerce_job_id(row["id"])},
            )
            return _claimed(row)

    with engine.begin() as connection:
        row = connection.execute(
            text(
                """
                SELECT id, payload_json, attempts, max_attempts
                FROM jobs
                WHERE type = :job_type AND status = 'queued'
                ORDER BY created_at ASC, id ASC
                LIMIT 1
                """
            ),
            {"job_type": INGEST_JOB_TYPE},
        ).mappings().first()
        if row is None:
            return None

        claimed = connection.execute(
            text(
                """
                UPDATE jobs
                SET status = 'running',
                    started_at = CURRENT_TIMESTAMP,
                    updated_at = CURRENT_TIMESTAMP,
                    finished_at = NULL,
                    error = NULL
                WHERE CAST(id AS TEXT) = CAST(:job_id AS TEXT) AND status = 'queued'
                """
            ),
            {"job_id": _coerce_job_id(row["id"])},
        )
        if claimed.rowcount != 1:
            return None

        return _claimed(row)


def _mark_job_succeeded(engine: Engine, job_id: int | str, result_json: dict[str, Any]) -> None:
    with engine.begin() as connection:
        connection.execute(
            text(
                """
                UPDATE jobs
                SET status = 'succeeded',
                    result_json = :result_json,
                    finished_at = CURRENT_TIMESTAMP,
                    updated_at = CURRENT_TIMESTAMP,
                    error = NULL
                WHERE CAST(id AS TEXT) = CAST(:job_id AS TEXT)
                """
            ),
            {"job_id": job_id, "result_json": json.dumps(result_json)},
        )


def _mark_job_failure(
    engine: Engine,
    *,
    job_id: int | str,
    attempts: int,
    max_attempts: int,
    error_message: str,
) -> None:
    next_attempts = attempts + 1
    requeue = next_attempts < max_attempts

    with engine.begin() as connection:
        connection.execute(
            text(
                """
                UPDATE jobs
                SET status = CAST(:status AS VARCHAR),
                    attempts = :attempts,
                    error = :error,
                    finished_at = CASE WHEN CAST(:status AS VARCHAR) = 'failed' THEN CURRENT_TIMESTAMP ELSE NULL END,
                    started_at = CASE WHEN CAST(:status AS VARCHAR) = 'queued' THEN NULL ELSE started_at END,
                    updated_at = CURRENT_TIMESTAMP
                WHERE CAST(id AS TEXT) = CAST(:job_id AS TEXT)
                """
            ),
            {
                "job_id": job_id,
                "status": "queued" if requeue else "failed",
                "attempts": next_attempts,
                "error": error_message,
            },
        )


def _process_claimed_job(
    engine: Engine,
    job: dict[str, Any],
    *,
    runner: Callable[[dict[str, Any] | None], dict[str, Any]],
) -> None:
    job_id = _coerce_job_id(job["id"])
    attempts = int(job.get("attempts", 0))
    max_attempts = int(job.get("max_attempts") or _get_default_max_attempts())
    payload = _normalize_payload(job.get("payload_json"))

    try:
        result_json = runner(payload)
    except Exception as exc:
        _mark_job_failure(
            engine,
            job_id=job_id,
            attempts=attempts,
            max_attempts=max_attempts,
            error_message=str(exc),
        )
        print(
            f"[worker] job failed job_id={job_id} attempts={attempts + 1}/{max_attempts} error={exc}",
            flush=True,
        )
        return

    _mark_job_succeeded(engine, job_id, dict(result_json))
    print(f"[worker] job succeeded job_id={job_id} result={result_json}", flush=True)


def run_once(
    engine: Engine,
    *,
    runner: Callable[[dict[str, Any] | None], dict[str, Any]] = run_ingest_job,
) -> bool:
    job = _claim_next_ingest_job(engine)
    if job is None:
        return False
    _process_claimed_job(engine, job, runner=runner)
    return True


def main() -> None:
    poll_seconds = _get_poll_seconds()
    engine = get_engine()
    create_schema(engine)
    print(f"[worker] polling for {INGEST_JOB_TYPE} jobs every {poll_seconds}s", flush=True)

    while True:
        if not run_once(engine):
            sleep(poll_seconds)


if __name__ == "__main__":
    main()
