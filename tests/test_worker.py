import json
from pathlib import Path

import pytest
from sqlalchemy import create_engine, text

from ragkb.services.rag.job_runner import resolve_paths, run_ingest_job
from ragkb.worker import _claim_next_ingest_job, _coerce_job_id, _process_claimed_job, run_once


class FakeEmbeddingClient:
    def embed_texts(self, texts: list[str]) -> list[list[float]]:
        return [[float(len(text)), 1.0] for text in texts]


def _create_schema(engine) -> None:
    with engine.begin() as connection:
        connection.execute(
            text(
                """
                CREATE TABLE jobs (
                    id VARCHAR(64) PRIMARY KEY,
                    type VARCHAR(32) NOT NULL,
                    status VARCHAR(32) NOT NULL,
                    payload_json TEXT,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    max_attempts INTEGER NOT NULL DEFAULT 3,
                    created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    started_at TIMESTAMP,
                    finished_at TIMESTAMP,
                    error TEXT,
                    result_json TEXT
                )
                """
            )
        )


def _fetch_job(engine, job_id: str):
    with engine.connect() as connection:
        return connection.execute(
            text("SELECT status, attempts, result_json, error FROM jobs WHERE id = :job_id"),
            {"job_id": job_id},
        ).fetchone()


def test_coerce_job_id_converts_numeric_string_to_int() -> None:
    assert _coerce_job_id("42") == 42
    assert _coerce_job_id(7) == 7
    assert _coerce_job_id(" job-1 ") == "job-1"


def test_worker_claims_only_ingest_jobs(tmp_path) -> None:
    engine = create_engine(f"sqlite+pysqlite:///{tmp_path / 'worker-claim.db'}")
    _create_schema(engine)

    with engine.begin() as connection:
        connection.execute(
            text(
                """
                INSERT INTO jobs (id, type, status, payload_json, attempts, max_attempts)
                VALUES ('1', 'export', 'queued', NULL, 0, 3),
                       ('2', 'ingest', 'queued', '{"paths":["docs"]}', 0, 3)
                """
            )
        )

    job = _claim_next_ingest_job(engine)

    assert job is not None
    assert job["id"] == 2
    assert job["payload_json"] == {"paths": ["docs"]}
    assert _fetch_job(engine, "2")[0] == "running"
    assert _claim_next_ingest_job(engine) is None


def test_worker_claim_and_execute_success(tmp_path) -> None:
    engine = create_engine(f"sqlite+pysqlite:///{tmp_path / 'worker-success.db'}")
    _create_schema(engine)

    with engine.begin() as connection:
        connection.execute(
            text(
                """
                INSERT INTO jobs (id, type, status, payload_json, attempts, max_attempts)
                VALUES ('1', 'ingest', 'queued', '{"paths":"docs"}', 0, 3)
                """
            )
        )

    job = _claim_next_ingest_job(engine)
    assert job is not None
    assert job["id"] == 1

    _process_claimed_job(engine, job, runner=lambda _: {"chunks": 12, "duration_ms": 30})

    row = _fetch_job(engine, "1")
    assert row is not None
    assert row[0] == "succeeded"
    assert row[1] == 0
    assert "\"chunks\": 12" in str(row[2])
    assert row[3] is None


def test_worker_retries_then_fails_after_max_attempts(tmp_path) -> None:
    engine = create_engine(f"sqlite+pysqlite:///{tmp_path / 'worker-fail.db'}")
    _create_schema(engine)

    with engine.begin() as connection:
        connection.execute(
            text(
                """
                INSERT INTO jobs (id, type, status, attempts, max_attempts)
                VALUES ('2', 'ingest', 'queued', 0, 2)
                """
            )
        )

    job = _claim_next_ingest_job(engine)
    assert job is not None
    _process_claimed_job(engine, job, runner=lambda _: (_ for _ in ()).throw(RuntimeError("boom-1")))

    row = _fetch_job(engine, "2")
    assert row[0] == "queued"
    assert row[1] == 1
    assert "boom-1" in str(row[3])

    job = _claim_next_ingest_job(engine)
    assert job is not None
    _process_claimed_job(engine, job, runner=lambda _: (_ for _ in ()).throw(RuntimeError("boom-2")))

    row = _fetch_job(engine, "2")
    assert row[0] == "failed"
    assert row[1] == 2
    assert "boom-2" in str(row[3])


def test_run_once_returns_false_without_queued_jobs(tmp_path) -> None:
    engine = create_engine(f"sqlite+pysqlite:///{tmp_path / 'worker-idle.db'}")
    _create_schema(engine)

    assert run_once(engine, runner=lambda _: {}) is False


def test_run_once_ingests_payload_paths(tmp_path: Path, data_dir: Path) -> None:
    docs = tmp_path / "docs"
    docs.mkdir()
    (docs / "guide.md").write_text("# Guide\n\nCalibrate the sensor weekly.\n", encoding="utf-8")
    (docs / "empty.txt").write_text("", encoding="utf-8")

    engine = create_engine(f"sqlite+pysqlite:///{tmp_path / 'worker-ingest.db'}")
    _create_schema(engine)
    with engine.begin() as connection:
        connection.execute(
            text(
                """
                INSERT INTO jobs (id, type, status, payload_json, attempts, max_attempts)
                VALUES ('1', 'ingest', 'queued', :payload, 0, 3)
                """
            ),
            {"payload": json.dumps({"paths": [str(docs)]})},
        )

    client = FakeEmbeddingClient()
    assert run_once(engine, runner=lambda payload: run_ingest_job(payload, embedding_client=client)) is True

    row = _fetch_job(engine, "1")
    assert row[0] == "succeeded"
    result = json.loads(row[2])
    assert result["documents"] == 2
    assert result["ingested"] == 2
    assert result["chunks"] == 1
    assert (data_dir / ".ingested_checksums").exists()

    rerun = run_ingest_job({"paths": [str(docs)]}, embedding_client=client)
    assert rerun["skipped"] == 2
    assert rerun["chunks"] == 0


def test_run_ingest_job_raises_when_a_document_fails(tmp_path: Path, data_dir: Path) -> None:
    docs = tmp_path / "docs"
    docs.mkdir()
    (docs / "bad.md").write_bytes(b"\xff\xfe not utf-8")

    with pytest.raises(RuntimeError, match="bad.md"):
        run_ingest_job({"paths": str(docs)}, embedding_client=FakeEmbeddingClient())


def test_resolve_paths_accepts_string_list_and_default() -> None:
    assert resolve_paths(None, "./ingest") == [Path("./ingest")]
    assert resolve_paths({"paths": "a"}, "./ingest") == [Path("a")]
    assert resolve_paths({"paths": ["a", "b"]}, "./ingest") == [Path("a"), Path("b")]

    with pytest.raises(ValueError):
        resolve_paths({"paths": []}, "./ingest")
    with pytest.raises(ValueError):
        resolve_paths({"paths": [1]}, "./ingest")
