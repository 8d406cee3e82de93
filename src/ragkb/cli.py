from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
import sys
from typing import Sequence

from ragkb.config import Settings, get_settings
from ragkb.db import create_schema
from ragkb.services.rag import ingest_documents, search
from ragkb.services.rag.filters import parse_predicates
from ragkb.services.rag.fingerprint import FingerprintLedger
from ragkb.services.rag.index_store import export_collection, import_collection
from ragkb.services.rag.ingest import default_embedding_client
from ragkb.services.rag.loader import load_documents
from ragkb.services.rag.types import QueryResponse
from ragkb.services.rag.vector_store import build_store

SNIPPET_CHARS = 160


def _build_parser(settings: Settings) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ragkb",
        description="Hierarchical document knowledge base with hybrid retrieval",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log at DEBUG level")
    commands = parser.add_subparsers(dest="command", required=True)

    setup = commands.add_parser("setup", help="Create the job tables and the vector collection")
    setup.add_argument(
        "--dimension",
        type=int,
        default=None,
        help="Vector dimension (taken from the embedding service when omitted)",
    )

    ingest = commands.add_parser("ingest", help="Ingest .md/.txt files or directories")
    ingest.add_argument(
        "paths",
        nargs="*",
        default=[settings.source_dir],
        help="Files or directories to ingest",
    )

    search_cmd = commands.add_parser("search", help="Hybrid search over ingested chunks")
    search_cmd.add_argument("query")
    search_cmd.add_argument("-k", type=int, default=5, help="Number of results")
    search_cmd.add_argument(
        "--filter",
        action="append",
        default=[],
        help="Metadata filter key=value or key=a|b (repeatable, combined with AND)",
    )
    search_cmd.add_argument("--with-parent", action="store_true", help="Attach parent context")
    search_cmd.add_argument(
        "--with-adjacent",
        action="store_true",
        help="Attach nearby chunks of the same document by line range",
    )
    search_cmd.add_argument("--adjacent-lines", type=int, default=settings.adjacent_lines)
    search_cmd.add_argument("--vector-weight", type=float, default=settings.vector_weight)
    search_cmd.add_argument("--keyword-weight", type=float, default=settings.keyword_weight)
    search_cmd.add_argument("--json", action="store_true", help="Print results as JSON")

    status = commands.add_parser("status", help="Show ingested documents and point count")
    status.add_argument("--list", action="store_true", help="List every ledger record")

    export = commands.add_parser("export", help="Export the collection to a JSON file")
    export.add_argument("output")
    export.add_argument("--no-vectors", action="store_true", help="Leave vectors out of the export")

    import_cmd = commands.add_parser("import", help="Import a collection export")
    import_cmd.add_argument("input")

    return parser


def _setup(args: argparse.Namespace, settings: Settings) -> None:
    create_schema()
    dimension = args.dimension
    if dimension is None:
        dimension = len(default_embedding_client(settings).embed_texts(["dimension check"])[0])

    build_store(settings).ensure_collection(dimension)
    print(
        f"[ragkb] setup completed backend={settings.store_backend} dimension={dimension}",
        flush=True,
    )


def _ingest(args: argparse.Namespace, settings: Settings) -> None:
    documents = load_documents(Path(path) for path in args.paths)
    summary = ingest_documents(
        documents,
        embedding_client=default_embedding_client(settings),
        store=build_store(settings),
        settings=settings,
    )

    print(
        "[ragkb] ingest completed "
        f"documents={len(summary.outcomes)} "
        f"ingested={summary.ingested_count} "
        f"skipped={summary.skipped_count} "
        f"failed={summary.failed_count} "
        f"chunks={summary.chunk_count}",
        flush=True,
    )
    print(json.dumps(summary.as_dict()), flush=True)

    if summary.failed_count:
        raise SystemExit(1)


def _print_results(response: QueryResponse) -> None:
    if not response.results:
        print("[ragkb] no results", flush=True)
        return

    for rank, result in enumerate(response.results, start=1):
        snippet = " ".join(result.text.split())[:SNIPPET_CHARS]
        print(
            f"{rank}. score={result.score.final:.4f} "
            f"(vector={result.score.norm_vector:.3f} lexical={result.score.norm_lexical:.3f}) "
            f"[{result.source}#{result.chunk_id}]",
            flush=True,
        )
        print(f"   {snippet}", flush=True)
        for chunk in result.adjacent:
            print(f"   nearby: {chunk.chunk_id} (lines {chunk.start_line}-{chunk.end_line})", flush=True)
        for warning in result.warnings:
            print(f"   warning: {warning.describe()}", flush=True)
    print(
        f"[ragkb] {len(response.results)} result(s) from {response.candidate_count} candidates "
        f"in {response.elapsed_ms:.1f}ms",
        flush=True,
    )


def _search(args: argparse.Namespace, settings: Settings) -> None:
    response = search(
        args.query,
        embedding_client=default_embedding_client(settings),
        store=build_store(settings),
        top_k=args.k,
        candidate_k=settings.candidate_k,
        vector_weight=args.vector_weight,
        keyword_weight=args.keyword_weight,
        predicates=parse_predicates(args.filter),
        with_parent=args.with_parent,
        with_adjacent=args.with_adjacent,
        adjacent_lines=args.adjacent_lines,
    )

    if not args.json:
        _print_results(response)
        return

    print(
        json.dumps(
            {
                "query": response.query,
                "candidate_count": response.candidate_count,
                "elapsed_ms": round(response.elapsed_ms, 3),
                "results": [
                    {
                        "chunk_id": result.chunk_id,
                        "source": result.source,
                        "scores": result.score.as_dict(),
                        "text": result.text,
                        "parent_text": result.parent_text,
                        "adjacent": [chunk.chunk_id for chunk in result.adjacent],
                        "warnings": [warning.describe() for warning in result.warnings],
                    }
                    for result in response.results
                ],
            },
            ensure_ascii=False,
        ),
        flush=True,
    )


def _status(args: argparse.Namespace, settings: Settings) -> None:
    records = FingerprintLedger(settings.ledger_path).records()
    if args.list:
        for record in records:
            print(
                f"{record.timestamp} {record.fingerprint[:12]} chunks={record.chunk_count} {record.source}",
                flush=True,
            )

    print(
        json.dumps(
            {
                "documents": len(records),
                "chunks": sum(record.chunk_count for record in records),
                "points": build_store(settings).count(),
                "store_backend": settings.store_backend,
                "ledger_path": settings.ledger_path,
            }
        ),
        flush=True,
    )


def _export(args: argparse.Namespace, settings: Settings) -> None:
    output = Path(args.output)
    count = export_collection(build_store(settings), output, include_vectors=not args.no_vectors)
    print(f"[ragkb] exported points={count} path={output}", flush=True)


def _import(args: argparse.Namespace, settings: Settings) -> None:
    source = Path(args.input)
    count = import_collection(build_store(settings), source)
    print(f"[ragkb] imported points={count} path={source}", flush=True)


COMMANDS = {
    "setup": _setup,
    "ingest": _ingest,
    "search": _search,
    "status": _status,
    "export": _export,
    "import": _import,
}


def main(argv: Sequence[str] | None = None) -> None:
    settings = get_settings()
    parser = _build_parser(settings)
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        COMMANDS[args.command](args, settings)
    except SystemExit:
        raise
    except Exception as exc:
        print(f"[ragkb] failed: {exc}", file=sys.stderr, flush=True)
        raise SystemExit(1) from exc


if __name__ == "__main__":
    main()
