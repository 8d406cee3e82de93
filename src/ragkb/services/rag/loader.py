from __future__ import annotations

from pathlib import Path
from typing import Iterable

from ragkb.services.rag.types import SourceDocument

SUPPORTED_EXTENSIONS = {".txt", ".md"}


def _collect_files(path: Path, extensions: set[str]) -> list[Path]:
    if path.is_file():
        return [path] if path.suffix.lower() in extensions else []
    return sorted(
        candidate
        for candidate in path.rglob("*")
        if candidate.is_file() and candidate.suffix.lower() in extensions
    )


def load_documents(
    paths: Iterable[Path | str],
    supported_extensions: set[str] | None = None,
) -> list[SourceDocument]:
    """Read every supported file under ``paths`` as raw bytes.

    Empty files are kept: they are valid documents that produce no chunks.
    """
    extensions = supported_extensions or SUPPORTED_EXTENSIONS
    roots = [Path(raw_path) for raw_path in paths]
    documents: list[SourceDocument] = []
    seen: set[Path] = set()

    for path in roots:
        if not path.exists():
            raise FileNotFoundError(f"Source path not found: {path}")

        for file_path in _collect_files(path, extensions):
            resolved = file_path.resolve()
            if resolved in seen:
                continue
            seen.add(resolved)

            source = file_path.relative_to(path).as_posix() if path.is_dir() else file_path.name
            documents.append(SourceDocument(source=source, raw=file_path.read_bytes()))

    if not documents:
        raise ValueError(
            f"No supported documents found in {[str(root) for root in roots]} "
            f"(supported: {sorted(extensions)})"
        )

    return documents
