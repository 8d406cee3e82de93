from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
import logging
from random import random
import re
from time import sleep
from typing import Callable

from ragkb.services.rag.embedding_client import EmbeddingClient
from ragkb.services.rag.errors import EmbeddingFailedError, TransientServiceError
from ragkb.services.rag.types import ChildChunk, ParentChunk

logger = logging.getLogger(__name__)

MAX_EMBEDDING_CHARS = 2000

_CHAR_REPLACEMENTS = {
    **dict.fromkeys("═─━╌╍┄┅┈┉", "-"),
    **dict.fromkeys("│┃║╎┆┇┊┋", "|"),
    **dict.fromkeys("┌┍┎┏╒╓╔┐┑┒┓╕╖╗└┕┖┗╘╙╚┘┙┚┛╛╜╝├┝┞┟┠┡┢┣╞╟╠┤┥┦┧┨┩┪┫╡╢╣┬┭┮┯┰┱┲┳╤╥╦┴┵┶┷┸┹┺┻╧╨╩┼╪╫╬", "+"),
    **dict.fromkeys("█▓▒░▀▄▌▐★☆⭐", "*"),
    **dict.fromkeys("→⇒➔➜➝➞", ">"),
    **dict.fromkeys("←⇐", "<"),
    **dict.fromkeys("↑⇑", "^"),
    **dict.fromkeys("↓⇓", "v"),
    **dict.fromkeys("✓✔☑", "Y"),
    **dict.fromkeys("✗✘☒", "X"),
    **dict.fromkeys("•◦‣⁃–—―", "-"),
    **dict.fromkeys("‘’‚‛", "'"),
    **dict.fromkeys("“”„‟", '"'),
    "…": ".",
    **dict.fromkeys("🔍📦🎯✅❌⚠💭📄📊📚🚀💡⏳✨🖥🔨🔧🏷🔄▶🔎🗑📜⚙🎥🧮📤🛑", " "),
}
_TRANSLATION = str.maketrans(_CHAR_REPLACEMENTS)
_SPACE_RUN_RE = re.compile(r" {2,}")


def sanitize_for_embedding(text: str) -> str:
    return _SPACE_RUN_RE.sub(" ", text.translate(_TRANSLATION))


def embedding_text(child: ChildChunk, parent: ParentChunk | None = None) -> str:
    body = child.text
    if parent is not None and parent.headers:
        body = f"{' > '.join(parent.headers)}\n\n{body}"
    return sanitize_for_embedding(body)[:MAX_EMBEDDING_CHARS]


def _backoff_delay(attempt: int, *, base_seconds: float, max_seconds: float) -> float:
    delay = min(base_seconds * (2 ** (attempt - 1)), max_seconds)
    return delay + random() * 0.2 * delay


def embed_with_retry(
    client: EmbeddingClient,
    text: str,
    *,
    max_attempts: int = 5,
    base_seconds: float = 0.5,
    max_seconds: float = 8.0,
    sleeper: Callable[[float], None] = sleep,
) -> list[float]:
    attempt = 1
    while True:
        try:
            vectors = client.embed_texts([text])
            if len(vectors) != 1 or not vectors[0]:
                raise TransientServiceError("embedding service returned no vector")
            return vectors[0]
        except TransientServiceError as exc:
            if attempt >= max_attempts:
                raise
            delay = _backoff_delay(attempt, base_seconds=base_seconds, max_seconds=max_seconds)
            logger.warning(
                "embedding attempt %d/%d failed: %s; retrying in %.1fs",
                attempt,
                max_attempts,
                exc,
                delay,
            )
            sleeper(delay)
            attempt += 1


def embed_children(
    client: EmbeddingClient,
    children: list[ChildChunk],
    *,
    parents: dict[str, ParentChunk] | None = None,
    document: str = "<document>",
    max_attempts: int = 5,
    base_seconds: float = 0.5,
    max_seconds: float = 8.0,
    concurrency: int = 4,
    sleeper: Callable[[float], None] = sleep,
) -> list[ChildChunk]:
    if not children:
        return []

    parents = parents or {}

    def _embed(child: ChildChunk) -> list[float]:
        return embed_with_retry(
            client,
            embedding_text(child, parents.get(child.parent_id)),
            max_attempts=max_attempts,
            base_seconds=base_seconds,
            max_seconds=max_seconds,
            sleeper=sleeper,
        )

    with ThreadPoolExecutor(max_workers=max(1, concurrency)) as executor:
        futures = [executor.submit(_embed, child) for child in children]

    vectors: dict[str, list[float]] = {}
    failures: dict[str, str] = {}
    for child, future in zip(children, futures):
        try:
            vectors[child.chunk_id] = future.result()
        except TransientServiceError as exc:
            failures[child.chunk_id] = str(exc)

    if failures:
        raise EmbeddingFailedError(document=document, chunk_errors=failures)

    dimensions = {len(vector) for vector in vectors.values()}
    if len(dimensions) != 1:
        raise EmbeddingFailedError(
            document=document,
            chunk_errors={
                chunk_id: f"inconsistent embedding dimension {len(vector)}"
                for chunk_id, vector in vectors.items()
            },
        )

    return [replace(child, embedding=tuple(vectors[child.chunk_id])) for child in children]
