from __future__ import annotations

from dataclasses import dataclass
import logging
import re
from typing import Protocol

import httpx

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You answer questions about a document collection. "
    "Each context block starts with a label such as [manual.md#abc-p0000-c001]. "
    "Use only facts from the context blocks and cite every block you use by repeating its label. "
    "If the context does not contain the answer, say so briefly and cite nothing."
)

_LABEL_RE = re.compile(r"^\[([^\[\]#\n]+)#([^\[\]\n]+)\]$", re.MULTILINE)


class LLMClientError(RuntimeError):
    pass


@dataclass(frozen=True)
class ChatResult:
    answer: str
    model: str
    used_fallback: bool


class LLMClient(Protocol):
    def generate_answer(self, *, question: str, context: str) -> ChatResult: ...


def context_labels(context: str) -> list[str]:
    """Return the ``source#chunk_id`` labels of the context blocks, in order."""
    labels: list[str] = []
    for match in _LABEL_RE.finditer(context):
        label = f"{match.group(1)}#{match.group(2)}"
        if label not in labels:
            labels.append(label)
    return labels


def cited_labels(answer: str, labels: list[str]) -> list[str]:
    return [label for label in labels if f"[{label}]" in answer]


def build_messages(question: str, context: str) -> list[dict[str, str]]:
    labels = context_labels(context)
    if labels:
        sources = "Sources you may cite: " + ", ".join(f"[{label}]" for label in labels)
    else:
        sources = "No sources matched this question."
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {
            "role": "user",
            "content": f"Context:\n{context}\n\n{sources}\n\nQuestion: {question}",
        },
    ]


class OllamaChatClient:
    def __init__(
        self,
        *,
        base_url: str,
        default_model: str,
        fallback_model: str,
        timeout_seconds: float = 30.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._default_model = default_model
        self._fallback_model = fallback_model
        self._timeout_seconds = timeout_seconds

    def generate_answer(self, *, question: str, context: str) -> ChatResult:
        messages = build_messages(question, context)
        models = [self._default_model]
        if self._fallback_model and self._fallback_model != self._default_model:
            models.append(self._fallback_model)

        last_error: Exception | None = None
        for attempt, model in enumerate(models):
            try:
                content = self._complete(model, messages)
            except (httpx.HTTPError, ValueError) as exc:
                last_error = exc
                if attempt + 1 < len(models):
                    logger.warning("chat model %s failed (%s); trying %s", model, exc, models[attempt + 1])
                continue
            return ChatResult(answer=content, model=model, used_fallback=attempt > 0)

        raise LLMClientError(str(last_error)) from last_error

    def _complete(self, model: str, messages: list[dict[str, str]]) -> str:
        response = httpx.post(
            f"{self._base_url}/chat/completions",
            json={"model": model, "messages": messages, "temperature": 0},
            timeout=self._timeout_seconds,
        )
        response.raise_for_status()

        choices = response.json().get("choices")
        if not isinstance(choices, list) or not choices:
            raise ValueError("Invalid chat completion payload: missing choices")

        message = choices[0].get("message") if isinstance(choices[0], dict) else None
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str) or not content.strip():
            raise ValueError("Invalid chat completion payload: missing assistant content")

        return content.strip()
