"""Retrieval-augmented completion engine.

One query runs through ``moderated → embedded → retrieved → prompted →
dispatched → (streaming | complete) → persisted``. The engine returns a
``CompletionResponse`` for every outcome; only unexpected failures become a
500. Nothing here talks HTTP: the API layer and the CLI both forward the
response as-is.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import threading
import time
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any

from docprompt.config import DocpromptConfig
from docprompt.db.repository import Repository
from docprompt.errors import ApiError, ProviderError, ValidationError
from docprompt.rag import llm_client
from docprompt.rag.assembler import Reference, assemble_context, build_full_prompt
from docprompt.rag.retriever import RetrieverConfig, get_matching_sections
from docprompt.rag.stream import DATA_HEADER, encode_header_data, encode_stream_header

logger = logging.getLogger(__name__)

# Request fields an external caller may only set with custom model config enabled.
MODEL_CONFIG_FIELDS = (
    "model",
    "prompt_template",
    "i_dont_know_message",
    "temperature",
    "top_p",
    "frequency_penalty",
    "presence_penalty",
    "max_tokens",
    "sections_match_threshold",
    "sections_match_count",
    "context_tag",
    "prompt_tag",
    "idk_tag",
)

_PARAM_ALIASES = {
    "prompt": "prompt",
    "model": "model",
    "promptTemplate": "prompt_template",
    "i_dont_know_message": "i_dont_know_message",
    "iDontKnowMessage": "i_dont_know_message",
    "temperature": "temperature",
    "topP": "top_p",
    "frequencyPenalty": "frequency_penalty",
    "presencePenalty": "presence_penalty",
    "maxTokens": "max_tokens",
    "sectionsMatchThreshold": "sections_match_threshold",
    "sectionsMatchCount": "sections_match_count",
    "contextTag": "context_tag",
    "promptTag": "prompt_tag",
    "idkTag": "idk_tag",
}


def is_truthy(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value in ("true", "1")
    if isinstance(value, (int, float)):
        return value == 1
    return False


def is_falsy(value: Any) -> bool:
    if isinstance(value, bool):
        return not value
    if isinstance(value, str):
        return value in ("false", "0")
    if isinstance(value, (int, float)):
        return value == 0
    return False


def is_idk_response(text: str, i_dont_know_message: str) -> bool:
    return not text or text.endswith(i_dont_know_message)


@dataclass
class CompletionRequest:
    """A single query. ``None`` fields fall back to the project configuration."""

    prompt: str
    first_party: bool = False
    stream: bool = True
    exclude_from_insights: bool = False
    redact: bool = False
    model: str | None = None
    prompt_template: str | None = None
    i_dont_know_message: str | None = None
    temperature: float | None = None
    top_p: float | None = None
    frequency_penalty: float | None = None
    presence_penalty: float | None = None
    max_tokens: int | None = None
    sections_match_threshold: float | None = None
    sections_match_count: int | None = None
    context_tag: str | None = None
    prompt_tag: str | None = None
    idk_tag: str | None = None
    do_not_inject_context: bool = False
    do_not_inject_prompt: bool = False

    @classmethod
    def from_params(cls, params: dict[str, Any], first_party: bool = False) -> CompletionRequest:
        """Build a request from wire parameters (camelCase, loosely typed flags)."""
        values: dict[str, Any] = {}
        for key, name in _PARAM_ALIASES.items():
            if params.get(key) not in (None, ""):
                values.setdefault(name, params[key])
        prompt = values.pop("prompt", "")
        return cls(
            prompt=prompt if isinstance(prompt, str) else str(prompt),
            first_party=first_party,
            stream=not is_falsy(params.get("stream")),
            exclude_from_insights=is_truthy(params.get("excludeFromInsights")),
            redact=is_truthy(params.get("redact")),
            do_not_inject_context=bool(params.get("doNotInjectContext")),
            do_not_inject_prompt=bool(params.get("doNotInjectPrompt")),
            **values,
        )

    def without_model_config(self) -> CompletionRequest:
        return dataclasses.replace(self, **{name: None for name in MODEL_CONFIG_FIELDS})


@dataclass
class CompletionResponse:
    """Status, headers and body of a query. A streamed body is an iterator of bytes."""

    status: int
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes | Iterator[bytes] = b""

    @property
    def streaming(self) -> bool:
        return not isinstance(self.body, bytes)

    def json(self) -> Any:
        if self.streaming:
            raise TypeError("Streamed responses have no JSON body")
        return json.loads(self.body)

    def text(self) -> str:
        if self.streaming:
            return b"".join(self.body).decode("utf-8")
        return self.body.decode("utf-8")


def _headers(references: list[Reference], prompt_id: str | None, content_type: str) -> dict[str, str]:
    return {
        "Content-Type": content_type,
        DATA_HEADER: encode_header_data([r.to_dict() for r in references], prompt_id),
    }


class CompletionEngine:
    """Answer queries for one project from its indexed sections.

    Args:
        repo:       Open Repository instance.
        config:     Loaded project configuration.
        api_key:    The project's own provider key, used instead of the
                    system default and exempt from usage recording.
    """

    def __init__(
        self,
        repo: Repository,
        config: DocpromptConfig,
        api_key: str | None = None,
    ) -> None:
        self._repo = repo
        self._config = config
        self._api_key = api_key

    @property
    def project_id(self) -> str:
        return self._config.project.id

    def handle(
        self, request: CompletionRequest, cancel: threading.Event | None = None
    ) -> CompletionResponse:
        """Run *request* and return the response to send back to the caller.

        *cancel* stops an in-progress stream; nothing more is persisted after it
        is set.
        """
        try:
            return self._handle(request, cancel)
        except ApiError as exc:
            return CompletionResponse(
                exc.code, {"Content-Type": "text/plain; charset=utf-8"}, exc.message.encode()
            )
        except Exception as exc:
            logger.exception("[COMPLETIONS] [%s] Unexpected error", self.project_id)
            return CompletionResponse(
                500,
                {"Content-Type": "text/plain; charset=utf-8"},
                f"Error processing POST request: {exc}".encode(),
            )

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def _handle(
        self, request: CompletionRequest, cancel: threading.Event | None
    ) -> CompletionResponse:
        cfg = self._config
        project_id = self.project_id
        prompt = (request.prompt or "")[: cfg.retrieval.max_prompt_length]
        if not prompt.strip():
            logger.error("[COMPLETIONS] [%s] No prompt provided", project_id)
            raise ValidationError("No prompt provided")

        if request.first_party:
            insights = "advanced"
        else:
            insights = cfg.project.insights
            if not cfg.project.allow_custom_model_config:
                request = request.without_model_config()

        model = request.model or cfg.completions.model
        i_dont_know = request.i_dont_know_message or cfg.completions.i_dont_know_message
        sanitized_query = prompt.strip().replace("\n", " ")

        retriever_config = RetrieverConfig(
            embedding_model=cfg.embedding.model,
            moderation_model=cfg.completions.moderation_model,
            match_threshold=_pick(request.sections_match_threshold, cfg.retrieval.match_threshold),
            match_count=_pick(request.sections_match_count, cfg.retrieval.match_count),
            min_content_length=cfg.retrieval.min_content_length,
        )

        sections_ts = time.monotonic()
        try:
            match = get_matching_sections(
                sanitized_query, prompt, self._repo, project_id, retriever_config, self._api_key
            )
        except ApiError as exc:
            logger.info("[COMPLETIONS] [%s] %s", project_id, exc.message)
            prompt_id = self._store(
                request, prompt, None, None, "no_sections", [], insights
            )
            return CompletionResponse(
                exc.code,
                _headers([], prompt_id, "text/plain; charset=utf-8"),
                exc.message.encode(),
            )
        sections_ms = round((time.monotonic() - sections_ts) * 1000)

        context = assemble_context(match.sections, cfg.retrieval.context_tokens_cutoff)
        full_prompt = build_full_prompt(
            request.prompt_template or cfg.completions.prompt_template,
            context.text,
            sanitized_query,
            i_dont_know,
            request.context_tag or cfg.completions.context_tag,
            request.prompt_tag or cfg.completions.prompt_tag,
            request.idk_tag or cfg.completions.idk_tag,
            request.do_not_inject_context,
            request.do_not_inject_prompt,
        )
        params = llm_client.CompletionParams(
            temperature=request.temperature or cfg.completions.temperature,
            top_p=request.top_p or cfg.completions.top_p,
            frequency_penalty=request.frequency_penalty or cfg.completions.frequency_penalty,
            presence_penalty=request.presence_penalty or cfg.completions.presence_penalty,
            max_tokens=request.max_tokens or cfg.completions.max_tokens,
        )

        if not request.stream:
            return self._complete(
                request, prompt, model, full_prompt, params, match.embedding,
                context.references, insights, i_dont_know, sections_ms,
            )
        return self._stream(
            request, prompt, model, full_prompt, params, match.embedding,
            context.references, insights, i_dont_know, cancel,
        )

    def _complete(
        self,
        request: CompletionRequest,
        prompt: str,
        model: str,
        full_prompt: str,
        params: llm_client.CompletionParams,
        embedding: list[float],
        references: list[Reference],
        insights: str,
        i_dont_know: str,
        sections_ms: int,
    ) -> CompletionResponse:
        try:
            result = llm_client.complete(model, full_prompt, params, api_key=self._api_key)
        except Exception as exc:
            return self._provider_error(request, prompt, embedding, references, insights, exc)

        self._repo.record_token_usage(self.project_id, model, result.total_tokens, "completions")
        idk = is_idk_response(result.text, i_dont_know)
        prompt_id = self._store(
            request, prompt, result.text, embedding, "idk" if idk else None, references, insights
        )
        body = {
            "text": result.text,
            "references": [r.to_dict() for r in references],
            "responseId": prompt_id,
            "debugInfo": {"fullPrompt": full_prompt, "ts": {"sections": sections_ms}},
        }
        return CompletionResponse(
            200,
            _headers(references, prompt_id, "application/json"),
            json.dumps(body).encode("utf-8"),
        )

    def _stream(
        self,
        request: CompletionRequest,
        prompt: str,
        model: str,
        full_prompt: str,
        params: llm_client.CompletionParams,
        embedding: list[float],
        references: list[Reference],
        insights: str,
        i_dont_know: str,
        cancel: threading.Event | None,
    ) -> CompletionResponse:
        try:
            fragments = llm_client.stream_complete(model, full_prompt, params, api_key=self._api_key)
        except Exception as exc:
            return self._provider_error(request, prompt, embedding, references, insights, exc)

        # The record exists before streaming so its id can go in the header.
        prompt_id = self._store(request, prompt, "", embedding, None, references, insights)
        store_response = not request.exclude_from_insights and insights != "none"

        def body() -> Iterator[bytes]:
            yield encode_stream_header([r.path for r in references])
            response_text = ""
            counter = 0
            for text in fragments:
                if cancel is not None and cancel.is_set():
                    logger.info("[COMPLETIONS] [%s] Stream cancelled", self.project_id)
                    return
                if not text:
                    continue
                response_text += text
                if counter < 2 and not text.strip("\n"):
                    continue
                yield text.encode("utf-8")
                counter += 1

            estimated_tokens = round(len(full_prompt + response_text) / 4)
            if not self._api_key:
                self._repo.record_token_usage(
                    self.project_id, model, estimated_tokens, "completions"
                )
            if prompt_id:
                idk = is_idk_response(response_text, i_dont_know)
                self._repo.update_query_stat(
                    prompt_id,
                    response_text if store_response else None,
                    "idk" if idk else None,
                )

        return CompletionResponse(
            200, _headers(references, prompt_id, "text/plain; charset=utf-8"), body()
        )

    def _provider_error(
        self,
        request: CompletionRequest,
        prompt: str,
        embedding: list[float],
        references: list[Reference],
        insights: str,
        exc: Exception,
    ) -> CompletionResponse:
        error = ProviderError(str(exc))
        logger.error("[COMPLETIONS] [%s] %s", self.project_id, error.message)
        prompt_id = self._store(
            request, prompt, None, embedding, "api_error", references, insights
        )
        return CompletionResponse(
            error.code,
            _headers(references, prompt_id, "text/plain; charset=utf-8"),
            error.message.encode(),
        )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _store(
        self,
        request: CompletionRequest,
        prompt: str,
        response: str | None,
        embedding: list[float] | None,
        reason: str | None,
        references: list[Reference],
        insights: str,
    ) -> str:
        """Persist a query record, keeping only what the insights tier allows.

        The prompt is always kept. The response and references need at least
        ``basic`` insights, the embedding needs ``advanced``. Requests excluded
        from insights keep only the no-response reason.
        """
        if request.exclude_from_insights:
            return self._repo.insert_query_stat(
                self.project_id, None, None, None, reason, None, request.redact
            )
        has_insights = insights != "none"
        return self._repo.insert_query_stat(
            self.project_id,
            prompt,
            response if has_insights else None,
            embedding if insights == "advanced" else None,
            reason,
            [r.to_dict() for r in references] if has_insights else None,
            request.redact,
        )


def _pick(value, default):
    return default if value is None else value
