"""Client for the completions endpoint, decoding the streamed answer."""

from __future__ import annotations

import json
import logging
import threading
import urllib.error
import urllib.request
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from docprompt.config import I_DONT_KNOW
from docprompt.rag.stream import StreamDecoder

logger = logging.getLogger(__name__)

DEFAULT_COMPLETIONS_URL = "http://localhost:8000/v1/completions"
_READ_SIZE = 8192


class RequestAbortedError(RuntimeError):
    """The caller cancelled the request before the answer was complete."""


@dataclass
class ClientOptions:
    """Where to send the prompt and the optional engine parameters."""

    completions_url: str = DEFAULT_COMPLETIONS_URL
    i_dont_know_message: str = I_DONT_KNOW
    model: str | None = None
    prompt_template: str | None = None
    temperature: float | None = None
    top_p: float | None = None
    frequency_penalty: float | None = None
    presence_penalty: float | None = None
    max_tokens: int | None = None
    sections_match_count: int | None = None
    sections_match_threshold: float | None = None
    timeout: float = 60.0
    cancel: threading.Event | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def payload(self, prompt: str) -> dict[str, Any]:
        values = {
            "prompt": prompt,
            "model": self.model,
            "iDontKnowMessage": self.i_dont_know_message,
            "promptTemplate": self.prompt_template,
            "temperature": self.temperature,
            "topP": self.top_p,
            "frequencyPenalty": self.frequency_penalty,
            "presencePenalty": self.presence_penalty,
            "maxTokens": self.max_tokens,
            "sectionsMatchCount": self.sections_match_count,
            "sectionsMatchThreshold": self.sections_match_threshold,
            **self.extra,
        }
        return {k: v for k, v in values.items() if v is not None}


def submit_prompt(
    prompt: str,
    project_key: str,
    on_answer_chunk: Callable[[str], Any],
    on_references: Callable[[list[str]], Any],
    on_error: Callable[[Exception], Any],
    options: ClientOptions | None = None,
) -> None:
    """Send *prompt* and stream the answer through the callbacks.

    ``on_answer_chunk`` receives each answer fragment as it arrives and
    ``on_references`` the reference paths once the stream ends. On any
    failure ``on_answer_chunk`` receives the fallback message once, then
    ``on_error`` receives the exception.
    """
    options = options or ClientOptions()
    if not project_key:
        raise ValueError("A projectKey is required.")
    if not prompt:
        return

    body = json.dumps(options.payload(prompt)).encode("utf-8")
    separator = "&" if "?" in options.completions_url else "?"
    request = urllib.request.Request(
        f"{options.completions_url}{separator}project={project_key}",
        data=body,
        headers={"Content-Type": "application/json"},
        method="POST",
    )

    decoder = StreamDecoder()
    try:
        with urllib.request.urlopen(request, timeout=options.timeout) as response:
            while True:
                if options.cancel is not None and options.cancel.is_set():
                    raise RequestAbortedError("Request aborted")
                chunk = response.read1(_READ_SIZE)
                if not chunk:
                    break
                for fragment in decoder.feed(chunk):
                    on_answer_chunk(fragment)
        for fragment in decoder.close():
            on_answer_chunk(fragment)
    except urllib.error.HTTPError as exc:
        message = exc.read().decode("utf-8", errors="replace")
        logger.error("Completion request failed (%s): %s", exc.code, message)
        on_answer_chunk(options.i_dont_know_message)
        on_error(RuntimeError(message or str(exc)))
        return
    except (urllib.error.URLError, OSError, RequestAbortedError) as exc:
        logger.error("Completion request failed: %s", exc)
        on_answer_chunk(options.i_dont_know_message)
        on_error(exc)
        return

    on_references(decoder.references)
