"""Completion client for the AI backend.

Callers build a list of ``{"role": ..., "content": ...}`` messages and get
back the model's text. ``CompletionClient`` is the structural interface the
agent and terminal code depend on; ``GeminiClient`` is the production
implementation over the Gemini REST API.
"""

from __future__ import annotations

import logging
import re
from typing import Protocol, runtime_checkable

import requests

from atelier import config

log = logging.getLogger(__name__)

GEMINI_API_URL = "https://generativelanguage.googleapis.com/v1beta"
GENERATION_CONFIG = {
    "temperature": 0.7,
    "topP": 0.95,
    "topK": 40,
    "maxOutputTokens": 8192,
}
REQUEST_TIMEOUT_SECONDS = 120

# Rough heuristic used for input budgeting only.
CHARS_PER_TOKEN = 4

_JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")


class CompletionError(RuntimeError):
    """The AI backend could not produce a response."""


@runtime_checkable
class CompletionClient(Protocol):
    def complete(self, messages: list[dict[str, str]], *, model: str | None = None) -> str: ...


def estimate_token_count(text: str) -> int:
    return (len(text) + CHARS_PER_TOKEN - 1) // CHARS_PER_TOKEN


def check_input_budget(messages: list[dict[str, str]], limit: int | None = None) -> int:
    """Raise CompletionError if the prompt is estimated to exceed *limit* tokens."""
    limit = config.AI_MAX_INPUT_TOKENS if limit is None else limit
    tokens = sum(estimate_token_count(m.get("content", "")) for m in messages)
    if tokens > limit:
        raise CompletionError(
            f"Prompt is too large: ~{tokens} tokens (limit {limit}). "
            "Narrow the task or the files involved."
        )
    return tokens


def extract_json_from_text(text: str) -> str:
    """Return the JSON object embedded in a model response.

    Responses are free text; models often wrap the object in prose or a
    code fence. The outermost ``{...}`` span is taken as the object.
    """
    trimmed = text.strip()
    if trimmed.startswith("{") and trimmed.endswith("}"):
        return trimmed
    match = _JSON_OBJECT_RE.search(trimmed)
    if not match:
        raise ValueError("AI response did not contain JSON.")
    return match.group(0)


def _to_gemini_payload(messages: list[dict[str, str]]) -> dict:
    system_parts = [m["content"] for m in messages if m.get("role") == "system"]
    contents = [
        {
            "role": "model" if m.get("role") == "assistant" else "user",
            "parts": [{"text": m["content"]}],
        }
        for m in messages
        if m.get("role") != "system"
    ]
    payload: dict = {"contents": contents, "generationConfig": dict(GENERATION_CONFIG)}
    if system_parts:
        payload["systemInstruction"] = {"parts": [{"text": "\n\n".join(system_parts)}]}
    return payload


class GeminiClient:
    def __init__(self, api_key: str | None = None, *, model: str | None = None):
        self.api_key = api_key or config.GEMINI_API_KEY
        if not self.api_key:
            raise CompletionError(
                "Gemini API key is required. Please set GEMINI_API_KEY environment variable."
            )
        self.model = model or config.DEFAULT_AI_MODEL

    def complete(self, messages: list[dict[str, str]], *, model: str | None = None) -> str:
        if not messages or messages[-1].get("role") != "user":
            raise ValueError("Last message must be from the user")
        check_input_budget(messages)
        model_name = model or self.model
        try:
            resp = requests.post(
                f"{GEMINI_API_URL}/models/{model_name}:generateContent",
                headers={"Content-Type": "application/json", "x-goog-api-key": self.api_key},
                json=_to_gemini_payload(messages),
                timeout=REQUEST_TIMEOUT_SECONDS,
            )
        except requests.RequestException as e:
            raise CompletionError(f"Gemini API error: {e}") from e

        if resp.status_code != 200:
            error_msg = f"Gemini API error {resp.status_code}"
            try:
                error_msg = resp.json().get("error", {}).get("message", error_msg)
            except ValueError:
                pass
            raise CompletionError(error_msg.replace(self.api_key, "[REDACTED]"))

        data = resp.json()
        candidates = data.get("candidates") or []
        if not candidates:
            raise CompletionError("Gemini returned no candidates")
        parts = candidates[0].get("content", {}).get("parts", [])
        text = "".join(p.get("text", "") for p in parts)
        if not text:
            raise CompletionError("Gemini returned an empty response")
        usage = data.get("usageMetadata", {})
        log.debug(
            "Gemini %s: %s prompt tokens, %s output tokens",
            model_name,
            usage.get("promptTokenCount"),
            usage.get("candidatesTokenCount"),
        )
        return text


def get_completion_client() -> CompletionClient:
    return GeminiClient()
