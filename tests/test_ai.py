"""Tests for atelier.ai and the prompt/schema helpers in atelier.prompts."""

from unittest.mock import MagicMock, patch

import pytest
import requests

from atelier import config
from atelier.ai import (
    CompletionError,
    GeminiClient,
    check_input_budget,
    estimate_token_count,
    extract_json_from_text,
)
from atelier.prompts import (
    PLAN_OUTPUT_SCHEMA,
    STEP_OUTPUT_SCHEMA,
    AgentResponseError,
    build_github_draft_messages,
    build_plan_messages,
    build_pr_body,
    build_terminal_assist_messages,
    parse_model_json,
)

MESSAGES = [
    {"role": "system", "content": "be brief"},
    {"role": "user", "content": "hello"},
]


def _response(status_code=200, payload=None):
    resp = MagicMock()
    resp.status_code = status_code
    resp.json.return_value = payload or {}
    return resp


# -- JSON extraction --


@pytest.mark.parametrize(
    "text",
    [
        '{"a": 1}',
        '  {"a": 1}\n',
        'Sure! Here is the plan:\n```json\n{"a": 1}\n```',
    ],
)
def test_extract_json_from_text(text):
    assert extract_json_from_text(text) == '{"a": 1}'


def test_extract_json_without_object():
    with pytest.raises(ValueError, match="did not contain JSON"):
        extract_json_from_text("I cannot help with that.")


def test_parse_model_json_validates_schema():
    data = parse_model_json(
        '{"summary": "s", "changes": []}', STEP_OUTPUT_SCHEMA, "Bad step"
    )
    assert data == {"summary": "s", "changes": []}

    with pytest.raises(AgentResponseError, match="Bad step"):
        parse_model_json('{"summary": "s"}', STEP_OUTPUT_SCHEMA, "Bad step")
    with pytest.raises(AgentResponseError, match="Bad plan"):
        parse_model_json("{not json}", PLAN_OUTPUT_SCHEMA, "Bad plan")


def test_parse_model_json_rejects_unknown_change_type():
    text = '{"summary": "s", "changes": [{"filePath": "/a", "changeType": "rename"}]}'
    with pytest.raises(AgentResponseError):
        parse_model_json(text, STEP_OUTPUT_SCHEMA, "Bad step")


# -- budget --


def test_estimate_token_count_rounds_up():
    assert estimate_token_count("") == 0
    assert estimate_token_count("abcde") == 2


def test_check_input_budget():
    assert check_input_budget(MESSAGES, limit=100) == 4
    with pytest.raises(CompletionError, match="too large"):
        check_input_budget([{"role": "user", "content": "x" * 400}], limit=10)


# -- prompts --


def test_plan_prompt_lists_files_and_permissions():
    messages = build_plan_messages(
        "Add tests", ["/a.ts", "/b.ts"], {"read": True, "modify": True, "create": False}
    )
    assert messages[0]["role"] == "system"
    user = messages[1]["content"]
    assert user.startswith("Task: Add tests\n")
    assert "read=true, modify=true, create=false, delete=false" in user
    assert user.endswith("/a.ts\n/b.ts")


def test_github_draft_prompt_lists_changes():
    messages = build_github_draft_messages(
        "t", "alice/demo", "main", [("create", "/a.ts"), ("delete", "/b.ts")]
    )
    assert "CREATE: /a.ts\nDELETE: /b.ts" in messages[1]["content"]


def test_pr_body():
    body = build_pr_body(" Summary. ", ["/a.ts"], ["May break CI"], [])
    assert body == (
        "## Summary\nSummary.\n\n## Files Modified\n- /a.ts\n\n"
        "## Risks & Assumptions\n- May break CI\n- None"
    )


def test_terminal_assist_prompt_validation():
    messages = build_terminal_assist_messages("fix", "npm ERR!", "npm install")
    assert messages[1]["content"].startswith("Suggest possible fixes")
    assert "Command: npm install" in messages[1]["content"]
    with pytest.raises(ValueError, match="Invalid assist kind"):
        build_terminal_assist_messages("poem", "x")
    with pytest.raises(ValueError, match="cannot be empty"):
        build_terminal_assist_messages("explain", "")


# -- Gemini client --


def test_gemini_client_requires_key(monkeypatch):
    monkeypatch.setattr(config, "GEMINI_API_KEY", None)
    with pytest.raises(CompletionError, match="GEMINI_API_KEY"):
        GeminiClient()


@patch("atelier.ai.requests.post")
def test_gemini_complete(mock_post):
    mock_post.return_value = _response(
        payload={"candidates": [{"content": {"parts": [{"text": "hi "}, {"text": "there"}]}}]}
    )
    client = GeminiClient("key-123", model="gemini-test")

    assert client.complete(MESSAGES) == "hi there"

    url = mock_post.call_args.args[0]
    assert url.endswith("/models/gemini-test:generateContent")
    payload = mock_post.call_args.kwargs["json"]
    assert payload["systemInstruction"] == {"parts": [{"text": "be brief"}]}
    assert payload["contents"] == [{"role": "user", "parts": [{"text": "hello"}]}]
    assert mock_post.call_args.kwargs["headers"]["x-goog-api-key"] == "key-123"


@patch("atelier.ai.requests.post")
def test_gemini_error_redacts_key(mock_post):
    mock_post.return_value = _response(
        400, {"error": {"message": "API key key-123 not valid"}}
    )
    with pytest.raises(CompletionError) as exc_info:
        GeminiClient("key-123").complete(MESSAGES)
    assert "key-123" not in str(exc_info.value)
    assert "[REDACTED]" in str(exc_info.value)


@patch("atelier.ai.requests.post")
def test_gemini_network_error(mock_post):
    mock_post.side_effect = requests.ConnectionError("refused")
    with pytest.raises(CompletionError, match="Gemini API error"):
        GeminiClient("k").complete(MESSAGES)


@patch("atelier.ai.requests.post")
def test_gemini_empty_candidates(mock_post):
    mock_post.return_value = _response(payload={"candidates": []})
    with pytest.raises(CompletionError, match="no candidates"):
        GeminiClient("k").complete(MESSAGES)


def test_gemini_requires_trailing_user_message():
    with pytest.raises(ValueError, match="Last message must be from the user"):
        GeminiClient("k").complete([{"role": "system", "content": "x"}])
