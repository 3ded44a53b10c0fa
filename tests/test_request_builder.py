from __future__ import annotations

import pytest

from replybridge.adapters.config.schema import LLMConfig
from replybridge.core.envelopes import ConversationTurn, GenerationOptions
from replybridge.core.errors import ResponseValidationError, ValidationError
from replybridge.llm.request_builder import (
    GenerationSettings,
    build_contents,
    build_generate_request,
    default_generation_settings,
    extract_reply_text,
    merge_generation_options,
    validate_credential,
    validate_generation_options,
)


def test_validate_credential_checks_prefix() -> None:
    assert validate_credential("  AIzaSecret ", "AIza") == "AIzaSecret"
    with pytest.raises(ValidationError):
        validate_credential("", "AIza")
    with pytest.raises(ValidationError):
        validate_credential("sk-other", "AIza")


def test_merge_options_overrides_only_given_fields() -> None:
    defaults = default_generation_settings(LLMConfig())

    merged = merge_generation_options(defaults, GenerationOptions(temperature=0.2, maxOutputTokens=64))

    assert merged == GenerationSettings(temperature=0.2, top_k=1, top_p=1.0, max_output_tokens=64)
    assert merge_generation_options(defaults, None) is defaults


@pytest.mark.parametrize(
    "settings",
    [
        GenerationSettings(temperature=2.1, top_k=1, top_p=1.0, max_output_tokens=10),
        GenerationSettings(temperature=0.5, top_k=1, top_p=1.0, max_output_tokens=0),
        GenerationSettings(temperature=0.5, top_k=0, top_p=1.0, max_output_tokens=10),
        GenerationSettings(temperature=0.5, top_k=1, top_p=0.0, max_output_tokens=10),
    ],
)
def test_validate_generation_options_rejects_out_of_range(settings: GenerationSettings) -> None:
    with pytest.raises(ValidationError):
        validate_generation_options(settings)


def test_build_contents_maps_roles_in_turns_mode() -> None:
    turns = [
        ConversationTurn(role="user", content="Can we meet Friday?"),
        ConversationTurn(role="assistant", content="Sure"),
        ConversationTurn(role="Alice", content="   "),
    ]

    contents = build_contents(turns, mode="turns", prompt_template="{conversation}")

    assert contents == [
        {"role": "user", "parts": [{"text": "Can we meet Friday?"}]},
        {"role": "model", "parts": [{"text": "Sure"}]},
    ]


def test_build_contents_renders_prompt_mode() -> None:
    turns = [
        ConversationTurn(role="Alice", content="Hi there"),
        ConversationTurn(role="Bob", content="Hello"),
    ]

    contents = build_contents(turns, mode="prompt", prompt_template="Reply to:\n{conversation}\nReply:")

    assert contents == [{"role": "user", "parts": [{"text": "Reply to:\nAlice: Hi there\n\nBob: Hello\nReply:"}]}]


def test_build_contents_rejects_empty_conversation() -> None:
    with pytest.raises(ValidationError):
        build_contents([], mode="turns", prompt_template="{conversation}")


def test_build_generate_request_attaches_config_and_safety() -> None:
    config = LLMConfig()
    request = build_generate_request(
        [{"role": "user", "parts": [{"text": "hi"}]}],
        default_generation_settings(config),
        safety_categories=config.safety_categories,
        safety_threshold=config.safety_threshold,
    )

    assert request["generationConfig"] == {"temperature": 0.7, "topK": 1, "topP": 1.0, "maxOutputTokens": 2048}
    assert len(request["safetySettings"]) == 4
    assert all(item["threshold"] == "BLOCK_MEDIUM_AND_ABOVE" for item in request["safetySettings"])


def test_extract_reply_text_strips_text() -> None:
    data = {"candidates": [{"content": {"parts": [{"text": "  Sounds good!  "}]}}]}

    assert extract_reply_text(data) == "Sounds good!"


@pytest.mark.parametrize(
    ("data", "reason", "message"),
    [
        ({"candidates": []}, "no_candidates", "No response candidates"),
        ({}, "no_candidates", "No response candidates"),
        ({"candidates": [{"content": {"parts": []}}]}, "no_parts", "Invalid response format"),
        ({"candidates": [{"finishReason": "SAFETY"}]}, "no_parts", "Invalid response format"),
        ({"candidates": [{"content": {"parts": [{"text": "  "}]}}]}, "empty_text", "Empty response text"),
    ],
)
def test_extract_reply_text_reports_distinct_failures(data: dict, reason: str, message: str) -> None:
    with pytest.raises(ResponseValidationError) as exc_info:
        extract_reply_text(data)

    assert exc_info.value.reason == reason
    assert str(exc_info.value) == message
