from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Literal, Mapping, Sequence

from replybridge.adapters.config.schema import LLMConfig
from replybridge.core.envelopes import ConversationTurn, GenerationOptions
from replybridge.core.errors import ResponseValidationError, ValidationError


@dataclass(frozen=True)
class GenerationSettings:
    temperature: float
    top_k: int
    top_p: float
    max_output_tokens: int


def default_generation_settings(config: LLMConfig) -> GenerationSettings:
    return GenerationSettings(
        temperature=config.temperature,
        top_k=config.top_k,
        top_p=config.top_p,
        max_output_tokens=config.max_output_tokens,
    )


def validate_credential(credential: str | None, prefix: str) -> str:
    normalized = (credential or "").strip()
    if not normalized:
        raise ValidationError("API key is required")
    if prefix and not normalized.startswith(prefix):
        raise ValidationError("API key format is invalid")
    return normalized


def merge_generation_options(defaults: GenerationSettings, options: GenerationOptions | None) -> GenerationSettings:
    if options is None:
        return defaults
    overrides = options.model_dump(exclude_none=True)
    return replace(defaults, **overrides)


def validate_generation_options(settings: GenerationSettings) -> GenerationSettings:
    if not 0 <= settings.temperature <= 2:
        raise ValidationError("temperature must be between 0 and 2")
    if settings.max_output_tokens < 1:
        raise ValidationError("maxOutputTokens must be at least 1")
    if settings.top_k < 1:
        raise ValidationError("topK must be at least 1")
    if not 0 < settings.top_p <= 1:
        raise ValidationError("topP must be greater than 0 and at most 1")
    return settings


def _provider_role(role: str) -> str:
    return "user" if role.strip().lower() == "user" else "model"


def render_transcript(turns: Sequence[ConversationTurn]) -> str:
    blocks = []
    for turn in turns:
        author = turn.role.strip() or "unknown"
        blocks.append(f"{author}: {turn.content.strip()}")
    return "\n\n".join(blocks)


def build_contents(
    turns: Sequence[ConversationTurn],
    *,
    mode: Literal["turns", "prompt"],
    prompt_template: str,
) -> list[dict[str, Any]]:
    usable = [turn for turn in turns if turn.content.strip()]
    if not usable:
        raise ValidationError("conversation has no messages")
    if mode == "prompt":
        prompt = prompt_template.replace("{conversation}", render_transcript(usable))
        return [{"role": "user", "parts": [{"text": prompt}]}]
    return [{"role": _provider_role(turn.role), "parts": [{"text": turn.content}]} for turn in usable]


def build_generate_request(
    contents: Sequence[Mapping[str, Any]],
    settings: GenerationSettings,
    *,
    safety_categories: Sequence[str],
    safety_threshold: str,
) -> dict[str, Any]:
    return {
        "contents": list(contents),
        "generationConfig": {
            "temperature": settings.temperature,
            "topK": settings.top_k,
            "topP": settings.top_p,
            "maxOutputTokens": settings.max_output_tokens,
        },
        "safetySettings": [{"category": category, "threshold": safety_threshold} for category in safety_categories],
    }


def extract_reply_text(data: Any) -> str:
    if not isinstance(data, Mapping):
        raise ResponseValidationError("Invalid response format", reason="invalid_body")
    candidates = data.get("candidates")
    if not isinstance(candidates, list) or not candidates:
        raise ResponseValidationError("No response candidates", reason="no_candidates")
    candidate = candidates[0]
    content = candidate.get("content") if isinstance(candidate, Mapping) else None
    parts = content.get("parts") if isinstance(content, Mapping) else None
    if not isinstance(parts, list) or not parts or not isinstance(parts[0], Mapping):
        raise ResponseValidationError("Invalid response format", reason="no_parts")
    text = parts[0].get("text")
    if not isinstance(text, str) or not text.strip():
        raise ResponseValidationError("Empty response text", reason="empty_text")
    return text.strip()
