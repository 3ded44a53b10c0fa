from __future__ import annotations

import inspect
import json
import logging
from typing import Any, Sequence

import aiosonic
from aiosonic.exceptions import ConnectTimeout, ReadTimeout, RequestTimeout
from aiosonic.timeout import Timeouts

from replybridge.adapters.config.schema import LLMConfig
from replybridge.core.envelopes import ConversationTurn, GenerationOptions
from replybridge.core.errors import (
    APIError,
    RateLimitedError,
    ResponseValidationError,
    TerminalAPIError,
    TransientAPIError,
    ValidationError,
)
from replybridge.llm.request_builder import (
    build_contents,
    build_generate_request,
    default_generation_settings,
    extract_reply_text,
    merge_generation_options,
    validate_credential,
    validate_generation_options,
)
from replybridge.shared.retries import AsyncRetriesService, RetryPolicy

_BODY_PREVIEW_CHARS = 300


def classify_http_error(status: int, body: str) -> APIError:
    preview = body.strip()[:_BODY_PREVIEW_CHARS]
    if status in (401, 403):
        return TerminalAPIError(f"API key rejected (HTTP {status})", status=status, body=preview)
    if status == 400 and "API key" in body:
        return TerminalAPIError("API key is invalid (HTTP 400)", status=status, body=preview)
    if status == 429:
        return RateLimitedError("rate limited by provider (HTTP 429)", status=status, body=preview)
    if status == 408 or status >= 500:
        return TransientAPIError(f"provider error (HTTP {status}): {preview}", status=status, body=preview)
    return TerminalAPIError(f"request rejected (HTTP {status}): {preview}", status=status, body=preview)


def _outer_retryable(exc: Exception) -> bool:
    return not isinstance(exc, (TerminalAPIError, ValidationError))


def _inner_retryable(exc: Exception) -> bool:
    return not isinstance(exc, (TerminalAPIError, ValidationError, ResponseValidationError))


class ReplyClient:
    """Generates reply text for a conversation through the Gemini REST API.

    Two retry layers wrap every call. The outer layer repeats the whole
    generate-and-extract step with exponential backoff and stops at once on
    terminal errors. The inner layer repeats the raw POST with a timeout that
    grows with each attempt and a linear delay after server errors.
    """

    def __init__(
        self,
        config: LLMConfig,
        *,
        http_client: Any | None = None,
        retries: AsyncRetriesService | None = None,
    ) -> None:
        self._config = config
        self._http = http_client or aiosonic.HTTPClient()
        self._retries = retries or AsyncRetriesService()
        self._defaults = default_generation_settings(config)
        self._logger = logging.getLogger("replybridge.llm")

    async def generate_reply(
        self,
        turns: Sequence[ConversationTurn],
        credential: str,
        options: GenerationOptions | None = None,
    ) -> str:
        api_key = validate_credential(credential, self._config.api_key_prefix)
        settings = validate_generation_options(merge_generation_options(self._defaults, options))
        contents = build_contents(
            turns,
            mode=self._config.transcript_mode,
            prompt_template=self._config.reply_prompt,
        )
        payload = build_generate_request(
            contents,
            settings,
            safety_categories=self._config.safety_categories,
            safety_threshold=self._config.safety_threshold,
        )
        policy = RetryPolicy(
            max_attempts=self._config.retry_attempts,
            base_delay_seconds=self._config.retry_base_delay_seconds,
            max_delay_seconds=self._config.retry_max_delay_seconds,
            attempt_timeout_seconds=self._config.outer_attempt_timeout_seconds,
        )

        async def _attempt(attempt: int) -> str:
            self._logger.debug("reply generation attempt", extra={"attempt": attempt, "turns": len(contents)})
            data = await self._post_with_retry(payload, api_key)
            return extract_reply_text(data)

        try:
            text = await self._retries.run(
                _attempt,
                policy=policy,
                should_retry=_outer_retryable,
                on_retry=self._log_outer_retry,
            )
        except (TerminalAPIError, ValidationError):
            raise
        except Exception as exc:
            last_error = str(exc) or type(exc).__name__
            raise TransientAPIError(
                f"reply generation failed after {policy.max_attempts} attempts; last error: {last_error}",
                status=getattr(exc, "status", None),
                attempts=policy.max_attempts,
            ) from exc
        self._logger.info("reply generated", extra={"chars": len(text)})
        return text

    async def close(self) -> None:
        shutdown = getattr(self._http, "shutdown", None)
        if callable(shutdown):
            result = shutdown()
            if inspect.isawaitable(result):
                await result

    async def _post_with_retry(self, payload: dict[str, Any], api_key: str) -> Any:
        policy = RetryPolicy(
            max_attempts=self._config.request_attempts,
            base_delay_seconds=0.0,
            max_delay_seconds=0.0,
            attempt_timeout_seconds=self._config.request_base_timeout_seconds,
            timeout_growth="linear",
        )

        async def _call(attempt: int) -> Any:
            return await self._post_once(payload, api_key, policy.timeout_for_attempt(attempt))

        try:
            return await self._retries.run(
                _call,
                policy=policy,
                should_retry=_inner_retryable,
                delay_for=self._inner_delay,
                on_retry=self._log_inner_retry,
            )
        except TimeoutError as exc:
            raise TransientAPIError(f"request timed out after {policy.max_attempts} attempts") from exc
        except RateLimitedError as exc:
            raise TerminalAPIError("API quota exceeded (HTTP 429)", status=exc.status, body=exc.body) from exc
        except (APIError, ResponseValidationError, ValidationError):
            raise
        except Exception as exc:
            raise TransientAPIError(f"request failed after {policy.max_attempts} attempts: {exc}") from exc

    async def _post_once(self, payload: dict[str, Any], api_key: str, timeout: float | None) -> Any:
        timeouts = Timeouts(
            sock_connect=self._config.sock_connect_timeout_seconds,
            sock_read=timeout,
            request_timeout=timeout,
        )
        headers = {
            "Content-Type": "application/json",
            "x-goog-api-key": api_key,
        }
        try:
            response = await self._http.post(
                self._config.endpoint,
                headers=headers,
                data=json.dumps(payload).encode("utf-8"),
                timeouts=timeouts,
            )
            body = await response.content()
        except (ConnectTimeout, ReadTimeout, RequestTimeout) as exc:
            raise TimeoutError(f"request timed out after {timeout}s") from exc
        text = body.decode("utf-8", errors="replace")
        status = response.status_code
        if 200 <= status < 300:
            try:
                return json.loads(text)
            except json.JSONDecodeError as exc:
                raise ResponseValidationError("Invalid response format", reason="invalid_body") from exc
        raise classify_http_error(status, text)

    def _inner_delay(self, exc: Exception, attempt: int) -> float:
        if isinstance(exc, TimeoutError):
            return 0.0
        status = getattr(exc, "status", None)
        if isinstance(status, int) and (status == 429 or status >= 500):
            return self._config.request_server_error_delay_seconds * attempt
        return self._config.request_error_delay_seconds * attempt

    def _log_inner_retry(self, exc: Exception, attempt: int, delay: float) -> None:
        self._logger.warning(
            "provider request failed, retrying",
            extra={"attempt": attempt, "delay_seconds": delay, "error": str(exc)},
        )

    def _log_outer_retry(self, exc: Exception, attempt: int, delay: float) -> None:
        self._logger.warning(
            "reply generation failed, retrying",
            extra={"attempt": attempt, "delay_seconds": delay, "error": str(exc)},
        )
