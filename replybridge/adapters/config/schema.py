from __future__ import annotations

import tomllib
from pathlib import Path
from typing import Annotated, Any, Dict, List, Literal

from pydantic import BaseModel, BeforeValidator, ByteSize, ConfigDict, Field, PositiveInt, TypeAdapter
from pydantic import model_validator


_BYTE_SIZE_ADAPTER = TypeAdapter(ByteSize)
_ATTEMPT_TIMEOUT_MARGIN_SECONDS = 5.0


def _coerce_byte_size(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError("byte size must be a positive integer or size string")
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if value.is_integer():
            return int(value)
        raise ValueError("byte size numeric values must be whole numbers")
    try:
        return int(_BYTE_SIZE_ADAPTER.validate_python(value))
    except (TypeError, ValueError) as exc:
        raise ValueError("invalid byte size value") from exc


ByteSizeValue = Annotated[int, BeforeValidator(_coerce_byte_size), Field(gt=0)]

PositiveSeconds = Annotated[float, Field(gt=0)]


class RuntimeConfig(BaseModel):
    log_level: str = "INFO"
    environment: str = "development"


class TransportConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = Field(default=8765, ge=0, le=65535)
    max_message_bytes: ByteSizeValue = 16777216


class ChannelConfig(BaseModel):
    name: str = "foreground"
    request_timeout_seconds: PositiveSeconds = 30.0
    generate_timeout_seconds: PositiveSeconds = 300.0
    handshake_timeout_seconds: PositiveSeconds = 5.0
    heartbeat_interval_seconds: PositiveSeconds = 20.0
    readiness_probe_attempts: PositiveInt = 20
    readiness_probe_interval_seconds: PositiveSeconds = 0.5
    reconnect_max_attempts: PositiveInt = 5
    reconnect_base_delay_seconds: PositiveSeconds = 1.0
    reconnect_max_delay_seconds: PositiveSeconds = 10.0


class LLMConfig(BaseModel):
    provider: Literal["gemini"] = "gemini"
    base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    model: str = "gemini-1.5-flash"
    api_key_prefix: str = "AIza"
    temperature: float = Field(default=0.7, ge=0, le=2)
    top_k: PositiveInt = 1
    top_p: float = Field(default=1.0, gt=0, le=1)
    max_output_tokens: PositiveInt = 2048
    safety_threshold: str = "BLOCK_MEDIUM_AND_ABOVE"
    safety_categories: List[str] = Field(
        default_factory=lambda: [
            "HARM_CATEGORY_HARASSMENT",
            "HARM_CATEGORY_HATE_SPEECH",
            "HARM_CATEGORY_SEXUALLY_EXPLICIT",
            "HARM_CATEGORY_DANGEROUS_CONTENT",
        ]
    )
    transcript_mode: Literal["turns", "prompt"] = "turns"
    reply_prompt: str = (
        "Write a natural, concise and polite reply to the conversation below. "
        "Answer the other party's questions or requests concretely and keep a tone "
        "suitable for business messaging.\n\n"
        "Conversation:\n{conversation}\n\n"
        "Reply:"
    )
    retry_attempts: PositiveInt = 3
    attempt_timeout_seconds: PositiveSeconds | None = None
    retry_base_delay_seconds: float = Field(default=1.0, ge=0)
    retry_max_delay_seconds: float = Field(default=10.0, ge=0)
    request_attempts: PositiveInt = 3
    request_base_timeout_seconds: PositiveSeconds = 15.0
    request_server_error_delay_seconds: float = Field(default=2.0, ge=0)
    request_error_delay_seconds: float = Field(default=1.0, ge=0)
    sock_connect_timeout_seconds: PositiveSeconds = 10.0

    @model_validator(mode="after")
    def _validate_prompt(self) -> "LLMConfig":
        if self.transcript_mode == "prompt" and "{conversation}" not in self.reply_prompt:
            raise ValueError("reply_prompt must contain a {conversation} placeholder")
        return self

    @model_validator(mode="after")
    def _validate_attempt_timeout(self) -> "LLMConfig":
        if self.attempt_timeout_seconds is not None and self.attempt_timeout_seconds <= self.request_budget_seconds:
            raise ValueError(
                f"attempt_timeout_seconds must exceed the request retry budget of {self.request_budget_seconds}s"
            )
        return self

    @property
    def request_budget_seconds(self) -> float:
        """Worst case for one raw request: every attempt times out after the longest delay."""
        timeouts = sum(self.request_base_timeout_seconds * n for n in range(1, self.request_attempts + 1))
        longest_delay = max(self.request_server_error_delay_seconds, self.request_error_delay_seconds)
        delays = sum(longest_delay * n for n in range(1, self.request_attempts))
        return timeouts + delays

    @property
    def outer_attempt_timeout_seconds(self) -> float:
        if self.attempt_timeout_seconds is not None:
            return self.attempt_timeout_seconds
        return self.request_budget_seconds + _ATTEMPT_TIMEOUT_MARGIN_SECONDS

    @property
    def endpoint(self) -> str:
        return f"{self.base_url.rstrip('/')}/models/{self.model}:generateContent"


class StorageConfig(BaseModel):
    backend: Literal["sqlite", "memory"] = "sqlite"
    sqlite_url: str = "sqlite+aiosqlite:///./data/replybridge.db"
    quota_bytes: ByteSizeValue = 5242880
    pool_size: PositiveInt = 5
    echo: bool = False
    credential_key: str = "settings.credential"


class CacheConfig(BaseModel):
    prefix: str = Field(default="cache", min_length=1)
    ttl_seconds: PositiveSeconds = 3600.0


class MaintenanceConfig(BaseModel):
    enabled: bool = True
    alarm_name: str = "cache-cleanup"
    initial_delay_seconds: float = Field(default=300.0, ge=0)
    period_seconds: PositiveSeconds = 3600.0
    failure_threshold: PositiveInt = 3
    backoff_delay_seconds: float = Field(default=7200.0, ge=0)
    backoff_period_seconds: PositiveSeconds = 14400.0

    @model_validator(mode="after")
    def _validate_backoff(self) -> "MaintenanceConfig":
        if self.backoff_period_seconds <= self.period_seconds:
            raise ValueError("backoff_period_seconds must be longer than period_seconds")
        return self


class LoggingConfig(BaseModel):
    logfmt_enabled: bool = True
    log_level: str = "INFO"
    log_dir: str = "logs"


class Settings(BaseModel):
    runtime: RuntimeConfig = RuntimeConfig()
    transport: TransportConfig = TransportConfig()
    channel: ChannelConfig = ChannelConfig()
    llm: LLMConfig = LLMConfig()
    storage: StorageConfig = StorageConfig()
    cache: CacheConfig = CacheConfig()
    maintenance: MaintenanceConfig = MaintenanceConfig()
    logging: LoggingConfig = LoggingConfig()

    model_config = ConfigDict(extra="forbid")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Settings":
        return cls.model_validate(data)

    @classmethod
    def from_file(cls, path: Path | None = None) -> "Settings":
        if path is None:
            raise ValueError("config file path is required")
        with path.open("rb") as fp:
            data = tomllib.load(fp)
        return cls.from_dict(data)
