from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as SchemaValidationError

from replybridge.core.errors import ProtocolError
from replybridge.shared.datetime_utils import epoch_ms


class MessageType(str, Enum):
    GET_CREDENTIAL = "GET_CREDENTIAL"
    SET_CREDENTIAL = "SET_CREDENTIAL"
    GET_CACHED_CONTEXT = "GET_CACHED_CONTEXT"
    SET_CACHED_CONTEXT = "SET_CACHED_CONTEXT"
    CLEAR_CACHE = "CLEAR_CACHE"
    GET_STORAGE_INFO = "GET_STORAGE_INFO"
    GENERATE_REPLY = "GENERATE_REPLY"
    PING = "PING"
    PONG = "PONG"
    CONNECTION_ESTABLISHED = "CONNECTION_ESTABLISHED"


CONTROL_TYPES = frozenset({MessageType.PING.value, MessageType.PONG.value, MessageType.CONNECTION_ESTABLISHED.value})
BUSINESS_TYPES = frozenset(kind.value for kind in MessageType if kind.value not in CONTROL_TYPES)


class Envelope(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    request_id: Optional[str] = Field(default=None, alias="requestId")
    timestamp: int = Field(default_factory=epoch_ms)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class PingEnvelope(Envelope):
    type: Literal["PING"] = "PING"


class PongEnvelope(Envelope):
    type: Literal["PONG"] = "PONG"
    success: bool = True


class ConnectionEstablishedEnvelope(Envelope):
    type: Literal["CONNECTION_ESTABLISHED"] = "CONNECTION_ESTABLISHED"
    success: bool = True


class ConversationTurn(BaseModel):
    role: str
    content: str


class GenerationOptions(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    temperature: Optional[float] = None
    top_k: Optional[int] = Field(default=None, alias="topK")
    top_p: Optional[float] = Field(default=None, alias="topP")
    max_output_tokens: Optional[int] = Field(default=None, alias="maxOutputTokens")


class GetCredentialMessage(Envelope):
    type: Literal["GET_CREDENTIAL"] = "GET_CREDENTIAL"


class SetCredentialMessage(Envelope):
    type: Literal["SET_CREDENTIAL"] = "SET_CREDENTIAL"
    credential: str


class GetCachedContextMessage(Envelope):
    type: Literal["GET_CACHED_CONTEXT"] = "GET_CACHED_CONTEXT"
    scope: str
    thread_id: str = Field(alias="threadId")


class SetCachedContextMessage(Envelope):
    type: Literal["SET_CACHED_CONTEXT"] = "SET_CACHED_CONTEXT"
    scope: str
    thread_id: str = Field(alias="threadId")
    context: Any
    ttl_seconds: Optional[float] = Field(default=None, gt=0, alias="ttlSeconds")


class ClearCacheMessage(Envelope):
    type: Literal["CLEAR_CACHE"] = "CLEAR_CACHE"
    all: bool = False


class GetStorageInfoMessage(Envelope):
    type: Literal["GET_STORAGE_INFO"] = "GET_STORAGE_INFO"


class GenerateReplyMessage(Envelope):
    type: Literal["GENERATE_REPLY"] = "GENERATE_REPLY"
    messages: List[ConversationTurn]
    credential: str
    options: Optional[GenerationOptions] = None


BusinessMessage = Annotated[
    Union[
        GetCredentialMessage,
        SetCredentialMessage,
        GetCachedContextMessage,
        SetCachedContextMessage,
        ClearCacheMessage,
        GetStorageInfoMessage,
        GenerateReplyMessage,
    ],
    Field(discriminator="type"),
]

_BUSINESS_MESSAGE_ADAPTER: TypeAdapter[BusinessMessage] = TypeAdapter(BusinessMessage)


class ResponseEnvelope(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    request_id: Optional[str] = Field(default=None, alias="requestId")
    success: bool
    error: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None
    timestamp: int = Field(default_factory=epoch_ms)

    @classmethod
    def ok(cls, request_id: str | None, payload: Mapping[str, Any] | None = None) -> "ResponseEnvelope":
        return cls(request_id=request_id, success=True, payload=dict(payload or {}))

    @classmethod
    def failure(cls, request_id: str | None, error: str) -> "ResponseEnvelope":
        return cls(request_id=request_id, success=False, error=error)

    @classmethod
    def from_wire(cls, data: Mapping[str, Any]) -> "ResponseEnvelope":
        try:
            return cls.model_validate(data)
        except SchemaValidationError as exc:
            raise ProtocolError(f"malformed response envelope: {exc.error_count()} errors") from exc

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def parse_business_message(data: Mapping[str, Any]) -> BusinessMessage:
    try:
        return _BUSINESS_MESSAGE_ADAPTER.validate_python(data)
    except SchemaValidationError as exc:
        raise ProtocolError(f"invalid {data.get('type')} envelope: {exc.error_count()} errors") from exc


def envelope_to_wire(message: Envelope | Mapping[str, Any]) -> Dict[str, Any]:
    if isinstance(message, Envelope):
        return message.to_wire()
    if isinstance(message, Mapping):
        kind = message.get("type")
        if not isinstance(kind, str) or not kind:
            raise ProtocolError("envelope requires a string 'type' field")
        wire = dict(message)
        wire.setdefault("timestamp", epoch_ms())
        return wire
    raise ProtocolError(f"unsupported envelope object: {type(message).__name__}")


def request_id_of(data: Any) -> str | None:
    if isinstance(data, Mapping):
        value = data.get("requestId")
        if isinstance(value, str) and value:
            return value
    return None
