from __future__ import annotations


class ReplyBridgeError(Exception):
    pass


class ChannelConnectionError(ReplyBridgeError):
    pass


class ChannelClosedError(ChannelConnectionError):
    pass


class RequestTimeoutError(ReplyBridgeError):
    def __init__(self, message: str, *, request_id: str | None = None, timeout_seconds: float | None = None) -> None:
        super().__init__(message)
        self.request_id = request_id
        self.timeout_seconds = timeout_seconds


class ProtocolError(ReplyBridgeError):
    pass


class ValidationError(ReplyBridgeError):
    """Local rejection of bad input. Never retried."""


class ResponseValidationError(ReplyBridgeError):
    """The provider answered, but the body does not hold a usable reply."""

    def __init__(self, message: str, *, reason: str) -> None:
        super().__init__(message)
        self.reason = reason


class APIError(ReplyBridgeError):
    def __init__(self, message: str, *, status: int | None = None, body: str | None = None) -> None:
        super().__init__(message)
        self.status = status
        self.body = body


class TerminalAPIError(APIError):
    pass


class TransientAPIError(APIError):
    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        body: str | None = None,
        attempts: int | None = None,
    ) -> None:
        super().__init__(message, status=status, body=body)
        self.attempts = attempts


class RateLimitedError(TransientAPIError):
    pass


class StorageError(ReplyBridgeError):
    pass
