from __future__ import annotations

from typing import Optional


class StreamBotError(RuntimeError):
    """Base class for every error raised by streambot."""


class ConfigError(StreamBotError):
    pass


class TokenStorageError(StreamBotError):
    """Persisted credential state could not be read or written."""


class TokenValidationError(StreamBotError):
    """A token payload (from the provider or from disk) is malformed."""


class _HttpError(StreamBotError):
    def __init__(self, status: Optional[int], detail: object):
        message = detail if isinstance(detail, str) else str(detail)
        super().__init__(message)
        self.status = status
        self.detail = message


class TokenExchangeError(_HttpError):
    """The provider's token endpoint rejected the request or was unreachable."""


class SpotifyError(_HttpError):
    pass


class ChatTransportError(StreamBotError):
    """Chat login, join or send failed."""
