"""Error taxonomy shared by the dispatcher, workers and retention engine."""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Wire-level error classification carried by failed results."""

    INVALID_URL = "invalid_url"
    UNSUPPORTED_SOURCE = "unsupported_source"
    BROKER_UNAVAILABLE = "broker_unavailable"
    NETWORK_ERROR = "network_error"
    RATE_LIMITED = "rate_limited"
    CONTENT_NOT_FOUND = "content_not_found"
    UNSUPPORTED_CONTENT_SHAPE = "unsupported_content_shape"
    RETRY_EXHAUSTED = "retry_exhausted"
    STORAGE_ERROR = "storage_error"
    FILE_SIZE_EXCEEDED = "file_size_exceeded"
    TIMEOUT = "timeout"


USER_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.INVALID_URL: "❌ Invalid link, please send a full URL.",
    ErrorKind.UNSUPPORTED_SOURCE: "🙈 This site is not supported.",
    ErrorKind.BROKER_UNAVAILABLE: "⚠️ Temporarily unavailable, try again.",
    ErrorKind.NETWORK_ERROR: "⚠️ Temporarily unavailable, try again.",
    ErrorKind.RATE_LIMITED: "⚠️ Temporarily unavailable, try again.",
    ErrorKind.CONTENT_NOT_FOUND: "😩 Content not found.",
    ErrorKind.UNSUPPORTED_CONTENT_SHAPE: "😩 This kind of content is not supported.",
    ErrorKind.RETRY_EXHAUSTED: "⚠️ Temporarily unavailable, try again.",
    ErrorKind.STORAGE_ERROR: "☢️ Could not store the download, try again later.",
    ErrorKind.FILE_SIZE_EXCEEDED: "🐈 File too large to send.",
    ErrorKind.TIMEOUT: "⏳ No answer in time, please try again.",
}


def user_message(kind: ErrorKind | str) -> str:
    """Return the short requester-facing text for an error kind."""

    try:
        return USER_MESSAGES[ErrorKind(kind)]
    except ValueError:
        return USER_MESSAGES[ErrorKind.RETRY_EXHAUSTED]


class MediaDownloaderError(Exception):
    """Base error; subclasses fix ``kind`` and whether a retry may help."""

    kind: ErrorKind = ErrorKind.STORAGE_ERROR
    retryable: bool = False

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.kind.value)
        self.message = message or self.kind.value

    @property
    def user_message(self) -> str:
        return user_message(self.kind)


class InvalidUrl(MediaDownloaderError):
    kind = ErrorKind.INVALID_URL


class UnsupportedSource(MediaDownloaderError):
    kind = ErrorKind.UNSUPPORTED_SOURCE


class BrokerUnavailable(MediaDownloaderError):
    kind = ErrorKind.BROKER_UNAVAILABLE


class StorageError(MediaDownloaderError):
    kind = ErrorKind.STORAGE_ERROR


class FileSizeExceeded(MediaDownloaderError):
    kind = ErrorKind.FILE_SIZE_EXCEEDED


class ExtractionError(MediaDownloaderError):
    """Failure raised by a processor, classified where it happens."""


class NetworkError(ExtractionError):
    kind = ErrorKind.NETWORK_ERROR
    retryable = True


class RateLimited(ExtractionError):
    kind = ErrorKind.RATE_LIMITED
    retryable = True

    def __init__(self, message: str = "", retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class ContentNotFound(ExtractionError):
    kind = ErrorKind.CONTENT_NOT_FOUND


class UnsupportedContentShape(ExtractionError):
    kind = ErrorKind.UNSUPPORTED_CONTENT_SHAPE


class RetryExhausted(MediaDownloaderError):
    kind = ErrorKind.RETRY_EXHAUSTED

    def __init__(self, last_error: BaseException | None, attempts: int) -> None:
        super().__init__(f"Gave up after {attempts} attempts: {last_error}")
        self.last_error = last_error
        self.attempts = attempts


__all__ = [
    "BrokerUnavailable",
    "ContentNotFound",
    "ErrorKind",
    "ExtractionError",
    "FileSizeExceeded",
    "InvalidUrl",
    "MediaDownloaderError",
    "NetworkError",
    "RateLimited",
    "RetryExhausted",
    "StorageError",
    "UnsupportedContentShape",
    "UnsupportedSource",
    "USER_MESSAGES",
    "user_message",
]
