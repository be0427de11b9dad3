from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from chatstream.streaming.classifier import ErrorClassification


class ChatStreamError(Exception):
    """Base for every error raised by the generation pipeline."""


class StreamAlreadyClaimed(ChatStreamError):
    """A byte stream was handed to a second reader while the first still holds it."""

    def __init__(self, message: str = "Byte stream is already claimed by a reader") -> None:
        super().__init__(message)


class TransportFailure(ChatStreamError):
    """Network-level failure while sending the request or reading the body."""


class ClassifiedHTTPError(ChatStreamError):
    def __init__(self, classification: "ErrorClassification") -> None:
        super().__init__(f"Request failed with status {classification.http_status}: {classification.user_message}")
        self.classification = classification

    @property
    def status_code(self) -> int:
        return self.classification.http_status

    @property
    def retry_after_seconds(self) -> Optional[int]:
        return self.classification.retry_after_seconds


class AbortedByUser(ChatStreamError):
    """Raised inside the pipeline when the abort handle fires; never surfaced to callers."""


class MalformedChunk(ChatStreamError):
    """One NDJSON line failed to parse. Logged and skipped, the stream continues."""

    def __init__(self, line: str, reason: str) -> None:
        super().__init__(f"Malformed stream line ({reason}): {line[:200]!r}")
        self.line = line
        self.reason = reason


class MissingApiKey(ChatStreamError):
    def __init__(self, provider_label: str) -> None:
        super().__init__(f"{provider_label} API Key not found")
        self.provider_label = provider_label


class GenerationStateError(ChatStreamError):
    """The chat is not in a state that allows the requested generation."""
