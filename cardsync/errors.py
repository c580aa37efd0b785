"""
Card Sync - Error Taxonomy

TransientNetworkError   retried with backoff inside the HTTP client
RateLimitError          fixed cooldown, then one retry of the same request
UpstreamDataError       page or record skipped, counted toward the failure threshold
StorageWriteError       chunk marked failed, later chunks still attempted
FatalConfigError        run aborted before any network activity
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for every error raised by the sync pipeline."""


# ---------------------------------------------------------------------------
# Network
# ---------------------------------------------------------------------------


class TransientNetworkError(SyncError):
    """Connection reset, DNS failure or similar; safe to retry."""


class ScrydexTimeoutError(TransientNetworkError):
    """The request did not complete within the configured timeout."""


# ---------------------------------------------------------------------------
# Upstream data
# ---------------------------------------------------------------------------


class UpstreamDataError(SyncError):
    """The API answered, but not with usable data."""


class ApiError(UpstreamDataError):
    """Non-2xx response from the Scrydex API."""

    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        self.message = message
        super().__init__(f"API Error {status_code}: {message}")


class RateLimitError(ApiError):
    """HTTP 429 from the Scrydex API."""

    def __init__(self, message: str = "rate limited"):
        super().__init__(429, message)


class EmptyResponseError(UpstreamDataError):
    """The response body was empty or whitespace."""

    def __init__(self) -> None:
        super().__init__("Empty response from API")


class ParseError(UpstreamDataError):
    """The response body was not valid JSON, or not the expected shape."""

    def __init__(self, raw_body: str, reason: str = "malformed JSON"):
        self.raw_body = raw_body
        super().__init__(f"JSON Parse Error: {reason}. Response: {raw_body[:200]}")


# ---------------------------------------------------------------------------
# Storage / config
# ---------------------------------------------------------------------------


class StorageWriteError(SyncError):
    """An upsert or status write was rejected by the database."""


class FatalConfigError(SyncError):
    """Required configuration is missing."""

    def __init__(self, missing: list[str]):
        self.missing = missing
        super().__init__(
            "Missing required environment variables: " + ", ".join(missing)
        )
