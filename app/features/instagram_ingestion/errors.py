"""
Error taxonomy for Instagram ingestion.

Organizer-level errors (RateLimited, SourceFetchFailed) abort one
organizer's fetch; post-level errors (MalformedInferenceOutput,
TextExtractionError) abort or degrade one post. Duplicate posts are not
errors and are signaled by the repository returning None.
"""


class IngestionError(Exception):
    """Base exception for ingestion failures."""

    def __init__(self, message: str, operation: str = "unknown", recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


class RateLimited(IngestionError):
    """Raised when the post source reports usage at or above its limit."""

    def __init__(self, call_count: float, total_cputime: float, total_time: float):
        super().__init__(
            f"Instagram rate limit hit: calls: {call_count}, "
            f"cpuTime: {total_cputime}, time: {total_time}",
            operation="fetch_posts",
        )
        self.call_count = call_count
        self.total_cputime = total_cputime
        self.total_time = total_time


class SourceFetchFailed(IngestionError):
    """Raised when the post source returns an error or cannot be reached."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message, operation="fetch_posts")
        self.status_code = status_code


class TextExtractionError(IngestionError):
    """Raised when any image of a post fails OCR."""

    def __init__(self, message: str, image_url: str | None = None):
        super().__init__(message, operation="extract_text")
        self.image_url = image_url


class InferenceServiceError(IngestionError):
    """Raised when the language-model client cannot be built."""


class MalformedInferenceOutput(IngestionError):
    """Raised when generated JSON cannot be parsed, validated or turned into instants."""

    def __init__(self, message: str, raw_output: str | None = None):
        super().__init__(message, operation="sanitize", recoverable=False)
        self.raw_output = raw_output


class UnknownSource(IngestionError):
    """Raised when a single-source run names an account that is not configured."""

    def __init__(self, username: str):
        super().__init__(f'No Instagram account "{username}"', operation="ingest_source", recoverable=False)
        self.username = username
