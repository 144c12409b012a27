"""Media relay exceptions with caller-friendly metadata."""

from typing import Optional


class MediaRelayError(Exception):
    """Base exception for media relay errors with caller metadata."""

    def __init__(
        self,
        message: str,
        error_code: str = "UNKNOWN_ERROR",
        retryable: bool = False,
        user_message: Optional[str] = None,
    ):
        self.message = message
        self.error_code = error_code
        self.retryable = retryable
        # User-facing text for the layer that talks to end users
        self.user_message = user_message or message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        """Convert exception to dictionary for API responses."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "retryable": self.retryable,
            "user_message": self.user_message,
        }


# =============================================================================
# PERMANENT ERRORS - Do not retry, inform user of the issue
# =============================================================================

class InvalidSourceRefError(MediaRelayError):
    """Raised when input cannot be parsed into a source reference."""

    def __init__(self, message: str = "Invalid source reference"):
        super().__init__(
            message=message,
            error_code="INVALID_SOURCE",
            retryable=False,
            user_message="The link is not a valid YouTube, Spotify or TikTok link.",
        )


class NoFormatsFoundError(MediaRelayError):
    """Raised when a resolver found no formats on any backend instance."""

    def __init__(self, message: str = "No formats found"):
        super().__init__(
            message=message,
            error_code="NO_FORMATS_FOUND",
            retryable=False,
            user_message="This media is unavailable right now.",
        )


class FormatNotFoundError(MediaRelayError):
    """Raised when no candidate matches the requested kind."""

    def __init__(self, message: str = "Requested format not found"):
        super().__init__(
            message=message,
            error_code="FORMAT_NOT_FOUND",
            retryable=False,
            user_message="The requested format is not available for this media.",
        )


class SourceUnavailableError(MediaRelayError):
    """Raised when the upstream reports the media itself as gone or private."""

    def __init__(self, message: str = "Source media is unavailable"):
        super().__init__(
            message=message,
            error_code="SOURCE_UNAVAILABLE",
            retryable=False,
            user_message="This media doesn't exist, is private or has been removed.",
        )


# =============================================================================
# RETRYABLE ERRORS - Temporary issues, caller may retry
# =============================================================================

class BackendUnavailableError(MediaRelayError):
    """Raised when every instance of a backend failed within one attempt."""

    def __init__(self, message: str = "Backend unavailable"):
        super().__init__(
            message=message,
            error_code="BACKEND_UNAVAILABLE",
            retryable=True,
            user_message="The download service is unavailable. Please try again.",
        )


class DownloadError(MediaRelayError):
    """Raised when the media fetch fails after a format was selected."""

    def __init__(self, message: str = "Download failed"):
        super().__init__(
            message=message,
            error_code="DOWNLOAD_ERROR",
            retryable=True,
            user_message="Download failed. Please try again.",
        )


class AllProvidersFailedError(MediaRelayError):
    """Raised when both the primary and the secondary provider failed."""

    def __init__(self, primary_error: Exception, secondary_error: Exception):
        self.primary_error = primary_error
        self.secondary_error = secondary_error
        super().__init__(
            message=(
                "All providers failed. "
                f"Primary: {primary_error}. Secondary: {secondary_error}"
            ),
            error_code="ALL_PROVIDERS_FAILED",
            retryable=True,
            user_message="Failed to download this media from every source. Please try again later.",
        )


class UploadFailedError(MediaRelayError):
    """Raised when upload to the durable store fails."""

    def __init__(self, message: str = "Upload to storage failed"):
        super().__init__(
            message=message,
            error_code="UPLOAD_FAILED",
            retryable=True,
            user_message="Failed to prepare the media. Please try again.",
        )


class UploadTooLargeError(UploadFailedError):
    """Raised when the durable store rejects an artifact for its size.

    Not retryable: the same artifact will be rejected again.
    """

    def __init__(self, message: str = "File is too large for storage"):
        MediaRelayError.__init__(
            self,
            message=message,
            error_code="UPLOAD_TOO_LARGE",
            retryable=False,
            user_message="The file is too large to send. Try a lower quality.",
        )


class StaleHandleError(MediaRelayError):
    """Raised when a cached handle is rejected at distribution time."""

    def __init__(self, message: str = "Stored handle is no longer valid"):
        super().__init__(
            message=message,
            error_code="STALE_HANDLE",
            retryable=True,
            user_message="The cached file expired. Please request it again.",
        )


# =============================================================================
# ERROR CLASSIFICATION HELPERS
# =============================================================================

PERMANENT_ERRORS = (
    InvalidSourceRefError,
    NoFormatsFoundError,
    FormatNotFoundError,
    SourceUnavailableError,
    UploadTooLargeError,
)

RETRYABLE_ERRORS = (
    BackendUnavailableError,
    DownloadError,
    AllProvidersFailedError,
    UploadFailedError,
    StaleHandleError,
)


def is_retryable(error: Exception) -> bool:
    """Check if an error is retryable."""
    # Permanent first: UploadTooLargeError is also an UploadFailedError
    if isinstance(error, PERMANENT_ERRORS):
        return False
    if isinstance(error, RETRYABLE_ERRORS):
        return True
    if isinstance(error, MediaRelayError):
        return error.retryable
    # Unknown errors are assumed retryable (might be transient)
    return True


def get_error_response(error: Exception) -> dict:
    """Get a standardized error response dict from any exception."""
    if isinstance(error, MediaRelayError):
        return error.to_dict()

    return {
        "error_code": "INTERNAL_ERROR",
        "message": str(error),
        "retryable": True,
        "user_message": "An unexpected error occurred. Please try again.",
    }
