"""Error taxonomy shared by the review pipeline, the ledger, and the publishing surface."""


class SecurityBotError(Exception):
    """Base error: carries a human-readable message and the underlying cause, if any."""

    def __init__(self, message: str, cause: Exception | None = None) -> None:
        self.message = message
        self.cause = cause
        super().__init__(message)


class ConfigError(SecurityBotError):
    """Raised when the bot configuration is missing, unreadable, or invalid. Always fatal."""


class AnalysisError(SecurityBotError):
    """Raised when one analysis attempt fails (timeout, provider error, unparseable response)."""

    def __init__(
        self,
        message: str,
        cause: Exception | None = None,
        *,
        retryable: bool = True,
    ) -> None:
        self.retryable = retryable
        super().__init__(message, cause)


class RateLimitExceeded(SecurityBotError):
    """Raised when a request cannot be admitted before the run deadline."""


class FalsePositiveCommandError(SecurityBotError):
    """Raised for malformed, unauthorized, unmatched, or conflicting false-positive commands.

    No ledger state is changed when this is raised. `retryable` is True only for
    optimistic-concurrency conflicts, where re-sending the same command may succeed.
    """

    def __init__(
        self,
        message: str,
        cause: Exception | None = None,
        *,
        retryable: bool = False,
    ) -> None:
        self.retryable = retryable
        super().__init__(message, cause)


class MarkVersionConflict(SecurityBotError):
    """Raised by a mark store when the stored record changed since it was read."""


class PublishError(SecurityBotError):
    """Raised when the report could not be delivered after bounded retries."""


class GitHubApiError(SecurityBotError):
    """Raised when the GitHub API returns an error or cannot be reached."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        cause: Exception | None = None,
    ) -> None:
        self.status_code = status_code
        super().__init__(message, cause)
