from typing import Optional


class AutoUpdateError(Exception):
    """Base class for errors raised by the auto-update bot."""


class ConfigError(AutoUpdateError):
    pass


class AuthenticationError(AutoUpdateError):
    pass


class GitHubAPIError(AutoUpdateError):
    """A GitHub REST call failed. status is None for transport failures."""

    def __init__(self, status: Optional[int], message: str):
        super().__init__(message)
        self.status = status
        self.message = message

    def __str__(self) -> str:
        if self.status is None:
            return self.message
        return f"{self.status}: {self.message}"


class MergeConflictError(AutoUpdateError):
    def __init__(self, pr_number: int, message: str):
        super().__init__(f"Merge conflict updating PR #{pr_number}: {message}")
        self.pr_number = pr_number


class RetriesExhaustedError(AutoUpdateError):
    def __init__(self, pr_number: int, attempts: int, last_error: Exception):
        super().__init__(f"Branch update for PR #{pr_number} failed after {attempts} attempt(s): {last_error}")
        self.pr_number = pr_number
        self.attempts = attempts
        self.last_error = last_error
