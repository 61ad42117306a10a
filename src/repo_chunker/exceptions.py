from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class RepoChunkerError(Exception):
    """Base exception for errors in the repo_chunker package."""

    message: str = "repo_chunker error"

    def __str__(self) -> str:
        return self.message


@dataclass(frozen=True)
class ConfigurationError(RepoChunkerError):
    """Raised when chunking options are malformed (unknown strategy, non-positive budget, ...).

    Always raised before any packing starts.
    """

    field: str = ""
    value: Any = None
    message: str = "Invalid chunking configuration."

    def __str__(self) -> str:
        if self.field:
            return f"{self.message} ({self.field}={self.value!r})"
        return self.message


@dataclass(frozen=True)
class TokenizationError(RepoChunkerError):
    """Raised when the token counter fails or returns an unusable count."""

    model: str = ""
    message: str = "Token counting failed."

    def __str__(self) -> str:
        return f"{self.message} (model={self.model!r})" if self.model else self.message


@dataclass(frozen=True)
class FileLoadingError(RepoChunkerError):
    """Raised when a file selected for chunking cannot be read as text."""

    path: str = ""
    message: str = "The file could not be loaded."

    def __str__(self) -> str:
        return f"{self.message} ({self.path})"
