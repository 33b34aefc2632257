from __future__ import annotations


class CoverageSyncError(Exception):
    """Base exception for coverage sync failures."""


class RepositoryError(CoverageSyncError):
    """Raised when database operations fail."""


class ProviderError(CoverageSyncError):
    """Raised when provider fetches fail."""


class UnsupportedExchangeError(CoverageSyncError):
    """Raised when a manifest or job names an exchange we cannot build."""


class ManifestConflictError(CoverageSyncError):
    """Raised when an identical manifest already exists."""


class NotFoundError(CoverageSyncError):
    """Raised when a manifest or job id does not exist."""


class UnrecognizedSymbolError(CoverageSyncError):
    """Raised when a symbol has no exact market match on its exchange."""

    def __init__(self, message: str, suggestions: list[dict] | None = None):
        super().__init__(message)
        self.suggestions = suggestions or []
