"""
Core types and protocols used across modules.

This module provides base types, enums, and protocol definitions that are
shared across the core library to ensure consistency and type safety.
"""

from enum import Enum
from typing import Protocol


class ErrorCategory(Enum):
    """
    Classification of error types for handling decisions.

    This enum is used throughout the exporter to classify errors and determine
    appropriate retry/recovery strategies.

    Categories:
        TRANSIENT: Temporary failures that should retry with backoff
                   (e.g., network timeouts, 429/503 errors, sink outages)
        AUTH: Authentication failures requiring credential refresh
              (e.g., 401 errors, expired tokens)
        PERMANENT: Non-retriable failures that won't succeed on retry
                   (e.g., 404, malformed requests, malformed records)
        UNKNOWN: Unclassified errors, may retry conservatively
    """

    TRANSIENT = "transient"
    AUTH = "auth"
    PERMANENT = "permanent"
    UNKNOWN = "unknown"


class TokenSource(Protocol):
    """
    Protocol for the external identity boundary.

    Implementations exchange an audience for a raw bearer token. Caching,
    refresh timing and single-flight coordination live in TokenProvider,
    not here.
    """

    def acquire_token(self, audience: str) -> tuple[str, float]:
        """
        Acquire a bearer token for the audience.

        Args:
            audience: Resource URL (e.g., "https://management.azure.com/")

        Returns:
            Tuple of (token string, expiry as POSIX timestamp)

        Raises:
            AzureAuthError: If token acquisition fails
        """
        ...


__all__ = [
    "ErrorCategory",
    "TokenSource",
]
