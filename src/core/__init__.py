"""
Core library: infrastructure-agnostic building blocks for the exporter.

Modules:
    auth        - Azure bearer tokens (CLI, SPN, token file, DefaultAzureCredential)
                  behind a caching, single-flight TokenProvider
    resilience  - Token bucket rate limiting, retry with backoff
    logging     - Structured JSON logging with run/subscription context
    errors      - Error classification and exception hierarchy
"""

from .types import ErrorCategory, TokenSource

__version__ = "0.1.0"

__all__ = [
    "ErrorCategory",
    "TokenSource",
]
