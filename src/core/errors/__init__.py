"""
Exception hierarchy and error classification.

Provides:
- PipelineError hierarchy, each class tagged with an ErrorCategory
- classify_exception / wrap_exception for foreign exceptions
"""

from core.errors.exceptions import (
    AuthError,
    ClientError,
    ErrorCategory,
    EventError,
    PermanentError,
    PipelineError,
    ServerError,
    SinkDeliveryError,
    ThrottledError,
    TransientError,
    classify_exception,
    wrap_exception,
)

__all__ = [
    "ErrorCategory",
    "PipelineError",
    "AuthError",
    "TransientError",
    "PermanentError",
    # Fetch errors
    "ThrottledError",
    "ServerError",
    "ClientError",
    # Export errors
    "EventError",
    "SinkDeliveryError",
    "classify_exception",
    "wrap_exception",
]
