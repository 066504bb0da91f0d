"""
Authentication module.

Provides bearer tokens for the Azure resource-management and directory planes.

Components:
    - AzureCredentialProvider: credential boundary (token file, CLI, SPN, DefaultAzureCredential)
    - TokenProvider: per-audience cache with single-flight refresh
    - Credential: immutable token + expiry
"""

from .credentials import (
    GRAPH_AUDIENCE,
    MANAGEMENT_AUDIENCE,
    AzureAuthError,
    AzureCredentialProvider,
    audience_to_scope,
)
from .token_provider import (
    DEFAULT_REFRESH_MARGIN_SECONDS,
    Credential,
    TokenProvider,
)

__all__ = [
    "AzureAuthError",
    "AzureCredentialProvider",
    "audience_to_scope",
    "MANAGEMENT_AUDIENCE",
    "GRAPH_AUDIENCE",
    "Credential",
    "TokenProvider",
    "DEFAULT_REFRESH_MARGIN_SECONDS",
]
