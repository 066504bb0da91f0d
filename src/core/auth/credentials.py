"""
Credential boundary: audience in, (bearer token, expiry) out.

AzureCredentialProvider does no caching of tokens. TokenProvider owns cache,
refresh margin and single-flight; this module only knows how to ask each
identity source for a fresh token. acquire_token() blocks and is run in a
worker thread by TokenProvider.

Sources, first configured wins:

    file         JSON file keyed by audience (written by a token refresher)
    cli          `az account get-access-token`
    spn_cert     CertificateCredential
    spn_secret   ClientSecretCredential
    default      DefaultAzureCredential (managed identity, env, VS Code, ...)

With nothing passed explicitly, AZURE_AUTH_INTERACTIVE, AZURE_TOKEN_FILE,
AZURE_CLIENT_ID, AZURE_CLIENT_SECRET, AZURE_TENANT_ID and
AZURE_CERTIFICATE_PATH are consulted; if none of them selects a source the
default credential chain is used.
"""

import json
import logging
import os
import shutil
import subprocess
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from azure.identity import (
    CertificateCredential,
    ClientSecretCredential,
    DefaultAzureCredential,
)

logger = logging.getLogger(__name__)

MANAGEMENT_AUDIENCE = "https://management.azure.com/"
GRAPH_AUDIENCE = "https://graph.microsoft.com/"

# Tokens without an expiry (file entries, odd CLI output) are re-read this often
TOKEN_FILE_ASSUMED_LIFETIME_SECONDS = 300

CLI_ATTEMPTS = 2


class AzureAuthError(Exception):
    """An identity source could not produce a token. Message says what to fix."""


def audience_to_scope(audience: str) -> str:
    """https://management.azure.com/ -> https://management.azure.com/.default"""
    return audience.rstrip("/") + "/.default"


def _assumed_expiry() -> float:
    return time.time() + TOKEN_FILE_ASSUMED_LIFETIME_SECONDS


class AzureCredentialProvider:
    """TokenSource over the token file, Azure CLI and azure-identity."""

    def __init__(
        self,
        use_cli: bool = False,
        use_default_credential: bool = False,
        token_file: Optional[str] = None,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        tenant_id: Optional[str] = None,
        certificate_path: Optional[str] = None,
        cli_timeout_seconds: int = 60,
    ):
        self.use_cli = use_cli
        self.use_default_credential = use_default_credential
        self.token_file = token_file
        self.client_id = client_id
        self.client_secret = client_secret
        self.tenant_id = tenant_id
        self.certificate_path = certificate_path
        self.cli_timeout_seconds = cli_timeout_seconds
        self._credential: Any = None

        if not (use_cli or use_default_credential or token_file or client_id):
            self._apply_environment()

    def _apply_environment(self) -> None:
        """Fill unset fields from AZURE_* variables."""
        env = os.environ
        self.use_cli = env.get("AZURE_AUTH_INTERACTIVE", "").lower() == "true"
        self.token_file = self.token_file or env.get("AZURE_TOKEN_FILE")
        self.client_id = self.client_id or env.get("AZURE_CLIENT_ID")
        self.client_secret = self.client_secret or env.get("AZURE_CLIENT_SECRET")
        self.tenant_id = self.tenant_id or env.get("AZURE_TENANT_ID")
        self.certificate_path = self.certificate_path or env.get("AZURE_CERTIFICATE_PATH")
        self.use_default_credential = not (self.use_cli or self.token_file or self.client_id)

    @property
    def auth_mode(self) -> str:
        """file, cli, spn_cert, spn_secret, default or none."""
        if self.token_file:
            return "file"
        if self.use_cli:
            return "cli"
        if self.client_id and self.tenant_id:
            if self.certificate_path:
                return "spn_cert"
            if self.client_secret:
                return "spn_secret"
        if self.use_default_credential:
            return "default"
        return "none"

    def acquire_token(self, audience: str) -> tuple[str, float]:
        """
        Fresh token for the audience.

        Returns:
            (token, expiry as POSIX timestamp)

        Raises:
            AzureAuthError: The configured source failed
        """
        mode = self.auth_mode
        if mode == "file":
            return self._token_from_file(audience)
        if mode == "cli":
            return self._token_from_cli(audience)

        credential = self._identity_credential(mode)
        try:
            access_token = credential.get_token(audience_to_scope(audience))
        except Exception as e:
            raise AzureAuthError(
                f"Failed to acquire token for {audience} (auth mode {mode}): {e}"
            ) from e

        logger.debug("Acquired token from Azure credential", extra={"audience": audience, "auth_mode": mode})
        return access_token.token, float(access_token.expires_on)

    # ------------------------------------------------------------------
    # azure-identity
    # ------------------------------------------------------------------

    def _identity_credential(self, mode: str):
        if self._credential is not None:
            return self._credential

        if mode == "spn_cert":
            if not Path(self.certificate_path).exists():
                raise AzureAuthError(f"Certificate file not found: {self.certificate_path}")
            self._credential = CertificateCredential(
                tenant_id=self.tenant_id,
                client_id=self.client_id,
                certificate_path=self.certificate_path,
            )
        elif mode == "spn_secret":
            self._credential = ClientSecretCredential(
                tenant_id=self.tenant_id,
                client_id=self.client_id,
                client_secret=self.client_secret,
            )
        elif mode == "default":
            self._credential = DefaultAzureCredential()
        else:
            raise AzureAuthError(
                "No Azure identity configured: set a token file, enable the CLI, "
                "provide a service principal or allow DefaultAzureCredential"
            )

        logger.info(
            "Azure identity credential created",
            extra={"auth_mode": mode, "tenant_id": self.tenant_id, "client_id": self.client_id},
        )
        return self._credential

    def close(self) -> None:
        """Release the azure-identity credential, if one was created."""
        close = getattr(self._credential, "close", None)
        if close is not None:
            close()
        self._credential = None

    # ------------------------------------------------------------------
    # Token file
    # ------------------------------------------------------------------

    def _load_token_file(self) -> dict[str, Any]:
        path = Path(self.token_file)
        if not path.exists():
            raise AzureAuthError(
                f"Token file not found: {self.token_file} (is the token refresher running?)"
            )

        try:
            content = path.read_text(encoding="utf-8-sig").strip()
        except OSError as e:
            raise AzureAuthError(f"Failed to read token file {self.token_file}: {e}") from e

        if not content:
            raise AzureAuthError(f"Token file is empty: {self.token_file}")

        try:
            tokens = json.loads(content)
        except json.JSONDecodeError as e:
            raise AzureAuthError(f"Token file is not valid JSON: {self.token_file}") from e

        if not isinstance(tokens, dict):
            raise AzureAuthError(f"Token file must contain a JSON object: {self.token_file}")
        return tokens

    def _token_from_file(self, audience: str) -> tuple[str, float]:
        """
        Entries are keyed by audience, trailing slash optional, and hold
        either the token string or {"token": ..., "expires_on": <epoch>}.
        """
        tokens = self._load_token_file()
        wanted = audience.rstrip("/")
        entry = tokens.get(audience)
        if entry is None:
            entry = next((v for k, v in tokens.items() if k.rstrip("/") == wanted), None)
        if entry is None:
            raise AzureAuthError(
                f"Audience '{audience}' not found in token file; present: {sorted(tokens)}"
            )

        if isinstance(entry, dict):
            token = entry.get("token") or entry.get("accessToken")
            expires_on = entry.get("expires_on")
        else:
            token, expires_on = entry, None

        if not token:
            raise AzureAuthError(f"Empty token for '{audience}' in {self.token_file}")

        logger.debug("Read token from file", extra={"token_file": self.token_file, "audience": audience})
        return str(token), float(expires_on) if expires_on is not None else _assumed_expiry()

    # ------------------------------------------------------------------
    # Azure CLI
    # ------------------------------------------------------------------

    def _cli_command(self, audience: str) -> list[str]:
        az = shutil.which("az")
        if not az:
            raise AzureAuthError("Azure CLI not found in PATH (https://aka.ms/azure-cli)")

        cmd = [az, "account", "get-access-token", "--resource", audience]
        if self.tenant_id:
            cmd += ["--tenant", self.tenant_id]
        return cmd + ["-o", "json"]

    @staticmethod
    def _cli_expiry(payload: dict) -> float:
        if payload.get("expires_on"):
            return float(payload["expires_on"])
        if payload.get("expiresOn"):
            # Older CLI versions: local time without offset
            return datetime.fromisoformat(payload["expiresOn"]).timestamp()
        return _assumed_expiry()

    def _token_from_cli(self, audience: str) -> tuple[str, float]:
        cmd = self._cli_command(audience)

        for attempt in range(1, CLI_ATTEMPTS + 1):
            try:
                proc = subprocess.run(cmd, capture_output=True, text=True, timeout=self.cli_timeout_seconds)
            except subprocess.TimeoutExpired:
                logger.warning(
                    "Azure CLI token request timed out",
                    extra={"audience": audience, "attempt": attempt, "max_attempts": CLI_ATTEMPTS},
                )
                continue

            if proc.returncode != 0:
                stderr = proc.stderr.strip()
                lowered = stderr.lower()
                if "az login" in lowered or "please run" in lowered:
                    raise AzureAuthError(f"Azure CLI session expired, run 'az login': {stderr}")
                raise AzureAuthError(f"Azure CLI token fetch failed: {stderr}")

            try:
                payload = json.loads(proc.stdout)
            except json.JSONDecodeError as e:
                raise AzureAuthError("Azure CLI returned unparseable output") from e

            token = payload.get("accessToken")
            if not token:
                raise AzureAuthError("Azure CLI returned an empty token, try 'az login' again")

            logger.debug("Fetched token from Azure CLI", extra={"audience": audience, "attempt": attempt})
            return token, self._cli_expiry(payload)

        raise AzureAuthError(
            f"Azure CLI token request for {audience} timed out {CLI_ATTEMPTS} times"
        )


__all__ = [
    "AzureAuthError",
    "AzureCredentialProvider",
    "audience_to_scope",
    "MANAGEMENT_AUDIENCE",
    "GRAPH_AUDIENCE",
    "TOKEN_FILE_ASSUMED_LIFETIME_SECONDS",
]
