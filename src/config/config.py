"""Tenant export configuration from YAML file.

Loads from config/config.yaml (or the file named by TENANT_EXPORT_CONFIG)
with all settings in one place:
- export: traversal scope, paging, batching, retries, rate limits, timeouts
- azure: endpoints, API versions, credential source
- sink: Event Hub or local JSON-lines file
- logging: level, format, destination

Environment variables ARE supported using ${VAR_NAME} and
${VAR_NAME:-default} syntax in YAML files.
"""

import dataclasses
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

logger = logging.getLogger(__name__)

CONFIG_PATH_ENV_VAR = "TENANT_EXPORT_CONFIG"

# Default config file: config/config.yaml in src/ directory
DEFAULT_CONFIG_FILE = Path(__file__).parent / "config.yaml"

SINK_TYPES = ("eventhub", "file")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def load_yaml(path: Path) -> Dict[str, Any]:
    """Load YAML file and return dict."""
    if not path.exists():
        return {}
    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _expand_env_vars(data: Any) -> Any:
    """Recursively expand ${VAR_NAME} and ${VAR_NAME:-default} environment variables in config data."""
    if isinstance(data, dict):
        return {key: _expand_env_vars(value) for key, value in data.items()}
    elif isinstance(data, list):
        return [_expand_env_vars(item) for item in data]
    elif isinstance(data, str):
        pattern = r"\$\{([^}:]+)(?::-(([^}]*))?)?\}"

        def replacer(match):
            var_name = match.group(1)
            default_value = match.group(2) if match.group(2) is not None else match.group(0)
            return os.getenv(var_name, default_value)

        return re.sub(pattern, replacer, data)
    else:
        return data


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _as_optional_float(value: Any) -> Optional[float]:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    return float(value)


def _as_optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def parse_subscription_scope(value: Any) -> Union[str, List[str]]:
    """Normalize subscription scope to "all" or a list of subscription ids.

    Accepts "all", a YAML list, or a comma-separated string (handy when the
    scope comes from an environment variable).
    """
    if value is None:
        return "all"
    if isinstance(value, str):
        if value.strip().lower() in ("", "all"):
            return "all"
        value = value.split(",")
    ids = [str(item).strip() for item in value if str(item).strip()]
    return ids or "all"


@dataclass
class ExportConfig:
    """Tenant export configuration.

    Configuration structure:
        export:
          subscription_scope: all          # or a list of subscription ids
          page_size: 200
          batch_max_bytes: 1000000
          ...
        azure:
          management_endpoint: https://management.azure.com
          api_versions: {...}
          ...
        sink:
          type: eventhub                   # or "file"
          ...
        logging:
          level: INFO
          ...

    All timing values in seconds.
    """

    # =========================================================================
    # TRAVERSAL
    # =========================================================================
    subscription_scope: Union[str, List[str]] = "all"
    page_size: int = 200
    max_concurrent_subscriptions: int = 4
    resolve_principals: bool = True
    principal_timeout_seconds: float = 10.0
    run_timeout_seconds: Optional[float] = None

    # =========================================================================
    # BATCHING
    # =========================================================================
    batch_max_bytes: int = 1_000_000  # Below the 1 MiB Event Hub standard-tier ceiling
    batch_max_count: int = 500

    # =========================================================================
    # RESILIENCE
    # =========================================================================
    max_retries: int = 5
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 30.0
    rate_limit_per_second: float = 10.0  # Per API audience, shared by all workers
    request_timeout_seconds: float = 30.0
    token_timeout_seconds: float = 30.0
    token_refresh_margin_seconds: float = 60.0

    # =========================================================================
    # AZURE
    # =========================================================================
    tenant_id: Optional[str] = None
    management_endpoint: str = "https://management.azure.com"
    graph_endpoint: str = "https://graph.microsoft.com"
    api_versions: Dict[str, str] = field(
        default_factory=lambda: {
            "subscriptions": "2022-12-01",
            "resource_groups": "2021-04-01",
            "resources": "2021-04-01",
            "role_assignments": "2022-04-01",
        }
    )
    use_cli: bool = False
    token_file: Optional[str] = None

    # =========================================================================
    # SINK
    # =========================================================================
    sink_type: str = "eventhub"
    eventhub_connection_string: Optional[str] = None
    eventhub_name: Optional[str] = None
    output_path: str = "exports/events.jsonl"
    sink_rate_limit_per_second: float = 5.0
    sink_timeout_seconds: float = 60.0

    # =========================================================================
    # LOGGING
    # =========================================================================
    log_level: str = "INFO"
    log_json: bool = True
    log_dir: str = "logs"
    log_to_stdout: bool = False

    def api_version(self, listing: str) -> str:
        """API version for a listing ("subscriptions", "resources", ...)."""
        if listing not in self.api_versions:
            raise ValueError(
                f"No api-version configured for '{listing}'. "
                f"Available: {sorted(self.api_versions)}"
            )
        return self.api_versions[listing]

    def validate(self) -> None:
        """Validate configuration, reporting every problem at once."""
        errors: List[str] = []

        for name in (
            "page_size",
            "batch_max_bytes",
            "batch_max_count",
            "max_concurrent_subscriptions",
        ):
            value = getattr(self, name)
            if not isinstance(value, int) or value <= 0:
                errors.append(f"{name} must be a positive integer, got {value!r}")

        if not isinstance(self.max_retries, int) or self.max_retries < 0:
            errors.append(f"max_retries must be >= 0, got {self.max_retries!r}")

        for name in (
            "rate_limit_per_second",
            "sink_rate_limit_per_second",
            "request_timeout_seconds",
            "token_timeout_seconds",
            "principal_timeout_seconds",
            "sink_timeout_seconds",
            "backoff_base_seconds",
            "backoff_max_seconds",
        ):
            value = getattr(self, name)
            if value <= 0:
                errors.append(f"{name} must be > 0, got {value!r}")

        if self.token_refresh_margin_seconds < 0:
            errors.append(
                f"token_refresh_margin_seconds must be >= 0, got {self.token_refresh_margin_seconds!r}"
            )

        if self.run_timeout_seconds is not None and self.run_timeout_seconds <= 0:
            errors.append(f"run_timeout_seconds must be > 0, got {self.run_timeout_seconds!r}")

        if self.subscription_scope != "all" and not isinstance(self.subscription_scope, list):
            errors.append(
                f"subscription_scope must be 'all' or a list of ids, got {self.subscription_scope!r}"
            )

        for listing in ("subscriptions", "resource_groups", "resources", "role_assignments"):
            if not self.api_versions.get(listing):
                errors.append(f"azure.api_versions.{listing} is required")

        if self.sink_type not in SINK_TYPES:
            errors.append(f"sink.type must be one of {list(SINK_TYPES)}, got '{self.sink_type}'")
        elif self.sink_type == "eventhub" and not self.eventhub_connection_string:
            errors.append("sink.connection_string is required when sink.type is 'eventhub'")
        elif self.sink_type == "file" and not self.output_path:
            errors.append("sink.output_path is required when sink.type is 'file'")

        if self.log_level.upper() not in LOG_LEVELS:
            errors.append(f"logging.level must be one of {list(LOG_LEVELS)}, got '{self.log_level}'")

        if errors:
            raise ValueError(
                "Invalid configuration:\n" + "\n".join(f"  - {e}" for e in errors)
            )


def _from_sections(data: Dict[str, Any]) -> ExportConfig:
    """Build ExportConfig from the export/azure/sink/logging sections."""
    defaults = ExportConfig()
    export = data.get("export") or {}
    azure = data.get("azure") or {}
    sink = data.get("sink") or {}
    log = data.get("logging") or {}

    api_versions = dict(defaults.api_versions)
    api_versions.update({k: str(v) for k, v in (azure.get("api_versions") or {}).items()})

    return ExportConfig(
        subscription_scope=parse_subscription_scope(export.get("subscription_scope", "all")),
        page_size=int(export.get("page_size", defaults.page_size)),
        max_concurrent_subscriptions=int(
            export.get("max_concurrent_subscriptions", defaults.max_concurrent_subscriptions)
        ),
        resolve_principals=_as_bool(export.get("resolve_principals", defaults.resolve_principals)),
        principal_timeout_seconds=float(
            export.get("principal_timeout_seconds", defaults.principal_timeout_seconds)
        ),
        run_timeout_seconds=_as_optional_float(export.get("run_timeout_seconds")),
        batch_max_bytes=int(export.get("batch_max_bytes", defaults.batch_max_bytes)),
        batch_max_count=int(export.get("batch_max_count", defaults.batch_max_count)),
        max_retries=int(export.get("max_retries", defaults.max_retries)),
        backoff_base_seconds=float(export.get("backoff_base_seconds", defaults.backoff_base_seconds)),
        backoff_max_seconds=float(export.get("backoff_max_seconds", defaults.backoff_max_seconds)),
        rate_limit_per_second=float(
            export.get("rate_limit_per_second", defaults.rate_limit_per_second)
        ),
        request_timeout_seconds=float(
            export.get("request_timeout_seconds", defaults.request_timeout_seconds)
        ),
        token_timeout_seconds=float(
            export.get("token_timeout_seconds", defaults.token_timeout_seconds)
        ),
        token_refresh_margin_seconds=float(
            export.get("token_refresh_margin_seconds", defaults.token_refresh_margin_seconds)
        ),
        tenant_id=_as_optional_str(azure.get("tenant_id")),
        management_endpoint=str(
            azure.get("management_endpoint", defaults.management_endpoint)
        ).rstrip("/"),
        graph_endpoint=str(azure.get("graph_endpoint", defaults.graph_endpoint)).rstrip("/"),
        api_versions=api_versions,
        use_cli=_as_bool(azure.get("use_cli", False)),
        token_file=_as_optional_str(azure.get("token_file")),
        sink_type=str(sink.get("type", defaults.sink_type)).strip().lower(),
        eventhub_connection_string=_as_optional_str(sink.get("connection_string")),
        eventhub_name=_as_optional_str(sink.get("eventhub_name")),
        output_path=str(sink.get("output_path", defaults.output_path)),
        sink_rate_limit_per_second=float(
            sink.get("rate_limit_per_second", defaults.sink_rate_limit_per_second)
        ),
        sink_timeout_seconds=float(sink.get("send_timeout_seconds", defaults.sink_timeout_seconds)),
        log_level=str(log.get("level", defaults.log_level)).upper(),
        log_json=_as_bool(log.get("json", defaults.log_json)),
        log_dir=str(log.get("log_dir", defaults.log_dir)),
        log_to_stdout=_as_bool(log.get("stdout", defaults.log_to_stdout)),
    )


def _apply_overrides(config: ExportConfig, overrides: Dict[str, Any]) -> ExportConfig:
    known = {f.name for f in dataclasses.fields(ExportConfig)}
    unknown = sorted(set(overrides) - known)
    if unknown:
        raise ValueError(f"Unknown configuration override(s): {unknown}")

    if "subscription_scope" in overrides:
        overrides = dict(overrides)
        overrides["subscription_scope"] = parse_subscription_scope(overrides["subscription_scope"])

    return dataclasses.replace(config, **overrides)


def resolve_config_path(config_path: Optional[Path] = None) -> Path:
    """Explicit path, then $TENANT_EXPORT_CONFIG, then the bundled config.yaml."""
    if config_path is not None:
        return Path(config_path)
    env_path = os.getenv(CONFIG_PATH_ENV_VAR)
    if env_path:
        return Path(env_path)
    return DEFAULT_CONFIG_FILE


def load_config(
    config_path: Optional[Path] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> ExportConfig:
    """Load export configuration from config.yaml file.

    Keyword overrides (ExportConfig field names) are applied after the file
    and before validation.

    Raises:
        FileNotFoundError: If the config file does not exist
        ValueError: If the resulting configuration is invalid
    """
    config_path = resolve_config_path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path}\n"
            f"Set {CONFIG_PATH_ENV_VAR} or pass --config"
        )

    logger.info(f"Loading configuration from file: {config_path}")
    yaml_data = _expand_env_vars(load_yaml(config_path))

    if not isinstance(yaml_data, dict) or "export" not in yaml_data:
        raise ValueError(
            f"Invalid config file {config_path}: missing 'export:' section"
        )

    config = _from_sections(yaml_data)

    if overrides:
        logger.debug(f"Applying overrides: {list(overrides.keys())}")
        config = _apply_overrides(config, overrides)

    logger.debug(
        "Configuration loaded",
        extra={
            "sink": config.sink_type,
            "subscriptions": 0 if config.subscription_scope == "all" else len(config.subscription_scope),
        },
    )

    config.validate()
    return config


__all__ = [
    "ExportConfig",
    "load_config",
    "load_yaml",
    "parse_subscription_scope",
    "resolve_config_path",
    "DEFAULT_CONFIG_FILE",
    "CONFIG_PATH_ENV_VAR",
]
