"""Configuration loading for the tenant exporter.

Configuration lives in a single YAML file, src/config/config.yaml by default
or the path named by TENANT_EXPORT_CONFIG.

Usage Examples
--------------

    >>> from config import load_config
    >>> config = load_config()
    >>> config.page_size
    200

    >>> from pathlib import Path
    >>> config = load_config(Path("/etc/tenant-export/config.yaml"),
    ...                      overrides={"run_timeout_seconds": 600})

Configuration Priority
---------------------

1. Keyword overrides (CLI flags)
2. Environment variables referenced from YAML (${VAR} / ${VAR:-default})
3. YAML configuration file
4. Dataclass defaults
"""

from config.config import (
    CONFIG_PATH_ENV_VAR,
    DEFAULT_CONFIG_FILE,
    ExportConfig,
    load_config,
    parse_subscription_scope,
)

__all__ = [
    "load_config",
    "parse_subscription_scope",
    "ExportConfig",
    "DEFAULT_CONFIG_FILE",
    "CONFIG_PATH_ENV_VAR",
]
