import os
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml

from config.config import (
    CONFIG_PATH_ENV_VAR,
    DEFAULT_CONFIG_FILE,
    ExportConfig,
    _expand_env_vars,
    load_config,
    load_yaml,
    parse_subscription_scope,
    resolve_config_path,
)

CONN_STR = "Endpoint=sb://ns.servicebus.windows.net/;SharedAccessKeyName=k;SharedAccessKey=v"


def write_config(tmp_path, data) -> Path:
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(data))
    return path


def minimal(**export) -> dict:
    return {
        "export": export,
        "sink": {"type": "file", "output_path": "out/events.jsonl"},
    }


# =========================================================================
# load_yaml
# =========================================================================


class TestLoadYaml:
    def test_returns_empty_dict_for_nonexistent_file(self):
        assert load_yaml(Path("/nonexistent/path/config.yaml")) == {}

    def test_loads_yaml_file(self, tmp_path):
        config_file = tmp_path / "test.yaml"
        config_file.write_text("key: value\nnested:\n  a: 1\n")
        assert load_yaml(config_file) == {"key": "value", "nested": {"a": 1}}

    def test_returns_empty_dict_for_empty_file(self, tmp_path):
        config_file = tmp_path / "empty.yaml"
        config_file.write_text("")
        assert load_yaml(config_file) == {}


# =========================================================================
# _expand_env_vars
# =========================================================================


class TestExpandEnvVars:
    def test_expands_set_variable(self):
        with patch.dict(os.environ, {"EVENTHUB_NAME": "tenant-export"}):
            assert _expand_env_vars("${EVENTHUB_NAME}") == "tenant-export"

    def test_uses_default_when_unset(self):
        with patch.dict(os.environ, {}, clear=True):
            assert _expand_env_vars("${LOG_LEVEL:-INFO}") == "INFO"

    def test_empty_default(self):
        with patch.dict(os.environ, {}, clear=True):
            assert _expand_env_vars("${AZURE_TENANT_ID:-}") == ""

    def test_unset_without_default_kept_verbatim(self):
        with patch.dict(os.environ, {}, clear=True):
            assert _expand_env_vars("${MISSING}") == "${MISSING}"

    def test_recurses_into_dicts_and_lists(self):
        with patch.dict(os.environ, {"A": "1"}):
            result = _expand_env_vars({"x": ["${A}", {"y": "pre-${A}"}], "n": 5})
        assert result == {"x": ["1", {"y": "pre-1"}], "n": 5}


# =========================================================================
# parse_subscription_scope
# =========================================================================


class TestParseSubscriptionScope:
    @pytest.mark.parametrize("value", [None, "", "all", " ALL ", []])
    def test_all(self, value):
        assert parse_subscription_scope(value) == "all"

    def test_list(self):
        assert parse_subscription_scope(["s1", " s2 ", ""]) == ["s1", "s2"]

    def test_comma_separated_string(self):
        assert parse_subscription_scope("s1, s2,,s3") == ["s1", "s2", "s3"]


# =========================================================================
# ExportConfig.validate
# =========================================================================


class TestValidate:
    def test_defaults_need_a_connection_string(self):
        with pytest.raises(ValueError, match="connection_string is required"):
            ExportConfig().validate()

    def test_valid_eventhub(self):
        ExportConfig(eventhub_connection_string=CONN_STR).validate()

    def test_valid_file(self):
        ExportConfig(sink_type="file").validate()

    def test_fractional_rates_accepted(self):
        ExportConfig(sink_type="file", rate_limit_per_second=0.5, sink_rate_limit_per_second=0.25).validate()

    def test_reports_every_problem(self):
        config = ExportConfig(
            sink_type="file",
            page_size=0,
            batch_max_bytes=-1,
            max_retries=-1,
            rate_limit_per_second=0,
            log_level="LOUD",
        )

        with pytest.raises(ValueError) as exc_info:
            config.validate()

        message = str(exc_info.value)
        for fragment in ("page_size", "batch_max_bytes", "max_retries", "rate_limit_per_second", "logging.level"):
            assert fragment in message

    def test_unknown_sink(self):
        with pytest.raises(ValueError, match="sink.type"):
            ExportConfig(sink_type="kusto").validate()

    def test_missing_api_version(self):
        config = ExportConfig(sink_type="file", api_versions={"subscriptions": "2022-12-01"})

        with pytest.raises(ValueError, match="api_versions.resources"):
            config.validate()

    def test_api_version_lookup(self):
        config = ExportConfig()
        assert config.api_version("role_assignments") == "2022-04-01"
        with pytest.raises(ValueError, match="No api-version"):
            config.api_version("policies")


# =========================================================================
# load_config
# =========================================================================


class TestLoadConfig:
    def test_loads_sections(self, tmp_path):
        path = write_config(
            tmp_path,
            {
                "export": {"subscription_scope": ["s1", "s2"], "page_size": 50, "resolve_principals": "false"},
                "azure": {
                    "management_endpoint": "https://management.usgovcloudapi.net/",
                    "api_versions": {"resources": "2023-07-01"},
                },
                "sink": {"type": "EventHub", "connection_string": CONN_STR, "eventhub_name": "exports"},
                "logging": {"level": "debug", "stdout": "true"},
            },
        )

        config = load_config(path)

        assert config.subscription_scope == ["s1", "s2"]
        assert config.page_size == 50
        assert config.resolve_principals is False
        assert config.management_endpoint == "https://management.usgovcloudapi.net"
        assert config.api_versions["resources"] == "2023-07-01"
        assert config.api_versions["subscriptions"] == "2022-12-01"
        assert config.sink_type == "eventhub"
        assert config.eventhub_name == "exports"
        assert config.log_level == "DEBUG"
        assert config.log_to_stdout is True

    def test_env_expansion(self, tmp_path):
        path = write_config(
            tmp_path,
            {
                "export": {"subscription_scope": "${SUBS:-all}", "run_timeout_seconds": "${RUN_TIMEOUT:-}"},
                "sink": {"type": "file"},
            },
        )

        with patch.dict(os.environ, {"SUBS": "a,b"}, clear=True):
            config = load_config(path)

        assert config.subscription_scope == ["a", "b"]
        assert config.run_timeout_seconds is None

    def test_overrides_applied_before_validation(self, tmp_path):
        path = write_config(tmp_path, minimal())

        config = load_config(path, overrides={"page_size": 10, "subscription_scope": "s9"})

        assert config.page_size == 10
        assert config.subscription_scope == ["s9"]

    def test_invalid_override_value_rejected(self, tmp_path):
        path = write_config(tmp_path, minimal())

        with pytest.raises(ValueError, match="max_concurrent_subscriptions"):
            load_config(path, overrides={"max_concurrent_subscriptions": 0})

    def test_unknown_override_rejected(self, tmp_path):
        path = write_config(tmp_path, minimal())

        with pytest.raises(ValueError, match="Unknown configuration override"):
            load_config(path, overrides={"colour": "blue"})

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError, match=CONFIG_PATH_ENV_VAR):
            load_config(tmp_path / "absent.yaml")

    def test_missing_export_section(self, tmp_path):
        path = write_config(tmp_path, {"sink": {"type": "file"}})

        with pytest.raises(ValueError, match="missing 'export:' section"):
            load_config(path)

    def test_bundled_config_loads(self):
        with patch.dict(os.environ, {"TENANT_EXPORT_SINK": "file"}, clear=True):
            config = load_config(DEFAULT_CONFIG_FILE)

        assert config.subscription_scope == "all"
        assert config.sink_type == "file"
        assert config.tenant_id is None
        assert config.use_cli is False


class TestResolveConfigPath:
    def test_explicit_wins(self, tmp_path):
        with patch.dict(os.environ, {CONFIG_PATH_ENV_VAR: "/elsewhere.yaml"}):
            assert resolve_config_path(tmp_path / "c.yaml") == tmp_path / "c.yaml"

    def test_env_var(self):
        with patch.dict(os.environ, {CONFIG_PATH_ENV_VAR: "/etc/tenant_export.yaml"}):
            assert resolve_config_path() == Path("/etc/tenant_export.yaml")

    def test_default(self):
        with patch.dict(os.environ, {}, clear=True):
            assert resolve_config_path() == DEFAULT_CONFIG_FILE
