"""Tests for the python -m tenant_export entry point."""

import json
from unittest.mock import AsyncMock, patch

import pytest
import yaml

from core.errors.exceptions import AuthError, ServerError
from tenant_export.__main__ import (
    EXIT_AUTH,
    EXIT_ERRORS,
    EXIT_OK,
    build_overrides,
    main,
    parse_args,
)
from tenant_export.models import RunError, RunErrorScope, RunResult


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "export": {"subscription_scope": "all"},
                "sink": {"type": "file", "output_path": str(tmp_path / "events.jsonl")},
                "logging": {"stdout": True},
            }
        )
    )
    return path


@pytest.fixture(autouse=True)
def quiet_logging():
    with patch("tenant_export.__main__.setup_logging") as setup:
        yield setup


class TestArgs:
    def test_defaults_produce_no_overrides(self):
        assert build_overrides(parse_args([])) == {}

    def test_dry_run_switches_to_file_sink(self):
        overrides = build_overrides(parse_args(["--dry-run", "out.jsonl", "--timeout", "90"]))

        assert overrides == {
            "sink_type": "file",
            "output_path": "out.jsonl",
            "run_timeout_seconds": 90.0,
        }

    def test_logging_flags(self):
        overrides = build_overrides(parse_args(["--log-level", "DEBUG", "--log-to-stdout"]))

        assert overrides == {"log_level": "DEBUG", "log_to_stdout": True}


class TestExitCodes:
    def test_clean_run(self, config_file, capsys):
        result = RunResult(run_id="r1", events_emitted=3)

        with patch("tenant_export.__main__.run_export", AsyncMock(return_value=result)):
            code = main(["--config", str(config_file)])

        assert code == EXIT_OK
        assert json.loads(capsys.readouterr().out)["eventsEmitted"] == 3

    def test_partial_success(self, config_file):
        result = RunResult(
            run_id="r1",
            errors=[RunError.from_exception(RunErrorScope.LISTING, ServerError("502"))],
        )

        with patch("tenant_export.__main__.run_export", AsyncMock(return_value=result)):
            assert main(["--config", str(config_file)]) == EXIT_ERRORS

    def test_clean_cancellation_is_success(self, config_file):
        result = RunResult(run_id="r1", cancelled=True)

        with patch("tenant_export.__main__.run_export", AsyncMock(return_value=result)):
            assert main(["--config", str(config_file)]) == EXIT_OK

    def test_auth_failure(self, config_file):
        with patch(
            "tenant_export.__main__.run_export",
            AsyncMock(side_effect=AuthError("Unable to obtain token")),
        ):
            assert main(["--config", str(config_file)]) == EXIT_AUTH

    def test_configuration_error(self, tmp_path, capsys):
        code = main(["--config", str(tmp_path / "absent.yaml")])

        assert code == EXIT_ERRORS
        assert "Configuration error" in capsys.readouterr().err

    def test_overrides_reach_the_run(self, config_file, tmp_path):
        run = AsyncMock(return_value=RunResult(run_id="r1"))
        output = tmp_path / "dry.jsonl"

        with patch("tenant_export.__main__.run_export", run):
            main(["--config", str(config_file), "--dry-run", str(output), "--timeout", "5"])

        config = run.await_args.args[0]
        assert config.output_path == str(output)
        assert config.run_timeout_seconds == 5.0
        assert run.await_args.kwargs["cancel_event"] is not None
