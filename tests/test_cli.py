"""
Tests for the command line interface.
"""

from unittest.mock import AsyncMock, patch

from click.testing import CliRunner

from dovetail import cli
from dovetail.directory import DirectoryConnectError


def test_version():
    result = CliRunner().invoke(cli.main, ["--version"])

    assert result.exit_code == 0
    assert cli.get_version() in result.output


def test_missing_auth_key():
    result = CliRunner().invoke(cli.main, [], env={"TS_AUTHKEY": None})

    assert result.exit_code == 1
    assert "Invalid configuration" in result.output


def test_runs_with_environment(tmp_path):
    state_dir = str(tmp_path / "state")
    with patch.object(cli, "run", new_callable=AsyncMock) as run:
        result = CliRunner().invoke(
            cli.main,
            [],
            env={"TS_AUTHKEY": "tskey-test", "TS_STATE_DIR": state_dir},
        )

    assert result.exit_code == 0
    (config_obj,) = run.call_args.args
    assert config_obj.auth_key == "tskey-test"
    assert config_obj.state_dir == state_dir


def test_directory_unavailable_is_fatal():
    error = DirectoryConnectError("daemon not running")
    with patch.object(cli, "run", new_callable=AsyncMock, side_effect=error):
        result = CliRunner().invoke(cli.main, ["--auth-key", "tskey-test"])

    assert result.exit_code == 1
