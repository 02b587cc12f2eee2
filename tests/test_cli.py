"""Basic tests for CLI functionality."""

from pathlib import Path
import sys
from unittest.mock import patch

import httpx
from typer.testing import CliRunner

# Add parent directory to path to import fitlink module
sys.path.insert(0, str(Path(__file__).parent.parent))

from fitlink import app

runner = CliRunner()


def _response(status_code, payload):
    return httpx.Response(status_code, json=payload, request=httpx.Request("GET", "http://test"))


def test_help_command():
    """Test that help command works."""
    result = runner.invoke(app, ["--help"])
    assert result.exit_code == 0
    assert "FitLink CLI" in result.stdout


def test_version_command():
    """Test that version command works."""
    result = runner.invoke(app, ["version"])
    assert result.exit_code == 0
    assert "0.1.0" in result.stdout


def test_serve_command_help():
    result = runner.invoke(app, ["serve", "--help"])
    assert result.exit_code == 0
    assert "--local" in result.stdout


def test_connect_command_help():
    result = runner.invoke(app, ["connect", "--help"])
    assert result.exit_code == 0
    assert "provider" in result.stdout.lower()


def test_sync_command_help():
    result = runner.invoke(app, ["sync", "--help"])
    assert result.exit_code == 0
    assert "sync" in result.stdout.lower()


def test_sync_due_command_help():
    result = runner.invoke(app, ["sync-due", "--help"])
    assert result.exit_code == 0
    assert "due" in result.stdout.lower()


def test_history_command_help():
    result = runner.invoke(app, ["history", "--help"])
    assert result.exit_code == 0
    assert "history" in result.stdout.lower()


def test_providers_lists_api_response():
    payload = [{
        "id": "strava",
        "name": "Strava",
        "platform": "cloud",
        "requires_app": False,
        "data_types": ["workout", "distance"],
    }]
    with patch("fitlink.httpx.request", return_value=_response(200, payload)) as request:
        result = runner.invoke(app, ["providers"])

    assert result.exit_code == 0
    assert "Strava" in result.stdout
    assert request.call_args.args[1].endswith("/v1/providers")


def test_devices_sends_user_header():
    with patch("fitlink.httpx.request", return_value=_response(200, [])) as request:
        result = runner.invoke(app, ["devices", "--user-id", "user-1"])

    assert result.exit_code == 0
    assert "No devices connected" in result.stdout
    assert request.call_args.kwargs["headers"] == {"X-User-Id": "user-1"}


def test_api_error_exits_nonzero():
    error = {"error": {"code": "device_not_found", "message": "Device not found"}}
    with patch("fitlink.httpx.request", return_value=_response(404, error)):
        result = runner.invoke(app, ["history", "missing", "--user-id", "user-1"])

    assert result.exit_code == 1
    assert "device_not_found" in result.stdout


def test_unreachable_server_exits_nonzero():
    with patch("fitlink.httpx.request", side_effect=httpx.ConnectError("refused")):
        result = runner.invoke(app, ["providers"])

    assert result.exit_code == 1
    assert "Failed to connect" in result.stdout
