#!/usr/bin/env python3
"""
FitLink CLI Tool

Operator commands for the FitLink wearable service.

Usage:
    fitlink serve --port 8000
    fitlink providers
    fitlink devices --user-id abc123
    fitlink connect strava --user-id abc123
    fitlink sync <device-id> --user-id abc123 --type heart_rate --type steps
    fitlink sync-due
    fitlink history <device-id> --user-id abc123
"""

import os
import sys
import webbrowser
from pathlib import Path
from typing import Any, Optional

import httpx
import typer
from rich.console import Console
from rich.table import Table

# Add libs to path (local to CLI)
CLI_ROOT = Path(__file__).parent
for lib in ("py-connector", "py-normalize"):
    if (CLI_ROOT / "libs" / lib).exists():
        sys.path.insert(0, str(CLI_ROOT / "libs" / lib))

__version__ = "0.1.0"

DEFAULT_API_URL = "http://localhost:8000"

console = Console()

app = typer.Typer(
    name="fitlink",
    help="FitLink CLI - Wearable device linking and sync",
    no_args_is_help=True,
)


def version_callback(value: bool):
    """Show version and exit."""
    if value:
        console.print(f"[bold cyan]FitLink CLI[/bold cyan] version [green]{__version__}[/green]")
        raise typer.Exit()


def _load_env(env_file: Optional[str] = None) -> None:
    """Load --env, else the first of .env.local / .env found next to the CLI."""
    from dotenv import load_dotenv

    if env_file:
        env_path = Path(env_file)
        if not env_path.exists():
            console.print(f"[yellow]⚠️  Environment file not found: {env_file}[/yellow]")
            return
        load_dotenv(env_path, override=True)
        return

    for env_path in (CLI_ROOT / ".env.local", CLI_ROOT / ".env"):
        if env_path.exists():
            load_dotenv(env_path, override=False)
            return


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-v",
        help="Show version and exit",
        callback=version_callback,
        is_eager=True,
    ),
    env_file: Optional[str] = typer.Option(None, "--env", help="Environment file to load"),
):
    """FitLink CLI - Wearable device linking and sync."""
    _load_env(env_file)


# ============================================================================
# Helper Functions
# ============================================================================

def _api_url() -> str:
    return os.getenv("API_URL", DEFAULT_API_URL).rstrip("/")


def _request(method: str, path: str, user_id: Optional[str] = None, **kwargs: Any) -> Any:
    """Call the API and return decoded JSON; API errors exit with status 1."""
    headers = {"X-User-Id": user_id} if user_id else {}
    try:
        response = httpx.request(
            method, f"{_api_url()}{path}", headers=headers, timeout=30.0, **kwargs
        )
    except httpx.RequestError as e:
        console.print(f"[red]❌ Failed to connect to server: {e}[/red]")
        console.print(f"   Make sure the server is running at {_api_url()}")
        raise typer.Exit(1)

    if response.status_code >= 400:
        try:
            error = response.json().get("error", {})
        except ValueError:
            error = {}
        if isinstance(error, dict) and error.get("code"):
            console.print(f"[red]❌ {error['code']}: {error.get('message', '')}[/red]")
        else:
            console.print(f"[red]❌ HTTP {response.status_code}: {response.text[:200]}[/red]")
        raise typer.Exit(1)

    return response.json()


def _user_option() -> Any:
    return typer.Option(
        ..., "--user-id", "-u", envvar="FITLINK_USER_ID", help="Acting user ID"
    )


STATUS_STYLES = {
    "connected": "green",
    "syncing": "cyan",
    "error": "red",
    "token_expired": "yellow",
    "pending_auth": "yellow",
    "disconnected": "dim",
    "success": "green",
    "partial": "yellow",
    "failed": "red",
    "cancelled": "dim",
}


def _status(value: str) -> str:
    style = STATUS_STYLES.get(value, "white")
    return f"[{style}]{value}[/{style}]"


# ============================================================================
# Commands
# ============================================================================

@app.command()
def serve(
    host: str = typer.Option("0.0.0.0", "--host", help="Bind address"),
    port: int = typer.Option(8000, "--port", "-p", help="Port to listen on"),
    reload: bool = typer.Option(False, "--reload", help="Auto-reload on code changes"),
    local: bool = typer.Option(False, "--local", help="Use in-memory storage (LOCAL_MODE)"),
):
    """
    Start the FitLink API server.

    Example:
        fitlink serve --local --reload
    """
    import logging

    import uvicorn

    if local:
        os.environ["LOCAL_MODE"] = "true"
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(level=log_level)

    console.print("[bold green]🚀 Starting FitLink[/bold green]")
    console.print(f"   Mode:     [cyan]{'local' if os.getenv('LOCAL_MODE', '').lower() == 'true' else 'aws'}[/cyan]")
    console.print(f"   API Docs: [cyan]http://localhost:{port}/docs[/cyan]")
    console.print()

    uvicorn.run(
        "server.api:app",
        host=host,
        port=port,
        reload=reload,
        log_level=log_level.lower(),
        app_dir=str(CLI_ROOT),
    )


@app.command()
def providers():
    """List supported providers."""
    data = _request("GET", "/v1/providers")

    table = Table(title="Providers")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Platform")
    table.add_column("Data types", style="dim")
    for provider in data:
        name = provider["name"] + (" (app)" if provider.get("requires_app") else "")
        table.add_row(provider["id"], name, provider["platform"], ", ".join(provider["data_types"]))
    console.print(table)


@app.command()
def devices(user_id: str = _user_option()):
    """List a user's connected devices."""
    data = _request("GET", "/v1/devices", user_id=user_id)
    if not data:
        console.print("[dim]No devices connected.[/dim]")
        return

    table = Table(title=f"Devices for {user_id}")
    table.add_column("ID", style="cyan")
    table.add_column("Provider")
    table.add_column("Status")
    table.add_column("Last sync")
    table.add_column("Errors", justify="right")
    for device in data:
        table.add_row(
            device["id"],
            device["provider"],
            _status(device["status"]),
            device.get("last_sync_at") or "never",
            str(device.get("error_count", 0)),
        )
    console.print(table)


@app.command()
def connect(
    provider: str = typer.Argument(..., help="Provider ID, e.g. strava"),
    user_id: str = _user_option(),
    redirect_uri: Optional[str] = typer.Option(None, "--redirect-uri", help="OAuth callback URL"),
    open_browser: bool = typer.Option(False, "--open", help="Open the URL in a browser"),
):
    """
    Start linking a provider and print the authorization URL.

    Example:
        fitlink connect strava --user-id abc123 --open
    """
    data = _request(
        "POST",
        "/v1/devices/connect",
        user_id=user_id,
        json={"provider": provider, "redirect_uri": redirect_uri},
    )
    url = data["authorization_url"]
    console.print("[green]✅ Authorization URL:[/green]")
    console.print(f"   [cyan]{url}[/cyan]")
    if open_browser and not webbrowser.open(url):
        console.print("[yellow]⚠️  Could not open a browser; open the URL manually[/yellow]")


@app.command()
def sync(
    device_id: str = typer.Argument(..., help="Device ID"),
    user_id: str = _user_option(),
    data_types: Optional[list[str]] = typer.Option(None, "--type", "-t", help="Data type (repeatable)"),
):
    """
    Sync one device now.

    Example:
        fitlink sync <device-id> --user-id abc123 --type heart_rate
    """
    body = {"data_types": data_types} if data_types else None
    history = _request("POST", f"/v1/devices/{device_id}/sync", user_id=user_id, json=body)
    console.print(
        f"{_status(history['status'])}: "
        f"{history['records_fetched']} fetched, {history['records_stored']} stored "
        f"in {history.get('duration_ms') or 0} ms"
    )
    if history.get("error_message"):
        console.print(f"   [yellow]{history['error_message']}[/yellow]")


@app.command("sync-due")
def sync_due():
    """Sync every device that is due (for cron or another scheduler)."""
    data = _request("POST", "/v1/sync/due")
    console.print(f"[green]{data['synced']} synced[/green], [red]{data['failed']} failed[/red]")
    for result in data["results"]:
        if not result["ok"]:
            error = result["error"] or {}
            console.print(f"   [red]{result['device_id']}[/red]: {error.get('code')} {error.get('message')}")


@app.command()
def history(
    device_id: str = typer.Argument(..., help="Device ID"),
    user_id: str = _user_option(),
    limit: int = typer.Option(20, "--limit", "-n", help="Max entries to show"),
):
    """Show a device's sync history."""
    data = _request(
        "GET", f"/v1/devices/{device_id}/history", user_id=user_id, params={"limit": limit}
    )
    if not data:
        console.print("[dim]No sync history.[/dim]")
        return

    table = Table(title=f"Sync history for {device_id}")
    table.add_column("Started")
    table.add_column("Type")
    table.add_column("Status")
    table.add_column("Fetched", justify="right")
    table.add_column("Stored", justify="right")
    table.add_column("Error", style="dim")
    for entry in data:
        table.add_row(
            entry["started_at"],
            entry["sync_type"],
            _status(entry["status"]),
            str(entry["records_fetched"]),
            str(entry["records_stored"]),
            entry.get("error_code") or "",
        )
    console.print(table)


@app.command()
def version():
    """Show version information."""
    console.print("[bold]FitLink CLI[/bold]")
    console.print(f"Version: [cyan]{__version__}[/cyan]")
    console.print()
    console.print(f"Repository: [dim]{CLI_ROOT}[/dim]")
    console.print(f"API URL: [dim]{_api_url()}[/dim]")


# ============================================================================
# Main Entry Point
# ============================================================================

if __name__ == "__main__":
    app()
