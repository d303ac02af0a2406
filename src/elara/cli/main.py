"""Elara CLI: run the gateway, manage accounts, send a test message."""

from __future__ import annotations

import asyncio
import json
import uuid

import httpx
import typer
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table

from elara.config import get_config
from elara.db.engine import Database
from elara.stores import Account

app = typer.Typer(
    name="elara",
    help="Elara: multi-provider chat gateway",
    no_args_is_help=True,
    add_completion=False,
)
accounts_app = typer.Typer(help="Manage stored provider accounts", no_args_is_help=True)
app.add_typer(accounts_app, name="accounts")

console = Console()

DEFAULT_URL = "http://localhost:8000"


def _get_client(base_url: str, api_key: str | None) -> httpx.Client:
    headers = {}
    if api_key:
        headers["X-API-Key"] = api_key
    return httpx.Client(base_url=base_url, headers=headers, timeout=120.0)


def _mask(credential: str) -> str:
    if len(credential) <= 12:
        return "*" * len(credential)
    return f"{credential[:6]}…{credential[-4:]}"


async def _open_db() -> Database:
    config = get_config()
    db = Database(
        config.data_dir,
        journal_mode=config.db_journal_mode,
        busy_timeout_ms=config.db_busy_timeout_ms,
    )
    await db.initialize()
    return db


@app.command()
def serve(
    host: str = typer.Option("", "--host", help="Bind host (default from config)"),
    port: int = typer.Option(0, "--port", help="Bind port (default from config)"),
    reload: bool = typer.Option(False, "--reload"),
) -> None:
    """Start the gateway server."""
    import uvicorn

    config = get_config()
    console.print(Panel("Starting Elara gateway...", border_style="blue"))
    uvicorn.run(
        "elara.main:app",
        host=host or config.host,
        port=port or config.port,
        reload=reload,
    )


@app.command()
def status(
    base_url: str = typer.Option(DEFAULT_URL, "--url", "-u", envvar="ELARA_URL"),
    api_key: str = typer.Option("", "--api-key", "-k", envvar="ELARA_API_KEY"),
) -> None:
    """Check the gateway's health."""
    client = _get_client(base_url, api_key or None)

    try:
        resp = client.get("/health")
        resp.raise_for_status()
    except httpx.ConnectError:
        console.print(f"[red]✗[/red] Elara is not running at {base_url}")
        raise typer.Exit(1)

    data = resp.json()

    table = Table(title="Elara Status", show_header=False, border_style="blue")
    table.add_column("Key", style="bold")
    table.add_column("Value")

    table.add_row("Status", f"[green]{data['status']}[/green]")
    table.add_row("Version", data.get("version", "?"))
    table.add_row("Uptime", f"{data.get('uptime_seconds', 0)}s")
    table.add_row("Providers", ", ".join(data.get("providers", [])))
    table.add_row("Sessions", str(data.get("sessions", 0)))
    table.add_row("Probes intercepted", str(data.get("probes_intercepted", 0)))

    if "gateway_stats" in data:
        stats = data["gateway_stats"]
        table.add_row("Requests", str(stats.get("requests", 0)))
        table.add_row("Completed", str(stats.get("completed", 0)))
        table.add_row("Failed", str(stats.get("failed", 0)))

    console.print()
    console.print(table)
    console.print()


@app.command()
def providers(
    base_url: str = typer.Option(DEFAULT_URL, "--url", "-u", envvar="ELARA_URL"),
    api_key: str = typer.Option("", "--api-key", "-k", envvar="ELARA_API_KEY"),
) -> None:
    """List the providers the gateway has loaded."""
    client = _get_client(base_url, api_key or None)

    try:
        resp = client.get("/v1/providers")
        resp.raise_for_status()
    except httpx.ConnectError:
        console.print(f"[red]✗[/red] Elara is not running at {base_url}")
        raise typer.Exit(1)
    except httpx.HTTPStatusError as e:
        console.print(f"[red]Error {e.response.status_code}:[/red] {e.response.text}")
        raise typer.Exit(1)

    table = Table(title="Providers", border_style="blue")
    table.add_column("Name", style="cyan")
    table.add_column("Default model")
    table.add_column("Capabilities")
    table.add_column("Enabled", justify="center")

    for entry in resp.json().get("providers", []):
        table.add_row(
            entry["name"],
            entry.get("default_model", ""),
            ", ".join(entry.get("capabilities", [])),
            "[green]yes[/green]" if entry.get("enabled", True) else "[red]no[/red]",
        )

    console.print()
    console.print(table)
    console.print()


@accounts_app.command("list")
def accounts_list(
    provider: str = typer.Option("", "--provider", "-p", help="Only this provider"),
) -> None:
    """List stored accounts (credentials masked)."""

    async def _run() -> list[Account]:
        db = await _open_db()
        try:
            if provider:
                return await db.list_by_provider(provider)
            return await db.list_all()
        finally:
            await db.close()

    rows = asyncio.run(_run())
    if not rows:
        console.print("[dim]No accounts stored.[/dim]")
        return

    table = Table(title="Accounts", border_style="blue")
    table.add_column("ID", style="cyan")
    table.add_column("Provider")
    table.add_column("Email")
    table.add_column("Credential", style="dim")

    for account in rows:
        table.add_row(account.id, account.provider_id, account.email, _mask(account.credential))

    console.print()
    console.print(table)
    console.print()


@accounts_app.command("add")
def accounts_add(
    provider: str = typer.Argument(..., help="Provider name, e.g. DeepSeek"),
    credential: str = typer.Argument(..., help="Token, cookie or refresh token"),
    email: str = typer.Option("", "--email", "-e"),
    account_id: str = typer.Option("", "--id", help="Account id (random if omitted)"),
) -> None:
    """Store a credential for one provider."""
    account = Account(
        id=account_id or uuid.uuid4().hex,
        provider_id=provider,
        email=email,
        credential=credential,
    )

    async def _run() -> None:
        db = await _open_db()
        try:
            await db.upsert(account)
        finally:
            await db.close()

    asyncio.run(_run())
    console.print(f"[green]✓[/green] Stored account [cyan]{account.id}[/cyan] for {provider}")


@accounts_app.command("remove")
def accounts_remove(account_id: str = typer.Argument(...)) -> None:
    """Delete a stored account."""

    async def _run() -> bool:
        db = await _open_db()
        try:
            return await db.delete_account(account_id)
        finally:
            await db.close()

    if not asyncio.run(_run()):
        console.print(f"[yellow]No account with id {account_id}[/yellow]")
        raise typer.Exit(1)
    console.print(f"[green]✓[/green] Removed {account_id}")


@app.command()
def chat(
    message: str = typer.Argument(..., help="Message to send"),
    model: str = typer.Option("auto", "--model", "-m", help="Model, Claude alias or provider:model"),
    base_url: str = typer.Option(DEFAULT_URL, "--url", "-u", envvar="ELARA_URL"),
    api_key: str = typer.Option("", "--api-key", "-k", envvar="ELARA_API_KEY"),
    raw: bool = typer.Option(False, "--raw", help="Output raw JSON response"),
) -> None:
    """Send one message through the Claude-compatible endpoint."""
    client = _get_client(base_url, api_key or None)
    payload = {
        "model": model,
        "max_tokens": 4096,
        "stream": False,
        "messages": [{"role": "user", "content": message}],
    }

    try:
        resp = client.post("/v1/messages", json=payload)
        resp.raise_for_status()
    except httpx.ConnectError:
        console.print(f"[red]Error:[/red] Cannot connect to Elara at {base_url}")
        raise typer.Exit(1)
    except httpx.HTTPStatusError as e:
        console.print(f"[red]Error {e.response.status_code}:[/red] {e.response.text}")
        raise typer.Exit(1)

    data = resp.json()
    if raw:
        console.print_json(json.dumps(data, indent=2))
        return

    text = "".join(block.get("text", "") for block in data.get("content", []))
    usage = data.get("usage", {})
    console.print(
        Panel(
            Markdown(text),
            title=f"[cyan]{data.get('model', model)}[/cyan]",
            subtitle=f"[dim]in {usage.get('input_tokens', '?')} / out {usage.get('output_tokens', '?')}[/dim]",
            border_style="blue",
        )
    )


def main() -> None:
    """Entrypoint."""
    app()


if __name__ == "__main__":
    main()
