"""
Planora - CLI Entry Point.

Usage:
    planora verify USER_ID     Compare (and repair) onboarding flags
    planora status USER_ID     Show the navigation decision for a user
    planora health             Check configuration and Supabase access
    planora serve              Start the API server
    planora --help             Show help
"""

import asyncio

import typer
from rich.console import Console
from rich.table import Table

app = typer.Typer(
    name="planora",
    help="Planora - travel preference onboarding backend.",
    add_completion=False,
)
console = Console()


def _flag(value: bool | None) -> str:
    if value is None:
        return "[yellow]unreadable[/yellow]"
    return "[green]completed[/green]" if value else "[red]not completed[/red]"


@app.command()
def verify(
    user_id: str = typer.Argument(..., help="Supabase user id"),
    repair: bool = typer.Option(True, "--repair/--no-repair", help="Re-issue identity metadata on disagreement"),
) -> None:
    """Compare onboarding completion flags across stores."""
    from onboarding.completion import get_completion_service
    from planora.config import configure_logging

    configure_logging()

    async def run():
        service = get_completion_service()
        try:
            return await service.verify(user_id, repair=repair)
        finally:
            await service.close()

    report = asyncio.run(run())

    table = Table(title=f"Onboarding flags for {user_id}")
    table.add_column("Store")
    table.add_column("Flag")
    table.add_row("primary (travel_preferences)", _flag(report.primary))
    table.add_row("identity (user_metadata)", _flag(report.identity))
    table.add_row("cache (this process)", _flag(report.cache))
    console.print(table)

    for store, error in report.errors.items():
        console.print(f"[red]{store}: {error}[/red]")

    if report.repaired:
        console.print("[green]Identity metadata re-issued from the durable record.[/green]")

    if report.consistent:
        console.print("\n[green]Stores agree.[/green]")
    else:
        console.print("\n[red]Stores disagree.[/red]")
        raise typer.Exit(1)


@app.command()
def status(
    user_id: str = typer.Argument(..., help="Supabase user id"),
) -> None:
    """Show where this user would be routed after login."""
    from onboarding.completion import get_completion_service
    from onboarding.errors import StoreError
    from planora.config import configure_logging

    configure_logging()

    async def run():
        service = get_completion_service()
        try:
            return await service.resolve_status(user_id)
        finally:
            await service.close()

    try:
        result = asyncio.run(run())
    except StoreError as e:
        console.print(f"[red]Status unavailable: {e}[/red]")
        raise typer.Exit(1)

    console.print(f"Completed: {_flag(result.completed)} (source: {result.source})")
    console.print(f"Next route: {result.next_route}")


@app.command()
def health() -> None:
    """Check system health and configuration."""
    from planora.config import get_settings

    console.print("\n[bold]Planora Health Check[/bold]\n")

    try:
        settings = get_settings()
        console.print("[green]OK[/green] Configuration loaded")
        console.print(f"   Environment: {settings.planora_env}")
        console.print(f"   Log level: {settings.log_level}")
        console.print(
            f"   Commit budget: {settings.onboarding_commit_budget_seconds}s "
            f"(per call {settings.onboarding_call_timeout_seconds}s)"
        )

        if settings.supabase_url.startswith("https://"):
            console.print("[green]OK[/green] Supabase URL configured")
        else:
            console.print("[red]FAIL[/red] Supabase URL missing or invalid")
            raise typer.Exit(1)

        if settings.onboarding_lease_seconds <= settings.onboarding_commit_budget_seconds:
            console.print("[yellow]WARN[/yellow] Lease is shorter than the commit budget")

        console.print("\n[green]All checks passed![/green]")

    except typer.Exit:
        raise
    except Exception as e:
        console.print(f"\n[red]FAIL Configuration error: {e}[/red]")
        console.print("[dim]Make sure you have a .env file with required variables.[/dim]")
        raise typer.Exit(1)


@app.command()
def version() -> None:
    """Show version information."""
    from planora import __version__

    console.print(f"Planora version {__version__}")


@app.command()
def serve(
    port: int = typer.Option(8000, "--port", "-p", help="Port to run on"),
    reload: bool = typer.Option(False, "--reload", "-r", help="Enable auto-reload for development"),
) -> None:
    """Start the API server."""
    import os

    import uvicorn

    actual_port = int(os.environ.get("PORT", port))

    console.print("\n[bold green]Planora API[/bold green]")
    console.print(f"Starting server on http://localhost:{actual_port}")
    console.print("[dim]Press Ctrl+C to stop[/dim]\n")

    uvicorn.run(
        "planora.web.app:app",
        host="0.0.0.0",
        port=actual_port,
        reload=reload,
    )


if __name__ == "__main__":
    app()
