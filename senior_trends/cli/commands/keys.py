"""API key and quota commands."""

import click
from rich.console import Console
from rich.table import Table

from senior_trends.dependencies import get_scan_service
from senior_trends.services.quota_ledger import mask_api_key

console = Console()

STATUS_STYLES = {"active": "green", "limited": "yellow", "error": "red"}


@click.group()
def keys():
    """Manage registered YouTube API keys."""
    pass


@keys.command(name="add")
@click.argument("api_keys", nargs=-1, required=True)
def add_keys(api_keys: tuple[str, ...]):
    """Register one or more API keys."""
    service = get_scan_service()
    for api_key in api_keys:
        if service.add_credential(api_key):
            console.print(f"[green]Added[/green] {mask_api_key(api_key)}")
        else:
            console.print(f"[yellow]Already registered:[/yellow] {mask_api_key(api_key)}")


@keys.command(name="list")
def list_keys():
    """Show every key with its usage and status."""
    views = get_scan_service().list_credentials()
    if not views:
        console.print("No API keys registered. Add one with [bold]senior-trends keys add[/bold].")
        return

    table = Table(title="API keys")
    table.add_column("Key")
    table.add_column("Status")
    table.add_column("Used", justify="right")
    table.add_column("Remaining", justify="right")
    table.add_column("Errors", justify="right")
    table.add_column("Validated")

    for view in views:
        style = STATUS_STYLES.get(view.status, "white")
        status = f"[{style}]{view.status}[/{style}]"
        if view.warning and view.status == "active":
            status = f"{status} [yellow](high usage)[/yellow]"
        table.add_row(
            view.masked_key,
            status,
            f"{view.usage_units:,}",
            f"{view.remaining_units:,}",
            str(view.error_count),
            view.last_validated_at or "-",
        )
    console.print(table)


@keys.command(name="remove")
@click.argument("api_key")
def remove_key(api_key: str):
    """Remove an API key."""
    if get_scan_service().remove_credential(api_key):
        console.print(f"[green]Removed[/green] {mask_api_key(api_key)}")
    else:
        console.print(f"[red]Not registered:[/red] {mask_api_key(api_key)}")
        raise SystemExit(1)


@keys.command(name="reset")
@click.argument("api_key")
def reset_key(api_key: str):
    """Force a key back to active and clear its error count."""
    if get_scan_service().reset_credential(api_key):
        console.print(f"[green]Reset[/green] {mask_api_key(api_key)}")
    else:
        console.print(f"[red]Not registered:[/red] {mask_api_key(api_key)}")
        raise SystemExit(1)


@click.command()
def quota():
    """Show pool-wide quota usage."""
    stats = get_scan_service().quota_stats()

    console.print("\n[bold]QUOTA[/bold]")
    console.print(
        f"  keys: {stats.total_credentials} "
        f"([green]{stats.active_credentials} active[/green], "
        f"[yellow]{stats.limited_credentials} limited[/yellow], "
        f"[red]{stats.error_credentials} error[/red])"
    )
    console.print(
        f"  units: {stats.total_used_units:,} used / {stats.total_available_units:,} "
        f"({stats.utilization_percent:.1f}%), {stats.total_remaining_units:,} remaining"
    )
    if stats.next_reset_at is not None:
        console.print(f"  next reset: {stats.next_reset_at.isoformat()}")
    console.print()
