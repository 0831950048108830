"""Colored console output utilities using Rich."""

import logging

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

console = Console()

STATUS_STYLES = {
    "success": "green",
    "failed": "red",
    "skipped": "yellow",
    "cancelled": "yellow",
    "pending": "dim",
    "running": "blue",
}


def configure_logging(verbose: bool = False) -> None:
    """Route stdlib logging through Rich."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )


def print_step(step: str, message: str) -> None:
    """Print a step indicator: [1/3] Resolving targets..."""
    console.print(f"\n[blue][{step}][/blue] {message}")


def print_success(message: str) -> None:
    """Print success message with green checkmark."""
    console.print(f"   [green]✓[/green] {message}")


def print_warning(message: str) -> None:
    """Print warning message with yellow indicator."""
    console.print(f"   [yellow]![/yellow] {message}")


def print_error(message: str) -> None:
    """Print error message with red X."""
    console.print(f"   [red]✗[/red] {message}")


def print_header(title: str, emoji: str = "🚀") -> None:
    """Print run header."""
    console.print(f"[blue]{emoji} {title}[/blue]")
    console.print("=" * 30)


def print_config(
    command: str,
    stage: str | None,
    partition: str,
    config_dir: str,
    account: str | None = None,
    region: str | None = None,
    max_concurrent: int | None = None,
    profile: str | None = None,
) -> None:
    """Print run configuration summary."""
    console.print("[blue]📋 Configuration:[/blue]")
    console.print(f"   Command:   {command}")
    console.print(f"   Stage:     {stage or 'all'}")
    console.print(f"   Partition: {partition}")
    console.print(f"   Config:    {config_dir}")
    if account and region:
        console.print(f"   Target:    {account}/{region}")
    if max_concurrent:
        console.print(f"   Max concurrent stacks: {max_concurrent}")
    if profile:
        console.print(f"   Profile:   {profile}")


def print_stage_report(report) -> None:
    """Print the per-target outcome table for one stage."""
    table = Table(title=f"Stage {report.stage} ({report.command.value})")
    table.add_column("Account")
    table.add_column("Region")
    table.add_column("Stacks")
    table.add_column("Status")
    table.add_column("Duration", justify="right")
    table.add_column("Error", overflow="fold")

    for result in report.results:
        style = STATUS_STYLES.get(result.status.value, "")
        table.add_row(
            result.target.account_id,
            result.target.region,
            "\n".join(result.stack_names),
            f"[{style}]{result.status.value}[/{style}]" if style else result.status.value,
            result.duration_display,
            result.error or "",
        )

    console.print()
    console.print(table)
    console.print(
        f"   {len(report.succeeded)} succeeded, {len(report.failed)} failed, "
        f"{len(report.skipped)} skipped"
    )


def print_final_success(message: str = "Orchestration successful!") -> None:
    """Print final success message."""
    console.print()
    console.print(f"[green]✅ {message}[/green]")
