from __future__ import annotations

from typing import Optional

from rich import box
from rich.console import Console
from rich.table import Table

from fee_distributor.domain.models import DistributionCycle, SupervisorStatus


def _short(address: Optional[str], width: int = 10) -> str:
    if not address:
        return "-"
    if len(address) <= width:
        return address
    half = (width - 1) // 2
    return f"{address[:half]}…{address[-half:]}"


def summary_table(cycle: DistributionCycle) -> Table:
    status_style = "bold green" if cycle.succeeded else "bold red"
    title = f"Distribution Cycle {cycle.cycle_id}"
    if cycle.partial:
        title = f"{title}\n[dim]partially distributed[/dim]"

    table = Table(title=title, box=box.ROUNDED, show_header=False)
    table.add_column("Field", style="cyan", no_wrap=True)
    table.add_column("Value", justify="right")

    table.add_row("Status", f"[{status_style}]{cycle.status.value}[/{status_style}]")
    if cycle.reason:
        table.add_row("Reason", f"[red]{cycle.error_type}: {cycle.reason}[/red]")
    if cycle.skipped_reason:
        table.add_row("Skipped", f"[yellow]{cycle.skipped_reason}[/yellow]")
    if cycle.balance_action is not None and cycle.balance_action.action != "none":
        table.add_row("Balance action", f"{cycle.balance_action.action} {cycle.balance_action.amount:,}")
    table.add_row("Harvested", f"{cycle.harvested_amount:,}")
    if cycle.received_amount and cycle.received_amount != cycle.harvested_amount:
        table.add_row("Received after withholding", f"{cycle.received_amount:,}")
    if cycle.snapshot is not None:
        table.add_row("Holders", f"{cycle.snapshot.count:,}")
    if cycle.plan is not None:
        table.add_row("Reward pool", f"{cycle.plan.reward_pool:,}")
        table.add_row("Allocated", f"{cycle.plan.total_allocated:,}")
        table.add_row("Remainder", f"{cycle.plan.remainder:,}")
        table.add_row("Dust recipients", f"{cycle.plan.dust_recipients:,}")
    table.add_row("Distributed", f"[bold green]{cycle.distributed_amount:,}[/bold green]")
    if cycle.unpaid_allocations:
        table.add_row(
            "Unpaid allocations",
            f"[red]{len(cycle.unpaid_allocations):,} ({cycle.unpaid_amount:,})[/red]",
        )
    if cycle.carried_reward_balance:
        table.add_row("Reward held before swap", f"{cycle.carried_reward_balance:,}")
    duration = cycle.profile.get("duration_seconds")
    if duration is not None:
        table.add_row("Duration (s)", f"{duration:.1f}")
    peak_rss = cycle.profile.get("peak_rss_bytes")
    if peak_rss:
        table.add_row("Peak Memory (MB)", f"{peak_rss / (1024 * 1024):.2f}")
    return table


def swaps_table(cycle: DistributionCycle) -> Table:
    table = Table(title="Swap Hops", box=box.ROUNDED)
    table.add_column("Hop", justify="right", style="cyan")
    table.add_column("Route", style="magenta")
    table.add_column("In", justify="right")
    table.add_column("Quoted Out", justify="right", style="green")
    table.add_column("Min Out", justify="right", style="yellow")
    table.add_column("Impact %", justify="right", style="red")
    table.add_column("Tx", style="dim")
    for hop in cycle.swaps:
        table.add_row(
            str(hop.hop),
            " → ".join(hop.route_labels) or "direct",
            f"{hop.in_amount:,}",
            f"{hop.quoted_out_amount:,}",
            f"{hop.min_out_amount:,}",
            f"{hop.price_impact_pct:.4f}",
            _short(hop.signature, 16),
        )
    return table


def batches_table(cycle: DistributionCycle) -> Table:
    table = Table(title="Disbursement Batches", box=box.ROUNDED)
    table.add_column("Batch", justify="right", style="cyan")
    table.add_column("Recipients", justify="right", style="magenta")
    table.add_column("Amount", justify="right", style="green")
    table.add_column("Tier", style="blue")
    table.add_column("Attempts", justify="right")
    table.add_column("Result")
    for batch in cycle.batches:
        result = (
            f"[green]{_short(batch.signature, 16)}[/green]"
            if batch.succeeded
            else f"[red]{batch.error or 'failed'}[/red]"
        )
        table.add_row(
            str(batch.index),
            str(len(batch.allocations)),
            f"{batch.total_amount:,}",
            batch.tier.value,
            str(batch.attempts),
            result,
        )
    return table


def print_cycle(cycle: Optional[DistributionCycle], console: Optional[Console] = None) -> None:
    """Render a cycle record as rich tables."""
    console = console or Console()
    if cycle is None:
        console.print("[yellow]No cycle to display.[/yellow]")
        return

    console.print(summary_table(cycle))
    if cycle.swaps:
        console.print(swaps_table(cycle))
    if cycle.batches:
        console.print(batches_table(cycle))


def print_status(status: SupervisorStatus, console: Optional[Console] = None) -> None:
    console = console or Console()
    table = Table(title="Supervisor", box=box.ROUNDED, show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("State", status.state.value)
    table.add_row("Processing", "yes" if status.is_processing else "no")
    table.add_row("Runs", str(status.run_count))
    table.add_row("Retries", str(status.retry_count))
    table.add_row("Last run", status.last_run_time.isoformat() if status.last_run_time else "-")
    table.add_row("Last status", status.last_status.value if status.last_status else "-")
    if status.next_retry_at:
        table.add_row("Next retry", status.next_retry_at.isoformat())
    console.print(table)


__all__ = ["batches_table", "print_cycle", "print_status", "summary_table", "swaps_table"]
