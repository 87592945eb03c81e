"""Console reporter - plan summaries, apply results and state listings."""

from typing import Any

from rich.console import Console
from rich.table import Table

from tierctl.engine.models import ApplyResult, ItemResult, ItemStatus, Plan, PlanAction, StateRecord

_ACTION_STYLES = {
    PlanAction.CREATE: "green",
    PlanAction.UPDATE: "yellow",
    PlanAction.REPLACE: "magenta",
    PlanAction.DESTROY: "red",
    PlanAction.NO_OP: "dim",
}

_STATUS_ICONS = {
    ItemStatus.SUCCEEDED: "[green]✓[/green]",
    ItemStatus.FAILED: "[red]✗[/red]",
    ItemStatus.SKIPPED: "[yellow]-[/yellow]",
    ItemStatus.CANCELLED: "[dim]○[/dim]",
}


def _short(value: Any, limit: int = 60) -> str:
    text = "null" if value is None else str(value)
    return text if len(text) <= limit else text[: limit - 3] + "..."


class Reporter:
    """Renders engine results to the terminal."""

    def __init__(self, console: Console | None = None, verbose: bool = False):
        self.console = console or Console()
        self.verbose = verbose

    def report_plan(self, plan: Plan) -> None:
        """Print a plan summary."""
        changes = plan.changes()
        if not changes:
            self.console.print("[green]No changes.[/green] Infrastructure matches the configuration.")
            return

        table = Table(title="Execution Plan")
        table.add_column("", style="bold")
        table.add_column("Resource", style="cyan")
        table.add_column("Type")
        table.add_column("Changes")

        for item in changes:
            style = _ACTION_STYLES[item.action]
            lines = []
            for change in item.diff:
                marker = " [red](forces replacement)[/red]" if change.forces_replacement else ""
                lines.append(f"{change.name}: {_short(change.before)} → {_short(change.after)}{marker}")
            if item.reason:
                lines.append(f"[dim]{item.reason}[/dim]")
            name = item.key if item.deposed_id else item.resource_id
            if item.action == PlanAction.REPLACE and item.create_before_destroy:
                name += " [dim](create before destroy)[/dim]"
            table.add_row(
                f"[{style}]{item.action.symbol}[/{style}]",
                name,
                item.resource_type.value,
                "\n".join(lines) if self.verbose or item.action != PlanAction.CREATE else f"{len(item.diff)} attribute(s)",
            )

        self.console.print(table)
        counts = plan.counts()
        self.console.print(
            f"[bold]Plan:[/bold] {counts[PlanAction.CREATE]} to create, "
            f"{counts[PlanAction.UPDATE]} to update, {counts[PlanAction.REPLACE]} to replace, "
            f"{counts[PlanAction.DESTROY]} to destroy."
        )

    def report_item(self, result: ItemResult) -> None:
        """Print one item result as it completes."""
        label = result.resource_id + (f" ({result.deposed_id})" if result.deposed_id else "")
        line = f"{_STATUS_ICONS[result.status]} {result.action.value} {label}"
        if result.status == ItemStatus.SUCCEEDED:
            line += f" [dim]({result.duration_seconds:.1f}s)[/dim]"
        self.console.print(line)
        if result.error:
            self.console.print(f"  [dim]Error: {result.error}[/dim]")

    def report_apply(self, result: ApplyResult) -> None:
        """Print the apply summary."""
        self.console.print()
        if result.success:
            self.console.print(
                f"[bold green]Apply complete![/bold green] {len(result.succeeded)} change(s) "
                f"in {result.get_elapsed_time():.1f}s"
            )
            return

        table = Table(title="Apply Result")
        table.add_column("Resource", style="cyan")
        table.add_column("Action")
        table.add_column("Status")
        table.add_column("Error")
        for item in result.results:
            if item.status != ItemStatus.SUCCEEDED:
                table.add_row(item.resource_id, item.action.value, item.status.value, item.error or "")
        self.console.print(table)
        self.console.print(
            f"[bold red]Apply incomplete:[/bold red] {len(result.succeeded)} succeeded, "
            f"{len(result.failed)} failed, {len(result.skipped)} skipped, "
            f"{len(result.cancelled_items)} cancelled"
        )

    def report_state(self, records: dict[str, StateRecord]) -> None:
        """Print a table of tracked resources."""
        if not records:
            self.console.print("No resources tracked in state.")
            return
        table = Table(title="State")
        table.add_column("Resource", style="cyan")
        table.add_column("Type")
        table.add_column("Provider ID", style="yellow")
        table.add_column("Last Applied")
        table.add_column("Notes", style="dim")
        for record in records.values():
            notes = []
            if record.managed_by:
                notes.append(f"member of {record.managed_by}")
            if record.deposed_ids:
                notes.append(f"{len(record.deposed_ids)} deposed")
            if record.tainted:
                notes.append("tainted")
            table.add_row(
                record.resource_id,
                record.resource_type,
                record.provider_assigned_id,
                record.last_applied_at.strftime("%Y-%m-%d %H:%M:%S"),
                ", ".join(notes),
            )
        self.console.print(table)
        self.console.print(f"\nTotal: {len(records)} resources")

    def report_record(self, record: StateRecord) -> None:
        """Print every field of one state record."""
        table = Table(title=record.resource_id, show_header=False)
        table.add_column("Field", style="bold")
        table.add_column("Value")
        for key, value in record.to_dict().items():
            if isinstance(value, dict):
                value = "\n".join(f"{k} = {_short(v)}" for k, v in value.items()) or "-"
            elif isinstance(value, list):
                value = ", ".join(value) or "-"
            table.add_row(key, _short(value, 200) if not isinstance(value, str) else value)
        self.console.print(table)


__all__ = ["Reporter"]
