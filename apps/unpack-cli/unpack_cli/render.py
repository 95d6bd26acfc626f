"""Rich rendering of plans, run summaries, status and Teleport imports."""

from __future__ import annotations

from rich.console import Console
from rich.table import Table

from unpack_core import Issue
from unpack_sync import ActionKind, Plan, RunSummary, StatusReport, TeleportImportResult

_STATUS_STYLE = {"ok": "green", "partial": "yellow", "skipped": "dim", "failed": "red"}

_LABELS = {
    ActionKind.CREATE_KEY: "create key",
    ActionKind.UPDATE_KEY: "update key",
    ActionKind.SKIP_KEY: "skip key",
    ActionKind.REMOVE_KEY: "remove key",
    ActionKind.SYNC_PUBLIC_KEY_BACK: "sync public key",
    ActionKind.UPSERT_CONFIG_ENTRY: "upsert host",
    ActionKind.REMOVE_CONFIG_ENTRY: "remove host",
    ActionKind.UPSERT_REMOTE: "upsert remote",
    ActionKind.REMOVE_REMOTE: "remove remote",
}


def render_plan(console: Console, plan: Plan, *, show_skips: bool = False) -> None:
    actions = plan.actions if show_skips else plan.changes
    if not actions:
        console.print("[dim]No changes.[/dim]")
        return
    table = Table(show_header=True, header_style="bold")
    table.add_column("Action")
    table.add_column("Target")
    table.add_column("Item")
    table.add_column("Reason", style="dim")
    for a in actions:
        table.add_row(_LABELS[a.kind], a.target, a.identity or "-", a.reason)
    console.print(table)


def render_issues(console: Console, issues: list[Issue]) -> None:
    if not issues:
        return
    table = Table(show_header=True, header_style="bold", title="Issues")
    table.add_column("Kind")
    table.add_column("Target")
    table.add_column("Message")
    for issue in issues:
        style = "yellow" if issue.severity == "warning" else "red"
        table.add_row(f"[{style}]{issue.kind}[/{style}]", issue.target, issue.message)
    console.print(table)


def render_summary(console: Console, summary: RunSummary) -> None:
    if summary.dry_run:
        console.rule("[bold]Dry run - planned actions[/bold]")
        render_plan(console, summary.plan)
        render_issues(console, summary.issues)
        return

    title = "Purge Summary" if summary.purge else "Sync Summary"
    console.rule(f"[bold]{title}[/bold]")
    counts = {s: len(summary.by_status(s)) for s in ("ok", "partial", "skipped", "failed")}
    skipped_keys = sum(1 for o in summary.outcomes if o.action.kind is ActionKind.SKIP_KEY)
    if not summary.purge:
        console.print(f"Items: [bold]{summary.credentials}[/bold]")
    console.print(
        f"Done: [green]{counts['ok']}[/green]   partial: [yellow]{counts['partial']}[/yellow]   "
        f"failed: [red]{counts['failed']}[/red]   unchanged/skipped: {counts['skipped']}"
        f"   (keys up to date: {skipped_keys})"
    )
    changed = [o for o in summary.outcomes if o.action.kind is not ActionKind.SKIP_KEY]
    if changed:
        table = Table(show_header=True, header_style="bold")
        table.add_column("Action")
        table.add_column("Target")
        table.add_column("Status")
        table.add_column("Details")
        for o in changed:
            style = _STATUS_STYLE[o.status]
            table.add_row(
                _LABELS[o.action.kind],
                o.action.target,
                f"[{style}]{o.status}[/{style}]",
                o.detail or o.action.reason,
            )
        console.print(table)
    else:
        console.print("[dim]No changes.[/dim]")
    render_issues(console, summary.issues)
    if summary.errors:
        console.print("[yellow][WARN] Completed with errors[/yellow]")
    else:
        console.print("[green][OK] Completed successfully[/green]")


def render_status(console: Console, report: StatusReport) -> None:
    table = Table(show_header=False, box=None)
    table.add_column(style="bold")
    table.add_column()
    table.add_row("SSH keys", f"{report.keys}  [dim]({report.output_dir})[/dim]")
    table.add_row("SSH hosts", f"{report.hosts}  [dim]({report.ssh_config_path})[/dim]")
    if report.remotes is None:
        remotes = "[dim]unavailable[/dim]"
    else:
        remotes = f"{report.remotes}  [dim]({report.rclone_config_path})[/dim]"
    table.add_row("rclone remotes", remotes)
    table.add_row("Tracked items", str(report.tracked_items))
    console.print(table)
    render_issues(console, report.issues)


def render_teleport(console: Console, result: TeleportImportResult) -> None:
    verb = "Would import" if result.dry_run else "Importing"
    console.print(f"{verb} {len(result.planned)} node(s) into vault [bold]{result.vault}[/bold]")
    if result.planned:
        table = Table(show_header=True, header_style="bold")
        table.add_column("Node")
        table.add_column("SSH")
        table.add_column("Server Command")
        for n in result.planned:
            table.add_row(n.node, n.ssh_command, n.server_command)
        console.print(table)
    if result.existing:
        console.print(f"[dim]Already present: {', '.join(result.existing)}[/dim]")
    if result.vault_created:
        console.print(f"[green]Created vault {result.vault}[/green]")
    if not result.dry_run and result.created:
        console.print(f"[green][OK] Created {len(result.created)} item(s)[/green]")
    render_issues(console, result.issues)
