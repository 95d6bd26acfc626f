"""Interactive menu (`pass-ssh-unpack menu`).

A thin prompt layer over the same entry points the flags use: export,
Teleport import, status and purge. Every destructive choice is confirmed
after a summary of what was selected.
"""

from __future__ import annotations

from typing import Callable

from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm, Prompt

from unpack_sync import RunOptions

CHOICES = {
    "1": "Export SSH keys and rclone remotes",
    "2": "Import Teleport nodes into Proton Pass",
    "3": "Show status",
    "4": "Purge everything pass-ssh-unpack created",
    "q": "Quit",
}


def _patterns(console: Console, label: str) -> list[str]:
    raw = Prompt.ask(f"{label} (comma separated, wildcards ok, empty for all)", default="", console=console)
    return [p.strip() for p in raw.split(",") if p.strip()]


def _confirm(console: Console, lines: list[str]) -> bool:
    console.print(Panel("\n".join(lines), title="Summary"))
    return Confirm.ask("Proceed?", default=True, console=console)


def _export(console: Console, on_sync: Callable[[RunOptions], None]) -> None:
    vaults = _patterns(console, "Vaults")
    items = _patterns(console, "Items")
    target = Prompt.ask("Sync", choices=["both", "ssh", "rclone"], default="both", console=console)
    full = Confirm.ask("Full regeneration?", default=False, console=console)
    dry_run = Confirm.ask("Dry run?", default=False, console=console)
    lines = [
        "Action:  Export",
        f"Vaults:  {', '.join(vaults) or 'all'}",
        f"Items:   {', '.join(items) or 'all'}",
        f"Target:  {target}",
        f"Full:    {'Yes' if full else 'No'}",
        f"Dry run: {'Yes' if dry_run else 'No'}",
    ]
    if not _confirm(console, lines):
        return
    on_sync(
        RunOptions(
            vaults=vaults,
            items=items,
            full=full,
            dry_run=dry_run,
            do_ssh=target != "rclone",
            do_rclone=target != "ssh",
        )
    )


def _teleport(console: Console, on_teleport: Callable[[str, str | None, bool, bool], None]) -> None:
    vault = Prompt.ask("Vault to import into", console=console).strip()
    if not vault:
        console.print("Vault name is required.")
        return
    pattern = Prompt.ask("Node filter pattern (empty for all)", default="", console=console).strip()
    scan = Confirm.ask("Scan each server to detect sftp-server path?", default=True, console=console)
    dry_run = Confirm.ask("Dry run?", default=False, console=console)
    lines = [
        "Action:  Import Teleport nodes",
        f"Vault:   {vault}",
        f"Nodes:   {pattern or 'all nodes'}",
        f"Scan:    {'Yes' if scan else 'No'}",
        f"Dry run: {'Yes' if dry_run else 'No'}",
    ]
    if _confirm(console, lines):
        on_teleport(vault, pattern or None, scan, dry_run)


def _purge(console: Console, on_sync: Callable[[RunOptions], None]) -> None:
    target = Prompt.ask("Purge", choices=["both", "ssh", "rclone"], default="both", console=console)
    dry_run = Confirm.ask("Dry run?", default=False, console=console)
    lines = [
        "Action:  Purge managed artifacts",
        f"Target:  {target}",
        f"Dry run: {'Yes' if dry_run else 'No'}",
    ]
    if _confirm(console, lines):
        on_sync(RunOptions(purge=True, dry_run=dry_run, do_ssh=target != "rclone", do_rclone=target != "ssh"))


def run_menu(
    console: Console,
    *,
    on_sync: Callable[[RunOptions], None],
    on_teleport: Callable[[str, str | None, bool, bool], None],
    on_status: Callable[[], None],
) -> None:
    while True:
        console.print()
        for key, label in CHOICES.items():
            console.print(f"  [bold]{key}[/bold]  {label}")
        choice = Prompt.ask("Select", choices=list(CHOICES), default="q", console=console)
        if choice == "q":
            return
        if choice == "1":
            _export(console, on_sync)
        elif choice == "2":
            _teleport(console, on_teleport)
        elif choice == "3":
            on_status()
        elif choice == "4":
            _purge(console, on_sync)
