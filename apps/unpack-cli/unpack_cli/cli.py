"""pass-ssh-unpack CLI commands."""

import logging
from dataclasses import dataclass, field
from pathlib import Path

import typer
from dotenv import load_dotenv
from rich.console import Console

from unpack_core import (
    ConfigError,
    SyncPublicKey,
    UnpackConfig,
    UnpackError,
    check_missing_options,
    default_config_path,
    load_or_create,
)
from unpack_sync import PlanError, RunOptions, UnpackSync, import_nodes
from unpack_sync.backends.keygen import SshKeygen
from unpack_sync.backends.protonpass import ProtonPassCli
from unpack_sync.backends.rclone import RcloneCli
from unpack_sync.backends.tsh import TeleportCli

from unpack_cli import render

app = typer.Typer(help="pass-ssh-unpack - Extract SSH keys and rclone remotes from Proton Pass")
console = Console()
err_console = Console(stderr=True)

# Configure logging (default to WARNING, raised to INFO with --debug)
logging.basicConfig(
    level=logging.WARNING,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M",
)
logger = logging.getLogger(__name__)


@dataclass
class Backends:
    store: object
    keytool: object
    rclone: object | None = None
    tsh: object | None = None
    warnings: list[str] = field(default_factory=list)


@dataclass
class Settings:
    """Global options shared by the default command and subcommands."""

    config_path: Path | None = None
    output_dir: str | None = None
    sync_public_key: SyncPublicKey | None = None
    rclone_password_path: str | None = None
    always_encrypt: bool = False
    quiet: bool = False


def _build_backends() -> Backends:
    """Real CLI-backed collaborators. Tests replace this function."""
    keytool = SshKeygen()
    keytool.check()
    rclone = RcloneCli()
    backends = Backends(store=ProtonPassCli(), keytool=keytool, tsh=TeleportCli())
    if rclone.available:
        backends.rclone = rclone
    else:
        backends.warnings.append("rclone not found; skipping rclone remote sync")
    return backends


def _configure_logging(debug: bool) -> None:
    level = logging.INFO if debug else logging.WARNING
    logging.getLogger().setLevel(level)
    for name in ("unpack_core", "unpack_sync", "unpack_cli"):
        logging.getLogger(name).setLevel(level)


def _load_config(settings: Settings) -> UnpackConfig:
    out = Console(quiet=settings.quiet)
    path = settings.config_path or default_config_path()
    existed = path.exists()
    config = load_or_create(path)
    if not existed:
        out.print(f"[dim]Created default config at {path}[/dim]")
    else:
        missing = check_missing_options(path)
        if missing:
            out.print(
                f"[yellow]Config is missing options: {', '.join(missing)}. "
                f"Delete {path} to regenerate it with all defaults.[/yellow]"
            )

    update: dict = {}
    if settings.output_dir:
        update["ssh_output_dir"] = settings.output_dir
    if settings.sync_public_key is not None:
        update["sync_public_key"] = settings.sync_public_key
    rclone_update: dict = {}
    if settings.rclone_password_path:
        rclone_update["password_path"] = settings.rclone_password_path
    if settings.always_encrypt:
        rclone_update["always_encrypt"] = True
    if rclone_update:
        update["rclone"] = config.rclone.model_copy(update=rclone_update)
    return config.model_copy(update=update) if update else config


def _fatal(message: str) -> typer.Exit:
    err_console.print(f"[red]Error:[/red] {message}")
    return typer.Exit(2)


def run_sync(settings: Settings, opts: RunOptions) -> None:
    """Shared by the default command and the interactive menu."""
    out = Console(quiet=settings.quiet)
    try:
        config = _load_config(settings)
        backends = _build_backends()
    except UnpackError as e:
        raise _fatal(str(e)) from e
    for warning in backends.warnings:
        out.print(f"[yellow]{warning}[/yellow]")

    engine = UnpackSync(config, backends.store, backends.keytool, backends.rclone)
    try:
        with out.status("Syncing from Proton Pass..."):
            summary = engine.run(opts)
    except (UnpackError, PlanError) as e:
        logger.debug("Run aborted", exc_info=True)
        raise _fatal(str(e)) from e

    render.render_summary(out, summary)
    if settings.quiet and summary.errors:
        render.render_issues(err_console, summary.issues)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    vault: list[str] | None = typer.Option(
        None, "--vault", "-v", help="Vault(s) to process (repeatable, supports wildcards)"
    ),
    item: list[str] | None = typer.Option(
        None, "--item", "-i", help="Item title pattern(s) (repeatable, supports wildcards)"
    ),
    full: bool = typer.Option(False, "--full", "-f", help="Full regeneration; also removes vanished items"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show what would be done without doing it"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Suppress output"),
    ssh: bool = typer.Option(False, "--ssh", help="Only sync keys and SSH config"),
    rclone: bool = typer.Option(False, "--rclone", help="Only sync rclone remotes"),
    purge: bool = typer.Option(False, "--purge", help="Remove everything pass-ssh-unpack created"),
    config: Path | None = typer.Option(None, "--config", "-c", help="Path to config.yaml"),
    output_dir: str | None = typer.Option(None, "--output-dir", help="Override ssh_output_dir"),
    sync_public_key: SyncPublicKey | None = typer.Option(
        None, "--sync-public-key", help="When to write public keys back to Proton Pass"
    ),
    rclone_password_path: str | None = typer.Option(
        None, "--rclone-password-path", help="Secret-store path of the rclone config password"
    ),
    always_encrypt: bool = typer.Option(
        False, "--always-encrypt", help="Encrypt rclone.conf after changes when a password is known"
    ),
    debug: bool = typer.Option(False, "--debug", help="Verbose logging"),
):
    """Sync SSH keys, SSH config and rclone remotes from Proton Pass."""
    load_dotenv()
    _configure_logging(debug)
    settings = Settings(
        config_path=config,
        output_dir=output_dir,
        sync_public_key=sync_public_key,
        rclone_password_path=rclone_password_path,
        always_encrypt=always_encrypt,
        quiet=quiet,
    )
    ctx.obj = settings
    if ctx.invoked_subcommand is not None:
        return
    if ssh and rclone:
        raise _fatal("--ssh and --rclone are mutually exclusive")

    opts = RunOptions(
        vaults=list(vault or []),
        items=list(item or []),
        full=full,
        dry_run=dry_run,
        purge=purge,
        do_ssh=not rclone,
        do_rclone=not ssh,
    )
    run_sync(settings, opts)


def show_status(settings: Settings) -> None:
    try:
        config = _load_config(settings)
        backends = _build_backends()
        engine = UnpackSync(config, backends.store, backends.keytool, backends.rclone)
        report = engine.collect_status()
    except UnpackError as e:
        raise _fatal(str(e)) from e
    render.render_status(Console(quiet=settings.quiet), report)


@app.command()
def status(ctx: typer.Context):
    """Show counts and locations of managed keys, hosts and remotes."""
    show_status(ctx.obj or Settings())


def teleport_import(
    settings: Settings,
    vault: str,
    node_pattern: str | None,
    scan: bool,
    dry_run: bool,
) -> None:
    out = Console(quiet=settings.quiet)
    try:
        backends = _build_backends()
        if backends.tsh is None:
            raise ConfigError("tsh is not available")
        with out.status("Importing Teleport nodes..."):
            result = import_nodes(
                backends.tsh,
                backends.store,
                vault,
                node_pattern=node_pattern,
                scan=scan,
                dry_run=dry_run,
            )
    except UnpackError as e:
        raise _fatal(str(e)) from e
    render.render_teleport(out, result)


@app.command("teleport-import")
def teleport_import_cmd(
    ctx: typer.Context,
    vault: str = typer.Option(..., "--vault", "-v", help="Vault to create items in (created if missing)"),
    node: str | None = typer.Option(None, "--node", "-n", help="Node name pattern (wildcards)"),
    scan: bool = typer.Option(
        True, "--scan/--no-scan", help="Probe each node for its sftp-server path"
    ),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show what would be imported"),
):
    """Import Teleport nodes into Proton Pass as rclone-ready items."""
    teleport_import(ctx.obj or Settings(), vault, node, scan, dry_run)


@app.command()
def menu(ctx: typer.Context):
    """Interactive menu."""
    from unpack_cli.menu import run_menu

    settings = ctx.obj or Settings()
    run_menu(
        console,
        on_sync=lambda opts: run_sync(settings, opts),
        on_teleport=lambda vault, pattern, scan, dry: teleport_import(settings, vault, pattern, scan, dry),
        on_status=lambda: show_status(settings),
    )


if __name__ == "__main__":
    app()
