"""Import Teleport nodes as secret-store items for rclone remotes."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Protocol

from unpack_core.errors import ExecutionFailure, Issue, UnpackError
from unpack_core.matcher import matches

from unpack_sync.backends.tsh import DEFAULT_SFTP_SERVER, TeleportStatus

logger = logging.getLogger(__name__)

MAX_PROBES = 8


class TeleportClient(Protocol):
    def status(self) -> TeleportStatus: ...

    def proxy(self, status: TeleportStatus) -> str: ...

    def list_nodes(self) -> list[str]: ...

    def probe_subsystem(self, node: str) -> str: ...


class TeleportItemStore(Protocol):
    def list_vaults(self) -> list[str]: ...

    def list_item_titles(self, vault: str) -> list[str]: ...

    def create_vault(self, name: str) -> None: ...

    def create_teleport_item(self, vault: str, title: str, ssh_command: str, server_command: str) -> None: ...


@dataclass
class NodeImport:
    node: str
    ssh_command: str
    server_command: str


@dataclass
class TeleportImportResult:
    vault: str
    planned: list[NodeImport] = field(default_factory=list)
    created: list[str] = field(default_factory=list)
    existing: list[str] = field(default_factory=list)
    issues: list[Issue] = field(default_factory=list)
    vault_created: bool = False
    dry_run: bool = False


def ssh_command(proxy: str, user: str, node: str) -> str:
    return f"tsh ssh --proxy={proxy} {user}@{node}"


def import_nodes(
    tsh: TeleportClient,
    store: TeleportItemStore,
    vault: str,
    *,
    node_pattern: str | None = None,
    scan: bool = True,
    dry_run: bool = False,
) -> TeleportImportResult:
    """
    Create one custom item per Teleport node in `vault`.

    Nodes that already have an item with the same title are left alone. With
    `scan`, each node is asked where its sftp-server lives (in parallel);
    otherwise the Debian default path is used.
    """
    status = tsh.status()
    proxy = tsh.proxy(status)
    nodes = sorted(set(tsh.list_nodes()))
    if node_pattern:
        nodes = [n for n in nodes if matches(node_pattern, n)]
    result = TeleportImportResult(vault=vault, dry_run=dry_run)

    vault_exists = vault in store.list_vaults()
    existing = set(store.list_item_titles(vault)) if vault_exists else set()
    result.existing = [n for n in nodes if n in existing]
    todo = [n for n in nodes if n not in existing]
    logger.info(f"Teleport: {len(nodes)} nodes, {len(todo)} to import into '{vault}'")

    if scan and todo:
        with ThreadPoolExecutor(max_workers=min(MAX_PROBES, len(todo))) as pool:
            paths = dict(zip(todo, pool.map(tsh.probe_subsystem, todo)))
    else:
        paths = {n: DEFAULT_SFTP_SERVER for n in todo}
    result.planned = [
        NodeImport(node=n, ssh_command=ssh_command(proxy, status.username, n), server_command=paths[n])
        for n in todo
    ]
    if dry_run or not result.planned:
        return result

    if not vault_exists:
        store.create_vault(vault)
        result.vault_created = True
    for item in result.planned:
        try:
            store.create_teleport_item(vault, item.node, item.ssh_command, item.server_command)
        except UnpackError as e:
            logger.warning(f"Failed to create item for {item.node}: {e}")
            result.issues.append(ExecutionFailure(item.node, str(e)))
            continue
        result.created.append(item.node)
    return result
