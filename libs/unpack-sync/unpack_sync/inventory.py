"""Fetch items from the secret store and normalize them into credentials."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field

from unpack_core.errors import ExecutionFailure, Issue, UnpackError, ValidationError
from unpack_core.matcher import machine_applies, matches_any, select_vaults, split_title
from unpack_core.models import Credential, FieldName, RawItem

from unpack_sync.backends import SecretStore

logger = logging.getLogger(__name__)

TRASH_VAULT = "Trash"
MAX_WORKERS = 8


@dataclass
class Inventory:
    items: list[RawItem] = field(default_factory=list)
    vaults: list[str] = field(default_factory=list)
    failed_vaults: set[str] = field(default_factory=set)
    issues: list[Issue] = field(default_factory=list)


@dataclass
class NormalizedInventory:
    credentials: list[Credential] = field(default_factory=list)
    # Every in-scope identity that exists in the store, valid or not.
    present: set[str] = field(default_factory=set)
    issues: list[Issue] = field(default_factory=list)


def fetch_inventory(store: SecretStore, vault_patterns: list[str] | None) -> Inventory:
    """List matching vaults, then their items concurrently."""
    vaults = [v for v in select_vaults(store.list_vaults(), vault_patterns) if v != TRASH_VAULT]
    inv = Inventory(vaults=vaults)
    if not vaults:
        return inv
    with ThreadPoolExecutor(max_workers=min(MAX_WORKERS, len(vaults))) as pool:
        futures = {v: pool.submit(store.list_items, v) for v in vaults}
        for vault, fut in futures.items():
            try:
                inv.items.extend(fut.result())
            except UnpackError as e:
                logger.warning(f"Listing vault '{vault}' failed: {e}")
                inv.failed_vaults.add(vault)
                inv.issues.append(ExecutionFailure(f"vault:{vault}", f"listing failed: {e}"))
    logger.info(f"Fetched {len(inv.items)} items from {len(vaults)} vaults")
    return inv


def split_aliases(value: str | None) -> tuple[str, ...]:
    if not value:
        return ()
    out: list[str] = []
    for part in value.split(","):
        alias = part.strip()
        if alias and alias not in out:
            out.append(alias)
    return tuple(out)


def to_credential(item: RawItem, display_name: str, machine: str | None) -> Credential:
    """Build a credential, raising ValidationError when required fields are missing."""
    if item.kind == "teleport":
        ssh = item.get(FieldName.SSH)
        server_command = item.get(FieldName.SERVER_COMMAND)
        if not ssh and not server_command:
            raise ValidationError(item.identity, "teleport item has neither SSH nor Server Command")
        return Credential(
            vault=item.vault,
            title=item.title,
            display_name=display_name,
            host=display_name,
            kind="teleport",
            custom_ssh_command=ssh,
            server_command=server_command,
            machine_filter=machine,
        )

    private_key = item.get(FieldName.PRIVATE_KEY)
    host = item.get(FieldName.HOST)
    missing = [n.value for n, v in ((FieldName.PRIVATE_KEY, private_key), (FieldName.HOST, host)) if not v]
    if missing:
        raise ValidationError(item.identity, f"missing required field(s): {', '.join(missing)}")
    return Credential(
        vault=item.vault,
        title=item.title,
        display_name=display_name,
        host=host,
        kind="ssh_key",
        private_key=private_key.encode("utf-8"),
        public_key=item.get(FieldName.PUBLIC_KEY),
        username=item.get(FieldName.USERNAME),
        aliases=split_aliases(item.get(FieldName.ALIASES)),
        jump_host=item.get(FieldName.JUMP),
        custom_ssh_command=item.get(FieldName.SSH),
        server_command=item.get(FieldName.SERVER_COMMAND),
        machine_filter=machine,
    )


def normalize(items: list[RawItem], item_patterns: list[str] | None, hostname: str) -> NormalizedInventory:
    out = NormalizedInventory()
    seen: set[str] = set()
    for item in items:
        if not matches_any(item.title, item_patterns):
            continue
        display, machine = split_title(item.title)
        if not machine_applies(machine, hostname):
            logger.debug(f"Skipping {item.identity}: for machine '{machine}'")
            continue
        out.present.add(item.identity)
        if item.identity in seen:
            out.issues.append(ValidationError(item.identity, "duplicate item title in vault"))
            continue
        seen.add(item.identity)
        try:
            out.credentials.append(to_credential(item, display, machine))
        except ValidationError as e:
            logger.warning(str(e))
            out.issues.append(e)
    return out
