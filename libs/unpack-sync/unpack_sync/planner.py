"""Change planner: diff credentials against managed state.

Three independent passes (keys, SSH config entries, rclone remotes), each
keyed by the item identity `vault/title`. Removals are derived from the
manifest only, and only for identities that are in scope for this run.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from pathlib import Path

from unpack_core.digest import compute_digest, normalize_private_key
from unpack_core.errors import IntegrityViolation, PlanningConflict
from unpack_core.fsio import home_relative
from unpack_core.matcher import matches_any
from unpack_core.models import (
    ConfigEntry,
    Credential,
    ManifestEntry,
    RemoteSpec,
    SyncPublicKey,
)

from unpack_sync.actions import Action, ActionKind, Plan
from unpack_sync.keys import key_path
from unpack_sync.state import ManagedState

logger = logging.getLogger(__name__)


@dataclass
class Scope:
    """Which manifest identities this run is allowed to consider gone."""

    vault_patterns: list[str] = field(default_factory=list)
    item_patterns: list[str] = field(default_factory=list)
    present: set[str] = field(default_factory=set)
    failed_vaults: set[str] = field(default_factory=set)

    @property
    def unfiltered(self) -> bool:
        return not self.vault_patterns and not self.item_patterns and not self.failed_vaults

    def covers(self, entry: ManifestEntry) -> bool:
        return (
            entry.vault not in self.failed_vaults
            and matches_any(entry.vault, self.vault_patterns)
            and matches_any(entry.title, self.item_patterns)
        )

    def vanished(self, ident: str, entry: ManifestEntry | None) -> bool:
        return entry is not None and ident not in self.present and self.covers(entry)


def remote_specs(cred: Credential, path: Path | None) -> list[RemoteSpec]:
    """One Primary plus an AliasOf pointer per additional alias."""
    primary_name = cred.remote_name
    if cred.kind == "teleport":
        primary = RemoteSpec(
            name=primary_name,
            kind="primary",
            identity=cred.identity,
            host=cred.host,
            user=cred.username,
            ssh=cred.custom_ssh_command,
            server_command=cred.server_command,
        )
    else:
        key_file = str(path) if path is not None else None
        ssh = cred.custom_ssh_command
        if not ssh and cred.jump_host:
            dest = f"{cred.username}@{cred.host}" if cred.username else cred.host
            ssh = f"ssh -i {key_file} -J {cred.jump_host} {dest}"
        primary = RemoteSpec(
            name=primary_name,
            kind="primary",
            identity=cred.identity,
            host=cred.host,
            user=cred.username,
            key_file=key_file,
            ssh=ssh,
            server_command=cred.server_command,
        )
    aliases = [
        RemoteSpec(name=a, kind="alias", identity=cred.identity, target=primary_name)
        for a in cred.remote_alias_names
    ]
    return [primary, *aliases]


class ChangePlanner:
    """Builds one Plan from normalized credentials and the managed state."""

    def __init__(
        self,
        state: ManagedState,
        scope: Scope,
        *,
        sync_public_key: SyncPublicKey = SyncPublicKey.IF_EMPTY,
        full: bool = False,
        do_ssh: bool = True,
        do_rclone: bool = True,
    ):
        self.state = state
        self.scope = scope
        self.sync_public_key = sync_public_key
        self.full = full
        self.do_ssh = do_ssh
        self.do_rclone = do_rclone
        self.plan_ = Plan()
        # Identities whose key could not be planned; other passes skip them.
        self.excluded: set[str] = set()
        self.key_paths: dict[str, Path] = {}

    # ---- helpers -----------------------------------------------------------
    def _emit(self, kind: ActionKind, target: str, **kw) -> Action:
        action = Action(kind=kind, target=target, **kw)
        self.plan_.actions.append(action)
        return action

    def _issue(self, issue) -> None:
        logger.warning(str(issue))
        self.plan_.issues.append(issue)

    def _entry(self, ident: str | None) -> ManifestEntry | None:
        return self.state.manifest.entries.get(ident) if ident else None

    def _foreign_owner(self, owner: str | None, ident: str, current: set[str]) -> bool:
        """True when `owner` still holds a name that `ident` wants."""
        if owner is None or owner == ident or owner in current:
            return False
        return not self.scope.vanished(owner, self._entry(owner))

    # ---- entry point -------------------------------------------------------
    def plan(self, credentials: list[Credential]) -> Plan:
        self._plan_keys(credentials)
        if self.do_ssh:
            self._plan_config(credentials)
        if self.do_rclone and self.state.remotes is not None:
            self._plan_remotes(credentials)
        self.plan_.sort()
        self.plan_.check_consistency()
        return self.plan_

    # ---- key pass ----------------------------------------------------------
    def _plan_keys(self, credentials: list[Credential]) -> None:
        out = self.state.output_dir
        by_path: dict[Path, list[Credential]] = defaultdict(list)
        for cred in credentials:
            if cred.has_key:
                by_path[key_path(out, cred)].append(cred)

        current = {c.identity for c in credentials}
        for path, group in by_path.items():
            if len(group) > 1:
                names = ", ".join(sorted(c.identity for c in group))
                for cred in group:
                    self.excluded.add(cred.identity)
                self._issue(PlanningConflict(str(path), f"key path shared by {names}"))
                continue
            cred = group[0]
            owner = self.state.key_owner(path)
            if self._foreign_owner(owner, cred.identity, current):
                self.excluded.add(cred.identity)
                self._issue(PlanningConflict(str(path), f"key path owned by {owner}"))
                continue
            self.key_paths[cred.identity] = path
            self._diff_key(cred, path, self._entry(owner))

        # Vanished keys are removed together with the Host entries naming them.
        if not (self.full and self.do_ssh):
            return
        for ident, entry in self.state.manifest.entries.items():
            if entry.key_path and Path(entry.key_path) not in by_path and self.scope.vanished(ident, entry):
                self._emit(
                    ActionKind.REMOVE_KEY,
                    entry.key_path,
                    identity=ident,
                    reason="item removed",
                    expected_hash=entry.content_hash,
                )

    def _diff_key(self, cred: Credential, path: Path, owner_entry: ManifestEntry | None) -> None:
        digest = compute_digest(normalize_private_key(cred.private_key))
        on_disk = self.state.key_file(path)
        kw = {"identity": cred.identity, "credential": cred}
        target = str(path)

        if on_disk is None:
            action = self._emit(ActionKind.CREATE_KEY, target, reason="new", **kw)
        elif owner_entry is None and on_disk.content_hash != digest:
            self.excluded.add(cred.identity)
            self._issue(IntegrityViolation(target, "existing file was not written by pass-ssh-unpack"))
            self._emit(ActionKind.SKIP_KEY, target, reason="unmanaged file", **kw)
            return
        elif (
            owner_entry is not None
            and owner_entry.content_hash
            and on_disk.content_hash != owner_entry.content_hash
        ):
            self._issue(IntegrityViolation(target, "key file modified outside pass-ssh-unpack"))
            self._emit(ActionKind.SKIP_KEY, target, reason="modified on disk", **kw)
            return
        elif on_disk.content_hash != digest:
            action = self._emit(ActionKind.UPDATE_KEY, target, reason="changed", **kw)
        elif self.full:
            action = self._emit(ActionKind.UPDATE_KEY, target, reason="full", **kw)
        elif not on_disk.has_public_key:
            action = self._emit(ActionKind.UPDATE_KEY, target, reason="public key missing", **kw)
        else:
            reason = "adopted" if owner_entry is None else "unchanged"
            action = self._emit(ActionKind.SKIP_KEY, target, reason=reason, **kw)

        written = action.kind in (ActionKind.CREATE_KEY, ActionKind.UPDATE_KEY)
        store_value = (cred.public_key or "").strip()
        if self.sync_public_key is SyncPublicKey.ALWAYS:
            local = (on_disk.public_key or "").strip() if on_disk else ""
            needed = written or store_value != local
        elif self.sync_public_key is SyncPublicKey.IF_EMPTY:
            needed = not store_value
        else:
            needed = False
        if needed:
            self._emit(ActionKind.SYNC_PUBLIC_KEY_BACK, target, reason=self.sync_public_key.value, **kw)

    # ---- SSH config pass ---------------------------------------------------
    def _plan_config(self, credentials: list[Credential]) -> None:
        block = self.state.ssh_config.entries
        current = {c.identity: c for c in credentials}
        owners = self.state.manifest.alias_owners()

        claims: dict[str, list[ConfigEntry]] = defaultdict(list)
        for cred in credentials:
            if cred.kind != "ssh_key" or cred.identity in self.excluded:
                continue
            identity_file = home_relative(self.key_paths[cred.identity])
            for alias in cred.host_aliases:
                claims[alias].append(
                    ConfigEntry(
                        host_alias=alias,
                        hostname=cred.host,
                        identity_file=identity_file,
                        username=cred.username,
                        proxy_jump=cred.jump_host,
                        identity=cred.identity,
                    )
                )

        desired: dict[str, ConfigEntry] = {}
        for alias, group in claims.items():
            if len(group) > 1:
                names = ", ".join(sorted(e.identity for e in group))
                self._issue(PlanningConflict(alias, f"host alias claimed by {names}"))
                continue
            entry = group[0]
            owner = owners.get(alias)
            if self._foreign_owner(owner, entry.identity, set(current)):
                self._issue(PlanningConflict(alias, f"host alias owned by {owner}"))
                continue
            desired[alias] = entry

        removals: dict[str, str] = {}
        for ident, m_entry in self.state.manifest.entries.items():
            if self.scope.vanished(ident, m_entry):
                gone = m_entry.host_aliases
            elif ident in current and ident not in self.excluded:
                cred = current[ident]
                keep = cred.host_aliases if cred.kind == "ssh_key" else []
                gone = [a for a in m_entry.host_aliases if a not in keep]
            else:
                gone = []
            for alias in gone:
                if alias not in claims:
                    removals[alias] = ident
        if self.full and self.scope.unfiltered:
            for alias in block:
                if alias not in claims and alias not in owners:
                    removals.setdefault(alias, "")

        for alias in sorted(removals):
            reason = "orphan" if not removals[alias] else "no longer listed"
            self._emit(ActionKind.REMOVE_CONFIG_ENTRY, alias, identity=removals[alias] or None, reason=reason)
        for alias in sorted(desired):
            entry = desired[alias]
            existing = block.get(alias)
            if existing == entry:
                continue
            self._emit(
                ActionKind.UPSERT_CONFIG_ENTRY,
                alias,
                identity=entry.identity,
                reason="new" if existing is None else "changed",
                entry=entry,
            )

    # ---- rclone pass -------------------------------------------------------
    def _plan_remotes(self, credentials: list[Credential]) -> None:
        doc = self.state.remotes
        current = {c.identity for c in credentials}
        owners = self.state.manifest.remote_owners()

        claims: dict[str, list[RemoteSpec]] = defaultdict(list)
        for cred in credentials:
            if cred.identity in self.excluded:
                continue
            for spec in remote_specs(cred, self.key_paths.get(cred.identity)):
                claims[spec.name].append(spec)

        blocked_names: set[str] = set()
        blocked_idents: set[str] = set()
        for name, group in claims.items():
            idents = sorted({s.identity for s in group})
            section = doc.get(name)
            owner = owners.get(name)
            if len(idents) > 1:
                issue = PlanningConflict(name, f"remote name claimed by {', '.join(idents)}")
            elif self._foreign_owner(owner, idents[0], current):
                issue = PlanningConflict(name, f"remote name owned by {owner}")
            elif section is not None and not section.managed:
                if owner == idents[0]:
                    issue = IntegrityViolation(name, "section lost its managed marker; left untouched")
                else:
                    issue = PlanningConflict(name, "an unmanaged rclone remote with this name exists")
            else:
                continue
            self._issue(issue)
            blocked_names.add(name)
            blocked_idents.update(s.identity for s in group if s.kind == "primary")

        desired: dict[str, list[RemoteSpec]] = defaultdict(list)
        for name, group in claims.items():
            spec = group[0]
            if name in blocked_names or spec.identity in blocked_idents:
                continue
            desired[spec.identity].append(spec)

        removals: dict[str, str] = {}
        for ident, m_entry in self.state.manifest.entries.items():
            if self.scope.vanished(ident, m_entry):
                gone = m_entry.remote_names()
            elif ident in current and ident not in self.excluded and ident not in blocked_idents:
                wanted = {s.name for s in desired.get(ident, [])}
                gone = [n for n in m_entry.remote_names() if n not in wanted]
            else:
                gone = []
            for name in gone:
                if name not in claims:
                    removals[name] = ident
        if self.full and self.scope.unfiltered:
            for name in doc.managed_names():
                if name not in claims and name not in owners:
                    removals.setdefault(name, "")

        for name in sorted(removals):
            reason = "orphan" if not removals[name] else "no longer listed"
            self._emit(ActionKind.REMOVE_REMOTE, name, identity=removals[name] or None, reason=reason)

        for ident in sorted(desired):
            specs = desired[ident]
            m_entry = self._entry(ident)
            alias_names = [s.name for s in specs if s.kind == "alias"]
            aliases_changed = m_entry is None or set(m_entry.remote_aliases) != set(alias_names)
            for spec in specs:
                section = doc.get(spec.name)
                if section is None:
                    reason = "new"
                elif section.fields != spec.fields():
                    reason = "changed"
                elif spec.kind == "alias" and (self.full or aliases_changed):
                    reason = "full" if self.full else "aliases changed"
                else:
                    continue
                self._emit(ActionKind.UPSERT_REMOTE, spec.name, identity=ident, reason=reason, remote=spec)


def plan_purge(state: ManagedState, *, do_ssh: bool = True, do_rclone: bool = True) -> Plan:
    """Remove everything the manifest (or a managed marker) says is ours."""
    plan = Plan()
    manifest = state.manifest
    for ident, entry in manifest.entries.items():
        if do_ssh and entry.key_path:
            plan.actions.append(
                Action(
                    ActionKind.REMOVE_KEY,
                    entry.key_path,
                    identity=ident,
                    reason="purge",
                    expected_hash=entry.content_hash,
                )
            )
    if do_ssh:
        owners = manifest.alias_owners()
        for alias in sorted(set(state.ssh_config.entries) | set(owners)):
            plan.actions.append(
                Action(ActionKind.REMOVE_CONFIG_ENTRY, alias, identity=owners.get(alias), reason="purge")
            )
    if do_rclone and state.remotes is not None:
        owners = manifest.remote_owners()
        for name in sorted(set(state.remotes.managed_names()) | set(owners)):
            plan.actions.append(
                Action(ActionKind.REMOVE_REMOTE, name, identity=owners.get(name), reason="purge")
            )
    plan.sort()
    return plan
