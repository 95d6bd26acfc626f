"""Execution engine: fetch, normalize, plan, apply, record."""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path

from unpack_core.config import config_home
from unpack_core.digest import compute_digest, normalize_private_key
from unpack_core.errors import ExecutionFailure, IntegrityViolation, Issue
from unpack_core.manifest import load_manifest, manifest_path, save_manifest
from unpack_core.matcher import local_hostname
from unpack_core.models import Credential, Manifest, ManifestEntry, UnpackConfig

from unpack_sync import sshconfig
from unpack_sync.actions import ActionKind, Outcome, Plan
from unpack_sync.backends import KeyTool, RcloneTool, SecretStore
from unpack_sync.inventory import fetch_inventory, normalize
from unpack_sync.keys import KeyMaterializer
from unpack_sync.planner import ChangePlanner, Scope, plan_purge
from unpack_sync.remotes import RemoteSynchronizer
from unpack_sync.sshconfig import SshConfigRenderer
from unpack_sync.state import read_state

logger = logging.getLogger(__name__)

EVENTS_LOG = "events.log"


class EngineState(Enum):
    FETCHING = "fetching"
    NORMALIZING = "normalizing"
    PLANNING = "planning"
    DRY_RUN_REPORT = "dry_run_report"
    APPLYING = "applying"
    REPORTING = "reporting"
    DONE = "done"


@dataclass
class RunOptions:
    vaults: list[str] = field(default_factory=list)
    items: list[str] = field(default_factory=list)
    full: bool = False
    dry_run: bool = False
    purge: bool = False
    do_ssh: bool = True
    do_rclone: bool = True


@dataclass
class RunSummary:
    """What a run did (or, for dry runs, would do)."""

    plan: Plan
    outcomes: list[Outcome] = field(default_factory=list)
    issues: list[Issue] = field(default_factory=list)
    dry_run: bool = False
    purge: bool = False
    credentials: int = 0

    def by_status(self, status: str) -> list[Outcome]:
        return [o for o in self.outcomes if o.status == status]

    @property
    def failed(self) -> list[Outcome]:
        return [o for o in self.outcomes if o.status in ("failed", "partial")]

    @property
    def errors(self) -> list[Issue]:
        return [i for i in self.issues if i.severity == "error"]

    def issues_by_kind(self) -> dict[str, list[Issue]]:
        out: dict[str, list[Issue]] = {}
        for issue in self.issues:
            out.setdefault(issue.kind, []).append(issue)
        return out


@dataclass
class StatusReport:
    output_dir: Path
    ssh_config_path: Path
    keys: int = 0
    hosts: int = 0
    tracked_items: int = 0
    rclone_config_path: Path | None = None
    remotes: int | None = None
    issues: list[Issue] = field(default_factory=list)


def _strip_alias(manifest: Manifest, alias: str) -> None:
    for entry in manifest.entries.values():
        if alias in entry.host_aliases:
            entry.host_aliases.remove(alias)


def _strip_remote(manifest: Manifest, name: str) -> None:
    for entry in manifest.entries.values():
        if entry.remote_primary == name:
            entry.remote_primary = None
        if name in entry.remote_aliases:
            entry.remote_aliases.remove(name)


def _strip_key(manifest: Manifest, path: str) -> None:
    for entry in manifest.entries.values():
        if entry.key_path == path:
            entry.key_path = None
            entry.content_hash = None
            entry.has_public_key = False


class UnpackSync:
    """Reconciles secret-store credentials into keys, SSH config and rclone remotes."""

    def __init__(
        self,
        config: UnpackConfig,
        store: SecretStore,
        keytool: KeyTool,
        rclone: RcloneTool | None = None,
        *,
        hostname: str | None = None,
        environ: Mapping[str, str] | None = None,
        state_dir: Path | None = None,
    ):
        self.config = config
        self.store = store
        self.keytool = keytool
        self.rclone = rclone
        self.hostname = (hostname or local_hostname()).lower()
        self.environ = os.environ if environ is None else environ
        self.state_dir = state_dir or config_home()
        self.state: EngineState | None = None
        self._creds: dict[str, Credential] = {}

    # ---- Logging / helpers -------------------------------------------------
    def _log_event(self, event: str, **payload) -> None:
        """Append a structured event to <config home>/events.log as JSONL."""
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            payload = {"ts": datetime.now().strftime("%Y-%m-%d %H:%M:%S"), "event": event, **payload}
            with open(self.state_dir / EVENTS_LOG, "a", encoding="utf-8") as f:
                f.write(json.dumps(payload, ensure_ascii=False) + os.linesep)
        except OSError as e:
            logger.debug(f"Failed to write event log: {e}")

    def _transition(self, state: EngineState) -> None:
        self.state = state
        logger.info(f"Engine state: {state.value}")

    def _remote_sync(self, wanted: bool) -> RemoteSynchronizer | None:
        if not (wanted and self.config.rclone.enabled and self.rclone is not None):
            return None
        return RemoteSynchronizer(self.config.rclone, self.rclone, self.store, self.environ)

    # ---- Run -----------------------------------------------------------------
    def run(self, opts: RunOptions) -> RunSummary:
        """
        Execute one reconciliation pass.

        Fatal errors (authentication, unreadable manifest or config) propagate;
        everything else is collected into the returned summary.
        """
        self._transition(EngineState.FETCHING)
        remote_sync = self._remote_sync(opts.do_rclone)
        issues: list[Issue] = []
        n_creds = 0

        if opts.purge:
            state = read_state(self.config, remote_sync, with_ssh=opts.do_ssh)
            self._transition(EngineState.PLANNING)
            plan = plan_purge(state, do_ssh=opts.do_ssh, do_rclone=remote_sync is not None)
        else:
            self.store.ensure_authenticated()
            vaults = opts.vaults or self.config.default_vaults
            items = opts.items or self.config.default_items
            inventory = fetch_inventory(self.store, vaults)
            issues.extend(inventory.issues)

            self._transition(EngineState.NORMALIZING)
            normalized = normalize(inventory.items, items, self.hostname)
            issues.extend(normalized.issues)
            self._creds = {c.identity: c for c in normalized.credentials}
            n_creds = len(normalized.credentials)

            state = read_state(self.config, remote_sync, with_ssh=opts.do_ssh)
            self._transition(EngineState.PLANNING)
            scope = Scope(
                vault_patterns=list(vaults),
                item_patterns=list(items),
                present=normalized.present,
                failed_vaults=inventory.failed_vaults,
            )
            planner = ChangePlanner(
                state,
                scope,
                sync_public_key=self.config.sync_public_key,
                full=opts.full,
                do_ssh=opts.do_ssh,
                do_rclone=remote_sync is not None,
            )
            plan = planner.plan(normalized.credentials)
        issues.extend(state.issues)
        issues.extend(plan.issues)

        summary = RunSummary(
            plan=plan, issues=issues, dry_run=opts.dry_run, purge=opts.purge, credentials=n_creds
        )
        if opts.dry_run:
            self._transition(EngineState.DRY_RUN_REPORT)
            self._log_event("dry_run", actions=plan.counts(), purge=opts.purge)
        else:
            self._transition(EngineState.APPLYING)
            self._apply(plan, state, remote_sync, summary, opts)

        self._transition(EngineState.REPORTING)
        for issue in summary.issues:
            self._log_event("issue", kind=issue.kind, target=issue.target, message=issue.message)
        self._transition(EngineState.DONE)
        return summary

    def _apply(self, plan: Plan, state, remote_sync, summary: RunSummary, opts: RunOptions) -> None:
        keys = KeyMaterializer(state.output_dir, self.keytool, self.store)
        for action in plan.of("key"):
            summary.outcomes.append(keys.apply(action))
        if opts.do_ssh:
            renderer = SshConfigRenderer(state.ssh_config_path)
            summary.outcomes.extend(renderer.apply(state.ssh_config, plan.of("config")))
        if remote_sync is not None and state.remotes is not None:
            summary.outcomes.extend(remote_sync.apply(plan.of("remote")))
            summary.issues.extend(remote_sync.issues)

        for outcome in summary.outcomes:
            if outcome.issue is not None:
                summary.issues.append(outcome.issue)
            if outcome.action.kind is not ActionKind.SKIP_KEY:
                self._log_event(
                    "action",
                    kind=outcome.action.kind.value,
                    target=outcome.action.target,
                    identity=outcome.action.identity,
                    status=outcome.status,
                )

        manifest = state.manifest
        before = manifest.model_dump(exclude={"updated_at"})
        for outcome in summary.outcomes:
            self._record(manifest, outcome)
        if manifest.model_dump(exclude={"updated_at"}) == before and manifest_path(state.output_dir).exists():
            return
        try:
            save_manifest(manifest_path(state.output_dir), manifest)
        except OSError as e:
            summary.issues.append(ExecutionFailure(str(manifest_path(state.output_dir)), str(e)))

    # ---- Manifest bookkeeping ----------------------------------------------
    def _entry_for(self, manifest: Manifest, ident: str) -> ManifestEntry:
        entry = manifest.entries.get(ident)
        if entry is None:
            cred = self._creds[ident]
            entry = manifest.entries[ident] = ManifestEntry(vault=cred.vault, title=cred.title)
        return entry

    def _record(self, manifest: Manifest, outcome: Outcome) -> None:
        action = outcome.action
        kind = action.kind
        ok = outcome.status == "ok"
        integrity_skip = isinstance(outcome.issue, IntegrityViolation)

        if kind in (ActionKind.CREATE_KEY, ActionKind.UPDATE_KEY) and outcome.status in ("ok", "partial"):
            self._claim_key(manifest, action.identity, action.target, outcome.content_hash, ok)
        elif kind is ActionKind.SKIP_KEY and action.reason in ("unchanged", "adopted"):
            digest = compute_digest(normalize_private_key(action.credential.private_key))
            self._claim_key(manifest, action.identity, action.target, digest, True)
        elif kind is ActionKind.REMOVE_KEY and (ok or integrity_skip):
            _strip_key(manifest, action.target)
        elif kind is ActionKind.UPSERT_CONFIG_ENTRY and ok:
            _strip_alias(manifest, action.target)
            self._entry_for(manifest, action.identity).host_aliases.append(action.target)
        elif kind is ActionKind.REMOVE_CONFIG_ENTRY and ok:
            _strip_alias(manifest, action.target)
        elif kind is ActionKind.UPSERT_REMOTE and ok:
            _strip_remote(manifest, action.target)
            entry = self._entry_for(manifest, action.identity)
            if action.remote.kind == "primary":
                entry.remote_primary = action.target
            else:
                entry.remote_aliases.append(action.target)
        elif kind is ActionKind.REMOVE_REMOTE and (ok or integrity_skip):
            _strip_remote(manifest, action.target)

    def _claim_key(
        self, manifest: Manifest, ident: str, path: str, digest: str | None, has_public_key: bool
    ) -> None:
        _strip_key(manifest, path)
        entry = self._entry_for(manifest, ident)
        entry.key_path = path
        entry.content_hash = digest
        entry.has_public_key = has_public_key

    # ---- Status --------------------------------------------------------------
    def collect_status(self) -> StatusReport:
        output_dir = self.config.expanded_ssh_output_dir()
        manifest = load_manifest(manifest_path(output_dir))
        report = StatusReport(
            output_dir=output_dir,
            ssh_config_path=self.config.ssh_config_file(),
            tracked_items=len(manifest.entries),
        )
        report.keys = sum(
            1 for e in manifest.entries.values() if e.key_path and Path(e.key_path).is_file()
        )
        report.hosts = len(sshconfig.load(report.ssh_config_path).entries)
        remote_sync = self._remote_sync(True)
        if remote_sync is not None:
            try:
                report.remotes = len(remote_sync.open().managed_names())
            except ExecutionFailure as e:
                report.issues.append(e)
            report.rclone_config_path = remote_sync.path
        return report
