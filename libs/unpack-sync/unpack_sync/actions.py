"""Plan vocabulary shared by the planner, the executors and the engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Literal

from unpack_core.errors import Issue
from unpack_core.models import ConfigEntry, Credential, RemoteSpec


class ActionKind(Enum):
    """What to do with one managed artifact."""

    CREATE_KEY = "create_key"
    UPDATE_KEY = "update_key"
    SKIP_KEY = "skip_key"
    REMOVE_KEY = "remove_key"
    SYNC_PUBLIC_KEY_BACK = "sync_public_key_back"
    UPSERT_CONFIG_ENTRY = "upsert_config_entry"
    REMOVE_CONFIG_ENTRY = "remove_config_entry"
    UPSERT_REMOTE = "upsert_remote"
    REMOVE_REMOTE = "remove_remote"

    @property
    def resource(self) -> str:
        if self in _KEY_KINDS:
            return "key"
        if self in _CONFIG_KINDS:
            return "config"
        return "remote"

    @property
    def is_removal(self) -> bool:
        return self in (ActionKind.REMOVE_KEY, ActionKind.REMOVE_CONFIG_ENTRY, ActionKind.REMOVE_REMOTE)

    @property
    def is_write(self) -> bool:
        return self in (
            ActionKind.CREATE_KEY,
            ActionKind.UPDATE_KEY,
            ActionKind.UPSERT_CONFIG_ENTRY,
            ActionKind.UPSERT_REMOTE,
        )


_KEY_KINDS = {
    ActionKind.CREATE_KEY,
    ActionKind.UPDATE_KEY,
    ActionKind.SKIP_KEY,
    ActionKind.REMOVE_KEY,
    ActionKind.SYNC_PUBLIC_KEY_BACK,
}
_CONFIG_KINDS = {ActionKind.UPSERT_CONFIG_ENTRY, ActionKind.REMOVE_CONFIG_ENTRY}

RESOURCE_ORDER = ("key", "config", "remote")


@dataclass
class Action:
    """One planned change.

    `target` is the key path, Host alias or remote name the action touches;
    `identity` is the owning vault/title when known.
    """

    kind: ActionKind
    target: str
    identity: str | None = None
    reason: str = ""
    credential: Credential | None = field(default=None, repr=False)
    entry: ConfigEntry | None = None
    remote: RemoteSpec | None = None
    expected_hash: str | None = None

    @property
    def path(self) -> Path:
        return Path(self.target)


Status = Literal["ok", "partial", "skipped", "failed"]


@dataclass
class Outcome:
    """Result of executing one action."""

    action: Action
    status: Status
    detail: str = ""
    issue: Issue | None = None
    content_hash: str | None = None


class PlanError(RuntimeError):
    """The planner produced a self-contradictory plan."""


@dataclass
class Plan:
    actions: list[Action] = field(default_factory=list)
    issues: list[Issue] = field(default_factory=list)

    def of(self, resource: str) -> list[Action]:
        return [a for a in self.actions if a.kind.resource == resource]

    def counts(self) -> dict[str, int]:
        out: dict[str, int] = {}
        for a in self.actions:
            out[a.kind.value] = out.get(a.kind.value, 0) + 1
        return out

    @property
    def changes(self) -> list[Action]:
        return [a for a in self.actions if a.kind is not ActionKind.SKIP_KEY]

    def check_consistency(self) -> None:
        """No target may be both removed and written within one resource class."""
        for resource in RESOURCE_ORDER:
            removed = {a.target for a in self.of(resource) if a.kind.is_removal}
            written = {a.target for a in self.of(resource) if a.kind.is_write}
            both = removed & written
            if both:
                raise PlanError(f"{resource} targets both removed and written: {sorted(both)}")

    def sort(self) -> None:
        """Key, then config, then remote; removals first; public-key sync last in keys."""

        def rank(a: Action) -> tuple[int, int]:
            res = RESOURCE_ORDER.index(a.kind.resource)
            if a.kind.is_removal:
                return res, 0
            if a.kind is ActionKind.SYNC_PUBLIC_KEY_BACK:
                return res, 2
            return res, 1

        self.actions.sort(key=rank)
