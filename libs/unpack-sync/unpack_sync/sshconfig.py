"""SSH client config: the managed Host block and its writer."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

from unpack_core.errors import ExecutionFailure
from unpack_core.fsio import atomic_write_text
from unpack_core.models import ConfigEntry

from unpack_sync.actions import Action, ActionKind, Outcome

logger = logging.getLogger(__name__)

BEGIN_MARKER = "# BEGIN pass-ssh-unpack managed hosts"
END_MARKER = "# END pass-ssh-unpack managed hosts"
# Written instead of BEGIN_MARKER when the preceding text lacked a final newline.
JOINED_BEGIN_MARKER = f"{BEGIN_MARKER} (newline added above)"

_OPTION = re.compile(r"^\s*(\S+?)\s*(?:=\s*|\s+)(.*?)\s*$")


@dataclass
class SshConfigFile:
    """A config file split around the managed block."""

    before: str = ""
    entries: dict[str, ConfigEntry] = field(default_factory=dict)
    after: str = ""
    has_block: bool = False


def _parse_block(lines: list[str]) -> dict[str, ConfigEntry]:
    entries: dict[str, ConfigEntry] = {}
    current: ConfigEntry | None = None
    for line in lines:
        if not line.strip() or line.lstrip().startswith("#"):
            continue
        m = _OPTION.match(line)
        if not m:
            continue
        key, value = m.group(1).lower(), m.group(2)
        if key == "host":
            current = ConfigEntry(host_alias=value.split()[0], hostname="", identity_file="")
            entries[current.host_alias] = current
        elif current is None:
            continue
        elif key == "hostname":
            current.hostname = value
        elif key == "user":
            current.username = value
        elif key == "identityfile":
            current.identity_file = value
        elif key == "proxyjump":
            current.proxy_jump = value
    return entries


def parse(text: str) -> SshConfigFile:
    lines = text.splitlines(keepends=True)
    begin = next((i for i, ln in enumerate(lines) if ln.strip() in (BEGIN_MARKER, JOINED_BEGIN_MARKER)), None)
    if begin is None:
        return SshConfigFile(before=text)
    before = "".join(lines[:begin])
    if lines[begin].strip() == JOINED_BEGIN_MARKER and before.endswith("\n"):
        before = before[:-1]
    end = next((i for i in range(begin + 1, len(lines)) if lines[i].strip() == END_MARKER), None)
    if end is None:
        # Unterminated block runs to end of file.
        end = len(lines)
    return SshConfigFile(
        before=before,
        entries=_parse_block(lines[begin + 1 : end]),
        after="".join(lines[end + 1 :]),
        has_block=True,
    )


def load(path: Path) -> SshConfigFile:
    if not path.exists():
        return SshConfigFile()
    return parse(path.read_text(encoding="utf-8"))


def render_entry(entry: ConfigEntry) -> str:
    out = [f"Host {entry.host_alias}", f"    HostName {entry.hostname}"]
    if entry.username:
        out.append(f"    User {entry.username}")
    out.append(f"    IdentityFile {entry.identity_file}")
    if entry.proxy_jump:
        out.append(f"    ProxyJump {entry.proxy_jump}")
    return "\n".join(out) + "\n"


def render_block(entries: dict[str, ConfigEntry], *, joined: bool = False) -> str:
    if not entries:
        return ""
    body = "\n".join(render_entry(entries[a]) for a in sorted(entries))
    begin = JOINED_BEGIN_MARKER if joined else BEGIN_MARKER
    return f"{begin}\n{body}{END_MARKER}\n"


def splice(doc: SshConfigFile, entries: dict[str, ConfigEntry]) -> str:
    """Rebuild the file text with `entries` as the managed block."""
    if not entries:
        return doc.before + doc.after
    if doc.before and not doc.before.endswith("\n"):
        return doc.before + "\n" + render_block(entries, joined=True) + doc.after
    return doc.before + render_block(entries) + doc.after


class SshConfigRenderer:
    """Applies Upsert/RemoveConfigEntry actions by regenerating the block."""

    def __init__(self, path: Path):
        self.path = path

    def apply(self, doc: SshConfigFile, actions: list[Action]) -> list[Outcome]:
        if not actions:
            return []
        entries = dict(doc.entries)
        outcomes: list[Outcome] = []
        for action in actions:
            if action.kind is ActionKind.UPSERT_CONFIG_ENTRY and action.entry is not None:
                entries[action.target] = action.entry
                outcomes.append(Outcome(action, "ok"))
            elif action.kind is ActionKind.REMOVE_CONFIG_ENTRY:
                present = entries.pop(action.target, None) is not None
                outcomes.append(Outcome(action, "ok", "" if present else "already absent"))
        text = splice(doc, entries)
        current = self.path.read_text(encoding="utf-8") if self.path.exists() else None
        if text == (current or ""):
            return outcomes
        try:
            atomic_write_text(self.path, text)
        except OSError as e:
            logger.error(f"Failed to write {self.path}: {e}")
            return [
                Outcome(o.action, "failed", str(e), ExecutionFailure(o.action.target, str(e)))
                for o in outcomes
            ]
        logger.info(f"Wrote {len(entries)} managed hosts to {self.path}")
        doc.entries = entries
        return outcomes
