"""rclone.conf as a list of sections that keep their original lines.

Only sections we upsert or remove are re-rendered; everything else is
written back exactly as it was read.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from unpack_core.models import MANAGED_MARKER, RemoteSpec

ENCRYPTION_PREFIX = "RCLONE_ENCRYPT_"

_HEADER = re.compile(r"^\s*\[([^\]]+)\]\s*$")
_FIELD = re.compile(r"^\s*([^=#;\s][^=]*?)\s*=\s*(.*?)\s*$")


def is_encrypted(text: str) -> bool:
    return any(line.startswith(ENCRYPTION_PREFIX) for line in text.splitlines())


@dataclass
class Section:
    name: str
    lines: list[str] = field(default_factory=list)
    fields: dict[str, str] = field(default_factory=dict)

    @property
    def managed(self) -> bool:
        return self.fields.get("description") == MANAGED_MARKER

    def trailing_blank(self) -> list[str]:
        out: list[str] = []
        for line in reversed(self.lines[1:]):
            if line.strip():
                break
            out.append(line)
        return out


def render_section(spec: RemoteSpec) -> list[str]:
    return [f"[{spec.name}]\n"] + [f"{k} = {v}\n" for k, v in spec.fields().items()]


class RcloneDocument:
    """Parsed rclone configuration."""

    def __init__(self, preamble: list[str] | None = None, sections: list[Section] | None = None):
        self.preamble = preamble or []
        self.sections = sections or []

    @classmethod
    def parse(cls, text: str) -> RcloneDocument:
        doc = cls()
        current: Section | None = None
        for line in text.splitlines(keepends=True):
            m = _HEADER.match(line)
            if m:
                current = Section(name=m.group(1).strip(), lines=[line])
                doc.sections.append(current)
                continue
            if current is None:
                doc.preamble.append(line)
                continue
            current.lines.append(line)
            fm = _FIELD.match(line)
            if fm:
                current.fields.setdefault(fm.group(1), fm.group(2))
        return doc

    def render(self) -> str:
        return "".join(self.preamble) + "".join("".join(s.lines) for s in self.sections)

    def get(self, name: str) -> Section | None:
        return next((s for s in self.sections if s.name == name), None)

    def names(self) -> list[str]:
        return [s.name for s in self.sections]

    def managed_names(self) -> list[str]:
        return [s.name for s in self.sections if s.managed]

    def upsert(self, spec: RemoteSpec) -> None:
        lines = render_section(spec)
        existing = self.get(spec.name)
        if existing is not None:
            existing.lines = lines + (existing.trailing_blank() or ["\n"])
            existing.fields = spec.fields()
            return
        self._terminate_last()
        self.sections.append(Section(name=spec.name, lines=lines + ["\n"], fields=spec.fields()))

    def remove(self, name: str) -> bool:
        before = len(self.sections)
        self.sections = [s for s in self.sections if s.name != name]
        return len(self.sections) != before

    def _terminate_last(self) -> None:
        # New sections start on a fresh line after a blank separator.
        lines = self.sections[-1].lines if self.sections else self.preamble
        if not lines:
            return
        if not lines[-1].endswith("\n"):
            lines[-1] += "\n"
        if lines[-1].strip():
            lines.append("\n")
