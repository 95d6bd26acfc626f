"""Proton Pass access through `pass-cli`."""

from __future__ import annotations

import json
import logging
import shutil
import subprocess
import sys
import tempfile
from pathlib import Path

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from unpack_core.errors import AuthenticationError, SecretStoreError, ToolNotFoundError
from unpack_core.models import FieldName, RawItem

logger = logging.getLogger(__name__)

TELEPORT_SECTION = "Teleport Rclone Config"
TRASH_VAULT = "Trash"


# ---- JSON shapes returned by pass-cli ---------------------------------------
class _Vault(BaseModel):
    name: str


class _VaultList(BaseModel):
    vaults: list[_Vault] = Field(default_factory=list)


class _FieldContent(BaseModel):
    text: str | None = Field(default=None, alias="Text")


class _NamedField(BaseModel):
    name: str
    content: _FieldContent = Field(default_factory=_FieldContent)


class _SshKeyData(BaseModel):
    private_key: str | None = None
    public_key: str | None = None


class _CustomSection(BaseModel):
    section_name: str
    section_fields: list[_NamedField] = Field(default_factory=list)


class _CustomData(BaseModel):
    sections: list[_CustomSection] = Field(default_factory=list)


class _ItemData(BaseModel):
    ssh_key: _SshKeyData | None = Field(default=None, alias="SshKey")
    custom: _CustomData | None = Field(default=None, alias="Custom")


class _ItemContent(BaseModel):
    title: str
    content: _ItemData = Field(default_factory=_ItemData)
    extra_fields: list[_NamedField] = Field(default_factory=list)


class _Item(BaseModel):
    content: _ItemContent


class _ItemList(BaseModel):
    items: list[_Item] = Field(default_factory=list)


def _collect_fields(fields: list[_NamedField]) -> dict[FieldName, str]:
    known = {f.value: f for f in FieldName}
    out: dict[FieldName, str] = {}
    for f in fields:
        name = known.get(f.name)
        if name is not None and f.content.text:
            out.setdefault(name, f.content.text)
    return out


def ssh_item_from_json(vault: str, item: _Item) -> RawItem:
    content = item.content
    fields = _collect_fields(content.extra_fields)
    key = content.content.ssh_key
    if key is not None:
        if key.private_key:
            fields[FieldName.PRIVATE_KEY] = key.private_key
        if key.public_key:
            fields[FieldName.PUBLIC_KEY] = key.public_key
    return RawItem(vault=vault, title=content.title, kind="ssh_key", fields=fields)


def teleport_item_from_json(vault: str, item: _Item) -> RawItem | None:
    custom = item.content.content.custom
    if custom is None:
        return None
    section = next((s for s in custom.sections if s.section_name == TELEPORT_SECTION), None)
    if section is None:
        return None
    fields = _collect_fields(section.section_fields)
    fields = {k: v for k, v in fields.items() if k in (FieldName.SSH, FieldName.SERVER_COMMAND)}
    if not fields:
        return None
    return RawItem(vault=vault, title=item.content.title, kind="teleport", fields=fields)


class ProtonPassCli:
    """SecretStore backed by the Proton Pass CLI."""

    def __init__(self, executable: str = "pass-cli", *, interactive_login: bool | None = None):
        self.executable = executable
        self.interactive_login = sys.stdin.isatty() if interactive_login is None else interactive_login

    def _run(self, args: list[str]) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(
                [self.executable, *args], capture_output=True, text=True, timeout=120
            )
        except FileNotFoundError as e:
            raise ToolNotFoundError(f"{self.executable} not found. Install Proton Pass CLI first.") from e
        except subprocess.TimeoutExpired as e:
            raise SecretStoreError(f"{self.executable} {args[0]} timed out") from e

    def _run_json(self, args: list[str], what: str) -> dict | None:
        proc = self._run(args)
        # pass-cli exits non-zero (or prints nothing) for empty vaults
        if proc.returncode != 0 or not proc.stdout.strip():
            return None
        try:
            return json.loads(proc.stdout)
        except ValueError as e:
            raise SecretStoreError(f"Failed to parse {what} response: {e}") from e

    def ensure_authenticated(self) -> None:
        if shutil.which(self.executable) is None:
            raise ToolNotFoundError(f"{self.executable} not found. Install Proton Pass CLI first.")
        if self._run(["info"]).returncode == 0:
            return
        if not self.interactive_login:
            raise AuthenticationError(f"Not logged into Proton Pass. Run '{self.executable} login'.")
        logger.warning("Not logged into Proton Pass; launching login")
        status = subprocess.run([self.executable, "login"])
        if status.returncode != 0:
            raise AuthenticationError(
                f"Failed to login to Proton Pass. Please run '{self.executable} login' manually."
            )

    def list_vaults(self) -> list[str]:
        proc = self._run(["vault", "list", "--output", "json"])
        if proc.returncode != 0:
            raise SecretStoreError(f"pass-cli vault list failed: {proc.stderr.strip()}")
        try:
            response = _VaultList.model_validate_json(proc.stdout)
        except PydanticValidationError as e:
            raise SecretStoreError(f"Failed to parse vault list response: {e}") from e
        return [v.name for v in response.vaults if v.name != TRASH_VAULT]

    def _list(self, vault: str, item_type: str | None) -> list[_Item]:
        args = ["item", "list", vault]
        if item_type:
            args += ["--filter-type", item_type]
        args += ["--filter-state", "active", "--output", "json"]
        data = self._run_json(args, "item list")
        if data is None:
            return []
        try:
            return _ItemList.model_validate(data).items
        except PydanticValidationError as e:
            raise SecretStoreError(f"Failed to parse item list for vault '{vault}': {e}") from e

    def list_items(self, vault: str) -> list[RawItem]:
        items = [ssh_item_from_json(vault, i) for i in self._list(vault, "ssh-key")]
        for raw in self._list(vault, "custom"):
            item = teleport_item_from_json(vault, raw)
            if item is not None:
                items.append(item)
        return items

    def list_item_titles(self, vault: str) -> list[str]:
        return [i.content.title for i in self._list(vault, None)]

    def read_secret(self, uri: str) -> str:
        proc = self._run(["item", "view", uri])
        if proc.returncode != 0:
            raise SecretStoreError(f"Failed to get value from '{uri}': {proc.stderr.strip()}")
        return proc.stdout.strip()

    def set_field(self, vault: str, title: str, field: FieldName, value: str) -> None:
        proc = self._run(
            [
                "item",
                "update",
                "--vault-name",
                vault,
                "--item-title",
                title,
                "--field",
                f"{field.value}={value}",
            ]
        )
        if proc.returncode != 0:
            raise SecretStoreError(f"Failed to update field '{field.value}': {proc.stderr.strip()}")

    def create_vault(self, name: str) -> None:
        proc = self._run(["vault", "create", "--name", name])
        if proc.returncode != 0:
            raise SecretStoreError(f"Failed to create vault '{name}': {proc.stderr.strip()}")

    def create_teleport_item(self, vault: str, title: str, ssh_command: str, server_command: str) -> None:
        template = {
            "title": title,
            "note": "",
            "sections": [
                {
                    "section_name": TELEPORT_SECTION,
                    "fields": [
                        {"field_name": "SSH", "field_type": "text", "value": ssh_command},
                        {"field_name": "Server Command", "field_type": "text", "value": server_command},
                    ],
                }
            ],
        }
        with tempfile.TemporaryDirectory(prefix="pass-ssh-unpack-") as tmp:
            template_path = Path(tmp) / "item.json"
            template_path.write_text(json.dumps(template), encoding="utf-8")
            proc = self._run(
                [
                    "item",
                    "create",
                    "custom",
                    "--vault-name",
                    vault,
                    "--from-template",
                    str(template_path),
                ]
            )
        if proc.returncode != 0:
            raise SecretStoreError(f"Failed to create item '{title}': {proc.stderr.strip()}")
