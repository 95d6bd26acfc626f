"""Core data models for pass-ssh-unpack."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

MANAGED_MARKER = "managed by pass-ssh-unpack"


class SyncPublicKey(str, Enum):
    """When to write derived public keys back to the secret store."""

    NEVER = "never"
    IF_EMPTY = "if_empty"
    ALWAYS = "always"


class RcloneSettings(BaseModel):
    """The `rclone:` section of config.yaml."""

    model_config = ConfigDict(extra="ignore")

    enabled: bool = Field(default=True, description="Sync rclone SFTP remotes")
    password_path: str = Field(
        default="", description="Secret-store URI holding the rclone config password"
    )
    always_encrypt: bool = Field(
        default=False, description="Encrypt rclone.conf after writing when a password is known"
    )
    config_path: str | None = Field(
        default=None, description="Override for rclone.conf (default: ask rclone)"
    )


class UnpackConfig(BaseModel):
    """User configuration (config.yaml)."""

    model_config = ConfigDict(extra="ignore")

    ssh_output_dir: str = Field(default="~/.ssh/proton-pass")
    ssh_config_path: str | None = Field(
        default=None, description="File holding the managed Host block (default: <output>/config)"
    )
    default_vaults: list[str] = Field(default_factory=list)
    default_items: list[str] = Field(default_factory=list)
    sync_public_key: SyncPublicKey = SyncPublicKey.IF_EMPTY
    rclone: RcloneSettings = Field(default_factory=RcloneSettings)

    def expanded_ssh_output_dir(self) -> Path:
        return Path(self.ssh_output_dir).expanduser()

    def ssh_config_file(self) -> Path:
        if self.ssh_config_path:
            return Path(self.ssh_config_path).expanduser()
        return self.expanded_ssh_output_dir() / "config"


class ManifestEntry(BaseModel):
    """What a previous run produced for one secret-store item."""

    vault: str
    title: str
    key_path: str | None = None
    content_hash: str | None = None
    has_public_key: bool = False
    host_aliases: list[str] = Field(default_factory=list)
    remote_primary: str | None = None
    remote_aliases: list[str] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return (
            self.key_path is None
            and not self.host_aliases
            and self.remote_primary is None
            and not self.remote_aliases
        )

    def remote_names(self) -> list[str]:
        names = [self.remote_primary] if self.remote_primary else []
        return names + [a for a in self.remote_aliases if a not in names]


class Manifest(BaseModel):
    """Ownership ledger persisted next to the generated keys."""

    version: int = Field(default=1)
    updated_at: str = Field(default="", description="Last update timestamp")
    entries: dict[str, ManifestEntry] = Field(
        default_factory=dict, description="vault/title -> produced artifacts"
    )

    def alias_owners(self) -> dict[str, str]:
        return {a: ident for ident, e in self.entries.items() for a in e.host_aliases}

    def remote_owners(self) -> dict[str, str]:
        return {n: ident for ident, e in self.entries.items() for n in e.remote_names()}


class FieldName(str, Enum):
    """Secret-store fields this tool understands. Anything else is ignored."""

    TITLE = "Title"
    PRIVATE_KEY = "Private Key"
    PUBLIC_KEY = "Public Key"
    HOST = "Host"
    USERNAME = "Username"
    ALIASES = "Aliases"
    JUMP = "Jump"
    SSH = "SSH"
    SERVER_COMMAND = "Server Command"


ItemKind = Literal["ssh_key", "teleport"]


def make_identity(vault: str, title: str) -> str:
    return f"{vault}/{title}"


@dataclass
class RawItem:
    """One item as returned by the secret store."""

    vault: str
    title: str
    kind: ItemKind = "ssh_key"
    fields: dict[FieldName, str] = field(default_factory=dict, repr=False)

    @property
    def identity(self) -> str:
        return make_identity(self.vault, self.title)

    def get(self, name: FieldName) -> str | None:
        if name is FieldName.TITLE:
            return self.title
        value = self.fields.get(name)
        if value is None:
            return None
        if name is FieldName.PRIVATE_KEY:
            return value if value.strip() else None
        return value.strip() or None


@dataclass
class Credential:
    """A validated item ready for extraction."""

    vault: str
    title: str
    display_name: str
    host: str
    kind: ItemKind = "ssh_key"
    private_key: bytes | None = field(default=None, repr=False)
    public_key: str | None = field(default=None, repr=False)
    username: str | None = None
    aliases: tuple[str, ...] = ()
    jump_host: str | None = None
    custom_ssh_command: str | None = None
    server_command: str | None = None
    machine_filter: str | None = None

    @property
    def identity(self) -> str:
        return make_identity(self.vault, self.title)

    @property
    def has_key(self) -> bool:
        return self.private_key is not None

    @property
    def host_aliases(self) -> list[str]:
        """Host aliases for the SSH config (display name when no alias is set)."""
        return list(self.aliases) or [self.display_name]

    @property
    def remote_name(self) -> str:
        return self.aliases[0] if self.aliases else self.display_name

    @property
    def remote_alias_names(self) -> list[str]:
        primary = self.remote_name
        return [a for a in self.aliases[1:] if a != primary]


@dataclass
class ManagedKeyFile:
    """A private key file currently on disk."""

    path: Path
    content_hash: str
    has_public_key: bool
    public_key: str | None = field(default=None, repr=False)


@dataclass
class ConfigEntry:
    """One Host stanza in the managed SSH config block."""

    host_alias: str
    hostname: str
    identity_file: str
    username: str | None = None
    proxy_jump: str | None = None
    identity: str | None = field(default=None, compare=False)


@dataclass
class RemoteSpec:
    """One rclone remote: a Primary sftp definition or an AliasOf pointer."""

    name: str
    kind: Literal["primary", "alias"]
    identity: str | None = None
    target: str | None = None
    host: str | None = None
    user: str | None = None
    key_file: str | None = None
    ssh: str | None = None
    server_command: str | None = None

    def fields(self) -> dict[str, str]:
        """Section body in the order rclone writes it."""
        if self.kind == "alias":
            return {"type": "alias", "remote": f"{self.target}:", "description": MANAGED_MARKER}
        out = {"type": "sftp"}
        for key in ("host", "user", "key_file", "ssh", "server_command"):
            value = getattr(self, key)
            if value:
                out[key] = value
            elif key == "key_file":
                out["ask_password"] = "true"
        out["description"] = MANAGED_MARKER
        return out
