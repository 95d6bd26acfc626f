"""Interfaces to the external tools, plus CLI-backed implementations.

The engine only talks to these protocols; tests substitute in-memory fakes.
"""

from __future__ import annotations

from pathlib import Path
from typing import Protocol

from unpack_core.models import FieldName, RawItem


class SecretStore(Protocol):
    def ensure_authenticated(self) -> None: ...

    def list_vaults(self) -> list[str]: ...

    def list_items(self, vault: str) -> list[RawItem]: ...

    def read_secret(self, uri: str) -> str: ...

    def set_field(self, vault: str, title: str, field: FieldName, value: str) -> None: ...


class KeyTool(Protocol):
    def derive_public_key(self, private_key: bytes) -> bytes: ...


class RcloneTool(Protocol):
    def config_path(self) -> Path: ...

    def decrypt(self, path: Path, password: str) -> str: ...

    def encrypt(self, path: Path, password: str) -> None: ...


__all__ = ["SecretStore", "KeyTool", "RcloneTool"]
