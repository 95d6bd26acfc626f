"""Key materializer: private/public key files under the output directory."""

from __future__ import annotations

import logging
from pathlib import Path

from unpack_core.digest import compute_digest, normalize_private_key
from unpack_core.errors import ExecutionFailure, IntegrityViolation, UnpackError
from unpack_core.fsio import (
    PRIVATE_FILE_MODE,
    PUBLIC_FILE_MODE,
    atomic_write_bytes,
    ensure_private_dir,
)
from unpack_core.models import Credential, FieldName, ManagedKeyFile

from unpack_sync.actions import Action, ActionKind, Outcome
from unpack_sync.backends import KeyTool, SecretStore

logger = logging.getLogger(__name__)


def _slug(name: str) -> str:
    return name.replace("/", "-").replace("\\", "-").strip() or "_"


def key_path(output_dir: Path, cred: Credential) -> Path:
    """<output>/<vault>/<display name>"""
    return output_dir / _slug(cred.vault) / _slug(cred.display_name)


def public_key_path(path: Path) -> Path:
    return path.with_name(path.name + ".pub")


def read_key_file(path: Path) -> ManagedKeyFile | None:
    if not path.is_file():
        return None
    data = path.read_bytes()
    pub = public_key_path(path)
    public_key = pub.read_text(encoding="utf-8") if pub.is_file() else None
    return ManagedKeyFile(
        path=path,
        content_hash=compute_digest(normalize_private_key(data)),
        has_public_key=public_key is not None,
        public_key=public_key,
    )


class KeyMaterializer:
    def __init__(self, output_dir: Path, keytool: KeyTool, store: SecretStore | None = None):
        self.output_dir = output_dir
        self.keytool = keytool
        self.store = store

    def apply(self, action: Action) -> Outcome:
        if action.kind in (ActionKind.CREATE_KEY, ActionKind.UPDATE_KEY):
            return self._write(action)
        if action.kind is ActionKind.REMOVE_KEY:
            return self._remove(action)
        if action.kind is ActionKind.SYNC_PUBLIC_KEY_BACK:
            return self._sync_back(action)
        return Outcome(action, "skipped", action.reason)

    def _write(self, action: Action) -> Outcome:
        cred = action.credential
        path = action.path
        data = normalize_private_key(cred.private_key)
        digest = compute_digest(data)
        try:
            ensure_private_dir(self.output_dir)
            ensure_private_dir(path.parent)
            atomic_write_bytes(path, data, mode=PRIVATE_FILE_MODE)
        except OSError as e:
            return Outcome(action, "failed", str(e), ExecutionFailure(str(path), str(e)))

        pub_path = public_key_path(path)
        try:
            public_key = self.keytool.derive_public_key(data)
            atomic_write_bytes(pub_path, public_key, mode=PUBLIC_FILE_MODE)
        except (UnpackError, OSError) as e:
            # Keep the private key; drop a stale .pub from an older key.
            pub_path.unlink(missing_ok=True)
            logger.warning(f"Public key for {action.identity} not written: {e}")
            issue = ExecutionFailure(str(path), f"public key derivation failed: {e}")
            return Outcome(action, "partial", "public key missing", issue, content_hash=digest)
        logger.info(f"Wrote key {path}")
        return Outcome(action, "ok", content_hash=digest)

    def _remove(self, action: Action) -> Outcome:
        path = action.path
        current = read_key_file(path)
        if current is not None and action.expected_hash and current.content_hash != action.expected_hash:
            issue = IntegrityViolation(str(path), "key file changed since it was written; not deleted")
            return Outcome(action, "skipped", issue.message, issue)
        try:
            path.unlink(missing_ok=True)
            public_key_path(path).unlink(missing_ok=True)
            self._prune(path.parent)
        except OSError as e:
            return Outcome(action, "failed", str(e), ExecutionFailure(str(path), str(e)))
        logger.info(f"Removed key {path}")
        return Outcome(action, "ok", "" if current is not None else "already absent")

    def _prune(self, directory: Path) -> None:
        """Remove empty directories up to (not including) the output dir."""
        root = self.output_dir.resolve()
        d = directory.resolve()
        while d != root and root in d.parents:
            if d.is_dir():
                if any(d.iterdir()):
                    return
                d.rmdir()
            d = d.parent

    def _sync_back(self, action: Action) -> Outcome:
        cred = action.credential
        pub_path = public_key_path(action.path)
        if not pub_path.is_file():
            return Outcome(action, "skipped", "no local public key")
        if self.store is None:
            return Outcome(action, "skipped", "no secret store")
        value = pub_path.read_text(encoding="utf-8").strip()
        try:
            self.store.set_field(cred.vault, cred.title, FieldName.PUBLIC_KEY, value)
        except UnpackError as e:
            return Outcome(action, "failed", str(e), ExecutionFailure(cred.identity, str(e)))
        logger.info(f"Synced public key back to {cred.identity}")
        return Outcome(action, "ok")
