"""rclone remote synchronizer: decrypt, edit sections, write, re-encrypt."""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path

from unpack_core.errors import ExecutionFailure, Issue, IntegrityViolation, UnpackError
from unpack_core.fsio import atomic_write_text
from unpack_core.models import RcloneSettings

from unpack_sync.actions import Action, ActionKind, Outcome
from unpack_sync.backends import RcloneTool, SecretStore
from unpack_sync.rcloneconf import RcloneDocument, is_encrypted

logger = logging.getLogger(__name__)

PASSWORD_ENV = "RCLONE_CONFIG_PASS"


class RemoteSynchronizer:
    """Owns one rclone.conf for the duration of a run."""

    def __init__(
        self,
        settings: RcloneSettings,
        tool: RcloneTool,
        store: SecretStore | None = None,
        environ: Mapping[str, str] | None = None,
    ):
        self.settings = settings
        self.tool = tool
        self.store = store
        self.environ = os.environ if environ is None else environ
        self.path: Path | None = None
        self.encrypted = False
        self.document: RcloneDocument | None = None
        self.issues: list[Issue] = []
        self._password: str | None = None
        self._password_loaded = False

    def resolve_path(self) -> Path:
        if self.settings.config_path:
            return Path(self.settings.config_path).expanduser()
        return self.tool.config_path()

    def password(self) -> str | None:
        """Config password; the secret-store path wins over the environment."""
        if self._password_loaded:
            return self._password
        self._password_loaded = True
        if self.settings.password_path:
            if self.store is None:
                raise ExecutionFailure("rclone", "password_path set but no secret store available")
            try:
                self._password = self.store.read_secret(self.settings.password_path) or None
            except UnpackError as e:
                raise ExecutionFailure("rclone", f"could not read password from store: {e}") from e
        else:
            self._password = self.environ.get(PASSWORD_ENV) or None
        return self._password

    def open(self) -> RcloneDocument:
        """Read (and decrypt if needed) the config. Raises ExecutionFailure."""
        self.path = self.resolve_path()
        target = str(self.path)
        if not self.path.exists():
            self.document = RcloneDocument()
            return self.document
        try:
            text = self.path.read_text(encoding="utf-8")
        except OSError as e:
            raise ExecutionFailure(target, f"cannot read rclone config: {e}") from e
        if is_encrypted(text):
            self.encrypted = True
            password = self.password()
            if not password:
                raise ExecutionFailure(
                    target,
                    f"config is encrypted; set rclone.password_path or {PASSWORD_ENV}",
                )
            try:
                text = self.tool.decrypt(self.path, password)
            except UnpackError as e:
                raise ExecutionFailure(target, str(e)) from e
            logger.info(f"Decrypted rclone config {self.path}")
        self.document = RcloneDocument.parse(text)
        return self.document

    def apply(self, actions: list[Action]) -> list[Outcome]:
        if not actions:
            return []
        doc = self.document if self.document is not None else self.open()
        outcomes: list[Outcome] = []
        changed = False
        for action in actions:
            if action.kind is ActionKind.UPSERT_REMOTE and action.remote is not None:
                doc.upsert(action.remote)
                changed = True
                outcomes.append(Outcome(action, "ok"))
                continue
            if action.kind is not ActionKind.REMOVE_REMOTE:
                continue
            section = doc.get(action.target)
            if section is None:
                outcomes.append(Outcome(action, "ok", "already absent"))
            elif not section.managed:
                issue = IntegrityViolation(action.target, "section lost its managed marker; left in place")
                outcomes.append(Outcome(action, "skipped", issue.message, issue))
            else:
                doc.remove(action.target)
                changed = True
                outcomes.append(Outcome(action, "ok"))

        if not changed:
            return outcomes
        try:
            atomic_write_text(self.path, doc.render())
        except OSError as e:
            logger.error(f"Failed to write {self.path}: {e}")
            return [
                Outcome(o.action, "failed", str(e), ExecutionFailure(o.action.target, str(e)))
                if o.status == "ok"
                else o
                for o in outcomes
            ]
        logger.info(f"Wrote rclone config {self.path}")
        if self.encrypted or self.settings.always_encrypt:
            self._encrypt()
        return outcomes

    def _encrypt(self) -> None:
        target = str(self.path)
        try:
            password = self.password()
        except ExecutionFailure as e:
            self.issues.append(e)
            return
        if not password:
            self.issues.append(
                ExecutionFailure(target, "no password available; rclone config left unencrypted")
            )
            return
        try:
            self.tool.encrypt(self.path, password)
        except UnpackError as e:
            self.issues.append(ExecutionFailure(target, f"re-encryption failed: {e}"))
            return
        logger.info(f"Encrypted rclone config {self.path}")
