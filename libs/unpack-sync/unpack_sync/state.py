"""Managed-state reader: manifest, key files, SSH block and rclone sections."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from unpack_core.errors import ConfigError, ExecutionFailure, Issue
from unpack_core.manifest import load_manifest, manifest_path
from unpack_core.models import ManagedKeyFile, Manifest, UnpackConfig

from unpack_sync import sshconfig
from unpack_sync.keys import read_key_file
from unpack_sync.rcloneconf import RcloneDocument
from unpack_sync.remotes import RemoteSynchronizer

logger = logging.getLogger(__name__)


@dataclass
class ManagedState:
    output_dir: Path
    manifest: Manifest
    ssh_config_path: Path
    ssh_config: sshconfig.SshConfigFile
    # None when rclone is disabled or its config could not be opened.
    remotes: RcloneDocument | None = None
    issues: list[Issue] = field(default_factory=list)
    _keys: dict[Path, ManagedKeyFile | None] = field(default_factory=dict, repr=False)

    def key_file(self, path: Path) -> ManagedKeyFile | None:
        if path not in self._keys:
            self._keys[path] = read_key_file(path)
        return self._keys[path]

    def key_owner(self, path: Path) -> str | None:
        for ident, entry in self.manifest.entries.items():
            if entry.key_path == str(path):
                return ident
        return None


def read_state(
    config: UnpackConfig,
    remotes: RemoteSynchronizer | None = None,
    *,
    with_ssh: bool = True,
) -> ManagedState:
    """Load everything the planner diffs against. Raises ConfigError on a bad manifest."""
    output_dir = config.expanded_ssh_output_dir()
    ssh_path = config.ssh_config_file()
    try:
        ssh_config = sshconfig.load(ssh_path) if with_ssh else sshconfig.SshConfigFile()
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigError(f"Cannot read SSH config {ssh_path}: {e}") from e
    state = ManagedState(
        output_dir=output_dir,
        manifest=load_manifest(manifest_path(output_dir)),
        ssh_config_path=ssh_path,
        ssh_config=ssh_config,
    )
    if remotes is not None:
        try:
            state.remotes = remotes.open()
        except ExecutionFailure as e:
            logger.warning(f"rclone config unavailable: {e}")
            state.issues.append(e)
    return state
