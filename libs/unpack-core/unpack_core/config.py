"""User configuration (config.yaml).

The file lives in a per-user config home so every invocation on the machine
shares the same defaults. It is created with commented defaults on first run.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

from pydantic import ValidationError as PydanticValidationError
from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from unpack_core.errors import ConfigError
from unpack_core.fsio import atomic_write_text
from unpack_core.models import RcloneSettings, UnpackConfig

yaml = YAML(typ="safe")

APP_NAME = "pass-ssh-unpack"

DEFAULT_CONFIG = """\
# pass-ssh-unpack configuration file
# This file is auto-generated on first run. All fields are optional.

# Directory where SSH keys and the generated SSH config are written.
# Supports ~ for the home directory.
ssh_output_dir: "~/.ssh/proton-pass"

# File that receives the managed Host block. Anything outside the
# BEGIN/END markers is left alone. Default: <ssh_output_dir>/config
# ssh_config_path: "~/.ssh/config"

# Vault filter(s) applied when no --vault flag is given.
# Wildcards are supported: "Personal", "Work*"
default_vaults: []

# Item filter(s) applied when no --item flag is given.
# Wildcards are supported: "github/*", "*-prod"
default_items: []

# When to write generated public keys back to the secret store:
#   never    - never update the Public Key field
#   if_empty - only when the field is empty (default)
#   always   - always overwrite it
sync_public_key: if_empty

rclone:
  # Create/refresh rclone SFTP remotes for every key.
  enabled: true

  # Secret-store path of the rclone config password (for encrypted configs).
  # Optional when RCLONE_CONFIG_PASS is set; this value wins if both are set.
  # Example: "pass://Personal/rclone/password"
  password_path: ""

  # Encrypt rclone.conf after every change when a password is available,
  # even if it was not encrypted before.
  always_encrypt: false
"""

KNOWN_KEYS = ["ssh_output_dir", "default_vaults", "default_items", "sync_public_key", "rclone"]
KNOWN_RCLONE_KEYS = ["enabled", "password_path", "always_encrypt"]


def config_home() -> Path:
    """Return per-user config home (override with PASS_SSH_UNPACK_HOME)."""
    env = os.environ.get("PASS_SSH_UNPACK_HOME")
    if env:
        return Path(env).expanduser().resolve()
    return Path.home() / ".config" / APP_NAME


def default_config_path() -> Path:
    return config_home() / "config.yaml"


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.load(f)
    except (OSError, YAMLError) as e:
        raise ConfigError(f"Failed to read config file {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config root must be a mapping: {path}")
    return data


def load_config(path: Path) -> UnpackConfig:
    """Load and validate config from a file."""
    data = _read_yaml(path)
    if data.get("rclone") is None:
        data["rclone"] = RcloneSettings().model_dump()
    try:
        return UnpackConfig(**data)
    except PydanticValidationError as e:
        raise ConfigError(f"Invalid config file {path}: {e}") from e


def create_default(path: Path) -> None:
    try:
        atomic_write_text(path, DEFAULT_CONFIG, mode=0o644)
    except OSError as e:
        raise ConfigError(f"Failed to write default config {path}: {e}") from e


def load_or_create(path: Path | None = None) -> UnpackConfig:
    """Load config from `path` (or the default location), creating it if missing."""
    path = path or default_config_path()
    if path.exists():
        return load_config(path)
    create_default(path)
    return UnpackConfig()


def check_missing_options(path: Path) -> list[str]:
    """Return known option names absent from an existing config file."""
    try:
        data = _read_yaml(path)
    except ConfigError:
        return []
    missing = [k for k in KNOWN_KEYS if k not in data]
    rclone = data.get("rclone")
    if isinstance(rclone, dict):
        missing.extend(f"rclone.{k}" for k in KNOWN_RCLONE_KEYS if k not in rclone)
    return missing
