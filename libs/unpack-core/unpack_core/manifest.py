"""Ownership ledger: which keys, Host entries and remotes this tool produced.

Removals are computed from this file only. Nothing on disk is treated as
ours just because it sits in the output directory.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path

from pydantic import ValidationError as PydanticValidationError

from unpack_core.errors import ConfigError
from unpack_core.fsio import PRIVATE_FILE_MODE, atomic_write_text
from unpack_core.models import Manifest

logger = logging.getLogger(__name__)

MANIFEST_VERSION = 1
MANIFEST_NAME = ".manifest.json"


def manifest_path(output_dir: Path) -> Path:
    return output_dir / MANIFEST_NAME


def _now_ts() -> str:
    return datetime.now().strftime("%Y-%m-%d %H:%M")


def load_manifest(path: Path) -> Manifest:
    """Load the manifest, or an empty one on first run."""
    if not path.exists():
        return Manifest(version=MANIFEST_VERSION, updated_at=_now_ts(), entries={})
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
        return Manifest(**data)
    except (OSError, ValueError, TypeError, PydanticValidationError) as e:
        # Never fall back to an empty ledger here.
        raise ConfigError(f"Manifest {path} is unreadable: {e}") from e


def save_manifest(path: Path, manifest: Manifest) -> None:
    """Persist the manifest atomically."""
    manifest.version = MANIFEST_VERSION
    manifest.updated_at = _now_ts()
    for ident in [i for i, e in manifest.entries.items() if e.is_empty()]:
        manifest.entries.pop(ident)
    data = manifest.model_dump(mode="json")
    atomic_write_text(path, json.dumps(data, indent=2, sort_keys=True) + "\n", mode=PRIVATE_FILE_MODE)
    logger.info(f"Manifest saved: {path} ({len(manifest.entries)} entries)")
