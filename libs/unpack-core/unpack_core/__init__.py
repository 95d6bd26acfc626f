"""pass-ssh-unpack core - models, configuration, manifest and filters."""

from unpack_core.config import (
    check_missing_options,
    config_home,
    default_config_path,
    load_config,
    load_or_create,
)
from unpack_core.digest import compute_digest, normalize_private_key
from unpack_core.errors import (
    AuthenticationError,
    ConfigError,
    ExecutionFailure,
    IntegrityViolation,
    Issue,
    PlanningConflict,
    SecretStoreError,
    ToolNotFoundError,
    UnpackError,
    ValidationError,
)
from unpack_core.manifest import load_manifest, manifest_path, save_manifest
from unpack_core.matcher import (
    local_hostname,
    machine_applies,
    matches,
    matches_any,
    select_items,
    select_vaults,
    split_title,
)
from unpack_core.models import (
    MANAGED_MARKER,
    ConfigEntry,
    Credential,
    FieldName,
    ManagedKeyFile,
    Manifest,
    ManifestEntry,
    RawItem,
    RcloneSettings,
    RemoteSpec,
    SyncPublicKey,
    UnpackConfig,
)

__all__ = [
    "compute_digest",
    "normalize_private_key",
    # config
    "config_home",
    "default_config_path",
    "load_config",
    "load_or_create",
    "check_missing_options",
    # manifest
    "load_manifest",
    "save_manifest",
    "manifest_path",
    # matcher
    "matches",
    "matches_any",
    "select_vaults",
    "select_items",
    "split_title",
    "machine_applies",
    "local_hostname",
    # errors
    "UnpackError",
    "AuthenticationError",
    "ToolNotFoundError",
    "ConfigError",
    "SecretStoreError",
    "Issue",
    "ValidationError",
    "PlanningConflict",
    "ExecutionFailure",
    "IntegrityViolation",
    # models
    "MANAGED_MARKER",
    "ConfigEntry",
    "Credential",
    "FieldName",
    "ManagedKeyFile",
    "Manifest",
    "ManifestEntry",
    "RawItem",
    "RcloneSettings",
    "RemoteSpec",
    "SyncPublicKey",
    "UnpackConfig",
]

__version__ = "0.1.0"
