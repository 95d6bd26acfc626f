"""Error taxonomy for pass-ssh-unpack.

Two families:

  • Fatal errors (AuthenticationError, ToolNotFoundError, ConfigError,
    SecretStoreError) abort the run before anything is planned.
  • Issues (ValidationError, PlanningConflict, ExecutionFailure,
    IntegrityViolation) are scoped to one credential, entry or action. They
    are collected into the run summary and never abort the run.
"""

from __future__ import annotations


class UnpackError(Exception):
    """Base class for every error raised by pass-ssh-unpack."""


class AuthenticationError(UnpackError):
    """The secret store session is missing or could not be established."""


class ToolNotFoundError(UnpackError):
    """A required external executable is not installed."""


class ConfigError(UnpackError):
    """The configuration file could not be read or validated."""


class SecretStoreError(UnpackError):
    """A secret-store call failed (listing, reading or writing)."""


class Issue(UnpackError):
    """A non-fatal problem attached to a single target."""

    severity = "error"

    def __init__(self, target: str, message: str):
        super().__init__(f"{target}: {message}")
        self.target = target
        self.message = message

    @property
    def kind(self) -> str:
        return type(self).__name__


class ValidationError(Issue):
    """A secret-store item is missing required fields."""


class PlanningConflict(Issue):
    """Two sources want the same managed name, or a name is held by user content."""


class ExecutionFailure(Issue):
    """An action could not be carried out (filesystem, external tool, password)."""


class IntegrityViolation(Issue):
    """A managed artifact no longer looks like what we wrote; it is left alone."""

    severity = "warning"
