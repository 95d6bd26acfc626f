"""rclone config location, decryption and encryption through the rclone CLI."""

from __future__ import annotations

import os
import shutil
import subprocess
from pathlib import Path

from unpack_core.errors import ToolNotFoundError, UnpackError

DEFAULT_CONFIG_PATH = Path.home() / ".config" / "rclone" / "rclone.conf"


class RcloneCommandError(UnpackError):
    pass


class RcloneCli:
    """RcloneTool backed by the rclone binary."""

    def __init__(self, executable: str = "rclone"):
        self.executable = executable

    @property
    def available(self) -> bool:
        return shutil.which(self.executable) is not None

    def _run(self, args: list[str], *, env: dict[str, str] | None = None, input: str | None = None):
        full_env = os.environ.copy()
        full_env["RCLONE_ASK_PASSWORD"] = "false"
        if env:
            full_env.update(env)
        try:
            return subprocess.run(
                [self.executable, *args],
                capture_output=True,
                text=True,
                env=full_env,
                input=input,
                timeout=60,
            )
        except FileNotFoundError as e:
            raise ToolNotFoundError(f"{self.executable} not found") from e

    def config_path(self) -> Path:
        proc = self._run(["config", "file"])
        # "Configuration file is stored at:\n/path/to/rclone.conf\n"
        for line in proc.stdout.splitlines():
            if line.strip().endswith(".conf"):
                return Path(line.strip())
        return DEFAULT_CONFIG_PATH

    def decrypt(self, path: Path, password: str) -> str:
        proc = self._run(
            ["--config", str(path), "config", "show"], env={"RCLONE_CONFIG_PASS": password}
        )
        if proc.returncode != 0:
            stderr = proc.stderr.strip()
            if "wrong password" in stderr or "unable to decrypt" in stderr:
                raise RcloneCommandError("Incorrect rclone config password")
            raise RcloneCommandError(f"Failed to decrypt rclone config: {stderr}")
        return proc.stdout

    def encrypt(self, path: Path, password: str) -> None:
        # The password travels over stdin (`--password-command cat`), never argv.
        proc = self._run(
            ["--config", str(path), "config", "encryption", "set", "--password-command", "cat"],
            input=password,
        )
        if proc.returncode != 0:
            raise RcloneCommandError(f"Failed to encrypt config: {proc.stderr.strip()}")
