"""Public key derivation through `ssh-keygen -y`."""

from __future__ import annotations

import os
import shutil
import subprocess
import tempfile
from pathlib import Path

from unpack_core.errors import ToolNotFoundError, UnpackError


class KeyDerivationError(UnpackError):
    pass


class SshKeygen:
    """KeyTool backed by OpenSSH's ssh-keygen."""

    def __init__(self, executable: str = "ssh-keygen"):
        self.executable = executable

    def check(self) -> None:
        if shutil.which(self.executable) is None:
            raise ToolNotFoundError(f"{self.executable} not found. Install OpenSSH first.")

    def derive_public_key(self, private_key: bytes) -> bytes:
        # ssh-keygen only reads keys from a path, and insists on 0600
        with tempfile.TemporaryDirectory(prefix="pass-ssh-unpack-") as tmp:
            key_path = Path(tmp) / "key"
            fd = os.open(key_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
            with os.fdopen(fd, "wb") as f:
                f.write(private_key)
            try:
                proc = subprocess.run(
                    [self.executable, "-y", "-f", str(key_path)],
                    capture_output=True,
                    timeout=30,
                    stdin=subprocess.DEVNULL,
                )
            except FileNotFoundError as e:
                raise ToolNotFoundError(f"{self.executable} not found. Install OpenSSH first.") from e
            except subprocess.TimeoutExpired as e:
                raise KeyDerivationError("ssh-keygen timed out (passphrase-protected key?)") from e
        if proc.returncode != 0 or not proc.stdout.strip():
            stderr = proc.stderr.decode("utf-8", "replace").strip()
            raise KeyDerivationError(f"ssh-keygen -y failed: {stderr or 'no output'}")
        return proc.stdout.strip() + b"\n"
