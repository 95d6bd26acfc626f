"""Teleport access through `tsh`."""

from __future__ import annotations

import shutil
import subprocess
from urllib.parse import urlsplit

from pydantic import BaseModel
from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from unpack_core.errors import AuthenticationError, ToolNotFoundError, UnpackError

DEFAULT_SFTP_SERVER = "/usr/lib/openssh/sftp-server"
DETECT_SFTP_SCRIPT = 'find /usr -name "sftp-server" -type f 2>/dev/null | head -1'


class TeleportError(UnpackError):
    pass


class TeleportStatus(BaseModel):
    profile_url: str
    username: str
    cluster: str = ""


class _StatusResponse(BaseModel):
    active: TeleportStatus | None = None


class _NodeSpec(BaseModel):
    hostname: str


class _Node(BaseModel):
    spec: _NodeSpec


_nodes = TypeAdapter(list[_Node])


class TeleportCli:
    def __init__(self, executable: str = "tsh"):
        self.executable = executable

    def _run(self, args: list[str], timeout: int = 60) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(
                [self.executable, *args], capture_output=True, text=True, timeout=timeout
            )
        except FileNotFoundError as e:
            raise ToolNotFoundError(f"{self.executable} not found. Install Teleport CLI first.") from e

    def status(self) -> TeleportStatus:
        if shutil.which(self.executable) is None:
            raise ToolNotFoundError(f"{self.executable} not found. Install Teleport CLI first.")
        proc = self._run(["status", "--format=json"])
        active = None
        if proc.returncode == 0:
            try:
                active = _StatusResponse.model_validate_json(proc.stdout).active
            except PydanticValidationError:
                active = None
        if active is None:
            raise AuthenticationError("Not logged into Teleport. Run 'tsh login' first.")
        return active

    @staticmethod
    def proxy(status: TeleportStatus) -> str:
        """
        Proxy address from the profile URL.

        "https://teleport.example.com:443" -> "teleport.example.com"
        "https://proxy.example.com:3080"   -> "proxy.example.com:3080"
        """
        url = urlsplit(status.profile_url)
        if not url.hostname:
            raise ValueError(f"No host in Teleport profile URL: {status.profile_url}")
        port = url.port or 443
        return url.hostname if port == 443 else f"{url.hostname}:{port}"

    def list_nodes(self) -> list[str]:
        proc = self._run(["ls", "--format=json"])
        if proc.returncode != 0:
            raise TeleportError(f"tsh ls failed: {proc.stderr.strip()}")
        try:
            return [n.spec.hostname for n in _nodes.validate_json(proc.stdout)]
        except PydanticValidationError as e:
            raise TeleportError(f"Failed to parse tsh ls output: {e}") from e

    def probe_subsystem(self, node: str) -> str:
        """Locate sftp-server on `node`, falling back to the Debian default."""
        try:
            proc = self._run(["ssh", node, DETECT_SFTP_SCRIPT], timeout=30)
        except subprocess.TimeoutExpired:
            return DEFAULT_SFTP_SERVER
        path = proc.stdout.strip()
        if proc.returncode != 0 or not path:
            return DEFAULT_SFTP_SERVER
        return path.splitlines()[0]


__all__ = ["TeleportCli", "TeleportError", "TeleportStatus", "DEFAULT_SFTP_SERVER"]
