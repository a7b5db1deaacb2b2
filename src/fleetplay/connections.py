"""Connections to target hosts.

A connection gives modules a small set of primitives (run a command, read,
write and stat files) so that they can observe and change a host without
knowing how it is reached. Two kinds ship with fleetplay:

- local: the machine fleetplay runs on (filesystem + subprocess)
- ssh: remote hosts through asyncssh (commands + SFTP)

Any failure to reach a host is raised as UnreachableError.
"""

import asyncio
import logging
import os
import shlex
import shutil
import stat as stat_module
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable

import asyncssh

from .config import Settings
from .exceptions import UnreachableError
from .types import Host

logger = logging.getLogger(__name__)


class Connection(ABC):
    """Abstract interface to a single host.

    Paths are strings interpreted on the target. `stat()` returns None for a
    missing path, otherwise a dict with `isdir`, `isfile`, `mode` (permission
    bits) and `size`.
    """

    def __init__(self, host: Host, settings: Settings | None = None) -> None:
        self.host = host
        self.settings = settings or Settings()

    @abstractmethod
    async def connect(self) -> None:
        """Open the connection; raise UnreachableError if the host cannot be reached."""

    @abstractmethod
    async def close(self) -> None:
        """Release the connection."""

    @abstractmethod
    async def run(
        self, command: str, stdin: str = "", timeout: float | None = None
    ) -> tuple[str, str, int]:
        """Run a shell command and return (stdout, stderr, return_code)."""

    @abstractmethod
    async def read_file(self, path: str) -> bytes | None:
        """Read a file, None if it does not exist."""

    @abstractmethod
    async def write_file(self, path: str, data: bytes, mode: int | None = None) -> None:
        """Write a file, replacing it if it exists."""

    @abstractmethod
    async def stat(self, path: str) -> dict[str, Any] | None:
        """Describe a path, None if it does not exist."""

    @abstractmethod
    async def remove(self, path: str) -> None:
        """Remove a file or a directory tree."""

    @abstractmethod
    async def mkdir(self, path: str, mode: int | None = None) -> None:
        """Create a directory and its parents."""

    @abstractmethod
    async def chmod(self, path: str, mode: int) -> None:
        """Change permission bits."""

    async def touch(self, path: str) -> None:
        """Create an empty file or update its modification time."""
        _, stderr, rc = await self.run(f"touch -- {shlex.quote(path)}")
        if rc != 0:
            raise OSError(stderr.strip() or f"touch {path} failed with rc={rc}")

    async def __aenter__(self) -> "Connection":
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()


def _describe(st: os.stat_result) -> dict[str, Any]:
    return {
        "isdir": stat_module.S_ISDIR(st.st_mode),
        "isfile": stat_module.S_ISREG(st.st_mode),
        "mode": stat_module.S_IMODE(st.st_mode),
        "size": st.st_size,
    }


class LocalConnection(Connection):
    """Connection to the machine fleetplay runs on."""

    async def connect(self) -> None:
        logger.debug(f"Using local connection for {self.host.name}")

    async def close(self) -> None:
        pass

    async def run(
        self, command: str, stdin: str = "", timeout: float | None = None
    ) -> tuple[str, str, int]:
        timeout = timeout or self.settings.timeout
        logger.debug(f"Running locally for {self.host.name}: {command[:100]}")
        process = await asyncio.create_subprocess_shell(
            command,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(stdin.encode() if stdin else None),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            logger.error(f"Command timed out after {timeout}s: {command[:50]}")
            return "", f"Command timed out after {timeout}s", -1
        return stdout.decode(errors="replace"), stderr.decode(errors="replace"), process.returncode or 0

    async def read_file(self, path: str) -> bytes | None:
        p = Path(path)
        if not p.is_file():
            return None
        return p.read_bytes()

    async def write_file(self, path: str, data: bytes, mode: int | None = None) -> None:
        p = Path(path)
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_bytes(data)
        if mode is not None:
            p.chmod(mode)

    async def stat(self, path: str) -> dict[str, Any] | None:
        try:
            return _describe(os.stat(path))
        except FileNotFoundError:
            return None

    async def remove(self, path: str) -> None:
        p = Path(path)
        if p.is_dir() and not p.is_symlink():
            shutil.rmtree(p)
        elif p.exists() or p.is_symlink():
            p.unlink()

    async def mkdir(self, path: str, mode: int | None = None) -> None:
        p = Path(path)
        p.mkdir(parents=True, exist_ok=True)
        if mode is not None:
            p.chmod(mode)

    async def chmod(self, path: str, mode: int) -> None:
        Path(path).chmod(mode)

    async def touch(self, path: str) -> None:
        Path(path).touch()


class SSHConnection(Connection):
    """Connection to a remote host over SSH, using asyncssh.

    Connection options come from the host (`ansible_host`, `ansible_port`,
    `ansible_user`, `ansible_password`, `ansible_ssh_private_key_file`)
    with the run settings as fallback.
    """

    def __init__(self, host: Host, settings: Settings | None = None) -> None:
        super().__init__(host, settings)
        self._conn: asyncssh.SSHClientConnection | None = None
        self._sftp: asyncssh.SFTPClient | None = None
        self._lock = asyncio.Lock()

    def connect_options(self) -> dict[str, Any]:
        """Build asyncssh.connect() kwargs for this host."""
        options: dict[str, Any] = {
            "host": self.host.address,
            "port": self.host.port,
            "connect_timeout": self.settings.connect_timeout,
        }
        username = self.host.user or self.settings.remote_user
        if username:
            options["username"] = username
        password = self.host.get_var("ansible_password")
        if password:
            options["password"] = str(password)
        key_file = self.host.get_var("ansible_ssh_private_key_file") or self.settings.private_key_file
        if key_file:
            options["client_keys"] = [str(Path(key_file).expanduser())]
        if not self.settings.host_key_checking:
            options["known_hosts"] = None
        return options

    async def connect(self) -> None:
        async with self._lock:
            if self._conn is not None:
                return
            options = self.connect_options()
            logger.debug(f"Connecting to {options['host']}:{options['port']}")
            try:
                self._conn = await asyncssh.connect(**options)
            except (OSError, asyncssh.Error, asyncio.TimeoutError) as e:
                raise UnreachableError(self.host.name, str(e) or type(e).__name__)
            logger.info(f"Connected to {self.host.name}")

    async def close(self) -> None:
        async with self._lock:
            if self._sftp is not None:
                self._sftp.exit()
                self._sftp = None
            if self._conn is not None:
                self._conn.close()
                await self._conn.wait_closed()
                logger.debug(f"Disconnected from {self.host.name}")
            self._conn = None

    async def _connection(self) -> asyncssh.SSHClientConnection:
        if self._conn is None:
            await self.connect()
        assert self._conn is not None
        return self._conn

    async def _sftp_client(self) -> asyncssh.SFTPClient:
        conn = await self._connection()
        if self._sftp is None:
            try:
                self._sftp = await conn.start_sftp_client()
            except (OSError, asyncssh.DisconnectError, asyncssh.ConnectionLost) as e:
                raise UnreachableError(self.host.name, str(e))
        return self._sftp

    async def run(
        self, command: str, stdin: str = "", timeout: float | None = None
    ) -> tuple[str, str, int]:
        conn = await self._connection()
        timeout = timeout or self.settings.timeout
        logger.debug(f"Running on {self.host.name}: {command[:100]}")
        try:
            result = await asyncio.wait_for(
                conn.run(command, input=stdin or None, check=False),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.error(f"Command timed out after {timeout}s: {command[:50]}")
            return "", f"Command timed out after {timeout}s", -1
        except (asyncssh.DisconnectError, asyncssh.ConnectionLost, BrokenPipeError) as e:
            raise UnreachableError(self.host.name, str(e))

        stdout = result.stdout or ""
        stderr = result.stderr or ""
        if isinstance(stdout, bytes):
            stdout = stdout.decode(errors="replace")
        if isinstance(stderr, bytes):
            stderr = stderr.decode(errors="replace")
        return stdout, stderr, result.exit_status or 0

    async def read_file(self, path: str) -> bytes | None:
        sftp = await self._sftp_client()
        try:
            async with sftp.open(path, "rb") as f:
                return await f.read()
        except asyncssh.SFTPNoSuchFile:
            return None

    async def write_file(self, path: str, data: bytes, mode: int | None = None) -> None:
        sftp = await self._sftp_client()
        parent = str(Path(path).parent)
        if parent not in ("", "."):
            await sftp.makedirs(parent, exist_ok=True)
        async with sftp.open(path, "wb") as f:
            await f.write(data)
        if mode is not None:
            await sftp.chmod(path, mode)

    async def stat(self, path: str) -> dict[str, Any] | None:
        sftp = await self._sftp_client()
        try:
            attrs = await sftp.stat(path)
        except asyncssh.SFTPNoSuchFile:
            return None
        permissions = attrs.permissions or 0
        return {
            "isdir": stat_module.S_ISDIR(permissions),
            "isfile": stat_module.S_ISREG(permissions),
            "mode": stat_module.S_IMODE(permissions),
            "size": attrs.size or 0,
        }

    async def remove(self, path: str) -> None:
        sftp = await self._sftp_client()
        if await sftp.isdir(path):
            await sftp.rmtree(path)
        elif await sftp.exists(path):
            await sftp.remove(path)

    async def mkdir(self, path: str, mode: int | None = None) -> None:
        sftp = await self._sftp_client()
        await sftp.makedirs(path, exist_ok=True)
        if mode is not None:
            await sftp.chmod(path, mode)

    async def chmod(self, path: str, mode: int) -> None:
        sftp = await self._sftp_client()
        await sftp.chmod(path, mode)


ConnectionClass = Callable[[Host, Settings], Connection]


class ConnectionFactory:
    """Creates connections by the host's connection kind.

    Example:
        >>> factory = ConnectionFactory()
        >>> conn = factory.create(host)
        >>> factory.register("docker", DockerConnection)
    """

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or Settings()
        self._kinds: dict[str, ConnectionClass] = {
            "local": LocalConnection,
            "ssh": SSHConnection,
        }

    def register(self, kind: str, connection_class: ConnectionClass) -> None:
        """Register (or replace) the connection class for a kind."""
        self._kinds[kind] = connection_class

    def kinds(self) -> list[str]:
        return sorted(self._kinds)

    def create(self, host: Host) -> Connection:
        """Create an unopened connection for a host.

        Raises:
            UnreachableError: If the host's connection kind is unknown
        """
        connection_class = self._kinds.get(host.connection)
        if connection_class is None:
            raise UnreachableError(host.name, f"unknown connection type '{host.connection}'")
        return connection_class(host, self.settings)
