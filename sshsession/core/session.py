"""
SSH session façade: one host, one authenticated connection, and a fresh
channel per command or file transfer.

    with Session("example.com", 22) as ssh:
        ssh.connect_agent("deploy")
        print(ssh.run_command("uname -a"))
        ssh.upload_file("build.tar.gz", "/tmp/build.tar.gz")
        data, stat = ssh.get_file("/etc/hostname")

A Session is not thread-safe; give each thread its own.
"""
import enum
import os
import posixpath
import stat as _stat
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from .. import config as _cfg
from ..errors import (
    AlreadyConnectedError,
    DecodingError,
    LocalIOError,
    NotAuthenticatedError,
    SSHConnectionError,
    SSHError,
)
from ..utils.logging import tagged
from .transport import Connection, FileStat, Transport, list_agent_identities

PathLike = Union[str, os.PathLike]

_log = tagged("SSH")


class SessionState(enum.Enum):
    DISCONNECTED = "disconnected"
    AUTHENTICATED = "authenticated"
    DROPPED = "dropped"


@dataclass(frozen=True)
class CommandResult:
    """Everything one exec channel produced."""

    command: str
    stdout: str
    stderr: str
    exit_status: int

    @property
    def ok(self) -> bool:
        return self.exit_status == 0


def _close_quietly(channel):
    """Close *channel* after an earlier failure without masking that failure."""
    try:
        channel.close()
    except SSHError as exc:
        _log.vlog(f"closing channel after failure: {exc}")


def _temp_sibling(remote_path: str) -> str:
    head, tail = posixpath.split(remote_path)
    return posixpath.join(head, f".{tail}.part-{uuid.uuid4().hex}")


class Session:
    """
    Caller-facing handle for one target host/port.

    The connection lives only inside the AUTHENTICATED state, so authed()
    can never be true without a live connection behind it. A connection
    found dead moves the session to DROPPED, where every operation fails
    fast with SSHConnectionError until connect()/connect_agent() succeeds
    again.
    """

    def __init__(self, host: str, port: int = 22, transport: Optional[Transport] = None):
        if not isinstance(host, str) or not host.strip():
            raise ValueError("host must be a non-empty string")
        if isinstance(port, bool) or not isinstance(port, int) or not 0 < port < 65536:
            raise ValueError(f"port must be an integer in 1..65535, got {port!r}")
        self.host = host.strip()
        self.port = port
        self._transport = transport if transport is not None else Transport()
        self._state = SessionState.DISCONNECTED
        self._conn: Optional[Connection] = None

    def __repr__(self):
        return f"<Session {self.host}:{self.port} {self._state.value}>"

    # ── lifecycle ───────────────────────────────────────────────────────────

    @property
    def state(self) -> SessionState:
        return self._state

    def authed(self) -> bool:
        """True iff the session holds a connection the server has authenticated."""
        return self._state is SessionState.AUTHENTICATED

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self._release()
        return False

    def __del__(self):
        if getattr(self, "_conn", None) is not None:
            self._release()

    def _release(self):
        conn, self._conn = self._conn, None
        self._state = SessionState.DISCONNECTED
        if conn is not None:
            _log.vlog(f"releasing connection to {self.host}:{self.port}")
            conn.close()

    def _drop(self):
        conn, self._conn = self._conn, None
        self._state = SessionState.DROPPED
        _log.warn(f"connection to {self.host}:{self.port} lost")
        if conn is not None:
            try:
                conn.close()
            except Exception as exc:
                _log.vlog(f"close after drop failed: {exc}")

    def _establish(self, authenticate) -> None:
        if self._state is SessionState.AUTHENTICATED:
            raise AlreadyConnectedError(f"session to {self.host}:{self.port} is already authenticated")
        conn = self._transport.open(self.host, self.port)
        try:
            authenticate(conn)
        except BaseException:
            conn.close()
            raise
        self._conn = conn
        self._state = SessionState.AUTHENTICATED
        _log.vlog(f"authenticated to {self.host}:{self.port} ✓")

    def connect(self, username: str, password: str):
        """Open the transport and authenticate with a password."""
        self._establish(lambda conn: conn.authenticate_password(username, password))

    def connect_agent(self, username: str):
        """Open the transport and authenticate with the first accepted ssh-agent identity."""
        self._establish(lambda conn: conn.authenticate_agent(username))

    @staticmethod
    def identities() -> dict[str, bytes]:
        """{comment: public key blob} for each identity in ssh-agent."""
        return list_agent_identities()

    def _live(self) -> Connection:
        """The authenticated connection, or the error explaining why there is none."""
        if self._state is SessionState.DROPPED:
            raise SSHConnectionError("connection was lost", self.host, self.port)
        if self._state is not SessionState.AUTHENTICATED:
            raise NotAuthenticatedError(f"session to {self.host}:{self.port} is not authenticated")
        if not self._conn.is_active():
            self._drop()
            raise SSHConnectionError("connection was lost", self.host, self.port)
        return self._conn

    def _check_after_failure(self, conn: Connection):
        if self._conn is conn and not conn.is_active():
            self._drop()

    def keepalive(self, interval: int):
        """Send keep-alives every *interval* seconds (0 disables) and one right now."""
        conn = self._live()
        conn.set_keepalive(interval)
        try:
            conn.send_keepalive()
        except SSHConnectionError:
            self._drop()
            raise

    # ── command execution ───────────────────────────────────────────────────

    def execute(self, command: str) -> CommandResult:
        """
        Run *command* on a fresh exec channel and collect stdout, stderr and
        exit status. A non-zero exit status is returned, not raised.
        """
        conn = self._live()
        _log.vlog(f"exec: {command}")
        try:
            channel = conn.open_exec_channel(command)
            try:
                channel.send_eof()
                out = channel.read_to_end()
                err = channel.read_stderr_to_end()
                status = channel.exit_status()
            except BaseException:
                _close_quietly(channel)
                raise
            channel.close()
        except SSHError:
            self._check_after_failure(conn)
            raise

        try:
            stdout = out.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecodingError(command, str(exc)) from exc
        stderr = err.decode("utf-8", errors="replace")
        _log.vlog(f"exec finished with status {status}")
        return CommandResult(command=command, stdout=stdout, stderr=stderr, exit_status=status)

    def run_command(self, command: str) -> str:
        """Run *command* remotely and return its stdout decoded as UTF-8."""
        return self.execute(command).stdout

    # ── upload ──────────────────────────────────────────────────────────────

    def upload_file(self, local_path: PathLike, remote_path: str):
        """
        Copy a local file to *remote_path*.

        With config.ATOMIC_UPLOAD the bytes land in a temporary sibling that
        is renamed over the target only after the size check passes, so a
        failed upload leaves the target as it was.
        """
        conn = self._live()
        local_path = Path(local_path)
        try:
            mode = _cfg.UPLOAD_MODE
            if mode is None:
                mode = _stat.S_IMODE(local_path.stat().st_mode)
            data = local_path.read_bytes()
        except OSError as exc:
            raise LocalIOError(str(local_path), str(exc)) from exc

        remote_path = str(remote_path)
        target = _temp_sibling(remote_path) if _cfg.ATOMIC_UPLOAD else remote_path
        _log.vlog(f"upload {local_path} → {remote_path} ({len(data)} bytes, mode {mode:o})")
        try:
            channel = conn.open_file_write_channel(target, len(data), mode)
            try:
                channel.write_all(data)
            except BaseException:
                _close_quietly(channel)
                raise
            channel.close()
            if target != remote_path:
                conn.rename(target, remote_path)
        except SSHError:
            if target != remote_path:
                self._discard(conn, target)
            self._check_after_failure(conn)
            raise

    def _discard(self, conn: Connection, path: str):
        try:
            conn.remove(path)
        except SSHError as exc:
            _log.vlog(f"could not remove {path}: {exc}")

    # ── download ────────────────────────────────────────────────────────────

    def get_file(self, remote_path: str) -> tuple[bytes, FileStat]:
        """Return the raw content of *remote_path* and its metadata."""
        conn = self._live()
        _log.vlog(f"download {remote_path}")
        try:
            channel, file_stat = conn.open_file_read_channel(str(remote_path))
            try:
                content = channel.read_to_end()
            except BaseException:
                _close_quietly(channel)
                raise
            channel.close()
        except SSHError:
            self._check_after_failure(conn)
            raise
        return content, file_stat

    def download_file(self, remote_path: str, local_path: PathLike) -> FileStat:
        """get_file() into *local_path*, keeping the remote mtime."""
        content, file_stat = self.get_file(remote_path)
        local_path = Path(local_path)
        try:
            local_path.write_bytes(content)
            if file_stat.mtime is not None:
                atime = file_stat.atime if file_stat.atime is not None else file_stat.mtime
                os.utime(local_path, (atime, file_stat.mtime))
        except OSError as exc:
            raise LocalIOError(str(local_path), str(exc)) from exc
        return file_stat
