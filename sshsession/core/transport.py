"""
paramiko-backed transport: TCP connect + handshake, authentication, and the
short-lived exec / SFTP channels a Session opens per operation.

Host-key verification is left to the caller; the handshake accepts whatever
key the server presents.
"""
import errno
import socket
import stat as _stat
import time
from dataclasses import dataclass
from typing import Optional

import paramiko

from .. import config as _cfg
from ..errors import (
    AuthenticationError,
    ChannelError,
    ExecRejectedError,
    RemoteNotFoundError,
    RemotePermissionError,
    SSHConnectionError,
    StreamError,
    TransferError,
)
from ..utils.logging import tagged

# paramiko surfaces a dropped socket as any of these
_WIRE_ERRORS = (paramiko.SSHException, OSError, EOFError)

# seconds between polls while an exec channel has nothing to read
_POLL_INTERVAL = 0.05

_log = tagged("SSH")


@dataclass(frozen=True)
class FileStat:
    """Remote file metadata returned with a download."""

    size: int
    mode: int
    mtime: Optional[int] = None
    atime: Optional[int] = None
    uid: Optional[int] = None
    gid: Optional[int] = None

    @property
    def permissions(self) -> int:
        """Permission bits only (e.g. 0o644)."""
        return _stat.S_IMODE(self.mode)

    @property
    def is_dir(self) -> bool:
        return _stat.S_ISDIR(self.mode)

    @classmethod
    def from_attributes(cls, attrs: paramiko.SFTPAttributes) -> "FileStat":
        return cls(
            size=attrs.st_size or 0,
            mode=attrs.st_mode or 0,
            mtime=attrs.st_mtime,
            atime=attrs.st_atime,
            uid=attrs.st_uid,
            gid=attrs.st_gid,
        )


def transfer_error(path: str, exc: BaseException) -> TransferError:
    """Classify an SFTP failure on *path* into the matching TransferError."""
    code = getattr(exc, "errno", None)
    if isinstance(exc, FileNotFoundError) or code == errno.ENOENT:
        return RemoteNotFoundError(path, str(exc))
    if isinstance(exc, PermissionError) or code == errno.EACCES:
        return RemotePermissionError(path, str(exc))
    return TransferError(path, str(exc))


def _unsupported(exc: BaseException) -> bool:
    """True for SSH_FX_OP_UNSUPPORTED, which paramiko raises as a bare IOError."""
    return getattr(exc, "errno", None) is None and "unsupported" in str(exc).lower()


def list_agent_identities() -> dict[str, bytes]:
    """
    Return {comment: public key blob} for every identity held by ssh-agent.
    An unreachable agent yields an empty dict.
    """
    try:
        agent = paramiko.Agent()
    except paramiko.SSHException as exc:
        _log.vlog(f"ssh-agent unavailable: {exc}")
        return {}
    try:
        identities = {}
        for key in agent.get_keys():
            comment = getattr(key, "comment", "") or key.get_fingerprint().hex()
            identities[comment] = key.asbytes()
        return identities
    finally:
        agent.close()


# ══════════════════════════════════════════════════════════════════════════════
#  CHANNELS
# ══════════════════════════════════════════════════════════════════════════════

class ExecChannel:
    """A session channel running one remote command."""

    def __init__(self, channel: paramiko.Channel, command: str,
                 timeout: Optional[float] = None, chunk_size: int = 32 * 1024):
        self._channel = channel
        self.command = command
        self._timeout = timeout
        self._chunk_size = chunk_size
        self._stdout: list[bytes] = []
        self._stderr: list[bytes] = []
        self._drained = False
        channel.settimeout(timeout)

    def write_all(self, data: bytes):
        try:
            self._channel.sendall(data)
        except _WIRE_ERRORS as exc:
            raise StreamError(f"write to {self.command!r} failed: {exc}") from exc

    def send_eof(self):
        """Close the remote command's stdin."""
        try:
            self._channel.shutdown_write()
        except _WIRE_ERRORS as exc:
            raise StreamError(f"closing stdin of {self.command!r} failed: {exc}") from exc

    def _drain(self):
        """
        Pull stdout and stderr off the channel together until EOF.

        Both streams share one flow-control window, so stderr left unread
        would stall stdout once the window fills.
        """
        chan = self._channel
        deadline = None
        try:
            while True:
                if self._timeout is not None and deadline is None:
                    deadline = time.monotonic() + self._timeout
                progressed = False
                if chan.recv_ready():
                    data = chan.recv(self._chunk_size)
                    if data:
                        self._stdout.append(data)
                        progressed = True
                if chan.recv_stderr_ready():
                    data = chan.recv_stderr(self._chunk_size)
                    if data:
                        self._stderr.append(data)
                        progressed = True
                if progressed:
                    # the timeout bounds silence, not total runtime
                    deadline = None
                    continue
                if chan.eof_received or chan.closed:
                    if not (chan.recv_ready() or chan.recv_stderr_ready()):
                        break
                    continue
                if deadline is not None and time.monotonic() >= deadline:
                    raise StreamError(f"timed out reading output of {self.command!r}")
                time.sleep(_POLL_INTERVAL)
        except socket.timeout as exc:
            raise StreamError(f"timed out reading output of {self.command!r}") from exc
        except _WIRE_ERRORS as exc:
            raise StreamError(f"reading output of {self.command!r} failed: {exc}") from exc
        self._drained = True

    def read_to_end(self) -> bytes:
        """Read stdout until the remote side signals EOF; stderr is buffered meanwhile."""
        if not self._drained:
            self._drain()
        return b"".join(self._stdout)

    def read_stderr_to_end(self) -> bytes:
        if not self._drained:
            self._drain()
        return b"".join(self._stderr)

    def exit_status(self) -> int:
        """Remote exit status, or -1 if the server never sent one."""
        if self._timeout is None:
            return self._channel.recv_exit_status()
        if not self._channel.status_event.wait(self._timeout):
            raise StreamError(f"timed out waiting for exit status of {self.command!r}")
        return self._channel.exit_status

    def close(self):
        self._channel.close()


class FileChannel:
    """
    An SFTP subsystem channel holding one open remote file.

    Closing a write channel flushes the file and checks the remote size
    against *expected_size*; either failure raises TransferError.
    """

    def __init__(self, sftp: paramiko.SFTPClient, handle: paramiko.SFTPFile,
                 path: str, expected_size: Optional[int] = None,
                 chunk_size: int = 32 * 1024):
        self._sftp = sftp
        self._handle = handle
        self.path = path
        self._expected_size = expected_size
        self._chunk_size = chunk_size
        self._closed = False

    def read_to_end(self) -> bytes:
        chunks = []
        try:
            while True:
                data = self._handle.read(self._chunk_size)
                if not data:
                    break
                chunks.append(data)
        except _WIRE_ERRORS as exc:
            raise transfer_error(self.path, exc) from exc
        return b"".join(chunks)

    def write_all(self, data: bytes):
        try:
            self._handle.write(data)
        except _WIRE_ERRORS as exc:
            raise transfer_error(self.path, exc) from exc

    def close(self):
        if self._closed:
            return
        self._closed = True
        error = None
        try:
            try:
                if self._expected_size is not None:
                    self._handle.flush()
                    size = self._handle.stat().st_size
                    if size != self._expected_size:
                        error = TransferError(
                            self.path, f"remote size {size} != local size {self._expected_size}")
            except _WIRE_ERRORS as exc:
                error = transfer_error(self.path, exc)
                error.__cause__ = exc
            # the handle is released even when the checks above failed
            try:
                self._handle.close()
            except _WIRE_ERRORS as exc:
                if error is None:
                    error = transfer_error(self.path, exc)
                    error.__cause__ = exc
                else:
                    _log.vlog(f"closing {self.path} failed: {exc}")
        finally:
            self._sftp.close()
        if error is not None:
            raise error


# ══════════════════════════════════════════════════════════════════════════════
#  CONNECTION
# ══════════════════════════════════════════════════════════════════════════════

class Connection:
    """A live, handshaken paramiko transport to one host."""

    def __init__(self, transport: paramiko.Transport, host: str, port: int,
                 channel_timeout: Optional[float] = None,
                 chunk_size: int = 32 * 1024):
        self._transport = transport
        self.host = host
        self.port = port
        self._channel_timeout = channel_timeout
        self._chunk_size = chunk_size

    # ── state ───────────────────────────────────────────────────────────────

    def is_active(self) -> bool:
        return self._transport.is_active()

    def is_authenticated(self) -> bool:
        return self._transport.is_authenticated()

    def _dead(self, exc: Optional[BaseException] = None) -> SSHConnectionError:
        detail = f": {exc}" if exc else ""
        return SSHConnectionError(f"connection is no longer active{detail}", self.host, self.port)

    def _ensure_active(self):
        if not self.is_active():
            raise self._dead()

    # ── authentication ──────────────────────────────────────────────────────

    def authenticate_password(self, username: str, password: str):
        try:
            self._transport.auth_password(username, password)
        except paramiko.AuthenticationException as exc:
            raise AuthenticationError(f"password rejected: {exc}", username) from exc
        except _WIRE_ERRORS as exc:
            raise self._dead(exc) from exc
        if not self._transport.is_authenticated():
            raise AuthenticationError("server requires further authentication", username)

    def authenticate_agent(self, username: str):
        """Offer each ssh-agent identity in turn; first accepted wins."""
        try:
            agent = paramiko.Agent()
        except paramiko.SSHException as exc:
            raise AuthenticationError(f"ssh-agent unreachable: {exc}", username) from exc
        try:
            keys = agent.get_keys()
            if not keys:
                raise AuthenticationError("no identities available from ssh-agent", username)
            last_exc = None
            for key in keys:
                try:
                    self._transport.auth_publickey(username, key)
                except paramiko.AuthenticationException as exc:
                    _log.vlog(f"agent key {key.get_name()} rejected: {exc}")
                    last_exc = exc
                    continue
                except _WIRE_ERRORS as exc:
                    raise self._dead(exc) from exc
                if self._transport.is_authenticated():
                    _log.vlog(f"agent key {key.get_name()} accepted")
                    return
            raise AuthenticationError(
                f"none of {len(keys)} ssh-agent identities accepted", username) from last_exc
        finally:
            agent.close()

    # ── keep-alive ──────────────────────────────────────────────────────────

    def set_keepalive(self, interval: int):
        self._transport.set_keepalive(interval)

    def send_keepalive(self):
        try:
            self._transport.send_ignore()
        except _WIRE_ERRORS as exc:
            raise self._dead(exc) from exc

    # ── exec ────────────────────────────────────────────────────────────────

    def open_exec_channel(self, command: str) -> ExecChannel:
        self._ensure_active()
        try:
            chan = self._transport.open_session(timeout=self._channel_timeout)
        except _WIRE_ERRORS as exc:
            if not self.is_active():
                raise self._dead(exc) from exc
            raise ChannelError(f"could not open session channel: {exc}") from exc
        try:
            chan.exec_command(command)
        except _WIRE_ERRORS as exc:
            chan.close()
            if not self.is_active():
                raise self._dead(exc) from exc
            raise ExecRejectedError(command, str(exc)) from exc
        return ExecChannel(chan, command, timeout=_cfg.COMMAND_TIMEOUT,
                           chunk_size=self._chunk_size)

    # ── sftp ────────────────────────────────────────────────────────────────

    def _open_sftp(self) -> paramiko.SFTPClient:
        self._ensure_active()
        try:
            sftp = paramiko.SFTPClient.from_transport(self._transport)
        except _WIRE_ERRORS as exc:
            if not self.is_active():
                raise self._dead(exc) from exc
            raise ChannelError(f"could not open sftp subsystem: {exc}") from exc
        if sftp is None:
            raise ChannelError("could not open sftp subsystem")
        return sftp

    def open_file_write_channel(self, remote_path: str, size: int, mode: int) -> FileChannel:
        sftp = self._open_sftp()
        try:
            handle = sftp.open(remote_path, "wb")
            handle.set_pipelined(True)
            handle.chmod(mode)
        except _WIRE_ERRORS as exc:
            sftp.close()
            raise transfer_error(remote_path, exc) from exc
        return FileChannel(sftp, handle, remote_path, expected_size=size,
                           chunk_size=self._chunk_size)

    def open_file_read_channel(self, remote_path: str) -> tuple[FileChannel, FileStat]:
        sftp = self._open_sftp()
        try:
            handle = sftp.open(remote_path, "rb")
            file_stat = FileStat.from_attributes(handle.stat())
            if file_stat.is_dir:
                handle.close()
                raise TransferError(remote_path, "is a directory")
            handle.prefetch(file_stat.size)
        except TransferError:
            sftp.close()
            raise
        except _WIRE_ERRORS as exc:
            sftp.close()
            raise transfer_error(remote_path, exc) from exc
        return FileChannel(sftp, handle, remote_path, chunk_size=self._chunk_size), file_stat

    def rename(self, src: str, dst: str):
        """Move *src* over *dst*, replacing it."""
        sftp = self._open_sftp()
        try:
            try:
                sftp.posix_rename(src, dst)
            except IOError as exc:
                if not _unsupported(exc):
                    raise
                # server lacks posix-rename@openssh.com
                _log.vlog(f"posix-rename unsupported, replacing {dst} with remove + rename")
                try:
                    sftp.remove(dst)
                except FileNotFoundError:
                    pass
                sftp.rename(src, dst)
        except _WIRE_ERRORS as exc:
            raise transfer_error(dst, exc) from exc
        finally:
            sftp.close()

    def remove(self, path: str):
        sftp = self._open_sftp()
        try:
            sftp.remove(path)
        except _WIRE_ERRORS as exc:
            raise transfer_error(path, exc) from exc
        finally:
            sftp.close()

    def close(self):
        self._transport.close()


# ══════════════════════════════════════════════════════════════════════════════
#  TRANSPORT
# ══════════════════════════════════════════════════════════════════════════════

class Transport:
    """Opens Connections; timeouts default to the values in config."""

    def __init__(self, connect_timeout: Optional[float] = None,
                 banner_timeout: Optional[float] = None,
                 auth_timeout: Optional[float] = None,
                 channel_timeout: Optional[float] = None,
                 keepalive_interval: Optional[int] = None):
        self.connect_timeout = connect_timeout if connect_timeout is not None else _cfg.CONNECT_TIMEOUT
        self.banner_timeout = banner_timeout if banner_timeout is not None else _cfg.BANNER_TIMEOUT
        self.auth_timeout = auth_timeout if auth_timeout is not None else _cfg.AUTH_TIMEOUT
        self.channel_timeout = channel_timeout if channel_timeout is not None else _cfg.CHANNEL_TIMEOUT
        self.keepalive_interval = (keepalive_interval if keepalive_interval is not None
                                   else _cfg.KEEPALIVE_INTERVAL)

    def open(self, host: str, port: int) -> Connection:
        _log.vlog(f"connecting to {host}:{port} …")
        try:
            sock = socket.create_connection((host, port), timeout=self.connect_timeout)
        except OSError as exc:
            raise SSHConnectionError(f"cannot reach host: {exc}", host, port) from exc

        transport = None
        try:
            transport = paramiko.Transport(sock)
            transport.banner_timeout = self.banner_timeout
            transport.auth_timeout = self.auth_timeout
            transport.start_client(timeout=self.connect_timeout)
        except _WIRE_ERRORS as exc:
            if transport is not None:
                transport.close()
            sock.close()
            raise SSHConnectionError(f"SSH handshake failed: {exc}", host, port) from exc

        if self.keepalive_interval:
            transport.set_keepalive(self.keepalive_interval)
        _log.vlog(f"handshake with {host}:{port} complete")
        return Connection(transport, host, port,
                          channel_timeout=self.channel_timeout,
                          chunk_size=_cfg.READ_CHUNK_SIZE)
