"""
Error types raised by sshsession
"""
from typing import Optional


class SSHError(Exception):
    """Base exception for every sshsession failure."""


class SSHConnectionError(SSHError, ConnectionError):
    """Transport could not be established, or the live connection died."""

    def __init__(self, message: str, host: Optional[str] = None, port: Optional[int] = None):
        self.host = host
        self.port = port
        where = f" ({host}:{port})" if host else ""
        super().__init__(f"{message}{where}")


class AuthenticationError(SSHError):
    """Credentials or agent identities rejected by the remote host."""

    def __init__(self, message: str, username: Optional[str] = None):
        self.username = username
        who = f" for user {username!r}" if username else ""
        super().__init__(f"{message}{who}")


class NotAuthenticatedError(SSHError):
    """An operation was attempted before a successful authentication."""


class AlreadyConnectedError(SSHError):
    """connect()/connect_agent() called on an already authenticated session."""


# ── channels ────────────────────────────────────────────────────────────────

class ChannelError(SSHError):
    """Remote refused or failed to open a requested channel."""


class ExecRejectedError(ChannelError):
    """The exec request on an open channel was refused."""

    def __init__(self, command: str, detail: str = ""):
        self.command = command
        super().__init__(f"remote refused to execute {command!r}" + (f": {detail}" if detail else ""))


class StreamError(ChannelError):
    """I/O failure while draining an exec channel."""


# ── transfers ───────────────────────────────────────────────────────────────

class TransferError(SSHError):
    """I/O failure during upload/download after the channel was opened."""

    NOT_FOUND = "not_found"
    PERMISSION_DENIED = "permission_denied"
    IO = "io"

    reason = IO

    def __init__(self, path: str, detail: str = "", reason: Optional[str] = None):
        self.path = path
        if reason is not None:
            self.reason = reason
        msg = f"transfer failed for {path!r} [{self.reason}]"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)


class RemoteNotFoundError(TransferError):
    reason = TransferError.NOT_FOUND


class RemotePermissionError(TransferError):
    reason = TransferError.PERMISSION_DENIED


# ── local side ──────────────────────────────────────────────────────────────

class LocalIOError(SSHError):
    """Local file unreadable/unwritable."""

    def __init__(self, path: str, detail: str = ""):
        self.path = path
        super().__init__(f"local I/O error on {path!r}" + (f": {detail}" if detail else ""))


class DecodingError(SSHError):
    """Command output bytes are not valid UTF-8."""

    def __init__(self, command: str, detail: str = ""):
        self.command = command
        super().__init__(f"output of {command!r} is not valid UTF-8" + (f": {detail}" if detail else ""))
