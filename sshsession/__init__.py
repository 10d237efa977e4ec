"""
sshsession  —  a small SSH session façade over paramiko
"""
from .core import Session, SessionState, CommandResult, FileStat, list_agent_identities
from .errors import (
    SSHError,
    SSHConnectionError,
    AuthenticationError,
    NotAuthenticatedError,
    AlreadyConnectedError,
    ChannelError,
    ExecRejectedError,
    StreamError,
    TransferError,
    RemoteNotFoundError,
    RemotePermissionError,
    LocalIOError,
    DecodingError,
)

__version__ = "0.3.0"

__all__ = [
    "Session", "SessionState", "CommandResult", "FileStat", "list_agent_identities",
    "SSHError", "SSHConnectionError", "AuthenticationError", "NotAuthenticatedError",
    "AlreadyConnectedError", "ChannelError", "ExecRejectedError", "StreamError",
    "TransferError", "RemoteNotFoundError", "RemotePermissionError",
    "LocalIOError", "DecodingError",
]
