"""Core functionality"""
from .session import Session, SessionState, CommandResult
from .transport import Transport, Connection, FileStat, list_agent_identities

__all__ = [
    "Session", "SessionState", "CommandResult",
    "Transport", "Connection", "FileStat", "list_agent_identities",
]
