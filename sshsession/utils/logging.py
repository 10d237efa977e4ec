"""
Logging utilities for sshsession.

Lines go to stdout as ``[HH:MM:SS] [TAG] message``. The library logs at
verbose level only, so nothing is printed unless the CLI (or a caller)
turns verbose mode on.
"""
from datetime import datetime
from typing import Optional

_verbose = False


def set_verbose(verbose: bool):
    """Set the verbose flag"""
    global _verbose
    _verbose = verbose


def is_verbose() -> bool:
    return _verbose


def _format(msg: str, tag: Optional[str]) -> str:
    ts = datetime.now().strftime("%H:%M:%S")
    if tag:
        return f"[{ts}] [{tag}] {msg}"
    return f"[{ts}] {msg}"


def log(msg: str, tag: Optional[str] = None):
    """Log a message with timestamp and optional [tag]"""
    print(_format(msg, tag), flush=True)


def vlog(msg: str, tag: Optional[str] = None):
    """Log a verbose message (only if verbose mode is enabled)"""
    if _verbose:
        log(msg, tag)


def warn(msg: str, tag: Optional[str] = None):
    """Log a warning message; warnings ignore the verbose flag"""
    log(f"⚠  {msg}", tag)


class TaggedLog:
    """log/vlog/warn bound to one component tag, e.g. TaggedLog("SSH")."""

    def __init__(self, tag: str):
        self.tag = tag

    def __repr__(self):
        return f"<TaggedLog [{self.tag}]>"

    def log(self, msg: str):
        log(msg, self.tag)

    def vlog(self, msg: str):
        vlog(msg, self.tag)

    def warn(self, msg: str):
        warn(msg, self.tag)


_tagged: dict = {}


def tagged(tag: str) -> TaggedLog:
    """Shared TaggedLog for *tag*."""
    if tag not in _tagged:
        _tagged[tag] = TaggedLog(tag)
    return _tagged[tag]
