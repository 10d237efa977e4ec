"""Utilities (logging, retry)"""
from .logging import TaggedLog, log, set_verbose, tagged, vlog, warn
from .retry import retried

__all__ = [
    "log", "vlog", "warn", "set_verbose", "tagged", "TaggedLog",
    "retried",
]
