"""
Retry decorator for caller-side network operations
"""
import functools
import time
from .logging import log, warn
from .. import config as _cfg


def retried(fn=None, *, retry_on=(Exception,)):
    """
    Decorator: retry fn up to RETRY_MAX times with exponential back-off.

    Usable bare (``@retried``) or with the exception types worth retrying
    (``@retried(retry_on=(SSHConnectionError,))``); anything else propagates
    on the first failure.
    """

    def decorate(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            delay = _cfg.RETRY_BASE_DELAY
            attempts = max(1, _cfg.RETRY_MAX)
            for attempt in range(1, attempts + 1):
                try:
                    return func(*args, **kwargs)
                except retry_on as exc:
                    if attempt == attempts:
                        raise
                    warn(f"{func.__name__} failed (attempt {attempt}/{attempts}): {exc}")
                    log(f"  retrying in {delay:.0f}s …")
                    time.sleep(delay)
                    delay = min(delay * 2, 60)

        return wrapper

    if fn is not None:
        return decorate(fn)
    return decorate
