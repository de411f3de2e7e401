"""Scoped logging context carried through contextvars.

Fields bound here (tenant_id, job_id, worker_id, ...) are merged into every log
record emitted inside the scope, including records from worker threads that
copy the context explicitly with ``contextvars.copy_context``.
"""

from contextvars import ContextVar, Token
from typing import Any, Dict, Optional


_log_context: ContextVar[Dict[str, Any]] = ContextVar("pulss_log_context", default={})


def get_log_context() -> Dict[str, Any]:
    """Return a copy of the fields bound in the current scope."""
    return dict(_log_context.get())


def bind_log_context(**fields) -> Token:
    """Bind additional fields on top of the current context.

    Returns:
        Token to pass to ``unbind_log_context`` to restore the previous state.
    """
    return _log_context.set({**_log_context.get(), **fields})


def unbind_log_context(token: Token) -> None:
    """Restore the context captured by ``bind_log_context``."""
    _log_context.reset(token)


def clear_log_context() -> None:
    """Drop every bound field. Mostly useful in tests."""
    _log_context.set({})


class log_context:
    """Context manager binding fields for the duration of a block.

    Example:
        >>> with log_context(tenant_id="t-1", job_id="j-9"):
        ...     logger.info("Dispatching")  # carries tenant_id and job_id
    """

    def __init__(self, **fields):
        self.fields = fields
        self.token: Optional[Token] = None

    def __enter__(self):
        self.token = bind_log_context(**self.fields)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.token is not None:
            unbind_log_context(self.token)
            self.token = None
        return False
