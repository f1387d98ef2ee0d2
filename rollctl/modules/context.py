"""Cancellation signal shared by every wait in one invocation."""
import threading
from typing import Optional

from rollctl.errors import OperationCancelledError


class OperationContext:
    """Carries an external cancellation signal.

    Every wait loop calls ``raise_if_cancelled`` before each unit of work and
    after each blocking step, so a cancellation always wins over a timeout or
    a success that resolves at the same moment.
    """

    def __init__(self):
        self._done = threading.Event()
        self._reason: Optional[str] = None

    @property
    def done(self) -> threading.Event:
        """Event set once the context is cancelled."""
        return self._done

    @property
    def cancelled(self) -> bool:
        return self._done.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: str = 'operation cancelled') -> None:
        if not self._done.is_set():
            self._reason = reason
            self._done.set()

    def raise_if_cancelled(self) -> None:
        if self._done.is_set():
            raise OperationCancelledError(self._reason or 'operation cancelled')

    @classmethod
    def cancelled_context(cls, reason: str = 'operation cancelled') -> 'OperationContext':
        """Return a context that is already cancelled."""
        ctx = cls()
        ctx.cancel(reason)
        return ctx
