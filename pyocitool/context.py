import threading

from pyocitool.errors import CancelledError


class Context:
    """Cooperative cancellation signal.

    Long running loops call `check()` before handling the next item,
    any other thread may call `cancel()`.
    """

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def check(self):
        if self._event.is_set():
            raise CancelledError("operation cancelled")


def check(ctx: Context | None):
    """Raise CancelledError if ctx is set and cancelled"""
    if ctx is not None:
        ctx.check()
