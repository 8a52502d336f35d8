"""Parent shutdown signal forwarding.

cli-agent-exec runtime module v0.1.0

While a child is running, SIGINT/SIGTERM/SIGHUP delivered to the parent
are forwarded to the child before the parent's own handling runs:

1. every active forwarder is notified, so each running child receives
   SIGTERM and each supervisor records the abort
2. the handlers that were in place before the first forwarder installed
   are restored
3. the original handler is chained; if it was the default action, the
   signal is re-raised so the parent can exit as it normally would

One process-wide dispatcher is shared by all forwarders. The original
handler of a signal is saved when the first forwarder takes it over and
restored when the last one releases it, so overlapping runs that finish
in any order never accumulate or strand handlers.
Python only allows signal.signal() in the main thread; elsewhere the
forwarder is a no-op.
"""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Callable
from types import FrameType
from typing import Any

__all__ = [
    "PARENT_SHUTDOWN_SIGNALS",
    "ParentSignalForwarder",
]

logger = logging.getLogger(__name__)

PARENT_SHUTDOWN_SIGNALS = ("SIGINT", "SIGTERM", "SIGHUP")

# signum -> handler active before the first forwarder took the signal over
_original_handlers: dict[int, Any] = {}
# signum -> forwarders currently listening, in install order
_listeners: dict[int, list[ParentSignalForwarder]] = {}


class ParentSignalForwarder:
    """Registers a callback for parent shutdown signals during one run.

    Example:
        forwarder = ParentSignalForwarder(on_signal=lambda name: abort(name))
        forwarder.install()
        try:
            await run_child()
        finally:
            forwarder.uninstall()
    """

    def __init__(
        self,
        on_signal: Callable[[str], None],
        signal_names: tuple[str, ...] = PARENT_SHUTDOWN_SIGNALS,
    ) -> None:
        self._on_signal = on_signal
        self._signal_names = signal_names
        self._signums: list[int] = []
        self._installed = False

    @property
    def installed(self) -> bool:
        return self._installed

    def install(self) -> bool:
        """Start listening. Returns False when not on the main thread."""
        if self._installed:
            return True
        if threading.current_thread() is not threading.main_thread():
            logger.debug("Not in main thread, parent signal forwarding disabled")
            return False

        for name in self._signal_names:
            signum = getattr(signal, name, None)
            if signum is None:
                continue
            if signum not in _listeners:
                try:
                    previous = signal.getsignal(signum)
                    signal.signal(signum, _dispatch)
                except (OSError, ValueError) as e:
                    logger.debug(f"Cannot install handler for {name}: {e}")
                    continue
                _original_handlers[signum] = previous
                _listeners[signum] = []
            _listeners[signum].append(self)
            self._signums.append(signum)

        self._installed = True
        logger.debug(f"Parent signal forwarding active for: {sorted(self._signums)}")
        return True

    def uninstall(self) -> None:
        """Stop listening; the last listener of a signal restores its original handler."""
        if not self._installed:
            return
        for signum in self._signums:
            listeners = _listeners.get(signum)
            if listeners is None:
                continue
            if self in listeners:
                listeners.remove(self)
            if not listeners:
                _release(signum)
        self._signums.clear()
        self._installed = False

    def notify(self, name: str) -> None:
        self._on_signal(name)


def _release(signum: int) -> None:
    """Restore the original handler unless someone else replaced ours."""
    _listeners.pop(signum, None)
    original = _original_handlers.pop(signum, signal.SIG_DFL)
    try:
        if signal.getsignal(signum) == _dispatch:
            signal.signal(signum, original if original is not None else signal.SIG_DFL)
    except (OSError, ValueError) as e:
        logger.debug(f"Cannot restore handler for signal {signum}: {e}")


def _default_handler(signum: int) -> Any:
    if signum == signal.SIGINT:
        return signal.default_int_handler
    return signal.SIG_DFL


def _dispatch(signum: int, frame: FrameType | None) -> None:
    name = signal.Signals(signum).name
    listeners = list(_listeners.get(signum, ()))
    previous = _original_handlers.get(signum, _default_handler(signum))

    errors: list[Exception] = []
    if listeners:
        logger.warning(f"[Signal] Parent received {name}, forwarding to {len(listeners)} child(ren)")
    for forwarder in listeners:
        try:
            forwarder.notify(name)
        except Exception as e:
            logger.error(f"[Signal] Forwarding {name} failed: {e}")
            errors.append(e)

    for forwarder in listeners:
        forwarder.uninstall()
    if signum in _listeners:
        _release(signum)
    elif signal.getsignal(signum) == _dispatch:
        # Reached with no listener registered: hand the signal back
        signal.signal(signum, previous)

    _chain(signum, frame, previous)
    if errors:
        raise errors[0]


def _chain(signum: int, frame: FrameType | None, previous: Any) -> None:
    if callable(previous):
        previous(signum, frame)
    elif previous == signal.SIG_DFL:
        signal.signal(signum, signal.SIG_DFL)
        signal.raise_signal(signum)
