"""Cross-platform child termination strategies.

cli-agent-exec runtime module v0.1.0

Key design points:
- POSIX: children lead their own session, so the whole group is signalled
  with os.killpg; if that fails, fall back to the pid alone
- Windows: no process groups to signal; the pid is killed directly
- The strategy is chosen once, when the supervisor is constructed
"""

from __future__ import annotations

import logging
import os
import signal
import sys
from typing import Protocol

__all__ = [
    "IS_WINDOWS",
    "TERM",
    "KILL",
    "Terminator",
    "ProcessGroupTerminator",
    "DirectTerminator",
    "default_terminator",
    "signal_name",
]

logger = logging.getLogger(__name__)

IS_WINDOWS = sys.platform == "win32"

TERM = "SIGTERM"
KILL = "SIGKILL"


def signal_name(signum: int) -> str:
    try:
        return signal.Signals(signum).name
    except ValueError:
        return f"SIG{signum}"


class Terminator(Protocol):
    """Sends a termination signal ("SIGTERM" or "SIGKILL") to a child."""

    def terminate(self, pid: int, sig: str) -> None: ...


class ProcessGroupTerminator:
    """Signal the child's process group, falling back to the pid."""

    def terminate(self, pid: int, sig: str) -> None:
        signum = getattr(signal, sig)
        try:
            os.killpg(pid, signum)
            logger.debug(f"Sent {sig} to process group pgid={pid}")
            return
        except ProcessLookupError:
            # Group gone; the leader may still be a zombie awaiting reap
            pass
        except OSError as e:
            logger.debug(f"killpg failed for pgid={pid}, falling back to pid: {e}")

        try:
            os.kill(pid, signum)
            logger.debug(f"Sent {sig} to pid={pid}")
        except ProcessLookupError:
            logger.debug(f"Process already exited pid={pid}")
        except OSError as e:
            logger.warning(f"Failed to send {sig} to pid={pid}: {e}")


class DirectTerminator:
    """Kill the pid directly, for platforms without process groups."""

    def terminate(self, pid: int, sig: str) -> None:
        # Windows has no SIGKILL; os.kill with SIGTERM calls TerminateProcess
        signum = getattr(signal, sig, signal.SIGTERM)
        try:
            os.kill(pid, signum)
            logger.debug(f"Sent {sig} to pid={pid}")
        except ProcessLookupError:
            logger.debug(f"Process already exited pid={pid}")
        except OSError as e:
            logger.warning(f"Failed to send {sig} to pid={pid}: {e}")


def default_terminator() -> Terminator:
    if IS_WINDOWS or not hasattr(os, "killpg"):
        return DirectTerminator()
    return ProcessGroupTerminator()
