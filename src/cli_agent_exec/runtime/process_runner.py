"""Process supervisor with watchdogs and reliable termination.

cli-agent-exec runtime module v0.1.0

This module provides:
- Cross-platform subprocess isolation (new session/process group)
- Hard wall-clock timeout and idle (no visible progress) timeout
- Real-time anomaly detection on stdout/stderr via OutputMonitor
- Reliable termination with graceful shutdown (SIGTERM -> grace -> SIGKILL)
- Parent shutdown signal forwarding, scoped to one execution
- Cancel-safe cleanup using asyncio.shield

Key design points:
- POSIX: start_new_session=True so the child's descendants share its group
- Windows: CREATE_NEW_PROCESS_GROUP; termination targets the pid directly
- Exactly one settle per execution: process.wait() and a returncode poll
  both feed an idempotent latch, so a missed or duplicated exit
  notification is harmless
- Every abort path (timeouts, detectors, parent signal, cancellation) goes
  through the same escalation, which runs at most once
"""

from __future__ import annotations

import asyncio
import codecs
import logging
import subprocess
import time
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import anyio

from .detectors import AbortFlags, AbortReason, OutputMonitor, abort_marker
from .signals import ParentSignalForwarder
from .terminator import IS_WINDOWS, KILL, TERM, Terminator, default_terminator, signal_name

__all__ = [
    "ProcessSpec",
    "ProcessOutcome",
    "ProcessSupervisor",
    "DEFAULT_IDLE_TIMEOUT",
    "DEFAULT_KILL_GRACE",
]

logger = logging.getLogger(__name__)

# Default timing (seconds)
DEFAULT_IDLE_TIMEOUT = 900.0
DEFAULT_IDLE_CHECK_INTERVAL = 5.0
DEFAULT_PROGRESS_INTERVAL = 30.0
DEFAULT_KILL_GRACE = 2.0  # seconds between SIGTERM and SIGKILL
DEFAULT_SETTLE_POLL_INTERVAL = 1.0
DEFAULT_DRAIN_TIMEOUT = 2.0
DEFAULT_CANCEL_POLL_INTERVAL = 0.2

READ_CHUNK_SIZE = 4096
MAX_STDERR_BYTES = 4 * 1024 * 1024
ERROR_SUMMARY_MAX_LENGTH = 240


@dataclass(frozen=True)
class ProcessSpec:
    """Description of a subprocess to run.

    Attributes:
        argv: Command line arguments (first element is the executable)
        cwd: Working directory for the process
        env: Complete environment for the child (None = inherit parent)
        stdin_bytes: Bytes written to stdin; None means stdin is /dev/null
    """

    argv: list[str]
    cwd: Path
    env: Mapping[str, str] | None = None
    stdin_bytes: bytes | None = None


@dataclass
class ProcessOutcome:
    """Everything observed about one settled child process.

    Attributes:
        returncode: Raw return code (negative when killed by a signal, None if never spawned)
        stdout: Decoded stdout
        stderr: Decoded stderr, without abort markers
        duration_ms: Wall-clock duration
        aborts: Abort flags raised during the run
        markers: Marker lines describing aborts and signal exits, in order
        spawn_error: OS error text when the process could not be started
    """

    returncode: int | None
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = 0
    aborts: AbortFlags = field(default_factory=AbortFlags)
    markers: list[str] = field(default_factory=list)
    spawn_error: str | None = None

    @property
    def exit_code(self) -> int | None:
        """Exit status, or None when the child did not exit normally."""
        if self.returncode is None or self.returncode < 0:
            return None
        return self.returncode

    @property
    def signal_name(self) -> str | None:
        if self.returncode is not None and self.returncode < 0:
            return signal_name(-self.returncode)
        return None

    @property
    def aborted(self) -> bool:
        return self.aborts.triggered

    def stderr_with_markers(self, *extra: str) -> str:
        """Join stderr, any extra diagnostic parts, and the marker lines."""
        parts = [self.stderr.strip(), *(p.strip() for p in extra)]
        parts.extend(self.markers)
        return "\n".join(p for p in parts if p)


class _SettleLatch:
    """One-shot settle event; later settle() calls are ignored."""

    def __init__(self) -> None:
        self._future: asyncio.Future[int | None] = asyncio.get_running_loop().create_future()

    @property
    def settled(self) -> bool:
        return self._future.done()

    def settle(self, returncode: int | None) -> bool:
        if self._future.done():
            return False
        self._future.set_result(returncode)
        return True

    async def wait(self) -> int | None:
        return await asyncio.shield(self._future)


@dataclass
class ProcessSupervisor:
    """Runs one child process end-to-end under watchdogs and detectors.

    Instances hold configuration only; each run() call gets its own state,
    so a supervisor may be reused sequentially or concurrently.

    Example:
        supervisor = ProcessSupervisor(
            label="Codex",
            timeout_seconds=600,
            on_stdout_line=print,
        )
        outcome = await supervisor.run(ProcessSpec(
            argv=["codex", "exec", "--json", "-"],
            cwd=Path("/workspace"),
            stdin_bytes=b"prompt text",
        ))
        if outcome.aborted:
            print(outcome.markers)
    """

    label: str = "Agent"
    timeout_seconds: float = 3600.0
    idle_timeout_seconds: float = DEFAULT_IDLE_TIMEOUT
    idle_check_interval: float = DEFAULT_IDLE_CHECK_INTERVAL
    progress_interval: float = DEFAULT_PROGRESS_INTERVAL
    kill_grace: float = DEFAULT_KILL_GRACE
    settle_poll_interval: float = DEFAULT_SETTLE_POLL_INTERVAL
    drain_timeout: float = DEFAULT_DRAIN_TIMEOUT
    cancel_poll_interval: float = DEFAULT_CANCEL_POLL_INTERVAL
    terminator: Terminator = field(default_factory=default_terminator)
    monitor: OutputMonitor | None = None
    on_stdout_line: Callable[[str], None] | None = None
    stderr_filter: Callable[[str], bool] | None = None
    forward_parent_signals: bool = True

    async def run(
        self,
        spec: ProcessSpec,
        *,
        cancel_scope: anyio.CancelScope | None = None,
    ) -> ProcessOutcome:
        """Spawn the child described by spec and supervise it until it settles.

        Args:
            spec: What to run
            cancel_scope: Optional anyio.CancelScope; cancelling it aborts the child

        Returns:
            ProcessOutcome. Spawn failures are reported via spawn_error, not raised.

        Raises:
            asyncio.CancelledError: If the calling task is cancelled (child is terminated first)
        """
        return await _Execution(self, spec, cancel_scope).run()


class _Execution:
    """Per-run state of a ProcessSupervisor."""

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        spec: ProcessSpec,
        cancel_scope: anyio.CancelScope | None,
    ) -> None:
        self.supervisor = supervisor
        self.spec = spec
        self.cancel_scope = cancel_scope
        self.label = supervisor.label

        self.process: asyncio.subprocess.Process | None = None
        self.flags = AbortFlags()
        self.markers: list[str] = []
        self._latch: _SettleLatch | None = None
        self._tasks: list[asyncio.Task[Any]] = []
        self._readers: list[asyncio.Task[Any]] = []
        self._stdout_parts: list[str] = []
        self._stderr_lines: deque[str] = deque()
        self._stderr_size = 0
        self._details_seen = 0
        self._term_sent = False
        self._escalating = False
        self._error_summary_logged = False
        self._started = 0.0
        self._last_progress = 0.0
        self._loop: asyncio.AbstractEventLoop | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def run(self) -> ProcessOutcome:
        self._loop = asyncio.get_running_loop()
        self._started = time.monotonic()
        self._last_progress = self._started

        try:
            self.process = await asyncio.create_subprocess_exec(
                *self.spec.argv,
                stdin=(
                    asyncio.subprocess.PIPE
                    if self.spec.stdin_bytes is not None
                    else asyncio.subprocess.DEVNULL
                ),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.spec.cwd,
                **self._build_subprocess_kwargs(),
            )
        except OSError as e:
            logger.warning(f"[{self.label}] Failed to spawn {self.spec.argv[0]!r}: {e}")
            return ProcessOutcome(
                returncode=None,
                duration_ms=self._elapsed_ms(),
                aborts=self.flags,
                spawn_error=f"Failed to spawn {self.spec.argv[0]}: {e}",
            )

        pid = self.process.pid
        logger.debug(f"[{self.label}] Started subprocess pid={pid} argv={self.spec.argv[0]} cwd={self.spec.cwd}")

        self._latch = _SettleLatch()
        forwarder = (
            ParentSignalForwarder(self._on_parent_signal)
            if self.supervisor.forward_parent_signals
            else None
        )

        try:
            if forwarder:
                forwarder.install()
            self._start_tasks()

            returncode = await self._latch.wait()
            logger.debug(f"[{self.label}] Subprocess settled pid={pid} returncode={returncode}")

            # Descendants may keep the pipes open after the leader exits
            _, pending = await asyncio.wait(self._readers, timeout=self.supervisor.drain_timeout)
            if pending:
                logger.debug(f"[{self.label}] Output pipes still open after exit, closing readers")
        finally:
            if forwarder:
                forwarder.uninstall()
            await self._safe_cleanup()

        return self._build_outcome(returncode)

    def _build_subprocess_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {}
        if self.spec.env is not None:
            kwargs["env"] = dict(self.spec.env)
        if IS_WINDOWS:
            kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            kwargs["start_new_session"] = True
        return kwargs

    def _start_tasks(self) -> None:
        sup = self.supervisor
        self._readers = [
            asyncio.create_task(self._read_stdout()),
            asyncio.create_task(self._read_stderr()),
        ]
        self._tasks.extend(self._readers)
        if self.spec.stdin_bytes is not None:
            self._tasks.append(asyncio.create_task(self._write_stdin()))
        self._tasks.append(asyncio.create_task(self._wait_exit()))
        self._tasks.append(asyncio.create_task(self._poll_exit()))
        self._tasks.append(asyncio.create_task(self._hard_timeout()))
        if sup.idle_timeout_seconds > 0:
            self._tasks.append(asyncio.create_task(self._idle_watchdog()))
        if sup.progress_interval > 0:
            self._tasks.append(asyncio.create_task(self._progress_log()))
        if self.cancel_scope is not None:
            self._tasks.append(asyncio.create_task(self._watch_cancel_scope()))

    def _build_outcome(self, returncode: int | None) -> ProcessOutcome:
        outcome = ProcessOutcome(
            returncode=returncode,
            stdout="".join(self._stdout_parts),
            stderr="".join(self._stderr_lines),
            duration_ms=self._elapsed_ms(),
            aborts=self.flags,
            markers=self.markers,
        )
        if outcome.signal_name:
            self.markers.append(f"[{self.label}] Process exited by signal: {outcome.signal_name}")
        return outcome

    def _elapsed_ms(self) -> int:
        return int((time.monotonic() - self._started) * 1000)

    # ------------------------------------------------------------------
    # Settle producers
    # ------------------------------------------------------------------

    async def _wait_exit(self) -> None:
        assert self.process is not None and self._latch is not None
        returncode = await self.process.wait()
        self._latch.settle(returncode)

    async def _poll_exit(self) -> None:
        assert self.process is not None and self._latch is not None
        while not self._latch.settled:
            await asyncio.sleep(self.supervisor.settle_poll_interval)
            if self.process.returncode is not None:
                self._latch.settle(self.process.returncode)

    # ------------------------------------------------------------------
    # I/O
    # ------------------------------------------------------------------

    async def _write_stdin(self) -> None:
        assert self.process is not None and self.process.stdin is not None
        stdin = self.process.stdin
        try:
            stdin.write(self.spec.stdin_bytes or b"")
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.debug(f"[{self.label}] stdin closed early: {e}")
        finally:
            stdin.close()

    async def _read_stdout(self) -> None:
        assert self.process is not None and self.process.stdout is not None
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        pending = ""
        monitor = self.supervisor.monitor

        while True:
            chunk = await self.process.stdout.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            self._last_progress = time.monotonic()
            text = decoder.decode(chunk)
            if not text:
                continue
            self._stdout_parts.append(text)

            if monitor is not None:
                reason = monitor.feed_stdout_chunk(text)
                if reason:
                    self._abort(reason)

            pending += text
            *lines, pending = pending.split("\n")
            for line in lines:
                self._handle_stdout_line(line.rstrip("\r"))

        tail = decoder.decode(b"", final=True)
        if tail:
            self._stdout_parts.append(tail)
            pending += tail
        if pending:
            self._handle_stdout_line(pending.rstrip("\r"))

    def _handle_stdout_line(self, line: str) -> None:
        callback = self.supervisor.on_stdout_line
        if callback is not None:
            try:
                callback(line)
            except Exception as e:
                logger.warning(f"[{self.label}] stdout line handler failed: {e}")

        monitor = self.supervisor.monitor
        if monitor is not None:
            reason = monitor.feed_stdout_line(line)
            if reason:
                self._abort(reason)

    async def _read_stderr(self) -> None:
        assert self.process is not None and self.process.stderr is not None
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        pending = ""

        while True:
            chunk = await self.process.stderr.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            pending += decoder.decode(chunk)
            *lines, pending = pending.split("\n")
            for line in lines:
                self._handle_stderr_line(line.rstrip("\r"))

        pending += decoder.decode(b"", final=True)
        if pending:
            self._handle_stderr_line(pending.rstrip("\r"))

    def _handle_stderr_line(self, line: str) -> None:
        stderr_filter = self.supervisor.stderr_filter
        if stderr_filter is not None and stderr_filter(line):
            return

        self._append_stderr(line + "\n")
        logger.debug(f"[{self.label}] stderr: {line}")

        # Only the first error-looking line counts as progress, so chatty
        # stderr cannot hide a stalled agent
        if not self._error_summary_logged and (line.startswith("ERROR") or " error=" in line):
            self._error_summary_logged = True
            self._last_progress = time.monotonic()
            logger.warning(f"[{self.label}] {line.strip()[:ERROR_SUMMARY_MAX_LENGTH]}")

        monitor = self.supervisor.monitor
        if monitor is not None:
            reason = monitor.feed_stderr_line(line)
            if reason:
                self._abort(reason)

    def _append_stderr(self, text: str) -> None:
        self._stderr_lines.append(text)
        self._stderr_size += len(text)
        while self._stderr_size > MAX_STDERR_BYTES and len(self._stderr_lines) > 1:
            self._stderr_size -= len(self._stderr_lines.popleft())

    # ------------------------------------------------------------------
    # Watchdogs
    # ------------------------------------------------------------------

    async def _hard_timeout(self) -> None:
        await asyncio.sleep(self.supervisor.timeout_seconds)
        logger.warning(
            f"[{self.label}] Hard timeout after {self.supervisor.timeout_seconds:g}s, terminating"
        )
        self._abort(AbortReason.TIMEOUT)

    async def _idle_watchdog(self) -> None:
        sup = self.supervisor
        window = min(sup.timeout_seconds, sup.idle_timeout_seconds)
        while True:
            await asyncio.sleep(sup.idle_check_interval)
            idle_for = time.monotonic() - self._last_progress
            if idle_for >= window:
                logger.warning(
                    f"[{self.label}] No visible progress for {idle_for:.0f}s, terminating"
                )
                self._abort(AbortReason.IDLE_TIMEOUT, f"{window:g}")
                return

    async def _progress_log(self) -> None:
        while True:
            await asyncio.sleep(self.supervisor.progress_interval)
            now = time.monotonic()
            logger.info(
                f"[{self.label}] Running... elapsed={now - self._started:.0f}s "
                f"idle={now - self._last_progress:.0f}s"
            )

    async def _watch_cancel_scope(self) -> None:
        assert self.cancel_scope is not None
        while not self.cancel_scope.cancel_called:
            await asyncio.sleep(self.supervisor.cancel_poll_interval)
        logger.info(f"[{self.label}] Cancellation requested")
        self._abort(AbortReason.CANCELLED)

    # ------------------------------------------------------------------
    # Abort and termination
    # ------------------------------------------------------------------

    def _abort(self, reason: AbortReason, detail: str = "") -> None:
        if not self.flags.set(reason):
            return

        monitor = self.supervisor.monitor
        if monitor is not None and len(monitor.details) > self._details_seen:
            self.markers.extend(monitor.details[self._details_seen:])
            self._details_seen = len(monitor.details)
        self.markers.append(abort_marker(self.label, reason, detail))

        if reason not in (AbortReason.TIMEOUT, AbortReason.IDLE_TIMEOUT):
            logger.warning(f"[{self.label}] Aborting run: {reason.value}")
        self._escalate()

    def _escalate(self) -> None:
        if self._escalating or self.process is None:
            return
        if self._latch is not None and self._latch.settled:
            return
        self._escalating = True
        if not self._term_sent:
            self._term_sent = True
            self.supervisor.terminator.terminate(self.process.pid, TERM)
        self._tasks.append(asyncio.create_task(self._kill_after_grace()))

    async def _kill_after_grace(self) -> None:
        assert self.process is not None and self._latch is not None
        try:
            await asyncio.wait_for(self._latch.wait(), timeout=self.supervisor.kill_grace)
        except asyncio.TimeoutError:
            logger.debug(f"[{self.label}] Grace period elapsed, sending SIGKILL pid={self.process.pid}")
            self.supervisor.terminator.terminate(self.process.pid, KILL)

    def _on_parent_signal(self, name: str) -> None:
        # Runs inside the signal handler: signal the child now, record later
        if self.process is not None and self.process.returncode is None and not self._term_sent:
            self._term_sent = True
            self.supervisor.terminator.terminate(self.process.pid, TERM)
        assert self._loop is not None
        self._loop.call_soon_threadsafe(self._abort, AbortReason.PARENT_SIGNAL, name)

    async def _safe_cleanup(self) -> None:
        """Cancel watchdogs and make sure the child is gone, shielded from cancellation."""
        try:
            await asyncio.shield(self._do_cleanup())
        except asyncio.CancelledError:
            await self._do_cleanup()
            raise

    async def _do_cleanup(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            if not task.done():
                task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        process = self.process
        if process is None or process.returncode is not None:
            return

        pid = process.pid
        logger.debug(f"[{self.label}] Terminating subprocess pid={pid}")
        terminator = self.supervisor.terminator
        if not self._term_sent:
            self._term_sent = True
            terminator.terminate(pid, TERM)
        try:
            await asyncio.wait_for(process.wait(), timeout=self.supervisor.kill_grace)
            return
        except asyncio.TimeoutError:
            pass
        terminator.terminate(pid, KILL)
        try:
            await asyncio.wait_for(process.wait(), timeout=1.0)
        except asyncio.TimeoutError:
            logger.warning(f"[{self.label}] Subprocess did not exit after kill pid={pid}")
