"""Real-time anomaly detectors for agent output.

cli-agent-exec runtime module v0.1.0

Detectors consume the live output stream of one child process and report
an AbortReason as soon as the agent is stuck or asks for something the
engine cannot provide:
- Repetition ("doom loop"): identical or periodically repeating lines
- Excessive planning chatter: too many consecutive "I will ..." lines
- Unsupported pseudo tool calls (todoread/todowrite)
- Long-running foreground dev/watch/start commands
- Interactive external_directory permission prompts
- Provider quota exhaustion on stderr

All state is per execution and discarded when the process settles.
"""

from __future__ import annotations

import re
from collections import deque
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum

__all__ = [
    "AbortReason",
    "AbortFlags",
    "DetectorConfig",
    "RepetitionDetector",
    "PlanningChatterDetector",
    "PermissionPromptDetector",
    "OutputMonitor",
    "normalize_line",
    "normalize_for_prompt_detection",
    "has_repeated_pattern",
    "is_unsupported_tool_call",
    "is_long_running_command",
    "is_quota_exceeded_error",
    "abort_marker",
    "DOOM_LOOP_MIN_LINE_LENGTH",
]

# Lines this short ("Done.", "OK") repeat legitimately
DOOM_LOOP_MIN_LINE_LENGTH = 10
MAX_NORMALIZED_LINE_LENGTH = 200

_ANSI_RE = re.compile(r"\x1b\[[0-9;?]*[ -/]*[@-~]")
_CONTROL_RE = re.compile(r"[\x00-\x08\x0b-\x1f\x7f]")
_WHITESPACE_RE = re.compile(r"\s+")

PLANNING_PREFIXES = ("i will ", "i'll ", "i am going to ", "let me ")

_UNSUPPORTED_TOOL_RE = re.compile(r"\[tool_call:\s*(todo(?:read|write))\b", re.IGNORECASE)
_BASH_TOOL_RE = re.compile(r"\[tool_call:\s*bash\b", re.IGNORECASE)
_LONG_RUNNING_RE = re.compile(
    r"\b(?:pnpm|npm|yarn|bun)\b.*\b(?:dev|watch|start)\b", re.IGNORECASE
)

_PERMISSION_PROMPT_RE = re.compile(r"permission required:\s*external_directory", re.IGNORECASE)
_PERMISSION_HINTS = ("permission required", "allow once", "always allow", "reject")

QUOTA_ERROR_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"quota exceeded", re.IGNORECASE),
    re.compile(r"exceeded your current quota", re.IGNORECASE),
    re.compile(r"generate_requests_per_model_per_day", re.IGNORECASE),
    re.compile(r"resource_exhausted", re.IGNORECASE),
    re.compile(r"quotafailure", re.IGNORECASE),
    re.compile(r"retryinfo", re.IGNORECASE),
    re.compile(r"generate_content_paid_tier_input_token_count", re.IGNORECASE),
)


class AbortReason(str, Enum):
    """Why the supervisor terminated a child early."""

    TIMEOUT = "timeout"
    IDLE_TIMEOUT = "idle_timeout"
    QUOTA = "quota"
    DOOM_LOOP = "doom_loop"
    PERMISSION_PROMPT = "permission_prompt"
    PARENT_SIGNAL = "parent_signal"
    CANCELLED = "cancelled"


def abort_marker(label: str, reason: AbortReason, detail: str = "") -> str:
    """Build the greppable stderr marker for an abort reason."""
    if reason is AbortReason.TIMEOUT:
        return f"[{label}] Timeout exceeded"
    if reason is AbortReason.IDLE_TIMEOUT:
        return f"[{label}] Idle timeout exceeded ({detail}s without visible progress)"
    if reason is AbortReason.QUOTA:
        return f"[{label}] Quota limit reached"
    if reason is AbortReason.DOOM_LOOP:
        return f"[{label}] Doom loop detected"
    if reason is AbortReason.PERMISSION_PROMPT:
        return f"[{label}] external_directory permission prompt blocked the run"
    if reason is AbortReason.PARENT_SIGNAL:
        return f"[{label}] Parent process received {detail or 'signal'}. Terminating child process"
    return f"[{label}] Execution cancelled"


@dataclass
class AbortFlags:
    """Monotonic abort flags; once set, a flag is never cleared."""

    timed_out: bool = False
    idle_timed_out: bool = False
    quota_exceeded: bool = False
    doom_loop: bool = False
    permission_blocked: bool = False
    parent_signal: bool = False
    cancelled: bool = False

    _FIELDS = {
        AbortReason.TIMEOUT: "timed_out",
        AbortReason.IDLE_TIMEOUT: "idle_timed_out",
        AbortReason.QUOTA: "quota_exceeded",
        AbortReason.DOOM_LOOP: "doom_loop",
        AbortReason.PERMISSION_PROMPT: "permission_blocked",
        AbortReason.PARENT_SIGNAL: "parent_signal",
        AbortReason.CANCELLED: "cancelled",
    }

    def set(self, reason: AbortReason) -> bool:
        """Set the flag for reason. Returns False if it was already set."""
        name = self._FIELDS[reason]
        if getattr(self, name):
            return False
        setattr(self, name, True)
        return True

    def is_set(self, reason: AbortReason) -> bool:
        return getattr(self, self._FIELDS[reason])

    @property
    def triggered(self) -> bool:
        return any(getattr(self, name) for name in self._FIELDS.values())

    @property
    def reasons(self) -> list[AbortReason]:
        return [reason for reason, name in self._FIELDS.items() if getattr(self, name)]


@dataclass(frozen=True)
class DetectorConfig:
    """Thresholds for the content detectors.

    Attributes:
        window: Number of recent normalized lines kept for repetition checks
        identical_threshold: Occurrences of one line that count as a loop (<= 0 disables)
        pattern_max_length: Longest repeating block checked, in lines
        pattern_repeat_threshold: Consecutive repeats of a block that count as a loop
        max_planning_lines: Consecutive planning lines that abort (<= 0 disables)
    """

    window: int = 64
    identical_threshold: int = 5
    pattern_max_length: int = 12
    pattern_repeat_threshold: int = 4
    max_planning_lines: int = 10


def normalize_line(line: str) -> str:
    """Strip ANSI and control characters, collapse whitespace, cap length."""
    text = _ANSI_RE.sub("", line)
    text = _CONTROL_RE.sub(" ", text)
    text = _WHITESPACE_RE.sub(" ", text).strip()
    return text[:MAX_NORMALIZED_LINE_LENGTH]


def normalize_for_prompt_detection(text: str) -> str:
    text = _ANSI_RE.sub("", text)
    return _WHITESPACE_RE.sub(" ", text).strip().lower()


def has_repeated_pattern(
    lines: Sequence[str],
    max_pattern_length: int,
    repeat_threshold: int,
) -> bool:
    """Check whether the tail of lines is one block repeated repeat_threshold times.

    Args:
        lines: Window of normalized lines, oldest first
        max_pattern_length: Longest block length to try
        repeat_threshold: Required number of consecutive repeats

    Returns:
        True if some block length L in 1..max_pattern_length repeats
    """
    if repeat_threshold < 2 or max_pattern_length < 1:
        return False

    total = len(lines)
    for length in range(1, max_pattern_length + 1):
        span = length * repeat_threshold
        if span > total:
            break
        tail = lines[total - span:]
        block = tail[:length]
        if all(tail[i] == block[i % length] for i in range(length, span)):
            return True
    return False


class RepetitionDetector:
    """Sliding-window doom loop detector."""

    def __init__(self, config: DetectorConfig | None = None) -> None:
        self._config = config or DetectorConfig()
        self._window: deque[str] = deque(maxlen=max(1, self._config.window))

    def feed(self, line: str) -> bool:
        """Feed one raw stdout line. Returns True when a loop is detected."""
        normalized = normalize_line(line)
        if len(normalized) <= DOOM_LOOP_MIN_LINE_LENGTH:
            return False

        self._window.append(normalized)
        config = self._config

        if config.identical_threshold > 0:
            occurrences = sum(1 for seen in self._window if seen == normalized)
            if occurrences >= config.identical_threshold:
                return True

        return has_repeated_pattern(
            list(self._window),
            config.pattern_max_length,
            config.pattern_repeat_threshold,
        )


class PlanningChatterDetector:
    """Counts consecutive first-person future-intent lines."""

    def __init__(self, max_lines: int = 10) -> None:
        self.max_lines = max_lines
        self.count = 0

    def feed(self, line: str) -> bool:
        text = normalize_line(line).lower()
        if not text:
            return False
        if text.startswith(PLANNING_PREFIXES):
            self.count += 1
        else:
            self.count = 0
        return self.max_lines > 0 and self.count >= self.max_lines


class PermissionPromptDetector:
    """Detects interactive external_directory permission prompts."""

    def feed(self, text: str) -> bool:
        normalized = normalize_for_prompt_detection(text)
        if not normalized:
            return False
        if _PERMISSION_PROMPT_RE.search(normalized):
            return True
        if "external_directory" not in normalized:
            return False
        return any(hint in normalized for hint in _PERMISSION_HINTS)


def is_unsupported_tool_call(line: str) -> str | None:
    """Return the pseudo tool name if line invokes an unsupported todo tool."""
    match = _UNSUPPORTED_TOOL_RE.search(line)
    return match.group(1).lower() if match else None


def is_long_running_command(line: str) -> bool:
    return bool(_BASH_TOOL_RE.search(line) and _LONG_RUNNING_RE.search(line))


def is_quota_exceeded_error(text: str) -> bool:
    return any(pattern.search(text) for pattern in QUOTA_ERROR_PATTERNS)


@dataclass
class OutputMonitor:
    """Runs every content detector over one execution's output.

    Each feed method returns the AbortReason that should terminate the
    child, or None. Detail lines explaining a doom loop are collected in
    ``details`` for the supervisor to append before the marker.
    Once a reason has been returned the monitor is spent: later feeds return
    None without touching the detectors or ``details``.
    """

    config: DetectorConfig = field(default_factory=DetectorConfig)
    details: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        self._repetition = RepetitionDetector(self.config)
        self._planning = PlanningChatterDetector(self.config.max_planning_lines)
        self._permission = PermissionPromptDetector()
        self._aborted: AbortReason | None = None

    @property
    def aborted(self) -> AbortReason | None:
        return self._aborted

    def _stop(self, reason: AbortReason | None) -> AbortReason | None:
        if reason is not None:
            self._aborted = reason
        return reason

    def feed_stdout_chunk(self, chunk: str) -> AbortReason | None:
        if self._aborted is not None:
            return None
        return self._stop(self._scan_stdout_chunk(chunk))

    def feed_stdout_line(self, line: str) -> AbortReason | None:
        if self._aborted is not None:
            return None
        return self._stop(self._scan_stdout_line(line))

    def feed_stderr_line(self, line: str) -> AbortReason | None:
        if self._aborted is not None:
            return None
        return self._stop(self._scan_stderr_line(line))

    def _scan_stdout_chunk(self, chunk: str) -> AbortReason | None:
        if self._permission.feed(chunk):
            return AbortReason.PERMISSION_PROMPT
        return None

    def _scan_stdout_line(self, line: str) -> AbortReason | None:
        tool = is_unsupported_tool_call(line)
        if tool:
            self.details.append(f"Unsupported pseudo tool call detected: {tool}")
            return AbortReason.DOOM_LOOP

        if is_long_running_command(line):
            self.details.append("Long-running dev/watch/start command detected in tool call")
            return AbortReason.DOOM_LOOP

        if self._planning.feed(line):
            self.details.append(
                f"Excessive planning chatter detected ({self._planning.count} lines)"
            )
            return AbortReason.DOOM_LOOP

        if self._repetition.feed(line):
            return AbortReason.DOOM_LOOP

        if self._permission.feed(line):
            return AbortReason.PERMISSION_PROMPT

        return None

    def _scan_stderr_line(self, line: str) -> AbortReason | None:
        if is_quota_exceeded_error(line):
            return AbortReason.QUOTA
        if self._permission.feed(line):
            return AbortReason.PERMISSION_PROMPT
        return None
