"""Runtime module for supervising agent subprocesses.

This module provides isolated process execution with watchdogs, real-time
output anomaly detection, parent signal forwarding and reliable
termination for CLI agent subprocesses.
"""

from __future__ import annotations

from .detectors import AbortFlags, AbortReason, DetectorConfig, OutputMonitor
from .process_runner import ProcessOutcome, ProcessSpec, ProcessSupervisor
from .signals import ParentSignalForwarder
from .terminator import DirectTerminator, ProcessGroupTerminator, Terminator, default_terminator

__all__ = [
    "AbortFlags",
    "AbortReason",
    "DetectorConfig",
    "OutputMonitor",
    "ProcessOutcome",
    "ProcessSpec",
    "ProcessSupervisor",
    "ParentSignalForwarder",
    "Terminator",
    "ProcessGroupTerminator",
    "DirectTerminator",
    "default_terminator",
]
