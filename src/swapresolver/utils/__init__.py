"""Utility modules for swapresolver."""

from swapresolver.utils.clock import Clock, ManualClock
from swapresolver.utils.locks import FlowLockRegistry
from swapresolver.utils.retry import call_with_retry

__all__ = ["Clock", "ManualClock", "FlowLockRegistry", "call_with_retry"]
