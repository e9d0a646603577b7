"""
Core Module Package.

Infrastructure shared by the storage layer and the settlement engine.

Components:
- clock: Unified time abstraction
- exceptions: Base exception hierarchy
- log_setup: Root logger configuration
"""

from .clock import ClockFactory, ClockProtocol, MockClock, SystemClock
from .exceptions import (
    ConfigurationError,
    ErrorClassification,
    InvalidConfigError,
    Severity,
    TradingException,
)
from .log_setup import setup_logging

__all__ = [
    "ClockFactory",
    "ClockProtocol",
    "MockClock",
    "SystemClock",
    "ConfigurationError",
    "ErrorClassification",
    "InvalidConfigError",
    "Severity",
    "TradingException",
    "setup_logging",
]
