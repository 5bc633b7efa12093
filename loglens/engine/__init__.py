"""
Engine layer - correlation, SLA, auto-resolution and analytics.
"""

from .analytics import AnalyticsEngine
from .correlation import CorrelationEngine
from .locks import KeyedLock
from .scheduler import AutoResolutionScheduler, SweepResult
from .sla import SLAMonitor, SLAStatus, check_breach

__all__ = [
    "AnalyticsEngine",
    "AutoResolutionScheduler",
    "CorrelationEngine",
    "KeyedLock",
    "SLAMonitor",
    "SLAStatus",
    "SweepResult",
    "check_breach",
]
