"""
Scheduling - resource allocation, health scoring, auto-healing and the
background training scheduler.
"""

from .allocator import ResourceAllocator, latency_reward
from .balancer import HealthScorer
from .healing import AutoHealer
from .training import ScheduleHandle, TrainingReport, TrainingScheduler

__all__ = [
    "ResourceAllocator",
    "latency_reward",
    "HealthScorer",
    "AutoHealer",
    "ScheduleHandle",
    "TrainingReport",
    "TrainingScheduler",
]
