"""
Anomaly detection - statistical baselines and a reconstruction network.
"""

from .neural import NeuralDetector, NeuralState
from .statistical import StatisticalDetector, Thresholds, compute_baseline

__all__ = [
    "NeuralDetector",
    "NeuralState",
    "StatisticalDetector",
    "Thresholds",
    "compute_baseline",
]
