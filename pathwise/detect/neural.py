"""
Neural anomaly detector.

A small autoencoder-style network (5 → hidden → 5, sigmoid activations)
trained with per-sample SGD to reconstruct min–max normalised request
features::

    [duration_ms, memory_delta_bytes, cpu_micros, response_size_bytes, query_count]

A sample whose mean absolute reconstruction error exceeds the threshold is
anomalous.  Weights and normalisation bounds live in an immutable
:class:`NeuralState` that training replaces wholesale, so detection on
the request path never observes a half-trained network.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np

from .._types import MetricSample, NeuralVerdict
from ..faults import TrainingFault

logger = logging.getLogger("pathwise.detect.neural")

N_FEATURES = 5

# A feature that barely varied in training still normalises over at least
# this fraction of its magnitude (and never less than one raw unit).
MIN_RELATIVE_SPAN = 0.1


def _sigmoid(x: np.ndarray) -> np.ndarray:
    return 1.0 / (1.0 + np.exp(-np.clip(x, -500.0, 500.0)))


def feature_span(lo: np.ndarray, hi: np.ndarray) -> np.ndarray:
    """Normalisation span per feature: the trained range, floored."""
    magnitude = np.maximum(np.abs(lo), np.abs(hi))
    floor = np.maximum(MIN_RELATIVE_SPAN * magnitude, 1.0)
    return np.maximum(hi - lo, floor)


@dataclass(frozen=True, eq=False)
class NeuralState:
    w_ih: np.ndarray
    w_ho: np.ndarray
    b_h: np.ndarray
    b_o: np.ndarray
    learning_rate: float
    feature_min: np.ndarray
    feature_max: np.ndarray
    trained: bool = False

    def normalise(self, features: np.ndarray) -> np.ndarray:
        return (features - self.feature_min) / feature_span(self.feature_min, self.feature_max)

    def forward(self, x: np.ndarray):
        hidden = _sigmoid(x @ self.w_ih + self.b_h)
        output = _sigmoid(hidden @ self.w_ho + self.b_o)
        return hidden, output


class NeuralDetector:
    """
    Reconstruction-error anomaly detector.

    Usage::

        detector = NeuralDetector(seed=7)
        losses = detector.train(store.snapshot(), epochs=10)
        verdict = detector.detect_anomaly(sample)
    """

    def __init__(
        self,
        hidden_size: int = 8,
        learning_rate: float = 0.1,
        threshold: float = 0.3,
        min_training_samples: int = 20,
        max_training_samples: int = 2000,
        seed: Optional[int] = None,
    ):
        self.hidden_size = hidden_size
        self.threshold = threshold
        self.min_training_samples = min_training_samples
        self.max_training_samples = max_training_samples
        self._rng = np.random.default_rng(seed)
        self._state = self._initial_state(learning_rate)

    @property
    def state(self) -> NeuralState:
        return self._state

    @property
    def trained(self) -> bool:
        return self._state.trained

    def _initial_state(self, learning_rate: float) -> NeuralState:
        h = self.hidden_size
        return NeuralState(
            w_ih=self._rng.uniform(-0.5, 0.5, size=(N_FEATURES, h)),
            w_ho=self._rng.uniform(-0.5, 0.5, size=(h, N_FEATURES)),
            b_h=np.zeros(h),
            b_o=np.zeros(N_FEATURES),
            learning_rate=learning_rate,
            feature_min=np.zeros(N_FEATURES),
            feature_max=np.ones(N_FEATURES),
            trained=False,
        )

    def train(self, data: Sequence[MetricSample], epochs: int = 10) -> List[float]:
        """
        Fit the network to ``data`` and swap the new state in.

        Only the most recent ``max_training_samples`` samples are used.

        Returns:
            Mean absolute reconstruction error per epoch, or ``[]`` when
            there is too little data to train.

        Raises:
            TrainingFault: ``epochs`` is less than 1.
        """
        if epochs < 1:
            raise TrainingFault("neural_detector", f"epochs must be >= 1, got {epochs}")
        if len(data) < self.min_training_samples:
            logger.debug(
                "Skipping neural training: %d samples (< %d)",
                len(data), self.min_training_samples,
            )
            return []

        recent = data[-self.max_training_samples:]
        raw = np.array([s.features() for s in recent], dtype=float)
        current = self._state

        lo = raw.min(axis=0)
        hi = raw.max(axis=0)
        w_ih = current.w_ih.copy()
        w_ho = current.w_ho.copy()
        b_h = current.b_h.copy()
        b_o = current.b_o.copy()
        lr = current.learning_rate

        x_all = (raw - lo) / feature_span(lo, hi)

        losses: List[float] = []
        for _ in range(epochs):
            total = 0.0
            for idx in self._rng.permutation(len(x_all)):
                x = x_all[idx]
                hidden = _sigmoid(x @ w_ih + b_h)
                output = _sigmoid(hidden @ w_ho + b_o)
                error = output - x
                total += float(np.mean(np.abs(error)))

                delta_o = error * output * (1.0 - output)
                delta_h = (w_ho @ delta_o) * hidden * (1.0 - hidden)
                w_ho -= lr * np.outer(hidden, delta_o)
                b_o -= lr * delta_o
                w_ih -= lr * np.outer(x, delta_h)
                b_h -= lr * delta_h
            losses.append(total / len(x_all))

        self._state = NeuralState(
            w_ih=w_ih,
            w_ho=w_ho,
            b_h=b_h,
            b_o=b_o,
            learning_rate=lr,
            feature_min=lo,
            feature_max=hi,
            trained=True,
        )
        logger.info(
            "Neural detector trained on %d samples: loss %.4f -> %.4f over %d epochs",
            len(x_all), losses[0], losses[-1], epochs,
        )
        return losses

    def reconstruction_error(self, sample: MetricSample) -> float:
        state = self._state
        x = state.normalise(np.array(sample.features(), dtype=float))
        _, output = state.forward(x)
        return float(np.mean(np.abs(output - x)))

    def detect_anomaly(self, sample: MetricSample) -> NeuralVerdict:
        if not self._state.trained:
            return NeuralVerdict(is_anomaly=False, confidence=0.0, score=0.0)
        error = self.reconstruction_error(sample)
        return NeuralVerdict(
            is_anomaly=error > self.threshold,
            confidence=min(error / self.threshold, 1.0),
            score=error,
        )
