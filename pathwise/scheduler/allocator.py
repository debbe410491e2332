"""
Resource allocator - tabular Q-learning over a fixed state grid.

State is (load level, memory headroom level), nine cells in total, each
holding a value per :class:`~pathwise._types.AllocationAction`.  Actions
are chosen epsilon-greedily; exploration never decays, so the allocator
keeps probing alternatives as traffic changes.

Rewards arrive after the request completes: the engine scores the
observed latency against the target and calls ``update_q_value``.
"""

from __future__ import annotations

import logging
import random
import threading
from typing import Any, Dict, Optional

from .._types import (
    Allocation,
    AllocationAction,
    AllocationState,
    Level,
    Priority,
    SystemResources,
)
from ..faults import AllocationFault

logger = logging.getLogger("pathwise.scheduler.allocator")

PRIORITY_MULTIPLIER = {
    Priority.HIGH: 1.5,
    Priority.NORMAL: 1.0,
    Priority.LOW: 0.5,
}

EXPANSIVE_MULTIPLIER = 1.3
CONSERVATIVE_MULTIPLIER = 0.8
BASE_SHARE = 0.1


def load_level(requests_per_minute: int) -> Level:
    if requests_per_minute < 50:
        return Level.LOW
    if requests_per_minute < 80:
        return Level.MEDIUM
    return Level.HIGH


def headroom_level(available_memory_mb: float) -> Level:
    if available_memory_mb < 1000:
        return Level.LOW
    if available_memory_mb < 5000:
        return Level.MEDIUM
    return Level.HIGH


def is_expansive(action: AllocationAction, state: AllocationState) -> bool:
    if action is AllocationAction.INCREASE:
        return True
    return action is AllocationAction.ADAPTIVE and state.load is Level.HIGH


class ResourceAllocator:
    """
    Epsilon-greedy Q-learning allocator.

    Usage::

        allocator = ResourceAllocator(epsilon=0.1, seed=1)
        allocation = allocator.allocate(load, system_resources(), Priority.NORMAL)
        ...
        allocator.update_q_value(allocation.state, allocation.strategy, reward)
    """

    def __init__(
        self,
        epsilon: float = 0.1,
        learning_rate: float = 0.1,
        discount: float = 0.9,
        seed: Optional[int] = None,
    ):
        if not (0.0 < epsilon < 1.0):
            raise AllocationFault(f"epsilon must be in (0, 1), got {epsilon}")
        self.epsilon = epsilon
        self.learning_rate = learning_rate
        self.discount = discount
        self._rng = random.Random(seed)
        self._lock = threading.Lock()
        self._q: Dict[str, Dict[AllocationAction, float]] = {
            AllocationState(load, headroom).key: {a: 0.0 for a in AllocationAction}
            for load in Level
            for headroom in Level
        }
        self._selections = 0
        self._explorations = 0
        self._updates = 0

    @staticmethod
    def state_for(load: int, resources: SystemResources) -> AllocationState:
        return AllocationState(load_level(load), headroom_level(resources.memory_mb))

    def allocate(
        self,
        load: int,
        resources: SystemResources,
        priority: Priority = Priority.NORMAL,
    ) -> Allocation:
        state = self.state_for(load, resources)
        action = self.select_action(state)

        priority_mult = PRIORITY_MULTIPLIER[priority]
        action_mult = EXPANSIVE_MULTIPLIER if is_expansive(action, state) else CONSERVATIVE_MULTIPLIER
        allocation = Allocation(
            memory_mb=int(round(resources.memory_mb * BASE_SHARE * priority_mult * action_mult)),
            cpu=int(round(resources.cpu * BASE_SHARE * priority_mult * action_mult)),
            workers=max(1, int(round(priority_mult))),
            strategy=action,
            state=state,
        )
        logger.debug(
            "Allocated %s for state %s (priority=%s): %dMB cpu=%d workers=%d",
            action.value, state.key, priority.value,
            allocation.memory_mb, allocation.cpu, allocation.workers,
        )
        return allocation

    def select_action(self, state: AllocationState) -> AllocationAction:
        values = self._row(state)
        with self._lock:
            self._selections += 1
            if self._rng.random() < self.epsilon:
                self._explorations += 1
                return self._rng.choice(list(AllocationAction))
            best = max(values.values())
            if values[AllocationAction.MAINTAIN] == best:
                return AllocationAction.MAINTAIN
            for action in AllocationAction:
                if values[action] == best:
                    return action
        return AllocationAction.MAINTAIN

    def update_q_value(
        self,
        state: AllocationState,
        action: AllocationAction,
        reward: float,
    ) -> float:
        """One-step Q update (terminal next state); returns the new value."""
        if not isinstance(action, AllocationAction):
            raise AllocationFault(f"unknown action {action!r}")
        values = self._row(state)
        with self._lock:
            current = values[action]
            updated = current + self.learning_rate * (reward + self.discount * 0.0 - current)
            values[action] = updated
            self._updates += 1
        return updated

    def q_value(self, state: AllocationState, action: AllocationAction) -> float:
        return self._row(state)[action]

    def _row(self, state: AllocationState) -> Dict[AllocationAction, float]:
        row = self._q.get(state.key)
        if row is None:
            raise AllocationFault(f"unknown state {state.key!r}")
        return row

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            selections = self._selections
            explorations = self._explorations
            updates = self._updates
            table = {
                key: {a.value: v for a, v in row.items()}
                for key, row in self._q.items()
            }
        return {
            "selections": selections,
            "explorations": explorations,
            "exploration_rate": explorations / selections if selections else 0.0,
            "updates": updates,
            "q_table": table,
        }


def latency_reward(observed_ms: float, target_ms: float) -> float:
    """Reward in [-1, 1]: positive when faster than target."""
    if target_ms <= 0:
        return 0.0
    return max(-1.0, min(1.0, (target_ms - observed_ms) / target_ms))
