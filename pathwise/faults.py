"""
Pathwise faults: structured, typed errors raised by the engine itself.

Errors raised by the wrapped downstream handler are never converted into
faults; they propagate unchanged.  Faults are reserved for problems the
engine owns: invalid configuration, misuse of the training API, and
scheduler lifecycle errors.

Fault Taxonomy::

    Fault (base)
    └── PathwiseFault
        ├── ConfigFault
        ├── TrainingFault
        ├── SchedulerFault
        └── AllocationFault
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class Severity(str, Enum):
    """
    Fault severity levels.

    Determines logging level and whether the host should abort startup.
    """
    INFO = "info"
    WARN = "warn"
    ERROR = "error"
    FATAL = "fatal"


class FaultDomain(str, Enum):
    """Functional area a fault belongs to."""
    CONFIG = "config"
    MODEL = "model"
    SCHEDULER = "scheduler"
    SYSTEM = "system"


DOMAIN_DEFAULTS = {
    FaultDomain.CONFIG: {"severity": Severity.FATAL, "retryable": False},
    FaultDomain.MODEL: {"severity": Severity.ERROR, "retryable": True},
    FaultDomain.SCHEDULER: {"severity": Severity.ERROR, "retryable": False},
    FaultDomain.SYSTEM: {"severity": Severity.FATAL, "retryable": False},
}


class Fault(Exception):
    """
    Base fault class - structured, typed fault object.

    Attributes:
        code: Stable machine-readable identifier (e.g., "CONFIG_INVALID")
        message: Human-readable summary
        severity: Fault severity (INFO, WARN, ERROR, FATAL)
        domain: Fault domain (CONFIG, MODEL, ...)
        retryable: Whether this fault can be retried
        metadata: Additional context data
    """

    def __init__(
        self,
        code: str,
        message: str,
        *,
        domain: FaultDomain,
        severity: Optional[Severity] = None,
        retryable: Optional[bool] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.domain = domain

        defaults = DOMAIN_DEFAULTS[domain]
        self.severity = severity or defaults["severity"]
        self.retryable = retryable if retryable is not None else defaults["retryable"]
        self.metadata = metadata or {}

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"

    def __repr__(self) -> str:
        return (
            f"Fault(code={self.code!r}, domain={self.domain.value}, "
            f"severity={self.severity.value})"
        )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize fault to a dictionary suitable for logging."""
        return {
            "code": self.code,
            "message": self.message,
            "domain": self.domain.value,
            "severity": self.severity.value,
            "retryable": self.retryable,
            "metadata": self.metadata,
        }


# ── Pathwise faults ──────────────────────────────────────────────────────

class PathwiseFault(Fault):
    """Base fault for all engine-owned errors."""

    def __init__(
        self,
        code: str,
        message: str,
        *,
        domain: FaultDomain = FaultDomain.SYSTEM,
        **kwargs: Any,
    ):
        super().__init__(code=code, message=message, domain=domain, **kwargs)


class ConfigFault(PathwiseFault):
    """Invalid or conflicting configuration, rejected at construction."""

    def __init__(self, key: str, reason: str, **kwargs: Any):
        extra_meta = kwargs.pop("metadata", {})
        super().__init__(
            code="CONFIG_INVALID",
            message=f"Invalid configuration '{key}': {reason}",
            domain=FaultDomain.CONFIG,
            metadata={"key": key, "reason": reason, **extra_meta},
            **kwargs,
        )
        self.key = key
        self.reason = reason


class TrainingFault(PathwiseFault):
    """Training was invoked with unusable arguments."""

    def __init__(self, model: str, reason: str, **kwargs: Any):
        super().__init__(
            code="TRAINING_FAILED",
            message=f"Training of '{model}' failed: {reason}",
            domain=FaultDomain.MODEL,
            metadata={"model": model, "reason": reason},
            **kwargs,
        )


class SchedulerFault(PathwiseFault):
    """Background scheduler lifecycle misuse."""

    def __init__(self, reason: str, **kwargs: Any):
        super().__init__(
            code="SCHEDULER_ERROR",
            message=f"Training scheduler error: {reason}",
            domain=FaultDomain.SCHEDULER,
            metadata={"reason": reason},
            **kwargs,
        )


class AllocationFault(PathwiseFault):
    """Allocator received an action or state outside its closed sets."""

    def __init__(self, reason: str, **kwargs: Any):
        super().__init__(
            code="ALLOCATION_INVALID",
            message=f"Resource allocation error: {reason}",
            domain=FaultDomain.MODEL,
            retryable=False,
            metadata={"reason": reason},
            **kwargs,
        )
