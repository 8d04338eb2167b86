"""
fleet_framework/status.py
──────────────────────────
Status: the result every plugin call hands back to the framework.

Why a value and not an exception
─────────────────────────────────
A Filter plugin rejecting a cluster is an ordinary outcome, not a failure.
Raising for it would make "first rejection wins" depend on where the
framework happens to catch things. Instead every extension point returns
a Status (or None, which reads as Success), and the framework inspects the
code explicitly:

  SUCCESS               → pass; same meaning as returning None
  SKIP                  → PreFilter/PreScore only: the plugin opts out of the
                          matching Filter/Score stage for this cycle
  CLUSTER_UNSCHEDULABLE → Filter only: this cluster is not eligible
  INTERNAL_ERROR        → something broke; the whole cycle aborts

Only INTERNAL_ERROR carries a cause. Non-error statuses are built with
Status.non_error(); errors with Status.from_error().
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple


class StatusCode(str, Enum):
    """Outcome of a single plugin call."""
    SUCCESS = "Success"
    INTERNAL_ERROR = "InternalError"
    CLUSTER_UNSCHEDULABLE = "ClusterUnschedulable"
    SKIP = "Skip"


@dataclass(frozen=True)
class Status:
    """
    A tagged plugin outcome.

    Attributes:
        code:        StatusCode of the outcome.
        plugin_name: Name of the plugin that produced it. Empty for statuses
                     the framework builds itself.
        reasons:     Human-readable explanations, in order.
        cause:       Wrapped exception. Only set for INTERNAL_ERROR.
    """
    code: StatusCode
    plugin_name: str = ""
    reasons: Tuple[str, ...] = ()
    cause: Optional[BaseException] = None

    @classmethod
    def non_error(cls, code: StatusCode, plugin_name: str, *reasons: str) -> "Status":
        """
        Build a Success / Skip / ClusterUnschedulable status.

        Raises:
            ValueError: if code is INTERNAL_ERROR; use from_error() for that.
        """
        if code == StatusCode.INTERNAL_ERROR:
            raise ValueError("non-error status cannot carry the InternalError code")
        return cls(code=code, plugin_name=plugin_name, reasons=tuple(reasons))

    @classmethod
    def from_error(cls, cause: BaseException, plugin_name: str, *reasons: str) -> "Status":
        """Wrap an underlying failure as an INTERNAL_ERROR status."""
        return cls(
            code=StatusCode.INTERNAL_ERROR,
            plugin_name=plugin_name,
            reasons=tuple(reasons) or (str(cause),),
            cause=cause,
        )

    # ── Inspectors ────────────────────────────────────────────────────────────

    @property
    def is_success(self) -> bool:
        return self.code == StatusCode.SUCCESS

    @property
    def is_skip(self) -> bool:
        return self.code == StatusCode.SKIP

    @property
    def is_cluster_unschedulable(self) -> bool:
        return self.code == StatusCode.CLUSTER_UNSCHEDULABLE

    @property
    def is_internal_error(self) -> bool:
        return self.code == StatusCode.INTERNAL_ERROR

    @property
    def reason(self) -> str:
        """All reasons joined into a single message."""
        return ", ".join(self.reasons)

    def __str__(self) -> str:
        prefix = f"{self.plugin_name}: " if self.plugin_name else ""
        return f"{prefix}{self.code.value}: {self.reason}" if self.reasons else f"{prefix}{self.code.value}"


def is_success(status: Optional[Status]) -> bool:
    """None and SUCCESS both mean "pass"."""
    return status is None or status.is_success
