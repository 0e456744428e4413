"""Exceptions raised by the :mod:`catchup` package."""

from __future__ import annotations

from typing import Optional


class CatchUpError(Exception):
    """Base exception for catchup simulation errors."""


class ConfigurationError(CatchUpError, ValueError):
    """Invalid simulation configuration; raised before any trajectory runs."""


class TrajectoryError(CatchUpError, RuntimeError):
    """Recoverable failure confined to a single trajectory.

    Attributes:
        index: Ensemble index of the failed trajectory (None outside ensembles)
        attempt: Retry attempt that failed (0 for the first run)
        time: Simulated time reached when the failure was detected
    """

    def __init__(
        self,
        message: str,
        *,
        index: Optional[int] = None,
        attempt: int = 0,
        time: Optional[float] = None,
    ):
        super().__init__(message)
        self.index = index
        self.attempt = attempt
        self.time = time


class SchedulerStallError(TrajectoryError):
    """Thinning loop hit the consecutive-rejection limit without finishing."""


class TrajectoryAborted(TrajectoryError):
    """Trajectory stopped because an external deadline passed."""


__all__ = [
    "CatchUpError",
    "ConfigurationError",
    "TrajectoryError",
    "SchedulerStallError",
    "TrajectoryAborted",
]
