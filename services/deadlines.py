"""Soft time budgets for work that must finish inside a hard platform limit."""

from __future__ import annotations

import time
from dataclasses import dataclass


@dataclass
class Deadline:
    """Monotonic budget tracker.

    The cart discount function runs under a strict execution budget; check
    ``deadline.expired`` between cart lines and bail out with an empty result
    instead of letting the platform kill the run mid-checkout.
    """

    seconds: float

    def __post_init__(self) -> None:
        self._deadline = time.monotonic() + max(0.0, float(self.seconds))

    @classmethod
    def from_ms(cls, milliseconds: float) -> "Deadline":
        return cls(seconds=float(milliseconds) / 1000.0)

    @property
    def expired(self) -> bool:
        return time.monotonic() >= self._deadline
