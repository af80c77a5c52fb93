"""
Progress composition for two-phase jobs.

A remote job downloads first and encodes second; each phase reports its own
0-100 value. Fetch fills the first half of the job's bar and encode the
second half. Local jobs have no fetch phase and use the encoder's value
as-is (see clamp_percent).
"""

import math
from enum import Enum


class Phase(str, Enum):
    FETCH = "fetch"
    ENCODE = "encode"


FETCH_SHARE = 0.5
FETCH_DONE = 50


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _clamp(value, low, high):
    if isinstance(value, float) and math.isnan(value):
        return low
    return max(low, min(high, value))


def clamp_percent(value) -> int:
    """Round a raw collaborator value and clamp it into 0-100."""
    return _round_half_up(_clamp(float(value), 0.0, 100.0))


def compose(phase: Phase, sub_progress) -> int:
    """Map a phase's own 0-100 progress onto the job's 0-100 scale."""
    sub = _clamp(float(sub_progress), 0.0, 100.0)
    if phase == Phase.FETCH:
        return _clamp(_round_half_up(sub * FETCH_SHARE), 0, FETCH_DONE)
    if phase == Phase.ENCODE:
        return _clamp(FETCH_DONE + _round_half_up(sub * (1 - FETCH_SHARE)), FETCH_DONE, 100)
    raise ValueError(f"Unknown phase: {phase}")
