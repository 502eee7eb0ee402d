"""Canary gate."""
from typing import Any, Mapping, Optional
import math

from src.errors.exceptions import CanaryError


def _finite(raw: Any) -> Optional[float]:
    if isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float, str)):
        try:
            value = float(raw)
        except ValueError:
            return None
        return value if math.isfinite(value) else None
    return None


def read_auto_accepted_rate(stats: Mapping[str, Any]) -> float:
    """Read ``auto_accepted_rate`` from run stats, accepting numeric strings.

    Raises:
        CanaryError: The stat is missing or not numeric
    """
    value = _finite(stats.get("auto_accepted_rate"))
    if value is None:
        raise CanaryError("auto_accepted_rate is missing from run stats; cannot evaluate canary gate")
    return value


def is_gate_passing(auto_accepted_rate: float, threshold: float) -> bool:
    return auto_accepted_rate >= threshold
