"""
Turnaround time (TAT) parsing — laboratory catalogs state TAT as free text
("Même jour", "24-48h", "3 jours", "5 business days").

Rules:
  - Same-day → 0 hours
  - Ranges keep the lower bound ("24-48h", "24 à 48h" → 24)
  - Days convert to hours (×24)
  - Anything else is unknown (None), never an error
"""
import math
import re
from typing import Iterable, Optional

from catalog.normalize import strip_accents

_SAME_DAY = ("meme jour", "same day")
_HOURS = re.compile(r"(\d+)(?:\s*(?:[–-]|a|to)\s*(\d+))?\s*h")
_DAYS = re.compile(r"(\d+)(?:\s*(?:[–-]|a|to)\s*(\d+))?\s*(?:jour|day|business|j\b)")


def parse_turnaround_hours(text: Optional[str]) -> Optional[float]:
    if not text:
        return None
    s = strip_accents(text).lower().strip()
    if any(marker in s for marker in _SAME_DAY):
        return 0.0
    m = _HOURS.search(s)
    if m:
        return float(m.group(1))
    m = _DAYS.search(s)
    if m:
        return float(m.group(1)) * 24
    return None


def sort_hours(hours: Optional[float]) -> float:
    """Sort key: unknown turnaround sorts after every known one."""
    return math.inf if hours is None else hours


def slowest(hours: Iterable[Optional[float]]) -> Optional[float]:
    """Slowest known TAT; None when none is known."""
    known = [h for h in hours if h is not None]
    return max(known) if known else None
