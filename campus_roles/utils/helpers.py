"""
Utility helper functions for the role engine.

This module provides time-window arithmetic, client fingerprint heuristics
and small formatting helpers shared by the services.
"""

import math
import re
import uuid
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Sequence


SUSPICIOUS_IP_PATTERNS = [
    re.compile(r"^10\."),
    re.compile(r"^192\.168\."),
    re.compile(r"^172\.(1[6-9]|2[0-9]|3[0-1])\."),
    re.compile(r"^127\."),
    re.compile(r"^0\."),
]

AUTOMATION_USER_AGENT_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (r"curl", r"wget", r"python", r"bot", r"crawler", r"script", r"automated")
]


def utcnow() -> datetime:
    """
    Current UTC time as a naive datetime.

    The store keeps naive UTC timestamps, so every comparison in the engine
    goes through this function (or an injected clock with the same contract).
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def generate_id() -> str:
    return str(uuid.uuid4())


def next_hour_boundary(now: datetime) -> datetime:
    """
    Return the top of the next hour.

    Examples:
        2024-03-01 10:15:30 -> 2024-03-01 11:00:00
        2024-03-01 23:00:00 -> 2024-03-02 00:00:00
    """
    return now.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)


def next_midnight(now: datetime) -> datetime:
    """Return the start of the next day."""
    return now.replace(hour=0, minute=0, second=0, microsecond=0) + timedelta(days=1)


def start_of_day(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def seconds_until(target: datetime, now: datetime) -> int:
    """
    Whole seconds from ``now`` until ``target``, rounded up and never negative.

    Args:
        target: Moment in the future
        now: Reference time

    Returns:
        Number of seconds suitable for a Retry-After header
    """
    remaining = (target - now).total_seconds()
    if remaining <= 0:
        return 0
    return int(math.ceil(remaining))


def is_suspicious_ip(ip_address: Optional[str]) -> bool:
    """Check whether an address falls in a private or reserved range."""
    if not ip_address:
        return False
    return any(pattern.match(ip_address) for pattern in SUSPICIOUS_IP_PATTERNS)


def is_automation_user_agent(user_agent: Optional[str]) -> bool:
    """Check whether a user agent looks like a script or crawler."""
    if not user_agent:
        return False
    return any(pattern.search(user_agent) for pattern in AUTOMATION_USER_AGENT_PATTERNS)


def interval_variance(timestamps: Sequence[datetime]) -> Optional[float]:
    """
    Variance (in ms squared) of the gaps between consecutive timestamps.

    Args:
        timestamps: Timestamps in any order

    Returns:
        The variance, or None when fewer than two intervals exist
    """
    ordered = sorted(timestamps)
    intervals: List[float] = [
        (later - earlier).total_seconds() * 1000.0
        for earlier, later in zip(ordered, ordered[1:])
    ]
    if len(intervals) < 2:
        return None

    mean = sum(intervals) / len(intervals)
    return sum((value - mean) ** 2 for value in intervals) / len(intervals)


def truncate_string(text: str, max_length: int = 100, suffix: str = "...") -> str:
    """Truncate a string to a maximum length."""
    if len(text) <= max_length:
        return text
    return text[:max_length - len(suffix)] + suffix
