import math
from typing import Optional


def seconds_left(timer_ends_at: Optional[float], now: float) -> Optional[int]:
    """Whole seconds until the stage timer ends, or None when no timer runs."""
    if not timer_ends_at:
        return None
    return max(0, math.floor(timer_ends_at - now))


def format_countdown(secs: Optional[int]) -> str:
    if secs is None:
        return '--:--'
    minutes, seconds = divmod(secs, 60)
    return f"{minutes:02d}:{seconds:02d}"


def timer_expired(room: Optional[dict], now: float) -> bool:
    """True once an enabled countdown has run out."""
    if not room or not room.get('countdown_enabled'):
        return False
    return seconds_left(room.get('timer_ends_at'), now) == 0
