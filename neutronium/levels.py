import re
from typing import Iterable, Optional

MIN_LEVEL = 1
MAX_LEVEL = 13

# figure colors printed in the box
COLORS = ("gray", "pink", "purple", "green")

BOX_ID_PATTERN = re.compile(r"NE-\d{4}-\d{5}")


def is_valid_level(level) -> bool:
    return isinstance(level, int) and not isinstance(level, bool) and MIN_LEVEL <= level <= MAX_LEVEL


def is_valid_color(color: Optional[str]) -> bool:
    return color is None or color in COLORS


def is_valid_box_id(box_id: str) -> bool:
    return bool(box_id) and BOX_ID_PATTERN.fullmatch(box_id) is not None


def max_unlocked_level(is_guest: bool, completed_levels: Iterable[int]) -> int:
    """Highest level a player may be seated at.

    Guests never leave level 1. Registered players unlock one level past the
    highest level present in their progress journal, capped at MAX_LEVEL.
    """
    if is_guest:
        return MIN_LEVEL
    levels = list(completed_levels)
    if not levels:
        return MIN_LEVEL
    return min(MAX_LEVEL, max(levels) + 1)


def session_level(member_limits: Iterable[int]) -> Optional[int]:
    """Level a session must be at: the least-progressed member decides.

    Returns None when the session has no members.
    """
    limits = list(member_limits)
    if not limits:
        return None
    return min(limits)


def next_level(level: int) -> Optional[int]:
    # level 13 completes the campaign
    if level >= MAX_LEVEL:
        return None
    return level + 1
