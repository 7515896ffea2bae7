"""
Character device helpers shared by the serial probe and the pulse locator.
"""

import glob
import os
import re
import stat
from typing import Callable, Iterable, List

_DIGITS = re.compile(r'(\d+)')


def natural_sort_key(path: str):
    """
    Sort key that orders device indices numerically.

    Examples:
        /dev/ttyUSB2 sorts before /dev/ttyUSB10
        /dev/pps1 sorts before /dev/pps12
    """
    return [int(part) if part.isdigit() else part for part in _DIGITS.split(path)]


def is_char_device(path: str) -> bool:
    """True if path currently exists and is a character-special file."""
    try:
        return stat.S_ISCHR(os.stat(path).st_mode)
    except OSError:
        return False


def expand_patterns(
    patterns: Iterable[str],
    glob_fn: Callable[[str], List[str]] = glob.glob,
) -> List[str]:
    """
    Expand glob patterns into concrete paths.

    Paths keep pattern order, and are naturally sorted within one pattern.
    A path matched by more than one pattern is only listed once.
    """
    seen = set()
    paths = []
    for pattern in patterns:
        for path in sorted(glob_fn(pattern), key=natural_sort_key):
            if path not in seen:
                seen.add(path)
                paths.append(path)
    return paths
