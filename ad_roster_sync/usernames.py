"""
Username allocation with deterministic collision handling.

Candidates are the surname followed by a growing prefix of the given name:
``LovelaceA``, ``LovelaceAd``, ``LovelaceAda``. Allocation gives up once the
full ``surname + given name`` candidate is also taken.
"""

import re
import logging
from typing import Callable

from ad_roster_sync.errors import NoUsernameAvailable

logger = logging.getLogger(__name__)

# Whitespace, hyphens and apostrophes (ASCII and typographic)
_STRIP_PATTERN = re.compile(r"[\s\-'’]")


def strip_name(value: str) -> str:
    """Remove whitespace, hyphens and apostrophes."""
    return _STRIP_PATTERN.sub('', value)


class UsernameAllocator:
    """
    Derives unique account names.

    Args:
        exists: Predicate returning True when a candidate name is taken
    """

    def __init__(self, exists: Callable[[str], bool]):
        self.exists = exists

    def candidates(self, given_name: str, surname: str):
        """Yield candidates in order, ending with the full name candidate."""
        full = strip_name(surname + given_name)
        n = 1
        while True:
            candidate = strip_name(surname + given_name[:n])
            yield candidate
            if candidate == full:
                return
            n += 1

    def allocate(self, given_name: str, surname: str) -> str:
        """
        Return the first candidate the predicate does not report as taken.

        Raises:
            NoUsernameAvailable: If the full name candidate is taken too
        """
        candidate = ''
        for candidate in self.candidates(given_name, surname):
            if not candidate:
                break
            if not self.exists(candidate):
                logger.debug(f"Allocated username {candidate} for {given_name} {surname}")
                return candidate
            logger.debug(f"Username {candidate} is taken")
        raise NoUsernameAvailable(given_name, surname, candidate)

    def recheck(self, current_name: str, given_name: str, surname: str) -> str:
        """
        Keep ``current_name`` unless the predicate reports it taken.

        When it is taken, or empty, a new name is allocated.
        """
        if current_name and not self.exists(current_name):
            return current_name
        if current_name:
            logger.info(f"Username {current_name} collides with another account, re-allocating")
        return self.allocate(given_name, surname)
