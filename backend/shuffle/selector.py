"""Least-shown partner selection."""

import logging
from collections.abc import Iterable

logger = logging.getLogger(__name__)


class ShuffleSelector:
    """
    Picks the candidate shown the fewest times so far, ties broken by
    ascending identity. Each pick increments the winner's counter, so
    repeated calls over the same set rotate round-robin.
    """

    def __init__(self) -> None:
        self._history: dict[str, int] = {}

    def pick_next(self, candidates: Iterable[str]) -> str | None:
        pool = set(candidates)
        if not pool:
            return None

        selected = min(pool, key=lambda c: (self._history.get(c, 0), c))
        seen = self._history.get(selected, 0)
        self._history[selected] = seen + 1

        logger.debug(f"Selected {selected} (seen {seen} times)")
        return selected

    def count(self, identity: str) -> int:
        return self._history.get(identity, 0)

    def reset(self) -> None:
        self._history.clear()
