"""Shared application state refreshed by the reconciler."""

import logging
import time
from typing import Callable, List

from .models import StateSnapshot

# Set up logging for this module
logger = logging.getLogger(__name__)

EMPTY_SNAPSHOT = StateSnapshot(
    installed_formulae=[],
    installed_casks=[],
    outdated_packages=[],
    services=[],
    quarantined_apps=[],
    pinned_packages=[],
    refreshed_at=None,
)

STATE_FIELDS = tuple(f for f in StateSnapshot._fields if f != "refreshed_at")


class AppState:
    """Holds the latest StateSnapshot and notifies listeners when it changes.

    Only the reconciler writes to it. Listeners receive the new snapshot.
    """

    def __init__(self, snapshot: StateSnapshot = EMPTY_SNAPSHOT):
        self._snapshot = snapshot
        self._listeners: List[Callable[[StateSnapshot], None]] = []

    @property
    def snapshot(self) -> StateSnapshot:
        return self._snapshot

    def add_listener(self, listener: Callable[[StateSnapshot], None]) -> Callable[[], None]:
        """Register a listener and return a function that removes it."""
        self._listeners.append(listener)

        def remove():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return remove

    def merge(self, refreshed: dict) -> StateSnapshot:
        """Replace the collections present in ``refreshed`` and keep the rest.

        Args:
            refreshed: Mapping of StateSnapshot field name to a fresh list

        Returns:
            The new snapshot
        """
        unknown = set(refreshed) - set(STATE_FIELDS)
        if unknown:
            raise ValueError(f"Unknown state fields: {', '.join(sorted(unknown))}")

        updates = {name: list(value) for name, value in refreshed.items()}
        self._snapshot = self._snapshot._replace(refreshed_at=time.time(), **updates)
        logger.debug(f"State refreshed: {', '.join(sorted(updates)) or 'nothing'}")

        for listener in list(self._listeners):
            try:
                listener(self._snapshot)
            except Exception:
                logger.exception("State listener failed")
        return self._snapshot
