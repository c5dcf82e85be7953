"""Locate the Homebrew executable."""

import logging
import os
import shutil
from typing import Iterable, Optional

from ..core.errors import BrewNotFound

# Set up logging for this module
logger = logging.getLogger(__name__)


class BrewPathResolver:
    """Finds ``brew`` in the known install prefixes, then on PATH.

    The result is cached until ``invalidate`` is called, e.g. after Homebrew
    itself was installed.
    """

    def __init__(self, search_paths: Iterable[str]):
        self.search_paths = [p for p in search_paths if p]
        self._cached: Optional[str] = None
        self._checked = False

    def find(self) -> Optional[str]:
        """Return the brew path, or None if Homebrew is not installed."""
        if self._checked:
            return self._cached

        for directory in self.search_paths:
            candidate = os.path.join(directory, "brew")
            if os.path.isfile(candidate) and os.access(candidate, os.X_OK):
                logger.debug(f"Homebrew found at: {candidate}")
                self._cached = candidate
                break
        else:
            self._cached = shutil.which("brew")
            if self._cached:
                logger.debug(f"Homebrew found on PATH at: {self._cached}")
            else:
                logger.info("Homebrew is not installed or not in PATH")

        self._checked = True
        return self._cached

    def resolve(self) -> str:
        """Return the brew path.

        Raises:
            BrewNotFound: if Homebrew cannot be located
        """
        path = self.find()
        if path is None:
            raise BrewNotFound(self.search_paths + ["PATH"])
        return path

    def invalidate(self):
        self._cached = None
        self._checked = False
