"""Wires the runner, state source, reconciler and controller together."""

from typing import Optional

from .config import Settings
from .core.controller import OperationController
from .core.reconciler import ResultReconciler
from .core.runner import ProcessRunner
from .core.state import AppState
from .providers.brew_path import BrewPathResolver
from .providers.homebrew import HomebrewCommands, HomebrewSource


class BrewContext:
    """Everything a front end needs, passed explicitly instead of held globally."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or Settings.from_env()
        self.runner = ProcessRunner(self.settings)
        self.resolver = BrewPathResolver(self.settings.brew_search_paths)
        self.state = AppState()
        self.source = HomebrewSource(self.runner, self.resolver, self.settings)
        self.reconciler = ResultReconciler(self.source, self.state, self.settings.service_settle_delay)
        self.controller = OperationController(self.runner, self.reconciler, self.settings)

    def commands(self) -> HomebrewCommands:
        """Command builder bound to the resolved brew executable.

        Raises:
            BrewNotFound: if Homebrew is not installed
        """
        return HomebrewCommands(self.resolver.resolve())
