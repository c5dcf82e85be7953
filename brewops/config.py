"""Runtime settings for brewops."""

import logging
import os
import signal
from pathlib import Path
from typing import NamedTuple, Optional, Tuple

# Set up logging for this module
logger = logging.getLogger(__name__)

ENV_PREFIX = "BREWOPS_"
# BREWOPS_ENV_HTTPS_PROXY=... sets HTTPS_PROXY for spawned commands
CHILD_ENV_PREFIX = f"{ENV_PREFIX}ENV_"


class Settings(NamedTuple):
    """Tunables shared by the runner, controller and reconciler.

    Defaults match a stock Homebrew install on either Apple Silicon or Intel.
    """
    brew_search_paths: Tuple[str, ...] = ("/opt/homebrew/bin", "/usr/local/bin")
    # (name, value) pairs set in every child environment, e.g. proxy settings
    extra_environment: Tuple[Tuple[str, str], ...] = ()
    cancel_signal: int = signal.SIGTERM
    # Seconds to wait after the cancel signal before killing the process
    kill_grace_period: Optional[float] = 5.0
    failure_tail_lines: int = 20
    # Services report their new state some time after `brew services` returns
    service_settle_delay: float = 1.0
    quarantine_directories: Tuple[str, ...] = ("/Applications", str(Path.home() / "Applications"))

    @classmethod
    def from_env(cls, environ=None) -> "Settings":
        """Build settings from ``BREWOPS_*`` environment variables.

        Unparseable values are logged and ignored.
        """
        environ = os.environ if environ is None else environ
        overrides = {}

        paths = environ.get(f"{ENV_PREFIX}BREW_PATHS")
        if paths:
            overrides["brew_search_paths"] = tuple(p for p in paths.split(os.pathsep) if p)

        for field, convert in (
            ("kill_grace_period", float),
            ("failure_tail_lines", int),
            ("service_settle_delay", float),
        ):
            raw = environ.get(f"{ENV_PREFIX}{field.upper()}")
            if raw is None:
                continue
            try:
                value = convert(raw)
            except ValueError:
                logger.warning(f"Ignoring invalid {ENV_PREFIX}{field.upper()}={raw!r}")
                continue
            if value < 0:
                logger.warning(f"Ignoring negative {ENV_PREFIX}{field.upper()}={raw!r}")
                continue
            overrides[field] = value

        raw_signal = environ.get(f"{ENV_PREFIX}CANCEL_SIGNAL")
        if raw_signal:
            try:
                overrides["cancel_signal"] = _parse_signal(raw_signal)
            except ValueError:
                logger.warning(f"Ignoring unknown {ENV_PREFIX}CANCEL_SIGNAL={raw_signal!r}")

        child_environment = tuple(sorted(
            (name[len(CHILD_ENV_PREFIX):], value)
            for name, value in environ.items()
            if name.startswith(CHILD_ENV_PREFIX) and len(name) > len(CHILD_ENV_PREFIX)
        ))
        if child_environment:
            overrides["extra_environment"] = child_environment

        return cls()._replace(**overrides)


def _parse_signal(value: str) -> int:
    """Accept a signal number or a name such as ``INT`` or ``SIGTERM``."""
    if value.isdigit():
        return int(value)
    name = value.upper()
    if not name.startswith("SIG"):
        name = f"SIG{name}"
    try:
        return int(signal.Signals[name])
    except KeyError:
        raise ValueError(f"Unknown signal: {value}")
