"""Homebrew commands and state queries."""

import json
import logging
import os
import re
from typing import Dict, List, NamedTuple, Optional, Sequence

from ..config import Settings
from ..core.errors import QueryError
from ..core.models import (
    CommandResult,
    OperationKind,
    OutdatedPackage,
    Package,
    QuarantinedApp,
    ServiceInfo,
)
from ..core.reconciler import StateSource
from ..core.runner import ProcessRunner
from .brew_path import BrewPathResolver

# Set up logging for this module
logger = logging.getLogger(__name__)

QUARANTINE_ATTRIBUTE = "com.apple.quarantine"
SERVICE_ACTIONS = ("start", "stop", "restart", "run")
MAX_NAME_LENGTH = 100
# Formula, cask and tap-qualified names such as "homebrew/cask/firefox" or "python@3.12"
_PACKAGE_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9@+._/-]*$")


class BrewCommand(NamedTuple):
    """A fully built operation request for OperationController.start."""
    kind: OperationKind
    label: str
    command: str
    arguments: List[str]


def validate_package_name(name) -> str:
    """Reject names that could be read as options or are obviously invalid.

    Raises:
        ValueError: if the name is unusable
    """
    if not name or not isinstance(name, str) or len(name) > MAX_NAME_LENGTH:
        raise ValueError(f"Invalid package name: {name!r}")
    if not _PACKAGE_NAME.match(name):
        raise ValueError(f"Invalid package name: {name!r}")
    return name


def _validate_path(path, what: str) -> str:
    if not path or not isinstance(path, str):
        raise ValueError(f"Invalid {what}: {path!r}")
    return os.path.abspath(os.path.expanduser(path))


class HomebrewCommands:
    """Builds the argv for each operation kind."""

    def __init__(self, brew: str):
        self.brew = brew

    def install(self, name: str, cask: bool = False) -> BrewCommand:
        name = validate_package_name(name)
        args = ["install", "--cask", name] if cask else ["install", name]
        return BrewCommand(OperationKind.INSTALL, f"Installing {name}", self.brew, args)

    def uninstall(self, name: str, cask: bool = False) -> BrewCommand:
        name = validate_package_name(name)
        args = ["uninstall", "--cask", name] if cask else ["uninstall", name]
        return BrewCommand(OperationKind.UNINSTALL, f"Uninstalling {name}", self.brew, args)

    def upgrade(self, names: Sequence[str] = ()) -> BrewCommand:
        names = [validate_package_name(n) for n in names]
        label = f"Upgrading {', '.join(names)}" if names else "Upgrading all packages"
        return BrewCommand(OperationKind.UPGRADE, label, self.brew, ["upgrade"] + names)

    def import_brewfile(self, path: str) -> BrewCommand:
        path = _validate_path(path, "Brewfile path")
        return BrewCommand(OperationKind.IMPORT_BREWFILE, f"Importing {os.path.basename(path)}",
                           self.brew, ["bundle", "install", f"--file={path}"])

    def service_control(self, name: str, action: str) -> BrewCommand:
        name = validate_package_name(name)
        if action not in SERVICE_ACTIONS:
            raise ValueError(f"Invalid service action: {action!r}. Valid actions are: {', '.join(SERVICE_ACTIONS)}")
        return BrewCommand(OperationKind.SERVICE_CONTROL, f"{action.capitalize()} service {name}",
                           self.brew, ["services", action, name])

    def remove_quarantine(self, app_path: str) -> BrewCommand:
        app_path = _validate_path(app_path, "application path")
        return BrewCommand(OperationKind.REMOVE_QUARANTINE,
                           f"Removing quarantine from {os.path.basename(app_path)}",
                           "xattr", ["-dr", QUARANTINE_ATTRIBUTE, app_path])

    def pin(self, name: str) -> BrewCommand:
        name = validate_package_name(name)
        return BrewCommand(OperationKind.PIN, f"Pinning {name}", self.brew, ["pin", name])

    def unpin(self, name: str) -> BrewCommand:
        name = validate_package_name(name)
        return BrewCommand(OperationKind.UNPIN, f"Unpinning {name}", self.brew, ["unpin", name])


def _load_json(query: str, result: CommandResult):
    if not result.is_success:
        raise QueryError(query, result.stderr.strip() or "command failed", result.exit_code)
    try:
        return json.loads(result.stdout)
    except json.JSONDecodeError as e:
        raise QueryError(query, f"invalid JSON output: {e}", result.exit_code)


def parse_installed_formulae(payload: Dict) -> List[Package]:
    packages = []
    for formula in payload.get("formulae", []):
        installed = formula.get("installed") or []
        if installed:
            version = installed[0].get("version", "")
        else:
            version = (formula.get("versions") or {}).get("stable", "")
        packages.append(Package(formula["name"], version or "unknown", False, formula.get("desc") or ""))
    return packages


def parse_installed_casks(payload: Dict) -> List[Package]:
    packages = []
    for cask in payload.get("casks", []):
        version = cask.get("installed") or cask.get("version") or "unknown"
        packages.append(Package(cask["token"], version, True, cask.get("desc") or ""))
    return packages


def parse_outdated(payload: Dict) -> List[OutdatedPackage]:
    packages = []
    for is_cask, key in ((False, "formulae"), (True, "casks")):
        for entry in payload.get(key, []):
            installed = entry.get("installed_versions") or ["unknown"]
            packages.append(OutdatedPackage(
                name=entry["name"],
                installed_version=installed[0],
                current_version=entry.get("current_version", "unknown"),
                is_cask=is_cask,
                pinned=bool(entry.get("pinned", False)),
            ))
    return packages


def parse_services(payload: List[Dict]) -> List[ServiceInfo]:
    return [
        ServiceInfo(
            name=entry["name"],
            status=entry.get("status") or "none",
            user=entry.get("user"),
            file=entry.get("file"),
            exit_code=entry.get("exit_code"),
        )
        for entry in payload
    ]


class HomebrewSource(StateSource):
    """Reads installed packages, outdated packages, services and quarantine state."""

    def __init__(self, runner: ProcessRunner, resolver: Optional[BrewPathResolver] = None,
                 settings: Optional[Settings] = None):
        self.runner = runner
        self.settings = settings or runner.settings
        self.resolver = resolver or BrewPathResolver(self.settings.brew_search_paths)

    async def brew(self, *arguments: str) -> CommandResult:
        return await self.runner.capture(self.resolver.resolve(), arguments)

    async def list_installed_formulae(self) -> List[Package]:
        result = await self.brew("info", "--installed", "--json=v2")
        return parse_installed_formulae(_load_json("brew info --installed", result))

    async def list_installed_casks(self) -> List[Package]:
        result = await self.brew("info", "--installed", "--cask", "--json=v2")
        # A successful run may print nothing when no casks are installed
        if result.is_success and (not result.stdout.strip() or "No casks to list" in result.stdout):
            return []
        return parse_installed_casks(_load_json("brew info --installed --cask", result))

    async def list_outdated_packages(self) -> List[OutdatedPackage]:
        result = await self.brew("outdated", "--json=v2")
        return parse_outdated(_load_json("brew outdated", result))

    async def list_services(self) -> List[ServiceInfo]:
        result = await self.brew("services", "list", "--json")
        if result.is_success and not result.stdout.strip():
            return []
        return parse_services(_load_json("brew services list", result))

    async def list_pinned_packages(self) -> List[str]:
        result = await self.brew("list", "--pinned")
        if not result.is_success:
            raise QueryError("brew list --pinned", result.stderr.strip() or "command failed", result.exit_code)
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    async def list_quarantined_apps(self) -> List[QuarantinedApp]:
        """Scan application folders for bundles carrying the quarantine attribute."""
        casks = await self.list_installed_casks()
        cask_map = {cask.name.lower(): cask.name for cask in casks}

        quarantined = []
        for directory in self.settings.quarantine_directories:
            if not os.path.isdir(directory):
                continue
            try:
                entries = sorted(os.listdir(directory))
            except OSError as e:
                logger.warning(f"Could not read {directory}: {e}")
                continue

            for item in entries:
                if not item.endswith(".app"):
                    continue
                app_path = os.path.join(directory, item)
                result = await self.runner.capture("xattr", ["-p", QUARANTINE_ATTRIBUTE, app_path])
                if result.is_success and result.stdout.strip():
                    app_name = item[:-len(".app")]
                    cask_name = cask_map.get(app_name.lower()) or cask_map.get(app_name.lower().replace(" ", "-"))
                    quarantined.append(QuarantinedApp(app_name, app_path, cask_name))

        logger.debug(f"Found {len(quarantined)} quarantined apps")
        return quarantined
