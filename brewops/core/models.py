"""Records shared by the runner, controller and reconciler."""

from enum import Enum
from typing import List, NamedTuple, Optional


class OperationKind(Enum):
    """What an operation does, used to pick a reconciliation plan."""
    INSTALL = "install"
    UNINSTALL = "uninstall"
    UPGRADE = "upgrade"
    IMPORT_BREWFILE = "import_brewfile"
    SERVICE_CONTROL = "service_control"
    REMOVE_QUARANTINE = "remove_quarantine"
    PIN = "pin"
    UNPIN = "unpin"


class OperationStatus(Enum):
    IDLE = "idle"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (OperationStatus.SUCCEEDED, OperationStatus.FAILED, OperationStatus.CANCELLED)


class TerminationReason(Enum):
    EXITED = "exited"
    CANCELLED = "cancelled"
    SIGNAL_KILLED = "signal_killed"


class OutputLine(NamedTuple):
    """One decoded line of process output, without its trailing newline."""
    index: int
    text: str

    def __str__(self):
        return self.text


class Completion(NamedTuple):
    """How a process invocation ended.

    ``error`` is only set when the process could not be spawned at all.
    """
    exit_code: int
    reason: TerminationReason
    error: Optional[Exception] = None

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and self.reason is TerminationReason.EXITED


class CommandResult(NamedTuple):
    """Captured result of a short read-only command."""
    stdout: str
    stderr: str
    exit_code: int

    @property
    def is_success(self) -> bool:
        return self.exit_code == 0


class Package(NamedTuple):
    name: str
    version: str
    is_cask: bool = False
    description: str = ""


class OutdatedPackage(NamedTuple):
    name: str
    installed_version: str
    current_version: str
    is_cask: bool = False
    pinned: bool = False


class ServiceInfo(NamedTuple):
    name: str
    status: str
    user: Optional[str] = None
    file: Optional[str] = None
    exit_code: Optional[int] = None

    @property
    def is_running(self) -> bool:
        return self.status in ("started", "scheduled")


class QuarantinedApp(NamedTuple):
    name: str
    path: str
    cask_name: Optional[str] = None


class StateSnapshot(NamedTuple):
    """Immutable view of everything the reconciler knows about Homebrew."""
    installed_formulae: List[Package]
    installed_casks: List[Package]
    outdated_packages: List[OutdatedPackage]
    services: List[ServiceInfo]
    quarantined_apps: List[QuarantinedApp]
    pinned_packages: List[str]
    refreshed_at: Optional[float]

    @property
    def installed_packages(self) -> List[Package]:
        packages = self.installed_formulae + self.installed_casks
        return sorted(packages, key=lambda p: p.name.lower())
