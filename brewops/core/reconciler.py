"""Post-operation state refresh.

After an operation succeeds, the reconciler re-reads authoritative state from
a StateSource instead of trusting what the operation printed, and merges the
fresh collections into AppState. A failed refresh is reported on its own and
never changes the status of the operation that triggered it.
"""

import asyncio
import logging
from typing import Dict, List, NamedTuple, Optional, Tuple

from .errors import ReconciliationFailure
from .models import OperationKind, StateSnapshot
from .state import STATE_FIELDS, AppState

# Set up logging for this module
logger = logging.getLogger(__name__)


class StateSource:
    """Read-only accessors the reconciler queries.

    Each method is a coroutine returning a fresh list, and raises on failure.
    """

    async def list_installed_formulae(self):
        raise NotImplementedError

    async def list_installed_casks(self):
        raise NotImplementedError

    async def list_outdated_packages(self):
        raise NotImplementedError

    async def list_services(self):
        raise NotImplementedError

    async def list_quarantined_apps(self):
        raise NotImplementedError

    async def list_pinned_packages(self):
        raise NotImplementedError


# Snapshot field -> StateSource method
QUERIES: Dict[str, str] = {
    "installed_formulae": "list_installed_formulae",
    "installed_casks": "list_installed_casks",
    "outdated_packages": "list_outdated_packages",
    "services": "list_services",
    "quarantined_apps": "list_quarantined_apps",
    "pinned_packages": "list_pinned_packages",
}

_PACKAGE_CHANGE = ("installed_formulae", "installed_casks", "outdated_packages")

RECONCILIATION_PLANS: Dict[OperationKind, Tuple[str, ...]] = {
    OperationKind.INSTALL: _PACKAGE_CHANGE,
    OperationKind.UNINSTALL: _PACKAGE_CHANGE,
    OperationKind.UPGRADE: _PACKAGE_CHANGE,
    OperationKind.IMPORT_BREWFILE: _PACKAGE_CHANGE,
    OperationKind.SERVICE_CONTROL: ("services",),
    OperationKind.REMOVE_QUARANTINE: ("quarantined_apps",),
    OperationKind.PIN: ("pinned_packages", "outdated_packages"),
    OperationKind.UNPIN: ("pinned_packages", "outdated_packages"),
}

# Kinds whose effects show up asynchronously in the queried state
SETTLING_KINDS = frozenset({OperationKind.SERVICE_CONTROL})


class ReconcileResult(NamedTuple):
    """Outcome of one reconciliation pass."""
    kind: Optional[OperationKind]
    queried: Tuple[str, ...]
    state: Optional[StateSnapshot] = None
    error: Optional[ReconciliationFailure] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class ResultReconciler:
    """Runs the query plan for an operation kind and publishes the result."""

    def __init__(self, source: StateSource, state: Optional[AppState] = None,
                 service_settle_delay: float = 1.0):
        self.source = source
        self.state = state if state is not None else AppState()
        # Fixed settle time is empirical; polling until stable would be more robust
        self.service_settle_delay = service_settle_delay

    def plan_for(self, kind: OperationKind) -> Tuple[str, ...]:
        return RECONCILIATION_PLANS.get(kind, _PACKAGE_CHANGE)

    async def reconcile(self, kind: OperationKind) -> ReconcileResult:
        """Re-query the state an operation of ``kind`` may have changed.

        Returns:
            ReconcileResult with the merged snapshot, or with a
            ReconciliationFailure if any query failed
        """
        plan = self.plan_for(kind)
        if kind in SETTLING_KINDS and self.service_settle_delay > 0:
            logger.debug(f"Waiting {self.service_settle_delay}s for {kind.value} to settle")
            await asyncio.sleep(self.service_settle_delay)
        return await self._run(kind, plan)

    async def refresh_all(self) -> ReconcileResult:
        """Re-query every collection, independent of any operation."""
        return await self._run(None, STATE_FIELDS)

    async def _run(self, kind: Optional[OperationKind], plan: Tuple[str, ...]) -> ReconcileResult:
        refreshed = {}
        # One query at a time; nothing is merged unless the whole plan succeeds
        for field in plan:
            query = QUERIES[field]
            try:
                refreshed[field] = await getattr(self.source, query)()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                failure = ReconciliationFailure(query, e)
                logger.warning(str(failure))
                return ReconcileResult(kind, plan, error=failure)

        snapshot = self.state.merge(refreshed)
        counts: List[str] = [f"{field}={len(refreshed[field])}" for field in plan]
        logger.info(f"Reconciled after {kind.value if kind else 'refresh'}: {', '.join(counts)}")
        return ReconcileResult(kind, plan, state=snapshot)
