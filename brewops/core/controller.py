"""One-at-a-time operation lifecycle.

The controller owns the single Operation record. It starts the process,
forwards each output line to subscribers as it arrives, turns the completion
into a terminal status, and on success asks the reconciler to refresh state
before releasing its slot. All mutation happens on the event loop thread.
"""

import asyncio
import logging
import time
from typing import Callable, List, NamedTuple, Optional, Sequence

from ..config import Settings
from .errors import AlreadyRunning, NonZeroExit, OperationCancelled
from .models import Completion, OperationKind, OperationStatus, OutputLine, TerminationReason
from .reconciler import ReconcileResult, ResultReconciler
from .runner import ProcessHandle, ProcessRunner

# Set up logging for this module
logger = logging.getLogger(__name__)

# Seconds allowed beyond the kill grace period for a killed process to be reaped
CANCEL_WAIT_MARGIN = 2.0


class Operation:
    """The record of the current (or last finished) operation."""

    def __init__(self, kind: OperationKind, label: str, command: str, arguments: Sequence[str]):
        self.kind = kind
        self.label = label
        self.command = command
        self.arguments = list(arguments)
        self.status = OperationStatus.RUNNING
        self.started_at = time.time()
        self.finished_at: Optional[float] = None
        self.output_lines: List[str] = []
        self.completion: Optional[Completion] = None
        self.error: Optional[Exception] = None
        self.reconciliation: Optional[ReconcileResult] = None

    def __repr__(self):
        return f"<Operation {self.kind.value} {self.label!r} {self.status.value} lines={len(self.output_lines)}>"

    @property
    def exit_code(self) -> Optional[int]:
        return self.completion.exit_code if self.completion else None

    @property
    def duration(self) -> Optional[float]:
        if self.finished_at is None:
            return None
        return self.finished_at - self.started_at


class Subscriber(NamedTuple):
    on_line: Optional[Callable[[OutputLine], None]]
    on_state_change: Optional[Callable[[OperationStatus], None]]
    on_reconciled: Optional[Callable[[ReconcileResult], None]]


class OperationController:
    """Runs at most one external-process operation at a time."""

    def __init__(self, runner: ProcessRunner, reconciler: Optional[ResultReconciler] = None,
                 settings: Optional[Settings] = None):
        self.runner = runner
        self.reconciler = reconciler
        self.settings = settings or runner.settings
        self._operation: Optional[Operation] = None
        self._status = OperationStatus.IDLE
        self._subscribers: List[Subscriber] = []
        self._handle: Optional[ProcessHandle] = None
        self._cancel_pending = False
        self._task: Optional[asyncio.Task] = None

    @property
    def status(self) -> OperationStatus:
        return self._status

    @property
    def operation(self) -> Optional[Operation]:
        return self._operation

    @property
    def is_running(self) -> bool:
        return self._status is OperationStatus.RUNNING

    def subscribe(self, on_line=None, on_state_change=None, on_reconciled=None) -> Callable[[], None]:
        """Register callbacks for line appends, status changes and refreshes.

        Returns:
            A function that removes the subscription
        """
        subscriber = Subscriber(on_line, on_state_change, on_reconciled)
        self._subscribers.append(subscriber)

        def unsubscribe():
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)
        return unsubscribe

    def current_output_lines(self) -> List[str]:
        return list(self._operation.output_lines) if self._operation else []

    def _notify(self, attribute: str, value):
        for subscriber in list(self._subscribers):
            callback = getattr(subscriber, attribute)
            if callback is None:
                continue
            try:
                callback(value)
            except Exception:
                logger.exception(f"Subscriber {attribute} callback failed")

    def _set_status(self, status: OperationStatus):
        self._status = status
        if self._operation is not None:
            self._operation.status = status
        logger.debug(f"Operation status -> {status.value}")
        self._notify("on_state_change", status)

    def start(self, kind: OperationKind, label: str, command: str,
              arguments: Sequence[str] = (), working_directory: Optional[str] = None) -> asyncio.Task:
        """Begin an operation on the running event loop.

        A finished operation still on record is reset first, so subscribers
        see IDLE before the new RUNNING.

        Returns:
            Task resolving to the finished Operation

        Raises:
            AlreadyRunning: if an operation is in progress; nothing is spawned
        """
        if self.is_running:
            raise AlreadyRunning(self._operation.label if self._operation else "")

        loop = asyncio.get_running_loop()
        if self._status.is_terminal:
            self._operation = None
            self._set_status(OperationStatus.IDLE)
        self._operation = Operation(kind, label, command, arguments)
        self._handle = None
        self._cancel_pending = False
        logger.info(f"Starting {kind.value}: {label}")
        self._set_status(OperationStatus.RUNNING)
        self._task = loop.create_task(self._run(self._operation, working_directory))
        return self._task

    async def _run(self, operation: Operation, working_directory: Optional[str]) -> Operation:
        try:
            handle = await self.runner.start(operation.command, operation.arguments, working_directory)
            self._handle = handle
            if self._cancel_pending:
                handle.cancel()

            async for line in handle.lines():
                operation.output_lines.append(line.text)
                self._notify("on_line", line)

            completion = await handle.wait()
        except asyncio.CancelledError:
            operation.completion = await self._stop_after_task_cancelled(operation)
            exit_code = operation.completion.exit_code if operation.completion else -1
            operation.error = OperationCancelled(exit_code)
            self._finish(operation, OperationStatus.CANCELLED)
            raise
        except Exception as e:
            logger.exception(f"Operation {operation.label} crashed")
            operation.error = e
            self._finish(operation, OperationStatus.FAILED)
            raise

        operation.completion = completion
        if completion.succeeded:
            try:
                if self.reconciler is not None:
                    operation.reconciliation = await self.reconciler.reconcile(operation.kind)
                    self._notify("on_reconciled", operation.reconciliation)
            finally:
                self._finish(operation, OperationStatus.SUCCEEDED)
        elif completion.reason is TerminationReason.CANCELLED:
            operation.error = OperationCancelled(completion.exit_code)
            self._finish(operation, OperationStatus.CANCELLED)
        else:
            tail = operation.output_lines[-self.settings.failure_tail_lines:] if self.settings.failure_tail_lines else []
            operation.error = completion.error or NonZeroExit(completion.exit_code, tail)
            self._finish(operation, OperationStatus.FAILED)
        return operation

    async def _stop_after_task_cancelled(self, operation: Operation) -> Optional[Completion]:
        """Cancel the process and wait for it to end before the record says Cancelled.

        The wait is bounded by the kill grace period plus a margin. Returns
        None if there is no process or it could not be confirmed gone.
        """
        handle = self._handle
        if handle is None:
            return None
        handle.cancel()
        grace = self.settings.kill_grace_period
        timeout = grace + CANCEL_WAIT_MARGIN if grace is not None else None
        try:
            return await asyncio.wait_for(asyncio.shield(handle.wait()), timeout)
        except asyncio.TimeoutError:
            logger.warning(f"{operation.label} (pid {handle.pid}) still running after cancellation")
        except asyncio.CancelledError:
            logger.warning(f"Stopped waiting for {operation.label} (pid {handle.pid}) to exit")
        return None

    def _finish(self, operation: Operation, status: OperationStatus):
        operation.finished_at = time.time()
        self._handle = None
        self._cancel_pending = False
        if status is OperationStatus.SUCCEEDED:
            logger.info(f"{operation.label} succeeded in {operation.duration:.1f}s")
        elif status is OperationStatus.CANCELLED:
            logger.info(f"{operation.label} was cancelled")
        else:
            logger.warning(f"{operation.label} failed: {operation.error}")
        self._set_status(status)

    def cancel(self) -> bool:
        """Request cancellation of the running operation.

        The status becomes CANCELLED only once the process has actually
        ended. Returns False when there is nothing to cancel.
        """
        if not self.is_running:
            return False
        if self._handle is None:
            self._cancel_pending = True
            return True
        return self._handle.cancel()

    def dismiss(self):
        """Clear a finished operation and return to IDLE."""
        if self.is_running:
            raise AlreadyRunning(self._operation.label if self._operation else "")
        self._operation = None
        if self._status is not OperationStatus.IDLE:
            self._set_status(OperationStatus.IDLE)

    async def wait(self) -> Optional[Operation]:
        """Wait for the current operation to finish, if there is one."""
        if self._task is None:
            return self._operation
        return await asyncio.shield(self._task)


async def run_with_timeout(controller: OperationController, task: asyncio.Task,
                           timeout: Optional[float]) -> Operation:
    """Wait for ``task`` and cancel the operation if it outlives ``timeout`` seconds."""
    if timeout is None:
        return await task
    try:
        return await asyncio.wait_for(asyncio.shield(task), timeout)
    except asyncio.TimeoutError:
        logger.warning(f"Operation timed out after {timeout}s, cancelling")
        controller.cancel()
        return await task
