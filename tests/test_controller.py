import asyncio
import signal

import pytest

from brewops.config import Settings
from brewops.core.controller import OperationController, run_with_timeout
from brewops.core.errors import AlreadyRunning, NonZeroExit, OperationCancelled, SpawnFailure
from brewops.core.models import OperationKind, OperationStatus, TerminationReason
from brewops.core.reconciler import ResultReconciler
from brewops.core.state import AppState

from conftest import CountingRunner, FakeSource, py


class CountingReconciler(ResultReconciler):
    def __init__(self, source):
        super().__init__(source, AppState(), service_settle_delay=0.0)
        self.passes = []

    async def reconcile(self, kind):
        self.passes.append(kind)
        return await super().reconcile(kind)


def make_controller(settings, fail_on=None):
    runner = CountingRunner(settings)
    reconciler = CountingReconciler(FakeSource(fail_on=fail_on))
    controller = OperationController(runner, reconciler, settings)
    events = {"lines": [], "states": [], "reconciled": []}
    controller.subscribe(
        on_line=lambda line: events["lines"].append(line.text),
        on_state_change=events["states"].append,
        on_reconciled=events["reconciled"].append,
    )
    return controller, runner, reconciler, events


def test_install_that_exits_zero_succeeds_and_reconciles_once(settings):
    async def scenario():
        controller, runner, reconciler, events = make_controller(settings)
        command, args = py("print('Installing foo')")
        task = controller.start(OperationKind.INSTALL, "Installing foo", command, args)
        operation = await task
        return controller, reconciler, events, operation

    controller, reconciler, events, operation = asyncio.run(scenario())
    assert events["lines"] == ["Installing foo"]
    assert operation.status is OperationStatus.SUCCEEDED
    assert controller.status is OperationStatus.SUCCEEDED
    assert events["states"] == [OperationStatus.RUNNING, OperationStatus.SUCCEEDED]
    assert reconciler.passes == [OperationKind.INSTALL]
    assert len(events["reconciled"]) == 1
    assert operation.reconciliation.ok
    assert operation.error is None
    assert controller.current_output_lines() == ["Installing foo"]


def test_nonzero_exit_fails_without_reconciliation(settings):
    async def scenario():
        controller, runner, reconciler, events = make_controller(settings)
        command, args = py("import sys; sys.exit(1)")
        operation = await controller.start(OperationKind.INSTALL, "Installing foo", command, args)
        return reconciler, events, operation

    reconciler, events, operation = asyncio.run(scenario())
    assert operation.status is OperationStatus.FAILED
    assert operation.exit_code == 1
    assert isinstance(operation.error, NonZeroExit)
    assert operation.error.exit_code == 1
    assert operation.error.tail == []
    assert reconciler.passes == []
    assert events["reconciled"] == []
    assert events["lines"] == []


def test_failure_carries_last_output_lines(settings):
    async def scenario():
        controller, _, _, _ = make_controller(settings._replace(failure_tail_lines=3))
        command, args = py("import sys\nfor i in range(10): print(i)\nsys.exit(2)")
        return await controller.start(OperationKind.UPGRADE, "Upgrading", command, args)

    operation = asyncio.run(scenario())
    assert operation.error.tail == ["7", "8", "9"]
    assert len(operation.output_lines) == 10


def test_second_start_is_rejected_and_spawns_nothing(settings):
    async def scenario():
        controller, runner, reconciler, events = make_controller(settings)
        command, args = py("import time\nprint('first', flush=True)\ntime.sleep(0.3)\nprint('second')")
        task = controller.start(OperationKind.INSTALL, "Installing foo", command, args)
        with pytest.raises(AlreadyRunning):
            controller.start(OperationKind.INSTALL, "Installing bar", *py("print('nope')"))
        operation = await task
        return runner, events, operation

    runner, events, operation = asyncio.run(scenario())
    assert len(runner.started) == 1
    assert events["lines"] == ["first", "second"]
    assert operation.label == "Installing foo"
    assert operation.status is OperationStatus.SUCCEEDED


def test_cancel_shortly_after_start(settings):
    script = "import time\nprint('working', flush=True)\ntime.sleep(30)"

    async def scenario():
        controller, runner, reconciler, events = make_controller(settings)
        task = controller.start(OperationKind.IMPORT_BREWFILE, "Importing Brewfile", *py(script))
        await asyncio.sleep(0.05)
        assert controller.cancel() is True
        assert controller.status is OperationStatus.RUNNING
        operation = await task
        return reconciler, events, operation

    reconciler, events, operation = asyncio.run(scenario())
    assert operation.status is OperationStatus.CANCELLED
    assert operation.completion.reason is TerminationReason.CANCELLED
    assert isinstance(operation.error, OperationCancelled)
    assert events["states"][-1] is OperationStatus.CANCELLED
    assert reconciler.passes == []
    assert events["lines"] in ([], ["working"])


def test_lines_before_cancel_are_delivered_in_order(settings):
    script = "import time\nfor i in range(5): print(i, flush=True)\ntime.sleep(30)"

    async def scenario():
        controller, runner, reconciler, events = make_controller(settings)
        got_all = asyncio.Event()
        controller.subscribe(on_line=lambda line: line.index == 4 and got_all.set())
        task = controller.start(OperationKind.INSTALL, "Installing foo", *py(script))
        await asyncio.wait_for(got_all.wait(), 10)
        controller.cancel()
        return events, await task

    events, operation = asyncio.run(scenario())
    assert events["lines"] == ["0", "1", "2", "3", "4"]
    assert operation.status is OperationStatus.CANCELLED


def test_cancel_after_finish_is_noop(settings):
    async def scenario():
        controller, _, _, events = make_controller(settings)
        operation = await controller.start(OperationKind.PIN, "Pinning foo", *py("print('ok')"))
        return controller.cancel(), controller, events, operation

    cancelled, controller, events, operation = asyncio.run(scenario())
    assert cancelled is False
    assert operation.status is OperationStatus.SUCCEEDED
    assert controller.status is OperationStatus.SUCCEEDED
    assert events["states"] == [OperationStatus.RUNNING, OperationStatus.SUCCEEDED]


def test_spawn_failure_fails_without_reconciliation(settings):
    async def scenario():
        controller, _, reconciler, _ = make_controller(settings)
        operation = await controller.start(OperationKind.INSTALL, "Installing foo", "brewops-no-such-tool", ["install"])
        return reconciler, operation

    reconciler, operation = asyncio.run(scenario())
    assert operation.status is OperationStatus.FAILED
    assert isinstance(operation.error, SpawnFailure)
    assert operation.exit_code == 127
    assert reconciler.passes == []


def test_reconciliation_failure_does_not_change_status(settings):
    async def scenario():
        controller, _, reconciler, events = make_controller(settings, fail_on="list_outdated_packages")
        operation = await controller.start(OperationKind.INSTALL, "Installing foo", *py("print('ok')"))
        return events, operation

    events, operation = asyncio.run(scenario())
    assert operation.status is OperationStatus.SUCCEEDED
    assert not operation.reconciliation.ok
    assert operation.reconciliation.error.query == "list_outdated_packages"
    assert events["reconciled"] == [operation.reconciliation]


def test_start_resets_previous_operation_and_dismiss_returns_to_idle(settings):
    async def scenario():
        controller, _, _, events = make_controller(settings)
        first = await controller.start(OperationKind.INSTALL, "first", *py("print('a')"))
        second = await controller.start(OperationKind.INSTALL, "second", *py("print('b')"))
        lines_before_dismiss = controller.current_output_lines()
        controller.dismiss()
        return controller, events, first, second, lines_before_dismiss

    controller, events, first, second, lines = asyncio.run(scenario())
    assert first.status is OperationStatus.SUCCEEDED
    assert first.output_lines == ["a"]
    assert lines == ["b"]
    assert second.output_lines == ["b"]
    assert controller.status is OperationStatus.IDLE
    assert controller.operation is None
    assert controller.current_output_lines() == []
    assert events["states"] == [
        OperationStatus.RUNNING, OperationStatus.SUCCEEDED,
        OperationStatus.IDLE, OperationStatus.RUNNING, OperationStatus.SUCCEEDED,
        OperationStatus.IDLE,
    ]


def test_dismiss_while_running_is_rejected(settings):
    async def scenario():
        controller, _, _, _ = make_controller(settings)
        task = controller.start(OperationKind.INSTALL, "slow", *py("import time; time.sleep(0.2)"))
        with pytest.raises(AlreadyRunning):
            controller.dismiss()
        return await task

    assert asyncio.run(scenario()).status is OperationStatus.SUCCEEDED


def test_failing_subscriber_does_not_break_delivery(settings):
    def explode(line):
        raise RuntimeError("view crashed")

    async def scenario():
        controller, _, _, events = make_controller(settings)
        controller.subscribe(on_line=explode)
        operation = await controller.start(OperationKind.INSTALL, "x", *py("print('a'); print('b')"))
        return events, operation

    events, operation = asyncio.run(scenario())
    assert events["lines"] == ["a", "b"]
    assert operation.status is OperationStatus.SUCCEEDED


def test_unsubscribe_stops_notifications(settings):
    async def scenario():
        controller, _, _, _ = make_controller(settings)
        seen = []
        unsubscribe = controller.subscribe(on_line=seen.append)
        unsubscribe()
        await controller.start(OperationKind.INSTALL, "x", *py("print('a')"))
        return seen

    assert asyncio.run(scenario()) == []


def test_cancelling_the_task_waits_for_the_process_to_end():
    script = ("import signal, time\nsignal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
              "print('ready', flush=True)\ntime.sleep(3)")

    async def scenario():
        controller, _, reconciler, events = make_controller(Settings(kill_grace_period=0.5,
                                                                     service_settle_delay=0.0))
        completion_when_cancelled = []

        def on_state_change(status):
            if status is OperationStatus.CANCELLED:
                completion_when_cancelled.append(controller.operation.completion)
        controller.subscribe(on_state_change=on_state_change)

        task = controller.start(OperationKind.UPGRADE, "Upgrading", *py(script))
        while not events["lines"]:
            await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await asyncio.wait_for(task, 10)
        return controller, reconciler, events, completion_when_cancelled

    controller, reconciler, events, completion_when_cancelled = asyncio.run(scenario())
    assert events["states"] == [OperationStatus.RUNNING, OperationStatus.CANCELLED]
    [completion] = completion_when_cancelled
    assert completion is not None
    assert completion.reason is TerminationReason.CANCELLED
    assert completion.exit_code == -signal.SIGKILL
    assert controller.operation.error.exit_code == -signal.SIGKILL
    assert reconciler.passes == []


def test_run_with_timeout_cancels_long_operation(settings):
    async def scenario():
        controller, _, _, _ = make_controller(settings)
        task = controller.start(OperationKind.UPGRADE, "Upgrading", *py("import time; time.sleep(30)"))
        return await run_with_timeout(controller, task, 0.3)

    operation = asyncio.run(scenario())
    assert operation.status is OperationStatus.CANCELLED


def test_run_with_timeout_returns_fast_operation(settings):
    async def scenario():
        controller, _, _, _ = make_controller(settings)
        task = controller.start(OperationKind.UPGRADE, "Upgrading", *py("print('fast')"))
        return await run_with_timeout(controller, task, 30)

    assert asyncio.run(scenario()).status is OperationStatus.SUCCEEDED
