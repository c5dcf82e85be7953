"""Shared fixtures and fakes for the brewops tests."""

import sys

import pytest

from brewops.config import Settings
from brewops.core.models import CommandResult
from brewops.core.reconciler import StateSource
from brewops.core.runner import ProcessRunner


def py(script):
    """(command, arguments) that run ``script`` with the current interpreter."""
    return sys.executable, ["-c", script]


class CountingRunner(ProcessRunner):
    """ProcessRunner that records every spawn."""

    def __init__(self, settings=None):
        super().__init__(settings)
        self.started = []

    async def start(self, command, arguments=(), working_directory=None, environment=None):
        self.started.append((command, list(arguments)))
        return await super().start(command, arguments, working_directory, environment)


class FakeSource(StateSource):
    """In-memory StateSource that records the order of queries."""

    def __init__(self, fail_on=None):
        self.calls = []
        self.fail_on = fail_on
        self.data = {
            "list_installed_formulae": [],
            "list_installed_casks": [],
            "list_outdated_packages": [],
            "list_services": [],
            "list_quarantined_apps": [],
            "list_pinned_packages": [],
        }

    async def _answer(self, name):
        self.calls.append(name)
        if name == self.fail_on:
            raise RuntimeError(f"{name} exploded")
        return list(self.data[name])

    async def list_installed_formulae(self):
        return await self._answer("list_installed_formulae")

    async def list_installed_casks(self):
        return await self._answer("list_installed_casks")

    async def list_outdated_packages(self):
        return await self._answer("list_outdated_packages")

    async def list_services(self):
        return await self._answer("list_services")

    async def list_quarantined_apps(self):
        return await self._answer("list_quarantined_apps")

    async def list_pinned_packages(self):
        return await self._answer("list_pinned_packages")


class ScriptedRunner(ProcessRunner):
    """ProcessRunner whose ``capture`` answers from a table instead of spawning."""

    def __init__(self, answers, settings=None):
        super().__init__(settings)
        self.answers = answers
        self.captured = []

    async def capture(self, command, arguments=(), working_directory=None):
        key = " ".join(arguments)
        self.captured.append((command, key))
        answer = self.answers.get(key, CommandResult("", "unexpected command", 1))
        if isinstance(answer, Exception):
            raise answer
        return answer


@pytest.fixture
def settings():
    return Settings(kill_grace_period=2.0, service_settle_delay=0.0)
