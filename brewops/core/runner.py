"""Launch external commands and stream their output line by line.

A ProcessRunner spawns one child per ``start`` call and hands back a
ProcessHandle. The handle exposes the merged stdout/stderr as a lazy,
single-use async iterator of OutputLine, a ``completion`` future and a
``cancel`` method. Spawn failures do not raise: they come back as a handle
whose stream is empty and whose completion is already resolved, so callers
handle "could not start" and "ran and failed" the same way.
"""

import asyncio
import logging
import os
import signal
from typing import AsyncIterator, Dict, List, Optional, Sequence

from ..config import Settings
from .errors import SpawnFailure, StreamAlreadyConsumed
from .models import CommandResult, Completion, OutputLine, TerminationReason

# Set up logging for this module
logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 8192

# Shell conventions for "command not found" and "found but not executable"
EXIT_NOT_FOUND = 127
EXIT_NOT_EXECUTABLE = 126

_END_OF_STREAM = object()


def decode_line(raw: bytes) -> str:
    """Decode one line as UTF-8, replacing invalid bytes with U+FFFD."""
    return raw.decode("utf-8", errors="replace")


class LineSplitter:
    """Incrementally split a byte stream on ``\\n``.

    Each line is decoded on its own so one malformed line cannot affect the
    ones around it.
    """

    def __init__(self):
        self._buffer = bytearray()

    def feed(self, chunk: bytes) -> List[str]:
        self._buffer.extend(chunk)
        lines = []
        while True:
            newline = self._buffer.find(b"\n")
            if newline < 0:
                break
            lines.append(decode_line(bytes(self._buffer[:newline])))
            del self._buffer[:newline + 1]
        return lines

    def flush(self) -> List[str]:
        """Return the trailing partial line, if any."""
        if not self._buffer:
            return []
        line = decode_line(bytes(self._buffer))
        self._buffer.clear()
        return [line]


def _spawn_failure(command: str, error: OSError) -> SpawnFailure:
    if isinstance(error, FileNotFoundError):
        return SpawnFailure(command, error.strerror or "command not found", EXIT_NOT_FOUND)
    return SpawnFailure(command, error.strerror or str(error), EXIT_NOT_EXECUTABLE)


class ProcessHandle:
    """One live invocation of an external command."""

    def __init__(self, command: str, arguments: Sequence[str], settings: Settings):
        self.command = command
        self.arguments = list(arguments)
        self._settings = settings
        self._process: Optional[asyncio.subprocess.Process] = None
        self._queue: asyncio.Queue = asyncio.Queue()
        self._consumed = False
        self._cancel_requested = False
        self._kill_timer: Optional[asyncio.TimerHandle] = None
        self._watcher: Optional[asyncio.Task] = None
        self.completion: asyncio.Future = asyncio.get_running_loop().create_future()

    def __repr__(self):
        return f"<ProcessHandle {self.command} {' '.join(self.arguments)} pid={self.pid}>"

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    @property
    def exit_status(self) -> Optional[int]:
        """Exit code once the process has terminated, otherwise None."""
        if self._process is None:
            return self.completion.result().exit_code if self.completion.done() else None
        return self._process.returncode

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested

    def _attach(self, process: asyncio.subprocess.Process):
        self._process = process
        self._watcher = asyncio.ensure_future(self._pump_and_wait())

    def _fail_to_spawn(self, failure: SpawnFailure):
        self._queue.put_nowait(_END_OF_STREAM)
        self.completion.set_result(Completion(failure.exit_code, TerminationReason.EXITED, failure))

    async def _pump_and_wait(self):
        try:
            await self._pump()
        except Exception as e:
            logger.exception(f"Reading output of {self.command} failed")
            if not self.completion.done():
                self.completion.set_exception(e)

    async def _pump(self):
        splitter = LineSplitter()
        index = 0
        stdout = self._process.stdout
        try:
            while True:
                chunk = await stdout.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                for text in splitter.feed(chunk):
                    self._queue.put_nowait(OutputLine(index, text))
                    index += 1
            for text in splitter.flush():
                self._queue.put_nowait(OutputLine(index, text))
                index += 1
        finally:
            self._queue.put_nowait(_END_OF_STREAM)

        returncode = await self._process.wait()
        if self._kill_timer is not None:
            self._kill_timer.cancel()
            self._kill_timer = None

        if self._cancel_requested and returncode != 0:
            reason = TerminationReason.CANCELLED
        elif returncode < 0:
            reason = TerminationReason.SIGNAL_KILLED
        else:
            reason = TerminationReason.EXITED
        logger.debug(f"{self.command} (pid {self.pid}) finished: exit={returncode} reason={reason.value} lines={index}")
        if not self.completion.done():
            self.completion.set_result(Completion(returncode, reason))

    def lines(self) -> AsyncIterator[OutputLine]:
        """Return the output lines in arrival order, ending when the process closes its output.

        Raises:
            StreamAlreadyConsumed: if called a second time
        """
        if self._consumed:
            raise StreamAlreadyConsumed(f"Output of {self.command} is already being consumed")
        self._consumed = True
        return self._iter_lines()

    async def _iter_lines(self) -> AsyncIterator[OutputLine]:
        while True:
            item = await self._queue.get()
            if item is _END_OF_STREAM:
                return
            yield item

    def _signal_group(self, sig) -> bool:
        """Send ``sig`` to the child's process group, which includes anything it spawned.

        Returns False if no process in the group is left to receive it.
        """
        try:
            os.killpg(self._process.pid, sig)
            return True
        except ProcessLookupError:
            return False
        except PermissionError:
            logger.debug(f"Cannot signal process group of {self.command}, signalling pid {self.pid} only")
        if self._process.returncode is not None:
            return False
        try:
            self._process.send_signal(sig)
        except ProcessLookupError:
            return False
        return True

    def cancel(self) -> bool:
        """Ask the process and its children to terminate.

        Returns True if a signal was sent. Calling this after the completion
        has resolved, or a second time, does nothing.
        """
        if self._process is None or self.completion.done() or self._cancel_requested:
            return False
        self._cancel_requested = True
        if not self._signal_group(self._settings.cancel_signal):
            logger.debug(f"{self.command} exited before it could be signalled")
            return False
        logger.info(f"Sent signal {self._settings.cancel_signal} to {self.command} (pid {self.pid})")

        grace = self._settings.kill_grace_period
        if grace is not None:
            loop = asyncio.get_running_loop()
            self._kill_timer = loop.call_later(grace, self._kill)
        return True

    def _kill(self):
        self._kill_timer = None
        if self._process is not None and not self.completion.done():
            logger.warning(f"{self.command} (pid {self.pid}) ignored cancellation, killing it")
            self._signal_group(signal.SIGKILL)

    async def wait(self) -> Completion:
        return await asyncio.shield(self.completion)


class ProcessRunner:
    """Spawns external commands with the Homebrew-aware environment."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or Settings()

    def build_environment(self, environment: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        """Current environment plus configured overrides, with brew prefixes first in PATH."""
        env = dict(os.environ)
        env.update(dict(self.settings.extra_environment))
        if environment:
            env.update(environment)
        search_paths = [p for p in self.settings.brew_search_paths if p]
        existing = env.get("PATH")
        if existing:
            search_paths.append(existing)
        env["PATH"] = os.pathsep.join(search_paths)
        return env

    async def _spawn(self, command, arguments, working_directory, environment, stderr):
        return await asyncio.create_subprocess_exec(
            command, *arguments,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=stderr,
            cwd=working_directory,
            env=self.build_environment(environment),
            start_new_session=True,
        )

    async def start(self, command: str, arguments: Sequence[str] = (),
                    working_directory: Optional[str] = None,
                    environment: Optional[Dict[str, str]] = None) -> ProcessHandle:
        """Spawn ``command`` with ``arguments`` and return its handle.

        Args:
            command: Executable name or path, resolved against PATH
            arguments: Arguments passed verbatim, never through a shell
            working_directory: Optional cwd for the child
            environment: Extra environment variables for this call only

        Returns:
            ProcessHandle; on spawn failure its completion is already resolved
        """
        handle = ProcessHandle(command, arguments, self.settings)
        logger.debug(f"Starting: {command} {' '.join(handle.arguments)}")
        try:
            process = await self._spawn(command, handle.arguments, working_directory,
                                        environment, asyncio.subprocess.STDOUT)
        except OSError as e:
            failure = _spawn_failure(command, e)
            logger.error(str(failure))
            handle._fail_to_spawn(failure)
            return handle
        handle._attach(process)
        return handle

    async def capture(self, command: str, arguments: Sequence[str] = (),
                      working_directory: Optional[str] = None) -> CommandResult:
        """Run a short command to completion with stdout and stderr kept apart.

        Raises:
            SpawnFailure: if the command could not be started
        """
        arguments = list(arguments)
        logger.debug(f"Querying: {command} {' '.join(arguments)}")
        try:
            process = await self._spawn(command, arguments, working_directory,
                                        None, asyncio.subprocess.PIPE)
        except OSError as e:
            raise _spawn_failure(command, e) from e
        stdout, stderr = await process.communicate()
        return CommandResult(
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            exit_code=process.returncode,
        )


async def run_to_completion(handle: ProcessHandle) -> List[OutputLine]:
    """Drain a handle's output and wait for it to finish."""
    lines = [line async for line in handle.lines()]
    await handle.wait()
    return lines
