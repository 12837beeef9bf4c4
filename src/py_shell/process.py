"""Process handles — real OS processes wired to channels.

A ``ProcessHandle`` owns one OS process started with a fully resolved
command, argument list, environment snapshot and working directory.
Its three standard streams are exposed as channels:

- ``stdin`` — bytes written here are forwarded to the process's
  standard input.  Closing the channel closes the real OS stdin, which
  is how tools like ``cat`` learn that their input is over.
- ``stdout`` / ``stderr`` — bytes the process produces are forwarded
  here as they arrive, at most ``packet_size`` bytes per chunk.

Each stream is serviced by its own forwarding thread, so a process that
writes a lot of stderr can never deadlock against a reader that only
consumes stdout.

Lifecycle (monotonic, never regresses)::

    NOT_STARTED → RUNNING → EXITED
         ↓           ↓
         └────→ FAILED ←┘

Broken pipes follow shell semantics: when a process stops reading its
input, the upstream channel is failed with ``BrokenPipeError`` so the
producer stops; when the downstream channel is closed, the process's OS
stdout is closed so its next write hits ``SIGPIPE``.
"""

from __future__ import annotations

import contextlib
import os
import shutil
import subprocess
import threading
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING

from py_shell.channel import Channel, ClosedChannelError
from py_shell.config import ShellConfig
from py_shell.errors import ShellError
from py_shell.logging import Logger, LogLevel

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence
    from typing import BinaryIO


class SpawnError(ShellError):
    """Raised when a process cannot be started."""


class ProcessError(ShellError):
    """Raised when a process cannot be waited on or its streams fail."""


class ProcessState(StrEnum):
    """Lifecycle states of a process handle.

    - NOT_STARTED: created, no OS process yet.
    - RUNNING: the OS process exists and has not been reaped.
    - EXITED: reaped; ``exit_code`` is set.
    - FAILED: spawning, waiting or stream forwarding failed.
    """

    NOT_STARTED = "not_started"
    RUNNING = "running"
    EXITED = "exited"
    FAILED = "failed"


_TRANSITIONS: dict[ProcessState, frozenset[ProcessState]] = {
    ProcessState.NOT_STARTED: frozenset({ProcessState.RUNNING, ProcessState.FAILED}),
    ProcessState.RUNNING: frozenset({ProcessState.EXITED, ProcessState.FAILED}),
    ProcessState.EXITED: frozenset(),
    ProcessState.FAILED: frozenset(),
}


def resolve_executable(command: str, *, path: str | None, cwd: Path) -> str:
    """Find the file that *command* refers to.

    A command containing a path separator is taken relative to *cwd*;
    anything else is searched on *path* (a ``PATH``-style string).

    Args:
        command: Command name or path.
        path: Search path, or None for the platform default.
        cwd: Directory that relative commands resolve against.

    Returns:
        The absolute path of the executable.

    Raises:
        SpawnError: If nothing executable is found.

    """
    if os.sep in command or (os.altsep is not None and os.altsep in command):
        candidate = Path(command)
        if not candidate.is_absolute():
            candidate = cwd / candidate
        if candidate.is_file() and os.access(candidate, os.X_OK):
            return str(candidate)
        msg = f"Not an executable file: {candidate}"
        raise SpawnError(msg)

    found = shutil.which(command, path=path if path is not None else os.defpath)
    if found is None:
        msg = f"Command not found: {command}"
        raise SpawnError(msg)
    return found


class ProcessHandle:
    """An OS process whose standard streams are channels.

    Channels may be supplied by the caller (a pipeline hands in the
    channels between stages) or are created by the handle from its
    ``ShellConfig``.  Output channels marked as borrowed
    (``close_stdout=False`` / ``close_stderr=False``) are never closed by
    the handle, which is how many processes share one shell stdout.
    """

    def __init__(
        self,
        *,
        command: str,
        args: Sequence[str] = (),
        env: Mapping[str, str],
        cwd: str | os.PathLike[str],
        config: ShellConfig | None = None,
        stdin: Channel | None = None,
        stdout: Channel | None = None,
        stderr: Channel | None = None,
        close_stdout: bool = True,
        close_stderr: bool = True,
        logger: Logger | None = None,
    ) -> None:
        """Create a handle in the NOT_STARTED state.

        Args:
            command: Executable name or path.
            args: Arguments passed after the command.
            env: Environment for the process (copied now).
            cwd: Working directory for the process.
            config: Buffer constants; defaults apply when None.
            stdin: Channel to read process input from.
            stdout: Channel receiving process output.
            stderr: Channel receiving process errors.
            close_stdout: Close ``stdout`` when the process's output ends.
            close_stderr: Close ``stderr`` when the process's errors end.
            logger: Audit log to record lifecycle events in.

        """
        self._config = config or ShellConfig()
        self._command = command
        self._args: tuple[str, ...] = tuple(args)
        self._env: dict[str, str] = dict(env)
        self._cwd = Path(cwd)
        self._stdin = stdin or self._channel("stdin", self._config.input_buffer_size)
        self._stdout = stdout or self._channel("stdout", self._config.channel_buffer_size)
        self._stderr = stderr or self._channel("stderr", self._config.channel_buffer_size)
        self._close_stdout = close_stdout
        self._close_stderr = close_stderr
        self._logger = logger

        self._state = ProcessState.NOT_STARTED
        self._process: subprocess.Popen[bytes] | None = None
        self._exit_code: int | None = None
        self._failure: BaseException | None = None
        self._stream_errors: list[OSError] = []
        self._readers: list[threading.Thread] = []
        self._wait_lock = threading.Lock()

    @classmethod
    def spawn(
        cls,
        command: str,
        args: Sequence[str] = (),
        *,
        env: Mapping[str, str],
        cwd: str | os.PathLike[str],
        **options: object,
    ) -> ProcessHandle:
        """Create a handle and start its OS process.

        Keyword options are passed to the constructor.

        Raises:
            SpawnError: If the working directory or the executable is
                invalid, or the OS refuses to start the process.

        """
        handle = cls(command=command, args=args, env=env, cwd=cwd, **options)  # type: ignore[arg-type]
        handle.start()
        return handle

    @property
    def command(self) -> str:
        """Return the command as given."""
        return self._command

    @property
    def args(self) -> tuple[str, ...]:
        """Return the argument list."""
        return self._args

    @property
    def env(self) -> dict[str, str]:
        """Return a copy of the environment the process was given."""
        return dict(self._env)

    @property
    def cwd(self) -> Path:
        """Return the process working directory."""
        return self._cwd

    @property
    def pid(self) -> int | None:
        """Return the OS process id, or None before start."""
        return self._process.pid if self._process is not None else None

    @property
    def state(self) -> ProcessState:
        """Return the current lifecycle state."""
        return self._state

    @property
    def exit_code(self) -> int | None:
        """Return the exit code, or None until the process is reaped."""
        return self._exit_code

    @property
    def failure(self) -> BaseException | None:
        """Return what made the handle fail, if anything."""
        return self._failure

    @property
    def stdin(self) -> Channel:
        """Return the channel forwarded to the process's input."""
        return self._stdin

    @property
    def stdout(self) -> Channel:
        """Return the channel fed from the process's output."""
        return self._stdout

    @property
    def stderr(self) -> Channel:
        """Return the channel fed from the process's error stream."""
        return self._stderr

    def start(self) -> None:
        """Start the OS process and its forwarding threads.

        Raises:
            RuntimeError: If the handle was already started.
            SpawnError: If the process cannot be started.

        """
        if self._state is not ProcessState.NOT_STARTED:
            msg = f"Cannot start '{self._command}': handle is {self._state}"
            raise RuntimeError(msg)
        try:
            if not self._cwd.is_dir():
                msg = f"Not a directory: {self._cwd}"
                raise NotADirectoryError(msg)
            executable = resolve_executable(self._command, path=self._env.get("PATH"), cwd=self._cwd)
            self._process = subprocess.Popen(  # noqa: S603
                [executable, *self._args],
                cwd=self._cwd,
                env=self._env,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                bufsize=0,
            )
        except SpawnError as exc:
            self._fail(exc)
            raise
        except OSError as exc:
            self._fail(exc)
            msg = f"Cannot start '{self._command}': {exc}"
            raise SpawnError(msg) from exc

        self._transition(ProcessState.RUNNING)
        self._log(LogLevel.INFO, f"spawned {self._describe()} in {self._cwd}")
        process = self._process
        assert process.stdin is not None
        assert process.stdout is not None
        assert process.stderr is not None

        feeder = threading.Thread(
            target=self._feed,
            args=(process.stdin,),
            name=f"{self._command}-{process.pid}-stdin",
            daemon=True,
        )
        self._readers = [
            threading.Thread(
                target=self._forward,
                args=(process.stdout, self._stdout, self._close_stdout),
                name=f"{self._command}-{process.pid}-stdout",
                daemon=True,
            ),
            threading.Thread(
                target=self._forward,
                args=(process.stderr, self._stderr, self._close_stderr),
                name=f"{self._command}-{process.pid}-stderr",
                daemon=True,
            ),
        ]
        feeder.start()
        for reader in self._readers:
            reader.start()

    def wait(self) -> int:
        """Block until the process exits and its output is forwarded.

        Returns:
            The exit code.  Negative values mean the process was killed
            by that signal number.

        Raises:
            ProcessError: If the process was never started, cannot be
                waited on, or forwarding one of its streams failed.

        """
        with self._wait_lock:
            if self._exit_code is not None:
                return self._exit_code
            if self._state is ProcessState.FAILED:
                msg = f"Process '{self._command}' failed"
                raise ProcessError(msg) from self._failure
            if self._process is None:
                msg = f"Process '{self._command}' was never started"
                raise ProcessError(msg)

            try:
                code = self._process.wait()
            except OSError as exc:
                self._fail(exc)
                msg = f"Cannot wait for '{self._command}': {exc}"
                raise ProcessError(msg) from exc
            for reader in self._readers:
                reader.join()

            if self._stream_errors:
                error = self._stream_errors[0]
                self._fail(error)
                msg = f"Stream forwarding failed for '{self._command}': {error}"
                raise ProcessError(msg) from error

            self._exit_code = code
            self._transition(ProcessState.EXITED)
            level = LogLevel.INFO if code == 0 else LogLevel.WARNING
            self._log(level, f"{self._describe()} exited with {code}")
            return code

    def kill(self) -> None:
        """Forcefully terminate the OS process if it is still running."""
        process = self._process
        if process is None or process.returncode is not None:
            return
        with contextlib.suppress(ProcessLookupError):
            process.kill()
        self._log(LogLevel.WARNING, f"killed {self._describe()}")

    def _feed(self, pipe: BinaryIO) -> None:
        try:
            for chunk in self._stdin:
                view = memoryview(chunk)
                while view:
                    written = pipe.write(view)
                    view = view[written:]
        except BrokenPipeError as exc:
            # The process stopped reading; stop its producer too.
            self._stdin.fail(exc)
        except OSError as exc:
            self._stream_errors.append(exc)
            self._stdin.fail(exc)
        finally:
            with contextlib.suppress(OSError):
                pipe.close()

    def _forward(self, stream: BinaryIO, channel: Channel, close: bool) -> None:
        try:
            while chunk := stream.read(self._config.packet_size):
                channel.write(chunk)
        except ClosedChannelError:
            self._log(LogLevel.DEBUG, f"{channel.name} closed under {self._describe()}")
        except OSError as exc:
            self._stream_errors.append(exc)
        finally:
            stream.close()
            if close:
                channel.close()

    def _channel(self, stream: str, capacity: int) -> Channel:
        return Channel(
            capacity=capacity,
            chunk_size=self._config.packet_size,
            name=f"{self._command}:{stream}",
        )

    def _transition(self, target: ProcessState) -> None:
        if target not in _TRANSITIONS[self._state]:
            msg = f"Cannot move process '{self._command}' from {self._state} to {target}"
            raise RuntimeError(msg)
        self._state = target

    def _fail(self, cause: BaseException) -> None:
        self._failure = cause
        self._transition(ProcessState.FAILED)
        self._log(LogLevel.ERROR, f"{self._describe()} failed: {cause}")

    def _describe(self) -> str:
        return " ".join([self._command, *self._args])

    def _log(self, level: LogLevel, message: str) -> None:
        if self._logger is not None:
            self._logger.log(level, message, source="process", pid=self.pid)

    def __repr__(self) -> str:
        """Return a developer-friendly representation."""
        return f"ProcessHandle({self._describe()!r}, pid={self.pid}, {self._state})"
