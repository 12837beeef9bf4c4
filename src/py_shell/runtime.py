"""The shell runtime — where root contexts come from.

``ShellRuntime`` is the host program's entry point.  It owns the pieces
that outlive any single context:

- the **root stdout/stderr channels**, each drained by a thread that
  copies bytes to a host stream (``sys.stdout.buffer`` by default);
- the **audit log** every context writes to;
- the **default exit policy** (strict or not) for pipelines.

Typical use::

    with ShellRuntime() as runtime:
        ctx = runtime.shell(lambda sh: sh.run("ls -la"))
        print(ctx.env("PWD"))

``shell()`` creates a root context, runs the body, waits for every
background job and for the output to reach the host stream, then
returns the finished context so the host can inspect ``PWD`` and the
environment.
"""

from __future__ import annotations

import os
import sys
import threading
from pathlib import Path
from typing import TYPE_CHECKING, BinaryIO

from py_shell.channel import Channel
from py_shell.config import ShellConfig
from py_shell.context import ShellContext
from py_shell.logging import Logger, LogLevel

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from py_shell.context import PathLike


class _Drain:
    """A channel whose contents are copied to a host stream."""

    def __init__(self, name: str, stream: BinaryIO, config: ShellConfig, logger: Logger) -> None:
        self.channel = Channel(
            capacity=config.channel_buffer_size,
            chunk_size=config.packet_size,
            name=name,
        )
        self._stream = stream
        self._logger = logger
        self._thread = threading.Thread(target=self._pump, name=f"drain-{name}", daemon=True)
        self._thread.start()

    def _pump(self) -> None:
        for chunk in self.channel:
            try:
                self._stream.write(chunk)
                self._stream.flush()
            except (OSError, ValueError) as exc:
                self._logger.log(LogLevel.ERROR, f"cannot write {self.channel.name}: {exc}", source="runtime")
                self.channel.fail(exc)
            finally:
                self.channel.task_done()

    def flush(self) -> None:
        self.channel.join()

    def close(self) -> None:
        self.channel.close()
        self._thread.join()


class ShellRuntime:
    """Create and run root shell contexts.

    The runtime's environment and directory are the defaults for every
    root context; ``open`` and ``shell`` accept overrides.
    """

    def __init__(
        self,
        *,
        env: Mapping[str, str] | None = None,
        directory: PathLike | None = None,
        stdout: BinaryIO | None = None,
        stderr: BinaryIO | None = None,
        strict: bool = False,
        logger: Logger | None = None,
    ) -> None:
        """Start a runtime and its output drainers.

        Args:
            env: Default environment; ``os.environ`` when None.
            directory: Default working directory; the process's
                current directory when None.
            stdout: Host stream for standard output.
            stderr: Host stream for standard error.
            strict: Default pipeline exit policy.
            logger: Audit log; a fresh one when None.

        """
        self._env: dict[str, str] = dict(os.environ if env is None else env)
        self._directory = Path(directory) if directory is not None else Path.cwd()
        self._strict = strict
        self._logger = logger or Logger()
        config = ShellConfig.from_environment(self._env)
        self._stdout = _Drain("stdout", stdout or sys.stdout.buffer, config, self._logger)
        self._stderr = _Drain("stderr", stderr or sys.stderr.buffer, config, self._logger)
        self._closed = False

    @property
    def logger(self) -> Logger:
        """Return the audit log."""
        return self._logger

    @property
    def directory(self) -> Path:
        """Return the absolute directory new shells start in."""
        return self._directory.resolve()

    @property
    def stdout(self) -> Channel:
        """Return the root stdout channel."""
        return self._stdout.channel

    @property
    def stderr(self) -> Channel:
        """Return the root stderr channel."""
        return self._stderr.channel

    @property
    def strict(self) -> bool:
        """Return the default pipeline exit policy."""
        return self._strict

    @property
    def closed(self) -> bool:
        """Return True once ``close`` has been called."""
        return self._closed

    def open(
        self,
        *,
        directory: PathLike | None = None,
        env: Mapping[str, str] | None = None,
        variables: Mapping[str, str] | None = None,
    ) -> ShellContext:
        """Create a root context.

        Args:
            directory: Working directory; the runtime's default when None.
            env: Environment (replaces the runtime's default).
            variables: Initial shell-local variables.

        Raises:
            RuntimeError: If the runtime is closed.
            NotADirectoryError: If the directory is not a directory.

        """
        if self._closed:
            msg = "Shell runtime is closed"
            raise RuntimeError(msg)
        context = ShellContext(
            directory=self._directory if directory is None else directory,
            environment=self._env if env is None else env,
            variables=variables,
            stdout=self.stdout,
            stderr=self.stderr,
            logger=self._logger,
            strict=self._strict,
        )
        self._logger.log(LogLevel.INFO, f"root shell in {context.directory}", source="runtime")
        return context

    def shell(
        self,
        body: Callable[[ShellContext], object] | None = None,
        *,
        directory: PathLike | None = None,
        env: Mapping[str, str] | None = None,
        variables: Mapping[str, str] | None = None,
    ) -> ShellContext:
        """Run *body* in a new root context and return the context.

        Background jobs are joined and output is flushed to the host
        streams before returning.
        """
        context = self.open(directory=directory, env=env, variables=variables)
        try:
            if body is not None:
                body(context)
        finally:
            context.join()
            self.flush()
        return context

    def flush(self) -> None:
        """Block until everything written so far reached the host streams."""
        self._stdout.flush()
        self._stderr.flush()

    def close(self) -> None:
        """Close the root streams and stop the drainers."""
        if self._closed:
            return
        self._closed = True
        self._stdout.close()
        self._stderr.close()
        self._logger.log(LogLevel.DEBUG, "runtime closed", source="runtime")

    def __enter__(self) -> ShellRuntime:
        """Return the runtime for use in a ``with`` block."""
        return self

    def __exit__(self, *_exc: object) -> None:
        """Close the runtime."""
        self.close()


def shell(
    body: Callable[[ShellContext], object] | None = None,
    *,
    directory: PathLike | None = None,
    env: Mapping[str, str] | None = None,
    variables: Mapping[str, str] | None = None,
    stdout: BinaryIO | None = None,
    stderr: BinaryIO | None = None,
    strict: bool = False,
) -> ShellContext:
    """Run *body* in a one-off runtime and return the finished context."""
    with ShellRuntime(env=env, directory=directory, stdout=stdout, stderr=stderr, strict=strict) as runtime:
        return runtime.shell(body, variables=variables)
