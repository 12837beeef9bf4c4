"""Pipeline stages — anything with byte streams.

A pipeline is a chain of stages.  Every stage satisfies the same
``PipelineStage`` protocol, whatever it does with bytes:

- **ProcessStage** — an OS process.  Reads its upstream channel as
  stdin, writes stdout downstream, sends stderr to the shell's stderr.
- **Sources** — produce a downstream channel from nothing upstream:
  ``BytesSource`` / ``TextSource`` (a literal), ``FileSource`` (a file),
  ``EmptySource`` (immediately closed).
- **Sinks** — consume upstream to completion and produce nothing
  downstream: ``StoreResult`` (in-memory accumulator), ``FileSink``
  (writes a file), ``ChannelSink`` (forwards into a borrowed channel).

Every stage runs in two phases.  ``prepare`` is synchronous and wires
the stage to its channels. This is where processes are spawned and
files opened, so a bad command fails before anything runs.  ``run``
is called on the stage's own thread and blocks until the stage is
done.  ``cancel`` asks a running stage to stop early.

Design: Strategy pattern
    The pipeline executor only knows the protocol.  Adding a new kind
    of stage means writing a new class; the executor never changes.
"""

from __future__ import annotations

import shlex
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from py_shell.channel import Channel, ClosedChannelError
from py_shell.process import ProcessHandle

if TYPE_CHECKING:
    from collections.abc import Iterator
    from typing import BinaryIO

    from py_shell.context import ShellContext


class PipelineStage(Protocol):
    """Interface that every pipeline stage must satisfy.

    ``accepts_input`` / ``produces_output`` tell the pipeline builder
    where in a chain the stage may appear.
    """

    accepts_input: bool
    produces_output: bool

    @property
    def name(self) -> str:
        """Return a short label for logs and results."""
        ...  # pragma: no cover

    def prepare(
        self,
        context: ShellContext,
        *,
        upstream: Channel | None,
        downstream: Channel | None,
        close_downstream: bool,
    ) -> None:
        """Wire the stage to its channels; may spawn or open resources."""
        ...  # pragma: no cover

    def run(self) -> int | None:
        """Move bytes until done; return an exit code for processes."""
        ...  # pragma: no cover

    def cancel(self) -> None:
        """Ask a running stage to stop early."""
        ...  # pragma: no cover


class ProcessStage:
    """A pipeline stage backed by an OS process."""

    accepts_input = True
    produces_output = True

    def __init__(self, command: str, *args: str, stderr: Channel | None = None) -> None:
        """Describe a process to spawn when the pipeline runs.

        Args:
            command: Executable name or path.
            *args: Arguments passed to the executable.
            stderr: Channel for the process's errors; the shell's
                stderr is used when None.

        """
        self._command = command
        self._args: tuple[str, ...] = args
        self._stderr = stderr
        self._handle: ProcessHandle | None = None

    @classmethod
    def from_command_line(cls, line: str, *, stderr: Channel | None = None) -> ProcessStage:
        """Build a stage from a command line such as ``"ls -la"``.

        Raises:
            ValueError: If the line holds no command.

        """
        argv = shlex.split(line)
        if not argv:
            msg = f"No command in {line!r}"
            raise ValueError(msg)
        return cls(argv[0], *argv[1:], stderr=stderr)

    @property
    def name(self) -> str:
        """Return the command name."""
        return self._command

    @property
    def args(self) -> tuple[str, ...]:
        """Return the arguments."""
        return self._args

    @property
    def handle(self) -> ProcessHandle | None:
        """Return the process handle once prepared."""
        return self._handle

    def prepare(
        self,
        context: ShellContext,
        *,
        upstream: Channel | None,
        downstream: Channel | None,
        close_downstream: bool,
    ) -> None:
        """Spawn the process inside *context*.

        Raises:
            SpawnError: If the process cannot be started.

        """
        if downstream is None:
            downstream, close_downstream = context.stdout, False
        self._handle = ProcessHandle.spawn(
            self._command,
            self._args,
            env=context.environment,
            cwd=context.directory,
            config=context.config,
            stdin=upstream,
            stdout=downstream,
            stderr=self._stderr or context.stderr,
            close_stdout=close_downstream,
            close_stderr=False,
            logger=context.logger,
        )
        if upstream is None:
            self._handle.stdin.close()

    def run(self) -> int:
        """Wait for the process and return its exit code."""
        if self._handle is None:
            msg = f"Stage '{self._command}' was not prepared"
            raise RuntimeError(msg)
        return self._handle.wait()

    def cancel(self) -> None:
        """Kill the process."""
        if self._handle is not None:
            self._handle.kill()

    def __repr__(self) -> str:
        """Return a developer-friendly representation."""
        return f"ProcessStage({shlex.join([self._command, *self._args])!r})"


# -- Sources ------------------------------------------------------------------


class _Source:
    """Shared plumbing for stages that only produce bytes."""

    accepts_input = False
    produces_output = True

    def __init__(self) -> None:
        self._downstream: Channel | None = None
        self._close_downstream = True
        self._packet_size = 0

    @property
    def name(self) -> str:
        return type(self).__name__

    def prepare(
        self,
        context: ShellContext,
        *,
        upstream: Channel | None,  # noqa: ARG002
        downstream: Channel | None,
        close_downstream: bool,
    ) -> None:
        if downstream is None:
            downstream, close_downstream = context.stdout, False
        self._downstream = downstream
        self._close_downstream = close_downstream
        self._packet_size = context.config.packet_size
        self._open(context)

    def run(self) -> None:
        downstream = self._downstream
        if downstream is None:
            msg = f"Stage '{self.name}' was not prepared"
            raise RuntimeError(msg)
        try:
            for block in self._blocks():
                downstream.write(block)
        except ClosedChannelError as exc:
            # A reader that stopped early is a broken pipe, not an error.
            if not isinstance(exc.cause, BrokenPipeError):
                raise
        finally:
            self._release()
            if self._close_downstream:
                downstream.close()

    def cancel(self) -> None:
        """Sources are unblocked by failing their channel."""

    def _open(self, context: ShellContext) -> None:
        """Acquire resources before the pipeline starts."""

    def _release(self) -> None:
        """Release resources acquired by ``_open``."""

    def _blocks(self) -> Iterator[bytes]:
        raise NotImplementedError


class BytesSource(_Source):
    """A literal byte string as the first stage of a pipeline."""

    def __init__(self, data: bytes) -> None:
        """Create a source that emits *data* once."""
        super().__init__()
        self._data = data

    def _blocks(self) -> Iterator[bytes]:
        yield self._data


class TextSource(BytesSource):
    """A literal string, encoded on the way in."""

    def __init__(self, text: str, *, encoding: str = "utf-8") -> None:
        """Create a source that emits *text* encoded with *encoding*."""
        super().__init__(text.encode(encoding))


class EmptySource(_Source):
    """A source that closes immediately, like ``< /dev/null``."""

    def _blocks(self) -> Iterator[bytes]:
        yield from ()


class FileSource(_Source):
    """Stream a file's contents, resolved against the shell directory."""

    def __init__(self, path: str | Path) -> None:
        """Create a source reading *path*."""
        super().__init__()
        self._path = Path(path)
        self._file: BinaryIO | None = None

    @property
    def name(self) -> str:
        """Return the file path as given."""
        return str(self._path)

    def _open(self, context: ShellContext) -> None:
        self._file = (context.directory / self._path).open("rb")

    def _release(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None

    def _blocks(self) -> Iterator[bytes]:
        assert self._file is not None
        while block := self._file.read(self._packet_size):
            yield block


# -- Sinks --------------------------------------------------------------------


class _Sink:
    """Shared plumbing for stages that only consume bytes."""

    accepts_input = True
    produces_output = False

    def __init__(self) -> None:
        self._upstream: Channel | None = None

    @property
    def name(self) -> str:
        return type(self).__name__

    def prepare(
        self,
        context: ShellContext,
        *,
        upstream: Channel | None,
        downstream: Channel | None,  # noqa: ARG002
        close_downstream: bool,  # noqa: ARG002
    ) -> None:
        self._upstream = upstream
        self._open(context)

    def run(self) -> None:
        try:
            if self._upstream is not None:
                for chunk in self._upstream:
                    self._consume(chunk)
        finally:
            self._release()

    def cancel(self) -> None:
        """Sinks are unblocked by failing their channel."""

    def _open(self, context: ShellContext) -> None:
        """Acquire resources before the pipeline starts."""

    def _release(self) -> None:
        """Release resources acquired by ``_open``."""

    def _consume(self, chunk: bytes) -> None:
        raise NotImplementedError


class StoreResult(_Sink):
    """Accumulate a pipeline's terminal output in memory.

    The received chunks are kept as they arrived; ``data``, ``text``
    and ``lines`` are convenience views over them.  Preparing the sink
    again (reusing it in another pipeline) starts a fresh result.
    """

    def __init__(self) -> None:
        """Create an empty accumulator."""
        super().__init__()
        self._chunks: list[bytes] = []

    @property
    def chunks(self) -> list[bytes]:
        """Return the chunks in the order they were received."""
        return list(self._chunks)

    @property
    def data(self) -> bytes:
        """Return everything received, joined."""
        return b"".join(self._chunks)

    @property
    def text(self) -> str:
        """Return everything received, decoded as UTF-8."""
        return self.data.decode()

    @property
    def lines(self) -> list[str]:
        """Return the decoded output split into lines."""
        return self.text.splitlines()

    def _open(self, context: ShellContext) -> None:  # noqa: ARG002
        self._chunks = []

    def _consume(self, chunk: bytes) -> None:
        self._chunks.append(chunk)


class FileSink(_Sink):
    """Write a pipeline's output to a file, like ``>`` and ``>>``."""

    def __init__(self, path: str | Path, *, append: bool = False) -> None:
        """Create a sink writing to *path*.

        Args:
            path: Target file, resolved against the shell directory.
            append: Append instead of truncating.

        """
        super().__init__()
        self._path = Path(path)
        self._append = append
        self._file: BinaryIO | None = None

    @property
    def name(self) -> str:
        """Return the file path as given."""
        return str(self._path)

    def _open(self, context: ShellContext) -> None:
        mode = "ab" if self._append else "wb"
        self._file = (context.directory / self._path).open(mode)

    def _release(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None

    def _consume(self, chunk: bytes) -> None:
        assert self._file is not None
        self._file.write(chunk)


class ChannelSink(_Sink):
    """Forward a pipeline's output into a channel the pipeline does not own.

    The target channel is never closed by this sink, so several
    pipelines can feed one shared stream.
    """

    def __init__(self, channel: Channel) -> None:
        """Create a sink forwarding into *channel*."""
        super().__init__()
        self._target = channel

    @property
    def name(self) -> str:
        """Return the target channel's name."""
        return self._target.name

    def _consume(self, chunk: bytes) -> None:
        self._target.write(chunk)
