"""The pipeline executor — stages wired by channels, run concurrently.

Given stages ``[s0, s1, ..., sn]`` the executor:

1. **Allocates** one ``Channel`` between every adjacent pair, sized by
   the context's ``PIPELINE_CHANNEL_BUFFER_SIZE`` and
   ``PIPELINE_RW_PACKET_SIZE``.  If the last stage produces output, it
   writes into the context's stdout, which the pipeline borrows and
   never closes.
2. **Prepares** every stage in order.  Processes are spawned here.  If
   any stage fails to prepare (``SpawnError``, a missing input file),
   the pipeline aborts: already-prepared stages are cancelled, every
   channel is failed so nobody blocks, the prepared stages are reaped,
   and the error is raised to the caller.
3. **Runs** every stage on its own thread and joins them all.  Bytes
   flow FIFO through each channel; a producer finishing closes its
   downstream channel, which the consumer sees as end-of-stream.

Exit policy:
    - **Default** — like a shell pipe, a non-zero exit is recorded in
      the result but siblings keep running to completion.
    - **Strict** (``pipefail``) — the first non-zero exit (or stage
      error) cancels every other stage and fails every channel.  The
      result's ``returncode`` is the status of the stage that failed
      first; stages killed by the abort are marked ``cancelled``.

Errors raised *while running* (a stream failure, an unwaitable
process, a bug in a custom stage) are captured per stage in
``StageResult.error`` rather than raised.  In either mode a stage that
raises has both of its channels failed, so its neighbours stop instead
of waiting forever on a reader or writer that is gone.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING

from py_shell.channel import Channel
from py_shell.logging import LogLevel
from py_shell.process import ProcessError, SpawnError
from py_shell.stages import ProcessStage, StoreResult

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from py_shell.context import ShellContext
    from py_shell.stages import PipelineStage

# Exit status reported for a process stage whose run raised instead of exiting.
_GENERAL_FAILURE = 1


@dataclass(frozen=True)
class StageResult:
    """Outcome of one stage.

    Attributes:
        name: The stage label.
        is_process: Whether the stage was an OS process.
        exit_code: The process exit code, or None for non-process
            stages and stages that raised.
        error: What the stage raised while running, if anything.
        cancelled: Whether a strict-mode abort stopped the stage.

    """

    name: str
    is_process: bool = False
    exit_code: int | None = None
    error: BaseException | None = None
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        """Return True if the stage neither raised nor exited non-zero."""
        return self.error is None and not self.exit_code

    @property
    def status(self) -> int:
        """Return the stage's shell status; a stage that raised counts as 1."""
        if self.exit_code is not None:
            return self.exit_code
        return _GENERAL_FAILURE if self.error is not None or self.is_process else 0


@dataclass(frozen=True)
class PipelineResult:
    """Outcome of a whole pipeline.

    Attributes:
        stages: One result per stage, in pipeline order.
        output: What a terminal ``StoreResult`` accumulated, or None.
        strict: Whether the pipeline ran in strict (pipefail) mode.
        failed_stage: Index of the stage whose failure aborted a strict
            run, or None.

    """

    stages: tuple[StageResult, ...]
    output: bytes | None = None
    strict: bool = False
    failed_stage: int | None = None

    @property
    def exit_codes(self) -> list[int | None]:
        """Return the exit code of every process stage, in order."""
        return [s.exit_code for s in self.stages if s.is_process]

    @property
    def returncode(self) -> int:
        """Return the pipeline's overall exit status.

        Default mode reports the last process stage.  Strict mode
        reports the first failure: the stage that aborted the run, or
        else the leftmost non-zero status among stages that were not
        cancelled.  A stage that raised counts as status 1.  Pipelines
        without processes report 0 unless a stage raised.
        """
        if self.strict:
            if self.failed_stage is not None:
                return self.stages[self.failed_stage].status
            statuses = (s.status for s in self.stages if not s.cancelled)
            return next((code for code in statuses if code != 0), 0)
        codes = [s.status for s in self.stages if s.is_process]
        if any(s.error is not None for s in self.stages if not s.is_process):
            codes.append(_GENERAL_FAILURE)
        return codes[-1] if codes else 0

    @property
    def ok(self) -> bool:
        """Return True if every stage succeeded."""
        return all(s.ok for s in self.stages)

    @property
    def text(self) -> str | None:
        """Return the stored output decoded as UTF-8, or None."""
        return self.output.decode() if self.output is not None else None


class Pipeline:
    """An ordered chain of stages, executed as a unit.

    Pipelines are immutable builders: ``pipe`` returns a new, longer
    pipeline, so a prefix can be reused.

    Sources may only start a chain and sinks may only end it; the
    constructor rejects anything else.
    """

    def __init__(self, stages: Iterable[PipelineStage]) -> None:
        """Create a pipeline from *stages*.

        Raises:
            ValueError: If there are no stages, or a stage sits where
                it cannot receive or pass on data.

        """
        self._stages: tuple[PipelineStage, ...] = tuple(stages)
        if not self._stages:
            msg = "A pipeline needs at least one stage"
            raise ValueError(msg)
        for index, stage in enumerate(self._stages):
            if index > 0 and not stage.accepts_input:
                msg = f"Stage '{stage.name}' cannot receive input (position {index})"
                raise ValueError(msg)
            if index < len(self._stages) - 1 and not stage.produces_output:
                msg = f"Stage '{stage.name}' produces no output (position {index})"
                raise ValueError(msg)

    @classmethod
    def of(cls, *stages: PipelineStage) -> Pipeline:
        """Create a pipeline from positional stages."""
        return cls(stages)

    @property
    def stages(self) -> tuple[PipelineStage, ...]:
        """Return the stages in order."""
        return self._stages

    def pipe(self, stage: PipelineStage) -> Pipeline:
        """Return a new pipeline with *stage* appended."""
        return Pipeline([*self._stages, stage])

    def run(self, context: ShellContext, *, strict: bool = False) -> PipelineResult:
        """Execute the pipeline inside *context*.

        Args:
            context: The shell supplying directory, environment,
                streams and buffer constants.
            strict: Abort the whole pipeline on the first failure.

        Returns:
            Per-stage results and the stored output.

        Raises:
            SpawnError: If a process stage cannot be started.
            OSError: If a source or sink cannot open its file.

        """
        return _Execution(self._stages, context, strict=strict).run()

    def __len__(self) -> int:
        """Return the number of stages."""
        return len(self._stages)

    def __repr__(self) -> str:
        """Return the stages joined like a shell pipe."""
        return "Pipeline(" + " | ".join(s.name for s in self._stages) + ")"


class _Execution:
    """One run of a pipeline: its channels, threads and results."""

    def __init__(self, stages: Sequence[PipelineStage], context: ShellContext, *, strict: bool) -> None:
        self._stages = stages
        self._context = context
        self._strict = strict
        config = context.config
        self._channels = [
            Channel(
                capacity=config.channel_buffer_size,
                chunk_size=config.packet_size,
                name=f"{left.name}|{right.name}",
            )
            for left, right in zip(stages, stages[1:], strict=False)
        ]
        self._results: list[StageResult | None] = [None] * len(stages)
        self._lock = threading.Lock()
        self._aborted = False
        self._failed_stage: int | None = None
        self._cancelled: set[int] = set()

    def run(self) -> PipelineResult:
        prepared: list[int] = []
        failure: BaseException | None = None
        for index, stage in enumerate(self._stages):
            try:
                self._prepare(index, stage)
            except (SpawnError, OSError) as exc:
                failure = exc
                break
            prepared.append(index)

        if failure is not None:
            self._abort(failure, reason=f"stage {len(prepared)} could not start: {failure}")

        self._execute(prepared)

        if failure is not None:
            raise failure
        return self._collect()

    def _prepare(self, index: int, stage: PipelineStage) -> None:
        upstream = self._channels[index - 1] if index > 0 else None
        if index < len(self._channels):
            downstream, close_downstream = self._channels[index], True
        else:
            downstream, close_downstream = self._context.stdout, False
        stage.prepare(
            self._context,
            upstream=upstream,
            downstream=downstream if stage.produces_output else None,
            close_downstream=close_downstream,
        )

    def _execute(self, indices: list[int]) -> None:
        threads = [
            threading.Thread(
                target=self._run_stage,
                args=(index,),
                name=f"stage-{index}-{self._stages[index].name}",
                daemon=True,
            )
            for index in indices
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

    def _run_stage(self, index: int) -> None:
        stage = self._stages[index]
        is_process = isinstance(stage, ProcessStage)
        try:
            code = stage.run()
        except Exception as exc:  # noqa: BLE001
            self._record(index, StageResult(name=stage.name, is_process=is_process, error=exc))
            self._log(LogLevel.ERROR, f"stage '{stage.name}' failed: {exc!r}")
            for channel in self._neighbours(index):
                channel.fail(exc)
            if self._strict:
                self._abort(exc, reason=f"stage '{stage.name}' failed", index=index)
            return

        self._record(index, StageResult(name=stage.name, is_process=is_process, exit_code=code))
        if self._strict and code:
            cause = ProcessError(f"Stage '{stage.name}' exited with {code}")
            self._abort(cause, reason=str(cause), index=index)

    def _record(self, index: int, result: StageResult) -> None:
        with self._lock:
            if index in self._cancelled:
                result = replace(result, cancelled=True)
            self._results[index] = result

    def _neighbours(self, index: int) -> list[Channel]:
        channels = []
        if index > 0:
            channels.append(self._channels[index - 1])
        if index < len(self._channels):
            channels.append(self._channels[index])
        return channels

    def _abort(self, cause: BaseException, *, reason: str, index: int | None = None) -> None:
        with self._lock:
            if self._aborted:
                return
            self._aborted = True
            self._failed_stage = index
            self._cancelled = {i for i, result in enumerate(self._results) if result is None and i != index}
        self._log(LogLevel.WARNING, f"aborting pipeline: {reason}")
        for stage in self._stages:
            stage.cancel()
        for channel in self._channels:
            channel.fail(cause)

    def _collect(self) -> PipelineResult:
        results = tuple(
            result if result is not None else StageResult(name=stage.name)
            for stage, result in zip(self._stages, self._results, strict=True)
        )
        last = self._stages[-1]
        output = last.data if isinstance(last, StoreResult) else None
        self._log(LogLevel.DEBUG, f"pipeline of {len(results)} stages finished")
        return PipelineResult(
            stages=results,
            output=output,
            strict=self._strict,
            failed_stage=self._failed_stage,
        )

    def _log(self, level: LogLevel, message: str) -> None:
        self._context.logger.log(level, message, source="pipeline")
