"""Shell contexts — the scope a block of pipelines runs in.

A ``ShellContext`` holds everything a real shell keeps per shell
instance:

- **working directory** — always absolute, always an existing directory.
- **environment** — visible to every process spawned here and
  inherited by sub-shells.
- **shell-local variables** — visible to in-context lookups only;
  never handed to processes, never inherited.
- **stdout / stderr** — channel handles that processes write to.
- **buffer constants** — resolved once, from the environment supplied
  at creation (see ``py_shell.config``).

Invariant: ``PWD`` is always in the environment and equals the working
directory; ``OLDPWD`` records the previous ``PWD`` whenever the
directory changes.

Sub-shell inheritance:

============  ============================  =========================
What          Without override              With override
============  ============================  =========================
directory     parent's directory            the given directory
environment   copy of the parent's          exactly the given map
variables     **empty**                     the given map
streams       the parent's, by reference    (redirect in the body)
============  ============================  =========================

A child never writes into its parent: the parent's maps are copied
once when the child is built, and no reference back is kept.
"""

from __future__ import annotations

import contextlib
from pathlib import Path
from typing import TYPE_CHECKING, TypeAlias

from py_shell.config import ShellConfig
from py_shell.env import Environment
from py_shell.jobs import Job, JobManager
from py_shell.logging import Logger, LogLevel
from py_shell.pipeline import Pipeline, PipelineResult
from py_shell.stages import ProcessStage

if TYPE_CHECKING:
    import os
    from collections.abc import Callable, Iterator, Mapping

    from py_shell.channel import Channel
    from py_shell.stages import PipelineStage

StageLike: TypeAlias = "PipelineStage | Pipeline"
PathLike: TypeAlias = "str | os.PathLike[str]"


def resolve_directory(path: PathLike, *, base: Path | None = None) -> Path:
    """Resolve *path* against *base* and verify it is a directory.

    Args:
        path: Absolute or relative path.
        base: Directory that relative paths start from; the process's
            current directory when None.

    Returns:
        The canonical absolute path.

    Raises:
        NotADirectoryError: If the result is not an existing directory.

    """
    candidate = Path(path)
    if not candidate.is_absolute() and base is not None:
        candidate = base / candidate
    resolved = candidate.resolve()
    if not resolved.is_dir():
        msg = f"Not a directory: {resolved}"
        raise NotADirectoryError(msg)
    return resolved


class ShellContext:
    """One shell scope: directory, environment, variables and streams.

    Only the code running directly in a context mutates it.  Streams
    are shared handles: every sub-shell created without a redirect
    writes to the very same channels.
    """

    def __init__(
        self,
        *,
        directory: PathLike,
        environment: Mapping[str, str],
        stdout: Channel,
        stderr: Channel,
        variables: Mapping[str, str] | None = None,
        logger: Logger | None = None,
        strict: bool = False,
    ) -> None:
        """Create a context.

        Args:
            directory: Working directory (must exist).
            environment: Environment map (copied).
            stdout: Channel receiving standard output.
            stderr: Channel receiving standard error.
            variables: Shell-local variables (copied).
            logger: Audit log shared with the runtime.
            strict: Default exit policy for pipelines run here.

        Raises:
            NotADirectoryError: If *directory* is not a directory.
            ValueError: If a buffer constant in *environment* is invalid.

        """
        self._directory = resolve_directory(directory)
        self._env = Environment(initial=environment)
        self._config = ShellConfig.from_environment(self._env.as_dict())
        for key, value in self._config.as_environment().items():
            self._env.set(key, value)
        self._vars = Environment(initial=variables)
        self._stdout = stdout
        self._stderr = stderr
        self._logger = logger or Logger()
        self._strict = strict
        self._jobs = JobManager()

        pwd = str(self._directory)
        previous = self._env.get("PWD")
        if previous != pwd:
            if previous is not None:
                self._env.set("OLDPWD", previous)
            self._env.set("PWD", pwd)

    # -- Scope state -----------------------------------------------------------

    @property
    def directory(self) -> Path:
        """Return the absolute working directory."""
        return self._directory

    @property
    def config(self) -> ShellConfig:
        """Return the buffer constants resolved for this context."""
        return self._config

    @property
    def environment(self) -> dict[str, str]:
        """Return a snapshot of the environment."""
        return self._env.as_dict()

    @property
    def variables(self) -> dict[str, str]:
        """Return a snapshot of the shell-local variables."""
        return self._vars.as_dict()

    @property
    def stdout(self) -> Channel:
        """Return the standard output handle."""
        return self._stdout

    @property
    def stderr(self) -> Channel:
        """Return the standard error handle."""
        return self._stderr

    @property
    def logger(self) -> Logger:
        """Return the audit log."""
        return self._logger

    @property
    def strict(self) -> bool:
        """Return the default exit policy for pipelines."""
        return self._strict

    @property
    def jobs(self) -> list[Job]:
        """Return the background jobs started in this context."""
        return self._jobs.list_jobs()

    def env(self, name: str, default: str | None = None) -> str | None:
        """Return an environment variable, or *default*."""
        return self._env.get(name, default)

    def var(self, name: str, default: str | None = None) -> str | None:
        """Look *name* up the way in-context interpolation does.

        Shell-local variables win over the environment.
        """
        value = self._vars.get(name)
        return value if value is not None else self._env.get(name, default)

    def export(self, name: str, value: str) -> None:
        """Set *name* in both the environment and the shell-local map.

        Processes spawned afterwards, and sub-shells created afterwards,
        see the value.

        Raises:
            ValueError: If the name or value cannot be carried in a
                process environment.

        """
        self._env.set(name, value)
        self._vars.set(name, value)
        self._log(LogLevel.INFO, f"export {name}={value}")

    def variable(self, name: str, value: str) -> None:
        """Set a shell-local variable, invisible to processes and sub-shells."""
        self._vars.set(name, value)

    def unset(self, name: str) -> None:
        """Remove *name* from both maps; missing names are ignored."""
        self._env.discard(name)
        self._vars.discard(name)

    def cd(self, path: PathLike) -> Path:
        """Change the working directory.

        Args:
            path: Target, relative to the current directory or absolute.

        Returns:
            The new absolute working directory.

        Raises:
            NotADirectoryError: If the target is not an existing
                directory.  The context is left unchanged.

        """
        target = resolve_directory(path, base=self._directory)
        previous = self._env.get("PWD", str(self._directory))
        self._directory = target
        self._env.set("OLDPWD", previous)
        self._env.set("PWD", str(target))
        self._log(LogLevel.INFO, f"cd {previous} -> {target}")
        return target

    def redirect(self, *, stdout: Channel | None = None, stderr: Channel | None = None) -> None:
        """Point this context's streams somewhere else.

        Only this context (and sub-shells created after the call) is
        affected; the parent keeps its own handles.
        """
        if stdout is not None:
            self._stdout = stdout
        if stderr is not None:
            self._stderr = stderr

    # -- Execution -------------------------------------------------------------

    def process(self, command: str, *args: str, stderr: Channel | None = None) -> ProcessStage:
        """Describe a process stage to use in a pipeline."""
        return ProcessStage(command, *args, stderr=stderr)

    def pipeline(self, *stages: StageLike, strict: bool | None = None) -> PipelineResult:
        """Run stages (or whole pipelines, concatenated) in this context.

        Args:
            *stages: The chain, first stage first.
            strict: Override the context's exit policy.

        Returns:
            The pipeline's per-stage results and stored output.

        Raises:
            SpawnError: If a process stage cannot be started.

        """
        pipeline = _build(stages)
        return pipeline.run(self, strict=self._strict if strict is None else strict)

    def run(self, command_line: str) -> int:
        """Run one command line immediately and return its exit code.

        Output goes to the context's stdout and stderr.

        Raises:
            SpawnError: If the command cannot be started.

        """
        return self.pipeline(ProcessStage.from_command_line(command_line)).returncode

    def detach(self, *stages: StageLike, strict: bool | None = None) -> Job:
        """Run a pipeline in the background.

        The pipeline is joined when this context's block completes.
        """
        pipeline = _build(stages)
        policy = self._strict if strict is None else strict
        job = self._jobs.start(repr(pipeline), lambda: pipeline.run(self, strict=policy))
        self._log(LogLevel.DEBUG, f"detached {job}")
        return job

    def detach_shell(
        self,
        body: Callable[[ShellContext], object],
        *,
        directory: PathLike | None = None,
        env: Mapping[str, str] | None = None,
        variables: Mapping[str, str] | None = None,
    ) -> Job:
        """Run a sub-shell body in the background.

        The sub-shell is created immediately, so a bad directory fails
        here rather than in the background.
        """
        child = self.create_sub_shell(directory=directory, env=env, variables=variables)

        def _work() -> object:
            try:
                return body(child)
            finally:
                child.join()

        return self._jobs.start(f"sub-shell in {child.directory}", _work)

    def join(self) -> list[Job]:
        """Wait for every background job started in this context."""
        return self._jobs.join_all()

    # -- Sub-shells ------------------------------------------------------------

    def create_sub_shell(
        self,
        *,
        directory: PathLike | None = None,
        env: Mapping[str, str] | None = None,
        variables: Mapping[str, str] | None = None,
    ) -> ShellContext:
        """Derive a nested context following the inheritance rules.

        Args:
            directory: New working directory, relative to this one.
            env: Replacement environment (not merged).
            variables: Shell-local variables for the child.

        Returns:
            The child context.

        Raises:
            NotADirectoryError: If *directory* is not a directory.

        """
        child_dir = self._directory
        if directory is not None:
            child_dir = resolve_directory(directory, base=self._directory)
        child = ShellContext(
            directory=child_dir,
            environment=self._env.as_dict() if env is None else env,
            variables=variables,
            stdout=self._stdout,
            stderr=self._stderr,
            logger=self._logger,
            strict=self._strict,
        )
        self._log(LogLevel.DEBUG, f"sub-shell in {child.directory}")
        return child

    @contextlib.contextmanager
    def sub_shell(
        self,
        *,
        directory: PathLike | None = None,
        env: Mapping[str, str] | None = None,
        variables: Mapping[str, str] | None = None,
    ) -> Iterator[ShellContext]:
        """Enter a sub-shell for the duration of a ``with`` block.

        Background jobs started in the sub-shell are joined on exit.
        """
        child = self.create_sub_shell(directory=directory, env=env, variables=variables)
        try:
            yield child
        finally:
            child.join()

    def shell(
        self,
        body: Callable[[ShellContext], object],
        *,
        directory: PathLike | None = None,
        env: Mapping[str, str] | None = None,
        variables: Mapping[str, str] | None = None,
    ) -> ShellContext:
        """Run *body* in a sub-shell and return the finished sub-shell."""
        with self.sub_shell(directory=directory, env=env, variables=variables) as child:
            body(child)
        return child

    # -- Filesystem helpers ----------------------------------------------------

    def mkdir(self, path: PathLike) -> Path:
        """Create a directory (and parents) relative to the working directory."""
        target = self._directory / path
        target.mkdir(parents=True, exist_ok=True)
        return target.resolve()

    def file(self, path: PathLike, *, create: bool = False) -> Path:
        """Return *path* resolved against the working directory.

        With ``create=True`` an empty file is created if missing.
        """
        target = (self._directory / path).resolve()
        if create:
            target.touch(exist_ok=True)
        return target

    def _log(self, level: LogLevel, message: str) -> None:
        self._logger.log(level, message, source="context")

    def __repr__(self) -> str:
        """Return a developer-friendly representation."""
        return f"ShellContext({str(self._directory)!r}, env={len(self._env)}, vars={len(self._vars)})"


def _build(stages: tuple[StageLike, ...]) -> Pipeline:
    flat: list[PipelineStage] = []
    for item in stages:
        if isinstance(item, Pipeline):
            flat.extend(item.stages)
        else:
            flat.append(item)
    return Pipeline(flat)
