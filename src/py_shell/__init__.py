"""py-shell — a programmable shell runtime.

Declare and run pipelines of OS processes from ordinary Python code,
with shell-style scoping of environment variables, shell-local
variables, working directory and standard streams.

Re-exports public symbols so callers can write::

    from py_shell import ShellRuntime, StoreResult
"""

from py_shell.channel import Channel, ClosedChannelError
from py_shell.config import ShellConfig
from py_shell.context import ShellContext
from py_shell.errors import ShellError
from py_shell.jobs import Job, JobStatus
from py_shell.logging import LogEntry, Logger, LogLevel
from py_shell.pipeline import Pipeline, PipelineResult, StageResult
from py_shell.process import ProcessError, ProcessHandle, ProcessState, SpawnError
from py_shell.runtime import ShellRuntime, shell
from py_shell.stages import (
    BytesSource,
    ChannelSink,
    EmptySource,
    FileSink,
    FileSource,
    PipelineStage,
    ProcessStage,
    StoreResult,
    TextSource,
)

__all__ = [
    "BytesSource",
    "Channel",
    "ChannelSink",
    "ClosedChannelError",
    "EmptySource",
    "FileSink",
    "FileSource",
    "Job",
    "JobStatus",
    "LogEntry",
    "LogLevel",
    "Logger",
    "Pipeline",
    "PipelineResult",
    "PipelineStage",
    "ProcessError",
    "ProcessHandle",
    "ProcessStage",
    "ProcessState",
    "ShellConfig",
    "ShellContext",
    "ShellError",
    "ShellRuntime",
    "SpawnError",
    "StageResult",
    "StoreResult",
    "TextSource",
    "shell",
]
