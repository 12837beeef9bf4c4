"""Detached work — pipelines and sub-shells running in the background.

In Unix, ``cmd &`` starts a job the shell does not wait for.  Here a
context can *detach* a pipeline (or a whole sub-shell body) so it runs
on its own thread while the context carries on.  Sibling jobs run
concurrently with each other.

Key ideas:
    - **Jobs are not processes** — a job wraps one unit of background
      work, which may be several processes wired into a pipeline.
    - **Job numbers are small** — ``[1]``, ``[2]``, etc., for human
      convenience.
    - **Scoped** — a context joins all of its jobs before its block
      completes, so a sub-shell never outlives the ``with`` statement
      that created it.

There are no job-control signals (no ``fg``/``bg``/``Ctrl-Z``); the
only operations are start, inspect and join.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import StrEnum
from itertools import count
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Callable


class JobStatus(StrEnum):
    """Status of a background job."""

    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


@dataclass
class Job:
    """A unit of background work.

    Attributes:
        job_id: Small human-friendly job number ([1], [2], ...).
        name: What the job runs (a pipeline description).
        status: Current job status.
        result: What the work returned, once done.
        error: What the work raised, if it failed.

    """

    job_id: int
    name: str
    status: JobStatus = JobStatus.RUNNING
    result: object = None
    error: BaseException | None = None
    _thread: threading.Thread | None = field(default=None, repr=False, compare=False)

    def join(self, timeout: float | None = None) -> None:
        """Wait for the job's thread to finish."""
        if self._thread is not None:
            self._thread.join(timeout)

    def __str__(self) -> str:
        """Format as ``[id] status name``."""
        return f"[{self.job_id}] {self.status} {self.name}"


class JobManager:
    """Track and join the background jobs of one context."""

    def __init__(self) -> None:
        """Create an empty job manager."""
        self._jobs: dict[int, Job] = {}
        self._counter = count(start=1)
        self._lock = threading.Lock()

    def start(self, name: str, work: Callable[[], object]) -> Job:
        """Run *work* on a new thread and track it as a job.

        Args:
            name: Label for the job.
            work: Callable to run; its return value becomes the result.

        Returns:
            The newly created, running job.

        """
        with self._lock:
            job = Job(job_id=next(self._counter), name=name)
            self._jobs[job.job_id] = job

        def _target() -> None:
            try:
                job.result = work()
            except Exception as exc:  # noqa: BLE001
                job.error = exc
                job.status = JobStatus.FAILED
            else:
                job.status = JobStatus.DONE

        job._thread = threading.Thread(target=_target, name=f"job-{job.job_id}", daemon=True)  # noqa: SLF001
        job._thread.start()  # noqa: SLF001
        return job

    def list_jobs(self) -> list[Job]:
        """Return all tracked jobs."""
        with self._lock:
            return list(self._jobs.values())

    def join_all(self) -> list[Job]:
        """Wait for every tracked job, including ones started meanwhile.

        Returns:
            All jobs, finished.

        """
        joined: set[int] = set()
        while True:
            pending = [j for j in self.list_jobs() if j.job_id not in joined]
            if not pending:
                return self.list_jobs()
            for job in pending:
                job.join()
                joined.add(job.job_id)
