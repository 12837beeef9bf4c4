"""Channels — bounded byte streams between pipeline stages.

A channel is the runtime's version of a Unix pipe: one side writes
bytes in, the other side reads them out, FIFO.  Unlike a plain pipe,
a channel is **bounded**: it holds at most ``capacity`` chunks, and a
writer that finds it full is put to sleep until the reader catches up.
That is backpressure: a fast producer can never run away from a slow
consumer and fill memory.

Key properties:
    - **Chunked** — every write is split into pieces of at most
      ``chunk_size`` bytes; each piece occupies one buffer slot.
    - **Close drains** — after ``close()`` no new writes are accepted,
      but buffered chunks are still delivered.  Readers see
      end-of-stream (``None``) only once the buffer is empty.
    - **Fail cancels** — ``fail(cause)`` closes the channel in the
      error state: buffered data is dropped, blocked writers wake up
      with ``ClosedChannelError`` and readers see end-of-stream at
      once.  The pipeline executor uses this to unstick stages when a
      pipeline is aborted.
    - **Serialized writers** — several writers may share one channel
      (a sub-shell borrows its parent's stdout).  A whole ``write``
      call is atomic with respect to other writers.

Design choices:
    - One ``threading.Lock`` with two conditions (``not_empty`` and
      ``not_full``), the classic bounded-buffer layout.
    - ``task_done`` / ``join`` mirror ``queue.Queue`` so the owner of a
      terminal channel (the runtime's stdout drainer) can wait until
      everything written has been consumed.
"""

from __future__ import annotations

import threading
from collections import deque
from typing import TYPE_CHECKING

from py_shell.errors import ShellError

if TYPE_CHECKING:
    from collections.abc import Iterator


class ClosedChannelError(ShellError):
    """Raised when writing to a channel that has been closed.

    Attributes:
        cause: The error the channel was failed with, or None when it
            was closed normally.

    """

    def __init__(self, message: str, *, cause: BaseException | None = None) -> None:
        """Create the error, remembering why the channel was closed."""
        super().__init__(message)
        self.cause = cause


class Channel:
    """A bounded, thread-safe FIFO of byte chunks.

    One producer writes, one designated consumer reads.  Writers block
    while ``capacity`` chunks are buffered; readers block while the
    channel is empty and still open.
    """

    def __init__(self, *, capacity: int, chunk_size: int, name: str = "channel") -> None:
        """Create an open, empty channel.

        Args:
            capacity: Maximum number of buffered chunks.
            chunk_size: Maximum bytes per chunk.
            name: Label used in error messages and logs.

        Raises:
            ValueError: If capacity or chunk_size is less than one.

        """
        if capacity < 1:
            msg = f"Channel capacity must be positive, got {capacity}"
            raise ValueError(msg)
        if chunk_size < 1:
            msg = f"Channel chunk size must be positive, got {chunk_size}"
            raise ValueError(msg)
        self._name = name
        self._capacity = capacity
        self._chunk_size = chunk_size
        self._buffer: deque[bytes] = deque()
        self._closed = False
        self._error: BaseException | None = None
        self._unfinished = 0

        self._lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._not_empty = threading.Condition(self._lock)
        self._not_full = threading.Condition(self._lock)
        self._all_done = threading.Condition(self._lock)

    @property
    def name(self) -> str:
        """Return the channel label."""
        return self._name

    @property
    def capacity(self) -> int:
        """Return the maximum number of buffered chunks."""
        return self._capacity

    @property
    def chunk_size(self) -> int:
        """Return the maximum size of one chunk in bytes."""
        return self._chunk_size

    @property
    def error(self) -> BaseException | None:
        """Return the failure cause, or None if not failed."""
        return self._error

    @property
    def size(self) -> int:
        """Return the number of chunks currently buffered."""
        with self._lock:
            return len(self._buffer)

    def is_empty(self) -> bool:
        """Return True if no chunks are buffered."""
        return self.size == 0

    def is_closed(self) -> bool:
        """Return True if the channel no longer accepts writes."""
        with self._lock:
            return self._closed

    def write(self, data: bytes) -> None:
        """Write bytes, splitting them into chunks.

        Blocks while the buffer is full.

        Args:
            data: The bytes to write.  Empty data is a no-op.

        Raises:
            ClosedChannelError: If the channel is closed, or is failed
                while the writer is waiting for space.

        """
        view = memoryview(data)
        with self._write_lock:
            if not view:
                self._check_open()
                return
            for start in range(0, len(view), self._chunk_size):
                self._put(bytes(view[start : start + self._chunk_size]))

    def read(self) -> bytes | None:
        """Return the next chunk, or None at end-of-stream.

        Blocks while the channel is empty and still open.
        """
        with self._lock:
            while not self._buffer and not self._closed:
                self._not_empty.wait()
            if not self._buffer:
                return None
            chunk = self._buffer.popleft()
            self._not_full.notify()
            return chunk

    def read_all(self) -> bytes:
        """Read until end-of-stream and return everything joined."""
        return b"".join(self)

    def close(self) -> None:
        """Close the channel for writing.

        Buffered chunks remain readable.  Closing twice is harmless.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._not_empty.notify_all()
            self._not_full.notify_all()

    def fail(self, cause: BaseException) -> None:
        """Close the channel in the error state, discarding its buffer.

        Writers blocked in ``write`` raise ``ClosedChannelError``; readers
        see end-of-stream immediately.  Only the first cause is kept.

        Args:
            cause: Why the channel was cancelled.

        """
        with self._lock:
            if self._error is None:
                self._error = cause
            self._closed = True
            self._unfinished -= len(self._buffer)
            self._buffer.clear()
            self._not_empty.notify_all()
            self._not_full.notify_all()
            if self._unfinished <= 0:
                self._unfinished = 0
                self._all_done.notify_all()

    def task_done(self) -> None:
        """Mark one previously read chunk as fully consumed."""
        with self._lock:
            if self._unfinished > 0:
                self._unfinished -= 1
            if self._unfinished == 0:
                self._all_done.notify_all()

    def join(self) -> None:
        """Block until every written chunk has been marked ``task_done``."""
        with self._lock:
            while self._unfinished:
                self._all_done.wait()

    def _put(self, chunk: bytes) -> None:
        with self._lock:
            while len(self._buffer) >= self._capacity and not self._closed:
                self._not_full.wait()
            self._check_open_locked()
            self._buffer.append(chunk)
            self._unfinished += 1
            self._not_empty.notify()

    def _check_open(self) -> None:
        with self._lock:
            self._check_open_locked()

    def _check_open_locked(self) -> None:
        if self._closed:
            msg = f"Cannot write to closed channel '{self._name}'"
            raise ClosedChannelError(msg, cause=self._error) from self._error

    def __iter__(self) -> Iterator[bytes]:
        """Yield chunks until end-of-stream."""
        while (chunk := self.read()) is not None:
            yield chunk

    def __repr__(self) -> str:
        """Return a developer-friendly representation."""
        if self._error is not None:
            state = "failed"
        elif self._closed:
            state = "closed"
        else:
            state = "open"
        return f"Channel('{self._name}', {state}, {self.size}/{self._capacity})"
