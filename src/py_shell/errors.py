"""Base exception for the shell runtime.

Each subsystem defines its own error next to the code that raises it
(``ClosedChannelError`` in ``channel``, ``SpawnError`` and
``ProcessError`` in ``process``).  They all share this base so a host
program can catch every runtime failure with one ``except`` clause.

Bad directories are reported with Python's builtin
``NotADirectoryError`` rather than a custom type.
"""


class ShellError(Exception):
    """Root of every error raised by the shell runtime."""
