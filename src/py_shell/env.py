"""Variable maps for shell scopes.

Every process has an environment: ``KEY=VALUE`` string pairs it got
from whoever started it.  A shell keeps a second map next to it, the
shell-local variables, which only code running in that shell can see.
``ShellContext`` holds one ``Environment`` of each kind.

Key design properties:
    - **Owned copies**: a map built from a mapping copies it, so a
      sub-shell that edits its environment never touches its parent's.
    - **OS-valid names**: a name may not be empty or contain ``=``, and
      nothing may contain a NUL byte.  These are the rules the kernel
      applies at ``execve`` time, checked here at assignment time so the
      error points at the ``export`` rather than at a later spawn.
    - **Snapshots out**: ``as_dict`` hands back a fresh dict, which is
      what a spawned process receives.
"""

from collections.abc import Iterator, Mapping


def _check(name: str, value: str) -> None:
    if not name or "=" in name or "\0" in name:
        msg = f"Invalid variable name: {name!r}"
        raise ValueError(msg)
    if "\0" in value:
        msg = f"Value of {name} contains a NUL byte"
        raise ValueError(msg)


class Environment:
    """A string-to-string variable map with OS naming rules."""

    def __init__(self, initial: Mapping[str, str] | None = None) -> None:
        """Create a map holding a copy of *initial*.

        Raises:
            ValueError: If *initial* holds a name or value a process
                environment cannot carry.

        """
        self._values: dict[str, str] = {}
        for name, value in (initial or {}).items():
            self.set(name, value)

    def get(self, name: str, default: str | None = None) -> str | None:
        """Return the value of *name*, or *default* when unset."""
        return self._values.get(name, default)

    def set(self, name: str, value: str) -> None:
        """Assign *value* to *name*.

        Raises:
            ValueError: If the name or value is not valid in a process
                environment.

        """
        _check(name, value)
        self._values[name] = value

    def discard(self, name: str) -> None:
        """Remove *name*; unset names are ignored."""
        self._values.pop(name, None)

    def as_dict(self) -> dict[str, str]:
        """Return a point-in-time copy as a plain dict."""
        return dict(self._values)

    def __contains__(self, name: object) -> bool:
        """Return True if *name* is set."""
        return name in self._values

    def __iter__(self) -> Iterator[str]:
        """Iterate over a snapshot of the names."""
        return iter(list(self._values))

    def __len__(self) -> int:
        """Return the number of variables."""
        return len(self._values)
