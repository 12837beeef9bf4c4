"""Per-context tuning constants.

Three numbers control how bytes move through a shell context:

- ``SYSTEM_PROCESS_INPUT_STREAM_BUFFER_SIZE`` — how many chunks a
  process's own input channel may buffer before the writer blocks.
- ``PIPELINE_CHANNEL_BUFFER_SIZE`` — capacity (in chunks) of every
  channel a pipeline allocates between two stages.
- ``PIPELINE_RW_PACKET_SIZE`` — the chunk size in bytes used for every
  channel and every OS-level read.

They are resolved **once** when a context is created: if the context's
environment carries one of the keys, its value is parsed and used;
otherwise the default applies.  The resolved values are then written
back into the environment so ``env()`` reports what is in effect.
There is no process-wide singleton; each context owns its own
``ShellConfig`` and threads it into every channel and process it makes.
"""

from collections.abc import Mapping
from dataclasses import dataclass

INPUT_BUFFER_KEY = "SYSTEM_PROCESS_INPUT_STREAM_BUFFER_SIZE"
CHANNEL_BUFFER_KEY = "PIPELINE_CHANNEL_BUFFER_SIZE"
PACKET_SIZE_KEY = "PIPELINE_RW_PACKET_SIZE"

DEFAULT_SYSTEM_PROCESS_INPUT_STREAM_BUFFER_SIZE = 8
DEFAULT_PIPELINE_CHANNEL_BUFFER_SIZE = 64
DEFAULT_PIPELINE_RW_PACKET_SIZE = 4096


@dataclass(frozen=True)
class ShellConfig:
    """Resolved buffer constants for one shell context.

    Attributes:
        input_buffer_size: Capacity of a process's own input channel.
        channel_buffer_size: Capacity of inter-stage channels.
        packet_size: Chunk size in bytes for reads and channel slots.

    """

    input_buffer_size: int = DEFAULT_SYSTEM_PROCESS_INPUT_STREAM_BUFFER_SIZE
    channel_buffer_size: int = DEFAULT_PIPELINE_CHANNEL_BUFFER_SIZE
    packet_size: int = DEFAULT_PIPELINE_RW_PACKET_SIZE

    @classmethod
    def from_environment(cls, env: Mapping[str, str]) -> "ShellConfig":
        """Resolve the constants from an environment map.

        Args:
            env: The environment supplied to the context.

        Returns:
            A config using the environment's values where present and
            the documented defaults otherwise.

        Raises:
            ValueError: If a supplied value is not a positive integer.

        """
        return cls(
            input_buffer_size=_parse(env, INPUT_BUFFER_KEY, DEFAULT_SYSTEM_PROCESS_INPUT_STREAM_BUFFER_SIZE),
            channel_buffer_size=_parse(env, CHANNEL_BUFFER_KEY, DEFAULT_PIPELINE_CHANNEL_BUFFER_SIZE),
            packet_size=_parse(env, PACKET_SIZE_KEY, DEFAULT_PIPELINE_RW_PACKET_SIZE),
        )

    def as_environment(self) -> dict[str, str]:
        """Return the constants as environment entries."""
        return {
            INPUT_BUFFER_KEY: str(self.input_buffer_size),
            CHANNEL_BUFFER_KEY: str(self.channel_buffer_size),
            PACKET_SIZE_KEY: str(self.packet_size),
        }


def _parse(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        msg = f"{key} must be an integer, got {raw!r}"
        raise ValueError(msg) from None
    if value < 1:
        msg = f"{key} must be positive, got {value}"
        raise ValueError(msg)
    return value
