"""Tests for the runtime audit log.

The logger records structured entries for runtime events: spawns,
exits, directory changes, exports and pipeline aborts.
"""

import threading

from py_shell.logging import LogEntry, Logger, LogLevel


class TestLogLevel:
    """Verify log level ordering."""

    def test_levels_are_ordered(self) -> None:
        """DEBUG < INFO < WARNING < ERROR."""
        assert LogLevel.DEBUG < LogLevel.INFO
        assert LogLevel.INFO < LogLevel.WARNING
        assert LogLevel.WARNING < LogLevel.ERROR


class TestLogEntry:
    """Verify log entry structure."""

    def test_entry_str_includes_pid(self) -> None:
        """String form should include level, source, message and pid."""
        entry = LogEntry(level=LogLevel.INFO, message="spawned ls", source="process", pid=42)
        assert str(entry) == "[INFO] process: spawned ls (pid=42)"

    def test_entry_str_without_pid(self) -> None:
        """Entries without a pid should omit it."""
        entry = LogEntry(level=LogLevel.WARNING, message="aborting", source="pipeline")
        assert str(entry) == "[WARNING] pipeline: aborting"


class TestLogger:
    """Verify logging, filtering and clearing."""

    def test_log_appends_in_order(self) -> None:
        """Entries should be kept in chronological order."""
        logger = Logger()
        logger.log(LogLevel.INFO, "first", source="context")
        logger.log(LogLevel.ERROR, "second", source="pipeline")
        assert [e.message for e in logger.entries] == ["first", "second"]

    def test_filter_by_level(self) -> None:
        """min_level should drop lower-severity entries."""
        logger = Logger()
        logger.log(LogLevel.DEBUG, "noise", source="process")
        logger.log(LogLevel.WARNING, "killed", source="process")
        assert [e.message for e in logger.filter(min_level=LogLevel.WARNING)] == ["killed"]

    def test_filter_by_source(self) -> None:
        """source should select one subsystem."""
        logger = Logger()
        logger.log(LogLevel.INFO, "cd", source="context")
        logger.log(LogLevel.INFO, "spawned", source="process")
        assert [e.message for e in logger.filter(source="context")] == ["cd"]

    def test_filter_by_pid(self) -> None:
        """pid should select the events about one OS process."""
        logger = Logger()
        logger.log(LogLevel.INFO, "spawned cat", source="process", pid=10)
        logger.log(LogLevel.INFO, "spawned wc", source="process", pid=11)
        logger.log(LogLevel.INFO, "cat exited with 0", source="process", pid=10)
        assert [e.message for e in logger.filter(pid=10)] == ["spawned cat", "cat exited with 0"]

    def test_min_level_drops_on_arrival(self) -> None:
        """A logger created with a minimum level should not store lower entries."""
        logger = Logger(min_level=LogLevel.INFO)
        logger.log(LogLevel.DEBUG, "dropped", source="runtime")
        assert len(logger) == 0

    def test_clear(self) -> None:
        """clear() should empty the log."""
        logger = Logger()
        logger.log(LogLevel.INFO, "x", source="runtime")
        logger.clear()
        assert logger.entries == []

    def test_concurrent_logging_keeps_every_entry(self) -> None:
        """Entries logged from many threads should all be recorded."""
        logger = Logger()

        def _burst() -> None:
            for _ in range(100):
                logger.log(LogLevel.DEBUG, "tick", source="pipeline")

        threads = [threading.Thread(target=_burst) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        assert len(logger) == 400
