"""Tests for shell contexts.

A context is one shell scope: working directory, environment,
shell-local variables and standard streams.  Sub-shells inherit from
their parent but never write back into it.
"""

import io
import os
from pathlib import Path

import pytest

from py_shell.channel import Channel
from py_shell.config import CHANNEL_BUFFER_KEY, INPUT_BUFFER_KEY, PACKET_SIZE_KEY, ShellConfig
from py_shell.context import ShellContext, resolve_directory
from py_shell.jobs import JobStatus
from py_shell.pipeline import Pipeline
from py_shell.process import SpawnError
from py_shell.runtime import ShellRuntime
from py_shell.stages import ProcessStage, StoreResult, TextSource


def _runtime(tmp_path: Path, **env: str) -> tuple[ShellRuntime, io.BytesIO]:
    """Create a runtime rooted at *tmp_path* with in-memory streams."""
    out = io.BytesIO()
    runtime = ShellRuntime(env={**os.environ, **env}, directory=tmp_path, stdout=out, stderr=io.BytesIO())
    return runtime, out


def _output(context: ShellContext, *stages: ProcessStage) -> str:
    """Run *stages* into a store and return the text."""
    store = StoreResult()
    context.pipeline(*stages, store)
    return store.text


# -- Cycle 1: Directory and PWD ------------------------------------------------


class TestDirectory:
    """Verify the working directory and PWD / OLDPWD."""

    def test_given_directory(self, tmp_path: Path) -> None:
        """A context opened in a directory should list it and set PWD."""
        given = tmp_path / "givenDir"
        given.mkdir()
        (given / "file1").write_text("")
        (given / "file2").write_text("")
        runtime, _out = _runtime(tmp_path)
        with runtime:
            context = runtime.open(directory=given)
            assert _output(context, ProcessStage("ls")) == "file1\nfile2\n"
        assert context.directory == given.resolve()
        assert context.env("PWD") == str(given.resolve())

    def test_directory_is_absolute(self, tmp_path: Path) -> None:
        """A relative directory should be resolved to an absolute path."""
        (tmp_path / "rel").mkdir()
        runtime, _out = _runtime(tmp_path)
        with runtime:
            context = runtime.open()
            child = context.create_sub_shell(directory="rel")
        assert child.directory.is_absolute()
        assert child.directory == (tmp_path / "rel").resolve()

    def test_cd_updates_pwd_and_oldpwd(self, tmp_path: Path) -> None:
        """cd should move PWD into OLDPWD."""
        (tmp_path / "next").mkdir()
        runtime, _out = _runtime(tmp_path)
        with runtime:
            context = runtime.open()
            before = context.env("PWD")
            context.cd("next")
            context.file("marker", create=True)
        assert context.env("OLDPWD") == before
        assert context.env("PWD") == str((tmp_path / "next").resolve())
        assert (tmp_path / "next" / "marker").is_file()

    def test_process_runs_in_new_directory_after_cd(self, tmp_path: Path) -> None:
        """Processes spawned after cd should run in the new directory."""
        (tmp_path / "next").mkdir()
        runtime, _out = _runtime(tmp_path)
        with runtime:
            context = runtime.open()
            context.cd("next")
            printed = _output(context, ProcessStage("pwd"))
        assert Path(printed.strip()).resolve() == (tmp_path / "next").resolve()

    def test_cd_to_file_rejected(self, tmp_path: Path) -> None:
        """cd to a regular file should raise and leave the context unchanged."""
        (tmp_path / "plain").write_text("x")
        runtime, _out = _runtime(tmp_path)
        with runtime:
            context = runtime.open()
            before = (context.directory, context.env("PWD"), context.env("OLDPWD"))
            with pytest.raises(NotADirectoryError):
                context.cd("plain")
        assert (context.directory, context.env("PWD"), context.env("OLDPWD")) == before

    def test_open_in_file_rejected(self, tmp_path: Path) -> None:
        """A regular file cannot be a context's directory."""
        plain = tmp_path / "plain"
        plain.write_text("x")
        runtime, _out = _runtime(tmp_path)
        with runtime, pytest.raises(NotADirectoryError):
            runtime.open(directory=plain)

    def test_resolve_directory_missing(self, tmp_path: Path) -> None:
        """A missing path is not a directory."""
        with pytest.raises(NotADirectoryError):
            resolve_directory("missing", base=tmp_path)


# -- Cycle 2: Environment and variables ----------------------------------------


class TestEnvironment:
    """Verify the environment, exports and shell-local variables."""

    def test_environment_reaches_script(self, tmp_path: Path) -> None:
        """A script run from the context should see the context's environment."""
        (tmp_path / "print.sh").write_text('#!/bin/sh\necho "$GREETING"\n')
        runtime, _out = _runtime(tmp_path)
        with runtime:
            context = runtime.open(env={**os.environ, "GREETING": "hello"})
            assert context.run("chmod +x print.sh") == 0
            assert _output(context, ProcessStage("./print.sh")) == "hello\n"

    def test_environment_in_arguments(self, tmp_path: Path) -> None:
        """Values read from the environment can be used as arguments."""
        runtime, _out = _runtime(tmp_path, CUSTOM="value")
        with runtime:
            context = runtime.open()
            assert _output(context, ProcessStage("echo", context.env("CUSTOM") or "")) == "value\n"

    def test_export_reaches_processes(self, tmp_path: Path) -> None:
        """An exported name should be visible to later processes."""
        runtime, _out = _runtime(tmp_path)
        with runtime:
            context = runtime.open()
            context.export("EXPORTED", "yes")
            printed = _output(context, ProcessStage("sh", "-c", "echo $EXPORTED"))
        assert printed == "yes\n"
        assert context.variables["EXPORTED"] == "yes"
        assert context.environment["EXPORTED"] == "yes"

    def test_shell_variable_hidden_from_processes(self, tmp_path: Path) -> None:
        """A shell-local variable should not be handed to processes."""
        runtime, _out = _runtime(tmp_path)
        with runtime:
            context = runtime.open()
            context.variable("LOCAL_ONLY", "secret")
            printed = _output(context, ProcessStage("sh", "-c", "echo ${LOCAL_ONLY:-unset}"))
        assert printed == "unset\n"
        assert context.var("LOCAL_ONLY") == "secret"
        assert context.env("LOCAL_ONLY") is None

    def test_var_prefers_local_over_environment(self, tmp_path: Path) -> None:
        """In-context lookup should find the shell-local value first."""
        runtime, _out = _runtime(tmp_path, NAME="from-env")
        with runtime:
            context = runtime.open()
            assert context.var("NAME") == "from-env"
            context.variable("NAME", "local")
        assert context.var("NAME") == "local"
        assert context.env("NAME") == "from-env"
        assert context.var("NOPE", "fallback") == "fallback"

    def test_unset_removes_from_both(self, tmp_path: Path) -> None:
        """unset should remove a name from the environment and variables."""
        runtime, _out = _runtime(tmp_path)
        with runtime:
            context = runtime.open()
            context.export("GONE", "1")
            context.unset("GONE")
            context.unset("NEVER_SET")
        assert context.var("GONE") is None

    def test_root_context_has_no_variables(self, tmp_path: Path) -> None:
        """A root context opened without variables starts empty."""
        runtime, _out = _runtime(tmp_path)
        with runtime:
            context = runtime.open()
        assert context.variables == {}

    def test_snapshots_are_copies(self, tmp_path: Path) -> None:
        """Mutating a returned snapshot should not change the context."""
        runtime, _out = _runtime(tmp_path)
        with runtime:
            context = runtime.open()
            context.environment["INJECTED"] = "x"
        assert context.env("INJECTED") is None

    def test_export_invalid_name_rejected(self, tmp_path: Path) -> None:
        """A name with "=" cannot be exported and leaves both maps alone."""
        runtime, _out = _runtime(tmp_path)
        with runtime:
            context = runtime.open()
            with pytest.raises(ValueError, match="Invalid variable name"):
                context.export("A=B", "1")
        assert "A=B" not in context.environment
        assert context.variables == {}


# -- Cycle 3: Sub-shells -------------------------------------------------------


class TestSubShell:
    """Verify sub-shell inheritance and isolation."""

    def test_child_inherits_directory_and_environment(self, tmp_path: Path) -> None:
        """Without overrides a child copies the parent's directory and env."""
        runtime, _out = _runtime(tmp_path)
        with runtime:
            parent = runtime.open()
            parent.export("SHARED", "1")
            with parent.sub_shell() as child:
                printed = _output(child, ProcessStage("sh", "-c", "echo $SHARED"))
        assert printed == "1\n"
        assert child.directory == parent.directory
        assert child.env("PWD") == parent.env("PWD")

    def test_child_does_not_inherit_variables(self, tmp_path: Path) -> None:
        """Shell-local variables stay with the shell that set them."""
        runtime, _out = _runtime(tmp_path)
        with runtime:
            parent = runtime.open()
            parent.variable("PARENT_ONLY", "p")
            with parent.sub_shell() as child:
                pass
        assert child.variables == {}
        assert child.var("PARENT_ONLY") is None

    def test_child_with_given_variables(self, tmp_path: Path) -> None:
        """A child created with variables sees exactly those."""
        runtime, _out = _runtime(tmp_path)
        with runtime:
            parent = runtime.open()
            with parent.sub_shell(variables={"A": "1"}) as child:
                pass
        assert child.variables == {"A": "1"}
        assert parent.variables == {}

    def test_child_with_new_directory(self, tmp_path: Path) -> None:
        """A child in a new directory records the parent's PWD as OLDPWD."""
        (tmp_path / "inner").mkdir()
        runtime, _out = _runtime(tmp_path)
        with runtime:
            parent = runtime.open()
            with parent.sub_shell(directory="inner") as child:
                listed = _output(child, ProcessStage("pwd"))
        assert Path(listed.strip()).resolve() == (tmp_path / "inner").resolve()
        assert child.env("PWD") == str((tmp_path / "inner").resolve())
        assert child.env("OLDPWD") == parent.env("PWD")
        assert parent.directory == tmp_path.resolve()

    def test_child_with_given_environment(self, tmp_path: Path) -> None:
        """A given environment replaces the parent's instead of merging."""
        runtime, _out = _runtime(tmp_path, PARENT_ONLY="p")
        with runtime:
            parent = runtime.open()
            with parent.sub_shell(env={"PATH": os.environ.get("PATH", os.defpath), "ONLY": "child"}) as child:
                printed = _output(child, ProcessStage("sh", "-c", "echo ${PARENT_ONLY:-none} $ONLY"))
        assert printed == "none child\n"
        assert child.env("PWD") == str(parent.directory)

    def test_child_changes_do_not_leak(self, tmp_path: Path) -> None:
        """cd and export in a child should not affect the parent."""
        (tmp_path / "away").mkdir()
        runtime, _out = _runtime(tmp_path)
        with runtime:
            parent = runtime.open()
            with parent.sub_shell() as child:
                child.cd("away")
                child.export("CHILD_ONLY", "c")
        assert parent.directory == tmp_path.resolve()
        assert parent.env("CHILD_ONLY") is None
        assert child.env("CHILD_ONLY") == "c"

    def test_child_shares_parent_streams(self, tmp_path: Path) -> None:
        """A child should write to the very same stdout and stderr."""
        runtime, _out = _runtime(tmp_path)
        with runtime:
            parent = runtime.open()
            child = parent.create_sub_shell()
        assert child.stdout is parent.stdout
        assert child.stderr is parent.stderr

    def test_redirect_is_local(self, tmp_path: Path) -> None:
        """Redirecting a child's stdout should leave the parent's alone."""
        captured = Channel(capacity=8, chunk_size=64, name="captured")
        runtime, _out = _runtime(tmp_path)
        with runtime:
            parent = runtime.open()
            with parent.sub_shell() as child:
                child.redirect(stdout=captured)
                child.run("echo redirected")
        captured.close()
        assert captured.read_all() == b"redirected\n"
        assert parent.stdout is runtime.stdout

    def test_shell_returns_finished_child(self, tmp_path: Path) -> None:
        """shell() should run the body and return the child context."""
        (tmp_path / "d").mkdir()
        runtime, _out = _runtime(tmp_path)
        with runtime:
            parent = runtime.open()
            child = parent.shell(lambda sh: sh.export("DONE", "1"), directory="d")
        assert child.env("DONE") == "1"
        assert child.directory == (tmp_path / "d").resolve()

    def test_sub_shell_in_file_rejected(self, tmp_path: Path) -> None:
        """A sub-shell cannot start in a regular file."""
        (tmp_path / "plain").write_text("x")
        runtime, _out = _runtime(tmp_path)
        with runtime:
            parent = runtime.open()
            with pytest.raises(NotADirectoryError), parent.sub_shell(directory="plain"):
                pass


# -- Cycle 4: Execution helpers ------------------------------------------------


class TestExecution:
    """Verify run, pipeline and the filesystem helpers."""

    def test_run_returns_exit_code(self, tmp_path: Path) -> None:
        """run() should return the command's exit status."""
        runtime, _out = _runtime(tmp_path)
        with runtime:
            context = runtime.open()
            assert context.run("sh -c 'exit 2'") == 2
            assert context.run("true") == 0

    def test_run_writes_to_stdout(self, tmp_path: Path) -> None:
        """run() output should reach the context's stdout."""
        runtime, out = _runtime(tmp_path)
        with runtime:
            runtime.open().run("echo 'two words'")
            runtime.flush()
        assert out.getvalue() == b"two words\n"

    def test_run_empty_line_rejected(self, tmp_path: Path) -> None:
        """An empty command line has nothing to run."""
        runtime, _out = _runtime(tmp_path)
        with runtime, pytest.raises(ValueError, match="No command"):
            runtime.open().run("   ")

    def test_run_unknown_command(self, tmp_path: Path) -> None:
        """An unknown command should raise SpawnError."""
        runtime, _out = _runtime(tmp_path)
        with runtime, pytest.raises(SpawnError):
            runtime.open().run("definitely-not-a-command-xyz")

    def test_pipeline_accepts_whole_pipelines(self, tmp_path: Path) -> None:
        """Pipelines passed as stages should be spliced in."""
        runtime, _out = _runtime(tmp_path)
        with runtime:
            context = runtime.open()
            head = Pipeline.of(TextSource("abc\n"), context.process("tr", "a-z", "A-Z"))
            store = StoreResult()
            context.pipeline(head, store)
        assert store.text == "ABC\n"

    def test_strict_context_default(self, tmp_path: Path) -> None:
        """A strict context should run pipelines in strict mode by default."""
        streams = {"stdout": io.BytesIO(), "stderr": io.BytesIO()}
        with ShellRuntime(env=os.environ, directory=tmp_path, strict=True, **streams) as runtime:
            context = runtime.open()
            result = context.pipeline(ProcessStage("true"), ProcessStage("sh", "-c", "exit 3"))
            relaxed = context.pipeline(ProcessStage("sh", "-c", "exit 3"), ProcessStage("true"), strict=False)
        assert result.strict
        assert result.returncode == 3
        assert relaxed.returncode == 0

    def test_mkdir_and_file(self, tmp_path: Path) -> None:
        """mkdir and file should resolve against the working directory."""
        runtime, _out = _runtime(tmp_path)
        with runtime:
            context = runtime.open()
            created = context.mkdir("a/b")
            context.cd("a")
            target = context.file("b/note.txt", create=True)
        assert created == (tmp_path / "a" / "b").resolve()
        assert target == (tmp_path / "a" / "b" / "note.txt").resolve()
        assert target.is_file()

    def test_file_without_create(self, tmp_path: Path) -> None:
        """file() should not touch the filesystem unless asked."""
        runtime, _out = _runtime(tmp_path)
        with runtime:
            target = runtime.open().file("later.txt")
        assert not target.exists()


# -- Cycle 5: Background jobs --------------------------------------------------


class TestDetach:
    """Verify detached pipelines and sub-shells."""

    def test_sub_shell_joins_detached_pipeline(self, tmp_path: Path) -> None:
        """Leaving a sub-shell should wait for its detached work."""
        store = StoreResult()
        runtime, _out = _runtime(tmp_path)
        with runtime:
            parent = runtime.open()
            with parent.sub_shell() as child:
                job = child.detach(ProcessStage("sh", "-c", "sleep 0.2; echo late"), store)
        assert job.status is JobStatus.DONE
        assert store.text == "late\n"

    def test_join_returns_finished_jobs(self, tmp_path: Path) -> None:
        """join() should block until every detached job is done."""
        runtime, _out = _runtime(tmp_path)
        with runtime:
            context = runtime.open()
            context.detach(ProcessStage("true"))
            context.detach(ProcessStage("sh", "-c", "exit 1"))
            jobs = context.join()
        assert [job.status for job in jobs] == [JobStatus.DONE, JobStatus.DONE]
        assert [job.result.returncode for job in jobs] == [0, 1]

    def test_detached_spawn_failure_marks_job_failed(self, tmp_path: Path) -> None:
        """A detached pipeline that cannot start should fail its job."""
        runtime, _out = _runtime(tmp_path)
        with runtime:
            context = runtime.open()
            job = context.detach(ProcessStage("definitely-not-a-command-xyz"))
            context.join()
        assert job.status is JobStatus.FAILED
        assert isinstance(job.error, SpawnError)

    def test_sibling_sub_shells_run_concurrently(self, tmp_path: Path) -> None:
        """Detached sub-shells should not wait for each other."""
        fifo = tmp_path / "handoff"
        os.mkfifo(fifo)
        runtime, _out = _runtime(tmp_path)
        with runtime:
            context = runtime.open()
            reader = context.detach_shell(lambda sh: _output(sh, ProcessStage("cat", "handoff")))
            writer = context.detach_shell(lambda sh: sh.run("sh -c 'echo ping > handoff'"))
            context.join()
        assert reader.result == "ping\n"
        assert writer.result == 0

    def test_detach_shell_in_file_fails_immediately(self, tmp_path: Path) -> None:
        """A bad directory should fail before anything runs in the background."""
        (tmp_path / "plain").write_text("x")
        runtime, _out = _runtime(tmp_path)
        with runtime:
            context = runtime.open()
            with pytest.raises(NotADirectoryError):
                context.detach_shell(lambda _sh: None, directory="plain")
        assert context.jobs == []


# -- Cycle 6: Buffer constants -------------------------------------------------


class TestBufferConstants:
    """Verify the constants every context publishes in its environment."""

    def test_defaults_written_to_environment(self, tmp_path: Path) -> None:
        """Missing constants should be filled in with their defaults."""
        env = {k: v for k, v in os.environ.items() if k not in {INPUT_BUFFER_KEY, CHANNEL_BUFFER_KEY, PACKET_SIZE_KEY}}
        runtime, _out = _runtime(tmp_path)
        with runtime:
            context = runtime.open(env=env)
        assert context.config == ShellConfig()
        assert context.env(INPUT_BUFFER_KEY) == "8"
        assert context.env(CHANNEL_BUFFER_KEY) == "64"
        assert context.env(PACKET_SIZE_KEY) == "4096"

    def test_supplied_values_win(self, tmp_path: Path) -> None:
        """Constants in the supplied environment should be used."""
        runtime, _out = _runtime(tmp_path)
        with runtime:
            context = runtime.open(env={**os.environ, PACKET_SIZE_KEY: "16", CHANNEL_BUFFER_KEY: "2"})
        assert context.config.packet_size == 16
        assert context.config.channel_buffer_size == 2
        assert context.env(PACKET_SIZE_KEY) == "16"

    def test_constants_visible_to_processes(self, tmp_path: Path) -> None:
        """Processes should see the published constants."""
        runtime, _out = _runtime(tmp_path)
        with runtime:
            context = runtime.open()
            printed = _output(context, ProcessStage("sh", "-c", f"echo ${PACKET_SIZE_KEY}"))
        assert printed == f"{context.config.packet_size}\n"

    def test_invalid_constant_rejected(self, tmp_path: Path) -> None:
        """A non-numeric constant should fail context creation."""
        runtime, _out = _runtime(tmp_path)
        with runtime, pytest.raises(ValueError, match=PACKET_SIZE_KEY):
            runtime.open(env={PACKET_SIZE_KEY: "lots"})
