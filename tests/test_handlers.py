"""Tests for the shell and file source handlers."""

import asyncio
import logging
import math
import time

from mini_metric_exporter import (
    NAN_OUTPUT,
    Rule,
    Sample,
    SourceKind,
    FileHandler,
    ShellHandler,
    build_handler,
)


def test_shell_single_value(shell_handler):
    output = asyncio.run(shell_handler("echo '0.73'").execute())
    assert output == (Sample(labels=None, value=0.73),)


def test_shell_labeled_value(shell_handler):
    output = asyncio.run(shell_handler("echo 'sensor=\"cpu\" 42.5'").execute())
    assert output == (Sample(labels={"sensor": "cpu"}, value=42.5),)


def test_shell_empty_output_is_empty(shell_handler):
    assert asyncio.run(shell_handler("true").execute()) == ()


def test_shell_non_zero_exit_is_nan(shell_handler):
    output = asyncio.run(shell_handler("echo 5; exit 3").execute())
    assert output is NAN_OUTPUT
    assert len(output) == 1
    assert output[0].labels is None
    assert math.isnan(output[0].value)


def test_shell_unknown_command_is_nan(shell_handler):
    output = asyncio.run(shell_handler("definitely-not-a-command-4711").execute())
    assert output is NAN_OUTPUT


def test_shell_parse_error_is_nan(shell_handler):
    output = asyncio.run(shell_handler("echo 1; echo abc").execute())
    assert output is NAN_OUTPUT


def test_shell_failure_logs_diagnostics(shell_handler, caplog):
    handler = shell_handler("echo partial; echo boom >&2; exit 1")
    with caplog.at_level(logging.ERROR, logger=handler.logger.name):
        asyncio.run(handler.execute())
    assert "exit status 1" in caplog.text
    assert "boom" in caplog.text
    assert "partial" in caplog.text
    assert "exit 1" in caplog.text


def test_shell_captures_stderr_separately(shell_handler):
    result = asyncio.run(shell_handler("echo 1; echo warn >&2").run_command())
    assert result.success
    assert result.stdout == b"1\n"
    assert result.stderr == b"warn\n"


def test_shell_output_larger_than_pipe_buffer(shell_handler):
    # ~1.2MB on stdout, far beyond the OS pipe buffer
    handler = shell_handler("yes 1.5 | head -n 300000", command_timeout=30)
    output = asyncio.run(handler.execute())
    assert len(output) == 300000
    assert all(s.value == 1.5 for s in output)


def test_shell_large_stderr_does_not_block_stdout(shell_handler):
    handler = shell_handler("head -c 1048576 /dev/zero >&2; echo 2", command_timeout=30)
    result = asyncio.run(handler.run_command())
    assert result.success
    assert len(result.stderr) == 1048576
    assert result.stdout == b"2\n"


def test_shell_timeout_is_nan(shell_handler):
    handler = shell_handler("sleep 10", command_timeout=0.2, wait_delay=1)
    start = time.monotonic()
    output = asyncio.run(handler.execute())
    assert output is NAN_OUTPUT
    assert time.monotonic() - start < 5


def test_shell_ignoring_sigterm_is_killed_after_wait_delay(shell_handler):
    handler = shell_handler("trap '' TERM; sleep 10", command_timeout=0.2, wait_delay=0.3)
    start = time.monotonic()
    result = asyncio.run(handler.run_command())
    assert not result.success
    assert "timed out" in result.error_message
    assert time.monotonic() - start < 5


def test_shell_background_child_holding_streams(shell_handler):
    # The shell exits at once but sleep keeps stdout open
    handler = shell_handler("sleep 10 & echo 1", command_timeout=1, wait_delay=0.3)
    start = time.monotonic()
    result = asyncio.run(handler.run_command())
    assert not result.success
    assert result.stdout == b"1\n"
    assert time.monotonic() - start < 5


def test_file_handler_reads_samples(file_handler, tmp_path):
    path = tmp_path / "value"
    path.write_text('type="a" 1\ntype="b" 2\n')
    output = asyncio.run(file_handler(path).execute())
    assert output == (
        Sample(labels={"type": "a"}, value=1.0),
        Sample(labels={"type": "b"}, value=2.0),
    )


def test_file_handler_missing_file_is_nan(file_handler, tmp_path, caplog):
    handler = file_handler(tmp_path / "missing")
    with caplog.at_level(logging.ERROR, logger=handler.logger.name):
        output = asyncio.run(handler.execute())
    assert output is NAN_OUTPUT
    assert "Cannot read file" in caplog.text


def test_file_handler_directory_is_nan(file_handler, tmp_path):
    assert asyncio.run(file_handler(tmp_path).execute()) is NAN_OUTPUT


def test_file_handler_parse_error_is_nan(file_handler, tmp_path):
    path = tmp_path / "value"
    path.write_text("garbage\n")
    assert asyncio.run(file_handler(path).execute()) is NAN_OUTPUT


def test_file_handler_empty_file(file_handler, tmp_path):
    path = tmp_path / "value"
    path.write_bytes(b"")
    assert asyncio.run(file_handler(path).execute()) == ()


def test_build_handler_dispatch(logger):
    shell = build_handler(Rule(name="a", command="true"), SourceKind.SHELL, logger)
    init = build_handler(Rule(name="b", command="true", init=True), SourceKind.INIT, logger)
    file = build_handler(Rule(name="c", file="/tmp/x"), SourceKind.FILE, logger)
    assert isinstance(shell, ShellHandler)
    assert isinstance(init, ShellHandler)
    assert init.kind == SourceKind.INIT
    assert isinstance(file, FileHandler)


def test_build_handler_passes_timeouts(logger):
    handler = build_handler(
        Rule(name="a", command="true"), SourceKind.SHELL, logger,
        command_timeout=3, wait_delay=7,
    )
    assert handler.command_timeout == 3
    assert handler.wait_delay == 7
