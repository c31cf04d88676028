"""
Terminal tools: command execution, timeouts, environment and PATH lookup
"""

import json
import os
import sys
import time

import pytest

import sft_coding_agent as agent

PY = f'"{sys.executable}"'

posix_only = pytest.mark.skipif(os.name != "posix", reason="uses POSIX shell semantics")


# ==============================================================================
# run_command
# ==============================================================================


def test_run_command_captures_stdout(call, tmp_path):
    text = call("run_command", command=f"{PY} -c \"print('hello')\"", working_directory=str(tmp_path))

    assert text.startswith(f"Command: {PY} -c")
    assert f"Working Directory: {tmp_path.resolve()}\n" in text
    assert "Exit Code: 0\n" in text
    assert "--- STDOUT ---\nhello\n" in text
    assert "--- STDERR ---" not in text


def test_run_command_reports_failure_without_raising(call, tmp_path):
    command = f"{PY} -c \"import sys; sys.stderr.write('boom'); sys.exit(3)\""

    text = call("run_command", command=command, working_directory=str(tmp_path))

    assert not text.startswith("Error executing tool")
    assert "Exit Code: 3\n" in text
    assert "--- STDERR ---\nboom\n" in text


def test_run_command_no_output(call, tmp_path):
    text = call("run_command", command=f"{PY} -c \"pass\"", working_directory=str(tmp_path))

    assert text.endswith("(No output)\n")


def test_run_command_uses_working_directory(call, tmp_path):
    (tmp_path / "marker.txt").write_text("x")

    text = call(
        "run_command",
        command=f"{PY} -c \"import os; print(sorted(os.listdir('.')))\"",
        working_directory=str(tmp_path),
    )

    assert "['marker.txt']" in text


def test_run_command_extra_env(call, tmp_path):
    text = call(
        "run_command",
        command=f"{PY} -c \"import os; print(os.environ['SFB_TEST_VALUE'])\"",
        working_directory=str(tmp_path),
        env={"SFB_TEST_VALUE": "from-env"},
    )

    assert "--- STDOUT ---\nfrom-env\n" in text


def test_run_command_timeout_kills_and_returns(call, tmp_path):
    """A 2s sleep under an 800ms timeout comes back quickly with a notice."""
    command = f"{PY} -c \"import time; print('started', flush=True); time.sleep(2)\""

    started = time.monotonic()
    text = call("run_command", command=command, working_directory=str(tmp_path), timeout=800)
    elapsed = time.monotonic() - started

    assert elapsed < 1.5
    assert "Timed Out: yes" in text
    assert "timed out after 800ms" in text


@posix_only
def test_run_command_without_shell(call, tmp_path):
    text = call("run_command", command="echo $HOME", working_directory=str(tmp_path), shell=False)

    assert "--- STDOUT ---\n$HOME\n" in text


def test_run_command_missing_working_directory(call, tmp_path):
    text = call("run_command", command="echo hi", working_directory=str(tmp_path / "nope"))

    assert "Exit Code: 1\n" in text
    assert "--- STDERR ---" in text


def test_run_command_rejects_empty_command(call):
    text = call("run_command", command="")

    assert text.startswith("Error executing tool run_command: InvalidSpec")


def test_output_is_capped(tmp_path, monkeypatch):
    monkeypatch.setitem(agent.CONFIG, "max_output_bytes", 10)

    result = agent._run_process(f"{PY} -c \"print('x' * 100)\"", str(tmp_path), 5000)

    assert result.stdout == "x" * 10


# ==============================================================================
# run_command_stream
# ==============================================================================


def test_run_command_stream_marks_output(call, tmp_path):
    command = f"{PY} -c \"print('one'); print('two')\""

    text = call("run_command_stream", command=command, working_directory=str(tmp_path))

    assert text.startswith("[STREAMED] Command: ")
    assert "--- STDOUT ---\none\ntwo\n" in text


def test_run_command_stream_timeout(call, tmp_path):
    command = f"{PY} -c \"import time; time.sleep(2)\""

    text = call("run_command_stream", command=command, working_directory=str(tmp_path), timeout=300)

    assert "Timed Out: yes" in text


# ==============================================================================
# Environment and lookup
# ==============================================================================


def test_get_environment_filter(call, monkeypatch):
    monkeypatch.setenv("SFB_MARKER_ONE", "1")
    monkeypatch.setenv("SFB_MARKER_TWO", "2")

    text = call("get_environment", filter="^sfb_marker")

    assert text.startswith("Environment Variables:\n\n")
    assert json.loads(text.split("\n\n", 1)[1]) == {"SFB_MARKER_ONE": "1", "SFB_MARKER_TWO": "2"}


def test_get_environment_bad_filter(call):
    text = call("get_environment", filter="[")

    assert text.startswith("Error executing tool get_environment: InvalidSpec")


def test_get_working_directory(call):
    assert call("get_working_directory") == f"Current Working Directory: {os.getcwd()}"


def test_which_command_found(call, monkeypatch):
    name = os.path.basename(sys.executable)
    monkeypatch.setenv("PATH", os.path.dirname(sys.executable) + os.pathsep + os.environ.get("PATH", ""))

    text = call("which_command", command=name)

    assert text.startswith(f"Command '{name}' found at:\n")


def test_which_command_missing(call):
    assert call("which_command", command="definitely-not-a-real-cmd-xyz") == (
        "Command 'definitely-not-a-real-cmd-xyz' not found"
    )

