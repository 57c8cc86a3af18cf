from __future__ import annotations

import sys
import time

from walph.assistant import SPAWN_FAILURE_EXIT_CODE, TIMEOUT_EXIT_CODE, AssistantClient


def python_assistant(code: str, timeout: float = 10, grace_period: float = 2) -> AssistantClient:
    """Use the current interpreter as a stand-in assistant that ignores extra flags."""
    return AssistantClient([sys.executable, "-c", code], timeout=timeout, grace_period=grace_period, extra_flags=())


def test_prompt_is_sent_on_stdin_and_output_combined() -> None:
    client = python_assistant(
        "import sys\n"
        "data = sys.stdin.read()\n"
        "print('got:' + data.strip())\n"
        "print('model:' + sys.argv[-1])\n"
        "print('oops', file=sys.stderr)\n"
        "sys.exit(3)\n"
    )

    run = client.run("hello prompt", model="sonnet")

    assert "got:hello prompt" in run.output
    assert "model:sonnet" in run.output
    assert "oops" in run.output
    assert run.exit_code == 3
    assert run.timed_out is False


def test_build_command_appends_flags_and_model() -> None:
    client = AssistantClient(["claude"], timeout=1)

    assert client.build_command("opus") == [
        "claude",
        "-p",
        "--dangerously-skip-permissions",
        "--model",
        "opus",
    ]


def test_hung_process_is_terminated() -> None:
    client = python_assistant("import time\ntime.sleep(30)\n", timeout=0.5)

    started = time.monotonic()
    run = client.run("", model="sonnet")

    assert run.timed_out is True
    assert run.terminated is True
    assert run.killed is False
    assert run.exit_code == TIMEOUT_EXIT_CODE
    assert time.monotonic() - started < 10


def test_process_ignoring_terminate_is_killed() -> None:
    code = (
        "import signal, sys, time\n"
        "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
        "print('partial output', flush=True)\n"
        "time.sleep(30)\n"
    )
    client = python_assistant(code, timeout=1, grace_period=0.5)

    run = client.run("", model="sonnet")

    assert run.timed_out is True
    assert run.terminated is True
    assert run.exit_code == TIMEOUT_EXIT_CODE
    if sys.platform != "win32":
        assert run.killed is True
        assert "partial output" in run.output


def test_missing_executable_is_reported_not_raised() -> None:
    client = AssistantClient(["definitely-not-a-real-assistant-binary"], timeout=1)

    run = client.run("prompt", model="sonnet")

    assert run.exit_code == SPAWN_FAILURE_EXIT_CODE
    assert "failed to start" in run.output
