from __future__ import annotations

import json
import sys
from pathlib import Path

from rich.console import Console

from walph.assistant import TIMEOUT_EXIT_CODE, AssistantClient
from walph.breaker import CircuitBreaker
from walph.config.models import GOODBUNNY, Mode, RuntimeSettings
from walph.core import EXIT_REQUESTED, IterationResult, Project, StopReason
from walph.orchestrator import (
    IterationRunner,
    SessionOrchestrator,
    render_prompt,
    review_scope_hook,
    review_scope_info,
)
from walph.rate_limit import RateLimitHandler
from walph.status import parse_status

from conftest import FakeRepository, make_settings

COMPLETE_SCRIPT = (
    "import sys\n"
    "prompt = sys.stdin.read()\n"
    "print('prompt was: ' + prompt.strip())\n"
    "print('RALPH_STATUS')\n"
    "print('completion_level: HIGH')\n"
    "print('tasks_remaining: 0')\n"
    "print('current_task: done')\n"
    "print('EXIT_SIGNAL: true')\n"
    "print('RALPH_STATUS_END')\n"
)

COUNTING_SCRIPT = "with open('calls.txt', 'a') as handle:\n    handle.write('x')\nprint('working on it')\n"

TEMPLATE = "Iteration {{ITERATION}} of {{MAX_ITERATIONS}} in {{MODE}} mode"


class Session:
    def __init__(
        self,
        root: Path,
        repo: FakeRepository,
        console: Console,
        script: str,
        settings: RuntimeSettings | None = None,
        answers: tuple[str, ...] = (),
    ) -> None:
        self.settings = settings or make_settings(iteration_timeout=10, termination_grace=0.5)
        self.project = Project.load_or_create(self.settings.tool, root)
        self.breaker = CircuitBreaker(
            self.project.breaker_state(),
            repo,
            self.settings.thresholds,
            counts_commits=self.settings.mode_profile.counts_commits,
        )
        assistant = AssistantClient(
            [sys.executable, "-c", script],
            timeout=self.settings.iteration_timeout,
            grace_period=self.settings.termination_grace,
            cwd=root,
            extra_flags=(),
        )
        scripted = list(answers)
        self.handler = RateLimitHandler(
            console,
            retry_delay=0,
            resume_command=self.settings.tool.resume_command(self.settings.mode),
            ask=lambda *args, **kwargs: scripted.pop(0),
            sleep=lambda seconds: None,
        )
        self.runner = IterationRunner(
            self.settings,
            self.project,
            self.breaker,
            assistant,
            self.handler,
            output_console=console,
        )
        self.sleeps: list[float] = []
        self.templates_dir = root / "templates"
        self.templates_dir.mkdir(exist_ok=True)
        (self.templates_dir / self.settings.mode_profile.prompt_filename).write_text(TEMPLATE, encoding="utf-8")
        self.orchestrator = SessionOrchestrator(
            self.settings,
            self.project,
            self.runner,
            self.breaker,
            templates_dir=self.templates_dir,
            sleep=self.sleeps.append,
            output_console=console,
        )

    @property
    def prompt_file(self) -> Path:
        return self.templates_dir / self.settings.mode_profile.prompt_filename


def test_render_prompt_substitutes_known_placeholders_only() -> None:
    rendered = render_prompt("{{ITERATION}}/{{MAX_ITERATIONS}} {{UNKNOWN}} {{ITERATION}}", {"ITERATION": 2, "MAX_ITERATIONS": 9})

    assert rendered == "2/9 {{UNKNOWN}} 2"


def test_review_scope_hook_fills_filters() -> None:
    hook = review_scope_hook("security,testing", None)

    rendered = hook("{{CATEGORIES}}\n{{FILES}}")

    assert "security,testing" in rendered
    assert "Review the entire project." in rendered
    assert review_scope_info(None, "src/")() == ["Files: src/"]


def test_completion_writes_signal_file(tmp_path: Path, fake_repo: FakeRepository, quiet_console: Console) -> None:
    session = Session(tmp_path, fake_repo, quiet_console, COMPLETE_SCRIPT)

    result = session.runner.run_iteration(1, session.prompt_file, "sonnet")

    assert result.code == 0
    assert result.completed is True
    assert result.report.tasks_remaining == 0
    assert "prompt was: Iteration 1 of 50 in build mode" in result.output
    assert session.project.completion_signal_path.exists()


def test_hung_assistant_times_out(tmp_path: Path, fake_repo: FakeRepository, quiet_console: Console) -> None:
    settings = make_settings(iteration_timeout=0.5, termination_grace=0.5)
    session = Session(tmp_path, fake_repo, quiet_console, "import time\ntime.sleep(30)\n", settings=settings)

    result = session.runner.run_iteration(1, session.prompt_file, "sonnet")

    assert result.timed_out is True
    assert result.code == TIMEOUT_EXIT_CODE
    assert result.failed is True
    assert session.breaker.state.no_change_count == 1
    assert not session.project.completion_signal_path.exists()


def test_missing_template_is_soft_failure(tmp_path: Path, fake_repo: FakeRepository, quiet_console: Console) -> None:
    session = Session(tmp_path, fake_repo, quiet_console, COUNTING_SCRIPT)

    result = session.runner.run_iteration(1, tmp_path / "missing.md", "sonnet")

    assert result.failed is True
    assert not (tmp_path / "calls.txt").exists()


def test_rate_limit_exit_short_circuits(tmp_path: Path, fake_repo: FakeRepository, quiet_console: Console) -> None:
    script = "print('API Error: 429 rate limited')\n"
    session = Session(tmp_path, fake_repo, quiet_console, script, answers=("2",))

    result = session.runner.run_iteration(3, session.prompt_file, "sonnet")

    assert result.code == EXIT_REQUESTED
    assert result.exit_requested is True
    assert result.rate_limited is True
    assert session.breaker.state.no_change_count == 0


def test_rate_limit_continue_keeps_bookkeeping(tmp_path: Path, fake_repo: FakeRepository, quiet_console: Console) -> None:
    script = "print('API Error: 429 rate limited')\n"
    session = Session(tmp_path, fake_repo, quiet_console, script, answers=("3",))

    result = session.runner.run_iteration(1, session.prompt_file, "sonnet")

    assert result.code == 0
    assert result.rate_limited is True
    assert session.breaker.state.no_change_count == 1
    assert session.breaker.state.same_error_count == 1


def test_api_error_is_warning_only(tmp_path: Path, fake_repo: FakeRepository, quiet_console: Console) -> None:
    script = "import sys\nprint('API Error: 500 internal server error')\nsys.exit(1)\n"
    session = Session(tmp_path, fake_repo, quiet_console, script)

    result = session.runner.run_iteration(1, session.prompt_file, "sonnet")

    assert result.api_error is True
    assert result.code == 1
    assert result.error_message == "API Error: 500 internal server error"
    assert session.breaker.state.last_error == "API Error: 500 internal server error"


def test_iterations_are_recorded_in_stats(tmp_path: Path, fake_repo: FakeRepository, quiet_console: Console) -> None:
    session = Session(tmp_path, fake_repo, quiet_console, COUNTING_SCRIPT)

    session.runner.run_iteration(1, session.prompt_file, "sonnet")
    session.runner.run_iteration(2, session.prompt_file, "sonnet")

    stats = json.loads(session.project.stats_path.read_text(encoding="utf-8"))
    assert [row["iteration"] for row in stats["iterations"]] == [1, 2]
    assert stats["iterations"][0]["model"] == "sonnet"
    assert stats["iterations"][0]["mode"] == "build"


def test_dry_run_does_not_invoke_assistant(tmp_path: Path, fake_repo: FakeRepository, quiet_console: Console) -> None:
    settings = make_settings(overrides={"dry_run": True})
    session = Session(tmp_path, fake_repo, quiet_console, COUNTING_SCRIPT, settings=settings)

    outcome = session.orchestrator.run_session()

    assert outcome.reason is StopReason.DRY_RUN
    assert outcome.exit_code == 0
    assert not (tmp_path / "calls.txt").exists()
    assert "[DRY RUN]" in quiet_console.file.getvalue()
    assert session.breaker.state.no_change_count == 0


def test_session_stops_on_completion(tmp_path: Path, fake_repo: FakeRepository, quiet_console: Console) -> None:
    session = Session(tmp_path, fake_repo, quiet_console, COMPLETE_SCRIPT)

    outcome = session.orchestrator.run_session()

    assert outcome.reason is StopReason.COMPLETE
    assert outcome.iterations == 1
    assert outcome.exit_code == 0
    assert not session.project.completion_signal_path.exists()


def test_breaker_trips_after_three_idle_iterations(
    tmp_path: Path, fake_repo: FakeRepository, quiet_console: Console
) -> None:
    session = Session(tmp_path, fake_repo, quiet_console, COUNTING_SCRIPT)

    outcome = session.orchestrator.run_session()

    assert outcome.reason is StopReason.BREAKER
    assert outcome.exit_code == 1
    assert outcome.iterations == 3
    assert (tmp_path / "calls.txt").read_text() == "xxx"
    assert "No file changes for 3 iterations" in quiet_console.file.getvalue()


def test_stuck_sentinel_stops_after_one_iteration(
    tmp_path: Path, fake_repo: FakeRepository, quiet_console: Console
) -> None:
    script = COUNTING_SCRIPT + "print('WALPH_STUCK')\n"
    session = Session(tmp_path, fake_repo, quiet_console, script)

    outcome = session.orchestrator.run_session()

    assert outcome.reason is StopReason.BREAKER
    assert outcome.iterations == 1
    assert (tmp_path / "calls.txt").read_text() == "x"


def test_tripped_breaker_blocks_next_run(tmp_path: Path, fake_repo: FakeRepository, quiet_console: Console) -> None:
    session = Session(tmp_path, fake_repo, quiet_console, COUNTING_SCRIPT + "print('WALPH_STUCK')\n")
    session.orchestrator.run_session()

    again = Session(tmp_path, fake_repo, quiet_console, COUNTING_SCRIPT)
    outcome = again.orchestrator.run_session()

    assert outcome.reason is StopReason.BREAKER
    assert outcome.iterations == 0
    assert (tmp_path / "calls.txt").read_text() == "x"


def test_user_exit_stops_cleanly(tmp_path: Path, fake_repo: FakeRepository, quiet_console: Console) -> None:
    session = Session(tmp_path, fake_repo, quiet_console, "print('Error: 429')\n", answers=("2",))

    outcome = session.orchestrator.run_session()

    assert outcome.reason is StopReason.USER_EXIT
    assert outcome.exit_code == 0


def test_assistant_exit_status_two_is_a_failure(
    tmp_path: Path, fake_repo: FakeRepository, quiet_console: Console
) -> None:
    fake_repo.dirty_paths = ["src/app.py"]
    settings = make_settings(max_iterations=2)
    script = "import sys\nprint('usage: claude [options]')\nsys.exit(2)\n"
    session = Session(tmp_path, fake_repo, quiet_console, script, settings=settings)

    result = session.runner.run_iteration(1, session.prompt_file, "sonnet")
    outcome = session.orchestrator.run_session()

    assert result.code == 2
    assert result.exit_requested is False
    assert result.failed is True
    assert outcome.reason is StopReason.EXHAUSTED
    assert outcome.iterations == 2


def test_token_estimate_failure_keeps_operator_exit(
    tmp_path: Path, fake_repo: FakeRepository, quiet_console: Console, monkeypatch
) -> None:
    def offline(model: str, text: str) -> int:
        raise ConnectionError("no network")

    monkeypatch.setattr("walph.orchestrator.estimate_tokens_text", offline)
    settings = make_settings(estimate_tokens=True)
    session = Session(tmp_path, fake_repo, quiet_console, "print('Error: 429')\n", settings=settings, answers=("2", "2", "2"))

    outcome = session.orchestrator.run_session()

    assert outcome.reason is StopReason.USER_EXIT
    assert outcome.iterations == 1
    assert not session.project.stats_path.exists()


def test_stats_write_failure_keeps_completion(
    tmp_path: Path, fake_repo: FakeRepository, quiet_console: Console, monkeypatch
) -> None:
    session = Session(tmp_path, fake_repo, quiet_console, COMPLETE_SCRIPT)

    def read_only(row: dict) -> dict:
        raise PermissionError("stats.json is read-only")

    monkeypatch.setattr(session.project, "append_stats", read_only)

    outcome = session.orchestrator.run_session()

    assert outcome.reason is StopReason.COMPLETE
    assert outcome.iterations == 1


def test_iteration_cap_reached(tmp_path: Path, fake_repo: FakeRepository, quiet_console: Console) -> None:
    fake_repo.dirty_paths = ["src/app.py"]
    settings = make_settings(max_iterations=2, iteration_delay=0.25)
    session = Session(tmp_path, fake_repo, quiet_console, COUNTING_SCRIPT, settings=settings)

    outcome = session.orchestrator.run_session()

    assert outcome.reason is StopReason.EXHAUSTED
    assert outcome.iterations == 2
    assert session.sleeps == [0.25]
    assert "Maximum iterations (2) reached" in quiet_console.file.getvalue()


def test_project_prompt_overrides_bundled_template(
    tmp_path: Path, fake_repo: FakeRepository, quiet_console: Console
) -> None:
    session = Session(tmp_path, fake_repo, quiet_console, COUNTING_SCRIPT)
    assert session.orchestrator.resolve_prompt_file() == session.prompt_file

    override = session.project.tool_dir / "PROMPT_build.md"
    override.write_text("local {{MODE}}", encoding="utf-8")

    assert session.orchestrator.resolve_prompt_file() == override


def test_read_only_mode_ignores_commit_inactivity(
    tmp_path: Path, fake_repo: FakeRepository, quiet_console: Console
) -> None:
    fake_repo.dirty_paths = ["REVIEW_FINDINGS.md"]
    settings = make_settings(tool=GOODBUNNY, mode=Mode.AUDIT, max_iterations=6)
    session = Session(tmp_path, fake_repo, quiet_console, COUNTING_SCRIPT, settings=settings)

    outcome = session.orchestrator.run_session()

    assert outcome.reason is StopReason.EXHAUSTED
    assert session.breaker.state.no_commit_count == 6


class ExplodingRunner:
    def __init__(self, error: BaseException, then: IterationResult | None = None) -> None:
        self.error = error
        self.then = then
        self.calls = 0

    def run_iteration(self, iteration: int, prompt_file: Path, model: str) -> IterationResult:
        self.calls += 1
        if self.calls == 1 or self.then is None:
            raise self.error
        return self.then


def test_unexpected_iteration_error_is_absorbed(
    tmp_path: Path, fake_repo: FakeRepository, quiet_console: Console
) -> None:
    fake_repo.dirty_paths = ["src/app.py"]
    settings = make_settings(max_iterations=2)
    session = Session(tmp_path, fake_repo, quiet_console, COUNTING_SCRIPT, settings=settings)
    session.orchestrator.runner = ExplodingRunner(
        RuntimeError("boom"), then=IterationResult(code=0, status="Success", report=parse_status(""))
    )

    outcome = session.orchestrator.run_session()

    assert outcome.reason is StopReason.EXHAUSTED
    assert session.orchestrator.runner.calls == 2


def test_ctrl_c_interrupts_session(tmp_path: Path, fake_repo: FakeRepository, quiet_console: Console) -> None:
    session = Session(tmp_path, fake_repo, quiet_console, COUNTING_SCRIPT)
    session.orchestrator.runner = ExplodingRunner(KeyboardInterrupt())

    outcome = session.orchestrator.run_session()

    assert outcome.reason is StopReason.INTERRUPTED
    assert outcome.exit_code == 130
