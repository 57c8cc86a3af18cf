"""Orchestration layer for managing iteration and session workflows."""

from __future__ import annotations

import logging
import re
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Callable

from rich.console import Console
from rich.markup import escape

from walph.assistant import AssistantClient
from walph.breaker import CircuitBreaker
from walph.config.models import RuntimeSettings
from walph.core import (
	EXIT_REQUESTED,
	ITERATION_OK,
	CircuitBreakerState,
	IterationContext,
	IterationResult,
	LoopOutcome,
	Project,
	StopReason,
)
from walph.rate_limit import RateLimitDecision, RateLimitHandler
from walph.signatures import SignatureSet
from walph.status import (
	check_api_error,
	check_completion,
	check_rate_limit,
	extract_error_message,
	parse_status,
	status_summary,
)
from walph.utils import estimate_tokens_text, log_transcript, truncate_text


TEMPLATES_DIR = Path(__file__).resolve().parent / "templates"
PLACEHOLDER_PATTERN = re.compile(r"\{\{([A-Z_]+)\}\}")
SOFT_FAILURE = 1

TemplateHook = Callable[[str], str]
DryRunInfo = Callable[[], list[str]]

console = Console()
logger = logging.getLogger(__name__)


def now_iso() -> str:
	"""Return current time as ISO string."""
	return datetime.now().isoformat(timespec="seconds")


def identity_hook(prompt: str) -> str:
	return prompt


def render_prompt(template: str, values: dict[str, Any]) -> str:
	"""Replace known ``{{NAME}}`` placeholders; unknown ones are left untouched."""
	def replace(match: re.Match[str]) -> str:
		name = match.group(1)
		if name in values:
			return str(values[name])
		return match.group(0)

	return PLACEHOLDER_PATTERN.sub(replace, template)


def review_scope_hook(categories: str | None, files: str | None) -> TemplateHook:
	"""Template hook filling ``{{CATEGORIES}}`` and ``{{FILES}}`` for review prompts."""
	if categories:
		categories_section = f"**Reviewing only these categories:** {categories}. Skip categories not listed."
	else:
		categories_section = "Review all applicable categories below."
	if files:
		files_section = f"**Reviewing only these files/directories:** {files}. Ignore files outside this scope."
	else:
		files_section = "Review the entire project."

	def hook(prompt: str) -> str:
		return render_prompt(prompt, {"CATEGORIES": categories_section, "FILES": files_section})

	return hook


def review_scope_info(categories: str | None, files: str | None) -> DryRunInfo:
	def info() -> list[str]:
		lines = []
		if categories:
			lines.append(f"Categories: {categories}")
		if files:
			lines.append(f"Files: {files}")
		return lines

	return info


def show_status(
	project: Project,
	breaker_state: CircuitBreakerState,
	settings: RuntimeSettings,
	target: Console | None = None,
) -> None:
	"""Display current project status."""
	from rich.panel import Panel

	out = target or console

	counts = project.task_counts()
	if counts is None:
		tasks_text = f"[dim]{project.tool.plan_filename} not found[/dim]"
	else:
		remaining, done = counts
		tasks_text = f"{remaining} remaining, {done} done ({project.tool.plan_filename})"

	tool_dir_text = "[green]present[/green]" if project.tool_dir.exists() else "[yellow]missing[/yellow]"
	breaker_text = (
		f"no_change={breaker_state.no_change_count}/{settings.thresholds.no_change} "
		f"same_error={breaker_state.same_error_count}/{settings.thresholds.same_error} "
		f"no_commit={breaker_state.no_commit_count}/{settings.thresholds.no_commit}"
	)
	if breaker_state.stuck:
		breaker_text += " [red]stuck[/red]"

	status_text = (
		f"Project: [bold]{escape(project.name)}[/bold]\n"
		f"Tool directory: {project.tool.tool_dir} {tool_dir_text}\n"
		f"Tasks: {tasks_text}\n"
		f"Circuit breaker: {breaker_text}"
	)
	if breaker_state.last_error:
		status_text += f"\nLast error: {escape(truncate_text(breaker_state.last_error, 80))}"
	out.print(Panel(status_text, title=f"{project.tool.display_name} Status", border_style="blue"))


def show_stats_table(stats: dict[str, Any], max_entries: int = 5, target: Console | None = None) -> None:
	"""Display statistics table."""
	from rich.table import Table

	out = target or console
	rows = stats.get("iterations", [])
	if not rows:
		out.print("[dim]No iterations recorded yet.[/dim]")
		return
	recent = rows[-max_entries:] if max_entries > 0 else rows

	table = Table(title="Recent Iterations", show_lines=False)
	table.add_column("#", justify="right")
	table.add_column("Mode")
	table.add_column("Model")
	table.add_column("Status")
	table.add_column("Exit", justify="right")
	table.add_column("Prompt")
	table.add_column("Output")
	table.add_column("Seconds", justify="right")

	for row in recent:
		table.add_row(
			str(row.get("iteration", "-")),
			str(row.get("mode", "")),
			str(row.get("model", "")),
			str(row.get("status", "")),
			str(row.get("exit_code", "")),
			str(row.get("prompt_tokens", 0)),
			str(row.get("output_tokens", 0)),
			f"{float(row.get('duration_seconds', 0)):.2f}",
		)

	out.print(table)
	total_prompt = stats.get("total_prompt_tokens", 0)
	total_output = stats.get("total_output_tokens", 0)
	total_time = float(stats.get("total_time_seconds", 0.0))
	if total_time > 60:
		time_text = f"{total_time / 60:.1f} min"
	else:
		time_text = f"{total_time:.1f} sec"
	out.print(
		f"[green]Totals:[/green] prompt~{total_prompt} output~{total_output} iterations={len(rows)} time={time_text}"
	)


class IterationRunner:
	"""Runs exactly one iteration end-to-end and classifies its outcome."""

	def __init__(
		self,
		settings: RuntimeSettings,
		project: Project,
		breaker: CircuitBreaker,
		assistant: AssistantClient,
		rate_limit_handler: RateLimitHandler,
		signatures: SignatureSet | None = None,
		template_hook: TemplateHook = identity_hook,
		dry_run_info: DryRunInfo | None = None,
		output_console: Console | None = None,
	):
		"""Initialize runner.

		Args:
			settings: Resolved runtime settings
			project: Project whose state directory receives the completion signal
			breaker: Circuit breaker updated once per finished iteration
			assistant: Subprocess client with watchdog
			rate_limit_handler: Interactive handler for throttled runs
			signatures: Output signatures (bundled set when None)
			template_hook: Extra placeholder substitution applied after the common set
			dry_run_info: Extra lines printed in dry-run previews
			output_console: Console for user-facing output
		"""
		self.settings = settings
		self.project = project
		self.breaker = breaker
		self.assistant = assistant
		self.rate_limit_handler = rate_limit_handler
		self.signatures = signatures
		self.template_hook = template_hook
		self.dry_run_info = dry_run_info
		self.console = output_console or console

	def build_prompt(self, template: str, iteration: int) -> str:
		prompt = render_prompt(
			template,
			{
				"ITERATION": iteration,
				"MAX_ITERATIONS": self.settings.max_iterations,
				"MODE": self.settings.mode.value,
			},
		)
		return self.template_hook(prompt)

	def run_iteration(self, iteration: int, prompt_file: Path, model: str) -> IterationResult:
		"""Execute a single iteration.

		Returns:
			IterationResult; ``exit_requested`` is set only by the operator's rate-limit choice
		"""
		self.console.rule(
			f"[bold]Iteration {iteration}/{self.settings.max_iterations}[/bold] "
			f"[dim]{self.settings.mode.value} · {model}[/dim]"
		)

		try:
			template = prompt_file.read_text(encoding="utf-8")
		except OSError as exc:
			logger.error("Prompt file not found: %s (%s)", prompt_file, exc)
			return IterationResult(code=SOFT_FAILURE, status="Failed: prompt template missing", report=parse_status(""))

		context = IterationContext(
			iteration=iteration,
			max_iterations=self.settings.max_iterations,
			mode=self.settings.mode,
			model=model,
			prompt=self.build_prompt(template, iteration),
		)

		if self.settings.dry_run:
			return self._preview(context, prompt_file)

		logger.info("Running assistant (%s), timeout %.0fs", model, self.settings.iteration_timeout)
		run = self.assistant.run(context.prompt, model)
		output = run.output
		if output:
			self.console.print(output, markup=False, highlight=False)
		log_transcript(iteration, output)

		if run.timed_out:
			logger.error("Iteration timed out after %.0fs", self.settings.iteration_timeout)
			logger.info("The next iteration will retry. Raise iteration_timeout in config if needed.")

		result = IterationResult(
			code=run.exit_code,
			status="Timed out" if run.timed_out else ("Success" if run.exit_code == 0 else f"Exit {run.exit_code}"),
			report=parse_status(output, self.signatures),
			timed_out=run.timed_out,
			output=output,
			duration=run.duration,
		)

		if check_rate_limit(output, self.signatures):
			result.rate_limited = True
			decision = self.rate_limit_handler.handle(output, iteration, self.settings.max_iterations, model)
			if decision is RateLimitDecision.EXIT:
				result.code = EXIT_REQUESTED
				result.exit_requested = True
				result.status = "Exit requested"
				self._record(context, result)
				return result

		error_message = extract_error_message(output)
		result.error_message = error_message
		if check_api_error(output, self.signatures):
			result.api_error = True
			logger.warning("API error detected%s", f": {error_message}" if error_message else "")

		logger.info("Status: %s", status_summary(output, self.signatures))

		if not self.breaker.update(output, error_message):
			result.stuck = True
			result.status = "Stuck"
		logger.debug("Circuit breaker: %s", self.breaker.status_line())

		if check_completion(output, self.signatures):
			logger.info("Completion signal received")
			self.project.signal_completion()
			result.completed = True
			result.code = ITERATION_OK
			result.status = "Complete"

		self._record(context, result)
		return result

	def _preview(self, context: IterationContext, prompt_file: Path) -> IterationResult:
		lines = [
			f"Model: {context.model}",
			f"Prompt file: {prompt_file}",
			f"Mode: {context.mode.value}",
			f"Command: {' '.join(self.assistant.build_command(context.model))}",
		]
		if self.dry_run_info is not None:
			lines.extend(self.dry_run_info())
		self.console.print("[cyan][DRY RUN][/cyan] Would run the assistant with:")
		for line in lines:
			self.console.print(f"  {escape(line)}")
		return IterationResult(code=ITERATION_OK, status="Dry run", report=parse_status(""))

	def _record(self, context: IterationContext, result: IterationResult) -> None:
		"""Append a stats row. Bookkeeping failures never change the iteration outcome."""
		try:
			stats = self.project.append_stats(self._stats_row(context, result))
		except Exception as exc:
			logger.warning("Could not record iteration stats: %s", exc)
			return
		show_stats_table(stats, target=self.console)

	def _stats_row(self, context: IterationContext, result: IterationResult) -> dict[str, Any]:
		row = {
			"timestamp": now_iso(),
			"iteration": context.iteration,
			"mode": context.mode.value,
			"model": context.model,
			**result.to_row(),
			"prompt_tokens": 0,
			"output_tokens": 0,
		}
		if self.settings.estimate_tokens:
			row["prompt_tokens"] = estimate_tokens_text(context.model, context.prompt)
			row["output_tokens"] = estimate_tokens_text(context.model, result.output)
		return row


class SessionOrchestrator:
	"""Drives iterations until completion, user exit, breaker trip or the iteration cap."""

	def __init__(
		self,
		settings: RuntimeSettings,
		project: Project,
		runner: IterationRunner,
		breaker: CircuitBreaker,
		templates_dir: Path = TEMPLATES_DIR,
		sleep: Callable[[float], None] = time.sleep,
		output_console: Console | None = None,
	):
		self.settings = settings
		self.project = project
		self.runner = runner
		self.breaker = breaker
		self.templates_dir = templates_dir
		self.sleep = sleep
		self.console = output_console or console

	def resolve_prompt_file(self) -> Path | None:
		"""Project-local override first, then the shared default."""
		filename = self.settings.mode_profile.prompt_filename
		for candidate in (self.project.prompt_override_path(filename), self.templates_dir / filename):
			if candidate.is_file():
				return candidate
		return None

	def show_session_config(self) -> None:
		from rich.panel import Panel

		thresholds = self.settings.thresholds
		self.console.print(
			Panel(
				f"Mode: {self.settings.mode.value}\n"
				f"Model: {self.settings.model_for()}\n"
				f"Max iterations: {self.settings.max_iterations}\n"
				f"Iteration timeout: {self.settings.iteration_timeout:.0f}s\n"
				f"Circuit breaker: no_change={thresholds.no_change} same_error={thresholds.same_error} "
				f"no_commit={thresholds.no_commit if self.settings.mode_profile.counts_commits else 'off'}",
				title=f"{self.settings.tool.display_name} Session",
				border_style="green",
			)
		)

	def _breaker_stop(self, reason: str, iterations: int) -> LoopOutcome:
		self.console.print(f"[bold red]Circuit breaker triggered:[/bold red] {reason}")
		self.console.print(f"Run '[bold]{self.settings.tool.name} reset[/bold]' to clear the circuit breaker")
		logger.info("Stopped by circuit breaker: %s", reason)
		return LoopOutcome(StopReason.BREAKER, iterations, reason)

	def run_session(self) -> LoopOutcome:
		"""Run the main session loop until one of the stop conditions is reached."""
		self.show_session_config()
		iteration = 1

		while iteration <= self.settings.max_iterations:
			try:
				reason = self.breaker.trip_reason()
				if reason:
					return self._breaker_stop(reason, iteration - 1)

				prompt_file = self.resolve_prompt_file()
				if prompt_file is None:
					prompt_file = self.templates_dir / self.settings.mode_profile.prompt_filename
				model = self.settings.model_for()

				try:
					result = self.runner.run_iteration(iteration, prompt_file, model)
				except KeyboardInterrupt:
					raise
				except Exception as exc:
					logger.exception("Fatal iteration error: %s", exc)
					result = None

				if result is None or result.failed:
					self.console.print(f"[yellow]Iteration {iteration} completed with issues[/yellow]")
				elif result.exit_requested:
					self.console.print("[yellow]Exit requested by user.[/yellow]")
					return LoopOutcome(StopReason.USER_EXIT, iteration)
				else:
					self.console.print(f"[green]Iteration {iteration} completed successfully[/green]")

				if self.project.completion_signalled():
					self.project.clear_completion_signal()
					self.console.print("[bold green]All work completed![/bold green]")
					return LoopOutcome(StopReason.COMPLETE, iteration)

				if result is not None and result.stuck:
					reason = self.breaker.trip_reason() or "Assistant signalled it is stuck"
					return self._breaker_stop(reason, iteration)

				if self.settings.dry_run:
					self.console.print("[cyan]Dry run complete.[/cyan]")
					return LoopOutcome(StopReason.DRY_RUN, iteration)

				iteration += 1
				if iteration <= self.settings.max_iterations:
					self.sleep(self.settings.iteration_delay)
			except KeyboardInterrupt:
				self.console.print("\n[yellow]Interrupted by user.[/yellow]")
				return LoopOutcome(StopReason.INTERRUPTED, iteration)

		self.console.print(f"[yellow]Maximum iterations ({self.settings.max_iterations}) reached[/yellow]")
		return LoopOutcome(StopReason.EXHAUSTED, self.settings.max_iterations)
