from __future__ import annotations

import argparse
import logging
import os
import shutil
from pathlib import Path
from typing import Any, Callable, Sequence

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.prompt import Confirm
from rich.table import Table

from walph.assistant import AssistantClient
from walph.breaker import CircuitBreaker
from walph.config.loader import load_settings
from walph.config.models import GOODBUNNY, WALPH, Mode, RuntimeSettings, ToolProfile
from walph.core import LoopOutcome, Project, StopReason
from walph.errors import ConfigError
from walph.orchestrator import (
	IterationRunner,
	SessionOrchestrator,
	identity_hook,
	review_scope_hook,
	review_scope_info,
	show_stats_table,
	show_status,
)
from walph.rate_limit import RateLimitHandler
from walph.signatures import SignatureSet, default_signatures, load_signatures
from walph.utils import configure_logging, session_log_path
from walph.vcs import GitRepository


COMMANDS = ("status", "reset", "config")
SECRET_MARKERS = ("key", "token", "secret", "password")
console = Console()
logger = logging.getLogger(__name__)


def parse_args(tool: ToolProfile, argv: Sequence[str] | None = None) -> argparse.Namespace:
	"""Parse CLI arguments."""
	modes = [mode.value for mode in tool.modes]
	parser = argparse.ArgumentParser(prog=tool.name, description=f"{tool.display_name}: autonomous assistant loop")
	parser.add_argument(
		"command",
		nargs="?",
		default=tool.default_mode.value,
		choices=[*modes, *COMMANDS],
		help=f"Mode to run ({', '.join(modes)}) or a maintenance command (default: {tool.default_mode.value})",
	)
	parser.add_argument(
		"--max-iterations",
		type=int,
		dest="max_iterations",
		help=f"Maximum iterations before stopping (default: {tool.max_iterations})",
	)
	parser.add_argument(
		"--model",
		dest="model_override",
		help="Model for every iteration, overriding the per-mode default",
	)
	parser.add_argument(
		"--dry-run",
		action="store_true",
		help="Show what would be run without executing",
	)
	parser.add_argument(
		"-v",
		"--verbose",
		action="store_true",
		help="Show debug output on the console",
	)
	if tool.scoped_review:
		parser.add_argument(
			"--categories",
			help="Comma-separated review categories (e.g. security,testing)",
		)
		parser.add_argument(
			"--files",
			help="Files or directories to review (e.g. src/)",
		)
	parser.add_argument("--version", action="version", version=f"{tool.name} {tool.version}")
	return parser.parse_args(argv)


def flag_overrides(args: argparse.Namespace) -> dict[str, Any]:
	return {
		"max_iterations": args.max_iterations,
		"model_override": args.model_override,
		"dry_run": args.dry_run,
		"verbose": args.verbose,
		"categories": getattr(args, "categories", None),
		"files": getattr(args, "files", None),
	}


def check_dependencies(settings: RuntimeSettings, which: Callable[[str], str | None] = shutil.which) -> None:
	"""Fail before any iteration runs if a required executable is missing."""
	required = [settings.assistant_command[0], "git"]
	missing = [name for name in required if which(name) is None]
	if missing:
		raise ConfigError(f"Required command(s) not found on PATH: {', '.join(missing)}")


def resolve_signatures(settings: RuntimeSettings, root: Path) -> SignatureSet:
	if not settings.signatures_file:
		return default_signatures()
	path = Path(settings.signatures_file).expanduser()
	if not path.is_absolute():
		path = root / path
	return load_signatures(path)


def show_config_content(settings: RuntimeSettings, project: Project) -> None:
	"""Display the resolved configuration."""
	source = str(project.config_path) if project.config_path.exists() else "built-in defaults"
	console.print(
		Panel(
			f"[bold]Tool:[/bold] {settings.tool.display_name} {settings.tool.version}\n"
			f"[bold]Config file:[/bold] {escape(source)}\n"
			f"[bold]Environment prefix:[/bold] {settings.tool.env_prefix}_",
			title="Selected Configuration",
			border_style="blue",
		)
	)

	settings_table = Table(title="Runtime Settings", show_lines=False)
	settings_table.add_column("Key")
	settings_table.add_column("Value")
	for key, value in settings.to_dict().items():
		if isinstance(value, dict):
			value = ", ".join(f"{name}={item}" for name, item in value.items())
		display_value = "***" if any(marker in key.lower() for marker in SECRET_MARKERS) else str(value)
		settings_table.add_row(key, escape(display_value))
	console.print(settings_table)

	if settings.ignored_keys:
		console.print(f"[yellow]Ignored unknown keys:[/yellow] {', '.join(settings.ignored_keys)}")


def confirm_unmarked_project(project: Project) -> bool:
	"""Ask before turning a directory without project markers into a tool workspace."""
	if not project.tool.confirm_unmarked_project or project.is_marked():
		return True
	console.print(
		f"[yellow]No {project.tool.tool_dir}/ directory or AGENTS.md found in {escape(str(project.root))}.[/yellow]"
	)
	return Confirm.ask("Run here anyway?", default=False)


def build_orchestrator(
	settings: RuntimeSettings,
	project: Project,
	repository: GitRepository,
	signatures: SignatureSet,
) -> SessionOrchestrator:
	"""Wire the loop components for one session."""
	breaker = CircuitBreaker(
		project.breaker_state(),
		repository,
		settings.thresholds,
		counts_commits=settings.mode_profile.counts_commits,
		signatures=signatures,
	)
	assistant = AssistantClient(
		settings.assistant_command,
		timeout=settings.iteration_timeout,
		grace_period=settings.termination_grace,
		cwd=project.root,
	)
	rate_limit_handler = RateLimitHandler(
		console,
		retry_delay=settings.rate_limit_retry_delay,
		resume_command=settings.tool.resume_command(settings.mode),
		signatures=signatures,
	)
	if settings.tool.scoped_review:
		template_hook = review_scope_hook(settings.categories, settings.files)
		dry_run_info = review_scope_info(settings.categories, settings.files)
	else:
		template_hook = identity_hook
		dry_run_info = None

	runner = IterationRunner(
		settings,
		project,
		breaker,
		assistant,
		rate_limit_handler,
		signatures=signatures,
		template_hook=template_hook,
		dry_run_info=dry_run_info,
	)
	return SessionOrchestrator(settings, project, runner, breaker)


def show_summary(outcome: LoopOutcome, project: Project, log_file: Path) -> None:
	styles = {
		StopReason.COMPLETE: "green",
		StopReason.USER_EXIT: "yellow",
		StopReason.EXHAUSTED: "yellow",
		StopReason.DRY_RUN: "cyan",
		StopReason.BREAKER: "red",
		StopReason.INTERRUPTED: "red",
	}
	text = f"Stop reason: [bold]{outcome.reason.value}[/bold]\nIterations: {outcome.iterations}"
	if outcome.detail:
		text += f"\nDetail: {escape(outcome.detail)}"
	text += f"\nSession log: {escape(str(log_file))}"
	console.print(Panel(text, title="Session Summary", border_style=styles[outcome.reason]))
	if outcome.reason is StopReason.BREAKER:
		console.print(f"Fix the cause, then run '[bold]{project.tool.name} reset[/bold]' and start again.")


def run_command(args: argparse.Namespace, tool: ToolProfile, root: Path, environ: dict[str, str]) -> int:
	command = args.command
	mode = tool.default_mode if command in COMMANDS else Mode(command)
	settings = load_settings(tool, mode, root, environ=environ, overrides=flag_overrides(args))
	project = Project(tool, root)

	if command == "config":
		show_config_content(settings, project)
		return 0

	if command == "status":
		show_status(project, project.breaker_state(), settings, target=console)
		show_stats_table(project.get_stats(), max_entries=0, target=console)
		return 0

	if command == "reset":
		if not project.tool_dir.exists():
			console.print(f"[yellow]No {tool.tool_dir}/ directory found, nothing to reset.[/yellow]")
			return 0
		breaker = CircuitBreaker(
			project.breaker_state(),
			GitRepository(root),
			settings.thresholds,
			counts_commits=settings.mode_profile.counts_commits,
		)
		breaker.reset()
		project.clear_completion_signal()
		console.print("[green]Circuit breaker reset.[/green]")
		return 0

	if not settings.dry_run and not confirm_unmarked_project(project):
		console.print("[yellow]Aborted.[/yellow]")
		return 0
	if not settings.dry_run:
		check_dependencies(settings)

	project = Project.load_or_create(tool, root)
	log_file = session_log_path(project.log_dir, tool.name)
	configure_logging(console, log_file, verbose=settings.verbose)

	signatures = resolve_signatures(settings, root)
	repository = GitRepository(root)
	if not repository.is_repository():
		logger.warning("%s is not a git repository; file changes and commits cannot be detected", root)
	orchestrator = build_orchestrator(settings, project, repository, signatures)
	if orchestrator.resolve_prompt_file() is None:
		raise ConfigError(
			f"No prompt template found for mode '{mode.value}' "
			f"(looked for {tool.tool_dir}/{settings.mode_profile.prompt_filename} and the bundled templates)"
		)

	outcome = orchestrator.run_session()
	show_summary(outcome, project, log_file)
	return outcome.exit_code


def main(
	tool: ToolProfile,
	argv: Sequence[str] | None = None,
	root: Path | None = None,
	environ: dict[str, str] | None = None,
) -> int:
	"""CLI entry point shared by both tools. Returns the process exit code."""
	args = parse_args(tool, argv)
	configure_logging(console, verbose=args.verbose)
	try:
		return run_command(args, tool, root or Path.cwd(), dict(os.environ) if environ is None else environ)
	except ConfigError as exc:
		console.print(f"[red]Error:[/red] {escape(str(exc))}")
		return 1
	except KeyboardInterrupt:
		console.print("\n[yellow]Interrupted by user.[/yellow]")
		return 130


def walph_main() -> None:
	raise SystemExit(main(WALPH))


def goodbunny_main() -> None:
	raise SystemExit(main(GOODBUNNY))
