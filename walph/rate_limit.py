"""Interactive decision point for throttled assistant runs."""

from __future__ import annotations

import logging
import time
from enum import Enum
from typing import Callable

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.prompt import Prompt

from walph.signatures import SignatureSet
from walph.status import extract_rate_limit_detail

logger = logging.getLogger(__name__)

AskFn = Callable[..., str]
SleepFn = Callable[[float], None]


class RateLimitDecision(str, Enum):
    RETRY = "retry"
    EXIT = "exit"
    CONTINUE = "continue"


_CHOICES = {
    "1": RateLimitDecision.RETRY,
    "2": RateLimitDecision.EXIT,
    "3": RateLimitDecision.CONTINUE,
}


class RateLimitHandler:
    """Asks the operator how to proceed when throttling is detected.

    Blocks on input with no timeout. End of input counts as "exit" so an
    unattended run stops cleanly and stays resumable.
    """

    def __init__(
        self,
        console: Console,
        retry_delay: float,
        resume_command: str,
        signatures: SignatureSet | None = None,
        ask: AskFn = Prompt.ask,
        sleep: SleepFn = time.sleep,
    ):
        self.console = console
        self.retry_delay = retry_delay
        self.resume_command = resume_command
        self.signatures = signatures
        self.ask = ask
        self.sleep = sleep

    def handle(self, output: str, iteration: int, max_iterations: int, model: str) -> RateLimitDecision:
        detail = extract_rate_limit_detail(output, self.signatures)
        logger.warning("Rate limit detected on iteration %d (model %s): %s", iteration, model, detail or "no detail")

        body = (
            f"Iteration: [bold]{iteration}/{max_iterations}[/bold]\n"
            f"Model: [cyan]{model}[/cyan]"
        )
        if detail:
            body += f"\nDetail: {escape(detail)}"
        body += (
            "\n\n"
            f"Progress is safe. Resume later with [bold]{self.resume_command}[/bold].\n\n"
            f"1. Wait {self.retry_delay:.0f}s and retry\n"
            "2. Exit and resume later (recommended)\n"
            "3. Continue anyway"
        )
        self.console.print(Panel(body, title="Rate Limit Detected", border_style="yellow"))

        try:
            answer = self.ask("Choose", choices=list(_CHOICES), default="2")
        except EOFError:
            answer = "2"
        decision = _CHOICES.get(str(answer).strip(), RateLimitDecision.EXIT)

        if decision is RateLimitDecision.RETRY:
            self.console.print(f"[yellow]Waiting {self.retry_delay:.0f}s before retrying...[/yellow]")
            self.sleep(self.retry_delay)
        elif decision is RateLimitDecision.EXIT:
            self.console.print("[yellow]Exiting. Progress is saved; resume with:[/yellow]")
            self.console.print(f"  [bold]{self.resume_command}[/bold]")
        else:
            self.console.print("[yellow]Continuing despite rate limit.[/yellow]")

        logger.info("Rate limit decision: %s", decision.value)
        return decision
