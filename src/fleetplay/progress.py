"""Progress reporting for fleetplay.

Provides callback-based progress tracking for playbook runs, in text
(Ansible-like `ok: [web01]` lines) and JSON (NDJSON events) formats.
Progress goes to stderr so that stdout stays clean for results.
"""

import json
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from rich.console import Console
from rich.markup import escape

from .types import ExecutionResult, Outcome

OUTCOME_STYLES = {
    Outcome.OK: "green",
    Outcome.CHANGED: "yellow",
    Outcome.FAILED: "red",
    Outcome.SKIPPED: "cyan",
    Outcome.UNREACHABLE: "bold red",
}


@dataclass
class ProgressEvent:
    """A progress event during a run.

    Attributes:
        event_type: Type of event (play_start, task_start, task_result, ...)
        host: Host name, "*" for run-wide events
        timestamp: When the event occurred
        details: Additional event-specific details
    """

    event_type: str
    host: str
    timestamp: str
    details: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = {
            "event": self.event_type,
            "host": self.host,
            "timestamp": self.timestamp,
        }
        result.update(self.details)
        return result

    def to_json(self) -> str:
        """Convert to JSON string (NDJSON format)."""
        return json.dumps(self.to_dict(), default=str)


class ProgressReporter(ABC):
    """Base class for progress reporters."""

    @abstractmethod
    def on_play_start(self, play_index: int, name: str, hosts: list[str]) -> None:
        """Called when a play starts."""

    @abstractmethod
    def on_task_start(self, host: str, task_index: int, task_name: str) -> None:
        """Called before a task runs on a host."""

    @abstractmethod
    def on_task_result(self, result: ExecutionResult) -> None:
        """Called after a task's result is recorded."""

    @abstractmethod
    def on_task_retry(self, host: str, task_name: str, attempt: int, max_attempts: int, error: str) -> None:
        """Called when a failed task is about to be retried."""

    @abstractmethod
    def on_play_complete(self, play_index: int, name: str, duration: float) -> None:
        """Called when every host of a play has finished."""


class JsonProgressReporter(ProgressReporter):
    """Reports progress as NDJSON (newline-delimited JSON) events."""

    def __init__(self, output: Any = None) -> None:
        """Initialize JSON progress reporter.

        Args:
            output: Output stream (defaults to sys.stderr to not pollute stdout)
        """
        self.output = output or sys.stderr

    def _emit(self, event_type: str, host: str, **details: Any) -> None:
        event = ProgressEvent(
            event_type=event_type,
            host=host,
            timestamp=datetime.now(timezone.utc).isoformat(),
            details=details,
        )
        print(event.to_json(), file=self.output, flush=True)

    def on_play_start(self, play_index: int, name: str, hosts: list[str]) -> None:
        self._emit("play_start", "*", play=play_index, name=name, hosts=hosts)

    def on_task_start(self, host: str, task_index: int, task_name: str) -> None:
        self._emit("task_start", host, task_index=task_index, task=task_name)

    def on_task_result(self, result: ExecutionResult) -> None:
        self._emit("task_result", result.host, **{k: v for k, v in result.to_dict().items() if k != "host"})

    def on_task_retry(self, host: str, task_name: str, attempt: int, max_attempts: int, error: str) -> None:
        self._emit("task_retry", host, task=task_name, attempt=attempt, max_attempts=max_attempts, error=error)

    def on_play_complete(self, play_index: int, name: str, duration: float) -> None:
        self._emit("play_complete", "*", play=play_index, name=name, duration=round(duration, 3))


class TextProgressReporter(ProgressReporter):
    """Reports progress as human-readable text.

    Args:
        output: Output stream (defaults to sys.stderr)
        show_diff: Print diffs carried by results
        verbose: Print the result payload for every task, not only failures
    """

    def __init__(self, output: Any = None, show_diff: bool = False, verbose: bool = False) -> None:
        self.console = Console(file=output or sys.stderr, highlight=False)
        self.show_diff = show_diff
        self.verbose = verbose
        self._announced: set[tuple[str, bool]] = set()

    def on_play_start(self, play_index: int, name: str, hosts: list[str]) -> None:
        self._announced.clear()
        self.console.print(f"\n[bold]PLAY \\[{escape(name)}][/bold] ({len(hosts)} host(s))")

    def on_task_start(self, host: str, task_index: int, task_name: str) -> None:
        # hosts run concurrently; print each task header once
        if (task_name, False) not in self._announced:
            self._announced.add((task_name, False))
            self.console.print(f"\n[bold]TASK \\[{escape(task_name)}][/bold]")

    def on_task_result(self, result: ExecutionResult) -> None:
        if result.is_handler and (result.task_name, True) not in self._announced:
            self._announced.add((result.task_name, True))
            self.console.print(f"\n[bold]RUNNING HANDLER \\[{escape(result.task_name)}][/bold]")

        style = OUTCOME_STYLES[result.outcome]
        label = {Outcome.OK: "ok", Outcome.CHANGED: "changed", Outcome.SKIPPED: "skipping"}.get(
            result.outcome, "fatal" if result.outcome == Outcome.FAILED else "unreachable"
        )
        line = f"[{style}]{label}: \\[{escape(result.host)}][/{style}]"
        if result.attempts > 1:
            line += f" (attempts: {result.attempts})"
        if result.outcome.is_failure or self.verbose:
            if result.msg:
                line += f" => {escape(result.msg)}"
        if result.ignored:
            line += " [cyan]...ignoring[/cyan]"
        self.console.print(line)

        if self.show_diff and result.payload.get("diff"):
            self.console.print(escape(str(result.payload["diff"])).rstrip())

    def on_task_retry(self, host: str, task_name: str, attempt: int, max_attempts: int, error: str) -> None:
        self.console.print(
            f"[yellow]FAILED - RETRYING: \\[{escape(host)}]: {escape(task_name)} "
            f"({attempt}/{max_attempts}): {escape(error)}[/yellow]"
        )

    def on_play_complete(self, play_index: int, name: str, duration: float) -> None:
        self.console.print(f"[dim]play '{escape(name)}' finished in {duration:.2f}s[/dim]")


class NullProgressReporter(ProgressReporter):
    """No-op progress reporter that discards all events."""

    def on_play_start(self, play_index: int, name: str, hosts: list[str]) -> None:
        pass

    def on_task_start(self, host: str, task_index: int, task_name: str) -> None:
        pass

    def on_task_result(self, result: ExecutionResult) -> None:
        pass

    def on_task_retry(self, host: str, task_name: str, attempt: int, max_attempts: int, error: str) -> None:
        pass

    def on_play_complete(self, play_index: int, name: str, duration: float) -> None:
        pass


def create_progress_reporter(
    output_format: str = "text",
    enabled: bool = True,
    output: Any = None,
    show_diff: bool = False,
    verbose: bool = False,
) -> ProgressReporter:
    """Create a progress reporter.

    Args:
        output_format: "text" or "json"
        enabled: Whether progress reporting is enabled
        output: Output stream (defaults to sys.stderr)
        show_diff: Print diffs (text format)
        verbose: Print messages for every result (text format)

    Returns:
        ProgressReporter instance
    """
    if not enabled:
        return NullProgressReporter()
    if output_format == "json":
        return JsonProgressReporter(output)
    return TextProgressReporter(output, show_diff=show_diff, verbose=verbose)
