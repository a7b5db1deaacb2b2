"""Run results and their rendering.

RunReport is the single place results are written to. Host workers record
into it concurrently; each (play, host, task index) key is written exactly
once and entries are never modified after being recorded.
"""

import json
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Iterable

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .exceptions import DuplicateResultError
from .graph import TaskGraph
from .progress import OUTCOME_STYLES
from .types import ExecutionResult, HostStatus, Outcome

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 2
EXIT_UNREACHABLE = 3
EXIT_SYNTAX_ERROR = 4
EXIT_BAD_OPTIONS = 5
EXIT_INTERRUPTED = 99


@dataclass
class HostStats:
    """Per-host outcome counts.

    Failures and unreachables flagged as ignored are counted under
    `ignored` only, so they do not fail the run.
    """

    ok: int = 0
    changed: int = 0
    failed: int = 0
    skipped: int = 0
    unreachable: int = 0
    ignored: int = 0

    def record(self, result: ExecutionResult) -> None:
        if result.ignored and result.outcome.is_failure:
            self.ignored += 1
            return
        if result.outcome == Outcome.OK:
            self.ok += 1
        elif result.outcome == Outcome.CHANGED:
            self.changed += 1
        elif result.outcome == Outcome.FAILED:
            self.failed += 1
        elif result.outcome == Outcome.SKIPPED:
            self.skipped += 1
        elif result.outcome == Outcome.UNREACHABLE:
            self.unreachable += 1

    def merge(self, other: "HostStats") -> None:
        self.ok += other.ok
        self.changed += other.changed
        self.failed += other.failed
        self.skipped += other.skipped
        self.unreachable += other.unreachable
        self.ignored += other.ignored

    def to_dict(self) -> dict[str, int]:
        """Convert to dictionary for JSON serialization."""
        return {
            "ok": self.ok,
            "changed": self.changed,
            "failed": self.failed,
            "skipped": self.skipped,
            "unreachable": self.unreachable,
            "ignored": self.ignored,
        }


class RunReport:
    """Append-only log of results for one run.

    Safe to record into from any worker: writes are serialized by a lock.

    Attributes:
        dry_run: The run was in check mode, changes are predictions
        interrupted: The run was stopped before it finished

    Example:
        >>> report = RunReport()
        >>> report.record(ExecutionResult(0, "web01", 0, "ping", Outcome.OK))
        >>> report.exit_code()
        0
    """

    def __init__(self, dry_run: bool = False) -> None:
        self.dry_run = dry_run
        self.interrupted = False
        self.started_at = time.time()
        self.finished_at: float | None = None
        self.plays: dict[int, str] = {}
        self._lock = threading.Lock()
        self._results: list[ExecutionResult] = []
        self._keys: set[tuple[int, str, int]] = set()
        self._host_status: dict[tuple[int, str], HostStatus] = {}

    def record(self, result: ExecutionResult) -> None:
        """Append a result.

        Raises:
            DuplicateResultError: If a result with the same key exists
        """
        with self._lock:
            if result.key in self._keys:
                raise DuplicateResultError(
                    f"Result already recorded for play {result.play_index}, "
                    f"host {result.host}, task {result.task_index}"
                )
            self._keys.add(result.key)
            self._results.append(result)
        logger.debug(f"Recorded {result.outcome.value} for {result.host} task {result.task_index}")

    def start_play(self, play_index: int, name: str) -> None:
        with self._lock:
            self.plays[play_index] = name

    def set_host_status(self, play_index: int, host: str, status: HostStatus) -> None:
        with self._lock:
            self._host_status[(play_index, host)] = status

    def host_status(self, play_index: int, host: str) -> HostStatus | None:
        with self._lock:
            return self._host_status.get((play_index, host))

    def mark_interrupted(self) -> None:
        self.interrupted = True

    def finish(self) -> None:
        self.finished_at = time.time()

    @property
    def duration(self) -> float:
        return (self.finished_at or time.time()) - self.started_at

    @property
    def results(self) -> list[ExecutionResult]:
        """Snapshot of all results in recording order."""
        with self._lock:
            return list(self._results)

    def results_for(self, host: str, play_index: int | None = None) -> list[ExecutionResult]:
        """Results of one host, ordered by play and task index."""
        selected = [
            r for r in self.results
            if r.host == host and (play_index is None or r.play_index == play_index)
        ]
        return sorted(selected, key=lambda r: (r.play_index, r.task_index))

    def get(self, play_index: int, host: str, task_index: int) -> ExecutionResult | None:
        for result in self.results:
            if result.key == (play_index, host, task_index):
                return result
        return None

    def hosts(self) -> list[str]:
        """Host names in order of their first result."""
        seen: dict[str, None] = {}
        for result in self.results:
            seen.setdefault(result.host)
        return list(seen)

    def host_stats(self) -> dict[str, HostStats]:
        stats: dict[str, HostStats] = {}
        for result in self.results:
            stats.setdefault(result.host, HostStats()).record(result)
        return stats

    def failed_hosts(self) -> list[str]:
        return self._hosts_with(Outcome.FAILED, HostStatus.FAILED)

    def unreachable_hosts(self) -> list[str]:
        return self._hosts_with(Outcome.UNREACHABLE, HostStatus.UNREACHABLE)

    def _hosts_with(self, outcome: Outcome, status: HostStatus) -> list[str]:
        """Hosts with an unignored result of this outcome, or that ended a play in this status."""
        hosts: dict[str, None] = {}
        for result in self.results:
            if result.outcome == outcome and not result.ignored:
                hosts.setdefault(result.host)
        with self._lock:
            for (_, host), host_status in self._host_status.items():
                if host_status == status:
                    hosts.setdefault(host)
        return list(hosts)

    def exit_code(self) -> int:
        """Process exit status for the run.

        99 if interrupted, 2 if any host failed, 3 if any host was
        unreachable (and none failed), otherwise 0. Ignored failures do not
        count.
        """
        if self.interrupted:
            return EXIT_INTERRUPTED
        if self.failed_hosts():
            return EXIT_FAILED
        if self.unreachable_hosts():
            return EXIT_UNREACHABLE
        return EXIT_OK

    def summary(self) -> dict[str, Any]:
        totals = HostStats()
        for stats in self.host_stats().values():
            totals.merge(stats)
        return {
            "hosts": len(self.hosts()),
            "tasks": len(self.results),
            **totals.to_dict(),
            "failed_hosts": self.failed_hosts(),
            "unreachable_hosts": self.unreachable_hosts(),
            "dry_run": self.dry_run,
            "interrupted": self.interrupted,
            "exit_code": self.exit_code(),
            "duration": round(self.duration, 3),
        }

    def summary_line(self) -> str:
        """One line overview, phrased as a prediction in check mode."""
        s = self.summary()
        changed = f"{s['changed']} would change" if self.dry_run else f"{s['changed']} changed"
        line = (
            f"{s['hosts']} host(s): {s['ok']} ok, {changed}, {s['failed']} failed, "
            f"{s['unreachable']} unreachable, {s['skipped']} skipped, {s['ignored']} ignored"
        )
        if self.interrupted:
            line += " (interrupted)"
        return line

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "plays": [{"index": i, "name": n} for i, n in sorted(self.plays.items())],
            "results": [
                r.to_dict() for r in sorted(self.results, key=lambda r: (r.play_index, r.host, r.task_index))
            ],
            "stats": {host: stats.to_dict() for host, stats in self.host_stats().items()},
            "summary": self.summary(),
        }

    def to_json(self, indent: int | None = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent, default=str)

    def render_recap(self, console: Console) -> None:
        """Print the PLAY RECAP table."""
        table = Table(title="PLAY RECAP", title_justify="left", show_edge=False)
        table.add_column("host")
        table.add_column("ok", justify="right", style="green")
        table.add_column("would change" if self.dry_run else "changed", justify="right", style="yellow")
        table.add_column("unreachable", justify="right")
        table.add_column("failed", justify="right")
        table.add_column("skipped", justify="right", style="cyan")
        table.add_column("ignored", justify="right")

        for host, stats in self.host_stats().items():
            style = "red" if stats.failed or stats.unreachable else ("yellow" if stats.changed else "green")
            table.add_row(
                f"[{style}]{escape(host)}[/{style}]",
                str(stats.ok),
                str(stats.changed),
                f"[bold red]{stats.unreachable}[/bold red]" if stats.unreachable else "0",
                f"[red]{stats.failed}[/red]" if stats.failed else "0",
                str(stats.skipped),
                str(stats.ignored),
            )
        console.print()
        console.print(table)
        console.print(self.summary_line())

    def render_listing(self, console: Console) -> None:
        """Print every result, one row per host and task."""
        table = Table(show_edge=False)
        for column in ("play", "host", "#", "task", "outcome", "message"):
            table.add_column(column)
        for r in sorted(self.results, key=lambda r: (r.play_index, r.host, r.task_index)):
            style = OUTCOME_STYLES[r.outcome]
            outcome = r.outcome.value + (" (ignored)" if r.ignored else "")
            table.add_row(
                escape(self.plays.get(r.play_index, str(r.play_index))),
                escape(r.host),
                str(r.task_index),
                escape(("HANDLER: " if r.is_handler else "") + r.task_name),
                f"[{style}]{outcome}[/{style}]",
                escape(r.msg),
            )
        console.print(table)


def task_listing(graphs: Iterable[TaskGraph]) -> list[dict[str, Any]]:
    """Describe the tasks each play would run, for --list-tasks.

    `tasks` lists the play's selected tasks once; `host_tasks` gives each
    host's own planned list, with the tasks its `when` conditions skip
    marked by their skip reason.
    """
    listing = []
    for graph in graphs:
        listing.append({
            "play": graph.play.name,
            "hosts": graph.play.hosts,
            "tasks": [
                {"name": task.name, "module": task.module, "tags": sorted(task.tags | graph.play.tags)}
                for task in graph.list_tasks()
            ],
            "host_tasks": {
                host: [
                    {
                        "index": item.index,
                        "name": item.task.name,
                        "skip_reason": item.skip_reason,
                        "deferred": item.deferred,
                    }
                    for item in graph.tasks[host]
                ]
                for host in graph.list_hosts()
            },
        })
    return listing


def host_listing(graphs: Iterable[TaskGraph]) -> list[dict[str, Any]]:
    """Describe the hosts each play targets, for --list-hosts."""
    return [
        {"play": graph.play.name, "pattern": graph.play.hosts, "hosts": graph.list_hosts()}
        for graph in graphs
    ]


def render_task_listing(console: Console, graphs: Iterable[TaskGraph]) -> None:
    for play in task_listing(graphs):
        console.print(f"\nplay: [bold]{escape(play['play'])}[/bold] ({escape(play['hosts'])})")
        for task in play["tasks"]:
            tags = f"  TAGS: \\[{escape(', '.join(task['tags']))}]" if task["tags"] else ""
            console.print(f"  {escape(task['name'])}{tags}")
        for host, tasks in play["host_tasks"].items():
            console.print(f"  host: {escape(host)}")
            for task in tasks:
                if task["skip_reason"]:
                    note = f" [dim](skipped: {escape(task['skip_reason'])})[/dim]"
                elif task["deferred"]:
                    note = " [dim](evaluated at run time)[/dim]"
                else:
                    note = ""
                console.print(f"    {escape(task['name'])}{note}")


def render_host_listing(console: Console, graphs: Iterable[TaskGraph]) -> None:
    for play in host_listing(graphs):
        console.print(f"\nplay: [bold]{escape(play['play'])}[/bold] ({escape(play['pattern'])})")
        console.print(f"  pattern: {escape(play['pattern'])}  hosts ({len(play['hosts'])}):")
        for host in play["hosts"]:
            console.print(f"    {host}")
