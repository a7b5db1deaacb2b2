"""Play execution for fleetplay.

Runs task graphs across hosts: hosts concurrently (at most `forks` at a
time), tasks within a host strictly in order. Every per-host error is
turned into a recorded result; nothing raised while running one host can
stop another.

Host lifecycle within a play:

    pending -> running -> completed | failed | unreachable | stopped
"""

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable

from .applier import apply_task
from .config import Settings
from .connections import Connection, ConnectionFactory
from .exceptions import ApplyError, UnreachableError
from .graph import FACTS_VAR, PlannedTask, TaskGraph, plan_deferred, runtime_variables
from .handlers import NotificationQueue
from .logging import StructuredLogger, get_logger, log_performance
from .modules import ModuleContext, get_module
from .playbook import Task
from .progress import NullProgressReporter, ProgressReporter
from .report import RunReport
from .retry import RetryConfig, RetryState, retry_with_backoff
from .types import ExecutionResult, Host, HostStatus, Outcome

logger = logging.getLogger(__name__)

# Answers accepted from a step-mode confirm callback.
STEP_YES = "yes"
STEP_NO = "no"
STEP_CONTINUE = "continue"

ConfirmCallback = Callable[[Host, Task], Awaitable[str]]

FACTS_TASK = Task(name="Gathering Facts", module="setup")


def registered_value(result: ExecutionResult) -> dict[str, Any]:
    """Shape a result the way `register` exposes it to later tasks.

    Example:
        >>> when: "not echo_out.failed and echo_out.rc == 0"
    """
    value = dict(result.payload)
    value.update(
        changed=result.outcome == Outcome.CHANGED,
        failed=result.outcome == Outcome.FAILED,
        skipped=result.outcome == Outcome.SKIPPED,
        unreachable=result.outcome == Outcome.UNREACHABLE,
        outcome=result.outcome.value,
        attempts=result.attempts,
    )
    return value


@dataclass
class HostRun:
    """State of one host within one play.

    `current` is the task the host is working on, used to record a result
    if the host's worker dies mid-task.
    """

    name: str
    status: HostStatus = HostStatus.PENDING
    current: PlannedTask | None = None
    current_is_handler: bool = False

    def transition(self, status: HostStatus) -> None:
        if self.status.is_terminal:
            raise RuntimeError(f"Host {self.name} is already {self.status.value}")
        self.status = status


class PlayExecutor:
    """Executes plays across hosts with bounded concurrency.

    Args:
        forks: Maximum number of hosts running at the same time
        check_mode: Predict changes without applying them
        diff: Include before/after diffs in results
        step: Ask `confirm` before every task
        confirm: Coroutine answering "yes", "no" or "continue" for a task
        stop_event: When set, hosts stop after their current task and no
            new hosts start
        reporter: Progress callbacks
        connection_factory: Creates connections by host connection kind
        settings: Run settings (retry delay, timeouts)

    Example:
        >>> executor = PlayExecutor(forks=10, check_mode=True)
        >>> report = await executor.run(graphs)
        >>> report.exit_code()
        0
    """

    def __init__(
        self,
        forks: int = 5,
        check_mode: bool = False,
        diff: bool = False,
        step: bool = False,
        confirm: ConfirmCallback | None = None,
        stop_event: asyncio.Event | None = None,
        reporter: ProgressReporter | None = None,
        connection_factory: ConnectionFactory | None = None,
        settings: Settings | None = None,
        report: RunReport | None = None,
    ) -> None:
        if forks < 1:
            raise ValueError(f"forks must be at least 1, got {forks}")
        self.settings = settings or Settings()
        self.forks = forks
        self.check_mode = check_mode
        self.diff = diff
        self.step = step
        self.confirm = confirm
        self.stop_event = stop_event or asyncio.Event()
        self.reporter = reporter or NullProgressReporter()
        self.connection_factory = connection_factory or ConnectionFactory(self.settings)
        self.report = report or RunReport(dry_run=check_mode)
        # host name -> registered results and facts, kept across plays
        self.runtime_vars: dict[str, dict[str, Any]] = {}
        self._connections: dict[str, Connection] = {}
        self._excluded: set[str] = set()
        self._step_lock = asyncio.Lock()
        self._log = get_logger(__name__)

    @property
    def excluded_hosts(self) -> set[str]:
        """Hosts that failed or became unreachable in an earlier play."""
        return set(self._excluded)

    async def run(self, graphs: list[TaskGraph]) -> RunReport:
        """Run the plays' graphs in order and return the report.

        Hosts that end a play failed or unreachable are left out of the
        following plays. Connections are closed when the run ends, however
        it ends.
        """
        try:
            for graph in graphs:
                if self.stop_event.is_set():
                    break
                await self.run_play(graph.play_index, graph)
        finally:
            await self.close()
            if self.stop_event.is_set():
                self.report.mark_interrupted()
            self.report.finish()
        return self.report

    async def run_play(self, play_index: int, graph: TaskGraph) -> dict[str, HostStatus]:
        """Run one play's graph on all its hosts.

        Returns:
            Final status of every host that took part
        """
        play = graph.play
        hosts = [h for h in graph.list_hosts() if h not in self._excluded]
        left_out = [h for h in graph.list_hosts() if h in self._excluded]
        if left_out:
            logger.info(f"Play '{play.name}': skipping hosts that failed earlier: {', '.join(left_out)}")

        self.report.start_play(play_index, play.name)
        self.reporter.on_play_start(play_index, play.name, hosts)
        runs = {name: HostRun(name) for name in hosts}
        semaphore = asyncio.Semaphore(self.forks)
        start = time.perf_counter()

        async def worker(name: str) -> None:
            async with semaphore:
                if self.stop_event.is_set():
                    runs[name].transition(HostStatus.STOPPED)
                    return
                await self._run_host(play_index, graph, runs[name])

        with log_performance(logger, f"Play '{play.name}'", hosts=len(hosts)):
            outcomes = await asyncio.gather(*(worker(name) for name in hosts), return_exceptions=True)

        for name, outcome in zip(hosts, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(f"Host worker for {name} crashed", exc_info=outcome)
                self._record_crash(play_index, graph.hosts[name], runs[name], outcome)
                if not runs[name].status.is_terminal:
                    runs[name].transition(HostStatus.FAILED)

        for name, run in runs.items():
            if run.status in (HostStatus.FAILED, HostStatus.UNREACHABLE):
                self._excluded.add(name)
            self.report.set_host_status(play_index, name, run.status)

        if self.stop_event.is_set():
            self.report.mark_interrupted()
        self.reporter.on_play_complete(play_index, play.name, time.perf_counter() - start)
        return {name: run.status for name, run in runs.items()}

    async def _run_host(self, play_index: int, graph: TaskGraph, run: HostRun) -> None:
        host = graph.hosts[run.name]
        log = self._log.bind(host=host.name, play=graph.play.name)
        run.transition(HostStatus.RUNNING)
        log.debug("Starting host")

        planned = list(graph.tasks[run.name])
        if graph.play.gather_facts:
            planned.insert(0, PlannedTask(index=0, task=FACTS_TASK))

        queue = NotificationQueue(graph.play.handlers)
        for position, item in enumerate(planned):
            if self.stop_event.is_set():
                log.info("Stop requested, halting host")
                run.transition(HostStatus.STOPPED)
                break
            run.current, run.current_is_handler = item, False
            result = await self._execute(play_index, host, item)
            if result.outcome == Outcome.CHANGED and item.task.notify:
                queue.notify(item.task.notify)
            if result.counts_as_failure:
                if result.outcome == Outcome.UNREACHABLE:
                    self._record_unreachable_rest(play_index, host, planned[position + 1:], result.msg)
                    run.transition(HostStatus.UNREACHABLE)
                else:
                    run.transition(HostStatus.FAILED)
                break

        if run.status == HostStatus.RUNNING and len(queue):
            await self._run_handlers(play_index, graph, host, queue, run)

        if run.status == HostStatus.RUNNING:
            run.transition(HostStatus.COMPLETED)
        log.debug(f"Host finished: {run.status.value}")

    async def _run_handlers(
        self,
        play_index: int,
        graph: TaskGraph,
        host: Host,
        queue: NotificationQueue,
        run: HostRun,
    ) -> None:
        """Run notified handlers in declaration order, each at most once.

        A handler that changes something may notify further handlers.
        """
        planned = graph.handlers[host.name]
        done: set[int] = set()
        while True:
            remaining = [p for p in queue.positions() if p not in done]
            if not remaining:
                return
            position = remaining[0]
            done.add(position)
            if self.stop_event.is_set():
                run.transition(HostStatus.STOPPED)
                return
            item = planned[position]
            run.current, run.current_is_handler = item, True
            result = await self._execute(play_index, host, item, is_handler=True)
            if result.outcome == Outcome.CHANGED and item.task.notify:
                queue.notify(item.task.notify)
            if result.counts_as_failure:
                if result.outcome == Outcome.UNREACHABLE:
                    rest = [planned[p] for p in queue.positions() if p not in done]
                    self._record_unreachable_rest(play_index, host, rest, result.msg, is_handler=True)
                    run.transition(HostStatus.UNREACHABLE)
                else:
                    run.transition(HostStatus.FAILED)
                return

    def _record_unreachable_rest(
        self,
        play_index: int,
        host: Host,
        rest: list[PlannedTask],
        reason: str,
        is_handler: bool = False,
    ) -> None:
        for item in rest:
            self._record(ExecutionResult(
                play_index=play_index,
                host=host.name,
                task_index=item.index,
                task_name=item.task.name,
                outcome=Outcome.UNREACHABLE,
                payload={"msg": f"not attempted, host unreachable: {reason}"},
                is_handler=is_handler,
                module=item.task.module,
            ))

    def _record_crash(self, play_index: int, host: Host, run: HostRun, error: BaseException) -> None:
        """Record a failure for the task a crashed worker was running."""
        item = run.current
        if item is None or self.report.get(play_index, host.name, item.index) is not None:
            return
        self._record(ExecutionResult(
            play_index=play_index,
            host=host.name,
            task_index=item.index,
            task_name=item.task.name,
            outcome=Outcome.FAILED,
            payload={
                "msg": f"Host worker crashed: {error}",
                "exception": type(error).__name__,
                "target_state": "unknown",
            },
            is_handler=run.current_is_handler,
            module=item.task.module,
        ))

    async def _execute(
        self,
        play_index: int,
        host: Host,
        item: PlannedTask,
        is_handler: bool = False,
    ) -> ExecutionResult:
        """Run one planned task on one host and record its result."""
        task = item.task
        log = self._log.bind(host=host.name, task=task.name)
        self.reporter.on_task_start(host.name, item.index, task.name)
        runtime = self.runtime_vars.setdefault(host.name, {})
        if item.deferred:
            item = plan_deferred(item, runtime_variables(host, runtime))

        outcome, payload, ignored, attempts = await self._outcome(host, item, log)
        result = ExecutionResult(
            play_index=play_index,
            host=host.name,
            task_index=item.index,
            task_name=task.name,
            outcome=outcome,
            payload=payload,
            ignored=ignored,
            attempts=attempts,
            is_handler=is_handler,
            module=task.module,
        )
        self._record(result)
        if task.register:
            runtime[task.register] = registered_value(result)
        if task.module == "setup" and "facts" in payload and not result.counts_as_failure:
            runtime[FACTS_VAR] = payload["facts"]
        log.debug(f"Task {outcome.value}")
        return result

    async def _outcome(self, host: Host, item: PlannedTask, log: StructuredLogger) -> tuple[Outcome, dict[str, Any], bool, int]:
        task = item.task
        if item.skip_reason is not None:
            return Outcome.SKIPPED, {"msg": item.skip_reason, "skip_reason": item.skip_reason}, False, 1
        if item.render_error is not None:
            return (
                Outcome.FAILED,
                {"msg": item.render_error, "target_state": "unchanged"},
                task.ignore_errors,
                1,
            )
        try:
            confirmed = await self._confirm_step(host, task)
        except Exception as e:
            log.error(f"Step confirmation failed: {e}")
            payload = {"msg": f"Step confirmation failed: {e}", "target_state": "unchanged", "exception": type(e).__name__}
            return Outcome.FAILED, payload, task.ignore_errors, 1
        if not confirmed:
            return Outcome.SKIPPED, {"msg": "skipped by user", "skip_reason": "skipped by user"}, False, 1

        module = get_module(task.module)
        runtime = self.runtime_vars.get(host.name)
        ctx = ModuleContext(
            host=replace(host, vars=runtime_variables(host, runtime)) if runtime else host,
            check_mode=self.check_mode,
            diff=self.diff,
            search_paths=list(task.search_paths),
        )
        config = RetryConfig(
            retries=task.retries,
            delay=self.settings.retry_delay if task.delay is None else task.delay,
        )
        state = RetryState()

        async def attempt() -> Any:
            conn = await self._connection(host) if module.needs_connection else None
            return await apply_task(conn, module, item.args, ctx)

        def on_retry(attempt_number: int, error: str, delay: float) -> None:
            self.reporter.on_task_retry(host.name, task.name, attempt_number, config.max_attempts, error)

        try:
            applied = await retry_with_backoff(
                attempt,
                config,
                state,
                description=f"{task.name} on {host.name}",
                stop_event=self.stop_event,
                on_retry=on_retry,
            )
        except UnreachableError as e:
            log.warning(f"Unreachable: {e.reason}")
            return Outcome.UNREACHABLE, dict(e.payload), task.ignore_unreachable, max(state.attempts, 1)
        except ApplyError as e:
            log.info(f"Failed: {e.msg}")
            return Outcome.FAILED, dict(e.payload), task.ignore_errors, max(state.attempts, 1)
        except Exception as e:
            log.exception(f"Unexpected error: {e}")
            payload = {"msg": f"Unexpected error: {e}", "target_state": "unknown", "exception": type(e).__name__}
            return Outcome.FAILED, payload, task.ignore_errors, max(state.attempts, 1)
        return applied.outcome, applied.payload, False, state.attempts

    async def _confirm_step(self, host: Host, task: Task) -> bool:
        """Ask whether to run a task in step mode; prompts never overlap."""
        if not self.step or self.confirm is None:
            return True
        async with self._step_lock:
            if not self.step:
                return True
            answer = (await self.confirm(host, task)).strip().lower()
        if answer in (STEP_CONTINUE, "c"):
            self.step = False
            return True
        return answer not in (STEP_NO, "n")

    async def _connection(self, host: Host) -> Connection:
        """Open the host's connection on first use and reuse it afterwards.

        Raises:
            UnreachableError: If the connection cannot be opened
        """
        conn = self._connections.get(host.name)
        if conn is not None:
            return conn
        conn = self.connection_factory.create(host)
        try:
            await conn.connect()
        except UnreachableError:
            raise
        except (OSError, asyncio.TimeoutError) as e:
            raise UnreachableError(host.name, str(e) or type(e).__name__)
        self._connections[host.name] = conn
        return conn

    def _record(self, result: ExecutionResult) -> None:
        self.report.record(result)
        self.reporter.on_task_result(result)

    async def close(self) -> None:
        """Close every connection opened during the run."""
        connections = list(self._connections.items())
        self._connections.clear()
        outcomes = await asyncio.gather(*(conn.close() for _, conn in connections), return_exceptions=True)
        for (name, _), outcome in zip(connections, outcomes):
            if isinstance(outcome, BaseException):
                logger.warning(f"Error closing connection to {name}: {outcome}")
