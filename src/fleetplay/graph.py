"""Task graph building.

Expands a play into one ordered task list per selected host. Everything
that does not need a connection is decided here, before any host is
touched: host selection, tag filtering, --start-at-task, `when`
conditions and rendering of module arguments against each host's
variables.

Tasks whose condition or arguments read run-time variables (results
stored with `register`, or `ansible_facts` from fact gathering) are marked
deferred and planned by the executor right before they run.
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Iterable, Mapping

from jinja2 import StrictUndefined, TemplateError, meta
from jinja2.nativetypes import NativeEnvironment

from .conditions import evaluate_conditions, referenced_names
from .exceptions import ConditionEvaluationError, PlaybookSyntaxError
from .host_filter import select_hosts
from .inventory import Inventory
from .playbook import Play, Task
from .types import Host

logger = logging.getLogger(__name__)

ALWAYS_TAG = "always"
MAGIC_VARS = ("inventory_hostname", "group_names", "groups")
FACTS_VAR = "ansible_facts"

_jinja = NativeEnvironment(undefined=StrictUndefined)


@dataclass
class PlannedTask:
    """A task as it will run on one host.

    Attributes:
        index: Task index within the host's results (unique per play and host)
        task: The declared task
        args: Module arguments rendered against the host's variables
        skip_reason: Why the task will be reported skipped, None if it runs
        render_error: Argument rendering failure, reported as a task failure
        deferred: Condition and arguments depend on run-time variables and
            are evaluated when the task is about to run
    """

    index: int
    task: Task
    args: dict[str, Any] = field(default_factory=dict)
    skip_reason: str | None = None
    render_error: str | None = None
    deferred: bool = False

    @property
    def skipped(self) -> bool:
        return self.skip_reason is not None


@dataclass
class TaskGraph:
    """Per-host task lists for one play.

    Attributes:
        play: The play this graph was built from
        play_index: Position of the play in the playbook
        hosts: Selected hosts in selector order, with play-level variables
        tasks: Host name to its ordered planned tasks
        handlers: Host name to its planned handlers, in declaration order
        selected: Tasks that survived tag and start-at filtering, in order
    """

    play: Play
    play_index: int = 0
    hosts: dict[str, Host] = field(default_factory=dict)
    tasks: dict[str, list[PlannedTask]] = field(default_factory=dict)
    handlers: dict[str, list[PlannedTask]] = field(default_factory=dict)
    selected: list[Task] = field(default_factory=list)

    @property
    def first_task_index(self) -> int:
        return 1 if self.play.gather_facts else 0

    def list_hosts(self) -> list[str]:
        return list(self.hosts)

    def list_tasks(self) -> list[Task]:
        return list(self.selected)

    def handler_offset(self) -> int:
        """Index of the first handler result, right after the regular tasks."""
        return self.first_task_index + len(self.play.tasks)


def _matches(effective: frozenset[str], selectors: set[str]) -> bool:
    if effective & selectors:
        return True
    if "all" in selectors:
        return True
    if "tagged" in selectors and effective:
        return True
    return "untagged" in selectors and not effective


def task_selected(
    task: Task,
    play_tags: frozenset[str],
    tags: Iterable[str] = (),
    skip_tags: Iterable[str] = (),
) -> bool:
    """Apply --tags/--skip-tags to a task.

    A task's effective tags are its own (role tags included) plus the
    play's. `always` tasks run unless `always` is explicitly skipped, and
    skip wins over include.

    Example:
        >>> task_selected(Task("t", "ping", tags=frozenset({"web"})), frozenset(), ["web"])
        True
    """
    include = set(tags)
    skip = set(skip_tags)
    effective = task.tags | play_tags
    if skip and (effective & skip or ("tagged" in skip and effective) or ("untagged" in skip and not effective)):
        return False
    if not include:
        return True
    return _matches(effective, include) or ALWAYS_TAG in effective


def render_value(value: Any, variables: Mapping[str, Any]) -> Any:
    """Render Jinja2 expressions in strings, recursing into lists and dicts.

    A string that is a single expression keeps its native type, so
    `"{{ http_port }}"` renders to an int when http_port is one.

    Raises:
        jinja2.TemplateError: On undefined variables or bad syntax
    """
    if isinstance(value, str):
        if "{{" not in value and "{%" not in value:
            return value
        return _jinja.from_string(value).render(**variables)
    if isinstance(value, list):
        return [render_value(v, variables) for v in value]
    if isinstance(value, dict):
        return {k: render_value(v, variables) for k, v in value.items()}
    return value


def host_variables(
    play: Play,
    host: Host,
    extra_vars: Mapping[str, Any] | None = None,
) -> dict[str, Any]:
    """Layer play-level variables over a host's inventory variables.

    Lowest to highest: role defaults, inventory variables, play vars,
    extra vars, then the magic variables which nothing overrides.
    """
    variables: dict[str, Any] = dict(play.role_defaults)
    variables.update(host.vars)
    variables.update(play.vars)
    variables.update(extra_vars or {})
    for name in MAGIC_VARS:
        if name in host.vars:
            variables[name] = host.vars[name]
    return variables


def runtime_names(plays: Iterable[Play]) -> set[str]:
    """Variables that only exist once tasks have run: registered results and facts."""
    names: set[str] = set()
    for play in plays:
        for task in [*play.tasks, *play.handlers]:
            if task.register:
                names.add(task.register)
        if play.gather_facts:
            names.add(FACTS_VAR)
    return names


def template_names(value: Any) -> set[str]:
    """Variable names referenced by the Jinja2 expressions in a value."""
    if isinstance(value, str):
        if "{{" not in value and "{%" not in value:
            return set()
        try:
            return set(meta.find_undeclared_variables(_jinja.parse(value)))
        except TemplateError:
            return set()
    if isinstance(value, list):
        return set().union(*(template_names(v) for v in value))
    if isinstance(value, dict):
        return set().union(*(template_names(v) for v in value.values()))
    return set()


def needs_runtime(task: Task, runtime: set[str]) -> bool:
    """Check if a task's condition or arguments read a run-time variable."""
    if not runtime:
        return False
    names = template_names(task.args)
    for condition in task.when:
        names |= referenced_names(condition)
    return bool(names & runtime)


def runtime_variables(host: Host, runtime: Mapping[str, Any]) -> dict[str, Any]:
    """Host variables with registered results and facts layered on top."""
    variables = dict(host.vars)
    variables.update(runtime)
    for name in MAGIC_VARS:
        if name in host.vars:
            variables[name] = host.vars[name]
    return variables


def _plan(task: Task, index: int, variables: Mapping[str, Any]) -> PlannedTask:
    planned = PlannedTask(index=index, task=task)
    if task.when and not evaluate_conditions(task.when, variables):
        planned.skip_reason = "Conditional result was False"
        return planned
    try:
        planned.args = render_value(task.args, variables)
    except TemplateError as e:
        planned.render_error = f"Error rendering arguments: {e}"
    return planned


def plan_deferred(item: PlannedTask, variables: Mapping[str, Any]) -> PlannedTask:
    """Plan a deferred task against the host's run-time variables.

    A condition that cannot be evaluated at this point fails the task on
    this host only; the other hosts are already running.
    """
    try:
        planned = _plan(item.task, item.index, variables)
    except ConditionEvaluationError as e:
        planned = PlannedTask(index=item.index, task=item.task, render_error=str(e))
    return replace(planned, deferred=False)


def build_task_graph(
    play: Play,
    inventory: Inventory,
    limit: str | None = None,
    tags: Iterable[str] = (),
    skip_tags: Iterable[str] = (),
    start_at_task: str | None = None,
    extra_vars: Mapping[str, Any] | None = None,
    play_index: int = 0,
    runtime: Iterable[str] | None = None,
) -> TaskGraph:
    """Expand a play into per-host ordered task lists.

    Args:
        play: Loaded play
        inventory: Inventory to select hosts from
        limit: Optional selector intersected with the play's hosts
        tags: Only run tasks carrying one of these tags
        skip_tags: Never run tasks carrying one of these tags
        start_at_task: Drop tasks before the first task with this name
        extra_vars: Run-time variables overriding everything else
        play_index: Position of the play, recorded in results
        runtime: Names of run-time variables (defaults to the play's own
            registered names and facts); tasks reading them are deferred

    Returns:
        TaskGraph for the play

    Raises:
        SelectorError: If the host selector cannot be resolved
        PlaybookSyntaxError: If start_at_task names no task in the play
        ConditionEvaluationError: If a `when` condition cannot be evaluated
    """
    extra = dict(extra_vars or {})
    runtime_vars = runtime_names([play]) if runtime is None else set(runtime)
    resolved = inventory.resolve(extra)
    selected_names = select_hosts(inventory, play.hosts, limit)

    start = 0
    if start_at_task is not None:
        names = [t.name for t in play.tasks]
        if start_at_task not in names:
            raise PlaybookSyntaxError(f"task '{start_at_task}' not found in play '{play.name}'")
        start = names.index(start_at_task)

    graph = TaskGraph(play=play, play_index=play_index)
    offset = graph.first_task_index
    positions = [
        (offset + i, task)
        for i, task in enumerate(play.tasks)
        if i >= start and task_selected(task, play.tags, tags, skip_tags)
    ]
    graph.selected = [task for _, task in positions]
    handler_offset = graph.handler_offset()

    def plan(task: Task, index: int, variables: Mapping[str, Any]) -> PlannedTask:
        if needs_runtime(task, runtime_vars):
            return PlannedTask(index=index, task=task, deferred=True)
        return _plan(task, index, variables)

    for name in selected_names:
        base = resolved[name]
        variables = host_variables(play, base, extra)
        host = Host(
            name=base.name,
            address=base.address,
            port=base.port,
            user=base.user,
            connection=base.connection,
            groups=base.groups,
            vars=variables,
        )
        graph.hosts[name] = host
        graph.tasks[name] = [plan(task, index, variables) for index, task in positions]
        graph.handlers[name] = [
            plan(handler, handler_offset + i, variables) for i, handler in enumerate(play.handlers)
        ]

    logger.debug(
        f"Built graph for play '{play.name}': {len(graph.hosts)} host(s), "
        f"{len(graph.selected)} task(s)"
    )
    return graph


def build_run_graphs(
    plays: list[Play],
    inventory: Inventory,
    limit: str | None = None,
    tags: Iterable[str] = (),
    skip_tags: Iterable[str] = (),
    start_at_task: str | None = None,
    extra_vars: Mapping[str, Any] | None = None,
) -> list[TaskGraph]:
    """Build graphs for every play of a playbook.

    With start_at_task, plays before the first play containing that task
    are left out and only that play is trimmed.

    Raises:
        PlaybookSyntaxError: If start_at_task names no task in any play
    """
    first = 0
    if start_at_task is not None:
        for i, play in enumerate(plays):
            if any(t.name == start_at_task for t in play.tasks):
                first = i
                break
        else:
            raise PlaybookSyntaxError(f"task '{start_at_task}' not found in any play")

    # registered results and facts carry over into later plays
    runtime = runtime_names(plays)
    graphs = []
    for i, play in enumerate(plays):
        if i < first:
            continue
        graphs.append(
            build_task_graph(
                play,
                inventory,
                limit=limit,
                tags=tags,
                skip_tags=skip_tags,
                start_at_task=start_at_task if i == first else None,
                extra_vars=extra_vars,
                play_index=i,
                runtime=runtime,
            )
        )
    return graphs
