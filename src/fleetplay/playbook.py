"""Playbook loading for fleetplay.

A playbook is a YAML list of plays:

    - name: Configure web tier
      hosts: nginx
      vars:
        http_port: 8080
      roles:
        - common
      tasks:
        - name: Install site config
          template: src=site.conf.j2 dest=/etc/nginx/conf.d/site.conf
          notify: reload nginx
      handlers:
        - name: reload nginx
          service: name=nginx state=reloaded

Every structural problem is reported as PlaybookSyntaxError naming the file,
play and task it was found in, before any host is contacted.
"""

import logging
import re
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .conditions import validate_condition
from .exceptions import ConditionEvaluationError, PlaybookSyntaxError
from .inventory import parse_value
from .modules import get_module, has_module

logger = logging.getLogger(__name__)

PLAY_KEYS = {
    "name",
    "hosts",
    "vars",
    "tags",
    "roles",
    "pre_tasks",
    "tasks",
    "post_tasks",
    "handlers",
    "gather_facts",
}

TASK_KEYWORDS = {
    "name",
    "action",
    "args",
    "tags",
    "when",
    "notify",
    "retries",
    "delay",
    "ignore_errors",
    "ignore_unreachable",
    "register",
}

HANDLER_KEYWORDS = TASK_KEYWORDS | {"listen"}

ROLE_KEYS = {"role", "name", "tags"}


@dataclass
class Task:
    """A single declared task.

    Attributes:
        name: Display name (defaults to the module name)
        module: Registered module name
        args: Module arguments, still unrendered
        tags: Tags declared on the task, plus inherited role tags
        when: Conditions that must all hold for the task to run
        notify: Handler names or listen topics to notify on change
        retries: Extra attempts after a failure
        delay: Seconds between attempts (None for the configured default)
        ignore_errors: Record failures as ignored and keep going
        ignore_unreachable: Record unreachable as ignored and keep going
        register: Variable name the result is stored under
        role: Role the task came from, if any
        search_paths: Local directories for relative copy/template sources
        location: Where the task was declared, for error messages
    """

    name: str
    module: str
    args: dict[str, Any] = field(default_factory=dict)
    tags: frozenset[str] = frozenset()
    when: list[Any] = field(default_factory=list)
    notify: list[str] = field(default_factory=list)
    retries: int = 0
    delay: float | None = None
    ignore_errors: bool = False
    ignore_unreachable: bool = False
    register: str | None = None
    role: str | None = None
    search_paths: list[Path] = field(default_factory=list)
    location: str = ""


@dataclass
class Handler(Task):
    """A task that only runs when notified, by name or by a listen topic."""

    listen: list[str] = field(default_factory=list)

    def answers_to(self, topic: str) -> bool:
        return topic == self.name or topic in self.listen


@dataclass
class Play:
    """A play: a host selector and the tasks to run on those hosts.

    `tasks` is the flattened run order: pre_tasks, role tasks (in role
    order), tasks, post_tasks. `handlers` holds role handlers followed by
    the play's own, in declaration order.
    """

    name: str
    hosts: str
    vars: dict[str, Any] = field(default_factory=dict)
    tags: frozenset[str] = frozenset()
    tasks: list[Task] = field(default_factory=list)
    handlers: list[Handler] = field(default_factory=list)
    gather_facts: bool = False
    role_defaults: dict[str, Any] = field(default_factory=dict)
    roles: list[str] = field(default_factory=list)

    def handlers_for(self, topic: str) -> list[Handler]:
        return [h for h in self.handlers if h.answers_to(topic)]


def parse_key_values(text: str, location: str = "") -> dict[str, Any]:
    """Parse `key=value key2="value 2"` into a dict with YAML-typed values.

    Raises:
        PlaybookSyntaxError: If a token is not key=value or quoting is broken
    """
    try:
        tokens = shlex.split(text)
    except ValueError as e:
        raise PlaybookSyntaxError(f"cannot parse arguments '{text}': {e}", location)
    result: dict[str, Any] = {}
    for token in tokens:
        key, sep, value = token.partition("=")
        if not sep or not key:
            raise PlaybookSyntaxError(f"expected key=value, got '{token}'", location)
        result[key] = parse_value(value)
    return result


def _split_free_form(text: str, known: set[str]) -> dict[str, Any]:
    """Pull known `key=value` options out of a free-form command line."""
    args: dict[str, Any] = {}
    pattern = re.compile(
        r"(?:^|\s)(?P<key>" + "|".join(re.escape(k) for k in sorted(known)) + r")="
        r"(?P<value>\"[^\"]*\"|'[^']*'|\S+)"
    )

    def take(match: re.Match) -> str:
        value = match.group("value")
        if value[:1] in ("'", '"'):
            value = value[1:-1]
        args[match.group("key")] = parse_value(value)
        return " "

    raw = pattern.sub(take, text).strip() if known else text.strip()
    if raw:
        args["_raw_params"] = raw
    return args


def parse_module_args(module_name: str, value: Any, location: str) -> dict[str, Any]:
    """Normalize a task's module arguments to a dict.

    Accepts a mapping, None, or a string. Strings are `key=value` pairs,
    except for modules taking a free-form argument (command, shell, debug,
    fail) where the text that is not a known option becomes `_raw_params`.
    """
    if value is None:
        return {}
    if isinstance(value, dict):
        return dict(value)
    if not isinstance(value, (str, int, float)):
        raise PlaybookSyntaxError(f"arguments for {module_name} must be a mapping or a string", location)

    module = get_module(module_name)
    text = str(value)
    if module.free_form:
        return _split_free_form(text, set(module.parameters) - {module.free_form})
    return parse_key_values(text, location)


def _as_list(value: Any, what: str, location: str) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    if isinstance(value, (str, bool, int, float)):
        return [value]
    raise PlaybookSyntaxError(f"{what} must be a string or a list", location)


def _as_tags(value: Any, location: str) -> frozenset[str]:
    tags: set[str] = set()
    for item in _as_list(value, "tags", location):
        tags.update(t.strip() for t in str(item).split(",") if t.strip())
    return frozenset(tags)


def _as_bool(value: Any, what: str, location: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in ("yes", "true", "no", "false"):
        return value.lower() in ("yes", "true")
    raise PlaybookSyntaxError(f"{what} must be a boolean, got {value!r}", location)


def _as_number(value: Any, what: str, location: str, integer: bool = False) -> Any:
    try:
        number = int(value) if integer else float(value)
    except (TypeError, ValueError):
        raise PlaybookSyntaxError(f"{what} must be a number, got {value!r}", location)
    if number < 0:
        raise PlaybookSyntaxError(f"{what} cannot be negative", location)
    return number


def parse_task(
    data: Any,
    location: str,
    search_paths: list[Path],
    role: str | None = None,
    inherited_tags: frozenset[str] = frozenset(),
    handler: bool = False,
) -> Task:
    """Build a Task (or Handler) from its YAML mapping.

    Raises:
        PlaybookSyntaxError: For unknown keys/modules or invalid values
    """
    if not isinstance(data, dict):
        raise PlaybookSyntaxError("task must be a mapping", location)
    if data.get("name"):
        location = f"{location} ({data['name']})"

    keywords = HANDLER_KEYWORDS if handler else TASK_KEYWORDS
    candidates = [k for k in data if k not in keywords]

    if "action" in data:
        if candidates:
            raise PlaybookSyntaxError(f"action conflicts with module key '{candidates[0]}'", location)
        action = data["action"]
        if isinstance(action, dict):
            action = dict(action)
            module_name = action.pop("module", None)
            raw_args: Any = action
        elif isinstance(action, str) and action.strip():
            module_name, _, raw_args = action.strip().partition(" ")
        else:
            raise PlaybookSyntaxError("action must be a string or a mapping", location)
        if not module_name:
            raise PlaybookSyntaxError("action does not name a module", location)
    else:
        if not candidates:
            raise PlaybookSyntaxError("task has no module", location)
        unknown = [k for k in candidates if not has_module(str(k))]
        if unknown:
            raise PlaybookSyntaxError(f"unknown module or task keyword '{unknown[0]}'", location)
        if len(candidates) > 1:
            raise PlaybookSyntaxError(f"task names more than one module: {', '.join(candidates)}", location)
        module_name = candidates[0]
        raw_args = data[module_name]

    if not has_module(str(module_name)):
        raise PlaybookSyntaxError(f"unknown module '{module_name}'", location)
    module_name = get_module(str(module_name)).name

    args = parse_module_args(module_name, raw_args, location)
    if "args" in data:
        if not isinstance(data["args"], dict):
            raise PlaybookSyntaxError("args must be a mapping", location)
        args.update(data["args"])

    when = _as_list(data.get("when"), "when", location)
    for condition in when:
        try:
            validate_condition(condition)
        except ConditionEvaluationError as e:
            raise PlaybookSyntaxError(str(e), location)

    delay = data.get("delay")
    fields: dict[str, Any] = dict(
        name=str(data.get("name") or module_name),
        module=module_name,
        args=args,
        tags=_as_tags(data.get("tags"), location) | inherited_tags,
        when=when,
        notify=[str(n) for n in _as_list(data.get("notify"), "notify", location)],
        retries=_as_number(data.get("retries", 0), "retries", location, integer=True),
        delay=None if delay is None else _as_number(delay, "delay", location),
        ignore_errors=_as_bool(data.get("ignore_errors", False), "ignore_errors", location),
        ignore_unreachable=_as_bool(data.get("ignore_unreachable", False), "ignore_unreachable", location),
        register=data.get("register"),
        role=role,
        search_paths=list(search_paths),
        location=location,
    )
    if handler:
        return Handler(listen=[str(t) for t in _as_list(data.get("listen"), "listen", location)], **fields)
    return Task(**fields)


def _read_yaml(path: Path) -> Any:
    try:
        return yaml.safe_load(path.read_text())
    except yaml.YAMLError as e:
        raise PlaybookSyntaxError(f"invalid YAML: {e}", str(path))
    except OSError as e:
        raise PlaybookSyntaxError(f"cannot read file: {e}", str(path))


def _find_main(directory: Path) -> Path | None:
    for name in ("main.yml", "main.yaml"):
        if (directory / name).is_file():
            return directory / name
    return None


def _parse_task_list(
    data: Any,
    location: str,
    search_paths: list[Path],
    role: str | None = None,
    inherited_tags: frozenset[str] = frozenset(),
    handler: bool = False,
) -> list[Any]:
    if data is None:
        return []
    if not isinstance(data, list):
        raise PlaybookSyntaxError("expected a list of tasks", location)
    return [
        parse_task(item, f"{location} #{i + 1}", search_paths, role, inherited_tags, handler)
        for i, item in enumerate(data)
    ]


@dataclass
class Role:
    """Tasks, handlers and defaults loaded from roles/<name>/."""

    name: str
    tasks: list[Task]
    handlers: list[Handler]
    defaults: dict[str, Any]


def load_role(entry: Any, base_dir: Path, location: str) -> Role:
    """Load a role referenced from a play's `roles:` list.

    Raises:
        PlaybookSyntaxError: If the role does not exist or its files are invalid
    """
    if isinstance(entry, str):
        name, tags = entry, frozenset()
    elif isinstance(entry, dict):
        unknown = set(entry) - ROLE_KEYS
        if unknown:
            raise PlaybookSyntaxError(f"unsupported role keys: {', '.join(sorted(unknown))}", location)
        name = entry.get("role") or entry.get("name")
        tags = _as_tags(entry.get("tags"), location)
    else:
        raise PlaybookSyntaxError("role entry must be a name or a mapping", location)
    if not name:
        raise PlaybookSyntaxError("role entry has no name", location)

    role_dir = base_dir / "roles" / str(name)
    if not role_dir.is_dir():
        raise PlaybookSyntaxError(f"role '{name}' not found in {role_dir.parent}", location)
    search_paths = [role_dir, base_dir]

    tasks: list[Task] = []
    handlers: list[Handler] = []
    defaults: dict[str, Any] = {}

    tasks_file = _find_main(role_dir / "tasks")
    if tasks_file:
        tasks = _parse_task_list(_read_yaml(tasks_file), str(tasks_file), search_paths, str(name), tags)
    handlers_file = _find_main(role_dir / "handlers")
    if handlers_file:
        handlers = _parse_task_list(
            _read_yaml(handlers_file), str(handlers_file), search_paths, str(name), handler=True
        )
    defaults_file = _find_main(role_dir / "defaults")
    if defaults_file:
        data = _read_yaml(defaults_file) or {}
        if not isinstance(data, dict):
            raise PlaybookSyntaxError("role defaults must be a mapping", str(defaults_file))
        defaults = data

    logger.debug(f"Loaded role {name}: {len(tasks)} task(s), {len(handlers)} handler(s)")
    return Role(name=str(name), tasks=tasks, handlers=handlers, defaults=defaults)


def parse_play(data: Any, base_dir: Path, location: str) -> Play:
    """Build a Play from its YAML mapping.

    Raises:
        PlaybookSyntaxError: For structural problems, unknown modules or
            notify targets that name no handler
    """
    if not isinstance(data, dict):
        raise PlaybookSyntaxError("play must be a mapping", location)
    if data.get("name"):
        location = f"{location} ({data['name']})"
    unknown = set(data) - PLAY_KEYS
    if unknown:
        raise PlaybookSyntaxError(f"unsupported play keys: {', '.join(sorted(map(str, unknown)))}", location)

    hosts = data.get("hosts")
    if isinstance(hosts, list):
        hosts = ",".join(str(h) for h in hosts)
    if not hosts or not isinstance(hosts, str):
        raise PlaybookSyntaxError("play requires 'hosts'", location)

    play_vars = data.get("vars") or {}
    if not isinstance(play_vars, dict):
        raise PlaybookSyntaxError("vars must be a mapping", location)

    search_paths = [base_dir]
    pre_tasks = _parse_task_list(data.get("pre_tasks"), f"{location} pre_tasks", search_paths)
    tasks = _parse_task_list(data.get("tasks"), f"{location} tasks", search_paths)
    post_tasks = _parse_task_list(data.get("post_tasks"), f"{location} post_tasks", search_paths)
    play_handlers = _parse_task_list(data.get("handlers"), f"{location} handlers", search_paths, handler=True)

    role_tasks: list[Task] = []
    role_handlers: list[Handler] = []
    role_defaults: dict[str, Any] = {}
    role_names: list[str] = []
    for entry in _as_list(data.get("roles"), "roles", location):
        role = load_role(entry, base_dir, f"{location} roles")
        role_tasks.extend(role.tasks)
        role_handlers.extend(role.handlers)
        role_defaults.update(role.defaults)
        role_names.append(role.name)

    play = Play(
        name=str(data.get("name") or hosts),
        hosts=hosts,
        vars=dict(play_vars),
        tags=_as_tags(data.get("tags"), location),
        tasks=pre_tasks + role_tasks + tasks + post_tasks,
        handlers=role_handlers + play_handlers,
        gather_facts=_as_bool(data.get("gather_facts", False), "gather_facts", location),
        role_defaults=role_defaults,
        roles=role_names,
    )

    for task in play.tasks + play.handlers:
        for topic in task.notify:
            if not play.handlers_for(topic):
                raise PlaybookSyntaxError(f"notify target '{topic}' matches no handler", task.location)
    return play


def parse_playbook(data: Any, base_dir: Path | None = None, source: str = "<playbook>") -> list[Play]:
    """Build plays from already-parsed playbook YAML."""
    base_dir = base_dir or Path.cwd()
    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, list) or not data:
        raise PlaybookSyntaxError("playbook must be a non-empty list of plays", source)
    return [parse_play(play, base_dir, f"{source}: play #{i + 1}") for i, play in enumerate(data)]


def load_playbook(path: str | Path) -> list[Play]:
    """Load and validate a playbook file.

    Roles are looked up in `roles/` next to the playbook, and relative
    copy/template sources in the playbook's directory (or `files/`,
    `templates/` under it).

    Raises:
        PlaybookSyntaxError: If the file is missing or invalid

    Example:
        >>> plays = load_playbook("site.yml")
        >>> [p.name for p in plays]
        ['Configure web tier']
    """
    path = Path(path)
    if not path.is_file():
        raise PlaybookSyntaxError(f"playbook not found: {path}")
    plays = parse_playbook(_read_yaml(path), path.resolve().parent, str(path))
    logger.info(f"Loaded playbook {path}: {len(plays)} play(s)")
    return plays
