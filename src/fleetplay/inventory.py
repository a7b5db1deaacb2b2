"""Inventory management for fleetplay.

Parses host/group declarations into a typed Inventory and resolves each
host's variable environment. Supported sources:

- INI files: `[group]`, `[group:vars]` and `[group:children]` sections
- YAML files: Ansible-style `all: {hosts, vars, children}` nesting, or
  top-level group names
- JSON files: Ansible `--list` format (groups with host lists + _meta.hostvars)
- Executable scripts: run with --list, parse JSON output

Variables in `group_vars/` and `host_vars/` next to the inventory file are
merged over the inline declarations.
"""

import json
import logging
import os
import re
import shlex
import string
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .exceptions import CyclicGroupError, InventoryError
from .types import Host

logger = logging.getLogger(__name__)

ALL_GROUP = "all"
UNGROUPED_GROUP = "ungrouped"

# Variables that describe how to reach a host rather than what to put on it.
CONNECTION_VARS = {
    "ansible_host",
    "ansible_port",
    "ansible_user",
    "ansible_connection",
}

LOCAL_NAMES = {"localhost", "127.0.0.1", "::1"}

_RANGE_RE = re.compile(r"\[([0-9a-zA-Z]+):([0-9a-zA-Z]+)(?::(\d+))?\]")


@dataclass
class HostGroup:
    """A group of hosts in the inventory with shared variables.

    Attributes:
        name: Group name (e.g., "webservers", "databases")
        hosts: Host names declared directly in this group, in order
        vars: Group-level variables inherited by all member hosts
        children: Child group names for hierarchical structures

    Example:
        >>> group = HostGroup(name="webservers", hosts=["web01"], vars={"http_port": 80})
    """

    name: str
    hosts: list[str] = field(default_factory=list)
    vars: dict[str, Any] = field(default_factory=dict)
    children: list[str] = field(default_factory=list)

    def add_host(self, name: str) -> None:
        """Add a host name to this group, keeping declaration order."""
        if name not in self.hosts:
            self.hosts.append(name)

    def add_child(self, name: str) -> None:
        """Add a child group name."""
        if name not in self.children:
            self.children.append(name)


@dataclass
class Inventory:
    """Typed inventory of groups and hosts.

    Hosts are stored with their own declared variables; `resolve()` layers
    group variables underneath them. The resolved host set is cached for the
    run and only rebuilt when the inventory or the extra vars change.

    Example:
        >>> inventory = Inventory()
        >>> inventory.add_group("web", vars={"http_port": 8080})
        >>> inventory.add_host("web01", groups=["web"], vars={"ansible_host": "10.0.0.1"})
        >>> inventory.resolve()["web01"].get_var("http_port")
        8080
    """

    groups: dict[str, HostGroup] = field(default_factory=dict)
    hosts: dict[str, dict[str, Any]] = field(default_factory=dict)
    source: Path | None = None
    _resolved: dict[str, Host] | None = field(default=None, init=False, repr=False)
    _resolved_extra: dict[str, Any] | None = field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        self.groups.setdefault(ALL_GROUP, HostGroup(name=ALL_GROUP))

    def add_group(
        self,
        name: str,
        vars: dict[str, Any] | None = None,
        children: list[str] | None = None,
        parent: str | None = None,
    ) -> HostGroup:
        """Add a group, or update an existing one.

        Group variables are merged over any previously declared ones.
        """
        group = self.groups.get(name)
        if group is None:
            group = HostGroup(name=name)
            self.groups[name] = group
        if vars:
            group.vars.update(vars)
        for child in children or []:
            self.add_group(child)
            group.add_child(child)
        if parent is not None:
            self.add_group(parent).add_child(name)
        self._invalidate_cache()
        return group

    def add_host(
        self,
        name: str,
        groups: list[str] | None = None,
        vars: dict[str, Any] | None = None,
    ) -> None:
        """Declare a host, optionally as member of groups."""
        host_vars = self.hosts.setdefault(name, {})
        if vars:
            host_vars.update(vars)
        for group_name in groups or []:
            self.add_group(group_name).add_host(name)
        self._invalidate_cache()

    def get_group(self, name: str) -> HostGroup | None:
        """Get a group by name."""
        return self.groups.get(name)

    def list_groups(self) -> list[HostGroup]:
        """Get all groups, `all` and `ungrouped` included."""
        self._ensure_implicit_groups()
        return list(self.groups.values())

    def has_host(self, name: str) -> bool:
        return name in self.hosts

    def parents_of(self, name: str) -> list[str]:
        """Names of groups that list `name` as a child."""
        return [g.name for g in self.groups.values() if name in g.children]

    def check_acyclic(self) -> None:
        """Verify that group nesting forms a DAG.

        Raises:
            CyclicGroupError: If following children leads back to a group
        """
        visiting: list[str] = []
        done: set[str] = set()

        def visit(name: str) -> None:
            if name in done:
                return
            if name in visiting:
                start = visiting.index(name)
                raise CyclicGroupError(visiting[start:] + [name])
            visiting.append(name)
            group = self.groups.get(name)
            for child in group.children if group else []:
                visit(child)
            visiting.pop()
            done.add(name)

        for name in list(self.groups):
            visit(name)

    def group_depths(self) -> dict[str, int]:
        """Depth of each group below `all` (parents always shallower than children)."""
        self.check_acyclic()
        depths: dict[str, int] = {}

        def depth(name: str) -> int:
            if name not in depths:
                parents = [p for p in self.parents_of(name) if p != name]
                if name == ALL_GROUP:
                    depths[name] = 0
                elif not parents:
                    depths[name] = 1
                else:
                    depths[name] = max(depth(p) for p in parents) + 1
            return depths[name]

        for name in self.groups:
            depth(name)
        return depths

    def members(self, group_name: str) -> list[str]:
        """Hosts of a group and of all its descendants, in declaration order."""
        if group_name == ALL_GROUP:
            return list(self.hosts)
        self.check_acyclic()
        self._ensure_implicit_groups()
        result: list[str] = []
        seen: set[str] = set()

        def walk(name: str) -> None:
            group = self.groups.get(name)
            if group is None:
                return
            for host_name in group.hosts:
                if host_name not in seen:
                    seen.add(host_name)
                    result.append(host_name)
            for child in group.children:
                walk(child)

        walk(group_name)
        return result

    def groups_of(self, host_name: str) -> list[str]:
        """All groups containing a host (directly or through children).

        Ordered from least to most specific: by depth, then by name, which is
        the order their variables are layered in.
        """
        self._ensure_implicit_groups()
        depths = self.group_depths()
        direct = {g.name for g in self.groups.values() if host_name in g.hosts}
        containing: set[str] = set()
        pending = list(direct)
        while pending:
            name = pending.pop()
            if name in containing:
                continue
            containing.add(name)
            pending.extend(self.parents_of(name))
        containing.add(ALL_GROUP)
        return sorted(containing, key=lambda g: (depths.get(g, 0), g))

    def resolve(self, extra_vars: dict[str, Any] | None = None) -> dict[str, Host]:
        """Resolve every host's variable environment.

        Precedence, lowest to highest: `all` vars, group vars (parent before
        child, then by name), host vars, extra vars. Later layers replace
        keys wholesale; nested structures are not merged.

        Args:
            extra_vars: Run-time overrides (e.g., from -e on the command line)

        Returns:
            Dictionary mapping host names to frozen Host objects, in
            declaration order

        Raises:
            CyclicGroupError: If group nesting contains a cycle
        """
        extra = dict(extra_vars or {})
        if self._resolved is not None and self._resolved_extra == extra:
            return self._resolved

        self.check_acyclic()
        self._ensure_implicit_groups()
        group_members = {name: self.members(name) for name in self.groups}

        resolved: dict[str, Host] = {}
        for host_name, host_vars in self.hosts.items():
            layered_groups = self.groups_of(host_name)
            variables: dict[str, Any] = {}
            for group_name in layered_groups:
                variables.update(self.groups[group_name].vars)
            variables.update(host_vars)
            variables.update(extra)
            variables["inventory_hostname"] = host_name
            variables["group_names"] = sorted(
                g for g in layered_groups if g not in (ALL_GROUP, UNGROUPED_GROUP)
            )
            variables["groups"] = {k: list(v) for k, v in group_members.items()}
            resolved[host_name] = _host_from_vars(host_name, layered_groups, variables)

        logger.debug(f"Resolved {len(resolved)} host(s) from {len(self.groups)} group(s)")
        self._resolved = resolved
        self._resolved_extra = extra
        return resolved

    def get_host(self, name: str, extra_vars: dict[str, Any] | None = None) -> Host | None:
        """Get a resolved host by name."""
        return self.resolve(extra_vars).get(name)

    def _ensure_implicit_groups(self) -> None:
        """Maintain `all` membership and the `ungrouped` group."""
        all_group = self.groups[ALL_GROUP]
        grouped = {
            host_name
            for group in self.groups.values()
            if group.name not in (ALL_GROUP, UNGROUPED_GROUP)
            for host_name in group.hosts
        }
        loose = [h for h in self.hosts if h not in grouped]
        if loose or UNGROUPED_GROUP in self.groups:
            ungrouped = self.groups.setdefault(UNGROUPED_GROUP, HostGroup(name=UNGROUPED_GROUP))
            ungrouped.hosts = loose
        for group in list(self.groups.values()):
            if group.name != ALL_GROUP and not self.parents_of(group.name):
                all_group.add_child(group.name)

    def _invalidate_cache(self) -> None:
        self._resolved = None
        self._resolved_extra = None


def _host_from_vars(name: str, groups: list[str], variables: dict[str, Any]) -> Host:
    """Create a Host from a resolved variables dictionary."""
    default_connection = "local" if name in LOCAL_NAMES else "ssh"
    try:
        port = int(variables.get("ansible_port", 22))
    except (TypeError, ValueError):
        raise InventoryError(
            f"Host {name}: ansible_port must be an integer, got {variables['ansible_port']!r}"
        )
    return Host(
        name=name,
        address=str(variables.get("ansible_host", name)),
        port=port,
        user=str(variables.get("ansible_user", "") or ""),
        connection=str(variables.get("ansible_connection", default_connection)),
        groups=tuple(groups),
        vars=variables,
    )


def expand_host_pattern(pattern: str) -> list[str]:
    """Expand `web[01:03]`-style host ranges.

    Numeric ranges keep the zero padding of the start value; alphabetic
    ranges step through letters. An optional third field gives the stride.

    Example:
        >>> expand_host_pattern("web[01:03].example.com")
        ['web01.example.com', 'web02.example.com', 'web03.example.com']
    """
    match = _RANGE_RE.search(pattern)
    if not match:
        return [pattern]

    start, end, stride = match.group(1), match.group(2), int(match.group(3) or 1)
    head, tail = pattern[: match.start()], pattern[match.end():]

    if start.isdigit() and end.isdigit():
        width = len(start) if start.startswith("0") else 0
        values = [str(i).zfill(width) for i in range(int(start), int(end) + 1, stride)]
    elif len(start) == 1 and len(end) == 1 and start.isalpha() and end.isalpha():
        letters = string.ascii_letters
        values = list(letters[letters.index(start): letters.index(end) + 1: stride])
    else:
        raise InventoryError(f"Invalid host range in '{pattern}'")

    if not values:
        raise InventoryError(f"Empty host range in '{pattern}'")

    result: list[str] = []
    for value in values:
        result.extend(expand_host_pattern(f"{head}{value}{tail}"))
    return result


def parse_value(raw: str) -> Any:
    """Turn an INI value into a typed value the way YAML would read it."""
    try:
        value = yaml.safe_load(raw)
    except yaml.YAMLError:
        return raw
    if isinstance(value, (dict, list)) and not raw.lstrip().startswith(("{", "[")):
        return raw
    return value


def _parse_key_values(tokens: list[str], location: str) -> dict[str, Any]:
    result: dict[str, Any] = {}
    for token in tokens:
        if "=" not in token:
            raise InventoryError(f"{location}: expected key=value, got '{token}'")
        key, value = token.split("=", 1)
        result[key.strip()] = parse_value(value)
    return result


def load_inventory_ini(content: str, source: str = "<string>") -> Inventory:
    """Load inventory from INI text.

    Example:
        [nginx]
        web01 ansible_host=10.0.0.1
        web[02:03]

        [nginx:vars]
        http_port=8080

        [frontend:children]
        nginx
    """
    inventory = Inventory()
    section = UNGROUPED_GROUP
    kind = "hosts"

    for lineno, raw_line in enumerate(content.splitlines(), start=1):
        line = raw_line.strip()
        if not line or line.startswith(("#", ";")):
            continue
        location = f"{source}:{lineno}"

        if line.startswith("[") and line.endswith("]"):
            header = line[1:-1].strip()
            section, _, kind = header.partition(":")
            kind = kind or "hosts"
            if kind not in ("hosts", "vars", "children"):
                raise InventoryError(f"{location}: unknown section type '{kind}'")
            inventory.add_group(section)
            continue

        try:
            tokens = shlex.split(line, comments=True)
        except ValueError as e:
            raise InventoryError(f"{location}: {e}")
        if not tokens:
            continue

        if kind == "vars":
            inventory.add_group(section, vars=_parse_key_values(tokens, location))
        elif kind == "children":
            inventory.add_group(section, children=[tokens[0]])
        else:
            host_vars = _parse_key_values(tokens[1:], location)
            groups = [] if section == UNGROUPED_GROUP else [section]
            for host_name in expand_host_pattern(tokens[0]):
                inventory.add_host(host_name, groups=groups, vars=host_vars)

    return inventory


def _load_yaml_group(inventory: Inventory, name: str, data: Any, parent: str | None) -> None:
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise InventoryError(f"Group '{name}' must be a mapping, got {type(data).__name__}")

    inventory.add_group(
        name,
        vars=data.get("vars") or {},
        parent=parent if parent and parent != name else None,
    )

    hosts = data.get("hosts") or {}
    if isinstance(hosts, list):
        hosts = {h: {} for h in hosts}
    if not isinstance(hosts, dict):
        raise InventoryError(f"Group '{name}': hosts must be a mapping or list")
    for pattern, host_vars in hosts.items():
        for host_name in expand_host_pattern(str(pattern)):
            groups = [] if name in (ALL_GROUP, UNGROUPED_GROUP) else [name]
            inventory.add_host(host_name, groups=groups, vars=host_vars or {})

    children = data.get("children") or {}
    if isinstance(children, list):
        children = {c: {} for c in children}
    for child_name, child_data in children.items():
        _load_yaml_group(inventory, str(child_name), child_data, parent=name)


def load_inventory_yaml(data: dict[str, Any] | None) -> Inventory:
    """Load inventory from parsed YAML data.

    Accepts both the nested Ansible layout and plain top-level groups:

        all:
          vars:
            http_port: 80
          children:
            nginx:
              hosts:
                web01:
                  ansible_host: 10.0.0.1

        databases:
          hosts:
            db01: {}
    """
    inventory = Inventory()
    for group_name, group_data in (data or {}).items():
        _load_yaml_group(inventory, str(group_name), group_data, parent=None)
    return inventory


def load_inventory_json(data: dict[str, Any]) -> Inventory:
    """Load inventory from Ansible JSON inventory format.

    Parses the JSON format produced by `ansible-inventory --list` and
    dynamic inventory scripts:

        {
          "nginx": {"hosts": ["web01"], "vars": {"http_port": 80}},
          "frontend": {"children": ["nginx"]},
          "_meta": {"hostvars": {"web01": {"ansible_host": "10.0.0.1"}}}
        }
    """
    hostvars = data.get("_meta", {}).get("hostvars", {})
    inventory = Inventory()

    for group_name, group_data in data.items():
        if group_name == "_meta":
            continue
        if isinstance(group_data, list):
            group_data = {"hosts": group_data}
        if not isinstance(group_data, dict):
            continue

        inventory.add_group(group_name, vars=group_data.get("vars") or {})
        for host_name in group_data.get("hosts", []):
            groups = [] if group_name in (ALL_GROUP, UNGROUPED_GROUP) else [group_name]
            inventory.add_host(host_name, groups=groups, vars=hostvars.get(host_name) or {})
        children = group_data.get("children", [])
        if isinstance(children, dict):
            children = list(children)
        inventory.add_group(group_name, children=children)

    for host_name, host_vars in hostvars.items():
        if not inventory.has_host(host_name):
            inventory.add_host(host_name, vars=host_vars or {})

    return inventory


def load_inventory_script(script_path: str | Path) -> Inventory:
    """Run an inventory script with --list and load its JSON output.

    Raises:
        InventoryError: If the script fails or prints invalid JSON
    """
    path = Path(script_path)
    try:
        result = subprocess.run(
            [str(path), "--list"],
            capture_output=True,
            text=True,
            check=True,
        )
        data = json.loads(result.stdout)
    except subprocess.CalledProcessError as e:
        raise InventoryError(f"Inventory script {path} failed: {e.stderr.strip()}")
    except json.JSONDecodeError as e:
        raise InventoryError(f"Inventory script {path} returned invalid JSON: {e}")
    return load_inventory_json(data)


def _read_vars_file(path: Path) -> dict[str, Any]:
    try:
        data = yaml.safe_load(path.read_text())
    except yaml.YAMLError as e:
        raise InventoryError(f"Invalid variables file {path}: {e}")
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise InventoryError(f"Variables file {path} must contain a mapping")
    return data


def _vars_files(base: Path, name: str) -> list[Path]:
    """Variable files for a group or host name under base (file or directory form)."""
    found = [base / f"{name}{suffix}" for suffix in ("", ".yml", ".yaml", ".json")]
    files = [p for p in found if p.is_file()]
    directory = base / name
    if directory.is_dir():
        files.extend(
            sorted(p for p in directory.iterdir() if p.suffix in (".yml", ".yaml", ".json"))
        )
    return files


def load_vars_directories(inventory: Inventory, base_dir: Path) -> None:
    """Merge group_vars/ and host_vars/ found under base_dir into the inventory."""
    group_dir = base_dir / "group_vars"
    if group_dir.is_dir():
        for group_name in list(inventory.groups):
            for path in _vars_files(group_dir, group_name):
                logger.debug(f"Loading group vars for {group_name} from {path}")
                inventory.add_group(group_name, vars=_read_vars_file(path))

    host_dir = base_dir / "host_vars"
    if host_dir.is_dir():
        for host_name in list(inventory.hosts):
            for path in _vars_files(host_dir, host_name):
                logger.debug(f"Loading host vars for {host_name} from {path}")
                inventory.add_host(host_name, vars=_read_vars_file(path))


def load_inventory(inventory_file: str | Path, require_hosts: bool = True) -> Inventory:
    """Load inventory from a file, auto-detecting the format.

    Args:
        inventory_file: Path to an INI, YAML or JSON file, or an executable script
        require_hosts: If True (default), raise InventoryError when no hosts
            are loaded

    Returns:
        Inventory with group_vars/host_vars applied and group nesting checked

    Raises:
        InventoryError: If the file cannot be read or parsed
        CyclicGroupError: If group nesting contains a cycle

    Example:
        >>> inventory = load_inventory("inventory/production.ini")
        >>> inventory = load_inventory("hosts.yml")
        >>> inventory = load_inventory("./ec2_inventory.py")
    """
    path = Path(inventory_file)
    if not path.exists():
        raise InventoryError(f"Inventory file not found: {path}")

    if os.access(path, os.X_OK) and path.suffix not in (".yml", ".yaml", ".json", ".ini", ""):
        inventory = load_inventory_script(path)
    else:
        content = path.read_text()
        stripped = content.lstrip()
        try:
            if path.suffix == ".json" or stripped.startswith("{"):
                inventory = load_inventory_json(json.loads(content))
            elif path.suffix in (".yml", ".yaml"):
                inventory = load_inventory_yaml(yaml.safe_load(content))
            else:
                inventory = load_inventory_ini(content, source=str(path))
        except json.JSONDecodeError as e:
            raise InventoryError(f"Invalid JSON inventory {path}: {e}")
        except yaml.YAMLError as e:
            raise InventoryError(f"Invalid YAML inventory {path}: {e}")

    inventory.source = path
    load_vars_directories(inventory, path.parent)
    inventory.check_acyclic()

    if require_hosts and not inventory.hosts:
        raise InventoryError(f"No hosts loaded from inventory {path}")

    logger.info(f"Loaded inventory {path}: {len(inventory.hosts)} host(s)")
    return inventory


def load_localhost() -> Inventory:
    """Generate a localhost-only inventory for local execution."""
    inventory = Inventory()
    inventory.add_host("localhost", vars={"ansible_connection": "local"})
    return inventory
