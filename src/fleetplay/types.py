"""Type definitions for fleetplay.

This module defines the core data types shared by the inventory, the task
graph, the executor and the reporter. Hosts are resolved once per run and
never mutated afterwards; results are written once by the executor and
never changed after being recorded.
"""

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping


class Outcome(str, Enum):
    """Outcome of running one task on one host."""

    OK = "ok"
    CHANGED = "changed"
    FAILED = "failed"
    SKIPPED = "skipped"
    UNREACHABLE = "unreachable"

    @property
    def is_failure(self) -> bool:
        """Check if this outcome counts against the run's exit status."""
        return self in (Outcome.FAILED, Outcome.UNREACHABLE)


class HostStatus(str, Enum):
    """Per-host state within a play.

    pending -> running -> {completed, failed, unreachable, stopped}.
    """

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    UNREACHABLE = "unreachable"
    STOPPED = "stopped"

    @property
    def is_terminal(self) -> bool:
        return self not in (HostStatus.PENDING, HostStatus.RUNNING)


@dataclass(frozen=True)
class Host:
    """A resolved inventory host.

    Follows Ansible inventory conventions: the connection details come from
    the `ansible_*`-style variables (`ansible_host`, `ansible_port`,
    `ansible_user`, `ansible_connection`), everything else lives in `vars`.

    Attributes:
        name: Unique inventory name (e.g., "web01")
        address: Hostname or IP used to connect
        port: SSH port (default: 22)
        user: Remote user, empty for the connection default
        connection: Connection kind - "ssh" for remote, "local" for localhost
        groups: Group memberships, most general first
        vars: Fully resolved variables, read-only

    Example:
        >>> host = Host(name="web01", address="192.168.1.10")
        >>> host.is_local
        False
        >>> host.get_var("http_port", 80)
        80
    """

    name: str
    address: str = ""
    port: int = 22
    user: str = ""
    connection: str = "ssh"
    groups: tuple[str, ...] = ()
    vars: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.address:
            object.__setattr__(self, "address", self.name)
        if not isinstance(self.vars, MappingProxyType):
            object.__setattr__(self, "vars", MappingProxyType(dict(self.vars)))

    def __hash__(self) -> int:
        return hash(self.name)

    @property
    def is_local(self) -> bool:
        """Check if this host uses local execution (no SSH)."""
        return self.connection == "local"

    def get_var(self, key: str, default: Any = None) -> Any:
        """Get a resolved variable with an optional default."""
        return self.vars.get(key, default)


@dataclass(frozen=True)
class ExecutionResult:
    """Outcome of one task (or handler) on one host.

    Attributes:
        play_index: Index of the play in the playbook
        host: Host name
        task_index: Position of the task in the host's task list
        task_name: Display name of the task
        outcome: ok, changed, failed, skipped or unreachable
        payload: Diagnostics - msg, stdout, stderr, rc, diff, target_state
        ignored: The failure was declared ignorable by the task
        attempts: Number of times the module was invoked
        is_handler: The entry comes from a notified handler
        module: Module the task invoked

    Example:
        >>> result = ExecutionResult(
        ...     play_index=0, host="web01", task_index=2,
        ...     task_name="install nginx config", outcome=Outcome.CHANGED,
        ... )
        >>> result.counts_as_failure
        False
    """

    play_index: int
    host: str
    task_index: int
    task_name: str
    outcome: Outcome
    payload: Mapping[str, Any] = field(default_factory=dict)
    ignored: bool = False
    attempts: int = 1
    is_handler: bool = False
    module: str = ""

    @property
    def key(self) -> tuple[int, str, int]:
        """Unique key of this result within a run."""
        return (self.play_index, self.host, self.task_index)

    @property
    def counts_as_failure(self) -> bool:
        """Check if this result makes the run fail."""
        return self.outcome.is_failure and not self.ignored

    @property
    def msg(self) -> str:
        return str(self.payload.get("msg", ""))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result: dict[str, Any] = {
            "play": self.play_index,
            "host": self.host,
            "task_index": self.task_index,
            "task": self.task_name,
            "module": self.module,
            "outcome": self.outcome.value,
        }
        if self.ignored:
            result["ignored"] = True
        if self.attempts != 1:
            result["attempts"] = self.attempts
        if self.is_handler:
            result["handler"] = True
        if self.payload:
            result["payload"] = dict(self.payload)
        return result
