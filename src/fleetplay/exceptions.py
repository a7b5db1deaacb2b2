"""Exception hierarchy for fleetplay.

Structural errors (inventory, selector, playbook, condition problems) abort
a run before any host is touched. Task-level errors (ApplyError,
UnreachableError) are caught by the executor and turned into per-host
results so that one host never takes another down with it.
"""

from typing import Any


class FleetplayError(Exception):
    """Base class for all fleetplay errors."""


class ConfigError(FleetplayError):
    """Raised when settings files or environment values are invalid."""


class InventoryError(FleetplayError):
    """Raised when an inventory file cannot be parsed."""


class CyclicGroupError(InventoryError):
    """Raised when group nesting contains a cycle.

    Attributes:
        cycle: Group names forming the cycle, first name repeated at the end
    """

    def __init__(self, cycle: list[str]) -> None:
        self.cycle = cycle
        super().__init__(f"Cyclic group nesting: {' -> '.join(cycle)}")


class SelectorError(FleetplayError):
    """Raised when a host selector cannot be resolved."""


class UnknownGroupError(SelectorError):
    """Raised when a selector names a group or host that does not exist."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Unknown group or host in selector: {name}")


class IndexOutOfRangeError(SelectorError):
    """Raised when a group[N] selector indexes past the group's members."""

    def __init__(self, group: str, index: int, size: int) -> None:
        self.group = group
        self.index = index
        self.size = size
        super().__init__(
            f"Index {index} out of range for group '{group}' ({size} member(s))"
        )


class PlaybookSyntaxError(FleetplayError):
    """Raised when a playbook or role file is structurally invalid.

    Attributes:
        location: Human readable position of the problem (file, play, task)
    """

    def __init__(self, msg: str, location: str = "") -> None:
        self.msg = msg
        self.location = location
        super().__init__(f"{location}: {msg}" if location else msg)


class ConditionEvaluationError(FleetplayError):
    """Raised when a `when` expression is malformed or cannot be evaluated."""

    def __init__(self, expression: str, reason: str) -> None:
        self.expression = expression
        self.reason = reason
        super().__init__(f"Cannot evaluate condition '{expression}': {reason}")


class UnknownModuleError(FleetplayError):
    """Raised when a task references a module that is not registered."""

    def __init__(self, module_name: str) -> None:
        self.module_name = module_name
        super().__init__(f"Module '{module_name}' not found")


class TaskError(FleetplayError):
    """Base class for errors raised while running a task on one host.

    Attributes:
        msg: Human readable error message
        payload: Diagnostic fields (stdout, stderr, rc, diff, ...)
    """

    def __init__(self, msg: str, **payload: Any) -> None:
        super().__init__(msg)
        self.msg = msg
        self.payload: dict[str, Any] = {"msg": msg, **payload}

    def __str__(self) -> str:
        return self.msg


class ApplyError(TaskError):
    """Raised when a module cannot bring a target to its desired state.

    `target_state` tells the operator what was left behind:
    "unchanged" when the failure happened before any mutation was attempted,
    "unknown" when it happened part way through applying a change.
    """

    def __init__(self, msg: str, target_state: str = "unchanged", **payload: Any) -> None:
        super().__init__(msg, target_state=target_state, **payload)
        self.target_state = target_state


class UnreachableError(TaskError):
    """Raised when a host cannot be contacted.

    Distinct from ApplyError: no further task can even be attempted on the
    host for the rest of the play.
    """

    def __init__(self, host: str, reason: str) -> None:
        super().__init__(f"Host {host} unreachable: {reason}", host=host)
        self.host = host
        self.reason = reason


class DuplicateResultError(FleetplayError):
    """Raised when a result is recorded twice for the same (play, host, task)."""
