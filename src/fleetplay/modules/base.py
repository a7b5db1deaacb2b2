"""Base classes for fleetplay modules.

A module turns a task's arguments into a converged host in three steps:

1. observe(): read the current state through the connection (no mutation)
2. plan(): compare desired and observed state, a pure function returning a
   Change; an empty Change means the host is already converged
3. apply(): carry out the Change through the connection

The applier runs observe and plan in every mode; apply is skipped in check
mode so the predicted Change is reported without touching the host.
"""

from abc import ABC
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ..connections import Connection
from ..exceptions import ApplyError
from ..types import Host


@dataclass
class ModuleContext:
    """What a module may know about the task it runs for.

    Attributes:
        host: Resolved target host
        check_mode: Predict changes without applying them
        diff: Include before/after content in results
        search_paths: Local directories to look up relative `src` files in
    """

    host: Host
    check_mode: bool = False
    diff: bool = False
    search_paths: list[Path] = field(default_factory=list)

    def find_file(self, name: str, subdir: str) -> Path:
        """Locate a local source file for copy/template.

        Absolute paths are used as is; relative paths are looked up in
        `<search path>/<subdir>/` and then `<search path>/` for each search
        path, then relative to the current directory.

        Raises:
            ApplyError: If the file cannot be found
        """
        candidate = Path(name).expanduser()
        if candidate.is_absolute():
            if candidate.is_file():
                return candidate
            raise ApplyError(f"Source file not found: {name}", src=name)
        for base in self.search_paths:
            for path in (base / subdir / name, base / name):
                if path.is_file():
                    return path
        if candidate.is_file():
            return candidate.resolve()
        raise ApplyError(f"Source file not found: {name}", src=name)


@dataclass
class Change:
    """Difference between desired and observed state.

    Attributes:
        actions: Steps apply() will perform, empty when converged
        before: Observed content/state, for diffs
        after: Desired content/state, for diffs
        data: Extra values handed from plan() to apply()
    """

    actions: list[str] = field(default_factory=list)
    before: str | None = None
    after: str | None = None
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def changed(self) -> bool:
        return bool(self.actions)


class Module(ABC):
    """Base class for modules.

    Subclasses set `name`, declare their arguments in `parameters` (name ->
    default) and `required`, and override the three steps as needed.
    """

    name: str = ""
    parameters: dict[str, Any] = {}
    required: tuple[str, ...] = ()
    supports_check_mode: bool = True
    free_form: str | None = None

    def validate(self, args: dict[str, Any], ctx: ModuleContext) -> dict[str, Any]:
        """Check arguments and fill defaults.

        Raises:
            ApplyError: For unsupported or missing arguments
        """
        args = dict(args)
        if self.free_form and "_raw_params" in args:
            args.setdefault(self.free_form, args.pop("_raw_params"))
        unknown = sorted(set(args) - set(self.parameters))
        if unknown:
            raise ApplyError(
                f"Unsupported parameters for {self.name}: {', '.join(unknown)}",
                module=self.name,
            )
        missing = [k for k in self.required if args.get(k) in (None, "")]
        if missing:
            raise ApplyError(
                f"Missing required arguments for {self.name}: {', '.join(missing)}",
                module=self.name,
            )
        return {**self.parameters, **args}

    async def observe(self, conn: Connection | None, args: dict[str, Any], ctx: ModuleContext) -> dict[str, Any]:
        """Read the host's current state. Must not change anything."""
        return {}

    def plan(self, args: dict[str, Any], observed: dict[str, Any]) -> Change:
        """Compute the change needed to reach the desired state."""
        return Change()

    async def apply(
        self, conn: Connection | None, args: dict[str, Any], change: Change, ctx: ModuleContext
    ) -> dict[str, Any]:
        """Carry out a change and return extra result fields."""
        return {}

    def result(self, args: dict[str, Any], observed: dict[str, Any], change: Change) -> dict[str, Any]:
        """Result fields reported whether or not anything changed."""
        return {}

    @property
    def needs_connection(self) -> bool:
        return True


def parse_mode(mode: Any) -> int | None:
    """Normalize a file mode given as "0644" or "644" to an int.

    Integers are taken as already converted (YAML reads 0644 as octal).
    Symbolic modes such as "u=rw" are not supported.

    Raises:
        ApplyError: If the mode is not an octal number
    """
    if mode is None or mode == "":
        return None
    if isinstance(mode, bool):
        raise ApplyError(f"Invalid mode: {mode!r}", mode=mode)
    if isinstance(mode, int):
        return mode
    try:
        return int(str(mode), 8)
    except ValueError:
        raise ApplyError(f"Invalid mode: {mode!r} (expected octal like 0644)", mode=mode)


def to_bool(value: Any) -> bool:
    """Interpret yes/no style module arguments."""
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)
