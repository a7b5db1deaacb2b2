"""Command execution modules: command and shell.

Idempotency comes from the `creates`/`removes` guards; without them a
command always runs and always reports changed.
"""

import shlex
from typing import Any

from ..connections import Connection
from ..exceptions import ApplyError
from .base import Change, Module, ModuleContext

__all__ = ["CommandModule", "ShellModule"]


class CommandModule(Module):
    """Run a command without shell interpretation.

    Arguments:
        cmd: Command line (also accepted free-form)
        chdir: Directory to run the command in
        creates: Skip if this path exists
        removes: Skip if this path does not exist
        stdin: Data passed to the command's standard input
    """

    name = "command"
    parameters = {"cmd": None, "chdir": None, "creates": None, "removes": None, "stdin": ""}
    required = ("cmd",)
    supports_check_mode = False
    free_form = "cmd"

    def command_line(self, args: dict[str, Any]) -> str:
        try:
            words = shlex.split(str(args["cmd"]))
        except ValueError as e:
            raise ApplyError(f"Cannot parse command: {e}", cmd=args["cmd"])
        return shlex.join(words)

    def validate(self, args: dict[str, Any], ctx: ModuleContext) -> dict[str, Any]:
        args = super().validate(args, ctx)
        args["command_line"] = self.command_line(args)
        if args["chdir"]:
            args["command_line"] = f"cd {shlex.quote(str(args['chdir']))} && {args['command_line']}"
        return args

    async def observe(self, conn: Connection | None, args: dict[str, Any], ctx: ModuleContext) -> dict[str, Any]:
        observed: dict[str, Any] = {}
        if args["creates"]:
            observed["creates_exists"] = await conn.stat(str(args["creates"])) is not None
        if args["removes"]:
            observed["removes_exists"] = await conn.stat(str(args["removes"])) is not None
        return observed

    def plan(self, args: dict[str, Any], observed: dict[str, Any]) -> Change:
        if observed.get("creates_exists"):
            return Change(data={"msg": f"skipped, since {args['creates']} exists"})
        if "removes_exists" in observed and not observed["removes_exists"]:
            return Change(data={"msg": f"skipped, since {args['removes']} does not exist"})
        return Change(actions=[f"run {args['command_line']}"])

    async def apply(
        self, conn: Connection | None, args: dict[str, Any], change: Change, ctx: ModuleContext
    ) -> dict[str, Any]:
        stdout, stderr, rc = await conn.run(args["command_line"], stdin=str(args["stdin"] or ""))
        result = {"cmd": args["cmd"], "stdout": stdout, "stderr": stderr, "rc": rc}
        if rc != 0:
            raise ApplyError(
                f"non-zero return code {rc}",
                target_state="unknown",
                **result,
            )
        return result

    def result(self, args: dict[str, Any], observed: dict[str, Any], change: Change) -> dict[str, Any]:
        result = {"cmd": args["cmd"]}
        if "msg" in change.data:
            result["msg"] = change.data["msg"]
        return result


class ShellModule(CommandModule):
    """Run a command through the target's shell (pipes, redirects, globs)."""

    name = "shell"

    def command_line(self, args: dict[str, Any]) -> str:
        return str(args["cmd"])
