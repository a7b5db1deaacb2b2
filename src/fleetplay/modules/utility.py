"""Utility modules: ping, debug, fail, setup."""

from typing import Any

from ..connections import Connection
from ..exceptions import ApplyError
from .base import Change, Module, ModuleContext

__all__ = ["PingModule", "DebugModule", "FailModule", "SetupModule"]


class PingModule(Module):
    """Verify the host can be reached and can run commands."""

    name = "ping"
    parameters = {"data": "pong"}

    async def observe(self, conn: Connection | None, args: dict[str, Any], ctx: ModuleContext) -> dict[str, Any]:
        stdout, stderr, rc = await conn.run("echo pong")
        if rc != 0:
            raise ApplyError("ping failed", stdout=stdout, stderr=stderr, rc=rc)
        return {}

    def result(self, args: dict[str, Any], observed: dict[str, Any], change: Change) -> dict[str, Any]:
        return {"ping": args["data"]}


class DebugModule(Module):
    """Print a message or the value of a variable."""

    name = "debug"
    parameters = {"msg": "Hello world!", "var": None}
    free_form = "msg"

    def validate(self, args: dict[str, Any], ctx: ModuleContext) -> dict[str, Any]:
        args = super().validate(args, ctx)
        if args["var"] is not None:
            args["value"] = ctx.host.vars.get(str(args["var"]), "VARIABLE IS NOT DEFINED!")
        return args

    def result(self, args: dict[str, Any], observed: dict[str, Any], change: Change) -> dict[str, Any]:
        if args["var"] is not None:
            return {str(args["var"]): args["value"]}
        return {"msg": args["msg"]}

    @property
    def needs_connection(self) -> bool:
        return False


class FailModule(Module):
    """Fail the task with a custom message."""

    name = "fail"
    parameters = {"msg": "Failed as requested from task"}
    free_form = "msg"

    def plan(self, args: dict[str, Any], observed: dict[str, Any]) -> Change:
        raise ApplyError(str(args["msg"]))

    @property
    def needs_connection(self) -> bool:
        return False


FACT_COMMANDS = {
    "hostname": "uname -n",
    "system": "uname -s",
    "kernel": "uname -r",
    "architecture": "uname -m",
    "python_version": "python3 -c 'import platform; print(platform.python_version())' 2>/dev/null",
    "date_time": "date -u +%Y-%m-%dT%H:%M:%SZ",
}


class SetupModule(Module):
    """Gather basic facts about the host."""

    name = "setup"
    parameters = {}

    async def observe(self, conn: Connection | None, args: dict[str, Any], ctx: ModuleContext) -> dict[str, Any]:
        script = "; ".join(f"echo \"$({command})\"" for command in FACT_COMMANDS.values())
        stdout, stderr, rc = await conn.run(script)
        if rc != 0:
            raise ApplyError("fact gathering failed", stdout=stdout, stderr=stderr, rc=rc)
        lines = stdout.splitlines()
        lines += [""] * (len(FACT_COMMANDS) - len(lines))
        return {"facts": {key: value.strip() for key, value in zip(FACT_COMMANDS, lines)}}

    def result(self, args: dict[str, Any], observed: dict[str, Any], change: Change) -> dict[str, Any]:
        return {"facts": observed["facts"]}
