"""Service module: manage systemd units through systemctl."""

import shlex
from typing import Any

from ..connections import Connection
from ..exceptions import ApplyError
from .base import Change, Module, ModuleContext, to_bool

__all__ = ["ServiceModule"]

SERVICE_STATES = ("started", "stopped", "restarted", "reloaded")


class ServiceModule(Module):
    """Start, stop, restart or reload a service and set whether it is enabled.

    started/stopped only act when the unit is not already in that state.
    restarted/reloaded always act and therefore always report changed.

    Arguments:
        name: Unit name (e.g., "nginx")
        state: started, stopped, restarted or reloaded
        enabled: Whether the unit starts at boot
    """

    name = "service"
    parameters = {"name": None, "state": None, "enabled": None}
    required = ("name",)

    def validate(self, args: dict[str, Any], ctx: ModuleContext) -> dict[str, Any]:
        args = super().validate(args, ctx)
        if args["state"] is None and args["enabled"] is None:
            raise ApplyError("service: one of state or enabled is required", name=args["name"])
        if args["state"] is not None and args["state"] not in SERVICE_STATES:
            raise ApplyError(
                f"Invalid state: {args['state']} (expected one of {', '.join(SERVICE_STATES)})",
                name=args["name"],
            )
        if args["enabled"] is not None:
            args["enabled"] = to_bool(args["enabled"])
        args["unit"] = shlex.quote(str(args["name"]))
        return args

    async def observe(self, conn: Connection | None, args: dict[str, Any], ctx: ModuleContext) -> dict[str, Any]:
        observed: dict[str, Any] = {}
        if args["state"] in ("started", "stopped"):
            _, _, rc = await conn.run(f"systemctl is-active --quiet {args['unit']}")
            observed["active"] = rc == 0
        if args["enabled"] is not None:
            _, _, rc = await conn.run(f"systemctl is-enabled --quiet {args['unit']}")
            observed["enabled"] = rc == 0
        return observed

    def plan(self, args: dict[str, Any], observed: dict[str, Any]) -> Change:
        change = Change()
        state = args["state"]
        if state == "started" and not observed["active"]:
            change.actions.append("start")
        elif state == "stopped" and observed["active"]:
            change.actions.append("stop")
        elif state == "restarted":
            change.actions.append("restart")
        elif state == "reloaded":
            change.actions.append("reload")

        if args["enabled"] is not None and observed["enabled"] != args["enabled"]:
            change.actions.append("enable" if args["enabled"] else "disable")
        return change

    async def apply(
        self, conn: Connection | None, args: dict[str, Any], change: Change, ctx: ModuleContext
    ) -> dict[str, Any]:
        for action in change.actions:
            stdout, stderr, rc = await conn.run(f"systemctl {action} {args['unit']}")
            if rc != 0:
                raise ApplyError(
                    f"systemctl {action} {args['name']} failed",
                    target_state="unknown",
                    stdout=stdout,
                    stderr=stderr,
                    rc=rc,
                )
        return {}

    def result(self, args: dict[str, Any], observed: dict[str, Any], change: Change) -> dict[str, Any]:
        result: dict[str, Any] = {"name": args["name"]}
        if args["state"] is not None:
            result["state"] = args["state"]
        if args["enabled"] is not None:
            result["enabled"] = args["enabled"]
        return result
