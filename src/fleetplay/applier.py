"""Applying a single task to a single host.

apply_task() drives a module through observe -> plan -> apply and turns
the outcome into a result payload:

- nothing to change: ok
- change needed, check mode: changed (predicted, nothing applied), or
  skipped for modules that cannot predict their effect
- change needed: apply, then changed

Failures before anything was mutated raise ApplyError with
target_state="unchanged"; failures while applying raise ApplyError with
target_state="unknown". Lost connections raise UnreachableError.
"""

import difflib
import logging
from dataclasses import dataclass, field
from typing import Any

import asyncssh

from .connections import Connection
from .exceptions import ApplyError, UnreachableError
from .modules import Module, ModuleContext
from .types import Outcome

logger = logging.getLogger(__name__)

CONNECTION_LOST = (asyncssh.DisconnectError, asyncssh.ConnectionLost, BrokenPipeError, ConnectionResetError)


@dataclass
class ApplyResult:
    """Outcome and diagnostics of applying one task.

    Attributes:
        outcome: ok, changed or skipped (failures are raised)
        payload: msg, stdout, stderr, rc, diff and module specific fields
    """

    outcome: Outcome
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def changed(self) -> bool:
        return self.outcome == Outcome.CHANGED


def unified_diff(before: str | None, after: str | None, path: str = "") -> str:
    """Build a unified diff of two texts, empty when they are equal."""
    before = before or ""
    after = after or ""
    if before == after:
        return ""
    label = path or "target"
    return "".join(
        difflib.unified_diff(
            before.splitlines(keepends=True),
            after.splitlines(keepends=True),
            fromfile=f"before: {label}",
            tofile=f"after: {label}",
        )
    )


def _diff_payload(change: Any, args: dict[str, Any]) -> str:
    path = str(args.get("dest") or args.get("path") or change.data.get("dest") or "")
    return unified_diff(change.before, change.after, path)


async def apply_task(
    conn: Connection | None,
    module: Module,
    task_args: dict[str, Any],
    ctx: ModuleContext,
) -> ApplyResult:
    """Apply one task's module to a host through its connection.

    Args:
        conn: Open (or lazily opened) connection, None for modules that do
            not need one
        module: Module to run
        task_args: Rendered task arguments
        ctx: Host, check mode, diff and local search paths

    Returns:
        ApplyResult with outcome ok, changed or skipped

    Raises:
        ApplyError: If the module fails; payload carries diagnostics
        UnreachableError: If the connection is lost
    """
    name = module.name
    try:
        args = module.validate(task_args, ctx)
        observed = await module.observe(conn, args, ctx)
        change = module.plan(args, observed)
    except (ApplyError, UnreachableError):
        raise
    except CONNECTION_LOST as e:
        raise UnreachableError(ctx.host.name, str(e) or type(e).__name__)
    except Exception as e:
        logger.debug(f"{name} failed before applying on {ctx.host.name}", exc_info=True)
        raise ApplyError(f"{name}: {e}", target_state="unchanged", exception=type(e).__name__)

    payload = module.result(args, observed, change)
    if ctx.diff and change.changed:
        diff = _diff_payload(change, args)
        if diff:
            payload["diff"] = diff

    if not change.changed:
        return ApplyResult(Outcome.OK, payload)

    payload["actions"] = list(change.actions)
    if ctx.check_mode:
        if not module.supports_check_mode:
            payload["msg"] = f"{name} does not support check mode"
            return ApplyResult(Outcome.SKIPPED, payload)
        return ApplyResult(Outcome.CHANGED, payload)

    try:
        payload.update(await module.apply(conn, args, change, ctx))
    except UnreachableError:
        raise
    except ApplyError as e:
        if "diff" in payload:
            e.payload.setdefault("diff", payload["diff"])
        e.payload["target_state"] = "unknown"
        e.target_state = "unknown"
        raise
    except CONNECTION_LOST as e:
        raise UnreachableError(ctx.host.name, str(e) or type(e).__name__)
    except Exception as e:
        logger.debug(f"{name} failed while applying on {ctx.host.name}", exc_info=True)
        raise ApplyError(
            f"{name}: {e}",
            target_state="unknown",
            exception=type(e).__name__,
            **({"diff": payload["diff"]} if "diff" in payload else {}),
        )
    return ApplyResult(Outcome.CHANGED, payload)
