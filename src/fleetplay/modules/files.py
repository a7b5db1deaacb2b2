"""File modules: file, copy, template, lineinfile.

All of them compare the target's current content and permission bits with
the desired ones and only write when they differ, so a second run against
a converged host reports ok.
"""

import re
from typing import Any

from jinja2 import Environment, StrictUndefined, TemplateError

from ..connections import Connection
from ..exceptions import ApplyError
from .base import Change, Module, ModuleContext, parse_mode, to_bool

__all__ = ["FileModule", "CopyModule", "TemplateModule", "LineInFileModule"]

FILE_STATES = ("file", "directory", "touch", "absent")


def _state_name(observed: dict[str, Any] | None) -> str:
    if observed is None:
        return "absent"
    return "directory" if observed["isdir"] else "file"


def _decode(data: bytes | None) -> str | None:
    if data is None:
        return None
    return data.decode("utf-8", errors="replace")


class FileModule(Module):
    """Manage the existence and mode of files and directories.

    Arguments:
        path: Path on the target
        state: file (must exist), directory, touch (create if missing), absent
        mode: Permission bits, e.g. "0644"
    """

    name = "file"
    parameters = {"path": None, "state": "file", "mode": None}
    required = ("path",)
    free_form = None

    def validate(self, args: dict[str, Any], ctx: ModuleContext) -> dict[str, Any]:
        args = super().validate(args, ctx)
        if args["state"] not in FILE_STATES:
            raise ApplyError(
                f"Invalid state: {args['state']} (expected one of {', '.join(FILE_STATES)})",
                path=args["path"],
            )
        args["mode"] = parse_mode(args["mode"])
        args["path"] = str(args["path"])
        return args

    async def observe(self, conn: Connection | None, args: dict[str, Any], ctx: ModuleContext) -> dict[str, Any]:
        return {"stat": await conn.stat(args["path"])}

    def plan(self, args: dict[str, Any], observed: dict[str, Any]) -> Change:
        st = observed["stat"]
        state = args["state"]
        path = args["path"]
        change = Change(before=_state_name(st))

        if state == "absent":
            if st is not None:
                change.actions.append(f"remove {path}")
            change.after = "absent"
            return change

        if state == "directory":
            if st is None:
                change.actions.append(f"create directory {path}")
            elif not st["isdir"]:
                raise ApplyError(f"Path exists but is not a directory: {path}", path=path)
            change.after = "directory"
        elif state == "touch":
            if st is None:
                change.actions.append(f"create file {path}")
            change.after = _state_name(st) if st is not None else "file"
        else:
            if st is None:
                raise ApplyError(f"File does not exist: {path}", path=path)
            change.after = _state_name(st)

        mode = args["mode"]
        if mode is not None and (st is None or st["mode"] != mode):
            change.actions.append(f"chmod {mode:04o} {path}")
            change.data["mode"] = mode
        return change

    async def apply(
        self, conn: Connection | None, args: dict[str, Any], change: Change, ctx: ModuleContext
    ) -> dict[str, Any]:
        path = args["path"]
        for action in change.actions:
            if action.startswith("remove"):
                await conn.remove(path)
            elif action.startswith("create directory"):
                await conn.mkdir(path)
            elif action.startswith("create file"):
                await conn.touch(path)
            elif action.startswith("chmod"):
                await conn.chmod(path, change.data["mode"])
        return {}

    def result(self, args: dict[str, Any], observed: dict[str, Any], change: Change) -> dict[str, Any]:
        return {"path": args["path"], "state": args["state"]}


class CopyModule(Module):
    """Copy a local file, or literal content, to the target.

    Arguments:
        dest: Destination path on the target
        src: Local source file (searched in files/ of the role or playbook)
        content: Literal content, used instead of src
        mode: Permission bits for dest
    """

    name = "copy"
    parameters = {"dest": None, "src": None, "content": None, "mode": None}
    required = ("dest",)
    source_subdir = "files"

    def validate(self, args: dict[str, Any], ctx: ModuleContext) -> dict[str, Any]:
        args = super().validate(args, ctx)
        if (args["src"] is None) == (args["content"] is None):
            raise ApplyError(f"{self.name}: exactly one of src or content is required", dest=args["dest"])
        args["mode"] = parse_mode(args["mode"])
        args["dest"] = str(args["dest"])
        args["desired"] = self.desired_content(args, ctx)
        return args

    def desired_content(self, args: dict[str, Any], ctx: ModuleContext) -> bytes:
        if args["content"] is not None:
            return str(args["content"]).encode()
        path = ctx.find_file(str(args["src"]), self.source_subdir)
        return path.read_bytes()

    async def observe(self, conn: Connection | None, args: dict[str, Any], ctx: ModuleContext) -> dict[str, Any]:
        dest = args["dest"]
        st = await conn.stat(dest)
        if st is not None and st["isdir"] and args["src"] is not None:
            dest = f"{dest.rstrip('/')}/{str(args['src']).rsplit('/', 1)[-1]}"
            st = await conn.stat(dest)
        if st is not None and st["isdir"]:
            raise ApplyError(f"Destination is a directory: {dest}", dest=dest)
        content = await conn.read_file(dest) if st is not None else None
        return {"dest": dest, "stat": st, "content": content}

    def plan(self, args: dict[str, Any], observed: dict[str, Any]) -> Change:
        dest = observed["dest"]
        desired: bytes = args["desired"]
        current: bytes | None = observed["content"]
        change = Change(before=_decode(current) or "", after=_decode(desired))
        change.data["dest"] = dest

        if current != desired:
            change.actions.append(f"write {dest}")
        mode = args["mode"]
        st = observed["stat"]
        if mode is not None and (st is None or st["mode"] != mode):
            change.actions.append(f"chmod {mode:04o} {dest}")
        return change

    async def apply(
        self, conn: Connection | None, args: dict[str, Any], change: Change, ctx: ModuleContext
    ) -> dict[str, Any]:
        dest = change.data["dest"]
        if any(a.startswith("write") for a in change.actions):
            await conn.write_file(dest, args["desired"], mode=args["mode"])
        elif args["mode"] is not None:
            await conn.chmod(dest, args["mode"])
        return {}

    def result(self, args: dict[str, Any], observed: dict[str, Any], change: Change) -> dict[str, Any]:
        return {"dest": observed["dest"], "size": len(args["desired"])}


class TemplateModule(CopyModule):
    """Render a Jinja2 template with the host's variables and copy it.

    Arguments:
        src: Local template (searched in templates/ of the role or playbook)
        dest: Destination path on the target
        mode: Permission bits for dest
    """

    name = "template"
    parameters = {"dest": None, "src": None, "mode": None}
    required = ("src", "dest")
    source_subdir = "templates"

    def validate(self, args: dict[str, Any], ctx: ModuleContext) -> dict[str, Any]:
        args = Module.validate(self, args, ctx)
        args["content"] = None
        args["mode"] = parse_mode(args["mode"])
        args["dest"] = str(args["dest"])
        args["desired"] = self.desired_content(args, ctx)
        return args

    def desired_content(self, args: dict[str, Any], ctx: ModuleContext) -> bytes:
        path = ctx.find_file(str(args["src"]), self.source_subdir)
        env = Environment(undefined=StrictUndefined, keep_trailing_newline=True)
        try:
            template = env.from_string(path.read_text())
            return template.render(**dict(ctx.host.vars)).encode()
        except TemplateError as e:
            raise ApplyError(f"Template error in {path}: {e}", src=str(path))

    async def observe(self, conn: Connection | None, args: dict[str, Any], ctx: ModuleContext) -> dict[str, Any]:
        st = await conn.stat(args["dest"])
        if st is not None and st["isdir"]:
            raise ApplyError(f"Destination is a directory: {args['dest']}", dest=args["dest"])
        content = await conn.read_file(args["dest"]) if st is not None else None
        return {"dest": args["dest"], "stat": st, "content": content}


class LineInFileModule(Module):
    """Ensure a line is present in, or absent from, a text file.

    Arguments:
        path: File on the target
        line: The line to insert or replace with (required for present)
        regexp: Lines matching this are replaced (present) or removed (absent)
        state: present or absent
        create: Create the file if it is missing (default: no)
        mode: Permission bits when creating the file
    """

    name = "lineinfile"
    parameters = {
        "path": None,
        "line": None,
        "regexp": None,
        "state": "present",
        "create": False,
        "mode": None,
    }
    required = ("path",)

    def validate(self, args: dict[str, Any], ctx: ModuleContext) -> dict[str, Any]:
        args = super().validate(args, ctx)
        if args["state"] not in ("present", "absent"):
            raise ApplyError(f"Invalid state: {args['state']}", path=args["path"])
        if args["state"] == "present" and args["line"] is None:
            raise ApplyError("line is required with state=present", path=args["path"])
        if args["state"] == "absent" and args["line"] is None and args["regexp"] is None:
            raise ApplyError("line or regexp is required with state=absent", path=args["path"])
        if args["regexp"] is not None:
            try:
                re.compile(args["regexp"])
            except re.error as e:
                raise ApplyError(f"Invalid regexp: {e}", regexp=args["regexp"])
        args["create"] = to_bool(args["create"])
        args["mode"] = parse_mode(args["mode"])
        args["path"] = str(args["path"])
        return args

    async def observe(self, conn: Connection | None, args: dict[str, Any], ctx: ModuleContext) -> dict[str, Any]:
        path = args["path"]
        data = await conn.read_file(path)
        if data is None:
            return {"content": None}
        try:
            return {"content": data.decode("utf-8")}
        except UnicodeDecodeError as e:
            # rewriting replacement characters would corrupt the file
            raise ApplyError(f"{path} is not valid UTF-8 text: {e.reason}", path=path)

    def plan(self, args: dict[str, Any], observed: dict[str, Any]) -> Change:
        current = observed["content"]
        path = args["path"]
        if current is None:
            if args["state"] == "absent":
                return Change(before="", after="")
            if not args["create"]:
                raise ApplyError(f"File does not exist: {path} (set create=yes)", path=path)

        lines = (current or "").splitlines()
        pattern = re.compile(args["regexp"]) if args["regexp"] is not None else None
        line = args["line"]

        def matches(candidate: str) -> bool:
            if pattern is not None:
                return bool(pattern.search(candidate))
            return candidate == line

        if args["state"] == "absent":
            new_lines = [c for c in lines if not matches(c)]
        else:
            new_lines = list(lines)
            found = [i for i, c in enumerate(lines) if matches(c)]
            if found:
                new_lines[found[-1]] = line
            elif line not in lines:
                new_lines.append(line)

        before = current or ""
        after = "\n".join(new_lines) + ("\n" if new_lines else "")
        if current is not None and new_lines == lines:
            after = before
        change = Change(before=before, after=after)
        if current is None or after != before:
            change.actions.append(f"write {path}")
        return change

    async def apply(
        self, conn: Connection | None, args: dict[str, Any], change: Change, ctx: ModuleContext
    ) -> dict[str, Any]:
        await conn.write_file(args["path"], (change.after or "").encode(), mode=args["mode"])
        return {}

    def result(self, args: dict[str, Any], observed: dict[str, Any], change: Change) -> dict[str, Any]:
        return {"path": args["path"]}
