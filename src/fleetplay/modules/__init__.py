"""Module registry.

Modules are the units of change fleetplay applies to a host. Each one is a
Module subclass registered here under its short name; tasks refer to them
by that name (`copy:`, `service:`, ...). The Ansible `ansible.builtin.`
prefix is accepted as an alias.

Usage:
    from fleetplay.modules import get_module, register_module

    copy = get_module("copy")
    register_module(MyModule())
"""

from .base import Change, Module, ModuleContext
from .command import CommandModule, ShellModule
from .files import CopyModule, FileModule, LineInFileModule, TemplateModule
from .service import ServiceModule
from .utility import DebugModule, FailModule, PingModule, SetupModule
from ..exceptions import UnknownModuleError

BUILTIN_PREFIX = "ansible.builtin."

MODULES: dict[str, Module] = {}


def register_module(module: Module) -> None:
    """Register (or replace) a module under its name."""
    if not module.name:
        raise ValueError(f"{type(module).__name__} has no name")
    MODULES[module.name] = module


def has_module(name: str) -> bool:
    """Check if a module exists for the given name or builtin FQCN."""
    return _short_name(name) in MODULES


def get_module(name: str) -> Module:
    """Get a module by short name or `ansible.builtin.` FQCN.

    Raises:
        UnknownModuleError: If no module is registered under that name

    Example:
        >>> get_module("copy").name
        'copy'
        >>> get_module("ansible.builtin.copy").name
        'copy'
    """
    module = MODULES.get(_short_name(name))
    if module is None:
        raise UnknownModuleError(name)
    return module


def list_modules() -> list[str]:
    """List registered module names, sorted."""
    return sorted(MODULES)


def _short_name(name: str) -> str:
    if name.startswith(BUILTIN_PREFIX):
        return name[len(BUILTIN_PREFIX):]
    return name


for _module_class in (
    PingModule,
    DebugModule,
    FailModule,
    SetupModule,
    FileModule,
    CopyModule,
    TemplateModule,
    LineInFileModule,
    CommandModule,
    ShellModule,
    ServiceModule,
):
    register_module(_module_class())


__all__ = [
    "MODULES",
    "Change",
    "Module",
    "ModuleContext",
    "get_module",
    "has_module",
    "list_modules",
    "register_module",
]
