"""Command-line interface for fleetplay.

Exit codes:
    0   success
    1   other command errors
    2   one or more hosts failed
    3   one or more hosts were unreachable (and none failed)
    4   playbook, inventory, selector or configuration error
    5   invalid command-line options
    99  interrupted
"""

import asyncio
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Any

import click
import yaml
from rich.console import Console

from fleetplay import __version__
from fleetplay.config import MAX_FORKS, Settings, load_settings
from fleetplay.connections import ConnectionFactory
from fleetplay.exceptions import ConfigError, FleetplayError
from fleetplay.executor import STEP_CONTINUE, STEP_NO, STEP_YES, PlayExecutor
from fleetplay.graph import build_run_graphs
from fleetplay.inventory import Inventory, load_inventory, load_localhost
from fleetplay.logging import configure_logging, get_level_from_name, get_level_from_verbosity
from fleetplay.modules import MODULES, list_modules
from fleetplay.playbook import Task, load_playbook, parse_key_values
from fleetplay.progress import create_progress_reporter
from fleetplay.report import (
    EXIT_BAD_OPTIONS,
    EXIT_SYNTAX_ERROR,
    RunReport,
    host_listing,
    render_host_listing,
    render_task_listing,
    task_listing,
)
from fleetplay.types import Host

logger = logging.getLogger(__name__)

STEP_ANSWERS = {
    "y": STEP_YES,
    "yes": STEP_YES,
    "n": STEP_NO,
    "no": STEP_NO,
    "c": STEP_CONTINUE,
    "continue": STEP_CONTINUE,
}


class FleetplayCliError(click.ClickException):
    """A fleetplay error reported on the command line with its own exit code."""

    def __init__(self, message: str, exit_code: int = EXIT_SYNTAX_ERROR) -> None:
        super().__init__(message)
        self.exit_code = exit_code


class FleetplayGroup(click.Group):
    """Click group that reports usage errors with exit code 5."""

    def main(self, args: Any = None, prog_name: str | None = None, complete_var: str | None = None,
             standalone_mode: bool = True, **extra: Any) -> Any:
        if not standalone_mode:
            return super().main(args, prog_name, complete_var, standalone_mode=False, **extra)
        try:
            rv = super().main(args, prog_name, complete_var, standalone_mode=False, **extra)
        except click.UsageError as e:
            e.show()
            sys.exit(EXIT_BAD_OPTIONS)
        except click.ClickException as e:
            e.show()
            sys.exit(e.exit_code)
        except click.Abort:
            click.echo("Aborted!", err=True)
            sys.exit(1)
        sys.exit(rv if isinstance(rv, int) else 0)


def setup_logging(verbose: int, log_level: str | None, log_file: str | None, output_format: str = "text") -> None:
    """Configure logging from -v / --log-level / --log-file.

    JSON output keeps stdout machine readable, so console logging is
    limited to critical messages.
    """
    level = get_level_from_name(log_level) if log_level else get_level_from_verbosity(verbose)
    if output_format == "json":
        level = logging.CRITICAL
    configure_logging(level=level, log_file=log_file)


def parse_extra_vars(values: tuple[str, ...]) -> dict[str, Any]:
    """Merge -e values: `key=value` pairs, `@file.yml`, or inline YAML/JSON mappings.

    Raises:
        ConfigError: If a value cannot be parsed or a file is missing
    """
    result: dict[str, Any] = {}
    for value in values:
        value = value.strip()
        if value.startswith("@"):
            path = Path(value[1:])
            try:
                data = yaml.safe_load(path.read_text())
            except OSError as e:
                raise ConfigError(f"Cannot read extra vars file {path}: {e}")
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid extra vars file {path}: {e}")
            if data is None:
                continue
            if not isinstance(data, dict):
                raise ConfigError(f"Extra vars file {path} must contain a mapping")
            result.update(data)
        elif value.startswith("{"):
            try:
                data = yaml.safe_load(value)
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid extra vars '{value}': {e}")
            if not isinstance(data, dict):
                raise ConfigError(f"Extra vars '{value}' must be a mapping")
            result.update(data)
        elif value:
            try:
                result.update(parse_key_values(value))
            except FleetplayError as e:
                raise ConfigError(f"Invalid extra vars '{value}': {e}")
    return result


def resolve_inventory(inventory: str | None, settings: Settings) -> Inventory:
    """Load -i, else the configured default inventory, else localhost only."""
    path = inventory or settings.inventory
    if path is None:
        logger.info("No inventory given, using localhost")
        return load_localhost()
    return load_inventory(path)


async def prompt_step(host: Host, task: Task) -> str:
    """Ask on the terminal whether to run a task (step mode)."""

    def ask() -> str:
        answer = click.prompt(
            f"Perform task: {task.name} on {host.name} (N)o/(y)es/(c)ontinue",
            type=click.Choice(list(STEP_ANSWERS), case_sensitive=False),
            default="n",
            show_choices=False,
            err=True,
        )
        return STEP_ANSWERS[answer.lower()]

    return await asyncio.to_thread(ask)


async def execute_run(executor: PlayExecutor, graphs: list) -> RunReport:
    """Run the graphs, turning Ctrl-C into a graceful stop."""
    loop = asyncio.get_running_loop()
    installed = False
    try:
        loop.add_signal_handler(signal.SIGINT, executor.stop_event.set)
        installed = True
    except (NotImplementedError, RuntimeError):
        logger.debug("Cannot install SIGINT handler, Ctrl-C will abort immediately")
    try:
        return await executor.run(graphs)
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)


@click.group(cls=FleetplayGroup, invoke_without_command=True)
@click.option("--version", is_flag=True, help="Show version and exit")
@click.pass_context
def cli(ctx: click.Context, version: bool) -> None:
    """fleetplay - declarative configuration orchestration."""
    if version:
        click.echo(f"fleetplay {__version__}")
        ctx.exit(0)
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@cli.command("run")
@click.argument("playbook", type=click.Path())
@click.option("--inventory", "-i", default=None, help="Inventory file (INI, YAML, JSON or script)")
@click.option("--limit", "-l", default=None, help="Further limit hosts (e.g. 'nginx[0]', 'web*:!web03')")
@click.option("--tags", "-t", "tags", multiple=True, help="Only run tasks with these tags (comma separated)")
@click.option("--skip-tags", multiple=True, help="Skip tasks with these tags (comma separated)")
@click.option("--check", "-C", is_flag=True, help="Predict changes without applying them")
@click.option("--diff", "-D", is_flag=True, help="Show before/after diffs of changed files")
@click.option("--step", is_flag=True, help="Confirm each task before running it")
@click.option("--start-at-task", default=None, help="Start the run at the task with this name")
@click.option("--forks", "-f", type=click.IntRange(1, MAX_FORKS), default=None,
              help="Number of hosts processed in parallel (default: 5)")
@click.option("--extra-vars", "-e", multiple=True, help="key=value, YAML/JSON mapping, or @file.yml")
@click.option("--syntax-check", is_flag=True, help="Only check the playbook syntax")
@click.option("--list-tasks", is_flag=True, help="List the tasks that would run")
@click.option("--list-hosts", is_flag=True, help="List the hosts each play would run on")
@click.option("--format", "output_format", type=click.Choice(["text", "json"]), default="text",
              help="Output format")
@click.option("--save-results", type=click.Path(), default=None, help="Write the JSON report to this file")
@click.option("--log-file", type=click.Path(), default=None, help="Write logs to file (in addition to console)")
@click.option("--log-level", type=click.Choice(["trace", "debug", "info", "warning", "error"]),
              default=None, help="Set log level explicitly (overrides -v)")
@click.option("-v", "--verbose", count=True, help="Increase verbosity: -v=info, -vv=debug, -vvv=trace")
def run_playbook(
    playbook: str,
    inventory: str | None,
    limit: str | None,
    tags: tuple[str, ...],
    skip_tags: tuple[str, ...],
    check: bool,
    diff: bool,
    step: bool,
    start_at_task: str | None,
    forks: int | None,
    extra_vars: tuple[str, ...],
    syntax_check: bool,
    list_tasks: bool,
    list_hosts: bool,
    output_format: str,
    save_results: str | None,
    log_file: str | None,
    log_level: str | None,
    verbose: int,
) -> None:
    """Run a playbook against an inventory.

    Examples:
        fleetplay run site.yml -i hosts.ini

        fleetplay run site.yml -i hosts.ini --limit 'nginx[0]' --check --diff

        fleetplay run site.yml -i hosts.yml --tags config -e http_port=8080
    """
    setup_logging(verbose, log_level, log_file, output_format)
    console = Console(highlight=False)

    try:
        settings = load_settings(overrides={"forks": forks, "log_file": log_file})
        if settings.log_file and not log_file:
            setup_logging(verbose, log_level, settings.log_file, output_format)
        variables = parse_extra_vars(extra_vars)
        plays = load_playbook(playbook)
        inv = resolve_inventory(inventory, settings)
        graphs = build_run_graphs(
            plays,
            inv,
            limit=limit,
            tags=_split_csv(tags),
            skip_tags=_split_csv(skip_tags),
            start_at_task=start_at_task,
            extra_vars=variables,
        )
    except FleetplayError as e:
        raise FleetplayCliError(str(e), EXIT_SYNTAX_ERROR)

    if syntax_check:
        click.echo(f"playbook: {playbook}")
        return

    if list_hosts or list_tasks:
        if output_format == "json":
            listing: dict[str, Any] = {}
            if list_hosts:
                listing["hosts"] = host_listing(graphs)
            if list_tasks:
                listing["tasks"] = task_listing(graphs)
            click.echo(json.dumps(listing, indent=2))
        else:
            if list_hosts:
                render_host_listing(console, graphs)
            if list_tasks:
                render_task_listing(console, graphs)
        return

    executor = PlayExecutor(
        forks=settings.forks,
        check_mode=check,
        diff=diff,
        step=step,
        confirm=prompt_step if step else None,
        reporter=create_progress_reporter(
            output_format,
            enabled=output_format == "text" or verbose > 0,
            show_diff=diff,
            verbose=verbose > 0,
        ),
        connection_factory=ConnectionFactory(settings),
        settings=settings,
    )
    report = asyncio.run(execute_run(executor, graphs))

    if output_format == "json":
        click.echo(report.to_json())
    else:
        if verbose > 1:
            report.render_listing(console)
        report.render_recap(console)

    if save_results:
        Path(save_results).write_text(report.to_json())
        logger.info(f"Results saved to {save_results}")

    code = report.exit_code()
    if code:
        raise SystemExit(code)


def _split_csv(values: tuple[str, ...]) -> list[str]:
    return [item.strip() for value in values for item in value.split(",") if item.strip()]


@cli.group()
def inventory() -> None:
    """Inventory inspection commands."""
    pass


@inventory.command("list")
@click.option("--inventory", "-i", "inventory_file", required=True, help="Inventory file")
@click.option("--format", "output_format", type=click.Choice(["text", "json"]), default="text",
              help="Output format")
def inventory_list(inventory_file: str, output_format: str) -> None:
    """Show groups and their hosts.

    Examples:
        fleetplay inventory list -i hosts.ini
    """
    try:
        inv = load_inventory(inventory_file)
        inv.check_acyclic()
    except FleetplayError as e:
        raise FleetplayCliError(str(e), EXIT_SYNTAX_ERROR)

    groups = {
        group.name: {
            "hosts": inv.members(group.name),
            "children": list(group.children),
            "vars": group.vars,
        }
        for group in inv.list_groups()
    }
    if output_format == "json":
        click.echo(json.dumps({"groups": groups, "hosts": list(inv.hosts)}, indent=2, default=str))
        return

    click.echo(f"Inventory: {inventory_file}")
    click.echo(f"Hosts: {len(inv.hosts)}")
    for name, group in groups.items():
        children = f" (children: {', '.join(group['children'])})" if group["children"] else ""
        click.echo(f"\n@{name}{children}")
        for host in group["hosts"]:
            click.echo(f"  {host}")


@inventory.command("vars")
@click.argument("hostname")
@click.option("--inventory", "-i", "inventory_file", required=True, help="Inventory file")
@click.option("--extra-vars", "-e", multiple=True, help="key=value, YAML/JSON mapping, or @file.yml")
@click.option("--format", "output_format", type=click.Choice(["text", "json"]), default="text",
              help="Output format")
def inventory_vars(hostname: str, inventory_file: str, extra_vars: tuple[str, ...], output_format: str) -> None:
    """Show the resolved variables of a host.

    Examples:
        fleetplay inventory vars web01 -i hosts.ini

        fleetplay inventory vars web01 -i hosts.ini -e http_port=9000 --format json
    """
    try:
        inv = load_inventory(inventory_file)
        host = inv.get_host(hostname, parse_extra_vars(extra_vars))
    except FleetplayError as e:
        raise FleetplayCliError(str(e), EXIT_SYNTAX_ERROR)

    if host is None:
        available = ", ".join(sorted(inv.hosts))
        raise click.ClickException(
            f"Host '{hostname}' not found in inventory.\n"
            f"Available hosts: {available}"
        )

    variables = dict(host.vars)
    if output_format == "json":
        click.echo(json.dumps(variables, indent=2, default=str))
    else:
        click.echo(f"{host.name} ({host.connection}://{host.address}:{host.port})")
        click.echo(yaml.safe_dump(variables, default_flow_style=False, sort_keys=True).rstrip())


@cli.command("modules")
@click.option("--format", "output_format", type=click.Choice(["text", "json"]), default="text",
              help="Output format")
def modules_list(output_format: str) -> None:
    """List the available modules."""
    entries = []
    for name in list_modules():
        module = MODULES[name]
        doc = (type(module).__doc__ or "").strip().splitlines()
        entries.append({
            "name": name,
            "description": doc[0] if doc else "",
            "check_mode": module.supports_check_mode,
            "parameters": sorted(module.parameters),
        })
    if output_format == "json":
        click.echo(json.dumps(entries, indent=2))
        return
    width = max(len(e["name"]) for e in entries)
    for entry in entries:
        click.echo(f"{entry['name']:<{width}}  {entry['description']}")


def main() -> None:
    """Package entry point for the fleetplay command-line interface."""
    cli()


if __name__ == "__main__":
    main()
