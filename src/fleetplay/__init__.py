"""fleetplay - declarative configuration orchestration.

Describe the desired state of a fleet as plays of idempotent tasks, and
fleetplay resolves the inventory, expands each play into per-host task
lists, runs them concurrently across hosts, applies only what differs,
runs notified handlers once, and reports what happened.

Quick Start:
    from fleetplay.inventory import load_inventory
    from fleetplay.playbook import load_playbook
    from fleetplay.graph import build_run_graphs
    from fleetplay.executor import PlayExecutor

    inventory = load_inventory("hosts.ini")
    graphs = build_run_graphs(load_playbook("site.yml"), inventory)
    report = await PlayExecutor(forks=10).run(graphs)
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
