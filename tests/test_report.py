"""Tests for run reports, exit codes and listings."""

import io
import json

import pytest
from rich.console import Console

from fleetplay.exceptions import DuplicateResultError
from fleetplay.graph import build_run_graphs
from fleetplay.inventory import load_inventory_ini
from fleetplay.playbook import Play, Task
from fleetplay.report import HostStats, RunReport, host_listing, render_task_listing, task_listing
from fleetplay.types import ExecutionResult, HostStatus, Outcome


def result(host, task_index, outcome, play_index=0, **kwargs):
    return ExecutionResult(play_index, host, task_index, f"task {task_index}", outcome, **kwargs)


def render(report, method="render_recap"):
    output = io.StringIO()
    getattr(report, method)(Console(file=output, width=120))
    return output.getvalue()


class TestHostStats:
    """Tests for per-host counters."""

    def test_record(self):
        """Test each outcome lands in its counter."""
        stats = HostStats()
        for outcome in Outcome:
            stats.record(result("web01", 0, outcome))
        assert stats.to_dict() == {
            "ok": 1, "changed": 1, "failed": 1, "skipped": 1, "unreachable": 1, "ignored": 0,
        }

    def test_ignored_failure(self):
        """Test ignored failures only count as ignored."""
        stats = HostStats()
        stats.record(result("web01", 0, Outcome.FAILED, ignored=True))
        assert stats.failed == 0
        assert stats.ignored == 1

    def test_merge(self):
        """Test merging totals."""
        a = HostStats(ok=1, changed=2)
        a.merge(HostStats(ok=3, failed=1))
        assert (a.ok, a.changed, a.failed) == (4, 2, 1)


class TestRunReport:
    """Tests for RunReport."""

    def test_duplicate_key(self):
        """Test a (play, host, task) key can only be recorded once."""
        report = RunReport()
        report.record(result("web01", 0, Outcome.OK))
        with pytest.raises(DuplicateResultError):
            report.record(result("web01", 0, Outcome.CHANGED))

    def test_same_task_other_play(self):
        """Test the play index is part of the key."""
        report = RunReport()
        report.record(result("web01", 0, Outcome.OK))
        report.record(result("web01", 0, Outcome.OK, play_index=1))
        assert len(report.results) == 2

    def test_results_for_ordered(self):
        """Test a host's results come back in task order."""
        report = RunReport()
        report.record(result("web01", 2, Outcome.OK))
        report.record(result("web02", 0, Outcome.OK))
        report.record(result("web01", 0, Outcome.CHANGED))
        assert [r.task_index for r in report.results_for("web01")] == [0, 2]
        assert report.get(0, "web02", 0).outcome == Outcome.OK
        assert report.get(0, "web02", 1) is None
        assert report.hosts() == ["web01", "web02"]

    def test_exit_ok(self):
        """Test a clean run exits 0."""
        report = RunReport()
        report.record(result("web01", 0, Outcome.CHANGED))
        report.record(result("web01", 1, Outcome.SKIPPED))
        assert report.exit_code() == 0

    def test_exit_failed_beats_unreachable(self):
        """Test failures take precedence over unreachable hosts."""
        report = RunReport()
        report.record(result("web01", 0, Outcome.UNREACHABLE))
        assert report.exit_code() == 3
        report.record(result("web02", 0, Outcome.FAILED))
        assert report.exit_code() == 2
        assert report.failed_hosts() == ["web02"]
        assert report.unreachable_hosts() == ["web01"]

    def test_exit_interrupted(self):
        """Test an interrupted run exits 99 whatever else happened."""
        report = RunReport()
        report.record(result("web01", 0, Outcome.FAILED))
        report.mark_interrupted()
        assert report.exit_code() == 99

    def test_ignored_failure_exit_ok(self):
        """Test ignored failures do not fail the run."""
        report = RunReport()
        report.record(result("web01", 0, Outcome.FAILED, ignored=True))
        report.record(result("web02", 0, Outcome.UNREACHABLE, ignored=True))
        assert report.exit_code() == 0
        assert report.failed_hosts() == []

    def test_exit_from_host_status(self):
        """Test a host that ended a play failed counts even without a failed result."""
        report = RunReport()
        report.record(result("web01", 0, Outcome.OK))
        report.set_host_status(0, "web01", HostStatus.FAILED)
        assert report.failed_hosts() == ["web01"]
        assert report.exit_code() == 2

    def test_exit_from_unreachable_status(self):
        """Test an unreachable host status alone gives exit code 3."""
        report = RunReport()
        report.set_host_status(0, "web01", HostStatus.UNREACHABLE)
        report.set_host_status(0, "web02", HostStatus.COMPLETED)
        assert report.unreachable_hosts() == ["web01"]
        assert report.exit_code() == 3

    def test_summary(self):
        """Test run totals."""
        report = RunReport()
        report.record(result("web01", 0, Outcome.CHANGED))
        report.record(result("web02", 0, Outcome.OK))
        report.record(result("web02", 1, Outcome.FAILED))
        summary = report.summary()
        assert summary["hosts"] == 2
        assert summary["tasks"] == 3
        assert summary["changed"] == 1
        assert summary["failed_hosts"] == ["web02"]
        assert summary["exit_code"] == 2
        assert "1 changed" in report.summary_line()

    def test_dry_run_wording(self):
        """Test check mode reports predicted changes."""
        report = RunReport(dry_run=True)
        report.record(result("web01", 0, Outcome.CHANGED))
        assert "1 would change" in report.summary_line()
        assert "would change" in render(report)

    def test_interrupted_summary_line(self):
        """Test interrupted runs say so."""
        report = RunReport()
        report.mark_interrupted()
        assert report.summary_line().endswith("(interrupted)")

    def test_to_json(self):
        """Test the JSON document."""
        report = RunReport()
        report.start_play(0, "web")
        report.record(result("web01", 0, Outcome.CHANGED, payload={"msg": "copied"}))
        data = json.loads(report.to_json())
        assert data["plays"] == [{"index": 0, "name": "web"}]
        assert data["results"][0]["outcome"] == "changed"
        assert data["results"][0]["payload"]["msg"] == "copied"
        assert data["stats"]["web01"]["changed"] == 1
        assert data["summary"]["exit_code"] == 0

    def test_render_recap(self):
        """Test the recap table lists every host."""
        report = RunReport()
        report.record(result("web01", 0, Outcome.OK))
        report.record(result("db01", 0, Outcome.FAILED))
        text = render(report)
        assert "PLAY RECAP" in text
        assert "web01" in text
        assert "db01" in text
        assert "2 host(s)" in text

    def test_render_listing(self):
        """Test the listing shows task names and messages."""
        report = RunReport()
        report.start_play(0, "web")
        report.record(result("web01", 0, Outcome.FAILED, payload={"msg": "boom [x]"}, ignored=True))
        text = render(report, "render_listing")
        assert "task 0" in text
        assert "boom [x]" in text
        assert "failed (ignored)" in text


class TestListings:
    """Tests for --list-tasks and --list-hosts data."""

    @pytest.fixture
    def graphs(self):
        inventory = load_inventory_ini("[nginx]\nweb01\nweb02\n[db]\ndb01\n")
        plays = [
            Play(
                name="web",
                hosts="nginx",
                tags=frozenset({"web"}),
                tasks=[Task("a", "ping", tags=frozenset({"x"})), Task("b", "ping")],
            ),
            Play(name="db", hosts="db", tasks=[Task("c", "ping")]),
        ]
        return build_run_graphs(plays, inventory)

    def test_task_listing(self, graphs):
        """Test tasks and their effective tags per play."""
        listing = task_listing(graphs)
        assert [p["play"] for p in listing] == ["web", "db"]
        assert listing[0]["tasks"][0] == {"name": "a", "module": "ping", "tags": ["web", "x"]}
        assert listing[1]["tasks"][0]["tags"] == []

    def test_host_listing(self, graphs):
        """Test hosts per play."""
        listing = host_listing(graphs)
        assert listing[0] == {"play": "web", "pattern": "nginx", "hosts": ["web01", "web02"]}
        assert listing[1]["hosts"] == ["db01"]

    def test_task_listing_per_host(self):
        """Test each host's listing marks the tasks its conditions skip."""
        inventory = load_inventory_ini("[web]\nweb01\nweb02\n")
        play = Play(
            name="web",
            hosts="web",
            tasks=[
                Task("everyone", "ping"),
                Task("first only", "ping", when=["inventory_hostname == 'web01'"]),
                Task("after check", "ping", when=["check.rc == 0"]),
                Task("check", "command", args={"cmd": "true"}, register="check"),
            ],
        )
        listing = task_listing(build_run_graphs([play], inventory))[0]

        assert list(listing["host_tasks"]) == ["web01", "web02"]
        web01 = listing["host_tasks"]["web01"]
        web02 = listing["host_tasks"]["web02"]
        assert [t["skip_reason"] for t in web01] == [None, None, None, None]
        assert web02[1]["name"] == "first only"
        assert web02[1]["skip_reason"] == "Conditional result was False"
        assert web02[2]["deferred"]
        assert [t["index"] for t in web02] == [0, 1, 2, 3]

    def test_render_task_listing_per_host(self):
        """Test the rendered listing shows per-host skips."""
        inventory = load_inventory_ini("[web]\nweb01\nweb02\n")
        play = Play(
            name="web",
            hosts="web",
            tasks=[Task("first only", "ping", when=["inventory_hostname == 'web01'"])],
        )
        output = io.StringIO()
        render_task_listing(Console(file=output, width=120), build_run_graphs([play], inventory))
        text = output.getvalue()
        assert "host: web01" in text
        assert "host: web02" in text
        web02_section = text.split("host: web02")[1]
        assert "first only (skipped: Conditional result was False)" in web02_section
        assert "skipped" not in text.split("host: web02")[0]
