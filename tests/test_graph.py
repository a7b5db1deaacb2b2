"""Tests for building per-host task graphs."""

import pytest

from fleetplay.exceptions import ConditionEvaluationError, PlaybookSyntaxError, UnknownGroupError
from fleetplay.graph import (
    build_run_graphs,
    build_task_graph,
    host_variables,
    plan_deferred,
    render_value,
    runtime_names,
    runtime_variables,
    task_selected,
    template_names,
)
from fleetplay.inventory import load_inventory_ini
from fleetplay.playbook import Handler, Play, Task


@pytest.fixture
def inventory():
    return load_inventory_ini(
        "[all:vars]\nhttp_port=80\n"
        "[nginx]\nweb01 http_port=8443\nweb02\n"
        "[nginx:vars]\nhttp_port=8080\n"
        "[db]\ndb01\n"
    )


def make_play(tasks, hosts="nginx", **kwargs):
    return Play(name="test play", hosts=hosts, tasks=tasks, **kwargs)


class TestTaskSelected:
    """Tests for tag filtering."""

    def test_no_filters(self):
        """Test every task runs without tag filters."""
        assert task_selected(Task("t", "ping"), frozenset())

    def test_include(self):
        """Test --tags selects tasks carrying one of the tags."""
        task = Task("t", "ping", tags=frozenset({"config"}))
        assert task_selected(task, frozenset(), ["config"])
        assert not task_selected(task, frozenset(), ["deploy"])

    def test_play_tags_inherited(self):
        """Test play tags count as task tags."""
        assert task_selected(Task("t", "ping"), frozenset({"web"}), ["web"])

    def test_skip_wins(self):
        """Test --skip-tags beats --tags."""
        task = Task("t", "ping", tags=frozenset({"config", "slow"}))
        assert not task_selected(task, frozenset(), ["config"], ["slow"])

    def test_always(self):
        """Test always-tagged tasks run unless always is skipped."""
        task = Task("t", "ping", tags=frozenset({"always"}))
        assert task_selected(task, frozenset(), ["config"])
        assert not task_selected(task, frozenset(), ["config"], ["always"])

    def test_special_tags(self):
        """Test tagged, untagged and all selectors."""
        tagged = Task("t", "ping", tags=frozenset({"x"}))
        untagged = Task("u", "ping")
        assert task_selected(tagged, frozenset(), ["tagged"])
        assert not task_selected(untagged, frozenset(), ["tagged"])
        assert task_selected(untagged, frozenset(), ["untagged"])
        assert task_selected(untagged, frozenset(), ["all"])


class TestRenderValue:
    """Tests for argument rendering."""

    def test_plain_strings_untouched(self):
        """Test strings without template syntax are returned as is."""
        assert render_value("port {x}", {}) == "port {x}"

    def test_native_types(self):
        """Test a lone expression keeps its type."""
        assert render_value("{{ http_port }}", {"http_port": 8080}) == 8080

    def test_nested(self):
        """Test lists and dicts are rendered recursively."""
        rendered = render_value({"dest": "/srv/{{ name }}", "items": ["{{ a }}", 3]}, {"name": "app", "a": 1})
        assert rendered == {"dest": "/srv/app", "items": [1, 3]}


class TestHostVariables:
    """Tests for play-level variable layering."""

    def test_precedence(self, inventory):
        """Test role defaults < inventory < play vars < extra vars."""
        host = inventory.get_host("web02")
        play = make_play([], vars={"app": "play"}, role_defaults={"app": "default", "http_port": 1, "user": "www"})
        variables = host_variables(play, host, {"app": "extra"})
        assert variables["app"] == "extra"
        assert variables["http_port"] == 8080
        assert variables["user"] == "www"

    def test_magic_vars_not_overridden(self, inventory):
        """Test play vars cannot replace inventory_hostname."""
        host = inventory.get_host("web01")
        play = make_play([], vars={"inventory_hostname": "spoofed"})
        assert host_variables(play, host)["inventory_hostname"] == "web01"


class TestBuildTaskGraph:
    """Tests for build_task_graph."""

    def test_hosts_and_indices(self, inventory):
        """Test every host gets the tasks with stable indices."""
        play = make_play([Task("a", "ping"), Task("b", "ping")])
        graph = build_task_graph(play, inventory)
        assert graph.list_hosts() == ["web01", "web02"]
        assert [p.index for p in graph.tasks["web01"]] == [0, 1]
        assert graph.handler_offset() == 2

    def test_facts_shift_indices(self, inventory):
        """Test fact gathering takes index 0."""
        play = make_play([Task("a", "ping")], gather_facts=True)
        graph = build_task_graph(play, inventory)
        assert graph.tasks["web01"][0].index == 1
        assert graph.handler_offset() == 2

    def test_args_rendered_per_host(self, inventory):
        """Test arguments are rendered with each host's variables."""
        play = make_play([Task("cfg", "copy", args={"dest": "/etc/app.conf", "content": "port={{ http_port }}"})])
        graph = build_task_graph(play, inventory)
        assert graph.tasks["web01"][0].args["content"] == "port=8443"
        assert graph.tasks["web02"][0].args["content"] == "port=8080"

    def test_extra_vars(self, inventory):
        """Test extra vars override inventory variables."""
        play = make_play([Task("cfg", "debug", args={"msg": "{{ http_port }}"})])
        graph = build_task_graph(play, inventory, extra_vars={"http_port": 9000})
        assert graph.tasks["web01"][0].args["msg"] == 9000

    def test_when_false_skips(self, inventory):
        """Test a false condition marks the task skipped for that host only."""
        play = make_play([Task("only web01", "ping", when=["inventory_hostname == 'web01'"])])
        graph = build_task_graph(play, inventory)
        assert not graph.tasks["web01"][0].skipped
        assert graph.tasks["web02"][0].skip_reason == "Conditional result was False"

    def test_when_undefined_variable(self, inventory):
        """Test a condition on an undefined variable aborts the build."""
        play = make_play([Task("t", "ping", when=["nope == 1"])])
        with pytest.raises(ConditionEvaluationError):
            build_task_graph(play, inventory)

    def test_render_error(self, inventory):
        """Test undefined variables in arguments become a per-host render error."""
        play = make_play([Task("t", "debug", args={"msg": "{{ nope }}"})])
        graph = build_task_graph(play, inventory)
        assert "nope" in graph.tasks["web01"][0].render_error

    def test_limit(self, inventory):
        """Test --limit narrows the hosts."""
        graph = build_task_graph(make_play([Task("a", "ping")]), inventory, limit="nginx[1]")
        assert graph.list_hosts() == ["web02"]

    def test_unknown_group(self, inventory):
        """Test an unknown host selector fails the build."""
        with pytest.raises(UnknownGroupError):
            build_task_graph(make_play([], hosts="mail"), inventory)

    def test_tags(self, inventory):
        """Test tag filtering keeps indices of the surviving tasks."""
        play = make_play([
            Task("a", "ping", tags=frozenset({"x"})),
            Task("b", "ping", tags=frozenset({"y"})),
            Task("c", "ping", tags=frozenset({"x"})),
        ])
        graph = build_task_graph(play, inventory, tags=["x"])
        assert [t.name for t in graph.list_tasks()] == ["a", "c"]
        assert [p.index for p in graph.tasks["web01"]] == [0, 2]

    def test_skip_tags(self, inventory):
        """Test --skip-tags removes tasks."""
        play = make_play([Task("a", "ping", tags=frozenset({"x"})), Task("b", "ping")])
        graph = build_task_graph(play, inventory, skip_tags=["x"])
        assert [t.name for t in graph.list_tasks()] == ["b"]

    def test_start_at_task(self, inventory):
        """Test tasks before the start task are dropped."""
        play = make_play([Task("a", "ping"), Task("b", "ping"), Task("c", "ping")])
        graph = build_task_graph(play, inventory, start_at_task="b")
        assert [t.name for t in graph.list_tasks()] == ["b", "c"]
        assert [p.index for p in graph.tasks["web01"]] == [1, 2]

    def test_start_at_unknown_task(self, inventory):
        """Test an unknown start task is an error."""
        with pytest.raises(PlaybookSyntaxError):
            build_task_graph(make_play([Task("a", "ping")]), inventory, start_at_task="zzz")

    def test_handlers_planned(self, inventory):
        """Test handlers are planned per host after the tasks."""
        play = make_play([Task("a", "ping")], handlers=[Handler("h1", "ping"), Handler("h2", "ping")])
        graph = build_task_graph(play, inventory)
        assert [p.index for p in graph.handlers["web02"]] == [1, 2]


class TestBuildRunGraphs:
    """Tests for multi-play graphs."""

    def test_play_indices(self, inventory):
        """Test each graph carries its play index."""
        plays = [make_play([Task("a", "ping")]), make_play([Task("b", "ping")], hosts="db")]
        graphs = build_run_graphs(plays, inventory)
        assert [g.play_index for g in graphs] == [0, 1]
        assert graphs[1].list_hosts() == ["db01"]

    def test_start_at_task_skips_plays(self, inventory):
        """Test plays before the one containing the start task are left out."""
        plays = [
            make_play([Task("a", "ping")]),
            make_play([Task("b", "ping"), Task("c", "ping")], hosts="db"),
            make_play([Task("d", "ping")]),
        ]
        graphs = build_run_graphs(plays, inventory, start_at_task="c")
        assert [g.play_index for g in graphs] == [1, 2]
        assert [t.name for t in graphs[0].list_tasks()] == ["c"]
        assert [t.name for t in graphs[1].list_tasks()] == ["d"]

    def test_start_at_task_missing(self, inventory):
        """Test a start task that is in no play."""
        with pytest.raises(PlaybookSyntaxError):
            build_run_graphs([make_play([Task("a", "ping")])], inventory, start_at_task="zzz")


class TestDeferredTasks:
    """Tests for tasks that read registered results or facts."""

    def test_runtime_names(self):
        """Test registered names and facts are run-time variables."""
        plays = [
            make_play([Task("a", "command", register="out")], handlers=[Handler("h", "ping", register="h_out")]),
            make_play([], gather_facts=True),
        ]
        assert runtime_names(plays) == {"out", "h_out", "ansible_facts"}

    def test_template_names(self):
        """Test names are found in nested arguments."""
        args = {"msg": "{{ out.stdout }}", "items": ["{{ port }}", "plain"], "n": 3}
        assert template_names(args) == {"out", "port"}

    def test_deferred_when_reading_registered(self, inventory):
        """Test a task whose condition reads a registered result is planned at run time."""
        play = make_play([
            Task("check", "command", args={"cmd": "true"}, register="out"),
            Task("uses out", "ping", when=["out.rc == 0"]),
            Task("uses args", "debug", args={"msg": "{{ out.stdout }}"}),
            Task("plain", "ping", when=["http_port == 8443"]),
        ])
        graph = build_task_graph(play, inventory)
        planned = graph.tasks["web01"]
        assert [p.deferred for p in planned] == [False, True, True, False]
        assert planned[1].skip_reason is None
        assert planned[1].render_error is None
        assert graph.tasks["web02"][3].skipped

    def test_registered_in_earlier_play(self, inventory):
        """Test names registered by an earlier play defer tasks in later plays."""
        plays = [
            make_play([Task("check", "command", args={"cmd": "true"}, register="out")]),
            make_play([Task("uses out", "ping", when=["out.rc == 0"])]),
        ]
        graphs = build_run_graphs(plays, inventory)
        assert graphs[1].tasks["web01"][0].deferred

    def test_plan_deferred(self, inventory):
        """Test planning a deferred task against run-time variables."""
        play = make_play([Task("uses out", "debug", args={"msg": "rc={{ out.rc }}"}, when=["out.rc == 0"])])
        graph = build_task_graph(play, inventory, runtime={"out"})
        host = graph.hosts["web01"]

        ran = plan_deferred(graph.tasks["web01"][0], runtime_variables(host, {"out": {"rc": 0}}))
        assert not ran.deferred
        assert ran.args == {"msg": "rc=0"}

        skipped = plan_deferred(graph.tasks["web01"][0], runtime_variables(host, {"out": {"rc": 1}}))
        assert skipped.skip_reason == "Conditional result was False"

    def test_plan_deferred_condition_error(self, inventory):
        """Test an unevaluable deferred condition becomes a task error, not an exception."""
        play = make_play([Task("uses out", "ping", when=["out.rc == 0"])])
        graph = build_task_graph(play, inventory, runtime={"out"})
        planned = plan_deferred(graph.tasks["web01"][0], runtime_variables(graph.hosts["web01"], {}))
        assert "out" in planned.render_error

    def test_runtime_cannot_override_magic_vars(self, inventory):
        """Test a registered name cannot shadow inventory_hostname."""
        graph = build_task_graph(make_play([Task("a", "ping")]), inventory)
        variables = runtime_variables(graph.hosts["web01"], {"inventory_hostname": "evil", "out": 1})
        assert variables["inventory_hostname"] == "web01"
        assert variables["out"] == 1
        assert variables["http_port"] == 8443
