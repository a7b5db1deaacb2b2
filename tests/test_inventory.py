"""Tests for inventory loading and variable resolution."""

import json

import pytest

from fleetplay.exceptions import CyclicGroupError, InventoryError
from fleetplay.inventory import (
    Inventory,
    expand_host_pattern,
    load_inventory,
    load_inventory_ini,
    load_inventory_json,
    load_inventory_yaml,
    load_localhost,
    parse_value,
)

INI_INVENTORY = """
[all:vars]
http_port=80

[nginx]
web01 ansible_host=10.0.0.1 http_port=8443
web02 ansible_host=10.0.0.2

[nginx:vars]
http_port=8080

[frontend:children]
nginx

[frontend:vars]
tier=front
"""


class TestExpandHostPattern:
    """Tests for host range expansion."""

    def test_no_range(self):
        """Test plain names are returned unchanged."""
        assert expand_host_pattern("web01") == ["web01"]

    def test_numeric_range_keeps_padding(self):
        """Test zero padded numeric ranges."""
        assert expand_host_pattern("web[01:03]") == ["web01", "web02", "web03"]

    def test_stride(self):
        """Test range with a stride."""
        assert expand_host_pattern("db[1:5:2]") == ["db1", "db3", "db5"]

    def test_alpha_range(self):
        """Test alphabetic ranges."""
        assert expand_host_pattern("node-[a:c].lan") == ["node-a.lan", "node-b.lan", "node-c.lan"]

    def test_invalid_range(self):
        """Test mixed ranges are rejected."""
        with pytest.raises(InventoryError):
            expand_host_pattern("web[a:10]")


class TestParseValue:
    """Tests for INI value typing."""

    def test_types(self):
        """Test values are typed like YAML scalars."""
        assert parse_value("8080") == 8080
        assert parse_value("true") is True
        assert parse_value("hello") == "hello"
        assert parse_value("[1, 2]") == [1, 2]


class TestIniInventory:
    """Tests for INI inventories."""

    def test_groups_and_hosts(self):
        """Test groups, children and hosts are loaded."""
        inventory = load_inventory_ini(INI_INVENTORY)
        assert inventory.has_host("web01")
        assert inventory.members("nginx") == ["web01", "web02"]
        assert inventory.members("frontend") == ["web01", "web02"]
        assert "nginx" in inventory.get_group("frontend").children

    def test_precedence(self):
        """Test host vars beat child group vars, which beat parent and all vars."""
        hosts = load_inventory_ini(INI_INVENTORY).resolve()
        assert hosts["web01"].get_var("http_port") == 8443
        assert hosts["web02"].get_var("http_port") == 8080
        assert hosts["web02"].get_var("tier") == "front"

    def test_extra_vars_win(self):
        """Test extra vars override host vars."""
        hosts = load_inventory_ini(INI_INVENTORY).resolve({"http_port": 9000})
        assert hosts["web01"].get_var("http_port") == 9000

    def test_connection_fields(self):
        """Test connection variables become Host fields."""
        host = load_inventory_ini(INI_INVENTORY).get_host("web01")
        assert host.address == "10.0.0.1"
        assert host.port == 22
        assert host.connection == "ssh"
        assert not host.is_local

    def test_magic_variables(self):
        """Test inventory_hostname, group_names and groups are set."""
        host = load_inventory_ini(INI_INVENTORY).get_host("web02")
        assert host.vars["inventory_hostname"] == "web02"
        assert host.vars["group_names"] == ["frontend", "nginx"]
        assert host.vars["groups"]["nginx"] == ["web01", "web02"]

    def test_ungrouped_host(self):
        """Test hosts before any section land in ungrouped."""
        inventory = load_inventory_ini("lonely\n[web]\nweb01\n")
        assert inventory.members("ungrouped") == ["lonely"]
        assert inventory.members("all") == ["lonely", "web01"]

    def test_bad_host_vars(self):
        """Test a host token without '=' is an error."""
        with pytest.raises(InventoryError):
            load_inventory_ini("[web]\nweb01 port8080\n")

    def test_unknown_section_type(self):
        """Test an unknown section suffix is an error."""
        with pytest.raises(InventoryError):
            load_inventory_ini("[web:things]\nweb01\n")

    def test_cycle_detected(self):
        """Test group nesting cycles are rejected."""
        inventory = load_inventory_ini("[a:children]\nb\n[b:children]\na\n")
        with pytest.raises(CyclicGroupError) as exc_info:
            inventory.check_acyclic()
        assert "a" in exc_info.value.cycle
        assert "b" in exc_info.value.cycle

    def test_resolve_is_cached(self):
        """Test resolve returns the cached hosts until the inventory changes."""
        inventory = load_inventory_ini(INI_INVENTORY)
        first = inventory.resolve()
        assert inventory.resolve() is first
        inventory.add_host("web03", groups=["nginx"])
        assert "web03" in inventory.resolve()


class TestYamlInventory:
    """Tests for YAML inventories."""

    def test_nested_layout(self):
        """Test the nested all/children layout."""
        inventory = load_inventory_yaml({
            "all": {
                "vars": {"http_port": 80},
                "children": {
                    "nginx": {
                        "vars": {"http_port": 8080},
                        "hosts": {"web01": {"http_port": 8443}, "web02": None},
                    },
                    "db": {"hosts": ["db01"]},
                },
            }
        })
        hosts = inventory.resolve()
        assert list(hosts) == ["web01", "web02", "db01"]
        assert hosts["web01"].get_var("http_port") == 8443
        assert hosts["web02"].get_var("http_port") == 8080
        assert hosts["db01"].get_var("http_port") == 80

    def test_host_ranges(self):
        """Test host patterns expand in YAML too."""
        inventory = load_inventory_yaml({"web": {"hosts": {"web[1:3]": {}}}})
        assert inventory.members("web") == ["web1", "web2", "web3"]

    def test_group_must_be_mapping(self):
        """Test a group given as a scalar is rejected."""
        with pytest.raises(InventoryError):
            load_inventory_yaml({"web": "web01"})


class TestJsonInventory:
    """Tests for JSON inventories."""

    def test_meta_hostvars(self):
        """Test _meta.hostvars and children are honored."""
        inventory = load_inventory_json({
            "nginx": {"hosts": ["web01"], "vars": {"http_port": 8080}},
            "frontend": {"children": ["nginx"]},
            "_meta": {"hostvars": {"web01": {"ansible_host": "10.0.0.1"}}},
        })
        host = inventory.get_host("web01")
        assert host.address == "10.0.0.1"
        assert host.get_var("http_port") == 8080
        assert inventory.members("frontend") == ["web01"]


class TestLoadInventory:
    """Tests for loading inventory files."""

    def test_missing_file(self, tmp_path):
        """Test a missing file is an error."""
        with pytest.raises(InventoryError):
            load_inventory(tmp_path / "nope.ini")

    def test_ini_file_with_vars_directories(self, tmp_path):
        """Test group_vars/ and host_vars/ next to the inventory are merged."""
        inventory_file = tmp_path / "hosts"
        inventory_file.write_text("[nginx]\nweb01\nweb02\n")
        (tmp_path / "group_vars").mkdir()
        (tmp_path / "group_vars" / "nginx.yml").write_text("http_port: 8080\n")
        (tmp_path / "host_vars").mkdir()
        (tmp_path / "host_vars" / "web02.yml").write_text("http_port: 8443\n")

        hosts = load_inventory(inventory_file).resolve()
        assert hosts["web01"].get_var("http_port") == 8080
        assert hosts["web02"].get_var("http_port") == 8443

    def test_yaml_file(self, tmp_path):
        """Test YAML inventories are detected by suffix."""
        inventory_file = tmp_path / "hosts.yml"
        inventory_file.write_text("web:\n  hosts:\n    web01:\n      ansible_port: 2222\n")
        assert load_inventory(inventory_file).get_host("web01").port == 2222

    def test_json_file(self, tmp_path):
        """Test JSON inventories are detected by suffix."""
        inventory_file = tmp_path / "hosts.json"
        inventory_file.write_text(json.dumps({"web": {"hosts": ["web01"]}}))
        assert load_inventory(inventory_file).members("web") == ["web01"]

    def test_no_hosts(self, tmp_path):
        """Test an inventory without hosts is rejected by default."""
        inventory_file = tmp_path / "hosts.ini"
        inventory_file.write_text("[web]\n")
        with pytest.raises(InventoryError):
            load_inventory(inventory_file)
        assert load_inventory(inventory_file, require_hosts=False).hosts == {}

    def test_bad_port(self, tmp_path):
        """Test a non-numeric port is reported."""
        inventory_file = tmp_path / "hosts.ini"
        inventory_file.write_text("[web]\nweb01 ansible_port=ssh\n")
        with pytest.raises(InventoryError):
            load_inventory(inventory_file).resolve()


class TestLocalhost:
    """Tests for the implicit localhost inventory."""

    def test_localhost(self):
        """Test localhost uses the local connection."""
        host = load_localhost().get_host("localhost")
        assert host.connection == "local"
        assert host.is_local

    def test_inventory_default_groups(self):
        """Test a new inventory has the all group."""
        inventory = Inventory()
        assert inventory.get_group("all") is not None
