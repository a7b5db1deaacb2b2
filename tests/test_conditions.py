"""Tests for `when:` condition evaluation."""

import pytest

from fleetplay.conditions import evaluate_condition, evaluate_conditions, referenced_names, validate_condition
from fleetplay.exceptions import ConditionEvaluationError

VARIABLES = {
    "http_port": 8080,
    "env": "staging",
    "group_names": ["nginx", "frontend"],
    "tls": {"enabled": True, "cert": "/etc/ssl/web.pem"},
    "maintenance": False,
}


class TestEvaluateCondition:
    """Tests for evaluate_condition."""

    def test_comparison(self):
        """Test comparisons against variables."""
        assert evaluate_condition("http_port == 8080", VARIABLES)
        assert not evaluate_condition("http_port > 9000", VARIABLES)
        assert evaluate_condition("1024 < http_port <= 8080", VARIABLES)

    def test_membership(self):
        """Test in / not in."""
        assert evaluate_condition("'nginx' in group_names", VARIABLES)
        assert evaluate_condition("'db' not in group_names", VARIABLES)

    def test_boolean_operators(self):
        """Test and / or / not."""
        assert evaluate_condition("env == 'staging' and not maintenance", VARIABLES)
        assert evaluate_condition("env == 'prod' or http_port == 8080", VARIABLES)

    def test_literal_names(self):
        """Test YAML-style true/false literals."""
        assert evaluate_condition("true", {})
        assert not evaluate_condition("false", {})

    def test_bare_boolean(self):
        """Test YAML booleans are accepted as conditions."""
        assert evaluate_condition(True, {}) is True
        assert evaluate_condition(False, {}) is False

    def test_nested_lookup(self):
        """Test attribute and subscript lookups into mappings."""
        assert evaluate_condition("tls.enabled", VARIABLES)
        assert evaluate_condition("tls['cert'] == '/etc/ssl/web.pem'", VARIABLES)

    def test_defined(self):
        """Test is defined / is not defined / is undefined."""
        assert evaluate_condition("http_port is defined", VARIABLES)
        assert evaluate_condition("tls.cert is defined", VARIABLES)
        assert evaluate_condition("missing is not defined", VARIABLES)
        assert evaluate_condition("missing is undefined", VARIABLES)
        assert not evaluate_condition("tls.key is defined", VARIABLES)

    def test_undefined_variable(self):
        """Test referencing an undefined variable is an error."""
        with pytest.raises(ConditionEvaluationError) as exc_info:
            evaluate_condition("missing == 1", VARIABLES)
        assert "missing" in str(exc_info.value)

    def test_calls_rejected(self):
        """Test function calls are not allowed."""
        with pytest.raises(ConditionEvaluationError):
            evaluate_condition("__import__('os')", VARIABLES)

    def test_arithmetic_rejected(self):
        """Test arithmetic is outside the allowed subset."""
        with pytest.raises(ConditionEvaluationError):
            evaluate_condition("http_port + 1 == 8081", VARIABLES)

    def test_type_error(self):
        """Test incomparable types are reported."""
        with pytest.raises(ConditionEvaluationError):
            evaluate_condition("env > 3", VARIABLES)

    def test_empty(self):
        """Test empty conditions are rejected."""
        with pytest.raises(ConditionEvaluationError):
            evaluate_condition("  ", VARIABLES)


class TestEvaluateConditions:
    """Tests for when: lists."""

    def test_all_must_hold(self):
        """Test every item of the list must be true."""
        assert evaluate_conditions(["http_port == 8080", "not maintenance"], VARIABLES)
        assert not evaluate_conditions(["http_port == 8080", "maintenance"], VARIABLES)

    def test_empty_list(self):
        """Test an empty list holds."""
        assert evaluate_conditions([], VARIABLES)


class TestValidateCondition:
    """Tests for syntax validation."""

    def test_valid(self):
        """Test valid expressions pass without variables."""
        validate_condition("undefined_here == 1")
        validate_condition("x is defined")

    def test_syntax_error(self):
        """Test malformed expressions are rejected."""
        with pytest.raises(ConditionEvaluationError):
            validate_condition("http_port ==")


class TestReferencedNames:
    """Tests for finding the variables a condition reads."""

    def test_names(self):
        """Test top-level names are collected, literals are not."""
        assert referenced_names("out.rc == 0 and env in ['a', 'b'] and not true") == {"out", "env"}

    def test_defined_tests(self):
        """Test `is defined` tests reference the root of their path."""
        assert referenced_names("ansible_facts.system is defined") == {"ansible_facts"}
        assert referenced_names("tls is not defined") == {"tls"}

    def test_subscript(self):
        """Test subscripts reference the container."""
        assert referenced_names("result['stdout'] == 'ok'") == {"result"}

    def test_non_strings(self):
        """Test bare booleans and malformed expressions reference nothing."""
        assert referenced_names(True) == set()
        assert referenced_names("x ==") == set()
