"""Test package version and basic imports."""

import fleetplay


def test_version():
    """Verify package version is set."""
    assert fleetplay.__version__ == "0.1.0"


def test_package_imports():
    """Verify package can be imported."""
    assert fleetplay is not None
