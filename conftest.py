"""Root conftest.py for hwtest-visa.

This provides shared pytest configuration and fixtures. It also marks tests
that use mocks or fake hardware so they can be separated from runs against
real instruments.
"""

from __future__ import annotations

import ast
import inspect
import sys
from pathlib import Path
from typing import TYPE_CHECKING

import pytest

if TYPE_CHECKING:
    from _pytest.config import Config
    from _pytest.nodes import Item


# Make the package importable without installing it
PROJECT_ROOT = Path(__file__).parent
for pkg_dir in PROJECT_ROOT.glob("hwtest-*/src"):
    if str(pkg_dir) not in sys.path:
        sys.path.insert(0, str(pkg_dir))

from hwtest_visa.manager import ResourceLister, ResourceManager  # noqa: E402
from hwtest_visa.transports.simulation import ScriptedDevice  # noqa: E402


def pytest_configure(config: Config) -> None:
    """Register custom markers.

    Args:
        config: pytest configuration object.
    """
    config.addinivalue_line(
        "markers",
        "uses_mock: Test uses mocks or fake hardware (auto-detected or manually marked)",
    )
    config.addinivalue_line(
        "markers",
        "integration: Integration test requiring a real instrument",
    )
    config.addinivalue_line(
        "markers",
        "slow: Slow-running test",
    )


# Names whose use marks a test as mock-based
MOCK_NAMES = frozenset({
    "MagicMock",
    "Mock",
    "AsyncMock",
    "patch",
    "create_autospec",
    "monkeypatch",
})

# Substrings in helper names (FakeUsbDevice, fake_serial, ...) with the same meaning
MOCK_HINTS = ("mock", "fake", "stub")


def _source_uses_mock(source: str) -> bool:
    """Return True if *source* calls a mock helper or takes a mock fixture."""
    try:
        tree = ast.parse(source)
    except SyntaxError:
        return False
    for node in ast.walk(tree):
        if isinstance(node, ast.Name):
            name = node.id
        elif isinstance(node, ast.Attribute):
            name = node.attr
        elif isinstance(node, ast.arg):
            name = node.arg
        else:
            continue
        if name in MOCK_NAMES or any(hint in name.lower() for hint in MOCK_HINTS):
            return True
    return False


def _check_test_uses_mock(item: Item) -> bool:
    """Check if a test function uses mocking.

    Args:
        item: pytest test item.

    Returns:
        True if test uses mocking.
    """
    if item.get_closest_marker("uses_mock"):
        return True
    if any(hint in item.name.lower() for hint in MOCK_HINTS):
        return True
    obj = getattr(item, "obj", None)
    if obj is None:
        return False
    try:
        source = inspect.getsource(obj)
    except (OSError, TypeError):
        return False
    return _source_uses_mock(inspect.cleandoc(source))


def pytest_collection_modifyitems(config: Config, items: list[Item]) -> None:
    """Auto-detect and mark tests that use mocking.

    Args:
        config: pytest configuration object.
        items: List of collected test items.
    """
    for item in items:
        if not item.get_closest_marker("uses_mock") and _check_test_uses_mock(item):
            item.add_marker(pytest.mark.uses_mock)


def pytest_report_header(config: Config) -> list[str]:
    """Add coverage mode info to pytest header.

    Args:
        config: pytest configuration object.

    Returns:
        List of header lines.
    """
    lines = ["hwtest-visa test suite"]
    if getattr(config.option, "cov_source", None):
        lines.append("Coverage: enabled with mock detection")
    return lines


# ---------------------------------------------------------------------------
# Shared fixtures
# ---------------------------------------------------------------------------


class EmptyLister(ResourceLister):
    """Discovery collaborator that reports no hardware."""

    def list_serial_ports(self) -> list:
        return []

    def list_usb_devices(self) -> list:
        return []


@pytest.fixture
def scripted_device() -> ScriptedDevice:
    """A scripted power supply with a settable VOLT property."""
    device = ScriptedDevice("ACME,PSU-100,SN42,1.2.3")
    device.add_property("VOLT", "0.000")
    return device


@pytest.fixture
def sim_manager(scripted_device: ScriptedDevice) -> ResourceManager:
    """Resource manager without hardware discovery, with ``SIM::PSU::INSTR`` registered."""
    manager = ResourceManager(EmptyLister())
    manager.register_simulated_device("psu", scripted_device)
    return manager
