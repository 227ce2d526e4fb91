"""Pytest configuration for hlvm tests."""

import signal
import sys

import pytest

from hlvm.host import Host
from hlvm.protocol import DEFAULT_SEED, encode
from hlvm.vm import VM


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "timeout(seconds): set custom timeout for test")


def timeout_handler(signum, frame):
    """Handle timeout signal."""
    pytest.fail("Test timed out")


@pytest.fixture(autouse=True)
def test_timeout(request):
    """Apply a timeout to all tests.

    Default is 10 seconds, but tests can use a longer timeout by marking them:
    @pytest.mark.timeout(30)  # 30 second timeout
    """
    if sys.platform != "win32":
        marker = request.node.get_closest_marker("timeout")
        timeout_seconds = marker.args[0] if marker else 10

        old_handler = signal.signal(signal.SIGALRM, timeout_handler)
        signal.alarm(timeout_seconds)
        yield
        signal.alarm(0)
        signal.signal(signal.SIGALRM, old_handler)
    else:
        yield


def _assemble(*code, seed=DEFAULT_SEED):
    """Blind and frame a plain instruction body given as ints/opcodes."""
    return encode(bytes(int(b) & 0xFF for b in code), seed)


@pytest.fixture
def assemble():
    return _assemble


@pytest.fixture
def run_raw():
    """Run a hand-assembled body and return the final ExecutionState."""

    def run(code, strings=(), host=None, seed=DEFAULT_SEED, **config):
        vm = VM(strings, host if host is not None else Host(), **config)
        return vm.run(_assemble(*code, seed=seed))

    return run
