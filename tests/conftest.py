import asyncio
import inspect
import os
import sys
from pathlib import Path

# Environment must be in place before sessionward.config is imported
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("RATE_LIMIT_BACKEND", "memory")
# TestClient talks plain http; Secure cookies would never be sent back
os.environ.setdefault("COOKIE_SECURE", "false")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from sessionward.config import get_settings  # noqa: E402
from sessionward.service.clock import IdentifierSource, ManualClock  # noqa: E402
from sessionward.service.runtime import reset_runtime_for_tests  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def runtime(clock):
    """Runtime whose services all read the manual clock."""
    return reset_runtime_for_tests(clock=clock)


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def ids():
    return IdentifierSource()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
