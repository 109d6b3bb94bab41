import asyncio
import inspect
import os
import sys
from pathlib import Path

# Configure before any imports that might initialize the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("TRUSTED_TIME_ENABLED", "false")
os.environ.setdefault("DUPLICATE_BACKEND", "memory")
os.environ.setdefault("TOKEN_SWEEP_INTERVAL_SECONDS", "3600")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from bookwave.service.notifications import CodeDispatcher  # noqa: E402
from bookwave.service.runtime import reset_runtime_for_tests  # noqa: E402


class RecordingDispatcher(CodeDispatcher):
    """Captures issued codes instead of delivering them."""

    channel = "test"

    def __init__(self) -> None:
        super().__init__()
        self.sent = []

    def dispatch(self, destination, code, *, purpose="verify", ttl_minutes=5):
        self.sent.append({"destination": destination, "code": code, "purpose": purpose})

    def last_code(self, destination=None):
        for item in reversed(self.sent):
            if destination is None or item["destination"] == destination:
                return item["code"]
        raise AssertionError(f"no code sent to {destination}")


@pytest.fixture(autouse=True)
def runtime():
    rt = reset_runtime_for_tests(
        phone_dispatcher=RecordingDispatcher(),
        email_dispatcher=RecordingDispatcher(),
    )
    yield rt
    reset_runtime_for_tests()


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
