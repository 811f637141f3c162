import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Configure the environment before anything imports synodic.config
_test_tmp_dir = tempfile.mkdtemp(prefix="synodic_test_")
os.environ.setdefault("DATA_DIR", _test_tmp_dir)
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("AI_PROVIDER", "openai")
os.environ.setdefault("AI_API_KEY", "test-provider-key")
os.environ.setdefault("APP_ENV", "test")
# Cheap argon2 parameters keep the suite fast
os.environ.setdefault("PASSWORD_HASH_TIME_COST", "1")
os.environ.setdefault("PASSWORD_HASH_MEMORY_COST", "1024")
os.environ.setdefault("PASSWORD_HASH_PARALLELISM", "1")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from synodic.config import ProviderName  # noqa: E402
from synodic.service.providers import ChatTurn  # noqa: E402
from synodic.service.runtime import reset_runtime_for_tests  # noqa: E402


class FakeProvider:
    """Stands in for a vendor adapter; records what it was sent."""

    def __init__(self, name=ProviderName.OPENAI, replies=None, errors=None):
        self.name = name
        self.model = "fake-model"
        self.replies = list(replies or ["Hello from the fake provider"])
        self.errors = list(errors or [])
        self.calls = []
        self.closed = False

    async def send(self, message, history):
        self.calls.append((message, list(history)))
        if self.errors:
            error = self.errors.pop(0)
            if error is not None:
                raise error
        if len(self.replies) > 1:
            return self.replies.pop(0)
        return self.replies[0]

    async def close(self):
        self.closed = True


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def make_history():
    def _make(count):
        return [
            ChatTurn(role="user" if i % 2 == 0 else "assistant", content=f"turn {i}")
            for i in range(count)
        ]

    return _make


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    monkeypatch.setenv("DATA_DIR", str(tmp_path / "data"))
    reset_runtime_for_tests()
    yield
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
