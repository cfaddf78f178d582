import asyncio
import inspect
import os
import sys
from pathlib import Path

os.environ.setdefault("MODEL_BACKEND", "stub")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from luaspark.app import create_app  # noqa: E402
from luaspark.config import Settings  # noqa: E402
from luaspark.service.runtime import Runtime  # noqa: E402

BYPASS_IDENTITY = "owner@luaspark.dev"

STRUCTURED_REPLY = "CODE:\nprint(1)\n---\nEXPLANATION:\nPrints one."


class FakeBackend:
    """Records every call and answers with ``reply`` (or raises ``error``)."""

    mode = "fake"

    def __init__(self, reply=STRUCTURED_REPLY):
        self.reply = reply
        self.error = None
        self.delay = 0.0
        self.calls = []
        self.closed = False

    async def complete(self, messages, *, cancel_event=None):
        self.calls.append([dict(message) for message in messages])
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if callable(self.reply):
            return self.reply(messages)
        return self.reply

    async def close(self):
        self.closed = True


@pytest.fixture
def fast_hasher():
    """Argon2id with minimal cost so tests stay quick."""
    return PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)


@pytest.fixture
def users_path(tmp_path):
    return tmp_path / "users.json"


@pytest.fixture
def settings(tmp_path, users_path):
    return Settings(
        users_db_path=str(users_path),
        model_backend="stub",
        bypass_email=BYPASS_IDENTITY,
        static_dir=str(tmp_path / "public"),
        flush_interval_seconds=3600,
        upstream_timeout_seconds=5,
    )


@pytest.fixture
def fake_backend():
    return FakeBackend()


@pytest.fixture
def runtime(settings, fast_hasher, fake_backend):
    return Runtime(settings, hasher=fast_hasher, backend=fake_backend)


@pytest.fixture
def client(runtime):
    with TestClient(create_app(runtime=runtime)) as test_client:
        yield test_client


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
