import asyncio
import inspect
import os
import sys
from pathlib import Path

# Keep test runs independent of a developer's shell and .env file
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("LOG_JSON", "false")
for _name in list(os.environ):
    if _name.startswith("NODEFLOW_"):
        del os.environ[_name]

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from nodeflow.config import reset_settings_cache  # noqa: E402


@pytest.fixture(autouse=True)
def reset_settings_state(tmp_path, monkeypatch):
    # Settings.from_env reads ./.env; run each test from an empty directory
    monkeypatch.chdir(tmp_path)
    reset_settings_cache()
    yield
    reset_settings_cache()


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
