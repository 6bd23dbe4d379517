"""
pytest glue for the standalone async test scripts.

The scripts define plain `async def test_*()` coroutines and run themselves
with asyncio when executed directly; under pytest each coroutine is run on
anyio's asyncio backend.
"""

import inspect

import anyio
import pytest


@pytest.hookimpl(tryfirst=True)
def pytest_pyfunc_call(pyfuncitem):
    if not inspect.iscoroutinefunction(pyfuncitem.obj):
        return None
    anyio.run(pyfuncitem.obj, backend="asyncio")
    return True
