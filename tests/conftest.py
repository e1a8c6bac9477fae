"""Shared fixtures: every repository test runs on both backends."""

from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
import pytest_asyncio

from db.backends import Backend, EmulatedBackend, MemoryKeyValueStore, SQLiteBackend
from db.repository import EntityRepository


@pytest.fixture(params=["native", "emulated"])
def backend(request: pytest.FixtureRequest, tmp_path: Path) -> Backend:
    if request.param == "native":
        return SQLiteBackend(tmp_path / "test.db")
    return EmulatedBackend(MemoryKeyValueStore())


@pytest_asyncio.fixture()
async def repo(backend: Backend) -> AsyncGenerator[EntityRepository, None]:
    repository = await EntityRepository(backend, user_id="u1").initialize()
    yield repository
    await repository.close()
