from typing import AsyncGenerator

import pytest
from httpx import AsyncClient, ASGITransport

from fakes import FakeImageServer, make_png_bytes
from src.core.concurrency import Dispatchers
from src.main import app
from src.pipeline.stages import FetchStage



@pytest.fixture
def png_bytes() -> bytes:
    return make_png_bytes()


@pytest.fixture
def png_file(tmp_path, png_bytes):
    path = tmp_path / "tutorial.png"
    path.write_bytes(png_bytes)
    return path


@pytest.fixture
def server(png_bytes):
    fake = FakeImageServer(png_bytes)
    yield fake
    # Never leave a stalled worker behind
    fake.gate.set()


@pytest.fixture
def fetch_stage(server) -> FetchStage:
    return FetchStage(transport=server.transport(), chunk_size=256)


@pytest.fixture
def dispatchers():
    pools = Dispatchers(io_workers=4, cpu_workers=2)
    yield pools
    pools.shutdown(wait=True)


@pytest.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    # Trigger lifespan events (startup/shutdown)
    async with app.router.lifespan_context(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            yield ac
