import asyncio
import functools
from unittest.mock import MagicMock

import numpy as np
import pytest

from fakes import BASE_URL, SOURCE_COLOR
from src.core.concurrency import TaskScope
from src.core.exceptions import FetchError
from src.pipeline.effects import apply_snow_effect
from src.pipeline.models import PipelineRequest, RunState
from src.pipeline.orchestrator import Pipeline
from src.pipeline.stages import FilterStage


@pytest.fixture
def scope(dispatchers):
    scope = TaskScope(dispatchers, name="test-scope")
    yield scope
    scope.cancel_all()


@pytest.fixture
def failures(scope):
    received = []
    scope.on_unhandled_failure(received.append)
    return received


@pytest.fixture
def spy_filter():
    stage = FilterStage()
    stage.apply = MagicMock(wraps=stage.apply)
    return stage


@pytest.fixture
def pipeline(scope, fetch_stage, spy_filter):
    return Pipeline(scope, fetch_stage, spy_filter)


async def wait_for_stall(server):
    while not server.streams:
        await asyncio.sleep(0.01)
    assert await asyncio.to_thread(server.last_stream.started.wait, 5)


@pytest.mark.asyncio
async def test_successful_run_publishes_once(pipeline, failures):
    published = []

    run = pipeline.run(PipelineRequest(url=f"{BASE_URL}/ok"), published.append)
    await run.wait()

    assert run.state is RunState.DONE
    assert run.history == [RunState.IDLE, RunState.FETCHING, RunState.FILTERING, RunState.PUBLISHING]
    assert len(published) == 1
    assert published[0].size == (100, 100)
    assert failures == []


@pytest.mark.asyncio
async def test_fetch_failure_skips_filter_and_reports_once(pipeline, spy_filter, failures):
    published = []

    run = pipeline.run(PipelineRequest(url=f"{BASE_URL}/missing"), published.append)
    await run.wait()

    assert run.state is RunState.FAILED
    assert run.failure.stage == "fetch"
    assert isinstance(run.failure.cause, FetchError)
    spy_filter.apply.assert_not_called()
    assert published == []
    assert len(failures) == 1
    assert failures[0] is run.failure


@pytest.mark.asyncio
async def test_filter_failure_is_reported(scope, fetch_stage, failures):
    def broken(image):
        raise ValueError("bad pixels")

    published = []
    pipeline = Pipeline(scope, fetch_stage, FilterStage(broken))

    run = pipeline.run(PipelineRequest(url=f"{BASE_URL}/ok"), published.append)
    await run.wait()

    assert run.state is RunState.FAILED
    assert run.failure.stage == "filter"
    assert published == []
    assert len(failures) == 1


@pytest.mark.asyncio
async def test_cancel_before_fetch_does_nothing(pipeline, server, spy_filter, failures):
    published = []

    run = pipeline.run(PipelineRequest(url=f"{BASE_URL}/ok"), published.append)
    run.cancel()
    await run.wait()

    assert run.state is RunState.CANCELLED
    assert server.requests == []
    spy_filter.apply.assert_not_called()
    assert published == []
    assert failures == []


@pytest.mark.asyncio
async def test_cancel_during_fetch_releases_stream(pipeline, scope, server, spy_filter, failures):
    published = []

    run = pipeline.run(PipelineRequest(url=f"{BASE_URL}/slow"), published.append)
    await wait_for_stall(server)

    scope.cancel_all()
    await run.wait()
    assert run.state is RunState.CANCELLED

    # Let the stalled worker observe the token
    server.gate.set()
    assert await asyncio.to_thread(server.last_stream.closed.wait, 5)

    spy_filter.apply.assert_not_called()
    assert published == []
    assert failures == []


@pytest.mark.asyncio
async def test_cancel_is_idempotent(pipeline, scope, server, failures):
    run = pipeline.run(PipelineRequest(url=f"{BASE_URL}/slow"), lambda image: None)
    await wait_for_stall(server)

    run.cancel()
    run.cancel()
    scope.cancel_all()
    scope.cancel_all()
    await run.wait()
    server.gate.set()

    assert run.state is RunState.CANCELLED
    assert failures == []


@pytest.mark.asyncio
async def test_runs_on_one_scope_are_independent(pipeline, failures):
    published = []

    failing = pipeline.run(PipelineRequest(url=f"{BASE_URL}/down"), published.append)
    passing = pipeline.run(PipelineRequest(url=f"{BASE_URL}/ok"), published.append)
    await asyncio.gather(failing.wait(), passing.wait())

    assert failing.state is RunState.FAILED
    assert passing.state is RunState.DONE
    assert len(published) == 1
    assert len(failures) == 1
    assert failures[0].run_id == failing.id


@pytest.mark.asyncio
async def test_async_completion_callback_is_awaited(pipeline):
    published = []

    async def on_complete(image):
        await asyncio.sleep(0)
        published.append(image)

    run = pipeline.run(PipelineRequest(url=f"{BASE_URL}/ok"), on_complete)
    await run.wait()

    assert run.state is RunState.DONE
    assert len(published) == 1


@pytest.mark.asyncio
async def test_raising_completion_callback_is_reported(pipeline, failures):
    def on_complete(image):
        raise RuntimeError("consumer bug")

    run = pipeline.run(PipelineRequest(url=f"{BASE_URL}/ok"), on_complete)
    await run.wait()

    assert run.state is RunState.DONE
    assert run.failure.stage == "publish"
    assert len(failures) == 1
    assert failures[0].message == "consumer bug"


@pytest.mark.asyncio
async def test_full_run_keeps_size_and_changes_pixels(scope, fetch_stage, failures):
    snow = FilterStage(functools.partial(apply_snow_effect, rng=np.random.default_rng(11)))
    pipeline = Pipeline(scope, fetch_stage, snow)
    published = []

    run = pipeline.run(PipelineRequest(url=f"{BASE_URL}/ok"), published.append)
    await run.wait()

    assert run.state is RunState.DONE
    assert failures == []
    assert len(published) == 1
    output = published[0]
    assert output.size == (100, 100)
    changed = np.any(output.pixels != np.array(SOURCE_COLOR, dtype=np.uint8), axis=-1)
    assert changed.any()
