import functools

import numpy as np
import pytest

from fakes import BASE_URL, SOURCE_COLOR
from src.core.concurrency import CancellationToken
from src.core.exceptions import CancellationSignal, FetchError, FilterError
from src.pipeline.effects import apply_snow_effect
from src.pipeline.models import ImageBuffer
from src.pipeline.stages import FetchStage, FilterStage


def solid_buffer(color, size=(50, 40)) -> ImageBuffer:
    width, height = size
    pixels = np.empty((height, width, 4), dtype=np.uint8)
    pixels[...] = color
    return ImageBuffer(pixels)


def seeded_filter(seed=7) -> FilterStage:
    return FilterStage(functools.partial(apply_snow_effect, rng=np.random.default_rng(seed)))


# =============================================================================
# Fetch
# =============================================================================

def test_fetch_decodes_image(fetch_stage, server):
    image = fetch_stage.fetch(f"{BASE_URL}/ok", CancellationToken())

    assert image.size == (100, 100)
    assert image.mode == "RGBA"
    assert tuple(image.pixels[0, 0]) == SOURCE_COLOR
    assert server.last_stream.closed.is_set()


def test_fetch_http_error_status(fetch_stage):
    with pytest.raises(FetchError) as exc_info:
        fetch_stage.fetch(f"{BASE_URL}/missing", CancellationToken())

    assert exc_info.value.details["http_status"] == 404
    assert exc_info.value.stage == "fetch"


def test_fetch_unreachable_host(fetch_stage):
    with pytest.raises(FetchError, match="Transfer failed"):
        fetch_stage.fetch(f"{BASE_URL}/down", CancellationToken())


def test_fetch_undecodable_payload_releases_stream(fetch_stage, server):
    with pytest.raises(FetchError, match="not a decodable image"):
        fetch_stage.fetch(f"{BASE_URL}/garbage", CancellationToken())

    assert server.last_stream.closed.is_set()


def test_fetch_rejects_oversized_payload(server):
    stage = FetchStage(transport=server.transport(), chunk_size=64, max_bytes=50)

    with pytest.raises(FetchError, match="exceeds maximum size"):
        stage.fetch(f"{BASE_URL}/ok", CancellationToken())

    assert server.last_stream.closed.is_set()


def test_fetch_file_url(png_file):
    image = FetchStage().fetch(png_file.as_uri(), CancellationToken())

    assert image.size == (100, 100)


def test_fetch_missing_file(tmp_path):
    missing = tmp_path / "nope.png"

    with pytest.raises(FetchError, match="Could not read source"):
        FetchStage().fetch(missing.as_uri(), CancellationToken())


@pytest.mark.parametrize("url", ["ftp://images.test/a.png", "just-a-path.png"])
def test_fetch_unsupported_scheme(url):
    with pytest.raises(FetchError, match="Unsupported URL scheme"):
        FetchStage().fetch(url, CancellationToken())


def test_fetch_with_cancelled_token_never_connects(fetch_stage, server):
    token = CancellationToken()
    token.cancel()

    with pytest.raises(CancellationSignal):
        fetch_stage.fetch(f"{BASE_URL}/ok", token)

    assert server.requests == []


# =============================================================================
# Filter
# =============================================================================

def test_snow_filter_keeps_dimensions_and_adds_snow():
    source = solid_buffer(SOURCE_COLOR)

    output = seeded_filter().apply(source, CancellationToken())

    assert output.size == source.size
    white = np.all(output.pixels == 255, axis=-1)
    untouched = np.all(output.pixels == SOURCE_COLOR, axis=-1)
    assert white.any()
    assert np.all(white | untouched)


def test_snow_filter_does_not_mutate_input():
    source = solid_buffer(SOURCE_COLOR)

    seeded_filter().apply(source, CancellationToken())

    assert np.all(source.pixels == SOURCE_COLOR)


def test_black_pixels_never_catch_snow():
    source = solid_buffer((0, 0, 0, 255))

    output = seeded_filter().apply(source, CancellationToken())

    assert np.array_equal(output.pixels, source.pixels)


def test_same_seed_gives_same_snow():
    source = solid_buffer(SOURCE_COLOR)

    first = seeded_filter(seed=3).apply(source, CancellationToken())
    second = seeded_filter(seed=3).apply(source, CancellationToken())

    assert np.array_equal(first.pixels, second.pixels)


@pytest.mark.parametrize("image", [
    "not an image",
    ImageBuffer(np.zeros((4, 4), dtype=np.uint8)),
    ImageBuffer(np.zeros((4, 4, 4), dtype=np.float32)),
    ImageBuffer(np.zeros((0, 4, 4), dtype=np.uint8)),
])
def test_filter_rejects_malformed_input(image):
    with pytest.raises(FilterError):
        FilterStage().apply(image, CancellationToken())


def test_filter_wraps_effect_errors():
    def broken(image):
        raise ZeroDivisionError("division by zero")

    with pytest.raises(FilterError) as exc_info:
        FilterStage(broken).apply(solid_buffer(SOURCE_COLOR), CancellationToken())

    assert isinstance(exc_info.value.__cause__, ZeroDivisionError)
    assert exc_info.value.stage == "filter"


def test_filter_rejects_resized_output():
    shrink = lambda image: solid_buffer(SOURCE_COLOR, size=(1, 1))

    with pytest.raises(FilterError, match="input dimensions"):
        FilterStage(shrink).apply(solid_buffer(SOURCE_COLOR), CancellationToken())


def test_filter_with_cancelled_token():
    token = CancellationToken()
    token.cancel()

    with pytest.raises(CancellationSignal):
        seeded_filter().apply(solid_buffer(SOURCE_COLOR), token)
