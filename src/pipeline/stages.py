"""
Pipeline Stage Implementations

Each stage is a blocking callable meant to run on one of the worker pools:
- FetchStage: URL -> bytes -> ImageBuffer (I/O pool)
- FilterStage: ImageBuffer -> ImageBuffer (CPU pool)

Both take the run's cancellation token and check it at chunk and stage
boundaries.
"""

import functools
import io
from contextlib import contextmanager
from typing import Iterator, Optional
from urllib.parse import urlsplit
from urllib.request import url2pathname

import httpx
import numpy as np
from PIL import Image, UnidentifiedImageError

from src.core.concurrency import CancellationToken
from src.core.config import settings
from src.core.exceptions import FetchError, FilterError
from src.core.logging import get_logger, LogContext
from src.core.metrics import track_stage_latency, fetched_bytes_total
from src.pipeline.effects import Effect, apply_snow_effect
from src.pipeline.models import ImageBuffer

logger = get_logger(__name__)


# =============================================================================
# Stage 1: Fetch
# =============================================================================

class FetchStage:
    """
    Retrieve an image over http(s) or from a file URL and decode it.

    The byte stream is opened in a context manager, so it is released on
    every exit path: success, HTTP error, cancellation or decode failure.
    """

    def __init__(
        self,
        transport: Optional[httpx.BaseTransport] = None,
        timeout: Optional[float] = None,
        chunk_size: Optional[int] = None,
        max_bytes: Optional[int] = None
    ):
        self._transport = transport
        self.timeout = timeout if timeout is not None else settings.FETCH_TIMEOUT_SECONDS
        self.chunk_size = chunk_size or settings.FETCH_CHUNK_SIZE
        self.max_bytes = max_bytes or settings.MAX_IMAGE_SIZE_BYTES

    def fetch(self, url: str, token: CancellationToken) -> ImageBuffer:
        with LogContext(stage="fetch"), track_stage_latency("fetch"):
            token.raise_if_cancelled()
            logger.info("fetch_started", url=url)

            try:
                with self.open_stream(url) as chunks:
                    data = self._read(chunks, url, token)
            except (httpx.HTTPError, httpx.InvalidURL) as e:
                raise FetchError(f"Transfer failed: {e}", url=url) from e
            except OSError as e:
                raise FetchError(f"Could not read source: {e}", url=url) from e

            image = self._decode(data, url)
            logger.info(
                "fetch_completed",
                url=url,
                size_bytes=len(data),
                dimensions=image.size
            )
            return image

    @contextmanager
    def open_stream(self, url: str) -> Iterator[Iterator[bytes]]:
        """Yield an iterator of byte chunks for url."""
        parts = urlsplit(url)
        scheme = parts.scheme.lower()

        if scheme in ("http", "https"):
            with httpx.Client(
                transport=self._transport,
                timeout=httpx.Timeout(self.timeout),
                follow_redirects=True,
                headers={"User-Agent": settings.FETCH_USER_AGENT}
            ) as client:
                with client.stream("GET", url) as response:
                    if response.is_error:
                        raise FetchError(
                            f"Server answered HTTP {response.status_code}",
                            url=url,
                            http_status=response.status_code
                        )
                    yield response.iter_bytes(self.chunk_size)

        elif scheme == "file":
            with open(url2pathname(parts.path), "rb") as fh:
                yield iter(functools.partial(fh.read, self.chunk_size), b"")

        else:
            raise FetchError(f"Unsupported URL scheme: {scheme or '<none>'}", url=url)

    def _read(self, chunks: Iterator[bytes], url: str, token: CancellationToken) -> bytes:
        received = bytearray()
        for chunk in chunks:
            token.raise_if_cancelled()
            received.extend(chunk)
            if len(received) > self.max_bytes:
                raise FetchError(
                    f"Image exceeds maximum size of {self.max_bytes} bytes",
                    url=url
                )
        token.raise_if_cancelled()
        fetched_bytes_total.inc(len(received))
        return bytes(received)

    @staticmethod
    def _decode(data: bytes, url: str) -> ImageBuffer:
        try:
            with Image.open(io.BytesIO(data)) as image:
                image.load()
                return ImageBuffer.from_image(image)
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError, SyntaxError) as e:
            raise FetchError("Payload is not a decodable image", url=url) from e


# =============================================================================
# Stage 2: Filter
# =============================================================================

class FilterStage:
    """Apply a pixel effect. Stateless, so one instance can serve many runs at once."""

    def __init__(self, effect: Optional[Effect] = None):
        self.effect = effect or apply_snow_effect

    def apply(self, image: ImageBuffer, token: CancellationToken) -> ImageBuffer:
        with LogContext(stage="filter"), track_stage_latency("filter"):
            token.raise_if_cancelled()
            self.validate(image)
            logger.info("filter_started", dimensions=image.size)

            try:
                output = self.effect(image)
            except FilterError:
                raise
            except Exception as e:
                raise FilterError(f"Effect failed: {e}") from e

            if not isinstance(output, ImageBuffer) or output.size != image.size:
                raise FilterError("Effect did not return an image of the input dimensions")

            # A buffer produced after cancellation is discarded
            token.raise_if_cancelled()
            logger.info("filter_completed", dimensions=output.size)
            return output

    @staticmethod
    def validate(image: ImageBuffer):
        """Raise FilterError unless image is a non-empty 8-bit RGB/RGBA buffer."""
        if not isinstance(image, ImageBuffer):
            raise FilterError(f"Expected ImageBuffer, got {type(image).__name__}")

        pixels = image.pixels
        if pixels.dtype != np.uint8:
            raise FilterError(f"Unsupported pixel type: {pixels.dtype}")
        if pixels.ndim != 3 or pixels.shape[-1] not in (3, 4):
            raise FilterError(f"Malformed pixel array of shape {pixels.shape}")
        if image.width == 0 or image.height == 0:
            raise FilterError("Image has no pixels")
