"""
Pipeline Data Model

Immutable values handed between stages plus the run state machine:
- ImageBuffer: decoded read-only RGBA raster
- PipelineRequest: what to fetch
- FailureRecord / Result: reified stage outcomes
- PipelineRun: Idle -> Fetching -> Filtering -> Publishing -> Done
"""

import io
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, Optional, TypeVar, Union

import numpy as np
from PIL import Image

from src.core.exceptions import InvalidTransitionError, PipelineBaseException

T = TypeVar("T")

# Generic message for failures that carry no message of their own
DEFAULT_FAILURE_MESSAGE = "Pipeline run failed"


@dataclass(frozen=True, eq=False)
class ImageBuffer:
    """
    Decoded raster image, shape (height, width, channels).

    The pixel array is copied on construction and marked read-only, so a
    buffer can be handed to another thread without locking.
    """
    pixels: np.ndarray
    mode: str = "RGBA"

    def __post_init__(self):
        pixels = np.array(self.pixels, copy=True)
        pixels.setflags(write=False)
        object.__setattr__(self, "pixels", pixels)

    @classmethod
    def from_image(cls, image: Image.Image) -> "ImageBuffer":
        """Build a buffer from a Pillow image, normalizing to RGBA."""
        rgba = image if image.mode == "RGBA" else image.convert("RGBA")
        return cls(np.asarray(rgba, dtype=np.uint8), mode="RGBA")

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1]) if self.pixels.ndim >= 2 else 0

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0]) if self.pixels.ndim >= 2 else 0

    @property
    def size(self) -> tuple:
        return (self.width, self.height)

    def to_image(self) -> Image.Image:
        image = Image.fromarray(np.ascontiguousarray(self.pixels))
        return image if image.mode == self.mode else image.convert(self.mode)

    def to_png_bytes(self) -> bytes:
        output_buffer = io.BytesIO()
        self.to_image().save(output_buffer, format="PNG")
        return output_buffer.getvalue()


@dataclass(frozen=True)
class PipelineRequest:
    """Input descriptor for one pipeline run."""
    url: str

    def __post_init__(self):
        if not isinstance(self.url, str) or not self.url.strip():
            raise ValueError("PipelineRequest.url must be a non-empty string")


@dataclass(frozen=True)
class FailureRecord:
    """Terminal failure of a pipeline run, delivered to the scope's handler."""
    cause: BaseException
    message: str
    stage: Optional[str] = None
    run_id: Optional[str] = None

    @classmethod
    def from_exception(
        cls,
        exc: BaseException,
        stage: Optional[str] = None,
        run_id: Optional[str] = None
    ) -> "FailureRecord":
        if isinstance(exc, PipelineBaseException):
            return cls(
                cause=exc,
                message=exc.message,
                stage=stage or exc.stage,
                run_id=run_id or exc.run_id,
            )
        return cls(
            cause=exc,
            message=str(exc) or DEFAULT_FAILURE_MESSAGE,
            stage=stage,
            run_id=run_id,
        )


@dataclass(frozen=True)
class Success(Generic[T]):
    value: T


@dataclass(frozen=True)
class Failure:
    record: FailureRecord


Result = Union[Success, Failure]


class RunState(str, Enum):
    """Pipeline run states."""
    IDLE = "idle"
    FETCHING = "fetching"
    FILTERING = "filtering"
    PUBLISHING = "publishing"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({RunState.DONE, RunState.FAILED, RunState.CANCELLED})

_TRANSITIONS = {
    RunState.IDLE: {RunState.FETCHING, RunState.CANCELLED},
    RunState.FETCHING: {RunState.FILTERING, RunState.FAILED, RunState.CANCELLED},
    RunState.FILTERING: {RunState.PUBLISHING, RunState.FAILED, RunState.CANCELLED},
    RunState.PUBLISHING: {RunState.DONE, RunState.CANCELLED},
    RunState.DONE: set(),
    RunState.FAILED: set(),
    RunState.CANCELLED: set(),
}


@dataclass
class PipelineRun:
    """Bookkeeping for one run of the pipeline."""
    request: PipelineRequest
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    state: RunState = RunState.IDLE
    failure: Optional[FailureRecord] = None
    history: list = field(default_factory=list)
    # ScopedTask executing this run, set by Pipeline.run
    task: Optional[Any] = field(default=None, repr=False, compare=False)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def cancel(self):
        if self.task is not None:
            self.task.cancel()

    async def wait(self):
        """Wait for the run to settle. Never raises the run's error."""
        if self.task is not None:
            await self.task.join()

    def can_transition(self, target: RunState) -> bool:
        return target in _TRANSITIONS[self.state]

    def transition(self, target: RunState, failure: Optional[FailureRecord] = None):
        if not self.can_transition(target):
            raise InvalidTransitionError(self.state.value, target.value, run_id=self.id)
        self.history.append(self.state)
        self.state = target
        if failure is not None:
            self.failure = failure
