"""
Tutorial Screen Controller

Shows a tutorial's title and description, loads its image through the
pipeline (fetch, snow filter, publish) and tears the work down when the
screen goes away.

Lifecycle:
    screen = TutorialScreen(tutorial, dispatchers)
    await screen.show()      # view created
    ...
    screen.destroy()         # screen destroyed, cancels outstanding work
"""

import asyncio
import uuid
from typing import Optional

from src.core.concurrency import Dispatchers, TaskScope
from src.core.exceptions import ScopeClosedError
from src.core.logging import get_logger
from src.modules.tutorial.models import ScreenState, Tutorial
from src.modules.tutorial.reporter import ErrorReporter
from src.pipeline.models import FailureRecord, ImageBuffer, PipelineRequest, PipelineRun
from src.pipeline.orchestrator import Pipeline
from src.pipeline.stages import FetchStage, FilterStage

logger = get_logger(__name__)


class TutorialScreen:
    """One screen instance. At most one pipeline run is active at a time."""

    def __init__(
        self,
        tutorial: Tutorial,
        dispatchers: Dispatchers,
        fetch_stage: Optional[FetchStage] = None,
        filter_stage: Optional[FilterStage] = None,
        locale: Optional[str] = None
    ):
        self.id = uuid.uuid4().hex[:12]
        self.tutorial = tutorial
        self.dispatchers = dispatchers
        self.fetch_stage = fetch_stage or FetchStage()
        self.filter_stage = filter_stage or FilterStage()
        self.state = ScreenState(title=tutorial.name, description=tutorial.description)
        self.reporter = ErrorReporter(self.state.error, locale=locale)
        self._scope: Optional[TaskScope] = None
        self._run: Optional[PipelineRun] = None
        self._destroyed = False
        self._show_lock = asyncio.Lock()

    @property
    def scope(self) -> Optional[TaskScope]:
        return self._scope

    @property
    def current_run(self) -> Optional[PipelineRun]:
        return self._run

    @property
    def is_destroyed(self) -> bool:
        return self._destroyed

    async def show(self) -> PipelineRun:
        """
        Start loading the tutorial image, replacing any run in flight.

        Overlapping calls are serialized, so the screen never owns more than
        one live scope. Raises ScopeClosedError once the screen is destroyed,
        including when destroy() lands while the previous run is draining.
        """
        async with self._show_lock:
            self._raise_if_destroyed()

            # The previous scope must be fully cancelled before a new run starts
            await self._cancel_current()
            self._raise_if_destroyed()

            self.state.error.hide()
            self.state.image = None
            self.state.progress_visible = True

            scope = TaskScope(self.dispatchers, name=f"screen-{self.id}")
            scope.on_unhandled_failure(self._on_failure)
            self._scope = scope

            pipeline = Pipeline(scope, self.fetch_stage, self.filter_stage)
            run = pipeline.run(PipelineRequest(url=self.tutorial.url), self._load_image)
            self._run = run

        logger.info("screen_shown", screen_id=self.id, run_id=run.id, tutorial=self.tutorial.name)
        return run

    def destroy(self):
        """Cancel all outstanding work. Safe to call more than once."""
        if not self._destroyed:
            logger.info("screen_destroyed", screen_id=self.id)
        self._destroyed = True
        if self._scope is not None:
            self._scope.cancel_all()

    async def wait_idle(self):
        """Wait for the current run, if any, to settle."""
        if self._run is not None:
            await self._run.wait()

    def _load_image(self, image: ImageBuffer):
        self.state.progress_visible = False
        self.state.image = image

    def _on_failure(self, failure: FailureRecord):
        self.state.progress_visible = False
        self.reporter.report(failure)

    async def _cancel_current(self):
        if self._scope is not None:
            self._scope.cancel_all()
            await self._scope.join()

    def _raise_if_destroyed(self):
        if self._destroyed:
            raise ScopeClosedError(f"screen-{self.id}")
