"""
Pipeline Orchestration

Sequences fetch -> filter -> publish for one request inside a TaskScope.
The run is a single coroutine on the event loop; each stage hop suspends
it until the worker pool returns, so no loop time is spent blocking.
"""

import asyncio
import functools
import inspect
from typing import Any, Callable, Optional

from src.core.concurrency import CPU, IO, CancellationToken, ScopedTask, TaskScope, TaskState
from src.core.exceptions import PipelineBaseException
from src.core.logging import get_logger, LogContext
from src.core.metrics import record_run_started, record_run_finished
from src.pipeline.models import (
    Failure,
    FailureRecord,
    ImageBuffer,
    PipelineRequest,
    PipelineRun,
    Result,
    RunState,
    Success,
)
from src.pipeline.stages import FetchStage, FilterStage

logger = get_logger(__name__)

CompletionCallback = Callable[[ImageBuffer], Any]


class Pipeline:
    """
    Fetch, filter and publish images under one TaskScope.

    Runs launched on the same scope are independent of each other: a failure
    in one is reported through the scope's handler and leaves the others
    running. Failures are never retried.
    """

    def __init__(
        self,
        scope: TaskScope,
        fetch_stage: Optional[FetchStage] = None,
        filter_stage: Optional[FilterStage] = None
    ):
        self.scope = scope
        self.fetch_stage = fetch_stage or FetchStage()
        self.filter_stage = filter_stage or FilterStage()

    def run(self, request: PipelineRequest, on_complete: CompletionCallback) -> PipelineRun:
        """
        Start a run and return its bookkeeping record immediately.

        on_complete(image) is called on the event loop once, after both stages
        succeed and only if the run was not cancelled. It may be a coroutine
        function.

        A stage failure goes to the scope handler and on_complete is never
        called. The one case where both fire is on_complete itself raising:
        the image was already handed over, so the run still ends DONE and the
        error is reported once with stage "publish".
        """
        run = PipelineRun(request)
        run.task = self.scope.launch(
            lambda task: self._execute(run, on_complete, task),
            name=f"pipeline-{run.id}"
        )
        run.task.add_done_callback(functools.partial(self._settle, run))
        return run

    async def _execute(self, run: PipelineRun, on_complete: CompletionCallback, task: ScopedTask) -> PipelineRun:
        token = task.token
        record_run_started()

        with LogContext(run_id=run.id):
            try:
                logger.info("pipeline_run_started", url=run.request.url)

                run.transition(RunState.FETCHING)
                fetched = await self._attempt(run, "fetch", IO, self.fetch_stage.fetch, run.request.url, token)
                if isinstance(fetched, Failure):
                    return self._fail(run, fetched.record, task)

                run.transition(RunState.FILTERING)
                filtered = await self._attempt(run, "filter", CPU, self.filter_stage.apply, fetched.value, token)
                if isinstance(filtered, Failure):
                    return self._fail(run, filtered.record, task)

                run.transition(RunState.PUBLISHING)
                token.raise_if_cancelled()
                delivery = await self._publish(run, on_complete, filtered.value)

                # The image was handed over even when the consumer raised
                failure = delivery.record if isinstance(delivery, Failure) else None
                run.transition(RunState.DONE, failure=failure)
                if failure is not None:
                    self.scope.report_failure(failure, task)
                else:
                    logger.info("pipeline_run_completed", dimensions=filtered.value.size)
                return run

            except asyncio.CancelledError:
                if not run.is_terminal:
                    run.transition(RunState.CANCELLED)
                logger.info("pipeline_run_cancelled", url=run.request.url)
                raise

            finally:
                record_run_finished(run.state.value if run.is_terminal else "error")

    async def _attempt(
        self,
        run: PipelineRun,
        stage: str,
        dispatcher: str,
        fn: Callable[..., Any],
        value: Any,
        token: CancellationToken
    ) -> Result:
        try:
            return Success(await self.scope.run_on(dispatcher, fn, value, token, token=token))
        except PipelineBaseException as e:
            return Failure(FailureRecord.from_exception(e, stage=stage, run_id=run.id))
        except Exception as e:
            logger.exception("stage_unexpected_error", failed_stage=stage)
            return Failure(FailureRecord.from_exception(e, stage=stage, run_id=run.id))

    async def _publish(self, run: PipelineRun, on_complete: CompletionCallback, image: ImageBuffer) -> Result:
        try:
            published = on_complete(image)
            if inspect.isawaitable(published):
                published = await published
            return Success(published)
        except Exception as e:
            logger.exception("publish_callback_error")
            return Failure(FailureRecord.from_exception(e, stage="publish", run_id=run.id))

    def _fail(self, run: PipelineRun, record: FailureRecord, task: ScopedTask) -> PipelineRun:
        run.transition(RunState.FAILED, failure=record)
        logger.warning(
            "pipeline_run_failed",
            failed_stage=record.stage,
            error=record.message,
            error_type=type(record.cause).__name__
        )
        self.scope.report_failure(record, task)
        return run

    @staticmethod
    def _settle(run: PipelineRun, task: ScopedTask):
        # Covers runs cancelled before their first step
        if task.state is TaskState.CANCELLED and not run.is_terminal:
            run.transition(RunState.CANCELLED)
