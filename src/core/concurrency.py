"""
Structured Concurrency for Pipeline Work

Three execution contexts:
- the asyncio event loop thread (UI/control context, never blocked)
- Dispatchers.io: bounded thread pool for blocking network/file reads
- Dispatchers.cpu: bounded thread pool for pixel work

A TaskScope owns the tasks launched through it, one cancellation token
and a single failure handler. Cancellation is cooperative: tasks observe
it at their next await or token check.
"""

import asyncio
import contextvars
import functools
import os
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from src.core.config import settings
from src.core.exceptions import CancellationSignal, ScopeClosedError
from src.core.logging import get_logger
from src.core.metrics import record_failure_reported
from src.pipeline.models import FailureRecord

logger = get_logger(__name__)

IO = "io"
CPU = "cpu"

FailureHandler = Callable[[FailureRecord], Any]


class CancellationToken:
    """
    Thread-safe cancellation flag.

    A child token reports cancelled when it or any ancestor was cancelled,
    so cancelling a scope reaches every task without touching them.
    """

    def __init__(self, parent: Optional["CancellationToken"] = None):
        self._event = threading.Event()
        self._parent = parent

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._parent is not None and self._parent.cancelled

    def cancel(self):
        self._event.set()

    def child(self) -> "CancellationToken":
        return CancellationToken(parent=self)

    def raise_if_cancelled(self):
        if self.cancelled:
            raise CancellationSignal("cancelled at suspension point")


class Dispatchers:
    """The I/O and CPU pools shared by every scope of a process."""

    def __init__(self, io_workers: Optional[int] = None, cpu_workers: Optional[int] = None):
        io_workers = io_workers or settings.IO_WORKERS
        cpu_workers = cpu_workers or settings.CPU_WORKERS or os.cpu_count() or 2
        self.io = ThreadPoolExecutor(max_workers=io_workers, thread_name_prefix="pipeline-io")
        self.cpu = ThreadPoolExecutor(max_workers=cpu_workers, thread_name_prefix="pipeline-cpu")
        logger.debug("dispatchers_created", io_workers=io_workers, cpu_workers=cpu_workers)

    def get(self, name: str) -> ThreadPoolExecutor:
        if name == IO:
            return self.io
        if name == CPU:
            return self.cpu
        raise ValueError(f"Unknown dispatcher: {name}")

    def shutdown(self, wait: bool = False):
        self.io.shutdown(wait=wait, cancel_futures=True)
        self.cpu.shutdown(wait=wait, cancel_futures=True)
        logger.debug("dispatchers_shutdown")


class TaskState(str, Enum):
    """Scoped task states."""
    PENDING = "pending"
    RUNNING = "running"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    FAILED = "failed"


FINISHED_TASK_STATES = frozenset({TaskState.CANCELLED, TaskState.COMPLETED, TaskState.FAILED})


class ScopedTask:
    """A unit of cancellable work owned by exactly one TaskScope."""

    def __init__(self, scope: "TaskScope", token: CancellationToken, name: Optional[str] = None):
        self.id = uuid.uuid4().hex[:12]
        self.name = name or f"task-{self.id}"
        self.scope = scope
        self.token = token
        self.state = TaskState.PENDING
        self.exception: Optional[BaseException] = None
        self._result: Any = None
        self._reported = False
        self._callbacks: List[Callable[["ScopedTask"], Any]] = []
        self._task: Optional[asyncio.Task] = None

    def __repr__(self) -> str:
        return f"<ScopedTask {self.name} state={self.state.value}>"

    @property
    def is_done(self) -> bool:
        return self.state in FINISHED_TASK_STATES

    def cancel(self):
        """Cancel this task only. Safe to call from any thread."""
        self.token.cancel()
        self.scope._call_on_loop(self._cancel_asyncio_task)

    def _cancel_asyncio_task(self):
        if self._task is not None and not self._task.done():
            self._task.cancel()

    def add_done_callback(self, fn: Callable[["ScopedTask"], Any]):
        """Call fn(task) on the loop once the task settles."""
        if self.is_done:
            fn(self)
        else:
            self._callbacks.append(fn)

    def result(self) -> Any:
        if self.state is TaskState.CANCELLED:
            raise asyncio.CancelledError(f"{self.name} was cancelled")
        if self.exception is not None:
            raise self.exception
        if not self.is_done:
            raise asyncio.InvalidStateError(f"{self.name} is not done")
        return self._result

    async def join(self):
        """Wait until the task settles. Never raises the task's error."""
        if self._task is not None:
            await asyncio.wait({self._task})


class TaskScope:
    """
    Owner of related asynchronous tasks sharing one cancellation lifecycle.

    launch() and submit() must be called from the event loop thread.
    cancel_all() may be called from anywhere and is idempotent. Once
    cancelled, the scope refuses new work; create a new scope instead.
    """

    def __init__(self, dispatchers: Dispatchers, name: str = "scope"):
        self.name = name
        self.dispatchers = dispatchers
        self.token = CancellationToken()
        self._tasks: Dict[str, ScopedTask] = {}
        self._failure_handler: Optional[FailureHandler] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def __repr__(self) -> str:
        return f"<TaskScope {self.name} cancelled={self.is_cancelled} active={len(self._tasks)}>"

    @property
    def is_cancelled(self) -> bool:
        return self.token.cancelled

    @property
    def active_tasks(self) -> List[ScopedTask]:
        return [task for task in self._tasks.values() if not task.is_done]

    def on_unhandled_failure(self, handler: FailureHandler):
        """Register the scope's single failure handler, replacing any previous one."""
        self._failure_handler = handler

    # -------------------------------------------------------------------------
    # Submission
    # -------------------------------------------------------------------------

    def launch(
        self,
        factory: Callable[[ScopedTask], Awaitable[Any]],
        name: Optional[str] = None
    ) -> ScopedTask:
        """Schedule factory(task) on the running loop without blocking the caller."""
        if self.token.cancelled:
            raise ScopeClosedError(self.name)

        loop = asyncio.get_running_loop()
        self._loop = loop

        scoped = ScopedTask(self, self.token.child(), name=name)
        scoped._task = loop.create_task(self._run(scoped, factory), name=scoped.name)
        scoped._task.add_done_callback(functools.partial(self._on_task_done, scoped))
        self._tasks[scoped.id] = scoped

        logger.debug("task_launched", scope=self.name, task=scoped.name)
        return scoped

    def submit(
        self,
        fn: Callable[..., Any],
        *args,
        dispatcher: str = IO,
        name: Optional[str] = None
    ) -> ScopedTask:
        """Run a blocking callable on one of the pools as a scoped task."""
        return self.launch(
            lambda task: self.run_on(dispatcher, fn, *args, token=task.token),
            name=name
        )

    # -------------------------------------------------------------------------
    # Suspension points
    # -------------------------------------------------------------------------

    async def run_on(
        self,
        dispatcher: str,
        fn: Callable[..., Any],
        *args,
        token: CancellationToken
    ) -> Any:
        """
        Run fn(*args) on a pool and suspend until it finishes.

        The logging context travels with the call. A result that arrives
        after cancellation is discarded.
        """
        token.raise_if_cancelled()
        executor = self.dispatchers.get(dispatcher)
        context = contextvars.copy_context()
        loop = asyncio.get_running_loop()
        result = await loop.run_in_executor(executor, functools.partial(context.run, fn, *args))
        token.raise_if_cancelled()
        return result

    async def run_io(self, fn: Callable[..., Any], *args, token: CancellationToken) -> Any:
        return await self.run_on(IO, fn, *args, token=token)

    async def run_cpu(self, fn: Callable[..., Any], *args, token: CancellationToken) -> Any:
        return await self.run_on(CPU, fn, *args, token=token)

    # -------------------------------------------------------------------------
    # Failure delivery
    # -------------------------------------------------------------------------

    def report_failure(self, record: FailureRecord, task: Optional[ScopedTask] = None) -> bool:
        """
        Deliver a failure to the registered handler.

        Each task reports at most once, and a task whose token is cancelled
        reports nothing. Returns True when the failure was delivered.
        """
        if task is not None:
            if task._reported or task.token.cancelled:
                return False
            task._reported = True

        record_failure_reported(record.stage or "unknown")

        handler = self._failure_handler
        if handler is None:
            logger.error(
                "unhandled_failure",
                scope=self.name,
                error=record.message,
                error_type=type(record.cause).__name__,
                failed_stage=record.stage
            )
            return True

        try:
            handler(record)
        except Exception:
            logger.exception("failure_handler_error", scope=self.name)
        return True

    async def _run(self, scoped: ScopedTask, factory: Callable[[ScopedTask], Awaitable[Any]]) -> Any:
        scoped.state = TaskState.RUNNING
        try:
            scoped._result = await factory(scoped)
        except asyncio.CancelledError:
            scoped.state = TaskState.CANCELLED
            raise
        except Exception as exc:
            scoped.state = TaskState.FAILED
            scoped.exception = exc
            if scoped.token.cancelled:
                logger.debug("task_failed_after_cancel", scope=self.name, task=scoped.name, error=str(exc))
            else:
                self.report_failure(FailureRecord.from_exception(exc), scoped)
            return None
        scoped.state = TaskState.COMPLETED
        return scoped._result

    def _on_task_done(self, scoped: ScopedTask, task: asyncio.Task):
        if task.cancelled() and not scoped.is_done:
            # Cancelled before its first step
            scoped.state = TaskState.CANCELLED
        self._tasks.pop(scoped.id, None)
        callbacks, scoped._callbacks = scoped._callbacks, []
        for callback in callbacks:
            try:
                callback(scoped)
            except Exception:
                logger.exception("task_callback_error", scope=self.name, task=scoped.name)

    # -------------------------------------------------------------------------
    # Teardown
    # -------------------------------------------------------------------------

    def cancel_all(self):
        """Signal cancellation to every outstanding task. Idempotent."""
        if self.token.cancelled:
            return
        self.token.cancel()
        logger.info("scope_cancelled", scope=self.name, active_tasks=len(self._tasks))
        self._call_on_loop(self._cancel_tasks)

    def _cancel_tasks(self):
        for scoped in list(self._tasks.values()):
            scoped._cancel_asyncio_task()

    def _call_on_loop(self, fn: Callable[[], Any]):
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            fn()
        else:
            loop.call_soon_threadsafe(fn)

    async def join(self):
        """Wait for every task currently owned by the scope to settle."""
        pending = [scoped._task for scoped in self._tasks.values() if scoped._task is not None]
        if pending:
            await asyncio.wait(pending)
