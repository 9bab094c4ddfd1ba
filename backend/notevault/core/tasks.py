"""
Strictly sequential task queue used by the rotation engine.

Task *i* is fully finished (successfully or not) before task *i+1* starts,
which gives a single high-water mark of progress. Progress reporting,
cancellation checkpoints and retries hook in here rather than in the work
itself.
"""
import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Tuple, Type

from notevault.core.errors import RotationCancelled, StorageError
from notevault.models import Progress

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[Progress], Any]


@dataclass
class RetryPolicy:
    attempts: int = 1
    retry_on: Tuple[Type[BaseException], ...] = (StorageError,)
    backoff_seconds: float = 0.0

    def should_retry(self, exc: BaseException, attempt: int) -> bool:
        return attempt < self.attempts and isinstance(exc, self.retry_on)


class CancelToken:
    def __init__(self):
        self._cancelled = False

    def cancel(self):
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def checkpoint(self):
        if self._cancelled:
            raise RotationCancelled("cancelled")


@dataclass
class Task:
    key: str
    run: Callable[[], Awaitable[Any]]


@dataclass
class TaskOutcome:
    key: str
    ok: bool
    result: Any = None
    error: Optional[BaseException] = None
    attempts: int = 0


@dataclass
class QueueResult:
    outcomes: List[TaskOutcome] = field(default_factory=list)
    total: int = 0
    cancelled: bool = False

    @property
    def succeeded(self) -> List[TaskOutcome]:
        return [o for o in self.outcomes if o.ok]

    @property
    def failed(self) -> List[TaskOutcome]:
        return [o for o in self.outcomes if not o.ok]


class OrderedTaskQueue:
    def __init__(
        self,
        tasks: Optional[List[Task]] = None,
        *,
        on_progress: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancelToken] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self._tasks: List[Task] = list(tasks or [])
        self.on_progress = on_progress
        self.cancel_token = cancel_token or CancelToken()
        self.retry_policy = retry_policy or RetryPolicy()

    def add(self, key: str, run: Callable[[], Awaitable[Any]]):
        self._tasks.append(Task(key=key, run=run))

    def __len__(self) -> int:
        return len(self._tasks)

    async def _report(self, done: int, total: int, key: str):
        if not self.on_progress:
            return
        ret = self.on_progress(Progress(done=done, total=total, item_id=key))
        if inspect.isawaitable(ret):
            await ret

    async def _run_one(self, task: Task) -> TaskOutcome:
        attempt = 0
        while True:
            attempt += 1
            try:
                result = await task.run()
                return TaskOutcome(key=task.key, ok=True, result=result, attempts=attempt)
            except RotationCancelled:
                raise
            except Exception as exc:
                if self.retry_policy.should_retry(exc, attempt):
                    logger.info("task %s failed on attempt %d, retrying: %s", task.key, attempt, exc)
                    if self.retry_policy.backoff_seconds:
                        await asyncio.sleep(self.retry_policy.backoff_seconds * attempt)
                    continue
                logger.warning("task %s failed after %d attempt(s): %s", task.key, attempt, exc)
                return TaskOutcome(key=task.key, ok=False, error=exc, attempts=attempt)

    async def run(self) -> QueueResult:
        total = len(self._tasks)
        result = QueueResult(total=total)
        for done, task in enumerate(self._tasks, start=1):
            try:
                self.cancel_token.checkpoint()
                outcome = await self._run_one(task)
            except RotationCancelled:
                logger.info("queue cancelled after %d/%d tasks", done - 1, total)
                result.cancelled = True
                break
            result.outcomes.append(outcome)
            await self._report(done, total, task.key)
        return result
