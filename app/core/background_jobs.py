"""
In-process job queue for experiment steps.

Design goals:
- Experiment steps run long DDL/bulk inserts; they run one at a time on a
  single worker so two steps never fight over the same experiment table.
- The request handler awaits the job's future, so the caller still gets the
  step result (or its exception) directly.
- Simple in-process asyncio Queue (queued jobs are lost on process restart).
"""

from __future__ import annotations

import asyncio
import traceback
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional

from app.config import settings
from app.smart_logger import SmartLogger
from app.utils.log_sanitize import sanitize_for_log


JobFactory = Callable[[], Awaitable[Any]]


class ExperimentQueueFullError(Exception):
    """Raised when the experiment queue cannot take another job"""
    pass


@dataclass
class ExperimentJob:
    run: JobFactory
    label: str
    future: asyncio.Future = field(repr=False, default=None)


_queue: Optional[asyncio.Queue[Optional[ExperimentJob]]] = None
_worker_tasks: List[asyncio.Task] = []


def is_started() -> bool:
    return _queue is not None and len(_worker_tasks) > 0


async def start_experiment_worker() -> None:
    """
    Start the experiment worker (idempotent).
    Must be called from FastAPI lifespan startup.
    """
    global _queue, _worker_tasks
    if is_started():
        return

    _queue = asyncio.Queue(maxsize=int(settings.experiment_queue_maxsize))
    _worker_tasks.append(asyncio.create_task(_worker_loop(0), name="experiment_worker_0"))

    SmartLogger.log(
        "INFO",
        "experiments.worker.started",
        category="experiments.worker",
        params={"queue_maxsize": int(settings.experiment_queue_maxsize)},
        max_inline_chars=0,
    )


async def stop_experiment_worker() -> None:
    """Stop the worker (idempotent). Jobs still queued are cancelled."""
    global _queue, _worker_tasks
    if _queue is None:
        return

    # Fail queued jobs so their callers are not left waiting.
    while not _queue.empty():
        job = _queue.get_nowait()
        if job is not None and not job.future.done():
            job.future.cancel()

    _queue.put_nowait(None)
    try:
        await asyncio.wait_for(asyncio.gather(*_worker_tasks, return_exceptions=True), timeout=5)
    except asyncio.TimeoutError:
        for task in _worker_tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*_worker_tasks, return_exceptions=True)

    _worker_tasks = []
    _queue = None

    SmartLogger.log(
        "INFO",
        "experiments.worker.stopped",
        category="experiments.worker",
        params=None,
        max_inline_chars=0,
    )


async def submit_experiment_job(run: JobFactory, label: str) -> Any:
    """
    Queue `run` for the worker and wait for its result.

    Without a started worker (tests, scripts) the job runs inline.

    Raises:
        ExperimentQueueFullError: too many steps are already waiting.
        Whatever `run` raises.
    """
    if _queue is None:
        SmartLogger.log(
            "WARNING",
            "experiments.enqueue.inline_not_started",
            category="experiments.enqueue",
            params={"label": label},
            max_inline_chars=0,
        )
        return await run()

    job = ExperimentJob(run=run, label=label, future=asyncio.get_running_loop().create_future())
    job.future.add_done_callback(_retrieve_outcome)
    try:
        _queue.put_nowait(job)
    except asyncio.QueueFull:
        SmartLogger.log(
            "WARNING",
            "experiments.enqueue.queue_full",
            category="experiments.enqueue",
            params={"label": label, "queue_size": _queue.qsize()},
            max_inline_chars=0,
        )
        raise ExperimentQueueFullError(
            f"Experiment queue is full ({_queue.qsize()} waiting); try again later"
        ) from None

    SmartLogger.log(
        "INFO",
        "experiments.enqueue.ok",
        category="experiments.enqueue",
        params={"label": label, "queue_size": _queue.qsize()},
        max_inline_chars=0,
    )
    # shield: a disconnected client must not cancel a step mid-DDL
    return await asyncio.shield(job.future)


def _retrieve_outcome(future: asyncio.Future) -> None:
    # The caller may have left (client disconnect); the worker already logged the failure.
    if not future.cancelled():
        future.exception()


async def _worker_loop(worker_idx: int) -> None:
    assert _queue is not None
    queue = _queue

    while True:
        job = await queue.get()
        try:
            if job is None:
                return
            if job.future.done():
                continue
            try:
                result = await job.run()
            except asyncio.CancelledError:
                if not job.future.done():
                    job.future.cancel()
                raise
            except Exception as exc:
                SmartLogger.log(
                    "ERROR",
                    "experiments.worker.job_failed",
                    category="experiments.worker",
                    params=sanitize_for_log(
                        {
                            "worker_idx": worker_idx,
                            "label": job.label,
                            "exception": repr(exc),
                            "traceback": traceback.format_exc(),
                        }
                    ),
                    max_inline_chars=0,
                )
                if not job.future.done():
                    job.future.set_exception(exc)
            else:
                if not job.future.done():
                    job.future.set_result(result)
        finally:
            queue.task_done()
