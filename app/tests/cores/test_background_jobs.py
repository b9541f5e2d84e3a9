# python -m pytest app/tests/cores/test_background_jobs.py -v

import asyncio
import gc

import pytest

from app.config import settings
from app.core import background_jobs
from app.core.background_jobs import (
    ExperimentQueueFullError,
    is_started,
    start_experiment_worker,
    stop_experiment_worker,
    submit_experiment_job,
)


async def _yield_to_loop(times=5):
    for _ in range(times):
        await asyncio.sleep(0)


class TestExperimentWorker:
    """Experiment steps run one at a time on the worker"""

    def test_inline_when_not_started(self):
        async def job():
            return "done"

        assert asyncio.run(submit_experiment_job(job, label="inline")) == "done"

    def test_jobs_are_serialised(self):
        running = []
        overlap = []

        def make_job(idx):
            async def job():
                if running:
                    overlap.append(idx)
                running.append(idx)
                await asyncio.sleep(0.01)
                running.remove(idx)
                return idx

            return job

        async def _run():
            await start_experiment_worker()
            try:
                assert is_started()
                return await asyncio.gather(*(submit_experiment_job(make_job(i), label=f"job{i}") for i in range(3)))
            finally:
                await stop_experiment_worker()

        assert asyncio.run(_run()) == [0, 1, 2]
        assert overlap == []
        assert not is_started()

    def test_job_exception_reaches_caller(self):
        async def job():
            raise ValueError("boom")

        async def _run():
            await start_experiment_worker()
            try:
                await submit_experiment_job(job, label="failing")
            finally:
                await stop_experiment_worker()

        with pytest.raises(ValueError, match="boom"):
            asyncio.run(_run())

    def test_queue_full(self, monkeypatch):
        monkeypatch.setattr(settings, "experiment_queue_maxsize", 1)
        release = None

        async def blocker():
            await release.wait()

        async def _run():
            nonlocal release
            release = asyncio.Event()
            await start_experiment_worker()
            try:
                first = asyncio.create_task(submit_experiment_job(blocker, label="running"))
                await _yield_to_loop()  # worker picks up the first job
                second = asyncio.create_task(submit_experiment_job(blocker, label="queued"))
                await _yield_to_loop()
                with pytest.raises(ExperimentQueueFullError):
                    await submit_experiment_job(blocker, label="rejected")
                release.set()
                await asyncio.gather(first, second)
            finally:
                await stop_experiment_worker()

        asyncio.run(_run())
        assert background_jobs._queue is None

    def test_failure_after_caller_left_is_retrieved(self):
        unretrieved = []
        finished = None
        release = None

        async def failing():
            await release.wait()
            try:
                raise RuntimeError("ddl failed")
            finally:
                finished.set()

        async def _run():
            nonlocal release, finished
            release = asyncio.Event()
            finished = asyncio.Event()
            loop = asyncio.get_running_loop()
            loop.set_exception_handler(lambda _loop, context: unretrieved.append(context.get("message")))
            await start_experiment_worker()
            try:
                caller = asyncio.create_task(submit_experiment_job(failing, label="abandoned"))
                await _yield_to_loop()
                caller.cancel()  # client disconnected
                with pytest.raises(asyncio.CancelledError):
                    await caller
                release.set()
                await finished.wait()
                await _yield_to_loop()
            finally:
                await stop_experiment_worker()
            gc.collect()
            await _yield_to_loop()

        asyncio.run(_run())
        assert not any("never retrieved" in (message or "") for message in unretrieved)

    def test_retrieve_outcome_marks_exception_seen(self):
        async def _run():
            future = asyncio.get_running_loop().create_future()
            future.add_done_callback(background_jobs._retrieve_outcome)
            future.set_exception(ValueError("boom"))
            await _yield_to_loop()
            return future

        future = asyncio.run(_run())
        assert future._log_traceback is False
