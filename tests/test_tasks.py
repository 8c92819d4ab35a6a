import asyncio
import logging

from tasksync.core.tasks import BackgroundTasks


def test_crashed_task_is_logged_and_released(caplog):
    tasks = BackgroundTasks("tests")

    async def _boom():
        raise RuntimeError("boom")

    async def _scenario():
        task = tasks.spawn(_boom(), name="boom")
        held = len(tasks)
        await asyncio.gather(task, return_exceptions=True)
        await asyncio.sleep(0)
        return held

    with caplog.at_level(logging.ERROR, logger="tasksync.core.tasks"):
        held = asyncio.run(_scenario())

    assert held == 1
    assert len(tasks) == 0
    assert "background_task_failed owner=tests task=boom" in caplog.text


def test_cancel_all_stops_pending_tasks():
    tasks = BackgroundTasks("tests")

    async def _scenario():
        task = tasks.spawn(asyncio.sleep(3600))
        await asyncio.sleep(0)
        await tasks.cancel_all()
        await asyncio.sleep(0)
        return task

    task = asyncio.run(_scenario())

    assert task.cancelled()
    assert len(tasks) == 0


def test_spawn_without_running_loop_closes_the_coroutine():
    async def _noop():
        return None

    coro = _noop()
    assert BackgroundTasks("tests").spawn(coro) is None
    assert coro.cr_frame is None
