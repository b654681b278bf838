"""
异步任务管理模块
跟踪后台任务（延迟扣费、临时对象清理），关闭服务时统一等待或取消
"""
import asyncio
from typing import Coroutine, Optional, Set

from log import log

_tasks: Set[asyncio.Task] = set()


def _on_done(task: asyncio.Task):
    _tasks.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        log.error(f"Background task {task.get_name()} failed: {exc}")


def create_managed_task(coro: Coroutine, name: Optional[str] = None) -> asyncio.Task:
    """创建受管理的后台任务，保持强引用直到完成"""
    task = asyncio.create_task(coro, name=name)
    _tasks.add(task)
    task.add_done_callback(_on_done)
    return task


def pending_task_count() -> int:
    return len(_tasks)


async def wait_for_pending_tasks(timeout: Optional[float] = None):
    """等待当前所有后台任务完成（测试和关闭流程使用）"""
    if not _tasks:
        return
    await asyncio.wait(list(_tasks), timeout=timeout)


async def shutdown_all_tasks(timeout: float = 10.0):
    """关闭所有后台任务：先等待 timeout 秒，超时后取消剩余任务"""
    if not _tasks:
        return
    log.info(f"Waiting for {len(_tasks)} background tasks")
    done, pending = await asyncio.wait(list(_tasks), timeout=timeout)
    for task in pending:
        task.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)
        log.warning(f"Cancelled {len(pending)} background tasks on shutdown")
