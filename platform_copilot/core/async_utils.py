"""
异步工具模块
提供有界并发的扇出/汇合与异步重试
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Coroutine, List, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def gather_with_concurrency(
    n: int,
    *coros: Coroutine[Any, Any, T]
) -> List[T]:
    """
    带并发限制的 gather

    基于 TaskGroup 实现：任一子任务抛出异常或调用方被取消时，
    其余子任务都会被取消并等待结束，不会泄漏后台任务。

    Args:
        n: 最大并发数（<= 0 表示不限制）
        *coros: 协程列表

    Returns:
        结果列表，顺序与传入顺序一致
    """
    if not coros:
        return []

    semaphore = asyncio.Semaphore(n if n > 0 else len(coros))

    async def sem_coro(coro: Coroutine[Any, Any, T]) -> T:
        async with semaphore:
            return await coro

    async with asyncio.TaskGroup() as tg:
        tasks = [tg.create_task(sem_coro(c)) for c in coros]

    return [task.result() for task in tasks]


async def retry_async(
    coro_func: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    delay: float = 1.0,
    backoff: float = 2.0,
    exceptions: tuple = (Exception,)
) -> T:
    """
    异步重试

    asyncio.CancelledError 不属于 Exception，永远不会被重试吞掉。

    Args:
        coro_func: 返回协程的函数
        max_retries: 最大重试次数（不含首次调用）
        delay: 初始延迟（秒）
        backoff: 退避系数
        exceptions: 需要重试的异常类型

    Returns:
        协程结果
    """
    last_exception = None
    current_delay = delay

    for attempt in range(max_retries + 1):
        try:
            return await coro_func()
        except exceptions as e:
            last_exception = e
            if attempt < max_retries:
                logger.warning(f"Retry {attempt + 1}/{max_retries}: {e!r}")
                await asyncio.sleep(current_delay)
                current_delay *= backoff
            else:
                logger.error(f"Retries exhausted: {e!r}")

    raise last_exception
