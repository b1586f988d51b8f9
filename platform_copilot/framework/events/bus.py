"""
事件总线实现

提供事件的发布、订阅、历史记录和死信队列。
处理器异常只会被记录并进入死信队列，不会影响发布方。
"""

import asyncio
import inspect
import logging
import threading
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from .types import Event, EventType, EventFilter

logger = logging.getLogger(__name__)


@dataclass
class Subscription:
    """订阅信息"""
    handler: Callable
    filter: Optional[EventFilter] = None
    is_async: bool = False
    once: bool = False  # 是否只触发一次
    priority: int = 0  # 处理器优先级


class EventBus:
    """
    事件总线

    功能:
    - 事件发布/订阅（支持同步和异步处理器）
    - 事件过滤
    - 事件历史记录
    - 死信队列

    使用示例:
    ```python
    bus = EventBus()

    @bus.on(EventType.TASK_COMPLETED)
    async def handle_task(event: Event):
        print(f"Task finished: {event.payload}")

    await bus.emit(Event(
        type=EventType.TASK_COMPLETED,
        payload={"category": "discovery"}
    ))
    ```
    """

    def __init__(
        self,
        max_history: int = 1000,
        enable_dead_letter: bool = True,
        handler_timeout: float = 5.0
    ):
        self._subscriptions: Dict[str, List[Subscription]] = defaultdict(list)
        self._history: List[Event] = []
        self._max_history = max_history
        self._dead_letter_queue: List[Tuple[Event, str]] = []
        self._enable_dead_letter = enable_dead_letter
        self._handler_timeout = handler_timeout
        self._lock = threading.RLock()
        self._running = True

    @staticmethod
    def _type_key(event_type: Union[EventType, str]) -> str:
        return event_type.value if isinstance(event_type, EventType) else event_type

    def _add(self, type_str: str, subscription: Subscription) -> None:
        with self._lock:
            subs = self._subscriptions[type_str]
            subs.append(subscription)
            subs.sort(key=lambda s: s.priority, reverse=True)

    def on(
        self,
        event_type: Union[EventType, str, List[Union[EventType, str]]],
        filter: Optional[EventFilter] = None,
        priority: int = 0,
        once: bool = False
    ) -> Callable:
        """
        装饰器：订阅事件

        Args:
            event_type: 事件类型（可以是单个或列表，"*" 表示全部）
            filter: 事件过滤器
            priority: 处理器优先级（越大越先执行）
            once: 是否只触发一次
        """
        def decorator(handler: Callable) -> Callable:
            types = event_type if isinstance(event_type, list) else [event_type]
            for et in types:
                self._add(self._type_key(et), Subscription(
                    handler=handler,
                    filter=filter,
                    is_async=inspect.iscoroutinefunction(handler),
                    once=once,
                    priority=priority
                ))
            return handler
        return decorator

    def subscribe(
        self,
        event_type: Union[EventType, str],
        handler: Callable,
        filter: Optional[EventFilter] = None,
        priority: int = 0,
        once: bool = False
    ) -> str:
        """
        编程方式订阅事件

        Returns:
            subscription_id: 订阅ID，用于取消订阅
        """
        type_str = self._type_key(event_type)
        subscription = Subscription(
            handler=handler,
            filter=filter,
            is_async=inspect.iscoroutinefunction(handler),
            once=once,
            priority=priority
        )
        self._add(type_str, subscription)
        return f"{type_str}:{id(subscription)}"

    def unsubscribe(self, subscription_id: str) -> bool:
        """取消订阅"""
        type_str, _, sub_id = subscription_id.rpartition(":")
        if not sub_id.isdigit():
            return False

        with self._lock:
            subs = self._subscriptions.get(type_str, [])
            for i, sub in enumerate(subs):
                if id(sub) == int(sub_id):
                    subs.pop(i)
                    return True
        return False

    async def emit(self, event: Event) -> List[Any]:
        """
        发布事件并等待所有匹配的处理器完成

        Args:
            event: 事件对象

        Returns:
            处理器返回值列表
        """
        if not self._running:
            logger.warning("EventBus is stopped, event ignored")
            return []

        self._record_history(event)

        type_str = event.type
        with self._lock:
            subscriptions = [(type_str, s) for s in self._subscriptions.get(type_str, [])]
            subscriptions.extend(("*", s) for s in self._subscriptions.get("*", []))

        results = []
        to_remove = []

        for key, sub in subscriptions:
            if sub.filter and not sub.filter.matches(event):
                continue

            try:
                if sub.is_async:
                    result = await asyncio.wait_for(sub.handler(event), timeout=self._handler_timeout)
                else:
                    result = sub.handler(event)
                results.append(result)
            except asyncio.TimeoutError:
                logger.error(f"Handler timeout for event {type_str}")
                self._dead_letter(event, "timeout")
            except Exception as e:
                logger.error(f"Handler error for event {type_str}: {e}")
                self._dead_letter(event, str(e))

            if sub.once:
                to_remove.append((key, sub))

        with self._lock:
            for key, sub in to_remove:
                if sub in self._subscriptions[key]:
                    self._subscriptions[key].remove(sub)

        return results

    def _dead_letter(self, event: Event, reason: str) -> None:
        if self._enable_dead_letter:
            with self._lock:
                self._dead_letter_queue.append((event, reason))

    def _record_history(self, event: Event) -> None:
        """记录事件历史"""
        with self._lock:
            self._history.append(event)
            if len(self._history) > self._max_history:
                self._history = self._history[-self._max_history:]

    def get_history(
        self,
        filter: Optional[EventFilter] = None,
        limit: int = 100
    ) -> List[Event]:
        """获取事件历史"""
        with self._lock:
            events = list(self._history)

        if filter:
            events = [e for e in events if filter.matches(e)]

        return events[-limit:]

    def get_dead_letters(self, limit: int = 100) -> List[Tuple[Event, str]]:
        """获取死信队列"""
        with self._lock:
            return self._dead_letter_queue[-limit:]

    def clear_dead_letters(self) -> int:
        """清空死信队列"""
        with self._lock:
            count = len(self._dead_letter_queue)
            self._dead_letter_queue.clear()
        return count

    def get_stats(self) -> Dict[str, Any]:
        """获取统计信息"""
        with self._lock:
            return {
                "total_subscriptions": sum(
                    len(subs) for subs in self._subscriptions.values()
                ),
                "event_types": list(self._subscriptions.keys()),
                "history_size": len(self._history),
                "dead_letter_size": len(self._dead_letter_queue),
            }

    def stop(self) -> None:
        """停止事件总线"""
        self._running = False

    def start(self) -> None:
        """启动事件总线"""
        self._running = True
