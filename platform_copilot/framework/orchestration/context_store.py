"""
会话上下文存储

按会话 ID 保存不可变的 ConversationContext。所有修改都是整体替换，
在存储锁内完成读-改-写，并发任务不会看到半更新的状态。
"""

import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from ...core.cache import CircularBuffer, LRUCache
from ...core.exceptions import ContextStoreException
from ..config import ContextStoreConfig
from .models import ConversationContext, ExecutorCategory, ExecutorResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AgentEvent:
    """审计日志条目：编排层与执行器之间的一次交互"""
    conversation_id: str
    source: str
    message: str
    target: Optional[str] = None
    data: Mapping[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)


class ContextStore:
    """
    会话上下文存储

    功能:
    - 按会话读写上下文（get 永不返回 None）
    - 原子的读-改-写 update()
    - LRU 容量上限 + 闲置过期
    - 每个会话一份有界审计日志（不参与控制流）

    使用示例:
    ```python
    store = ContextStore(ContextStoreConfig(max_history=20))

    ctx = store.get("conv-1")          # 未知会话返回空上下文
    store.update("conv-1", lambda c: c.with_fact("last_subscription_id", sub_id))
    store.record_event("conv-1", "orchestrator", "Dispatching task", target="compliance")
    ```
    """

    def __init__(self, config: ContextStoreConfig = None):
        self._config = config or ContextStoreConfig()
        self._lock = threading.RLock()
        # 审计日志使用独立的锁，淘汰回调在 LRU 锁内执行，只能获取这把锁
        self._events_lock = threading.Lock()
        self._events: Dict[str, CircularBuffer[AgentEvent]] = {}
        self._contexts: LRUCache[str, ConversationContext] = LRUCache(
            max_size=self._config.max_conversations,
            ttl=self._config.idle_ttl,
            sliding=True,
            on_evict=self._on_evict,
        )

    @property
    def config(self) -> ContextStoreConfig:
        return self._config

    def _on_evict(self, conversation_id: str, context: ConversationContext) -> None:
        with self._events_lock:
            self._events.pop(conversation_id, None)
        logger.debug(f"Evicted conversation context: {conversation_id}")

    # === 基本读写 ===

    def get(self, conversation_id: str) -> ConversationContext:
        """获取上下文；未知会话返回新的空上下文（不会写入存储）"""
        context = self._contexts.get(conversation_id)
        if context is None:
            return ConversationContext(conversation_id=conversation_id)
        return context

    def get_or_create(self, conversation_id: str) -> ConversationContext:
        with self._lock:
            context = self._contexts.get(conversation_id)
            if context is None:
                context = ConversationContext(conversation_id=conversation_id)
                self._contexts.set(conversation_id, context)
                logger.debug(f"Created conversation context: {conversation_id}")
            return context

    def store(self, conversation_id: str, context: ConversationContext) -> ConversationContext:
        """覆盖写入，返回实际写入的上下文"""
        if not isinstance(context, ConversationContext):
            raise ContextStoreException(
                f"Expected ConversationContext, got {type(context).__name__}",
                conversation_id=conversation_id,
            )
        if context.conversation_id != conversation_id:
            context = replace(context, conversation_id=conversation_id)
        with self._lock:
            self._contexts.set(conversation_id, context)
        return context

    def has(self, conversation_id: str) -> bool:
        return self._contexts.contains(conversation_id)

    def clear(self, conversation_id: str) -> bool:
        with self._lock:
            removed = self._contexts.delete(conversation_id)
        with self._events_lock:
            self._events.pop(conversation_id, None)
        return removed

    def update(
        self,
        conversation_id: str,
        fn: Callable[[ConversationContext], ConversationContext]
    ) -> ConversationContext:
        """
        原子的读-改-写

        Args:
            conversation_id: 会话 ID
            fn: 接收当前上下文，返回替换后的上下文

        Returns:
            写入后的上下文
        """
        with self._lock:
            current = self.get(conversation_id)
            updated = fn(current)
            return self.store(conversation_id, updated)

    # === 常用更新 ===

    def set_prior_results(self, conversation_id: str, results: Iterable[ExecutorResult]) -> ConversationContext:
        results = list(results)
        return self.update(
            conversation_id,
            lambda c: c.with_prior_results(results, self._config.max_prior_results),
        )

    def record_turn(
        self,
        conversation_id: str,
        user_message: str,
        assistant_message: str,
        categories: Iterable[ExecutorCategory] = (),
        facts: Optional[Mapping[str, Any]] = None,
    ) -> ConversationContext:
        """追加一轮对话（用户 + 助手），并合并使用过的类别与工作流事实"""
        categories = list(categories)
        max_history = self._config.max_history

        def apply(context: ConversationContext) -> ConversationContext:
            return (
                context
                .with_message("user", user_message, max_history)
                .with_message("assistant", assistant_message, max_history)
                .with_used_categories(categories)
                .with_facts(facts or {})
            )

        return self.update(conversation_id, apply)

    # === 审计日志 ===

    def record_event(
        self,
        conversation_id: str,
        source: str,
        message: str,
        target: Optional[str] = None,
        data: Optional[Mapping[str, Any]] = None,
    ) -> AgentEvent:
        event = AgentEvent(
            conversation_id=conversation_id,
            source=source,
            message=message,
            target=target,
            data=dict(data or {}),
        )
        with self._events_lock:
            buffer = self._events.get(conversation_id)
            if buffer is None:
                buffer = CircularBuffer(max_size=self._config.max_events)
                self._events[conversation_id] = buffer
            buffer.append(event)
        return event

    def get_events(self, conversation_id: str, limit: int = 50) -> List[AgentEvent]:
        with self._events_lock:
            buffer = self._events.get(conversation_id)
        return buffer.get_recent(limit) if buffer else []

    # === 监控 ===

    def stats(self) -> Dict[str, Any]:
        stats = self._contexts.stats()
        with self._events_lock:
            stats["event_logs"] = len(self._events)
        return stats

    def cleanup_expired(self) -> int:
        return self._contexts.cleanup_expired()

    def __len__(self) -> int:
        return len(self._contexts)
