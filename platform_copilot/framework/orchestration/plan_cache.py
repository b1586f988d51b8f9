"""
计划缓存

以「规范化消息 + 上下文指纹」为键缓存已校验的计划，
相同请求不再重复调用规划服务。
"""

import hashlib
import logging
from typing import Any, Dict, Optional

from ...core.cache import LRUCache
from ..config import PlanCacheConfig
from .models import ConversationContext, Plan, PlanSource

logger = logging.getLogger(__name__)

# 不写入缓存的计划来源：快速路径本身就不需要规划服务；
# 回退计划来自规划服务故障，缓存会把降级结果固定下来
_UNCACHEABLE_SOURCES = frozenset({PlanSource.FAST_PATH, PlanSource.FALLBACK, PlanSource.CACHE})


class PlanCache:
    """
    计划缓存

    键 = md5(规范化消息 : 上下文指纹)
    - 规范化：去除首尾空白、大小写折叠、合并连续空白
    - 指纹：上一条助手消息是提问时为 "continuation"，否则为 "fresh"，
      同一句话作为追问的回答和作为新请求时会得到不同的计划
    """

    def __init__(self, config: PlanCacheConfig = None):
        self._config = config or PlanCacheConfig()
        self._cache: LRUCache[str, Plan] = LRUCache(
            max_size=self._config.max_size,
            ttl=self._config.ttl,
        )

    @property
    def enabled(self) -> bool:
        return self._config.enabled

    @staticmethod
    def normalize(message: str) -> str:
        return " ".join(message.split()).casefold()

    @staticmethod
    def fingerprint(context: Optional[ConversationContext]) -> str:
        if context is not None and context.is_awaiting_clarification():
            return "continuation"
        return "fresh"

    def make_key(self, message: str, context: Optional[ConversationContext] = None) -> str:
        key_str = f"{self.normalize(message)}:{self.fingerprint(context)}"
        return hashlib.md5(key_str.encode("utf-8")).hexdigest()

    def try_get(self, message: str, context: Optional[ConversationContext] = None) -> Optional[Plan]:
        """
        查询缓存

        Returns:
            写入时的计划（原样返回），未命中返回 None
        """
        if not self.enabled:
            return None

        plan = self._cache.get(self.make_key(message, context))
        if plan is None:
            return None

        logger.debug(f"Plan cache hit: {plan.primary_intent}")
        return plan

    def put(self, message: str, plan: Plan, context: Optional[ConversationContext] = None) -> bool:
        """写入缓存，返回是否实际写入"""
        if not self.enabled or plan.source in _UNCACHEABLE_SOURCES:
            return False

        self._cache.set(self.make_key(message, context), plan)
        return True

    def hit_count(self, message: str, context: Optional[ConversationContext] = None) -> int:
        entry = self._cache.get_entry(self.make_key(message, context))
        return entry.access_count if entry else 0

    def invalidate(self, message: Optional[str] = None,
                   context: Optional[ConversationContext] = None) -> int:
        """使单条或全部缓存失效，返回失效条目数"""
        if message is None:
            count = len(self._cache)
            self._cache.clear()
            return count
        return int(self._cache.delete(self.make_key(message, context)))

    def stats(self) -> Dict[str, Any]:
        return self._cache.stats()

    def cleanup_expired(self) -> int:
        return self._cache.cleanup_expired()

    def __len__(self) -> int:
        return len(self._cache)
