"""
通用缓存工具
提供 LRU 缓存（固定 TTL / 滑动 TTL）、循环缓冲区与缓存管理器
"""
import time
import threading
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar
from collections import OrderedDict
from dataclasses import dataclass, field

K = TypeVar('K')
V = TypeVar('V')


@dataclass
class CacheEntry(Generic[V]):
    """缓存条目"""
    value: V
    created_at: float = field(default_factory=time.time)
    last_access: float = field(default_factory=time.time)
    access_count: int = 0


class LRUCache(Generic[K, V]):
    """
    线程安全的 LRU 缓存

    特性：
    - 固定容量，超出时淘汰最久未使用的条目
    - 支持 TTL（可选）
    - 支持滑动过期：sliding=True 时 TTL 从最后一次访问开始计算
    - 淘汰回调：容量淘汰或过期时通知调用方（显式删除不触发）
    - 线程安全
    """

    def __init__(
        self,
        max_size: int = 1000,
        ttl: Optional[float] = None,
        sliding: bool = False,
        on_evict: Optional[Callable[[K, V], None]] = None,
    ):
        """
        初始化 LRU 缓存

        Args:
            max_size: 最大容量
            ttl: 条目存活时间（秒），None 表示永不过期
            sliding: 是否按最后访问时间计算过期
            on_evict: 条目被淘汰或过期时的回调
        """
        self.max_size = max_size
        self.ttl = ttl
        self.sliding = sliding
        self._on_evict = on_evict
        self._cache: OrderedDict[K, CacheEntry[V]] = OrderedDict()
        self._lock = threading.RLock()

        # 统计信息
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def _is_expired(self, entry: CacheEntry[V], now: float) -> bool:
        if not self.ttl:
            return False
        anchor = entry.last_access if self.sliding else entry.created_at
        return (now - anchor) > self.ttl

    def _evict(self, key: K) -> None:
        entry = self._cache.pop(key)
        self._evictions += 1
        if self._on_evict:
            self._on_evict(key, entry.value)

    def get(self, key: K, default: V = None) -> Optional[V]:
        """获取缓存值"""
        with self._lock:
            if key not in self._cache:
                self._misses += 1
                return default

            entry = self._cache[key]
            now = time.time()

            if self._is_expired(entry, now):
                self._evict(key)
                self._misses += 1
                return default

            entry.last_access = now
            entry.access_count += 1
            self._cache.move_to_end(key)

            self._hits += 1
            return entry.value

    def get_entry(self, key: K) -> Optional[CacheEntry[V]]:
        """获取原始条目（不更新访问信息）"""
        with self._lock:
            entry = self._cache.get(key)
            if entry is None or self._is_expired(entry, time.time()):
                return None
            return entry

    def set(self, key: K, value: V) -> None:
        """设置缓存值"""
        with self._lock:
            if key in self._cache:
                entry = self._cache[key]
                entry.value = value
                entry.last_access = time.time()
                self._cache.move_to_end(key)
            else:
                while len(self._cache) >= self.max_size:
                    oldest = next(iter(self._cache))
                    self._evict(oldest)

                self._cache[key] = CacheEntry(value=value)

    def delete(self, key: K) -> bool:
        """删除缓存条目"""
        with self._lock:
            if key in self._cache:
                del self._cache[key]
                return True
            return False

    def clear(self) -> None:
        """清空缓存"""
        with self._lock:
            self._cache.clear()
            self._hits = 0
            self._misses = 0
            self._evictions = 0

    def contains(self, key: K) -> bool:
        """检查键是否存在（不刷新滑动过期时间）"""
        with self._lock:
            if key not in self._cache:
                return False

            if self._is_expired(self._cache[key], time.time()):
                self._evict(key)
                return False

            return True

    def keys(self) -> List[K]:
        """获取当前所有键"""
        with self._lock:
            return list(self._cache.keys())

    def size(self) -> int:
        """获取当前大小"""
        return len(self._cache)

    def stats(self) -> Dict[str, Any]:
        """获取统计信息"""
        with self._lock:
            total = self._hits + self._misses
            return {
                "size": len(self._cache),
                "max_size": self.max_size,
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
                "hit_rate": self._hits / total if total > 0 else 0,
            }

    def cleanup_expired(self) -> int:
        """清理过期条目"""
        if not self.ttl:
            return 0

        with self._lock:
            now = time.time()
            expired_keys = [
                k for k, v in self._cache.items()
                if self._is_expired(v, now)
            ]
            for key in expired_keys:
                self._evict(key)
            return len(expired_keys)

    def __contains__(self, key: K) -> bool:
        return self.contains(key)

    def __len__(self) -> int:
        return self.size()


class CircularBuffer(Generic[V]):
    """
    循环缓冲区

    用于存储固定数量的历史记录，超出时自动覆盖最旧的
    """

    def __init__(self, max_size: int = 1000):
        self.max_size = max_size
        self._buffer: list = []
        self._lock = threading.Lock()

    def append(self, item: V) -> None:
        """添加条目"""
        with self._lock:
            if len(self._buffer) >= self.max_size:
                self._buffer.pop(0)
            self._buffer.append(item)

    def get_all(self) -> list:
        """获取所有条目"""
        with self._lock:
            return list(self._buffer)

    def get_recent(self, n: int) -> list:
        """获取最近 n 条"""
        if n <= 0:
            return []
        with self._lock:
            return list(self._buffer[-n:])

    def clear(self) -> None:
        with self._lock:
            self._buffer.clear()

    def size(self) -> int:
        return len(self._buffer)

    def __len__(self) -> int:
        return self.size()


class CacheManager:
    """
    缓存管理器

    统一管理一组缓存实例，提供监控和清理功能。
    任何实现了 stats() / cleanup_expired() 的对象都可以注册，
    例如 LRUCache、PlanCache、ContextStore。
    """

    def __init__(self):
        self._caches: Dict[str, Any] = {}
        self._lock = threading.Lock()

    def register(self, name: str, cache: Any) -> None:
        """注册缓存"""
        with self._lock:
            self._caches[name] = cache

    def unregister(self, name: str) -> None:
        """注销缓存"""
        with self._lock:
            self._caches.pop(name, None)

    def get_cache(self, name: str) -> Optional[Any]:
        """获取缓存"""
        return self._caches.get(name)

    def names(self) -> List[str]:
        with self._lock:
            return list(self._caches)

    def get_all_stats(self) -> Dict[str, Dict]:
        """获取所有缓存统计"""
        with self._lock:
            caches = dict(self._caches)
        return {name: cache.stats() for name, cache in caches.items()}

    def cleanup_all(self) -> Dict[str, int]:
        """清理所有过期条目"""
        with self._lock:
            caches = dict(self._caches)
        return {name: cache.cleanup_expired() for name, cache in caches.items()}
