"""
事件类型定义

定义编排生命周期中使用的事件类型和事件数据结构
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4


class EventPriority(Enum):
    """事件优先级"""
    LOW = 0
    NORMAL = 1
    HIGH = 2
    CRITICAL = 3


class EventType(str, Enum):
    """预定义的事件类型"""

    # ==================== 请求处理事件 ====================
    REQUEST_RECEIVED = "request.received"
    REQUEST_COMPLETED = "request.completed"
    REQUEST_FAILED = "request.failed"

    # ==================== 上下文事件 ====================
    CONTEXT_RECALLED = "context.recalled"

    # ==================== 规划事件 ====================
    PLAN_CREATED = "plan.created"
    PLAN_CORRECTED = "plan.corrected"
    PLAN_CACHE_HIT = "plan.cache_hit"

    # ==================== 执行事件 ====================
    TASK_STARTED = "task.started"
    TASK_COMPLETED = "task.completed"
    TASK_FAILED = "task.failed"
    TASK_SKIPPED = "task.skipped"
    COLLABORATION_ROUND = "collaboration.round"


@dataclass
class Event:
    """
    事件数据结构

    Attributes:
        type: 事件类型
        payload: 事件负载数据
        timestamp: 事件发生时间
        trace_id: 追踪ID，同一请求内的事件共享
        source: 事件来源（模块名）
        priority: 事件优先级
    """
    type: EventType | str
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)
    trace_id: str = field(default_factory=lambda: uuid4().hex)
    source: str = "unknown"
    priority: EventPriority = EventPriority.NORMAL

    def __post_init__(self):
        """确保 type 是字符串"""
        if isinstance(self.type, EventType):
            self.type = self.type.value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "payload": self.payload,
            "timestamp": self.timestamp.isoformat(),
            "trace_id": self.trace_id,
            "source": self.source,
            "priority": self.priority.value,
        }


@dataclass
class EventFilter:
    """事件过滤器"""
    types: Optional[List[str]] = None
    sources: Optional[List[str]] = None
    min_priority: EventPriority = EventPriority.LOW
    trace_id: Optional[str] = None

    def matches(self, event: Event) -> bool:
        """检查事件是否匹配过滤条件"""
        if self.types:
            wanted = [t.value if isinstance(t, EventType) else t for t in self.types]
            if event.type not in wanted:
                return False
        if self.sources and event.source not in self.sources:
            return False
        if event.priority.value < self.min_priority.value:
            return False
        if self.trace_id and event.trace_id != self.trace_id:
            return False
        return True
