"""
编排数据模型

执行器类别、任务、计划、执行结果、会话上下文与最终结果。
会话上下文和计划是不可变对象，每次修改都会返回新实例，
并发的执行器任务只会看到完整的快照。
"""

import re
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple
from uuid import uuid4

from ...core.exceptions import EmptyPlanException


class ExecutorCategory(str, Enum):
    """执行器类别（封闭集合）"""
    INFRASTRUCTURE = "infrastructure"      # 模板生成
    COMPLIANCE = "compliance"              # 合规评估
    COST_MANAGEMENT = "cost_management"    # 成本分析与估算
    ENVIRONMENT = "environment"            # 部署与环境生命周期
    DISCOVERY = "discovery"                # 资源清单与验证
    ONBOARDING = "onboarding"              # 任务接入与需求收集

    @property
    def label(self) -> str:
        """用于拼接输出的展示名称"""
        return _CATEGORY_LABELS[self]

    @classmethod
    def parse(cls, value: Any) -> Optional["ExecutorCategory"]:
        """
        宽松解析类别名称

        "CostManagement"、"cost_management"、"cost-management agent" 都会被识别，
        无法识别时返回 None。
        """
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        key = re.sub(r"[^a-z]", "", value.lower())
        if key.endswith("agent") and key != "agent":
            key = key[:-len("agent")]
        return _CATEGORY_ALIASES.get(key)


_CATEGORY_LABELS = {
    ExecutorCategory.INFRASTRUCTURE: "Infrastructure",
    ExecutorCategory.COMPLIANCE: "Compliance",
    ExecutorCategory.COST_MANAGEMENT: "CostManagement",
    ExecutorCategory.ENVIRONMENT: "Environment",
    ExecutorCategory.DISCOVERY: "Discovery",
    ExecutorCategory.ONBOARDING: "Onboarding",
}

_CATEGORY_ALIASES = {
    "infrastructure": ExecutorCategory.INFRASTRUCTURE,
    "compliance": ExecutorCategory.COMPLIANCE,
    "costmanagement": ExecutorCategory.COST_MANAGEMENT,
    "cost": ExecutorCategory.COST_MANAGEMENT,
    "environment": ExecutorCategory.ENVIRONMENT,
    "discovery": ExecutorCategory.DISCOVERY,
    "onboarding": ExecutorCategory.ONBOARDING,
}

# 能够参与资源创建流程的类别
PROVISIONING_CATEGORIES = frozenset(c for c in ExecutorCategory if c is not ExecutorCategory.ONBOARDING)


class ExecutionPattern(str, Enum):
    """执行模式"""
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"
    COLLABORATIVE = "collaborative"

    @classmethod
    def parse(cls, value: Any) -> Optional["ExecutionPattern"]:
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


class PlanSource(str, Enum):
    """计划来源"""
    FAST_PATH = "fast_path"
    CACHE = "cache"
    ORACLE = "oracle"
    FALLBACK = "fallback"
    VALIDATOR = "validator"


def new_task_id() -> str:
    return f"task-{uuid4().hex[:12]}"


@dataclass(frozen=True)
class MessageSnapshot:
    """会话历史中的一条消息"""
    role: str  # user | assistant
    content: str
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass(frozen=True)
class WorkflowFact:
    """工作流事实（后写覆盖先写）"""
    value: Any
    updated_at: datetime = field(default_factory=datetime.now)


@dataclass(frozen=True)
class Task:
    """单个执行器调用"""
    category: ExecutorCategory
    description: str
    priority: int = 0  # 越小越先执行
    critical: bool = False
    conversation_id: str = ""
    id: str = field(default_factory=new_task_id)

    def with_description(self, description: str) -> "Task":
        return replace(self, description=description)

    def bound_to(self, conversation_id: str) -> "Task":
        return replace(self, conversation_id=conversation_id)


@dataclass
class ExecutorResult:
    """执行器返回的结果"""
    task_id: str
    category: ExecutorCategory
    content: str = ""
    success: bool = True
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    elapsed_ms: float = 0.0
    approved: Optional[bool] = None  # 仅协作模式使用，None 表示未表态

    @classmethod
    def failure(cls, task: Task, error: str, elapsed_ms: float = 0.0) -> "ExecutorResult":
        return cls(
            task_id=task.id,
            category=task.category,
            content="",
            success=False,
            errors=[error],
            elapsed_ms=elapsed_ms,
        )


@dataclass(frozen=True)
class Plan:
    """
    执行计划

    Attributes:
        primary_intent: 主要意图
        tasks: 任务列表（非空）
        pattern: 执行模式
        estimated_seconds: 预估耗时
        source: 计划来源
        reasoning: 规划说明（可选）
    """
    primary_intent: str
    tasks: Tuple[Task, ...]
    pattern: ExecutionPattern = ExecutionPattern.SEQUENTIAL
    estimated_seconds: float = 30.0
    source: PlanSource = PlanSource.ORACLE
    reasoning: str = ""

    def __post_init__(self):
        tasks = tuple(self.tasks)
        if not tasks:
            raise EmptyPlanException()
        object.__setattr__(self, "tasks", tasks)

    @property
    def categories(self) -> Tuple[ExecutorCategory, ...]:
        """按任务顺序去重后的类别"""
        return tuple(dict.fromkeys(t.category for t in self.tasks))

    def ordered_tasks(self) -> List[Task]:
        """按优先级稳定排序（优先级相同时保持原顺序）"""
        return sorted(self.tasks, key=lambda t: t.priority)

    def bound_to(self, conversation_id: str) -> "Plan":
        """把所有任务重新绑定到指定会话"""
        return replace(self, tasks=tuple(t.bound_to(conversation_id) for t in self.tasks))

    def with_source(self, source: PlanSource) -> "Plan":
        return replace(self, source=source)

    def summary(self) -> Dict[str, Any]:
        return {
            "primary_intent": self.primary_intent,
            "pattern": self.pattern.value,
            "source": self.source.value,
            "categories": [c.value for c in self.categories],
            "task_count": len(self.tasks),
            "estimated_seconds": self.estimated_seconds,
        }


def _frozen_mapping(data: Mapping[str, WorkflowFact]) -> Mapping[str, WorkflowFact]:
    return MappingProxyType(dict(data))


@dataclass(frozen=True)
class ConversationContext:
    """
    会话上下文（不可变）

    所有 with_* 方法都返回新实例，旧实例保持不变。
    """
    conversation_id: str
    history: Tuple[MessageSnapshot, ...] = ()
    prior_results: Tuple[ExecutorResult, ...] = ()
    facts: Mapping[str, WorkflowFact] = field(default_factory=lambda: MappingProxyType({}))
    used_categories: Tuple[ExecutorCategory, ...] = ()
    created_at: datetime = field(default_factory=datetime.now)
    last_activity_at: datetime = field(default_factory=datetime.now)

    def touched(self) -> "ConversationContext":
        return replace(self, last_activity_at=datetime.now())

    def with_message(self, role: str, content: str, max_history: Optional[int] = None) -> "ConversationContext":
        history = self.history + (MessageSnapshot(role=role, content=content),)
        if max_history is not None and len(history) > max_history:
            history = history[-max_history:]
        return replace(self, history=history, last_activity_at=datetime.now())

    def with_prior_results(self, results: Iterable[ExecutorResult],
                           max_results: Optional[int] = None) -> "ConversationContext":
        prior = tuple(results)
        if max_results is not None and len(prior) > max_results:
            prior = prior[-max_results:]
        return replace(self, prior_results=prior)

    def with_fact(self, key: str, value: Any) -> "ConversationContext":
        return self.with_facts({key: value})

    def with_facts(self, facts: Mapping[str, Any]) -> "ConversationContext":
        if not facts:
            return self
        merged = dict(self.facts)
        now = datetime.now()
        for key, value in facts.items():
            merged[key] = WorkflowFact(value=value, updated_at=now)
        return replace(self, facts=_frozen_mapping(merged))

    def with_used_categories(self, categories: Iterable[ExecutorCategory]) -> "ConversationContext":
        used = tuple(dict.fromkeys(self.used_categories + tuple(categories)))
        return replace(self, used_categories=used)

    def get_fact(self, key: str, default: Any = None) -> Any:
        fact = self.facts.get(key)
        return fact.value if fact else default

    def recent_history(self, n: int) -> Tuple[MessageSnapshot, ...]:
        if n <= 0:
            return ()
        return self.history[-n:]

    def is_awaiting_clarification(self) -> bool:
        """上一条消息是助手提出的问题，本轮是对它的回答"""
        if not self.history:
            return False
        last = self.history[-1]
        return last.role == "assistant" and last.content.rstrip().endswith("?")


@dataclass
class CollaborationRound:
    """协作模式中的一轮"""
    number: int
    results: List[ExecutorResult]
    approved: bool


@dataclass
class ExecutionReport:
    """
    执行报告

    results 按执行顺序包含所有调用（协作模式下包含每一轮）；
    final_results 是每个类别最新的一条结果，用于合成与成功判定。
    """
    results: List[ExecutorResult] = field(default_factory=list)
    final_results: List[ExecutorResult] = field(default_factory=list)
    rounds: List[CollaborationRound] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    halted: bool = False

    @property
    def all_succeeded(self) -> bool:
        return all(r.success for r in self.final_results)


@dataclass
class Outcome:
    """面向调用方的最终结果"""
    final_response: str
    primary_intent: str
    executors_invoked: List[ExecutorCategory] = field(default_factory=list)
    execution_pattern: Optional[ExecutionPattern] = None
    total_calls: int = 0
    elapsed_ms: float = 0.0
    success: bool = True
    requires_follow_up: bool = False
    follow_up_prompt: Optional[str] = None
    missing_fields: List[str] = field(default_factory=list)
    quick_replies: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)
    conversation_id: str = ""
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "final_response": self.final_response,
            "primary_intent": self.primary_intent,
            "executors_invoked": [c.value for c in self.executors_invoked],
            "execution_pattern": self.execution_pattern.value if self.execution_pattern else None,
            "total_calls": self.total_calls,
            "elapsed_ms": self.elapsed_ms,
            "success": self.success,
            "requires_follow_up": self.requires_follow_up,
            "follow_up_prompt": self.follow_up_prompt,
            "missing_fields": list(self.missing_fields),
            "quick_replies": list(self.quick_replies),
            "metadata": dict(self.metadata),
            "errors": list(self.errors),
            "conversation_id": self.conversation_id,
            "timestamp": self.timestamp.isoformat(),
        }
