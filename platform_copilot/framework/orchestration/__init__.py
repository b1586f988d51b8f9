"""
编排模块

请求 -> 计划 -> 执行 -> 合成的完整流程。
"""

from .models import (
    PROVISIONING_CATEGORIES,
    CollaborationRound,
    ConversationContext,
    ExecutionPattern,
    ExecutionReport,
    ExecutorCategory,
    ExecutorResult,
    MessageSnapshot,
    Outcome,
    Plan,
    PlanSource,
    Task,
    WorkflowFact,
)
from .executors import Executor, ExecutorRegistry
from .context_store import AgentEvent, ContextStore
from .plan_cache import PlanCache
from .router import FAST_PATH_RULES, FastPathRouter, FastPathRule
from .oracle import ChatModelOracle, Oracle, create_chat_model
from .planner import PlanGenerator
from .validator import CORRECTION_RULES, CorrectionRule, PlanValidator
from .engine import ExecutionEngine
from .synthesizer import ResponseSynthesizer
from .orchestrator import Orchestrator

__all__ = [
    # 数据模型
    "ExecutorCategory",
    "ExecutionPattern",
    "PlanSource",
    "PROVISIONING_CATEGORIES",
    "Task",
    "Plan",
    "ExecutorResult",
    "MessageSnapshot",
    "WorkflowFact",
    "ConversationContext",
    "CollaborationRound",
    "ExecutionReport",
    "Outcome",
    # 执行器
    "Executor",
    "ExecutorRegistry",
    # 存储与缓存
    "AgentEvent",
    "ContextStore",
    "PlanCache",
    # 规划
    "FastPathRule",
    "FastPathRouter",
    "FAST_PATH_RULES",
    "Oracle",
    "ChatModelOracle",
    "create_chat_model",
    "PlanGenerator",
    "CorrectionRule",
    "CORRECTION_RULES",
    "PlanValidator",
    # 执行与合成
    "ExecutionEngine",
    "ResponseSynthesizer",
    "Orchestrator",
]
