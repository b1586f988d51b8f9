"""
计划生成器

把用户请求转换为执行计划:
1. 快速路径：短语表直接命中单个类别
2. 规划服务：携带执行器目录、最近历史和工作流事实调用 Oracle（JSON 模式）
3. 解析失败或服务不可用时，回退到关键词打分启发式
"""

import json
import logging
import re
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ...core.exceptions import EmptyPlanException, OracleMalformedOutputException
from ...core.logging_config import log_execution
from ..config import OrchestrationConfig
from .executors import ExecutorRegistry
from .models import (
    ConversationContext,
    ExecutionPattern,
    ExecutorCategory,
    Plan,
    PlanSource,
    Task,
)
from .oracle import Oracle
from .router import FastPathRouter, compile_phrase

logger = logging.getLogger(__name__)


PLANNING_SYSTEM_PROMPT = """You are the planning component of a cloud platform copilot.
Decide which specialized executors should handle the user's request and how to run them.

Execution patterns:
- sequential: tasks depend on each other and run in priority order (lower first)
- parallel: independent tasks run at the same time
- collaborative: executors iterate on a shared result until all of them approve

Return JSON with this shape:
{
  "primaryIntent": "<short snake_case intent>",
  "executionPattern": "sequential | parallel | collaborative",
  "tasks": [
    {"agentType": "<executor name>", "description": "<what this executor should do>",
     "priority": 1, "isCritical": true}
  ],
  "estimatedTimeSeconds": 30,
  "reasoning": "<one sentence>"
}"""

# 回退启发式关键词表（顺序即平分时的优先顺序）
FALLBACK_KEYWORDS: List[Tuple[ExecutorCategory, List[str]]] = [
    (ExecutorCategory.INFRASTRUCTURE, ["provision", "create", "deploy", "bicep", "terraform", "template"]),
    (ExecutorCategory.COMPLIANCE, ["compliance", "nist", "security", "ato", "emass"]),
    (ExecutorCategory.COST_MANAGEMENT, ["cost", "budget", "price", "pricing", "optimize", "spend"]),
    (ExecutorCategory.ENVIRONMENT, ["environment", "clone", "scale"]),
    (ExecutorCategory.DISCOVERY, ["list", "find", "discover", "inventory"]),
    (ExecutorCategory.ONBOARDING, ["onboard", "mission", "setup"]),
]

# 无任何关键词命中时的默认类别：只生成代码，不产生副作用
DEFAULT_FALLBACK_CATEGORY = ExecutorCategory.INFRASTRUCTURE

_FALLBACK_PATTERNS = [
    (category, [compile_phrase(k) for k in keywords])
    for category, keywords in FALLBACK_KEYWORDS
]

_PLAN_KEY_ALIASES = {
    "primaryintent": "primary_intent",
    "intent": "primary_intent",
    "executionpattern": "execution_pattern",
    "pattern": "execution_pattern",
    "tasks": "tasks",
    "steps": "tasks",
    "estimatedtimeseconds": "estimated_seconds",
    "estimatedseconds": "estimated_seconds",
    "estimatedtime": "estimated_seconds",
    "reasoning": "reasoning",
}

_TASK_KEY_ALIASES = {
    "agenttype": "agent_type",
    "agent": "agent_type",
    "category": "agent_type",
    "executor": "agent_type",
    "description": "description",
    "task": "description",
    "priority": "priority",
    "iscritical": "is_critical",
    "critical": "is_critical",
}


class TaskDocument(BaseModel):
    """规划服务返回的单个任务"""
    model_config = ConfigDict(extra="ignore")

    agent_type: str
    description: Optional[str] = None
    priority: Optional[int] = None
    is_critical: Optional[bool] = None


class PlanDocument(BaseModel):
    """规划服务返回的计划（字段全部宽松）"""
    model_config = ConfigDict(extra="ignore")

    primary_intent: Optional[str] = None
    execution_pattern: Optional[str] = None
    tasks: List[Dict[str, Any]] = Field(default_factory=list)
    estimated_seconds: Optional[float] = None
    reasoning: Optional[str] = None


def _normalize_keys(data: Dict[str, Any], aliases: Dict[str, str]) -> Dict[str, Any]:
    """大小写与分隔符不敏感的键名规范化，未知键原样丢弃"""
    normalized = {}
    for key, value in data.items():
        if not isinstance(key, str):
            continue
        canonical = aliases.get(re.sub(r"[^a-z0-9]", "", key.lower()))
        if canonical and canonical not in normalized:
            normalized[canonical] = value
    return normalized


def extract_json_object(text: str) -> Dict[str, Any]:
    """
    从模型输出中提取 JSON 对象

    支持纯 JSON、```json 围栏包裹，以及夹杂在说明文字中的 {...}
    """
    if not text or not text.strip():
        raise OracleMalformedOutputException("Empty planning output", raw_output=text or "")

    candidate = text.strip()
    fenced = re.search(r"```(?:json)?\s*(.*?)```", candidate, re.DOTALL | re.IGNORECASE)
    if fenced:
        candidate = fenced.group(1).strip()

    try:
        data = json.loads(candidate)
    except json.JSONDecodeError:
        json_match = re.search(r"\{.*\}", candidate, re.DOTALL)
        if not json_match:
            raise OracleMalformedOutputException("No JSON object in planning output", raw_output=text)
        try:
            data = json.loads(json_match.group())
        except json.JSONDecodeError as e:
            raise OracleMalformedOutputException("Invalid JSON in planning output", raw_output=text, cause=e)

    if not isinstance(data, dict):
        raise OracleMalformedOutputException("Planning output is not a JSON object", raw_output=text)
    return data


def parse_plan_document(text: str) -> PlanDocument:
    """解析并校验规划输出（不涉及类别识别）"""
    data = extract_json_object(text)
    try:
        return PlanDocument.model_validate(_normalize_keys(data, _PLAN_KEY_ALIASES))
    except ValidationError as e:
        raise OracleMalformedOutputException("Planning output failed validation", raw_output=text, cause=e)


def fallback_category(message: str) -> ExecutorCategory:
    """关键词打分：命中数最多的类别胜出，平分按表顺序，全部未命中返回默认类别"""
    best_category = DEFAULT_FALLBACK_CATEGORY
    best_score = 0
    for category, patterns in _FALLBACK_PATTERNS:
        score = sum(1 for p in patterns if p.search(message))
        if score > best_score:
            best_category, best_score = category, score
    return best_category


class PlanGenerator:
    """
    计划生成器

    功能:
    - 快速路径（不调用规划服务）
    - 规划服务 + 防御式解析
    - 确定性回退

    使用示例:
    ```python
    generator = PlanGenerator(oracle, registry)

    plan = generator.try_fast_path(message, context)
    if plan is None:
        plan = await generator.plan_with_oracle(message, context)
    ```
    """

    def __init__(
        self,
        oracle: Oracle,
        registry: Optional[ExecutorRegistry] = None,
        router: Optional[FastPathRouter] = None,
        config: OrchestrationConfig = None,
    ):
        self._oracle = oracle
        self._registry = registry or ExecutorRegistry()
        self._router = router or FastPathRouter()
        self._config = config or OrchestrationConfig()

    # === 快速路径 ===

    def try_fast_path(self, message: str, context: ConversationContext) -> Optional[Plan]:
        """
        快速路径

        对追问的回答不走快速路径：同样的短语在澄清语境下含义可能不同。
        """
        if not self._config.fast_path_enabled:
            return None
        if context.is_awaiting_clarification():
            return None

        rule = self._router.match(message)
        if rule is None:
            return None

        return Plan(
            primary_intent=rule.intent,
            tasks=(Task(
                category=rule.category,
                description=message,
                priority=1,
                critical=True,
                conversation_id=context.conversation_id,
            ),),
            pattern=ExecutionPattern.SEQUENTIAL,
            estimated_seconds=15,
            source=PlanSource.FAST_PATH,
            reasoning=f"Matched fast-path rule '{rule.name}'",
        )

    # === 规划服务 ===

    def build_prompt(self, message: str, context: ConversationContext) -> str:
        sections = [
            "Available executors:",
            self._registry.catalogue(),
        ]

        history = context.recent_history(self._config.history_window)
        if history:
            sections.append("\nRecent conversation:")
            sections.extend(f"{m.role}: {m.content}" for m in history)

        if context.facts:
            sections.append("\nKnown workflow facts:")
            sections.extend(f"- {key}: {fact.value}" for key, fact in context.facts.items())

        sections.append(f"\nUser request:\n{message}")
        return "\n".join(sections)

    @log_execution(name="planner.plan_with_oracle")
    async def plan_with_oracle(self, message: str, context: ConversationContext) -> Plan:
        """调用规划服务；任何失败都回退到确定性计划，本方法不抛出普通异常"""
        prompt = self.build_prompt(message, context)
        try:
            raw = await self._oracle.complete(prompt, system=PLANNING_SYSTEM_PROMPT, json_mode=True)
        except Exception as e:
            logger.warning(f"Planning oracle unavailable, using fallback plan: {e}")
            return self.fallback_plan(message, context.conversation_id)

        try:
            return self.parse_plan(raw, message, context.conversation_id)
        except (OracleMalformedOutputException, EmptyPlanException) as e:
            logger.warning(f"Unusable planning output, using fallback plan: {e}")
            return self.fallback_plan(message, context.conversation_id)

    def parse_plan(self, raw: str, message: str, conversation_id: str) -> Plan:
        """
        把规划输出转换为 Plan

        Raises:
            OracleMalformedOutputException: 输出无法解析
            EmptyPlanException: 没有任何可用任务
        """
        document = parse_plan_document(raw)

        tasks = []
        for index, raw_task in enumerate(document.tasks):
            if not isinstance(raw_task, dict):
                logger.warning(f"Dropping non-object task at index {index}")
                continue
            try:
                task_doc = TaskDocument.model_validate(_normalize_keys(raw_task, _TASK_KEY_ALIASES))
            except ValidationError as e:
                logger.warning(f"Dropping invalid task at index {index}: {e.error_count()} errors")
                continue

            category = ExecutorCategory.parse(task_doc.agent_type)
            if category is None:
                logger.warning(f"Dropping task with unknown executor category: {task_doc.agent_type!r}")
                continue

            tasks.append(Task(
                category=category,
                description=(task_doc.description or "").strip() or message,
                priority=task_doc.priority if task_doc.priority is not None else 0,
                critical=bool(task_doc.is_critical),
                conversation_id=conversation_id,
            ))

        pattern = ExecutionPattern.parse(document.execution_pattern)
        if pattern is None:
            if document.execution_pattern:
                logger.warning(f"Unknown execution pattern {document.execution_pattern!r}, using sequential")
            pattern = ExecutionPattern.SEQUENTIAL

        if not tasks:
            raise EmptyPlanException("Planning output contained no usable tasks")

        plan = Plan(
            primary_intent=(document.primary_intent or "").strip() or tasks[0].category.value,
            tasks=tuple(tasks),
            pattern=pattern,
            estimated_seconds=document.estimated_seconds or 30,
            source=PlanSource.ORACLE,
            reasoning=document.reasoning or "",
        )
        logger.info(
            f"Oracle plan: intent={plan.primary_intent} pattern={plan.pattern.value} "
            f"categories={[c.value for c in plan.categories]}"
        )
        return plan

    def fallback_plan(self, message: str, conversation_id: str) -> Plan:
        """确定性回退计划：单个关键任务"""
        category = fallback_category(message)
        logger.info(f"Fallback plan routed to: {category.value}")
        return Plan(
            primary_intent=category.value,
            tasks=(Task(
                category=category,
                description=message,
                priority=1,
                critical=True,
                conversation_id=conversation_id,
            ),),
            pattern=ExecutionPattern.SEQUENTIAL,
            estimated_seconds=30,
            source=PlanSource.FALLBACK,
            reasoning="Keyword heuristic fallback",
        )

    async def generate(self, message: str, context: ConversationContext) -> Plan:
        """快速路径优先，否则调用规划服务"""
        plan = self.try_fast_path(message, context)
        if plan is not None:
            return plan
        return await self.plan_with_oracle(message, context)
