"""
请求编排器

处理单个请求的完整流程:
上下文 -> 上下文回忆 -> 快速路径 -> 计划缓存 -> 规划 + 校验 -> 执行 -> 合成 -> 写回上下文
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional
import asyncio
import re
import time
from uuid import uuid4

from ...core.cache import CacheManager
from ...core.exceptions import OrchestrationException, RequestTimeoutException, wrap_exception
from ...core.logging_config import get_logger, log_block
from ..config import CopilotConfig
from ..events import Event, EventBus, EventPriority, EventType
from .context_store import ContextStore
from .engine import ExecutionEngine
from .executors import ExecutorRegistry
from .models import (
    ConversationContext,
    ExecutionReport,
    ExecutorCategory,
    ExecutorResult,
    Outcome,
    Plan,
    PlanSource,
)
from .oracle import ChatModelOracle, Oracle
from .plan_cache import PlanCache
from .planner import PlanGenerator
from .router import FastPathRouter
from .synthesizer import ResponseSynthesizer
from .validator import PlanValidator

logger = get_logger(__name__)


FOLLOW_UP_RETRY = (
    "Some operations didn't complete successfully. "
    "Would you like me to retry or try a different approach?"
)
FOLLOW_UP_WARNINGS = "I completed your request with some warnings. Would you like more details?"
ERROR_RESPONSE = "I encountered an error while processing your request: {error}"
TIMEOUT_RESPONSE = "The request timed out after {timeout} seconds. Please try again or narrow the request."

# 主意图包含关键词时给出的快捷回复
QUICK_REPLIES = [
    (("infrastructure", "provision", "template"),
     ["Check compliance status", "Estimate costs", "View in Azure Portal"]),
    (("compliance",),
     ["Generate remediation plan", "Create eMASS package", "View detailed findings"]),
    (("cost",),
     ["Show optimization suggestions", "Set up budget alerts", "Compare pricing tiers"]),
]

SUBSCRIPTION_ID_PATTERN = re.compile(
    r"\b[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}\b", re.IGNORECASE
)
RESOURCE_GROUP_PATTERN = re.compile(
    r"\bresource[- ]group\s+(?:named\s+|called\s+)?[\"'`]?([A-Za-z0-9][\w.()-]*)", re.IGNORECASE
)
_RESOURCE_GROUP_STOPWORDS = {
    "a", "an", "and", "for", "in", "is", "it", "of", "on", "that", "the", "to", "was", "with",
    "did", "do", "i", "should", "would", "named", "called",
}

_QUESTION_START = re.compile(r"^\s*(?:which|what|what's|remind me|tell me)\b", re.IGNORECASE)
_RECALL_VERB = re.compile(
    r"\b(?:did|do|have|had)\s+(?:i|we)\s+(?:just\s+)?use\b"
    r"|\b(?:was|were)\s+(?:i|we)\s+using\b"
    r"|\b(?:i|we)\s+(?:last\s+|just\s+)?used\b",
    re.IGNORECASE,
)
# 出现这些词说明是新的业务请求，而不是回忆类问题
_DOMAIN_KEYWORDS = re.compile(
    r"\b(?:complian\w*|cost\w*|spend\w*|budget\w*|pric\w*|scan\w*|assess\w*|audit\w*|secur\w*"
    r"|status|deploy\w*|provision\w*|creat\w*|templat\w*|estimat\w*|inventor\w*|health)\b",
    re.IGNORECASE,
)


@dataclass
class ContextLookupRule:
    """
    可以直接用工作流事实回答的回忆类问题

    命中条件:
    - 短问句（which / what / remind me ...）
    - 提到主题，并且带有明确的回忆措辞（did I use / last <主题> ...）
    - 不含其他业务关键词，消息本身也没有给出该事实的新值
    """
    fact_key: str
    label: str
    subject: str

    def __post_init__(self):
        self._subject = re.compile(rf"\b{self.subject}\b", re.IGNORECASE)
        self._adjacent = re.compile(
            rf"\b(?:last|previous|most\s+recent|earlier)\s+{self.subject}\b", re.IGNORECASE
        )

    def matches(self, message: str) -> bool:
        if len(message) > 160 or not _QUESTION_START.search(message):
            return False
        if not self._subject.search(message):
            return False
        if not (_RECALL_VERB.search(message) or self._adjacent.search(message)):
            return False
        if _DOMAIN_KEYWORDS.search(message):
            return False
        return self.fact_key not in extract_message_facts(message)


CONTEXT_LOOKUP_RULES = [
    ContextLookupRule("last_subscription_id", "subscription", r"subscription"),
    ContextLookupRule("last_resource_group", "resource group", r"resource[- ]group"),
]


def extract_message_facts(message: str) -> Dict[str, Any]:
    """从用户消息中提取工作流事实"""
    facts: Dict[str, Any] = {}

    match = SUBSCRIPTION_ID_PATTERN.search(message)
    if match:
        facts["last_subscription_id"] = match.group(0).lower()

    for match in RESOURCE_GROUP_PATTERN.finditer(message):
        name = match.group(1).rstrip(".,;:!?)")
        if name and name.lower() not in _RESOURCE_GROUP_STOPWORDS:
            facts["last_resource_group"] = name
            break

    return facts


def quick_replies_for(intent: str) -> List[str]:
    intent = (intent or "").lower()
    for keywords, replies in QUICK_REPLIES:
        if any(k in intent for k in keywords):
            return list(replies)
    return []


class Orchestrator:
    """
    请求编排器

    功能:
    - 上下文回忆（直接用工作流事实回答，不调用执行器）
    - 快速路径 / 计划缓存 / 规划服务三级计划来源
    - 所有新生成的计划都经过校验器
    - 三种执行模式与响应合成
    - 会话上下文写回与生命周期事件

    使用示例:
    ```python
    registry = ExecutorRegistry()
    registry.register(InfrastructureExecutor())
    registry.register(ComplianceExecutor())

    orchestrator = Orchestrator(registry, oracle)
    outcome = await orchestrator.process_request(
        "Check compliance of my subscription",
        conversation_id="conv-1",
    )
    print(outcome.final_response)
    ```
    """

    def __init__(
        self,
        registry: ExecutorRegistry,
        oracle: Oracle,
        context_store: Optional[ContextStore] = None,
        plan_cache: Optional[PlanCache] = None,
        config: Optional[CopilotConfig] = None,
        event_bus: Optional[EventBus] = None,
        router: Optional[FastPathRouter] = None,
        validator: Optional[PlanValidator] = None,
    ):
        self._config = config or CopilotConfig()
        orchestration = self._config.orchestration

        self._registry = registry
        self._event_bus = event_bus or EventBus(max_history=self._config.observability.event_history_size)
        self._context_store = context_store or ContextStore(self._config.context_store)
        self._plan_cache = plan_cache or PlanCache(self._config.plan_cache)
        self._generator = PlanGenerator(oracle, registry, router, orchestration)
        self._validator = validator or PlanValidator()
        self._engine = ExecutionEngine(registry, self._context_store, orchestration, self._event_bus)
        self._synthesizer = ResponseSynthesizer(oracle)

        self._cache_manager = CacheManager()
        self._cache_manager.register("plan_cache", self._plan_cache)
        self._cache_manager.register("context_store", self._context_store)

        self._request_counter = 0
        self._failure_counter = 0

    @classmethod
    def from_config(
        cls,
        registry: ExecutorRegistry,
        config: Optional[CopilotConfig] = None,
        llm: Any = None,
        **kwargs
    ) -> "Orchestrator":
        """使用配置中的 LLM 创建编排器（llm 可以传入已构建的聊天模型）"""
        config = config or CopilotConfig()
        oracle = ChatModelOracle.from_config(config.llm, llm=llm)
        return cls(registry, oracle, config=config, **kwargs)

    @property
    def context_store(self) -> ContextStore:
        return self._context_store

    @property
    def plan_cache(self) -> PlanCache:
        return self._plan_cache

    @property
    def event_bus(self) -> EventBus:
        return self._event_bus

    @property
    def engine(self) -> ExecutionEngine:
        return self._engine

    # === 入口 ===

    async def process_request(
        self,
        message: str,
        conversation_id: str,
        existing_context: Optional[ConversationContext] = None,
        timeout: Optional[float] = None,
    ) -> Outcome:
        """
        处理请求

        Args:
            message: 用户消息
            conversation_id: 会话 ID
            existing_context: 调用方持有的上下文（优先于存储中的上下文）
            timeout: 整个请求的超时（秒），默认取 orchestration.request_timeout

        Returns:
            Outcome；普通异常和超时都会转换为失败的 Outcome，取消会继续向上传播
        """
        self._request_counter += 1
        request_id = uuid4().hex
        started = time.perf_counter()
        if timeout is None:
            timeout = self._config.orchestration.request_timeout

        with logger.context(conversation_id=conversation_id, request_id=request_id):
            logger.info(f"Processing request ({len(message)} chars)")
            await self._emit(EventType.REQUEST_RECEIVED, request_id, {
                "conversation_id": conversation_id,
                "message_length": len(message),
            })

            error = None
            try:
                with log_block("orchestrator.process_request"):
                    async with asyncio.timeout(timeout):
                        outcome = await self._process(message, conversation_id, existing_context,
                                                      request_id, started)
            except TimeoutError:
                error = RequestTimeoutException(timeout)
                logger.warning(f"Request timed out after {timeout}s")
                outcome = self._failure_outcome(
                    TIMEOUT_RESPONSE.format(timeout=timeout), "timeout", conversation_id, started, error
                )
            except asyncio.CancelledError:
                logger.warning("Request cancelled")
                raise
            except Exception as e:
                error = wrap_exception(e, OrchestrationException)
                logger.error(f"Request processing failed: {e}", exc_info=True)
                outcome = self._failure_outcome(
                    ERROR_RESPONSE.format(error=e), "error", conversation_id, started, error
                )

            if error is not None:
                self._failure_counter += 1
                await self._emit(EventType.REQUEST_FAILED, request_id, {
                    "conversation_id": conversation_id,
                    "error": error.to_dict(),
                }, priority=EventPriority.HIGH)

            return outcome

    async def _process(
        self,
        message: str,
        conversation_id: str,
        existing_context: Optional[ConversationContext],
        request_id: str,
        started: float,
    ) -> Outcome:
        # 1. 上下文
        context = existing_context if existing_context is not None else self._context_store.get(conversation_id)
        context = context.touched()

        # 2. 上下文回忆（只看本条消息之前记录的事实）
        recalled = self._answer_from_context(message, context, started)
        context = self._context_store.store(conversation_id, context.with_facts(extract_message_facts(message)))
        if recalled is not None:
            self._context_store.record_turn(conversation_id, message, recalled.final_response)
            await self._emit(EventType.CONTEXT_RECALLED, request_id, {
                "conversation_id": conversation_id,
                "fact": recalled.metadata.get("fact"),
            })
            await self._emit_completed(request_id, recalled)
            return recalled

        # 3-5. 计划
        plan = await self._resolve_plan(message, context, request_id)

        # 6. 执行
        report = await self._engine.execute(plan, conversation_id)

        # 7. 合成
        response = await self._synthesizer.synthesize(message, report.final_results)

        # 8. 结果
        outcome = self._build_outcome(plan, report, response, conversation_id, started)

        # 9. 写回上下文
        self._context_store.record_turn(
            conversation_id,
            message,
            response,
            categories=outcome.executors_invoked,
            facts=self._collect_result_facts(report.final_results),
        )

        await self._emit_completed(request_id, outcome)
        logger.info(
            f"Request completed: intent={outcome.primary_intent} calls={outcome.total_calls} "
            f"success={outcome.success}"
        )
        return outcome

    # === 计划 ===

    async def _resolve_plan(self, message: str, context: ConversationContext, request_id: str) -> Plan:
        conversation_id = context.conversation_id

        plan = self._generator.try_fast_path(message, context)
        if plan is not None:
            plan = await self._validate(plan, message, conversation_id, request_id)
        else:
            cached = self._plan_cache.try_get(message, context)
            if cached is not None:
                plan = cached.bound_to(conversation_id).with_source(PlanSource.CACHE)
                await self._emit(EventType.PLAN_CACHE_HIT, request_id, {
                    "conversation_id": conversation_id,
                    "primary_intent": plan.primary_intent,
                })
            else:
                generated = await self._generator.plan_with_oracle(message, context)
                plan = await self._validate(generated, message, conversation_id, request_id)
                self._plan_cache.put(message, plan, context)

        await self._emit(EventType.PLAN_CREATED, request_id, {
            "conversation_id": conversation_id,
            **plan.summary(),
        })
        return plan

    async def _validate(self, plan: Plan, message: str, conversation_id: str, request_id: str) -> Plan:
        corrected = self._validator.validate_and_correct(plan, message, conversation_id)
        if corrected is not plan:
            await self._emit(EventType.PLAN_CORRECTED, request_id, {
                "conversation_id": conversation_id,
                "from": [c.value for c in plan.categories],
                "to": [c.value for c in corrected.categories],
                "primary_intent": corrected.primary_intent,
            })
        return corrected

    # === 上下文回忆 ===

    def _answer_from_context(
        self,
        message: str,
        context: ConversationContext,
        started: float,
    ) -> Optional[Outcome]:
        for rule in CONTEXT_LOOKUP_RULES:
            if not rule.matches(message):
                continue
            fact = context.facts.get(rule.fact_key)
            if fact is None:
                # 没有记录时交给正常流程处理
                return None
            logger.info(f"Answered from workflow fact: {rule.fact_key}")
            return Outcome(
                final_response=(
                    f"Your most recent {rule.label} was `{fact.value}` "
                    f"(recorded {fact.updated_at:%Y-%m-%d %H:%M})."
                ),
                primary_intent="context_lookup",
                elapsed_ms=(time.perf_counter() - started) * 1000,
                metadata={"fact": rule.fact_key, "fact_updated_at": fact.updated_at.isoformat()},
                conversation_id=context.conversation_id,
            )
        return None

    # === 结果组装 ===

    def _build_outcome(
        self,
        plan: Plan,
        report: ExecutionReport,
        response: str,
        conversation_id: str,
        started: float,
    ) -> Outcome:
        final = report.final_results
        success = all(r.success for r in final)
        has_warnings = any(r.warnings for r in final)

        if not success:
            follow_up_prompt = FOLLOW_UP_RETRY
        elif has_warnings:
            follow_up_prompt = FOLLOW_UP_WARNINGS
        else:
            follow_up_prompt = None

        missing_fields: List[str] = []
        for result in final:
            fields = result.metadata.get("missing_fields") or []
            if isinstance(fields, str):
                fields = [fields]
            for name in fields:
                if name not in missing_fields:
                    missing_fields.append(name)

        metadata: Dict[str, Any] = {"plan_source": plan.source.value}
        for result in final:
            for key, value in result.metadata.items():
                metadata[f"{result.category.value}_{key}"] = value
        if report.skipped:
            metadata["skipped_tasks"] = list(report.skipped)
        if report.halted:
            metadata["halted"] = True
        if report.rounds:
            metadata["collaboration_rounds"] = len(report.rounds)

        return Outcome(
            final_response=response,
            primary_intent=plan.primary_intent,
            executors_invoked=list(dict.fromkeys(r.category for r in report.results)),
            execution_pattern=plan.pattern,
            total_calls=len(report.results),
            elapsed_ms=(time.perf_counter() - started) * 1000,
            success=success,
            requires_follow_up=follow_up_prompt is not None or bool(missing_fields),
            follow_up_prompt=follow_up_prompt,
            missing_fields=missing_fields,
            quick_replies=quick_replies_for(plan.primary_intent),
            metadata=metadata,
            errors=[error for r in final for error in r.errors],
            conversation_id=conversation_id,
        )

    def _failure_outcome(
        self,
        response: str,
        intent: str,
        conversation_id: str,
        started: float,
        error: Exception,
    ) -> Outcome:
        return Outcome(
            final_response=response,
            primary_intent=intent,
            elapsed_ms=(time.perf_counter() - started) * 1000,
            success=False,
            errors=[str(error)],
            metadata={"error": error.to_dict()} if hasattr(error, "to_dict") else {},
            conversation_id=conversation_id,
        )

    @staticmethod
    def _collect_result_facts(results: List[ExecutorResult]) -> Dict[str, Any]:
        """从执行结果中收集工作流事实"""
        facts: Dict[str, Any] = {}
        for result in results:
            state = result.metadata.get("workflow_state")
            if isinstance(state, dict):
                facts.update(state)
            if result.category is ExecutorCategory.COMPLIANCE and result.success:
                facts["last_scan_timestamp"] = datetime.now().isoformat()
        return facts

    # === 事件与监控 ===

    async def _emit(
        self,
        event_type: EventType,
        request_id: str,
        payload: Dict[str, Any],
        priority: EventPriority = EventPriority.NORMAL,
    ) -> None:
        await self._event_bus.emit(Event(
            type=event_type,
            payload=payload,
            trace_id=request_id,
            source="orchestrator",
            priority=priority,
        ))

    async def _emit_completed(self, request_id: str, outcome: Outcome) -> None:
        await self._emit(EventType.REQUEST_COMPLETED, request_id, {
            "conversation_id": outcome.conversation_id,
            "primary_intent": outcome.primary_intent,
            "success": outcome.success,
            "total_calls": outcome.total_calls,
            "elapsed_ms": outcome.elapsed_ms,
        })

    def get_stats(self) -> Dict[str, Any]:
        return {
            "requests": self._request_counter,
            "failures": self._failure_counter,
            "executors": [c.value for c in self._registry.categories()],
            "caches": self._cache_manager.get_all_stats(),
            "events": self._event_bus.get_stats(),
        }

    def cleanup(self) -> Dict[str, int]:
        """清理过期的计划与会话"""
        return self._cache_manager.cleanup_all()
