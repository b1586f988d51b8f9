"""
执行引擎

按计划的执行模式调度执行器:
- sequential: 按优先级逐个执行，关键任务失败即停止
- parallel: 并发执行，结果按提交顺序汇总
- collaborative: 有界多轮迭代，每轮并发执行并检查是否全部认可

执行器边界上的异常和超时都会被转换为失败结果；取消永远向上传播。
"""

import asyncio
import logging
import time
from dataclasses import replace
from typing import AsyncIterator, Dict, List, Optional, Tuple

from ...core.async_utils import gather_with_concurrency
from ...core.exceptions import (
    ExecutorFailureException,
    ExecutorNotRegisteredException,
    ExecutorTimeoutException,
)
from ..config import OrchestrationConfig
from ..events import Event, EventBus, EventPriority, EventType
from .context_store import ContextStore
from .executors import ExecutorRegistry
from .models import (
    CollaborationRound,
    ExecutionPattern,
    ExecutionReport,
    ExecutorCategory,
    ExecutorResult,
    Plan,
    Task,
)

logger = logging.getLogger(__name__)


class ExecutionEngine:
    """
    执行引擎

    功能:
    - 三种执行模式
    - 未注册类别跳过并记录
    - 执行器超时与异常隔离
    - 前序结果写回会话上下文（写时复制）

    使用示例:
    ```python
    engine = ExecutionEngine(registry, context_store)
    report = await engine.execute(plan, conversation_id)

    # 协作模式也可以逐轮消费
    async for round_ in engine.iterate_rounds(plan, conversation_id):
        print(round_.number, round_.approved)
    ```
    """

    def __init__(
        self,
        registry: ExecutorRegistry,
        context_store: ContextStore,
        config: OrchestrationConfig = None,
        event_bus: Optional[EventBus] = None,
    ):
        self._registry = registry
        self._context_store = context_store
        self._config = config or OrchestrationConfig()
        self._event_bus = event_bus or EventBus()

    async def execute(self, plan: Plan, conversation_id: str) -> ExecutionReport:
        """按计划的执行模式执行"""
        if plan.pattern is ExecutionPattern.PARALLEL:
            return await self._execute_parallel(plan, conversation_id)
        if plan.pattern is ExecutionPattern.COLLABORATIVE:
            return await self._execute_collaborative(plan, conversation_id)
        return await self._execute_sequential(plan, conversation_id)

    # === 任务分拣 ===

    async def _partition(self, tasks: List[Task], conversation_id: str) -> Tuple[List[Task], List[str]]:
        """拆分为可执行任务和被跳过的任务 ID"""
        runnable, skipped = [], []
        for task in tasks:
            try:
                self._registry.require(task.category)
            except ExecutorNotRegisteredException as e:
                logger.warning(f"Skipping task {task.id}: {e.message}")
                skipped.append(task.id)
                await self._emit(EventType.TASK_SKIPPED, {
                    "conversation_id": conversation_id,
                    "task_id": task.id,
                    "category": task.category.value,
                    "reason": "not_registered",
                })
                continue
            runnable.append(task)
        return runnable, skipped

    # === 单个任务 ===

    async def run_task(self, task: Task, conversation_id: str) -> ExecutorResult:
        """
        执行单个任务

        本方法只会因取消而抛出异常，其余情况都返回 ExecutorResult
        """
        executor = self._registry.get(task.category)
        if executor is None:
            return ExecutorResult.failure(task, ExecutorNotRegisteredException(task.category.value).message)
        if task.conversation_id != conversation_id:
            task = task.bound_to(conversation_id)

        self._context_store.record_event(
            conversation_id, source="orchestrator", target=task.category.value,
            message=task.description, data={"task_id": task.id, "priority": task.priority},
        )
        await self._emit(EventType.TASK_STARTED, {
            "conversation_id": conversation_id,
            "task_id": task.id,
            "category": task.category.value,
        })

        started = time.perf_counter()
        timeout = self._config.task_timeout
        try:
            async with asyncio.timeout(timeout):
                result = await executor.process(task, self._context_store)
        except TimeoutError:
            error = ExecutorTimeoutException(task.category.value, timeout)
            logger.warning(f"Task {task.id} timed out: {error.message}")
            result = ExecutorResult.failure(task, error.message)
        except Exception as e:
            logger.error(f"Executor {task.category.value} raised: {e!r}", exc_info=True)
            error = ExecutorFailureException(
                f"{task.category.label} executor failed: {e}", category=task.category.value, cause=e
            )
            result = ExecutorResult.failure(task, error.message)
        else:
            if not isinstance(result, ExecutorResult):
                result = ExecutorResult.failure(
                    task, f"{task.category.label} executor returned {type(result).__name__}"
                )

        # 执行器可能复用结果对象，只修改副本
        result = replace(
            result,
            task_id=task.id,
            category=task.category,
            elapsed_ms=result.elapsed_ms or (time.perf_counter() - started) * 1000,
        )

        self._context_store.record_event(
            conversation_id, source=task.category.value, target="orchestrator",
            message="completed" if result.success else "failed",
            data={"task_id": task.id, "errors": list(result.errors), "warnings": list(result.warnings)},
        )
        await self._emit(
            EventType.TASK_COMPLETED if result.success else EventType.TASK_FAILED,
            {
                "conversation_id": conversation_id,
                "task_id": task.id,
                "category": task.category.value,
                "success": result.success,
                "elapsed_ms": result.elapsed_ms,
            },
            priority=EventPriority.NORMAL if result.success else EventPriority.HIGH,
        )
        return result

    # === 顺序执行 ===

    async def _execute_sequential(self, plan: Plan, conversation_id: str) -> ExecutionReport:
        report = ExecutionReport()
        runnable, report.skipped = await self._partition(plan.ordered_tasks(), conversation_id)

        for task in runnable:
            result = await self.run_task(task, conversation_id)
            report.results.append(result)
            # 后续任务可以看到前序结果
            self._context_store.set_prior_results(conversation_id, report.results)

            if not result.success and task.critical:
                report.halted = True
                logger.warning(
                    f"Critical task {task.id} ({task.category.value}) failed, halting sequential execution"
                )
                break

        report.final_results = list(report.results)
        return report

    # === 并行执行 ===

    async def _execute_parallel(self, plan: Plan, conversation_id: str) -> ExecutionReport:
        report = ExecutionReport()
        runnable, report.skipped = await self._partition(list(plan.tasks), conversation_id)

        report.results = await self._run_concurrently(runnable, conversation_id)
        if report.results:
            self._context_store.set_prior_results(conversation_id, report.results)

        report.final_results = list(report.results)
        return report

    async def _run_concurrently(self, tasks: List[Task], conversation_id: str) -> List[ExecutorResult]:
        return await gather_with_concurrency(
            self._config.max_parallel_tasks,
            *(self.run_task(task, conversation_id) for task in tasks),
        )

    # === 协作执行 ===

    @staticmethod
    def is_approved(results: List[ExecutorResult]) -> bool:
        """全部成功且没有执行器明确表示不认可"""
        return bool(results) and all(r.success and r.approved is not False for r in results)

    @staticmethod
    def build_feedback(results: List[ExecutorResult]) -> str:
        lines = []
        for result in results:
            approved = result.success and result.approved is not False
            status = "✅ Approved" if approved else "❌ Needs changes"
            detail = result.warnings[0] if result.warnings else (
                result.errors[0] if result.errors else "No issues"
            )
            lines.append(f"- {result.category.label}: {status} - {detail}")
        return "\n".join(lines)

    async def iterate_rounds(
        self,
        plan: Plan,
        conversation_id: str,
        tasks: Optional[List[Task]] = None,
    ) -> AsyncIterator[CollaborationRound]:
        """
        协作轮次迭代器

        最多 max_collaboration_rounds 轮；全部认可时提前结束。
        从第二轮开始，每个任务的描述附带上一轮的反馈摘要。
        """
        if tasks is None:
            tasks, _ = await self._partition(list(plan.tasks), conversation_id)
        if not tasks:
            return

        feedback: Optional[str] = None
        for number in range(1, self._config.max_collaboration_rounds + 1):
            round_tasks = tasks if feedback is None else [
                task.with_description(f"{task.description}\n\nPrevious feedback:\n{feedback}")
                for task in tasks
            ]
            results = await self._run_concurrently(round_tasks, conversation_id)
            self._context_store.set_prior_results(conversation_id, results)

            approved = self.is_approved(results)
            await self._emit(EventType.COLLABORATION_ROUND, {
                "conversation_id": conversation_id,
                "round": number,
                "approved": approved,
                "categories": [r.category.value for r in results],
            })
            logger.info(f"Collaboration round {number}: {'approved' if approved else 'changes requested'}")

            yield CollaborationRound(number=number, results=results, approved=approved)

            if approved:
                return
            feedback = self.build_feedback(results)

    async def _execute_collaborative(self, plan: Plan, conversation_id: str) -> ExecutionReport:
        report = ExecutionReport()
        runnable, report.skipped = await self._partition(list(plan.tasks), conversation_id)

        latest: Dict[ExecutorCategory, ExecutorResult] = {}
        async for round_ in self.iterate_rounds(plan, conversation_id, tasks=runnable):
            report.rounds.append(round_)
            report.results.extend(round_.results)
            for result in round_.results:
                latest[result.category] = result

        report.final_results = list(latest.values())
        return report

    async def _emit(self, event_type: EventType, payload: Dict, priority: EventPriority = EventPriority.NORMAL) -> None:
        await self._event_bus.emit(Event(
            type=event_type,
            payload=payload,
            source="execution_engine",
            priority=priority,
        ))
