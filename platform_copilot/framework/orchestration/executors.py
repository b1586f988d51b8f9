"""
执行器协议与注册表

执行器是完成某一类工作的能力单元。编排层只依赖 Executor 协议，
具体实现（模板生成、合规扫描、成本估算……）在启动时注册。
"""

import logging
import threading
from typing import TYPE_CHECKING, Dict, List, Optional, Protocol, runtime_checkable

from ...core.exceptions import ExecutorNotRegisteredException
from .models import ExecutorCategory, ExecutorResult, Task

if TYPE_CHECKING:
    from .context_store import ContextStore

logger = logging.getLogger(__name__)


# 规划提示词中的执行器目录
DEFAULT_DESCRIPTIONS: Dict[ExecutorCategory, str] = {
    ExecutorCategory.INFRASTRUCTURE: (
        "Generates infrastructure-as-code templates (Bicep, Terraform, ARM) and network designs. "
        "Produces code only; does not create live resources."
    ),
    ExecutorCategory.COMPLIANCE: (
        "Scans and assesses EXISTING resources against NIST 800-53 / FedRAMP controls, "
        "reports findings and remediation steps."
    ),
    ExecutorCategory.COST_MANAGEMENT: (
        "Analyzes current spend, estimates costs for planned resources and suggests optimizations."
    ),
    ExecutorCategory.ENVIRONMENT: (
        "Handles environment lifecycle: deploys templates, clones and scales environments."
    ),
    ExecutorCategory.DISCOVERY: (
        "Inventories existing resources, verifies deployments and reports resource health."
    ),
    ExecutorCategory.ONBOARDING: (
        "Onboards new missions and teams, gathering requirements through follow-up questions."
    ),
}


@runtime_checkable
class Executor(Protocol):
    """
    执行器协议

    实现要求:
    - category 属性声明自己负责的类别
    - process() 可被并发调用，且不应抛出异常（失败通过 ExecutorResult 表达）
    - 可以通过 context_store 读取会话上下文（包括前序任务的结果）
    """

    category: ExecutorCategory

    async def process(self, task: Task, context_store: "ContextStore") -> ExecutorResult:
        ...


class ExecutorRegistry:
    """
    执行器注册表

    使用示例:
    ```python
    registry = ExecutorRegistry()
    registry.register(InfrastructureExecutor())
    registry.register(ComplianceExecutor(), description="Runs NIST scans")

    executor = registry.get(ExecutorCategory.COMPLIANCE)
    ```
    """

    def __init__(self):
        self._executors: Dict[ExecutorCategory, Executor] = {}
        self._descriptions: Dict[ExecutorCategory, str] = dict(DEFAULT_DESCRIPTIONS)
        self._lock = threading.Lock()

    def register(self, executor: Executor, description: Optional[str] = None) -> None:
        """注册执行器（同一类别后注册的覆盖先注册的）"""
        category = ExecutorCategory.parse(getattr(executor, "category", None))
        if category is None:
            raise ValueError(f"Executor {executor!r} does not declare a known category")

        with self._lock:
            if category in self._executors:
                logger.warning(f"Replacing executor for category: {category.value}")
            self._executors[category] = executor
            if description:
                self._descriptions[category] = description

        logger.info(f"Registered executor: {category.value}")

    def unregister(self, category: ExecutorCategory) -> bool:
        with self._lock:
            return self._executors.pop(category, None) is not None

    def get(self, category: ExecutorCategory) -> Optional[Executor]:
        return self._executors.get(category)

    def require(self, category: ExecutorCategory) -> Executor:
        executor = self._executors.get(category)
        if executor is None:
            raise ExecutorNotRegisteredException(category.value)
        return executor

    def categories(self) -> List[ExecutorCategory]:
        """已注册的类别（按枚举顺序）"""
        return [c for c in ExecutorCategory if c in self._executors]

    def describe(self, category: ExecutorCategory) -> str:
        return self._descriptions.get(category, "")

    def catalogue(self) -> str:
        """规划提示词用的执行器目录（列出全部类别，未注册的会被标注）"""
        lines = []
        for category in ExecutorCategory:
            suffix = "" if category in self._executors else " (currently unavailable)"
            lines.append(f"- {category.label}: {self._descriptions.get(category, '')}{suffix}")
        return "\n".join(lines)

    def __contains__(self, category: ExecutorCategory) -> bool:
        return category in self._executors

    def __len__(self) -> int:
        return len(self._executors)
