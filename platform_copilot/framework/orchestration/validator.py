"""
计划校验器

在执行之前纠正常见的误分类。规则表有序、首条命中即生效:

1. assessment   扫描/评估现有资源 -> 单个合规任务
2. execute_now  明确要求立即创建资源 -> 五步创建流程
3. template     生成模板/部署类措辞（未要求立即执行）-> 单个模板生成任务

两条规则同时命中时，排在前面的胜出。
"""

from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple
import logging

from .models import (
    PROVISIONING_CATEGORIES,
    ExecutionPattern,
    ExecutorCategory,
    Plan,
    PlanSource,
    Task,
)
from .router import compile_phrase

logger = logging.getLogger(__name__)


@dataclass
class PhraseMatcher:
    """
    短语匹配器

    命中条件：任一固定短语出现，或者 requires 中的每一组词都至少出现一个
    """
    phrases: List[str] = field(default_factory=list)
    requires: List[List[str]] = field(default_factory=list)

    def __post_init__(self):
        self._phrases = [compile_phrase(p) for p in self.phrases]
        self._groups = [[compile_phrase(w) for w in group] for group in self.requires]

    def matches(self, message: str) -> bool:
        if any(p.search(message) for p in self._phrases):
            return True
        if self._groups:
            return all(any(p.search(message) for p in group) for group in self._groups)
        return False


ASSESSMENT_MATCHER = PhraseMatcher(
    phrases=[
        "check compliance", "run a compliance assessment", "scan my subscription",
        "compliance status", "security assessment", "assess compliance",
        "validate compliance", "audit", "compliance scan",
    ],
    requires=[
        ["check", "scan", "assess", "validate", "audit", "evaluate", "review"],
        ["compliance", "compliant", "nist", "fedramp", "security"],
    ],
)

EXECUTE_NOW_MATCHER = PhraseMatcher(
    phrases=[
        "actually provision", "make it live", "make this live", "execute deployment",
        "create the resources now", "deploy the template", "provision for real",
        "provision this", "deploy this now", "create resources now", "execute this",
        "provision now",
    ],
    requires=[
        ["actually", "now", "immediately", "right now", "execute", "live"],
        ["provision", "deploy", "create resources", "make it", "deployment"],
    ],
)

TEMPLATE_MATCHER = PhraseMatcher(
    phrases=[
        "template", "bicep", "arm", "iac", "blueprint", "terraform",
        "generate code", "show me the code", "infrastructure code",
        # 部署类措辞（未要求立即执行时只生成模板）
        "deploy", "create", "set up", "i need", "provision",
    ],
)


def _assessment_plan(message: str, conversation_id: str) -> Plan:
    return Plan(
        primary_intent="compliance",
        tasks=(Task(
            category=ExecutorCategory.COMPLIANCE,
            description=message,
            priority=1,
            critical=True,
            conversation_id=conversation_id,
        ),),
        pattern=ExecutionPattern.SEQUENTIAL,
        estimated_seconds=60,
        source=PlanSource.VALIDATOR,
        reasoning="Request asks to scan or assess existing resources",
    )


def _provisioning_plan(message: str, conversation_id: str) -> Plan:
    """五步创建流程：生成 -> 部署 -> 验证 -> 范围内合规扫描 -> 成本估算，仅首步关键"""
    steps = [
        (ExecutorCategory.INFRASTRUCTURE, message),
        (ExecutorCategory.ENVIRONMENT, f"Deploy the infrastructure template: {message}"),
        (ExecutorCategory.DISCOVERY,
         "Discover and verify newly created resources in the deployed resource group"),
        (ExecutorCategory.COMPLIANCE,
         "Perform compliance scan on newly created resource group only (not entire subscription)"),
        (ExecutorCategory.COST_MANAGEMENT, "Estimate monthly costs for deployed resources"),
    ]
    return Plan(
        primary_intent="provisioning",
        tasks=tuple(
            Task(
                category=category,
                description=description,
                priority=index,
                critical=index == 1,
                conversation_id=conversation_id,
            )
            for index, (category, description) in enumerate(steps, start=1)
        ),
        pattern=ExecutionPattern.SEQUENTIAL,
        estimated_seconds=120,
        source=PlanSource.VALIDATOR,
        reasoning="Request explicitly asks to create live resources now",
    )


def _template_plan(message: str, conversation_id: str) -> Plan:
    return Plan(
        primary_intent="template_generation",
        tasks=(Task(
            category=ExecutorCategory.INFRASTRUCTURE,
            description=message,
            priority=1,
            critical=True,
            conversation_id=conversation_id,
        ),),
        pattern=ExecutionPattern.SEQUENTIAL,
        estimated_seconds=30,
        source=PlanSource.VALIDATOR,
        reasoning="Request asks for infrastructure code without immediate execution",
    )


def _task_shape(plan: Plan) -> List[Tuple[ExecutorCategory, int, bool]]:
    """按执行顺序的 (类别, 优先级, 是否关键)"""
    return [(t.category, t.priority, t.critical) for t in plan.ordered_tasks()]


@dataclass
class CorrectionRule:
    """纠正规则"""
    name: str
    matcher: PhraseMatcher
    rewrite: Callable[[str, str], Plan]
    # 仅当候选计划包含可参与资源创建的类别时适用
    requires_provisioning_plan: bool = False
    description: str = ""

    def applies(self, message: str, plan: Optional[Plan]) -> bool:
        if self.requires_provisioning_plan:
            if plan is None or not any(c in PROVISIONING_CATEGORIES for c in plan.categories):
                return False
        return self.matcher.matches(message)


CORRECTION_RULES: List[CorrectionRule] = [
    CorrectionRule(
        name="assessment",
        matcher=ASSESSMENT_MATCHER,
        rewrite=_assessment_plan,
        description="Scanning phrases force a single compliance assessment",
    ),
    CorrectionRule(
        name="execute_now",
        matcher=EXECUTE_NOW_MATCHER,
        rewrite=_provisioning_plan,
        description="Explicit execute-now phrasing forces the five-step provisioning plan",
    ),
    CorrectionRule(
        name="template",
        matcher=TEMPLATE_MATCHER,
        rewrite=_template_plan,
        requires_provisioning_plan=True,
        description="Template or deployment phrasing forces template generation only",
    ),
]


class PlanValidator:
    """
    计划校验器

    使用示例:
    ```python
    validator = PlanValidator()
    plan = validator.validate_and_correct(plan, message, conversation_id)
    ```
    """

    def __init__(self, rules: Optional[List[CorrectionRule]] = None):
        self._rules = list(CORRECTION_RULES if rules is None else rules)

    def classify(self, message: str, plan: Optional[Plan] = None) -> Optional[str]:
        """返回首条命中的规则名；未传入计划时忽略 template 规则的计划条件"""
        for rule in self._rules:
            if plan is None and rule.requires_provisioning_plan:
                if rule.matcher.matches(message):
                    return rule.name
                continue
            if rule.applies(message, plan):
                return rule.name
        return None

    def validate_and_correct(self, plan: Plan, message: str, conversation_id: str) -> Plan:
        """
        校验并纠正计划

        Returns:
            命中规则时返回新计划（来源为 validator），否则原样返回
        """
        for rule in self._rules:
            if not rule.applies(message, plan):
                continue

            corrected = rule.rewrite(message, conversation_id)
            if self._equivalent(plan, corrected):
                logger.debug(f"Plan already satisfies rule '{rule.name}'")
                return plan

            logger.info(
                f"Plan corrected by rule '{rule.name}': "
                f"{[c.value for c in plan.categories]} -> {[c.value for c in corrected.categories]}"
            )
            return corrected

        return plan

    @staticmethod
    def _equivalent(plan: Plan, corrected: Plan) -> bool:
        return (
            plan.primary_intent == corrected.primary_intent
            and plan.pattern == corrected.pattern
            and _task_shape(plan) == _task_shape(corrected)
        )
