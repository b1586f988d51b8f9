"""
快速路径路由器

固定的短语表，把明确无歧义的请求直接路由到单个执行器类别，
不经过规划服务。只有恰好一个类别命中时才生效。
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Pattern
import re
import logging

from .models import ExecutorCategory

logger = logging.getLogger(__name__)


def _inflected(word: str) -> str:
    """
    最后一个词的词尾变化

    create -> creates / created / creating，scan -> scans / scanned / scanning
    """
    if len(word) > 2 and word.endswith("e"):
        return rf"{re.escape(word[:-1])}(?:e|es|ed|ing)"
    suffixes = ["s", "es", "ed", "ing"]
    if word[-1].isalpha() and word[-1] not in "aeiouwxy":
        suffixes += [f"{word[-1]}ed", f"{word[-1]}ing"]
    return rf"{re.escape(word)}(?:{'|'.join(suffixes)})?"


def compile_phrase(phrase: str) -> Pattern:
    """
    把短语编译为大小写不敏感、带词边界的正则

    最后一个词允许常见的英文词尾变化
    """
    words = phrase.lower().split()
    body = r"\s+".join([re.escape(w) for w in words[:-1]] + [_inflected(words[-1])])
    return re.compile(rf"\b{body}\b", re.IGNORECASE)


@dataclass
class FastPathRule:
    """快速路径规则"""
    name: str
    category: ExecutorCategory
    intent: str
    phrases: List[str]
    description: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)
    _patterns: List[Pattern] = field(default_factory=list, init=False, repr=False)

    def __post_init__(self):
        self._patterns = [compile_phrase(p) for p in self.phrases]

    def matches(self, message: str) -> bool:
        return any(p.search(message) for p in self._patterns)


FAST_PATH_RULES: List[FastPathRule] = [
    FastPathRule(
        name="resource_inventory",
        category=ExecutorCategory.DISCOVERY,
        intent="discovery",
        phrases=[
            "list my resources", "list all resources", "show my resources",
            "list resource groups", "list my resource groups", "resource inventory",
            "what resources do i have",
        ],
        description="Inventory of existing resources",
    ),
    FastPathRule(
        name="cost_report",
        category=ExecutorCategory.COST_MANAGEMENT,
        intent="cost_analysis",
        phrases=[
            "show my costs", "current spend", "cost breakdown", "monthly spend",
            "how much am i spending", "show my spending",
        ],
        description="Current spend and cost breakdown",
    ),
    FastPathRule(
        name="environment_listing",
        category=ExecutorCategory.ENVIRONMENT,
        intent="environment_management",
        phrases=["list environments", "list my environments", "show my environments"],
        description="Environment listing",
    ),
    FastPathRule(
        name="mission_onboarding",
        category=ExecutorCategory.ONBOARDING,
        intent="onboarding",
        phrases=["start onboarding", "onboard a new mission", "onboard my mission", "new mission onboarding"],
        description="Mission onboarding conversation",
    ),
    FastPathRule(
        name="compliance_status",
        category=ExecutorCategory.COMPLIANCE,
        intent="compliance",
        phrases=["compliance status", "run a compliance scan", "compliance report"],
        description="Compliance posture of existing resources",
    ),
]


class FastPathRouter:
    """
    快速路径路由器

    功能:
    - 基于短语表的确定性路由
    - 多个类别同时命中时视为有歧义，不路由
    - 动态规则管理

    使用示例:
    ```python
    router = FastPathRouter()

    rule = router.match("list my resources in eastus")
    if rule:
        print(rule.category)   # ExecutorCategory.DISCOVERY
    ```
    """

    def __init__(self, rules: Optional[List[FastPathRule]] = None):
        self._rules: List[FastPathRule] = list(FAST_PATH_RULES if rules is None else rules)

    def add_rule(self, rule: FastPathRule) -> None:
        self._rules.append(rule)
        logger.debug(f"Added fast-path rule: {rule.name}")

    def remove_rule(self, name: str) -> bool:
        for i, rule in enumerate(self._rules):
            if rule.name == name:
                self._rules.pop(i)
                return True
        return False

    def get_rules(self) -> List[FastPathRule]:
        return list(self._rules)

    def match(self, message: str) -> Optional[FastPathRule]:
        """
        匹配消息

        Returns:
            命中的规则；没有命中或命中多个类别时返回 None
        """
        matched = [rule for rule in self._rules if rule.matches(message)]
        if not matched:
            return None

        categories = {rule.category for rule in matched}
        if len(categories) > 1:
            logger.debug(
                f"Fast path ambiguous, categories: {sorted(c.value for c in categories)}"
            )
            return None

        rule = matched[0]
        logger.debug(f"Request matched fast-path rule: {rule.name} -> {rule.category.value}")
        return rule
