"""
响应合成器

把多个执行器的输出合并为一个回答。
"""

import logging
from typing import List

from ...core.exceptions import SynthesisException
from .models import ExecutorResult
from .oracle import Oracle

logger = logging.getLogger(__name__)

NO_RESULTS_MESSAGE = "I couldn't process your request. Please try rephrasing it."
FAILED_RESULT_MESSAGE = "Sorry, the {label} step could not complete: {cause}"

SYNTHESIS_SYSTEM_PROMPT = """You merge the outputs of several specialized cloud platform executors into one answer.
Rules:
- Integrate the outputs into a single coherent response; do not attribute sections to executor names.
- Where outputs conflict, reconcile them and state the resolution.
- Keep every warning and error visible to the user.
- Preserve code blocks, resource names and numbers exactly."""


def concatenate_results(results: List[ExecutorResult]) -> str:
    """带标签的原始拼接（合成服务不可用时的回退）"""
    return "\n\n".join(f"**{r.category.label} Agent:**\n{r.content}" for r in results)


class ResponseSynthesizer:
    """
    响应合成器

    - 0 个结果：固定提示语
    - 1 个结果：原样返回，不调用合成服务（失败且无输出时返回致歉与原因）
    - 多个结果：调用合成服务，失败或返回空文本时回退到带标签拼接
    """

    def __init__(self, oracle: Oracle):
        self._oracle = oracle

    def build_prompt(self, message: str, results: List[ExecutorResult]) -> str:
        parts = [f"User request:\n{message}", "", "Executor outputs:"]
        for result in results:
            status = "succeeded" if result.success else "failed"
            parts.append(f"\n### {result.category.label} ({status})\n{result.content}")
            if result.warnings:
                parts.append("Warnings: " + "; ".join(result.warnings))
            if result.errors:
                parts.append("Errors: " + "; ".join(result.errors))
        return "\n".join(parts)

    async def synthesize(self, message: str, results: List[ExecutorResult]) -> str:
        """合成回答，本方法不抛出普通异常"""
        if not results:
            return NO_RESULTS_MESSAGE
        if len(results) == 1:
            return self._single(results[0])

        try:
            return await self._merge(message, results)
        except Exception as e:
            logger.warning(f"Synthesis failed, concatenating outputs: {e}")
            return concatenate_results(results)

    @staticmethod
    def _single(result: ExecutorResult) -> str:
        """单个结果：原样返回；失败且没有输出时给出带原因的致歉"""
        if result.success or result.content.strip():
            return result.content
        cause = "; ".join(result.errors) or "no details were reported"
        return FAILED_RESULT_MESSAGE.format(label=result.category.label, cause=cause)

    async def _merge(self, message: str, results: List[ExecutorResult]) -> str:
        merged = await self._oracle.complete(
            self.build_prompt(message, results),
            system=SYNTHESIS_SYSTEM_PROMPT,
        )
        if not merged or not merged.strip():
            raise SynthesisException("Synthesis oracle returned empty text", details={"results": len(results)})
        return merged.strip()
