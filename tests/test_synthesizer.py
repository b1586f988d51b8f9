"""
响应合成器单元测试
"""
import pytest
import os
import sys

# 添加项目路径
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from platform_copilot.framework.orchestration import ExecutorCategory, ExecutorResult, ResponseSynthesizer
from platform_copilot.framework.orchestration.synthesizer import (
    FAILED_RESULT_MESSAGE, NO_RESULTS_MESSAGE, concatenate_results,
)
from tests.doubles import ScriptedOracle


def result(category, content, **kwargs):
    return ExecutorResult(task_id=f"t-{category.value}", category=category, content=content, **kwargs)


TWO_RESULTS = [
    result(ExecutorCategory.INFRASTRUCTURE, "```bicep\nresource sa ...\n```"),
    result(ExecutorCategory.COST_MANAGEMENT, "About $120/month", warnings=["Prices are estimates"]),
]


class TestResponseSynthesizer:
    """测试 ResponseSynthesizer 类"""

    @pytest.mark.asyncio
    async def test_no_results(self):
        """测试没有结果"""
        oracle = ScriptedOracle()
        assert await ResponseSynthesizer(oracle).synthesize("x", []) == NO_RESULTS_MESSAGE
        assert oracle.calls == 0

    @pytest.mark.asyncio
    async def test_single_result_verbatim(self):
        """测试单个结果原样返回，不调用合成服务"""
        oracle = ScriptedOracle(["should not be used"])
        single = [result(ExecutorCategory.DISCOVERY, "  3 resource groups  ")]
        assert await ResponseSynthesizer(oracle).synthesize("x", single) == "  3 resource groups  "
        assert oracle.calls == 0

    @pytest.mark.asyncio
    async def test_single_failure_apologizes_with_cause(self):
        """测试单个失败且没有输出的结果返回致歉与原因"""
        oracle = ScriptedOracle(["should not be used"])
        failed = [result(ExecutorCategory.COMPLIANCE, "", success=False,
                         errors=["Executor 'compliance' timed out after 5s"])]

        response = await ResponseSynthesizer(oracle).synthesize("x", failed)

        assert response == FAILED_RESULT_MESSAGE.format(
            label="Compliance", cause="Executor 'compliance' timed out after 5s"
        )
        assert response.startswith("Sorry")
        assert oracle.calls == 0

    @pytest.mark.asyncio
    async def test_single_failure_keeps_partial_output(self):
        """测试失败但有部分输出时原样返回"""
        partial = [result(ExecutorCategory.DISCOVERY, "Found 2 of 3 groups", success=False, errors=["throttled"])]
        assert await ResponseSynthesizer(ScriptedOracle()).synthesize("x", partial) == "Found 2 of 3 groups"

    @pytest.mark.asyncio
    async def test_merges_with_oracle(self):
        """测试多个结果调用合成服务"""
        oracle = ScriptedOracle(["  Merged answer.  "])
        merged = await ResponseSynthesizer(oracle).synthesize("storage account with costs", TWO_RESULTS)

        assert merged == "Merged answer."
        prompt = oracle.prompts[0]
        assert "storage account with costs" in prompt
        assert "### CostManagement (succeeded)" in prompt
        assert "Warnings: Prices are estimates" in prompt
        assert oracle.json_modes == [False]

    @pytest.mark.asyncio
    async def test_oracle_failure_concatenates(self):
        """测试合成服务失败时回退到拼接"""
        oracle = ScriptedOracle([RuntimeError("unavailable")])
        merged = await ResponseSynthesizer(oracle).synthesize("x", TWO_RESULTS)

        assert merged == concatenate_results(TWO_RESULTS)
        assert merged.startswith("**Infrastructure Agent:**\n```bicep")
        assert "\n\n**CostManagement Agent:**\nAbout $120/month" in merged

    @pytest.mark.asyncio
    async def test_empty_output_concatenates(self):
        """测试合成服务返回空文本时回退到拼接"""
        oracle = ScriptedOracle(["   "])
        merged = await ResponseSynthesizer(oracle).synthesize("x", TWO_RESULTS)
        assert merged == concatenate_results(TWO_RESULTS)

    def test_prompt_marks_failures(self):
        """测试提示词标注失败与错误"""
        failed = [
            result(ExecutorCategory.COMPLIANCE, "", success=False, errors=["scan timed out"]),
            result(ExecutorCategory.DISCOVERY, "2 VMs"),
        ]
        prompt = ResponseSynthesizer(ScriptedOracle()).build_prompt("x", failed)
        assert "### Compliance (failed)" in prompt
        assert "Errors: scan timed out" in prompt


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
