"""
编排器集成测试
测试完整的请求处理流程
"""
import pytest
import os
import sys
import asyncio

# 添加项目路径
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from langchain_core.language_models import FakeListChatModel

from platform_copilot.framework.config import CopilotConfig, OrchestrationConfig
from platform_copilot.framework.events import EventType
from platform_copilot.framework.orchestration import (
    ConversationContext, ExecutionPattern, ExecutorCategory, ExecutorRegistry, Orchestrator,
    PlanSource, PlanValidator,
)
from platform_copilot.framework.orchestration.orchestrator import (
    CONTEXT_LOOKUP_RULES, FOLLOW_UP_RETRY, FOLLOW_UP_WARNINGS, extract_message_facts, quick_replies_for,
)
from tests.doubles import ScriptedOracle, StubExecutor

SUBSCRIPTION = "453c2549-4cc5-464f-ba66-acad920823e8"

TEMPLATE_PLAN = """{"primaryIntent": "template_generation", "executionPattern": "sequential",
 "tasks": [{"agentType": "Infrastructure", "description": "Generate a template", "priority": 1}]}"""

COST_AND_COMPLIANCE_PLAN = """{"primaryIntent": "cost_and_compliance", "executionPattern": "parallel",
 "tasks": [{"agentType": "CostManagement", "description": "Estimate"},
           {"agentType": "Compliance", "description": "Review controls"}]}"""

COLLABORATIVE_PLAN = """{"primaryIntent": "architecture_review", "executionPattern": "collaborative",
 "tasks": [{"agentType": "Infrastructure", "description": "Design network"},
           {"agentType": "Compliance", "description": "Review network"}]}"""


def make_orchestrator(*executors, replies=(), **kwargs):
    registry = ExecutorRegistry()
    for executor in executors:
        registry.register(executor)
    oracle = ScriptedOracle(replies)
    return Orchestrator(registry, oracle, **kwargs), oracle


def event_types(orchestrator):
    return [e.type for e in orchestrator.event_bus.get_history(limit=1000)]


class TestMessageFacts:
    """测试从消息中提取工作流事实"""

    def test_subscription_id(self):
        """测试订阅 ID"""
        facts = extract_message_facts(f"scan subscription {SUBSCRIPTION.upper()} please")
        assert facts["last_subscription_id"] == SUBSCRIPTION

    def test_resource_group(self):
        """测试资源组名称"""
        assert extract_message_facts("deploy to resource group rg-apollo.")["last_resource_group"] == "rg-apollo"
        assert extract_message_facts("use the resource-group named 'rg_prod'")["last_resource_group"] == "rg_prod"

    def test_stopwords_ignored(self):
        """测试不会把普通词当作资源组名"""
        assert extract_message_facts("which resource group did I use?") == {}

    def test_quick_replies(self):
        """测试快捷回复"""
        assert quick_replies_for("template_generation")[0] == "Check compliance status"
        assert quick_replies_for("compliance")[0] == "Generate remediation plan"
        assert quick_replies_for("cost_analysis")[0] == "Show optimization suggestions"
        assert quick_replies_for("discovery") == []


class TestContextLookupRules:
    """测试回忆类问题识别"""

    @pytest.fixture
    def subscription_rule(self):
        return CONTEXT_LOOKUP_RULES[0]

    @pytest.mark.parametrize("message", [
        "Which subscription did I use last?",
        "what was the last subscription?",
        "Remind me which subscription we used",
    ])
    def test_recall_questions(self, subscription_rule, message):
        """测试明确的回忆措辞"""
        assert subscription_rule.matches(message)

    @pytest.mark.parametrize("message", [
        f"What is the current compliance status of subscription {SUBSCRIPTION}?",
        "What is the current subscription spend?",
        "which subscription should I deploy to?",
        f"which subscription did I use, {SUBSCRIPTION}?",
        "Show the subscription I used last",
    ])
    def test_requests_are_not_recall(self, subscription_rule, message):
        """测试业务请求不会被当作回忆问题"""
        assert not subscription_rule.matches(message)

    def test_resource_group_rule(self):
        """测试资源组回忆"""
        rule = CONTEXT_LOOKUP_RULES[1]
        assert rule.matches("Which resource group did I use?")
        assert not rule.matches("what is the current cost of resource group rg-prod")


class TestOrchestrator:
    """测试 Orchestrator 类"""

    @pytest.mark.asyncio
    async def test_fast_path(self):
        """测试快速路径不调用规划服务和合成服务"""
        discovery = StubExecutor(ExecutorCategory.DISCOVERY, [{"content": "3 resource groups"}])
        orchestrator, oracle = make_orchestrator(discovery)

        outcome = await orchestrator.process_request("list my resources", "conv-1")

        assert outcome.success
        assert outcome.final_response == "3 resource groups"
        assert outcome.primary_intent == "discovery"
        assert outcome.executors_invoked == [ExecutorCategory.DISCOVERY]
        assert outcome.execution_pattern is ExecutionPattern.SEQUENTIAL
        assert outcome.total_calls == 1
        assert outcome.metadata["plan_source"] == PlanSource.FAST_PATH.value
        assert not outcome.requires_follow_up
        assert oracle.calls == 0

    @pytest.mark.asyncio
    async def test_oracle_plan_is_cached(self):
        """测试规划结果被缓存，相同请求不再调用规划服务"""
        orchestrator, oracle = make_orchestrator(
            StubExecutor(ExecutorCategory.COST_MANAGEMENT),
            StubExecutor(ExecutorCategory.COMPLIANCE),
            replies=[COST_AND_COMPLIANCE_PLAN, "Merged 1", "Merged 2"],
        )
        message = "how much would a premium redis cache cost per month"

        first = await orchestrator.process_request(message, "conv-1")
        second = await orchestrator.process_request(message, "conv-2")

        assert first.final_response == "Merged 1"
        assert first.metadata["plan_source"] == PlanSource.ORACLE.value
        assert first.execution_pattern is ExecutionPattern.PARALLEL
        assert first.executors_invoked == [ExecutorCategory.COST_MANAGEMENT, ExecutorCategory.COMPLIANCE]
        assert second.final_response == "Merged 2"
        assert second.metadata["plan_source"] == PlanSource.CACHE.value
        assert oracle.calls == 3
        assert EventType.PLAN_CACHE_HIT.value in event_types(orchestrator)

    @pytest.mark.asyncio
    async def test_validator_corrects_oracle_plan(self):
        """测试扫描请求被纠正为合规评估"""
        compliance = StubExecutor(ExecutorCategory.COMPLIANCE)
        infra = StubExecutor(ExecutorCategory.INFRASTRUCTURE)
        orchestrator, oracle = make_orchestrator(compliance, infra, replies=[TEMPLATE_PLAN])

        outcome = await orchestrator.process_request(
            f"check compliance for subscription {SUBSCRIPTION}", "conv-1"
        )

        assert outcome.primary_intent == "compliance"
        assert outcome.executors_invoked == [ExecutorCategory.COMPLIANCE]
        assert infra.calls == []
        assert outcome.quick_replies[0] == "Generate remediation plan"
        assert EventType.PLAN_CORRECTED.value in event_types(orchestrator)

        context = orchestrator.context_store.get("conv-1")
        assert context.get_fact("last_subscription_id") == SUBSCRIPTION
        assert context.get_fact("last_scan_timestamp") is not None
        assert context.used_categories == (ExecutorCategory.COMPLIANCE,)

    @pytest.mark.asyncio
    async def test_context_recall(self):
        """测试回忆类问题直接从工作流事实回答"""
        compliance = StubExecutor(ExecutorCategory.COMPLIANCE)
        orchestrator, oracle = make_orchestrator(compliance, replies=[TEMPLATE_PLAN])
        await orchestrator.process_request(f"check compliance for subscription {SUBSCRIPTION}", "conv-1")

        outcome = await orchestrator.process_request("Which subscription did I use last?", "conv-1")

        assert outcome.primary_intent == "context_lookup"
        assert SUBSCRIPTION in outcome.final_response
        assert outcome.total_calls == 0
        assert len(compliance.calls) == 1
        assert oracle.calls == 1
        assert EventType.CONTEXT_RECALLED.value in event_types(orchestrator)
        assert len(orchestrator.context_store.get("conv-1").history) == 4

    @pytest.mark.asyncio
    async def test_recall_without_fact_falls_through(self):
        """测试没有记录的事实时走正常流程"""
        orchestrator, _ = make_orchestrator(
            StubExecutor(ExecutorCategory.INFRASTRUCTURE),
            replies=[RuntimeError("planner down")],
        )
        outcome = await orchestrator.process_request("Which resource group did I use last?", "conv-1")

        assert outcome.primary_intent != "context_lookup"
        assert outcome.metadata["plan_source"] == PlanSource.FALLBACK.value
        assert outcome.success

    @pytest.mark.asyncio
    async def test_request_naming_subscription_is_executed(self):
        """测试带订阅 ID 的状态查询交给执行器，而不是回显订阅 ID"""
        compliance = StubExecutor(ExecutorCategory.COMPLIANCE, [{"content": "12 findings"}])
        orchestrator, oracle = make_orchestrator(compliance)

        outcome = await orchestrator.process_request(
            f"What is the current compliance status of subscription {SUBSCRIPTION}?", "conv-1"
        )

        assert outcome.primary_intent == "compliance"
        assert outcome.final_response == "12 findings"
        assert len(compliance.calls) == 1
        assert EventType.CONTEXT_RECALLED.value not in event_types(orchestrator)
        assert orchestrator.context_store.get("conv-1").get_fact("last_subscription_id") == SUBSCRIPTION

    @pytest.mark.asyncio
    async def test_cost_question_about_known_resource_group_is_planned(self):
        """测试针对已记录资源组的成本问题走正常规划"""
        cost = StubExecutor(ExecutorCategory.COST_MANAGEMENT, [{"content": "$310 this month"}])
        orchestrator, oracle = make_orchestrator(cost, replies=[
            """{"primaryIntent": "cost_analysis", "executionPattern": "sequential",
             "tasks": [{"agentType": "CostManagement", "description": "Current cost", "priority": 1}]}""",
        ])
        context = ConversationContext(conversation_id="conv-1").with_fact("last_resource_group", "rg-prod")

        outcome = await orchestrator.process_request(
            "what is the current cost of resource group rg-prod", "conv-1", existing_context=context
        )

        assert outcome.primary_intent == "cost_analysis"
        assert outcome.final_response == "$310 this month"
        assert len(cost.calls) == 1
        assert oracle.calls == 1

    @pytest.mark.asyncio
    async def test_failure_requires_follow_up(self):
        """测试执行失败时要求追问"""
        orchestrator, _ = make_orchestrator(
            StubExecutor(ExecutorCategory.DISCOVERY, [{"success": False, "errors": ["ARM throttled"]}]),
        )
        outcome = await orchestrator.process_request("list my resources", "conv-1")

        assert not outcome.success
        assert outcome.requires_follow_up
        assert outcome.follow_up_prompt == FOLLOW_UP_RETRY
        assert outcome.errors == ["ARM throttled"]

    @pytest.mark.asyncio
    async def test_single_failed_task_apologizes(self):
        """测试唯一任务失败且没有输出时回答包含致歉与原因"""
        orchestrator, _ = make_orchestrator(
            StubExecutor(ExecutorCategory.DISCOVERY, [RuntimeError("ARM unreachable")]),
        )
        outcome = await orchestrator.process_request("list my resources", "conv-1")

        assert not outcome.success
        assert outcome.final_response.startswith("Sorry, the Discovery step could not complete")
        assert "ARM unreachable" in outcome.final_response

    @pytest.mark.asyncio
    async def test_warnings_require_follow_up(self):
        """测试带警告的成功结果"""
        orchestrator, _ = make_orchestrator(
            StubExecutor(ExecutorCategory.COST_MANAGEMENT, [{"warnings": ["Budget data is 24h old"]}]),
        )
        outcome = await orchestrator.process_request("show my costs", "conv-1")

        assert outcome.success
        assert outcome.follow_up_prompt == FOLLOW_UP_WARNINGS
        assert outcome.quick_replies[0] == "Show optimization suggestions"

    @pytest.mark.asyncio
    async def test_missing_fields_and_workflow_state(self):
        """测试缺失字段提示与工作流状态写回"""
        onboarding = StubExecutor(ExecutorCategory.ONBOARDING, [{
            "content": "What is the mission name?",
            "metadata": {
                "missing_fields": ["mission_name", "region", "mission_name"],
                "workflow_state": {"onboarding_step": "collect_details"},
            },
        }])
        orchestrator, _ = make_orchestrator(onboarding)

        outcome = await orchestrator.process_request("start onboarding", "conv-1")

        assert outcome.missing_fields == ["mission_name", "region"]
        assert outcome.requires_follow_up
        assert outcome.metadata["onboarding_missing_fields"] == ["mission_name", "region", "mission_name"]
        context = orchestrator.context_store.get("conv-1")
        assert context.get_fact("onboarding_step") == "collect_details"
        assert context.is_awaiting_clarification()

    @pytest.mark.asyncio
    async def test_answer_to_question_skips_fast_path(self):
        """测试回答追问时绕过快速路径"""
        orchestrator, oracle = make_orchestrator(
            StubExecutor(ExecutorCategory.ONBOARDING),
            replies=['{"primaryIntent": "onboarding", "tasks": [{"agentType": "Onboarding"}]}'],
        )
        context = ConversationContext(conversation_id="conv-1").with_message(
            "assistant", "Should I list my resources first?"
        )
        outcome = await orchestrator.process_request("list my resources", "conv-1", existing_context=context)

        assert oracle.calls == 1
        assert outcome.primary_intent == "onboarding"

    @pytest.mark.asyncio
    async def test_collaborative_counts_all_rounds(self):
        """测试协作模式统计所有轮次的调用"""
        orchestrator, _ = make_orchestrator(
            StubExecutor(ExecutorCategory.INFRASTRUCTURE, [{"approved": False, "warnings": ["add NSG"]},
                                                           {"approved": True}]),
            StubExecutor(ExecutorCategory.COMPLIANCE, [{"approved": True}]),
            replies=[COLLABORATIVE_PLAN, "Reviewed design"],
        )
        outcome = await orchestrator.process_request("design a hub and spoke network", "conv-1")

        assert outcome.total_calls == 4
        assert outcome.metadata["collaboration_rounds"] == 2
        assert outcome.success

    @pytest.mark.asyncio
    async def test_request_timeout(self):
        """测试整个请求超时"""
        orchestrator, _ = make_orchestrator(StubExecutor(ExecutorCategory.DISCOVERY, delay=1.0))

        outcome = await orchestrator.process_request("list my resources", "conv-1", timeout=0.05)

        assert not outcome.success
        assert outcome.primary_intent == "timeout"
        assert "0.05" in outcome.final_response
        assert outcome.metadata["error"]["code"] == "E7001"
        assert EventType.REQUEST_FAILED.value in event_types(orchestrator)

    @pytest.mark.asyncio
    async def test_timeout_from_config(self):
        """测试配置中的请求超时"""
        config = CopilotConfig(orchestration=OrchestrationConfig(request_timeout=0.05))
        orchestrator, _ = make_orchestrator(StubExecutor(ExecutorCategory.DISCOVERY, delay=1.0), config=config)

        outcome = await orchestrator.process_request("list my resources", "conv-1")
        assert outcome.primary_intent == "timeout"

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self):
        """测试调用方取消时向上传播"""
        orchestrator, _ = make_orchestrator(StubExecutor(ExecutorCategory.DISCOVERY, delay=5.0))

        task = asyncio.create_task(orchestrator.process_request("list my resources", "conv-1"))
        await asyncio.sleep(0.05)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

    @pytest.mark.asyncio
    async def test_unexpected_error_becomes_outcome(self):
        """测试流程中的意外异常转换为失败结果"""

        class ExplodingValidator(PlanValidator):
            def validate_and_correct(self, plan, message, conversation_id):
                raise RuntimeError("boom")

        orchestrator, _ = make_orchestrator(
            StubExecutor(ExecutorCategory.DISCOVERY), validator=ExplodingValidator(),
        )
        outcome = await orchestrator.process_request("list my resources", "conv-1")

        assert not outcome.success
        assert outcome.primary_intent == "error"
        assert outcome.final_response == "I encountered an error while processing your request: boom"
        assert outcome.metadata["error"]["code"] == "E7000"
        assert orchestrator.get_stats()["failures"] == 1

    @pytest.mark.asyncio
    async def test_unregistered_executor_skipped(self):
        """测试未注册类别被跳过"""
        orchestrator, _ = make_orchestrator(
            StubExecutor(ExecutorCategory.COMPLIANCE),
            replies=[COST_AND_COMPLIANCE_PLAN],
        )
        outcome = await orchestrator.process_request("how much would a premium redis cache cost", "conv-1")

        assert outcome.executors_invoked == [ExecutorCategory.COMPLIANCE]
        assert len(outcome.metadata["skipped_tasks"]) == 1
        assert outcome.success

    @pytest.mark.asyncio
    async def test_concurrent_conversations_isolated(self):
        """测试并发会话互不干扰"""
        orchestrator, _ = make_orchestrator(StubExecutor(ExecutorCategory.DISCOVERY, delay=0.01))

        outcomes = await asyncio.gather(*(
            orchestrator.process_request(f"list my resources in resource group rg-{i}", f"conv-{i}")
            for i in range(5)
        ))

        assert all(o.success for o in outcomes)
        for i in range(5):
            context = orchestrator.context_store.get(f"conv-{i}")
            assert context.get_fact("last_resource_group") == f"rg-{i}"
            assert len(context.history) == 2

    @pytest.mark.asyncio
    async def test_stats_and_cleanup(self):
        """测试统计与清理"""
        orchestrator, _ = make_orchestrator(StubExecutor(ExecutorCategory.DISCOVERY))
        await orchestrator.process_request("list my resources", "conv-1")

        stats = orchestrator.get_stats()
        assert stats["requests"] == 1
        assert stats["executors"] == ["discovery"]
        assert set(stats["caches"]) == {"plan_cache", "context_store"}
        assert stats["caches"]["context_store"]["size"] == 1
        assert orchestrator.cleanup() == {"plan_cache": 0, "context_store": 0}

    @pytest.mark.asyncio
    async def test_outcome_to_dict(self):
        """测试结果序列化"""
        orchestrator, _ = make_orchestrator(StubExecutor(ExecutorCategory.DISCOVERY))
        data = (await orchestrator.process_request("list my resources", "conv-1")).to_dict()

        assert data["executors_invoked"] == ["discovery"]
        assert data["execution_pattern"] == "sequential"
        assert data["conversation_id"] == "conv-1"

    @pytest.mark.asyncio
    async def test_from_config_with_chat_model(self):
        """测试使用聊天模型创建编排器"""
        registry = ExecutorRegistry()
        registry.register(StubExecutor(ExecutorCategory.COST_MANAGEMENT))
        orchestrator = Orchestrator.from_config(
            registry,
            llm=FakeListChatModel(responses=[
                '{"primaryIntent": "cost_analysis", "tasks": [{"agentType": "cost"}]}'
            ]),
        )
        outcome = await orchestrator.process_request("what would a premium redis cache run me", "conv-1")

        assert outcome.primary_intent == "cost_analysis"
        assert outcome.executors_invoked == [ExecutorCategory.COST_MANAGEMENT]


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
