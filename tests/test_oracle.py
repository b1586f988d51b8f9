"""
文本补全服务单元测试
使用 LangChain 的 FakeListChatModel 代替真实模型
"""
import pytest
import os
import sys
import asyncio

# 添加项目路径
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from langchain_core.language_models import FakeListChatModel

from platform_copilot.core.exceptions import ConfigurationException, OracleUnavailableException
from platform_copilot.framework.config import LLMConfig
from platform_copilot.framework.orchestration import ChatModelOracle, Oracle, create_chat_model


class FlakyChatModel(FakeListChatModel):
    """前 failures 次调用抛出异常的聊天模型"""
    failures: int = 0
    attempts: int = 0

    async def _agenerate(self, *args, **kwargs):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise ConnectionError("upstream reset")
        return await super()._agenerate(*args, **kwargs)


class SlowChatModel(FakeListChatModel):
    """响应很慢的聊天模型"""

    async def _agenerate(self, *args, **kwargs):
        await asyncio.sleep(1.0)
        return await super()._agenerate(*args, **kwargs)


class TestChatModelOracle:
    """测试 ChatModelOracle 类"""

    @pytest.mark.asyncio
    async def test_complete(self):
        """测试正常补全"""
        oracle = ChatModelOracle(FakeListChatModel(responses=["hello"]))
        assert await oracle.complete("hi") == "hello"
        assert isinstance(oracle, Oracle)

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self):
        """测试重试后成功"""
        llm = FlakyChatModel(responses=["recovered"], failures=1)
        oracle = ChatModelOracle(llm, retry_count=2, retry_delay=0.01)

        assert await oracle.complete("hi", json_mode=True) == "recovered"
        assert llm.attempts == 2

    @pytest.mark.asyncio
    async def test_retries_exhausted(self):
        """测试重试耗尽"""
        llm = FlakyChatModel(responses=["never"], failures=10)
        oracle = ChatModelOracle(llm, retry_count=1, retry_delay=0.01)

        with pytest.raises(OracleUnavailableException) as exc_info:
            await oracle.complete("hi")
        assert exc_info.value.details["attempts"] == 2
        assert llm.attempts == 2

    @pytest.mark.asyncio
    async def test_timeout(self):
        """测试单次调用超时"""
        oracle = ChatModelOracle(SlowChatModel(responses=["late"]), timeout=0.05, retry_count=0)
        with pytest.raises(OracleUnavailableException):
            await oracle.complete("hi")

    @pytest.mark.asyncio
    async def test_cancellation_not_retried(self):
        """测试取消不会被重试吞掉"""
        llm = SlowChatModel(responses=["late"])
        oracle = ChatModelOracle(llm, timeout=5.0, retry_count=3, retry_delay=0.01)

        task = asyncio.create_task(oracle.complete("hi"))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    def test_from_config(self):
        """测试从配置创建"""
        config = LLMConfig(timeout=12.0, retry_count=4, retry_delay=0.5)
        oracle = ChatModelOracle.from_config(config, llm=FakeListChatModel(responses=["x"]))
        assert oracle._timeout == 12.0
        assert oracle._retry_count == 4


class TestCreateChatModel:
    """测试聊天模型工厂"""

    def test_unsupported_provider(self):
        """测试不支持的提供方"""
        with pytest.raises(ConfigurationException) as exc_info:
            create_chat_model(LLMConfig(provider="acme"))
        assert exc_info.value.details["key"] == "llm.provider"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
