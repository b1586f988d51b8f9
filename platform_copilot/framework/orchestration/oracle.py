"""
文本补全服务（Oracle）

规划与合成都通过 Oracle 协议调用外部大模型。输出一律视为不可信，
调用方负责解析与校验。
"""

import asyncio
import logging
import os
from typing import Optional, Protocol, runtime_checkable

from langchain_community.chat_models import ChatTongyi
from langchain_core.language_models import BaseChatModel
from langchain_core.output_parsers import StrOutputParser
from langchain_core.prompts import ChatPromptTemplate

from ...core.async_utils import retry_async
from ...core.exceptions import ConfigurationException, OracleUnavailableException
from ..config import LLMConfig

logger = logging.getLogger(__name__)

JSON_MODE_INSTRUCTION = (
    "Respond with a single valid JSON object and nothing else. "
    "Do not wrap it in markdown code fences."
)


@runtime_checkable
class Oracle(Protocol):
    """文本补全协议"""

    async def complete(self, prompt: str, *, system: Optional[str] = None,
                       json_mode: bool = False) -> str:
        ...


class ChatModelOracle:
    """
    基于 LangChain 聊天模型的 Oracle

    功能:
    - 任意 BaseChatModel（ChatTongyi、FakeListChatModel……）
    - 单次调用超时
    - 指数退避重试，重试耗尽抛出 OracleUnavailableException

    使用示例:
    ```python
    oracle = ChatModelOracle(create_chat_model(config.llm), timeout=30, retry_count=2)
    text = await oracle.complete("Classify this request ...", json_mode=True)
    ```
    """

    def __init__(
        self,
        llm: BaseChatModel,
        timeout: Optional[float] = 30.0,
        retry_count: int = 2,
        retry_delay: float = 1.0,
    ):
        self._llm = llm
        self._timeout = timeout
        self._retry_count = retry_count
        self._retry_delay = retry_delay
        self._prompt = ChatPromptTemplate.from_messages([
            ("system", "{system}"),
            ("human", "{prompt}"),
        ])
        self._chain = self._prompt | self._llm | StrOutputParser()

    @classmethod
    def from_config(cls, config: LLMConfig, llm: Optional[BaseChatModel] = None) -> "ChatModelOracle":
        return cls(
            llm if llm is not None else create_chat_model(config),
            timeout=config.timeout,
            retry_count=config.retry_count,
            retry_delay=config.retry_delay,
        )

    async def complete(self, prompt: str, *, system: Optional[str] = None,
                       json_mode: bool = False) -> str:
        system_text = system or "You are a helpful cloud platform assistant."
        if json_mode:
            system_text = f"{system_text}\n\n{JSON_MODE_INSTRUCTION}"

        async def invoke() -> str:
            return await asyncio.wait_for(
                self._chain.ainvoke({"system": system_text, "prompt": prompt}),
                timeout=self._timeout,
            )

        try:
            return await retry_async(
                invoke,
                max_retries=self._retry_count,
                delay=self._retry_delay,
            )
        except Exception as e:
            logger.warning(f"Oracle call failed after {self._retry_count + 1} attempts: {e!r}")
            raise OracleUnavailableException(
                f"Text completion service unavailable: {e}",
                attempts=self._retry_count + 1,
                cause=e,
            ) from e


def create_chat_model(config: LLMConfig) -> BaseChatModel:
    """
    根据配置创建聊天模型

    目前支持 dashscope（通义千问）提供方。
    """
    provider = (config.provider or "").lower()
    if provider == "dashscope":
        api_key = config.api_key or os.getenv("DASHSCOPE_API_KEY")
        model_kwargs = {"temperature": config.temperature, "max_tokens": config.max_tokens}
        model_kwargs.update(config.extra_params)
        return ChatTongyi(
            model=config.model,
            dashscope_api_key=api_key,
            model_kwargs=model_kwargs,
        )

    raise ConfigurationException(f"Unsupported LLM provider: {config.provider}", key="llm.provider")
