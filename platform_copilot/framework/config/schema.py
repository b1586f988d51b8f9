"""
配置模式定义

使用 dataclass 定义所有配置的结构和默认值
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass
class LLMConfig:
    """LLM 配置（规划 / 合成共用）"""
    provider: str = "dashscope"
    model: str = "qwen-plus"
    temperature: float = 0.2
    max_tokens: int = 2000
    timeout: float = 30.0
    retry_count: int = 2
    retry_delay: float = 1.0
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    extra_params: Dict[str, Any] = field(default_factory=dict)


@dataclass
class OrchestrationConfig:
    """编排层配置"""
    # 规划配置
    fast_path_enabled: bool = True
    history_window: int = 5  # 规划提示词中携带的最近消息数

    # 协作配置
    max_collaboration_rounds: int = 3

    # 执行配置
    max_parallel_tasks: int = 8
    task_timeout: Optional[float] = 120.0  # 单个执行器调用的超时（秒）
    request_timeout: Optional[float] = None  # 整个请求的超时（秒），None 表示不限制


@dataclass
class PlanCacheConfig:
    """计划缓存配置"""
    enabled: bool = True
    max_size: int = 500
    ttl: float = 1800.0  # 秒


@dataclass
class ContextStoreConfig:
    """会话上下文存储配置"""
    max_conversations: int = 1000
    idle_ttl: Optional[float] = 3600.0  # 闲置过期时间（秒）
    max_history: int = 20
    max_prior_results: int = 20
    max_events: int = 200  # 每个会话保留的审计事件数


@dataclass
class ObservabilityConfig:
    """可观测性配置"""
    log_level: str = "INFO"
    log_format: str = "json"
    log_file: Optional[str] = None
    event_history_size: int = 1000


@dataclass
class CopilotConfig:
    """总配置"""
    name: str = "PlatformCopilot"
    version: str = "0.1.0"
    environment: str = "development"  # development | staging | production

    llm: LLMConfig = field(default_factory=LLMConfig)
    orchestration: OrchestrationConfig = field(default_factory=OrchestrationConfig)
    plan_cache: PlanCacheConfig = field(default_factory=PlanCacheConfig)
    context_store: ContextStoreConfig = field(default_factory=ContextStoreConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    # 扩展配置
    extensions: Dict[str, Any] = field(default_factory=dict)
