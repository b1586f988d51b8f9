"""
配置模块

提供统一的配置管理:
- 配置模式定义
- 配置加载器
- 配置校验
"""

from .schema import (
    ContextStoreConfig,
    CopilotConfig,
    LLMConfig,
    ObservabilityConfig,
    OrchestrationConfig,
    PlanCacheConfig,
)
from .loader import ConfigCenter, get_config_center, reset_config_center, validate_config

__all__ = [
    # 配置模式
    "ContextStoreConfig",
    "CopilotConfig",
    "LLMConfig",
    "ObservabilityConfig",
    "OrchestrationConfig",
    "PlanCacheConfig",
    # 配置加载器
    "ConfigCenter",
    "get_config_center",
    "reset_config_center",
    "validate_config",
]
