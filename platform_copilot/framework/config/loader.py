"""
配置加载器

支持多种配置源（后者覆盖前者）:
- YAML / JSON 文件
- .env 文件（python-dotenv）
- 环境变量
"""

import json
import logging
import os
import threading
from dataclasses import asdict, fields, is_dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Type, TypeVar

import yaml
from dotenv import load_dotenv

from ...core.exceptions import ConfigurationException
from .schema import (
    ContextStoreConfig,
    CopilotConfig,
    LLMConfig,
    ObservabilityConfig,
    OrchestrationConfig,
    PlanCacheConfig,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

ROOT_CONFIG_NAME = "copilot"


class ConfigCenter:
    """
    配置中心

    功能:
    - 多源配置加载（文件、.env、环境变量）
    - 配置缓存
    - 配置校验
    - 配置合并

    使用示例:
    ```python
    config_center = ConfigCenter("config")

    # 加载总配置（config/copilot.yaml + COPILOT_* 环境变量）
    config = config_center.load_copilot_config()

    # 环境变量嵌套键使用双下划线
    # COPILOT_ORCHESTRATION__MAX_COLLABORATION_ROUNDS=2
    ```
    """

    # 配置类型映射
    CONFIG_TYPES: Dict[str, Type] = {
        ROOT_CONFIG_NAME: CopilotConfig,
        "llm": LLMConfig,
        "orchestration": OrchestrationConfig,
        "plan_cache": PlanCacheConfig,
        "context_store": ContextStoreConfig,
        "observability": ObservabilityConfig,
    }

    def __init__(
        self,
        config_path: str = "config",
        env_prefix: str = "COPILOT_",
        env_file: Optional[str] = None
    ):
        self._config_path = Path(config_path)
        self._env_prefix = env_prefix
        self._cache: Dict[str, Any] = {}
        self._watchers: List[Callable] = []
        self._lock = threading.RLock()

        # .env 不覆盖已存在的环境变量
        if env_file:
            load_dotenv(env_file, override=False)
        else:
            load_dotenv(override=False)

    def load(
        self,
        name: str,
        config_type: Optional[Type[T]] = None,
        default: Optional[T] = None
    ) -> T:
        """
        加载配置

        Args:
            name: 配置名称
            config_type: 配置类型
            default: 默认值（没有任何配置源时返回）

        Returns:
            配置对象
        """
        config_type = config_type or self.CONFIG_TYPES.get(name)
        cache_key = f"{name}:{config_type.__name__ if config_type else 'dict'}"
        with self._lock:
            if cache_key in self._cache:
                return self._cache[cache_key]

        data = self._load_from_sources(name)

        if data is None:
            if default is not None:
                return default
            if config_type is None:
                raise ConfigurationException(f"Config '{name}' not found", key=name)
            data = {}

        config = self._dict_to_dataclass(data, config_type) if config_type else data
        if isinstance(config, CopilotConfig):
            validate_config(config)

        with self._lock:
            self._cache[cache_key] = config

        return config

    def load_copilot_config(self) -> CopilotConfig:
        """加载总配置"""
        return self.load(ROOT_CONFIG_NAME, CopilotConfig)

    def _load_from_sources(self, name: str) -> Optional[Dict[str, Any]]:
        """从多个源加载配置"""
        data: Dict[str, Any] = {}

        file_data = self._load_from_file(name)
        if file_data:
            data = self._deep_merge(data, file_data)

        env_data = self._load_from_env(name)
        if env_data:
            data = self._deep_merge(data, env_data)

        return data if data else None

    def _load_from_file(self, name: str) -> Optional[Dict[str, Any]]:
        """从文件加载配置"""
        for ext, loader in [
            (".yaml", self._load_yaml),
            (".yml", self._load_yaml),
            (".json", self._load_json),
        ]:
            path = self._config_path / f"{name}{ext}"
            if path.exists():
                try:
                    data = loader(path)
                except (OSError, ValueError, yaml.YAMLError) as e:
                    raise ConfigurationException(f"Failed to load config from {path}", key=name, cause=e)
                if not isinstance(data, dict):
                    raise ConfigurationException(f"Config file {path} must contain a mapping", key=name)
                logger.debug(f"Loaded config '{name}' from {path}")
                return data

        return None

    def _load_yaml(self, path: Path) -> Dict[str, Any]:
        with open(path, "r", encoding="utf-8") as f:
            return yaml.safe_load(f) or {}

    def _load_json(self, path: Path) -> Dict[str, Any]:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)

    def _env_prefix_for(self, name: str) -> str:
        if name == ROOT_CONFIG_NAME:
            return self._env_prefix
        return f"{self._env_prefix}{name.upper().replace('/', '_')}_"

    def _load_from_env(self, name: str) -> Dict[str, Any]:
        """从环境变量加载配置"""
        prefix = self._env_prefix_for(name)
        data: Dict[str, Any] = {}

        for key, value in os.environ.items():
            if key.startswith(prefix):
                config_key = key[len(prefix):].lower()
                # 嵌套键用双下划线分隔
                keys = config_key.split("__")
                self._set_nested(data, keys, self._parse_env_value(value))

        return data

    def _parse_env_value(self, value: str) -> Any:
        """解析环境变量值"""
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            pass

        if value.lower() in ("true", "yes", "on"):
            return True
        if value.lower() in ("false", "no", "off"):
            return False

        return value

    def _set_nested(self, data: Dict, keys: List[str], value: Any) -> None:
        """设置嵌套字典值"""
        for key in keys[:-1]:
            data = data.setdefault(key, {})
        data[keys[-1]] = value

    def _deep_merge(self, base: Dict, override: Dict) -> Dict:
        """深度合并字典"""
        result = base.copy()
        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value
        return result

    def _dict_to_dataclass(self, data: Dict[str, Any], cls: Type[T]) -> T:
        """将字典转换为 dataclass，未知字段忽略并记录"""
        if not is_dataclass(cls):
            return data

        field_types = {f.name: f.type for f in fields(cls)}
        unknown = set(data) - set(field_types)
        if unknown:
            logger.warning(f"Ignoring unknown config keys for {cls.__name__}: {sorted(unknown)}")

        kwargs = {}
        for field_name, field_type in field_types.items():
            if field_name not in data:
                continue
            value = data[field_name]
            if is_dataclass(field_type):
                if not isinstance(value, dict):
                    raise ConfigurationException(
                        f"Config section '{field_name}' must be a mapping", key=field_name
                    )
                value = self._dict_to_dataclass(value, field_type)
            kwargs[field_name] = value

        return cls(**kwargs)

    def save(self, name: str, config: Any, format: str = "yaml") -> Path:
        """保存配置到文件"""
        if is_dataclass(config):
            data = asdict(config)
        elif isinstance(config, dict):
            data = config
        else:
            raise ConfigurationException(f"Cannot save config of type {type(config)}", key=name)

        path = self._config_path / f"{name}.{format}"
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, "w", encoding="utf-8") as f:
            if format == "json":
                json.dump(data, f, indent=2, ensure_ascii=False)
            else:
                yaml.safe_dump(data, f, default_flow_style=False, allow_unicode=True)

        self.invalidate(name)
        return path

    def invalidate(self, name: Optional[str] = None) -> None:
        """使缓存失效"""
        with self._lock:
            if name:
                for key in [k for k in self._cache if k.startswith(f"{name}:")]:
                    del self._cache[key]
            else:
                self._cache.clear()

    def watch(self, callback: Callable) -> None:
        """监听配置重新加载"""
        self._watchers.append(callback)

    def reload(self) -> None:
        """重新加载所有配置"""
        self.invalidate()
        for watcher in self._watchers:
            try:
                watcher()
            except Exception as e:
                logger.error(f"Config watcher error: {e}")


def validate_config(config: CopilotConfig) -> None:
    """校验数值型配置项的取值范围"""
    checks = [
        ("orchestration.max_collaboration_rounds", config.orchestration.max_collaboration_rounds, 1),
        ("orchestration.max_parallel_tasks", config.orchestration.max_parallel_tasks, 1),
        ("orchestration.history_window", config.orchestration.history_window, 0),
        ("plan_cache.max_size", config.plan_cache.max_size, 1),
        ("context_store.max_conversations", config.context_store.max_conversations, 1),
        ("context_store.max_history", config.context_store.max_history, 1),
        ("context_store.max_prior_results", config.context_store.max_prior_results, 1),
        ("llm.retry_count", config.llm.retry_count, 0),
    ]
    for key, value, minimum in checks:
        if not isinstance(value, int) or isinstance(value, bool) or value < minimum:
            raise ConfigurationException(f"'{key}' must be an integer >= {minimum}, got {value!r}", key=key)

    for key, value in [
        ("orchestration.task_timeout", config.orchestration.task_timeout),
        ("orchestration.request_timeout", config.orchestration.request_timeout),
    ]:
        if value is not None and (not isinstance(value, (int, float)) or value <= 0):
            raise ConfigurationException(f"'{key}' must be a positive number or null, got {value!r}", key=key)


# 全局配置中心实例
_global_config_center: Optional[ConfigCenter] = None
_config_lock = threading.Lock()


def get_config_center(config_path: str = "config") -> ConfigCenter:
    """获取全局配置中心实例"""
    global _global_config_center
    if _global_config_center is None:
        with _config_lock:
            if _global_config_center is None:
                _global_config_center = ConfigCenter(config_path)
    return _global_config_center


def reset_config_center() -> None:
    """重置全局配置中心（主要用于测试）"""
    global _global_config_center
    with _config_lock:
        _global_config_center = None
