"""
统一日志系统
提供结构化日志、上下文绑定、性能追踪等功能

上下文字段保存在 contextvars 中，并发的 asyncio 请求各自持有独立的
conversation_id 等字段，互不串扰。
"""
import os
import sys
import time
import json
import inspect
import logging
import threading
import contextvars
from typing import Any, Dict, Optional
from datetime import datetime, timezone
from functools import wraps
from contextlib import contextmanager


ROOT_LOGGER_NAME = "platform_copilot"

# 日志级别
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = os.getenv("LOG_FORMAT", "json")  # json or text
LOG_FILE = os.getenv("LOG_FILE", None)

_log_context: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar(
    "platform_copilot_log_context", default={}
)


def current_log_context() -> Dict[str, Any]:
    """获取当前执行上下文中绑定的日志字段"""
    return dict(_log_context.get())


@contextmanager
def log_context(**kwargs):
    """临时添加上下文（仅作用于当前 task / 线程的执行上下文）"""
    token = _log_context.set({**_log_context.get(), **kwargs})
    try:
        yield
    finally:
        _log_context.reset(token)


class ContextFilter(logging.Filter):
    """把 contextvars 中的字段合并到日志记录的 extra_fields"""

    def filter(self, record: logging.LogRecord) -> bool:
        fields = current_log_context()
        fields.update(getattr(record, "extra_fields", None) or {})
        record.extra_fields = fields
        return True


class StructuredFormatter(logging.Formatter):
    """结构化日志格式化器"""

    def __init__(self, fmt_type: str = None):
        super().__init__()
        self.fmt_type = (fmt_type or LOG_FORMAT).lower()

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        extra_fields = getattr(record, "extra_fields", None) or {}
        log_data.update(extra_fields)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if self.fmt_type == "json":
            return json.dumps(log_data, ensure_ascii=False, default=str)

        extra = ""
        if extra_fields:
            extra = " | " + " ".join(f"{k}={v}" for k, v in extra_fields.items())
        text = f"[{log_data['timestamp']}] {log_data['level']:8} {log_data['logger']} - {log_data['message']}{extra}"
        if "exception" in log_data:
            text += "\n" + log_data["exception"]
        return text


class ContextLogger(logging.LoggerAdapter):
    """带上下文的日志适配器"""

    def process(self, msg, kwargs):
        extra = dict(self.extra)
        extra.update(current_log_context())

        if "extra" in kwargs:
            extra.update(kwargs.pop("extra"))

        kwargs["extra"] = {"extra_fields": extra}
        return msg, kwargs

    @contextmanager
    def context(self, **kwargs):
        """临时添加上下文"""
        with log_context(**kwargs):
            yield

    def bind(self, **kwargs) -> "ContextLogger":
        """返回绑定了固定字段的新适配器"""
        return ContextLogger(self.logger, {**self.extra, **kwargs})


def setup_logging(
    level: str = None,
    fmt_type: str = None,
    log_file: str = None,
    force: bool = False,
) -> ContextLogger:
    """
    设置日志系统

    为包根日志器挂载结构化处理器，所有 platform_copilot.* 子模块的日志
    都会传播到这里。

    Args:
        level: 日志级别，默认读取 LOG_LEVEL
        fmt_type: json 或 text，默认读取 LOG_FORMAT
        log_file: 可选的日志文件
        force: 已配置时是否重新配置

    Returns:
        配置好的日志器
    """
    logger = logging.getLogger(ROOT_LOGGER_NAME)

    if logger.handlers and not force:
        return ContextLogger(logger, {})

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    level_name = (level or LOG_LEVEL).upper()
    logger.setLevel(getattr(logging, level_name, logging.INFO))

    formatter = StructuredFormatter(fmt_type)
    context_filter = ContextFilter()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(context_filter)
    logger.addHandler(console_handler)

    target_file = log_file or LOG_FILE
    if target_file:
        file_handler = logging.FileHandler(target_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        file_handler.addFilter(context_filter)
        logger.addHandler(file_handler)

    logger.propagate = False

    return ContextLogger(logger, {})


def setup_logging_from_config(config: Any) -> ContextLogger:
    """根据 ObservabilityConfig 配置日志"""
    return setup_logging(
        level=config.log_level,
        fmt_type=config.log_format,
        log_file=config.log_file,
        force=True,
    )


def get_logger(name: str = None) -> ContextLogger:
    """
    获取日志器

    name 可以是模块的 __name__，也可以是短名称（会挂到包根日志器下）
    """
    if not name:
        return ContextLogger(logging.getLogger(ROOT_LOGGER_NAME), {})
    if not name.startswith(ROOT_LOGGER_NAME):
        name = f"{ROOT_LOGGER_NAME}.{name}"
    return ContextLogger(logging.getLogger(name), {})


# === 性能追踪 ===

class PerformanceTracker:
    """性能追踪器"""

    def __init__(self, max_samples: int = 1000):
        self._metrics: Dict[str, list] = {}
        self._max_samples = max_samples
        self._lock = threading.Lock()

    def record(self, name: str, duration: float, metadata: Dict = None):
        """记录性能指标"""
        with self._lock:
            samples = self._metrics.setdefault(name, [])
            samples.append({
                "duration": duration,
                "timestamp": time.time(),
                "metadata": metadata or {},
            })

            if len(samples) > self._max_samples:
                self._metrics[name] = samples[-self._max_samples:]

    def get_stats(self, name: str) -> Dict:
        """获取统计信息"""
        with self._lock:
            if name not in self._metrics or not self._metrics[name]:
                return {}

            durations = sorted(m["duration"] for m in self._metrics[name])
            return {
                "count": len(durations),
                "total": sum(durations),
                "avg": sum(durations) / len(durations),
                "min": durations[0],
                "max": durations[-1],
                "p50": durations[len(durations) // 2],
                "p99": durations[int(len(durations) * 0.99)] if len(durations) >= 100 else durations[-1],
            }

    def get_all_stats(self) -> Dict[str, Dict]:
        """获取所有统计信息"""
        with self._lock:
            names = list(self._metrics)
        return {name: self.get_stats(name) for name in names}

    def reset(self) -> None:
        with self._lock:
            self._metrics.clear()


_perf_tracker: Optional[PerformanceTracker] = None
_perf_lock = threading.Lock()


def get_perf_tracker() -> PerformanceTracker:
    """获取性能追踪器"""
    global _perf_tracker
    if _perf_tracker is None:
        with _perf_lock:
            if _perf_tracker is None:
                _perf_tracker = PerformanceTracker()
    return _perf_tracker


# === 装饰器 ===

def log_execution(name: str = None, log_args: bool = False, log_result: bool = False):
    """
    执行日志装饰器

    记录协程函数的执行时间和结果，失败时记录后原样抛出
    """
    def decorator(func):
        func_name = name or f"{func.__module__}.{func.__qualname__}"
        logger = get_logger(func.__module__)

        @wraps(func)
        async def async_wrapper(*args, **kwargs):
            start_time = time.perf_counter()

            extra = {"function": func_name}
            if log_args:
                extra["args"] = str(args)[:200]
                extra["kwargs"] = str(kwargs)[:200]

            logger.debug(f"Started {func_name}", extra=extra)

            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                extra["duration_ms"] = int((time.perf_counter() - start_time) * 1000)
                extra["error"] = str(e)
                logger.error(f"Failed {func_name}", extra=extra, exc_info=True)
                raise

            duration = time.perf_counter() - start_time
            extra["duration_ms"] = int(duration * 1000)
            if log_result:
                extra["result"] = str(result)[:200]
            logger.debug(f"Finished {func_name}", extra=extra)
            get_perf_tracker().record(func_name, duration)
            return result

        @wraps(func)
        def wrapper(*args, **kwargs):
            start_time = time.perf_counter()
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                logger.error(f"Failed {func_name}", extra={"function": func_name, "error": str(e)},
                             exc_info=True)
                raise
            get_perf_tracker().record(func_name, time.perf_counter() - start_time)
            return result

        if inspect.iscoroutinefunction(func):
            return async_wrapper
        return wrapper

    return decorator


@contextmanager
def log_block(name: str, **extra):
    """
    代码块日志上下文管理器

    用于记录代码块的执行时间，块内可以包含 await
    """
    logger = get_logger()
    start_time = time.perf_counter()

    logger.debug(f"Started {name}", extra=extra)

    try:
        yield
    except BaseException as e:
        duration = time.perf_counter() - start_time
        logger.debug(f"Aborted {name}", extra={**extra, "duration_ms": int(duration * 1000),
                                               "error": repr(e)})
        raise

    duration = time.perf_counter() - start_time
    logger.debug(f"Finished {name}", extra={**extra, "duration_ms": int(duration * 1000)})
    get_perf_tracker().record(name, duration)
