"""
统一异常处理框架
定义编排核心使用的所有自定义异常类
"""
from typing import Any, Dict
from enum import Enum


class ErrorCode(str, Enum):
    """错误代码枚举"""
    # 通用错误 (1xxx)
    UNKNOWN_ERROR = "E1000"
    VALIDATION_ERROR = "E1001"
    CONFIGURATION_ERROR = "E1002"
    TIMEOUT_ERROR = "E1003"

    # 会话上下文错误 (2xxx)
    CONTEXT_ERROR = "E2000"
    CONTEXT_STORE_ERROR = "E2001"

    # 规划错误 (3xxx)
    PLAN_ERROR = "E3000"
    EMPTY_PLAN = "E3001"

    # Oracle 错误 (4xxx)
    ORACLE_ERROR = "E4000"
    ORACLE_UNAVAILABLE = "E4001"
    ORACLE_MALFORMED_OUTPUT = "E4002"

    # 执行器错误 (5xxx)
    EXECUTOR_ERROR = "E5000"
    EXECUTOR_NOT_REGISTERED = "E5001"
    EXECUTOR_TIMEOUT = "E5002"
    EXECUTOR_FAILURE = "E5003"

    # 合成错误 (6xxx)
    SYNTHESIS_ERROR = "E6000"

    # 编排错误 (7xxx)
    ORCHESTRATION_ERROR = "E7000"
    REQUEST_TIMEOUT = "E7001"


class CopilotException(Exception):
    """
    Platform Copilot 基础异常类

    所有自定义异常都应继承此类
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.UNKNOWN_ERROR,
        details: Dict[str, Any] = None,
        cause: Exception = None
    ):
        """
        初始化异常

        Args:
            message: 错误消息
            code: 错误代码
            details: 额外的错误详情
            cause: 原始异常（如果有）
        """
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}
        self.cause = cause

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典格式"""
        result = {
            "error": True,
            "code": self.code.value,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        if self.cause:
            result["cause"] = str(self.cause)
        return result

    def __str__(self) -> str:
        return f"[{self.code.value}] {self.message}"

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code.value}, message={self.message!r})"


class ConfigurationException(CopilotException):
    """配置异常"""

    def __init__(self, message: str, key: str = None, **kwargs):
        details = kwargs.pop("details", {})
        if key:
            details["key"] = key
        super().__init__(message, ErrorCode.CONFIGURATION_ERROR, details=details, **kwargs)


# === 会话上下文异常 ===

class ContextStoreException(CopilotException):
    """上下文存储异常"""

    def __init__(self, message: str, conversation_id: str = None, **kwargs):
        details = kwargs.pop("details", {})
        if conversation_id:
            details["conversation_id"] = conversation_id
        super().__init__(message, ErrorCode.CONTEXT_STORE_ERROR, details=details, **kwargs)


# === 规划异常 ===

class PlanException(CopilotException):
    """规划异常基类"""

    def __init__(self, message: str, code: ErrorCode = ErrorCode.PLAN_ERROR, **kwargs):
        super().__init__(message, code, **kwargs)


class EmptyPlanException(PlanException):
    """计划不包含任何任务"""

    def __init__(self, message: str = "A plan must contain at least one task", **kwargs):
        super().__init__(message, ErrorCode.EMPTY_PLAN, **kwargs)


# === Oracle 异常 ===

class OracleException(CopilotException):
    """文本补全服务异常基类"""

    def __init__(self, message: str, code: ErrorCode = ErrorCode.ORACLE_ERROR, **kwargs):
        super().__init__(message, code, **kwargs)


class OracleUnavailableException(OracleException):
    """文本补全服务不可用（超时、网络、重试耗尽）"""

    def __init__(self, message: str, attempts: int = None, **kwargs):
        details = kwargs.pop("details", {})
        if attempts is not None:
            details["attempts"] = attempts
        super().__init__(message, ErrorCode.ORACLE_UNAVAILABLE, details=details, **kwargs)


class OracleMalformedOutputException(OracleException):
    """文本补全服务返回了无法解析的内容"""

    def __init__(self, message: str, raw_output: str = None, **kwargs):
        details = kwargs.pop("details", {})
        if raw_output is not None:
            details["raw_output"] = raw_output[:200]  # 截断长输出
        super().__init__(message, ErrorCode.ORACLE_MALFORMED_OUTPUT, details=details, **kwargs)


# === 执行器异常 ===

class ExecutorException(CopilotException):
    """执行器异常基类"""

    def __init__(self, message: str, code: ErrorCode = ErrorCode.EXECUTOR_ERROR,
                 category: str = None, **kwargs):
        details = kwargs.pop("details", {})
        if category:
            details["category"] = category
        super().__init__(message, code, details=details, **kwargs)


class ExecutorNotRegisteredException(ExecutorException):
    """执行器未注册"""

    def __init__(self, category: str, **kwargs):
        super().__init__(
            f"No executor registered for category '{category}'",
            ErrorCode.EXECUTOR_NOT_REGISTERED,
            category=category,
            **kwargs
        )


class ExecutorTimeoutException(ExecutorException):
    """执行器超时"""

    def __init__(self, category: str, timeout: float, **kwargs):
        details = kwargs.pop("details", {})
        details["timeout_seconds"] = timeout
        super().__init__(
            f"Executor '{category}' timed out after {timeout}s",
            ErrorCode.EXECUTOR_TIMEOUT,
            category=category,
            details=details,
            **kwargs
        )


class ExecutorFailureException(ExecutorException):
    """执行器内部失败"""

    def __init__(self, message: str, category: str = None, **kwargs):
        super().__init__(message, ErrorCode.EXECUTOR_FAILURE, category=category, **kwargs)


# === 合成异常 ===

class SynthesisException(CopilotException):
    """响应合成异常"""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, ErrorCode.SYNTHESIS_ERROR, **kwargs)


# === 编排异常 ===

class OrchestrationException(CopilotException):
    """编排异常"""

    def __init__(self, message: str, code: ErrorCode = ErrorCode.ORCHESTRATION_ERROR, **kwargs):
        super().__init__(message, code, **kwargs)


class RequestTimeoutException(OrchestrationException):
    """整个请求超出时限"""

    def __init__(self, timeout: float, **kwargs):
        details = kwargs.pop("details", {})
        details["timeout_seconds"] = timeout
        super().__init__(
            f"Request timed out after {timeout}s",
            ErrorCode.REQUEST_TIMEOUT,
            details=details,
            **kwargs
        )


# === 异常处理工具函数 ===

def wrap_exception(exc: Exception, wrapper_class: type = CopilotException,
                   message: str = None) -> CopilotException:
    """
    将普通异常包装为 Copilot 异常

    Args:
        exc: 原始异常
        wrapper_class: 包装类
        message: 自定义消息（可选）

    Returns:
        CopilotException 实例
    """
    if isinstance(exc, CopilotException):
        return exc

    return wrapper_class(
        message=message or str(exc),
        cause=exc
    )
