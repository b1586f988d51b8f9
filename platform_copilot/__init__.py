"""
Platform Copilot 编排核心

将自然语言请求规划为一个或多个执行器任务，按顺序、并行或协作模式执行，
并把各执行器的输出合成为单一回答。
"""

__version__ = "0.1.0"
