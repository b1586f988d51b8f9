"""
核心基础设施

- cache: LRU/TTL 缓存与循环缓冲区
- exceptions: 统一异常体系
- logging_config: 结构化日志与性能追踪
- async_utils: 异步并发工具
"""
