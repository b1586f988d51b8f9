"""
编排框架

- config: 配置模式与配置中心
- events: 生命周期事件总线
- orchestration: 规划、校验、执行、合成
"""
