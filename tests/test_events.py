"""
事件总线单元测试
"""
import pytest
import os
import sys
import asyncio

# 添加项目路径
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from platform_copilot.framework.events import Event, EventBus, EventFilter, EventPriority, EventType


class TestEvent:
    """测试事件数据结构"""

    def test_type_normalized_to_string(self):
        """测试事件类型转换为字符串"""
        event = Event(type=EventType.PLAN_CREATED, payload={"a": 1})
        assert event.type == "plan.created"
        assert event.to_dict()["priority"] == EventPriority.NORMAL.value

    def test_filter(self):
        """测试事件过滤器"""
        event = Event(type=EventType.TASK_FAILED, source="execution_engine", priority=EventPriority.HIGH)
        assert EventFilter(types=[EventType.TASK_FAILED]).matches(event)
        assert not EventFilter(types=["task.completed"]).matches(event)
        assert not EventFilter(sources=["orchestrator"]).matches(event)
        assert not EventFilter(min_priority=EventPriority.CRITICAL).matches(event)
        assert not EventFilter(trace_id="other").matches(event)


class TestEventBus:
    """测试 EventBus 类"""

    @pytest.fixture
    def bus(self):
        """创建事件总线"""
        return EventBus(max_history=5, handler_timeout=0.1)

    @pytest.mark.asyncio
    async def test_sync_and_async_handlers(self, bus):
        """测试同步与异步处理器"""
        received = []

        @bus.on(EventType.TASK_COMPLETED)
        async def async_handler(event):
            received.append(("async", event.payload["task_id"]))
            return "a"

        bus.subscribe(EventType.TASK_COMPLETED, lambda e: received.append(("sync", e.payload["task_id"])))

        results = await bus.emit(Event(type=EventType.TASK_COMPLETED, payload={"task_id": "t1"}))

        assert ("async", "t1") in received
        assert ("sync", "t1") in received
        assert "a" in results

    @pytest.mark.asyncio
    async def test_wildcard_and_priority(self, bus):
        """测试通配订阅与处理器优先级"""
        order = []
        bus.subscribe("*", lambda e: order.append("wildcard"))
        bus.subscribe(EventType.PLAN_CREATED, lambda e: order.append("low"), priority=0)
        bus.subscribe(EventType.PLAN_CREATED, lambda e: order.append("high"), priority=10)

        await bus.emit(Event(type=EventType.PLAN_CREATED))
        assert order == ["high", "low", "wildcard"]

    @pytest.mark.asyncio
    async def test_once(self, bus):
        """测试只触发一次"""
        calls = []
        bus.subscribe(EventType.PLAN_CREATED, lambda e: calls.append(1), once=True)
        await bus.emit(Event(type=EventType.PLAN_CREATED))
        await bus.emit(Event(type=EventType.PLAN_CREATED))
        assert calls == [1]

    @pytest.mark.asyncio
    async def test_unsubscribe(self, bus):
        """测试取消订阅"""
        calls = []
        sub_id = bus.subscribe(EventType.PLAN_CREATED, lambda e: calls.append(1))
        assert bus.unsubscribe(sub_id) is True
        assert bus.unsubscribe(sub_id) is False
        assert bus.unsubscribe("garbage") is False
        await bus.emit(Event(type=EventType.PLAN_CREATED))
        assert calls == []

    @pytest.mark.asyncio
    async def test_handler_errors_dead_lettered(self, bus):
        """测试处理器异常与超时进入死信队列"""
        def broken(event):
            raise ValueError("handler bug")

        async def slow(event):
            await asyncio.sleep(1)

        bus.subscribe(EventType.TASK_FAILED, broken)
        bus.subscribe(EventType.TASK_FAILED, slow)

        await bus.emit(Event(type=EventType.TASK_FAILED))

        reasons = [reason for _, reason in bus.get_dead_letters()]
        assert reasons == ["handler bug", "timeout"]
        assert bus.clear_dead_letters() == 2
        assert bus.get_dead_letters() == []

    @pytest.mark.asyncio
    async def test_history_bounded_and_filtered(self, bus):
        """测试历史记录上限与过滤"""
        for i in range(4):
            await bus.emit(Event(type=EventType.TASK_STARTED, payload={"i": i}))
        for i in range(3):
            await bus.emit(Event(type=EventType.TASK_COMPLETED, payload={"i": i}))

        assert len(bus.get_history()) == 5
        completed = bus.get_history(filter=EventFilter(types=[EventType.TASK_COMPLETED]))
        assert [e.payload["i"] for e in completed] == [0, 1, 2]
        assert len(bus.get_history(limit=2)) == 2

    @pytest.mark.asyncio
    async def test_stopped_bus_ignores_events(self, bus):
        """测试停止后不再分发"""
        calls = []
        bus.subscribe(EventType.PLAN_CREATED, lambda e: calls.append(1))
        bus.stop()
        assert await bus.emit(Event(type=EventType.PLAN_CREATED)) == []
        bus.start()
        await bus.emit(Event(type=EventType.PLAN_CREATED))
        assert calls == [1]
        assert bus.get_stats()["history_size"] == 1


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
