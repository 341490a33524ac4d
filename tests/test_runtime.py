"""
Tests for event streaming, the execution engine and run storage.
"""

import pytest
import asyncio
import json

from stategraph.__main__ import main
from stategraph.engine.events import BackpressurePolicy, EventKind, EventStream, StepEvent
from stategraph.engine.executor import ExecutionStatus
from stategraph.engine.graph import GraphBuilder
from stategraph.engine.runtime import ExecutionEngine, run_sync
from stategraph.storage.memory import RunStorage


def make_event(step: int) -> StepEvent:
    return StepEvent(run_id="run", step=step, node=f"n{step}")


async def drain(subscription):
    return [event.step async for event in subscription]


def counting_graph(steps: int = 3):
    builder = GraphBuilder("Counter")
    names = [f"s{i}" for i in range(steps)]
    for name in names:
        builder.add_node(name, lambda s: {"count": s.get("count", 0) + 1})
    for source, target in zip(names, names[1:]):
        builder.add_edge(source, target)
    return builder.mark_terminal(names[-1]).build()


# ============================================================
# Event Stream Tests
# ============================================================

class TestEventStream:
    """Tests for EventStream and subscriptions."""

    @pytest.mark.asyncio
    async def test_publish_in_order(self):
        """Test that subscribers see events in publication order."""
        stream = EventStream("run")
        first = stream.subscribe()
        second = stream.subscribe()

        for step in (1, 2, 3):
            await stream.publish(make_event(step))
        await stream.close()

        assert await drain(first) == [1, 2, 3]
        assert await drain(second) == [1, 2, 3]
        assert [e.step for e in stream.history] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_drop_oldest(self):
        """Test that a full buffer drops its oldest event."""
        stream = EventStream("run", buffer_size=2)
        subscription = stream.subscribe()

        for step in (1, 2, 3, 4):
            await stream.publish(make_event(step))
        await stream.close()

        assert await drain(subscription) == [3, 4]
        assert subscription.dropped == 2

    @pytest.mark.asyncio
    async def test_block_times_out(self):
        """Test that 'block' gives up after the timeout and drops."""
        stream = EventStream("run", buffer_size=1, policy=BackpressurePolicy.BLOCK, block_timeout=0.05)
        subscription = stream.subscribe()

        await stream.publish(make_event(1))
        await stream.publish(make_event(2))
        await stream.close()

        assert await drain(subscription) == [2]
        assert subscription.dropped == 1

    @pytest.mark.asyncio
    async def test_block_waits_for_consumer(self):
        """Test that 'block' loses nothing when the consumer keeps up."""
        stream = EventStream("run", buffer_size=1, policy="block", block_timeout=1.0)
        subscription = stream.subscribe()
        consumer = asyncio.create_task(drain(subscription))

        for step in range(1, 6):
            await stream.publish(make_event(step))
        await stream.close()

        assert await asyncio.wait_for(consumer, timeout=2) == [1, 2, 3, 4, 5]
        assert subscription.dropped == 0

    @pytest.mark.asyncio
    async def test_closed_stream(self):
        """Test publishing to and subscribing after a closed stream."""
        stream = EventStream("run")
        await stream.close()

        with pytest.raises(RuntimeError, match="closed"):
            await stream.publish(make_event(1))
        assert await drain(stream.subscribe()) == []

    def test_invalid_buffer_size(self):
        """Test buffer size validation."""
        with pytest.raises(ValueError):
            EventStream("run", buffer_size=0)

    def test_event_to_dict(self):
        """Test event serialization."""
        data = StepEvent(run_id="r", step=1, node="a", delta={"x": 1}).to_dict()

        assert data["kind"] == "step"
        assert data["delta"] == {"x": 1}
        assert isinstance(data["timestamp"], str)


# ============================================================
# Engine Tests
# ============================================================

class TestExecutionEngine:
    """Tests for ExecutionEngine."""

    @pytest.mark.asyncio
    async def test_invoke(self):
        """Test running a graph to completion."""
        engine = ExecutionEngine(environ={})
        result = await engine.invoke(counting_graph(), {}, run_id="run-1")

        assert result.status == ExecutionStatus.COMPLETED
        assert result.final_state == {"count": 3}
        assert engine.active_runs == {}

        stored = await engine.get_run("run-1")
        assert stored.status == "completed"
        assert stored.step_count == 3
        assert stored.current_node == "s2"
        assert stored.finished

    @pytest.mark.asyncio
    async def test_invoke_reports_failures(self):
        """Test that a failed run is stored with its error."""
        def broken(state):
            raise RuntimeError("bug")

        graph = GraphBuilder().add_node("broken", broken).mark_terminal("broken").build()
        engine = ExecutionEngine(environ={})
        result = await engine.invoke(graph, {}, run_id="bad")

        assert result.status == ExecutionStatus.FAILED
        stored = await engine.get_run("bad")
        assert stored.status == "failed"
        assert "bug" in stored.error

    @pytest.mark.asyncio
    async def test_stream(self):
        """Test streaming step events while a run proceeds."""
        engine = ExecutionEngine(environ={})
        handle = engine.stream(counting_graph(), {})

        events = [event async for event in handle.events]
        result = await handle

        assert [e.node for e in events] == ["s0", "s1", "s2"]
        assert [e.step for e in events] == [1, 2, 3]
        assert [e.delta for e in events] == [{"count": 1}, {"count": 2}, {"count": 3}]
        assert result.succeeded
        assert result.steps == events

    @pytest.mark.asyncio
    async def test_stream_reports_errors(self):
        """Test that a failing run ends its stream with an error event."""
        def broken(state):
            raise RuntimeError("bug")

        graph = (
            GraphBuilder()
            .add_node("ok", lambda s: {"ok": True})
            .add_node("broken", broken)
            .add_edge("ok", "broken")
            .mark_terminal("broken")
            .build()
        )
        handle = ExecutionEngine(environ={}).stream(graph, {})

        events = [event async for event in handle.events]
        result = await handle.result

        assert [e.kind for e in events] == [EventKind.STEP, EventKind.ERROR]
        assert events[-1].node == "broken"
        assert result.error.kind == "FatalError"

    @pytest.mark.asyncio
    async def test_cancel_by_id(self):
        """Test cancelling an active run through the engine."""
        started = asyncio.Event()

        async def wait_forever(state):
            started.set()
            await asyncio.sleep(10)

        graph = (
            GraphBuilder()
            .add_node("first", lambda s: {"count": 1})
            .add_node("wait", wait_forever)
            .add_edge("first", "wait")
            .mark_terminal("wait")
            .build()
        )
        engine = ExecutionEngine(environ={})
        handle = engine.stream(graph, {}, run_id="long")
        await asyncio.wait_for(started.wait(), timeout=2)

        assert engine.cancel("long") is True
        result = await asyncio.wait_for(handle.result, timeout=2)

        assert result.status == ExecutionStatus.CANCELLED
        assert result.final_state == {"count": 1}
        assert (await engine.get_run("long")).status == "cancelled"
        assert engine.cancel("long") is False

    @pytest.mark.asyncio
    async def test_stream_cancelled_before_start(self):
        """Test that a stream task cancelled before it runs releases its run."""
        engine = ExecutionEngine(environ={})
        handle = engine.stream(counting_graph(), {}, run_id="r1")
        handle.result.cancel()

        with pytest.raises(asyncio.CancelledError):
            await handle.result
        steps = await asyncio.wait_for(drain(handle.events), timeout=2)

        assert steps == []
        assert "r1" not in engine.active_runs
        assert engine.cancel("r1") is False

        result = await engine.stream(counting_graph(), {}, run_id="r1")
        assert result.succeeded

    @pytest.mark.asyncio
    async def test_duplicate_run_id(self):
        """Test that an active run ID cannot be reused."""
        started = asyncio.Event()

        async def wait_forever(state):
            started.set()
            await asyncio.sleep(10)

        graph = GraphBuilder().add_node("wait", wait_forever).mark_terminal("wait").build()
        engine = ExecutionEngine(environ={})
        handle = engine.stream(graph, {}, run_id="same")
        await asyncio.wait_for(started.wait(), timeout=2)

        with pytest.raises(ValueError, match="already active"):
            await engine.invoke(graph, {}, run_id="same")

        handle.cancel()
        await handle

    def test_run_sync(self):
        """Test running a graph from synchronous code."""
        result = run_sync(counting_graph(2), {"count": 10})
        assert result.final_state == {"count": 12}


# ============================================================
# Storage Tests
# ============================================================

class TestRunStorage:
    """Tests for RunStorage."""

    @pytest.mark.asyncio
    async def test_lifecycle(self):
        """Test create, progress, finish and delete."""
        storage = RunStorage()
        await storage.create("r1", "graph")
        await storage.update_progress("r1", "a", 0)
        await storage.update_progress("r1", "b", 1)

        active = await storage.list_active()
        assert [r.run_id for r in active] == ["r1"]

        stored = await storage.finish("r1", "completed", 2)
        assert stored.step_count == 2
        assert stored.current_node == "b"
        assert stored.to_dict()["status"] == "completed"
        assert await storage.list_active() == []

        assert await storage.delete("r1") is True
        assert await storage.get("r1") is None
        assert len(storage) == 0

    @pytest.mark.asyncio
    async def test_duplicate_active_run(self):
        """Test that only finished runs can be recreated."""
        storage = RunStorage()
        await storage.create("r1", "graph")
        with pytest.raises(ValueError):
            await storage.create("r1", "graph")

        await storage.finish("r1", "failed", 0, "boom")
        await storage.create("r1", "graph")
        assert (await storage.get("r1")).status == "running"

    @pytest.mark.asyncio
    async def test_unknown_run(self):
        """Test updates for runs that were never created."""
        storage = RunStorage()
        assert await storage.update_progress("nope", "a", 0) is None
        assert await storage.finish("nope", "completed", 0) is None
        assert await storage.delete("nope") is False


# ============================================================
# CLI Tests
# ============================================================

class TestCommandLine:
    """Tests for python -m stategraph."""

    def test_main(self, capsys, monkeypatch):
        """Test running the refinement demo from the command line."""
        monkeypatch.setenv("REFINE_MIN_WORDS", "4")
        monkeypatch.setenv("REFINE_QUALITY_THRESHOLD", "0.5")

        exit_code = main(["graph engines", "state", "routing", "--log-level", "WARNING"])

        assert exit_code == 0
        output = json.loads(capsys.readouterr().out)
        assert output["status"] == "completed"
        assert output["final_state"]["answer"] == "Notes on graph engines."


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
