"""
Run invocation API.

ExecutionEngine starts runs of built graphs, either awaiting the result
(invoke) or exposing the event stream while the run proceeds in a task
(stream), and cancels active runs by ID.
"""

from typing import Any, Dict, Mapping, Optional, Set
import asyncio
import inspect
import logging

from stategraph.engine.events import StepEvent, Subscription
from stategraph.engine.executor import Executor, RunResult, StepCallback
from stategraph.engine.graph import Graph
from stategraph.storage.memory import RunStorage, StoredRun


logger = logging.getLogger(__name__)


class RunHandle:
    """
    A run started with ExecutionEngine.stream().

    Usage:
        handle = engine.stream(graph, {"question": "..."})
        async for event in handle.events:
            print(event.step, event.node, event.delta)
        result = await handle.result
    """

    def __init__(self, executor: Executor, events: Subscription, task: "asyncio.Task[RunResult]"):
        self.run_id = executor.run_id
        self.events = events
        self.result = task
        self._executor = executor

    @property
    def status(self):
        return self._executor.status

    def cancel(self) -> None:
        """Request cooperative cancellation of the run."""
        self._executor.cancel()

    def __await__(self):
        return self.result.__await__()


class ExecutionEngine:
    """
    Starts, tracks and cancels runs.

    Graphs are shared read-only; every run gets its own Executor, state
    and event stream.
    """

    def __init__(
        self,
        storage: Optional[RunStorage] = None,
        environ: Optional[Mapping[str, str]] = None,
    ):
        self.storage = storage or RunStorage()
        self.environ = environ
        self._active: Dict[str, Executor] = {}
        self._closing: Set["asyncio.Task[None]"] = set()

    def _executor(
        self,
        graph: Graph,
        overrides: Optional[Mapping[str, Any]],
        run_id: Optional[str],
        on_step: Optional[StepCallback],
    ) -> Executor:
        if run_id is not None and run_id in self._active:
            raise ValueError(f"Run '{run_id}' is already active")

        async def track(event: StepEvent, state: Dict[str, Any]) -> None:
            await self.storage.update_progress(event.run_id, event.node, event.iteration)
            if on_step is not None:
                result = on_step(event, state)
                if inspect.isawaitable(result):
                    await result

        executor = Executor(
            graph,
            run_id=run_id,
            overrides=overrides,
            environ=self.environ,
            on_step=track,
        )
        self._active[executor.run_id] = executor
        return executor

    async def _execute(self, executor: Executor, initial_state: Optional[Mapping[str, Any]]) -> RunResult:
        try:
            await self.storage.create(executor.run_id, executor.graph.name)
            result = await executor.run(initial_state)
        except asyncio.CancelledError:
            await self.storage.finish(executor.run_id, "cancelled", executor.iteration)
            raise
        finally:
            self._release(executor)
        await self.storage.finish(
            result.run_id,
            result.status.value,
            result.iterations,
            str(result.error) if result.error else None,
        )
        return result

    async def invoke(
        self,
        graph: Graph,
        initial_state: Optional[Mapping[str, Any]] = None,
        overrides: Optional[Mapping[str, Any]] = None,
        run_id: Optional[str] = None,
        on_step: Optional[StepCallback] = None,
    ) -> RunResult:
        """
        Run a graph to completion.

        Args:
            graph: The graph to run
            initial_state: Initial state data
            overrides: Call-site config overrides
            run_id: Optional run ID (generated if not provided)
            on_step: Optional callback (sync or async) for each event

        Returns:
            RunResult; failures are reported on result.error, not raised
        """
        executor = self._executor(graph, overrides, run_id, on_step)
        return await self._execute(executor, initial_state)

    def stream(
        self,
        graph: Graph,
        initial_state: Optional[Mapping[str, Any]] = None,
        overrides: Optional[Mapping[str, Any]] = None,
        run_id: Optional[str] = None,
    ) -> RunHandle:
        """
        Start a run in a background task and return its handle.

        Must be called from a running event loop. The handle's event
        subscription is opened before the run starts, so no event is missed.
        """
        executor = self._executor(graph, overrides, run_id, None)
        events = executor.events.subscribe()
        task = asyncio.get_running_loop().create_task(
            self._execute(executor, initial_state),
            name=f"stategraph-run-{executor.run_id}",
        )
        # A task cancelled before it starts never reaches _execute's cleanup.
        task.add_done_callback(lambda t: self._on_stream_done(executor, t))
        return RunHandle(executor, events, task)

    def _on_stream_done(self, executor: Executor, task: "asyncio.Task[RunResult]") -> None:
        self._release(executor)
        if not executor.events.closed:
            # Subscribers of a run that never started would wait forever.
            closing = task.get_loop().create_task(executor.events.close())
            self._closing.add(closing)
            closing.add_done_callback(self._closing.discard)

    def _release(self, executor: Executor) -> None:
        if self._active.get(executor.run_id) is executor:
            del self._active[executor.run_id]
            logger.debug(f"Run {executor.run_id} released")

    def cancel(self, run_id: str) -> bool:
        """
        Request cancellation of an active run.

        Returns:
            True if the run was active, False otherwise
        """
        executor = self._active.get(run_id)
        if executor is None:
            logger.debug(f"Cancel requested for unknown or finished run {run_id}")
            return False
        executor.cancel()
        return True

    async def get_run(self, run_id: str) -> Optional[StoredRun]:
        """Look up the progress or outcome of a run."""
        return await self.storage.get(run_id)

    @property
    def active_runs(self) -> Dict[str, Executor]:
        return dict(self._active)


default_engine = ExecutionEngine()


async def invoke(
    graph: Graph,
    initial_state: Optional[Mapping[str, Any]] = None,
    overrides: Optional[Mapping[str, Any]] = None,
    **kwargs: Any,
) -> RunResult:
    """Run a graph to completion on the default engine."""
    return await default_engine.invoke(graph, initial_state, overrides, **kwargs)


def stream(
    graph: Graph,
    initial_state: Optional[Mapping[str, Any]] = None,
    overrides: Optional[Mapping[str, Any]] = None,
    **kwargs: Any,
) -> RunHandle:
    """Start a streamed run on the default engine."""
    return default_engine.stream(graph, initial_state, overrides, **kwargs)


def cancel(run_id: str) -> bool:
    """Cancel a run started on the default engine."""
    return default_engine.cancel(run_id)


def run_sync(
    graph: Graph,
    initial_state: Optional[Mapping[str, Any]] = None,
    overrides: Optional[Mapping[str, Any]] = None,
) -> RunResult:
    """Run a graph from synchronous code (starts its own event loop)."""
    return asyncio.run(ExecutionEngine().invoke(graph, initial_state, overrides))
