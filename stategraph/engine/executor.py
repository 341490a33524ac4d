"""
Async Run Executor.

The executor runs one invocation of a graph: it invokes nodes, merges their
updates into the run state, asks the router for the next node(s), handles
retries, fan-out, cancellation and timeouts, and publishes step events.
"""

from typing import Any, Awaitable, Callable, Dict, List, Mapping, NamedTuple, Optional
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
import asyncio
import inspect
import uuid
import time
import logging

from stategraph.engine.config import RunConfig
from stategraph.engine.errors import (
    ConfigError,
    ExecutionTimeout,
    FatalError,
    IterationLimitExceeded,
    RunCancelled,
    RunError,
    SchemaViolation,
    SkipNode,
    StateGraphError,
    TransientError,
)
from stategraph.engine.events import EventKind, EventStream, StepEvent
from stategraph.engine.graph import Graph
from stategraph.engine.node import Node, RetryPolicy
from stategraph.engine.state import State, StateStore, merge_state


logger = logging.getLogger(__name__)

StepCallback = Callable[[StepEvent, Dict[str, Any]], Optional[Awaitable[None]]]


class ExecutionStatus(str, Enum):
    """Status of a run."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class RunResult:
    """Result of a run."""
    run_id: str
    graph_name: str
    status: ExecutionStatus
    final_state: Dict[str, Any]
    steps: List[StepEvent] = field(default_factory=list)
    iterations: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    total_duration_ms: Optional[float] = None
    error: Optional[RunError] = None

    @property
    def succeeded(self) -> bool:
        return self.status == ExecutionStatus.COMPLETED

    def raise_for_status(self) -> "RunResult":
        """Raise the run error if the run failed."""
        if self.error is not None:
            raise self.error
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "graph_name": self.graph_name,
            "status": self.status.value,
            "final_state": self.final_state,
            "steps": [step.to_dict() for step in self.steps],
            "iterations": self.iterations,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "total_duration_ms": self.total_duration_ms,
            "error": self.error.to_dict() if self.error else None,
        }


@dataclass
class RunContext:
    """Everything one run owns: state, config, cancel signal and counters."""
    run_id: str
    store: StateStore
    config: RunConfig
    cancel_event: asyncio.Event
    deadline: Optional[float] = None
    iteration: int = 0
    current_node: Optional[str] = None

    @property
    def state(self) -> State:
        return self.store.current

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def remaining(self) -> Optional[float]:
        """Seconds left before the run deadline (None without a run timeout)."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - asyncio.get_running_loop().time())


class _Outcome(NamedTuple):
    node: str
    delta: Optional[Dict[str, Any]]
    attempts: int
    skipped: bool
    started_at: datetime
    duration_ms: float


class Executor:
    """
    Async graph executor for a single run.

    Executes a graph with a given initial state, handling:
    - Sequential node execution
    - Conditional routing and loops with a hard iteration cap
    - Fan-out to concurrent branches with an ordered join
    - Bounded retry of transient node failures
    - Node and run timeouts, cooperative cancellation
    - Step events for streaming observers

    Usage:
        executor = Executor(graph, overrides={"max_iterations": 10})
        result = await executor.run({"question": "..."})
    """

    def __init__(
        self,
        graph: Graph,
        run_id: Optional[str] = None,
        overrides: Optional[Mapping[str, Any]] = None,
        environ: Optional[Mapping[str, str]] = None,
        on_step: Optional[StepCallback] = None,
    ):
        """
        Initialize the executor.

        Args:
            graph: The graph to execute
            run_id: Optional run ID (generated if not provided)
            overrides: Call-site config overrides
            environ: Environment used for config resolution (os.environ by default)
            on_step: Optional callback (sync or async) for each step
        """
        self.graph = graph
        self.run_id = run_id or str(uuid.uuid4())
        self.on_step = on_step

        self._status = ExecutionStatus.PENDING
        self._cancel_event = asyncio.Event()
        self._ctx: Optional[RunContext] = None
        self._steps: List[StepEvent] = []
        self._setup_error: Optional[ConfigError] = None
        self.config: Optional[RunConfig] = None

        try:
            self.config = graph.resolve_config(overrides, environ)
        except ConfigError as e:
            self._setup_error = e

        if self.config is not None:
            self.events = EventStream(
                self.run_id,
                buffer_size=self.config.get("event_buffer_size", 100),
                policy=self.config.get("backpressure", "drop_oldest"),
                block_timeout=self.config.get("event_block_timeout", 5.0),
            )
        else:
            self.events = EventStream(self.run_id)

    @property
    def status(self) -> ExecutionStatus:
        """Get the current run status."""
        return self._status

    @property
    def current_state(self) -> Optional[Dict[str, Any]]:
        """Get the current state data."""
        if self._ctx:
            return self._ctx.state.to_dict()
        return None

    @property
    def current_node(self) -> Optional[str]:
        """Get the node being executed."""
        return self._ctx.current_node if self._ctx else None

    @property
    def iteration(self) -> int:
        return self._ctx.iteration if self._ctx else 0

    def cancel(self) -> None:
        """Request cooperative cancellation of the run."""
        if self._status in (ExecutionStatus.PENDING, ExecutionStatus.RUNNING):
            logger.info(f"Cancellation requested for run {self.run_id}")
            self._cancel_event.set()

    async def run(self, initial_state: Optional[Mapping[str, Any]] = None) -> RunResult:
        """
        Execute the graph with the given initial state.

        Never raises for run failures: they are reported on the result.

        Args:
            initial_state: Initial state data

        Returns:
            RunResult with final state, step events and error (if any)
        """
        start_time = time.time()
        started_at = datetime.now()
        self._status = ExecutionStatus.RUNNING

        try:
            if self._setup_error is not None:
                raise self._setup_error
            errors = self.graph.validate()
            if errors:
                raise ConfigError(f"Graph validation failed: {errors}")
            store = StateStore(initial_state, self.graph.schema, self.run_id)
        except (ConfigError, SchemaViolation) as e:
            self._status = ExecutionStatus.FAILED
            logger.error(f"Run {self.run_id} could not start: {e}")
            await self.events.close()
            return self._result(
                State.from_dict(initial_state).to_dict(), 0, start_time, started_at,
                RunError.from_exception(e, state=dict(initial_state or {})),
            )

        deadline = None
        run_timeout = self.config.get("run_timeout")
        if run_timeout:
            deadline = asyncio.get_running_loop().time() + run_timeout

        ctx = RunContext(
            run_id=self.run_id,
            store=store,
            config=self.config,
            cancel_event=self._cancel_event,
            deadline=deadline,
        )
        self._ctx = ctx
        logger.info(f"Starting run {self.run_id} of graph '{self.graph.name}'")

        error: Optional[RunError] = None
        try:
            await self._loop(ctx)
            self._status = ExecutionStatus.COMPLETED
            logger.info(
                f"Run {self.run_id} completed after {ctx.iteration} iteration(s)"
            )
        except RunCancelled:
            self._status = ExecutionStatus.CANCELLED
            logger.info(f"Run {self.run_id} cancelled at node '{ctx.current_node}'")
            await self._publish(ctx, EventKind.CANCELLED, node=ctx.current_node)
        except StateGraphError as e:
            error = self._fail(ctx, e)
            await self._publish(ctx, EventKind.ERROR, node=error.node, error=str(error))
        except asyncio.CancelledError:
            self._status = ExecutionStatus.CANCELLED
            logger.info(f"Run {self.run_id} task was cancelled")
            await self.events.close()
            raise
        except Exception as e:
            logger.exception(f"Run {self.run_id} failed unexpectedly: {e}")
            error = self._fail(ctx, e)
            await self._publish(ctx, EventKind.ERROR, node=error.node, error=str(error))
        finally:
            store.finalize()

        await self.events.close()
        return self._result(ctx.state.to_dict(), ctx.iteration, start_time, started_at, error)

    # ------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------

    async def _loop(self, ctx: RunContext) -> None:
        router = self.graph.router
        max_iterations = ctx.config.get("max_iterations")
        frontier: List[str] = [self.graph.entry]

        while frontier and ctx.iteration < max_iterations:
            if ctx.cancelled:
                raise RunCancelled()

            if len(frontier) == 1:
                ctx.current_node = frontier[0]
                outcomes = [await self._guard(ctx, self._invoke(ctx, frontier[0], ctx.state))]
            else:
                ctx.current_node = ",".join(frontier)
                logger.info(f"Fan-out to {frontier}")
                outcomes = await self._guard(ctx, self._invoke_branches(ctx, frontier))

            # Cancellation observed before the join discards these updates.
            if ctx.cancelled:
                raise RunCancelled()
            if len(outcomes) > 1:
                self._check_join(ctx, outcomes)
            for outcome in outcomes:
                await self._commit(ctx, outcome)

            if len(frontier) == 1 and self.graph.is_terminal(frontier[0]):
                return

            next_frontier: List[str] = []
            for name in frontier:
                if self.graph.is_terminal(name):
                    continue
                ctx.current_node = name
                for target in router.next(name, ctx.state, ctx.config):
                    if target not in next_frontier:
                        next_frontier.append(target)

            frontier = next_frontier
            ctx.iteration += 1

        if frontier:
            ctx.current_node = frontier[0]
            raise IterationLimitExceeded(max_iterations)

    async def _guard(self, ctx: RunContext, coro: Awaitable[Any]) -> Any:
        """Await coro unless the run is cancelled or its deadline passes first."""
        task = asyncio.ensure_future(coro)
        cancel_wait = asyncio.ensure_future(ctx.cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, cancel_wait},
                timeout=ctx.remaining(),
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            cancel_wait.cancel()

        if task in done:
            return task.result()

        task.cancel()
        if ctx.cancelled:
            raise RunCancelled()
        raise ExecutionTimeout("run", ctx.config.get("run_timeout"), attempts=0)

    async def _invoke(self, ctx: RunContext, name: str, state: State) -> _Outcome:
        """Invoke one node, retrying transient failures per its retry policy."""
        node = self.graph.nodes.get(name)
        policy = node.retry or RetryPolicy.from_config(ctx.config)
        timeout = node.timeout or ctx.config.get("node_timeout")
        started_at = datetime.now()
        node_start = time.time()
        attempt = 0

        while True:
            attempt += 1
            logger.info(f"Executing node: {name} (iteration {ctx.iteration}, attempt {attempt})")
            try:
                if timeout:
                    delta = await asyncio.wait_for(node.execute(state, ctx.config), timeout)
                else:
                    delta = await node.execute(state, ctx.config)
                return _Outcome(name, delta, attempt, False, started_at, (time.time() - node_start) * 1000)
            except SkipNode as e:
                logger.info(f"Node {name} skipped: {e}")
                return _Outcome(name, None, attempt, True, started_at, (time.time() - node_start) * 1000)
            except FatalError as e:
                e.node = e.node or name
                e.attempts = attempt
                logger.error(f"Node {name} failed: {e}")
                raise
            except (TransientError, asyncio.TimeoutError) as e:
                failure: Exception = e
                if not isinstance(e, TransientError):
                    failure = ExecutionTimeout("node", timeout, node=name, attempts=attempt)
                if attempt >= policy.max_attempts:
                    logger.error(f"Node {name} failed after {attempt} attempt(s): {failure}")
                    if isinstance(failure, ExecutionTimeout):
                        raise failure from e
                    raise FatalError(
                        f"Node '{name}' failed after {attempt} attempt(s): {failure}",
                        node=name,
                        attempts=attempt,
                    ) from e
                delay = policy.delay(attempt)
                logger.warning(
                    f"Node {name} attempt {attempt}/{policy.max_attempts} failed: {failure}; "
                    f"retrying in {delay:.2f}s"
                )
                if delay > 0:
                    await asyncio.sleep(delay)

    async def _invoke_branches(self, ctx: RunContext, names: List[str]) -> List[_Outcome]:
        """Run fan-out branches concurrently, each on its own copy of the state."""
        tasks = [
            asyncio.ensure_future(self._invoke(ctx, name, ctx.state.branch_copy()))
            for name in names
        ]
        try:
            await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
            # Read every failure so no task exception goes unretrieved.
            failures = [
                task.exception() for task in tasks
                if task.done() and not task.cancelled() and task.exception() is not None
            ]
            if failures:
                if len(failures) > 1:
                    logger.warning(
                        f"{len(failures)} fan-out branches failed; reporting the first: {failures[0]}"
                    )
                raise failures[0]
            return [task.result() for task in tasks]
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()

    # ------------------------------------------------------------
    # State and events
    # ------------------------------------------------------------

    def _allowed_keys(self, name: str) -> Optional[List[str]]:
        node: Node = self.graph.nodes.get(name)
        return list(node.writes) if node.writes is not None else None

    def _check_join(self, ctx: RunContext, outcomes: List[_Outcome]) -> None:
        """Validate every branch delta against the joined state before any is committed."""
        candidate = ctx.state
        for outcome in outcomes:
            ctx.current_node = outcome.node
            candidate = merge_state(
                candidate,
                outcome.delta,
                ctx.store.schema,
                self._allowed_keys(outcome.node),
                outcome.node,
            )

    async def _commit(self, ctx: RunContext, outcome: _Outcome) -> None:
        ctx.current_node = outcome.node
        ctx.store.commit(
            outcome.node, outcome.delta, ctx.iteration,
            allowed_keys=self._allowed_keys(outcome.node),
        )
        await self._publish(
            ctx,
            EventKind.STEP,
            node=outcome.node,
            delta=dict(outcome.delta or {}),
            attempts=outcome.attempts,
            skipped=outcome.skipped,
            timestamp=outcome.started_at,
            duration_ms=outcome.duration_ms,
        )

    async def _publish(self, ctx: RunContext, kind: EventKind, **fields: Any) -> None:
        event = StepEvent(
            run_id=self.run_id,
            step=self.events.next_step(),
            kind=kind,
            iteration=ctx.iteration,
            **fields,
        )
        if kind == EventKind.STEP:
            self._steps.append(event)
        await self.events.publish(event)

        if self.on_step:
            try:
                result = self.on_step(event, ctx.state.to_dict())
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning(f"Step callback failed: {e}")

    def _fail(self, ctx: RunContext, exc: BaseException) -> RunError:
        self._status = ExecutionStatus.FAILED
        error = RunError.from_exception(
            exc,
            node=getattr(exc, "source", None) or ctx.current_node,
            iteration=ctx.iteration,
            state=ctx.state.to_dict(),
        )
        logger.error(f"Run {self.run_id} failed: {error}")
        return error

    def _result(
        self,
        final_state: Dict[str, Any],
        iterations: int,
        start_time: float,
        started_at: datetime,
        error: Optional[RunError],
    ) -> RunResult:
        return RunResult(
            run_id=self.run_id,
            graph_name=self.graph.name,
            status=self._status,
            final_state=final_state,
            steps=list(self._steps),
            iterations=iterations,
            started_at=started_at,
            completed_at=datetime.now(),
            total_duration_ms=(time.time() - start_time) * 1000,
            error=error,
        )

    def get_execution_summary(self) -> Dict[str, Any]:
        """Get a summary of the current run."""
        return {
            "run_id": self.run_id,
            "graph_name": self.graph.name,
            "status": self._status.value,
            "current_node": self.current_node,
            "current_state": self.current_state,
            "step_count": len(self._steps),
            "iteration": self.iteration,
        }


async def execute_graph(
    graph: Graph,
    initial_state: Optional[Mapping[str, Any]] = None,
    overrides: Optional[Mapping[str, Any]] = None,
    run_id: Optional[str] = None,
    on_step: Optional[StepCallback] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> RunResult:
    """
    Convenience function to execute a graph once.

    Args:
        graph: The graph
        initial_state: Initial state data
        overrides: Call-site config overrides
        run_id: Optional run ID
        on_step: Optional step callback
        environ: Environment used for config resolution

    Returns:
        RunResult
    """
    executor = Executor(graph, run_id=run_id, overrides=overrides, environ=environ, on_step=on_step)
    return await executor.run(initial_state)
