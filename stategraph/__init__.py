"""
StateGraph - An in-process, async-first state-graph execution engine.

Build reasoning agents out of nodes that read a shared state, edges that
route between them (including loops back to earlier nodes), and run them
with retries, fan-out, timeouts, cancellation and streamed step events.
"""

__version__ = "1.0.0"

from stategraph.engine import (  # noqa: E402
    END,
    ExecutionEngine,
    ExecutionStatus,
    Graph,
    GraphBuilder,
    RetryPolicy,
    RunResult,
    State,
    StepEvent,
    cancel,
    invoke,
    node,
    run_sync,
    stream,
)
from stategraph.engine.errors import (  # noqa: E402
    FatalError,
    SkipNode,
    TransientError,
)

__all__ = [
    "END",
    "ExecutionEngine",
    "ExecutionStatus",
    "Graph",
    "GraphBuilder",
    "RetryPolicy",
    "RunResult",
    "State",
    "StepEvent",
    "cancel",
    "invoke",
    "node",
    "run_sync",
    "stream",
    "FatalError",
    "SkipNode",
    "TransientError",
]
