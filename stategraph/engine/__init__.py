"""
Engine package - Core state-graph orchestration components.
"""

from stategraph.engine.state import State, StateStore, merge_state
from stategraph.engine.config import ConfigParam, ConfigResolver, RunConfig
from stategraph.engine.node import Node, NodeRegistry, RetryPolicy, node
from stategraph.engine.router import END, Edge, EdgeType, Router
from stategraph.engine.graph import Graph, GraphBuilder
from stategraph.engine.events import EventKind, EventStream, StepEvent
from stategraph.engine.executor import ExecutionStatus, Executor, RunResult, execute_graph
from stategraph.engine.runtime import ExecutionEngine, RunHandle, cancel, invoke, run_sync, stream

__all__ = [
    "State",
    "StateStore",
    "merge_state",
    "ConfigParam",
    "ConfigResolver",
    "RunConfig",
    "Node",
    "NodeRegistry",
    "RetryPolicy",
    "node",
    "END",
    "Edge",
    "EdgeType",
    "Router",
    "Graph",
    "GraphBuilder",
    "EventKind",
    "EventStream",
    "StepEvent",
    "ExecutionStatus",
    "Executor",
    "RunResult",
    "execute_graph",
    "ExecutionEngine",
    "RunHandle",
    "cancel",
    "invoke",
    "run_sync",
    "stream",
]
