"""
Node Definition for the StateGraph engine.

Nodes are the building blocks of a graph. Each node is a function that
receives the current state and run config, performs some operation, and
returns a partial update to the state.
"""

from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple
from dataclasses import dataclass, field
from pydantic import BaseModel, ConfigDict, Field
import asyncio
import functools
import inspect

from stategraph.engine.config import RunConfig
from stategraph.engine.errors import FatalError, NodeFailure
from stategraph.engine.state import State


NodeHandler = Callable[..., Any]


class RetryPolicy(BaseModel):
    """
    Bounded retry with exponential backoff for TransientError failures.

    The delay before attempt n+1 is min(backoff * multiplier ** (n - 1), backoff_max).
    """

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=3, ge=1)
    backoff: float = Field(default=0.5, ge=0)
    backoff_max: float = Field(default=8.0, ge=0)
    multiplier: float = Field(default=2.0, ge=1)

    def delay(self, attempt: int) -> float:
        """Seconds to wait after the given (1-based) failed attempt."""
        return min(self.backoff * self.multiplier ** (attempt - 1), self.backoff_max)

    @classmethod
    def from_config(cls, config: RunConfig) -> "RetryPolicy":
        return cls(
            max_attempts=config.get("max_attempts", 3),
            backoff=config.get("retry_backoff", 0.5),
            backoff_max=config.get("retry_backoff_max", 8.0),
        )


def accepts_config(handler: NodeHandler) -> bool:
    """True if the handler can be called as handler(state, config)."""
    try:
        params = list(inspect.signature(handler).parameters.values())
    except (TypeError, ValueError):
        return True
    positional = [
        p for p in params
        if p.kind in (p.POSITIONAL_ONLY, p.POSITIONAL_OR_KEYWORD)
    ]
    has_varargs = any(p.kind == p.VAR_POSITIONAL for p in params)
    return has_varargs or len(positional) >= 2


@dataclass
class Node:
    """
    A node in the graph.

    Attributes:
        name: Unique identifier for the node
        handler: Function that processes state (sync or async)
        reads: Slots the node reads (informational)
        writes: Slots the node may write with their types; None allows any slot
        retry: Node-specific retry policy (overrides the run config)
        timeout: Node-specific attempt timeout in seconds (overrides the run config)
        description: Human-readable description
        metadata: Additional node metadata
    """

    name: str
    handler: NodeHandler
    reads: Tuple[str, ...] = ()
    writes: Optional[Dict[str, Any]] = None
    retry: Optional[RetryPolicy] = None
    timeout: Optional[float] = None
    description: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        """Validate the node after initialization."""
        if not self.name:
            raise ValueError("Node name cannot be empty")
        if not callable(self.handler):
            raise ValueError(f"Handler for node '{self.name}' must be callable")
        if self.timeout is not None and self.timeout <= 0:
            raise ValueError(f"Timeout for node '{self.name}' must be positive")
        self.reads = tuple(self.reads)
        if self.writes is not None and not isinstance(self.writes, dict):
            # A plain list of slot names declares them without a type.
            self.writes = {key: Any for key in self.writes}
        self._pass_config = accepts_config(self.handler)

    @property
    def is_async(self) -> bool:
        """Check if the handler is an async function."""
        return inspect.iscoroutinefunction(self.handler)

    async def execute(self, state: State, config: RunConfig) -> Optional[Dict[str, Any]]:
        """
        Execute the node handler once.

        Handles both sync and async handlers transparently. Sync handlers run
        in the default thread pool so they do not block the event loop.

        Args:
            state: The current state (read-only)
            config: The resolved run config

        Returns:
            The partial update, or None for no change

        Raises:
            NodeFailure: TransientError, FatalError or SkipNode from the handler
            FatalError: Any other exception, wrapped with the node name
        """
        args = (state, config) if self._pass_config else (state,)
        try:
            if self.is_async:
                result = await self.handler(*args)
            else:
                loop = asyncio.get_running_loop()
                result = await loop.run_in_executor(
                    None,
                    functools.partial(self.handler, *args)
                )
                if inspect.isawaitable(result):
                    result = await result
        except NodeFailure:
            raise
        except Exception as e:
            raise FatalError(f"Error in node '{self.name}': {e}", node=self.name) from e

        if result is None or isinstance(result, Mapping):
            return dict(result) if result is not None else None

        raise FatalError(
            f"Node '{self.name}' handler must return a dict or None, "
            f"got {type(result).__name__}",
            node=self.name,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the node to a dictionary."""
        return {
            "name": self.name,
            "description": self.description,
            "handler": getattr(self.handler, "__name__", str(self.handler)),
            "reads": list(self.reads),
            "writes": sorted(self.writes) if self.writes is not None else None,
            "timeout": self.timeout,
            "retry": self.retry.model_dump() if self.retry else None,
            "metadata": self.metadata,
        }


class NodeRegistry:
    """
    Name-keyed registry of the nodes of one graph.

    Usage:
        registry = NodeRegistry()
        registry.register("plan", plan_handler, writes={"plan": list})
        registry.get("plan")
    """

    def __init__(self):
        self._nodes: Dict[str, Node] = {}

    def add(self, node_obj: Node) -> Node:
        if node_obj.name in self._nodes:
            raise ValueError(f"Node '{node_obj.name}' already exists in the graph")
        self._nodes[node_obj.name] = node_obj
        return node_obj

    def register(self, name: Optional[str], handler: NodeHandler, **options: Any) -> Node:
        """Create a node from a handler (and its @node metadata) and register it."""
        return self.add(create_node_from_function(handler, name, **options))

    def get(self, name: str) -> Node:
        try:
            return self._nodes[name]
        except KeyError:
            raise KeyError(f"Node '{name}' not found in graph") from None

    def names(self) -> List[str]:
        return list(self._nodes)

    def items(self):
        return self._nodes.items()

    def __contains__(self, name: object) -> bool:
        return name in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self):
        return iter(self._nodes.values())

    def to_dict(self) -> Dict[str, Dict[str, Any]]:
        return {name: n.to_dict() for name, n in self._nodes.items()}


def node(
    name: Optional[str] = None,
    reads: Iterable[str] = (),
    writes: Optional[Any] = None,
    retry: Optional[RetryPolicy] = None,
    timeout: Optional[float] = None,
    description: str = "",
) -> Callable:
    """
    Decorator attaching node metadata to a handler.

    Usage:
        @node(name="critique", reads=["draft"], writes={"score": float})
        def critique(state, config):
            return {"score": grade(state["draft"])}

        builder.add_node(critique)

    Args:
        name: Node name (defaults to function name)
        reads: Slots the node reads
        writes: Slots the node writes (mapping to types, or a list of names)
        retry: Node-specific retry policy
        timeout: Node-specific attempt timeout
        description: Human-readable description

    Returns:
        Decorated function
    """
    def decorator(func: NodeHandler) -> NodeHandler:
        func._node_metadata = {
            "name": name or func.__name__,
            "reads": tuple(reads),
            "writes": writes,
            "retry": retry,
            "timeout": timeout,
            "description": description or inspect.getdoc(func) or "",
        }
        return func

    return decorator


def create_node_from_function(
    func: NodeHandler,
    name: Optional[str] = None,
    **options: Any,
) -> Node:
    """
    Create a Node instance from a function.

    Explicit options win over metadata set with the @node decorator.

    Args:
        func: The handler function
        name: Node name (defaults to the decorator name or function name)
        **options: reads, writes, retry, timeout, description, metadata

    Returns:
        A Node instance
    """
    meta = dict(getattr(func, "_node_metadata", {}))
    for key, value in options.items():
        if value is not None:
            meta[key] = value
    node_name = name or meta.pop("name", None) or getattr(func, "__name__", "")
    meta.pop("name", None)
    if not meta.get("description"):
        meta["description"] = inspect.getdoc(func) or ""
    return Node(name=node_name, handler=func, **meta)
