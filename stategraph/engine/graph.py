"""
Graph Definition for the StateGraph engine.

GraphBuilder collects nodes, edges, the entry node, terminal nodes and
config parameters. build() validates everything and returns an immutable
Graph that can be shared by any number of concurrent runs.
"""

from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple, Union
from dataclasses import dataclass, field
from types import MappingProxyType
import logging
import uuid

from stategraph.engine.config import ConfigParam, ConfigResolver, RunConfig, builtin_params
from stategraph.engine.errors import AmbiguousEdge, GraphBuildError
from stategraph.engine.node import NodeHandler, NodeRegistry, RetryPolicy
from stategraph.engine.router import END, Edge, EdgeType, Predicate, Router
from stategraph.engine.state import StateSchema, is_checkable_slot_type


logger = logging.getLogger(__name__)

Targets = Union[str, Sequence[str]]


def _as_targets(target: Targets) -> Tuple[str, ...]:
    if isinstance(target, str):
        return (target,)
    targets = tuple(target)
    if not targets:
        raise ValueError("An edge needs at least one target")
    return targets


@dataclass(frozen=True)
class Graph:
    """
    A validated, read-only workflow graph.

    Attributes:
        name: Human-readable name
        nodes: Registry of node name -> Node
        edges: Outgoing edges per source node, in declaration order
        entry: Name of the first node to execute
        terminals: Nodes after which the run completes
        schema: Declared slot types
        config: Resolver for the graph's run parameters
        graph_id: Unique identifier for this graph
    """

    name: str
    nodes: NodeRegistry
    edges: Mapping[str, Tuple[Edge, ...]]
    entry: str
    terminals: frozenset
    schema: Mapping[str, Any]
    config: ConfigResolver
    graph_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    description: str = ""
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @property
    def router(self) -> Router:
        return Router(self.edges)

    def is_terminal(self, name: str) -> bool:
        return name in self.terminals

    def resolve_config(
        self,
        overrides: Optional[Mapping[str, Any]] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> RunConfig:
        """Resolve the run config for one run of this graph."""
        return self.config.resolve(overrides, environ)

    def validate(self) -> List[str]:
        """Re-check the graph invariants; returns a list of problems."""
        return _validate(self.nodes, self.edges, self.entry, set(self.terminals))

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the graph to a dictionary."""
        return {
            "graph_id": self.graph_id,
            "name": self.name,
            "description": self.description,
            "nodes": self.nodes.to_dict(),
            "edges": [e.to_dict() for edges in self.edges.values() for e in edges],
            "entry": self.entry,
            "terminals": sorted(self.terminals),
            "config": self.config.describe(),
            "metadata": dict(self.metadata),
        }

    def to_mermaid(self) -> str:
        """Generate a Mermaid diagram of the graph."""
        lines = ["graph TD"]

        for name in self.nodes.names():
            label = name.replace("_", " ").title()
            if name == self.entry:
                lines.append(f'    {name}["{label} (entry)"]')
            elif name in self.terminals:
                lines.append(f'    {name}(["{label}"])')
            else:
                lines.append(f'    {name}["{label}"]')

        uses_end = any(
            END in e.targets for edges in self.edges.values() for e in edges
        )
        if uses_end:
            lines.append(f'    {END}(("END"))')

        for edges in self.edges.values():
            for edge in edges:
                for target in edge.targets:
                    if edge.edge_type == EdgeType.DIRECT:
                        lines.append(f"    {edge.source} --> {target}")
                    else:
                        lines.append(f"    {edge.source} -->|{edge.label}| {target}")

        return "\n".join(lines)

    def __repr__(self) -> str:
        return (
            f"Graph(name='{self.name}', nodes={self.nodes.names()}, "
            f"entry='{self.entry}')"
        )


class GraphBuilder:
    """
    Mutable builder for Graph.

    Methods return the builder so calls can be chained:

        graph = (
            GraphBuilder("research")
            .add_node("plan", plan)
            .add_node("search", search)
            .add_node("answer", answer)
            .add_edge("plan", "search")
            .add_conditional_edge("search", needs_more, "search")
            .add_default_edge("search", "answer")
            .mark_terminal("answer")
            .build()
        )
    """

    def __init__(
        self,
        name: str = "Unnamed Workflow",
        description: str = "",
        env_prefix: str = "",
        state_schema: Optional[StateSchema] = None,
        max_iterations: Optional[int] = None,
    ):
        self.name = name
        self.description = description
        self.env_prefix = env_prefix
        self.metadata: Dict[str, Any] = {}
        self._registry = NodeRegistry()
        self._edges: Dict[str, List[Edge]] = {}
        self._entry: Optional[str] = None
        self._terminals: List[str] = []
        self._schema: Dict[str, Any] = dict(state_schema or {})
        self._params: Dict[str, ConfigParam] = {p.name: p for p in builtin_params()}
        if max_iterations is not None:
            self.set_default("max_iterations", max_iterations)

    # ------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------

    def register_node(
        self,
        name: Union[str, NodeHandler],
        handler: Optional[NodeHandler] = None,
        reads: Optional[Iterable[str]] = None,
        writes: Optional[Any] = None,
        retry: Optional[RetryPolicy] = None,
        timeout: Optional[float] = None,
        description: str = "",
    ) -> "GraphBuilder":
        """
        Add a node to the graph.

        The handler may be passed alone if it was decorated with @node (or
        its function name is the node name).

        Args:
            name: Unique name for the node, or the handler itself
            handler: Function to execute, called as handler(state, config)
                or handler(state)
            reads: Slots the node reads
            writes: Slots the node writes, mapping slot -> type or a list of names
            retry: Node-specific retry policy
            timeout: Node-specific attempt timeout in seconds
            description: Human-readable description

        Returns:
            Self for chaining
        """
        if handler is None:
            if not callable(name):
                raise ValueError(f"No handler provided for node '{name}'")
            name, handler = None, name
        self._registry.register(
            name,
            handler,
            reads=tuple(reads) if reads is not None else None,
            writes=writes,
            retry=retry,
            timeout=timeout,
            description=description or None,
        )
        return self

    add_node = register_node

    # ------------------------------------------------------------
    # Edges
    # ------------------------------------------------------------

    def _add(self, edge: Edge) -> "GraphBuilder":
        existing = self._edges.setdefault(edge.source, [])
        kinds = {e.edge_type for e in existing}
        if edge.edge_type == EdgeType.DIRECT and kinds - {EdgeType.DIRECT}:
            raise AmbiguousEdge(
                f"Node '{edge.source}' already has conditional edges. "
                f"Cannot add a direct edge.",
                source=edge.source,
            )
        if edge.edge_type != EdgeType.DIRECT and EdgeType.DIRECT in kinds:
            raise AmbiguousEdge(
                f"Node '{edge.source}' already has a direct edge. "
                f"Cannot add a {edge.edge_type.value} edge.",
                source=edge.source,
            )
        if edge.edge_type == EdgeType.DEFAULT and EdgeType.DEFAULT in kinds:
            raise AmbiguousEdge(
                f"Node '{edge.source}' already has a default edge",
                source=edge.source,
            )
        existing.append(edge)
        return self

    def add_edge(self, source: str, target: Targets) -> "GraphBuilder":
        """
        Add an unconditional edge from source.

        Several targets (in one call or over several calls) fan out: the
        targets run concurrently and their updates are joined in order.
        """
        return self._add(Edge(source, _as_targets(target), EdgeType.DIRECT))

    def add_conditional_edge(
        self,
        source: str,
        predicate: Predicate,
        target: Targets,
    ) -> "GraphBuilder":
        """
        Add an edge taken when predicate(state, config) is true.

        Conditional edges of a node are tried in the order they were added.
        """
        if not callable(predicate):
            raise ValueError(f"Predicate for edge from '{source}' must be callable")
        return self._add(
            Edge(source, _as_targets(target), EdgeType.CONDITIONAL, predicate)
        )

    def add_default_edge(self, source: str, target: Targets) -> "GraphBuilder":
        """Add the edge taken when no conditional edge of source matches."""
        return self._add(Edge(source, _as_targets(target), EdgeType.DEFAULT))

    def set_entry(self, name: str) -> "GraphBuilder":
        """Set the entry point of the graph."""
        self._entry = name
        return self

    set_entry_point = set_entry

    def mark_terminal(self, *names: str) -> "GraphBuilder":
        """Mark nodes after which the run completes."""
        for name in names:
            if name not in self._terminals:
                self._terminals.append(name)
        return self

    # ------------------------------------------------------------
    # Config
    # ------------------------------------------------------------

    def declare_param(
        self,
        name: str,
        type: Any = Any,
        default: Any = None,
        env: Optional[str] = None,
        description: str = "",
    ) -> "GraphBuilder":
        """Declare a run parameter (redeclaring a built-in replaces it)."""
        self._params[name] = ConfigParam(name, type, default, env, description)
        return self

    def set_default(self, name: str, value: Any) -> "GraphBuilder":
        """Change the graph-level default of a declared parameter."""
        if name not in self._params:
            raise ValueError(f"Unknown config parameter '{name}'")
        param = self._params[name]
        self._params[name] = ConfigParam(
            param.name, param.type, value, param.env, param.description
        )
        return self

    # ------------------------------------------------------------
    # Build
    # ------------------------------------------------------------

    def _collect_schema(self, errors: List[str]) -> Dict[str, Any]:
        schema = dict(self._schema)
        declared_by: Dict[str, str] = {}
        for n in self._registry:
            for key, slot_type in (n.writes or {}).items():
                if slot_type is Any:
                    continue
                if key in schema and schema[key] != slot_type:
                    owner = declared_by.get(key, "state schema")
                    errors.append(
                        f"Slot '{key}' declared as {schema[key]!r} by {owner} "
                        f"and as {slot_type!r} by node '{n.name}'"
                    )
                    continue
                schema[key] = slot_type
                declared_by.setdefault(key, f"node '{n.name}'")
        for key, slot_type in schema.items():
            if not is_checkable_slot_type(slot_type):
                errors.append(
                    f"Slot '{key}' has a type annotation that cannot be checked: {slot_type!r}"
                )
        return schema

    def validate(self) -> List[str]:
        """
        Validate the graph structure.

        Returns:
            List of validation errors (empty if valid)
        """
        errors: List[str] = []
        self._collect_schema(errors)
        errors.extend(
            _validate(self._registry, self._edges, self._resolved_entry(), set(self._terminals))
        )
        return errors

    def _resolved_entry(self) -> Optional[str]:
        # The first node added is the entry unless set_entry() was called.
        return self._entry or next(iter(self._registry.names()), None)

    def build(self) -> Graph:
        """
        Validate and freeze the graph.

        Raises:
            GraphBuildError: With every problem found
        """
        errors = self.validate()
        schema = self._collect_schema([])
        entry = self._resolved_entry()
        resolver = None
        try:
            resolver = ConfigResolver(
                self._params.values(),
                env_prefix=self.env_prefix,
                name=f"{_class_name(self.name)}Config",
            )
        except (TypeError, ValueError) as e:
            errors.append(f"Invalid config parameters: {e}")
        if errors:
            raise GraphBuildError(errors)

        for terminal in self._terminals:
            if self._edges.get(terminal):
                logger.warning(
                    f"Terminal node '{terminal}' has outgoing edges; they are never followed"
                )

        registry = NodeRegistry()
        for n in self._registry:
            registry.add(n)

        graph = Graph(
            name=self.name,
            nodes=registry,
            edges=MappingProxyType({k: tuple(v) for k, v in self._edges.items()}),
            entry=entry,
            terminals=frozenset(self._terminals),
            schema=MappingProxyType(schema),
            config=resolver,
            description=self.description,
            metadata=MappingProxyType(dict(self.metadata)),
        )
        logger.info(
            f"Built graph '{self.name}' with {len(registry)} nodes, entry '{entry}'"
        )
        return graph


def _class_name(name: str) -> str:
    parts = [p for p in "".join(c if c.isalnum() else " " for c in name).split() if p]
    return "".join(p[:1].upper() + p[1:] for p in parts) or "Graph"


def _validate(
    nodes: NodeRegistry,
    edges: Mapping[str, Sequence[Edge]],
    entry: Optional[str],
    terminals: Set[str],
) -> List[str]:
    errors: List[str] = []

    # Must have at least one node
    if not len(nodes):
        errors.append("Graph must have at least one node")
        return errors

    # Must have an entry point
    if not entry:
        errors.append("Graph must have an entry point")
    elif entry not in nodes:
        errors.append(f"Entry point '{entry}' not found in nodes")

    for name in sorted(terminals):
        if name not in nodes:
            errors.append(f"Terminal node '{name}' not found in nodes")

    for source, outgoing in edges.items():
        if source not in nodes:
            errors.append(f"Source node '{source}' not found in graph")
        for edge in outgoing:
            for target in edge.targets:
                if target != END and target not in nodes:
                    errors.append(
                        f"Target node '{target}' of edge from '{source}' not found in graph"
                    )

    # Every non-terminal node needs a way out
    for name in nodes.names():
        if name not in terminals and not edges.get(name):
            errors.append(
                f"Node '{name}' has no outgoing edges and is not marked terminal"
            )

    # Check for orphan nodes (not reachable from entry point)
    if entry in nodes:
        reachable = _reachable(entry, edges, terminals)
        orphans = sorted(set(nodes.names()) - reachable)
        if orphans:
            errors.append(f"Orphan nodes (not reachable): {orphans}")

    return errors


def _reachable(entry: str, edges: Mapping[str, Sequence[Edge]], terminals: Set[str]) -> Set[str]:
    """Get all nodes reachable from the entry point."""
    reachable: Set[str] = set()
    to_visit = [entry]

    while to_visit:
        current = to_visit.pop()
        if current in reachable or current == END:
            continue

        reachable.add(current)
        if current in terminals:
            continue

        for edge in edges.get(current, ()):
            to_visit.extend(edge.targets)

    return reachable
