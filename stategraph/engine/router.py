"""
Edge selection.

The router decides which node(s) run after a node finished, from the
edges declared for that node, the current state and the run config.
Loops are ordinary edges that point back to an earlier node.
"""

from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple
from dataclasses import dataclass
from enum import Enum
import logging

from stategraph.engine.config import RunConfig
from stategraph.engine.errors import AmbiguousEdge, NoMatchingEdge, RoutingError
from stategraph.engine.node import accepts_config
from stategraph.engine.state import State


logger = logging.getLogger(__name__)

# Special target: stop routing from this edge
END = "__END__"

Predicate = Callable[..., bool]


class EdgeType(str, Enum):
    """Types of edges between nodes."""
    DIRECT = "direct"            # Always follow this edge
    CONDITIONAL = "conditional"  # Follow if the predicate is true
    DEFAULT = "default"          # Follow if no conditional edge matched


@dataclass(frozen=True)
class Edge:
    """
    A directed edge from one node to one or more target nodes.

    More than one target means fan-out. END as a target stops routing.
    """
    source: str
    targets: Tuple[str, ...]
    edge_type: EdgeType = EdgeType.DIRECT
    predicate: Optional[Predicate] = None

    @property
    def label(self) -> str:
        if self.edge_type == EdgeType.CONDITIONAL and self.predicate is not None:
            return getattr(self.predicate, "__name__", "condition")
        return self.edge_type.value

    def matches(self, state: State, config: RunConfig) -> bool:
        """Evaluate the predicate (conditional edges only)."""
        if self.predicate is None:
            return True
        try:
            if accepts_config(self.predicate):
                return bool(self.predicate(state, config))
            return bool(self.predicate(state))
        except Exception as e:
            raise RoutingError(
                f"Predicate '{self.label}' on edge from '{self.source}' raised: {e}",
                source=self.source,
            ) from e

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "targets": list(self.targets),
            "type": self.edge_type.value,
            "label": self.label,
        }


class Router:
    """
    Selects outgoing edges.

    Direct edges are all taken. Conditional edges are evaluated in
    declaration order and the first match wins (with strict routing, a
    second match raises AmbiguousEdge); the default edge is the fallback.
    """

    def __init__(self, edges: Mapping[str, Tuple[Edge, ...]]):
        self._edges = edges

    def edges_from(self, source: str) -> Tuple[Edge, ...]:
        return tuple(self._edges.get(source, ()))

    def select(self, source: str, state: State, config: RunConfig) -> List[Edge]:
        """
        Get the edges to follow from source.

        Raises:
            NoMatchingEdge: Conditional edges exist, none matched, no default
            AmbiguousEdge: strict_routing is on and several predicates matched
        """
        edges = self.edges_from(source)
        if not edges:
            return []

        direct = [e for e in edges if e.edge_type == EdgeType.DIRECT]
        if direct:
            return direct

        strict = bool(config.get("strict_routing", False))
        matched: List[Edge] = []
        for edge in edges:
            if edge.edge_type != EdgeType.CONDITIONAL:
                continue
            if edge.matches(state, config):
                matched.append(edge)
                if not strict:
                    break

        if len(matched) > 1:
            raise AmbiguousEdge(
                f"Node '{source}' has {len(matched)} matching conditional edges: "
                f"{[e.label for e in matched]}",
                source=source,
            )
        if matched:
            return matched

        default = [e for e in edges if e.edge_type == EdgeType.DEFAULT]
        if default:
            return default[:1]

        raise NoMatchingEdge(
            f"No conditional edge from '{source}' matched and no default edge is declared",
            source=source,
        )

    def next(self, source: str, state: State, config: RunConfig) -> List[str]:
        """
        Get the next node names after source.

        An empty list means the run terminates, more than one means fan-out.
        """
        targets: List[str] = []
        for edge in self.select(source, state, config):
            for target in edge.targets:
                if target != END and target not in targets:
                    targets.append(target)
        logger.debug(f"Route from '{source}': {targets or 'END'}")
        return targets
