"""
Error types for the StateGraph engine.

Node handlers raise TransientError, FatalError or SkipNode to tell the
executor how to treat a failure. Everything else here is raised by the
engine itself and ends up on RunResult.error as a RunError.
"""

from typing import Any, Dict, List, Optional


class StateGraphError(Exception):
    """Base class for every error raised by the engine."""


class GraphBuildError(StateGraphError, ValueError):
    """Raised by GraphBuilder.build() when the graph is not valid."""

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__("Graph validation failed: " + "; ".join(self.errors))


class ConfigError(StateGraphError, ValueError):
    """A config parameter could not be declared or resolved."""


class SchemaViolation(StateGraphError):
    """A node wrote a slot it does not own or with the wrong type."""

    def __init__(self, key: str, message: str, node: Optional[str] = None):
        self.key = key
        self.node = node
        prefix = f"Node '{node}': " if node else ""
        super().__init__(f"{prefix}slot '{key}' {message}")


# ============================================================
# Node failures
# ============================================================

class NodeFailure(StateGraphError):
    """Base class for failures raised from inside a node handler."""


class TransientError(NodeFailure):
    """The node failed but may succeed if invoked again."""


class FatalError(NodeFailure):
    """The node failed and the run must stop."""

    def __init__(self, message: str, node: Optional[str] = None, attempts: int = 1):
        self.node = node
        self.attempts = attempts
        super().__init__(message)


class SkipNode(NodeFailure):
    """The node has nothing to contribute; continue without a state change."""


# ============================================================
# Routing
# ============================================================

class RoutingError(StateGraphError):
    """Base class for edge selection errors."""

    def __init__(self, message: str, source: Optional[str] = None):
        self.source = source
        super().__init__(message)


class NoMatchingEdge(RoutingError):
    """No conditional edge matched and no default edge was declared."""


class AmbiguousEdge(RoutingError):
    """More than one edge could be taken where only one is allowed."""


# ============================================================
# Run level
# ============================================================

class IterationLimitExceeded(StateGraphError):
    """The run hit max_iterations without reaching a terminal node."""

    def __init__(self, limit: int):
        self.limit = limit
        super().__init__(f"Max iterations ({limit}) exceeded")


class ExecutionTimeout(StateGraphError):
    """A node attempt or the whole run took longer than allowed."""

    def __init__(self, scope: str, seconds: float, node: Optional[str] = None, attempts: int = 1):
        self.scope = scope
        self.seconds = seconds
        self.node = node
        self.attempts = attempts
        what = f"Node '{node}'" if scope == "node" and node else "Run"
        super().__init__(f"{what} timed out after {seconds}s")


class RunCancelled(StateGraphError):
    """Internal signal: the run's cancel event fired. Never a run error."""


class RunError(StateGraphError):
    """
    Structured failure of a run.

    Attributes:
        kind: Name of the underlying error class (e.g. "FatalError")
        node: Node that was executing when the run failed, if any
        iteration: Iteration counter at the time of failure
        attempts: Invocation attempts spent on the failing node
        state: State data as of the last successful merge
        cause: The original exception
    """

    def __init__(
        self,
        kind: str,
        message: str,
        node: Optional[str] = None,
        iteration: int = 0,
        attempts: int = 0,
        state: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ):
        self.kind = kind
        self.message = message
        self.node = node
        self.iteration = iteration
        self.attempts = attempts
        self.state = state if state is not None else {}
        self.cause = cause
        super().__init__(message)

    @classmethod
    def from_exception(
        cls,
        exc: BaseException,
        node: Optional[str] = None,
        iteration: int = 0,
        attempts: int = 0,
        state: Optional[Dict[str, Any]] = None,
    ) -> "RunError":
        node = getattr(exc, "node", None) or node
        attempts = getattr(exc, "attempts", None) or attempts
        return cls(
            kind=type(exc).__name__,
            message=str(exc),
            node=node,
            iteration=iteration,
            attempts=attempts,
            state=state,
            cause=exc,
        )

    def __str__(self) -> str:
        where = f" at node '{self.node}'" if self.node else ""
        return f"{self.kind}{where} (iteration {self.iteration}): {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "message": self.message,
            "node": self.node,
            "iteration": self.iteration,
            "attempts": self.attempts,
        }
