"""
State Management for the StateGraph engine.

State is immutable: nodes receive the current State and return a partial
update (delta). The engine merges the delta into a new State, so replaying
the same deltas over the same initial State always gives the same result.
"""

from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from datetime import datetime
from copy import deepcopy
from functools import lru_cache
import uuid

from stategraph.engine.errors import SchemaViolation


StateSchema = Dict[str, Any]


class StateSnapshot(BaseModel):
    """A delta committed to the state at a specific point in execution."""

    timestamp: datetime = Field(default_factory=datetime.now)
    node_name: str
    delta: Dict[str, Any]
    iteration: int = 0


class State(BaseModel):
    """
    The shared context that flows through a run.

    Behaves like a read-only mapping of slot name to value. Every change
    goes through merge_state(), which returns a new instance.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    data: Dict[str, Any] = Field(default_factory=dict)

    def get(self, key: str, default: Any = None) -> Any:
        """Get a value from the state data."""
        return self.data.get(key, default)

    def __getitem__(self, key: str) -> Any:
        return self.data[key]

    def __contains__(self, key: object) -> bool:
        return key in self.data

    def __len__(self) -> int:
        return len(self.data)

    def keys(self):
        return self.data.keys()

    def values(self):
        return self.data.values()

    def items(self):
        return self.data.items()

    def branch_copy(self) -> "State":
        """Deep copy used to isolate fan-out branches from each other."""
        return State(data=deepcopy(self.data))

    def to_dict(self) -> Dict[str, Any]:
        """Convert state to a plain dictionary."""
        return dict(self.data)

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "State":
        if isinstance(data, State):
            return data
        return cls(data=dict(data or {}))


@lru_cache(maxsize=256)
def _cached_adapter(slot_type: Any) -> TypeAdapter:
    return TypeAdapter(slot_type)


def slot_adapter(slot_type: Any) -> TypeAdapter:
    """
    TypeAdapter for a slot annotation.

    Raises:
        TypeError: pydantic cannot build a schema for the annotation
    """
    try:
        hash(slot_type)
    except TypeError:
        return TypeAdapter(slot_type)
    return _cached_adapter(slot_type)


def is_checkable_slot_type(slot_type: Any) -> bool:
    """True if values of the annotation can be type-checked on merge."""
    if slot_type is Any or isinstance(slot_type, type):
        return True
    try:
        slot_adapter(slot_type)
    except TypeError:
        return False
    return True


def check_slot(key: str, slot_type: Any, value: Any, node: Optional[str] = None) -> None:
    """Raise SchemaViolation if value does not match the declared slot type."""
    if slot_type is Any:
        return
    try:
        adapter = slot_adapter(slot_type)
    except TypeError:
        # Plain classes pydantic has no schema for are checked with isinstance.
        if not isinstance(slot_type, type):
            raise SchemaViolation(
                key, f"has a type annotation that cannot be checked: {slot_type!r}", node=node
            )
        if not isinstance(value, slot_type):
            raise SchemaViolation(
                key,
                f"expects {slot_type.__name__}, got {type(value).__name__}",
                node=node,
            )
        return
    try:
        adapter.validate_python(value, strict=True)
    except ValidationError as e:
        raise SchemaViolation(
            key,
            f"expects {getattr(slot_type, '__name__', slot_type)}, "
            f"got {type(value).__name__} ({e.error_count()} error(s))",
            node=node,
        ) from e


def merge_state(
    current: State,
    delta: Optional[Mapping[str, Any]],
    schema: Optional[StateSchema] = None,
    allowed_keys: Optional[Iterable[str]] = None,
    node: Optional[str] = None,
) -> State:
    """
    Merge a partial update into a state and return the new state.

    Every key in the delta overwrites the current value, every other key is
    carried over unchanged. The input state is never modified.

    Args:
        current: State before the update
        delta: Partial update produced by a node (None means no change)
        schema: Declared slot types; matching keys are type-checked
        allowed_keys: Slots the node may write; None allows any key
        node: Name of the writing node, used in error messages

    Returns:
        A new State

    Raises:
        SchemaViolation: The delta is not a mapping, writes an undeclared
            slot, or has a value of the wrong type
    """
    if delta is None:
        return current
    if not isinstance(delta, Mapping):
        raise SchemaViolation(
            "*", f"update must be a mapping, got {type(delta).__name__}", node=node
        )
    if not delta:
        return current

    allowed = set(allowed_keys) if allowed_keys is not None else None
    for key, value in delta.items():
        if not isinstance(key, str):
            raise SchemaViolation(str(key), "name must be a string", node=node)
        if allowed is not None and key not in allowed:
            raise SchemaViolation(key, "is not declared in the node's writes", node=node)
        if schema and key in schema:
            check_slot(key, schema[key], value, node=node)

    new_data = dict(current.data)
    new_data.update(delta)
    return State(data=new_data)


class StateStore:
    """
    Owns the state of a single run.

    Commits deltas through merge_state() and keeps a snapshot of every
    delta so the run can be inspected or replayed afterwards.
    """

    def __init__(
        self,
        initial: Optional[Mapping[str, Any]] = None,
        schema: Optional[StateSchema] = None,
        run_id: Optional[str] = None,
    ):
        self.run_id = run_id or str(uuid.uuid4())
        self.schema: StateSchema = dict(schema or {})
        self.initial = State.from_dict(initial)
        self.history: List[StateSnapshot] = []
        self._current = self.initial
        self.started_at = datetime.now()
        self.completed_at: Optional[datetime] = None

        # The seed state must respect declared slot types too.
        for key, value in self.initial.items():
            if key in self.schema:
                check_slot(key, self.schema[key], value)

    @property
    def current(self) -> State:
        """Get the current state."""
        return self._current

    def merge(
        self,
        delta: Optional[Mapping[str, Any]],
        allowed_keys: Optional[Iterable[str]] = None,
        node: Optional[str] = None,
    ) -> State:
        """Validate a delta against the current state without committing it."""
        return merge_state(self._current, delta, self.schema, allowed_keys, node)

    def commit(
        self,
        node_name: str,
        delta: Optional[Mapping[str, Any]],
        iteration: int = 0,
        allowed_keys: Optional[Iterable[str]] = None,
    ) -> State:
        """Merge a node's delta into the current state and record a snapshot."""
        new_state = self.merge(delta, allowed_keys, node_name)
        self.history.append(
            StateSnapshot(
                node_name=node_name,
                delta=dict(delta or {}),
                iteration=iteration,
            )
        )
        self._current = new_state
        return new_state

    def finalize(self) -> State:
        """Mark the run as finished."""
        self.completed_at = datetime.now()
        return self._current

    def replay(self) -> State:
        """Re-apply every recorded delta to the initial state."""
        state = self.initial
        for snapshot in self.history:
            state = merge_state(state, snapshot.delta)
        return state

    def get_history(self) -> List[Dict[str, Any]]:
        """Get the delta history as a list of dictionaries."""
        return [
            {
                "timestamp": s.timestamp.isoformat(),
                "node": s.node_name,
                "iteration": s.iteration,
                "delta": s.delta,
            }
            for s in self.history
        ]

    def changed_keys(self) -> Tuple[str, ...]:
        """Slots written at least once during the run, in first-write order."""
        seen: Dict[str, None] = {}
        for snapshot in self.history:
            for key in snapshot.delta:
                seen.setdefault(key, None)
        return tuple(seen)
