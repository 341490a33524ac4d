"""
In-Memory Run Storage.

Tracks the runs an ExecutionEngine has started so their progress and
outcome can be looked up by ID. Nothing here survives the process.
"""

from typing import Any, Dict, List, Optional
from datetime import datetime
import asyncio
from dataclasses import dataclass, field


@dataclass
class StoredRun:
    """Bookkeeping for one run."""
    run_id: str
    graph_name: str
    status: str = "pending"
    current_node: Optional[str] = None
    iteration: int = 0
    step_count: int = 0
    started_at: datetime = field(default_factory=datetime.now)
    completed_at: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def finished(self) -> bool:
        return self.status in ("completed", "failed", "cancelled")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "graph_name": self.graph_name,
            "status": self.status,
            "current_node": self.current_node,
            "iteration": self.iteration,
            "step_count": self.step_count,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "error": self.error,
        }


class RunStorage:
    """
    In-memory storage for runs, safe for concurrent use from one event loop.

    Stores the progress of ongoing runs and the outcome of finished ones.
    """

    def __init__(self):
        self._runs: Dict[str, StoredRun] = {}
        self._lock = asyncio.Lock()

    async def create(
        self,
        run_id: str,
        graph_name: str,
    ) -> StoredRun:
        """
        Register a new run.

        Args:
            run_id: Unique run identifier
            graph_name: Name of the graph being run

        Returns:
            The stored run
        """
        async with self._lock:
            if run_id in self._runs and not self._runs[run_id].finished:
                raise ValueError(f"Run '{run_id}' is already active")
            stored = StoredRun(
                run_id=run_id,
                graph_name=graph_name,
                status="running",
            )
            self._runs[run_id] = stored
            return stored

    async def get(self, run_id: str) -> Optional[StoredRun]:
        """Get a run by ID."""
        async with self._lock:
            return self._runs.get(run_id)

    async def update_progress(
        self,
        run_id: str,
        current_node: Optional[str] = None,
        iteration: Optional[int] = None,
    ) -> Optional[StoredRun]:
        """Record the latest step of a run."""
        async with self._lock:
            if run_id not in self._runs:
                return None
            stored = self._runs[run_id]
            stored.step_count += 1
            if current_node is not None:
                stored.current_node = current_node
            if iteration is not None:
                stored.iteration = iteration
            return stored

    async def finish(
        self,
        run_id: str,
        status: str,
        iteration: int,
        error: Optional[str] = None,
    ) -> Optional[StoredRun]:
        """Mark a run as completed, failed or cancelled."""
        async with self._lock:
            if run_id not in self._runs:
                return None
            stored = self._runs[run_id]
            stored.status = status
            stored.iteration = iteration
            stored.error = error
            stored.completed_at = datetime.now()
            return stored

    async def list_all(self) -> List[StoredRun]:
        """List all runs."""
        async with self._lock:
            return list(self._runs.values())

    async def list_active(self) -> List[StoredRun]:
        async with self._lock:
            return [r for r in self._runs.values() if not r.finished]

    async def delete(self, run_id: str) -> bool:
        """Forget a run."""
        async with self._lock:
            if run_id in self._runs:
                del self._runs[run_id]
                return True
            return False

    def __len__(self) -> int:
        return len(self._runs)
