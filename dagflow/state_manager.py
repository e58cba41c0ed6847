"""Run repository implementations."""
from __future__ import annotations

import json
import logging
import sqlite3
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from pathlib import Path
from threading import Lock
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from .engine.events import AuditEntry, AuditLog
from .engine.graph import StepGraph
from .engine.state import WORKFLOW_TERMINAL, WorkflowRun, WorkflowStatus

if TYPE_CHECKING:
    from .config import EngineConfig

logger = logging.getLogger(__name__)

_TERMINAL_VALUES = tuple(status.value for status in WORKFLOW_TERMINAL)


class RunRepository(ABC):
    """Abstract base class for graph and run persistence."""

    @abstractmethod
    def save_graph(self, graph: StepGraph) -> bool:
        """Save a graph definition.

        Args:
            graph: Graph to save

        Returns:
            True if successful
        """
        pass

    @abstractmethod
    def load_graph(self, graph_id: str) -> Optional[StepGraph]:
        """Load a graph definition.

        Args:
            graph_id: Graph identifier

        Returns:
            Saved graph or None
        """
        pass

    @abstractmethod
    def list_graphs(self) -> Dict[str, str]:
        """List saved graphs.

        Returns:
            Dictionary of graph ID to graph name
        """
        pass

    @abstractmethod
    def save_run(self, run: WorkflowRun) -> bool:
        """Save a run snapshot.

        Args:
            run: Run to save

        Returns:
            True if successful
        """
        pass

    @abstractmethod
    def load_snapshot(self, run_id: str) -> Optional[Dict[str, Any]]:
        """Load the raw snapshot of a run.

        Args:
            run_id: Run identifier

        Returns:
            Snapshot dictionary or None
        """
        pass

    @abstractmethod
    def delete_run(self, run_id: str) -> bool:
        """Delete a run.

        Args:
            run_id: Run identifier

        Returns:
            True if deleted
        """
        pass

    @abstractmethod
    def list_runs(self) -> Dict[str, WorkflowStatus]:
        """List all saved runs.

        Returns:
            Dictionary of run ID to status
        """
        pass

    @abstractmethod
    def cleanup_old_runs(self, days: int = 30) -> int:
        """Remove finished runs older than ``days``.

        Args:
            days: Age threshold in days

        Returns:
            Number of runs removed
        """
        pass

    def load_run(self, run_id: str, graph: StepGraph) -> Optional[WorkflowRun]:
        """Load a run and bind it to its graph.

        Args:
            run_id: Run identifier
            graph: Graph the run was created from

        Returns:
            Restored run or None
        """
        snapshot = self.load_snapshot(run_id)
        if snapshot is None:
            return None
        return WorkflowRun.from_snapshot(snapshot, graph)


class InMemoryRunRepository(RunRepository):
    """In-memory run repository for development/testing."""

    def __init__(self):
        self._graphs: Dict[str, Dict[str, Any]] = {}
        self._runs: Dict[str, Dict[str, Any]] = {}
        self._lock = Lock()

    def save_graph(self, graph: StepGraph) -> bool:
        with self._lock:
            self._graphs[graph.id] = graph.to_dict()
            return True

    def load_graph(self, graph_id: str) -> Optional[StepGraph]:
        with self._lock:
            data = self._graphs.get(graph_id)
        return StepGraph.from_dict(data) if data else None

    def list_graphs(self) -> Dict[str, str]:
        with self._lock:
            return {graph_id: data["name"] for graph_id, data in self._graphs.items()}

    def save_run(self, run: WorkflowRun) -> bool:
        snapshot = run.to_snapshot()
        with self._lock:
            self._runs[run.run_id] = snapshot
            logger.debug(f"Saved run {run.run_id} in memory")
            return True

    def load_snapshot(self, run_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            snapshot = self._runs.get(run_id)
            return json.loads(json.dumps(snapshot)) if snapshot else None

    def delete_run(self, run_id: str) -> bool:
        with self._lock:
            return self._runs.pop(run_id, None) is not None

    def list_runs(self) -> Dict[str, WorkflowStatus]:
        with self._lock:
            return {run_id: WorkflowStatus(data["status"]) for run_id, data in self._runs.items()}

    def cleanup_old_runs(self, days: int = 30) -> int:
        cutoff = datetime.now(timezone.utc) - timedelta(days=days)
        with self._lock:
            expired = [
                run_id
                for run_id, data in self._runs.items()
                if data["status"] in _TERMINAL_VALUES
                and data.get("finished_at")
                and datetime.fromisoformat(data["finished_at"]) < cutoff
            ]
            for run_id in expired:
                del self._runs[run_id]
        return len(expired)


class SQLiteRunRepository(RunRepository, AuditLog):
    """Persistent run repository and audit log using SQLite."""

    def __init__(self, db_path: Optional[Path] = None):
        """Initialize SQLite repository.

        Args:
            db_path: Path to SQLite database
        """
        self.db_path = Path(db_path) if db_path else Path.home() / ".dagflow" / "runs.db"
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = Lock()
        self._init_database()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(str(self.db_path))

    def _init_database(self):
        """Initialize database schema."""
        with self._connect() as conn:
            cursor = conn.cursor()

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS graphs (
                    graph_id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    version TEXT,
                    definition TEXT NOT NULL,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """
            )

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS runs (
                    run_id TEXT PRIMARY KEY,
                    graph_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    started_at TIMESTAMP,
                    finished_at TIMESTAMP,
                    snapshot TEXT NOT NULL,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """
            )

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS audit_entries (
                    run_id TEXT NOT NULL,
                    seq INTEGER NOT NULL,
                    timestamp TEXT NOT NULL,
                    action TEXT NOT NULL,
                    actor TEXT NOT NULL,
                    details TEXT,
                    PRIMARY KEY (run_id, seq)
                )
            """
            )

            cursor.execute("CREATE INDEX IF NOT EXISTS idx_runs_status ON runs(status)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_runs_graph ON runs(graph_id)")

            conn.commit()
            logger.info(f"Initialized run database at {self.db_path}")

    def save_graph(self, graph: StepGraph) -> bool:
        try:
            with self._lock, self._connect() as conn:
                conn.execute(
                    """
                    INSERT OR REPLACE INTO graphs (graph_id, name, version, definition, updated_at)
                    VALUES (?, ?, ?, ?, CURRENT_TIMESTAMP)
                """,
                    (graph.id, graph.name, graph.version, json.dumps(graph.to_dict())),
                )
                conn.commit()
                return True
        except sqlite3.Error as e:
            logger.error(f"Failed to save graph {graph.id}: {e}")
            return False

    def load_graph(self, graph_id: str) -> Optional[StepGraph]:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT definition FROM graphs WHERE graph_id = ?", (graph_id,)
            ).fetchone()
        return StepGraph.from_dict(json.loads(row[0])) if row else None

    def list_graphs(self) -> Dict[str, str]:
        with self._lock, self._connect() as conn:
            rows = conn.execute("SELECT graph_id, name FROM graphs ORDER BY name").fetchall()
        return {row[0]: row[1] for row in rows}

    def save_run(self, run: WorkflowRun) -> bool:
        try:
            snapshot = json.dumps(run.to_snapshot())
            with self._lock, self._connect() as conn:
                conn.execute(
                    """
                    INSERT OR REPLACE INTO runs
                    (run_id, graph_id, status, started_at, finished_at, snapshot, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
                """,
                    (
                        run.run_id,
                        run.graph_id,
                        run.status.value,
                        run.started_at.isoformat() if run.started_at else None,
                        run.finished_at.isoformat() if run.finished_at else None,
                        snapshot,
                        run.created_at.isoformat(),
                    ),
                )
                conn.commit()
                logger.debug(f"Persisted run {run.run_id}")
                return True
        except sqlite3.Error as e:
            logger.error(f"Failed to save run {run.run_id}: {e}")
            return False

    def load_snapshot(self, run_id: str) -> Optional[Dict[str, Any]]:
        with self._lock, self._connect() as conn:
            row = conn.execute("SELECT snapshot FROM runs WHERE run_id = ?", (run_id,)).fetchone()
        return json.loads(row[0]) if row else None

    def delete_run(self, run_id: str) -> bool:
        with self._lock, self._connect() as conn:
            cursor = conn.execute("DELETE FROM runs WHERE run_id = ?", (run_id,))
            deleted = cursor.rowcount > 0
            conn.execute("DELETE FROM audit_entries WHERE run_id = ?", (run_id,))
            conn.commit()
        if deleted:
            logger.debug(f"Deleted run {run_id}")
        return deleted

    def list_runs(self) -> Dict[str, WorkflowStatus]:
        with self._lock, self._connect() as conn:
            rows = conn.execute("SELECT run_id, status FROM runs ORDER BY created_at").fetchall()
        return {row[0]: WorkflowStatus(row[1]) for row in rows}

    def cleanup_old_runs(self, days: int = 30) -> int:
        placeholders = ", ".join("?" for _ in _TERMINAL_VALUES)
        with self._lock, self._connect() as conn:
            expired = [
                row[0]
                for row in conn.execute(
                    f"""
                    SELECT run_id FROM runs
                    WHERE status IN ({placeholders})
                    AND updated_at < datetime('now', '-' || ? || ' days')
                """,
                    (*_TERMINAL_VALUES, days),
                ).fetchall()
            ]
            for run_id in expired:
                conn.execute("DELETE FROM runs WHERE run_id = ?", (run_id,))
                conn.execute("DELETE FROM audit_entries WHERE run_id = ?", (run_id,))
            conn.commit()

        logger.info(f"Cleaned up {len(expired)} old runs")
        return len(expired)

    # AuditLog

    def append(self, run_id: str, entry: AuditEntry) -> int:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT COALESCE(MAX(seq), 0) FROM audit_entries WHERE run_id = ?", (run_id,)
            ).fetchone()
            seq = row[0] + 1
            conn.execute(
                """
                INSERT INTO audit_entries (run_id, seq, timestamp, action, actor, details)
                VALUES (?, ?, ?, ?, ?, ?)
            """,
                (
                    run_id,
                    seq,
                    entry.timestamp.isoformat(),
                    entry.action,
                    entry.actor,
                    json.dumps(entry.details, default=str),
                ),
            )
            conn.commit()
        return seq

    def entries(self, run_id: str, since: int = 0) -> List[AuditEntry]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                """
                SELECT timestamp, action, actor, details FROM audit_entries
                WHERE run_id = ? AND seq > ? ORDER BY seq
            """,
                (run_id, since),
            ).fetchall()
        return [
            AuditEntry(
                action=row[1],
                actor=row[2],
                timestamp=datetime.fromisoformat(row[0]),
                details=json.loads(row[3]) if row[3] else {},
            )
            for row in rows
        ]


def create_repository(config: "EngineConfig") -> RunRepository:
    """Create the run repository selected by ``config.state_backend``."""
    if config.state_backend == "sqlite":
        return SQLiteRunRepository(config.state_db_path)
    if config.state_backend == "memory":
        return InMemoryRunRepository()
    raise ValueError(f"Unknown state backend: {config.state_backend}")
