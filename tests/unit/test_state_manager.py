"""Tests for dagflow.state_manager module."""

from datetime import datetime, timedelta, timezone

import pytest

from dagflow.config import ConfigPriority, EngineConfig
from dagflow.engine.events import AuditEntry
from dagflow.engine.state import StepStatus, WorkflowRun, WorkflowStatus
from dagflow.state_manager import InMemoryRunRepository, SQLiteRunRepository, create_repository


@pytest.fixture(params=["memory", "sqlite"])
def repository(request, tmp_path):
    if request.param == "memory":
        return InMemoryRunRepository()
    return SQLiteRunRepository(tmp_path / "runs.db")


class TestRunRepository:
    """Behaviour shared by every repository backend."""

    def test_graph_round_trip(self, repository, diamond_graph):
        assert repository.save_graph(diamond_graph)
        loaded = repository.load_graph("test-graph")
        assert loaded.to_dict() == diamond_graph.to_dict()
        assert repository.list_graphs() == {"test-graph": "Test graph"}
        assert repository.load_graph("missing") is None

    def test_run_round_trip(self, repository, diamond_graph):
        run = WorkflowRun.for_graph(diamond_graph)
        run.status = WorkflowStatus.RUNNING
        run.step_states["S1"].status = StepStatus.COMPLETED
        run.set_output("S1", [1, 2])
        assert repository.save_run(run)

        loaded = repository.load_run(run.run_id, diamond_graph)
        assert loaded.to_snapshot() == run.to_snapshot()
        assert repository.list_runs() == {run.run_id: WorkflowStatus.RUNNING}

    def test_save_overwrites(self, repository, diamond_graph):
        run = WorkflowRun.for_graph(diamond_graph)
        repository.save_run(run)
        run.status = WorkflowStatus.CANCELLED
        repository.save_run(run)
        assert repository.load_snapshot(run.run_id)["status"] == "cancelled"

    def test_missing_run(self, repository, diamond_graph):
        assert repository.load_snapshot("nope") is None
        assert repository.load_run("nope", diamond_graph) is None

    def test_delete_run(self, repository, diamond_graph):
        run = WorkflowRun.for_graph(diamond_graph)
        repository.save_run(run)
        assert repository.delete_run(run.run_id) is True
        assert repository.delete_run(run.run_id) is False
        assert repository.list_runs() == {}


class TestInMemoryRunRepository:
    """In-memory specifics."""

    def test_snapshot_is_a_copy(self, diamond_graph):
        repository = InMemoryRunRepository()
        run = WorkflowRun.for_graph(diamond_graph)
        repository.save_run(run)
        repository.load_snapshot(run.run_id)["status"] = "failed"
        assert repository.load_snapshot(run.run_id)["status"] == "draft"

    def test_cleanup_old_runs(self, diamond_graph):
        repository = InMemoryRunRepository()
        old = WorkflowRun.for_graph(diamond_graph)
        old.status = WorkflowStatus.COMPLETED
        old.finished_at = datetime.now(timezone.utc) - timedelta(days=40)
        fresh = WorkflowRun.for_graph(diamond_graph)
        fresh.status = WorkflowStatus.COMPLETED
        fresh.finished_at = datetime.now(timezone.utc)
        active = WorkflowRun.for_graph(diamond_graph)
        active.status = WorkflowStatus.RUNNING
        for run in (old, fresh, active):
            repository.save_run(run)

        assert repository.cleanup_old_runs(days=30) == 1
        assert set(repository.list_runs()) == {fresh.run_id, active.run_id}


class TestSQLiteRunRepository:
    """SQLite specifics, including the audit log."""

    def test_persists_across_instances(self, tmp_path, diamond_graph):
        db_path = tmp_path / "runs.db"
        run = WorkflowRun.for_graph(diamond_graph)
        SQLiteRunRepository(db_path).save_run(run)
        assert run.run_id in SQLiteRunRepository(db_path).list_runs()

    def test_audit_sequence(self, tmp_path):
        repository = SQLiteRunRepository(tmp_path / "runs.db")
        assert repository.append("r1", AuditEntry("run_prepared")) == 1
        assert repository.append("r1", AuditEntry("run_started", details={"x": 1})) == 2
        assert repository.append("r2", AuditEntry("run_prepared")) == 1

        trail = repository.entries("r1")
        assert [e.action for e in trail] == ["run_prepared", "run_started"]
        assert trail[1].details == {"x": 1}
        assert [e.action for e in repository.entries("r1", since=1)] == ["run_started"]

    def test_delete_run_drops_audit(self, tmp_path, diamond_graph):
        repository = SQLiteRunRepository(tmp_path / "runs.db")
        run = WorkflowRun.for_graph(diamond_graph)
        repository.save_run(run)
        repository.append(run.run_id, AuditEntry("run_prepared"))
        repository.delete_run(run.run_id)
        assert repository.entries(run.run_id) == []

    def test_cleanup_keeps_recent_runs(self, tmp_path, diamond_graph):
        repository = SQLiteRunRepository(tmp_path / "runs.db")
        run = WorkflowRun.for_graph(diamond_graph)
        run.status = WorkflowStatus.COMPLETED
        repository.save_run(run)
        assert repository.cleanup_old_runs(days=30) == 0
        assert run.run_id in repository.list_runs()


class TestCreateRepository:
    """Backend selection from configuration."""

    def test_memory_backend(self):
        assert isinstance(create_repository(EngineConfig()), InMemoryRunRepository)

    def test_sqlite_backend(self, tmp_path):
        EngineConfig.set_overlay(
            ConfigPriority.CLI, {"state_backend": "sqlite", "state_db_path": str(tmp_path / "x.db")}
        )
        repository = create_repository(EngineConfig())
        assert isinstance(repository, SQLiteRunRepository)
        assert repository.db_path == tmp_path / "x.db"

    def test_unknown_backend(self):
        EngineConfig.set_overlay(ConfigPriority.CLI, {"state_backend": "redis"})
        with pytest.raises(ValueError, match="redis"):
            create_repository(EngineConfig())
