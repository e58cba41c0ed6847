"""Tests for dagflow.engine.graph module."""

import networkx as nx
import pytest
from pydantic import ValidationError

from dagflow.engine.errors import GraphCycle, GraphValidationError, GuardSyntaxError, UnknownIdentifier
from dagflow.engine.graph import BackoffKind, FailurePolicy, RetryPolicy, Step, StepGraph, StepKind


class TestStep:
    """Tests for step definitions."""

    def test_defaults(self):
        step = Step(id="a")
        assert step.name == "a"
        assert step.kind is StepKind.TASK
        assert step.priority == 5
        assert step.weight == 1
        assert step.timeout is None
        assert step.depends_on == ()

    def test_camel_case_aliases(self):
        step = Step.model_validate(
            {
                "id": "b",
                "type": "manual",
                "dependsOn": ["a"],
                "runAfter": ["c"],
                "retryPolicy": {"maxAttempts": 3, "backoffStrategy": "linear", "initialDelayMs": 500},
                "timeoutMs": 2500,
                "condition": {"expression": "x > 1"},
            }
        )
        assert step.kind is StepKind.WAIT
        assert step.depends_on == ("a",)
        assert step.run_after == ("c",)
        assert step.retry == RetryPolicy(max_attempts=3, backoff=BackoffKind.LINEAR, initial_delay_ms=500)
        assert step.timeout == 2.5
        assert step.guard == "x > 1"

    def test_is_frozen(self):
        step = Step(id="a")
        with pytest.raises(ValidationError):
            step.name = "other"


class TestRetryPolicy:
    """Tests for retry policy validation."""

    def test_jitter_percent_alias(self):
        policy = RetryPolicy.model_validate({"jitterPercent": 25})
        assert policy.jitter == 0.25

    def test_max_delay_below_initial_rejected(self):
        with pytest.raises(ValidationError):
            RetryPolicy(initial_delay_ms=1000, max_delay_ms=10)

    def test_zero_attempts_rejected(self):
        with pytest.raises(ValidationError):
            RetryPolicy(max_attempts=0)


class TestStepGraphValidation:
    """Tests for construction-time graph validation."""

    def test_valid_graph(self, diamond_graph):
        assert diamond_graph.step_ids == ["S1", "S2", "S3", "S4"]
        assert diamond_graph.failure_policy is FailurePolicy.FAIL_FAST

    def test_empty_graph_rejected(self, make_graph):
        with pytest.raises(GraphValidationError, match="at least one step"):
            make_graph([])

    def test_duplicate_ids_rejected(self, make_graph):
        with pytest.raises(GraphValidationError, match="Duplicate"):
            make_graph([{"id": "a"}, {"id": "a"}])

    def test_unknown_dependency_rejected(self, make_graph):
        with pytest.raises(GraphValidationError, match="ghost"):
            make_graph([{"id": "a", "depends_on": ["ghost"]}])

    def test_unknown_run_after_rejected(self, make_graph):
        with pytest.raises(GraphValidationError):
            make_graph([{"id": "a", "run_after": ["ghost"]}])

    def test_self_dependency_rejected(self, make_graph):
        with pytest.raises(GraphValidationError, match="itself"):
            make_graph([{"id": "a", "depends_on": ["a"]}])

    def test_cycle_reports_path(self, make_graph):
        with pytest.raises(GraphCycle) as exc_info:
            make_graph(
                [
                    {"id": "a", "depends_on": ["c"]},
                    {"id": "b", "depends_on": ["a"]},
                    {"id": "c", "depends_on": ["b"]},
                ]
            )
        cycle = exc_info.value.cycle
        assert cycle[0] == cycle[-1]
        assert set(cycle) == {"a", "b", "c"}

    def test_run_after_loop_is_not_a_cycle(self, make_graph):
        graph = make_graph([{"id": "a", "run_after": ["b"]}, {"id": "b", "run_after": ["a"]}])
        assert graph.step_ids == ["a", "b"]

    def test_guard_with_undeclared_variable_rejected(self, make_graph):
        with pytest.raises(UnknownIdentifier):
            make_graph([{"id": "a", "guard": "region == 'eu'"}])

    def test_guard_syntax_error_rejected(self, make_graph):
        with pytest.raises(GuardSyntaxError):
            make_graph(
                [{"id": "a", "guard": "region.upper() == 'EU'"}],
                variables={"region": {"type": "string"}},
            )

    def test_weight_above_max_concurrency_rejected(self, make_graph):
        with pytest.raises(GraphValidationError, match="weight"):
            make_graph([{"id": "a", "resources": {"weight": 3}}], max_concurrency=2)

    def test_subworkflow_needs_ref(self, make_graph):
        with pytest.raises(GraphValidationError, match="workflow_ref"):
            make_graph([{"id": "a", "kind": "subworkflow"}])

    @pytest.mark.parametrize(
        "field,value",
        [("start_step", "ghost"), ("end_steps", ["ghost"]), ("on_failure_step", "ghost")],
    )
    def test_unknown_graph_references_rejected(self, make_graph, field, value):
        with pytest.raises(GraphValidationError):
            make_graph([{"id": "a"}], **{field: value})


class TestStepGraphQueries:
    """Tests for graph accessors."""

    def test_to_dag_is_a_copy(self, diamond_graph):
        dag = diamond_graph.to_dag()
        assert isinstance(dag, nx.DiGraph)
        assert set(dag.edges) == {("S1", "S2"), ("S1", "S3"), ("S2", "S4"), ("S3", "S4")}
        dag.remove_node("S1")
        assert "S1" in diamond_graph.to_dag()

    def test_dependents(self, diamond_graph):
        assert diamond_graph.dependents("S1") == ["S2", "S3"]
        assert diamond_graph.dependents("S4") == []

    def test_execution_levels_by_priority(self, make_graph):
        graph = make_graph(
            [
                {"id": "root"},
                {"id": "low", "depends_on": ["root"], "resources": {"priority": 9}},
                {"id": "high", "depends_on": ["root"], "resources": {"priority": 1}},
            ]
        )
        assert graph.execution_levels() == [["root"], ["high", "low"]]

    def test_declaration_index_and_guard(self, make_graph):
        graph = make_graph(
            [{"id": "a"}, {"id": "b", "guard": "go"}],
            variables={"go": {"type": "boolean"}},
        )
        assert graph.declaration_index("b") == 1
        assert graph.guard_for("a") is None
        assert graph.guard_for("b").evaluate({"go": True}) is True
        assert graph.has_step("b")
        assert not graph.has_step("c")

    def test_dict_round_trip(self, diamond_graph):
        restored = StepGraph.from_dict(diamond_graph.to_dict())
        assert restored.to_dict() == diamond_graph.to_dict()
        assert restored.execution_levels() == diamond_graph.execution_levels()

    def test_error_handling_block(self, make_graph):
        graph = make_graph(
            [{"id": "a"}, {"id": "cleanup"}],
            errorHandling={"strategy": "continue", "onFailure": {"stepId": "cleanup"}},
        )
        assert graph.failure_policy is FailurePolicy.CONTINUE
        assert graph.on_failure_step == "cleanup"
