"""Trigger scheduler driving a real engine."""

import asyncio
from datetime import datetime, timezone

import pytest

from dagflow.engine import GraphNotFound, TriggerError, WorkflowStatus
from dagflow.scheduling import TriggerScheduler


@pytest.fixture
def scheduler(engine, clock):
    scheduler = TriggerScheduler(engine, clock=clock)
    yield scheduler
    scheduler.close()


@pytest.fixture
def pipeline(engine, dispatcher, make_graph):
    graph = make_graph(
        [{"id": "work"}],
        id="pipeline",
        variables={"region": {"type": "string", "default": "any"}},
    )
    dispatcher.register("work", lambda req: req.variables["region"])
    engine.register_graph(graph)
    return graph


@pytest.fixture
def gated_pipeline(engine, dispatcher, make_graph, gate):
    graph = make_graph([{"id": "hold"}], id="gated")
    dispatcher.register("hold", gate.handler())
    engine.register_graph(graph)
    return graph


def _at(hour, minute=0):
    return datetime(2024, 1, 1, hour, minute, tzinfo=timezone.utc)


class TestTriggerRegistration:
    """create_trigger validation against the engine."""

    def test_unknown_workflow(self, scheduler):
        with pytest.raises(GraphNotFound):
            scheduler.create_trigger({"workflow_id": "missing"})

    def test_duplicate_id(self, scheduler, pipeline):
        scheduler.create_trigger({"id": "t1", "workflow_id": pipeline.id})
        with pytest.raises(TriggerError, match="already exists"):
            scheduler.create_trigger({"id": "t1", "workflow_id": pipeline.id})

    def test_cron_gets_next_occurrence(self, scheduler, pipeline):
        trigger = scheduler.create_trigger(
            {"workflowId": pipeline.id, "type": "cron", "cronExpression": "*/5 * * * *"}
        )
        assert trigger.next_scheduled == _at(12, 5)

    def test_remove(self, scheduler, pipeline):
        scheduler.create_trigger({"id": "t1", "workflow_id": pipeline.id})
        assert scheduler.remove("t1") is True
        assert scheduler.remove("t1") is False
        with pytest.raises(TriggerError, match="not found"):
            scheduler.get("t1")


class TestCronTicks:
    """Cron firings against the scheduler's logical clock."""

    @pytest.mark.asyncio
    async def test_fires_when_due(self, engine, scheduler, pipeline):
        scheduler.create_trigger(
            {"id": "every5", "workflow_id": pipeline.id, "kind": "cron", "cron_expression": "*/5 * * * *"}
        )
        assert await scheduler.tick(_at(12, 4)) == []

        (run,) = await scheduler.tick(_at(12, 5))
        assert run.trigger_id == "every5"
        finished = await engine.wait(run.run_id, timeout=2)
        assert finished.outputs == {"work": "any"}
        assert scheduler.get("every5").next_scheduled == _at(12, 10)

    @pytest.mark.asyncio
    async def test_missed_occurrences_coalesce(self, engine, scheduler, pipeline):
        scheduler.create_trigger(
            {"id": "every5", "workflow_id": pipeline.id, "kind": "cron", "cron_expression": "*/5 * * * *"}
        )
        started = await scheduler.tick(_at(12, 31))
        assert len(started) == 1
        await engine.wait(started[0].run_id, timeout=2)
        assert scheduler.get("every5").next_scheduled == _at(12, 35)
        assert scheduler.get("every5").last_fired == _at(12, 31)

    @pytest.mark.asyncio
    async def test_disabled_cron_not_fired(self, scheduler, pipeline):
        scheduler.create_trigger(
            {"id": "every5", "workflow_id": pipeline.id, "kind": "cron", "cron_expression": "*/5 * * * *"}
        )
        scheduler.disable("every5")
        assert await scheduler.tick(_at(13)) == []


class TestEventsAndWebhooks:
    """External event and webhook firings."""

    @pytest.mark.asyncio
    async def test_event_filter_and_payload_inputs(self, engine, scheduler, pipeline):
        scheduler.create_trigger(
            {
                "workflow_id": pipeline.id,
                "kind": "event",
                "event_type": "order.created",
                "event_filter": {"channel": "web"},
            }
        )
        assert await scheduler.emit_event("order.created", {"channel": "store"}) == []
        assert await scheduler.emit_event("order.updated", {"channel": "web"}) == []

        (run,) = await scheduler.emit_event(
            "order.created", {"channel": "web", "region": "eu", "unrelated": 1}
        )
        finished = await engine.wait(run.run_id, timeout=2)
        assert finished.variables["region"] == "eu"
        assert finished.outputs == {"work": "eu"}

    @pytest.mark.asyncio
    async def test_webhook_secret(self, engine, scheduler, pipeline):
        scheduler.create_trigger(
            {"id": "hook", "workflow_id": pipeline.id, "kind": "webhook", "webhook_secret": "s3cret"}
        )
        with pytest.raises(TriggerError, match="Invalid webhook secret"):
            await scheduler.receive_webhook("hook", {"region": "us"}, secret="guess")
        with pytest.raises(TriggerError, match="Invalid webhook secret"):
            await scheduler.receive_webhook("hook", {"region": "us"})

        run = await scheduler.receive_webhook("hook", {"region": "us"}, secret="s3cret")
        assert (await engine.wait(run.run_id, timeout=2)).outputs == {"work": "us"}

    @pytest.mark.asyncio
    async def test_webhook_on_manual_trigger(self, scheduler, pipeline):
        scheduler.create_trigger({"id": "manual", "workflow_id": pipeline.id})
        with pytest.raises(TriggerError, match="not a webhook trigger"):
            await scheduler.receive_webhook("manual")


class TestQueuePolicies:
    """Firings while a trigger is at capacity."""

    @pytest.mark.asyncio
    async def test_queue_starts_after_active_run(self, engine, scheduler, gated_pipeline, gate, wait_until):
        scheduler.create_trigger({"id": "t", "workflow_id": gated_pipeline.id, "queue_policy": "queue"})
        first = await scheduler.fire("t")
        assert await scheduler.fire("t") is None
        assert scheduler.queued("t") == 1
        assert len(engine.list_runs()) == 1

        gate.release("hold")
        await engine.wait(first.run_id, timeout=2)
        await wait_until(lambda: len(engine.list_runs()) == 2)
        assert scheduler.queued("t") == 0

        (second_id,) = [run_id for run_id in engine.list_runs() if run_id != first.run_id]
        second = await engine.wait(second_id, timeout=2)
        assert second.status is WorkflowStatus.COMPLETED
        assert second.trigger_id == "t"
        assert scheduler.get_metrics()["queued"] == 1

    @pytest.mark.asyncio
    async def test_skip_drops_firing(self, engine, scheduler, gated_pipeline, gate):
        scheduler.create_trigger({"id": "t", "workflow_id": gated_pipeline.id, "queuePolicy": "skip"})
        first = await scheduler.fire("t")
        assert await scheduler.fire("t") is None
        assert scheduler.queued("t") == 0
        assert scheduler.get_metrics()["skipped"] == 1

        gate.release("hold")
        await engine.wait(first.run_id, timeout=2)
        assert len(engine.list_runs()) == 1

    @pytest.mark.asyncio
    async def test_replace_cancels_oldest(self, engine, scheduler, gated_pipeline, gate):
        scheduler.create_trigger({"id": "t", "workflow_id": gated_pipeline.id, "queue_policy": "replace"})
        first = await scheduler.fire("t")
        second = await scheduler.fire("t")

        assert first.status is WorkflowStatus.CANCELLED
        assert scheduler.active_runs("t") == [second.run_id]
        assert scheduler.get_metrics()["replaced"] == 1

        gate.release("hold")
        assert (await engine.wait(second.run_id, timeout=2)).status is WorkflowStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_higher_limit_allows_parallel_runs(self, engine, scheduler, gated_pipeline, gate):
        scheduler.create_trigger(
            {"id": "t", "workflow_id": gated_pipeline.id, "max_concurrent_executions": 2, "queue_policy": "skip"}
        )
        first = await scheduler.fire("t")
        second = await scheduler.fire("t")
        assert second is not None
        assert await scheduler.fire("t") is None

        gate.release("hold")
        for run in (first, second):
            await engine.wait(run.run_id, timeout=2)


class TestWindowsAndEnablement:
    """Execution windows and disabled triggers."""

    @pytest.mark.asyncio
    async def test_outside_window_dropped(self, engine, scheduler, pipeline, clock):
        scheduler.create_trigger(
            {
                "id": "office",
                "workflow_id": pipeline.id,
                "execution_windows": [{"start_time": "09:00", "end_time": "17:00"}],
            }
        )
        run = await scheduler.fire("office")
        assert run is not None
        await engine.wait(run.run_id, timeout=2)

        clock.advance(8 * 3600)
        assert await scheduler.fire("office") is None
        assert scheduler.get_metrics()["outside_window"] == 1

    @pytest.mark.asyncio
    async def test_disable_and_enable(self, engine, scheduler, pipeline):
        scheduler.create_trigger({"id": "t", "workflow_id": pipeline.id})
        scheduler.disable("t")
        assert await scheduler.fire("t") is None
        assert engine.list_runs() == {}

        scheduler.enable("t")
        run = await scheduler.fire("t", {"region": "apac"})
        assert (await engine.wait(run.run_id, timeout=2)).outputs == {"work": "apac"}


class TestDependencyTriggers:
    """Runs started by the completion of other workflows."""

    @pytest.fixture
    def upstream(self, engine, dispatcher, make_graph):
        graph = make_graph([{"id": "produce"}], id="upstream")
        engine.register_graph(graph)
        return graph

    @pytest.fixture
    def downstream(self, engine, dispatcher, make_graph):
        graph = make_graph(
            [{"id": "consume"}],
            id="downstream",
            variables={"upstream_run_id": {"type": "string"}},
        )
        dispatcher.register("consume", lambda req: req.variables["upstream_run_id"])
        engine.register_graph(graph)
        return graph

    def _runs_of(self, engine, graph_id):
        return [engine.get_run(run_id) for run_id in engine.list_runs() if engine.get_run(run_id).graph_id == graph_id]

    @pytest.mark.asyncio
    async def test_fires_after_upstream_success(
        self, engine, dispatcher, scheduler, upstream, downstream, wait_until
    ):
        dispatcher.register("produce", lambda req: "made")
        scheduler.create_trigger(
            {"workflow_id": downstream.id, "kind": "dependency", "dependency_workflow_ids": [upstream.id]}
        )
        up = await engine.execute(upstream.id, timeout=2)
        assert up.status is WorkflowStatus.COMPLETED

        await wait_until(lambda: len(self._runs_of(engine, downstream.id)) == 1)
        (down,) = self._runs_of(engine, downstream.id)
        finished = await engine.wait(down.run_id, timeout=2)
        assert finished.outputs == {"consume": up.run_id}

    @pytest.mark.asyncio
    async def test_failed_upstream_does_not_fire(
        self, engine, dispatcher, scheduler, upstream, downstream
    ):
        def broken(request):
            raise RuntimeError("no output")

        dispatcher.register("produce", broken)
        scheduler.create_trigger(
            {"workflow_id": downstream.id, "kind": "dependency", "dependency_workflow_ids": [upstream.id]}
        )
        up = await engine.execute(upstream.id, timeout=2)
        assert up.status is WorkflowStatus.FAILED
        await asyncio.sleep(0.05)
        assert self._runs_of(engine, downstream.id) == []

    @pytest.mark.asyncio
    async def test_any_complete_fires_on_failure(
        self, engine, dispatcher, scheduler, upstream, downstream, wait_until
    ):
        def broken(request):
            raise RuntimeError("no output")

        dispatcher.register("produce", broken)
        scheduler.create_trigger(
            {
                "workflow_id": downstream.id,
                "kind": "dependency",
                "dependency_workflow_ids": [upstream.id],
                "dependency_condition": "any-complete",
            }
        )
        await engine.execute(upstream.id, timeout=2)
        await wait_until(lambda: len(self._runs_of(engine, downstream.id)) == 1)
        (down,) = self._runs_of(engine, downstream.id)
        await engine.wait(down.run_id, timeout=2)
